"""
Authorization provider: Authorization Code + PKCE and Refresh Token grants over a StorageProvider.

Every public flow emits its audit events on success and on failure. Multi-step flows on a
single code or refresh token run under a per-key lock, and the store's atomic operations
(mark code used, consume refresh token) decide races between callers on different providers.
Storage outages surface as StorageUnavailableError, audited as failures and re-raised as is.
"""
import logging
import secrets
import threading
from contextlib import contextmanager
from typing import Iterable, Iterator

from tool_oauth.audit import (
    EVENT_AUTHORIZATION_DENIED,
    EVENT_AUTHORIZATION_GRANTED,
    EVENT_AUTHORIZATION_REQUESTED,
    EVENT_CLIENT_AUTH_FAILED,
    EVENT_CLIENT_REGISTERED,
    EVENT_TOKEN_ISSUED,
    EVENT_TOKEN_REFRESHED,
    EVENT_TOKEN_REVOKED,
    EVENT_TOKEN_VALIDATION_FAILED,
    EVENT_TOKEN_VALIDATION_SUCCESS,
    RESULT_FAILURE,
    RESULT_SUCCESS,
    AuditLogger,
    get_audit_logger,
    safe_id,
)
from tool_oauth.client_auth import hash_secret, verify_secret
from tool_oauth.config import (
    ACCESS_TOKEN_EXPIRES,
    BCRYPT_ROUNDS,
    CODE_TTL_SECONDS,
    DATABASE_URL,
    REFRESH_TOKEN_EXPIRES,
    REQUIRE_SCOPE,
    ROTATE_REFRESH_TOKENS,
    STORAGE_BACKEND,
)
from tool_oauth.errors import (
    CodeExpiredError,
    InvalidClientError,
    InvalidGrantError,
    InvalidRedirectUriError,
    InvalidRequestError,
    InvalidScopeError,
    InvalidTokenError,
    NotFoundError,
    OAuthError,
    StorageUnavailableError,
)
from tool_oauth.memory_storage import InMemoryStorage
from tool_oauth.models import (
    AccessToken,
    AuthorizationCode,
    AuthorizationRequest,
    AuthorizationResponse,
    Client,
    RefreshToken,
    SecurityContext,
    normalize_scopes,
)
from tool_oauth.permissions import map_scopes_to_permissions
from tool_oauth.pkce import S256, verify_code_challenge
from tool_oauth.storage import StorageProvider

logger = logging.getLogger(__name__)

TOKEN_TYPE_ACCESS = "access_token"
TOKEN_TYPE_REFRESH = "refresh_token"


def generate_token() -> str:
    """Opaque 256-bit credential (hex)."""
    return secrets.token_hex(32)


class _KeyLocks:
    """One lock per key, dropped once no caller holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}  # key -> [lock, holders]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class AuthorizationProvider:
    def __init__(
        self,
        storage: StorageProvider | None = None,
        audit_logger: AuditLogger | None = None,
        *,
        token_ttl: int = ACCESS_TOKEN_EXPIRES,
        refresh_token_ttl: int = REFRESH_TOKEN_EXPIRES,
        code_ttl: int = CODE_TTL_SECONDS,
        rotate_refresh_tokens: bool = ROTATE_REFRESH_TOKENS,
        require_scope: bool = REQUIRE_SCOPE,
        bcrypt_rounds: int = BCRYPT_ROUNDS,
        clients: Iterable[dict] | None = None,
    ):
        self.storage = storage if storage is not None else InMemoryStorage()
        self.audit = audit_logger if audit_logger is not None else get_audit_logger()
        self.token_ttl = token_ttl
        self.refresh_token_ttl = refresh_token_ttl
        self.code_ttl = code_ttl
        self.rotate_refresh_tokens = rotate_refresh_tokens
        self.require_scope = require_scope
        self.bcrypt_rounds = bcrypt_rounds
        self._configured_clients = list(clients or [])
        self._key_locks = _KeyLocks()
        self._init_lock = threading.Lock()
        self.initialized = False

    # Lifecycle

    def initialize(self) -> None:
        """Connect the store and register configured clients. Safe to call repeatedly."""
        with self._init_lock:
            if self.initialized:
                return
            self.storage.connect()
            for config in self._configured_clients:
                if self.storage.get_client(config["client_id"]) is None:
                    self.register_client(**config)
            self.initialized = True
            logger.info("Authorization provider ready (%s storage)", self.storage.name)

    def close(self) -> None:
        with self._init_lock:
            self.storage.disconnect()
            self.initialized = False

    # Audit helpers

    def _log(
        self,
        event_type: str,
        result: str,
        details: dict,
        message: str | None = None,
        context: SecurityContext | None = None,
    ) -> None:
        if message:
            details = {**details, "message": message}
        self.audit.log(event_type, result, context=context, details=details)

    def _fail(self, event_type: str, details: dict, exc: OAuthError) -> OAuthError:
        self._log(event_type, RESULT_FAILURE, {**details, "error": exc.error}, message=exc.description)
        return exc

    @contextmanager
    def _storage_guard(self, event_type: str, details: dict) -> Iterator[None]:
        try:
            yield
        except StorageUnavailableError:
            logger.warning("Storage unavailable during %s", event_type)
            self._log(event_type, RESULT_FAILURE, {**details, "error": "storage_unavailable"}, message="Storage unavailable")
            raise

    # Clients

    def register_client(
        self,
        client_id: str,
        client_secret: str,
        redirect_uris: Iterable[str],
        scopes: Iterable[str] | str = (),
        name: str | None = None,
    ) -> Client:
        """Store a new client with a bcrypt-hashed secret. AlreadyExistsError if the id is taken."""
        redirect_uris = frozenset(redirect_uris or ())
        if not client_id or not client_secret:
            raise InvalidRequestError("client_id and client_secret are required")
        if not redirect_uris:
            raise InvalidRequestError("At least one redirect_uri is required")
        client = Client(
            client_id=client_id,
            client_secret_hash=hash_secret(client_secret, rounds=self.bcrypt_rounds),
            redirect_uris=redirect_uris,
            allowed_scopes=normalize_scopes(scopes),
            name=name,
        )
        stored = self.storage.set_client(client_id, client)
        self._log(
            EVENT_CLIENT_REGISTERED,
            RESULT_SUCCESS,
            {"client_id": client_id, "scopes": list(stored.allowed_scopes), "redirect_uris": sorted(redirect_uris)},
        )
        return stored

    def get_client(self, client_id: str) -> Client | None:
        if not client_id:
            return None
        return self.storage.get_client(client_id)

    def authenticate_client(self, client_id: str, client_secret: str | None, ip_address: str | None = None) -> Client:
        details = {"client_id": client_id, "ip_address": ip_address}
        with self._storage_guard(EVENT_CLIENT_AUTH_FAILED, details):
            client = self.get_client(client_id)
        if client is None or not verify_secret(client_secret, client.client_secret_hash):
            raise self._fail(EVENT_CLIENT_AUTH_FAILED, details, InvalidClientError("Client authentication failed"))
        return client

    # Authorization endpoint

    def authorize(self, client: Client, request: AuthorizationRequest, ip_address: str | None = None) -> AuthorizationResponse:
        """Validate the request and issue a single-use authorization code bound to the PKCE challenge."""
        details = {
            "client_id": client.client_id,
            "ip_address": ip_address,
            "redirect_uri": request.redirect_uri,
            "scopes": list(request.scopes),
        }
        if not client.redirect_uri_allowed(request.redirect_uri):
            raise self._fail(EVENT_AUTHORIZATION_DENIED, details, InvalidRedirectUriError("Invalid redirect_uri"))
        if not client.scopes_allowed(request.scopes):
            raise self._fail(
                EVENT_AUTHORIZATION_DENIED,
                details,
                InvalidScopeError("One or more requested scopes are not allowed"),
            )
        if self.require_scope and not request.scopes:
            raise self._fail(EVENT_AUTHORIZATION_DENIED, details, InvalidScopeError("At least one scope is required"))
        if not request.code_challenge:
            raise self._fail(
                EVENT_AUTHORIZATION_DENIED, details, InvalidRequestError("code_challenge is required (PKCE)")
            )
        if request.code_challenge_method != S256:
            raise self._fail(
                EVENT_AUTHORIZATION_DENIED, details, InvalidRequestError("code_challenge_method must be S256")
            )

        self._log(EVENT_AUTHORIZATION_REQUESTED, RESULT_SUCCESS, details)
        code = generate_token()
        with self._storage_guard(EVENT_AUTHORIZATION_DENIED, details):
            self.storage.set_authorization_code(
                code,
                AuthorizationCode(
                    code=code,
                    client_id=client.client_id,
                    redirect_uri=request.redirect_uri,
                    code_challenge=request.code_challenge,
                    code_challenge_method=request.code_challenge_method,
                    scopes=request.scopes,
                ),
                self.code_ttl,
            )
        self._log(
            EVENT_AUTHORIZATION_GRANTED,
            RESULT_SUCCESS,
            {**details, "code_id": safe_id(code), "expires_in": self.code_ttl},
        )
        return AuthorizationResponse(code=code, redirect_uri=request.redirect_uri, state=request.state)

    def challenge_for_authorization_code(self, client: Client, code: str) -> str:
        """Stored PKCE challenge for a live code owned by client."""
        entry = self.storage.get_authorization_code(code)
        if entry is None or entry.client_id != client.client_id:
            raise InvalidGrantError("Invalid authorization code")
        return entry.code_challenge

    # Token endpoint

    def _token_response(self, access_token: str, refresh_token: str, scopes: tuple[str, ...]) -> dict:
        return {
            "access_token": access_token,
            "token_type": "Bearer",
            "expires_in": self.token_ttl,
            "refresh_token": refresh_token,
            "scope": " ".join(scopes),
        }

    def exchange_authorization_code(
        self,
        client: Client,
        code: str,
        code_verifier: str | None,
        redirect_uri: str | None = None,
        ip_address: str | None = None,
    ) -> dict:
        """
        Redeem a code for an access/refresh token pair.
        The code is consumed before any other check, so a failed exchange still burns it.
        """
        details = {"client_id": client.client_id, "ip_address": ip_address, "code_id": safe_id(code)}
        if not code:
            raise self._fail(EVENT_TOKEN_ISSUED, details, InvalidRequestError("code is required"))
        if not code_verifier:
            raise self._fail(
                EVENT_TOKEN_ISSUED, details, InvalidRequestError("Missing code_verifier (PKCE required)")
            )

        with self._key_locks.hold(f"code:{code}"), self._storage_guard(EVENT_TOKEN_ISSUED, details):
            entry = self.storage.get_authorization_code(code)
            try:
                consumed = entry is not None and self.storage.mark_authorization_code_used(code)
            except (NotFoundError, CodeExpiredError):
                consumed = False
            if not consumed:
                raise self._fail(EVENT_TOKEN_ISSUED, details, InvalidGrantError("Invalid authorization code"))
            if entry.client_id != client.client_id:
                raise self._fail(
                    EVENT_TOKEN_ISSUED,
                    details,
                    InvalidGrantError("Authorization code does not belong to this client"),
                )
            if not verify_code_challenge(code_verifier, entry.code_challenge, entry.code_challenge_method):
                raise self._fail(EVENT_TOKEN_ISSUED, details, InvalidGrantError("PKCE verification failed"))
            if redirect_uri and redirect_uri != entry.redirect_uri:
                raise self._fail(
                    EVENT_TOKEN_ISSUED,
                    details,
                    InvalidGrantError("Redirect URI does not match authorization request"),
                )

            access_token, refresh_token = generate_token(), generate_token()
            with self.storage.begin_transaction() as tx:
                tx.set_token(
                    access_token,
                    AccessToken(
                        token=access_token,
                        client_id=client.client_id,
                        scopes=entry.scopes,
                        refresh_token=refresh_token,
                    ),
                    self.token_ttl,
                )
                tx.set_refresh_token(
                    refresh_token,
                    RefreshToken(
                        token=refresh_token,
                        access_token=access_token,
                        client_id=client.client_id,
                        scopes=entry.scopes,
                    ),
                    self.refresh_token_ttl,
                )

        self._log(
            EVENT_TOKEN_ISSUED,
            RESULT_SUCCESS,
            {
                **details,
                "scopes": list(entry.scopes),
                "token_id": safe_id(access_token),
                "expires_in": self.token_ttl,
            },
        )
        return self._token_response(access_token, refresh_token, entry.scopes)

    def exchange_refresh_token(
        self,
        client: Client,
        refresh_token: str,
        scopes: Iterable[str] | str | None = None,
        ip_address: str | None = None,
    ) -> dict:
        """
        New access token for a live refresh token. Requested scopes may narrow, never widen.
        With rotation the old refresh token and its access token are revoked and a new pair
        is issued; without it the same refresh token is re-pointed at the new access token.
        """
        details = {
            "client_id": client.client_id,
            "ip_address": ip_address,
            "refresh_token_id": safe_id(refresh_token),
        }
        if not refresh_token:
            raise self._fail(EVENT_TOKEN_REFRESHED, details, InvalidRequestError("refresh_token is required"))

        with self._key_locks.hold(f"refresh:{refresh_token}"), self._storage_guard(EVENT_TOKEN_REFRESHED, details):
            entry = self.storage.get_refresh_token(refresh_token)
            if entry is None:
                raise self._fail(EVENT_TOKEN_REFRESHED, details, InvalidGrantError("Invalid refresh token"))
            if entry.client_id != client.client_id:
                raise self._fail(
                    EVENT_TOKEN_REFRESHED,
                    details,
                    InvalidGrantError("Refresh token does not belong to this client"),
                )
            requested = normalize_scopes(scopes) or entry.scopes
            if not set(requested).issubset(entry.scopes):
                raise self._fail(
                    EVENT_TOKEN_REFRESHED,
                    {**details, "requested_scopes": list(requested), "original_scopes": list(entry.scopes)},
                    InvalidScopeError("Requested scopes exceed original authorization"),
                )

            access_token = generate_token()
            if self.rotate_refresh_tokens:
                # Single-use: only the caller that removes the live entry may continue
                if not self.storage.delete_refresh_token(refresh_token):
                    raise self._fail(EVENT_TOKEN_REFRESHED, details, InvalidGrantError("Invalid refresh token"))
                new_refresh_token = generate_token()
                refresh_ttl = self.refresh_token_ttl
            else:
                new_refresh_token = refresh_token
                refresh_ttl = max(entry.expires_at - self.storage.now(), 1) / 1000

            with self.storage.begin_transaction() as tx:
                tx.delete_token(entry.access_token)
                if not self.rotate_refresh_tokens:
                    tx.delete_refresh_token(refresh_token)
                tx.set_token(
                    access_token,
                    AccessToken(
                        token=access_token,
                        client_id=client.client_id,
                        scopes=requested,
                        refresh_token=new_refresh_token,
                    ),
                    self.token_ttl,
                )
                tx.set_refresh_token(
                    new_refresh_token,
                    RefreshToken(
                        token=new_refresh_token,
                        access_token=access_token,
                        client_id=client.client_id,
                        scopes=entry.scopes,
                    ),
                    refresh_ttl,
                )

        self._log(
            EVENT_TOKEN_REFRESHED,
            RESULT_SUCCESS,
            {
                **details,
                "scopes": list(requested),
                "new_token_id": safe_id(access_token),
                "new_refresh_token_id": safe_id(new_refresh_token),
                "rotated": self.rotate_refresh_tokens,
                "expires_in": self.token_ttl,
            },
        )
        return self._token_response(access_token, new_refresh_token, requested)

    # Protected calls

    def verify_access_token(self, token: str, ip_address: str | None = None) -> SecurityContext:
        """SecurityContext for a live access token, or InvalidTokenError."""
        details = {"token_id": safe_id(token), "ip_address": ip_address}
        with self._storage_guard(EVENT_TOKEN_VALIDATION_FAILED, details):
            entry = self.storage.get_token(token) if token else None
        if entry is None:
            raise self._fail(
                EVENT_TOKEN_VALIDATION_FAILED, details, InvalidTokenError("Invalid or expired access token")
            )
        context = SecurityContext(
            authenticated=True,
            permissions=map_scopes_to_permissions(entry.scopes),
            client_id=entry.client_id,
            scopes=entry.scopes,
            ip_address=ip_address,
        )
        self._log(EVENT_TOKEN_VALIDATION_SUCCESS, RESULT_SUCCESS, {**details, "scopes": list(entry.scopes)}, context=context)
        return context

    # Revocation (RFC 7009)

    def _revoke_access(self, client: Client, token: str) -> bool:
        entry = self.storage.get_token(token)
        if entry is None or entry.client_id != client.client_id:
            return False
        with self.storage.begin_transaction() as tx:
            tx.delete_token(token)
            if entry.refresh_token:
                tx.delete_refresh_token(entry.refresh_token)
        return True

    def _revoke_refresh(self, client: Client, refresh_token: str) -> bool:
        entry = self.storage.get_refresh_token(refresh_token)
        if entry is None or entry.client_id != client.client_id:
            return False
        related = self.storage.find_tokens_by_refresh_token(refresh_token)
        with self.storage.begin_transaction() as tx:
            tx.delete_refresh_token(refresh_token)
            for access_token, _ in related:
                tx.delete_token(access_token)
        return True

    def revoke_token(
        self,
        client: Client,
        token: str,
        token_type_hint: str | None = None,
        ip_address: str | None = None,
    ) -> str | None:
        """
        Remove token and its paired credential. Returns the type removed, or None when nothing
        matched; unknown tokens and tokens of other clients are not an error.
        """
        details = {"client_id": client.client_id, "ip_address": ip_address, "token_id": safe_id(token)}
        if token_type_hint == TOKEN_TYPE_ACCESS:
            attempts = [(TOKEN_TYPE_ACCESS, self._revoke_access)]
        elif token_type_hint == TOKEN_TYPE_REFRESH:
            attempts = [(TOKEN_TYPE_REFRESH, self._revoke_refresh)]
        else:
            attempts = [(TOKEN_TYPE_ACCESS, self._revoke_access), (TOKEN_TYPE_REFRESH, self._revoke_refresh)]

        removed = None
        with self._storage_guard(EVENT_TOKEN_REVOKED, details):
            if token:
                for token_type, revoke in attempts:
                    if revoke(client, token):
                        removed = token_type
                        break

        if removed:
            self._log(EVENT_TOKEN_REVOKED, RESULT_SUCCESS, {**details, "token_type": removed})
        else:
            self._log(
                EVENT_TOKEN_REVOKED,
                RESULT_SUCCESS,
                {**details, "token_type": token_type_hint or "unknown"},
                message="Token not found or not owned by client",
            )
        return removed

    def revoke_client_tokens(self, client: Client) -> int:
        """Revoke every access and refresh token held by client."""
        details = {"client_id": client.client_id, "token_type": "all"}
        with self._storage_guard(EVENT_TOKEN_REVOKED, details):
            removed = self.storage.delete_tokens_by_client(client.client_id)
            removed += self.storage.delete_refresh_tokens_by_client(client.client_id)
        self._log(EVENT_TOKEN_REVOKED, RESULT_SUCCESS, {**details, "count": removed})
        return removed

    # Monitoring

    def get_stats(self) -> dict:
        stats = self.storage.get_stats()
        return {
            "clients": stats.client_count,
            "tokens": stats.token_count,
            "refresh_tokens": stats.refresh_token_count,
            "authorization_codes": stats.authorization_code_count,
            "approximate": stats.approximate,
        }


def build_storage(backend: str = STORAGE_BACKEND, database_url: str = DATABASE_URL) -> StorageProvider:
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sql":
        from tool_oauth.sql_storage import SQLStorage

        return SQLStorage(database_url)
    raise ValueError(f"Unknown storage backend: {backend}")


_provider: AuthorizationProvider | None = None


def get_provider() -> AuthorizationProvider:
    """Process-wide provider used by the HTTP routes. Tests override it via dependency_overrides."""
    global _provider
    if _provider is None:
        _provider = AuthorizationProvider(build_storage(), get_audit_logger())
    return _provider


def reset_provider() -> None:
    global _provider
    if _provider is not None:
        _provider.close()
    _provider = None
