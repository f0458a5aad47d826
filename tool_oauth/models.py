"""
Value types for clients, credentials and the per-request security context.
All stored types are frozen; the store hands out values, never shared mutable state.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable
from urllib.parse import urlencode


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_scopes(scopes: Iterable[str] | str | None) -> tuple[str, ...]:
    """Ordered, deduplicated scope tuple. Accepts a space-separated string."""
    if scopes is None:
        return ()
    if isinstance(scopes, str):
        scopes = scopes.split()
    return tuple(dict.fromkeys(s.strip() for s in scopes if s and s.strip()))


@dataclass(frozen=True)
class Client:
    client_id: str
    client_secret_hash: str
    redirect_uris: frozenset[str] = frozenset()
    allowed_scopes: tuple[str, ...] = ()
    name: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "redirect_uris", frozenset(self.redirect_uris))
        object.__setattr__(self, "allowed_scopes", normalize_scopes(self.allowed_scopes))

    def redirect_uri_allowed(self, uri: str) -> bool:
        return uri in self.redirect_uris

    def scopes_allowed(self, scopes: Iterable[str]) -> bool:
        return set(scopes).issubset(self.allowed_scopes)


@dataclass(frozen=True)
class AuthorizationCode:
    code: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    scopes: tuple[str, ...] = ()
    code_challenge_method: str = "S256"
    used: bool = False
    expires_at: int = 0  # epoch ms, set by the store

    def __post_init__(self):
        object.__setattr__(self, "scopes", normalize_scopes(self.scopes))


@dataclass(frozen=True)
class AccessToken:
    token: str
    client_id: str
    scopes: tuple[str, ...] = ()
    refresh_token: str | None = None
    expires_at: int = 0

    def __post_init__(self):
        object.__setattr__(self, "scopes", normalize_scopes(self.scopes))


@dataclass(frozen=True)
class RefreshToken:
    """Maps a refresh token to the access token it renews."""

    token: str
    access_token: str
    client_id: str
    scopes: tuple[str, ...] = ()
    expires_at: int = 0

    def __post_init__(self):
        object.__setattr__(self, "scopes", normalize_scopes(self.scopes))


@dataclass(frozen=True)
class SecurityContext:
    """Built per validated request from an access token; never persisted."""

    authenticated: bool
    permissions: frozenset[str]
    client_id: str | None = None
    scopes: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=_utc_now)
    ip_address: str | None = None


@dataclass(frozen=True)
class AuthorizationRequest:
    redirect_uri: str
    code_challenge: str
    scopes: tuple[str, ...] = ()
    state: str | None = None
    code_challenge_method: str = "S256"

    def __post_init__(self):
        object.__setattr__(self, "scopes", normalize_scopes(self.scopes))


@dataclass(frozen=True)
class AuthorizationResponse:
    code: str
    redirect_uri: str
    state: str | None = None

    def redirect_url(self) -> str:
        params = {"code": self.code}
        if self.state:
            params["state"] = self.state
        separator = "&" if "?" in self.redirect_uri else "?"
        return f"{self.redirect_uri}{separator}{urlencode(params)}"


@dataclass(frozen=True)
class StorageStats:
    token_count: int
    refresh_token_count: int
    authorization_code_count: int
    client_count: int
    approximate: bool = False


@dataclass(frozen=True)
class HealthCheckResult:
    healthy: bool
    message: str
    response_time_ms: float
    timestamp: int
    components: dict = field(default_factory=dict)
    errors: list = field(default_factory=list)
