"""
SQL credential store (SQLAlchemy). Single node: sessions in this process are serialised
by one lock, and code consumption is a conditional UPDATE so it stays single-use even
when another process shares the database.

A committed transaction batch runs in one database transaction: all writes or none.
"""
import logging
import threading
import time
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from tool_oauth.audit import safe_id
from tool_oauth.config import DATABASE_URL
from tool_oauth.database import (
    AccessTokenRow,
    AuthorizationCodeRow,
    ClientRow,
    RefreshTokenRow,
    create_engine_for,
    init_db,
    make_session_factory,
)
from tool_oauth.errors import AlreadyExistsError, CodeExpiredError, NotFoundError, StorageUnavailableError
from tool_oauth.models import (
    AccessToken,
    AuthorizationCode,
    Client,
    HealthCheckResult,
    RefreshToken,
    StorageStats,
)
from tool_oauth.storage import StorageProvider, expiry_from_ttl, is_expired

logger = logging.getLogger(__name__)

_EXPIRING = (
    (AccessTokenRow, AccessTokenRow.token),
    (RefreshTokenRow, RefreshTokenRow.token),
    (AuthorizationCodeRow, AuthorizationCodeRow.code),
)


class SQLStorage(StorageProvider):
    name = "sql"

    def __init__(self, database_url: str = DATABASE_URL, *, engine=None, **kwargs):
        super().__init__(**kwargs)
        self.engine = engine if engine is not None else create_engine_for(database_url)
        self._sessions = make_session_factory(self.engine)
        self._lock = threading.RLock()
        try:
            init_db(self.engine)
        except OperationalError as exc:
            raise StorageUnavailableError("Database is unavailable") from exc

    @contextmanager
    def _session(self) -> Iterator[Session]:
        """One committed unit of work; rolls back on any exception."""
        with self._lock:
            try:
                with self._sessions.begin() as session:
                    yield session
            except OperationalError as exc:
                logger.warning("Database operation failed: %s", exc.__class__.__name__)
                raise StorageUnavailableError("Database is unavailable") from exc

    def _run(self, operation: str, *args):
        with self._session() as session:
            return getattr(self, f"_{operation}")(session, *args)

    # Row helpers (run inside an open session)

    def _live_row(self, session: Session, column, key: str):
        row = session.scalar(select(column.class_).where(column == key))
        if row is not None and is_expired(row.expires_at, self.now()):
            session.delete(row)
            session.flush()
            logger.debug("Dropped expired %s %s on read", column.class_.__tablename__, safe_id(key))
            return None
        return row

    def _insert(self, session: Session, column, key: str, row) -> None:
        existing = session.scalar(select(column.class_).where(column == key))
        if existing is not None:
            if not is_expired(existing.expires_at, self.now()):
                raise AlreadyExistsError(f"{column.class_.__tablename__} already exists: {safe_id(key)}")
            session.delete(existing)
            session.flush()
        session.add(row)
        try:
            session.flush()
        except IntegrityError as exc:
            raise AlreadyExistsError(f"{column.class_.__tablename__} already exists: {safe_id(key)}") from exc

    def _remove(self, session: Session, column, key: str) -> bool:
        row = session.scalar(select(column.class_).where(column == key))
        if row is None:
            return False
        live = not is_expired(row.expires_at, self.now())
        session.delete(row)
        # Later writes in the same batch may reuse the key
        session.flush()
        return live

    # Clients

    def _set_client(self, session: Session, client_id: str, client: Client) -> Client:
        if session.scalar(select(ClientRow).where(ClientRow.client_id == client_id)) is not None:
            raise AlreadyExistsError(f"Client already exists: {client_id}")
        row = ClientRow.from_model(client)
        row.client_id = client_id
        session.add(row)
        try:
            session.flush()
        except IntegrityError as exc:
            raise AlreadyExistsError(f"Client already exists: {client_id}") from exc
        return row.to_model()

    def _delete_client(self, session: Session, client_id: str) -> bool:
        return session.execute(delete(ClientRow).where(ClientRow.client_id == client_id)).rowcount > 0

    def set_client(self, client_id: str, client: Client) -> Client:
        return self._run("set_client", client_id, client)

    def get_client(self, client_id: str) -> Client | None:
        with self._session() as session:
            row = session.scalar(select(ClientRow).where(ClientRow.client_id == client_id))
            return row.to_model() if row else None

    def delete_client(self, client_id: str) -> bool:
        return self._run("delete_client", client_id)

    def list_clients(self) -> list[str]:
        with self._session() as session:
            return list(session.scalars(select(ClientRow.client_id).order_by(ClientRow.id)))

    # Access tokens

    def _set_token(self, session: Session, token: str, data: AccessToken, ttl_seconds: float) -> AccessToken:
        row = AccessTokenRow(
            token=token,
            client_id=data.client_id,
            scope=" ".join(data.scopes),
            refresh_token=data.refresh_token,
            expires_at=expiry_from_ttl(self.now(), ttl_seconds),
        )
        self._insert(session, AccessTokenRow.token, token, row)
        return row.to_model()

    def _delete_token(self, session: Session, token: str) -> bool:
        return self._remove(session, AccessTokenRow.token, token)

    def set_token(self, token: str, data: AccessToken, ttl_seconds: float) -> AccessToken:
        return self._run("set_token", token, data, ttl_seconds)

    def get_token(self, token: str) -> AccessToken | None:
        with self._session() as session:
            row = self._live_row(session, AccessTokenRow.token, token)
            return row.to_model() if row else None

    def delete_token(self, token: str) -> bool:
        return self._run("delete_token", token)

    def delete_tokens_by_client(self, client_id: str) -> int:
        with self._session() as session:
            return session.execute(delete(AccessTokenRow).where(AccessTokenRow.client_id == client_id)).rowcount

    # Refresh tokens

    def _set_refresh_token(
        self, session: Session, refresh_token: str, data: RefreshToken, ttl_seconds: float
    ) -> RefreshToken:
        row = RefreshTokenRow(
            token=refresh_token,
            access_token=data.access_token,
            client_id=data.client_id,
            scope=" ".join(data.scopes),
            expires_at=expiry_from_ttl(self.now(), ttl_seconds),
        )
        self._insert(session, RefreshTokenRow.token, refresh_token, row)
        return row.to_model()

    def _delete_refresh_token(self, session: Session, refresh_token: str) -> bool:
        return self._remove(session, RefreshTokenRow.token, refresh_token)

    def set_refresh_token(self, refresh_token: str, data: RefreshToken, ttl_seconds: float) -> RefreshToken:
        return self._run("set_refresh_token", refresh_token, data, ttl_seconds)

    def get_refresh_token(self, refresh_token: str) -> RefreshToken | None:
        with self._session() as session:
            row = self._live_row(session, RefreshTokenRow.token, refresh_token)
            return row.to_model() if row else None

    def delete_refresh_token(self, refresh_token: str) -> bool:
        return self._run("delete_refresh_token", refresh_token)

    def delete_refresh_tokens_by_client(self, client_id: str) -> int:
        with self._session() as session:
            return session.execute(delete(RefreshTokenRow).where(RefreshTokenRow.client_id == client_id)).rowcount

    # Authorization codes

    def _set_authorization_code(
        self, session: Session, code: str, data: AuthorizationCode, ttl_seconds: float
    ) -> AuthorizationCode:
        row = AuthorizationCodeRow(
            code=code,
            client_id=data.client_id,
            redirect_uri=data.redirect_uri,
            scope=" ".join(data.scopes),
            code_challenge=data.code_challenge,
            code_challenge_method=data.code_challenge_method,
            used=data.used,
            expires_at=expiry_from_ttl(self.now(), ttl_seconds),
        )
        self._insert(session, AuthorizationCodeRow.code, code, row)
        return row.to_model()

    def _delete_authorization_code(self, session: Session, code: str) -> bool:
        return self._remove(session, AuthorizationCodeRow.code, code)

    def _mark_authorization_code_used(self, session: Session, code: str) -> bool:
        now = self.now()
        row = session.scalar(select(AuthorizationCodeRow).where(AuthorizationCodeRow.code == code))
        if row is None:
            raise NotFoundError(f"Authorization code not found: {safe_id(code)}")
        if is_expired(row.expires_at, now):
            raise CodeExpiredError(f"Authorization code expired: {safe_id(code)}")
        # Only the writer that still sees used = false gets a row back
        result = session.execute(
            update(AuthorizationCodeRow)
            .where(
                AuthorizationCodeRow.code == code,
                AuthorizationCodeRow.used.is_(False),
                AuthorizationCodeRow.expires_at > now,
            )
            .values(used=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def set_authorization_code(self, code: str, data: AuthorizationCode, ttl_seconds: float) -> AuthorizationCode:
        return self._run("set_authorization_code", code, data, ttl_seconds)

    def get_authorization_code(self, code: str) -> AuthorizationCode | None:
        with self._session() as session:
            row = self._live_row(session, AuthorizationCodeRow.code, code)
            return row.to_model() if row else None

    def delete_authorization_code(self, code: str) -> bool:
        return self._run("delete_authorization_code", code)

    def mark_authorization_code_used(self, code: str) -> bool:
        return self._run("mark_authorization_code_used", code)

    # Transactions

    def _apply_batch(self, operations: list[tuple[str, tuple]]) -> list:
        with self._session() as session:
            return [getattr(self, f"_{operation}")(session, *args) for operation, args in operations]

    # Maintenance and monitoring

    def cleanup_expired(self) -> int:
        now = self.now()
        removed = 0
        with self._session() as session:
            for model, _ in _EXPIRING:
                removed += session.execute(delete(model).where(model.expires_at <= now)).rowcount
        return removed

    def _count_live(self, session: Session, model, now: int) -> int:
        return session.scalar(select(func.count()).select_from(model).where(model.expires_at > now)) or 0

    def get_stats(self) -> StorageStats:
        now = self.now()
        with self._session() as session:
            return StorageStats(
                token_count=self._count_live(session, AccessTokenRow, now),
                refresh_token_count=self._count_live(session, RefreshTokenRow, now),
                authorization_code_count=self._count_live(session, AuthorizationCodeRow, now),
                client_count=session.scalar(select(func.count()).select_from(ClientRow)) or 0,
            )

    def health_check(self) -> HealthCheckResult:
        start = time.perf_counter()
        errors = []
        try:
            with self._session() as session:
                session.execute(select(1))
            database = {"healthy": True, "message": self.engine.dialect.name}
        except StorageUnavailableError as exc:
            errors.append(str(exc))
            database = {"healthy": False, "message": str(exc)}
        healthy = not errors and self.connected
        if healthy:
            message = "SQL storage is operational"
        elif errors:
            message = "SQL storage is unavailable"
        else:
            message = "SQL storage is disconnected"
        return HealthCheckResult(
            healthy=healthy,
            message=message,
            response_time_ms=(time.perf_counter() - start) * 1000,
            timestamp=self.now(),
            components={"database": database},
            errors=errors,
        )
