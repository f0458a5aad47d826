"""
Credential store contract.

Backends implement the abstract methods below. The base class owns the parts every
backend shares: the write-buffering transaction, the connect/disconnect lifecycle and
the background expiry sweeper (one daemon thread per store, no per-entry timers).

Expiry rule: an entry is expired once now >= expires_at (epoch milliseconds).
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

from tool_oauth.config import SWEEP_INTERVAL_SECONDS
from tool_oauth.errors import TransactionStateError
from tool_oauth.models import (
    AccessToken,
    AuthorizationCode,
    Client,
    HealthCheckResult,
    RefreshToken,
    StorageStats,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


def now_ms() -> int:
    return int(time.time() * 1000)


def is_expired(expires_at: int, now: int) -> bool:
    return now >= expires_at


def expiry_from_ttl(now: int, ttl_seconds: float) -> int:
    if ttl_seconds <= 0:
        raise ValueError("ttl_seconds must be positive")
    return now + int(round(ttl_seconds * 1000))


class StorageTransaction:
    """
    Buffers writes and applies them in issue order on commit(); rollback() discards them.

    Reads are passed straight to the store and see committed state only: a value
    written through this transaction is not visible to its own reads until commit.
    One caller owns a transaction; it is not meant to be shared between threads.
    """

    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    def __init__(self, storage: "StorageProvider"):
        self._storage = storage
        self._operations: list[tuple[str, tuple]] = []
        self.state = self.ACTIVE

    def _ensure_active(self) -> None:
        if self.state != self.ACTIVE:
            raise TransactionStateError(f"Transaction already {self.state}")

    def _buffer(self, operation: str, *args: Any) -> None:
        self._ensure_active()
        self._operations.append((operation, args))

    @property
    def pending(self) -> int:
        return len(self._operations)

    # Buffered writes

    def set_client(self, client_id: str, client: Client) -> None:
        self._buffer("set_client", client_id, client)

    def delete_client(self, client_id: str) -> None:
        self._buffer("delete_client", client_id)

    def set_token(self, token: str, data: AccessToken, ttl_seconds: float) -> None:
        self._buffer("set_token", token, data, ttl_seconds)

    def delete_token(self, token: str) -> None:
        self._buffer("delete_token", token)

    def set_refresh_token(self, refresh_token: str, data: RefreshToken, ttl_seconds: float) -> None:
        self._buffer("set_refresh_token", refresh_token, data, ttl_seconds)

    def delete_refresh_token(self, refresh_token: str) -> None:
        self._buffer("delete_refresh_token", refresh_token)

    def set_authorization_code(self, code: str, data: AuthorizationCode, ttl_seconds: float) -> None:
        self._buffer("set_authorization_code", code, data, ttl_seconds)

    def delete_authorization_code(self, code: str) -> None:
        self._buffer("delete_authorization_code", code)

    def mark_authorization_code_used(self, code: str) -> None:
        self._buffer("mark_authorization_code_used", code)

    # Reads (committed state)

    def get_client(self, client_id: str) -> Client | None:
        self._ensure_active()
        return self._storage.get_client(client_id)

    def get_token(self, token: str) -> AccessToken | None:
        self._ensure_active()
        return self._storage.get_token(token)

    def get_refresh_token(self, refresh_token: str) -> RefreshToken | None:
        self._ensure_active()
        return self._storage.get_refresh_token(refresh_token)

    def get_authorization_code(self, code: str) -> AuthorizationCode | None:
        self._ensure_active()
        return self._storage.get_authorization_code(code)

    def commit(self) -> list:
        """Apply buffered writes in order. Returns one result per write."""
        self._ensure_active()
        operations, self._operations = self._operations, []
        try:
            results = self._storage._apply_batch(operations)
        except Exception:
            self.state = self.FAILED
            raise
        self.state = self.COMMITTED
        return results

    def rollback(self) -> None:
        self._ensure_active()
        self._operations = []
        self.state = self.ROLLED_BACK

    def __enter__(self) -> "StorageTransaction":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self.state == self.ACTIVE:
            if exc_type is None:
                self.commit()
            else:
                self.rollback()
        return False


class StorageProvider(ABC):
    """Abstract credential store: clients, access tokens, refresh tokens, authorization codes."""

    name = "storage"

    def __init__(self, *, clock: Clock | None = None, sweep_interval: float | None = None):
        self._clock = clock or now_ms
        self.sweep_interval = SWEEP_INTERVAL_SECONDS if sweep_interval is None else sweep_interval
        self._lifecycle_lock = threading.Lock()
        self._stop_sweep = threading.Event()
        self._sweeper: threading.Thread | None = None
        self.connected = False

    def now(self) -> int:
        return self._clock()

    # Lifecycle

    def connect(self) -> None:
        """Start the expiry sweeper. Safe to call repeatedly."""
        with self._lifecycle_lock:
            if self.connected:
                return
            self._on_connect()
            self._stop_sweep = threading.Event()
            if self.sweep_interval > 0:
                self._sweeper = threading.Thread(
                    target=self._sweep_loop,
                    args=(self._stop_sweep,),
                    name=f"{self.name}-expiry-sweeper",
                    daemon=True,
                )
                self._sweeper.start()
            self.connected = True
            logger.debug("%s storage connected (sweep every %ss)", self.name, self.sweep_interval)

    def disconnect(self) -> None:
        """Stop the sweeper and release the expiry schedule. Safe to call repeatedly."""
        with self._lifecycle_lock:
            if not self.connected:
                return
            self._stop_sweep.set()
            sweeper, self._sweeper = self._sweeper, None
            if sweeper is not None and sweeper is not threading.current_thread():
                sweeper.join(timeout=5)
            self._on_disconnect()
            self.connected = False
            logger.debug("%s storage disconnected", self.name)

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    def _sweep_loop(self, stop: threading.Event) -> None:
        while not stop.wait(self.sweep_interval):
            try:
                removed = self.cleanup_expired()
            except Exception:
                logger.exception("Expiry sweep failed for %s storage", self.name)
                continue
            if removed:
                logger.debug("Expiry sweep removed %d entries from %s storage", removed, self.name)

    def _on_connect(self) -> None:
        pass

    def _on_disconnect(self) -> None:
        pass

    # Transactions

    def begin_transaction(self) -> StorageTransaction:
        return StorageTransaction(self)

    @abstractmethod
    def _apply_batch(self, operations: list[tuple[str, tuple]]) -> list:
        """Apply buffered (operation, args) pairs in order."""

    # Clients

    @abstractmethod
    def set_client(self, client_id: str, client: Client) -> Client: ...

    @abstractmethod
    def get_client(self, client_id: str) -> Client | None: ...

    @abstractmethod
    def delete_client(self, client_id: str) -> bool: ...

    @abstractmethod
    def list_clients(self) -> list[str]: ...

    # Access tokens

    @abstractmethod
    def set_token(self, token: str, data: AccessToken, ttl_seconds: float) -> AccessToken: ...

    @abstractmethod
    def get_token(self, token: str) -> AccessToken | None: ...

    @abstractmethod
    def delete_token(self, token: str) -> bool: ...

    @abstractmethod
    def delete_tokens_by_client(self, client_id: str) -> int: ...

    # Refresh tokens

    @abstractmethod
    def set_refresh_token(self, refresh_token: str, data: RefreshToken, ttl_seconds: float) -> RefreshToken: ...

    @abstractmethod
    def get_refresh_token(self, refresh_token: str) -> RefreshToken | None: ...

    @abstractmethod
    def delete_refresh_token(self, refresh_token: str) -> bool:
        """True only for the caller that removed a live entry."""

    @abstractmethod
    def delete_refresh_tokens_by_client(self, client_id: str) -> int: ...

    def find_tokens_by_refresh_token(self, refresh_token: str) -> list[tuple[str, AccessToken]]:
        """Live access tokens renewed by refresh_token."""
        entry = self.get_refresh_token(refresh_token)
        if entry is None:
            return []
        token = self.get_token(entry.access_token)
        if token is None:
            return []
        return [(entry.access_token, token)]

    # Authorization codes

    @abstractmethod
    def set_authorization_code(self, code: str, data: AuthorizationCode, ttl_seconds: float) -> AuthorizationCode: ...

    @abstractmethod
    def get_authorization_code(self, code: str) -> AuthorizationCode | None: ...

    @abstractmethod
    def delete_authorization_code(self, code: str) -> bool: ...

    @abstractmethod
    def mark_authorization_code_used(self, code: str) -> bool:
        """
        Atomically flip used from False to True.
        Returns True only to the caller that performed the flip, False to everyone else.
        Raises NotFoundError for an unknown code and CodeExpiredError for an expired one.
        """

    # Maintenance and monitoring

    @abstractmethod
    def cleanup_expired(self) -> int:
        """Remove every expired entry; returns how many were removed."""

    @abstractmethod
    def get_stats(self) -> StorageStats: ...

    @abstractmethod
    def health_check(self) -> HealthCheckResult: ...
