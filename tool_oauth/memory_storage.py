"""
In-memory reference store. Single process; data is lost on restart.

One reentrant lock guards every map, so read-then-write sequences (code consumption,
expiry check then delete) are atomic across request threads. Expiry is tracked in a
single min-heap swept by the base class sweeper; reads also drop expired entries eagerly.
"""
import heapq
import logging
import threading
import time
from dataclasses import replace

from tool_oauth.audit import safe_id
from tool_oauth.errors import AlreadyExistsError, CodeExpiredError, NotFoundError
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

TOKENS = "token"
REFRESH_TOKENS = "refresh_token"
CODES = "authorization_code"

# Field holding the entry's own key, per table
_KEY_FIELDS = {TOKENS: "token", REFRESH_TOKENS: "token", CODES: "code"}


class InMemoryStorage(StorageProvider):
    name = "memory"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._lock = threading.RLock()
        self._clients: dict[str, Client] = {}
        self._tables: dict[str, dict] = {TOKENS: {}, REFRESH_TOKENS: {}, CODES: {}}
        self._expiry_heap: list[tuple[int, str, str]] = []

    def _on_connect(self) -> None:
        with self._lock:
            self._expiry_heap = [
                (entry.expires_at, kind, key)
                for kind, table in self._tables.items()
                for key, entry in table.items()
            ]
            heapq.heapify(self._expiry_heap)

    def _on_disconnect(self) -> None:
        with self._lock:
            self._expiry_heap.clear()

    # Generic keyed entries with TTL

    def _put(self, kind: str, key: str, value, ttl_seconds: float):
        table = self._tables[kind]
        with self._lock:
            now = self.now()
            current = table.get(key)
            if current is not None and not is_expired(current.expires_at, now):
                raise AlreadyExistsError(f"{kind} already exists: {safe_id(key)}")
            stored = replace(value, **{_KEY_FIELDS[kind]: key}, expires_at=expiry_from_ttl(now, ttl_seconds))
            table[key] = stored
            heapq.heappush(self._expiry_heap, (stored.expires_at, kind, key))
        logger.debug("Stored %s %s (ttl %ss)", kind, safe_id(key), ttl_seconds)
        return stored

    def _get(self, kind: str, key: str):
        table = self._tables[kind]
        with self._lock:
            entry = table.get(key)
            if entry is None:
                return None
            if is_expired(entry.expires_at, self.now()):
                del table[key]
                logger.debug("Dropped expired %s %s on read", kind, safe_id(key))
                return None
            return entry

    def _delete(self, kind: str, key: str) -> bool:
        with self._lock:
            entry = self._tables[kind].pop(key, None)
            return entry is not None and not is_expired(entry.expires_at, self.now())

    def _delete_by_client(self, kind: str, client_id: str) -> int:
        table = self._tables[kind]
        with self._lock:
            keys = [key for key, entry in table.items() if entry.client_id == client_id]
            for key in keys:
                del table[key]
        return len(keys)

    # Clients

    def set_client(self, client_id: str, client: Client) -> Client:
        with self._lock:
            if client_id in self._clients:
                raise AlreadyExistsError(f"Client already exists: {client_id}")
            stored = replace(client, client_id=client_id)
            self._clients[client_id] = stored
        return stored

    def get_client(self, client_id: str) -> Client | None:
        with self._lock:
            return self._clients.get(client_id)

    def delete_client(self, client_id: str) -> bool:
        with self._lock:
            return self._clients.pop(client_id, None) is not None

    def list_clients(self) -> list[str]:
        with self._lock:
            return list(self._clients)

    # Access tokens

    def set_token(self, token: str, data: AccessToken, ttl_seconds: float) -> AccessToken:
        return self._put(TOKENS, token, data, ttl_seconds)

    def get_token(self, token: str) -> AccessToken | None:
        return self._get(TOKENS, token)

    def delete_token(self, token: str) -> bool:
        return self._delete(TOKENS, token)

    def delete_tokens_by_client(self, client_id: str) -> int:
        return self._delete_by_client(TOKENS, client_id)

    # Refresh tokens

    def set_refresh_token(self, refresh_token: str, data: RefreshToken, ttl_seconds: float) -> RefreshToken:
        return self._put(REFRESH_TOKENS, refresh_token, data, ttl_seconds)

    def get_refresh_token(self, refresh_token: str) -> RefreshToken | None:
        return self._get(REFRESH_TOKENS, refresh_token)

    def delete_refresh_token(self, refresh_token: str) -> bool:
        return self._delete(REFRESH_TOKENS, refresh_token)

    def delete_refresh_tokens_by_client(self, client_id: str) -> int:
        return self._delete_by_client(REFRESH_TOKENS, client_id)

    # Authorization codes

    def set_authorization_code(self, code: str, data: AuthorizationCode, ttl_seconds: float) -> AuthorizationCode:
        return self._put(CODES, code, data, ttl_seconds)

    def get_authorization_code(self, code: str) -> AuthorizationCode | None:
        return self._get(CODES, code)

    def delete_authorization_code(self, code: str) -> bool:
        return self._delete(CODES, code)

    def mark_authorization_code_used(self, code: str) -> bool:
        codes = self._tables[CODES]
        with self._lock:
            entry = codes.get(code)
            if entry is None:
                raise NotFoundError(f"Authorization code not found: {safe_id(code)}")
            if is_expired(entry.expires_at, self.now()):
                del codes[code]
                raise CodeExpiredError(f"Authorization code expired: {safe_id(code)}")
            if entry.used:
                return False
            codes[code] = replace(entry, used=True)
            return True

    # Transactions

    def _apply_batch(self, operations: list[tuple[str, tuple]]) -> list:
        # Not all-or-nothing: a failing write leaves the writes before it applied.
        results = []
        with self._lock:
            for operation, args in operations:
                results.append(getattr(self, operation)(*args))
        return results

    # Maintenance and monitoring

    def cleanup_expired(self) -> int:
        removed = 0
        with self._lock:
            now = self.now()
            heap = self._expiry_heap
            while heap and is_expired(heap[0][0], now):
                expires_at, kind, key = heapq.heappop(heap)
                table = self._tables[kind]
                entry = table.get(key)
                # Skip heap entries superseded by a later write of the same key
                if entry is not None and entry.expires_at == expires_at:
                    del table[key]
                    removed += 1
        return removed

    @property
    def scheduled_expiries(self) -> int:
        with self._lock:
            return len(self._expiry_heap)

    def _live_count(self, kind: str, now: int) -> int:
        return sum(1 for entry in self._tables[kind].values() if not is_expired(entry.expires_at, now))

    def get_stats(self) -> StorageStats:
        # Never wait on a busy store; fall back to raw sizes, which may include expired entries.
        if not self._lock.acquire(blocking=False):
            return StorageStats(
                token_count=len(self._tables[TOKENS]),
                refresh_token_count=len(self._tables[REFRESH_TOKENS]),
                authorization_code_count=len(self._tables[CODES]),
                client_count=len(self._clients),
                approximate=True,
            )
        try:
            now = self.now()
            return StorageStats(
                token_count=self._live_count(TOKENS, now),
                refresh_token_count=self._live_count(REFRESH_TOKENS, now),
                authorization_code_count=self._live_count(CODES, now),
                client_count=len(self._clients),
            )
        finally:
            self._lock.release()

    def health_check(self) -> HealthCheckResult:
        start = time.perf_counter()
        stats = self.get_stats()
        healthy = self.connected
        return HealthCheckResult(
            healthy=healthy,
            message="In-memory storage is operational" if healthy else "In-memory storage is disconnected",
            response_time_ms=(time.perf_counter() - start) * 1000,
            timestamp=self.now(),
            components={
                "memory": {
                    "healthy": True,
                    "message": f"{stats.token_count} tokens, {stats.authorization_code_count} codes",
                }
            },
        )
