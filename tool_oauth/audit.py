"""
Audit trail for security-relevant provider events. Append-only.

Entries never carry a raw access token, refresh token, authorization code, client secret
or PKCE verifier: identifiers are cut down with safe_id() and every details dict is
sanitised before it is buffered, written or handed to listeners.
GET /audit returns recent entries with optional filters.
"""
import json
import logging
import re
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable

from fastapi import APIRouter, Depends, Request

from tool_oauth.config import (
    AUDIT_BACKUP_COUNT,
    AUDIT_BUFFER_SIZE,
    AUDIT_ENABLED,
    AUDIT_EVENTS,
    AUDIT_LOG_FILE,
    AUDIT_MAX_BYTES,
)
from tool_oauth.models import SecurityContext

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("tool_oauth.audit")

EVENT_AUTHORIZATION_REQUESTED = "authorization.requested"
EVENT_AUTHORIZATION_GRANTED = "authorization.granted"
EVENT_AUTHORIZATION_DENIED = "authorization.denied"
EVENT_TOKEN_ISSUED = "token.issued"
EVENT_TOKEN_VALIDATION_SUCCESS = "token.validation.success"
EVENT_TOKEN_VALIDATION_FAILED = "token.validation.failed"
EVENT_TOKEN_REFRESHED = "token.refreshed"
EVENT_TOKEN_REVOKED = "token.revoked"
EVENT_CLIENT_REGISTERED = "client.registered"
EVENT_CLIENT_AUTH_FAILED = "client.authentication.failed"

RESULT_SUCCESS = "success"
RESULT_FAILURE = "failure"
RESULT_WARNING = "warning"

SAFE_ID_LENGTH = 8
REDACTED = "[REDACTED]"

# Values under these keys are identifiers: keep a short prefix only
_TRUNCATE_KEYS = {
    "token",
    "access_token",
    "refresh_token",
    "code",
    "authorization_code",
    "token_id",
    "code_id",
    "refresh_token_id",
    "new_token_id",
    "new_refresh_token_id",
}
# Values under these keys are never surfaced at all
_SECRET_KEYS = {
    "client_secret",
    "secret",
    "code_verifier",
    "verifier",
    "password",
    "api_key",
    "apikey",
    "key",
    "authorization",
}
# Long opaque strings (hex tokens, base64url verifiers) under any other key
_CREDENTIAL_PATTERN = re.compile(r"^(?:[A-Fa-f0-9]{32,}|[A-Za-z0-9._~\-]{43,})$")
# Values under these keys are identifiers the audit trail is keyed on: never masked
_PLAIN_KEYS = {"client_id", "ip_address", "redirect_uri", "redirect_uris", "scopes", "scope", "message"}


def get_client_ip(request: Request | None) -> str | None:
    """Client IP if available (request.client.host). Forwarding headers are not trusted."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


def safe_id(value: str | None) -> str:
    """First SAFE_ID_LENGTH characters plus an ellipsis."""
    if not value:
        return ""
    value = str(value)
    if value.endswith("...") and len(value) <= SAFE_ID_LENGTH + 3:
        return value
    return value[:SAFE_ID_LENGTH] + "..."


def _sanitize_value(key: str | None, value: Any) -> Any:
    normalized = (key or "").lower()
    if normalized in _SECRET_KEYS:
        return REDACTED
    if isinstance(value, dict):
        return {k: _sanitize_value(k, v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_sanitize_value(key if normalized in _PLAIN_KEYS else None, v) for v in value]
    if isinstance(value, str) and normalized not in _PLAIN_KEYS:
        if normalized in _TRUNCATE_KEYS or _CREDENTIAL_PATTERN.match(value):
            return safe_id(value)
    return value


def sanitize_details(details: dict | None) -> dict:
    """Copy of details with identifiers truncated and secrets removed."""
    if not details:
        return {}
    return {key: _sanitize_value(key, value) for key, value in details.items()}


@dataclass
class AuditEntry:
    timestamp: str
    event_type: str
    result: str
    client_id: str | None = None
    ip_address: str | None = None
    permissions: list[str] | None = None
    message: str | None = None
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, default=str)


class AuditLogger:
    """
    Records audit entries to the `tool_oauth.audit` logger, a bounded in-memory buffer
    and, when configured, a size-rotated JSONL file.
    """

    def __init__(
        self,
        *,
        enabled: bool = AUDIT_ENABLED,
        events: list[str] | None = None,
        log_file: str | None = AUDIT_LOG_FILE,
        max_bytes: int = AUDIT_MAX_BYTES,
        backup_count: int = AUDIT_BACKUP_COUNT,
        buffer_size: int = AUDIT_BUFFER_SIZE,
    ):
        self.enabled = enabled
        self.events = frozenset(AUDIT_EVENTS if events is None else events)
        self.log_file = log_file
        self._entries: deque[AuditEntry] = deque(maxlen=buffer_size)
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[AuditEntry], None]] = []
        self._file_handler: RotatingFileHandler | None = None
        if enabled and log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            self._file_handler = RotatingFileHandler(
                log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            )
            self._file_handler.setFormatter(logging.Formatter("%(message)s"))

    def on_log(self, callback: Callable[[AuditEntry], None]) -> None:
        """Register a listener called with every recorded entry."""
        self._callbacks.append(callback)

    def log(
        self,
        event_type: str,
        result: str,
        context: SecurityContext | None = None,
        details: dict | None = None,
    ) -> AuditEntry | None:
        """Append one entry. `message`, `client_id` and `ip_address` in details are lifted onto the entry."""
        if not self.enabled:
            return None
        if self.events and event_type not in self.events:
            return None

        clean = sanitize_details(details)
        entry = AuditEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            event_type=event_type,
            result=result,
            client_id=clean.pop("client_id", None) or (context.client_id if context else None),
            ip_address=clean.pop("ip_address", None) or (context.ip_address if context else None),
            permissions=sorted(context.permissions) if context else None,
            message=clean.pop("message", None),
            details=clean,
        )
        line = entry.to_json()
        with self._lock:
            self._entries.append(entry)
            if self._file_handler is not None:
                self._file_handler.handle(logging.makeLogRecord({"msg": line, "levelno": logging.INFO}))

        level = logging.INFO if result == RESULT_SUCCESS else logging.WARNING
        audit_logger.log(level, "%s", line)

        for callback in list(self._callbacks):
            try:
                callback(entry)
            except Exception:
                logger.exception("Audit listener failed for %s", event_type)
        return entry

    def recent(
        self,
        *,
        limit: int = 100,
        event_type: str | None = None,
        result: str | None = None,
        client_id: str | None = None,
    ) -> list[dict]:
        """Most recent first, optionally filtered."""
        with self._lock:
            entries = list(self._entries)
        rows = []
        for entry in reversed(entries):
            if event_type and entry.event_type != event_type:
                continue
            if result and entry.result != result:
                continue
            if client_id and entry.client_id != client_id:
                continue
            rows.append(entry.to_dict())
            if len(rows) >= limit:
                break
        return rows

    @property
    def entries(self) -> list[AuditEntry]:
        with self._lock:
            return list(self._entries)

    def close(self) -> None:
        if self._file_handler is not None:
            self._file_handler.close()
            self._file_handler = None


_audit_logger: AuditLogger | None = None


def get_audit_logger() -> AuditLogger:
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def reset_audit_logger() -> None:
    global _audit_logger
    if _audit_logger is not None:
        _audit_logger.close()
    _audit_logger = None


router = APIRouter(tags=["audit"])


@router.get("/audit")
def list_audit_logs(
    limit: int = 100,
    event_type: str | None = None,
    result: str | None = None,
    client_id: str | None = None,
    audit: AuditLogger = Depends(get_audit_logger),
):
    """Recent audit events, most recent first. Entries are already redacted."""
    return audit.recent(
        limit=min(max(1, limit), 500),
        event_type=event_type or None,
        result=result or None,
        client_id=client_id or None,
    )
