"""
Provider configuration. Values come from the environment; no secrets in this file.
"""
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> list[str]:
    raw = os.environ.get(name, "")
    return [item.strip() for item in raw.replace(",", " ").split() if item.strip()]


# Issuer URL (public identifier, used in the metadata document)
ISSUER = os.environ.get("OAUTH_ISSUER", "http://127.0.0.1:9000").rstrip("/")

# Authorization code lifetime (seconds)
CODE_TTL_SECONDS = int(os.environ.get("OAUTH_CODE_TTL", "600"))

# Access token lifetime (seconds)
ACCESS_TOKEN_EXPIRES = int(os.environ.get("OAUTH_ACCESS_TOKEN_TTL", "3600"))

# Refresh token lifetime (seconds)
REFRESH_TOKEN_EXPIRES = int(os.environ.get("OAUTH_REFRESH_TOKEN_TTL", "86400"))

# Refresh tokens are single-use and replaced on every refresh unless disabled
ROTATE_REFRESH_TOKENS = _env_bool("OAUTH_ROTATE_REFRESH_TOKENS", True)

# Reject authorization requests with an empty scope list
REQUIRE_SCOPE = _env_bool("OAUTH_REQUIRE_SCOPE", False)

# Background expiry sweep period (seconds)
SWEEP_INTERVAL_SECONDS = float(os.environ.get("OAUTH_SWEEP_INTERVAL", "60"))

# Storage backend: "memory" (reference, single process) or "sql"
STORAGE_BACKEND = os.environ.get("OAUTH_STORAGE_BACKEND", "memory").strip().lower()

# SQL backend database (SQLite by default)
DATABASE_URL = os.environ.get("OAUTH_DATABASE_URL", "sqlite:///./tool_oauth.db")

# bcrypt cost for client secrets
BCRYPT_ROUNDS = int(os.environ.get("OAUTH_BCRYPT_ROUNDS", "12"))

# Scopes advertised in the metadata document
SUPPORTED_SCOPES = _env_list("OAUTH_SUPPORTED_SCOPES") or [
    "read",
    "write",
    "tools:execute",
    "resources:read",
    "prompts:read",
    "admin",
]

# Audit trail
AUDIT_ENABLED = _env_bool("OAUTH_AUDIT_ENABLED", True)
AUDIT_LOG_FILE = os.environ.get("OAUTH_AUDIT_LOG_FILE", "").strip() or None
AUDIT_MAX_BYTES = int(os.environ.get("OAUTH_AUDIT_MAX_BYTES", str(10 * 1024 * 1024)))
AUDIT_BACKUP_COUNT = int(os.environ.get("OAUTH_AUDIT_BACKUP_COUNT", "5"))
AUDIT_BUFFER_SIZE = int(os.environ.get("OAUTH_AUDIT_BUFFER_SIZE", "1000"))
# Empty = record every event type
AUDIT_EVENTS = _env_list("OAUTH_AUDIT_EVENTS")
