"""
Pytest configuration for tool_oauth. In-memory stores and SQLite so tests don't touch the filesystem.
"""
import os

# Keep env-configured clients and audit files out of tests
for _name in ("OAUTH_CLIENT_ID", "OAUTH_CLIENT_SECRET", "OAUTH_REDIRECT_URIS", "OAUTH_AUDIT_LOG_FILE"):
    os.environ.pop(_name, None)
os.environ["OAUTH_DATABASE_URL"] = "sqlite:///:memory:"

import pytest

from tool_oauth.audit import AuditLogger
from tool_oauth.memory_storage import InMemoryStorage
from tool_oauth.provider import AuthorizationProvider
from tool_oauth.sql_storage import SQLStorage

CLIENT_ID = "c1"
CLIENT_SECRET = "c1-secret-value"
REDIRECT_URI = "http://127.0.0.1:8000/callback"


class FakeClock:
    """Millisecond clock moved by hand."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float = 0, ms: int = 0) -> None:
        self.now += int(seconds * 1000) + ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    store = InMemoryStorage(clock=clock, sweep_interval=0)
    yield store
    store.disconnect()


@pytest.fixture
def sql_store(clock):
    store = SQLStorage("sqlite:///:memory:", clock=clock, sweep_interval=0)
    yield store
    store.disconnect()
    store.engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def store(request, clock):
    """Both backends, for contract tests."""
    if request.param == "memory":
        store = InMemoryStorage(clock=clock, sweep_interval=0)
    else:
        store = SQLStorage("sqlite:///:memory:", clock=clock, sweep_interval=0)
    yield store
    store.disconnect()


@pytest.fixture
def audit():
    return AuditLogger(enabled=True, events=[], log_file=None)


@pytest.fixture
def provider(memory_store, audit):
    p = AuthorizationProvider(memory_store, audit, bcrypt_rounds=4)
    p.initialize()
    yield p
    p.close()


@pytest.fixture
def registered(provider):
    """Client c1 allowed read and tools:execute."""
    return provider.register_client(CLIENT_ID, CLIENT_SECRET, [REDIRECT_URI], ["read", "tools:execute"])


def events(audit_logger: AuditLogger) -> list[str]:
    return [entry.event_type for entry in audit_logger.entries]
