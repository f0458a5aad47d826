"""
Concurrent callers racing the same code or refresh token: exactly one wins.
"""
import threading

import pytest

from tool_oauth.audit import EVENT_TOKEN_ISSUED, RESULT_SUCCESS
from tool_oauth.errors import InvalidGrantError
from tool_oauth.models import AccessToken, AuthorizationCode, AuthorizationRequest
from tool_oauth.pkce import generate_pkce
from tool_oauth.provider import AuthorizationProvider, _KeyLocks

from conftest import REDIRECT_URI

THREADS = 16


def _race(target, count=THREADS):
    """Run target(i) in count threads released together; returns (results, errors)."""
    barrier = threading.Barrier(count)
    results, errors = [], []
    lock = threading.Lock()

    def run(i):
        barrier.wait()
        try:
            value = target(i)
        except Exception as exc:
            with lock:
                errors.append(exc)
        else:
            with lock:
                results.append(value)

    threads = [threading.Thread(target=run, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return results, errors


def test_mark_used_has_one_winner(store):
    store.set_authorization_code(
        "code-1",
        AuthorizationCode(code="", client_id="c1", redirect_uri=REDIRECT_URI, code_challenge="ch"),
        600,
    )
    results, errors = _race(lambda i: store.mark_authorization_code_used("code-1"))
    assert errors == []
    assert results.count(True) == 1
    assert results.count(False) == THREADS - 1


def test_concurrent_inserts_of_one_key(store):
    results, errors = _race(lambda i: store.set_token("tok", AccessToken(token="", client_id=f"c{i}"), 60))
    assert len(results) == 1
    assert len(errors) == THREADS - 1
    assert store.get_token("tok").client_id == results[0].client_id


@pytest.mark.parametrize("backend", ["memory", "sql"])
def test_code_exchange_race_issues_one_token(backend, memory_store, sql_store, audit):
    storage = memory_store if backend == "memory" else sql_store
    provider = AuthorizationProvider(storage, audit, bcrypt_rounds=4)
    provider.initialize()
    try:
        client = provider.register_client("c1", "secret", [REDIRECT_URI], ["tools:execute"])
        verifier, challenge = generate_pkce()
        response = provider.authorize(
            client,
            AuthorizationRequest(redirect_uri=REDIRECT_URI, code_challenge=challenge, scopes=["tools:execute"]),
        )
        results, errors = _race(lambda i: provider.exchange_authorization_code(client, response.code, verifier))
    finally:
        provider.close()

    assert len(results) == 1
    assert len(errors) == THREADS - 1
    assert all(isinstance(e, InvalidGrantError) for e in errors)
    issued = [e for e in audit.entries if e.event_type == EVENT_TOKEN_ISSUED and e.result == RESULT_SUCCESS]
    assert len(issued) == 1


def test_parallel_providers_share_one_store(memory_store, audit):
    """Two providers over one store: per-key locks differ, the store's atomic flip still decides."""
    first = AuthorizationProvider(memory_store, audit, bcrypt_rounds=4)
    second = AuthorizationProvider(memory_store, audit, bcrypt_rounds=4)
    client = first.register_client("c1", "secret", [REDIRECT_URI], [])
    verifier, challenge = generate_pkce()
    response = first.authorize(client, AuthorizationRequest(redirect_uri=REDIRECT_URI, code_challenge=challenge))
    providers = [first, second]
    results, errors = _race(lambda i: providers[i % 2].exchange_authorization_code(client, response.code, verifier))
    assert len(results) == 1
    assert all(isinstance(e, InvalidGrantError) for e in errors)


def test_refresh_rotation_race(provider, registered):
    verifier, challenge = generate_pkce()
    response = provider.authorize(
        registered, AuthorizationRequest(redirect_uri=REDIRECT_URI, code_challenge=challenge, scopes=["read"])
    )
    tokens = provider.exchange_authorization_code(registered, response.code, verifier)
    results, errors = _race(lambda i: provider.exchange_refresh_token(registered, tokens["refresh_token"]))
    assert len(results) == 1
    assert all(isinstance(e, InvalidGrantError) for e in errors)
    stats = provider.get_stats()
    assert stats["tokens"] == 1
    assert stats["refresh_tokens"] == 1


def test_key_locks_are_released():
    locks = _KeyLocks()
    counter = {"n": 0}

    def work(i):
        with locks.hold("k"):
            current = counter["n"]
            counter["n"] = current + 1

    results, errors = _race(work)
    assert errors == []
    assert counter["n"] == THREADS
    assert len(locks) == 0
