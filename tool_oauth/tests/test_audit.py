"""
Tests for the audit trail. No tokens, codes, secrets or verifiers in audit records.
"""
import json
import logging

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from tool_oauth.audit import (
    EVENT_TOKEN_ISSUED,
    EVENT_TOKEN_REVOKED,
    REDACTED,
    RESULT_FAILURE,
    RESULT_SUCCESS,
    AuditLogger,
    get_audit_logger,
    router,
    safe_id,
    sanitize_details,
)
from tool_oauth.errors import InvalidClientError, InvalidGrantError
from tool_oauth.models import AuthorizationRequest
from tool_oauth.pkce import generate_pkce

from conftest import CLIENT_SECRET, REDIRECT_URI


def test_safe_id_truncates_and_is_idempotent():
    token = "a" * 64
    assert safe_id(token) == "aaaaaaaa..."
    assert safe_id(safe_id(token)) == "aaaaaaaa..."
    assert safe_id(None) == ""


def test_sanitize_details_truncates_and_redacts():
    raw = {
        "access_token": "0123456789abcdef" * 4,
        "code": "short-code-value",
        "client_secret": "hunter2",
        "code_verifier": "v" * 43,
        "nested": {"refresh_token": "r" * 40, "password": "pw"},
        "free_text": "f" * 64,
        "scopes": ["read", "tools:execute"],
        "expires_in": 3600,
    }
    clean = sanitize_details(raw)
    assert clean["access_token"] == "01234567..."
    assert clean["code"] == "short-co..."
    assert clean["client_secret"] == REDACTED
    assert clean["code_verifier"] == REDACTED
    assert clean["nested"] == {"refresh_token": "rrrrrrrr...", "password": REDACTED}
    assert clean["free_text"] == "ffffffff..."
    assert clean["scopes"] == ["read", "tools:execute"]
    assert clean["expires_in"] == 3600
    assert raw["client_secret"] == "hunter2"


def test_log_lifts_message_and_client(audit):
    entry = audit.log(
        EVENT_TOKEN_ISSUED,
        RESULT_FAILURE,
        details={"client_id": "c1", "ip_address": "10.0.0.1", "message": "bad code", "code_id": "x" * 40},
    )
    assert entry.client_id == "c1"
    assert entry.ip_address == "10.0.0.1"
    assert entry.message == "bad code"
    assert entry.details == {"code_id": "xxxxxxxx..."}


def test_disabled_and_filtered_logger():
    assert AuditLogger(enabled=False, log_file=None).log(EVENT_TOKEN_ISSUED, RESULT_SUCCESS) is None
    only_revoked = AuditLogger(enabled=True, events=[EVENT_TOKEN_REVOKED], log_file=None)
    assert only_revoked.log(EVENT_TOKEN_ISSUED, RESULT_SUCCESS) is None
    assert only_revoked.log(EVENT_TOKEN_REVOKED, RESULT_SUCCESS) is not None
    assert len(only_revoked.entries) == 1


def test_recent_filters_most_recent_first(audit):
    audit.log(EVENT_TOKEN_ISSUED, RESULT_SUCCESS, details={"client_id": "c1"})
    audit.log(EVENT_TOKEN_ISSUED, RESULT_FAILURE, details={"client_id": "c2"})
    audit.log(EVENT_TOKEN_REVOKED, RESULT_SUCCESS, details={"client_id": "c1"})
    rows = audit.recent()
    assert [r["event_type"] for r in rows] == [EVENT_TOKEN_REVOKED, EVENT_TOKEN_ISSUED, EVENT_TOKEN_ISSUED]
    assert [r["client_id"] for r in audit.recent(client_id="c1")] == ["c1", "c1"]
    assert len(audit.recent(result=RESULT_FAILURE)) == 1
    assert len(audit.recent(limit=1)) == 1


def test_buffer_is_bounded():
    audit = AuditLogger(enabled=True, events=[], log_file=None, buffer_size=2)
    for _ in range(5):
        audit.log(EVENT_TOKEN_ISSUED, RESULT_SUCCESS)
    assert len(audit.entries) == 2


def test_listener_failures_are_contained(audit, caplog):
    seen = []

    def broken(entry):
        raise RuntimeError("listener down")

    audit.on_log(broken)
    audit.on_log(seen.append)
    with caplog.at_level(logging.ERROR, logger="tool_oauth.audit"):
        audit.log(EVENT_TOKEN_ISSUED, RESULT_SUCCESS)
    assert len(seen) == 1
    assert "Audit listener failed" in caplog.text


def test_file_sink_rotates(tmp_path):
    log_file = tmp_path / "audit" / "audit.jsonl"
    audit = AuditLogger(enabled=True, events=[], log_file=str(log_file), max_bytes=400, backup_count=2)
    try:
        for i in range(20):
            audit.log(EVENT_TOKEN_ISSUED, RESULT_SUCCESS, details={"client_id": f"c{i}", "token": "t" * 64})
    finally:
        audit.close()
    assert log_file.exists()
    assert (tmp_path / "audit" / "audit.jsonl.1").exists()
    for line in log_file.read_text().splitlines():
        record = json.loads(line)
        assert record["details"]["token"] == "tttttttt..."


def test_full_cycle_never_leaks_credentials(provider, registered, audit, caplog):
    """authorize -> exchange -> refresh -> revoke; no raw credential in any serialized entry."""
    verifier, challenge = generate_pkce()
    with caplog.at_level(logging.DEBUG):
        response = provider.authorize(
            registered,
            AuthorizationRequest(redirect_uri=REDIRECT_URI, code_challenge=challenge, scopes=["read"]),
        )
        tokens = provider.exchange_authorization_code(registered, response.code, verifier)
        with pytest.raises(InvalidGrantError):
            provider.exchange_authorization_code(registered, response.code, verifier)
        provider.verify_access_token(tokens["access_token"])
        refreshed = provider.exchange_refresh_token(registered, tokens["refresh_token"])
        provider.revoke_token(registered, refreshed["access_token"])
        provider.authenticate_client(registered.client_id, CLIENT_SECRET)
        with pytest.raises(InvalidClientError):
            provider.authenticate_client(registered.client_id, CLIENT_SECRET + "-wrong")

    secrets_seen = [
        response.code,
        verifier,
        CLIENT_SECRET,
        tokens["access_token"],
        tokens["refresh_token"],
        refreshed["access_token"],
        refreshed["refresh_token"],
    ]
    serialized = "\n".join(entry.to_json() for entry in audit.entries)
    for secret in secrets_seen:
        assert secret not in serialized
        assert secret not in caplog.text


def test_long_client_ids_stay_attributable(provider, audit):
    client_id = "0123456789abcdef" * 2
    client = provider.register_client(client_id, "hex-client-secret", [REDIRECT_URI], ["read"])
    _, challenge = generate_pkce()
    provider.authorize(client, AuthorizationRequest(redirect_uri=REDIRECT_URI, code_challenge=challenge, scopes=["read"]))

    assert {entry.client_id for entry in audit.entries} == {client_id}
    assert len(audit.recent(client_id=client_id)) == 3

    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_audit_logger] = lambda: audit
    r = TestClient(app).get("/audit", params={"client_id": client_id})
    assert r.status_code == 200
    assert [row["client_id"] for row in r.json()] == [client_id] * 3


def test_verifier_alphabet_is_masked_under_any_key():
    verifier = "abc.def~ghi_jkl-" * 3
    clean = sanitize_details({"note": verifier, "redirect_uri": REDIRECT_URI})
    assert clean["note"] == "abc.def~..."
    assert clean["redirect_uri"] == REDIRECT_URI


def test_audit_endpoint_returns_redacted_entries(audit):
    audit.log(EVENT_TOKEN_ISSUED, RESULT_SUCCESS, details={"client_id": "c1", "token": "z" * 64})
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_audit_logger] = lambda: audit
    r = TestClient(app).get("/audit", params={"event_type": EVENT_TOKEN_ISSUED})
    assert r.status_code == 200
    data = r.json()
    assert len(data) == 1
    assert data[0]["details"]["token"] == "zzzzzzzz..."
