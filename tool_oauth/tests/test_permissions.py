"""Tests for scope -> permission mapping and permission checks."""
import pytest

from tool_oauth.errors import InsufficientPermissionError
from tool_oauth.models import SecurityContext
from tool_oauth.permissions import check_permission, has_permission, map_scopes_to_permissions


def _context(*permissions, authenticated=True):
    return SecurityContext(authenticated=authenticated, permissions=frozenset(permissions))


@pytest.mark.parametrize(
    "scope,permission",
    [
        ("read", "read:*"),
        ("write", "write:*"),
        ("tools:execute", "tools:*"),
        ("resources:read", "resources:*"),
        ("prompts:read", "prompts:*"),
        ("admin", "*"),
        ("custom:thing", "custom:thing"),
    ],
)
def test_scope_table(scope, permission):
    assert map_scopes_to_permissions([scope]) == {permission}


def test_empty_scopes_grant_nothing():
    assert map_scopes_to_permissions([]) == frozenset()


def test_prefix_wildcard():
    ctx = _context("tools:*")
    assert has_permission(ctx, "tools:my-tool")
    assert not has_permission(ctx, "resources:x")
    assert not has_permission(ctx, "tools")


def test_exact_and_full_access():
    assert has_permission(_context("resources:x"), "resources:x")
    assert not has_permission(_context("resources:x"), "resources:y")
    assert has_permission(_context("*"), "anything:at-all")


def test_wildcard_is_single_level_prefix_only():
    ctx = _context("tools:sub:*")
    assert not has_permission(ctx, "tools:sub:x")
    assert has_permission(_context("tools:*"), "tools:sub:x")


def test_unauthenticated_context_has_nothing():
    assert not has_permission(_context("*", authenticated=False), "read:x")
    assert not has_permission(None, "read:x")


def test_check_permission_raises_403_error():
    with pytest.raises(InsufficientPermissionError) as exc_info:
        check_permission(_context("read:*"), "write:doc")
    assert exc_info.value.status_code == 403
    assert exc_info.value.error == "insufficient_scope"
    check_permission(_context("read:*"), "read:doc")
