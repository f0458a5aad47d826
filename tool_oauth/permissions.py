"""
OAuth scopes -> internal permissions, and the permission check applied on every protected call.
"""
from typing import Iterable

from tool_oauth.errors import InsufficientPermissionError
from tool_oauth.models import SecurityContext

FULL_ACCESS = "*"

SCOPE_PERMISSIONS = {
    "read": "read:*",
    "write": "write:*",
    "tools:execute": "tools:*",
    "resources:read": "resources:*",
    "prompts:read": "prompts:*",
    "admin": FULL_ACCESS,
}


def map_scopes_to_permissions(scopes: Iterable[str]) -> frozenset[str]:
    """Known scopes map through SCOPE_PERMISSIONS; anything else passes through unchanged."""
    return frozenset(SCOPE_PERMISSIONS.get(scope, scope) for scope in scopes if scope)


def has_permission(context: SecurityContext | None, required: str) -> bool:
    """
    True if the context holds `required` verbatim, holds "*", or holds "<prefix>:*"
    where required starts with "<prefix>:". Only that single-level wildcard is honoured.
    """
    if context is None or not context.authenticated:
        return False
    permissions = context.permissions
    if required in permissions or FULL_ACCESS in permissions:
        return True
    prefix, sep, _ = required.partition(":")
    return bool(sep) and f"{prefix}:*" in permissions


def check_permission(context: SecurityContext | None, required: str) -> None:
    if not has_permission(context, required):
        raise InsufficientPermissionError(f"Permission '{required}' required")
