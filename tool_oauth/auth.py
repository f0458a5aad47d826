"""
Bearer authentication for protected tool calls.
Resolves the access token to a SecurityContext and enforces permissions on it.
"""
import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from tool_oauth.audit import get_client_ip
from tool_oauth.errors import InvalidTokenError, StorageUnavailableError
from tool_oauth.models import SecurityContext
from tool_oauth.permissions import has_permission
from tool_oauth.provider import AuthorizationProvider, get_provider

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def get_bearer_token(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> str:
    """Extract Bearer token from Authorization header. Raises 401 if missing or not Bearer."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "invalid_request", "error_description": "Authorization header missing"},
            headers={"WWW-Authenticate": "Bearer"},
        )
    if credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "invalid_request", "error_description": "Bearer scheme required"},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return credentials.credentials


def get_security_context(
    request: Request,
    token: Annotated[str, Depends(get_bearer_token)],
    provider: Annotated[AuthorizationProvider, Depends(get_provider)],
) -> SecurityContext:
    """Dependency: valid Bearer token -> SecurityContext."""
    try:
        return provider.verify_access_token(token, ip_address=get_client_ip(request))
    except InvalidTokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.to_dict(),
            headers={"WWW-Authenticate": 'Bearer error="invalid_token"'},
        )
    except StorageUnavailableError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "temporarily_unavailable", "error_description": "Storage unavailable"},
            headers={"Retry-After": "1"},
        )


def require_permission(required: str):
    """Dependency factory: require the given permission in the caller's SecurityContext."""

    def _check(context: Annotated[SecurityContext, Depends(get_security_context)]) -> SecurityContext:
        if not has_permission(context, required):
            logger.debug("Permission %s denied for client %s", required, context.client_id)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "error": "insufficient_scope",
                    "error_description": f"Permission '{required}' required",
                },
            )
        return context

    return Depends(_check)
