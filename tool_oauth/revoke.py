"""
Token revocation endpoint (POST /revoke). RFC 7009.
Removes an access or refresh token and its paired credential. Clients must authenticate.
"""
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Form, HTTPException, Request

from tool_oauth.audit import get_client_ip
from tool_oauth.client_auth import require_client_auth
from tool_oauth.errors import StorageUnavailableError
from tool_oauth.provider import AuthorizationProvider, get_provider

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/revoke")
def revoke(
    request: Request,
    provider: Annotated[AuthorizationProvider, Depends(get_provider)],
    token: str = Form(...),
    token_type_hint: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
):
    """
    RFC 7009: always return 200 for an authenticated client (even if token unknown or
    owned by another client) to avoid leaking information.
    """
    if not token or not token.strip():
        raise HTTPException(status_code=400, detail={"error": "invalid_request", "error_description": "token is required"})

    hint = (token_type_hint or "").strip().lower() or None
    try:
        client = require_client_auth(provider, request, client_id, client_secret)
        removed = provider.revoke_token(client, token.strip(), token_type_hint=hint, ip_address=get_client_ip(request))
    except StorageUnavailableError:
        raise HTTPException(
            status_code=503,
            detail={"error": "temporarily_unavailable", "error_description": "Storage unavailable, retry later"},
            headers={"Retry-After": "1"},
        )
    logger.debug("Revocation for client_id=%s removed %s", client.client_id, removed or "nothing")
    return {}
