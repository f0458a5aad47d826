"""
Token endpoint (POST /token). authorization_code (PKCE required) and refresh_token grants.
Clients authenticate with HTTP Basic or client_id/client_secret form fields.
"""
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Form, HTTPException, Request, Response

from tool_oauth.audit import get_client_ip
from tool_oauth.client_auth import require_client_auth
from tool_oauth.errors import OAuthError, StorageUnavailableError
from tool_oauth.provider import AuthorizationProvider, get_provider

logger = logging.getLogger(__name__)
router = APIRouter()

NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _oauth_error(exc: OAuthError) -> HTTPException:
    headers = {"WWW-Authenticate": "Basic"} if exc.status_code == 401 else None
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict(), headers=headers)


def _unavailable() -> HTTPException:
    return HTTPException(
        status_code=503,
        detail={"error": "temporarily_unavailable", "error_description": "Storage unavailable, retry later"},
        headers={"Retry-After": "1"},
    )


@router.post("/token")
def token(
    request: Request,
    response: Response,
    provider: Annotated[AuthorizationProvider, Depends(get_provider)],
    grant_type: str = Form(...),
    code: str | None = Form(None),
    redirect_uri: str | None = Form(None),
    code_verifier: str | None = Form(None),
    refresh_token: str | None = Form(None),
    scope: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
):
    """
    authorization_code: exchange code + code_verifier for access_token and refresh_token.
    refresh_token: exchange refresh_token for a new access_token; the refresh token is rotated.
    """
    if grant_type not in ("authorization_code", "refresh_token"):
        raise HTTPException(
            status_code=400,
            detail={
                "error": "unsupported_grant_type",
                "error_description": "Only authorization_code and refresh_token are supported",
            },
        )

    try:
        client = require_client_auth(provider, request, client_id, client_secret)
    except StorageUnavailableError:
        raise _unavailable()

    ip_address = get_client_ip(request)
    try:
        if grant_type == "authorization_code":
            tokens = provider.exchange_authorization_code(
                client, code, code_verifier, redirect_uri=redirect_uri, ip_address=ip_address
            )
        else:
            tokens = provider.exchange_refresh_token(client, refresh_token, scopes=scope, ip_address=ip_address)
    except OAuthError as exc:
        raise _oauth_error(exc)
    except StorageUnavailableError:
        raise _unavailable()

    logger.debug("%s grant: tokens issued for client_id=%s", grant_type, client.client_id)
    response.headers.update(NO_STORE)
    return tokens
