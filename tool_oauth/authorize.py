"""
Authorization endpoint (GET/POST /authorize).
Issues a code bound to the PKCE challenge and redirects to the registered redirect_uri.
Unknown clients and unregistered redirect URIs get a 400; we never redirect to an unverified URI.
"""
import logging
from typing import Annotated
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, HTTPException, Request
from fastapi.responses import RedirectResponse

from tool_oauth.audit import EVENT_AUTHORIZATION_DENIED, RESULT_FAILURE, get_client_ip
from tool_oauth.errors import InvalidRedirectUriError, OAuthError, StorageUnavailableError
from tool_oauth.models import AuthorizationRequest
from tool_oauth.pkce import S256
from tool_oauth.provider import AuthorizationProvider, get_provider

logger = logging.getLogger(__name__)
router = APIRouter()


def _redirect_error(redirect_uri: str, error: str, error_description: str, state: str | None) -> RedirectResponse:
    params = {"error": error, "error_description": error_description}
    if state:
        params["state"] = state
    separator = "&" if "?" in redirect_uri else "?"
    return RedirectResponse(url=f"{redirect_uri}{separator}{urlencode(params)}", status_code=302)


def _authorize(
    provider: AuthorizationProvider,
    request: Request,
    response_type: str | None,
    client_id: str | None,
    redirect_uri: str | None,
    scope: str | None,
    state: str | None,
    code_challenge: str | None,
    code_challenge_method: str | None,
):
    ip_address = get_client_ip(request)
    if not client_id or not redirect_uri:
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_request", "error_description": "client_id and redirect_uri are required"},
        )

    try:
        client = provider.get_client(client_id)
    except StorageUnavailableError:
        raise HTTPException(
            status_code=503,
            detail={"error": "temporarily_unavailable", "error_description": "Storage unavailable"},
            headers={"Retry-After": "1"},
        )
    if client is None:
        provider.audit.log(
            EVENT_AUTHORIZATION_DENIED,
            RESULT_FAILURE,
            details={"client_id": client_id, "ip_address": ip_address, "message": "Unknown client_id"},
        )
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_client", "error_description": "Unknown client_id"},
        )

    if response_type != "code" and client.redirect_uri_allowed(redirect_uri):
        provider.audit.log(
            EVENT_AUTHORIZATION_DENIED,
            RESULT_FAILURE,
            details={"client_id": client_id, "ip_address": ip_address, "message": "Unsupported response_type"},
        )
        return _redirect_error(redirect_uri, "unsupported_response_type", "response_type must be 'code'", state)

    auth_request = AuthorizationRequest(
        redirect_uri=redirect_uri,
        code_challenge=code_challenge or "",
        code_challenge_method=code_challenge_method or S256,
        scopes=scope,
        state=state,
    )
    try:
        response = provider.authorize(client, auth_request, ip_address=ip_address)
    except InvalidRedirectUriError as exc:
        raise HTTPException(status_code=400, detail=exc.to_dict())
    except OAuthError as exc:
        return _redirect_error(redirect_uri, exc.error, exc.description, state)
    except StorageUnavailableError:
        return _redirect_error(redirect_uri, "temporarily_unavailable", "Storage unavailable", state)

    return RedirectResponse(url=response.redirect_url(), status_code=302)


@router.get("/authorize")
def authorize_get(
    request: Request,
    provider: Annotated[AuthorizationProvider, Depends(get_provider)],
    response_type: str | None = None,
    client_id: str | None = None,
    redirect_uri: str | None = None,
    scope: str | None = None,
    state: str | None = None,
    code_challenge: str | None = None,
    code_challenge_method: str | None = None,
):
    """
    OAuth2 authorization endpoint (GET).
    Exact redirect_uri match, response_type=code, PKCE S256 required.
    """
    return _authorize(
        provider, request, response_type, client_id, redirect_uri, scope, state, code_challenge, code_challenge_method
    )


@router.post("/authorize")
def authorize_post(
    request: Request,
    provider: Annotated[AuthorizationProvider, Depends(get_provider)],
    response_type: str | None = Form(None),
    client_id: str | None = Form(None),
    redirect_uri: str | None = Form(None),
    scope: str | None = Form(None),
    state: str | None = Form(None),
    code_challenge: str | None = Form(None),
    code_challenge_method: str | None = Form(None),
):
    """Same as GET with form-encoded parameters."""
    return _authorize(
        provider, request, response_type, client_id, redirect_uri, scope, state, code_challenge, code_challenge_method
    )
