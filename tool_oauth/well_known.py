"""
Authorization server metadata (RFC 8414).
"""
from fastapi import APIRouter

from tool_oauth.config import ISSUER, SUPPORTED_SCOPES

router = APIRouter()


@router.get("/.well-known/oauth-authorization-server")
def authorization_server_metadata():
    """Discovery document for OAuth clients."""
    return {
        "issuer": ISSUER,
        "authorization_endpoint": f"{ISSUER}/authorize",
        "token_endpoint": f"{ISSUER}/token",
        "revocation_endpoint": f"{ISSUER}/revoke",
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code", "refresh_token"],
        "scopes_supported": SUPPORTED_SCOPES,
        "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post"],
        "revocation_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post"],
        "code_challenge_methods_supported": ["S256"],
    }
