"""
Seed an OAuth client from environment. No hardcoded credentials.
Set OAUTH_CLIENT_ID + OAUTH_CLIENT_SECRET + OAUTH_REDIRECT_URIS (comma-separated);
OAUTH_CLIENT_SCOPES is optional (space or comma separated).
"""
import logging
import os

from tool_oauth.errors import AlreadyExistsError
from tool_oauth.models import Client
from tool_oauth.provider import AuthorizationProvider

logger = logging.getLogger(__name__)


def seed_from_env(provider: AuthorizationProvider) -> Client | None:
    """Register one client from env if set and not already registered."""
    client_id = os.environ.get("OAUTH_CLIENT_ID")
    client_secret = os.environ.get("OAUTH_CLIENT_SECRET")
    redirect_uris_str = os.environ.get("OAUTH_REDIRECT_URIS") or os.environ.get("OAUTH_REDIRECT_URI")
    if not client_id or not client_secret or not redirect_uris_str:
        return None

    uris = [u.strip() for u in redirect_uris_str.split(",") if u.strip()]
    scopes = os.environ.get("OAUTH_CLIENT_SCOPES", "").replace(",", " ")
    if not uris:
        return None
    if provider.get_client(client_id) is not None:
        logger.debug("Client already exists: %s", client_id)
        return None
    try:
        client = provider.register_client(client_id, client_secret, uris, scopes)
    except AlreadyExistsError:
        logger.debug("Client already exists: %s", client_id)
        return None
    logger.info("Seeded client: %s (scopes=%s)", client_id, " ".join(client.allowed_scopes) or "none")
    return client
