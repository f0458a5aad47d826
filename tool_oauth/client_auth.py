"""
Client secrets and client authentication (RFC 6749 §2.3.1).
Secrets are stored as bcrypt hashes; credentials arrive via Authorization: Basic or form fields.
"""
import base64
import binascii
import logging

import bcrypt
from fastapi import HTTPException, Request

from tool_oauth.audit import get_client_ip
from tool_oauth.config import BCRYPT_ROUNDS
from tool_oauth.errors import InvalidClientError

logger = logging.getLogger(__name__)


def hash_secret(secret: str, rounds: int = BCRYPT_ROUNDS) -> str:
    # Bcrypt has a 72-byte limit
    raw = secret.encode("utf-8")[:72]
    return bcrypt.hashpw(raw, bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_secret(secret: str | None, hashed: str | None) -> bool:
    """Constant-time check of a client secret against its bcrypt hash."""
    if not secret or not hashed:
        return False
    try:
        return bcrypt.checkpw(secret.encode("utf-8")[:72], hashed.encode("utf-8"))
    except ValueError:
        logger.warning("Stored client secret hash is not a valid bcrypt hash")
        return False


def _parse_basic(header_value: str) -> tuple[str, str] | None:
    """Parse 'Basic <base64(client_id:client_secret)>'. Returns (client_id, client_secret) or None."""
    if not header_value or not header_value.strip().lower().startswith("basic "):
        return None
    try:
        decoded = base64.b64decode(header_value.strip()[6:].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    if ":" not in decoded:
        return None
    client_id, _, client_secret = decoded.partition(":")
    return client_id.strip(), client_secret


def get_client_credentials_from_request(
    request: Request,
    client_id_form: str | None,
    client_secret_form: str | None,
) -> tuple[str | None, str | None]:
    """
    (client_id, client_secret) from form fields or Authorization Basic.
    Form takes precedence when it carries both values.
    """
    if client_id_form and client_secret_form is not None:
        return client_id_form.strip(), client_secret_form
    auth_header = request.headers.get("Authorization")
    basic = _parse_basic(auth_header) if auth_header else None
    if basic:
        return basic
    if client_id_form:
        return client_id_form.strip(), client_secret_form
    return None, None


def require_client_auth(provider, request: Request, client_id_form: str | None, client_secret_form: str | None):
    """Resolve and authenticate the calling client or raise 401 invalid_client."""
    client_id, client_secret = get_client_credentials_from_request(request, client_id_form, client_secret_form)
    if not client_id:
        raise HTTPException(
            status_code=401,
            detail={"error": "invalid_client", "error_description": "client_id is required"},
            headers={"WWW-Authenticate": "Basic"},
        )
    try:
        return provider.authenticate_client(client_id, client_secret, ip_address=get_client_ip(request))
    except InvalidClientError as exc:
        raise HTTPException(status_code=401, detail=exc.to_dict(), headers={"WWW-Authenticate": "Basic"})

