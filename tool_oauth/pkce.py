"""
PKCE (RFC 7636), S256 only.
Server side verifies a verifier against the stored challenge; the generators serve clients and tests.
"""
import hashlib
import hmac
import secrets
from base64 import urlsafe_b64encode

S256 = "S256"


def compute_code_challenge(code_verifier: str) -> str:
    """BASE64URL(SHA256(verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_code_challenge(code_verifier: str, code_challenge: str, method: str = S256) -> bool:
    """Constant-time comparison of the recomputed challenge."""
    if method != S256 or not code_verifier or not code_challenge:
        return False
    try:
        computed = compute_code_challenge(code_verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(computed.encode("ascii"), code_challenge.encode("utf-8"))


def generate_pkce() -> tuple[str, str]:
    """
    Generate code_verifier and code_challenge (S256).
    Verifier is 43 chars (256 bits entropy).
    """
    code_verifier = secrets.token_urlsafe(32)
    return code_verifier, compute_code_challenge(code_verifier)


def generate_state() -> str:
    """Opaque value for CSRF protection; returned in the redirect."""
    return secrets.token_urlsafe(32)
