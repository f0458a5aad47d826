"""
Error taxonomy. OAuth errors carry the RFC 6749 error code and an HTTP status;
storage errors are raised by StorageProvider implementations.
Messages never include the secret that caused the failure.
"""


class OAuthError(Exception):
    """Base class for protocol errors returned to the client."""

    error = "server_error"
    status_code = 400

    def __init__(self, description: str = ""):
        super().__init__(description or self.error)
        self.description = description

    def to_dict(self) -> dict:
        return {"error": self.error, "error_description": self.description}


class InvalidRequestError(OAuthError):
    error = "invalid_request"


class InvalidRedirectUriError(InvalidRequestError):
    """redirect_uri is not registered for the client (exact match)."""


class InvalidClientError(OAuthError):
    error = "invalid_client"
    status_code = 401


class InvalidScopeError(OAuthError):
    error = "invalid_scope"


class InvalidGrantError(OAuthError):
    """Bad, expired or reused code; bad refresh token; PKCE mismatch."""

    error = "invalid_grant"


class InvalidTokenError(OAuthError):
    error = "invalid_token"
    status_code = 401


class InsufficientPermissionError(OAuthError):
    error = "insufficient_scope"
    status_code = 403


class StorageError(Exception):
    """Base class for credential store errors."""

    retryable = False


class AlreadyExistsError(StorageError):
    pass


class NotFoundError(StorageError):
    pass


class CodeExpiredError(StorageError):
    pass


class TransactionStateError(StorageError):
    """Operation on a transaction that was already committed or rolled back."""


class StorageUnavailableError(StorageError):
    """Backend could not be reached. Distinct from an invalid credential."""

    retryable = True
