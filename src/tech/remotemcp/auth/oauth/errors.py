"""
OAuth 2.0 protocol errors.

Serialized as `{"error": ..., "error_description": ...}` per RFC 6749 §5.2.
"""

from typing import Dict, Optional

from tech.remotemcp.auth.errors import RemoteMCPError


class OAuthError(RemoteMCPError):
    status = 400
    kind = "invalid_request"

    def __init__(
        self, description: str = "", headers: Optional[Dict[str, str]] = None
    ) -> None:
        super().__init__(description)
        self.headers: Dict[str, str] = headers or {}


class InvalidRequestError(OAuthError):
    kind = "invalid_request"


class InvalidClientError(OAuthError):
    status = 401
    kind = "invalid_client"

    @staticmethod
    def basic(description: str) -> "InvalidClientError":
        """Failure of an HTTP Basic client authentication attempt."""
        return InvalidClientError(
            description, headers={"WWW-Authenticate": 'Basic realm="oauth"'}
        )

    @staticmethod
    def not_found() -> "InvalidClientError":
        error = InvalidClientError("Client not found")
        error.status = 404
        return error


class InvalidGrantError(OAuthError):
    kind = "invalid_grant"


class UnauthorizedClientError(OAuthError):
    kind = "unauthorized_client"


class UnsupportedGrantTypeError(OAuthError):
    kind = "unsupported_grant_type"


class UnsupportedResponseTypeError(OAuthError):
    kind = "unsupported_response_type"


class InvalidScopeError(OAuthError):
    kind = "invalid_scope"


class InvalidClientMetadataError(OAuthError):
    kind = "invalid_client_metadata"


class InvalidTokenError(OAuthError):
    """A bearer token presented to a protected resource is missing, unknown or expired."""

    status = 401
    kind = "invalid_token"


class InsufficientScopeError(OAuthError):
    status = 403
    kind = "insufficient_scope"
