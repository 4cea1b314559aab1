"""
Error taxonomy shared by the connection and authorization server layers.

Every error carries the HTTP status a handler should answer with and a short
machine readable `kind`. OAuth protocol errors (which have their own wire
format) live in `tech.remotemcp.auth.oauth.errors` and extend RemoteMCPError.
"""

from typing import Any, Dict, Optional


class RemoteMCPError(Exception):
    status: int = 500
    kind: str = "server_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "error_description": self.message}


class ValidationError(RemoteMCPError):
    """Malformed request parameters."""

    status = 400
    kind = "invalid_request"


class UnauthorizedError(RemoteMCPError):
    """Missing or invalid platform session, access token, or client credentials."""

    status = 401
    kind = "unauthorized"


class NotFoundError(RemoteMCPError):
    status = 404
    kind = "not_found"

    @staticmethod
    def app(app_name: str) -> "NotFoundError":
        return NotFoundError(f"error-connection-1000 MCP app not found: {app_name}")

    @staticmethod
    def app_secrets(app_name: str) -> "NotFoundError":
        return NotFoundError(
            f"error-connection-1001 No OAuth secrets configured for app: {app_name}"
        )

    @staticmethod
    def connection(connection_id: str) -> "NotFoundError":
        return NotFoundError(f"error-connection-1002 Connection not found: {connection_id}")


class OAuth2ExchangeError(RemoteMCPError):
    """
    An external app's token endpoint rejected a claim or refresh.

    The upstream status and body are kept for logging and for the caller to
    decide what to do next. Nothing at this layer retries.
    """

    status = 502
    kind = "oauth2_exchange_failed"

    def __init__(
        self,
        message: str,
        upstream_status: Optional[int] = None,
        upstream_body: Any = None,
    ) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body

    @staticmethod
    def rejected(token_url: str, status: int, body: Any) -> "OAuth2ExchangeError":
        return OAuth2ExchangeError(
            f"error-oauth2-2000 Token endpoint {token_url} responded with {status}",
            upstream_status=status,
            upstream_body=body,
        )

    @staticmethod
    def unreachable(token_url: str, reason: str) -> "OAuth2ExchangeError":
        return OAuth2ExchangeError(
            f"error-oauth2-2001 Token endpoint {token_url} unreachable: {reason}"
        )

    @staticmethod
    def malformed(token_url: str, body: Any) -> "OAuth2ExchangeError":
        return OAuth2ExchangeError(
            f"error-oauth2-2002 Token endpoint {token_url} returned an unusable token response",
            upstream_status=200,
            upstream_body=body,
        )


class DecryptionError(RemoteMCPError):
    """Stored ciphertext could not be turned back into its plaintext."""

    status = 500
    kind = "decryption_failed"


class ConnectionStateError(RemoteMCPError):
    """A connection exists but its credential cannot be used until the user reconnects."""

    status = 409
    kind = "connection_unavailable"

    @staticmethod
    def needs_reconnect(connection_id: str, status: str) -> "ConnectionStateError":
        return ConnectionStateError(
            f"error-connection-1005 Connection {connection_id} is {status} and must be reconnected"
        )

    @staticmethod
    def refresh_in_progress(connection_id: str) -> "ConnectionStateError":
        return ConnectionStateError(
            f"error-connection-1006 Timed out waiting for a refresh of connection {connection_id}"
        )
