from dataclasses import dataclass, field
import json
import logging
from typing import Dict, List, Mapping, Optional

from aiohttp import web
from jwcrypto import jwt
from jwcrypto.common import JWException
import sentry_sdk

from tech.remotemcp.auth.app.config import (
    AuthorizationServerAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    SettingsAppKey,
)
from tech.remotemcp.auth.errors import (
    OAuth2ExchangeError,
    RemoteMCPError,
    UnauthorizedError,
)
from tech.remotemcp.auth.model.oauth import OAuthClientScope
from tech.remotemcp.auth.oauth.errors import (
    InsufficientScopeError,
    InvalidTokenError,
)
from tech.remotemcp.auth.oauth.metadata import protected_resource_metadata_url

logger = logging.getLogger(__name__)

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


@dataclass(repr=False, eq=False)
class AuthContext:
    """
    The caller of a platform API request.

    Attributes:
        user_id: The platform user the request acts for
        client_id: The OAuth client the access token was issued to, or None
            for requests made with a platform session
        scope: Granted scopes. Platform sessions hold every scope.
    """

    user_id: str
    client_id: Optional[str] = None
    scope: List[str] = field(default_factory=list)


class AuthenticationException(UnauthorizedError):
    @staticmethod
    def session_missing() -> "AuthenticationException":
        return AuthenticationException("error-auth-helper-1000 No session or access token")

    @staticmethod
    def jwt_subject_missing() -> "AuthenticationException":
        return AuthenticationException("error-auth-helper-1001 JWT missing subject")


def _bearer_token(request: web.Request) -> Optional[str]:
    authorization: Optional[str] = request.headers.getone("Authorization", None)
    if (
        authorization is None
        or not authorization.startswith("Bearer ")
        or len(authorization) < 8
    ):
        return None
    return authorization[7:].strip()


def _looks_like_jwt(value: str) -> bool:
    return value.count(".") == 2


def verify_session_token(request: web.Request, serialized: str) -> Optional[str]:
    """Validate a platform session JWT and return its subject."""
    settings = request.app[SettingsAppKey]
    try:
        validated = jwt.JWT(jwt=serialized, key=settings.json_web_keys, algs=["ES256"])
        claims: Dict[str, str] = json.loads(validated.claims)
    except (JWException, ValueError) as e:
        logger.debug("rejected session token: %s", e)
        return None

    subject = claims.get("sub", None)
    if not subject:
        raise AuthenticationException.jwt_subject_missing()
    return subject


def session_user_id(request: web.Request) -> Optional[str]:
    """
    The platform user behind a request, from the session cookie or a
    `Authorization: Bearer <jwt>` header. None when neither is valid.
    """
    settings = request.app[SettingsAppKey]
    serialized = request.cookies.get(settings.session_cookie_name, None)
    if serialized:
        return verify_session_token(request, serialized)

    bearer = _bearer_token(request)
    if bearer is not None and _looks_like_jwt(bearer):
        return verify_session_token(request, bearer)
    return None


async def auth_context_helper(
    request: web.Request, required_scope: OAuthClientScope
) -> AuthContext:
    """
    Authenticate a platform API request.

    * A platform session (cookie or bearer JWT) grants every scope.
    * Otherwise the bearer value must be an access token issued by this
      server, unexpired, and holding `required_scope`.

    Raises:
        AuthenticationException: no credentials at all
        InvalidTokenError: unknown or expired access token
        InsufficientScopeError: access token without the required scope
    """
    user_id = session_user_id(request)
    if user_id is not None:
        return AuthContext(
            user_id=user_id, scope=[scope.value for scope in OAuthClientScope]
        )

    bearer = _bearer_token(request)
    if bearer is None or _looks_like_jwt(bearer):
        raise AuthenticationException.session_missing()

    token = await request.app[AuthorizationServerAppKey].authenticate(bearer)
    if required_scope.value not in token.scope:
        raise InsufficientScopeError(
            f"Insufficient scope: {required_scope.value} is required"
        )
    return AuthContext(
        user_id=token.user_id, client_id=token.client_id, scope=list(token.scope)
    )


async def error_response(
    request: web.Request,
    error: RemoteMCPError,
    headers: Optional[Mapping[str, str]] = None,
) -> web.Response:
    """
    Answer with the error's status and wire format.

    Internal failures (status 500 and up) are reported like any unexpected
    exception and answer a bare `server_error`. Upstream token endpoint
    failures keep their 502 and description.
    """
    if error.status >= 500 and not isinstance(error, OAuth2ExchangeError):
        return await server_error_response(request, error, headers=headers)

    response_headers: Dict[str, str] = dict(headers or {})
    response_headers.update(getattr(error, "headers", {}))

    if isinstance(error, (UnauthorizedError, InvalidTokenError, InsufficientScopeError)):
        settings = request.app[SettingsAppKey]
        challenge = f'Bearer resource_metadata="{protected_resource_metadata_url(settings.server_url)}"'
        if isinstance(error, (InvalidTokenError, InsufficientScopeError)):
            challenge += f', error="{error.kind}"'
        response_headers.setdefault("WWW-Authenticate", challenge)

    return web.json_response(error.to_dict(), status=error.status, headers=response_headers)


async def server_error_response(
    request: web.Request,
    e: Exception,
    headers: Optional[Mapping[str, str]] = None,
) -> web.Response:
    """Report an unexpected exception and answer 500 without details."""
    sentry_sdk.capture_exception(e)
    logger.exception("Unexpected error handling %s %s", request.method, request.path)
    request.app[MetricsClientAppKey].increment(
        "server.handler.exception",
        1,
        tag_dict={"exception": type(e).__name__, "path": request.path},
    )
    await request.app[HealthGaugeAppKey].womp()
    return web.json_response(
        {"error": "server_error"}, status=500, headers=dict(headers or {})
    )
