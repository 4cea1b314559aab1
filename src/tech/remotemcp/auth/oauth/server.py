"""
OAuth 2.0 Authorization Server

Issues authorization codes and access/refresh token pairs to MCP clients
acting on behalf of platform users. Storage goes through the `OAuthModel`
port so this module contains protocol logic only.

Supported:

* RFC 6749 authorization code and refresh token grants
* RFC 7636 PKCE (`S256` and `plain`)
* RFC 7591 dynamic client registration
* RFC 7009 token revocation
* Client authentication with `client_secret_basic`, `client_secret_post`, or
  `none` for public clients (which must use PKCE)

Authorization codes are single-use. Redeeming one deletes it with a row count
check before any token is minted, so concurrent redemptions of the same code
produce exactly one token pair.
"""

import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from time import time
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Tuple
from urllib.parse import parse_qsl, unquote_plus, urlencode, urlparse, urlunparse

from aiohttp import BasicAuth
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from ulid import ULID

from tech.remotemcp.auth.model.base import ensure_utc
from tech.remotemcp.auth.model.oauth import (
    OAuthAuthorizationCode,
    OAuthClient,
    OAuthClientGrant,
    OAuthClientScope,
    OAuthToken,
)
from tech.remotemcp.auth.oauth import pkce
from tech.remotemcp.auth.oauth.errors import (
    InvalidClientError,
    InvalidClientMetadataError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidScopeError,
    InvalidTokenError,
    OAuthError,
    UnauthorizedClientError,
    UnsupportedGrantTypeError,
    UnsupportedResponseTypeError,
)
from tech.remotemcp.auth.oauth.model import OAuthModel
from tech.remotemcp.auth.oauth.store import generate_token

logger = logging.getLogger(__name__)

ACCESS_TOKEN_LIFETIME = 7 * 24 * 60 * 60
REFRESH_TOKEN_LIFETIME = 30 * 24 * 60 * 60
TOKEN_TYPE = "Bearer"

AUTH_METHOD_NONE = "none"
AUTH_METHOD_BASIC = "client_secret_basic"
AUTH_METHOD_POST = "client_secret_post"

_SCOPE_SEPARATOR_RE = re.compile(r"[\s+]+")


def split_scope(scope: Optional[str]) -> List[str]:
    """Split a scope string on spaces and `+`, dropping blanks and duplicates."""
    if not scope:
        return []
    parts: List[str] = []
    for part in _SCOPE_SEPARATOR_RE.split(scope):
        if part and part not in parts:
            parts.append(part)
    return parts


def _append_query(uri: str, params: Dict[str, Optional[str]]) -> str:
    parsed = urlparse(uri)
    query = parse_qsl(parsed.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunparse(parsed._replace(query=urlencode(query)))


def _is_redirect_uri(value: str) -> bool:
    parsed = urlparse(value)
    if not parsed.scheme or parsed.fragment:
        return False
    return bool(parsed.netloc or parsed.path)


class AuthorizeRequest(BaseModel):
    client_id: Optional[str] = None
    redirect_uri: Optional[str] = None
    response_type: Optional[str] = None
    scope: Optional[str] = None
    state: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None


class ClientRegistrationRequest(BaseModel):
    """RFC 7591 client metadata accepted at the registration endpoint."""

    redirect_uris: List[str] = Field(min_length=1)

    token_endpoint_auth_method: Literal[
        "none", "client_secret_basic", "client_secret_post"
    ] = AUTH_METHOD_POST

    grant_types: List[str] = Field(
        default_factory=lambda: [grant.value for grant in OAuthClientGrant],
        min_length=1,
    )
    """Unsupported grant types are dropped, not rejected."""

    response_types: List[Literal["code", "token"]] = Field(
        default_factory=lambda: ["code"], min_length=1
    )
    client_name: str = Field(min_length=1)
    client_uri: Optional[str] = None

    scope: str = OAuthClientScope.READ.value
    """Space or `+` separated. Unsupported scopes are dropped."""

    @field_validator("redirect_uris", mode="after")
    @classmethod
    def validate_redirect_uris(cls, value: List[str]) -> List[str]:
        for uri in value:
            if not _is_redirect_uri(uri):
                raise ValueError(f"Invalid redirect URI: {uri}")
        return value

    @field_validator("client_uri", mode="after")
    @classmethod
    def validate_client_uri(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Invalid client URI: {value}")
        return value


class AuthorizationServer:
    def __init__(
        self,
        model: OAuthModel,
        authorization_code_lifetime: int = 300,
        always_issue_new_refresh_token: bool = False,
        clock: Callable[[], float] = time,
    ) -> None:
        self.model = model
        self.authorization_code_lifetime = authorization_code_lifetime
        self.always_issue_new_refresh_token = always_issue_new_refresh_token
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), timezone.utc)

    async def register_client(self, body: Mapping[str, Any]) -> Dict[str, Any]:
        try:
            registration = ClientRegistrationRequest.model_validate(body)
        except PydanticValidationError as e:
            issues = []
            for error in e.errors():
                location = ".".join(str(part) for part in error["loc"])
                issues.append(f"{location}: {error['msg']}" if location else error["msg"])
            raise InvalidClientMetadataError(", ".join(issues)) from e

        supported_scopes = [scope.value for scope in OAuthClientScope]
        scope = [s for s in split_scope(registration.scope) if s in supported_scopes]
        if len(scope) == 0:
            scope = [OAuthClientScope.READ.value]

        supported_grants = [grant.value for grant in OAuthClientGrant]
        grants: List[str] = []
        for grant in registration.grant_types:
            if grant in supported_grants and grant not in grants:
                grants.append(grant)
        if len(grants) == 0:
            raise InvalidClientMetadataError("No valid grant types provided")

        now = self._now()
        client = OAuthClient(
            id=str(ULID()),
            secret=generate_token(),
            name=registration.client_name,
            uri=registration.client_uri or "",
            redirect_uris=list(registration.redirect_uris),
            grants=grants,
            scope=scope,
            token_endpoint_auth_method=registration.token_endpoint_auth_method,
            access_token_lifetime=ACCESS_TOKEN_LIFETIME,
            refresh_token_lifetime=REFRESH_TOKEN_LIFETIME,
            created_at=now,
        )
        await self.model.save_client(client)

        logger.info("registered oauth client %s (%s)", client.id, client.name)

        return {
            "client_id": client.id,
            "client_secret": client.secret,
            "client_id_issued_at": int(now.timestamp()),
            "client_secret_expires_at": 0,
            "redirect_uris": client.redirect_uris,
            "scope": " ".join(client.scope),
            "client_name": client.name,
            "grant_types": client.grants,
            "token_endpoint_auth_method": client.token_endpoint_auth_method,
            "response_types": list(registration.response_types),
        }

    async def get_public_client(self, client_id: Optional[str]) -> Dict[str, Any]:
        if not client_id:
            raise InvalidRequestError("Missing client_id parameter")
        client = await self.model.get_client(client_id)
        if client is None:
            raise InvalidClientError.not_found()
        return client.public_dict()

    async def authorize(self, request: AuthorizeRequest, user_id: str) -> str:
        """
        Issue an authorization code for an authenticated user.

        Returns the URL to redirect the user agent to. Problems with the client
        or redirect URI raise OAuthError because there is nowhere safe to send
        the user. Everything found after that is reported to the client through
        the redirect.
        """
        if not request.client_id:
            raise InvalidRequestError("Missing client_id parameter")

        client = await self.model.get_client(request.client_id)
        if client is None:
            raise InvalidClientError("Invalid client: client is invalid")

        if request.redirect_uri is None:
            if len(client.redirect_uris) != 1:
                raise InvalidRequestError("Missing parameter: redirect_uri")
            redirect_uri = client.redirect_uris[0]
        elif request.redirect_uri in client.redirect_uris:
            redirect_uri = request.redirect_uri
        else:
            raise InvalidRequestError("Invalid request: redirect_uri is not registered")

        def redirect_error(error: OAuthError) -> str:
            return _append_query(
                redirect_uri,
                {
                    "error": error.kind,
                    "error_description": error.message,
                    "state": request.state,
                },
            )

        if request.response_type != "code":
            return redirect_error(
                UnsupportedResponseTypeError(
                    "Unsupported response type: response_type is not supported"
                )
            )

        if OAuthClientGrant.AUTHORIZATION_CODE.value not in client.grants:
            return redirect_error(
                UnauthorizedClientError(
                    "Unauthorized client: authorization_code grant is not allowed"
                )
            )

        scope = split_scope(request.scope)
        if len(scope) == 0:
            scope = list(client.scope)
        elif any(s not in client.scope for s in scope):
            return redirect_error(InvalidScopeError("Invalid scope: Requested scope is invalid"))

        code_challenge = request.code_challenge
        code_challenge_method = request.code_challenge_method
        if code_challenge_method is not None and not code_challenge:
            return redirect_error(InvalidRequestError("Missing parameter: code_challenge"))
        if code_challenge:
            if code_challenge_method is None:
                code_challenge_method = pkce.PLAIN
            if code_challenge_method not in pkce.SUPPORTED_METHODS:
                return redirect_error(
                    InvalidRequestError(
                        "Invalid parameter: code_challenge_method must be S256 or plain"
                    )
                )
            if not pkce.is_valid_verifier(code_challenge):
                return redirect_error(
                    InvalidRequestError("Invalid parameter: code_challenge")
                )
        elif client.token_endpoint_auth_method == AUTH_METHOD_NONE:
            return redirect_error(
                InvalidRequestError("Missing parameter: code_challenge is required for public clients")
            )

        now = self._now()
        code = OAuthAuthorizationCode(
            id=str(ULID()),
            authorization_code=self.model.generate_authorization_code(),
            expires_at=now + timedelta(seconds=self.authorization_code_lifetime),
            redirect_uri=redirect_uri,
            scope=scope,
            client_id=client.id,
            user_id=user_id,
            code_challenge=code_challenge or None,
            code_challenge_method=code_challenge_method if code_challenge else None,
        )
        await self.model.save_authorization_code(code)

        return _append_query(
            redirect_uri, {"code": code.authorization_code, "state": request.state}
        )

    async def token(
        self, params: Mapping[str, str], authorization: Optional[str] = None
    ) -> Dict[str, Any]:
        """Handle a token endpoint request and return the RFC 6749 §5.1 body."""
        grant_type = params.get("grant_type", None)
        if not grant_type:
            raise InvalidRequestError("Missing parameter: grant_type")

        client, _ = await self._authenticate_client(params, authorization)

        if grant_type not in (
            OAuthClientGrant.AUTHORIZATION_CODE.value,
            OAuthClientGrant.REFRESH_TOKEN.value,
        ):
            raise UnsupportedGrantTypeError(
                "Unsupported grant type: grant_type is invalid"
            )
        if grant_type not in client.grants:
            raise UnauthorizedClientError(
                "Unauthorized client: grant_type is invalid"
            )

        if grant_type == OAuthClientGrant.AUTHORIZATION_CODE.value:
            return await self._authorization_code_grant(client, params)
        return await self._refresh_token_grant(client, params)

    async def revoke(
        self, params: Mapping[str, str], authorization: Optional[str] = None
    ) -> None:
        """
        RFC 7009 revocation. Unknown tokens and tokens belonging to other
        clients are ignored so the response never reveals whether a token exists.
        """
        client, _ = await self._authenticate_client(params, authorization)

        value = params.get("token", None)
        if not value:
            raise InvalidRequestError("Missing parameter: token")

        lookups = [self.model.get_access_token, self.model.get_refresh_token]
        if params.get("token_type_hint", None) == "refresh_token":
            lookups.reverse()

        for lookup in lookups:
            token = await lookup(value)
            if token is None:
                continue
            if token.client_id == client.id:
                await self.model.revoke_token(token.id)
                logger.info("revoked token %s for client %s", token.id, client.id)
            return

    async def authenticate(self, access_token: Optional[str]) -> OAuthToken:
        """Resolve a bearer access token presented to a protected resource."""
        if not access_token:
            raise InvalidTokenError("Unauthorized request: no authentication given")

        token = await self.model.get_access_token(access_token)
        if token is None:
            raise InvalidTokenError("Invalid token: access token is invalid")

        if ensure_utc(token.access_token_expires_at) <= self._now():
            raise InvalidTokenError("Invalid token: access token has expired")

        return token

    async def _authenticate_client(
        self, params: Mapping[str, str], authorization: Optional[str]
    ) -> Tuple[OAuthClient, str]:
        body_client_id = params.get("client_id", None)
        body_client_secret = params.get("client_secret", None)

        client_secret: Optional[str]
        if authorization is not None and authorization.lower().startswith("basic "):
            method = AUTH_METHOD_BASIC
            try:
                basic = BasicAuth.decode(authorization)
            except ValueError as e:
                raise InvalidClientError.basic(
                    "Invalid client: cannot retrieve client credentials"
                ) from e
            client_id = unquote_plus(basic.login)
            client_secret = unquote_plus(basic.password)
            if body_client_id is not None and body_client_id != client_id:
                raise InvalidRequestError(
                    "Invalid request: client_id does not match the authorization header"
                )
        elif body_client_secret is not None:
            method = AUTH_METHOD_POST
            client_id = body_client_id or ""
            client_secret = body_client_secret
        elif body_client_id:
            method = AUTH_METHOD_NONE
            client_id = body_client_id
            client_secret = None
        else:
            raise InvalidClientError(
                "Invalid client: cannot retrieve client credentials"
            )

        if not client_id:
            raise InvalidRequestError("Missing parameter: client_id")

        def invalid(description: str) -> InvalidClientError:
            if method == AUTH_METHOD_BASIC:
                return InvalidClientError.basic(description)
            return InvalidClientError(description)

        client = await self.model.get_client(client_id)
        if client is None:
            raise invalid("Invalid client: client is invalid")

        if client_secret is None:
            if client.token_endpoint_auth_method != AUTH_METHOD_NONE:
                raise invalid("Invalid client: client authentication is required")
        elif not secrets.compare_digest(
            client.secret.encode("utf-8"), client_secret.encode("utf-8")
        ):
            raise invalid("Invalid client: client is invalid")

        return client, method

    async def _authorization_code_grant(
        self, client: OAuthClient, params: Mapping[str, str]
    ) -> Dict[str, Any]:
        value = params.get("code", None)
        if not value:
            raise InvalidRequestError("Missing parameter: code")

        code = await self.model.get_authorization_code(value)
        if code is None or code.client_id != client.id:
            raise InvalidGrantError("Invalid grant: authorization code is invalid")

        if ensure_utc(code.expires_at) <= self._now():
            await self.model.revoke_authorization_code(value)
            raise InvalidGrantError("Invalid grant: authorization code has expired")

        redirect_uri = params.get("redirect_uri", None)
        if redirect_uri is None:
            if client.redirect_uris != [code.redirect_uri]:
                raise InvalidRequestError("Missing parameter: redirect_uri")
        elif redirect_uri != code.redirect_uri:
            raise InvalidGrantError("Invalid request: `redirect_uri` is invalid")

        code_verifier = params.get("code_verifier", None)
        if code.code_challenge:
            if not code_verifier:
                raise InvalidGrantError("Missing parameter: code_verifier")
            if not pkce.verify(
                code_verifier, code.code_challenge, code.code_challenge_method
            ):
                raise InvalidGrantError("Invalid grant: code verifier is invalid")
        elif code_verifier:
            raise InvalidGrantError(
                "Invalid grant: code verifier given without a code challenge"
            )

        if not await self.model.revoke_authorization_code(value):
            raise InvalidGrantError("Invalid grant: authorization code is invalid")

        return await self._issue(client, code.user_id, list(code.scope))

    async def _refresh_token_grant(
        self, client: OAuthClient, params: Mapping[str, str]
    ) -> Dict[str, Any]:
        value = params.get("refresh_token", None)
        if not value:
            raise InvalidRequestError("Missing parameter: refresh_token")

        token = await self.model.get_refresh_token(value)
        if token is None or token.client_id != client.id:
            raise InvalidGrantError("Invalid grant: refresh token is invalid")

        refresh_token_expires_at = ensure_utc(token.refresh_token_expires_at)
        if refresh_token_expires_at <= self._now():
            raise InvalidGrantError("Invalid grant: refresh token has expired")

        scope = list(token.scope)
        requested = split_scope(params.get("scope", None))
        if len(requested) > 0:
            if any(s not in scope for s in requested):
                raise InvalidScopeError("Invalid scope: Requested scope is invalid")
            scope = requested

        if self.always_issue_new_refresh_token:
            replacement = self._new_token(client, token.user_id, scope)
        else:
            replacement = self._new_token(
                client,
                token.user_id,
                scope,
                refresh_token=token.refresh_token,
                refresh_token_expires_at=refresh_token_expires_at,
            )

        if not await self.model.rotate_token(token.id, replacement):
            raise InvalidGrantError("Invalid grant: refresh token is invalid")

        logger.debug(
            "rotated token %s to %s for client %s", token.id, replacement.id, client.id
        )
        return self._token_response(client, replacement)

    async def _issue(
        self, client: OAuthClient, user_id: str, scope: List[str]
    ) -> Dict[str, Any]:
        token = self._new_token(client, user_id, scope)
        await self.model.save_token(token)

        logger.debug("issued token %s to client %s", token.id, client.id)
        return self._token_response(client, token)

    def _new_token(
        self,
        client: OAuthClient,
        user_id: str,
        scope: List[str],
        refresh_token: Optional[str] = None,
        refresh_token_expires_at: Optional[datetime] = None,
    ) -> OAuthToken:
        now = self._now()
        if refresh_token is None or refresh_token_expires_at is None:
            refresh_token = self.model.generate_refresh_token()
            refresh_token_expires_at = now + timedelta(
                seconds=client.refresh_token_lifetime
            )

        return OAuthToken(
            id=str(ULID()),
            access_token=self.model.generate_access_token(),
            access_token_expires_at=now
            + timedelta(seconds=client.access_token_lifetime),
            refresh_token=refresh_token,
            refresh_token_expires_at=refresh_token_expires_at,
            scope=scope,
            client_id=client.id,
            user_id=user_id,
            created_at=now,
        )

    @staticmethod
    def _token_response(client: OAuthClient, token: OAuthToken) -> Dict[str, Any]:
        return {
            "access_token": token.access_token,
            "token_type": TOKEN_TYPE,
            "expires_in": client.access_token_lifetime,
            "refresh_token": token.refresh_token,
            "scope": " ".join(token.scope),
        }
