"""
OAuth2 Client-Credential Service

Claims and refreshes access tokens at external apps' token endpoints on
behalf of users. Requests are form-encoded and go through the chain client so
client authentication (HTTP Basic or POST body) is a middleware concern.

Nothing here retries. A failed exchange raises OAuth2ExchangeError and the
caller decides what that means for the stored connection.
"""

import asyncio
import json
import logging
from time import time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qsl

import aiohttp
from aiohttp import ClientSession, ClientTimeout, FormData, hdrs
from pydantic import ValidationError as PydanticValidationError

from tech.remotemcp.auth.app.metrics import MetricsClient
from tech.remotemcp.auth.connections.chain import (
    ChainMiddlewareClient,
    ChainResponse,
    ClientSecretBasicMiddleware,
    ClientSecretPostMiddleware,
    RequestMiddlewareBase,
    StatsdMiddleware,
)
from tech.remotemcp.auth.connections.values import (
    STANDARD_TOKEN_FIELDS,
    ClaimOAuth2Request,
    OAuth2AuthorizationMethod,
    OAuth2ConnectionValue,
    OAuth2GrantType,
)
from tech.remotemcp.auth.errors import OAuth2ExchangeError, ValidationError

logger = logging.getLogger(__name__)


def resolve_value_from_props(props: Optional[Dict[str, Any]], value: str) -> str:
    """Replace `{key}` placeholders in value with the matching prop.

    `resolve_value_from_props({"tenant": "acme"}, "api://{tenant}/.default")`
    returns `"api://acme/.default"`.
    """
    if not props:
        return value
    for key, prop in props.items():
        value = value.replace(f"{{{key}}}", str(prop))
    return value


def _coerce_expires_in(value: Any) -> Any:
    # Some providers send "3600" or 3599.5; anything else is left for validation.
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, (int, float, str)):
        try:
            return int(float(value))
        except (TypeError, ValueError, OverflowError):
            return value
    return value


def format_oauth2_response(body: Dict[str, Any], claimed_at: int) -> Dict[str, Any]:
    """Split a token endpoint response into standard fields and `data`."""
    scope = body.get("scope", None)
    if isinstance(scope, list):
        scope = " ".join(str(s) for s in scope)

    formatted: Dict[str, Any] = {
        "access_token": body.get("access_token", None),
        "refresh_token": body.get("refresh_token", None),
        "expires_in": _coerce_expires_in(body.get("expires_in", None)),
        "token_type": body.get("token_type", None),
        "scope": scope,
        "data": {k: v for k, v in body.items() if k not in STANDARD_TOKEN_FIELDS},
        "claimed_at": claimed_at,
    }
    return formatted


def _parse_token_body(chain_response: ChainResponse) -> Optional[Dict[str, Any]]:
    body = chain_response.body
    if isinstance(body, dict):
        return body
    if isinstance(body, bytes):
        try:
            body = body.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if not isinstance(body, str) or len(body) == 0:
        return None
    try:
        decoded = json.loads(body)
        return decoded if isinstance(decoded, dict) else None
    except json.JSONDecodeError:
        pass
    pairs = parse_qsl(body)
    return dict(pairs) if len(pairs) > 0 else None


class OAuth2CredentialService:
    def __init__(
        self,
        http_session: ClientSession,
        metrics_client: MetricsClient,
        timeout: float = 10.0,
        clock: Callable[[], float] = time,
    ) -> None:
        self._http_session = http_session
        self._metrics_client = metrics_client
        self._timeout = timeout
        self._clock = clock

    def _now(self) -> int:
        return int(round(self._clock()))

    async def claim(
        self, app_name: str, request: ClaimOAuth2Request
    ) -> OAuth2ConnectionValue:
        """Exchange an authorization code (or client credentials) for tokens."""
        form: Dict[str, str] = {"grant_type": request.grant_type.value}

        if request.grant_type == OAuth2GrantType.AUTHORIZATION_CODE:
            if not request.code:
                raise ValidationError("error-oauth2-2003 Authorization code is required")
            form["code"] = request.code
            if request.redirect_url:
                form["redirect_uri"] = request.redirect_url
        else:
            form.update(self._client_credentials_fields(request.scope, request.props))

        if request.code_verifier:
            form["code_verifier"] = request.code_verifier

        body = await self._exchange(
            app_name,
            request.token_url,
            form,
            request.client_id,
            request.client_secret,
            request.authorization_method,
        )

        formatted = format_oauth2_response(body, self._now())
        if formatted["scope"] is None:
            formatted["scope"] = request.scope

        try:
            return OAuth2ConnectionValue(
                **formatted,
                token_url=request.token_url,
                client_id=request.client_id,
                client_secret=request.client_secret,
                redirect_url=request.redirect_url,
                grant_type=request.grant_type,
                props=request.props,
                authorization_method=request.authorization_method,
            )
        except PydanticValidationError as e:
            logger.error(
                "token exchange returned invalid fields app=%s token_url=%s: %s",
                app_name,
                request.token_url,
                e,
            )
            raise OAuth2ExchangeError.malformed(request.token_url, body) from e

    async def refresh(
        self, app_name: str, owner_id: str, value: OAuth2ConnectionValue
    ) -> OAuth2ConnectionValue:
        """
        Obtain a fresh access token for a stored connection.

        Fields the token endpoint leaves out (most often `refresh_token` for
        apps that do not rotate) keep their stored values. Extra response
        fields are merged into the stored `data`. `props` are always carried
        over unchanged.
        """
        if value.grant_type == OAuth2GrantType.AUTHORIZATION_CODE:
            if not value.refresh_token:
                raise ValidationError(
                    "error-oauth2-2004 Connection has no refresh token"
                )
            form: Dict[str, str] = {
                "grant_type": "refresh_token",
                "refresh_token": value.refresh_token,
            }
        else:
            form = {"grant_type": OAuth2GrantType.CLIENT_CREDENTIALS.value}
            form.update(self._client_credentials_fields(value.scope, value.props))

        logger.debug("refreshing %s connection for owner %s", app_name, owner_id)

        body = await self._exchange(
            app_name,
            value.token_url,
            form,
            value.client_id,
            value.client_secret,
            value.authorization_method,
        )

        formatted = format_oauth2_response(body, self._now())
        merged = value.model_dump()
        merged.update({k: v for k, v in formatted.items() if v is not None})
        merged["data"] = {**value.data, **formatted["data"]}
        merged["props"] = value.props
        try:
            return OAuth2ConnectionValue.model_validate(merged)
        except PydanticValidationError as e:
            logger.error(
                "token refresh returned invalid fields app=%s token_url=%s: %s",
                app_name,
                value.token_url,
                e,
            )
            raise OAuth2ExchangeError.malformed(value.token_url, body) from e

    @staticmethod
    def _client_credentials_fields(
        scope: Optional[str], props: Optional[Dict[str, Any]]
    ) -> Dict[str, str]:
        fields: Dict[str, str] = {}
        if scope:
            fields["scope"] = resolve_value_from_props(props, scope)
        for key, prop in (props or {}).items():
            fields[key] = str(prop)
        return fields

    async def _exchange(
        self,
        app_name: str,
        token_url: str,
        form: Dict[str, str],
        client_id: str,
        client_secret: Optional[str],
        authorization_method: OAuth2AuthorizationMethod,
    ) -> Dict[str, Any]:
        middleware: List[RequestMiddlewareBase] = [
            StatsdMiddleware(self._metrics_client, "oauth2.exchange")
        ]
        if authorization_method == OAuth2AuthorizationMethod.HEADER:
            middleware.append(ClientSecretBasicMiddleware(client_id, client_secret))
        else:
            middleware.append(ClientSecretPostMiddleware(client_id, client_secret))

        chain_client = ChainMiddlewareClient(
            client_session=self._http_session, middleware=middleware
        )

        try:
            async with chain_client.post(
                token_url,
                data=FormData(form),
                headers={hdrs.ACCEPT: "application/json"},
                timeout=ClientTimeout(total=self._timeout),
            ) as (_, chain_response):
                body = _parse_token_body(chain_response)

                if not chain_response.ok:
                    logger.error(
                        "token exchange rejected app=%s client_id=%s token_url=%s status=%s",
                        app_name,
                        client_id,
                        token_url,
                        chain_response.status,
                    )
                    raise OAuth2ExchangeError.rejected(
                        token_url,
                        chain_response.status,
                        body if body is not None else chain_response.body,
                    )

                if body is None or not body.get("access_token", None):
                    logger.error(
                        "token exchange returned no access token app=%s client_id=%s token_url=%s",
                        app_name,
                        client_id,
                        token_url,
                    )
                    raise OAuth2ExchangeError.malformed(token_url, body)

                return body

        except json.JSONDecodeError as e:
            raise OAuth2ExchangeError.malformed(token_url, None) from e
        except asyncio.TimeoutError as e:
            raise OAuth2ExchangeError.unreachable(token_url, "timed out") from e
        except aiohttp.ClientError as e:
            raise OAuth2ExchangeError.unreachable(token_url, str(e)) from e
