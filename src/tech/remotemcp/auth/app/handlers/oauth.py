"""
OAuth Authorization Server Handlers

HTTP surface of the authorization server that MCP clients use to obtain
access tokens for a platform user:

- GET /authorize, GET /api/oauth/authorize - authorization endpoint
- POST /api/oauth/token - token endpoint (form encoded)
- POST /api/oauth/revoke - token revocation
- POST /api/oauth/register - dynamic client registration
- GET /api/oauth/client?id= - public client information for consent screens
- GET /.well-known/oauth-authorization-server[/{tail}] - server metadata
- GET /.well-known/oauth-protected-resource - protected resource metadata
- GET /.well-known/mcp.json - MCP server descriptor

Protocol errors are answered as `{"error", "error_description"}` with the
status the error carries. Token and revocation responses are never cached.
"""

import json
import logging
from typing import Dict, Optional

from aiohttp import web

from tech.remotemcp.auth.app.config import (
    AuthorizationServerAppKey,
    SettingsAppKey,
)
from tech.remotemcp.auth.app.cors import get_cors_headers
from tech.remotemcp.auth.app.handlers.helpers import (
    NO_STORE_HEADERS,
    error_response,
    server_error_response,
    session_user_id,
)
from tech.remotemcp.auth.errors import RemoteMCPError
from tech.remotemcp.auth.oauth.errors import (
    InvalidClientMetadataError,
    InvalidRequestError,
)
from tech.remotemcp.auth.oauth.metadata import (
    authorization_server_metadata,
    mcp_manifest,
    protected_resource_metadata,
)
from tech.remotemcp.auth.oauth.server import AuthorizeRequest

logger = logging.getLogger(__name__)

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


def _cors(request: web.Request) -> Dict[str, str]:
    settings = request.app[SettingsAppKey]
    return get_cors_headers(
        request.headers.get("Origin"),
        request.path,
        settings.allowed_origins(),
        settings.debug,
    )


async def _form_params(request: web.Request) -> Dict[str, str]:
    if request.content_type != FORM_CONTENT_TYPE:
        raise InvalidRequestError(
            f"Invalid request: content must be {FORM_CONTENT_TYPE}"
        )
    data = await request.post()
    return {key: value for key, value in data.items() if isinstance(value, str)}


async def handle_authorize(request: web.Request):
    """
    Issue an authorization code to an MCP client for the signed-in user.

    The user must already hold a platform session. The response redirects to
    the client's redirect URI with `code` and `state`, or with `error` once
    the redirect URI has been verified.
    """
    try:
        user_id: Optional[str] = session_user_id(request)
        if user_id is None:
            return web.json_response({"error": "Unauthorized"}, status=401)

        authorization_server = request.app[AuthorizationServerAppKey]
        authorize_request = AuthorizeRequest.model_validate(dict(request.query))
        redirect_destination = await authorization_server.authorize(
            authorize_request, user_id
        )
    except RemoteMCPError as e:
        return await error_response(request, e)
    except Exception as e:
        return await server_error_response(request, e)

    raise web.HTTPFound(redirect_destination)


async def handle_token(request: web.Request):
    authorization_server = request.app[AuthorizationServerAppKey]
    headers = {**NO_STORE_HEADERS, **_cors(request)}
    try:
        params = await _form_params(request)
        token = await authorization_server.token(
            params, request.headers.get("Authorization", None)
        )
        return web.json_response(token, headers=headers)
    except RemoteMCPError as e:
        return await error_response(request, e, headers=headers)
    except Exception as e:
        return await server_error_response(request, e, headers=headers)


async def handle_revoke(request: web.Request):
    authorization_server = request.app[AuthorizationServerAppKey]
    headers = {**NO_STORE_HEADERS, **_cors(request)}
    try:
        params = await _form_params(request)
        await authorization_server.revoke(
            params, request.headers.get("Authorization", None)
        )
        return web.Response(status=200, headers=headers)
    except RemoteMCPError as e:
        return await error_response(request, e, headers=headers)
    except Exception as e:
        return await server_error_response(request, e, headers=headers)


async def handle_register(request: web.Request):
    authorization_server = request.app[AuthorizationServerAppKey]
    headers = _cors(request)
    try:
        try:
            body = await request.json()
        except json.JSONDecodeError as e:
            raise InvalidClientMetadataError("Request body must be a JSON object") from e
        if not isinstance(body, dict):
            raise InvalidClientMetadataError("Request body must be a JSON object")

        registration = await authorization_server.register_client(body)
        return web.json_response(registration, status=201, headers=headers)
    except RemoteMCPError as e:
        return await error_response(request, e, headers=headers)
    except Exception as e:
        return await server_error_response(request, e, headers=headers)


async def handle_register_get(request: web.Request):
    return web.json_response(
        {
            "error": "invalid_request",
            "error_description": "GET method not supported on this endpoint",
        },
        status=405,
        headers=_cors(request),
    )


async def handle_client(request: web.Request):
    authorization_server = request.app[AuthorizationServerAppKey]
    try:
        client = await authorization_server.get_public_client(
            request.query.get("id", None)
        )
        return web.json_response({"data": client}, headers=_cors(request))
    except RemoteMCPError as e:
        return await error_response(request, e, headers=_cors(request))
    except Exception as e:
        return await server_error_response(request, e)


async def handle_cors_preflight(request: web.Request):
    return web.Response(status=204, headers=_cors(request))


async def handle_authorization_server_metadata(request: web.Request):
    settings = request.app[SettingsAppKey]
    metadata = authorization_server_metadata(settings.server_url)
    return web.json_response(metadata.model_dump(), headers=_cors(request))


async def handle_protected_resource_metadata(request: web.Request):
    settings = request.app[SettingsAppKey]
    metadata = protected_resource_metadata(settings.server_url)
    return web.json_response(metadata.model_dump(), headers=_cors(request))


async def handle_mcp_manifest(request: web.Request):
    settings = request.app[SettingsAppKey]
    return web.json_response(
        mcp_manifest(settings.server_url).model_dump(), headers=_cors(request)
    )
