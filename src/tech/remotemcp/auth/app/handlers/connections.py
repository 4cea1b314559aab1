"""
Connection API Handlers

Thin handlers over the ConnectionManager. The caller is either a platform
session (all scopes) or an access token from this server: `read` for GET,
`write` for POST and DELETE. Connections are always scoped to the caller's
user id; another user's connection id answers 404.
"""

import json
import logging

from aiohttp import web
from pydantic import ValidationError as PydanticValidationError

from tech.remotemcp.auth.app.config import ConnectionManagerAppKey
from tech.remotemcp.auth.app.handlers.helpers import (
    auth_context_helper,
    error_response,
    server_error_response,
)
from tech.remotemcp.auth.connections.values import UpsertConnectionParams
from tech.remotemcp.auth.errors import (
    NotFoundError,
    RemoteMCPError,
    ValidationError,
)
from tech.remotemcp.auth.model.oauth import OAuthClientScope

logger = logging.getLogger(__name__)


async def handle_list_connections(request: web.Request):
    connection_manager = request.app[ConnectionManagerAppKey]
    try:
        auth_context = await auth_context_helper(request, OAuthClientScope.READ)
        connections = await connection_manager.list(
            auth_context.user_id, request.query.get("app_name", None)
        )
        return web.json_response(
            {"data": [connection.model_dump() for connection in connections]}
        )
    except RemoteMCPError as e:
        return await error_response(request, e)
    except Exception as e:
        return await server_error_response(request, e)


async def handle_create_connection(request: web.Request):
    """
    Store a new connection for the caller.

    Body: `{"app_name", "display_name", "value"}` where `value` is one of

    * `{"type": "OAUTH2", "code", "code_verifier"?, "scope"?, "redirect_url"?, "props"?}`
    * `{"type": "SECRET_TEXT", "secret_text"}`
    * `{"type": "NO_AUTH"}`

    OAUTH2 codes are exchanged at the app's token endpoint before anything is
    stored. An upstream rejection answers 502 and stores nothing.
    """
    connection_manager = request.app[ConnectionManagerAppKey]
    try:
        auth_context = await auth_context_helper(request, OAuthClientScope.WRITE)

        try:
            body = await request.json()
        except json.JSONDecodeError as e:
            raise ValidationError("error-connection-1004 Request body must be JSON") from e
        if not isinstance(body, dict):
            raise ValidationError("error-connection-1004 Request body must be a JSON object")

        try:
            params = UpsertConnectionParams.model_validate(
                {**body, "owner_id": auth_context.user_id}
            )
        except PydanticValidationError as e:
            raise ValidationError(
                "error-connection-1004 "
                + ", ".join(error["msg"] for error in e.errors())
            ) from e

        connection = await connection_manager.upsert(params)
        return web.json_response({"data": connection.model_dump()}, status=201)
    except RemoteMCPError as e:
        return await error_response(request, e)
    except Exception as e:
        return await server_error_response(request, e)


async def handle_get_connection(request: web.Request):
    """
    Fetch one connection, refreshing an expiring OAUTH2 credential first.

    The value never includes `client_secret` or `refresh_token`.
    """
    connection_manager = request.app[ConnectionManagerAppKey]
    connection_id = request.match_info["id"]
    try:
        auth_context = await auth_context_helper(request, OAuthClientScope.READ)
        connection = await connection_manager.get_one(
            connection_id, auth_context.user_id
        )
        if connection is None:
            raise NotFoundError.connection(connection_id)
        return web.json_response({"data": connection.model_dump()})
    except RemoteMCPError as e:
        return await error_response(request, e)
    except Exception as e:
        return await server_error_response(request, e)


async def handle_delete_connection(request: web.Request):
    connection_manager = request.app[ConnectionManagerAppKey]
    connection_id = request.match_info["id"]
    try:
        auth_context = await auth_context_helper(request, OAuthClientScope.WRITE)
        deleted = await connection_manager.delete(connection_id, auth_context.user_id)
        if not deleted:
            raise NotFoundError.connection(connection_id)
        logger.info(
            "deleted connection %s for owner %s", connection_id, auth_context.user_id
        )
        return web.Response(status=204)
    except RemoteMCPError as e:
        return await error_response(request, e)
    except Exception as e:
        return await server_error_response(request, e)
