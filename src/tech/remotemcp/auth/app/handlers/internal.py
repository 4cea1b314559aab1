import logging

from aiohttp import web

from tech.remotemcp.auth.app.config import HealthGaugeAppKey
from tech.remotemcp.auth.app.handlers.helpers import (
    auth_context_helper,
    error_response,
    server_error_response,
)
from tech.remotemcp.auth.errors import RemoteMCPError
from tech.remotemcp.auth.model.oauth import OAuthClientScope

logger = logging.getLogger(__name__)


async def handle_internal_me(request: web.Request):
    """Who the presented session or access token acts for."""
    try:
        auth_context = await auth_context_helper(request, OAuthClientScope.READ)
        return web.json_response(
            {
                "user_id": auth_context.user_id,
                "client_id": auth_context.client_id,
                "scope": " ".join(auth_context.scope),
            }
        )
    except RemoteMCPError as e:
        return await error_response(request, e)
    except Exception as e:
        return await server_error_response(request, e)


async def handle_internal_ready(request: web.Request):
    health_gauge = request.app[HealthGaugeAppKey]
    if await health_gauge.is_healthy():
        return web.Response(status=200)
    return web.Response(status=503)


async def handle_internal_alive(request: web.Request):
    return web.Response(status=200)
