import asyncio
import contextlib
import logging
from time import time
from typing import Optional

import aiohttp
from aiohttp import web
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
)
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from tech.remotemcp.auth.app.config import (
    AuthorizationServerAppKey,
    CleanupTaskAppKey,
    ConnectionManagerAppKey,
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    EncryptionCodecAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    RedisClientAppKey,
    RedisPoolAppKey,
    SessionAppKey,
    Settings,
    SettingsAppKey,
    TickHealthTaskAppKey,
)
from tech.remotemcp.auth.app.handlers.connections import (
    handle_create_connection,
    handle_delete_connection,
    handle_get_connection,
    handle_list_connections,
)
from tech.remotemcp.auth.app.handlers.internal import (
    handle_internal_alive,
    handle_internal_me,
    handle_internal_ready,
)
from tech.remotemcp.auth.app.handlers.oauth import (
    handle_authorization_server_metadata,
    handle_authorize,
    handle_client,
    handle_cors_preflight,
    handle_mcp_manifest,
    handle_protected_resource_metadata,
    handle_register,
    handle_register_get,
    handle_revoke,
    handle_token,
)
from tech.remotemcp.auth.app.metrics import create_metrics_client
from tech.remotemcp.auth.app.tasks import oauth_cleanup_task, tick_health_task
from tech.remotemcp.auth.connections.manager import ConnectionManager
from tech.remotemcp.auth.connections.oauth2 import OAuth2CredentialService
from tech.remotemcp.auth.model.health import HealthGauge
from tech.remotemcp.auth.oauth.server import AuthorizationServer
from tech.remotemcp.auth.oauth.store import DatabaseOAuthModel

logger = logging.getLogger(__name__)


def wire_services(app: web.Application) -> None:
    """Build the authorization server and connection manager from shared resources."""
    settings: Settings = app[SettingsAppKey]

    app[AuthorizationServerAppKey] = AuthorizationServer(
        DatabaseOAuthModel(app[DatabaseSessionMakerAppKey]),
        authorization_code_lifetime=settings.authorization_code_lifetime,
        always_issue_new_refresh_token=settings.always_issue_new_refresh_token,
    )

    app[ConnectionManagerAppKey] = ConnectionManager(
        app[DatabaseSessionMakerAppKey],
        app[RedisClientAppKey],
        app[EncryptionCodecAppKey],
        OAuth2CredentialService(
            app[SessionAppKey],
            app[MetricsClientAppKey],
            timeout=settings.token_exchange_timeout,
        ),
        settings.oauth_app_secrets,
        refresh_skew=settings.connection_refresh_skew,
    )


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    engine = create_async_engine(str(settings.pg_dsn))
    app[DatabaseAppKey] = engine
    database_session = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    app[DatabaseSessionMakerAppKey] = database_session

    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        # Only the method and URL. Token exchange bodies carry client secrets.
        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logging.info("Starting request: %s %s", params.method, params.url)

        async def on_request_end(
            session, trace_config_ctx, params: aiohttp.TraceRequestEndParams
        ):
            logging.info(
                "Ending request: %s %s %s",
                params.method,
                params.url,
                params.response.status,
            )

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    app[SessionAppKey] = aiohttp.ClientSession(trace_configs=[trace_config])

    app[RedisPoolAppKey] = redis.ConnectionPool.from_url(str(settings.redis_dsn))
    app[RedisClientAppKey] = redis.Redis(connection_pool=app[RedisPoolAppKey])

    metrics_client = create_metrics_client(
        settings.metrics_backend,
        host=settings.statsd_host,
        port=settings.statsd_port,
        prefix=settings.statsd_prefix,
        debug=settings.debug,
    )
    await metrics_client.connect()
    app[MetricsClientAppKey] = metrics_client

    wire_services(app)

    logger.info("Startup complete")

    app[TickHealthTaskAppKey] = asyncio.create_task(tick_health_task(app))
    app[CleanupTaskAppKey] = asyncio.create_task(oauth_cleanup_task(app))

    yield

    logger.info("Shutting down background tasks")

    app[TickHealthTaskAppKey].cancel()
    app[CleanupTaskAppKey].cancel()

    with contextlib.suppress(asyncio.exceptions.CancelledError):
        await app[TickHealthTaskAppKey]

    with contextlib.suppress(asyncio.exceptions.CancelledError):
        await app[CleanupTaskAppKey]

    await app[DatabaseAppKey].dispose()
    await app[SessionAppKey].close()
    await app[RedisPoolAppKey].aclose()
    await app[MetricsClientAppKey].close()


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        response = await handler(request)
        return response
    except web.HTTPException:
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        raise e


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    metrics_client = request.app[MetricsClientAppKey]
    request_method: str = request.method
    # The matched route, not the raw path, keeps ids out of metric tags.
    resource = request.match_info.route.resource
    request_path = resource.canonical if resource is not None else "unmatched"

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except web.HTTPException as e:
        response_status_code = e.status
        raise
    except Exception as e:
        metrics_client.increment(
            "server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        raise e
    finally:
        metrics_client.timer(
            "server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        metrics_client.increment(
            "server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


def add_routes(app: web.Application) -> None:
    app.add_routes(
        [
            web.get(
                "/.well-known/oauth-authorization-server",
                handle_authorization_server_metadata,
            ),
            web.get(
                "/.well-known/oauth-authorization-server/{tail:.*}",
                handle_authorization_server_metadata,
            ),
            web.get(
                "/.well-known/oauth-protected-resource",
                handle_protected_resource_metadata,
            ),
            web.get("/.well-known/mcp.json", handle_mcp_manifest),
        ]
    )

    app.add_routes(
        [
            web.get("/authorize", handle_authorize),
            web.get("/api/oauth/authorize", handle_authorize),
            web.post("/api/oauth/token", handle_token),
            web.post("/api/oauth/revoke", handle_revoke),
            web.post("/api/oauth/register", handle_register),
            web.get("/api/oauth/register", handle_register_get),
            web.get("/api/oauth/client", handle_client),
            web.options("/api/oauth/{tail:.*}", handle_cors_preflight),
        ]
    )

    app.add_routes(
        [
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
            web.get("/internal/api/me", handle_internal_me),
            web.get("/internal/api/connections", handle_list_connections),
            web.post("/internal/api/connections", handle_create_connection),
            web.get("/internal/api/connections/{id}", handle_get_connection),
            web.delete("/internal/api/connections/{id}", handle_delete_connection),
        ]
    )


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            integrations=[AioHttpIntegration()],
        )
    app = web.Application(middlewares=[statsd_middleware, sentry_middleware])

    app[SettingsAppKey] = settings
    app[HealthGaugeAppKey] = HealthGauge()
    app[EncryptionCodecAppKey] = settings.encryption_codec()

    add_routes(app)

    app.cleanup_ctx.append(background_tasks)

    return app
