import asyncio
from datetime import datetime, timezone
import logging
from typing import NoReturn

from aiohttp import web
import sentry_sdk

from tech.remotemcp.auth.app.config import (
    DatabaseSessionMakerAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    SettingsAppKey,
)
from tech.remotemcp.auth.oauth.store import DatabaseOAuthModel

logger = logging.getLogger(__name__)


async def tick_health_task(app: web.Application) -> NoReturn:
    """
    Decay the health gauge by 1 every 30 seconds.
    """

    logger.info("Starting health gauge task")

    health_gauge = app[HealthGaugeAppKey]
    while True:
        await health_gauge.tick()
        await asyncio.sleep(30)


async def oauth_cleanup_task(app: web.Application) -> NoReturn:
    """
    Delete expired authorization codes, and token pairs whose refresh token
    has expired, every `cleanup_interval` seconds.
    """

    logger.info("Starting oauth cleanup task")

    settings = app[SettingsAppKey]
    metrics_client = app[MetricsClientAppKey]
    store = DatabaseOAuthModel(app[DatabaseSessionMakerAppKey])

    while True:
        try:
            codes, tokens = await store.delete_expired(datetime.now(timezone.utc))
            if codes > 0 or tokens > 0:
                logger.info(
                    "Deleted %d expired authorization codes and %d expired tokens",
                    codes,
                    tokens,
                )
            metrics_client.increment("oauth.cleanup.codes", codes)
            metrics_client.increment("oauth.cleanup.tokens", tokens)
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Error during oauth cleanup")
            metrics_client.increment(
                "oauth.cleanup.exception",
                1,
                tag_dict={"exception": type(e).__name__},
            )

        await asyncio.sleep(settings.cleanup_interval)
