"""
Configuration

Settings are loaded from environment variables with pydantic-settings, and the
shared resources built from them are handed to handlers and background tasks
through typed aiohttp AppKeys.

Required in every environment:

- ENCRYPTION_KEY: 32 byte key for stored connection credentials
  (64 hex characters, a 32 character string, or base64)
- SERVER_URL: the public base URL, used as the OAuth issuer
"""

import asyncio
import json
import logging
from typing import Annotated, Dict, Final, Optional

from aiohttp import ClientSession, web
from jwcrypto import jwk
from pydantic import (
    AliasChoices,
    Field,
    PostgresDsn,
    RedisDsn,
    ValidationError as PydanticValidationError,
    field_validator,
)
from pydantic_settings import BaseSettings, NoDecode
from redis import asyncio as redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from tech.remotemcp.auth.app.metrics import MetricsClient
from tech.remotemcp.auth.connections.apps import OAuthAppSecret
from tech.remotemcp.auth.connections.codec import EncryptionCodec, load_key
from tech.remotemcp.auth.connections.manager import ConnectionManager
from tech.remotemcp.auth.model.health import HealthGauge
from tech.remotemcp.auth.oauth.server import AuthorizationServer

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    debug: bool = False
    """
    Enable debug logging of outbound HTTP requests.
    Set with DEBUG=true environment variable.
    """

    allowed_domains: str = "http://localhost:3000"
    """
    Comma-separated list of origins allowed for CORS on the platform API.
    Set with ALLOWED_DOMAINS environment variable.
    """

    http_port: int = Field(alias="port", default=5100)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    server_url: str = "http://localhost:5100"
    """
    Public base URL. Used as the OAuth issuer and to build every discovery URL.
    Set with SERVER_URL environment variable.
    """

    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. No error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    redis_dsn: RedisDsn = Field(
        "redis://valkey:6379/1?decode_responses=True",
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )  # type: ignore
    """
    Redis connection string, used for connection refresh locks.
    Set with REDIS_DSN or REDIS_URL environment variables.
    """

    pg_dsn: PostgresDsn = Field(
        "postgresql+asyncpg://postgres:password@db/remotemcp",
        validation_alias=AliasChoices("pg_dsn", "database_url"),
    )  # type: ignore
    """
    PostgreSQL connection string.
    Set with PG_DSN or DATABASE_URL environment variables.
    """

    encryption_key: str
    """
    Key for stored connection credentials (required, no default).
    Set with ENCRYPTION_KEY environment variable.
    """

    encryption_require_tag: bool = False
    """
    Refuse stored credentials without an integrity tag. Enable once every row
    has been rewritten by this service.
    Set with ENCRYPTION_REQUIRE_TAG environment variable.
    """

    json_web_keys: Annotated[jwk.JWKSet, NoDecode] = jwk.JWKSet()
    """
    Keys that verify platform session JWTs.
    A JWKSet object or the path to a JSON file containing a JWK Set.
    Set with JSON_WEB_KEYS environment variable.
    """

    session_cookie_name: str = "session"
    """
    Cookie holding the platform session JWT.
    Set with SESSION_COOKIE_NAME environment variable.
    """

    oauth_app_secrets: Annotated[Dict[str, OAuthAppSecret], NoDecode] = dict()
    """
    Client credentials for external OAuth2 apps as a JSON object:
    `{"github": {"clientId": "...", "clientSecret": "..."}}`.
    Set with OAUTH_APP_SECRETS environment variable.
    """

    token_exchange_timeout: float = 10.0
    """
    Timeout in seconds for calls to external token endpoints.
    Set with TOKEN_EXCHANGE_TIMEOUT environment variable.
    """

    connection_refresh_skew: int = 60
    """
    Refresh OAuth2 connections this many seconds before they expire.
    Set with CONNECTION_REFRESH_SKEW environment variable.
    """

    authorization_code_lifetime: int = 300
    """
    Lifetime in seconds of authorization codes issued to MCP clients.
    Set with AUTHORIZATION_CODE_LIFETIME environment variable.
    """

    always_issue_new_refresh_token: bool = False
    """
    Rotate refresh tokens on every refresh_token grant.
    Set with ALWAYS_ISSUE_NEW_REFRESH_TOKEN environment variable.
    """

    cleanup_interval: int = 3600
    """
    Seconds between sweeps of expired authorization codes and tokens.
    Set with CLEANUP_INTERVAL environment variable.
    """

    metrics_backend: str = "telegraf"
    """
    'telegraf' or 'none'.
    Set with METRICS_BACKEND environment variable.
    """

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    """
    StatsD/Telegraf host for metrics collection.
    Set with TELEGRAF_HOST environment variable.
    """

    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    """
    StatsD/Telegraf port for metrics collection.
    Set with TELEGRAF_PORT environment variable.
    """

    statsd_prefix: str = "remotemcp"
    """
    Prefix for all StatsD metrics from this service.
    Set with STATSD_PREFIX environment variable.
    """

    @field_validator("server_url", mode="after")
    @classmethod
    def strip_server_url(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("encryption_key", mode="after")
    @classmethod
    def validate_encryption_key(cls, v: str) -> str:
        load_key(v)
        return v

    @field_validator("json_web_keys", mode="before")
    @classmethod
    def decode_json_web_keys(cls, v) -> jwk.JWKSet:
        if isinstance(v, jwk.JWKSet):
            return v
        elif isinstance(v, str):
            with open(v) as fd:
                data = fd.read()
                return jwk.JWKSet.from_json(data)
        raise ValueError(
            "json_web_keys must be a JWKSet object or a valid JSON file path"
        )

    @field_validator("oauth_app_secrets", mode="before")
    @classmethod
    def decode_oauth_app_secrets(cls, v) -> Dict[str, OAuthAppSecret]:
        """
        Parse the app secrets JSON object.

        Entries without a usable client id and secret are logged and skipped
        rather than failing startup, so one bad entry only disables its app.
        """
        if isinstance(v, str):
            v = json.loads(v) if v.strip() else {}
        if not isinstance(v, dict):
            raise ValueError("oauth_app_secrets must be a JSON object")

        secrets: Dict[str, OAuthAppSecret] = {}
        for app_name, entry in v.items():
            if isinstance(entry, OAuthAppSecret):
                secrets[app_name] = entry
                continue
            try:
                secrets[app_name] = OAuthAppSecret.model_validate(entry)
            except PydanticValidationError:
                logger.warning("ignoring invalid oauth app secrets for %s", app_name)
        return secrets

    def allowed_origins(self) -> set[str]:
        return {d.strip() for d in self.allowed_domains.split(",") if d.strip()}

    def encryption_codec(self) -> EncryptionCodec:
        return EncryptionCodec(
            self.encryption_key, require_tag=self.encryption_require_tag
        )


SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

DatabaseAppKey: Final = web.AppKey("database", AsyncEngine)
"""AppKey for accessing the SQLAlchemy async database engine"""

DatabaseSessionMakerAppKey: Final = web.AppKey(
    "database_session_maker", async_sessionmaker[AsyncSession]
)
"""AppKey for accessing the SQLAlchemy async session factory"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

RedisPoolAppKey: Final = web.AppKey("redis_pool", redis.ConnectionPool)
RedisClientAppKey: Final = web.AppKey("redis_client", redis.Redis)

HealthGaugeAppKey: Final = web.AppKey("health_gauge", HealthGauge)

MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
"""AppKey for the metrics client (Telegraf or no-op)"""

EncryptionCodecAppKey: Final = web.AppKey("encryption_codec", EncryptionCodec)

AuthorizationServerAppKey: Final = web.AppKey(
    "authorization_server", AuthorizationServer
)
"""AppKey for the OAuth authorization server issuing tokens to MCP clients"""

ConnectionManagerAppKey: Final = web.AppKey("connection_manager", ConnectionManager)
"""AppKey for the manager of users' stored app credentials"""

TickHealthTaskAppKey: Final = web.AppKey("tick_health_task", asyncio.Task[None])
"""AppKey for the background task that decays the health gauge"""

CleanupTaskAppKey: Final = web.AppKey("cleanup_task", asyncio.Task[None])
"""AppKey for the background task that deletes expired codes and tokens"""
