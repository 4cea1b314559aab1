"""
Shared test configuration and fixtures.

Provides a throwaway SQLite database, fake redis, a controllable clock, a
mock external token endpoint served by aiohttp's TestServer, and a fully
wired web application for HTTP level tests.
"""

from typing import Any, Dict, List, Optional, Tuple

import aiohttp
import fakeredis.aioredis
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer
from jwcrypto import jwk, jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tech.remotemcp.auth.app.config import (
    ConnectionManagerAppKey,
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    EncryptionCodecAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    RedisClientAppKey,
    SessionAppKey,
    Settings,
    SettingsAppKey,
)
from tech.remotemcp.auth.app.metrics import NoOpMetricsClient
from tech.remotemcp.auth.app.server import (
    add_routes,
    sentry_middleware,
    statsd_middleware,
    wire_services,
)
from tech.remotemcp.auth.connections.apps import McpApp, OAuthAppSecret
from tech.remotemcp.auth.connections.codec import EncryptionCodec
from tech.remotemcp.auth.connections.manager import ConnectionManager
from tech.remotemcp.auth.connections.oauth2 import OAuth2CredentialService
from tech.remotemcp.auth.connections.values import OAuth2AuthorizationMethod
from tech.remotemcp.auth.model.base import Base
from tech.remotemcp.auth.model.connection import AppConnectionType
from tech.remotemcp.auth.model.health import HealthGauge
from tech.remotemcp.auth.oauth.server import AuthorizationServer
from tech.remotemcp.auth.oauth.store import DatabaseOAuthModel

TEST_ENCRYPTION_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
TEST_SERVER_URL = "https://mcp.example.com"
START_TIME = 1_750_000_000.0


class FakeClock:
    """A settable replacement for time.time."""

    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TokenEndpoint:
    """
    Stand-in for an external app's OAuth2 token endpoint.

    Queued responses are served in order; once the queue is empty every
    request gets a fresh access token. Each request's form and headers are
    recorded.
    """

    def __init__(self) -> None:
        self.url = ""
        self.requests: List[Dict[str, Any]] = []
        self.responses: List[Tuple[int, Any, str]] = []
        self.issued = 0

    def respond(
        self, status: int = 200, body: Any = None, content_type: str = "application/json"
    ) -> None:
        self.responses.append((status, body, content_type))

    async def handle(self, request: web.Request) -> web.Response:
        form = await request.post()
        self.requests.append(
            {
                "form": {k: v for k, v in form.items()},
                "headers": dict(request.headers),
            }
        )

        if len(self.responses) > 0:
            status, body, content_type = self.responses.pop(0)
        else:
            self.issued += 1
            status, body, content_type = (
                200,
                {
                    "access_token": f"upstream-access-{self.issued}",
                    "refresh_token": f"upstream-refresh-{self.issued}",
                    "expires_in": 3600,
                    "token_type": "bearer",
                },
                "application/json",
            )

        if content_type == "application/json":
            return web.json_response(body, status=status)
        return web.Response(text=body, status=status, content_type=content_type)


def make_session_token(key: jwk.JWK, subject: Optional[str]) -> str:
    claims: Dict[str, Any] = {}
    if subject is not None:
        claims["sub"] = subject
    token = jwt.JWT(header={"alg": "ES256", "kid": key.key_id}, claims=claims)
    token.make_signed_token(key)
    return token.serialize()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def codec() -> EncryptionCodec:
    return EncryptionCodec(TEST_ENCRYPTION_KEY)


@pytest.fixture
def metrics_client() -> NoOpMetricsClient:
    return NoOpMetricsClient()


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    """
    Create a SQLite engine with every table.

    A file database rather than :memory: so concurrent sessions get their own
    connections and see each other's commits the way they would on postgres.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False, "timeout": 15},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def database_session_maker(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def fake_redis_client():
    """Provide fake Redis client for unit tests."""
    client = fakeredis.aioredis.FakeRedis(decode_responses=False)
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def http_session():
    async with aiohttp.ClientSession() as session:
        yield session


@pytest_asyncio.fixture
async def token_endpoint():
    """Serve a TokenEndpoint on a local port."""
    endpoint = TokenEndpoint()
    app = web.Application()
    app.router.add_post("/token", endpoint.handle)

    server = TestServer(app)
    await server.start_server()
    endpoint.url = str(server.make_url("/token"))

    yield endpoint

    await server.close()


@pytest.fixture
def test_apps(token_endpoint) -> Dict[str, McpApp]:
    """An app registry whose OAuth2 apps exchange codes at the mock endpoint."""
    return {
        "github": McpApp(
            name="github",
            display_name="GitHub",
            auth_type=AppConnectionType.OAUTH2,
            auth_url="https://github.example.com/authorize",
            token_url=token_endpoint.url,
            scope=["repo"],
        ),
        "notion": McpApp(
            name="notion",
            display_name="Notion",
            auth_type=AppConnectionType.OAUTH2,
            auth_url="https://notion.example.com/authorize",
            token_url=token_endpoint.url,
            authorization_method=OAuth2AuthorizationMethod.HEADER,
        ),
        "linear": McpApp("linear", "Linear", AppConnectionType.SECRET_TEXT),
        "fetch": McpApp("fetch", "Fetch", AppConnectionType.NO_AUTH),
    }


@pytest.fixture
def app_secrets() -> Dict[str, OAuthAppSecret]:
    return {
        "github": OAuthAppSecret(client_id="gh-client", client_secret="gh-secret"),
        "notion": OAuthAppSecret(client_id="notion-client", client_secret="notion-secret"),
    }


@pytest.fixture
def oauth2_service(http_session, metrics_client, clock) -> OAuth2CredentialService:
    return OAuth2CredentialService(http_session, metrics_client, timeout=5.0, clock=clock)


@pytest.fixture
def connection_manager(
    database_session_maker,
    fake_redis_client,
    codec,
    oauth2_service,
    app_secrets,
    test_apps,
    clock,
) -> ConnectionManager:
    return ConnectionManager(
        database_session_maker,
        fake_redis_client,
        codec,
        oauth2_service,
        app_secrets,
        lock_wait=2.0,
        apps=test_apps,
        clock=clock,
    )


@pytest.fixture
def oauth_model(database_session_maker) -> DatabaseOAuthModel:
    return DatabaseOAuthModel(database_session_maker)


@pytest.fixture
def authorization_server(oauth_model, clock) -> AuthorizationServer:
    return AuthorizationServer(oauth_model, clock=clock)


@pytest.fixture
def session_key() -> jwk.JWK:
    return jwk.JWK.generate(kty="EC", crv="P-256", kid="test-session-key", alg="ES256")


@pytest.fixture
def settings(session_key) -> Settings:
    json_web_keys = jwk.JWKSet()
    json_web_keys.add(session_key)
    return Settings(
        encryption_key=TEST_ENCRYPTION_KEY,
        server_url=TEST_SERVER_URL,
        json_web_keys=json_web_keys,
        metrics_backend="none",
        oauth_app_secrets={
            "github": {"clientId": "gh-client", "clientSecret": "gh-secret"}
        },
    )


@pytest_asyncio.fixture
async def client(
    settings,
    engine,
    database_session_maker,
    fake_redis_client,
    http_session,
    metrics_client,
    connection_manager,
):
    """
    A TestClient for the full route table.

    Resources are injected directly instead of through `background_tasks`, and
    the connection manager uses the mock token endpoint's app registry.
    """
    app = web.Application(middlewares=[statsd_middleware, sentry_middleware])
    app[SettingsAppKey] = settings
    app[HealthGaugeAppKey] = HealthGauge()
    app[EncryptionCodecAppKey] = settings.encryption_codec()
    app[DatabaseAppKey] = engine
    app[DatabaseSessionMakerAppKey] = database_session_maker
    app[SessionAppKey] = http_session
    app[RedisClientAppKey] = fake_redis_client
    app[MetricsClientAppKey] = metrics_client

    add_routes(app)
    wire_services(app)
    app[ConnectionManagerAppKey] = connection_manager

    test_client = TestClient(TestServer(app))
    await test_client.start_server()

    yield test_client

    await test_client.close()
