"""
Connection Manager

Owns the lifecycle of a user's stored app credentials:

    claim -> encrypt -> insert                      (upsert)
    fetch -> decrypt -> [refresh -> encrypt -> CAS write] -> sanitize   (get_one)

Refreshes are serialised per connection with a short redis lock, and the write
is a compare-and-swap on `AppConnection.version`, so two workers that both see
a stale token do one upstream exchange between them and never interleave
ciphertext. When a refresh or a decrypt fails the row is flagged ERROR and the
error is raised; ERROR rows are never refreshed again until the user
reconnects.
"""

import asyncio
import logging
import secrets
from datetime import datetime, timezone
from time import time
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from redis import asyncio as redis
from redis.exceptions import WatchError
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from ulid import ULID

from tech.remotemcp.auth.connections.apps import McpApp, OAuthAppSecret, get_app
from tech.remotemcp.auth.connections.codec import EncryptionCodec
from tech.remotemcp.auth.connections.oauth2 import OAuth2CredentialService
from tech.remotemcp.auth.connections.values import (
    AppConnectionValue,
    AppConnectionValueAdapter,
    AppConnectionView,
    ClaimOAuth2Request,
    OAuth2ConnectionInput,
    OAuth2ConnectionValue,
    OAuth2GrantType,
    UpsertConnectionParams,
    sanitize,
)
from tech.remotemcp.auth.errors import (
    ConnectionStateError,
    DecryptionError,
    NotFoundError,
    OAuth2ExchangeError,
    ValidationError,
)
from tech.remotemcp.auth.model.base import ensure_utc
from tech.remotemcp.auth.model.connection import AppConnection, AppConnectionStatus

logger = logging.getLogger(__name__)


def needs_refresh(
    connection: AppConnection, value: AppConnectionValue, now: int, skew: int = 0
) -> bool:
    """
    Whether a connection's credential is due for a refresh at `now`.

    True for an OAUTH2 value once `now + skew` reaches `claimed_at + expires_in`
    (`expires_in` defaults to one hour). Never true for ERROR connections,
    for non-OAuth2 values, or for authorization-code values without a refresh
    token since there is nothing to refresh them with.
    """
    if connection.status == AppConnectionStatus.ERROR.value:
        return False
    if not isinstance(value, OAuth2ConnectionValue):
        return False
    if (
        value.grant_type == OAuth2GrantType.AUTHORIZATION_CODE
        and not value.refresh_token
    ):
        return False
    return now + skew >= value.expires_at()


def _epoch(value: datetime) -> int:
    return int(ensure_utc(value).timestamp())  # type: ignore[union-attr]


class ConnectionManager:
    def __init__(
        self,
        database_session_maker: async_sessionmaker[AsyncSession],
        redis_client: redis.Redis,
        codec: EncryptionCodec,
        oauth2_service: OAuth2CredentialService,
        app_secrets: Dict[str, OAuthAppSecret],
        refresh_skew: int = 60,
        lock_timeout: int = 30,
        lock_wait: float = 10.0,
        apps: Optional[Dict[str, McpApp]] = None,
        clock: Callable[[], float] = time,
    ) -> None:
        self._database_session_maker = database_session_maker
        self._redis = redis_client
        self._codec = codec
        self._oauth2 = oauth2_service
        self._app_secrets = app_secrets
        self._refresh_skew = refresh_skew
        self._lock_timeout = lock_timeout
        self._lock_wait = lock_wait
        self._apps = apps
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), timezone.utc)

    async def upsert(self, params: UpsertConnectionParams) -> AppConnectionView:
        """Claim or accept a credential, encrypt it and store a new ACTIVE connection."""
        app = get_app(params.app_name, self._apps)
        if app is None:
            raise NotFoundError.app(params.app_name)

        submitted = params.value
        if submitted.type != app.auth_type.value:
            raise ValidationError(
                f"error-connection-1003 App {app.name} expects a {app.auth_type.value} connection, got {submitted.type}"
            )

        value: AppConnectionValue
        if isinstance(submitted, OAuth2ConnectionInput):
            value = await self._claim(app, submitted)
        else:
            value = submitted

        now = self._now()
        connection = AppConnection(
            id=str(ULID()),
            app_name=app.name,
            owner_id=params.owner_id,
            display_name=params.display_name,
            type=app.auth_type.value,
            status=AppConnectionStatus.ACTIVE.value,
            value=self._codec.encrypt(value.model_dump(mode="json")).to_json(),
            version=1,
            created_at=now,
            updated_at=now,
        )

        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                database_session.add(connection)

        logger.info(
            "stored %s connection %s for owner %s",
            app.name,
            connection.id,
            params.owner_id,
        )
        return self._view(connection, value)

    async def _claim(
        self, app: McpApp, submitted: OAuth2ConnectionInput
    ) -> OAuth2ConnectionValue:
        secret = self._app_secrets.get(app.name, None)
        if secret is None:
            raise NotFoundError.app_secrets(app.name)
        if app.token_url is None:
            raise NotFoundError.app(app.name)

        return await self._oauth2.claim(
            app.name,
            ClaimOAuth2Request(
                code=submitted.code,
                code_verifier=submitted.code_verifier,
                client_id=secret.client_id,
                client_secret=secret.client_secret,
                token_url=app.token_url,
                scope=submitted.scope,
                redirect_url=submitted.redirect_url,
                grant_type=submitted.grant_type,
                authorization_method=app.authorization_method,
                props=submitted.props,
            ),
        )

    async def get_one(self, id: str, owner_id: str) -> Optional[AppConnectionView]:
        """
        Fetch a connection, refreshing its credential first when it is due.

        Returns None when no connection with that id belongs to the owner. The
        returned value never contains `client_secret` or `refresh_token`.
        """
        connection = await self._fetch(id, owner_id)
        if connection is None:
            return None

        value = await self._decrypt(connection)
        now = int(self._clock())
        if needs_refresh(connection, value, now, self._refresh_skew):
            connection, value = await self._refresh(connection, value)

        return self._view(connection, value)

    async def get_credentials(self, id: str, owner_id: str) -> AppConnectionView:
        """
        Fetch a connection whose credential is about to be used by a tool.

        Unlike `get_one` this refuses connections that are not ACTIVE so a
        tool never runs with credentials known to be broken.
        """
        view = await self.get_one(id, owner_id)
        if view is None:
            raise NotFoundError.connection(id)
        if view.status != AppConnectionStatus.ACTIVE.value:
            raise ConnectionStateError.needs_reconnect(id, view.status)
        return view

    async def list(
        self, owner_id: str, app_name: Optional[str] = None
    ) -> List[AppConnectionView]:
        """Connection metadata for an owner, newest first. Values are not decrypted."""
        stmt = select(AppConnection).where(AppConnection.owner_id == owner_id)
        if app_name is not None:
            stmt = stmt.where(AppConnection.app_name == app_name)
        stmt = stmt.order_by(AppConnection.created_at.desc(), AppConnection.id.desc())

        async with self._database_session_maker() as database_session:
            connections = (await database_session.scalars(stmt)).all()

        return [self._view(connection, None) for connection in connections]

    async def count(self, owner_id: str) -> int:
        stmt = select(func.count()).select_from(AppConnection).where(
            AppConnection.owner_id == owner_id
        )
        async with self._database_session_maker() as database_session:
            return (await database_session.scalar(stmt)) or 0

    async def delete(self, id: str, owner_id: str) -> bool:
        stmt = delete(AppConnection).where(
            AppConnection.id == id, AppConnection.owner_id == owner_id
        )
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                result = await database_session.execute(stmt)
        return result.rowcount == 1

    async def _fetch(self, id: str, owner_id: str) -> Optional[AppConnection]:
        stmt = select(AppConnection).where(
            AppConnection.id == id, AppConnection.owner_id == owner_id
        )
        async with self._database_session_maker() as database_session:
            return (await database_session.scalars(stmt)).first()

    async def _decrypt(self, connection: AppConnection) -> AppConnectionValue:
        try:
            plaintext = self._codec.decrypt(connection.value)
            try:
                value = AppConnectionValueAdapter.validate_python(plaintext)
            except PydanticValidationError as e:
                raise DecryptionError(
                    "error-connection-1004 Decrypted value is not a connection value"
                ) from e
            if value.type != connection.type:
                raise DecryptionError(
                    f"error-connection-1004 Decrypted {value.type} value stored as {connection.type}"
                )
            return value
        except DecryptionError:
            logger.exception("unable to decrypt connection %s", connection.id)
            await self._mark_error(connection)
            raise

    async def _refresh(
        self, connection: AppConnection, value: AppConnectionValue
    ) -> Tuple[AppConnection, AppConnectionValue]:
        lock_key = f"connection:refresh:{connection.id}"
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._lock_wait
        lock_token = secrets.token_hex(16)

        while not await self._redis.set(
            lock_key, lock_token, nx=True, ex=self._lock_timeout
        ):
            # Another worker is refreshing. Use its result once it lands.
            await asyncio.sleep(0.1)
            current = await self._fetch(connection.id, connection.owner_id)
            if current is None:
                raise NotFoundError.connection(connection.id)
            if (
                current.version != connection.version
                or current.status != connection.status
            ):
                return current, await self._decrypt(current)
            if loop.time() >= deadline:
                raise ConnectionStateError.refresh_in_progress(connection.id)

        try:
            current = await self._fetch(connection.id, connection.owner_id)
            if current is None:
                raise NotFoundError.connection(connection.id)
            if current.version != connection.version:
                connection, value = current, await self._decrypt(current)
                if not needs_refresh(
                    connection, value, int(self._clock()), self._refresh_skew
                ):
                    return connection, value

            if not isinstance(value, OAuth2ConnectionValue):
                return connection, value
            try:
                refreshed = await self._oauth2.refresh(
                    connection.app_name, connection.owner_id, value
                )
            except OAuth2ExchangeError:
                logger.exception(
                    "refresh failed for %s connection %s",
                    connection.app_name,
                    connection.id,
                )
                await self._mark_error(connection)
                raise

            if not await self._write_value(connection, refreshed):
                # Lost the compare-and-swap; the other writer's value stands.
                current = await self._fetch(connection.id, connection.owner_id)
                if current is None:
                    raise NotFoundError.connection(connection.id)
                return current, await self._decrypt(current)

            updated = await self._fetch(connection.id, connection.owner_id)
            if updated is None:
                raise NotFoundError.connection(connection.id)
            return updated, refreshed
        finally:
            await self._release_lock(lock_key, lock_token)

    async def _release_lock(self, lock_key: str, lock_token: str) -> None:
        # Only delete the lock if it still holds our token; it may have expired
        # and been taken by another worker.
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(lock_key)
                current = await pipe.get(lock_key)
                if isinstance(current, bytes):
                    current = current.decode("utf-8")
                if current != lock_token:
                    logger.warning("refresh lock %s expired before release", lock_key)
                    return
                pipe.multi()
                pipe.delete(lock_key)
                await pipe.execute()
            except WatchError:
                logger.warning("refresh lock %s changed hands before release", lock_key)

    async def _write_value(
        self, connection: AppConnection, value: AppConnectionValue
    ) -> bool:
        stmt = (
            update(AppConnection)
            .where(
                AppConnection.id == connection.id,
                AppConnection.version == connection.version,
            )
            .values(
                value=self._codec.encrypt(value.model_dump(mode="json")).to_json(),
                version=connection.version + 1,
                status=AppConnectionStatus.ACTIVE.value,
                updated_at=self._now(),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                result = await database_session.execute(stmt)
        return result.rowcount == 1

    async def _mark_error(self, connection: AppConnection) -> None:
        stmt = (
            update(AppConnection)
            .where(AppConnection.id == connection.id)
            .values(status=AppConnectionStatus.ERROR.value, updated_at=self._now())
            .execution_options(synchronize_session=False)
        )
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                await database_session.execute(stmt)

    @staticmethod
    def _view(
        connection: AppConnection, value: Optional[AppConnectionValue]
    ) -> AppConnectionView:
        return AppConnectionView(
            id=connection.id,
            app_name=connection.app_name,
            owner_id=connection.owner_id,
            display_name=connection.display_name,
            type=connection.type,
            status=connection.status,
            created_at=_epoch(connection.created_at),
            updated_at=_epoch(connection.updated_at),
            value=sanitize(value) if value is not None else None,
        )
