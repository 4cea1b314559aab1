import logging
import secrets
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tech.remotemcp.auth.model.oauth import (
    OAuthAuthorizationCode,
    OAuthClient,
    OAuthToken,
)

logger = logging.getLogger(__name__)


def generate_token() -> str:
    """256 bits from the system CSPRNG, hex encoded."""
    return secrets.token_hex(32)


class DatabaseOAuthModel:
    """OAuthModel backed by SQLAlchemy. Every call runs in its own session."""

    def __init__(
        self, database_session_maker: async_sessionmaker[AsyncSession]
    ) -> None:
        self._database_session_maker = database_session_maker

    async def get_client(self, client_id: str) -> Optional[OAuthClient]:
        async with self._database_session_maker() as database_session:
            return await database_session.get(OAuthClient, client_id)

    async def save_client(self, client: OAuthClient) -> OAuthClient:
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                database_session.add(client)
        return client

    async def save_authorization_code(
        self, code: OAuthAuthorizationCode
    ) -> OAuthAuthorizationCode:
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                database_session.add(code)
        return code

    async def get_authorization_code(
        self, authorization_code: str
    ) -> Optional[OAuthAuthorizationCode]:
        stmt = select(OAuthAuthorizationCode).where(
            OAuthAuthorizationCode.authorization_code == authorization_code
        )
        async with self._database_session_maker() as database_session:
            return (await database_session.scalars(stmt)).first()

    async def revoke_authorization_code(self, authorization_code: str) -> bool:
        stmt = delete(OAuthAuthorizationCode).where(
            OAuthAuthorizationCode.authorization_code == authorization_code
        )
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                result = await database_session.execute(stmt)
        return result.rowcount == 1

    async def save_token(self, token: OAuthToken) -> OAuthToken:
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                database_session.add(token)
        return token

    async def get_access_token(self, access_token: str) -> Optional[OAuthToken]:
        stmt = select(OAuthToken).where(OAuthToken.access_token == access_token)
        async with self._database_session_maker() as database_session:
            return (await database_session.scalars(stmt)).first()

    async def get_refresh_token(self, refresh_token: str) -> Optional[OAuthToken]:
        stmt = select(OAuthToken).where(OAuthToken.refresh_token == refresh_token)
        async with self._database_session_maker() as database_session:
            return (await database_session.scalars(stmt)).first()

    async def revoke_token(self, token_id: str) -> bool:
        stmt = delete(OAuthToken).where(OAuthToken.id == token_id)
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                result = await database_session.execute(stmt)
        return result.rowcount == 1

    async def rotate_token(self, token_id: str, token: OAuthToken) -> bool:
        stmt = delete(OAuthToken).where(OAuthToken.id == token_id)
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                result = await database_session.execute(stmt)
                if result.rowcount != 1:
                    return False
                database_session.add(token)
        return True

    def generate_access_token(self) -> str:
        return generate_token()

    def generate_refresh_token(self) -> str:
        return generate_token()

    def generate_authorization_code(self) -> str:
        return generate_token()

    async def delete_expired(self, now: datetime) -> Tuple[int, int]:
        """Remove expired codes and token pairs whose refresh token has expired."""
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                codes_result = await database_session.execute(
                    delete(OAuthAuthorizationCode).where(
                        OAuthAuthorizationCode.expires_at < now
                    )
                )
                tokens_result = await database_session.execute(
                    delete(OAuthToken).where(OAuthToken.refresh_token_expires_at < now)
                )
        return codes_result.rowcount, tokens_result.rowcount
