"""OAuth 2.0 authorization server data models.

Provides SQLAlchemy models for registered clients, issued authorization codes,
and access/refresh token pairs handed out to external MCP clients.
"""
from enum import Enum
from typing import Any, List, Optional
from datetime import datetime
from sqlalchemy import Integer, String, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column

from tech.remotemcp.auth.model.base import Base, str512, str1024, ulidpk


class OAuthClientGrant(str, Enum):
    AUTHORIZATION_CODE = "authorization_code"
    REFRESH_TOKEN = "refresh_token"


class OAuthClientScope(str, Enum):
    READ = "read"
    WRITE = "write"


class OAuthClient(Base):
    """A consumer of this platform's authorization server.

    Created through dynamic client registration. The secret is never
    rotated; a client that loses it has to register again.
    """
    __tablename__ = "oauth_clients"

    id: Mapped[ulidpk]
    secret: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str512]
    uri: Mapped[str1024]
    redirect_uris: Mapped[List[str]] = mapped_column(JSON, nullable=False)
    grants: Mapped[List[str]] = mapped_column(JSON, nullable=False)
    scope: Mapped[List[str]] = mapped_column(JSON, nullable=False)
    token_endpoint_auth_method: Mapped[str] = mapped_column(
        String(32), nullable=False, default="client_secret_post"
    )
    access_token_lifetime: Mapped[int] = mapped_column(Integer, nullable=False)
    refresh_token_lifetime: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    def public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "uri": self.uri,
            "redirectUris": list(self.redirect_uris),
            "scope": list(self.scope),
        }


class OAuthAuthorizationCode(Base):
    """Short-lived, single-use authorization code.

    Bound to the client, user, redirect URI, scope and optional PKCE
    challenge that were presented at the authorization endpoint.
    """
    __tablename__ = "oauth_authorization_codes"

    id: Mapped[ulidpk]
    authorization_code: Mapped[str] = mapped_column(
        String(128), nullable=False, unique=True
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    redirect_uri: Mapped[str1024]
    scope: Mapped[List[str]] = mapped_column(JSON, nullable=False)
    client_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    user_id: Mapped[str512]
    code_challenge: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    code_challenge_method: Mapped[Optional[str]] = mapped_column(
        String(16), nullable=True
    )


class OAuthToken(Base):
    """An access token and its refresh token.

    The row is the unit of revocation: deleting it revokes both tokens.
    """
    __tablename__ = "oauth_tokens"

    id: Mapped[ulidpk]
    access_token: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    access_token_expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    refresh_token: Mapped[str] = mapped_column(
        String(128), nullable=False, unique=True
    )
    refresh_token_expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    scope: Mapped[List[str]] = mapped_column(JSON, nullable=False)
    client_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    user_id: Mapped[str512]
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
