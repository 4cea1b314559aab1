"""init

Revision ID: 4c1d2e0f9a7b
Revises:
Create Date: 2026-10-19 09:12:41.518203

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "4c1d2e0f9a7b"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "oauth_clients",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("secret", sa.String(128), nullable=False),
        sa.Column("name", sa.String(512), nullable=False),
        sa.Column("uri", sa.String(1024), nullable=False),
        sa.Column("redirect_uris", sa.JSON, nullable=False),
        sa.Column("grants", sa.JSON, nullable=False),
        sa.Column("scope", sa.JSON, nullable=False),
        sa.Column(
            "token_endpoint_auth_method",
            sa.String(32),
            nullable=False,
            server_default="client_secret_post",
        ),
        sa.Column("access_token_lifetime", sa.Integer, nullable=False),
        sa.Column("refresh_token_lifetime", sa.Integer, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "oauth_authorization_codes",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("authorization_code", sa.String(128), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("redirect_uri", sa.String(1024), nullable=False),
        sa.Column("scope", sa.JSON, nullable=False),
        sa.Column("client_id", sa.String(32), nullable=False),
        sa.Column("user_id", sa.String(512), nullable=False),
        sa.Column("code_challenge", sa.String(128), nullable=True),
        sa.Column("code_challenge_method", sa.String(16), nullable=True),
    )
    op.create_index(
        "idx_oauth_authorization_codes_code",
        "oauth_authorization_codes",
        ["authorization_code"],
        unique=True,
    )
    op.create_index(
        "idx_oauth_authorization_codes_client_id",
        "oauth_authorization_codes",
        ["client_id"],
    )
    op.create_index(
        "idx_oauth_authorization_codes_expires",
        "oauth_authorization_codes",
        ["expires_at"],
    )

    # A row is an access token and its refresh token. Deleting it revokes both.
    op.create_table(
        "oauth_tokens",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("access_token", sa.String(128), nullable=False),
        sa.Column("access_token_expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("refresh_token", sa.String(128), nullable=False),
        sa.Column("refresh_token_expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scope", sa.JSON, nullable=False),
        sa.Column("client_id", sa.String(32), nullable=False),
        sa.Column("user_id", sa.String(512), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_oauth_tokens_access_token", "oauth_tokens", ["access_token"], unique=True
    )
    op.create_index(
        "idx_oauth_tokens_refresh_token", "oauth_tokens", ["refresh_token"], unique=True
    )
    op.create_index("idx_oauth_tokens_client_id", "oauth_tokens", ["client_id"])
    op.create_index(
        "idx_oauth_tokens_refresh_expires", "oauth_tokens", ["refresh_token_expires_at"]
    )

    op.create_table(
        "app_connections",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("app_name", sa.String(128), nullable=False),
        sa.Column("owner_id", sa.String(512), nullable=False),
        sa.Column("display_name", sa.String(512), nullable=False),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="ACTIVE"),
        sa.Column("value", sa.JSON, nullable=False),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_app_connections_owner_id", "app_connections", ["owner_id"])
    op.create_index(
        "idx_app_connections_owner_app", "app_connections", ["owner_id", "app_name"]
    )


def downgrade() -> None:
    op.drop_table("oauth_clients")
    op.drop_table("oauth_authorization_codes")
    op.drop_table("oauth_tokens")
    op.drop_table("app_connections")
