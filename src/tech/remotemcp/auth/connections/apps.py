"""
External app registry.

Static description of the third-party apps a user can connect: how each one
authenticates and, for OAuth2 apps, where its authorize and token endpoints
live. The client id and secret for each OAuth2 app are deployment secrets and
come from `Settings.oauth_app_secrets`, not from here.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field

from tech.remotemcp.auth.connections.values import OAuth2AuthorizationMethod
from tech.remotemcp.auth.model.connection import AppConnectionType


@dataclass(frozen=True)
class McpApp:
    name: str
    display_name: str
    auth_type: AppConnectionType
    auth_url: Optional[str] = None
    token_url: Optional[str] = None
    scope: List[str] = field(default_factory=list)
    authorization_method: OAuth2AuthorizationMethod = OAuth2AuthorizationMethod.BODY


def _oauth2(
    name: str,
    display_name: str,
    auth_url: str,
    token_url: str,
    scope: List[str],
    authorization_method: OAuth2AuthorizationMethod = OAuth2AuthorizationMethod.BODY,
) -> McpApp:
    return McpApp(
        name=name,
        display_name=display_name,
        auth_type=AppConnectionType.OAUTH2,
        auth_url=auth_url,
        token_url=token_url,
        scope=scope,
        authorization_method=authorization_method,
    )


MCP_APPS: Dict[str, McpApp] = {
    app.name: app
    for app in [
        _oauth2(
            "github",
            "GitHub",
            "https://github.com/login/oauth/authorize",
            "https://github.com/login/oauth/access_token",
            ["admin:repo_hook", "admin:org", "repo"],
        ),
        _oauth2(
            "gitlab",
            "GitLab",
            "https://gitlab.com/oauth/authorize",
            "https://gitlab.com/oauth/token",
            ["api", "read_user"],
        ),
        _oauth2(
            "notion",
            "Notion",
            "https://api.notion.com/v1/oauth/authorize",
            "https://api.notion.com/v1/oauth/token",
            [],
            authorization_method=OAuth2AuthorizationMethod.HEADER,
        ),
        _oauth2(
            "atlassian",
            "Atlassian",
            "https://auth.atlassian.com/authorize",
            "https://auth.atlassian.com/oauth/token",
            [
                "read:jira-work",
                "write:jira-work",
                "read:jira-user",
                "read:confluence-content.all",
                "write:confluence-content",
                "read:account",
                "offline_access",
            ],
        ),
        _oauth2(
            "discord",
            "Discord",
            "https://discord.com/api/oauth2/authorize",
            "https://discord.com/api/oauth2/token",
            ["bot", "messages.read", "guilds", "guilds.members.read", "identify"],
        ),
        _oauth2(
            "google-drive",
            "Google Drive",
            "https://accounts.google.com/o/oauth2/v2/auth",
            "https://oauth2.googleapis.com/token",
            [
                "https://www.googleapis.com/auth/drive.readonly",
                "https://www.googleapis.com/auth/spreadsheets",
            ],
        ),
        _oauth2(
            "youtube",
            "YouTube",
            "https://accounts.google.com/o/oauth2/v2/auth",
            "https://oauth2.googleapis.com/token",
            [
                "https://www.googleapis.com/auth/youtube",
                "https://www.googleapis.com/auth/youtube.force-ssl",
            ],
        ),
        _oauth2(
            "slack",
            "Slack",
            "https://slack.com/oauth/v2/authorize",
            "https://slack.com/api/oauth.v2.access",
            ["channels:read", "channels:history", "chat:write", "users:read"],
        ),
        _oauth2(
            "spotify",
            "Spotify",
            "https://accounts.spotify.com/authorize",
            "https://accounts.spotify.com/api/token",
            ["user-read-private", "user-read-playback-state", "playlist-read-private"],
        ),
        McpApp("linear", "Linear", AppConnectionType.SECRET_TEXT),
        McpApp("brave", "Brave Search", AppConnectionType.SECRET_TEXT),
        McpApp("firecrawl", "Firecrawl", AppConnectionType.SECRET_TEXT),
        McpApp("postgres", "PostgreSQL", AppConnectionType.SECRET_TEXT),
        McpApp("fetch", "Fetch", AppConnectionType.NO_AUTH),
    ]
}


def get_app(name: str, apps: Optional[Dict[str, McpApp]] = None) -> Optional[McpApp]:
    return (apps if apps is not None else MCP_APPS).get(name)


class OAuthAppSecret(BaseModel):
    """Static client credentials this platform holds for one external OAuth2 app."""

    client_id: str = Field(
        min_length=1, validation_alias=AliasChoices("client_id", "clientId")
    )
    client_secret: str = Field(
        min_length=1, validation_alias=AliasChoices("client_secret", "clientSecret")
    )
