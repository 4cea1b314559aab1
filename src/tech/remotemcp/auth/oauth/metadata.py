"""
Discovery documents.

Static descriptors rendered from the configured issuer URL:

- RFC 8414 authorization server metadata
- RFC 9728 protected resource metadata
- the `/.well-known/mcp.json` server descriptor
"""

from typing import List

from pydantic import BaseModel, Field

from tech.remotemcp.auth.model.oauth import OAuthClientGrant, OAuthClientScope
from tech.remotemcp.auth.oauth.pkce import S256

SUPPORTED_SCOPES: List[str] = [scope.value for scope in OAuthClientScope]
SUPPORTED_GRANTS: List[str] = [grant.value for grant in OAuthClientGrant]


class AuthorizationServerMetadata(BaseModel):
    issuer: str
    """The server's issuer identifier, a URL with no query or fragment."""

    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: str
    revocation_endpoint: str

    token_endpoint_auth_methods_supported: List[str] = ["client_secret_post"]
    """Advertised client authentication method. `client_secret_basic` and `none` (with PKCE) are also accepted."""

    scopes_supported: List[str] = Field(default_factory=lambda: list(SUPPORTED_SCOPES))
    response_types_supported: List[str] = ["code"]
    response_modes_supported: List[str] = ["query"]
    grant_types_supported: List[str] = Field(
        default_factory=lambda: list(SUPPORTED_GRANTS)
    )
    code_challenge_methods_supported: List[str] = [S256]
    op_policy_uri: str
    op_tos_uri: str


class ProtectedResourceMetadata(BaseModel):
    resource_name: str = "Remote MCP"
    resource_documentation: str
    resource: str
    """The MCP endpoint that accepts bearer tokens issued here."""

    authorization_servers: List[str]
    bearer_methods_supported: List[str] = ["header"]
    scopes_supported: List[str] = Field(default_factory=lambda: list(SUPPORTED_SCOPES))
    resource_policy_uri: str
    resource_tos_uri: str


class McpServerDescriptor(BaseModel):
    id: str = "remote-mcp"
    name: str = "Remote MCP"
    endpoint: str
    capabilities: List[str] = ["resourced", "tools"]
    authType: str = "oauth2"


class McpManifest(BaseModel):
    version: str = "1.0"
    servers: List[McpServerDescriptor]


def authorization_server_metadata(issuer: str) -> AuthorizationServerMetadata:
    issuer = issuer.rstrip("/")
    return AuthorizationServerMetadata(
        issuer=issuer,
        authorization_endpoint=f"{issuer}/authorize",
        token_endpoint=f"{issuer}/api/oauth/token",
        registration_endpoint=f"{issuer}/api/oauth/register",
        revocation_endpoint=f"{issuer}/api/oauth/revoke",
        op_policy_uri=f"{issuer}/privacy-policy",
        op_tos_uri=f"{issuer}/terms-of-service",
    )


def protected_resource_metadata(issuer: str) -> ProtectedResourceMetadata:
    issuer = issuer.rstrip("/")
    return ProtectedResourceMetadata(
        resource_documentation=f"{issuer}/docs",
        resource=f"{issuer}/api/mcp",
        authorization_servers=[issuer],
        resource_policy_uri=f"{issuer}/privacy-policy",
        resource_tos_uri=f"{issuer}/terms-of-service",
    )


def protected_resource_metadata_url(issuer: str) -> str:
    return f"{issuer.rstrip('/')}/.well-known/oauth-protected-resource"


def mcp_manifest(issuer: str) -> McpManifest:
    return McpManifest(servers=[McpServerDescriptor(endpoint=issuer.rstrip("/"))])
