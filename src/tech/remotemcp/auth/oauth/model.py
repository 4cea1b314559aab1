"""
Storage port for the authorization server.

AuthorizationServer is written against this protocol and never touches the
database directly. DatabaseOAuthModel in store.py is the production
implementation; tests can supply anything that satisfies it.
"""

from typing import Optional, Protocol

from tech.remotemcp.auth.model.oauth import (
    OAuthAuthorizationCode,
    OAuthClient,
    OAuthToken,
)


class OAuthModel(Protocol):
    async def get_client(self, client_id: str) -> Optional[OAuthClient]: ...

    async def save_client(self, client: OAuthClient) -> OAuthClient: ...

    async def save_authorization_code(
        self, code: OAuthAuthorizationCode
    ) -> OAuthAuthorizationCode: ...

    async def get_authorization_code(
        self, authorization_code: str
    ) -> Optional[OAuthAuthorizationCode]: ...

    async def revoke_authorization_code(self, authorization_code: str) -> bool:
        """Delete a code. True only for the single caller that removed it."""
        ...

    async def save_token(self, token: OAuthToken) -> OAuthToken: ...

    async def get_access_token(self, access_token: str) -> Optional[OAuthToken]: ...

    async def get_refresh_token(self, refresh_token: str) -> Optional[OAuthToken]: ...

    async def revoke_token(self, token_id: str) -> bool:
        """Delete a token pair. True only for the single caller that removed it."""
        ...

    async def rotate_token(self, token_id: str, token: OAuthToken) -> bool:
        """
        Replace a token pair with another in one step. False, with nothing
        saved, when the old pair was already gone.
        """
        ...

    def generate_access_token(self) -> str: ...

    def generate_refresh_token(self) -> str: ...

    def generate_authorization_code(self) -> str: ...
