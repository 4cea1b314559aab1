"""
Tests for the OAuth 2.0 authorization server: registration, the authorize
step, both token grants, client authentication, revocation, and bearer token
resolution.
"""

import asyncio
import base64
from datetime import datetime, timezone
from typing import Any, Dict
from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy.exc import IntegrityError

from tech.remotemcp.auth.oauth import pkce
from tech.remotemcp.auth.oauth.errors import (
    InvalidClientError,
    InvalidClientMetadataError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidScopeError,
    InvalidTokenError,
    UnauthorizedClientError,
    UnsupportedGrantTypeError,
)
from tech.remotemcp.auth.oauth.server import (
    ACCESS_TOKEN_LIFETIME,
    AuthorizationServer,
    AuthorizeRequest,
    split_scope,
)
from tech.remotemcp.auth.oauth.store import DatabaseOAuthModel

REDIRECT_URI = "https://client.example.com/callback"


async def register(server: AuthorizationServer, **overrides: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "client_name": "Test Client",
        "redirect_uris": [REDIRECT_URI],
        "scope": "read write",
    }
    body.update(overrides)
    return await server.register_client(body)


def query(url: str) -> Dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


async def issue_code(
    server: AuthorizationServer, client: Dict[str, Any], **kwargs: Any
) -> str:
    params = dict(
        client_id=client["client_id"],
        redirect_uri=REDIRECT_URI,
        response_type="code",
        state="xyz",
    )
    params.update(kwargs)
    location = await server.authorize(AuthorizeRequest(**params), "user-1")
    return query(location)["code"]


def code_params(client: Dict[str, Any], code: str, **kwargs: Any) -> Dict[str, str]:
    params = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": REDIRECT_URI,
        "client_id": client["client_id"],
        "client_secret": client["client_secret"],
    }
    params.update(kwargs)
    return params


def basic(client_id: str, client_secret: str) -> str:
    raw = f"{client_id}:{client_secret}".encode("utf-8")
    return "Basic " + base64.b64encode(raw).decode("ascii")


class TestSplitScope:
    def test_separators(self):
        assert split_scope("read write") == ["read", "write"]
        assert split_scope("read+write") == ["read", "write"]
        assert split_scope("  read   read ") == ["read"]
        assert split_scope(None) == []
        assert split_scope("") == []


class TestRegistration:
    async def test_defaults(self, authorization_server, oauth_model, clock):
        registration = await authorization_server.register_client(
            {"client_name": "Claude", "redirect_uris": [REDIRECT_URI]}
        )

        assert registration["client_name"] == "Claude"
        assert registration["scope"] == "read"
        assert registration["grant_types"] == ["authorization_code", "refresh_token"]
        assert registration["token_endpoint_auth_method"] == "client_secret_post"
        assert registration["response_types"] == ["code"]
        assert registration["client_secret_expires_at"] == 0
        assert registration["client_id_issued_at"] == int(clock.now)
        assert len(registration["client_secret"]) == 64

        client = await oauth_model.get_client(registration["client_id"])
        assert client is not None
        assert client.access_token_lifetime == ACCESS_TOKEN_LIFETIME

    async def test_filters_unsupported_scopes_and_grants(self, authorization_server):
        registration = await register(
            authorization_server,
            scope="read+admin write",
            grant_types=["implicit", "authorization_code"],
        )
        assert registration["scope"] == "read write"
        assert registration["grant_types"] == ["authorization_code"]

    async def test_only_unsupported_scopes_fall_back_to_read(self, authorization_server):
        registration = await register(authorization_server, scope="admin")
        assert registration["scope"] == "read"

    async def test_no_valid_grants(self, authorization_server):
        with pytest.raises(InvalidClientMetadataError) as excinfo:
            await register(authorization_server, grant_types=["implicit"])
        assert excinfo.value.message == "No valid grant types provided"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"redirect_uris": []},
            {"redirect_uris": ["not a uri"]},
            {"client_name": ""},
            {"client_uri": "ftp://example.com"},
            {"token_endpoint_auth_method": "private_key_jwt"},
            {"response_types": ["id_token"]},
        ],
    )
    async def test_invalid_metadata(self, authorization_server, overrides):
        with pytest.raises(InvalidClientMetadataError) as excinfo:
            await register(authorization_server, **overrides)
        assert excinfo.value.status == 400
        assert excinfo.value.kind == "invalid_client_metadata"

    async def test_missing_client_name(self, authorization_server):
        with pytest.raises(InvalidClientMetadataError) as excinfo:
            await authorization_server.register_client({"redirect_uris": [REDIRECT_URI]})
        assert "client_name" in excinfo.value.message

    async def test_public_client_info(self, authorization_server):
        registration = await register(authorization_server, client_uri="https://client.example.com")

        info = await authorization_server.get_public_client(registration["client_id"])

        assert info == {
            "id": registration["client_id"],
            "name": "Test Client",
            "uri": "https://client.example.com",
            "redirectUris": [REDIRECT_URI],
            "scope": ["read", "write"],
        }

    async def test_public_client_info_unknown(self, authorization_server):
        with pytest.raises(InvalidClientError) as excinfo:
            await authorization_server.get_public_client("missing")
        assert excinfo.value.status == 404

        with pytest.raises(InvalidRequestError):
            await authorization_server.get_public_client(None)


class TestAuthorize:
    async def test_issues_code_with_state(self, authorization_server, oauth_model):
        client = await register(authorization_server)

        location = await authorization_server.authorize(
            AuthorizeRequest(
                client_id=client["client_id"],
                redirect_uri=REDIRECT_URI,
                response_type="code",
                state="xyz",
                scope="read",
            ),
            "user-1",
        )

        assert location.startswith(REDIRECT_URI + "?")
        params = query(location)
        assert params["state"] == "xyz"

        code = await oauth_model.get_authorization_code(params["code"])
        assert code.user_id == "user-1"
        assert code.scope == ["read"]
        assert code.redirect_uri == REDIRECT_URI

    async def test_defaults_to_client_scope_and_single_redirect_uri(
        self, authorization_server, oauth_model
    ):
        client = await register(authorization_server)

        location = await authorization_server.authorize(
            AuthorizeRequest(client_id=client["client_id"], response_type="code"),
            "user-1",
        )

        assert "state" not in query(location)
        code = await oauth_model.get_authorization_code(query(location)["code"])
        assert code.scope == ["read", "write"]

    async def test_redirect_uri_keeps_existing_query(self, authorization_server):
        client = await register(
            authorization_server, redirect_uris=["https://client.example.com/cb?tenant=a"]
        )

        location = await authorization_server.authorize(
            AuthorizeRequest(client_id=client["client_id"], response_type="code"),
            "user-1",
        )

        params = query(location)
        assert params["tenant"] == "a"
        assert "code" in params

    async def test_client_errors_are_raised(self, authorization_server):
        client = await register(
            authorization_server,
            redirect_uris=[REDIRECT_URI, "https://client.example.com/other"],
        )

        with pytest.raises(InvalidRequestError):
            await authorization_server.authorize(AuthorizeRequest(response_type="code"), "u")
        with pytest.raises(InvalidClientError):
            await authorization_server.authorize(
                AuthorizeRequest(client_id="missing", response_type="code"), "u"
            )
        with pytest.raises(InvalidRequestError):
            await authorization_server.authorize(
                AuthorizeRequest(client_id=client["client_id"], response_type="code"), "u"
            )
        with pytest.raises(InvalidRequestError):
            await authorization_server.authorize(
                AuthorizeRequest(
                    client_id=client["client_id"],
                    redirect_uri="https://evil.example.com/callback",
                    response_type="code",
                ),
                "u",
            )

    @pytest.mark.parametrize(
        "overrides,error",
        [
            ({"response_type": "token"}, "unsupported_response_type"),
            ({"response_type": None}, "unsupported_response_type"),
            ({"scope": "read admin"}, "invalid_scope"),
            ({"code_challenge_method": "S256"}, "invalid_request"),
            (
                {"code_challenge": "a" * 43, "code_challenge_method": "S512"},
                "invalid_request",
            ),
            ({"code_challenge": "short"}, "invalid_request"),
        ],
    )
    async def test_errors_are_redirected(self, authorization_server, overrides, error):
        client = await register(authorization_server, scope="read")
        params = dict(
            client_id=client["client_id"],
            redirect_uri=REDIRECT_URI,
            response_type="code",
            state="s1",
        )
        params.update(overrides)

        location = await authorization_server.authorize(AuthorizeRequest(**params), "u")

        result = query(location)
        assert result["error"] == error
        assert result["state"] == "s1"
        assert "code" not in result

    async def test_client_without_authorization_code_grant(self, authorization_server):
        client = await register(authorization_server, grant_types=["refresh_token"])

        location = await authorization_server.authorize(
            AuthorizeRequest(client_id=client["client_id"], response_type="code"), "u"
        )
        assert query(location)["error"] == "unauthorized_client"

    async def test_public_client_requires_pkce(self, authorization_server):
        client = await register(authorization_server, token_endpoint_auth_method="none")

        location = await authorization_server.authorize(
            AuthorizeRequest(client_id=client["client_id"], response_type="code"), "u"
        )
        assert query(location)["error"] == "invalid_request"


class TestAuthorizationCodeGrant:
    async def test_exchange(self, authorization_server, clock):
        client = await register(authorization_server)
        code = await issue_code(authorization_server, client, scope="read")

        tokens = await authorization_server.token(code_params(client, code))

        assert tokens["token_type"] == "Bearer"
        assert tokens["expires_in"] == ACCESS_TOKEN_LIFETIME
        assert tokens["scope"] == "read"
        assert len(tokens["access_token"]) == 64
        assert tokens["refresh_token"] != tokens["access_token"]

        token = await authorization_server.authenticate(tokens["access_token"])
        assert token.user_id == "user-1"
        assert token.client_id == client["client_id"]

    async def test_basic_authentication(self, authorization_server):
        client = await register(authorization_server, token_endpoint_auth_method="client_secret_basic")
        code = await issue_code(authorization_server, client)
        params = code_params(client, code)
        del params["client_secret"]

        tokens = await authorization_server.token(
            params, basic(client["client_id"], client["client_secret"])
        )
        assert "access_token" in tokens

    async def test_code_is_single_use(self, authorization_server):
        client = await register(authorization_server)
        code = await issue_code(authorization_server, client)

        await authorization_server.token(code_params(client, code))
        with pytest.raises(InvalidGrantError):
            await authorization_server.token(code_params(client, code))

    async def test_concurrent_redemption_issues_one_token(self, authorization_server):
        client = await register(authorization_server)
        code = await issue_code(authorization_server, client)

        results = await asyncio.gather(
            *[authorization_server.token(code_params(client, code)) for _ in range(4)],
            return_exceptions=True,
        )

        issued = [r for r in results if isinstance(r, dict)]
        rejected = [r for r in results if isinstance(r, InvalidGrantError)]
        assert len(issued) == 1
        assert len(rejected) == 3

    async def test_expired_code(self, authorization_server, oauth_model, clock):
        client = await register(authorization_server)
        code = await issue_code(authorization_server, client)
        clock.advance(301)

        with pytest.raises(InvalidGrantError) as excinfo:
            await authorization_server.token(code_params(client, code))
        assert "expired" in excinfo.value.message
        assert await oauth_model.get_authorization_code(code) is None

    async def test_code_of_another_client(self, authorization_server):
        client = await register(authorization_server)
        other = await register(authorization_server)
        code = await issue_code(authorization_server, client)

        with pytest.raises(InvalidGrantError):
            await authorization_server.token(code_params(other, code))

    async def test_redirect_uri_must_match(self, authorization_server):
        client = await register(authorization_server)
        code = await issue_code(authorization_server, client)

        with pytest.raises(InvalidGrantError):
            await authorization_server.token(
                code_params(client, code, redirect_uri="https://client.example.com/other")
            )

    async def test_redirect_uri_may_be_omitted_for_single_uri_clients(
        self, authorization_server
    ):
        client = await register(authorization_server)
        code = await issue_code(authorization_server, client)
        params = code_params(client, code)
        del params["redirect_uri"]

        tokens = await authorization_server.token(params)
        assert "access_token" in tokens

    async def test_pkce_s256(self, authorization_server):
        client = await register(authorization_server, token_endpoint_auth_method="none")
        verifier, challenge = pkce.generate_pkce_verifier()
        code = await issue_code(
            authorization_server,
            client,
            code_challenge=challenge,
            code_challenge_method="S256",
        )
        params = code_params(client, code, code_verifier=verifier)
        del params["client_secret"]

        tokens = await authorization_server.token(params)
        assert "access_token" in tokens

    async def test_pkce_wrong_verifier_keeps_code(self, authorization_server):
        client = await register(authorization_server)
        verifier, challenge = pkce.generate_pkce_verifier()
        code = await issue_code(
            authorization_server,
            client,
            code_challenge=challenge,
            code_challenge_method="S256",
        )

        with pytest.raises(InvalidGrantError):
            await authorization_server.token(
                code_params(client, code, code_verifier="x" * 43)
            )
        with pytest.raises(InvalidGrantError):
            await authorization_server.token(code_params(client, code))

        tokens = await authorization_server.token(
            code_params(client, code, code_verifier=verifier)
        )
        assert "access_token" in tokens

    async def test_pkce_plain(self, authorization_server):
        client = await register(authorization_server)
        verifier = "p" * 43
        code = await issue_code(authorization_server, client, code_challenge=verifier)

        tokens = await authorization_server.token(
            code_params(client, code, code_verifier=verifier)
        )
        assert "access_token" in tokens

    async def test_verifier_without_challenge(self, authorization_server):
        client = await register(authorization_server)
        code = await issue_code(authorization_server, client)

        with pytest.raises(InvalidGrantError):
            await authorization_server.token(
                code_params(client, code, code_verifier="v" * 43)
            )


class TestClientAuthentication:
    async def test_wrong_secret(self, authorization_server):
        client = await register(authorization_server)
        code = await issue_code(authorization_server, client)

        with pytest.raises(InvalidClientError) as excinfo:
            await authorization_server.token(
                code_params(client, code, client_secret="wrong")
            )
        assert excinfo.value.status == 401
        assert excinfo.value.headers == {}

    async def test_wrong_basic_secret_challenges(self, authorization_server):
        client = await register(authorization_server)

        with pytest.raises(InvalidClientError) as excinfo:
            await authorization_server.token(
                {"grant_type": "authorization_code", "code": "c"},
                basic(client["client_id"], "wrong"),
            )
        assert excinfo.value.headers["WWW-Authenticate"].startswith("Basic")

    async def test_basic_and_body_client_id_disagree(self, authorization_server):
        client = await register(authorization_server)
        other = await register(authorization_server)

        with pytest.raises(InvalidRequestError):
            await authorization_server.token(
                {"grant_type": "authorization_code", "client_id": other["client_id"]},
                basic(client["client_id"], client["client_secret"]),
            )

    async def test_confidential_client_needs_secret(self, authorization_server):
        client = await register(authorization_server)

        with pytest.raises(InvalidClientError):
            await authorization_server.token(
                {"grant_type": "authorization_code", "client_id": client["client_id"]}
            )

    async def test_no_credentials(self, authorization_server):
        with pytest.raises(InvalidClientError):
            await authorization_server.token({"grant_type": "authorization_code"})

    async def test_missing_grant_type(self, authorization_server):
        with pytest.raises(InvalidRequestError):
            await authorization_server.token({})

    async def test_unsupported_grant_type(self, authorization_server):
        client = await register(authorization_server)

        with pytest.raises(UnsupportedGrantTypeError):
            await authorization_server.token(
                {
                    "grant_type": "password",
                    "client_id": client["client_id"],
                    "client_secret": client["client_secret"],
                }
            )

    async def test_grant_not_registered(self, authorization_server):
        client = await register(authorization_server, grant_types=["authorization_code"])

        with pytest.raises(UnauthorizedClientError):
            await authorization_server.token(
                {
                    "grant_type": "refresh_token",
                    "refresh_token": "r",
                    "client_id": client["client_id"],
                    "client_secret": client["client_secret"],
                }
            )


class TestRefreshTokenGrant:
    async def exchange(self, server: AuthorizationServer, client: Dict[str, Any]):
        code = await issue_code(server, client)
        return await server.token(code_params(client, code))

    def refresh_params(self, client: Dict[str, Any], refresh_token: str, **kwargs: Any):
        params = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client["client_id"],
            "client_secret": client["client_secret"],
        }
        params.update(kwargs)
        return params

    async def test_refresh_keeps_refresh_token(self, authorization_server, clock):
        client = await register(authorization_server)
        first = await self.exchange(authorization_server, client)
        clock.advance(60)

        second = await authorization_server.token(
            self.refresh_params(client, first["refresh_token"])
        )

        assert second["access_token"] != first["access_token"]
        assert second["refresh_token"] == first["refresh_token"]
        assert second["scope"] == "read write"

        with pytest.raises(InvalidTokenError):
            await authorization_server.authenticate(first["access_token"])
        await authorization_server.authenticate(second["access_token"])

    async def test_refresh_rotates_when_configured(self, oauth_model, clock):
        server = AuthorizationServer(
            oauth_model, always_issue_new_refresh_token=True, clock=clock
        )
        client = await register(server)
        first = await self.exchange(server, client)

        second = await server.token(self.refresh_params(client, first["refresh_token"]))

        assert second["refresh_token"] != first["refresh_token"]
        with pytest.raises(InvalidGrantError):
            await server.token(self.refresh_params(client, first["refresh_token"]))

    async def test_refresh_narrows_scope(self, authorization_server):
        client = await register(authorization_server)
        first = await self.exchange(authorization_server, client)

        second = await authorization_server.token(
            self.refresh_params(client, first["refresh_token"], scope="read")
        )
        assert second["scope"] == "read"

    async def test_refresh_cannot_widen_scope(self, authorization_server):
        client = await register(authorization_server, scope="read")
        first = await self.exchange(authorization_server, client)

        with pytest.raises(InvalidScopeError):
            await authorization_server.token(
                self.refresh_params(client, first["refresh_token"], scope="read write")
            )

    async def test_refresh_token_of_another_client(self, authorization_server):
        client = await register(authorization_server)
        other = await register(authorization_server)
        first = await self.exchange(authorization_server, client)

        with pytest.raises(InvalidGrantError):
            await authorization_server.token(
                self.refresh_params(other, first["refresh_token"])
            )

    async def test_expired_refresh_token(self, authorization_server, clock):
        client = await register(authorization_server)
        first = await self.exchange(authorization_server, client)
        clock.advance(31 * 24 * 60 * 60)

        with pytest.raises(InvalidGrantError):
            await authorization_server.token(
                self.refresh_params(client, first["refresh_token"])
            )


    async def test_failed_rotation_keeps_old_pair(
        self, authorization_server, database_session_maker, clock
    ):
        client = await register(authorization_server)
        first = await self.exchange(authorization_server, client)
        other = await self.exchange(authorization_server, client)

        class CollidingModel(DatabaseOAuthModel):
            def generate_access_token(self) -> str:
                return other["access_token"]

        server = AuthorizationServer(CollidingModel(database_session_maker), clock=clock)
        with pytest.raises(IntegrityError):
            await server.token(self.refresh_params(client, first["refresh_token"]))

        await authorization_server.authenticate(first["access_token"])
        second = await authorization_server.token(
            self.refresh_params(client, first["refresh_token"])
        )
        assert second["refresh_token"] == first["refresh_token"]

    async def test_concurrent_refresh_issues_one_token(self, oauth_model, clock):
        server = AuthorizationServer(
            oauth_model, always_issue_new_refresh_token=True, clock=clock
        )
        client = await register(server)
        first = await self.exchange(server, client)
        params = self.refresh_params(client, first["refresh_token"])

        results = await asyncio.gather(
            server.token(params), server.token(params), return_exceptions=True
        )

        issued = [r for r in results if isinstance(r, dict)]
        assert len(issued) == 1
        assert [type(r) for r in results if not isinstance(r, dict)] == [InvalidGrantError]
        await server.authenticate(issued[0]["access_token"])


class TestRevokeAndAuthenticate:
    async def test_revoke_access_token(self, authorization_server):
        client = await register(authorization_server)
        code = await issue_code(authorization_server, client)
        tokens = await authorization_server.token(code_params(client, code))

        await authorization_server.revoke(
            {
                "token": tokens["access_token"],
                "client_id": client["client_id"],
                "client_secret": client["client_secret"],
            }
        )

        with pytest.raises(InvalidTokenError):
            await authorization_server.authenticate(tokens["access_token"])

    async def test_revoke_refresh_token_with_hint(self, authorization_server):
        client = await register(authorization_server)
        code = await issue_code(authorization_server, client)
        tokens = await authorization_server.token(code_params(client, code))

        await authorization_server.revoke(
            {
                "token": tokens["refresh_token"],
                "token_type_hint": "refresh_token",
                "client_id": client["client_id"],
                "client_secret": client["client_secret"],
            }
        )

        with pytest.raises(InvalidTokenError):
            await authorization_server.authenticate(tokens["access_token"])

    async def test_revoke_ignores_other_clients_and_unknown_tokens(
        self, authorization_server
    ):
        client = await register(authorization_server)
        other = await register(authorization_server)
        code = await issue_code(authorization_server, client)
        tokens = await authorization_server.token(code_params(client, code))

        for token in [tokens["access_token"], "unknown"]:
            await authorization_server.revoke(
                {
                    "token": token,
                    "client_id": other["client_id"],
                    "client_secret": other["client_secret"],
                }
            )

        await authorization_server.authenticate(tokens["access_token"])

    async def test_revoke_requires_token(self, authorization_server):
        client = await register(authorization_server)

        with pytest.raises(InvalidRequestError):
            await authorization_server.revoke(
                {"client_id": client["client_id"], "client_secret": client["client_secret"]}
            )

    async def test_authenticate_expired(self, authorization_server, clock):
        client = await register(authorization_server)
        code = await issue_code(authorization_server, client)
        tokens = await authorization_server.token(code_params(client, code))
        clock.advance(ACCESS_TOKEN_LIFETIME)

        with pytest.raises(InvalidTokenError) as excinfo:
            await authorization_server.authenticate(tokens["access_token"])
        assert "expired" in excinfo.value.message

    async def test_authenticate_missing(self, authorization_server):
        with pytest.raises(InvalidTokenError):
            await authorization_server.authenticate(None)
        with pytest.raises(InvalidTokenError):
            await authorization_server.authenticate("unknown")


class TestCleanup:
    async def test_delete_expired(self, authorization_server, oauth_model, clock):
        client = await register(authorization_server)
        await issue_code(authorization_server, client)
        code = await issue_code(authorization_server, client)
        await authorization_server.token(code_params(client, code))

        now = datetime.fromtimestamp(clock.now + 600, timezone.utc)
        assert await oauth_model.delete_expired(now) == (1, 0)

        later = datetime.fromtimestamp(clock.now + 31 * 24 * 60 * 60, timezone.utc)
        assert await oauth_model.delete_expired(later) == (0, 1)
