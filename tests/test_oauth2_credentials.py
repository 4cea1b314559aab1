"""
Tests for claiming and refreshing external app credentials against a mock
token endpoint.
"""

import base64

import pytest

from tech.remotemcp.auth.connections.oauth2 import (
    format_oauth2_response,
    resolve_value_from_props,
)
from tech.remotemcp.auth.connections.values import (
    ClaimOAuth2Request,
    OAuth2AuthorizationMethod,
    OAuth2ConnectionValue,
    OAuth2GrantType,
)
from tech.remotemcp.auth.errors import OAuth2ExchangeError, ValidationError

from conftest import START_TIME


def claim_request(token_url: str, **kwargs) -> ClaimOAuth2Request:
    params = dict(
        code="code-123",
        client_id="client-id",
        client_secret="client-secret",
        token_url=token_url,
        redirect_url="https://app.example.com/callback",
    )
    params.update(kwargs)
    return ClaimOAuth2Request(**params)


class TestHelpers:
    def test_resolve_value_from_props(self):
        assert (
            resolve_value_from_props({"tenant": "acme"}, "api://{tenant}/.default")
            == "api://acme/.default"
        )
        assert resolve_value_from_props(None, "read {x}") == "read {x}"

    def test_format_oauth2_response_moves_extra_fields_to_data(self):
        formatted = format_oauth2_response(
            {
                "access_token": "a",
                "refresh_token": "r",
                "expires_in": 60,
                "token_type": "bearer",
                "scope": ["repo", "user"],
                "bot_id": "b-1",
                "workspace_name": "Acme",
            },
            claimed_at=100,
        )

        assert formatted["access_token"] == "a"
        assert formatted["scope"] == "repo user"
        assert formatted["claimed_at"] == 100
        assert formatted["data"] == {"bot_id": "b-1", "workspace_name": "Acme"}


class TestClaim:
    async def test_claim_authorization_code(self, oauth2_service, token_endpoint):
        token_endpoint.respond(
            body={
                "access_token": "gho_abc",
                "refresh_token": "ghr_def",
                "expires_in": 28800,
                "token_type": "bearer",
                "scope": "repo",
                "refresh_token_expires_in": 15811200,
            }
        )

        value = await oauth2_service.claim(
            "github", claim_request(token_endpoint.url, code_verifier="v" * 43)
        )

        assert isinstance(value, OAuth2ConnectionValue)
        assert value.access_token == "gho_abc"
        assert value.refresh_token == "ghr_def"
        assert value.expires_in == 28800
        assert value.claimed_at == int(START_TIME)
        assert value.client_secret == "client-secret"
        assert value.data == {"refresh_token_expires_in": 15811200}

        form = token_endpoint.requests[0]["form"]
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "code-123"
        assert form["redirect_uri"] == "https://app.example.com/callback"
        assert form["code_verifier"] == "v" * 43
        assert form["client_id"] == "client-id"
        assert form["client_secret"] == "client-secret"
        assert token_endpoint.requests[0]["headers"]["Accept"] == "application/json"

    async def test_claim_with_basic_authentication(self, oauth2_service, token_endpoint):
        await oauth2_service.claim(
            "notion",
            claim_request(
                token_endpoint.url,
                authorization_method=OAuth2AuthorizationMethod.HEADER,
            ),
        )

        request = token_endpoint.requests[0]
        expected = base64.b64encode(b"client-id:client-secret").decode("ascii")
        assert request["headers"]["Authorization"] == f"Basic {expected}"
        assert "client_secret" not in request["form"]

    async def test_claim_form_encoded_response(self, oauth2_service, token_endpoint):
        token_endpoint.respond(
            body="access_token=form-token&scope=repo&token_type=bearer",
            content_type="application/x-www-form-urlencoded",
        )

        value = await oauth2_service.claim("github", claim_request(token_endpoint.url))

        assert value.access_token == "form-token"
        assert value.scope == "repo"

    async def test_claim_client_credentials(self, oauth2_service, token_endpoint):
        value = await oauth2_service.claim(
            "custom",
            claim_request(
                token_endpoint.url,
                code=None,
                grant_type=OAuth2GrantType.CLIENT_CREDENTIALS,
                scope="api://{tenant}/.default",
                props={"tenant": "acme"},
            ),
        )

        form = token_endpoint.requests[0]["form"]
        assert form["grant_type"] == "client_credentials"
        assert form["scope"] == "api://acme/.default"
        assert form["tenant"] == "acme"
        assert "code" not in form
        assert value.props == {"tenant": "acme"}

    async def test_claim_requires_code(self, oauth2_service, token_endpoint):
        with pytest.raises(ValidationError):
            await oauth2_service.claim("github", claim_request(token_endpoint.url, code=None))
        assert token_endpoint.requests == []

    async def test_claim_rejected_upstream(self, oauth2_service, token_endpoint):
        token_endpoint.respond(status=400, body={"error": "invalid_grant"})

        with pytest.raises(OAuth2ExchangeError) as excinfo:
            await oauth2_service.claim("github", claim_request(token_endpoint.url))

        assert excinfo.value.upstream_status == 400
        assert excinfo.value.upstream_body == {"error": "invalid_grant"}
        assert excinfo.value.status == 502

    async def test_claim_error_in_ok_response(self, oauth2_service, token_endpoint):
        token_endpoint.respond(body={"error": "bad_verification_code"})

        with pytest.raises(OAuth2ExchangeError) as excinfo:
            await oauth2_service.claim("github", claim_request(token_endpoint.url))
        assert "error-oauth2-2002" in excinfo.value.message

    async def test_claim_unreachable(self, oauth2_service):
        with pytest.raises(OAuth2ExchangeError) as excinfo:
            await oauth2_service.claim(
                "github", claim_request("http://127.0.0.1:9/token")
            )
        assert "error-oauth2-2001" in excinfo.value.message

    async def test_claim_accepts_fractional_and_string_expires_in(
        self, oauth2_service, token_endpoint
    ):
        token_endpoint.respond(body={"access_token": "a", "expires_in": 3599.5})
        token_endpoint.respond(body={"access_token": "b", "expires_in": "7200"})

        first = await oauth2_service.claim("github", claim_request(token_endpoint.url))
        second = await oauth2_service.claim("github", claim_request(token_endpoint.url))

        assert first.expires_in == 3599
        assert second.expires_in == 7200

    async def test_claim_invalid_field_in_ok_response(
        self, oauth2_service, token_endpoint
    ):
        body = {"access_token": "a", "expires_in": "soon"}
        token_endpoint.respond(body=body)

        with pytest.raises(OAuth2ExchangeError) as excinfo:
            await oauth2_service.claim("github", claim_request(token_endpoint.url))

        assert "error-oauth2-2002" in excinfo.value.message
        assert excinfo.value.upstream_body == body


class TestRefresh:
    def stored_value(self, token_url: str, **kwargs) -> OAuth2ConnectionValue:
        params = dict(
            access_token="old-access",
            refresh_token="old-refresh",
            expires_in=3600,
            scope="repo",
            claimed_at=int(START_TIME) - 7200,
            token_url=token_url,
            client_id="client-id",
            client_secret="client-secret",
            data={"team": "acme"},
            props={"region": "eu"},
        )
        params.update(kwargs)
        return OAuth2ConnectionValue(**params)

    async def test_refresh_keeps_refresh_token_when_not_rotated(
        self, oauth2_service, token_endpoint
    ):
        token_endpoint.respond(body={"access_token": "new-access", "expires_in": 1800})

        refreshed = await oauth2_service.refresh(
            "github", "user-1", self.stored_value(token_endpoint.url)
        )

        assert refreshed.access_token == "new-access"
        assert refreshed.refresh_token == "old-refresh"
        assert refreshed.expires_in == 1800
        assert refreshed.claimed_at == int(START_TIME)
        assert refreshed.scope == "repo"
        assert refreshed.props == {"region": "eu"}
        assert refreshed.client_secret == "client-secret"

        form = token_endpoint.requests[0]["form"]
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "old-refresh"

    async def test_refresh_takes_rotated_refresh_token(
        self, oauth2_service, token_endpoint
    ):
        token_endpoint.respond(
            body={"access_token": "new-access", "refresh_token": "new-refresh"}
        )

        refreshed = await oauth2_service.refresh(
            "github", "user-1", self.stored_value(token_endpoint.url)
        )

        assert refreshed.refresh_token == "new-refresh"
        assert refreshed.expires_in == 3600

    async def test_refresh_without_refresh_token(self, oauth2_service, token_endpoint):
        with pytest.raises(ValidationError):
            await oauth2_service.refresh(
                "github",
                "user-1",
                self.stored_value(token_endpoint.url, refresh_token=None),
            )

    async def test_refresh_client_credentials(self, oauth2_service, token_endpoint):
        value = self.stored_value(
            token_endpoint.url,
            refresh_token=None,
            grant_type=OAuth2GrantType.CLIENT_CREDENTIALS,
            scope="{region}.read",
        )

        refreshed = await oauth2_service.refresh("custom", "user-1", value)

        form = token_endpoint.requests[0]["form"]
        assert form["grant_type"] == "client_credentials"
        assert form["scope"] == "eu.read"
        assert refreshed.access_token.startswith("upstream-access-")

    async def test_refresh_rejected(self, oauth2_service, token_endpoint):
        token_endpoint.respond(status=401, body="revoked", content_type="text/plain")

        with pytest.raises(OAuth2ExchangeError) as excinfo:
            await oauth2_service.refresh(
                "github", "user-1", self.stored_value(token_endpoint.url)
            )
        assert excinfo.value.upstream_status == 401
        assert excinfo.value.upstream_body == "revoked"

    async def test_refresh_invalid_field_in_ok_response(
        self, oauth2_service, token_endpoint
    ):
        token_endpoint.respond(body={"access_token": "AT2", "expires_in": "soon"})

        with pytest.raises(OAuth2ExchangeError) as excinfo:
            await oauth2_service.refresh(
                "github", "user-1", self.stored_value(token_endpoint.url)
            )
        assert "error-oauth2-2002" in excinfo.value.message

    async def test_refresh_merges_extra_data(self, oauth2_service, token_endpoint):
        token_endpoint.respond(
            body={"access_token": "new-access", "bot_id": "B1"}
        )

        refreshed = await oauth2_service.refresh(
            "slack",
            "user-1",
            self.stored_value(token_endpoint.url, data={"team": {"id": "T1"}}),
        )

        assert refreshed.data == {"team": {"id": "T1"}, "bot_id": "B1"}
