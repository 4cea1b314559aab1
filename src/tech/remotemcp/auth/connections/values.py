"""
Connection values.

The plaintext that sits inside an AppConnection's encrypted `value`. It is a
tagged variant discriminated by `type`; the tag is re-validated after every
decrypt so a row whose ciphertext does not match its declared type is caught
instead of being handed to a tool.
"""

from enum import Enum
from typing import Any, Dict, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, TypeAdapter
from typing_extensions import Annotated


class OAuth2AuthorizationMethod(str, Enum):
    HEADER = "HEADER"
    BODY = "BODY"


class OAuth2GrantType(str, Enum):
    AUTHORIZATION_CODE = "authorization_code"
    CLIENT_CREDENTIALS = "client_credentials"


# Fields that are lifted out of a token endpoint response. Anything else the
# endpoint returns is kept verbatim under `data`.
STANDARD_TOKEN_FIELDS = frozenset(
    ["access_token", "expires_in", "refresh_token", "scope", "token_type"]
)

# Never returned to API callers.
SECRET_FIELDS = frozenset(["client_secret", "refresh_token"])

DEFAULT_EXPIRES_IN = 3600


class OAuth2ConnectionValue(BaseModel):
    type: Literal["OAUTH2"] = "OAUTH2"
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None
    claimed_at: int
    """Seconds since the epoch when the access token was obtained."""

    token_url: str
    client_id: str
    client_secret: Optional[str] = None
    redirect_url: Optional[str] = None
    authorization_method: OAuth2AuthorizationMethod = OAuth2AuthorizationMethod.BODY
    grant_type: OAuth2GrantType = OAuth2GrantType.AUTHORIZATION_CODE
    data: Dict[str, Any] = Field(default_factory=dict)
    props: Optional[Dict[str, Any]] = None

    def expires_at(self) -> int:
        expires_in = self.expires_in if self.expires_in is not None else DEFAULT_EXPIRES_IN
        return self.claimed_at + expires_in


class SecretTextConnectionValue(BaseModel):
    type: Literal["SECRET_TEXT"] = "SECRET_TEXT"
    secret_text: str = Field(min_length=1)


class NoAuthConnectionValue(BaseModel):
    type: Literal["NO_AUTH"] = "NO_AUTH"


AppConnectionValue = Annotated[
    Union[OAuth2ConnectionValue, SecretTextConnectionValue, NoAuthConnectionValue],
    Field(discriminator="type"),
]

AppConnectionValueAdapter: TypeAdapter[AppConnectionValue] = TypeAdapter(
    AppConnectionValue
)


def sanitize(value: BaseModel) -> Dict[str, Any]:
    """Dump a connection value for API callers, without secrets."""
    return value.model_dump(mode="json", exclude=set(SECRET_FIELDS))


class ClaimOAuth2Request(BaseModel):
    """Everything needed to exchange a grant at an external app's token endpoint."""

    code: Optional[str] = None
    code_verifier: Optional[str] = None
    client_id: str
    client_secret: Optional[str] = None
    token_url: str
    scope: Optional[str] = None
    redirect_url: Optional[str] = None
    grant_type: OAuth2GrantType = OAuth2GrantType.AUTHORIZATION_CODE
    authorization_method: OAuth2AuthorizationMethod = OAuth2AuthorizationMethod.BODY
    props: Optional[Dict[str, Any]] = None


class OAuth2ConnectionInput(BaseModel):
    """What a user submits to create an OAUTH2 connection."""

    type: Literal["OAUTH2"] = "OAUTH2"
    code: Optional[str] = Field(default=None, min_length=1)
    code_verifier: Optional[str] = Field(
        default=None,
        min_length=1,
        validation_alias=AliasChoices("code_verifier", "code_challenge"),
    )
    scope: Optional[str] = None
    props: Optional[Dict[str, Any]] = None
    redirect_url: Optional[str] = None
    grant_type: OAuth2GrantType = OAuth2GrantType.AUTHORIZATION_CODE


UpsertConnectionValue = Annotated[
    Union[OAuth2ConnectionInput, SecretTextConnectionValue, NoAuthConnectionValue],
    Field(discriminator="type"),
]


class UpsertConnectionParams(BaseModel):
    app_name: str = Field(min_length=1)
    owner_id: str = Field(min_length=1)
    display_name: str = Field(min_length=1)
    value: UpsertConnectionValue


class AppConnectionView(BaseModel):
    """An AppConnection as handed to API callers."""

    id: str
    app_name: str
    owner_id: str
    display_name: str
    type: str
    status: str
    created_at: int
    updated_at: int
    value: Optional[Dict[str, Any]] = None
