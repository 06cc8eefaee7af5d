"""Schemas file for endpoint /auth/clients"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from portcullis.core.auth.types_auth import GrantType


class ClientBase(BaseModel):
    name: str
    redirect_uris: list[str] = []
    scopes: list[str] = []
    grant_types: list[GrantType] = [GrantType.authorization_code]


class ClientCreation(ClientBase):
    # Public clients can not keep a secret, they should use PKCE
    confidential: bool = True


class ClientUpdate(BaseModel):
    name: str | None = None
    redirect_uris: list[str] | None = None
    scopes: list[str] | None = None
    grant_types: list[GrantType] | None = None


class Client(ClientBase):
    """
    A registered client. The secret hash is never part of this schema.
    """

    client_id: str
    confidential: bool
    created_on: datetime
    updated_on: datetime

    model_config = ConfigDict(from_attributes=True)


class ClientRegistered(Client):
    """
    Returned once, when the client is registered.
    The plaintext secret can not be retrieved afterward.
    """

    client_secret: str | None = Field(
        default=None,
        description="Only confidential clients get a secret",
    )
