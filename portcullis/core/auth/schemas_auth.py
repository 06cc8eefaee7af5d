"""Schemas file for endpoint /auth"""

from typing import Literal

from fastapi import Form
from pydantic import BaseModel, field_validator


class Authorize(BaseModel):
    client_id: str
    redirect_uri: str
    response_type: str
    scope: str | None = None
    state: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None


class AuthorizeValidation(Authorize):
    """
    Oauth specifications specifies that all parameters should be `application/x-www-form-urlencoded`.
    This schema is configured to requires Form(...) parameters.

    The endpoint needs to depend on this class:
    ```python
        authorizereq: schemas_auth.AuthorizeValidation = Depends(
            schemas_auth.AuthorizeValidation.as_form
        ),
    ```
    """

    email: str
    password: str

    @field_validator("email")
    @classmethod
    def normalize_email(cls, email: str) -> str:
        return email.lower().strip()

    @classmethod
    def as_form(
        cls,
        client_id: str = Form(...),
        redirect_uri: str = Form(...),
        response_type: str = Form(...),
        scope: str | None = Form(None),
        state: str | None = Form(None),
        code_challenge: str | None = Form(None),
        code_challenge_method: str | None = Form(None),
        email: str = Form(...),
        password: str = Form(...),
    ):
        return cls(
            client_id=client_id,
            redirect_uri=redirect_uri,
            response_type=response_type,
            scope=scope,
            state=state,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            email=email,
            password=password,
        )


class TokenData(BaseModel):
    """
    Claims of a signed access token
    """

    sub: str  # Subject: the user id, or the client id for client credentials grants
    cid: str  # The client_id of the service which received the token
    scope: str = ""
    jti: str  # Unique token identifier, two tokens issued in the same second are never equal
    iat: int
    exp: int


class TokenReq(BaseModel):
    grant_type: str
    client_id: str | None = None
    client_secret: str | None = None
    code: str | None = None
    redirect_uri: str | None = None
    refresh_token: str | None = None
    # PKCE parameters
    code_verifier: str | None = None
    # Client credentials parameters
    scope: str | None = None

    @classmethod
    def as_form(
        cls,
        grant_type: str = Form(...),
        client_id: str | None = Form(None),
        client_secret: str | None = Form(None),
        code: str | None = Form(None),
        redirect_uri: str | None = Form(None),
        refresh_token: str | None = Form(None),
        code_verifier: str | None = Form(None),
        scope: str | None = Form(None),
    ):
        return cls(
            grant_type=grant_type,
            client_id=client_id,
            client_secret=client_secret,
            code=code,
            redirect_uri=redirect_uri,
            refresh_token=refresh_token,
            code_verifier=code_verifier,
            scope=scope,
        )


class TokenResponse(BaseModel):
    """
    The token pair returned by the token endpoint.
    There is no refresh token for client credentials grants.
    """

    access_token: str
    token_type: Literal["bearer"] = "bearer"  # noqa: S105
    expires_in: int
    scope: str = ""
    refresh_token: str | None = None


class RevokeTokenReq(BaseModel):
    # https://datatracker.ietf.org/doc/html/rfc7009#section-2.1
    # `token_type_hint` is ignored, the lookup matches access and refresh tokens alike
    token: str

    @classmethod
    def as_form(
        cls,
        token: str = Form(...),
    ):
        return cls(token=token)
