from enum import Enum

from pydantic import BaseModel, ConfigDict


class GrantType(str, Enum):
    """
    Grant types supported by the token endpoint
    See https://datatracker.ietf.org/doc/html/rfc6749#section-4
    """

    authorization_code = "authorization_code"
    client_credentials = "client_credentials"
    refresh_token = "refresh_token"  # noqa: S105


class CodeChallengeMethod(str, Enum):
    """
    PKCE transformations applied to the code verifier
    See https://datatracker.ietf.org/doc/html/rfc7636#section-4.2
    """

    S256 = "S256"
    plain = "plain"


class OAuthErrorType(str, Enum):
    """
    Every expected failure of the authorization server.

    Values are OAuth2 error codes (https://datatracker.ietf.org/doc/html/rfc6749#section-5.2),
    except `invalid_redirect_uri` which is only used internally and is sent to clients as `invalid_request`.
    """

    invalid_client = "invalid_client"
    invalid_grant = "invalid_grant"
    invalid_request = "invalid_request"
    invalid_scope = "invalid_scope"
    invalid_redirect_uri = "invalid_redirect_uri"
    unauthorized_client = "unauthorized_client"
    unsupported_grant_type = "unsupported_grant_type"
    unsupported_response_type = "unsupported_response_type"
    access_denied = "access_denied"


class OAuthError(BaseModel):
    """
    A failed validation, returned as a value instead of being raised.

    `description` is safe to be sent to the client.
    """

    model_config = ConfigDict(frozen=True)

    error: OAuthErrorType
    description: str
