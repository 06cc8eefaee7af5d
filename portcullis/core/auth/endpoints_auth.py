import base64
import binascii
import logging
import urllib.parse

from fastapi import (
    APIRouter,
    Depends,
    Header,
    Response,
    status,
)
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from portcullis.core.auth import schemas_auth
from portcullis.core.auth.grant_orchestrator import GrantOrchestrator
from portcullis.core.auth.types_auth import (
    CodeChallengeMethod,
    GrantType,
    OAuthError,
    OAuthErrorType,
)
from portcullis.core.clients.client_registry import ClientRegistry
from portcullis.core.utils.config import Settings
from portcullis.core.utils.security import IdentityProvider
from portcullis.dependencies import (
    get_client_registry,
    get_db,
    get_identity_provider,
    get_orchestrator,
    get_request_id,
    get_settings,
)
from portcullis.types.exceptions import AuthHTTPException
from portcullis.types.module import CoreModule
from portcullis.types.scopes_type import ScopeType

router = APIRouter(tags=["Auth"])

core_module = CoreModule(
    root="auth",
    tag="Auth",
    router=router,
)

portcullis_access_logger = logging.getLogger("portcullis.access")
portcullis_security_logger = logging.getLogger("portcullis.security")

OAUTH_ERROR_RESPONSES: dict[OAuthErrorType, tuple[int, str]] = {
    OAuthErrorType.invalid_client: (401, "invalid_client"),
    OAuthErrorType.invalid_grant: (400, "invalid_grant"),
    OAuthErrorType.invalid_request: (400, "invalid_request"),
    OAuthErrorType.invalid_scope: (400, "invalid_scope"),
    # The redirect uri is a request parameter, there is no dedicated OAuth error code
    OAuthErrorType.invalid_redirect_uri: (400, "invalid_request"),
    OAuthErrorType.unauthorized_client: (400, "unauthorized_client"),
    OAuthErrorType.unsupported_grant_type: (400, "unsupported_grant_type"),
    OAuthErrorType.unsupported_response_type: (400, "unsupported_response_type"),
    OAuthErrorType.access_denied: (403, "access_denied"),
}
"""
HTTP status and OAuth error code sent to the client for each error.
See https://datatracker.ietf.org/doc/html/rfc6749#section-5.2
"""

# Required headers by OAuth for responses containing tokens or credentials
# See https://datatracker.ietf.org/doc/html/rfc6749#section-5.1
NO_CACHE_HEADERS = {
    "Cache-Control": "no-store",
    "Pragma": "no-cache",
}


def oauth_error_to_http_exception(
    error: OAuthError,
    headers: dict[str, str] | None = None,
) -> AuthHTTPException:
    status_code, wire_error = OAUTH_ERROR_RESPONSES[error.error]
    return AuthHTTPException(
        status_code=status_code,
        error=wire_error,
        error_description=error.description,
        headers=headers,
    )


def build_redirect_url(redirect_uri: str, params: dict[str, str | None]) -> str:
    """
    Add `params` to the query of `redirect_uri`. None values are omitted.

    The query of the registered redirect uri is kept, as required by https://datatracker.ietf.org/doc/html/rfc6749#section-3.1.2
    """
    query = urllib.parse.urlencode(
        {key: value for key, value in params.items() if value is not None},
    )
    separator = "&" if "?" in redirect_uri else "?"
    return redirect_uri + separator + query


def parse_basic_authorization(authorization: str) -> tuple[str, str] | None:
    """
    Return the client id and secret contained in a Basic authorization header, or None if the header is malformed.

    Both values are form urlencoded before being base64 encoded, see https://datatracker.ietf.org/doc/html/rfc6749#section-2.3.1
    """
    try:
        decoded = base64.b64decode(authorization, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    client_id, separator, client_secret = decoded.partition(":")
    if not separator:
        return None
    return urllib.parse.unquote_plus(client_id), urllib.parse.unquote_plus(
        client_secret,
    )


@router.post(
    "/auth/authorize",
    response_class=RedirectResponse,
)
async def authorize(
    # User validation
    authorizereq: schemas_auth.AuthorizeValidation = Depends(
        schemas_auth.AuthorizeValidation.as_form,
    ),
    db: AsyncSession = Depends(get_db, scope="function"),
    client_registry: ClientRegistry = Depends(get_client_registry),
    orchestrator: GrantOrchestrator = Depends(get_orchestrator),
    identity_provider: IdentityProvider = Depends(get_identity_provider),
    request_id: str = Depends(get_request_id),
):
    """
    Part 1 of the authorization code grant.

    Parameters must be `application/x-www-form-urlencoded` and includes:

    * OAuth parameters:
        * `response_type`: must be `code`
        * `client_id`: client identifier, needs to be registered
        * `redirect_uri`: the url we need to redirect the user to after the authorization. Must be registered by the client.
        * `scope`: optional. Space delimited list of scopes the client want to get access to.
        * `state`: recommended. Opaque value used to maintain state between the request and the callback.

    * additional parameters for PKCE (see specs on https://datatracker.ietf.org/doc/html/rfc7636/):
        * `code_challenge`
        * `code_challenge_method`: `S256` or `plain`

    * parameters that allows to authenticate the user:
        * `email`
        * `password`

    If the client or the redirect uri is not valid, a json error is returned and the user is never redirected.
    Other errors are sent to the client by redirecting the user to `redirect_uri` with `error` and `error_description` query parameters.

    https://www.rfc-editor.org/rfc/rfc6749.html#section-4.1.2
    """
    # We should never redirect the user to an unverified uri
    client = await client_registry.lookup(db=db, client_id=authorizereq.client_id)
    if client is None:
        portcullis_access_logger.warning(
            f"Authorize: Invalid client_id {authorizereq.client_id} ({request_id})",
        )
        raise oauth_error_to_http_exception(
            OAuthError(
                error=OAuthErrorType.invalid_client,
                description="Unknown client",
            ),
        )
    redirect_uri_error = client_registry.validate_redirect_uri(
        client,
        authorizereq.redirect_uri,
    )
    if redirect_uri_error is not None:
        portcullis_access_logger.warning(
            f"Authorize: Mismatching redirect_uri for client {client.client_id} ({request_id})",
        )
        raise oauth_error_to_http_exception(redirect_uri_error)

    user_id = await identity_provider.authenticate(
        db=db,
        email=authorizereq.email,
        password=authorizereq.password,
    )
    if user_id is None:
        portcullis_security_logger.warning(
            f"Authorize: Invalid user email or password for client {client.client_id} ({request_id})",
        )
        return RedirectResponse(
            build_redirect_url(
                authorizereq.redirect_uri,
                {
                    "error": OAUTH_ERROR_RESPONSES[OAuthErrorType.access_denied][1],
                    "error_description": "Invalid user credentials",
                    "state": authorizereq.state,
                },
            ),
            status_code=status.HTTP_302_FOUND,
        )

    result = await orchestrator.authorize(
        db=db,
        client_id=authorizereq.client_id,
        redirect_uri=authorizereq.redirect_uri,
        response_type=authorizereq.response_type,
        user_id=user_id,
        scope=authorizereq.scope,
        state=authorizereq.state,
        code_challenge=authorizereq.code_challenge,
        code_challenge_method=authorizereq.code_challenge_method,
        request_id=request_id,
    )

    if isinstance(result, OAuthError):
        params = {
            "error": OAUTH_ERROR_RESPONSES[result.error][1],
            "error_description": result.description,
            "state": authorizereq.state,
        }
    else:
        params = {"code": result.code, "state": authorizereq.state}

    # We need to redirect the user with as a GET request.
    # By default, RedirectResponse send a 307 code, which prevent the user browser from changing the POST of this endpoint to a GET
    # See https://stackoverflow.com/a/65512571
    return RedirectResponse(
        build_redirect_url(authorizereq.redirect_uri, params),
        status_code=status.HTTP_302_FOUND,
    )


@router.post(
    "/auth/token",
    response_model=schemas_auth.TokenResponse,
    response_model_exclude_none=True,
)
async def token(
    response: Response,
    # The client id and secret must be passed either in the authorization header or with client_id and client_secret parameters
    tokenreq: schemas_auth.TokenReq = Depends(schemas_auth.TokenReq.as_form),
    authorization: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db, scope="function"),
    orchestrator: GrantOrchestrator = Depends(get_orchestrator),
    request_id: str = Depends(get_request_id),
):
    """
    Exchange a grant for an access token.

    Parameters must be `application/x-www-form-urlencoded` and include:

    * `grant_type`: `authorization_code`, `client_credentials` or `refresh_token`

    * Client credentials
        The client must send either:
            the client id and secret in a Basic authorization header or with client_id and client_secret parameters
        Public clients only send their client_id.

    * for the `authorization_code` grant:
        * `code`: the authorization code received from the authorization endpoint
        * `redirect_uri`: the uri used in the authorization request
        * `code_verifier`: required if a code_challenge was sent in the authorization request

    * for the `client_credentials` grant:
        * `scope`: optional

    * for the `refresh_token` grant:
        * `refresh_token`

    https://datatracker.ietf.org/doc/html/rfc6749#section-4.1.3
    """
    if authorization is not None and authorization.startswith("Basic "):
        credentials = parse_basic_authorization(authorization.removeprefix("Basic "))
        if credentials is None:
            portcullis_security_logger.warning(
                f"Token: Malformed Basic authorization header ({request_id})",
            )
            raise AuthHTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                error="invalid_client",
                error_description="Malformed authorization header",
                headers={"WWW-Authenticate": "Basic", **NO_CACHE_HEADERS},
            )
        # A client must use a single authentication method
        if tokenreq.client_id is not None or tokenreq.client_secret is not None:
            portcullis_security_logger.warning(
                f"Token: Client credentials sent both in the header and in the body ({request_id})",
            )
            raise AuthHTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                error="invalid_request",
                error_description="Client credentials must be sent either in the authorization header or in the request body",
                headers=dict(NO_CACHE_HEADERS),
            )
        tokenreq.client_id, tokenreq.client_secret = credentials

    result = await orchestrator.token(
        db=db,
        grant_type=tokenreq.grant_type,
        client_id=tokenreq.client_id,
        client_secret=tokenreq.client_secret,
        code=tokenreq.code,
        redirect_uri=tokenreq.redirect_uri,
        refresh_token=tokenreq.refresh_token,
        code_verifier=tokenreq.code_verifier,
        scope=tokenreq.scope,
        request_id=request_id,
    )

    if isinstance(result, OAuthError):
        headers = dict(NO_CACHE_HEADERS)
        if result.error == OAuthErrorType.invalid_client:
            headers["WWW-Authenticate"] = "Basic"
        raise oauth_error_to_http_exception(result, headers=headers)

    response.headers.update(NO_CACHE_HEADERS)
    return result


@router.post(
    "/auth/revoke",
    status_code=200,
)
async def revoke_token(
    tokenreq: schemas_auth.RevokeTokenReq = Depends(
        schemas_auth.RevokeTokenReq.as_form,
    ),
    db: AsyncSession = Depends(get_db, scope="function"),
    orchestrator: GrantOrchestrator = Depends(get_orchestrator),
    request_id: str = Depends(get_request_id),
):
    """
    Revoke an access token or a refresh token.

    The response is the same whether the token existed or not.
    https://datatracker.ietf.org/doc/html/rfc7009#section-2.2
    """
    await orchestrator.revoke(db=db, token=tokenreq.token, request_id=request_id)


@router.get(
    "/.well-known/oauth-authorization-server",
)
async def oauth_configuration(
    settings: Settings = Depends(get_settings),
):
    # See https://datatracker.ietf.org/doc/html/rfc8414
    return get_oauth_authorization_server_metadata(settings)


def get_oauth_authorization_server_metadata(settings: Settings):
    return {
        "issuer": settings.ISSUER,
        "authorization_endpoint": settings.CLIENT_URL + "auth/authorize",
        "token_endpoint": settings.CLIENT_URL + "auth/token",
        "revocation_endpoint": settings.CLIENT_URL + "auth/revoke",
        "scopes_supported": [scope.value for scope in ScopeType],
        # Only the authorization code flow issues codes
        "response_types_supported": [
            "code",
        ],
        "grant_types_supported": [grant_type.value for grant_type in GrantType],
        "token_endpoint_auth_methods_supported": [
            "client_secret_post",
            "client_secret_basic",
            "none",  # Public clients using PKCE don't provide a client secret
        ],
        "revocation_endpoint_auth_methods_supported": [
            "none",
        ],
        "code_challenge_methods_supported": [
            method.value for method in CodeChallengeMethod
        ],
    }
