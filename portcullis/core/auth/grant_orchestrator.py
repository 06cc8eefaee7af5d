import logging

from sqlalchemy.ext.asyncio import AsyncSession

from portcullis.core.auth import models_auth, schemas_auth
from portcullis.core.auth.code_ledger import AuthorizationCodeLedger
from portcullis.core.auth.token_ledger import TokenLedger
from portcullis.core.auth.types_auth import (
    CodeChallengeMethod,
    GrantType,
    OAuthError,
    OAuthErrorType,
)
from portcullis.core.clients import models_clients
from portcullis.core.clients.client_registry import ClientRegistry

portcullis_access_logger = logging.getLogger("portcullis.access")
portcullis_security_logger = logging.getLogger("portcullis.security")


class GrantOrchestrator:
    """
    Protocol logic of the authorization server.

    The orchestrator composes the client registry and the two ledgers into the authorization request
    and the three grants of the token endpoint: `authorization_code`, `client_credentials` and `refresh_token`.

    Every expected failure is returned as an `OAuthError`. Only `StorageError` is raised.
    The orchestrator does not keep any state between calls, all changes are made in the provided `db` session.
    """

    def __init__(
        self,
        client_registry: ClientRegistry,
        code_ledger: AuthorizationCodeLedger,
        token_ledger: TokenLedger,
    ):
        self.client_registry = client_registry
        self.code_ledger = code_ledger
        self.token_ledger = token_ledger

    async def authorize(
        self,
        db: AsyncSession,
        client_id: str,
        redirect_uri: str,
        response_type: str,
        user_id: str,
        scope: str | None = None,
        state: str | None = None,
        code_challenge: str | None = None,
        code_challenge_method: str | None = None,
        request_id: str = "",
    ) -> models_auth.AuthorizationCode | OAuthError:
        """
        Issue an authorization code for the authenticated user `user_id`.

        Every parameter is checked before the code is created.
        `state` is opaque to the server: it is not stored and should be sent back by the caller with the code.

        https://www.rfc-editor.org/rfc/rfc6749.html#section-4.1.1
        """
        portcullis_access_logger.info(
            f"Authorize: Starting for client {client_id} ({request_id})",
        )

        client = await self.client_registry.lookup(db=db, client_id=client_id)
        if client is None:
            return self._fail(
                "Authorize",
                OAuthError(
                    error=OAuthErrorType.invalid_client,
                    description="Unknown client",
                ),
                request_id,
            )

        error = self.client_registry.validate_redirect_uri(client, redirect_uri)
        if error is not None:
            return self._fail("Authorize", error, request_id)

        if response_type != "code":
            return self._fail(
                "Authorize",
                OAuthError(
                    error=OAuthErrorType.unsupported_response_type,
                    description="Only the `code` response_type is supported",
                ),
                request_id,
            )

        error = self.client_registry.validate_grant_type(
            client,
            GrantType.authorization_code,
        ) or self.client_registry.validate_scope(client, scope)
        if error is not None:
            return self._fail("Authorize", error, request_id)

        method: CodeChallengeMethod | None = None
        if code_challenge_method is not None:
            if code_challenge is None:
                return self._fail(
                    "Authorize",
                    OAuthError(
                        error=OAuthErrorType.invalid_request,
                        description="code_challenge_method requires a code_challenge",
                    ),
                    request_id,
                )
            try:
                method = CodeChallengeMethod(code_challenge_method)
            except ValueError:
                return self._fail(
                    "Authorize",
                    OAuthError(
                        error=OAuthErrorType.invalid_request,
                        description="code_challenge_method should be S256 or plain",
                    ),
                    request_id,
                )

        authorization_code = await self.code_ledger.issue(
            db=db,
            client_id=client.client_id,
            user_id=user_id,
            redirect_uri=redirect_uri,
            scope=scope or "",
            code_challenge=code_challenge,
            code_challenge_method=method,
        )
        portcullis_security_logger.info(
            f"Authorize: Issued an authorization code to client {client.client_id} for user {user_id} ({request_id})",
        )
        return authorization_code

    async def token(
        self,
        db: AsyncSession,
        grant_type: str,
        client_id: str | None,
        client_secret: str | None = None,
        code: str | None = None,
        redirect_uri: str | None = None,
        refresh_token: str | None = None,
        code_verifier: str | None = None,
        scope: str | None = None,
        request_id: str = "",
    ) -> schemas_auth.TokenResponse | OAuthError:
        """
        Exchange a grant for tokens.

        The client is always authenticated first, whatever the grant type.
        It must then be allowed to use the requested grant type.

        https://datatracker.ietf.org/doc/html/rfc6749#section-4.1.3
        """
        portcullis_access_logger.info(
            f"Token: Starting {grant_type} grant for client {client_id} ({request_id})",
        )

        client = await self.client_registry.authenticate(
            db=db,
            client_id=client_id,
            client_secret=client_secret,
        )
        if isinstance(client, OAuthError):
            portcullis_security_logger.warning(
                f"Token: Client authentication failed for client {client_id} ({request_id})",
            )
            return self._fail("Token", client, request_id)

        try:
            grant = GrantType(grant_type)
        except ValueError:
            return self._fail(
                "Token",
                OAuthError(
                    error=OAuthErrorType.unsupported_grant_type,
                    description=f"{grant_type} is not supported",
                ),
                request_id,
            )

        error = self.client_registry.validate_grant_type(client, grant)
        if error is not None:
            return self._fail("Token", error, request_id)

        result: schemas_auth.TokenResponse | OAuthError
        if grant == GrantType.authorization_code:
            result = await self._authorization_code_grant(
                db=db,
                client=client,
                code=code,
                redirect_uri=redirect_uri,
                code_verifier=code_verifier,
            )
        elif grant == GrantType.client_credentials:
            result = await self._client_credentials_grant(
                db=db,
                client=client,
                scope=scope,
            )
        else:
            result = await self._refresh_token_grant(
                db=db,
                client=client,
                refresh_token=refresh_token,
            )

        if isinstance(result, OAuthError):
            return self._fail("Token", result, request_id)

        portcullis_security_logger.info(
            f"Token: Granted tokens to client {client.client_id} using {grant.value} grant ({request_id})",
        )
        return result

    async def _authorization_code_grant(
        self,
        db: AsyncSession,
        client: models_clients.OAuthClient,
        code: str | None,
        redirect_uri: str | None,
        code_verifier: str | None,
    ) -> schemas_auth.TokenResponse | OAuthError:
        if code is None or redirect_uri is None:
            return OAuthError(
                error=OAuthErrorType.invalid_request,
                description="code and redirect_uri are required",
            )

        authorization_code = await self.code_ledger.redeem(
            db=db,
            code=code,
            client=client,
            redirect_uri=redirect_uri,
            code_verifier=code_verifier,
        )
        if isinstance(authorization_code, OAuthError):
            return authorization_code

        access_token = self.token_ledger.issue_access_token(
            client_id=client.client_id,
            scope=authorization_code.scope,
            user_id=authorization_code.user_id,
        )
        new_refresh_token = self.token_ledger.issue_refresh_token()
        await self.token_ledger.persist(
            db=db,
            access_token=access_token,
            client_id=client.client_id,
            scope=authorization_code.scope,
            refresh_token=new_refresh_token,
            user_id=authorization_code.user_id,
        )
        return self._token_response(
            access_token=access_token,
            scope=authorization_code.scope,
            refresh_token=new_refresh_token,
        )

    async def _client_credentials_grant(
        self,
        db: AsyncSession,
        client: models_clients.OAuthClient,
        scope: str | None,
    ) -> schemas_auth.TokenResponse | OAuthError:
        # Public clients can not authenticate themselves
        if not client.confidential:
            return OAuthError(
                error=OAuthErrorType.unauthorized_client,
                description="Only confidential clients can use the client_credentials grant",
            )

        error = self.client_registry.validate_scope(client, scope)
        if error is not None:
            return error

        granted_scope = scope or ""
        access_token = self.token_ledger.issue_access_token(
            client_id=client.client_id,
            scope=granted_scope,
        )
        await self.token_ledger.persist(
            db=db,
            access_token=access_token,
            client_id=client.client_id,
            scope=granted_scope,
        )
        return self._token_response(access_token=access_token, scope=granted_scope)

    async def _refresh_token_grant(
        self,
        db: AsyncSession,
        client: models_clients.OAuthClient,
        refresh_token: str | None,
    ) -> schemas_auth.TokenResponse | OAuthError:
        """
        https://datatracker.ietf.org/doc/html/rfc6749#section-6
        """
        if refresh_token is None:
            return OAuthError(
                error=OAuthErrorType.invalid_request,
                description="refresh_token is required",
            )

        old_token = await self.token_ledger.lookup_by_refresh(
            db=db,
            refresh_token=refresh_token,
        )
        if old_token is None:
            return OAuthError(
                error=OAuthErrorType.invalid_grant,
                description="The refresh token is invalid or expired",
            )

        if old_token.client_id != client.client_id:
            portcullis_security_logger.warning(
                f"Token: Client {client.client_id} tried to use a refresh token issued to client {old_token.client_id}",
            )
            return OAuthError(
                error=OAuthErrorType.invalid_client,
                description="The refresh token was not issued to this client",
            )

        # The client allowed scopes may have been reduced since the token was issued
        error = self.client_registry.validate_scope(client, old_token.scope)
        if error is not None:
            return error

        rotation = await self.token_ledger.rotate(
            db=db,
            old_token=old_token,
            client_id=client.client_id,
            scope=old_token.scope,
        )
        if isinstance(rotation, OAuthError):
            return rotation

        access_token, new_refresh_token, _ = rotation
        return self._token_response(
            access_token=access_token,
            scope=old_token.scope,
            refresh_token=new_refresh_token,
        )

    async def revoke(
        self,
        db: AsyncSession,
        token: str,
        request_id: str = "",
    ) -> None:
        """
        Revoke an access token or a refresh token. Unknown or already revoked tokens are ignored.

        https://datatracker.ietf.org/doc/html/rfc7009#section-2.2
        """
        revoked = await self.token_ledger.revoke(db=db, token=token)
        if revoked:
            portcullis_security_logger.info(f"Revoke: Revoked a token ({request_id})")
        else:
            portcullis_access_logger.info(
                f"Revoke: Token was unknown or already revoked ({request_id})",
            )

    async def introspect(
        self,
        db: AsyncSession,
        access_token: str,
    ) -> models_auth.OAuthToken | None:
        """
        Return the record of an active access token, or None. Used to protect endpoints.
        """
        return await self.token_ledger.validate(db=db, access_token=access_token)

    async def register_client(
        self,
        db: AsyncSession,
        name: str,
        redirect_uris: list[str],
        scopes: list[str],
        grant_types: list[GrantType],
        confidential: bool,
        request_id: str = "",
    ) -> tuple[models_clients.OAuthClient, str | None]:
        client, client_secret = await self.client_registry.register(
            db=db,
            name=name,
            redirect_uris=redirect_uris,
            scopes=scopes,
            grant_types=grant_types,
            confidential=confidential,
        )
        portcullis_security_logger.info(
            f"Clients: Registered {'confidential' if confidential else 'public'} client {client.client_id} ({request_id})",
        )
        return client, client_secret

    async def delete_client(
        self,
        db: AsyncSession,
        client_id: str,
        request_id: str = "",
    ) -> bool:
        """
        Delete a client. Its tokens are revoked and its pending authorization codes are deleted.

        Return False if the client does not exist.
        """
        if await self.client_registry.lookup(db=db, client_id=client_id) is None:
            return False

        revoked_tokens = await self.token_ledger.revoke_all_for_client(
            db=db,
            client_id=client_id,
        )
        await self.code_ledger.discard_for_client(db=db, client_id=client_id)
        await self.client_registry.delete(db=db, client_id=client_id)

        portcullis_security_logger.info(
            f"Clients: Deleted client {client_id} and revoked {revoked_tokens} tokens ({request_id})",
        )
        return True

    async def sweep_expired(
        self,
        db: AsyncSession,
    ) -> tuple[int, int]:
        """
        Delete expired authorization codes and tokens. Return the number of deleted codes and tokens.
        """
        deleted_codes = await self.code_ledger.sweep_expired(db=db)
        deleted_tokens = await self.token_ledger.sweep_expired(db=db)
        return deleted_codes, deleted_tokens

    def _token_response(
        self,
        access_token: str,
        scope: str,
        refresh_token: str | None = None,
    ) -> schemas_auth.TokenResponse:
        return schemas_auth.TokenResponse(
            access_token=access_token,
            expires_in=int(self.token_ledger.access_token_ttl.total_seconds()),
            scope=scope,
            refresh_token=refresh_token,
        )

    def _fail(
        self,
        operation: str,
        error: OAuthError,
        request_id: str,
    ) -> OAuthError:
        portcullis_access_logger.warning(
            f"{operation}: {error.error.value}, {error.description} ({request_id})",
        )
        return error
