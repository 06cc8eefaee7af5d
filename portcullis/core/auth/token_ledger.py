import logging
import uuid
from datetime import UTC, datetime, timedelta

import jwt
from jwt.exceptions import InvalidTokenError
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from portcullis.core.auth import cruds_auth, models_auth, schemas_auth
from portcullis.core.auth.types_auth import OAuthError, OAuthErrorType
from portcullis.core.utils.security import generate_token, jwt_algorithm
from portcullis.utils.tools import storage_guard

portcullis_access_logger = logging.getLogger("portcullis.access")
portcullis_security_logger = logging.getLogger("portcullis.security")


class TokenLedger:
    """
    Issues, validates, rotates and revokes access and refresh tokens.

    Access tokens are HS256 JWTs signed with `secret_key`. Refresh tokens are opaque random strings.
    Both are persisted together in an `OAuthToken` row, which is the source of truth for their validity:
    a token with a valid signature is still rejected if its row was revoked.

    The signing key is owned by the instance. Two ledgers built with different keys never accept each other's tokens.
    """

    def __init__(
        self,
        secret_key: str,
        access_token_ttl: timedelta = timedelta(hours=1),
        refresh_token_ttl: timedelta = timedelta(days=30),
        storage_timeout: float = 5.0,
    ):
        self._secret_key = secret_key
        self.access_token_ttl = access_token_ttl
        self.refresh_token_ttl = refresh_token_ttl
        self.storage_timeout = storage_timeout

    def issue_access_token(
        self,
        client_id: str,
        scope: str,
        user_id: str | None = None,
        ttl: timedelta | None = None,
    ) -> str:
        """
        Create a signed access token. The subject is the user, or the client itself when there is no user.
        """
        iat = datetime.now(UTC)
        expire_on = iat + (ttl or self.access_token_ttl)
        token_data = schemas_auth.TokenData(
            sub=user_id or client_id,
            cid=client_id,
            scope=scope,
            jti=generate_token(16),
            iat=int(iat.timestamp()),
            exp=int(expire_on.timestamp()),
        )
        return jwt.encode(
            token_data.model_dump(),
            self._secret_key,
            algorithm=jwt_algorithm,
        )

    def issue_refresh_token(self) -> str:
        return generate_token(32)

    def decode(self, access_token: str) -> schemas_auth.TokenData | None:
        """
        Check the signature and the expiration of an access token, without looking at the database.

        Return None if the token is not valid.
        """
        try:
            payload = jwt.decode(
                access_token,
                self._secret_key,
                algorithms=[jwt_algorithm],
                options={"require": ["exp", "iat", "sub"]},
            )
            return schemas_auth.TokenData(**payload)
        except (InvalidTokenError, ValidationError):
            return None

    async def persist(
        self,
        db: AsyncSession,
        access_token: str,
        client_id: str,
        scope: str,
        refresh_token: str | None = None,
        user_id: str | None = None,
    ) -> models_auth.OAuthToken:
        """
        Store an access token and its optional refresh token as a single record.

        The access token expiry is read from the token itself. The refresh token expires after `refresh_token_ttl`.
        """
        token_data = self.decode(access_token)
        if token_data is None:
            raise ValueError(
                "Only valid access tokens issued by this ledger can be persisted",
            )

        now = datetime.now(UTC)
        token = models_auth.OAuthToken(
            id=uuid.uuid4(),
            access_token=access_token,
            client_id=client_id,
            user_id=user_id,
            scope=scope,
            created_on=datetime.fromtimestamp(token_data.iat, UTC),
            expire_on=datetime.fromtimestamp(token_data.exp, UTC),
            refresh_token=refresh_token,
            refresh_expire_on=now + self.refresh_token_ttl if refresh_token else None,
            revoked_on=None,
        )
        async with storage_guard("persist_token", self.storage_timeout):
            await cruds_auth.create_token(db=db, token=token)
        return token

    async def validate(
        self,
        db: AsyncSession,
        access_token: str,
    ) -> models_auth.OAuthToken | None:
        """
        Return the record of an active access token, or None.

        The signature is checked first. The token must then be persisted, not revoked and not expired.
        """
        token_data = self.decode(access_token)
        if token_data is None:
            return None

        async with storage_guard("get_token", self.storage_timeout):
            token = await cruds_auth.get_token_by_access_token(
                db=db,
                access_token=access_token,
            )

        if token is None or token.client_id != token_data.cid:
            return None
        if token.revoked_on is not None:
            portcullis_security_logger.warning(
                f"TokenLedger: use of a revoked access token issued to client {token.client_id}",
            )
            return None
        if datetime.now(UTC) >= token.expire_on:
            return None
        return token

    async def lookup_by_refresh(
        self,
        db: AsyncSession,
        refresh_token: str,
    ) -> models_auth.OAuthToken | None:
        """
        Return the record of an active refresh token, or None if it is unknown, revoked or expired.
        """
        async with storage_guard("get_token_by_refresh_token", self.storage_timeout):
            token = await cruds_auth.get_token_by_refresh_token(
                db=db,
                refresh_token=refresh_token,
            )

        if token is None or token.refresh_expire_on is None:
            return None
        if token.revoked_on is not None:
            portcullis_security_logger.warning(
                f"TokenLedger: use of a revoked refresh token issued to client {token.client_id} for user {token.user_id}",
            )
            return None
        if datetime.now(UTC) >= token.refresh_expire_on:
            return None
        return token

    async def revoke(
        self,
        db: AsyncSession,
        token: str,
    ) -> bool:
        """
        Revoke the record matching an access token or a refresh token.

        Return False if nothing was revoked, because the token is unknown or was already revoked.
        """
        async with storage_guard("revoke_token", self.storage_timeout):
            return await cruds_auth.revoke_token_by_token(
                db=db,
                token=token,
                now=datetime.now(UTC),
            )

    async def rotate(
        self,
        db: AsyncSession,
        old_token: models_auth.OAuthToken,
        client_id: str,
        scope: str,
    ) -> tuple[str, str, models_auth.OAuthToken] | OAuthError:
        """
        Revoke `old_token` and issue a new access and refresh token pair for the same user.

        The revocation is conditional: if `old_token` was revoked by another request in the meantime, no new pair is issued.
        Both changes are made in the `db` transaction and are committed together.
        """
        async with storage_guard("revoke_token", self.storage_timeout):
            revoked = await cruds_auth.revoke_token_by_id(
                db=db,
                token_id=old_token.id,
                now=datetime.now(UTC),
            )
        if not revoked:
            portcullis_security_logger.warning(
                f"TokenLedger: concurrent rotation of a refresh token issued to client {old_token.client_id}",
            )
            return OAuthError(
                error=OAuthErrorType.invalid_grant,
                description="The refresh token is invalid or expired",
            )

        access_token = self.issue_access_token(
            client_id=client_id,
            scope=scope,
            user_id=old_token.user_id,
        )
        refresh_token = self.issue_refresh_token()
        new_token = await self.persist(
            db=db,
            access_token=access_token,
            client_id=client_id,
            scope=scope,
            refresh_token=refresh_token,
            user_id=old_token.user_id,
        )
        return access_token, refresh_token, new_token

    async def revoke_all_for_client(
        self,
        db: AsyncSession,
        client_id: str,
    ) -> int:
        async with storage_guard("revoke_client_tokens", self.storage_timeout):
            return await cruds_auth.revoke_tokens_by_client_id(
                db=db,
                client_id=client_id,
                now=datetime.now(UTC),
            )

    async def sweep_expired(
        self,
        db: AsyncSession,
    ) -> int:
        """Delete records whose access token and refresh token are both expired"""
        async with storage_guard("sweep_tokens", self.storage_timeout):
            count = await cruds_auth.delete_expired_tokens(
                db=db,
                now=datetime.now(UTC),
            )
        portcullis_access_logger.debug(f"TokenLedger: swept {count} expired tokens")
        return count
