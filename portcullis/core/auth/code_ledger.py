import base64
import hashlib
import hmac
import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from portcullis.core.auth import cruds_auth, models_auth
from portcullis.core.auth.types_auth import (
    CodeChallengeMethod,
    OAuthError,
    OAuthErrorType,
)
from portcullis.core.clients import models_clients
from portcullis.core.utils.security import generate_token
from portcullis.utils.tools import storage_guard

portcullis_security_logger = logging.getLogger("portcullis.security")


def compute_code_challenge(
    code_verifier: str,
    code_challenge_method: CodeChallengeMethod,
) -> str:
    """
    Apply the PKCE transformation to the verifier.

    For S256 the challenge is the SHA-256 hash of the verifier, urlsafe base64 encoded without padding.
    See https://datatracker.ietf.org/doc/html/rfc7636#section-4.2
    """
    if code_challenge_method == CodeChallengeMethod.S256:
        digest = hashlib.sha256(code_verifier.encode("utf-8")).digest()
        return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    return code_verifier


def verify_code_verifier(
    code_verifier: str,
    code_challenge: str,
    code_challenge_method: CodeChallengeMethod,
) -> bool:
    expected_challenge = code_challenge
    if code_challenge_method == CodeChallengeMethod.S256:
        # Some clients keep the base64 padding
        expected_challenge = code_challenge.rstrip("=")
    return hmac.compare_digest(
        compute_code_challenge(code_verifier, code_challenge_method).encode("utf-8"),
        expected_challenge.encode("utf-8"),
    )


class AuthorizationCodeLedger:
    """
    Issues one-time authorization codes and redeems them.

    A code can be redeemed only once. Redemption relies on a conditional update of the `used` flag,
    so that when multiple requests race to redeem the same code, exactly one of them succeeds.
    """

    def __init__(
        self,
        code_ttl: timedelta = timedelta(minutes=10),
        storage_timeout: float = 5.0,
    ):
        self.code_ttl = code_ttl
        self.storage_timeout = storage_timeout

    async def issue(
        self,
        db: AsyncSession,
        client_id: str,
        user_id: str,
        redirect_uri: str,
        scope: str,
        code_challenge: str | None = None,
        code_challenge_method: CodeChallengeMethod | None = None,
    ) -> models_auth.AuthorizationCode:
        if code_challenge is None:
            code_challenge_method = None
        elif code_challenge_method is None:
            # If the method is not provided, the client is expected to use the plain transformation
            # See https://datatracker.ietf.org/doc/html/rfc7636#section-4.3
            code_challenge_method = CodeChallengeMethod.plain

        now = datetime.now(UTC)
        authorization_code = models_auth.AuthorizationCode(
            # 32 random bytes give 256 bits of entropy
            code=generate_token(32),
            client_id=client_id,
            user_id=user_id,
            redirect_uri=redirect_uri,
            scope=scope,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method.value
            if code_challenge_method
            else None,
            created_on=now,
            expire_on=now + self.code_ttl,
            used=False,
        )
        async with storage_guard("issue_authorization_code", self.storage_timeout):
            await cruds_auth.create_authorization_code(
                db=db,
                authorization_code=authorization_code,
            )
        return authorization_code

    async def redeem(
        self,
        db: AsyncSession,
        code: str,
        client: models_clients.OAuthClient,
        redirect_uri: str,
        code_verifier: str | None = None,
    ) -> models_auth.AuthorizationCode | OAuthError:
        """
        Exchange a code. Checks are made in the following order:
         * the code exists, is not used and is not expired, otherwise `invalid_grant`
         * the code was issued to `client`, otherwise `invalid_client`
         * `redirect_uri` is the one used to get the code, otherwise `invalid_grant`
         * if a PKCE challenge was provided, `code_verifier` matches it, otherwise `invalid_grant`

        A failed check leaves the code untouched. An unknown code and a used code are reported the same way.
        """
        invalid_grant = OAuthError(
            error=OAuthErrorType.invalid_grant,
            description="The authorization code is invalid or expired",
        )
        now = datetime.now(UTC)

        async with storage_guard("get_authorization_code", self.storage_timeout):
            db_code = await cruds_auth.get_authorization_code_by_code(
                db=db,
                code=code,
            )

        if db_code is None:
            return invalid_grant
        if db_code.used:
            portcullis_security_logger.warning(
                f"AuthorizationCodeLedger: reuse of an authorization code issued to client {db_code.client_id} for user {db_code.user_id}",
            )
            return invalid_grant
        if now > db_code.expire_on:
            return invalid_grant

        if db_code.client_id != client.client_id:
            portcullis_security_logger.warning(
                f"AuthorizationCodeLedger: client {client.client_id} tried to redeem a code issued to client {db_code.client_id}",
            )
            return OAuthError(
                error=OAuthErrorType.invalid_client,
                description="The authorization code was not issued to this client",
            )

        if db_code.redirect_uri != redirect_uri:
            return OAuthError(
                error=OAuthErrorType.invalid_grant,
                description="The redirect_uri does not match the one used in the authorization request",
            )

        pkce_error = self._check_pkce(db_code=db_code, code_verifier=code_verifier)
        if pkce_error is not None:
            portcullis_security_logger.warning(
                f"AuthorizationCodeLedger: PKCE verification failed for client {client.client_id}",
            )
            return pkce_error

        async with storage_guard("mark_authorization_code_as_used", self.storage_timeout):
            marked_as_used = await cruds_auth.mark_authorization_code_as_used(
                db=db,
                code=code,
                now=now,
            )
        if not marked_as_used:
            # An other request redeemed the code since we read it
            portcullis_security_logger.warning(
                f"AuthorizationCodeLedger: concurrent redemption of an authorization code issued to client {db_code.client_id}",
            )
            return invalid_grant

        return db_code

    def _check_pkce(
        self,
        db_code: models_auth.AuthorizationCode,
        code_verifier: str | None,
    ) -> OAuthError | None:
        if db_code.code_challenge is None:
            if code_verifier is not None:
                return OAuthError(
                    error=OAuthErrorType.invalid_grant,
                    description="A code_verifier was provided but no code_challenge was sent in the authorization request",
                )
            return None

        if code_verifier is None:
            return OAuthError(
                error=OAuthErrorType.invalid_grant,
                description="A code_verifier is required for this authorization code",
            )

        if not verify_code_verifier(
            code_verifier=code_verifier,
            code_challenge=db_code.code_challenge,
            code_challenge_method=CodeChallengeMethod(
                db_code.code_challenge_method or CodeChallengeMethod.plain,
            ),
        ):
            return OAuthError(
                error=OAuthErrorType.invalid_grant,
                description="Invalid code_verifier",
            )
        return None

    async def discard_for_client(
        self,
        db: AsyncSession,
        client_id: str,
    ) -> int:
        """Delete every code issued to a client, used or not"""
        async with storage_guard("discard_authorization_codes", self.storage_timeout):
            return await cruds_auth.delete_authorization_codes_by_client_id(
                db=db,
                client_id=client_id,
            )

    async def sweep_expired(
        self,
        db: AsyncSession,
    ) -> int:
        """Delete expired codes. Return the number of deleted codes"""
        async with storage_guard("sweep_authorization_codes", self.storage_timeout):
            return await cruds_auth.delete_expired_authorization_codes(
                db=db,
                now=datetime.now(UTC),
            )
