import logging
import secrets
import string
from collections.abc import Sequence
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from portcullis.core.auth.types_auth import GrantType, OAuthError, OAuthErrorType
from portcullis.core.clients import cruds_clients, models_clients
from portcullis.core.utils import security
from portcullis.core.utils.config import AuthClientConfig
from portcullis.utils.tools import split_scope, storage_guard

portcullis_security_logger = logging.getLogger("portcullis.security")

CLIENT_ID_PREFIX = "client_"
CLIENT_ID_ALPHABET = string.ascii_letters + string.digits


def generate_client_id() -> str:
    return CLIENT_ID_PREFIX + "".join(
        secrets.choice(CLIENT_ID_ALPHABET) for _ in range(32)
    )


class ClientRegistry:
    """
    Owns the registered clients: their identity, their secret and the capabilities they declared.

    Only a bcrypt hash of confidential clients secret is stored. The plaintext secret is returned once by `register`.

    Validation methods return None when the check passes and an `OAuthError` otherwise.
    """

    def __init__(
        self,
        hash_rounds: int = 13,
        storage_timeout: float = 5.0,
    ):
        self.hash_rounds = hash_rounds
        self.storage_timeout = storage_timeout
        # Computed ahead of the first authentication of an unknown client
        security.get_dummy_hash(hash_rounds)

    async def register(
        self,
        db: AsyncSession,
        name: str,
        redirect_uris: list[str],
        scopes: list[str],
        grant_types: list[GrantType],
        confidential: bool,
        client_id: str | None = None,
        client_secret: str | None = None,
    ) -> tuple[models_clients.OAuthClient, str | None]:
        """
        Register a new client and return it with its plaintext secret.

        Public clients don't have a secret, None is returned instead.
        `client_id` and `client_secret` are generated unless provided, which is only done for clients declared in the settings.
        """
        plaintext_secret: str | None = None
        secret_hash: str | None = None
        if confidential:
            # 48 random bytes give a 64 characters secret
            plaintext_secret = client_secret or security.generate_token(48)
            secret_hash = security.get_password_hash(
                plaintext_secret,
                rounds=self.hash_rounds,
            )

        now = datetime.now(UTC)
        client = models_clients.OAuthClient(
            client_id=client_id or generate_client_id(),
            name=name,
            confidential=confidential,
            secret_hash=secret_hash,
            redirect_uris=list(redirect_uris),
            scopes=list(scopes),
            grant_types=[grant_type.value for grant_type in grant_types],
            created_on=now,
            updated_on=now,
        )
        async with storage_guard("register_client", self.storage_timeout):
            await cruds_clients.create_client(db=db, client=client)

        return client, plaintext_secret

    async def lookup(
        self,
        db: AsyncSession,
        client_id: str,
    ) -> models_clients.OAuthClient | None:
        async with storage_guard("lookup_client", self.storage_timeout):
            return await cruds_clients.get_client_by_id(db=db, client_id=client_id)

    async def get_all(
        self,
        db: AsyncSession,
    ) -> Sequence[models_clients.OAuthClient]:
        async with storage_guard("get_clients", self.storage_timeout):
            return await cruds_clients.get_clients(db=db)

    async def authenticate(
        self,
        db: AsyncSession,
        client_id: str | None,
        client_secret: str | None,
    ) -> models_clients.OAuthClient | OAuthError:
        """
        Public clients are authenticated by their id alone. Confidential clients must provide their secret.

        An unknown client id takes as long to reject as a wrong secret.
        """
        invalid_client = OAuthError(
            error=OAuthErrorType.invalid_client,
            description="Client authentication failed",
        )
        if not client_id:
            return invalid_client

        client = await self.lookup(db=db, client_id=client_id)
        if client is None:
            # In order to prevent timing attacks, we simulate the delay the secret validation would have taken if the client existed
            security.verify_password(client_secret or "", None, rounds=self.hash_rounds)
            return invalid_client

        if not client.confidential:
            return client

        if not security.verify_password(
            client_secret or "",
            client.secret_hash if client_secret is not None else None,
            rounds=self.hash_rounds,
        ):
            portcullis_security_logger.warning(
                f"ClientRegistry: invalid secret provided for client {client_id}",
            )
            return invalid_client

        return client

    def validate_redirect_uri(
        self,
        client: models_clients.OAuthClient,
        redirect_uri: str | None,
    ) -> OAuthError | None:
        # Exact match only, no prefix or pattern matching
        if redirect_uri is None or redirect_uri not in client.redirect_uris:
            return OAuthError(
                error=OAuthErrorType.invalid_redirect_uri,
                description="The redirect_uri is not registered for this client",
            )
        return None

    def validate_scope(
        self,
        client: models_clients.OAuthClient,
        scope: str | None,
    ) -> OAuthError | None:
        unknown_scopes = [
            requested_scope
            for requested_scope in split_scope(scope)
            if requested_scope not in client.scopes
        ]
        if unknown_scopes:
            return OAuthError(
                error=OAuthErrorType.invalid_scope,
                description=f"Scopes {' '.join(unknown_scopes)} are not allowed for this client",
            )
        return None

    def validate_grant_type(
        self,
        client: models_clients.OAuthClient,
        grant_type: GrantType,
    ) -> OAuthError | None:
        if grant_type.value not in client.grant_types:
            return OAuthError(
                error=OAuthErrorType.unauthorized_client,
                description=f"The client is not allowed to use the {grant_type.value} grant",
            )
        return None

    async def update(
        self,
        db: AsyncSession,
        client_id: str,
        name: str | None = None,
        redirect_uris: list[str] | None = None,
        scopes: list[str] | None = None,
        grant_types: list[GrantType] | None = None,
    ) -> models_clients.OAuthClient | None:
        """
        Update the declared capabilities of a client. The client id and secret can not be changed.

        Return None if the client does not exist.
        """
        values: dict[str, str | list[str]] = {}
        if name is not None:
            values["name"] = name
        if redirect_uris is not None:
            values["redirect_uris"] = list(redirect_uris)
        if scopes is not None:
            values["scopes"] = list(scopes)
        if grant_types is not None:
            values["grant_types"] = [grant_type.value for grant_type in grant_types]

        async with storage_guard("update_client", self.storage_timeout):
            updated = await cruds_clients.update_client(
                db=db,
                client_id=client_id,
                values=values,
                updated_on=datetime.now(UTC),
            )
            if not updated:
                return None
            return await cruds_clients.get_client_by_id(db=db, client_id=client_id)

    async def delete(
        self,
        db: AsyncSession,
        client_id: str,
    ) -> bool:
        async with storage_guard("delete_client", self.storage_timeout):
            return await cruds_clients.delete_client(db=db, client_id=client_id)

    async def ensure_configured_client(
        self,
        db: AsyncSession,
        client_id: str,
        config: AuthClientConfig,
    ) -> models_clients.OAuthClient:
        """
        Register a client declared in the settings if it does not exist yet.

        An existing client is left untouched, its declared capabilities are not synchronized with the settings.
        """
        client = await self.lookup(db=db, client_id=client_id)
        if client is not None:
            return client

        client, _ = await self.register(
            db=db,
            name=config.name,
            redirect_uris=config.redirect_uri,
            scopes=config.scopes,
            grant_types=config.grant_types,
            confidential=bool(config.secret),
            client_id=client_id,
            client_secret=config.secret or None,
        )
        return client
