from datetime import datetime

from sqlalchemy.orm import Mapped, mapped_column

from portcullis.types.sqlalchemy import Base, PrimaryKey


class AuthorizationCode(Base):
    __tablename__ = "authorization_code"

    code: Mapped[str] = mapped_column(primary_key=True, index=True)
    client_id: Mapped[str] = mapped_column(index=True)
    user_id: Mapped[str]
    redirect_uri: Mapped[str]
    scope: Mapped[str]
    code_challenge: Mapped[str | None]
    code_challenge_method: Mapped[str | None]
    created_on: Mapped[datetime]
    expire_on: Mapped[datetime] = mapped_column(index=True)
    # A code can only be exchanged once. This is the only column that is ever updated
    used: Mapped[bool] = mapped_column(default=False)


class OAuthToken(Base):
    """
    An access token and its optional refresh token.

    Refreshing never updates a row: the consumed row is revoked and a new one is created.
    """

    __tablename__ = "oauth_token"

    id: Mapped[PrimaryKey]
    access_token: Mapped[str] = mapped_column(unique=True, index=True)
    client_id: Mapped[str] = mapped_column(index=True)
    # There is no user for client credentials grants
    user_id: Mapped[str | None]
    scope: Mapped[str]
    created_on: Mapped[datetime]
    expire_on: Mapped[datetime] = mapped_column(index=True)
    refresh_token: Mapped[str | None] = mapped_column(
        unique=True,
        index=True,
        default=None,
    )
    refresh_expire_on: Mapped[datetime | None] = mapped_column(default=None)
    revoked_on: Mapped[datetime | None] = mapped_column(default=None)

    @property
    def revoked(self) -> bool:
        return self.revoked_on is not None
