from datetime import datetime

from sqlalchemy.orm import Mapped, mapped_column

from portcullis.types.sqlalchemy import Base


class CoreUser(Base):
    """
    Accounts known by the database identity provider.

    Users are only read by the authorization server, they are created by an external registration service.
    """

    __tablename__ = "core_user"

    id: Mapped[str] = mapped_column(
        primary_key=True,
        index=True,
    )
    email: Mapped[str] = mapped_column(unique=True, index=True)
    password_hash: Mapped[str]
    created_on: Mapped[datetime | None]
