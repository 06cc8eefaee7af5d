from datetime import datetime

from sqlalchemy import JSON
from sqlalchemy.orm import Mapped, mapped_column

from portcullis.types.sqlalchemy import Base


class OAuthClient(Base):
    __tablename__ = "oauth_client"

    client_id: Mapped[str] = mapped_column(primary_key=True, index=True)
    name: Mapped[str]
    confidential: Mapped[bool]
    # Only confidential clients have a secret. The plaintext secret is never stored
    secret_hash: Mapped[str | None]
    redirect_uris: Mapped[list[str]] = mapped_column(JSON)
    scopes: Mapped[list[str]] = mapped_column(JSON)
    grant_types: Mapped[list[str]] = mapped_column(JSON)
    created_on: Mapped[datetime]
    updated_on: Mapped[datetime]
