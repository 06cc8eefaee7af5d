import datetime
import uuid
from collections.abc import Callable
from typing import Annotated

from sqlalchemy import DateTime, types
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase, MappedAsDataclass, mapped_column
from sqlalchemy.types import TypeDecorator

from portcullis.types.exceptions import MissingTZInfoInDatetimeError


class UTCDateTime(TypeDecorator):
    """
    Store aware datetimes as naive UTC datetimes, and read them back as aware UTC datetimes.

    Code and token expiries are compared with `datetime.now(UTC)` in SQL, so every stored value must be UTC.
    SQLite has no timezone aware column type.
    See https://docs.sqlalchemy.org/en/20/core/custom_types.html#store-timezone-aware-timestamps-as-timezone-naive-utc
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.utcoffset() is None:
            raise MissingTZInfoInDatetimeError
        return value.astimezone(datetime.UTC).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=datetime.UTC)


# Token records are identified by a UUID, see https://docs.sqlalchemy.org/en/20/orm/declarative_tables.html#mapping-whole-column-declarations-to-python-types
PrimaryKey = Annotated[uuid.UUID, mapped_column(primary_key=True)]

SessionLocalType = Callable[[], AsyncSession]


class Base(MappedAsDataclass, DeclarativeBase):
    """
    Base class of the client, user, authorization code and token models.

    `datetime` columns use `UTCDateTime`, see https://docs.sqlalchemy.org/en/20/orm/declarative_tables.html#customizing-the-type-map
    """

    type_annotation_map = {
        datetime.datetime: UTCDateTime(),
        uuid.UUID: types.Uuid(),
    }
