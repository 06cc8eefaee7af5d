"""File defining the functions called by the client registry, making queries to the table using the models"""

from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from portcullis.core.clients import models_clients


async def get_client_by_id(
    db: AsyncSession,
    client_id: str,
) -> models_clients.OAuthClient | None:
    result = await db.execute(
        select(models_clients.OAuthClient).where(
            models_clients.OAuthClient.client_id == client_id,
        ),
    )
    return result.scalars().first()


async def get_clients(
    db: AsyncSession,
) -> Sequence[models_clients.OAuthClient]:
    result = await db.execute(
        select(models_clients.OAuthClient).order_by(
            models_clients.OAuthClient.created_on,
        ),
    )
    return result.scalars().all()


async def create_client(
    db: AsyncSession,
    client: models_clients.OAuthClient,
) -> models_clients.OAuthClient:
    db.add(client)
    await db.flush()
    return client


async def update_client(
    db: AsyncSession,
    client_id: str,
    values: dict[str, Any],
    updated_on: datetime,
) -> bool:
    """Update the given columns of a client. Return False if the client does not exist"""

    result = await db.execute(
        update(models_clients.OAuthClient)
        .where(models_clients.OAuthClient.client_id == client_id)
        .values(**values, updated_on=updated_on),
    )
    await db.flush()
    return result.rowcount == 1


async def delete_client(
    db: AsyncSession,
    client_id: str,
) -> bool:
    result = await db.execute(
        delete(models_clients.OAuthClient).where(
            models_clients.OAuthClient.client_id == client_id,
        ),
    )
    await db.flush()
    return result.rowcount == 1
