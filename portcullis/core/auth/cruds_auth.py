"""File defining the functions called by the ledgers, making queries to the table using the models

Functions changing the state of a code or a token are conditional updates: they return whether a row was actually changed.
Callers must rely on this result and never on a previous select, as another request may have changed the row in between.
"""

import uuid
from datetime import datetime

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from portcullis.core.auth import models_auth


async def get_authorization_code_by_code(
    db: AsyncSession,
    code: str,
) -> models_auth.AuthorizationCode | None:
    """Return authorization code from database"""
    result = await db.execute(
        select(models_auth.AuthorizationCode).where(
            models_auth.AuthorizationCode.code == code,
        ),
    )
    return result.scalars().first()


async def create_authorization_code(
    db: AsyncSession,
    authorization_code: models_auth.AuthorizationCode,
) -> models_auth.AuthorizationCode:
    db.add(authorization_code)
    await db.flush()
    return authorization_code


async def mark_authorization_code_as_used(
    db: AsyncSession,
    code: str,
    now: datetime,
) -> bool:
    """
    Flip the `used` flag of an unused and unexpired code.

    Return True only for the single request that performed the change.
    """
    result = await db.execute(
        update(models_auth.AuthorizationCode)
        .where(
            models_auth.AuthorizationCode.code == code,
            models_auth.AuthorizationCode.used.is_(False),
            models_auth.AuthorizationCode.expire_on >= now,
        )
        .values(used=True),
    )
    await db.flush()
    return result.rowcount == 1


async def delete_authorization_codes_by_client_id(
    db: AsyncSession,
    client_id: str,
) -> int:
    result = await db.execute(
        delete(models_auth.AuthorizationCode).where(
            models_auth.AuthorizationCode.client_id == client_id,
        ),
    )
    await db.flush()
    return result.rowcount


async def delete_expired_authorization_codes(
    db: AsyncSession,
    now: datetime,
) -> int:
    result = await db.execute(
        delete(models_auth.AuthorizationCode).where(
            models_auth.AuthorizationCode.expire_on < now,
        ),
    )
    await db.flush()
    return result.rowcount


async def get_token_by_access_token(
    db: AsyncSession,
    access_token: str,
) -> models_auth.OAuthToken | None:
    result = await db.execute(
        select(models_auth.OAuthToken).where(
            models_auth.OAuthToken.access_token == access_token,
        ),
    )
    return result.scalars().first()


async def get_token_by_refresh_token(
    db: AsyncSession,
    refresh_token: str,
) -> models_auth.OAuthToken | None:
    result = await db.execute(
        select(models_auth.OAuthToken).where(
            models_auth.OAuthToken.refresh_token == refresh_token,
        ),
    )
    return result.scalars().first()


async def create_token(
    db: AsyncSession,
    token: models_auth.OAuthToken,
) -> models_auth.OAuthToken:
    db.add(token)
    await db.flush()
    return token


async def revoke_token_by_id(
    db: AsyncSession,
    token_id: uuid.UUID,
    now: datetime,
) -> bool:
    """
    Revoke a token that was not revoked yet. Return True only for the single request that performed the change.
    """
    result = await db.execute(
        update(models_auth.OAuthToken)
        .where(
            models_auth.OAuthToken.id == token_id,
            models_auth.OAuthToken.revoked_on.is_(None),
        )
        .values(revoked_on=now),
    )
    await db.flush()
    return result.rowcount == 1


async def revoke_token_by_token(
    db: AsyncSession,
    token: str,
    now: datetime,
) -> bool:
    """
    Revoke the token whose access token or refresh token is `token`.
    Return False if there is no such token or if it was already revoked.
    """
    result = await db.execute(
        update(models_auth.OAuthToken)
        .where(
            or_(
                models_auth.OAuthToken.access_token == token,
                models_auth.OAuthToken.refresh_token == token,
            ),
            models_auth.OAuthToken.revoked_on.is_(None),
        )
        .values(revoked_on=now),
    )
    await db.flush()
    return result.rowcount > 0


async def revoke_tokens_by_client_id(
    db: AsyncSession,
    client_id: str,
    now: datetime,
) -> int:
    result = await db.execute(
        update(models_auth.OAuthToken)
        .where(
            models_auth.OAuthToken.client_id == client_id,
            models_auth.OAuthToken.revoked_on.is_(None),
        )
        .values(revoked_on=now),
    )
    await db.flush()
    return result.rowcount


async def delete_expired_tokens(
    db: AsyncSession,
    now: datetime,
) -> int:
    """
    Delete tokens that can not be used anymore: both the access token and the refresh token, if any, are expired.
    """
    result = await db.execute(
        delete(models_auth.OAuthToken).where(
            models_auth.OAuthToken.expire_on < now,
            or_(
                models_auth.OAuthToken.refresh_expire_on.is_(None),
                models_auth.OAuthToken.refresh_expire_on < now,
            ),
        ),
    )
    await db.flush()
    return result.rowcount
