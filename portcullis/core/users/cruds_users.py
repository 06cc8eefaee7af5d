"""File defining the functions called by the identity provider, making queries to the table using the models"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from portcullis.core.users import models_users


async def get_user_by_email(
    db: AsyncSession,
    email: str,
) -> models_users.CoreUser | None:
    """Return user with email from database"""

    result = await db.execute(
        select(models_users.CoreUser).where(models_users.CoreUser.email == email),
    )
    return result.scalars().first()


async def create_user(
    db: AsyncSession,
    user: models_users.CoreUser,
) -> models_users.CoreUser:
    db.add(user)
    await db.flush()
    return user
