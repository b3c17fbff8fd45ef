"""Identity rows for users authenticated by the surrounding application."""

from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.user import User


async def ensure_user(db: AsyncSession, user_id: int, email: Optional[str] = None) -> User:
    """Return the users row, creating a placeholder on first sight.

    Committed on its own so ledger writes that roll back never drop it.
    """
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user:
        return user

    user = User(id=user_id, email=email or f"user-{user_id}@local.invalid")
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        result = await db.execute(select(User).where(User.id == user_id))
        user = result.scalar_one()
    return user
