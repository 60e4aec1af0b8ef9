from __future__ import annotations

from collections.abc import Iterable
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared_expenses.db.models import User
from shared_expenses.errors import NotFoundError, ValidationError


async def create_user(
    session: AsyncSession,
    *,
    display_name: str,
    username: Optional[str] = None,
    tg_user_id: Optional[int] = None,
    notifications_enabled: bool = True,
) -> User:
    display_name = (display_name or "").strip()
    if not display_name:
        raise ValidationError(["Display name is required"])
    user = User(
        display_name=display_name,
        username=username.lower() if username else None,
        tg_user_id=tg_user_id,
        notifications_enabled=notifications_enabled,
    )
    session.add(user)
    await session.flush()
    return user


async def get_user(session: AsyncSession, user_id: int) -> Optional[User]:
    return await session.get(User, user_id)


async def get_users(session: AsyncSession, user_ids: Iterable[int]) -> dict[int, User]:
    ids = sorted(set(int(x) for x in user_ids))
    if not ids:
        return {}
    res = await session.scalars(select(User).where(User.id.in_(ids)))
    return {u.id: u for u in res}


async def ensure_users_exist(session: AsyncSession, user_ids: Iterable[int]) -> None:
    wanted = set(int(x) for x in user_ids)
    if not wanted:
        return
    existing = set((await session.scalars(select(User.id).where(User.id.in_(wanted)))).all())
    missing = sorted(wanted - existing)
    if missing:
        raise NotFoundError("User not found", {"user_ids": missing})
