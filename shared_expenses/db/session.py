from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from shared_expenses.config import settings
from shared_expenses.events import EventBus, pop_recorded_events


def create_engine(database_url: Optional[str] = None) -> AsyncEngine:
    return create_async_engine(
        database_url or settings.database_url,
        echo=settings.sql_echo,
        pool_pre_ping=True,
    )


def make_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@asynccontextmanager
async def unit_of_work(
    sessionmaker: async_sessionmaker[AsyncSession],
    bus: Optional[EventBus] = None,
) -> AsyncIterator[AsyncSession]:
    """Commit on success, roll back on error, then publish recorded events.

    Events go out only after the session is closed, so subscribers always see
    committed data and their failures cannot roll back the mutation.
    """
    async with sessionmaker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            pop_recorded_events(session)
            raise
        events = pop_recorded_events(session)

    if bus is not None and events:
        await bus.publish_all(events)
