from __future__ import annotations

import asyncio
import logging
from typing import Optional

from aiogram import Bot
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared_expenses.config import settings
from shared_expenses.db.models import Group
from shared_expenses.db.session import create_engine, make_sessionmaker
from shared_expenses.errors import DependencyFailure, NotFoundError
from shared_expenses.events import DomainEvent, EventBus
from shared_expenses.logging import configure_logging
from shared_expenses.notifications import TelegramNotifier
from shared_expenses.services.balance_cache import BalanceCacheRefresher
from shared_expenses.services.friends import list_accepted_friendships

logger = logging.getLogger(__name__)


def build_event_bus(sessionmaker: async_sessionmaker[AsyncSession], bot: Optional[Bot] = None) -> EventBus:
    bus = EventBus()
    bus.subscribe(DomainEvent, BalanceCacheRefresher(sessionmaker))
    if bot is not None:
        bus.subscribe(DomainEvent, TelegramNotifier(bot, sessionmaker))
    return bus


async def rebuild_caches(sessionmaker: async_sessionmaker[AsyncSession]) -> tuple[int, int]:
    """Recompute every cached pair and group balance. Returns (pairs, groups) refreshed."""
    refresher = BalanceCacheRefresher(sessionmaker)
    async with sessionmaker() as session:
        friendships = await list_accepted_friendships(session)
        group_ids = list(await session.scalars(select(Group.id).where(Group.is_active.is_(True)).order_by(Group.id)))

    pairs = 0
    for f in friendships:
        try:
            await refresher.refresh_pair(int(f.requester_id), int(f.recipient_id))
            pairs += 1
        except DependencyFailure as e:
            logger.warning("Skipping pair %s/%s: %s", f.requester_id, f.recipient_id, e)

    groups = 0
    for group_id in group_ids:
        try:
            await refresher.refresh_group(int(group_id))
            groups += 1
        except (DependencyFailure, NotFoundError) as e:
            logger.warning("Skipping group %s: %s", group_id, e)

    return pairs, groups


async def main() -> None:
    configure_logging(settings.log_level)

    engine = create_engine()
    try:
        pairs, groups = await rebuild_caches(make_sessionmaker(engine))
        logger.info("Rebuilt %d pair balances and %d group balances", pairs, groups)
    finally:
        await engine.dispose()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
