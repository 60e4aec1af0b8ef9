from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared_expenses.db.models import Group, PairBalance, Transaction, utc_now
from shared_expenses.domain import ZERO, is_settled_amount, to_money
from shared_expenses.errors import DependencyFailure, NotFoundError, ValidationError
from shared_expenses.events import DomainEvent
from shared_expenses.services import ledger
from shared_expenses.services.ledger import ViewerDirection

logger = logging.getLogger(__name__)


def viewer_balance(row: PairBalance, viewer_id: int) -> tuple[Decimal, ViewerDirection]:
    direction = ledger.viewer_direction(viewer_id, row.first_user_id, row.amount, row.direction)
    amount = ZERO if direction == ViewerDirection.SETTLED else row.amount
    return amount, direction


async def update_cached_balance(session: AsyncSession, user_a: int, user_b: int) -> PairBalance:
    """Recompute the pair balance from the log and overwrite the cached row."""
    if user_a == user_b:
        raise ValidationError(["A balance needs two distinct users"])
    balance = await ledger.calculate_balance(session, user_a, user_b)
    amount, direction = ledger.encode_direction(user_a, user_b, balance)
    first, second = ledger.canonical_pair(user_a, user_b)

    row = await session.get(PairBalance, (first, second))
    if row is None:
        row = PairBalance(first_user_id=first, second_user_id=second)
        session.add(row)
    row.amount = amount
    row.direction = direction
    row.last_updated = utc_now()
    await session.flush()
    return row


async def get_cached_balance(session: AsyncSession, user_a: int, user_b: int) -> PairBalance:
    first, second = ledger.canonical_pair(user_a, user_b)
    row = await session.get(PairBalance, (first, second))
    if row is None:
        row = await update_cached_balance(session, user_a, user_b)
    return row


async def update_group_balances(session: AsyncSession, group_id: int) -> Group:
    group = await session.get(Group, group_id)
    if group is None:
        raise NotFoundError("Group not found", {"group_id": group_id})

    balances = await ledger.calculate_group_balances(session, group_id)
    now = utc_now()
    active = [m for m in group.members if m.is_active]
    for m in active:
        m.net_balance = balances.get(int(m.user_id), ZERO)
        m.balance_updated_at = now

    total = await session.scalar(
        select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.group_id == group_id,
            Transaction.is_shared.is_(True),
            Transaction.is_deleted.is_(False),
        )
    )
    group.total_expenses = to_money(total or 0)

    if any(not is_settled_amount(m.net_balance) for m in active):
        group.is_settled = False
        group.settled_at = None
    elif not group.is_settled:
        group.is_settled = True
        group.settled_at = now

    await session.flush()
    return group


class BalanceCacheRefresher:
    """Event subscriber that recomputes cached balances in its own session.

    A failed refresh leaves the cache stale; the next refresh of the same pair
    or group repairs it because every refresh recomputes from scratch.
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def __call__(self, event: DomainEvent) -> None:
        seen: set[tuple[int, int]] = set()
        for user_a, user_b in event.affected_pairs():
            key = ledger.canonical_pair(user_a, user_b)
            if key in seen:
                continue
            seen.add(key)
            try:
                await self.refresh_pair(user_a, user_b)
            except DependencyFailure as e:
                logger.warning("Pair balance left stale after %s: %s", type(event).__name__, e)

        group_id = event.affected_group_id
        if group_id is not None:
            try:
                await self.refresh_group(group_id)
            except (DependencyFailure, NotFoundError) as e:
                logger.warning("Group balances left stale after %s: %s", type(event).__name__, e)

    async def refresh_pair(self, user_a: int, user_b: int) -> None:
        try:
            async with self._sessionmaker() as session:
                await update_cached_balance(session, user_a, user_b)
                await session.commit()
        except SQLAlchemyError as e:
            raise DependencyFailure("Balance cache refresh failed", {"pair": (user_a, user_b)}) from e

    async def refresh_group(self, group_id: int) -> None:
        try:
            async with self._sessionmaker() as session:
                await update_group_balances(session, group_id)
                await session.commit()
        except SQLAlchemyError as e:
            raise DependencyFailure("Group balance refresh failed", {"group_id": group_id}) from e
