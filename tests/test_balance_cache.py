import logging
from decimal import Decimal as D

import pytest
from sqlalchemy.exc import OperationalError

from shared_expenses.db.models import PairDirection
from shared_expenses.db.session import unit_of_work
from shared_expenses.errors import DependencyFailure, ValidationError
from shared_expenses.events import SettlementCreated, SplitCreated
from shared_expenses.services import balance_cache
from shared_expenses.services.balance_cache import (
    BalanceCacheRefresher,
    get_cached_balance,
    update_cached_balance,
    update_group_balances,
    viewer_balance,
)
from shared_expenses.services.groups import create_group
from shared_expenses.services.ledger import ViewerDirection
from shared_expenses.services.settlements import create_settlement
from shared_expenses.services.users import create_user

from conftest import add_expense, equal_config


async def test_cached_balance_is_canonical_and_idempotent(session, people):
    a, b = people.alice, people.bob
    await add_expense(session, equal_config(b.id, a.id, b.id), 80)

    first = await update_cached_balance(session, b.id, a.id)
    assert (first.first_user_id, first.second_user_id) == (a.id, b.id)
    assert (first.amount, first.direction) == (D("40.00"), PairDirection.FIRST_OWES)

    again = await update_cached_balance(session, a.id, b.id)
    assert again is first
    assert (again.amount, again.direction) == (D("40.00"), PairDirection.FIRST_OWES)

    assert viewer_balance(again, a.id) == (D("40.00"), ViewerDirection.YOU_OWE)
    assert viewer_balance(again, b.id) == (D("40.00"), ViewerDirection.OWES_YOU)


async def test_cached_balance_read_through(session, people):
    a, c = people.alice, people.carol
    row = await get_cached_balance(session, c.id, a.id)
    assert row.direction == PairDirection.SETTLED
    assert viewer_balance(row, c.id) == (D("0.00"), ViewerDirection.SETTLED)


async def test_cached_balance_needs_two_users(session, people):
    with pytest.raises(ValidationError):
        await update_cached_balance(session, people.alice.id, people.alice.id)


async def test_group_balances_and_settled_flag(session, people):
    a, b, c = people.alice, people.bob, people.carol
    group = await create_group(session, name="House", created_by_id=a.id, member_ids=[b.id, c.id])
    await add_expense(session, equal_config(a.id, a.id, b.id, c.id, group_id=group.id), 90)

    await update_group_balances(session, group.id)

    assert {m.user_id: m.net_balance for m in group.members} == {a.id: D("60.00"), b.id: D("-30.00"), c.id: D("-30.00")}
    assert group.total_expenses == D("90.00")
    assert not group.is_settled
    assert group.settled_at is None

    for payer in (b, c):
        await create_settlement(
            session, payer_id=payer.id, recipient_id=a.id, amount=30, payment_method="cash", group_id=group.id
        )
    await update_group_balances(session, group.id)

    assert all(m.net_balance == 0 for m in group.members)
    assert group.is_settled
    assert group.settled_at is not None


async def test_refresher_recomputes_pairs_in_its_own_session(sessionmaker):
    async with unit_of_work(sessionmaker) as session:
        a = await create_user(session, display_name="Alice")
        b = await create_user(session, display_name="Bob")
        await add_expense(session, equal_config(a.id, a.id, b.id), 50)

    refresher = BalanceCacheRefresher(sessionmaker)
    event = SplitCreated(transaction_id=1, payer_id=a.id, participant_ids=(a.id, b.id, b.id))
    await refresher(event)
    await refresher(event)

    async with sessionmaker() as session:
        row = await get_cached_balance(session, a.id, b.id)
        assert viewer_balance(row, a.id) == (D("25.00"), ViewerDirection.OWES_YOU)


async def test_refresher_swallows_dependency_failures(sessionmaker, monkeypatch, caplog):
    refresher = BalanceCacheRefresher(sessionmaker)

    async def broken(*args):
        raise OperationalError("SELECT 1", {}, Exception("database is gone"))

    monkeypatch.setattr(balance_cache, "update_cached_balance", broken)
    with pytest.raises(DependencyFailure):
        await refresher.refresh_pair(1, 2)

    event = SettlementCreated(settlement_id=1, payer_id=1, recipient_id=2, amount=D("5"))
    with caplog.at_level(logging.WARNING, logger="shared_expenses.services.balance_cache"):
        await refresher(event)
    assert "Pair balance left stale after SettlementCreated" in caplog.text
