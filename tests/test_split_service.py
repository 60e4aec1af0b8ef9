import logging
from decimal import Decimal as D

import pytest

from shared_expenses.db.models import SplitType
from shared_expenses.domain import ExternalParticipant, RegisteredIdentity
from shared_expenses.errors import InvalidStateError, NotFoundError, PreconditionError, ValidationError
from shared_expenses.events import SplitCreated, SplitRemoved, SplitUpdated, pop_recorded_events
from shared_expenses.services.groups import create_group
from shared_expenses.services.ledger import calculate_balance
from shared_expenses.services.splits import (
    SplitConfig,
    SplitParticipant,
    create_split,
    get_detailed_balance,
    get_user_split_summary,
    mark_participant_settled,
    remove_split,
    update_split,
)
from shared_expenses.services.transactions import create_transaction

from conftest import add_expense, custom_config, equal_config


async def test_create_equal_split(session, people):
    a, b = people.alice, people.bob
    tx = await create_transaction(session, owner_id=a.id, amount="1000", description="Dinner")

    split = await create_split(session, tx.id, equal_config(a.id, a.id, b.id))

    assert split.is_shared
    assert split.paid_by_id == a.id
    assert split.split_type == SplitType.EQUAL
    assert [(s.user_id, s.amount) for s in split.shares] == [(a.id, D("500.00")), (b.id, D("500.00"))]
    # Only the payer starts out settled.
    assert [s.settled for s in split.shares] == [True, False]

    events = pop_recorded_events(session)
    assert events == [
        SplitCreated(
            transaction_id=tx.id,
            payer_id=a.id,
            participant_ids=(a.id, b.id),
            group_id=None,
            notify_user_ids=(b.id,),
        )
    ]
    assert await calculate_balance(session, a.id, b.id) == D("500.00")


async def test_percentage_split_is_stored_with_percentages(session, people):
    a, b = people.alice, people.bob
    tx = await create_transaction(session, owner_id=a.id, amount=1500)
    config = SplitConfig(
        split_type="percentage",
        paid_by=a.id,
        participants=[
            SplitParticipant(RegisteredIdentity(a.id), percentage=D("60")),
            SplitParticipant(RegisteredIdentity(b.id), percentage=D("40")),
        ],
    )
    split = await create_split(session, tx.id, config)
    assert [s.amount for s in split.shares] == [D("900.00"), D("600.00")]
    assert [s.percentage for s in split.shares] == [D("60"), D("40")]


async def test_external_participants_are_stored_but_not_netted(session, people):
    a, b = people.alice, people.bob
    tx = await create_transaction(session, owner_id=a.id, amount=90)
    config = SplitConfig(
        split_type="equal",
        paid_by=a.id,
        participants=[
            SplitParticipant(RegisteredIdentity(a.id)),
            SplitParticipant(RegisteredIdentity(b.id)),
            SplitParticipant(ExternalParticipant("Sam")),
        ],
    )
    split = await create_split(session, tx.id, config)

    assert split.shares[2].user_id is None
    assert split.shares[2].external_name == "Sam"
    event = pop_recorded_events(session)[0]
    assert event.participant_ids == (a.id, b.id)
    assert event.notify_user_ids == (b.id,)
    assert await calculate_balance(session, a.id, b.id) == D("30.00")


async def test_invalid_split_writes_nothing(session, people):
    a, b = people.alice, people.bob
    tx = await create_transaction(session, owner_id=a.id, amount=200)

    with pytest.raises(ValidationError) as exc:
        await create_split(session, tx.id, custom_config(a.id, {a.id: 250, b.id: 0}))

    assert "Participant 1: share (250.00) cannot exceed transaction amount (200.00)" in exc.value.errors
    assert not tx.is_shared
    assert tx.shares == []
    assert pop_recorded_events(session) == []


async def test_split_preconditions(session, people):
    a, b = people.alice, people.bob

    with pytest.raises(NotFoundError):
        await create_split(session, 999, equal_config(a.id, a.id, b.id))

    tx = await add_expense(session, equal_config(a.id, a.id, b.id), 10)
    with pytest.raises(InvalidStateError):
        await create_split(session, tx.id, equal_config(a.id, a.id, b.id))

    other = await create_transaction(session, owner_id=a.id, amount=10)
    with pytest.raises(NotFoundError):
        await create_split(session, other.id, equal_config(a.id, a.id, 4242))
    with pytest.raises(ValidationError):
        await create_split(session, other.id, SplitConfig(split_type="equal", participants=equal_config(a.id, a.id).participants))


async def test_group_split_requires_active_members(session, people):
    a, b, c = people.alice, people.bob, people.carol
    group = await create_group(session, name="Flat", created_by_id=a.id, member_ids=[b.id])
    tx = await create_transaction(session, owner_id=a.id, amount=30)

    with pytest.raises(PreconditionError) as exc:
        await create_split(session, tx.id, equal_config(a.id, a.id, b.id, c.id, group_id=group.id))
    assert exc.value.details["user_ids"] == [c.id]

    split = await create_split(session, tx.id, equal_config(a.id, a.id, b.id, group_id=group.id))
    assert split.group_id == group.id


async def test_split_with_non_friend_only_warns(session, people, caplog):
    a, d = people.alice, people.dave
    tx = await create_transaction(session, owner_id=a.id, amount=20)

    with caplog.at_level(logging.WARNING, logger="shared_expenses.services.splits"):
        await create_split(session, tx.id, equal_config(a.id, a.id, d.id))

    assert "is not a friend of payer" in caplog.text


async def test_update_split_reports_old_and_new_participants(session, people):
    a, b, c = people.alice, people.bob, people.carol
    tx = await add_expense(session, equal_config(a.id, a.id, b.id), 60)
    pop_recorded_events(session)

    await update_split(session, tx.id, equal_config(a.id, a.id, c.id))

    assert [s.user_id for s in tx.shares] == [a.id, c.id]
    assert pop_recorded_events(session) == [
        SplitUpdated(transaction_id=tx.id, payer_id=a.id, participant_ids=(a.id, b.id, c.id), group_id=None)
    ]
    assert await calculate_balance(session, a.id, b.id) == D("0.00")
    assert await calculate_balance(session, a.id, c.id) == D("30.00")


async def test_update_split_guards(session, people):
    a, b = people.alice, people.bob
    plain = await create_transaction(session, owner_id=a.id, amount=10)
    with pytest.raises(InvalidStateError):
        await update_split(session, plain.id, equal_config(a.id, a.id, b.id))

    tx = await add_expense(session, equal_config(a.id, a.id, b.id), 10)
    with pytest.raises(InvalidStateError):
        await update_split(session, tx.id, equal_config(b.id, a.id, b.id))
    with pytest.raises(ValidationError):
        await update_split(session, tx.id, custom_config(a.id, {a.id: 1, b.id: 1}))
    assert [s.amount for s in tx.shares] == [D("5.00"), D("5.00")]


async def test_remove_split(session, people):
    a, b = people.alice, people.bob
    tx = await add_expense(session, equal_config(a.id, a.id, b.id), 10)
    pop_recorded_events(session)

    await remove_split(session, tx.id)

    assert not tx.is_shared
    assert tx.paid_by_id is None
    assert tx.shares == []
    assert pop_recorded_events(session) == [
        SplitRemoved(transaction_id=tx.id, payer_id=a.id, participant_ids=(a.id, b.id), group_id=None)
    ]
    assert await calculate_balance(session, a.id, b.id) == D("0.00")

    with pytest.raises(InvalidStateError):
        await remove_split(session, tx.id)


async def test_mark_participant_settled(session, people):
    a, b, c = people.alice, people.bob, people.carol
    tx = await add_expense(session, equal_config(a.id, a.id, b.id), 10)

    await mark_participant_settled(session, tx.id, b.id)
    assert tx.shares[1].settled
    assert tx.shares[1].settled_at is not None

    with pytest.raises(NotFoundError):
        await mark_participant_settled(session, tx.id, c.id)


async def test_detailed_balance(session, people):
    a, b = people.alice, people.bob
    first = await add_expense(session, equal_config(a.id, a.id, b.id), 100)
    second = await add_expense(session, custom_config(b.id, {a.id: 30, b.id: 10}), 40)
    await mark_participant_settled(session, second.id, a.id)

    detail = await get_detailed_balance(session, a.id, b.id)

    assert detail.transaction_count == 2
    assert detail.total_balance == D("20.00")
    assert detail.user_b_owes == D("20.00")
    assert detail.user_a_owes == D("0.00")
    assert detail.unsettled_amount == D("50.00")
    assert not detail.is_settled
    assert [line.transaction_id for line in detail.lines] == [first.id, second.id]
    assert [line.balance for line in detail.lines] == [D("50.00"), D("-30.00")]


async def test_user_split_summary(session, people):
    a, b, c = people.alice, people.bob, people.carol
    first = await add_expense(session, equal_config(a.id, a.id, b.id, c.id), 90)
    await mark_participant_settled(session, first.id, c.id)
    await add_expense(session, custom_config(b.id, {a.id: 20, b.id: 20}), 40)
    paid_back = await add_expense(session, custom_config(c.id, {a.id: 15}), 15)
    await mark_participant_settled(session, paid_back.id, a.id)
    # Between bob and carol only.
    await add_expense(session, custom_config(c.id, {b.id: 10}), 10)

    summary = await get_user_split_summary(session, a.id)

    assert summary.transaction_count == 3
    assert summary.unsettled_transactions == 2
    assert summary.total_owed == D("30.00")
    assert summary.total_owing == D("20.00")
    assert summary.net_balance == D("10.00")
    assert summary.friend_balances == {b.id: D("10.00")}
