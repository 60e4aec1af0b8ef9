from datetime import timedelta
from decimal import Decimal as D

import pytest

from shared_expenses.db.models import PaymentMethod, Settlement, SettlementStatus, utc_now
from shared_expenses.errors import (
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    PreconditionError,
    ValidationError,
)
from shared_expenses.events import (
    SettlementConfirmed,
    SettlementCreated,
    SettlementDeleted,
    SettlementDisputed,
    pop_recorded_events,
)
from shared_expenses.services.groups import create_group
from shared_expenses.services.ledger import calculate_balance
from shared_expenses.services.settlements import (
    confirm_settlement,
    create_settlement,
    delete_settlement,
    dispute_settlement,
    get_settlement,
    get_settlement_stats,
    list_pending_for_user,
    list_settlements_between,
    list_settlements_for_user,
    settlement_impact,
)

from conftest import add_expense, equal_config


async def pay(session, payer, recipient, amount, **kw):
    kw.setdefault("payment_method", "cash")
    return await create_settlement(session, payer_id=payer.id, recipient_id=recipient.id, amount=amount, **kw)


async def test_create_settlement(session, people):
    a, b = people.alice, people.bob
    tx = await add_expense(session, equal_config(a.id, a.id, b.id), 100)
    pop_recorded_events(session)

    s = await pay(session, b, a, "50", payment_method=PaymentMethod.UPI, notes=" thanks ", related_transaction_ids=[tx.id])

    assert s.status == SettlementStatus.PENDING
    assert s.amount == D("50.00")
    assert s.notes == "thanks"
    assert s.related_transaction_ids == [tx.id]
    assert pop_recorded_events(session) == [
        SettlementCreated(settlement_id=s.id, payer_id=b.id, recipient_id=a.id, amount=D("50.00"), group_id=None)
    ]


async def test_create_settlement_collects_validation_errors(session, people):
    a = people.alice
    with pytest.raises(ValidationError) as exc:
        await create_settlement(
            session,
            payer_id=a.id,
            recipient_id=a.id,
            amount=0,
            payment_method="cheque",
            notes="x" * 501,
            date=utc_now() + timedelta(days=1),
        )
    assert exc.value.errors == [
        "Payer and recipient cannot be the same user",
        "Settlement amount must be positive",
        "Payment method must be one of: cash, upi, card, bank_transfer, other",
        "Notes cannot exceed 500 characters",
        "Settlement date cannot be in the future",
    ]

    with pytest.raises(ValidationError) as exc:
        await pay(session, a, people.bob, 10, payment_method=None)
    assert exc.value.errors == ["Payment method is required"]


async def test_create_settlement_preconditions(session, people):
    a, b, d = people.alice, people.bob, people.dave

    with pytest.raises(PreconditionError):
        await pay(session, a, d, 10)
    with pytest.raises(NotFoundError):
        await create_settlement(session, payer_id=a.id, recipient_id=999, amount=10, payment_method="cash")
    with pytest.raises(NotFoundError):
        await pay(session, a, b, 10, related_transaction_ids=[12345])


async def test_group_settlement_needs_both_members(session, people):
    a, b, d = people.alice, people.bob, people.dave
    group = await create_group(session, name="Trip", created_by_id=a.id, member_ids=[d.id])

    with pytest.raises(PreconditionError):
        await pay(session, b, a, 10, group_id=group.id)

    s = await pay(session, d, a, 10, group_id=group.id)
    assert s.group_id == group.id


async def test_confirm_only_by_recipient_and_only_once(session, people):
    a, b = people.alice, people.bob
    s = await pay(session, b, a, 25)
    pop_recorded_events(session)

    with pytest.raises(PermissionDeniedError):
        await confirm_settlement(session, s.id, user_id=b.id)

    await confirm_settlement(session, s.id, user_id=a.id)
    assert s.status == SettlementStatus.CONFIRMED
    assert s.confirmed_by_id == a.id
    assert s.confirmed_at is not None
    assert pop_recorded_events(session) == [
        SettlementConfirmed(settlement_id=s.id, payer_id=b.id, recipient_id=a.id, amount=D("25.00"), group_id=None)
    ]

    with pytest.raises(InvalidStateError):
        await confirm_settlement(session, s.id, user_id=a.id)
    with pytest.raises(InvalidStateError):
        await dispute_settlement(session, s.id, user_id=a.id, reason="changed my mind")


async def test_dispute(session, people):
    a, b, c = people.alice, people.bob, people.carol
    s = await pay(session, b, a, 25)
    pop_recorded_events(session)

    with pytest.raises(ValidationError):
        await dispute_settlement(session, s.id, user_id=a.id, reason="   ")
    with pytest.raises(PermissionDeniedError):
        await dispute_settlement(session, s.id, user_id=c.id, reason="not mine")

    await dispute_settlement(session, s.id, user_id=a.id, reason=" never arrived ")

    assert s.status == SettlementStatus.DISPUTED
    assert s.dispute_reason == "never arrived"
    assert s.disputed_by_id == a.id
    event = pop_recorded_events(session)[0]
    assert isinstance(event, SettlementDisputed)
    assert event.affected_pairs() == []

    with pytest.raises(InvalidStateError):
        await confirm_settlement(session, s.id, user_id=a.id)


async def test_create_then_delete_restores_balance(session, people):
    a, b = people.alice, people.bob
    await add_expense(session, equal_config(a.id, a.id, b.id), 100)
    before = await calculate_balance(session, a.id, b.id)

    s = await pay(session, b, a, "30.25")
    assert await calculate_balance(session, a.id, b.id) == before - D("30.25")

    with pytest.raises(PermissionDeniedError):
        await delete_settlement(session, s.id, user_id=people.carol.id)

    pop_recorded_events(session)
    await delete_settlement(session, s.id, user_id=a.id)

    assert await calculate_balance(session, a.id, b.id) == before
    assert pop_recorded_events(session) == [
        SettlementDeleted(
            settlement_id=s.id,
            payer_id=b.id,
            recipient_id=a.id,
            amount=D("30.25"),
            group_id=None,
            deleted_by_id=a.id,
        )
    ]
    with pytest.raises(NotFoundError):
        await get_settlement(session, s.id)


async def test_every_stored_status_moves_balance(session, people):
    a, b = people.alice, people.bob
    pending = await pay(session, b, a, 10)
    confirmed = await pay(session, b, a, 20)
    disputed = await pay(session, b, a, 40)
    await confirm_settlement(session, confirmed.id, user_id=a.id)
    await dispute_settlement(session, disputed.id, user_id=a.id, reason="wrong amount")

    assert pending.status == SettlementStatus.PENDING
    # Payments from bob to alice: alice now owes bob 70.
    assert await calculate_balance(session, a.id, b.id) == D("-70.00")


async def test_settlement_queries_and_stats(session, people):
    a, b, c = people.alice, people.bob, people.carol
    s1 = await pay(session, b, a, 10)
    s2 = await pay(session, a, b, 5)
    s3 = await pay(session, c, a, 7)
    await confirm_settlement(session, s2.id, user_id=b.id)
    await dispute_settlement(session, s3.id, user_id=c.id, reason="duplicate")

    assert {s.id for s in await list_settlements_between(session, a.id, b.id)} == {s1.id, s2.id}
    assert [s.id for s in await list_settlements_between(session, b.id, a.id, status=SettlementStatus.CONFIRMED)] == [s2.id]
    assert [s.id for s in await list_pending_for_user(session, a.id)] == [s1.id]
    assert {s.id for s in await list_settlements_for_user(session, a.id)} == {s1.id, s2.id, s3.id}
    assert len(await list_settlements_for_user(session, a.id, limit=2)) == 2

    stats = await get_settlement_stats(session, a.id)
    assert (stats.total, stats.pending, stats.confirmed, stats.disputed) == (3, 1, 1, 1)
    assert stats.total_paid == D("5.00")
    assert stats.total_received == D("17.00")
    assert stats.average_days_to_confirm == 0


def test_settlement_impact_matches_ledger_sign():
    impact = settlement_impact(Settlement(payer_id=1, recipient_id=2, amount=D("12.5")))
    assert impact.amount == D("12.50")
    assert impact.payer_delta == D("12.50")
    assert impact.recipient_delta == D("-12.50")
