from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared_expenses.db.models import (
    Group,
    PaymentMethod,
    Settlement,
    SettlementStatus,
    SettlementTransaction,
    Transaction,
    utc_now,
)
from shared_expenses.domain import ZERO, to_money
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
    record_event,
)
from shared_expenses.services import repository
from shared_expenses.services.friends import are_friends
from shared_expenses.services.users import ensure_users_exist

logger = logging.getLogger(__name__)

MAX_NOTES_LENGTH = 500
MAX_REASON_LENGTH = 500


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored is UTC.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _coerce_method(value: Union[PaymentMethod, str, None]) -> Optional[PaymentMethod]:
    if isinstance(value, PaymentMethod):
        return value
    try:
        return PaymentMethod(value)
    except ValueError:
        return None


def _validate_create(
    payer_id: int,
    recipient_id: int,
    amount,
    payment_method,
    notes: Optional[str],
    date: Optional[datetime],
) -> tuple[list[str], Optional[Decimal], Optional[PaymentMethod]]:
    errors: list[str] = []

    if payer_id == recipient_id:
        errors.append("Payer and recipient cannot be the same user")

    money: Optional[Decimal] = None
    try:
        money = to_money(amount)
    except (InvalidOperation, TypeError, ValueError):
        pass
    if money is None or money <= 0:
        errors.append("Settlement amount must be positive")

    method = None
    if payment_method is None:
        errors.append("Payment method is required")
    else:
        method = _coerce_method(payment_method)
        if method is None:
            allowed = ", ".join(m.value for m in PaymentMethod)
            errors.append(f"Payment method must be one of: {allowed}")

    if notes is not None and len(notes) > MAX_NOTES_LENGTH:
        errors.append(f"Notes cannot exceed {MAX_NOTES_LENGTH} characters")

    if date is not None and _as_utc(date) > utc_now():
        errors.append("Settlement date cannot be in the future")

    return errors, money, method


async def create_settlement(
    session: AsyncSession,
    *,
    payer_id: int,
    recipient_id: int,
    amount: Union[Decimal, int, float, str],
    payment_method: Union[PaymentMethod, str, None],
    notes: Optional[str] = None,
    date: Optional[datetime] = None,
    group_id: Optional[int] = None,
    related_transaction_ids: Iterable[int] = (),
) -> Settlement:
    errors, money, method = _validate_create(payer_id, recipient_id, amount, payment_method, notes, date)
    if errors:
        raise ValidationError(errors, {"payer_id": payer_id, "recipient_id": recipient_id})

    await ensure_users_exist(session, [payer_id, recipient_id])

    if group_id is not None:
        group = await session.get(Group, group_id)
        if group is None or not group.is_active:
            raise NotFoundError("Group not found", {"group_id": group_id})
        members = set(await repository.fetch_active_member_ids(session, group_id))
        if payer_id not in members or recipient_id not in members:
            raise PreconditionError(
                "Both parties must be active members of the group",
                {"group_id": group_id, "user_ids": (payer_id, recipient_id)},
            )
    elif not await are_friends(session, payer_id, recipient_id):
        raise PreconditionError(
            "Users must be friends to create a settlement",
            {"user_ids": (payer_id, recipient_id)},
        )

    tx_ids = list(dict.fromkeys(int(x) for x in related_transaction_ids))
    if tx_ids:
        found = set(
            (
                await session.scalars(
                    select(Transaction.id).where(Transaction.id.in_(tx_ids), Transaction.is_deleted.is_(False))
                )
            ).all()
        )
        missing = [x for x in tx_ids if x not in found]
        if missing:
            raise NotFoundError("Related transaction not found", {"transaction_ids": missing})

    now = utc_now()
    settlement = Settlement(
        payer_id=payer_id,
        recipient_id=recipient_id,
        amount=money,
        payment_method=method,
        notes=notes.strip() if notes else None,
        status=SettlementStatus.PENDING,
        date=_as_utc(date) if date is not None else now,
        group_id=group_id,
        created_at=now,
        updated_at=now,
        related_links=[SettlementTransaction(transaction_id=x) for x in tx_ids],
    )
    session.add(settlement)
    await session.flush()

    record_event(
        session,
        SettlementCreated(
            settlement_id=settlement.id,
            payer_id=payer_id,
            recipient_id=recipient_id,
            amount=money,
            group_id=group_id,
        ),
    )
    logger.info("Settlement created: id=%s %s -> %s amount=%s", settlement.id, payer_id, recipient_id, money)
    return settlement


async def get_settlement(session: AsyncSession, settlement_id: int) -> Settlement:
    settlement = await session.get(Settlement, settlement_id)
    if settlement is None:
        raise NotFoundError("Settlement not found", {"settlement_id": settlement_id})
    return settlement


def _require_pending(settlement: Settlement, action: str) -> None:
    if settlement.status != SettlementStatus.PENDING:
        raise InvalidStateError(
            f"Only pending settlements can be {action}",
            {"settlement_id": settlement.id, "status": settlement.status.value},
        )


async def confirm_settlement(session: AsyncSession, settlement_id: int, *, user_id: int) -> Settlement:
    settlement = await get_settlement(session, settlement_id)
    if settlement.recipient_id != user_id:
        raise PermissionDeniedError("Only the recipient can confirm this settlement", {"settlement_id": settlement_id})
    _require_pending(settlement, "confirmed")

    now = utc_now()
    settlement.status = SettlementStatus.CONFIRMED
    settlement.confirmed_at = now
    settlement.confirmed_by_id = user_id
    settlement.updated_at = now
    await session.flush()

    record_event(
        session,
        SettlementConfirmed(
            settlement_id=settlement.id,
            payer_id=int(settlement.payer_id),
            recipient_id=int(settlement.recipient_id),
            amount=settlement.amount,
            group_id=settlement.group_id,
        ),
    )
    return settlement


async def dispute_settlement(session: AsyncSession, settlement_id: int, *, user_id: int, reason: str) -> Settlement:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError(["Dispute reason is required"], {"settlement_id": settlement_id})
    if len(reason) > MAX_REASON_LENGTH:
        raise ValidationError([f"Dispute reason cannot exceed {MAX_REASON_LENGTH} characters"])

    settlement = await get_settlement(session, settlement_id)
    if user_id not in (settlement.payer_id, settlement.recipient_id):
        raise PermissionDeniedError("Only involved parties can dispute this settlement", {"settlement_id": settlement_id})
    _require_pending(settlement, "disputed")

    now = utc_now()
    settlement.status = SettlementStatus.DISPUTED
    settlement.dispute_reason = reason
    settlement.disputed_at = now
    settlement.disputed_by_id = user_id
    settlement.updated_at = now
    await session.flush()

    record_event(
        session,
        SettlementDisputed(
            settlement_id=settlement.id,
            payer_id=int(settlement.payer_id),
            recipient_id=int(settlement.recipient_id),
            amount=settlement.amount,
            group_id=settlement.group_id,
            disputed_by_id=user_id,
            reason=reason,
        ),
    )
    logger.info("Settlement %s disputed by %s", settlement.id, user_id)
    return settlement


async def delete_settlement(session: AsyncSession, settlement_id: int, *, user_id: int) -> None:
    settlement = await get_settlement(session, settlement_id)
    if user_id not in (settlement.payer_id, settlement.recipient_id):
        raise PermissionDeniedError("Only involved parties can delete this settlement", {"settlement_id": settlement_id})

    event = SettlementDeleted(
        settlement_id=settlement.id,
        payer_id=int(settlement.payer_id),
        recipient_id=int(settlement.recipient_id),
        amount=settlement.amount,
        group_id=settlement.group_id,
        deleted_by_id=user_id,
    )
    await session.delete(settlement)
    await session.flush()

    record_event(session, event)
    logger.info("Settlement %s deleted by %s", settlement_id, user_id)


def _between(user_a: int, user_b: int):
    return or_(
        (Settlement.payer_id == user_a) & (Settlement.recipient_id == user_b),
        (Settlement.payer_id == user_b) & (Settlement.recipient_id == user_a),
    )


async def list_settlements_between(
    session: AsyncSession,
    user_a: int,
    user_b: int,
    *,
    status: Optional[SettlementStatus] = None,
) -> list[Settlement]:
    stmt = select(Settlement).where(_between(user_a, user_b))
    if status is not None:
        stmt = stmt.where(Settlement.status == status)
    res = await session.scalars(stmt.order_by(Settlement.date.desc(), Settlement.id.desc()))
    return list(res)


async def list_pending_for_user(session: AsyncSession, user_id: int) -> list[Settlement]:
    """Settlements waiting for this user to confirm."""
    res = await session.scalars(
        select(Settlement)
        .where(Settlement.recipient_id == user_id, Settlement.status == SettlementStatus.PENDING)
        .order_by(Settlement.date.desc(), Settlement.id.desc())
    )
    return list(res)


async def list_settlements_for_user(
    session: AsyncSession,
    user_id: int,
    *,
    status: Optional[SettlementStatus] = None,
    limit: Optional[int] = None,
) -> list[Settlement]:
    stmt = select(Settlement).where(or_(Settlement.payer_id == user_id, Settlement.recipient_id == user_id))
    if status is not None:
        stmt = stmt.where(Settlement.status == status)
    stmt = stmt.order_by(Settlement.date.desc(), Settlement.id.desc())
    if limit is not None:
        stmt = stmt.limit(limit)
    res = await session.scalars(stmt)
    return list(res)


@dataclass(frozen=True)
class SettlementStats:
    total: int
    pending: int
    confirmed: int
    disputed: int
    total_paid: Decimal
    total_received: Decimal
    average_days_to_confirm: int


async def get_settlement_stats(session: AsyncSession, user_id: int) -> SettlementStats:
    settlements = await list_settlements_for_user(session, user_id)

    counts = {status: 0 for status in SettlementStatus}
    paid = ZERO
    received = ZERO
    confirm_seconds = 0.0
    confirmed_with_time = 0
    for s in settlements:
        counts[s.status] += 1
        if s.payer_id == user_id:
            paid += s.amount
        else:
            received += s.amount
        if s.status == SettlementStatus.CONFIRMED and s.confirmed_at is not None:
            confirm_seconds += (_as_utc(s.confirmed_at) - _as_utc(s.created_at)).total_seconds()
            confirmed_with_time += 1

    average_days = round(confirm_seconds / confirmed_with_time / 86400) if confirmed_with_time else 0
    return SettlementStats(
        total=len(settlements),
        pending=counts[SettlementStatus.PENDING],
        confirmed=counts[SettlementStatus.CONFIRMED],
        disputed=counts[SettlementStatus.DISPUTED],
        total_paid=to_money(paid),
        total_received=to_money(received),
        average_days_to_confirm=average_days,
    )


@dataclass(frozen=True)
class SettlementImpact:
    payer_id: int
    recipient_id: int
    amount: Decimal
    # Net balance deltas: paying raises the payer's balance, receiving lowers the recipient's.
    payer_delta: Decimal
    recipient_delta: Decimal


def settlement_impact(settlement: Settlement) -> SettlementImpact:
    amount = to_money(settlement.amount)
    return SettlementImpact(
        payer_id=int(settlement.payer_id),
        recipient_id=int(settlement.recipient_id),
        amount=amount,
        payer_delta=amount,
        recipient_delta=-amount,
    )
