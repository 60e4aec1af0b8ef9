from __future__ import annotations

from collections.abc import Iterable
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared_expenses.db.models import GroupMember, Settlement, SettlementStatus, SplitShare, Transaction
from shared_expenses.domain import (
    ExternalParticipant,
    ParticipantShare,
    RegisteredIdentity,
    SettlementRecord,
    SharedTransaction,
)

# Every stored settlement moves balance; a pending one is applied optimistically.
BALANCE_STATUSES = frozenset(SettlementStatus)


def to_shared_transaction(tx: Transaction) -> SharedTransaction:
    participants = []
    for s in tx.shares:
        identity = RegisteredIdentity(int(s.user_id)) if s.user_id is not None else ExternalParticipant(s.external_name or "")
        participants.append(
            ParticipantShare(
                identity=identity,
                share=s.amount,
                percentage=s.percentage,
                settled=bool(s.settled),
                settled_at=s.settled_at,
            )
        )
    return SharedTransaction(
        id=tx.id,
        amount=tx.amount,
        paid_by=int(tx.paid_by_id),
        split_type=tx.split_type,
        participants=tuple(participants),
        group_id=tx.group_id,
    )


def to_settlement_record(s: Settlement) -> SettlementRecord:
    return SettlementRecord(
        id=s.id,
        payer_id=int(s.payer_id),
        recipient_id=int(s.recipient_id),
        amount=s.amount,
        status=s.status,
        group_id=s.group_id,
    )


def _live_shared():
    return (Transaction.is_shared.is_(True), Transaction.is_deleted.is_(False))


async def fetch_shared_transactions_between(
    session: AsyncSession, user_a: int, user_b: int
) -> list[SharedTransaction]:
    # One of the pair paid, the other holds a share: 1:1 and group expenses alike.
    pair = (int(user_a), int(user_b))
    tx_ids = (
        select(SplitShare.transaction_id)
        .join(Transaction, Transaction.id == SplitShare.transaction_id)
        .where(
            SplitShare.user_id.in_(pair),
            Transaction.paid_by_id.in_(pair),
            SplitShare.user_id != Transaction.paid_by_id,
        )
    )
    res = await session.scalars(
        select(Transaction)
        .where(Transaction.id.in_(tx_ids), *_live_shared())
        .order_by(Transaction.created_at.asc(), Transaction.id.asc())
    )
    return [to_shared_transaction(tx) for tx in res]


async def fetch_shared_transactions_for_user(session: AsyncSession, user_id: int) -> list[SharedTransaction]:
    tx_ids = select(SplitShare.transaction_id).where(SplitShare.user_id == user_id)
    res = await session.scalars(
        select(Transaction)
        .where(or_(Transaction.paid_by_id == user_id, Transaction.id.in_(tx_ids)), *_live_shared())
        .order_by(Transaction.created_at.asc(), Transaction.id.asc())
    )
    return [to_shared_transaction(tx) for tx in res]


async def fetch_group_transactions(session: AsyncSession, group_id: int) -> list[SharedTransaction]:
    res = await session.scalars(
        select(Transaction)
        .where(Transaction.group_id == group_id, *_live_shared())
        .order_by(Transaction.created_at.asc(), Transaction.id.asc())
    )
    return [to_shared_transaction(tx) for tx in res]


def _status_filter(statuses: Optional[Iterable[SettlementStatus]]):
    wanted = list(statuses) if statuses is not None else list(BALANCE_STATUSES)
    return Settlement.status.in_(wanted)


async def fetch_settlements_between(
    session: AsyncSession,
    user_a: int,
    user_b: int,
    *,
    statuses: Optional[Iterable[SettlementStatus]] = None,
) -> list[SettlementRecord]:
    res = await session.scalars(
        select(Settlement)
        .where(
            or_(
                (Settlement.payer_id == user_a) & (Settlement.recipient_id == user_b),
                (Settlement.payer_id == user_b) & (Settlement.recipient_id == user_a),
            ),
            _status_filter(statuses),
        )
        .order_by(Settlement.date.asc(), Settlement.id.asc())
    )
    return [to_settlement_record(s) for s in res]


async def fetch_group_settlements(
    session: AsyncSession,
    group_id: int,
    *,
    statuses: Optional[Iterable[SettlementStatus]] = None,
) -> list[SettlementRecord]:
    res = await session.scalars(
        select(Settlement)
        .where(Settlement.group_id == group_id, _status_filter(statuses))
        .order_by(Settlement.date.asc(), Settlement.id.asc())
    )
    return [to_settlement_record(s) for s in res]


async def fetch_active_member_ids(session: AsyncSession, group_id: int) -> list[int]:
    res = await session.scalars(
        select(GroupMember.user_id)
        .where(GroupMember.group_id == group_id, GroupMember.is_active.is_(True))
        .order_by(GroupMember.id.asc())
    )
    return [int(x) for x in res]
