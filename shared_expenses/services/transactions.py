from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared_expenses.db.models import Transaction
from shared_expenses.domain import to_money
from shared_expenses.errors import NotFoundError, PermissionDeniedError, ValidationError
from shared_expenses.events import SplitRemoved, record_event
from shared_expenses.services.users import ensure_users_exist


async def create_transaction(
    session: AsyncSession,
    *,
    owner_id: int,
    amount: Union[Decimal, int, float, str],
    description: Optional[str] = None,
) -> Transaction:
    try:
        money = to_money(amount)
    except (InvalidOperation, TypeError, ValueError):
        money = None
    if money is None or money <= 0:
        raise ValidationError(["Transaction amount must be positive"])
    await ensure_users_exist(session, [owner_id])

    tx = Transaction(
        owner_id=int(owner_id),
        amount=money,
        description=(description.strip() if description and description.strip() else None),
        shares=[],
    )
    session.add(tx)
    await session.flush()
    return tx


async def get_transaction(session: AsyncSession, transaction_id: int) -> Transaction:
    tx = await session.get(Transaction, transaction_id)
    if tx is None or tx.is_deleted:
        raise NotFoundError("Transaction not found", {"transaction_id": transaction_id})
    return tx


async def delete_transaction(session: AsyncSession, transaction_id: int, *, user_id: int) -> Transaction:
    """Soft delete. A deleted split stops counting towards any balance."""
    tx = await get_transaction(session, transaction_id)
    if tx.owner_id != user_id:
        raise PermissionDeniedError("Only the owner can delete this transaction", {"transaction_id": transaction_id})

    tx.is_deleted = True
    await session.flush()

    if tx.is_shared:
        record_event(
            session,
            SplitRemoved(
                transaction_id=tx.id,
                payer_id=int(tx.paid_by_id),
                participant_ids=tuple(int(s.user_id) for s in tx.shares if s.user_id is not None),
                group_id=tx.group_id,
            ),
        )
    return tx


async def get_last_transactions(session: AsyncSession, *, owner_id: int, limit: int = 5) -> list[Transaction]:
    res = await session.scalars(
        select(Transaction)
        .where(Transaction.owner_id == owner_id, Transaction.is_deleted.is_(False))
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .limit(limit)
    )
    return list(res)
