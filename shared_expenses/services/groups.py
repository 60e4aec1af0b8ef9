from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from shared_expenses.db.models import Group, GroupMember, utc_now
from shared_expenses.domain import ZERO, is_settled_amount
from shared_expenses.errors import InvalidStateError, NotFoundError, PermissionDeniedError, ValidationError
from shared_expenses.services import ledger
from shared_expenses.services.balance_cache import update_group_balances
from shared_expenses.services.ledger import ViewerDirection
from shared_expenses.services.users import ensure_users_exist

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MemberBalance:
    user_id: int
    balance: Decimal
    direction: ViewerDirection


async def get_group(session: AsyncSession, group_id: int) -> Group:
    group = await session.get(Group, group_id)
    if group is None or not group.is_active:
        raise NotFoundError("Group not found", {"group_id": group_id})
    return group


def _active_member(group: Group, user_id: int):
    return next((m for m in group.members if m.user_id == user_id and m.is_active), None)


async def create_group(
    session: AsyncSession,
    *,
    name: str,
    created_by_id: int,
    member_ids: Iterable[int] = (),
) -> Group:
    name = (name or "").strip()
    if len(name) < 2:
        raise ValidationError(["Group name must be at least 2 characters"])

    # Creator is always the first member.
    ids = list(dict.fromkeys([int(created_by_id), *(int(x) for x in member_ids)]))
    await ensure_users_exist(session, ids)

    group = Group(
        name=name,
        created_by_id=created_by_id,
        members=[GroupMember(user_id=uid) for uid in ids],
    )
    session.add(group)
    await session.flush()
    logger.info("Group created: id=%s name=%r members=%d", group.id, name, len(ids))
    return group


async def add_member(session: AsyncSession, group_id: int, user_id: int, *, added_by: int) -> GroupMember:
    group = await get_group(session, group_id)
    if added_by != group.created_by_id:
        raise PermissionDeniedError("Only the group creator can add members", {"group_id": group_id})
    await ensure_users_exist(session, [user_id])

    existing = next((m for m in group.members if m.user_id == user_id), None)
    if existing is not None and existing.is_active:
        raise InvalidStateError("User is already a member of this group", {"group_id": group_id, "user_id": user_id})
    if existing is not None:
        existing.is_active = True
        existing.joined_at = utc_now()
        member = existing
    else:
        member = GroupMember(user_id=user_id)
        group.members.append(member)
    await session.flush()
    return member


async def remove_member(session: AsyncSession, group_id: int, user_id: int, *, removed_by: int) -> GroupMember:
    group = await get_group(session, group_id)
    if removed_by not in (group.created_by_id, user_id):
        raise PermissionDeniedError(
            "Only the group creator or the member themselves can remove a member",
            {"group_id": group_id},
        )
    member = _active_member(group, user_id)
    if member is None:
        raise NotFoundError("User is not an active member of this group", {"group_id": group_id, "user_id": user_id})

    await update_group_balances(session, group_id)
    if not is_settled_amount(member.net_balance):
        raise InvalidStateError(
            "Cannot remove member with unsettled balance",
            {"group_id": group_id, "user_id": user_id, "balance": member.net_balance},
        )

    member.is_active = False
    await session.flush()
    return member


async def get_group_balances(session: AsyncSession, group_id: int) -> list[MemberBalance]:
    group = await get_group(session, group_id)
    balances = await ledger.calculate_group_balances(session, group_id)
    out: list[MemberBalance] = []
    for m in group.members:
        if not m.is_active:
            continue
        bal = balances.get(int(m.user_id), ZERO)
        out.append(MemberBalance(user_id=int(m.user_id), balance=bal, direction=ledger.direction_from_signed(bal)))
    return out


async def mark_group_settled(session: AsyncSession, group_id: int, *, user_id: int) -> Group:
    group = await get_group(session, group_id)
    if user_id != group.created_by_id:
        raise PermissionDeniedError("Only the group creator can mark the group settled", {"group_id": group_id})

    await update_group_balances(session, group_id)
    outstanding = [int(m.user_id) for m in group.members if m.is_active and not is_settled_amount(m.net_balance)]
    if outstanding:
        raise InvalidStateError(
            "Cannot mark group as settled with outstanding balances",
            {"group_id": group_id, "user_ids": outstanding},
        )

    if not group.is_settled:
        group.is_settled = True
        group.settled_at = utc_now()
        await session.flush()
    return group
