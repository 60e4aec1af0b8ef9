from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared_expenses.db.models import Friendship, FriendshipStatus, Settlement, SettlementStatus, User, utc_now
from shared_expenses.errors import InvalidStateError, NotFoundError, ValidationError
from shared_expenses.services import balance_cache, ledger, repository
from shared_expenses.services.ledger import ViewerDirection
from shared_expenses.services.users import ensure_users_exist, get_users

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FriendSummary:
    user: User
    friendship_id: int
    balance: Decimal
    direction: ViewerDirection
    last_updated: Optional[datetime]


@dataclass(frozen=True)
class FriendStats:
    total_shared_transactions: int
    total_settlements: int
    confirmed_settlements: int


@dataclass(frozen=True)
class FriendDetails:
    user: User
    friendship: Friendship
    balance: Decimal  # positive: the friend owes the viewer
    direction: ViewerDirection
    stats: FriendStats
    recent_settlements: tuple[Settlement, ...]


def _pair_clause(user_a: int, user_b: int):
    return or_(
        (Friendship.requester_id == user_a) & (Friendship.recipient_id == user_b),
        (Friendship.requester_id == user_b) & (Friendship.recipient_id == user_a),
    )


async def get_friendship(session: AsyncSession, user_a: int, user_b: int) -> Optional[Friendship]:
    res = await session.scalars(select(Friendship).where(_pair_clause(user_a, user_b)).order_by(Friendship.id.asc()))
    return res.first()


async def are_friends(session: AsyncSession, user_a: int, user_b: int) -> bool:
    friendship = await get_friendship(session, user_a, user_b)
    return friendship is not None and friendship.status == FriendshipStatus.ACCEPTED


async def ensure_friendship(session: AsyncSession, user_a: int, user_b: int) -> Friendship:
    """Return the accepted friendship between two users, creating or accepting it as needed."""
    if user_a == user_b:
        raise ValidationError(["Users cannot befriend themselves"])
    await ensure_users_exist(session, [user_a, user_b])

    friendship = await get_friendship(session, user_a, user_b)
    if friendship is None:
        friendship = Friendship(
            requester_id=user_a,
            recipient_id=user_b,
            status=FriendshipStatus.ACCEPTED,
            responded_at=utc_now(),
        )
        session.add(friendship)
    elif friendship.status == FriendshipStatus.BLOCKED:
        raise InvalidStateError("Friendship is blocked", {"user_ids": (user_a, user_b)})
    elif friendship.status != FriendshipStatus.ACCEPTED:
        friendship.status = FriendshipStatus.ACCEPTED
        friendship.responded_at = utc_now()
    await session.flush()
    return friendship


async def list_accepted_friendships(session: AsyncSession, user_id: Optional[int] = None) -> list[Friendship]:
    stmt = select(Friendship).where(Friendship.status == FriendshipStatus.ACCEPTED)
    if user_id is not None:
        stmt = stmt.where(or_(Friendship.requester_id == user_id, Friendship.recipient_id == user_id))
    res = await session.scalars(stmt.order_by(Friendship.id.asc()))
    return list(res)


def _other(friendship: Friendship, user_id: int) -> int:
    return int(friendship.recipient_id if friendship.requester_id == user_id else friendship.requester_id)


def _coerce_direction(value: Union[ViewerDirection, str, None]) -> Optional[ViewerDirection]:
    if value is None or isinstance(value, ViewerDirection):
        return value
    try:
        return ViewerDirection(value)
    except ValueError:
        allowed = ", ".join(d.value for d in ViewerDirection)
        raise ValidationError([f"Balance status must be one of: {allowed}"]) from None


async def get_friend_list(
    session: AsyncSession,
    user_id: int,
    *,
    balance_status: Union[ViewerDirection, str, None] = None,
) -> list[FriendSummary]:
    wanted = _coerce_direction(balance_status)
    friendships = await list_accepted_friendships(session, user_id)
    friend_ids = [_other(f, user_id) for f in friendships]
    users = await get_users(session, friend_ids)

    out: list[FriendSummary] = []
    for friendship, friend_id in zip(friendships, friend_ids):
        friend = users.get(friend_id)
        if friend is None:
            continue
        row = await balance_cache.get_cached_balance(session, user_id, friend_id)
        amount, direction = balance_cache.viewer_balance(row, user_id)
        if wanted is not None and direction != wanted:
            continue
        out.append(
            FriendSummary(
                user=friend,
                friendship_id=friendship.id,
                balance=amount,
                direction=direction,
                last_updated=row.last_updated,
            )
        )
    out.sort(key=lambda s: (s.user.display_name.lower(), s.user.id))
    return out


async def get_friend_details(session: AsyncSession, user_id: int, friend_id: int) -> FriendDetails:
    friend = await session.get(User, friend_id)
    if friend is None:
        raise NotFoundError("User not found", {"user_id": friend_id})
    friendship = await get_friendship(session, user_id, friend_id)
    if friendship is None or friendship.status != FriendshipStatus.ACCEPTED:
        raise InvalidStateError("Users are not friends", {"user_ids": (user_id, friend_id)})

    balance = await ledger.calculate_balance(session, user_id, friend_id)
    transactions = await repository.fetch_shared_transactions_between(session, user_id, friend_id)
    settlements = await repository.fetch_settlements_between(session, user_id, friend_id)

    recent = await session.scalars(
        select(Settlement)
        .where(
            or_(
                (Settlement.payer_id == user_id) & (Settlement.recipient_id == friend_id),
                (Settlement.payer_id == friend_id) & (Settlement.recipient_id == user_id),
            )
        )
        .order_by(Settlement.date.desc(), Settlement.id.desc())
        .limit(5)
    )

    return FriendDetails(
        user=friend,
        friendship=friendship,
        balance=balance,
        direction=ledger.direction_from_signed(balance),
        stats=FriendStats(
            total_shared_transactions=len(transactions),
            total_settlements=len(settlements),
            confirmed_settlements=sum(1 for s in settlements if s.status == SettlementStatus.CONFIRMED),
        ),
        recent_settlements=tuple(recent),
    )
