from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from shared_expenses.config import RemainderPolicy, settings
from shared_expenses.db.models import Group, SplitShare, SplitType, Transaction, utc_now
from shared_expenses.domain import (
    ZERO,
    ExternalParticipant,
    Identity,
    RegisteredIdentity,
    is_settled_amount,
    registered_id,
    to_money,
)
from shared_expenses.errors import InvalidStateError, NotFoundError, PreconditionError, ValidationError
from shared_expenses.events import SplitCreated, SplitRemoved, SplitUpdated, record_event
from shared_expenses.services import repository
from shared_expenses.services.friends import are_friends
from shared_expenses.services.transactions import get_transaction
from shared_expenses.services.users import ensure_users_exist

logger = logging.getLogger(__name__)

TOLERANCE = Decimal("0.01")
HUNDRED = Decimal("100")

Number = Union[Decimal, int, float, str]


@dataclass(frozen=True)
class SplitParticipant:
    identity: Identity
    share: Optional[Decimal] = None
    percentage: Optional[Decimal] = None


@dataclass(frozen=True)
class SplitConfig:
    split_type: Union[SplitType, str]
    participants: Sequence[SplitParticipant]
    paid_by: Optional[int] = None
    group_id: Optional[int] = None


@dataclass(frozen=True)
class SplitValidation:
    errors: tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.errors


def _as_decimal(value: Optional[Number]) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        return None


def _coerce_split_type(value: Union[SplitType, str, None]) -> Optional[SplitType]:
    if isinstance(value, SplitType):
        return value
    try:
        return SplitType(value)
    except ValueError:
        return None


def validate_split(
    amount: Optional[Number],
    split_type: Union[SplitType, str, None],
    participants: Optional[Iterable[SplitParticipant]],
) -> SplitValidation:
    """Check a proposed split and report every violation, not just the first."""
    errors: list[str] = []

    total = _as_decimal(amount)
    amount_ok = total is not None and total > 0
    if not amount_ok:
        errors.append("Transaction amount must be positive")

    stype = _coerce_split_type(split_type)
    if stype is None:
        errors.append("Split type must be equal, percentage, or custom")

    parts = list(participants or [])
    if not parts:
        errors.append("At least one participant is required")
        return SplitValidation(tuple(errors))

    user_ids = [p.identity.id for p in parts if isinstance(p.identity, RegisteredIdentity)]
    if len(user_ids) != len(set(user_ids)):
        errors.append("Duplicate participants are not allowed")

    shares: list[Decimal] = []
    for idx, p in enumerate(parts, start=1):
        identity = p.identity
        named_external = isinstance(identity, ExternalParticipant) and bool((identity.name or "").strip())
        if not isinstance(identity, RegisteredIdentity) and not named_external:
            errors.append(f"Participant {idx}: must be a registered user or a named external participant")

        share = _as_decimal(p.share) if p.share is not None else ZERO
        if share is None:
            errors.append(f"Participant {idx}: share must be a number")
            share = ZERO
        shares.append(share)
        if share < 0:
            errors.append(f"Participant {idx}: share cannot be negative")
        if amount_ok and share > total:
            errors.append(f"Participant {idx}: share ({share:.2f}) cannot exceed transaction amount ({total:.2f})")

        if stype == SplitType.PERCENTAGE:
            pct = _as_decimal(p.percentage) if p.percentage is not None else ZERO
            if pct is None:
                errors.append(f"Participant {idx}: percentage must be a number")
            elif pct < 0:
                errors.append(f"Participant {idx}: percentage cannot be negative")
            elif pct > HUNDRED:
                errors.append(f"Participant {idx}: percentage cannot exceed 100%")

    if stype == SplitType.PERCENTAGE:
        total_pct = sum((_as_decimal(p.percentage) or ZERO for p in parts), ZERO)
        if abs(total_pct - HUNDRED) > TOLERANCE:
            errors.append(f"Percentages must sum to 100%, got {total_pct:.2f}%")

    total_shares = sum(shares, ZERO)
    if amount_ok and abs(total_shares - total) > TOLERANCE:
        errors.append(f"Split amounts ({total_shares:.2f}) must sum to transaction amount ({total:.2f})")

    if not any(s > 0 for s in shares):
        errors.append("At least one participant must have a non-zero share")

    return SplitValidation(tuple(errors))


def calculate_equal_split(amount: Number, participant_count: int, *, remainder_index: int = 0) -> list[Decimal]:
    """
    Split in whole cents:
      base = floor(amount * 100 / n) cents for everyone,
      leftover cents go out one at a time starting at remainder_index,
    so the shares sum to amount exactly and differ by at most one cent.
    """
    if participant_count <= 0:
        raise ValidationError(["Participant count must be positive"])
    total = to_money(amount)
    if total < 0:
        raise ValidationError(["Transaction amount cannot be negative"])

    total_cents = int(total.scaleb(2))
    n = participant_count
    base = total_cents // n
    remainder = total_cents - base * n

    cents = [base] * n
    for k in range(remainder):
        cents[(remainder_index + k) % n] += 1
    return [Decimal(c).scaleb(-2) for c in cents]


def calculate_percentage_split(
    amount: Number, percentages: Sequence[Number], *, remainder_index: int = 0
) -> list[Decimal]:
    pcts = [_as_decimal(p) or ZERO for p in percentages]
    total_pct = sum(pcts, ZERO)
    if not pcts or abs(total_pct - HUNDRED) > TOLERANCE:
        raise ValidationError([f"Percentages must sum to 100, got {total_pct}"])

    total = to_money(amount)
    shares = [to_money(total * pct / HUNDRED) for pct in pcts]
    residual = total - sum(shares, ZERO)
    if residual:
        shares[remainder_index % len(shares)] += residual
    return shares


def remainder_index_for(
    participants: Sequence[SplitParticipant],
    paid_by: Optional[int],
    policy: RemainderPolicy,
) -> int:
    if policy == RemainderPolicy.PAYER and paid_by is not None:
        for idx, p in enumerate(participants):
            if registered_id(p.identity) == paid_by:
                return idx
    return 0


def allocate_shares(
    amount: Number,
    config: SplitConfig,
    *,
    policy: Optional[RemainderPolicy] = None,
) -> list[SplitParticipant]:
    """Fill in shares for equal/percentage splits that arrive without them."""
    parts = list(config.participants)
    stype = _coerce_split_type(config.split_type)
    total = _as_decimal(amount)
    if not parts or stype in (None, SplitType.CUSTOM) or total is None or total <= 0:
        return parts
    if all(p.share is not None for p in parts):
        return parts

    idx = remainder_index_for(parts, config.paid_by, policy or settings.split_remainder_policy)
    if stype == SplitType.EQUAL:
        shares = calculate_equal_split(total, len(parts), remainder_index=idx)
    else:
        pcts = [_as_decimal(p.percentage) or ZERO for p in parts]
        # Leave bad percentages for validate_split to report in full.
        if abs(sum(pcts, ZERO) - HUNDRED) > TOLERANCE:
            return parts
        shares = calculate_percentage_split(total, pcts, remainder_index=idx)
    return [replace(p, share=s) for p, s in zip(parts, shares)]


def _registered_ids(participants: Iterable[SplitParticipant]) -> list[int]:
    out: list[int] = []
    for p in participants:
        uid = registered_id(p.identity)
        if uid is not None and uid not in out:
            out.append(uid)
    return out


def _build_shares(participants: Sequence[SplitParticipant], paid_by: int) -> list[SplitShare]:
    now = utc_now()
    out: list[SplitShare] = []
    for pos, p in enumerate(participants):
        uid = registered_id(p.identity)
        is_payer = uid is not None and uid == paid_by
        out.append(
            SplitShare(
                position=pos,
                user_id=uid,
                external_name=None if uid is not None else p.identity.name.strip(),
                amount=to_money(p.share if p.share is not None else ZERO),
                percentage=_as_decimal(p.percentage),
                # Only the payer is settled up front.
                settled=is_payer,
                settled_at=now if is_payer else None,
            )
        )
    return out


async def _check_parties(session: AsyncSession, paid_by: int, group_id: Optional[int], user_ids: list[int]) -> None:
    await ensure_users_exist(session, [paid_by, *user_ids])

    if group_id is not None:
        group = await session.get(Group, group_id)
        if group is None or not group.is_active:
            raise NotFoundError("Group not found", {"group_id": group_id})
        members = set(await repository.fetch_active_member_ids(session, group_id))
        outsiders = sorted({paid_by, *user_ids} - members)
        if outsiders:
            raise PreconditionError(
                "Payer and registered participants must be active group members",
                {"group_id": group_id, "user_ids": outsiders},
            )
        return

    for uid in user_ids:
        if uid != paid_by and not await are_friends(session, paid_by, uid):
            logger.warning("Split participant %s is not a friend of payer %s", uid, paid_by)


def _validate_or_raise(amount: Decimal, split_type, participants, transaction_id: int) -> None:
    validation = validate_split(amount, split_type, participants)
    if not validation.is_valid:
        logger.info("Split rejected for transaction %s: %s", transaction_id, "; ".join(validation.errors))
        raise ValidationError(validation.errors, {"transaction_id": transaction_id})


async def create_split(
    session: AsyncSession,
    transaction_id: int,
    config: SplitConfig,
    *,
    remainder_policy: Optional[RemainderPolicy] = None,
) -> Transaction:
    tx = await get_transaction(session, transaction_id)
    if tx.is_shared:
        raise InvalidStateError("Transaction is already split", {"transaction_id": transaction_id})
    if config.paid_by is None:
        raise ValidationError(["Payer is required for split transactions"], {"transaction_id": transaction_id})

    participants = allocate_shares(tx.amount, config, policy=remainder_policy)
    _validate_or_raise(tx.amount, config.split_type, participants, transaction_id)

    user_ids = _registered_ids(participants)
    await _check_parties(session, config.paid_by, config.group_id, user_ids)

    tx.is_shared = True
    tx.paid_by_id = config.paid_by
    tx.split_type = _coerce_split_type(config.split_type)
    tx.group_id = config.group_id
    tx.shares = _build_shares(participants, config.paid_by)
    await session.flush()

    record_event(
        session,
        SplitCreated(
            transaction_id=tx.id,
            payer_id=config.paid_by,
            participant_ids=tuple(user_ids),
            group_id=config.group_id,
            notify_user_ids=tuple(uid for uid in user_ids if uid != config.paid_by),
        ),
    )
    logger.info("Split created: tx=%s type=%s payer=%s participants=%d", tx.id, tx.split_type.value, config.paid_by, len(participants))
    return tx


async def update_split(
    session: AsyncSession,
    transaction_id: int,
    config: SplitConfig,
    *,
    remainder_policy: Optional[RemainderPolicy] = None,
) -> Transaction:
    tx = await get_transaction(session, transaction_id)
    if not tx.is_shared:
        raise InvalidStateError("Transaction is not a split transaction", {"transaction_id": transaction_id})
    paid_by = int(tx.paid_by_id)
    if config.paid_by is not None and config.paid_by != paid_by:
        raise InvalidStateError(
            "Payer cannot change on update; remove the split and create it again",
            {"transaction_id": transaction_id},
        )

    config = replace(config, paid_by=paid_by, group_id=tx.group_id)
    participants = allocate_shares(tx.amount, config, policy=remainder_policy)
    _validate_or_raise(tx.amount, config.split_type, participants, transaction_id)

    old_ids = [int(s.user_id) for s in tx.shares if s.user_id is not None]
    new_ids = _registered_ids(participants)
    await _check_parties(session, paid_by, tx.group_id, new_ids)

    tx.split_type = _coerce_split_type(config.split_type)
    tx.shares = _build_shares(participants, paid_by)
    await session.flush()

    affected = list(dict.fromkeys([*old_ids, *new_ids]))
    record_event(
        session,
        SplitUpdated(transaction_id=tx.id, payer_id=paid_by, participant_ids=tuple(affected), group_id=tx.group_id),
    )
    return tx


async def remove_split(session: AsyncSession, transaction_id: int) -> Transaction:
    tx = await get_transaction(session, transaction_id)
    if not tx.is_shared:
        raise InvalidStateError("Transaction is not a split transaction", {"transaction_id": transaction_id})

    event = SplitRemoved(
        transaction_id=tx.id,
        payer_id=int(tx.paid_by_id),
        participant_ids=tuple(int(s.user_id) for s in tx.shares if s.user_id is not None),
        group_id=tx.group_id,
    )
    tx.shares.clear()
    tx.is_shared = False
    tx.paid_by_id = None
    tx.split_type = None
    tx.group_id = None
    await session.flush()

    record_event(session, event)
    return tx


async def mark_participant_settled(session: AsyncSession, transaction_id: int, user_id: int) -> Transaction:
    tx = await get_transaction(session, transaction_id)
    if not tx.is_shared:
        raise InvalidStateError("Transaction is not a split transaction", {"transaction_id": transaction_id})
    share = next((s for s in tx.shares if s.user_id == user_id), None)
    if share is None:
        raise NotFoundError("User is not a participant in this transaction", {"transaction_id": transaction_id, "user_id": user_id})
    if not share.settled:
        share.settled = True
        share.settled_at = utc_now()
        await session.flush()
    return tx


@dataclass(frozen=True)
class BalanceBreakdownLine:
    transaction_id: int
    amount: Decimal
    paid_by: int
    user_a_share: Optional[Decimal]
    user_b_share: Optional[Decimal]
    balance: Decimal
    settled: bool


@dataclass(frozen=True)
class DetailedBalance:
    total_balance: Decimal  # positive: user_b owes user_a
    unsettled_amount: Decimal
    transaction_count: int
    lines: tuple[BalanceBreakdownLine, ...]

    @property
    def user_a_owes(self) -> Decimal:
        return -self.total_balance if self.total_balance < 0 else ZERO

    @property
    def user_b_owes(self) -> Decimal:
        return self.total_balance if self.total_balance > 0 else ZERO

    @property
    def is_settled(self) -> bool:
        return is_settled_amount(self.total_balance)


async def get_detailed_balance(session: AsyncSession, user_a: int, user_b: int) -> DetailedBalance:
    """Per-transaction breakdown between two users; settlements are not included."""
    transactions = await repository.fetch_shared_transactions_between(session, user_a, user_b)

    total = ZERO
    unsettled = ZERO
    lines: list[BalanceBreakdownLine] = []
    for tx in transactions:
        a_share = tx.share_of(user_a)
        b_share = tx.share_of(user_b)
        if tx.paid_by == user_a and b_share is not None:
            balance, debtor_share = b_share.share, b_share
        elif tx.paid_by == user_b and a_share is not None:
            balance, debtor_share = -a_share.share, a_share
        else:
            continue
        total += balance
        if not debtor_share.settled:
            unsettled += abs(balance)
        lines.append(
            BalanceBreakdownLine(
                transaction_id=int(tx.id),
                amount=tx.amount,
                paid_by=tx.paid_by,
                user_a_share=a_share.share if a_share else None,
                user_b_share=b_share.share if b_share else None,
                balance=balance,
                settled=debtor_share.settled,
            )
        )

    return DetailedBalance(
        total_balance=to_money(total),
        unsettled_amount=to_money(unsettled),
        transaction_count=len(lines),
        lines=tuple(lines),
    )


@dataclass(frozen=True)
class UserSplitSummary:
    total_owed: Decimal  # unsettled shares others hold on expenses the user paid
    total_owing: Decimal  # the user's unsettled shares on expenses others paid
    unsettled_transactions: int
    transaction_count: int
    # Signed per counterpart: positive means they owe the user.
    friend_balances: dict[int, Decimal] = field(hash=False)

    @property
    def net_balance(self) -> Decimal:
        return self.total_owed - self.total_owing


async def get_user_split_summary(session: AsyncSession, user_id: int) -> UserSplitSummary:
    """Outstanding split shares for one user, by the per-share settled flags.

    Settlements are not applied here; see ledger.calculate_balance for the net position.
    """
    transactions = await repository.fetch_shared_transactions_for_user(session, user_id)

    owed = ZERO
    owing = ZERO
    unsettled_count = 0
    friends: dict[int, Decimal] = {}
    for tx in transactions:
        open_shares = False
        if tx.paid_by == user_id:
            for p in tx.participants:
                uid = registered_id(p.identity)
                if uid is None or uid == user_id or p.settled or p.share <= 0:
                    continue
                owed += p.share
                friends[uid] = friends.get(uid, ZERO) + p.share
                open_shares = True
        else:
            own = tx.share_of(user_id)
            if own is not None and not own.settled and own.share > 0:
                owing += own.share
                friends[tx.paid_by] = friends.get(tx.paid_by, ZERO) - own.share
                open_shares = True
        if open_shares:
            unsettled_count += 1

    return UserSplitSummary(
        total_owed=to_money(owed),
        total_owing=to_money(owing),
        unsettled_transactions=unsettled_count,
        transaction_count=len(transactions),
        friend_balances={uid: to_money(bal) for uid, bal in friends.items()},
    )
