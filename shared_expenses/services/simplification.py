"""
Greedy debt simplification.

Net balances are positive for identities that are owed money and negative for
identities that owe it. Largest debtors are matched against largest creditors
until every balance is inside the deadband, which yields at most k - 1
transfers for k identities with a nonzero balance.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from shared_expenses.domain import DEADBAND, ZERO, is_settled_amount, to_money
from shared_expenses.errors import InvariantViolation
from shared_expenses.services import repository
from shared_expenses.services.groups import get_group
from shared_expenses.services.ledger import DebtEdge, net_balances, pairwise_debts, settlement_edges, transaction_edges

logger = logging.getLogger(__name__)

Number = Union[Decimal, int, float, str]


@dataclass(frozen=True)
class Transfer:
    from_id: int
    to_id: int
    amount: Decimal


@dataclass(frozen=True)
class SimplificationPlan:
    original_debts: tuple[Transfer, ...]
    simplified_settlements: tuple[Transfer, ...]
    balances: dict[int, Decimal] = field(hash=False)
    group_id: Optional[int] = None
    is_valid: bool = True

    @property
    def savings_count(self) -> int:
        return len(self.original_debts) - len(self.simplified_settlements)


@dataclass(frozen=True)
class SimplificationStats:
    original_transaction_count: int
    simplified_transaction_count: int
    transactions_saved: int
    savings_percentage: int
    original_total_amount: Decimal
    simplified_total_amount: Decimal
    amount_difference: Decimal


def _as_money_map(balances: Mapping[int, Number]) -> dict[int, Decimal]:
    return {uid: to_money(bal) for uid, bal in balances.items()}


def _percent(part: int, whole: int) -> int:
    if not whole:
        return 0
    return int((Decimal(part) * 100 / Decimal(whole)).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _invariant_failed(message: str, details: dict, strict: bool) -> None:
    if strict:
        raise InvariantViolation(message, details)
    logger.error("%s: %s", message, details)


def simplify_debts(balances: Mapping[int, Number], *, strict: bool = False) -> list[Transfer]:
    balances = _as_money_map(balances)
    total = sum(balances.values(), ZERO)
    if abs(total) > DEADBAND:
        _invariant_failed("Balances do not sum to zero", {"sum": total}, strict)

    creditors = [[uid, bal] for uid, bal in balances.items() if bal > DEADBAND]
    debtors = [[uid, -bal] for uid, bal in balances.items() if bal < -DEADBAND]
    creditors.sort(key=lambda c: (-c[1], c[0]))
    debtors.sort(key=lambda d: (-d[1], d[0]))

    transfers: list[Transfer] = []
    i = j = 0
    while i < len(creditors) and j < len(debtors):
        creditor, debtor = creditors[i], debtors[j]
        amount = min(creditor[1], debtor[1])
        rounded = to_money(amount)
        if rounded > DEADBAND:
            transfers.append(Transfer(from_id=debtor[0], to_id=creditor[0], amount=rounded))

        creditor[1] -= amount
        debtor[1] -= amount
        if creditor[1] < DEADBAND:
            i += 1
        if debtor[1] < DEADBAND:
            j += 1

    left_creditors = [(c[0], c[1]) for c in creditors[i:] if c[1] > DEADBAND]
    left_debtors = [(d[0], d[1]) for d in debtors[j:] if d[1] > DEADBAND]
    if left_creditors or left_debtors:
        _invariant_failed(
            "Debt simplification left unmatched balances",
            {"creditors": left_creditors, "debtors": left_debtors},
            strict,
        )
    return transfers


def validate_simplification(balances: Mapping[int, Number], transfers: Iterable[Transfer]) -> bool:
    scratch = _as_money_map(balances)
    for t in transfers:
        scratch[t.from_id] = scratch.get(t.from_id, ZERO) + to_money(t.amount)
        scratch[t.to_id] = scratch.get(t.to_id, ZERO) - to_money(t.amount)
    return all(is_settled_amount(v) for v in scratch.values())


def get_simplification_stats(plan: SimplificationPlan) -> SimplificationStats:
    original = len(plan.original_debts)
    simplified = len(plan.simplified_settlements)
    original_total = sum((d.amount for d in plan.original_debts), ZERO)
    simplified_total = sum((s.amount for s in plan.simplified_settlements), ZERO)
    saved = original - simplified
    return SimplificationStats(
        original_transaction_count=original,
        simplified_transaction_count=simplified,
        transactions_saved=saved,
        savings_percentage=_percent(saved, original),
        original_total_amount=to_money(original_total),
        simplified_total_amount=to_money(simplified_total),
        amount_difference=to_money(original_total - simplified_total),
    )


def _as_transfers(edges: Sequence[DebtEdge]) -> tuple[Transfer, ...]:
    return tuple(Transfer(from_id=e.debtor_id, to_id=e.creditor_id, amount=e.amount) for e in edges)


async def get_simplified_settlements(
    session: AsyncSession, user_id: int, counterpart_ids: Iterable[int]
) -> SimplificationPlan:
    counterparts = list(dict.fromkeys(int(x) for x in counterpart_ids if int(x) != user_id))

    # A group expense can be shared with several counterparts; count it once.
    transactions = {}
    settlements = {}
    for other in counterparts:
        for tx in await repository.fetch_shared_transactions_between(session, user_id, other):
            transactions[tx.id] = tx
        for s in await repository.fetch_settlements_between(session, user_id, other):
            settlements[s.id] = s

    edges = list(transaction_edges(transactions.values())) + list(settlement_edges(settlements.values()))
    balances = {uid: to_money(bal) for uid, bal in net_balances(edges, [user_id, *counterparts]).items()}

    original = [e for e in pairwise_debts(edges) if user_id in (e.debtor_id, e.creditor_id)]
    transfers = simplify_debts(balances)
    is_valid = validate_simplification(balances, transfers)
    if not is_valid:
        logger.error("Simplified settlements for user %s do not clear balances", user_id)

    return SimplificationPlan(
        original_debts=_as_transfers(original),
        simplified_settlements=tuple(t for t in transfers if user_id in (t.from_id, t.to_id)),
        balances=balances,
        is_valid=is_valid,
    )


async def get_group_simplified_settlements(session: AsyncSession, group_id: int) -> SimplificationPlan:
    await get_group(session, group_id)
    member_ids = await repository.fetch_active_member_ids(session, group_id)
    transactions = await repository.fetch_group_transactions(session, group_id)
    settlements = await repository.fetch_group_settlements(session, group_id)

    edges = list(transaction_edges(transactions)) + list(settlement_edges(settlements))
    balances = {uid: to_money(bal) for uid, bal in net_balances(edges, member_ids).items()}

    transfers = simplify_debts(balances)
    is_valid = validate_simplification(balances, transfers)
    if not is_valid:
        logger.error("Simplified settlements for group %s do not clear balances", group_id)

    return SimplificationPlan(
        original_debts=_as_transfers(pairwise_debts(edges)),
        simplified_settlements=tuple(transfers),
        balances=balances,
        group_id=group_id,
        is_valid=is_valid,
    )
