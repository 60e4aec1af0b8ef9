from __future__ import annotations

import enum
from collections import defaultdict
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from shared_expenses.db.models import PairDirection
from shared_expenses.domain import ZERO, SettlementRecord, SharedTransaction, is_settled_amount, registered_id, to_money
from shared_expenses.services import repository


@dataclass(frozen=True)
class DebtEdge:
    debtor_id: int
    creditor_id: int
    amount: Decimal


class ViewerDirection(str, enum.Enum):
    YOU_OWE = "you_owe"
    OWES_YOU = "owes_you"
    SETTLED = "settled"


def transaction_edges(transactions: Iterable[SharedTransaction]) -> Iterator[DebtEdge]:
    for tx in transactions:
        for p in tx.participants:
            uid = registered_id(p.identity)
            if uid is None or uid == tx.paid_by:
                continue
            yield DebtEdge(debtor_id=uid, creditor_id=tx.paid_by, amount=p.share)


def settlement_edges(settlements: Iterable[SettlementRecord]) -> Iterator[DebtEdge]:
    # A paid B: A's balance goes up, B's goes down, i.e. B now "owes" A.
    for s in settlements:
        yield DebtEdge(debtor_id=s.recipient_id, creditor_id=s.payer_id, amount=s.amount)


def net_balances(edges: Iterable[DebtEdge], member_ids: Iterable[int] = ()) -> dict[int, Decimal]:
    """Positive: owed money. Negative: owes money. Always sums to zero."""
    balances: dict[int, Decimal] = {int(mid): ZERO for mid in member_ids}
    for e in edges:
        balances[e.debtor_id] = balances.get(e.debtor_id, ZERO) - e.amount
        balances[e.creditor_id] = balances.get(e.creditor_id, ZERO) + e.amount
    return balances


def calculate_net_balances(
    transactions: Iterable[SharedTransaction], member_ids: Iterable[int] = ()
) -> dict[int, Decimal]:
    transactions = list(transactions)
    balances = net_balances(transaction_edges(transactions), member_ids)
    for tx in transactions:
        balances.setdefault(tx.paid_by, ZERO)
        for p in tx.participants:
            uid = registered_id(p.identity)
            if uid is not None:
                balances.setdefault(uid, ZERO)
    return balances


def apply_settlements(balances: Mapping[int, Decimal], settlements: Iterable[SettlementRecord]) -> dict[int, Decimal]:
    out = dict(balances)
    for e in settlement_edges(settlements):
        out[e.debtor_id] = out.get(e.debtor_id, ZERO) - e.amount
        out[e.creditor_id] = out.get(e.creditor_id, ZERO) + e.amount
    return out


def pair_balance(edges: Iterable[DebtEdge], user_a: int, user_b: int) -> Decimal:
    """Net between two users. Positive: user_b owes user_a."""
    total = ZERO
    for e in edges:
        if e.debtor_id == user_b and e.creditor_id == user_a:
            total += e.amount
        elif e.debtor_id == user_a and e.creditor_id == user_b:
            total -= e.amount
    return to_money(total)


def pairwise_debts(edges: Iterable[DebtEdge]) -> list[DebtEdge]:
    """Collapse edges to one net debt per unordered pair, dropping settled pairs."""
    net: dict[tuple[int, int], Decimal] = defaultdict(lambda: ZERO)
    for e in edges:
        if e.debtor_id == e.creditor_id:
            continue
        lo, hi = sorted((e.debtor_id, e.creditor_id))
        # Positive: hi owes lo.
        net[(lo, hi)] += e.amount if e.debtor_id == hi else -e.amount

    out: list[DebtEdge] = []
    for (lo, hi), amount in sorted(net.items()):
        amount = to_money(amount)
        if is_settled_amount(amount):
            continue
        if amount > 0:
            out.append(DebtEdge(debtor_id=hi, creditor_id=lo, amount=amount))
        else:
            out.append(DebtEdge(debtor_id=lo, creditor_id=hi, amount=-amount))
    return out


def canonical_pair(user_a: int, user_b: int) -> tuple[int, int]:
    return (user_a, user_b) if user_a < user_b else (user_b, user_a)


def encode_direction(user_a: int, user_b: int, balance: Decimal) -> tuple[Decimal, PairDirection]:
    """Store a signed a/b balance (positive: b owes a) against the canonical pair."""
    if is_settled_amount(balance):
        return ZERO, PairDirection.SETTLED
    first, _ = canonical_pair(user_a, user_b)
    b_owes = balance > 0
    debtor = user_b if b_owes else user_a
    direction = PairDirection.FIRST_OWES if debtor == first else PairDirection.SECOND_OWES
    return to_money(abs(balance)), direction


def viewer_direction(viewer_id: int, first_user_id: int, amount: Decimal, direction: PairDirection) -> ViewerDirection:
    if direction == PairDirection.SETTLED or is_settled_amount(amount):
        return ViewerDirection.SETTLED
    viewer_is_first = viewer_id == first_user_id
    first_owes = direction == PairDirection.FIRST_OWES
    return ViewerDirection.YOU_OWE if viewer_is_first == first_owes else ViewerDirection.OWES_YOU


def direction_from_signed(balance: Decimal) -> ViewerDirection:
    # Signed relative to the viewer: positive means the counterpart owes the viewer.
    if is_settled_amount(balance):
        return ViewerDirection.SETTLED
    return ViewerDirection.OWES_YOU if balance > 0 else ViewerDirection.YOU_OWE


async def calculate_balance(session: AsyncSession, user_a: int, user_b: int) -> Decimal:
    transactions = await repository.fetch_shared_transactions_between(session, user_a, user_b)
    settlements = await repository.fetch_settlements_between(session, user_a, user_b)
    edges = list(transaction_edges(transactions)) + list(settlement_edges(settlements))
    return pair_balance(edges, user_a, user_b)


async def calculate_group_balances(session: AsyncSession, group_id: int) -> dict[int, Decimal]:
    member_ids = await repository.fetch_active_member_ids(session, group_id)
    transactions = await repository.fetch_group_transactions(session, group_id)
    settlements = await repository.fetch_group_settlements(session, group_id)
    edges = list(transaction_edges(transactions)) + list(settlement_edges(settlements))
    balances = net_balances(edges, member_ids)
    return {uid: to_money(bal) for uid, bal in balances.items()}
