from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from shared_expenses.db.models import SettlementStatus, SplitType

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
# Anything within one cent of zero counts as settled.
DEADBAND = Decimal("0.01")


def to_money(value: Union[Decimal, int, float, str]) -> Decimal:
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def is_settled_amount(value: Decimal) -> bool:
    return abs(value) <= DEADBAND


@dataclass(frozen=True)
class RegisteredIdentity:
    id: int


@dataclass(frozen=True)
class ExternalParticipant:
    # Someone without an account; never netted, never notified.
    name: str


Identity = Union[RegisteredIdentity, ExternalParticipant]


def registered_id(identity: object) -> Optional[int]:
    if isinstance(identity, RegisteredIdentity):
        return identity.id
    return None


@dataclass(frozen=True)
class ParticipantShare:
    identity: Identity
    share: Decimal
    percentage: Optional[Decimal] = None
    settled: bool = False
    settled_at: Optional[datetime] = None


@dataclass(frozen=True)
class SharedTransaction:
    id: Optional[int]
    amount: Decimal
    paid_by: int
    split_type: SplitType
    participants: tuple[ParticipantShare, ...]
    group_id: Optional[int] = None

    def share_of(self, user_id: int) -> Optional[ParticipantShare]:
        for p in self.participants:
            if registered_id(p.identity) == user_id:
                return p
        return None


@dataclass(frozen=True)
class SettlementRecord:
    id: Optional[int]
    payer_id: int
    recipient_id: int
    amount: Decimal
    status: SettlementStatus = SettlementStatus.PENDING
    group_id: Optional[int] = None
