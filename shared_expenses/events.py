from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Awaitable, Callable, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

PENDING_EVENTS_KEY = "shared_expenses.pending_events"


@dataclass(frozen=True)
class DomainEvent:
    def affected_pairs(self) -> list[tuple[int, int]]:
        """(user, user) pairs whose cached balance this event invalidates."""
        return []

    @property
    def affected_group_id(self) -> Optional[int]:
        return None


@dataclass(frozen=True)
class _SplitEvent(DomainEvent):
    transaction_id: int
    payer_id: int
    # Registered participants only (external participants are never netted).
    participant_ids: tuple[int, ...]
    group_id: Optional[int] = None

    def affected_pairs(self) -> list[tuple[int, int]]:
        return [(self.payer_id, uid) for uid in self.participant_ids if uid != self.payer_id]

    @property
    def affected_group_id(self) -> Optional[int]:
        return self.group_id


@dataclass(frozen=True)
class SplitCreated(_SplitEvent):
    notify_user_ids: tuple[int, ...] = ()


@dataclass(frozen=True)
class SplitUpdated(_SplitEvent):
    pass


@dataclass(frozen=True)
class SplitRemoved(_SplitEvent):
    pass


@dataclass(frozen=True)
class _SettlementEvent(DomainEvent):
    settlement_id: int
    payer_id: int
    recipient_id: int
    amount: Decimal
    group_id: Optional[int] = None

    def affected_pairs(self) -> list[tuple[int, int]]:
        return [(self.payer_id, self.recipient_id)]

    @property
    def affected_group_id(self) -> Optional[int]:
        return self.group_id


@dataclass(frozen=True)
class SettlementCreated(_SettlementEvent):
    pass


@dataclass(frozen=True)
class SettlementConfirmed(_SettlementEvent):
    pass


@dataclass(frozen=True)
class SettlementDisputed(_SettlementEvent):
    disputed_by_id: int = 0
    reason: str = ""

    # Disputing does not move money.
    def affected_pairs(self) -> list[tuple[int, int]]:
        return []

    @property
    def affected_group_id(self) -> Optional[int]:
        return None


@dataclass(frozen=True)
class SettlementDeleted(_SettlementEvent):
    deleted_by_id: int = 0


Handler = Callable[[DomainEvent], Awaitable[None]]


def record_event(session: AsyncSession, event: DomainEvent) -> None:
    # Delivered by unit_of_work after commit; dropped on rollback.
    session.info.setdefault(PENDING_EVENTS_KEY, []).append(event)


def pop_recorded_events(session: AsyncSession) -> list[DomainEvent]:
    return session.info.pop(PENDING_EVENTS_KEY, [])


@dataclass
class EventBus:
    _handlers: dict[type, list[Handler]] = field(default_factory=lambda: defaultdict(list))

    def subscribe(self, event_type: type[DomainEvent], handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def handlers_for(self, event: DomainEvent) -> list[Handler]:
        out: list[Handler] = []
        for event_type, handlers in self._handlers.items():
            if isinstance(event, event_type):
                out.extend(handlers)
        return out

    async def publish(self, event: DomainEvent) -> None:
        for handler in self.handlers_for(event):
            try:
                await handler(event)
            except Exception:
                # The mutation already committed; a subscriber must not undo it.
                logger.exception("Event handler %r failed for %s", handler, type(event).__name__)

    async def publish_all(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            await self.publish(event)
