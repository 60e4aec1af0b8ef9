from __future__ import annotations

import logging
from typing import Optional

from aiogram import Bot
from aiogram.enums import ParseMode
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared_expenses.config import settings
from shared_expenses.db.models import Transaction, User
from shared_expenses.events import (
    DomainEvent,
    SettlementConfirmed,
    SettlementCreated,
    SettlementDeleted,
    SettlementDisputed,
    SplitCreated,
)
from shared_expenses.services.users import get_users
from shared_expenses.text import format_money, h, user_label

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Event subscriber that tells the other parties about new expenses and settlements.

    Users without a Telegram id or with notifications turned off are skipped.
    Delivery errors are logged per recipient and never raised.
    """

    def __init__(self, bot: Bot, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._bot = bot
        self._sessionmaker = sessionmaker

    async def __call__(self, event: DomainEvent) -> None:
        if isinstance(event, SplitCreated):
            await self._on_split_created(event)
        elif isinstance(event, (SettlementCreated, SettlementConfirmed, SettlementDisputed, SettlementDeleted)):
            if settings.notify_settlements:
                await self._on_settlement(event)

    async def _on_split_created(self, event: SplitCreated) -> None:
        if not event.notify_user_ids:
            return
        async with self._sessionmaker() as session:
            users = await get_users(session, [event.payer_id, *event.notify_user_ids])
            tx = await session.get(Transaction, event.transaction_id)

        payer = users.get(event.payer_id)
        shares = {s.user_id: s.amount for s in tx.shares} if tx is not None else {}
        title = "<b>New Shared Expense</b>"
        for uid in event.notify_user_ids:
            lines = [title, f"{h(user_label(payer))} added a shared expense"]
            if tx is not None:
                if tx.description:
                    lines.append(h(tx.description))
                lines.append(f"Total: {format_money(tx.amount)}")
                if uid in shares:
                    lines.append(f"Your share: <b>{format_money(shares[uid])}</b>")
            await self._send(users.get(uid), "\n".join(lines))

    async def _on_settlement(self, event) -> None:
        async with self._sessionmaker() as session:
            users = await get_users(session, [event.payer_id, event.recipient_id])
        payer = users.get(event.payer_id)
        recipient = users.get(event.recipient_id)
        amount = format_money(event.amount)

        if isinstance(event, SettlementCreated):
            targets = [recipient]
            text = (
                "<b>Settlement Recorded</b>\n"
                f"{h(user_label(payer))} recorded a payment of {amount} to you. Please confirm it."
            )
        elif isinstance(event, SettlementConfirmed):
            targets = [payer]
            text = f"<b>Settlement Confirmed</b>\n{h(user_label(recipient))} confirmed your payment of {amount}."
        elif isinstance(event, SettlementDisputed):
            disputer, other = (payer, recipient) if event.disputed_by_id == event.payer_id else (recipient, payer)
            targets = [other]
            text = (
                "<b>Settlement Disputed</b>\n"
                f"{h(user_label(disputer))} disputed the payment of {amount}.\n"
                f"Reason: {h(event.reason)}"
            )
        else:
            deleter, other = (payer, recipient) if event.deleted_by_id == event.payer_id else (recipient, payer)
            targets = [other]
            text = f"<b>Settlement Deleted</b>\n{h(user_label(deleter))} deleted the payment of {amount}."

        for user in targets:
            await self._send(user, text)

    async def _send(self, user: Optional[User], text: str) -> None:
        if user is None or user.tg_user_id is None or not user.notifications_enabled:
            return
        try:
            await self._bot.send_message(chat_id=user.tg_user_id, text=text, parse_mode=ParseMode.HTML)
        except (TelegramBadRequest, TelegramForbiddenError) as e:
            logger.warning("Notification to user %s not delivered: %s", user.id, e)

