from __future__ import annotations

import html
from decimal import Decimal
from typing import Optional

from shared_expenses.db.models import User
from shared_expenses.domain import to_money


def h(s: str) -> str:
    return html.escape(s, quote=False)


def user_label(u: Optional[User]) -> str:
    if u is None:
        return "Someone"
    if u.display_name:
        return u.display_name
    if u.username:
        return f"@{u.username}"
    return f"user {u.id}"


def format_money(amount: Decimal) -> str:
    return f"{to_money(amount):,.2f}"
