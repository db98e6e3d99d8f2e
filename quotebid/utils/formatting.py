"""Display strings shared by the alert and reminder emails."""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Union

DEFAULT_PRICE = Decimal("250")

Number = Union[Decimal, int, float, str]


def format_money(amount: Optional[Number]) -> str:
    value = Decimal(str(amount if amount is not None else 0))
    if value == value.to_integral_value():
        return f"${value.to_integral_value()}"
    return f"${value.quantize(Decimal('0.01'))}"


def display_price(current_price: Optional[Number], minimum_bid: Optional[Number]) -> str:
    """Live price, else the minimum bid, else the house default."""
    for candidate in (current_price, minimum_bid):
        if candidate is not None and Decimal(str(candidate)) != 0:
            return format_money(candidate)
    return format_money(DEFAULT_PRICE)


def days_left(deadline: Optional[datetime], now: datetime) -> str:
    """``"3 days left"`` / ``"1 day left"`` / ``"Today"``; no deadline reads as now."""
    deadline = deadline or now
    days = math.ceil((deadline - now).total_seconds() / 86400)
    if days <= 0:
        return "Today"
    return f"{days} day{'s' if days != 1 else ''} left"


def hours_left(deadline: Optional[datetime], now: datetime) -> str:
    """Whole hours until the deadline; no deadline reads as 24 hours away."""
    deadline = deadline or now + timedelta(hours=24)
    hours = max(0, math.floor((deadline - now).total_seconds() / 3600))
    if hours <= 0:
        return "Less than 1 hour"
    return f"{hours} hours"


def first_name(full_name: Optional[str], username: Optional[str]) -> str:
    if full_name and full_name.strip():
        return full_name.strip().split(" ")[0]
    return username or "Expert"
