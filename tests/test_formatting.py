from datetime import datetime, timedelta
from decimal import Decimal

from quotebid.utils.formatting import days_left, display_price, first_name, format_money, hours_left

NOW = datetime(2024, 3, 1, 12, 0, 0)


def test_format_money_drops_zero_cents():
    assert format_money(Decimal("250.00")) == "$250"
    assert format_money(Decimal("99.5")) == "$99.50"
    assert format_money(None) == "$0"


def test_display_price_prefers_live_price():
    assert display_price(Decimal("450.00"), Decimal("300.00")) == "$450"
    assert display_price(Decimal("0"), Decimal("300.00")) == "$300"
    assert display_price(None, 0) == "$250"


def test_days_left():
    assert days_left(NOW + timedelta(days=2, hours=12), NOW) == "3 days left"
    assert days_left(NOW + timedelta(hours=12), NOW) == "1 day left"
    assert days_left(NOW - timedelta(hours=1), NOW) == "Today"
    assert days_left(None, NOW) == "Today"


def test_hours_left():
    assert hours_left(None, NOW) == "24 hours"
    assert hours_left(NOW + timedelta(hours=5, minutes=30), NOW) == "5 hours"
    assert hours_left(NOW + timedelta(minutes=30), NOW) == "Less than 1 hour"
    assert hours_left(NOW - timedelta(days=1), NOW) == "Less than 1 hour"


def test_first_name_fallbacks():
    assert first_name("Ada Lovelace", "ada") == "Ada"
    assert first_name(None, "ada") == "ada"
    assert first_name("  ", None) == "Expert"
