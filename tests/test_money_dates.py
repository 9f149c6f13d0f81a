from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from psu_transact_link.util.dates import format_portal_date, months_before, parse_portal_date
from psu_transact_link.util.money import cents_to_decimal, cents_to_money_str, money_to_cents, parse_amount


def test_parse_amount_plain_and_negative_forms() -> None:
    p = parse_amount("$12.34")
    assert p.ok and p.amount == Decimal("12.34") and p.currency == "$"

    assert parse_amount("($5.00)").amount == Decimal("-5.00")
    assert parse_amount("-$1,204.5").amount == Decimal("-1204.50")
    assert parse_amount(" 3 ").amount == Decimal("3.00")


def test_parse_amount_unparseable_is_flagged_not_raised() -> None:
    p = parse_amount("N/A")
    assert p.ok is False
    assert p.amount == Decimal("0.00")
    assert parse_amount(None).ok is False


def test_cents_helpers() -> None:
    assert money_to_cents(Decimal("12.345")) == 1235
    assert money_to_cents(Decimal("-5.75")) == -575
    assert cents_to_decimal(1999) == Decimal("19.99")
    assert cents_to_money_str(-123456) == "-$1,234.56"


def test_parse_portal_date_variants() -> None:
    assert parse_portal_date("10/14/2025 12:31 PM") == datetime(2025, 10, 14, 12, 31)
    assert parse_portal_date("10/14/2025") == datetime(2025, 10, 14)
    assert parse_portal_date("2025-10-14T12:31:00") == datetime(2025, 10, 14, 12, 31)


def test_parse_portal_date_garbage_returns_none() -> None:
    assert parse_portal_date("not a date") is None
    assert parse_portal_date("") is None
    assert parse_portal_date(None) is None


def test_format_portal_date_and_months_before() -> None:
    assert format_portal_date(datetime(2025, 1, 5, 23, 59)) == "01/05/2025"
    # relativedelta clamps to the end of the shorter month
    assert months_before(datetime(2025, 3, 31), 1) == datetime(2025, 2, 28)
    assert months_before(datetime(2025, 10, 14), 6) == datetime(2025, 4, 14)
