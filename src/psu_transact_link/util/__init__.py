from .dates import format_portal_date, months_before, parse_portal_date, utcnow
from .money import ParsedAmount, cents_to_decimal, cents_to_money_str, money_to_cents, parse_amount

__all__ = [
    "format_portal_date",
    "months_before",
    "parse_portal_date",
    "utcnow",
    "ParsedAmount",
    "cents_to_decimal",
    "cents_to_money_str",
    "money_to_cents",
    "parse_amount",
]
