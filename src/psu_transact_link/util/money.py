from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional


_CURRENCY_RE = re.compile(r"[$€£¥]")
_NUMBER_RE = re.compile(r"\d[\d,]*(?:\.\d+)?|\.\d+")
_CENT = Decimal("0.01")


@dataclass(frozen=True)
class ParsedAmount:
    amount: Decimal
    currency: str
    ok: bool


def parse_amount(value: Optional[str]) -> ParsedAmount:
    """
    Parse portal amount cells like:
    - "$12.34"     -> 12.34
    - "($5.00)"    -> -5.00
    - "-$1,204.5"  -> -1204.50
    - "€3"         -> 3.00

    Unparseable text yields 0.00 with `ok=False` so the caller can keep the row and flag it.
    """
    s = (value or "").strip()
    m_cur = _CURRENCY_RE.search(s)
    currency = m_cur.group(0) if m_cur else ""

    m_num = _NUMBER_RE.search(s)
    if not m_num:
        return ParsedAmount(amount=Decimal("0.00"), currency=currency, ok=False)

    before, after = s[: m_num.start()], s[m_num.end() :]
    negative = ("(" in before and ")" in after) or "-" in before
    try:
        magnitude = Decimal(m_num.group(0).replace(",", ""))
    except InvalidOperation:
        return ParsedAmount(amount=Decimal("0.00"), currency=currency, ok=False)

    dec = (-magnitude if negative else magnitude).quantize(_CENT, rounding=ROUND_HALF_UP)
    return ParsedAmount(amount=dec, currency=currency, ok=True)


def money_to_cents(value: Decimal) -> int:
    dec = Decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)
    return int(dec * 100)


def cents_to_decimal(cents: int) -> Decimal:
    return (Decimal(int(cents)) / 100).quantize(_CENT)


def cents_to_money_str(cents: int) -> str:
    dec = cents_to_decimal(cents)
    sign = "-" if dec < 0 else ""
    return f"{sign}${abs(dec):,.2f}"
