from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional, Union

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta


def parse_portal_date(value: Optional[str]) -> Optional[datetime]:
    """
    Parse ledger dates like:
    - "10/14/2025 12:31 PM"
    - "10/14/2025"
    - "2025-10-14T12:31:00"

    Returns None (never raises) so a row with an odd date is kept and flagged rather than dropped.
    """
    s = (value or "").strip()
    if not s:
        return None
    try:
        dt = date_parser.parse(s, dayfirst=False, yearfirst=False)
    except (ValueError, OverflowError):
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def format_portal_date(value: Union[date, datetime]) -> str:
    """The portal's date pickers want MM/DD/YYYY."""
    return f"{value.month:02d}/{value.day:02d}/{value.year:04d}"


def months_before(value: datetime, months: int) -> datetime:
    return value - relativedelta(months=months)


def utcnow() -> datetime:
    # Naive UTC everywhere in storage; the ledger itself has no timezone.
    return datetime.now(timezone.utc).replace(tzinfo=None)
