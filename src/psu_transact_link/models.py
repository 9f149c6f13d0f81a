from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field

from .util.dates import utcnow


class RawTransactionRow(BaseModel):
    """
    One ledger row as scraped. Never persisted directly.

    Fields the parser could not interpret are listed in `unparsed_fields`; their raw text is kept.
    """

    date_text: str
    parsed_date: Optional[datetime] = None
    account_label: str = ""
    card_suffix: str = ""
    location: str = ""
    transaction_type: str = ""
    amount_text: str = ""
    amount: Decimal = Decimal("0.00")
    currency: str = ""
    unparsed_fields: list[str] = Field(default_factory=list)

    @property
    def needs_review(self) -> bool:
        return bool(self.unparsed_fields)

    def payload(self) -> dict[str, Any]:
        # Audit copy stored alongside the record. Card text is reduced to the suffix before this point.
        return {
            "date": self.date_text,
            "account": self.account_label,
            "card": self.card_suffix,
            "location": self.location,
            "type": self.transaction_type,
            "amount": self.amount_text,
            "currency": self.currency,
            "unparsed": list(self.unparsed_fields),
        }


class TransactionRecord(BaseModel):
    id: Optional[int] = None
    user_id: str
    transaction_date: datetime
    location: str
    description: Optional[str] = None
    amount: Decimal
    balance_after: Optional[Decimal] = None
    account_type: Optional[str] = None
    # Last 4 digits only; full card numbers are never retained.
    card_suffix: Optional[str] = None
    source_payload: dict[str, Any] = Field(default_factory=dict)
    needs_review: bool = False
    # Set only for rows without a parsed date: the placeholder date changes per run, the scraped text does not.
    review_key: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    def dedup_key(self) -> tuple[str, str, str, str]:
        return (
            self.user_id,
            f"raw:{self.review_key}" if self.review_key else self.transaction_date.isoformat(),
            self.location,
            str(self.amount.quantize(Decimal("0.01"))),
        )


class LinkedAccountStatus(BaseModel):
    user_id: str
    linked: bool = False
    linked_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    latest_transaction_date: Optional[datetime] = None
    external_account_label: Optional[str] = None


class TransactionFetchResult(BaseModel):
    success: bool
    raw_count: int = 0
    new_count: int = 0
    duplicate_count: int = 0
    transactions: list[RawTransactionRow] = Field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    last_sync_date: datetime = Field(default_factory=utcnow)


class LocationStat(BaseModel):
    location: str
    count: int
    total_spent: Decimal


class MonthStat(BaseModel):
    month: str
    total_spent: Decimal
    transaction_count: int


class TransactionStats(BaseModel):
    total_transactions: int = 0
    total_spent: Decimal = Decimal("0.00")
    average_transaction: Decimal = Decimal("0.00")
    top_locations: list[LocationStat] = Field(default_factory=list)
    monthly_spending: list[MonthStat] = Field(default_factory=list)
