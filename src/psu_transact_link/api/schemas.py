"""Request bodies and response payload shapes for the HTTP API"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..models import LinkedAccountStatus, LocationStat, MonthStat, TransactionFetchResult, TransactionRecord
from ..util.dates import utcnow


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _money(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.01")))


def envelope(
    success: bool,
    message: str,
    *,
    data: Optional[dict[str, Any]] = None,
    error: Optional[str] = None,
) -> dict[str, Any]:
    """The `{success, message, data?, error?, timestamp}` body every endpoint returns."""
    body: dict[str, Any] = {"success": success, "message": message}
    if data is not None:
        body["data"] = data
    if error:
        body["error"] = error
    body["timestamp"] = utcnow().isoformat() + "Z"
    return body


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=1, max_length=256, repr=False)

    @field_validator("email")
    @classmethod
    def _email_shape(cls, value: str) -> str:
        value = value.strip()
        if "@" not in value or value.startswith("@") or value.endswith("@"):
            raise ValueError("email must be an e-mail address")
        return value


class SyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    full_sync: bool = Field(default=False, alias="fullSync")
    start_date: Optional[datetime] = Field(default=None, alias="startDate")
    end_date: Optional[datetime] = Field(default=None, alias="endDate")


def linked_account_payload(status: LinkedAccountStatus) -> dict[str, Any]:
    return {
        "linked": status.linked,
        "status": "connected" if status.linked else "not_linked",
        "accountLabel": status.external_account_label,
        "linkedAt": _iso(status.linked_at),
        "lastSyncDate": _iso(status.last_sync_at),
        "latestTransactionDate": _iso(status.latest_transaction_date),
    }


def sync_result_payload(result: TransactionFetchResult) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "success": result.success,
        "totalTransactions": result.raw_count,
        "newTransactions": result.new_count,
        "duplicatesSkipped": result.duplicate_count,
        "lastSyncDate": _iso(result.last_sync_date),
        "windowStart": _iso(result.window_start),
        "windowEnd": _iso(result.window_end),
    }
    if result.error:
        payload["error"] = result.error
        payload["errorKind"] = result.error_kind
    return payload


def transaction_payload(tx: TransactionRecord) -> dict[str, Any]:
    return {
        "id": tx.id,
        "date": _iso(tx.transaction_date),
        "location": tx.location,
        "description": tx.description,
        "amount": _money(tx.amount),
        "balanceAfter": _money(tx.balance_after) if tx.balance_after is not None else None,
        "accountType": tx.account_type,
        "cardNumber": f"****{tx.card_suffix}" if tx.card_suffix else None,
        "needsReview": tx.needs_review,
    }


def location_payload(loc: LocationStat) -> dict[str, Any]:
    return {
        "location": loc.location,
        "visitCount": loc.count,
        "totalSpent": _money(loc.total_spent),
        "averagePerVisit": _money(loc.total_spent / loc.count) if loc.count else 0.0,
    }


def month_payload(month: MonthStat) -> dict[str, Any]:
    return {
        "month": month.month,
        "totalSpent": _money(month.total_spent),
        "transactionCount": month.transaction_count,
        "averagePerTransaction": (
            _money(month.total_spent / month.transaction_count) if month.transaction_count else 0.0
        ),
    }
