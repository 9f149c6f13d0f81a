"""Penn State linking + transaction endpoints"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Query, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ..errors import http_status_for_kind
from ..logging_config import mask_email
from ..util.dates import months_before, utcnow
from .deps import CurrentUserId, ServicesDep
from .schemas import (
    LoginRequest,
    SyncRequest,
    envelope,
    linked_account_payload,
    location_payload,
    month_payload,
    sync_result_payload,
    transaction_payload,
)


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/penn-state", tags=["penn-state"])


def _json(status_code: int, body: dict) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


@router.post("/login")
async def login(body: LoginRequest, user_id: CurrentUserId, services: ServicesDep):
    """Submit portal credentials once; either links immediately or starts a push-MFA session."""
    logger.info("Link request (user_id=%s email=%s)", user_id, mask_email(body.email))
    result = await services.link.initiate(user_id, body.email, body.password)

    if result.linked:
        return envelope(
            True,
            result.message,
            data={"linkedAccount": linked_account_payload(result.status)},
        )

    return envelope(
        False,
        result.message,
        data={
            "requiresMFA": True,
            "sessionId": result.session_id,
            "numberMatchCode": result.number_match_code,
            "instructions": result.message,
        },
    )


@router.get("/check-approval")
async def check_approval(
    user_id: CurrentUserId,
    services: ServicesDep,
    session_id: Optional[str] = Query(None, alias="sessionId"),
):
    """One non-blocking probe of a pending push approval."""
    if not session_id:
        return _json(
            status.HTTP_400_BAD_REQUEST,
            envelope(False, "Session ID is required", error="validation_error"),
        )

    result = await services.link.check_approval(user_id, session_id)

    if result.status == "waiting":
        return envelope(
            True,
            result.message,
            data={"status": "waiting", "approved": False, "numberMatchCode": result.number_match_code},
        )

    if result.status == "approved":
        return envelope(
            True,
            result.message,
            data={
                "status": "approved",
                "approved": True,
                "portalReached": result.portal_reached,
                "linkedAccount": linked_account_payload(result.linked_account) if result.linked_account else None,
            },
        )

    if result.status == "denied":
        return _json(
            status.HTTP_401_UNAUTHORIZED,
            envelope(
                False,
                result.message,
                data={"status": "denied", "approved": False, "requiresRestart": True},
                error=result.error_kind,
            ),
        )

    if result.requires_restart:
        return _json(
            status.HTTP_404_NOT_FOUND,
            envelope(False, result.message, data={"requiresRestart": True}, error=result.error_kind),
        )

    return _json(
        http_status_for_kind(result.error_kind or ""),
        envelope(
            False,
            result.message,
            data={"status": "error", "approved": False, "requiresRestart": True},
            error=result.error_kind,
        ),
    )


@router.delete("/session")
async def cancel_session(
    user_id: CurrentUserId,
    services: ServicesDep,
    session_id: Optional[str] = Query(None, alias="sessionId"),
):
    cancelled = await services.link.cancel(user_id, session_id)
    return envelope(True, "Authentication session cancelled.", data={"cancelled": cancelled})


@router.get("/status")
def link_status(user_id: CurrentUserId, services: ServicesDep):
    st = services.link.status(user_id)
    return envelope(True, "Penn State account status retrieved.", data={"pennState": linked_account_payload(st)})


@router.delete("/unlink")
def unlink(user_id: CurrentUserId, services: ServicesDep):
    deleted = services.link.unlink(user_id)
    return envelope(True, "Penn State account unlinked.", data={"deletedTransactions": deleted})


@router.post("/transactions/sync")
async def sync_transactions(user_id: CurrentUserId, services: ServicesDep, body: Optional[SyncRequest] = None):
    body = body or SyncRequest()
    result = await services.sync.sync(
        user_id,
        full=body.full_sync,
        start=_naive_utc(body.start_date),
        end=_naive_utc(body.end_date),
    )
    payload = {"syncResult": sync_result_payload(result)}
    if result.success:
        msg = f"Sync completed: {result.new_count} new transaction(s), {result.duplicate_count} duplicate(s) skipped."
        return envelope(True, msg, data=payload)
    return _json(
        http_status_for_kind(result.error_kind or ""),
        envelope(False, result.error or "Sync failed.", data=payload, error=result.error_kind),
    )


@router.get("/transactions/sync-status")
def sync_status(user_id: CurrentUserId, services: ServicesDep):
    st = services.link.status(user_id)
    return envelope(
        True,
        "Sync status retrieved.",
        data={
            "syncStatus": {
                "pennStateLinked": st.linked,
                "lastSyncDate": st.last_sync_at.isoformat() if st.last_sync_at else None,
                "hasTransactions": services.store.count_transactions(user_id) > 0,
                "latestTransactionDate": (
                    st.latest_transaction_date.isoformat() if st.latest_transaction_date else None
                ),
                "accountLabel": st.external_account_label,
            }
        },
    )


@router.get("/transactions")
def list_transactions(
    user_id: CurrentUserId,
    services: ServicesDep,
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    location: Optional[str] = Query(None, max_length=200),
    account_type: Optional[str] = Query(None, alias="accountType", max_length=200),
    min_amount: Optional[Decimal] = Query(None, alias="minAmount"),
    max_amount: Optional[Decimal] = Query(None, alias="maxAmount"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    txs = services.store.list_transactions(
        user_id,
        start=_naive_utc(start_date),
        end=_naive_utc(end_date),
        location=location,
        account_type=account_type,
        min_amount=min_amount,
        max_amount=max_amount,
        limit=limit,
        offset=offset,
    )
    return envelope(
        True,
        f"Retrieved {len(txs)} transactions",
        data={
            "transactions": [transaction_payload(t) for t in txs],
            "pagination": {"limit": limit, "offset": offset, "hasMore": len(txs) == limit},
        },
    )


@router.get("/transactions/recent")
def recent_transactions(
    user_id: CurrentUserId,
    services: ServicesDep,
    limit: int = Query(20, ge=1, le=100),
):
    txs = services.store.list_transactions(user_id, limit=limit)
    return envelope(
        True,
        f"Retrieved {len(txs)} recent transactions",
        data={"transactions": [transaction_payload(t) for t in txs], "count": len(txs)},
    )


@router.get("/transactions/stats")
def transaction_stats(
    user_id: CurrentUserId,
    services: ServicesDep,
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
):
    stats = services.store.get_stats(user_id, start=_naive_utc(start_date), end=_naive_utc(end_date))
    return envelope(
        True,
        "Transaction statistics retrieved successfully",
        data={
            "statistics": {
                "totalTransactions": stats.total_transactions,
                "totalSpent": float(stats.total_spent),
                "averageTransaction": float(stats.average_transaction),
                "topLocations": [location_payload(loc) for loc in stats.top_locations],
                "monthlySpending": [month_payload(m) for m in stats.monthly_spending],
            },
            "dateRange": {
                "startDate": start_date.isoformat() if start_date else None,
                "endDate": end_date.isoformat() if end_date else None,
            },
        },
    )


@router.get("/transactions/monthly")
def monthly_spending(
    user_id: CurrentUserId,
    services: ServicesDep,
    months: int = Query(6, ge=1, le=36),
):
    end = utcnow()
    start = months_before(end, months)
    stats = services.store.get_stats(user_id, start=start, end=end)
    n = len(stats.monthly_spending)
    return envelope(
        True,
        f"Monthly spending data for last {months} months",
        data={
            "monthlySpending": [month_payload(m) for m in stats.monthly_spending],
            "summary": {
                "totalMonths": n,
                "totalSpent": float(stats.total_spent),
                "averageMonthlySpending": round(float(stats.total_spent) / n, 2) if n else 0.0,
            },
            "dateRange": {"startDate": start.isoformat(), "endDate": end.isoformat()},
        },
    )


@router.get("/transactions/locations")
def spending_by_location(
    user_id: CurrentUserId,
    services: ServicesDep,
    limit: int = Query(10, ge=1, le=50),
):
    stats = services.store.get_stats(user_id, top_n=limit)
    return envelope(
        True,
        f"Top {len(stats.top_locations)} locations by spending",
        data={"locations": [location_payload(loc) for loc in stats.top_locations]},
    )


@router.delete("/transactions")
def delete_all_transactions(user_id: CurrentUserId, services: ServicesDep):
    deleted = services.store.delete_transactions_for_user(user_id)
    return envelope(True, f"Deleted {deleted} transactions", data={"deletedCount": deleted})


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Query/body datetimes may carry an offset; storage is naive UTC.
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
