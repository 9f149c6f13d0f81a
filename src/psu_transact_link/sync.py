from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from playwright.async_api import Error as PlaywrightError

from .config import SyncConfig
from .errors import LinkError, NotLinkedError
from .models import RawTransactionRow, TransactionFetchResult
from .portal.browser import BrowserFactory, BrowserSessionHandle
from .portal.transactions import TransactionExtractor, row_to_record
from .state import StateStore
from .util.dates import months_before, utcnow


logger = logging.getLogger(__name__)


class SyncCoordinator:
    """
    Decides the sync window, runs the ledger extraction and stores new transactions.

    The sync watermark (`last_sync_at`) only moves forward and only after a successful run.
    """

    def __init__(
        self,
        cfg: SyncConfig,
        *,
        store: StateStore,
        browsers: BrowserFactory,
        extractor: TransactionExtractor,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cfg = cfg
        self.store = store
        self.browsers = browsers
        self.extractor = extractor
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def window(
        self,
        user_id: str,
        *,
        full: bool = False,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> tuple[datetime, datetime]:
        now = now or self._clock()
        window_end = end or now
        if start is not None:
            return start, window_end

        lookback_start = months_before(now, self.cfg.default_lookback_months)
        if full:
            return lookback_start, window_end

        status = self.store.get_link_status(user_id)
        # Incremental: resume from the newest stored transaction, else the last successful sync.
        window_start = status.latest_transaction_date or status.last_sync_at or lookback_start
        return window_start, window_end

    async def sync(
        self,
        user_id: str,
        handle: Optional[BrowserSessionHandle] = None,
        *,
        full: bool = False,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        headless: Optional[bool] = None,
    ) -> TransactionFetchResult:
        """
        Sync one user's ledger. When no handle is given, a browser is launched from the user's stored
        portal session and closed afterwards.
        """
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                return await self._sync_locked(user_id, handle, full=full, start=start, end=end, headless=headless)
        finally:
            self._lock_users[user_id] -= 1
            if not self._lock_users[user_id]:
                # Nobody holds or waits on it any more.
                del self._lock_users[user_id]
                self._locks.pop(user_id, None)

    async def _sync_locked(
        self,
        user_id: str,
        handle: Optional[BrowserSessionHandle],
        *,
        full: bool,
        start: Optional[datetime],
        end: Optional[datetime],
        headless: Optional[bool],
    ) -> TransactionFetchResult:
        if not self.store.get_link_status(user_id).linked:
            raise NotLinkedError("Penn State account not linked. Please link your account first.")

        now = self._clock()
        window_start, window_end = self.window(user_id, full=full, start=start, end=end, now=now)
        if window_start > window_end:
            window_start, window_end = window_end, window_start
        run_id = self.store.record_run_start(
            user_id, full_sync=full, window_start=window_start, window_end=window_end
        )
        logger.info(
            "Sync start (user_id=%s full=%s window=%s..%s)",
            user_id,
            full,
            window_start.isoformat(),
            window_end.isoformat(),
        )

        own_handle = handle is None
        try:
            if own_handle:
                handle = await self.browsers.launch_for_user(user_id, headless=headless)
            rows = await self.extractor.fetch(handle, window_start, window_end)
            if own_handle:
                # Keep the portal cookies fresh for the next run.
                await handle.save_storage_state(self.browsers.storage_state_path(user_id))
        except (LinkError, PlaywrightError) as e:
            kind = e.kind if isinstance(e, LinkError) else "extraction_failed"
            message = e.message if isinstance(e, LinkError) else f"Browser error during sync: {e.message}"
            logger.warning("Sync failed (user_id=%s kind=%s): %s", user_id, kind, message)
            self.store.record_run_finish(run_id, ok=False, message=f"{kind}: {message}")
            return TransactionFetchResult(
                success=False,
                error=message,
                error_kind=kind,
                window_start=window_start,
                window_end=window_end,
                last_sync_date=now,
            )
        except BaseException as e:
            self.store.record_run_finish(run_id, ok=False, message=f"{type(e).__name__}: {e}")
            raise
        finally:
            if own_handle and handle is not None:
                await handle.close()

        new_count, duplicate_count = self._store_rows(user_id, rows, placeholder_date=window_end)

        self.store.advance_last_sync_at(user_id, now)
        self.store.record_run_finish(
            run_id,
            ok=True,
            message=f"raw={len(rows)} new={new_count} duplicates={duplicate_count}",
        )
        logger.info(
            "Sync complete (user_id=%s raw=%d new=%d duplicates=%d)",
            user_id,
            len(rows),
            new_count,
            duplicate_count,
        )
        return TransactionFetchResult(
            success=True,
            raw_count=len(rows),
            new_count=new_count,
            duplicate_count=duplicate_count,
            transactions=rows,
            window_start=window_start,
            window_end=window_end,
            last_sync_date=now,
        )

    def _store_rows(
        self, user_id: str, rows: list[RawTransactionRow], *, placeholder_date: datetime
    ) -> tuple[int, int]:
        records = [row_to_record(r, user_id=user_id, placeholder_date=placeholder_date) for r in rows]

        fresh = []
        seen: set[tuple[str, str, str, str]] = set()
        duplicates = 0
        for rec in records:
            key = rec.dedup_key()
            # The existence check is only a fast path; the UNIQUE constraint decides on insert.
            if key in seen or self.store.transaction_exists(
                user_id, rec.transaction_date, rec.location, rec.amount, review_key=rec.review_key
            ):
                duplicates += 1
                continue
            seen.add(key)
            fresh.append(rec)

        outcome = self.store.insert_transactions(fresh)
        duplicates += outcome.duplicates
        if outcome.failed:
            logger.warning("%d transaction(s) could not be stored (user_id=%s).", outcome.failed, user_id)

        flagged = sum(1 for r in fresh if r.needs_review)
        if flagged:
            logger.info("%d new transaction(s) flagged for review (unparsed fields).", flagged)
        return outcome.inserted, duplicates

    def cleanup_older_than(self, days: int) -> int:
        cutoff = self._clock() - timedelta(days=int(days))
        deleted = self.store.delete_transactions_older_than(cutoff)
        logger.info("Deleted %d transaction(s) older than %s.", deleted, cutoff.date().isoformat())
        return deleted
