from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path

import pytest

from psu_transact_link.errors import ExtractionFailedError, NotAuthenticatedError, NotLinkedError
from psu_transact_link.models import RawTransactionRow
from psu_transact_link.state import StateStore
from psu_transact_link.sync import SyncCoordinator

from fakes import FakeBrowsers, FakeExtractor, make_config, make_handle


NOW = datetime(2025, 10, 14, 12, 0, 0)


def _row(day: int, location: str = "Starbucks HUB", amount: str = "-5.75") -> RawTransactionRow:
    return RawTransactionRow(
        date_text=f"10/{day:02d}/2025 12:00 PM",
        parsed_date=datetime(2025, 10, day, 12, 0),
        account_label="LionCash+",
        card_suffix="1234",
        location=location,
        transaction_type="Purchase",
        amount_text=amount,
        amount=Decimal(amount),
    )


def _coordinator(tmp_path: Path, extractor: FakeExtractor) -> tuple[SyncCoordinator, StateStore, FakeBrowsers]:
    cfg = make_config(tmp_path)
    store = StateStore(cfg.state.db_path)
    browsers = FakeBrowsers(cfg)
    coordinator = SyncCoordinator(cfg.sync, store=store, browsers=browsers, extractor=extractor, clock=lambda: NOW)
    return coordinator, store, browsers


def _link(store: StateStore) -> None:
    store.mark_linked("alice", account_label="abc123@psu.edu", linked_at=NOW - timedelta(days=30))


def test_incremental_window_starts_at_last_sync(tmp_path: Path) -> None:
    extractor = FakeExtractor(rows=[])
    sync, store, _ = _coordinator(tmp_path, extractor)
    try:
        _link(store)
        last_sync = NOW - timedelta(days=10)
        store.advance_last_sync_at("alice", last_sync)

        result = asyncio.run(sync.sync("alice"))
        assert result.success
        assert extractor.windows == [(last_sync, NOW)]
        assert store.get_link_status("alice").last_sync_at == NOW
    finally:
        store.close()


def test_incremental_window_prefers_latest_stored_transaction(tmp_path: Path) -> None:
    extractor = FakeExtractor(rows=[_row(3)])
    sync, store, _ = _coordinator(tmp_path, extractor)
    try:
        _link(store)
        store.advance_last_sync_at("alice", NOW - timedelta(days=20))
        asyncio.run(sync.sync("alice", full=True))

        extractor.windows.clear()
        asyncio.run(sync.sync("alice"))
        assert extractor.windows == [(datetime(2025, 10, 3, 12, 0), NOW)]
    finally:
        store.close()


def test_first_sync_and_full_sync_use_the_lookback(tmp_path: Path) -> None:
    extractor = FakeExtractor(rows=[])
    sync, store, _ = _coordinator(tmp_path, extractor)
    try:
        _link(store)
        asyncio.run(sync.sync("alice"))
        asyncio.run(sync.sync("alice", full=True))
        lookback = datetime(2025, 4, 14, 12, 0, 0)
        assert extractor.windows == [(lookback, NOW), (lookback, NOW)]
    finally:
        store.close()


def test_explicit_range_overrides_and_is_normalized(tmp_path: Path) -> None:
    extractor = FakeExtractor(rows=[])
    sync, store, _ = _coordinator(tmp_path, extractor)
    try:
        _link(store)
        a, b = datetime(2025, 9, 1), datetime(2025, 9, 30)
        asyncio.run(sync.sync("alice", start=b, end=a))
        assert extractor.windows == [(a, b)]
    finally:
        store.close()


def test_new_count_is_raw_minus_duplicates(tmp_path: Path) -> None:
    rows = [_row(1), _row(2), _row(2), _row(3, "Findlay Commons", "-8.00")]
    extractor = FakeExtractor(rows=rows)
    sync, store, _ = _coordinator(tmp_path, extractor)
    try:
        _link(store)
        first = asyncio.run(sync.sync("alice", full=True))
        assert (first.raw_count, first.new_count, first.duplicate_count) == (4, 3, 1)

        extractor.rows.append(_row(4))
        second = asyncio.run(sync.sync("alice", full=True))
        assert (second.raw_count, second.new_count, second.duplicate_count) == (5, 1, 4)
        assert second.new_count == second.raw_count - second.duplicate_count
        assert store.count_transactions("alice") == 4
    finally:
        store.close()


def test_unparsed_rows_are_stored_with_placeholder_date(tmp_path: Path) -> None:
    pending = RawTransactionRow(
        date_text="Pending",
        location="Findlay Commons",
        transaction_type="Purchase",
        amount_text="$8.00",
        amount=Decimal("8.00"),
        unparsed_fields=["date"],
    )
    extractor = FakeExtractor(rows=[pending])
    sync, store, _ = _coordinator(tmp_path, extractor)
    try:
        _link(store)
        result = asyncio.run(sync.sync("alice", full=True))
        assert result.new_count == 1

        (stored,) = store.list_transactions("alice")
        assert stored.transaction_date == NOW
        assert stored.needs_review
        assert stored.source_payload["date"] == "Pending"
    finally:
        store.close()


def test_unparsed_rows_are_not_stored_again_on_later_syncs(tmp_path: Path) -> None:
    pending = RawTransactionRow(
        date_text="Pending",
        location="Findlay Commons",
        transaction_type="Purchase",
        amount_text="$8.00",
        amount=Decimal("8.00"),
        unparsed_fields=["date"],
    )
    clock = [NOW]
    cfg = make_config(tmp_path)
    store = StateStore(cfg.state.db_path)
    sync = SyncCoordinator(
        cfg.sync,
        store=store,
        browsers=FakeBrowsers(cfg),
        extractor=FakeExtractor(rows=[pending]),
        clock=lambda: clock[0],
    )

    async def main():
        first = await sync.sync("alice", full=True)
        clock[0] = NOW + timedelta(hours=1)
        second = await sync.sync("alice", full=True)
        return first, second

    try:
        _link(store)
        first, second = asyncio.run(main())
        assert (first.new_count, first.duplicate_count) == (1, 0)
        assert (second.new_count, second.duplicate_count) == (0, 1)
        assert store.count_transactions("alice") == 1
        # The placeholder date does not count as the newest real transaction.
        assert store.get_latest_transaction_date("alice") is None
    finally:
        store.close()


def test_syncs_for_one_user_run_one_at_a_time(tmp_path: Path) -> None:
    extractor = FakeExtractor(rows=[_row(1)], delay=0.05)
    sync, store, _ = _coordinator(tmp_path, extractor)

    async def main():
        return await asyncio.gather(sync.sync("alice", full=True), sync.sync("alice", full=True))

    try:
        _link(store)
        first, second = asyncio.run(main())
        assert extractor.max_active == 1
        assert sorted([first.new_count, second.new_count]) == [0, 1]
        assert store.count_transactions("alice") == 1
        # Per-user locks are released once no sync is running.
        assert sync._locks == {}
    finally:
        store.close()


def test_failure_leaves_watermark_unchanged(tmp_path: Path) -> None:
    extractor = FakeExtractor(error=ExtractionFailedError("Transaction grid not found after retry"))
    sync, store, _ = _coordinator(tmp_path, extractor)
    try:
        _link(store)
        last_sync = NOW - timedelta(days=10)
        store.advance_last_sync_at("alice", last_sync)

        result = asyncio.run(sync.sync("alice"))
        assert not result.success
        assert result.error_kind == "extraction_failed"
        assert store.get_link_status("alice").last_sync_at == last_sync
        assert store.count_transactions("alice") == 0

        (run,) = store.last_runs("alice")
        assert run["ok"] == 0
        assert "extraction_failed" in run["message"]
    finally:
        store.close()


def test_expired_portal_session_is_reported(tmp_path: Path) -> None:
    extractor = FakeExtractor(error=NotAuthenticatedError())
    sync, store, browsers = _coordinator(tmp_path, extractor)
    try:
        _link(store)
        result = asyncio.run(sync.sync("alice"))
        assert result.error_kind == "not_authenticated"
        # The browser it launched is always closed.
        assert browsers.launched and all(h.closed for h in browsers.launched)
    finally:
        store.close()


def test_unlinked_user_cannot_sync(tmp_path: Path) -> None:
    extractor = FakeExtractor(rows=[_row(1)])
    sync, store, browsers = _coordinator(tmp_path, extractor)
    try:
        with pytest.raises(NotLinkedError):
            asyncio.run(sync.sync("alice"))
        assert extractor.windows == []
        assert browsers.launched == []
    finally:
        store.close()


def test_caller_supplied_handle_is_left_open(tmp_path: Path) -> None:
    extractor = FakeExtractor(rows=[_row(1)])
    sync, store, browsers = _coordinator(tmp_path, extractor)
    try:
        _link(store)
        handle = make_handle()
        result = asyncio.run(sync.sync("alice", handle))
        assert result.success
        assert not handle.closed
        assert browsers.launched == []
    finally:
        store.close()


def test_cleanup_older_than(tmp_path: Path) -> None:
    extractor = FakeExtractor(rows=[_row(1), _row(10)])
    sync, store, _ = _coordinator(tmp_path, extractor)
    try:
        _link(store)
        asyncio.run(sync.sync("alice", full=True))
        # NOW - 7 days = 10/07 12:00
        assert sync.cleanup_older_than(7) == 1
        assert store.count_transactions("alice") == 1
    finally:
        store.close()
