from __future__ import annotations

import json
import logging
import shutil
import sqlite3
import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Optional

from .models import LinkedAccountStatus, LocationStat, MonthStat, TransactionRecord, TransactionStats
from .util.money import cents_to_decimal, money_to_cents


logger = logging.getLogger(__name__)


_INSERT_TRANSACTION_SQL = """
INSERT INTO transactions(
  user_id, transaction_date, location, description, amount_cents, balance_after_cents,
  account_type, card_suffix, source_payload, needs_review, review_key, created_at
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
"""


def _iso(dt: datetime) -> str:
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.isoformat(timespec="seconds")


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


@dataclass(frozen=True)
class InsertOutcome:
    inserted: int
    duplicates: int
    failed: int


class StateStore:
    """
    SQLite persistence for linked accounts, synced transactions and sync runs.

    The UNIQUE constraint on (user_id, transaction_date, location, amount_cents) is the authoritative
    dedup guard; `transaction_exists` is only a fast path for the sync coordinator.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_path = self.db_path.with_name(self.db_path.name + ".bak")
        # FastAPI runs sync dependencies in a threadpool; serialize all access to the connection.
        self._lock = threading.RLock()

        # Self-heal on corrupted/missing DB: restore from backup when possible.
        self._conn = self._open_or_restore()
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._ensure_schema()

        # Ensure we have *some* backup available for next time.
        self._maybe_backup(if_missing=True)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # --- connection lifecycle -------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, check_same_thread=False)

    def _open_or_restore(self) -> sqlite3.Connection:
        """
        Open the state DB. If it looks corrupted, move it aside and restore from the last-known-good backup.
        """
        if self.db_path.exists():
            try:
                conn = self._connect()
                if self._connection_is_healthy(conn):
                    return conn
                conn.close()
                raise sqlite3.DatabaseError("SQLite quick_check failed")
            except Exception as e:
                logger.warning("State DB appears corrupted/unreadable; attempting restore from backup. (%s)", e)
                self._quarantine_db_files()

                if self._backup_path.exists():
                    try:
                        shutil.copy2(self._backup_path, self.db_path)
                        conn = self._connect()
                        if self._connection_is_healthy(conn):
                            logger.warning("Restored state DB from backup: %s", self._backup_path)
                            return conn
                        conn.close()
                    except Exception:
                        logger.warning("Failed to restore state DB from backup; creating a fresh DB.", exc_info=True)
                else:
                    logger.warning("No state DB backup found; creating a fresh DB.")

        return self._connect()

    def _connection_is_healthy(self, conn: sqlite3.Connection) -> bool:
        try:
            _ = conn.execute("PRAGMA schema_version;").fetchone()
            row = conn.execute("PRAGMA quick_check;").fetchone()
            return bool(row and row[0] == "ok")
        except Exception:
            return False

    def _quarantine_db_files(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        for p in (self.db_path, Path(str(self.db_path) + "-wal"), Path(str(self.db_path) + "-shm")):
            try:
                if p.exists():
                    p.replace(p.with_name(p.name + f".corrupt-{stamp}"))
            except Exception:
                logger.debug("Failed to quarantine path=%s", p, exc_info=True)

    def _maybe_backup(self, *, if_missing: bool) -> None:
        if if_missing and self._backup_path.exists():
            return
        try:
            self.backup()
        except Exception:
            logger.debug("Failed to write state DB backup.", exc_info=True)

    def backup(self) -> None:
        """
        Write/refresh a last-known-good backup of the state DB at `<db_path>.bak`.
        """
        out = self._backup_path
        out.parent.mkdir(parents=True, exist_ok=True)
        tmp = out.with_name(out.name + ".tmp")
        if tmp.exists():
            tmp.unlink()

        dst = sqlite3.connect(tmp)
        try:
            with self._lock:
                self._conn.backup(dst)
            dst.commit()
        finally:
            dst.close()

        tmp.replace(out)

    def _ensure_schema(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  user_id TEXT NOT NULL,
                  transaction_date TEXT NOT NULL,
                  location TEXT NOT NULL,
                  description TEXT,
                  amount_cents INTEGER NOT NULL,
                  balance_after_cents INTEGER,
                  account_type TEXT,
                  card_suffix TEXT,
                  source_payload TEXT,
                  needs_review INTEGER NOT NULL DEFAULT 0,
                  review_key TEXT,
                  created_at TEXT NOT NULL,
                  UNIQUE (user_id, transaction_date, location, amount_cents)
                );
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_user_date ON transactions(user_id, transaction_date);"
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS linked_accounts (
                  user_id TEXT PRIMARY KEY,
                  linked INTEGER NOT NULL DEFAULT 0,
                  external_account_label TEXT,
                  linked_at TEXT,
                  last_sync_at TEXT,
                  updated_at TEXT NOT NULL
                );
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_runs (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  user_id TEXT NOT NULL,
                  started_at TEXT NOT NULL,
                  finished_at TEXT,
                  full_sync INTEGER NOT NULL DEFAULT 0,
                  window_start TEXT,
                  window_end TEXT,
                  ok INTEGER,
                  message TEXT
                );
                """
            )
            self._apply_light_migrations()
            # Rows without a parsed date carry a placeholder date; their scraped text is the dedup key.
            self._conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_transactions_review "
                "ON transactions(user_id, review_key) WHERE review_key IS NOT NULL;"
            )
            self._conn.commit()

    def _apply_light_migrations(self) -> None:
        cols = {row[1] for row in self._conn.execute("PRAGMA table_info(transactions);").fetchall()}
        if "needs_review" not in cols:
            self._conn.execute("ALTER TABLE transactions ADD COLUMN needs_review INTEGER NOT NULL DEFAULT 0;")
        if "balance_after_cents" not in cols:
            self._conn.execute("ALTER TABLE transactions ADD COLUMN balance_after_cents INTEGER;")
        if "review_key" not in cols:
            self._conn.execute("ALTER TABLE transactions ADD COLUMN review_key TEXT;")

    # --- transactions ---------------------------------------------------------

    def transaction_exists(
        self,
        user_id: str,
        transaction_date: datetime,
        location: str,
        amount: Decimal,
        *,
        review_key: Optional[str] = None,
    ) -> bool:
        if review_key:
            with self._lock:
                row = self._conn.execute(
                    "SELECT 1 FROM transactions WHERE user_id = ? AND review_key = ? LIMIT 1;",
                    (user_id, review_key),
                ).fetchone()
            return row is not None
        with self._lock:
            row = self._conn.execute(
                """
                SELECT 1 FROM transactions
                WHERE user_id = ? AND transaction_date = ? AND location = ? AND amount_cents = ?
                LIMIT 1;
                """,
                (user_id, _iso(transaction_date), location, money_to_cents(amount)),
            ).fetchone()
        return row is not None

    def _record_params(self, record: TransactionRecord) -> tuple:
        return (
            record.user_id,
            _iso(record.transaction_date),
            record.location,
            record.description,
            money_to_cents(record.amount),
            money_to_cents(record.balance_after) if record.balance_after is not None else None,
            record.account_type,
            record.card_suffix,
            json.dumps(record.source_payload, default=str, sort_keys=True),
            1 if record.needs_review else 0,
            record.review_key,
            _iso(record.created_at),
        )

    def insert_transactions(self, records: Iterable[TransactionRecord]) -> InsertOutcome:
        """
        Insert all records in one transaction. If the batch hits a constraint violation (a concurrent sync
        won the race) or a malformed row, roll back and retry record-by-record so one bad row cannot block
        the rest. Conflicts are counted as duplicates and never overwrite existing rows.
        """
        rows = [self._record_params(r) for r in records]
        if not rows:
            return InsertOutcome(inserted=0, duplicates=0, failed=0)

        with self._lock:
            try:
                self._conn.executemany(_INSERT_TRANSACTION_SQL, rows)
                self._conn.commit()
                return InsertOutcome(inserted=len(rows), duplicates=0, failed=0)
            except sqlite3.Error as e:
                self._conn.rollback()
                logger.info("Batch insert of %d transactions failed (%s); retrying per record.", len(rows), e)

            inserted = duplicates = failed = 0
            for params in rows:
                try:
                    self._conn.execute(_INSERT_TRANSACTION_SQL, params)
                    self._conn.commit()
                    inserted += 1
                except sqlite3.IntegrityError:
                    self._conn.rollback()
                    duplicates += 1
                except sqlite3.Error:
                    self._conn.rollback()
                    failed += 1
                    logger.warning(
                        "Failed to store transaction (user_id=%s date=%s location=%r).",
                        params[0],
                        params[1],
                        params[2],
                        exc_info=True,
                    )
        return InsertOutcome(inserted=inserted, duplicates=duplicates, failed=failed)

    def get_latest_transaction_date(self, user_id: str) -> Optional[datetime]:
        with self._lock:
            row = self._conn.execute(
                "SELECT MAX(transaction_date) FROM transactions WHERE user_id = ? AND review_key IS NULL;",
                (user_id,),
            ).fetchone()
        return _from_iso(row[0]) if row else None

    def count_transactions(self, user_id: str) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) FROM transactions WHERE user_id = ?;", (user_id,)).fetchone()
        return int(row[0]) if row else 0

    def list_transactions(
        self,
        user_id: str,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        location: Optional[str] = None,
        account_type: Optional[str] = None,
        min_amount: Optional[Decimal] = None,
        max_amount: Optional[Decimal] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[TransactionRecord]:
        where = ["user_id = ?"]
        params: list = [user_id]
        if start is not None:
            where.append("transaction_date >= ?")
            params.append(_iso(start))
        if end is not None:
            where.append("transaction_date <= ?")
            params.append(_iso(end))
        if location:
            where.append("location LIKE ?")
            params.append(f"%{location}%")
        if account_type:
            where.append("account_type = ?")
            params.append(account_type)
        if min_amount is not None:
            where.append("amount_cents >= ?")
            params.append(money_to_cents(min_amount))
        if max_amount is not None:
            where.append("amount_cents <= ?")
            params.append(money_to_cents(max_amount))

        sql = (
            "SELECT id, user_id, transaction_date, location, description, amount_cents, balance_after_cents, "
            "account_type, card_suffix, source_payload, needs_review, created_at, review_key "
            f"FROM transactions WHERE {' AND '.join(where)} "
            "ORDER BY transaction_date DESC, id DESC LIMIT ? OFFSET ?;"
        )
        params += [int(limit), int(offset)]
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_record(r) for r in rows]

    def _row_to_record(self, row: tuple) -> TransactionRecord:
        try:
            payload = json.loads(row[9]) if row[9] else {}
        except ValueError:
            payload = {"raw": row[9]}
        return TransactionRecord(
            id=row[0],
            user_id=row[1],
            transaction_date=datetime.fromisoformat(row[2]),
            location=row[3],
            description=row[4],
            amount=cents_to_decimal(row[5]),
            balance_after=cents_to_decimal(row[6]) if row[6] is not None else None,
            account_type=row[7],
            card_suffix=row[8],
            source_payload=payload,
            needs_review=bool(row[10]),
            created_at=datetime.fromisoformat(row[11]),
            review_key=row[12],
        )

    def get_stats(
        self,
        user_id: str,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        top_n: int = 5,
    ) -> TransactionStats:
        where = ["user_id = ?"]
        params: list = [user_id]
        if start is not None:
            where.append("transaction_date >= ?")
            params.append(_iso(start))
        if end is not None:
            where.append("transaction_date <= ?")
            params.append(_iso(end))
        with self._lock:
            rows = self._conn.execute(
                f"SELECT transaction_date, location, amount_cents FROM transactions WHERE {' AND '.join(where)};",
                params,
            ).fetchall()

        if not rows:
            return TransactionStats()

        # Spending is measured by magnitude: purchases and refunds both count toward activity.
        total_cents = 0
        by_location: dict[str, list[int]] = defaultdict(lambda: [0, 0])
        by_month: dict[str, list[int]] = defaultdict(lambda: [0, 0])
        for tx_date, location, cents in rows:
            spent = abs(int(cents))
            total_cents += spent
            by_location[location][0] += 1
            by_location[location][1] += spent
            by_month[tx_date[:7]][0] += 1
            by_month[tx_date[:7]][1] += spent

        top = sorted(by_location.items(), key=lambda kv: kv[1][1], reverse=True)[:top_n]
        return TransactionStats(
            total_transactions=len(rows),
            total_spent=cents_to_decimal(total_cents),
            average_transaction=cents_to_decimal(round(total_cents / len(rows))),
            top_locations=[
                LocationStat(location=loc, count=v[0], total_spent=cents_to_decimal(v[1])) for loc, v in top
            ],
            monthly_spending=[
                MonthStat(month=month, transaction_count=v[0], total_spent=cents_to_decimal(v[1]))
                for month, v in sorted(by_month.items())
            ],
        )

    def delete_transactions_for_user(self, user_id: str) -> int:
        with self._lock:
            cur = self._conn.execute("DELETE FROM transactions WHERE user_id = ?;", (user_id,))
            self._conn.commit()
        return int(cur.rowcount or 0)

    def delete_transactions_older_than(self, cutoff: datetime) -> int:
        with self._lock:
            cur = self._conn.execute("DELETE FROM transactions WHERE transaction_date < ?;", (_iso(cutoff),))
            self._conn.commit()
        return int(cur.rowcount or 0)

    # --- linked account status ------------------------------------------------

    def get_link_status(self, user_id: str) -> LinkedAccountStatus:
        with self._lock:
            row = self._conn.execute(
                "SELECT linked, external_account_label, linked_at, last_sync_at FROM linked_accounts WHERE user_id = ?;",
                (user_id,),
            ).fetchone()
        latest = self.get_latest_transaction_date(user_id)
        if not row:
            return LinkedAccountStatus(user_id=user_id, latest_transaction_date=latest)
        return LinkedAccountStatus(
            user_id=user_id,
            linked=bool(row[0]),
            external_account_label=row[1],
            linked_at=_from_iso(row[2]),
            last_sync_at=_from_iso(row[3]),
            latest_transaction_date=latest,
        )

    def mark_linked(self, user_id: str, *, account_label: Optional[str], linked_at: datetime) -> None:
        now = _now_iso()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO linked_accounts(user_id, linked, external_account_label, linked_at, updated_at)
                VALUES (?, 1, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                  linked = 1,
                  external_account_label = excluded.external_account_label,
                  linked_at = excluded.linked_at,
                  updated_at = excluded.updated_at;
                """,
                (user_id, account_label, _iso(linked_at), now),
            )
            self._conn.commit()

    def mark_unlinked(self, user_id: str) -> None:
        with self._lock:
            self._conn.execute(
                """
                UPDATE linked_accounts
                SET linked = 0, external_account_label = NULL, linked_at = NULL, last_sync_at = NULL, updated_at = ?
                WHERE user_id = ?;
                """,
                (_now_iso(), user_id),
            )
            self._conn.commit()

    def advance_last_sync_at(self, user_id: str, synced_at: datetime) -> None:
        """
        Move the sync watermark forward. Never moves it backwards (clock skew, out-of-order finishes).
        """
        ts = _iso(synced_at)
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO linked_accounts(user_id, linked, last_sync_at, updated_at)
                VALUES (?, 0, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                  last_sync_at = CASE
                    WHEN linked_accounts.last_sync_at IS NULL OR linked_accounts.last_sync_at < excluded.last_sync_at
                    THEN excluded.last_sync_at
                    ELSE linked_accounts.last_sync_at
                  END,
                  updated_at = excluded.updated_at;
                """,
                (user_id, ts, _now_iso()),
            )
            self._conn.commit()

    # --- sync runs ------------------------------------------------------------

    def record_run_start(
        self,
        user_id: str,
        *,
        full_sync: bool,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
    ) -> int:
        with self._lock:
            cur = self._conn.execute(
                "INSERT INTO sync_runs(user_id, started_at, full_sync, window_start, window_end) VALUES (?, ?, ?, ?, ?);",
                (
                    user_id,
                    _now_iso(),
                    1 if full_sync else 0,
                    _iso(window_start) if window_start else None,
                    _iso(window_end) if window_end else None,
                ),
            )
            self._conn.commit()
        return int(cur.lastrowid)

    def record_run_finish(self, run_id: int, *, ok: bool, message: Optional[str] = None) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE sync_runs SET finished_at = ?, ok = ?, message = ? WHERE id = ?;",
                (_now_iso(), 1 if ok else 0, message, run_id),
            )
            self._conn.commit()

        # Only refresh backups after a successful run (avoid snapshotting a potentially bad state).
        if ok:
            self._maybe_backup(if_missing=False)

    def last_runs(self, user_id: str, limit: int = 5) -> list[dict]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT id, started_at, finished_at, full_sync, window_start, window_end, ok, message
                FROM sync_runs WHERE user_id = ? ORDER BY id DESC LIMIT ?;
                """,
                (user_id, int(limit)),
            ).fetchall()
        keys = ("id", "started_at", "finished_at", "full_sync", "window_start", "window_end", "ok", "message")
        return [dict(zip(keys, r)) for r in rows]
