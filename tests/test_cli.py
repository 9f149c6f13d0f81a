from __future__ import annotations

import zipfile
from datetime import datetime
from decimal import Decimal
from pathlib import Path

import pytest

from psu_transact_link.cli import main
from psu_transact_link.models import TransactionRecord
from psu_transact_link.state import StateStore


def _config(tmp_path: Path) -> Path:
    p = tmp_path / "config.yaml"
    p.write_text(
        f"""
state:
  db_path: "{(tmp_path / 'state.db').as_posix()}"
browser:
  debug_dir: "{(tmp_path / 'debug').as_posix()}"
  storage_dir: "{(tmp_path / 'sessions').as_posix()}"
logging:
  file_path: "{(tmp_path / 'app.log').as_posix()}"
""",
        encoding="utf-8",
    )
    return p


def _run(tmp_path: Path, *args: str) -> int:
    return main(["--env-file", str(tmp_path / "none.env"), *args])


def _seed(tmp_path: Path) -> None:
    s = StateStore(str(tmp_path / "state.db"))
    try:
        s.mark_linked("alice", account_label="abc123@psu.edu", linked_at=datetime(2025, 9, 1))
        s.insert_transactions(
            [
                TransactionRecord(
                    user_id="alice",
                    transaction_date=datetime(2020, 1, 5, 12, 0),
                    location="Starbucks HUB",
                    amount=Decimal("-5.75"),
                    card_suffix="1234",
                ),
                TransactionRecord(
                    user_id="alice",
                    transaction_date=datetime(2099, 1, 5, 12, 0),
                    location="Findlay Commons",
                    amount=Decimal("-8.00"),
                    needs_review=True,
                ),
            ]
        )
    finally:
        s.close()


def test_sync_status_and_transactions(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    cfg = _config(tmp_path)
    _seed(tmp_path)

    assert _run(tmp_path, "sync-status", "--config", str(cfg), "--user", "alice") == 0
    out = capsys.readouterr().out
    assert "linked:              True" in out
    assert "a***@psu.edu" in out
    assert "stored transactions: 2" in out

    assert _run(tmp_path, "transactions", "--config", str(cfg), "--user", "alice") == 0
    out = capsys.readouterr().out
    assert "Findlay Commons" in out and "(review)" in out
    assert "-$5.75" in out


def test_cleanup_and_unlink(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    cfg = _config(tmp_path)
    _seed(tmp_path)

    assert _run(tmp_path, "cleanup", "--config", str(cfg), "--older-than-days", "365") == 0
    assert "Deleted 1 transaction(s)" in capsys.readouterr().out

    assert _run(tmp_path, "unlink", "--config", str(cfg), "--user", "alice") == 0
    assert "deleted 1 stored transaction(s)" in capsys.readouterr().out


def test_debug_bundle_command(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    cfg = _config(tmp_path)
    (tmp_path / "debug").mkdir()
    (tmp_path / "debug" / "capture.txt").write_text("page", encoding="utf-8")

    assert _run(tmp_path, "debug-bundle", "--config", str(cfg), "--out-dir", str(tmp_path / "out")) == 0
    assert "Debug bundle written" in capsys.readouterr().out

    (bundle,) = (tmp_path / "out").glob("debug_bundle_*.zip")
    with zipfile.ZipFile(bundle) as z:
        assert "debug/capture.txt" in z.namelist()


def test_bad_dates_are_rejected(tmp_path: Path) -> None:
    cfg = _config(tmp_path)
    with pytest.raises(SystemExit):
        _run(tmp_path, "sync", "--config", str(cfg), "--user", "alice", "--start", "14/10/2025")
