#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional


def _ensure_src_on_path() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src = repo_root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))


def _read_text(path: str) -> str:
    p = Path(path)
    if not p.exists():
        raise SystemExit(f"File not found: {p}")
    return p.read_text(encoding="utf-8", errors="replace")


def main(argv: Optional[list[str]] = None) -> int:
    _ensure_src_on_path()

    from psu_transact_link.portal.transactions import parse_transaction_table, row_to_record

    p = argparse.ArgumentParser(
        prog="parse_ledger_snapshot",
        description=(
            "Parse a Playwright-saved ledger page (from data/debug/*.html) into structured JSON.\n"
            "This is intended for debugging parsing regressions offline (no Playwright, no secrets)."
        ),
    )
    p.add_argument("--file", required=True, help="Path to a debug .html file captured on AccountTransaction.aspx")
    p.add_argument(
        "--records",
        action="store_true",
        help="Also show the records as they would be stored (unparsed dates get the capture time as placeholder)",
    )
    p.add_argument("--out", default="", help="Optional output JSON path (otherwise prints to stdout)")
    args = p.parse_args(argv)

    rows = parse_transaction_table(_read_text(args.file))
    payload: dict = {
        "rows": [r.model_dump(mode="json") for r in rows],
        "flagged": sum(1 for r in rows if r.needs_review),
    }
    if args.records:
        placeholder = datetime.fromtimestamp(Path(args.file).stat().st_mtime)
        payload["records"] = [
            row_to_record(r, user_id="snapshot", placeholder_date=placeholder).model_dump(mode="json") for r in rows
        ]

    out_json = json.dumps(payload, indent=2, sort_keys=False)
    if args.out:
        Path(args.out).write_text(out_json, encoding="utf-8")
    else:
        print(out_json)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
