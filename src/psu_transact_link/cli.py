from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import os
import time
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .api.services import Services, build_services
from .config import AppConfig, load_config
from .errors import LinkError
from .logging_config import configure_logging, mask_email
from .util.debug_bundle import create_debug_bundle
from .util.money import cents_to_money_str, money_to_cents


logger = logging.getLogger("psu_transact_link")


def _add_config_arg(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")


def _add_browser_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--headful", action="store_true", help="Run browser headful (debug)")
    p.add_argument("--slowmo-ms", type=int, default=0, help="Playwright slow motion in milliseconds (debug).")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="psu_transact_link")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API (linking + transaction endpoints)")
    _add_config_arg(serve)
    serve.add_argument("--host", default="", help="Bind address (default: api.host from config)")
    serve.add_argument("--port", type=int, default=0, help="Bind port (default: api.port from config)")

    link = sub.add_parser(
        "link",
        help="Link a Penn State account from the terminal (approve the push in Microsoft Authenticator when asked)",
    )
    _add_config_arg(link)
    _add_browser_args(link)
    link.add_argument("--user", required=True, help="Application user id to link the account to")
    link.add_argument("--email", default="", help="Penn State email (default: $PSU_EMAIL)")
    link.add_argument(
        "--poll-seconds",
        type=float,
        default=3.0,
        help="Seconds between approval checks (default: 3)",
    )

    sync = sub.add_parser("sync", help="Fetch the Transact ledger for a linked user and store new transactions")
    _add_config_arg(sync)
    _add_browser_args(sync)
    sync.add_argument("--user", required=True, help="Application user id")
    sync.add_argument("--full", action="store_true", help="Ignore the sync watermark and fetch the full lookback window")
    sync.add_argument("--start", default="", help="Window start (YYYY-MM-DD); overrides --full/incremental")
    sync.add_argument("--end", default="", help="Window end (YYYY-MM-DD, default: now)")

    status = sub.add_parser("sync-status", help="Show link state, sync watermark and the last runs for a user")
    _add_config_arg(status)
    status.add_argument("--user", required=True, help="Application user id")
    status.add_argument("--runs", type=int, default=5, help="How many recent runs to show (default: 5)")

    txs = sub.add_parser("transactions", help="Print stored transactions for a user (newest first)")
    _add_config_arg(txs)
    txs.add_argument("--user", required=True, help="Application user id")
    txs.add_argument("--limit", type=int, default=20, help="Max rows (default: 20)")

    unlink = sub.add_parser("unlink", help="Forget a user's portal session and delete their stored transactions")
    _add_config_arg(unlink)
    unlink.add_argument("--user", required=True, help="Application user id")

    cleanup = sub.add_parser("cleanup", help="Delete stored transactions older than N days (all users)")
    _add_config_arg(cleanup)
    cleanup.add_argument("--older-than-days", type=int, required=True, help="Retention in days")

    bundle = sub.add_parser(
        "debug-bundle",
        help="Zip portal debug captures + the log file for sharing (never includes .env or browser sessions)",
    )
    _add_config_arg(bundle)
    bundle.add_argument("--out-dir", default="data", help="Where to write the zip (default: data)")
    bundle.add_argument("--label", default="", help="Optional tag for the zip file name")

    return p


def _parse_day(value: str, *, flag: str) -> Optional[datetime]:
    s = (value or "").strip()
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        raise SystemExit(f"{flag} must be YYYY-MM-DD (got {s!r})")


def _apply_browser_args(cfg: AppConfig, args: argparse.Namespace) -> None:
    if args.headful:
        cfg.browser.headless = False
    if args.slowmo_ms:
        cfg.browser.slow_mo_ms = int(args.slowmo_ms)


async def _link_interactive(
    services: Services, user_id: str, email: str, password: str, *, poll_seconds: float
) -> int:
    try:
        result = await services.link.initiate(user_id, email, password)
        if result.linked:
            print(f"✅ {result.message}")
            return 0

        print(result.message)
        while True:
            await asyncio.sleep(max(0.5, poll_seconds))
            approval = await services.link.check_approval(user_id, result.session_id)
            if not approval.terminal:
                logger.debug("Still waiting for approval")
                continue
            if approval.approved:
                print(f"✅ {approval.message}")
                return 0
            print(f"❌ {approval.message}")
            return 1
    finally:
        # Releases the browser if we bail out mid-approval.
        await services.registry.stop()


def _print_status(services: Services, user_id: str, runs: int) -> None:
    st = services.link.status(user_id)
    print(f"user:                {user_id}")
    print(f"linked:              {st.linked}")
    if st.external_account_label:
        print(f"account:             {mask_email(st.external_account_label)}")
    print(f"linked at:           {st.linked_at.isoformat() if st.linked_at else '-'}")
    print(f"last sync:           {st.last_sync_at.isoformat() if st.last_sync_at else '-'}")
    print(
        "latest transaction:  "
        f"{st.latest_transaction_date.isoformat() if st.latest_transaction_date else '-'}"
    )
    print(f"stored transactions: {services.store.count_transactions(user_id)}")

    recent = services.store.last_runs(user_id, limit=runs)
    if recent:
        print("recent runs:")
        for r in recent:
            state = "ok" if r["ok"] else ("running" if r["ok"] is None else "failed")
            print(f"  #{r['id']} {r['started_at']} {state} full={bool(r['full_sync'])} {r['message'] or ''}".rstrip())


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    cfg = load_config(args.config)
    configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path)

    if args.cmd == "serve":
        import uvicorn

        from .api.app import create_app

        if not cfg.api.tokens:
            logger.warning("No API tokens configured (API_TOKENS); every request will be rejected with 401.")
        host = args.host or cfg.api.host
        port = args.port or cfg.api.port
        logger.info("Serving on http://%s:%d%s", host, port, cfg.api.prefix)
        # log_config=None keeps the handlers configured above.
        uvicorn.run(create_app(cfg), host=host, port=port, log_config=None)
        return 0

    if args.cmd == "debug-bundle":
        out_zip = create_debug_bundle(
            debug_dir=cfg.browser.debug_dir,
            log_file=cfg.logging.file_path,
            out_dir=args.out_dir,
            label=args.label,
        )
        print(f"✅ Debug bundle written: {out_zip}")
        return 0

    if args.cmd == "link":
        _apply_browser_args(cfg, args)
        email = (args.email or os.getenv("PSU_EMAIL", "")).strip()
        if not email:
            raise SystemExit("Missing email: pass --email or set PSU_EMAIL.")
        password = os.getenv("PSU_PASSWORD", "") or getpass.getpass(f"Password for {email}: ")
        if not password:
            raise SystemExit("Missing password.")

        services = build_services(cfg)
        try:
            return asyncio.run(
                _link_interactive(services, args.user, email, password, poll_seconds=args.poll_seconds)
            )
        except KeyboardInterrupt:
            print("Interrupted; the pending sign-in was discarded.")
            return 130
        except LinkError as e:
            print(f"❌ link failed ({e.kind}): {e.message}")
            return 1
        finally:
            services.store.close()

    if args.cmd == "sync":
        _apply_browser_args(cfg, args)
        start = _parse_day(args.start, flag="--start")
        end = _parse_day(args.end, flag="--end")

        services = build_services(cfg)
        try:
            t0 = time.time()
            result = asyncio.run(
                services.sync.sync(args.user, full=args.full, start=start, end=end, headless=not args.headful)
            )
            if not result.success:
                print(f"❌ sync failed ({result.error_kind}): {result.error}")
                return 1

            spent = sum(money_to_cents(abs(r.amount)) for r in result.transactions)
            print(
                f"✅ Sync complete in {time.time() - t0:.1f}s: {result.raw_count} row(s) on the ledger, "
                f"{result.new_count} new, {result.duplicate_count} duplicate(s); "
                f"window total {cents_to_money_str(spent)}"
            )
            return 0
        except KeyboardInterrupt:
            print("Interrupted.")
            return 130
        except LinkError as e:
            print(f"❌ sync failed ({e.kind}): {e.message}")
            return 1
        finally:
            services.store.close()

    if args.cmd == "sync-status":
        services = build_services(cfg)
        try:
            _print_status(services, args.user, args.runs)
            return 0
        finally:
            services.store.close()

    if args.cmd == "transactions":
        services = build_services(cfg)
        try:
            txs = services.store.list_transactions(args.user, limit=max(1, args.limit))
            if not txs:
                print("No stored transactions.")
            for t in txs:
                flag = " (review)" if t.needs_review else ""
                print(
                    f"{t.transaction_date:%Y-%m-%d %H:%M}  {cents_to_money_str(money_to_cents(t.amount)):>10}  "
                    f"{t.location}  [{t.account_type or '-'}]{flag}"
                )
            return 0
        finally:
            services.store.close()

    if args.cmd == "unlink":
        services = build_services(cfg)
        try:
            deleted = services.link.unlink(args.user)
            print(f"✅ Unlinked {args.user}; deleted {deleted} stored transaction(s).")
            return 0
        finally:
            services.store.close()

    if args.cmd == "cleanup":
        if args.older_than_days < 1:
            raise SystemExit("--older-than-days must be at least 1")
        services = build_services(cfg)
        try:
            deleted = services.sync.cleanup_older_than(args.older_than_days)
            print(f"✅ Deleted {deleted} transaction(s) older than {args.older_than_days} day(s).")
            return 0
        finally:
            services.store.close()

    raise AssertionError("Unhandled command")
