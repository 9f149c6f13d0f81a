from __future__ import annotations

import hashlib
import json
import logging
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from playwright.async_api import async_playwright

from ..config import AppConfig


logger = logging.getLogger(__name__)


def is_portal_url(url: Optional[str], markers: list[str]) -> bool:
    u = (url or "").lower()
    return any(m in u for m in markers)


class BrowserSessionHandle:
    """
    One live browser context (Playwright instance + browser + context) and the page currently in use.

    The handle is owned by exactly one caller at a time (an auth session, or a sync run). `close()` is
    idempotent so eviction paths can call it without coordinating.
    """

    def __init__(
        self,
        *,
        playwright: Any,
        browser: Any,
        context: Any,
        page: Any,
        debug_dir: Optional[str] = None,
        save_debug_artifacts: bool = True,
    ) -> None:
        self._playwright = playwright
        self._browser = browser
        self.context = context
        self._page = page
        self._debug_dir = debug_dir
        self._save_debug_artifacts = save_debug_artifacts
        self._closed = False

    @property
    def page(self) -> Any:
        return self._page

    @property
    def closed(self) -> bool:
        return self._closed

    def pages(self) -> list[Any]:
        try:
            return list(self.context.pages)
        except Exception:
            return [self._page]

    async def new_page(self) -> Any:
        return await self.context.new_page()

    def set_active(self, page: Any) -> None:
        self._page = page

    async def close_other_pages(self, keep: Any) -> None:
        for p in self.pages():
            if p is keep:
                continue
            try:
                await p.close()
            except Exception:
                logger.debug("Failed to close non-active page.", exc_info=True)

    async def save_storage_state(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        await self.context.storage_state(path=str(path))
        backup_storage_state(path)

    async def save_debug(self, name_prefix: str, *, page: Any = None) -> None:
        """
        Best-effort screenshot + HTML + body text of the active page. Never raises.
        """
        if not self._save_debug_artifacts or not self._debug_dir:
            return
        target = page or self._page
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        safe = re.sub(r"[^a-zA-Z0-9_-]+", "_", name_prefix).strip("_")[:60] or "debug"
        try:
            out_dir = Path(self._debug_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            prefix = f"{stamp}_{safe}"
            await target.screenshot(path=str(out_dir / f"{prefix}.png"), full_page=True)
            (out_dir / f"{prefix}.html").write_text(await target.content(), encoding="utf-8")
            # Also save the rendered body text so parsing can be debugged offline without DOM tooling.
            try:
                (out_dir / f"{prefix}.txt").write_text(await target.inner_text("body"), encoding="utf-8")
            except Exception:
                pass
        except Exception:
            logger.debug("Failed to save debug artifacts.", exc_info=True)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for label, closer in (
            ("context", getattr(self.context, "close", None)),
            ("browser", getattr(self._browser, "close", None)),
            ("playwright", getattr(self._playwright, "stop", None)),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception:
                logger.debug("Failed to close browser %s.", label, exc_info=True)


class BrowserFactory:
    """
    Launches browser handles and manages per-user Playwright storage state (portal cookies).
    """

    def __init__(self, cfg: AppConfig) -> None:
        self.cfg = cfg
        self.storage_dir = Path(cfg.browser.storage_dir)

    def storage_state_path(self, user_id: str) -> Path:
        # User ids are application-defined; hash them so they are always safe file names.
        digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:32]
        return self.storage_dir / f"storage_state_{digest}.json"

    def delete_storage_state(self, user_id: str) -> None:
        path = self.storage_state_path(user_id)
        for p in (path, storage_state_backup_path(path)):
            try:
                p.unlink()
            except FileNotFoundError:
                continue

    async def launch(self, *, storage_state: Optional[Path] = None, headless: Optional[bool] = None) -> BrowserSessionHandle:
        bcfg = self.cfg.browser
        headless = bcfg.headless if headless is None else headless
        slow_mo = int(bcfg.slow_mo_ms or 0)

        pw = await async_playwright().start()
        browser = None
        try:
            browser = await self._launch_chromium(pw, headless=headless, slow_mo=slow_mo)

            ctx_kwargs: dict = {"user_agent": self.cfg.portal.user_agent}
            if storage_state is not None and validate_or_restore_storage_state(storage_state):
                ctx_kwargs["storage_state"] = str(storage_state)

            try:
                context = await browser.new_context(**ctx_kwargs)
            except Exception:
                # If storage_state is invalid/corrupt, Playwright can fail before we ever get a Page.
                if "storage_state" not in ctx_kwargs:
                    raise
                logger.warning("Failed to load stored portal session; starting with a fresh context.", exc_info=True)
                quarantine_file(Path(ctx_kwargs.pop("storage_state")), prefix="storage_state")
                context = await browser.new_context(**ctx_kwargs)

            nav_ms = int(self.cfg.portal.navigation_timeout_seconds * 1000)
            context.set_default_navigation_timeout(nav_ms)
            context.set_default_timeout(nav_ms)
            page = await context.new_page()
        except BaseException:
            if browser is not None:
                try:
                    await browser.close()
                except Exception:
                    logger.debug("Failed to close browser after launch failure.", exc_info=True)
            await pw.stop()
            raise

        return BrowserSessionHandle(
            playwright=pw,
            browser=browser,
            context=context,
            page=page,
            debug_dir=bcfg.debug_dir,
            save_debug_artifacts=bcfg.save_debug_artifacts,
        )

    async def launch_for_user(self, user_id: str, *, headless: Optional[bool] = None) -> BrowserSessionHandle:
        return await self.launch(storage_state=self.storage_state_path(user_id), headless=headless)

    async def _launch_chromium(self, pw: Any, *, headless: bool, slow_mo: int) -> Any:
        # Prefer Playwright's bundled Chromium, but fall back to a system-installed browser if the
        # sandbox/cache doesn't have Playwright browsers available.
        try:
            return await pw.chromium.launch(headless=headless, slow_mo=slow_mo)
        except Exception as e:
            msg = str(e)
            if "Executable doesn't exist" not in msg:
                raise
            logger.warning(
                "Playwright Chromium executable missing; falling back to system browser channel. (%s)",
                msg,
            )

        last_exc: Optional[Exception] = None
        for channel in self.cfg.browser.channel_fallbacks:
            try:
                return await pw.chromium.launch(headless=headless, slow_mo=slow_mo, channel=channel)
            except Exception as e:
                logger.debug("Browser channel %s unavailable.", channel, exc_info=True)
                last_exc = e
        raise RuntimeError("No usable Chromium browser found (install with `playwright install chromium`).") from last_exc


def storage_state_backup_path(state_path: Path) -> Path:
    # e.g. data/sessions/storage_state_ab12.json -> data/sessions/storage_state_ab12.json.bak
    return state_path.with_name(state_path.name + ".bak")


def _looks_like_storage_state(path: Path) -> bool:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return False
    return isinstance(data, dict) and ("cookies" in data or "origins" in data)


def validate_or_restore_storage_state(state_path: Path) -> bool:
    """
    Return True if `state_path` can be used as Playwright storage_state.

    If the JSON is corrupted, quarantine it and attempt to restore from `<file>.bak`.
    If that fails, return False so the caller uses a fresh session.
    """
    if not state_path.exists():
        return False
    if _looks_like_storage_state(state_path):
        return True

    logger.warning("storage_state file is invalid JSON; ignoring and attempting restore from backup: %s", state_path)
    quarantine_file(state_path, prefix="storage_state")

    bak = storage_state_backup_path(state_path)
    if bak.exists() and _looks_like_storage_state(bak):
        try:
            shutil.copy2(bak, state_path)
            logger.warning("Restored storage_state from backup: %s", bak)
            return True
        except OSError:
            logger.debug("Failed to restore storage_state from backup.", exc_info=True)
    return False


def backup_storage_state(state_path: Path) -> None:
    """
    Best-effort: keep a last-known-good copy of Playwright storage_state so we can self-heal if the JSON corrupts.
    """
    try:
        if _looks_like_storage_state(state_path):
            shutil.copy2(state_path, storage_state_backup_path(state_path))
    except OSError:
        logger.debug("Failed to write storage_state backup.", exc_info=True)


def quarantine_file(path: Path, *, prefix: str) -> None:
    try:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        path.replace(path.with_name(f"{prefix}.{path.name}.corrupt-{stamp}"))
    except OSError:
        logger.debug("Failed to quarantine file=%s", path, exc_info=True)
