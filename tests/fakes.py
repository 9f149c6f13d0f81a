"""
In-memory stand-ins for the Playwright objects and portal collaborators used by the linking/sync code.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Callable, Optional

from psu_transact_link.config import AppConfig
from psu_transact_link.portal.browser import BrowserFactory, BrowserSessionHandle
from psu_transact_link.portal.login import ApprovalProbe, LoginOutcome


IDP_URL = "https://login.microsoftonline.com/common/login"
LEDGER_URL = "https://psu-sp.transactcampus.com/PSU/AccountTransaction.aspx"


class FakeKeyboard:
    def __init__(self) -> None:
        self.presses: list[str] = []

    async def press(self, key: str) -> None:
        self.presses.append(key)


class FakeLocator:
    def __init__(self, visible: bool) -> None:
        self._visible = visible
        self.clicks = 0

    async def count(self) -> int:
        return 1 if self._visible else 0

    def nth(self, i: int) -> "FakeLocator":
        return self

    async def is_visible(self) -> bool:
        return self._visible

    async def click(self) -> None:
        self.clicks += 1


class FakePage:
    """
    `goto` moves to the requested URL unless `redirect_to` is set (e.g. bounced to sign-in), and can be made
    slow with `goto_delay` to simulate a stuck navigation. With `arrive_after` the page returns from `goto`
    still on `redirect_to` and reaches the requested URL that many seconds later (SAML auto-post).
    """

    def __init__(
        self,
        url: str = IDP_URL,
        *,
        text: str = "",
        goto_delay: float = 0.0,
        redirect_to: Optional[str] = None,
        visible: tuple[str, ...] = (),
        arrive_after: Optional[float] = None,
    ) -> None:
        self.url = url
        self.text = text
        self.goto_delay = goto_delay
        self.redirect_to = redirect_to
        self.visible = set(visible)
        self.arrive_after = arrive_after
        self._arrival: Optional[asyncio.Task] = None
        self.keyboard = FakeKeyboard()
        self.visited: list[str] = []
        self._closed = False

    def is_closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        self._closed = True

    async def evaluate(self, script: str) -> str:
        return self.text

    async def goto(self, url: str, **kwargs: Any) -> None:
        if self.goto_delay:
            await asyncio.sleep(self.goto_delay)
        self.visited.append(url)
        self.url = self.redirect_to or url
        if self.arrive_after is not None:
            self._arrival = asyncio.ensure_future(self._arrive(url))

    async def _arrive(self, url: str) -> None:
        await asyncio.sleep(self.arrive_after)
        self.url = url

    async def wait_for_load_state(self, *args: Any, **kwargs: Any) -> None:
        return None

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(selector in self.visible)


class FakeContext:
    def __init__(self, first_page: FakePage, *, new_page: Optional[Callable[[], FakePage]] = None) -> None:
        self.pages: list[FakePage] = [first_page]
        self._new_page = new_page or (lambda: FakePage(url="about:blank"))
        self.closed = False

    async def new_page(self) -> FakePage:
        page = self._new_page()
        self.pages.append(page)
        return page

    async def storage_state(self, path: str) -> None:
        Path(path).write_text(json.dumps({"cookies": [], "origins": []}), encoding="utf-8")

    async def close(self) -> None:
        self.closed = True


def make_handle(page: Optional[FakePage] = None, *, new_page: Optional[Callable[[], FakePage]] = None) -> BrowserSessionHandle:
    page = page or FakePage()
    return BrowserSessionHandle(
        playwright=None,
        browser=None,
        context=FakeContext(page, new_page=new_page),
        page=page,
        save_debug_artifacts=False,
    )


class FakeBrowsers(BrowserFactory):
    """Real storage-state bookkeeping, fake browsers."""

    def __init__(self, cfg: AppConfig, *, page_text: str = "") -> None:
        super().__init__(cfg)
        self.page_text = page_text
        self.launched: list[BrowserSessionHandle] = []

    async def launch(self, *, storage_state: Optional[Path] = None, headless: Optional[bool] = None) -> BrowserSessionHandle:
        handle = make_handle(FakePage(text=self.page_text))
        self.launched.append(handle)
        return handle


class FakeSubmitter:
    def __init__(
        self,
        outcome: Any = LoginOutcome.AWAITING_MFA,
        probes: Optional[list[ApprovalProbe]] = None,
        *,
        probe_delay: float = 0.0,
    ) -> None:
        self.outcome = outcome
        self.probes = list(probes or [])
        self.probe_delay = probe_delay
        self.submitted: list[str] = []
        self.probe_calls = 0

    async def submit(self, handle: BrowserSessionHandle, creds: Any) -> LoginOutcome:
        self.submitted.append(creds.email)
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome

    async def probe_approval(self, page: Any) -> ApprovalProbe:
        self.probe_calls += 1
        if self.probe_delay:
            await asyncio.sleep(self.probe_delay)
        if not self.probes:
            return ApprovalProbe.WAITING
        return self.probes.pop(0)


class FakeLanding:
    def __init__(self, error: Optional[BaseException] = None) -> None:
        self.error = error
        self.resolved = 0

    async def resolve(self, handle: BrowserSessionHandle) -> Any:
        self.resolved += 1
        if self.error is not None:
            raise self.error
        handle.page.url = LEDGER_URL
        return handle.page


class FakeExtractor:
    def __init__(
        self, rows: Optional[list] = None, error: Optional[BaseException] = None, *, delay: float = 0.0
    ) -> None:
        self.rows = list(rows or [])
        self.error = error
        self.delay = delay
        self.windows: list[tuple] = []
        self.active = 0
        self.max_active = 0

    async def fetch(self, handle: BrowserSessionHandle, start: Any, end: Any) -> list:
        self.windows.append((start, end))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            return list(self.rows)
        finally:
            self.active -= 1


def make_config(tmp_path: Path, **api: Any) -> AppConfig:
    return AppConfig.model_validate(
        {
            "browser": {
                "storage_dir": str(tmp_path / "sessions"),
                "debug_dir": str(tmp_path / "debug"),
                "save_debug_artifacts": False,
            },
            "state": {"db_path": str(tmp_path / "state.db")},
            "logging": {"file_path": str(tmp_path / "app.log")},
            "api": api or {},
        }
    )
