from __future__ import annotations

import asyncio

import pytest

from psu_transact_link.config import PortalConfig
from psu_transact_link.errors import PortalUnreachableError
from psu_transact_link.portal.landing import PortalLandingResolver

from fakes import IDP_URL, LEDGER_URL, FakePage, make_handle


def _resolver(timeout: int = 5) -> PortalLandingResolver:
    return PortalLandingResolver(PortalConfig(landing_timeout_seconds=timeout), watchdog_interval=0.01)


def test_already_on_portal_returns_current_page_and_closes_extras() -> None:
    page = FakePage(url=LEDGER_URL)
    handle = make_handle(page)

    async def main():
        extra = await handle.new_page()
        winner = await _resolver().resolve(handle)
        return winner, extra

    winner, extra = asyncio.run(main())
    assert winner is page
    assert extra.is_closed()
    assert not page.is_closed()


def test_fresh_tab_wins_when_original_tab_is_stuck() -> None:
    original = FakePage(url=IDP_URL, goto_delay=5)
    handle = make_handle(original, new_page=lambda: FakePage(url="about:blank", goto_delay=0.05))

    winner = asyncio.run(_resolver().resolve(handle))

    assert winner is not original
    assert winner.url == LEDGER_URL
    assert handle.page is winner
    # The losing tab is closed so only one page stays attached to the handle.
    assert original.is_closed()
    assert original.keyboard.presses, "watchdog should have pressed Escape on the stuck tab"


def test_in_place_wins_when_redirect_completes_first() -> None:
    original = FakePage(url=IDP_URL)
    handle = make_handle(original, new_page=lambda: FakePage(url="about:blank", goto_delay=5))

    winner = asyncio.run(_resolver().resolve(handle))

    assert winner is original
    assert "transactcampus.com" in winner.url
    others = [p for p in handle.pages() if p is not original]
    assert others and all(p.is_closed() for p in others)


def test_dismisses_stay_signed_in_before_navigating() -> None:
    original = FakePage(url=IDP_URL, visible=("#idBtn_Back",))
    handle = make_handle(original, new_page=lambda: FakePage(url="about:blank", goto_delay=5))

    winner = asyncio.run(_resolver().resolve(handle))
    assert winner is original


def test_no_tab_reaches_portal_raises_portal_unreachable() -> None:
    original = FakePage(url=IDP_URL, redirect_to=IDP_URL)
    handle = make_handle(original, new_page=lambda: FakePage(url="about:blank", redirect_to=IDP_URL))

    with pytest.raises(PortalUnreachableError) as ei:
        asyncio.run(_resolver(timeout=1).resolve(handle))
    assert ei.value.kind == "portal_unreachable"


def test_tab_reaching_portal_after_navigation_returns_still_wins() -> None:
    # Both navigations return while still on the IdP; the fresh tab's SAML post lands shortly after.
    original = FakePage(url=IDP_URL, redirect_to=IDP_URL)
    handle = make_handle(
        original,
        new_page=lambda: FakePage(url="about:blank", redirect_to=IDP_URL, arrive_after=0.3),
    )

    async def main():
        loop = asyncio.get_running_loop()
        t0 = loop.time()
        winner = await _resolver().resolve(handle)
        return winner, loop.time() - t0

    winner, elapsed = asyncio.run(main())
    assert winner is not original
    assert winner.url == LEDGER_URL
    assert handle.page is winner
    assert original.is_closed()
    assert elapsed < 5
