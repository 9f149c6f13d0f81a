from __future__ import annotations

import logging
from typing import Any, Optional

from playwright.async_api import Error as PlaywrightError

from ..config import PortalConfig
from ..errors import PortalUnreachableError
from .browser import BrowserSessionHandle, is_portal_url
from .login import first_visible
from .race import RaceTimeout, race_first
from .selectors import PortalSelectors


logger = logging.getLogger(__name__)


class PortalLandingResolver:
    """
    Get an authenticated handle onto the Transact portal after the IdP accepted the sign-in.

    The SAML redirect back to the portal may already be done, still in flight, or stuck behind an
    interstitial, so two strategies race:
    - continue in the current tab (dismiss "Stay signed in?", then go to the summary and ledger pages)
    - open a fresh tab in the same context (shared cookies) straight to the ledger

    The winner is the first page whose URL is on the portal, not the first strategy to finish.
    """

    def __init__(
        self,
        portal: PortalConfig,
        selectors: Optional[PortalSelectors] = None,
        *,
        watchdog_interval: float = 1.2,
    ) -> None:
        self.portal = portal
        self.selectors = selectors or PortalSelectors()
        self.watchdog_interval = watchdog_interval

    def _on_portal(self, page: Any) -> bool:
        try:
            return page is not None and not page.is_closed() and is_portal_url(page.url, self.portal.url_markers)
        except Exception:
            return False

    async def resolve(self, handle: BrowserSessionHandle) -> Any:
        original = handle.page
        if self._on_portal(original):
            await handle.close_other_pages(original)
            return original

        nav_ms = int(self.portal.navigation_timeout_seconds * 1000)

        async def _continue_in_place() -> Any:
            try:
                await original.wait_for_load_state("load", timeout=15_000)
            except PlaywrightError:
                pass
            stay = await first_visible(original, self.selectors.stay_signed_in_no)
            if stay is not None:
                try:
                    await stay.click()
                    await original.wait_for_load_state("domcontentloaded", timeout=10_000)
                except PlaywrightError:
                    logger.debug("In-place landing: 'Stay signed in?' dismissal failed.", exc_info=True)
            for url in (self.portal.summary_url, self.portal.ledger_url):
                if self._on_portal(original):
                    break
                try:
                    await original.goto(url, wait_until="domcontentloaded", timeout=nav_ms)
                except PlaywrightError:
                    # Losing in-place navigation is expected when the fresh tab wins.
                    logger.debug("In-place landing navigation to %s failed.", url, exc_info=True)
            return original

        async def _fresh_tab() -> Any:
            tab = await handle.new_page()
            try:
                await tab.goto(self.portal.ledger_url, wait_until="domcontentloaded", timeout=nav_ms)
            except PlaywrightError:
                logger.debug("Fresh-tab landing navigation failed.", exc_info=True)
            return tab

        async def _watchdog() -> None:
            # Clears native sheets/dialogs that block the original tab.
            await original.keyboard.press("Escape")

        def _any_tab_on_portal() -> Any:
            # A navigation can return while the SAML auto-post is still in flight.
            return next((p for p in handle.pages() if self._on_portal(p)), None)

        try:
            winner = await race_first(
                [_continue_in_place, _fresh_tab],
                accept=self._on_portal,
                timeout=float(self.portal.landing_timeout_seconds),
                watchdog=_watchdog,
                watchdog_interval=self.watchdog_interval,
                poll=_any_tab_on_portal,
            )
        except RaceTimeout:
            await handle.save_debug("landing_timeout")
            raise PortalUnreachableError(
                f"Sign-in succeeded but the Transact portal was not reached within "
                f"{self.portal.landing_timeout_seconds}s."
            )

        handle.set_active(winner)
        await handle.close_other_pages(winner)
        logger.info("Landed on portal (url=%s fresh_tab=%s)", winner.url, winner is not original)
        return winner
