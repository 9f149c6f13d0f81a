from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
from urllib.parse import urlparse

from playwright.async_api import Error as PlaywrightError

from ..config import PortalConfig
from ..errors import InvalidCredentialsError, ProviderUnreachableError
from .browser import BrowserSessionHandle, is_portal_url
from .selectors import PortalSelectors


logger = logging.getLogger(__name__)


class LoginOutcome(str, Enum):
    AUTHENTICATED = "authenticated"
    AWAITING_MFA = "awaiting_mfa"


class ApprovalProbe(str, Enum):
    WAITING = "waiting"
    APPROVED = "approved"
    DENIED = "denied"


@dataclass(frozen=True)
class PortalCredentials:
    email: str
    password: str = field(repr=False)


async def body_text(page: Any) -> str:
    try:
        return await page.evaluate("() => (document.body && document.body.innerText) || ''") or ""
    except Exception:
        return ""


async def first_visible(page: Any, selector: str) -> Optional[Any]:
    loc = page.locator(selector)
    try:
        n = min(int(await loc.count()), 10)
    except Exception:
        n = 0
    for i in range(n):
        cand = loc.nth(i)
        try:
            if await cand.is_visible():
                return cand
        except Exception:
            continue
    return None


class CredentialSubmitter:
    """
    Drives the Microsoft Entra ID two-step sign-in form (e-mail page, then password page).

    The password only ever reaches `fill()`; debug artifacts are captured before it is typed or after the
    form has been submitted (when the field is gone).
    """

    def __init__(self, portal: PortalConfig, selectors: Optional[PortalSelectors] = None) -> None:
        self.portal = portal
        self.selectors = selectors or PortalSelectors()
        idp_host = (urlparse(portal.idp_url).netloc or "").lower()
        # login.microsoftonline.com and its regional variants all count as the IdP.
        self._idp_domain = ".".join(idp_host.split(".")[-2:])

    async def submit(self, handle: BrowserSessionHandle, creds: PortalCredentials) -> LoginOutcome:
        page = handle.page
        nav_ms = int(self.portal.navigation_timeout_seconds * 1000)

        try:
            await page.goto(self.portal.idp_url, wait_until="domcontentloaded", timeout=nav_ms)
        except PlaywrightError as e:
            raise ProviderUnreachableError(f"Unable to reach the Microsoft sign-in page ({e.message})") from e

        try:
            await page.wait_for_selector(self.selectors.email_input, state="visible", timeout=nav_ms)
            await self._fill(page, self.selectors.email_input, creds.email)
            await self._click_submit(page)
            await self._settle(page)
        except PlaywrightError as e:
            await handle.save_debug("login_email_step_failed")
            raise ProviderUnreachableError(f"Microsoft sign-in e-mail step did not complete ({e.message})") from e

        try:
            await page.wait_for_selector(self.selectors.password_input, state="visible", timeout=nav_ms)
        except PlaywrightError as e:
            # An unknown account never shows the password page.
            reason = await self.failure_reason(page)
            await handle.save_debug("login_password_not_visible")
            if reason:
                raise InvalidCredentialsError(reason) from e
            raise ProviderUnreachableError(f"Microsoft sign-in password page did not load ({e.message})") from e

        try:
            await self._fill(page, self.selectors.password_input, creds.password)
            await self._click_submit(page)
            await self._settle(page, timeout_ms=20_000)
        except PlaywrightError as e:
            raise ProviderUnreachableError(f"Microsoft sign-in password step did not complete ({e.message})") from e

        return await self._classify(handle)

    async def _classify(self, handle: BrowserSessionHandle) -> LoginOutcome:
        page = handle.page
        if is_portal_url(page.url, self.portal.url_markers):
            return LoginOutcome.AUTHENTICATED

        reason = await self.failure_reason(page)
        if reason:
            await handle.save_debug("login_rejected")
            raise InvalidCredentialsError(reason)

        if await first_visible(page, self.selectors.otp_input) is not None:
            return LoginOutcome.AWAITING_MFA
        text = (await body_text(page)).lower()
        if any(hint in text for hint in self.selectors.push_indicator_texts):
            return LoginOutcome.AWAITING_MFA

        # No challenge on screen: either already signed in (no MFA for this account) or still rendering.
        # Only treat it as signed in when we see a post-sign-in signal; otherwise keep polling as MFA.
        if self._looks_signed_in_url(page.url) or await first_visible(page, self.selectors.stay_signed_in_no):
            return LoginOutcome.AUTHENTICATED

        await handle.save_debug("login_after_submit_unclassified")
        return LoginOutcome.AWAITING_MFA

    async def probe_approval(self, page: Any) -> ApprovalProbe:
        """
        One non-blocking look at the MFA page: has the push been approved, denied, or neither yet?
        """
        if self._looks_signed_in_url(page.url):
            return ApprovalProbe.APPROVED

        text = (await body_text(page)).lower()
        if any(t in text for t in self.selectors.push_denied_texts):
            return ApprovalProbe.DENIED

        # "Stay signed in?" is only shown after the second factor succeeded.
        stay = await first_visible(page, self.selectors.stay_signed_in_no)
        if stay is not None:
            try:
                await stay.click()
            except PlaywrightError:
                logger.debug("Failed to dismiss 'Stay signed in?' prompt.", exc_info=True)
            return ApprovalProbe.APPROVED

        return ApprovalProbe.WAITING

    def _looks_signed_in_url(self, url: Optional[str]) -> bool:
        u = (url or "").lower()
        if is_portal_url(u, self.portal.url_markers):
            return True
        if any(m in u for m in self.portal.approved_url_markers):
            return True
        host = (urlparse(u).netloc or "").lower()
        # Redirected away from the identity provider entirely.
        return bool(host) and bool(self._idp_domain) and not host.endswith(self._idp_domain) and u.startswith("http")

    async def failure_reason(self, page: Any) -> Optional[str]:
        """
        Try to produce an actionable sign-in failure message from the IdP UI.

        Conservative: if no clear message is shown, return None and let the caller decide.
        """
        err = await first_visible(page, self.selectors.credential_error)
        if err is not None:
            try:
                msg = " ".join((await err.inner_text()).split())
            except PlaywrightError:
                msg = ""
            if msg:
                return f"Sign-in rejected: {msg}"

        text = (await body_text(page)).lower()
        if any(t in text for t in self.selectors.account_locked_texts):
            return "Sign-in rejected: the account is locked. Sign in manually in a browser to unlock it, then retry."
        if any(t in text for t in self.selectors.invalid_credential_texts):
            return "Sign-in rejected: the e-mail or password is incorrect."
        return None

    async def _fill(self, page: Any, selector: str, value: str) -> None:
        target = await first_visible(page, selector)
        if target is None:
            target = page.locator(selector).first
        await target.fill(value)

    async def _click_submit(self, page: Any) -> None:
        btn = await first_visible(page, self.selectors.submit_button)
        if btn is not None:
            await btn.click()
        else:
            await page.keyboard.press("Enter")

    async def _settle(self, page: Any, *, timeout_ms: int = 15_000) -> None:
        """
        Avoid waiting for `networkidle`; the sign-in pages keep telemetry requests running.
        """
        try:
            await page.wait_for_load_state("domcontentloaded", timeout=timeout_ms)
        except PlaywrightError:
            pass
        await page.wait_for_timeout(800)
