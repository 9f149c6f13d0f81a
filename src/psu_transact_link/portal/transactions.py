from __future__ import annotations

import hashlib
import json
import logging
import re
from datetime import datetime
from typing import Any, Optional

from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError

from ..config import PortalConfig
from ..errors import ExtractionFailedError, NotAuthenticatedError
from ..models import RawTransactionRow, TransactionRecord
from ..util.dates import format_portal_date, parse_portal_date
from ..util.money import parse_amount
from .browser import BrowserSessionHandle, is_portal_url
from .login import first_visible
from .selectors import PortalSelectors


logger = logging.getLogger(__name__)

# date, account, card, location, type, amount
LEDGER_COLUMNS = 6


def _cell_text(td: Any) -> str:
    return " ".join(td.get_text(" ", strip=True).split())


def card_suffix(card_text: str) -> str:
    """Reduce whatever the portal shows in the card column to its last 4 digits."""
    digits = re.sub(r"\D", "", card_text or "")
    return digits[-4:]


def parse_transaction_table(html: str, *, selectors: Optional[PortalSelectors] = None) -> list[RawTransactionRow]:
    """
    Parse the ledger grid (a full page or just the grid's outerHTML) into raw rows.

    Rows with fewer than six cells (header/pager/"No records to display") are skipped. Cells that cannot be
    interpreted are kept as text and listed in `unparsed_fields`.
    """
    sel = selectors or PortalSelectors()
    soup = BeautifulSoup(html or "", "html.parser")
    grid = soup.select_one(sel.ledger_grid) or soup

    out: list[RawTransactionRow] = []
    for tr in grid.select("tbody > tr"):
        tds = tr.find_all("td", recursive=False)
        if len(tds) < LEDGER_COLUMNS:
            continue
        date_text, account, card, location, tx_type, amount_text = (_cell_text(td) for td in tds[:LEDGER_COLUMNS])

        unparsed: list[str] = []
        parsed_date = parse_portal_date(date_text)
        if parsed_date is None:
            unparsed.append("date")
        amount = parse_amount(amount_text)
        if not amount.ok:
            unparsed.append("amount")

        out.append(
            RawTransactionRow(
                date_text=date_text,
                parsed_date=parsed_date,
                account_label=account,
                card_suffix=card_suffix(card),
                location=location,
                transaction_type=tx_type,
                amount_text=amount_text,
                amount=amount.amount,
                currency=amount.currency,
                unparsed_fields=unparsed,
            )
        )
    return out


def row_to_record(row: RawTransactionRow, *, user_id: str, placeholder_date: datetime) -> TransactionRecord:
    """
    Convert a scraped row into the persisted shape. A row whose date could not be parsed is kept with
    `placeholder_date` and flagged for review; financial rows are never dropped silently. Such rows are
    deduplicated on a hash of their scraped text instead of the placeholder.
    """
    review_key = None
    if row.parsed_date is None:
        raw = json.dumps(row.payload(), sort_keys=True)
        review_key = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]
    return TransactionRecord(
        user_id=user_id,
        transaction_date=row.parsed_date or placeholder_date,
        location=row.location.strip(),
        description=row.transaction_type.strip() or None,
        amount=row.amount,
        account_type=row.account_label.strip() or None,
        card_suffix=row.card_suffix or None,
        source_payload=row.payload(),
        needs_review=row.needs_review or review_key is not None,
        review_key=review_key,
    )


class TransactionExtractor:
    """
    Reads the Transact ledger (AccountTransaction.aspx) for a date window.

    The grid occasionally fails to render on first load, so the navigate + filter sequence is retried once
    with a shorter wait before giving up.
    """

    def __init__(self, portal: PortalConfig, selectors: Optional[PortalSelectors] = None) -> None:
        self.portal = portal
        self.selectors = selectors or PortalSelectors()

    async def fetch(self, handle: BrowserSessionHandle, start: datetime, end: datetime) -> list[RawTransactionRow]:
        page = handle.page
        await self.ensure_on_portal(handle)

        waits = (self.portal.grid_first_wait_seconds, self.portal.grid_retry_wait_seconds)
        last_exc: Optional[Exception] = None
        for attempt, wait_s in enumerate(waits, start=1):
            try:
                await self._open_ledger(page, start, end)
                await page.wait_for_selector(self.selectors.ledger_rows, state="attached", timeout=int(wait_s * 1000))
                html = await page.eval_on_selector(self.selectors.ledger_grid, "el => el.outerHTML")
            except PlaywrightError as e:
                last_exc = e
                logger.warning("Ledger grid did not render (attempt %d/%d): %s", attempt, len(waits), e.message)
                await handle.save_debug(f"ledger_grid_attempt_{attempt}")
                continue

            rows = parse_transaction_table(html, selectors=self.selectors)
            flagged = sum(1 for r in rows if r.needs_review)
            logger.info(
                "Extracted %d ledger rows (%s..%s, flagged=%d)",
                len(rows),
                format_portal_date(start),
                format_portal_date(end),
                flagged,
            )
            return rows

        raise ExtractionFailedError(f"Transaction grid not found after retry ({last_exc})")

    async def ensure_on_portal(self, handle: BrowserSessionHandle) -> None:
        page = handle.page
        if is_portal_url(page.url, self.portal.url_markers):
            return
        nav_ms = int(self.portal.navigation_timeout_seconds * 1000)
        try:
            await page.goto(self.portal.summary_url, wait_until="domcontentloaded", timeout=nav_ms)
        except PlaywrightError:
            logger.debug("Navigation to account summary failed.", exc_info=True)
        if not is_portal_url(page.url, self.portal.url_markers):
            await handle.save_debug("portal_not_authenticated")
            raise NotAuthenticatedError(
                "The stored portal session is no longer valid (redirected to sign-in). Link the account again."
            )

    async def _open_ledger(self, page: Any, start: datetime, end: datetime) -> None:
        nav_ms = int(self.portal.navigation_timeout_seconds * 1000)
        try:
            await page.goto(self.portal.ledger_url, wait_until="domcontentloaded", timeout=nav_ms)
        except PlaywrightError:
            # The ledger sometimes finishes loading despite a navigation error.
            logger.debug("Ledger navigation reported an error; continuing.", exc_info=True)

        if not is_portal_url(page.url, self.portal.url_markers):
            raise NotAuthenticatedError("Redirected away from the portal while opening the ledger.")

        try:
            await page.wait_for_selector(
                f"{self.selectors.ledger_ready}, {self.selectors.ledger_grid}", state="attached", timeout=nav_ms
            )
        except PlaywrightError:
            logger.debug("Ledger form not detected; trying the filter anyway.", exc_info=True)

        await self._apply_date_filter(page, start, end)

    async def _apply_date_filter(self, page: Any, start: datetime, end: datetime) -> None:
        for selector, value in (
            (self.selectors.start_date_input, format_portal_date(start)),
            (self.selectors.end_date_input, format_portal_date(end)),
        ):
            await page.wait_for_selector(selector, state="visible", timeout=15_000)
            field = await first_visible(page, selector) or page.locator(selector).first
            # Telerik date inputs only pick up typed keystrokes; fill() bypasses their client-side parser.
            await field.click()
            await field.press("Control+A")
            await field.press_sequentially(value, delay=50)

        submit = await first_visible(page, self.selectors.filter_submit)
        if submit is not None:
            await submit.click()
        else:
            await page.keyboard.press("Enter")

        try:
            await page.wait_for_load_state("domcontentloaded", timeout=30_000)
        except PlaywrightError:
            pass
        await page.wait_for_timeout(1000)
