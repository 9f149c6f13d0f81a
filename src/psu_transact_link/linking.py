from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from playwright.async_api import Error as PlaywrightError

from .errors import AlreadyLinkedError, LinkError, MfaDeniedError, PortalUnreachableError
from .logging_config import mask_email
from .models import LinkedAccountStatus
from .portal.browser import BrowserFactory, BrowserSessionHandle
from .portal.landing import PortalLandingResolver
from .portal.login import ApprovalProbe, CredentialSubmitter, LoginOutcome, PortalCredentials
from .portal.mfa import approval_instructions, read_number_match_code
from .sessions import AuthSession, AuthState, SessionRegistry
from .state import StateStore
from .util.dates import utcnow


logger = logging.getLogger(__name__)


@dataclass
class InitiateResult:
    linked: bool = False
    requires_mfa: bool = False
    session_id: Optional[str] = None
    number_match_code: Optional[str] = None
    message: str = ""
    status: Optional[LinkedAccountStatus] = None


@dataclass
class ApprovalResult:
    # waiting | approved | denied | error | requires_restart
    status: str
    message: str = ""
    number_match_code: Optional[str] = None
    linked_account: Optional[LinkedAccountStatus] = None
    # False when sign-in succeeded but the portal itself could not be reached yet.
    portal_reached: bool = True
    error_kind: Optional[str] = None

    @property
    def approved(self) -> bool:
        return self.status == "approved"

    @property
    def requires_restart(self) -> bool:
        return self.status == "requires_restart"

    @property
    def terminal(self) -> bool:
        return self.status != "waiting"

    @classmethod
    def restart(cls) -> "ApprovalResult":
        return cls(
            status="requires_restart",
            message="Authentication session not found or expired. Please restart the login process.",
            error_kind="requires_restart",
        )


class LinkService:
    """
    Credential submission + the approval polling protocol.

    `initiate` submits credentials once. When the account needs MFA the live browser is parked in the
    session registry and the client polls `check_approval` (one non-blocking probe per call) until a
    terminal answer. After approval the landing resolver moves the browser onto the portal and the
    portal storage state is saved for later syncs.
    """

    def __init__(
        self,
        *,
        store: StateStore,
        registry: SessionRegistry,
        browsers: BrowserFactory,
        submitter: CredentialSubmitter,
        landing: PortalLandingResolver,
        code_read_attempts: int = 3,
        code_read_delay_seconds: float = 1.0,
    ) -> None:
        self.store = store
        self.registry = registry
        self.browsers = browsers
        self.submitter = submitter
        self.landing = landing
        self.code_read_attempts = max(1, int(code_read_attempts))
        self.code_read_delay_seconds = code_read_delay_seconds

    def status(self, user_id: str) -> LinkedAccountStatus:
        return self.store.get_link_status(user_id)

    async def initiate(self, user_id: str, email: str, password: str) -> InitiateResult:
        if self.store.get_link_status(user_id).linked:
            raise AlreadyLinkedError("Penn State account is already linked. Unlink it first to link again.")

        logger.info("Starting Penn State link (user_id=%s email=%s)", user_id, mask_email(email))
        handle = await self.browsers.launch()
        session = self.registry.register(AuthSession(user_id=user_id, handle=handle, account_label=email))

        async with session.lock:
            try:
                outcome = await self.submitter.submit(handle, PortalCredentials(email=email, password=password))
            except BaseException as e:
                await self._fail_held(session, e)
                raise

            if outcome is LoginOutcome.AUTHENTICATED:
                # No MFA step: a direct terminal success, no session id goes back to the client.
                try:
                    status = await self._finish_link(session, handle)
                except BaseException as e:
                    await self._fail_held(session, e)
                    raise
                self.registry.transition(session.session_id, AuthState.APPROVED)
                await self.registry.evict_held(session)
                return InitiateResult(
                    linked=True,
                    status=status,
                    message="Penn State account linked successfully.",
                )

            self.registry.transition(session.session_id, AuthState.AWAITING_MFA)
            session.number_match_code = await self._read_code(handle)

        if session.number_match_code:
            logger.info("MFA number match shown to user (session=%s…)", session.session_id[:6])
        return InitiateResult(
            requires_mfa=True,
            session_id=session.session_id,
            number_match_code=session.number_match_code,
            message=approval_instructions(session.number_match_code),
        )

    async def check_approval(self, user_id: str, session_id: Optional[str]) -> ApprovalResult:
        session = self.registry.find(session_id)
        # Another user's session is indistinguishable from an unknown one.
        if session is None or session.user_id != user_id:
            return ApprovalResult.restart()

        async with session.lock:
            if self.registry.find(session.session_id) is not session:
                return ApprovalResult.restart()
            if session.state.terminal:
                return self._terminal_result(session)
            if self.registry.is_expired(session):
                self.registry.transition(session.session_id, AuthState.EXPIRED)
                await self.registry.evict_held(session)
                return ApprovalResult.restart()

            handle = session.handle
            if handle is None or handle.closed:
                await self._fail_held(session, PortalUnreachableError("The browser for this session is gone."))
                return ApprovalResult.restart()

            try:
                probe = await self.submitter.probe_approval(handle.page)
            except PlaywrightError:
                logger.debug("Approval probe failed; reporting waiting.", exc_info=True)
                probe = ApprovalProbe.WAITING

            if probe is ApprovalProbe.WAITING:
                return ApprovalResult(
                    status="waiting",
                    message="Still waiting for push notification approval.",
                    number_match_code=session.number_match_code,
                )

            if probe is ApprovalProbe.DENIED:
                self.registry.transition(session.session_id, AuthState.DENIED)
                denied = MfaDeniedError("The sign-in request was denied. Please restart the login process.")
                session.error_kind, session.message = denied.kind, denied.message
                await self.registry.release_handle(session)
                logger.info("MFA push denied (user_id=%s)", user_id)
                return self._terminal_result(session)

            try:
                await self._finish_link(session, handle)
            except Exception as e:
                logger.warning("Finishing Penn State link failed (user_id=%s).", user_id, exc_info=True)
                self.registry.transition(session.session_id, AuthState.ERROR)
                if isinstance(e, LinkError):
                    session.error_kind, session.message = e.kind, e.message
                else:
                    session.error_kind = "internal_error"
                    session.message = f"Linking failed after approval ({type(e).__name__})."
            else:
                self.registry.transition(session.session_id, AuthState.APPROVED)

            await self.registry.release_handle(session)
            return self._terminal_result(session)

    async def cancel(self, user_id: str, session_id: Optional[str]) -> bool:
        session = self.registry.find(session_id)
        if session is None or session.user_id != user_id:
            return False
        await self.registry.evict(session.session_id)
        logger.info("Auth session cancelled by client (user_id=%s)", user_id)
        return True

    def unlink(self, user_id: str) -> int:
        """
        Forget the portal link: stored browser session, synced transactions and the link row.
        Returns the number of transactions deleted.
        """
        self.browsers.delete_storage_state(user_id)
        deleted = self.store.delete_transactions_for_user(user_id)
        self.store.mark_unlinked(user_id)
        logger.info("Unlinked Penn State account (user_id=%s deleted_transactions=%d)", user_id, deleted)
        return deleted

    async def _read_code(self, handle: BrowserSessionHandle) -> Optional[str]:
        # The number-match screen can render a moment after the password page submits.
        for attempt in range(self.code_read_attempts):
            code = await read_number_match_code(handle.page)
            if code:
                return code
            if attempt + 1 < self.code_read_attempts:
                await asyncio.sleep(self.code_read_delay_seconds)
        await handle.save_debug("mfa_no_number_match")
        return None

    async def _finish_link(self, session: AuthSession, handle: BrowserSessionHandle) -> LinkedAccountStatus:
        """
        Land on the portal and persist its cookies. If the portal cannot be reached, the IdP cookies are
        still saved and the account is linked; the next sync retries the portal.
        """
        portal_error: Optional[PortalUnreachableError] = None
        try:
            await self.landing.resolve(handle)
        except PortalUnreachableError as e:
            portal_error = e
            logger.warning("Approved, but portal landing failed (user_id=%s): %s", session.user_id, e.message)

        await handle.save_storage_state(self.browsers.storage_state_path(session.user_id))
        self.store.mark_linked(session.user_id, account_label=session.account_label, linked_at=utcnow())
        logger.info("Penn State account linked (user_id=%s)", session.user_id)

        if portal_error is not None:
            session.error_kind = portal_error.kind
            session.message = (
                "Sign-in approved and account linked, but the Transact portal did not load. "
                "The next sync will retry."
            )
        return self.store.get_link_status(session.user_id)

    async def _fail_held(self, session: AuthSession, exc: BaseException) -> None:
        if not session.state.terminal and self.registry.find(session.session_id) is session:
            self.registry.transition(session.session_id, AuthState.ERROR)
        if isinstance(exc, LinkError):
            session.error_kind = exc.kind
            session.message = exc.message
        await self.registry.evict_held(session)

    def _terminal_result(self, session: AuthSession) -> ApprovalResult:
        if session.state is AuthState.APPROVED:
            portal_reached = session.error_kind != PortalUnreachableError.kind
            return ApprovalResult(
                status="approved",
                message=session.message or "Push notification approved. Penn State account linked.",
                linked_account=self.store.get_link_status(session.user_id),
                portal_reached=portal_reached,
                error_kind=None if portal_reached else session.error_kind,
            )
        if session.state is AuthState.DENIED:
            return ApprovalResult(
                status="denied",
                message=session.message or MfaDeniedError().message,
                error_kind=MfaDeniedError.kind,
            )
        if session.state is AuthState.EXPIRED:
            return ApprovalResult.restart()
        return ApprovalResult(
            status="error",
            message=session.message or "Linking failed.",
            error_kind=session.error_kind or "internal_error",
        )
