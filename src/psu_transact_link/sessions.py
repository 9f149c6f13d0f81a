from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from .config import SessionsConfig
from .errors import DuplicateSessionError, IllegalTransitionError, SessionNotFoundError
from .portal.browser import BrowserSessionHandle


logger = logging.getLogger(__name__)


class AuthState(str, Enum):
    AWAITING_CREDENTIALS = "awaiting_credentials"
    AWAITING_MFA = "awaiting_mfa"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({AuthState.APPROVED, AuthState.DENIED, AuthState.EXPIRED, AuthState.ERROR})

_ALLOWED_TRANSITIONS: dict[AuthState, frozenset[AuthState]] = {
    # No MFA step: credentials go straight to approved.
    AuthState.AWAITING_CREDENTIALS: frozenset({AuthState.AWAITING_MFA, AuthState.APPROVED, AuthState.ERROR}),
    AuthState.AWAITING_MFA: frozenset({AuthState.APPROVED, AuthState.DENIED, AuthState.EXPIRED, AuthState.ERROR}),
}


@dataclass(eq=False)
class AuthSession:
    """
    One linking attempt. Owns its browser handle until the session reaches a terminal state.
    """

    user_id: str
    handle: Optional[BrowserSessionHandle] = None
    # Portal e-mail, for display only. The password is never kept here.
    account_label: Optional[str] = None
    session_id: str = field(default_factory=lambda: secrets.token_urlsafe(24))
    state: AuthState = AuthState.AWAITING_CREDENTIALS
    number_match_code: Optional[str] = None
    created_at: float = 0.0
    terminal_at: Optional[float] = None
    owner: str = ""
    lease_expires_at: float = 0.0
    error_kind: Optional[str] = None
    message: Optional[str] = None
    released: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


class SessionRegistry:
    """
    Process-wide table of in-flight linking sessions.

    Sessions are not durable: a restart loses them and polls then get `requires_restart`. Each entry
    carries an owner token + lease expiry so "which process can drive this browser" is explicit; `get`
    refuses entries leased by another owner exactly like unknown ids.
    """

    def __init__(
        self,
        cfg: SessionsConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        owner: Optional[str] = None,
    ) -> None:
        self.cfg = cfg
        self._clock = clock
        self.owner = owner or secrets.token_hex(8)
        self._sessions: dict[str, AuthSession] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def now(self) -> float:
        return self._clock()

    def register(self, session: AuthSession) -> AuthSession:
        if session.session_id in self._sessions:
            raise DuplicateSessionError(f"Session {session.session_id!r} is already registered.")
        now = self._clock()
        session.created_at = now
        session.owner = self.owner
        session.lease_expires_at = now + self.cfg.mfa_ttl_seconds
        self._sessions[session.session_id] = session
        logger.debug("Registered auth session (user_id=%s state=%s)", session.user_id, session.state.value)
        return session

    def find(self, session_id: Optional[str]) -> Optional[AuthSession]:
        if not session_id:
            return None
        session = self._sessions.get(session_id)
        if session is None or session.owner != self.owner:
            return None
        return session

    def get(self, session_id: Optional[str]) -> AuthSession:
        session = self.find(session_id)
        if session is None:
            raise SessionNotFoundError()
        return session

    def is_expired(self, session: AuthSession, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        return not session.state.terminal and now >= session.lease_expires_at

    def transition(self, session_id: str, new_state: AuthState) -> AuthSession:
        session = self.get(session_id)
        current = session.state
        if current == new_state and current.terminal:
            return session
        if new_state not in _ALLOWED_TRANSITIONS.get(current, frozenset()):
            raise IllegalTransitionError(f"Illegal auth session transition {current.value} -> {new_state.value}")
        session.state = new_state
        if new_state.terminal:
            session.terminal_at = self._clock()
        logger.info("Auth session %s: %s -> %s", _short(session_id), current.value, new_state.value)
        return session

    async def release_handle(self, session: AuthSession) -> None:
        """Close the session's browser handle. Safe to call any number of times."""
        if session.released:
            return
        session.released = True
        handle, session.handle = session.handle, None
        if handle is not None:
            await handle.close()

    async def evict(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        async with session.lock:
            await self.evict_held(session)

    async def evict_held(self, session: AuthSession) -> None:
        """Evict a session whose lock the caller already holds."""
        try:
            await self.release_handle(session)
        finally:
            if self._sessions.get(session.session_id) is session:
                del self._sessions[session.session_id]
                logger.debug("Evicted auth session %s (state=%s)", _short(session.session_id), session.state.value)

    async def sweep(self, now: Optional[float] = None) -> int:
        """
        Evict sessions past the MFA TTL (moving them to `expired` first) and terminal tombstones past
        their retention window. Sessions busy with a poll are skipped until the next sweep.
        """
        now = self._clock() if now is None else now
        evicted = 0
        for session in list(self._sessions.values()):
            if session.lock.locked():
                continue
            async with session.lock:
                if self.is_expired(session, now):
                    self.transition(session.session_id, AuthState.EXPIRED)
                    await self.evict_held(session)
                    evicted += 1
                    continue
                if not session.state.terminal:
                    continue
                # Terminal sessions keep a tombstone so repeated polls see the same answer.
                await self.release_handle(session)
                terminal_at = session.terminal_at if session.terminal_at is not None else session.created_at
                if now - terminal_at >= self.cfg.terminal_retention_seconds:
                    await self.evict_held(session)
                    evicted += 1
        if evicted:
            logger.info("Session sweep evicted %d session(s); %d remain.", evicted, len(self._sessions))
        return evicted

    def start_sweeper(self) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever())

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.cfg.sweep_interval_seconds)
            try:
                await self.sweep()
            except Exception:
                logger.warning("Session sweep failed.", exc_info=True)

    async def stop(self) -> None:
        """Stop the sweeper and release every browser (shutdown)."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            try:
                await self.release_handle(session)
            except Exception:
                logger.debug("Failed to release browser for session %s.", _short(session.session_id), exc_info=True)


def _short(session_id: str) -> str:
    # Session ids are bearer-like; only log a prefix.
    return f"{session_id[:6]}…"
