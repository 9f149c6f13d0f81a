"""
Error taxonomy for the linking + sync flow.

Every error carries a stable `kind` so HTTP/CLI callers can choose their own message instead of parsing
free text. Duplicate transactions are not errors; they are counted by the sync coordinator.
"""

from __future__ import annotations


class LinkError(RuntimeError):
    kind: str = "internal_error"
    http_status: int = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__doc__ or self.kind)

    @property
    def message(self) -> str:
        return str(self)


class InvalidCredentialsError(LinkError):
    """The identity provider rejected the e-mail or password."""

    kind = "invalid_credentials"
    http_status = 401


class ProviderUnreachableError(LinkError):
    """The identity provider could not be reached or did not respond in time."""

    kind = "provider_unreachable"
    http_status = 503


class MfaDeniedError(LinkError):
    """The sign-in request was denied on the user's device."""

    kind = "mfa_denied"
    http_status = 401


class SessionNotFoundError(LinkError):
    """Authentication session not found or expired. Please restart the login process."""

    kind = "requires_restart"
    http_status = 404


class DuplicateSessionError(LinkError):
    """An authentication session with this id is already registered."""

    kind = "duplicate_session"


class IllegalTransitionError(LinkError):
    """Programming error: the requested session state transition is not allowed."""

    kind = "illegal_transition"


class PortalUnreachableError(LinkError):
    """Signed in, but the Transact portal could not be reached."""

    kind = "portal_unreachable"
    http_status = 502


class NotAuthenticatedError(LinkError):
    """The browser session is not authenticated for the Transact portal. Re-link the account."""

    kind = "not_authenticated"
    http_status = 401


class ExtractionFailedError(LinkError):
    """The transaction grid never rendered (after one retry)."""

    kind = "extraction_failed"
    http_status = 502


class AlreadyLinkedError(LinkError):
    """A Penn State account is already linked. Please unlink it first."""

    kind = "already_linked"
    http_status = 409


class NotLinkedError(LinkError):
    """Penn State account not linked. Please link your account first."""

    kind = "not_linked"
    http_status = 400


def http_status_for_kind(kind: str) -> int:
    """HTTP status for an error kind reported as data (e.g. a failed sync result)."""
    for cls in _all_error_classes(LinkError):
        if cls.kind == kind:
            return cls.http_status
    return LinkError.http_status


def _all_error_classes(base: type) -> list[type]:
    out = [base]
    for sub in base.__subclasses__():
        out.extend(_all_error_classes(sub))
    return out
