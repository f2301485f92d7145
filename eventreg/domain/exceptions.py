"""
Domain exceptions - Semantic error types for registration.

This module defines domain-specific exceptions that communicate
business rule violations without leaking infrastructure details.
The same taxonomy is raised by the server-side service and, after
translation by the HTTP gateway, by the client-side coordinator.
"""


class RegistrationError(Exception):
    """Base class for registration domain errors."""

    pass


class FormValidationError(RegistrationError):
    """
    Client-local validation failure, raised before any network call.

    Collects every failure instead of stopping at the first one.
    """

    def __init__(self, missing: list[str] | None = None, invalid: list[str] | None = None) -> None:
        self.missing = list(missing or [])
        self.invalid = list(invalid or [])
        super().__init__(self._describe())

    def _describe(self) -> str:
        parts = []
        if self.missing:
            parts.append("missing: " + ", ".join(self.missing))
        if self.invalid:
            parts.append("invalid: " + ", ".join(self.invalid))
        return "; ".join(parts) or "invalid form"


class InvalidEmail(RegistrationError):
    """Email address is malformed."""

    pass


class RateLimited(RegistrationError):
    """Too many verification codes requested for this email."""

    pass


class VerificationFailed(RegistrationError):
    """Verification step failed; recoverable by resend or re-entry."""

    pass


class InvalidCode(VerificationFailed):
    """Code mismatch. Does not extend the code's expiry."""

    pass


class SessionExpired(VerificationFailed):
    """Code or verified session is expired, locked, consumed or missing."""

    pass


class QualificationDenied(RegistrationError):
    """Verified identity is not on the qualifier list (terminal per identity)."""

    pass


class TokenInvalid(RegistrationError):
    """Long-lived attendee token or one-time redirect token was rejected."""

    pass


class VerificationRequired(RegistrationError):
    """Server refused a submission because the email is not verified."""

    pass


class NetworkFailure(RegistrationError):
    """Generic transport or server failure. Input must be preserved."""

    pass


class FieldLocked(RegistrationError):
    """Attempt to edit a field supplied by the verified identity."""

    pass


class EventNotFound(RegistrationError):
    """Event id or slug does not resolve."""

    pass


class RegistrationClosed(RegistrationError):
    """Event is not published."""

    pass


class RegistrationNotFound(RegistrationError):
    """Registration id does not exist or belongs to another event."""

    pass


class IdentityMismatch(RegistrationError):
    """Authenticated identity does not own the targeted registration."""

    pass


class InvalidTransition(RegistrationError):
    """Action is not available in the current flow step."""

    pass
