"""
Port interfaces - Protocol definitions for infrastructure abstraction.

This module defines the interfaces (ports) that the domain requires
from infrastructure. Adapters implement these protocols.

Client-side ports (used by the registration coordinator):
- RegistrationGateway: the registration REST API
- SessionStore: durable browser-session state
- Notifier: user-visible toasts

Server-side ports (used by RegistrationService):
- RegistrationRepository: persistence
- EmailSender: out-of-band code delivery
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from .models import (
        CodeRequest,
        EventConfig,
        ExistingRegistrationRecord,
        OtpValidation,
        Qualifier,
        RegistrationRecord,
        SessionStatus,
        VerifiedProfile,
        VerifiedSession,
    )


class RegistrationMode(str, Enum):
    """
    Per-event registration mode.

    - QUALIFIED_VERIFIED: OTP verification and qualifier list required
    - OPEN_VERIFIED: OTP verification required, anyone may register
    - OPEN_ANONYMOUS: no verification, multiple attendees per submission
    """

    QUALIFIED_VERIFIED = "qualified_verified"
    OPEN_VERIFIED = "open_verified"
    OPEN_ANONYMOUS = "open_anonymous"


class FlowStep(str, Enum):
    """
    Client-observable verification states.

    Transitions:
    - EMAIL_ENTRY -> OTP_ENTRY (request code)
    - OTP_ENTRY -> OTP_ENTRY (resend, old code invalidated)
    - OTP_ENTRY -> EMAIL_ENTRY (change email)
    - OTP_ENTRY -> FORM | NOT_QUALIFIED (validate)
    - FORM -> EMAIL_ENTRY (logout, session expired)
    - NOT_QUALIFIED -> EMAIL_ENTRY (new email only)
    """

    EMAIL_ENTRY = "email_entry"
    OTP_ENTRY = "otp_entry"
    FORM = "form"
    NOT_QUALIFIED = "not_qualified"


class OtpState(str, Enum):
    """
    Server-side OTP session states (forward-only).

    - PENDING -> VERIFIED (correct code within TTL)
    - PENDING -> EXPIRED (TTL exceeded)
    - PENDING -> LOCKED (max failed attempts)

    A newly requested code replaces the row and starts again at PENDING.
    """

    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    EXPIRED = "EXPIRED"
    LOCKED = "LOCKED"


class VerifyResult(Enum):
    """
    Result of a server-side code check.

    Used by RegistrationRepository.verify_code() to indicate success or
    specific failure.
    """

    SUCCESS = "success"
    INVALID_CODE = "invalid_code"
    EXPIRED = "expired"
    LOCKED = "locked"
    NOT_FOUND = "not_found"


class RegistrationGateway(Protocol):
    """Port interface for the registration REST API (client side)."""

    async def request_code(
        self, email: str, event_id: str, distributor_id: str | None = None
    ) -> CodeRequest:
        """POST /register/otp/generate. Raises RateLimited, InvalidEmail."""
        ...

    async def validate_code(self, email: str, code: str, event_id: str) -> OtpValidation:
        """POST /register/otp/validate. Raises InvalidCode, SessionExpired."""
        ...

    async def session_status(self, email: str, event_id: str) -> SessionStatus:
        """GET /register/session-status."""
        ...

    async def consume_redirect_token(
        self, token: str, email: str, event_id: str
    ) -> VerifiedProfile:
        """POST /register/otp/session/consume. Raises TokenInvalid."""
        ...

    async def find_existing(
        self, email: str, event_id: str
    ) -> ExistingRegistrationRecord | None:
        """POST /register/existing. A 403 raises SessionExpired."""
        ...

    async def find_existing_with_token(
        self, event_id: str, attendee_token: str
    ) -> ExistingRegistrationRecord | None:
        """GET /attendee/registration/:eventId. A 401/403 raises TokenInvalid."""
        ...

    async def create_registration(
        self, event_id: str, payload: dict[str, Any], attendee_token: str | None = None
    ) -> dict[str, Any]:
        """POST /events/:eventId/register. Raises VerificationRequired."""
        ...

    async def update_registration(
        self,
        event_id: str,
        registration_id: str,
        payload: dict[str, Any],
        attendee_token: str | None = None,
    ) -> dict[str, Any]:
        """PUT /events/:eventId/register/:registrationId."""
        ...

    async def request_attendee_code(self, email: str) -> CodeRequest:
        """POST /attendee/otp/generate."""
        ...

    async def validate_attendee_code(self, email: str, code: str) -> str:
        """POST /attendee/otp/validate. Returns the attendee token."""
        ...

    async def logout_attendee(self, attendee_token: str) -> None:
        """POST /attendee/logout."""
        ...


class SessionStore(Protocol):
    """
    Port interface for durable client state.

    The verified email is session-scoped (survives reloads, not the end of
    the browser session). Attendee credentials are long-lived.
    """

    def get_verified_email(self, event_id: str) -> str | None: ...

    def set_verified_email(self, event_id: str, email: str) -> None: ...

    def clear_verified_email(self, event_id: str) -> None: ...

    def get_attendee_credentials(self) -> tuple[str, str] | None:
        """Return (attendee_token, attendee_email) if stored."""
        ...

    def set_attendee_credentials(self, token: str, email: str) -> None: ...

    def clear_attendee_credentials(self) -> None: ...


class Notifier(Protocol):
    """Port interface for user-visible notifications (toasts)."""

    def notify(self, title: str, message: str = "", level: str = "info") -> None: ...


class RegistrationRepository(Protocol):
    """Port interface for registration persistence (server side)."""

    def get_event(self, event_id: str) -> EventConfig | None:
        """Resolve an event by id or slug."""
        ...

    def save_event(self, event: EventConfig) -> None: ...

    def add_qualifier(self, qualifier: Qualifier) -> None: ...

    def get_qualifier(self, event_id: str, email: str) -> Qualifier | None: ...

    def count_codes_since(self, email: str, since: datetime) -> int:
        """Number of codes issued to email at or after since (rate limiting)."""
        ...

    def store_pending_code(
        self, email: str, scope: str, code_hash: str, now: datetime, expires_at: datetime
    ) -> None:
        """
        Replace any session for (email, scope) with a new PENDING one.

        Last-write-wins: an earlier code for the same pair stops validating.
        """
        ...

    def verify_code(
        self, email: str, scope: str, code: str, now: datetime, max_attempts: int
    ) -> VerifyResult:
        """
        Atomically check a code and transition the session.

        Return values by scenario:
        - SUCCESS: PENDING, unexpired, code matches -> VERIFIED
        - NOT_FOUND: no session, or session not PENDING
        - EXPIRED: TTL exceeded -> EXPIRED (checked before the code)
        - LOCKED: attempts exhausted -> LOCKED
        - INVALID_CODE: mismatch, attempt counted, expiry unchanged
        """
        ...

    def save_verified_profile(
        self,
        email: str,
        scope: str,
        profile: dict[str, Any],
        redirect_token: str,
        redirect_expires_at: datetime,
    ) -> None: ...

    def get_verified_session(self, email: str, scope: str) -> VerifiedSession | None: ...

    def consume_redirect_token(
        self, token: str, email: str, now: datetime
    ) -> VerifiedSession | None:
        """Atomically mark a redirect token consumed; None if unusable."""
        ...

    def find_registration(self, event_id: str, email: str) -> RegistrationRecord | None:
        """Non-anonymous registration for (event, normalized email)."""
        ...

    def get_registration(self, registration_id: str) -> RegistrationRecord | None: ...

    def upsert_registration(
        self, record: RegistrationRecord, now: datetime
    ) -> tuple[RegistrationRecord, bool]:
        """Insert or merge on (event_id, email). Returns (record, created)."""
        ...

    def create_registrations(
        self, records: list[RegistrationRecord], now: datetime
    ) -> list[RegistrationRecord]:
        """Insert all records atomically (anonymous batch)."""
        ...

    def update_registration(
        self,
        registration_id: str,
        fields: dict[str, Any],
        form_data: dict[str, Any] | None,
        now: datetime,
    ) -> RegistrationRecord | None: ...

    def create_attendee_session(self, token: str, email: str, expires_at: datetime) -> None: ...

    def get_attendee_email(self, token: str, now: datetime) -> str | None: ...

    def delete_attendee_session(self, token: str) -> None: ...


class EmailSender(Protocol):
    """Port interface for email delivery."""

    def send_verification_code(self, email: str, code: str, expires_in_minutes: int) -> None:
        """
        Send verification code to email address.

        Args:
            email: Recipient email address
            code: 6-digit verification code
            expires_in_minutes: Validity window shown to the recipient
        """
        ...
