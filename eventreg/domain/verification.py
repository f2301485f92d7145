"""
OTP verification - request/validate cycle and the client verification flow.

OtpVerificationService owns the single outstanding code request and is the
only component that records a successful verification in the session store.

VerificationFlow is the client state machine. It has two entry points that
share the same request/validate primitives:

- verify_then_show_form(): EMAIL_ENTRY -> OTP_ENTRY -> FORM | NOT_QUALIFIED
- verify_during_submit(): the form was shown first; a validated payload is
  held while an OTP overlay is open and handed back, unmodified, once the
  correct code is entered
"""

import asyncio
import copy
from dataclasses import dataclass
from typing import Any

from .exceptions import (
    InvalidCode,
    InvalidEmail,
    InvalidTransition,
    QualificationDenied,
    RegistrationError,
    SessionExpired,
)
from .mode import ResolvedMode
from .models import (
    CodeRequest,
    IdentityKey,
    OtpValidation,
    QualificationResult,
    VerifiedProfile,
    normalize_email,
)
from .ports import FlowStep, RegistrationGateway, SessionStore
from .qualification import QualificationGate
from .schema import EMAIL_PATTERN

NO_PENDING_CODE = "No pending verification. Please request a new code."
SUPERSEDED_CODE = "A newer code was requested. Please enter the latest code."


@dataclass(frozen=True)
class PendingCode:
    """The client's view of the single outstanding verification session."""

    email: str
    event_id: str
    distributor_id: str | None
    generation: int


class OtpVerificationService:
    """
    Client side of the OTP cycle.

    Requests are last-write-wins: the newest request replaces the pending
    code immediately, and validation always targets the newest request.
    Validations are serialized so two attempts never race.
    """

    def __init__(self, gateway: RegistrationGateway, store: SessionStore) -> None:
        self._gateway = gateway
        self._store = store
        self._pending: PendingCode | None = None
        self._generation = 0
        self._validate_lock = asyncio.Lock()

    @property
    def pending(self) -> PendingCode | None:
        return self._pending

    async def request_code(
        self, email: str, event_id: str, distributor_id: str | None = None
    ) -> CodeRequest:
        normalized = normalize_email(email)
        if not EMAIL_PATTERN.match(normalized):
            raise InvalidEmail(normalized)

        self._generation += 1
        pending = PendingCode(normalized, event_id, distributor_id or None, self._generation)
        self._pending = pending
        try:
            return await self._gateway.request_code(normalized, event_id, distributor_id or None)
        except RegistrationError:
            if self._pending is pending:
                self._pending = None
            raise

    async def validate_code(self, email: str, code: str, event_id: str) -> OtpValidation:
        async with self._validate_lock:
            pending = self._pending
            if (
                pending is None
                or pending.email != normalize_email(email)
                or pending.event_id != event_id
            ):
                raise SessionExpired(NO_PENDING_CODE)

            try:
                result = await self._gateway.validate_code(pending.email, code.strip(), event_id)
            except SessionExpired:
                if self._pending is pending:
                    self._pending = None
                raise

            if self._pending is not pending:
                raise SessionExpired(SUPERSEDED_CODE)
            if not result.verified:
                raise InvalidCode("Invalid verification code")

            self._pending = None
            return result

    async def consume_redirect_token(
        self, token: str, email: str, event_id: str
    ) -> VerifiedProfile:
        return await self._gateway.consume_redirect_token(token, normalize_email(email), event_id)

    def commit(self, event_id: str, email: str) -> None:
        """Record a verified (and eligible) email for this event."""
        self._store.set_verified_email(event_id, normalize_email(email))

    def abandon(self) -> None:
        """Forget the outstanding code; a new one must be requested."""
        self._pending = None


class VerificationFlow:
    """Client verification state machine for one event page."""

    def __init__(
        self,
        event_id: str,
        mode: ResolvedMode,
        otp: OtpVerificationService,
        gate: QualificationGate | None = None,
    ) -> None:
        self.event_id = event_id
        self.mode = mode
        self.otp = otp
        self.gate = gate or QualificationGate()
        self.step = FlowStep.EMAIL_ENTRY
        self.email: str | None = None
        self.distributor_id: str | None = None
        self.dev_code: str | None = None
        self.notice: str | None = None
        self.profile: VerifiedProfile | None = None
        self.verified_email: str | None = None
        self.qualification: QualificationResult | None = None
        self.overlay_open = False
        self._overlay_email: str | None = None
        self._held_payload: dict[str, Any] | None = None

    @property
    def is_verified(self) -> bool:
        return self.verified_email is not None

    @property
    def identity(self) -> IdentityKey | None:
        if self.verified_email is None:
            return None
        return IdentityKey.of(self.verified_email, self.event_id)

    @property
    def held_payload(self) -> dict[str, Any] | None:
        return copy.deepcopy(self._held_payload)

    # Upfront verification

    async def verify_then_show_form(self, email: str, distributor_id: str | None = None) -> FlowStep:
        if self.step is FlowStep.NOT_QUALIFIED:
            raise InvalidTransition("Enter a different email to continue.")
        if self.step is FlowStep.FORM and self.is_verified:
            raise InvalidTransition("Already verified.")

        result = await self.otp.request_code(email, self.event_id, distributor_id)
        self.email = normalize_email(email)
        self.distributor_id = distributor_id or None
        self.dev_code = result.dev_code
        self.notice = None
        self.step = FlowStep.OTP_ENTRY
        return self.step

    async def resend(self) -> FlowStep:
        if self.step is not FlowStep.OTP_ENTRY or self.email is None:
            raise InvalidTransition("No code to resend.")
        result = await self.otp.request_code(self.email, self.event_id, self.distributor_id)
        self.dev_code = result.dev_code
        return self.step

    def change_email(self) -> FlowStep:
        if self.step not in (FlowStep.OTP_ENTRY, FlowStep.NOT_QUALIFIED, FlowStep.EMAIL_ENTRY):
            raise InvalidTransition("Log out to change the verified email.")
        self.otp.abandon()
        self.email = None
        self.distributor_id = None
        self.dev_code = None
        self.qualification = None
        self.step = FlowStep.EMAIL_ENTRY
        return self.step

    async def confirm_code(self, code: str) -> FlowStep:
        if self.step is not FlowStep.OTP_ENTRY or self.email is None:
            raise InvalidTransition("No code was requested.")
        try:
            validation = await self.otp.validate_code(self.email, code, self.event_id)
        except SessionExpired as exc:
            self.notice = str(exc)
            raise

        qualification = self.gate.check(self.mode, validation)
        self.qualification = qualification
        if not qualification.is_qualified:
            self.step = FlowStep.NOT_QUALIFIED
            return self.step

        self.establish(validation.profile or VerifiedProfile(unicity_id="", email=self.email))
        return self.step

    # Deferred verification at submit time

    async def verify_during_submit(self, email: str, payload: dict[str, Any]) -> None:
        """Hold payload and silently send a code to email; opens the overlay."""
        self._close_overlay()
        await self.otp.request_code(email, self.event_id)
        self._overlay_email = normalize_email(email)
        self._held_payload = copy.deepcopy(payload)
        self.overlay_open = True

    async def resend_overlay_code(self) -> None:
        if not self.overlay_open or self._overlay_email is None:
            raise InvalidTransition("No verification in progress.")
        await self.otp.request_code(self._overlay_email, self.event_id)

    async def confirm_overlay_code(self, code: str) -> dict[str, Any]:
        """
        Validate the overlay code and release the held payload.

        A wrong code keeps the overlay open. An ineligible identity closes
        it, discards the payload and raises QualificationDenied.
        """
        if not self.overlay_open or self._overlay_email is None:
            raise InvalidTransition("No verification in progress.")
        try:
            validation = await self.otp.validate_code(self._overlay_email, code, self.event_id)
        except SessionExpired:
            self.cancel_overlay()
            raise

        qualification = self.gate.check(self.mode, validation)
        self.qualification = qualification
        if not qualification.is_qualified:
            self._close_overlay()
            self.step = FlowStep.NOT_QUALIFIED
            raise QualificationDenied(qualification.message)

        email = self._overlay_email
        payload = self._held_payload or {}
        self._close_overlay()
        self.establish(validation.profile or VerifiedProfile(unicity_id="", email=email))
        return payload

    def cancel_overlay(self) -> None:
        self._close_overlay()
        self.otp.abandon()

    def _close_overlay(self) -> None:
        self.overlay_open = False
        self._overlay_email = None
        self._held_payload = None

    # Identity transitions

    def establish(self, profile: VerifiedProfile) -> None:
        """Adopt a verified profile and persist the verification."""
        self.profile = profile
        self.verified_email = normalize_email(profile.email)
        self.email = self.verified_email
        self.notice = None
        self.step = FlowStep.FORM
        self.otp.commit(self.event_id, self.verified_email)

    def restore(self, email: str) -> None:
        """Adopt an identity the server just re-validated (no new OTP)."""
        self.profile = None
        self.verified_email = normalize_email(email)
        self.email = self.verified_email
        self.notice = None
        self.step = FlowStep.FORM

    def deny(self, message: str) -> None:
        self.qualification = QualificationResult(is_qualified=False, message=message)
        self.step = FlowStep.NOT_QUALIFIED

    def show_form(self) -> None:
        """Form without verification (anonymous, deferred or invitation)."""
        self.step = FlowStep.FORM

    def reset(self, notice: str | None = None) -> None:
        """Return to the earliest safe state, dropping all identity."""
        self.cancel_overlay()
        self.profile = None
        self.verified_email = None
        self.email = None
        self.distributor_id = None
        self.dev_code = None
        self.qualification = None
        self.notice = notice
        self.step = FlowStep.EMAIL_ENTRY
