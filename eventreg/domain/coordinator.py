"""
Submission coordinator - Top-level orchestration of one registration page.

The coordinator owns every piece of per-person state (form values, locked
identity fields, existing registration id, attendee token) and keeps it
scoped to the current IdentityKey:

    load() -> [EMAIL_ENTRY -> OTP_ENTRY ->] FORM -> submit()

Identity changes are detected in one place, ``_sync_identity()``, which runs
after every flow transition. Leaving an identity (logout, expiry, switching
email) clears all state loaded under it before anything for the new
identity is shown.

Submission branches by mode:
- open_anonymous: one batch request carrying every attendee
- verified and verification complete: update when an existing id is known,
  otherwise create (the server upserts on email + event)
- open_verified before verification: hold the payload, send a code, and
  resubmit the held payload unmodified once the code is confirmed
- any VERIFICATION_REQUIRED response, or a rejected attendee token, re-enters
  that same overlay
- a qualification denial ends in NOT_QUALIFIED
"""

import asyncio
import logging
from typing import Any

from .exceptions import (
    FieldLocked,
    FormValidationError,
    InvalidTransition,
    NetworkFailure,
    QualificationDenied,
    RegistrationError,
    SessionExpired,
    TokenInvalid,
    VerificationRequired,
)
from .existing import ExistingRegistrationResolver
from .mode import resolve_mode
from .models import (
    AttendeeInfo,
    EventConfig,
    IdentityKey,
    Invitation,
    SubmissionResult,
    SubmissionStatus,
)
from .ports import FlowStep, Notifier, RegistrationGateway, SessionStore
from .schema import EMAIL_PATTERN, DynamicFieldSchema, is_blank
from .session import SESSION_EXPIRED_NOTICE, TOKEN_EXPIRED_NOTICE, SessionPersistence
from .verification import OtpVerificationService, VerificationFlow

logger = logging.getLogger(__name__)

EDIT_WARNING = "Registrations cannot be edited after submission."
WELCOME_BACK = "We found your registration. Submitting will update it."
SUBMIT_FAILED = "Registration failed. Your answers were kept, please try again."
CODE_SENT = "Enter the verification code we sent to {email} to finish registering."


class SubmissionCoordinator:
    def __init__(
        self,
        event: EventConfig,
        gateway: RegistrationGateway,
        store: SessionStore,
        notifier: Notifier,
        invitation: Invitation | None = None,
        support_email: str | None = None,
    ) -> None:
        self.event = event
        self.invitation = invitation or Invitation()
        self.mode = resolve_mode(event, self.invitation)
        self.schema = DynamicFieldSchema(event.form_fields)
        self.support_email = support_email
        self.otp = OtpVerificationService(gateway, store)
        self.flow = VerificationFlow(event.id, self.mode, self.otp)
        self.persistence = SessionPersistence(store, gateway)
        self.resolver = ExistingRegistrationResolver(gateway)

        self.values: dict[str, Any] = {}
        self.locked_fields: frozenset[str] = frozenset()
        self.existing_registration_id: str | None = None
        self.attendee_token: str | None = None
        self.ticket_count = 1
        self.additional_attendees: list[AttendeeInfo] = []
        self.last_result: SubmissionResult | None = None

        self._gateway = gateway
        self._notifier = notifier
        self._identity: IdentityKey | None = None
        self._applied_key: IdentityKey | None = None
        self._submission: asyncio.Future | None = None
        self._consuming_token = False
        self._loading = False

    @property
    def step(self) -> FlowStep:
        return self.flow.step

    @property
    def identity(self) -> IdentityKey | None:
        return self._identity

    @property
    def support_contact(self) -> str | None:
        """Who to contact about eligibility; only offered once not qualified."""
        if self.step is not FlowStep.NOT_QUALIFIED:
            return None
        return self.support_email

    def visible_fields(self) -> list[str]:
        if self.step is not FlowStep.FORM:
            return []
        return self.schema.visible_fields(self.values)

    # Page load

    async def load(self) -> FlowStep:
        """
        Decide the initial step for this page load.

        A one-time redirect token is consumed first; while it is being
        consumed the restore-from-storage path never runs for this load.
        """
        if self._loading or self._consuming_token:
            return self.step
        self._loading = True
        try:
            if self.mode.is_anonymous:
                self.flow.show_form()
                self._notifier.notify("Before you register", EDIT_WARNING, "warning")
                return self.step

            if self.invitation.redirect_token and self.invitation.email:
                await self._consume_redirect_token()
                return self.step

            if self.mode.skip_verification:
                self._prefill_invitation()
                self.flow.show_form()
                return self.step

            outcome = await self.persistence.restore(
                self.event.id, require_registration=self.mode.requires_qualification
            )
            if outcome.session is not None:
                self.attendee_token = outcome.session.attendee_token
                self.flow.restore(outcome.session.email)
                self._sync_identity()
                if outcome.session.via_token and self._identity is not None:
                    self.resolver.prime(self._identity, outcome.session.existing)
                await self._enter_form()
                return self.step

            self.flow.reset(notice=outcome.notice)
            self._sync_identity()
            if outcome.notice is None and self.mode.defers_verification:
                self.flow.show_form()
            return self.step
        finally:
            self._loading = False

    async def _consume_redirect_token(self) -> None:
        self._consuming_token = True
        try:
            profile = await self.otp.consume_redirect_token(
                self.invitation.redirect_token, self.invitation.email, self.event.id
            )
        except QualificationDenied as exc:
            self.flow.reset()
            self.flow.deny(str(exc))
            self._sync_identity()
            return
        except (TokenInvalid, SessionExpired, NetworkFailure) as exc:
            logger.info("Redirect token not accepted for event %s: %s", self.event.id, exc)
            self.flow.reset(notice=str(exc))
            self._sync_identity()
            return
        finally:
            self._consuming_token = False

        self.flow.establish(profile)
        self._sync_identity()
        await self._enter_form()

    def _prefill_invitation(self) -> None:
        prefilled = {
            "unicityId": self.invitation.distributor_id,
            "email": self.invitation.email.strip().lower(),
            "firstName": self.invitation.first_name,
            "lastName": self.invitation.last_name,
            "phone": self.invitation.phone,
        }
        prefilled = {key: value for key, value in prefilled.items() if value}
        self.values = {**self.values, **prefilled}
        self.locked_fields = frozenset({"unicityId", "email"})

    # Upfront verification actions

    async def request_code(self, email: str, distributor_id: str | None = None) -> FlowStep:
        step = await self.flow.verify_then_show_form(email, distributor_id)
        self._sync_identity()
        return step

    async def resend_code(self) -> FlowStep:
        return await self.flow.resend()

    def change_email(self) -> FlowStep:
        step = self.flow.change_email()
        self._sync_identity()
        return step

    async def confirm_code(self, code: str) -> FlowStep:
        step = await self.flow.confirm_code(code)
        self._sync_identity()
        if step is FlowStep.FORM:
            await self._enter_form()
        return self.step

    def logout(self) -> FlowStep:
        self.persistence.forget(self.event.id)
        self.attendee_token = None
        self.flow.reset()
        self._sync_identity()
        return self.step

    # Form editing

    def set_field(self, key: str, value: Any) -> None:
        if key in self.locked_fields:
            raise FieldLocked(key)
        self.values = self.schema.apply_change(self.values, key, value)

    def set_ticket_count(self, count: int) -> None:
        if not self.mode.is_anonymous:
            raise InvalidTransition("Ticket selection is only available for open registration.")
        if not 1 <= count <= self.event.max_tickets:
            raise ValueError(f"Ticket count must be between 1 and {self.event.max_tickets}")
        self.ticket_count = count
        extra = count - 1
        attendees = self.additional_attendees[:extra]
        attendees.extend(AttendeeInfo() for _ in range(extra - len(attendees)))
        self.additional_attendees = attendees

    def set_attendee(self, index: int, attendee: AttendeeInfo) -> None:
        """Set additional attendee index (0-based, the primary is not counted)."""
        if not 0 <= index < len(self.additional_attendees):
            raise IndexError(index)
        self.additional_attendees[index] = attendee

    # Submission

    async def submit(self) -> SubmissionResult:
        """
        Submit the form. Concurrent calls share one in-flight submission.

        Raises FormValidationError before any network call, and
        NetworkFailure (after a toast) with all entered values kept.
        """
        if self._submission is None or self._submission.done():
            self._submission = asyncio.ensure_future(self._submit())
        return await asyncio.shield(self._submission)

    async def _submit(self) -> SubmissionResult:
        if self.step is not FlowStep.FORM:
            raise InvalidTransition("The registration form is not available.")
        if self.flow.overlay_open:
            raise InvalidTransition("Finish verifying your email first.")

        if self.mode.is_anonymous:
            return await self._submit_batch()

        self.schema.validate(self.values)
        payload = self.schema.payload(self.values)
        if self.flow.profile is not None:
            payload["verifiedByExternalRegistry"] = self.flow.profile.verified_by_external_registry

        needs_otp = (
            self.mode.requires_verification
            and not self.flow.is_verified
            and not self.mode.skip_verification
        )
        if needs_otp:
            return await self._hold_for_verification(payload)
        return await self._commit(payload)

    async def _submit_batch(self) -> SubmissionResult:
        missing, invalid = self.schema.errors(self.values)
        for position, attendee in enumerate(self.additional_attendees, start=2):
            prefix = f"attendee {position} "
            if not attendee.first_name.strip():
                missing.append(prefix + "firstName")
            if not attendee.last_name.strip():
                missing.append(prefix + "lastName")
            if is_blank(attendee.email):
                missing.append(prefix + "email")
            elif not EMAIL_PATTERN.match(attendee.email.strip()):
                invalid.append(prefix + "email")
        if missing or invalid:
            raise FormValidationError(missing=missing, invalid=invalid)

        primary = self.schema.payload(self.values)
        attendees = [dict(primary)] + [a.as_payload() for a in self.additional_attendees]
        payload = {**primary, "ticketCount": len(attendees), "attendees": attendees}

        try:
            response = await self._gateway.create_registration(self.event.id, payload)
        except RegistrationError as exc:
            self._report_failure(exc)
            raise

        ids = tuple(str(r["id"]) for r in response.get("registrations", []))
        result = SubmissionResult(
            SubmissionStatus.BATCH_CREATED, ids, response.get("message") or EDIT_WARNING
        )
        self.last_result = result
        self._notifier.notify("Registration complete", result.message, "success")
        return result

    async def _hold_for_verification(self, payload: dict[str, Any]) -> SubmissionResult:
        email = str(payload.get("email", ""))
        await self.flow.verify_during_submit(email, payload)
        return SubmissionResult(
            SubmissionStatus.VERIFICATION_PENDING, message=CODE_SENT.format(email=email)
        )

    async def confirm_overlay_code(self, code: str) -> SubmissionResult:
        """Confirm the overlay code and resubmit the held payload as-is."""
        try:
            payload = await self.flow.confirm_overlay_code(code)
        except QualificationDenied:
            self._sync_identity()
            raise
        self._sync_identity()
        self.locked_fields = self.locked_fields | {"email"}
        return await self._commit(payload)

    async def resend_overlay_code(self) -> None:
        await self.flow.resend_overlay_code()

    def cancel_overlay(self) -> None:
        self.flow.cancel_overlay()

    async def _commit(self, payload: dict[str, Any]) -> SubmissionResult:
        try:
            if self.existing_registration_id is not None:
                response = await self._gateway.update_registration(
                    self.event.id, self.existing_registration_id, payload, self.attendee_token
                )
                status = SubmissionStatus.UPDATED
            else:
                response = await self._gateway.create_registration(
                    self.event.id, payload, self.attendee_token
                )
                status = (
                    SubmissionStatus.UPDATED
                    if response.get("wasUpdated")
                    else SubmissionStatus.CREATED
                )
        except VerificationRequired:
            logger.info("Server requested verification for event %s", self.event.id)
            return await self._hold_for_verification(payload)
        except TokenInvalid:
            logger.info("Attendee token rejected for event %s", self.event.id)
            self.persistence.forget_attendee()
            self.attendee_token = None
            self._notifier.notify("Session expired", TOKEN_EXPIRED_NOTICE, "warning")
            return await self._hold_for_verification(payload)
        except QualificationDenied as exc:
            self._report_failure(exc)
            self.persistence.forget_verified(self.event.id)
            self.flow.reset()
            self.flow.deny(str(exc))
            self._sync_identity()
            raise
        except RegistrationError as exc:
            self._report_failure(exc)
            raise

        registration_id = response.get("id")
        if registration_id is not None:
            self.existing_registration_id = str(registration_id)
        result = SubmissionResult(
            status,
            (str(registration_id),) if registration_id is not None else (),
            response.get("message", ""),
        )
        self.last_result = result
        self._notifier.notify("Registration saved", result.message, "success")
        return result

    def _report_failure(self, exc: RegistrationError) -> None:
        logger.warning("Submission failed for event %s: %s", self.event.id, exc)
        self._notifier.notify("Registration failed", str(exc) or SUBMIT_FAILED, "error")

    # Identity scoping

    def _sync_identity(self) -> None:
        key = self.flow.identity
        if key == self._identity:
            return
        if self._identity is not None:
            self._clear_identity_state()
        self._identity = key
        if key is None:
            self.resolver.invalidate()
        else:
            self.resolver.activate(key)

    def _clear_identity_state(self) -> None:
        self.values = {}
        self.locked_fields = frozenset()
        self.existing_registration_id = None
        self.attendee_token = None
        self.last_result = None
        self._applied_key = None

    async def _enter_form(self) -> None:
        """Lock identity fields and load any prior registration."""
        key = self._identity
        if key is None:
            return
        supplied = self.flow.profile.as_fields() if self.flow.profile else {}
        supplied["email"] = key.email
        self.values = self.schema.prune({**self.values, **supplied})
        self.locked_fields = frozenset(supplied)
        await self._load_existing(key)

    async def _load_existing(self, key: IdentityKey) -> None:
        try:
            result = await self.resolver.resolve(key, self.attendee_token)
        except TokenInvalid:
            if self._identity == key:
                self.persistence.forget_attendee()
                self._expire(TOKEN_EXPIRED_NOTICE)
            return
        except SessionExpired:
            if self._identity == key:
                self.persistence.forget(self.event.id)
                self._expire(SESSION_EXPIRED_NOTICE)
            return
        except NetworkFailure as exc:
            logger.warning("Existing registration lookup failed: %s", exc)
            return

        if not result.current or self._identity != key or self._applied_key == key:
            return
        self._applied_key = key
        if result.record is None:
            return

        locked_values = {k: v for k, v in self.values.items() if k in self.locked_fields}
        self.values = self.schema.prune(
            {**self.values, **result.record.as_form_values(), **locked_values}
        )
        self.existing_registration_id = result.record.id
        self._notifier.notify("Welcome back", WELCOME_BACK, "info")

    def _expire(self, notice: str) -> None:
        self.flow.reset(notice=notice)
        self._sync_identity()
        self._notifier.notify("Session expired", notice, "warning")
