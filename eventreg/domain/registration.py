"""
Registration domain service - Server side of the verification protocol.

This module contains the server's business logic: OTP issuance and
validation, qualification, verified-session checks, redirect tokens,
registration create/upsert/update and attendee ("my events") sessions.

OTP Session State Machine (Forward-Only Transitions)
====================================================

States:
- PENDING: Code issued, waiting for validation
- VERIFIED: Correct code entered within the TTL
- EXPIRED: TTL exceeded during a validation attempt
- LOCKED: Maximum failed attempts reached

Valid Transitions (forward-only, enforced by repository):
    PENDING -> VERIFIED  (correct code)
    PENDING -> EXPIRED   (TTL exceeded, checked before the code)
    PENDING -> LOCKED    (max failed attempts)

Requesting a new code replaces the session for (email, scope) with a fresh
PENDING one, so only the newest code validates. Sessions are scoped to the
resolved event id, or to ATTENDEE_SCOPE for the attendee portal login.

A verified session authorizes registration for 30 minutes (the session
window). EXPIRED and LOCKED are both reported to clients as SessionExpired.
"""

import logging
import secrets
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any

import bcrypt

from .exceptions import (
    EventNotFound,
    FormValidationError,
    IdentityMismatch,
    InvalidCode,
    InvalidEmail,
    QualificationDenied,
    RateLimited,
    RegistrationClosed,
    RegistrationNotFound,
    SessionExpired,
    TokenInvalid,
    VerificationRequired,
)
from .mode import resolve_mode
from .models import (
    CodeRequest,
    EventConfig,
    OtpValidation,
    QualificationResult,
    RegistrationRecord,
    SessionStatus,
    VerifiedProfile,
    VerifiedSession,
    normalize_email,
)
from .ports import EmailSender, RegistrationRepository, VerifyResult
from .qualification import NOT_ON_LIST, evaluate_qualification
from .schema import EMAIL_PATTERN, KNOWN_FIELDS, DynamicFieldSchema

logger = logging.getLogger(__name__)

ATTENDEE_SCOPE = "attendee-portal"

# Payload keys that describe the submission rather than a registration column.
_CONTROL_KEYS = frozenset(
    {
        "email",
        "formData",
        "attendees",
        "ticketCount",
        "verifiedByExternalRegistry",
        "existingRegistrationId",
    }
)

_FAILURE_MESSAGES = {
    VerifyResult.EXPIRED: "Verification code expired. Please request a new code.",
    VerifyResult.LOCKED: "Too many failed attempts. Please request a new code.",
    VerifyResult.NOT_FOUND: "No pending verification. Please request a new code.",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RegistrationOutcome:
    """Result of a create request: one record, or a whole anonymous order."""

    records: list[RegistrationRecord]
    created: bool
    order_id: str | None = None

    @property
    def primary(self) -> RegistrationRecord:
        return self.records[0]


@dataclass(frozen=True)
class AttendeeSession:
    token: str
    email: str
    expires_at: datetime


@dataclass
class RegistrationService:
    """
    Domain service for event registration.

    Orchestrates verification and registration: email normalization,
    code generation and hashing, qualification and persistence.
    """

    repository: RegistrationRepository
    email_sender: EmailSender
    code_ttl_seconds: int = 600
    session_window_seconds: int = 1800
    redirect_token_ttl_seconds: int = 600
    max_attempts: int = 5
    rate_limit_max_codes: int = 5
    rate_limit_window_seconds: int = 900
    attendee_session_ttl_seconds: int = 86400
    dev_mode: bool = False
    dev_code: str = "123456"
    bcrypt_cost: int = 10
    clock: Callable[[], datetime] = field(default=_utcnow)

    # Registration verification

    def generate_code(
        self, email: str, event_id: str, distributor_id: str | None = None
    ) -> CodeRequest:
        """
        Issue a verification code for (email, event).

        Any earlier code for the same pair stops validating. Eligibility is
        not checked here; it is reported when the code is validated.

        Raises:
            InvalidEmail: Malformed email
            EventNotFound / RegistrationClosed: Event unusable
            RateLimited: Too many codes issued to this email recently
        """
        normalized_email = self._validated_email(email)
        event = self._published_event(event_id)
        code = self._issue_code(normalized_email, event.id)
        logger.info(
            "Registration code issued for event %s (distributor hint: %s)",
            event.id,
            "yes" if distributor_id else "no",
        )
        return CodeRequest(accepted=True, dev_code=code if self.dev_mode else None)

    def validate_code(self, email: str, code: str, event_id: str) -> OtpValidation:
        """
        Validate a code and report the verified profile and qualification.

        Raises:
            InvalidCode: Wrong code (attempt counted, expiry unchanged)
            SessionExpired: Expired, locked, or no pending code
        """
        normalized_email = normalize_email(email)
        event = self._get_event(event_id)
        self._check_code(normalized_email, event.id, code)

        now = self.clock()
        profile = self._verified_profile(event.id, normalized_email)
        qualification = self._qualification(event, normalized_email, now)

        redirect_token = secrets.token_urlsafe(32)
        self.repository.save_verified_profile(
            normalized_email,
            event.id,
            _profile_to_dict(profile),
            redirect_token,
            now + timedelta(seconds=self.redirect_token_ttl_seconds),
        )
        logger.info(
            "Email verified for event %s (qualified: %s)", event.id, qualification.is_qualified
        )
        return OtpValidation(
            verified=True,
            profile=profile,
            qualification=qualification,
            redirect_token=redirect_token,
        )

    def session_status(self, email: str, event_id: str) -> SessionStatus:
        """
        Report whether email holds a live verified session for the event.

        In qualified events an ineligible email is reported as unverified,
        so a stored verification cannot be used to reach the form.
        """
        normalized_email = normalize_email(email)
        event = self._get_event(event_id)
        session = self._live_session(normalized_email, event.id)
        if session is None:
            return SessionStatus(verified=False)
        if not self._qualification(event, normalized_email, self.clock()).is_qualified:
            return SessionStatus(verified=False)
        return SessionStatus(verified=True, email=normalized_email)

    def consume_token(self, token: str, email: str, event_id: str) -> VerifiedProfile:
        """
        Exchange a one-time redirect token for the verified profile.

        Raises:
            TokenInvalid: Unknown, consumed, expired, or issued to another
                email or event
            QualificationDenied: Email is not eligible for the event
        """
        normalized_email = normalize_email(email)
        event = self._get_event(event_id)
        session = self.repository.consume_redirect_token(token, normalized_email, self.clock())
        if session is None or session.scope != event.id:
            raise TokenInvalid("This sign-in link is invalid or has expired.")

        qualification = self._qualification(event, normalized_email, self.clock())
        if not qualification.is_qualified:
            raise QualificationDenied(qualification.message or NOT_ON_LIST)
        return _profile_from_session(session)

    # Existing registrations

    def find_existing(self, email: str, event_id: str) -> RegistrationRecord | None:
        """
        Prior registration for a verified email.

        Raises:
            SessionExpired: No verified session within the session window
        """
        normalized_email = normalize_email(email)
        event = self._get_event(event_id)
        if self._live_session(normalized_email, event.id) is None:
            raise SessionExpired("Email not verified. Please complete verification first.")
        return self.repository.find_registration(event.id, normalized_email)

    def attendee_registration(self, event_id: str, attendee_token: str) -> RegistrationRecord | None:
        email = self._attendee_email(attendee_token)
        event = self._get_event(event_id)
        return self.repository.find_registration(event.id, email)

    def register(
        self,
        event_id: str,
        payload: Mapping[str, Any],
        attendee_token: str | None = None,
    ) -> RegistrationOutcome:
        """
        Create a registration, or update the one already held by this email.

        Anonymous events always create one record per attendee, atomically,
        under a shared order id. Verified events require a verified session
        or an attendee token for the same email.

        Raises:
            VerificationRequired: Verified event without proof of the email
            QualificationDenied: Qualified event, email not eligible
            FormValidationError: Required or malformed fields
        """
        event = self._published_event(event_id)
        email = self._validated_email(str(payload.get("email") or ""))
        mode = resolve_mode(event)
        now = self.clock()

        if mode.is_anonymous:
            return self._register_batch(event, email, payload, now)

        if not self._is_authenticated(email, event.id, attendee_token):
            logger.info("Registration refused for event %s: email not verified", event.id)
            raise VerificationRequired("Please verify your email before registering.")

        if mode.requires_qualification:
            qualification = self._qualification(event, email, now)
            if not qualification.is_qualified:
                raise QualificationDenied(qualification.message or NOT_ON_LIST)

        fields, form_data = _split_payload(payload)
        _validate_fields(event, email, fields, form_data, now.date())
        record = RegistrationRecord(
            id=str(uuid.uuid4()),
            event_id=event.id,
            email=email,
            fields=fields,
            form_data=form_data,
            verified_by_external_registry=True,
        )
        saved, created = self.repository.upsert_registration(record, now)
        logger.info(
            "Registration %s %s for event %s", saved.id, "created" if created else "updated", event.id
        )
        return RegistrationOutcome(records=[saved], created=created)

    def _register_batch(
        self, event: EventConfig, email: str, payload: Mapping[str, Any], now: datetime
    ) -> RegistrationOutcome:
        fields, form_data = _split_payload(payload)
        _validate_fields(event, email, fields, form_data, now.date())

        extra = list(payload.get("attendees") or [])[1:]
        if len(extra) + 1 > event.max_tickets:
            raise FormValidationError(invalid=["ticketCount"])

        order_id = str(uuid.uuid4())
        records = [
            RegistrationRecord(
                id=str(uuid.uuid4()),
                event_id=event.id,
                email=email,
                fields=fields,
                form_data=form_data,
                order_id=order_id,
                attendee_index=0,
            )
        ]
        missing: list[str] = []
        invalid: list[str] = []
        for index, attendee in enumerate(extra, start=1):
            prefix = f"attendee {index + 1} "
            attendee_email = normalize_email(str(attendee.get("email") or ""))
            for key in ("firstName", "lastName"):
                if not str(attendee.get(key) or "").strip():
                    missing.append(prefix + key)
            if not attendee_email:
                missing.append(prefix + "email")
            elif not EMAIL_PATTERN.match(attendee_email):
                invalid.append(prefix + "email")
            attendee_fields = {
                key: str(attendee[key]).strip()
                for key in ("firstName", "lastName", "phone")
                if attendee.get(key)
            }
            records.append(
                RegistrationRecord(
                    id=str(uuid.uuid4()),
                    event_id=event.id,
                    email=attendee_email,
                    fields=attendee_fields,
                    order_id=order_id,
                    attendee_index=index,
                )
            )
        if missing or invalid:
            raise FormValidationError(missing=missing, invalid=invalid)

        saved = self.repository.create_registrations(records, now)
        logger.info(
            "Order %s created for event %s with %d attendee(s)", order_id, event.id, len(saved)
        )
        return RegistrationOutcome(records=saved, created=True, order_id=order_id)

    def update(
        self,
        event_id: str,
        registration_id: str,
        payload: Mapping[str, Any],
        attendee_token: str | None = None,
    ) -> RegistrationRecord:
        """
        Update a registration owned by the authenticated email.

        Raises:
            RegistrationNotFound: Unknown id, or registered for another event
            TokenInvalid: Attendee token rejected
            VerificationRequired: No attendee token and no verified session
            IdentityMismatch: Authenticated email does not own the record
        """
        event = self._get_event(event_id)
        record = self.repository.get_registration(registration_id)
        if record is None or record.event_id != event.id:
            raise RegistrationNotFound(registration_id)

        if attendee_token:
            owner = self._attendee_email(attendee_token)
        elif self._live_session(record.email, event.id) is not None:
            owner = record.email
        else:
            raise VerificationRequired("Please verify your email before updating.")

        submitted = normalize_email(str(payload.get("email") or record.email))
        if owner != record.email or submitted != record.email:
            logger.warning("Update of registration %s refused: identity mismatch", record.id)
            raise IdentityMismatch(registration_id)

        fields, form_data = _split_payload(payload)
        if record.order_id is None:
            _validate_fields(
                event,
                record.email,
                {**record.fields, **fields},
                {**record.form_data, **form_data},
                self.clock().date(),
            )
        updated = self.repository.update_registration(
            record.id, fields, form_data or None, self.clock()
        )
        if updated is None:
            raise RegistrationNotFound(registration_id)
        logger.info("Registration %s updated for event %s", record.id, event.id)
        return updated

    # Attendee portal

    def request_attendee_code(self, email: str) -> CodeRequest:
        normalized_email = self._validated_email(email)
        code = self._issue_code(normalized_email, ATTENDEE_SCOPE)
        return CodeRequest(accepted=True, dev_code=code if self.dev_mode else None)

    def validate_attendee_code(self, email: str, code: str) -> AttendeeSession:
        normalized_email = normalize_email(email)
        self._check_code(normalized_email, ATTENDEE_SCOPE, code)
        token = secrets.token_urlsafe(32)
        expires_at = self.clock() + timedelta(seconds=self.attendee_session_ttl_seconds)
        self.repository.create_attendee_session(token, normalized_email, expires_at)
        logger.info("Attendee session created")
        return AttendeeSession(token=token, email=normalized_email, expires_at=expires_at)

    def logout_attendee(self, attendee_token: str) -> None:
        self.repository.delete_attendee_session(attendee_token)

    # Helpers

    def _issue_code(self, email: str, scope: str) -> str:
        now = self.clock()
        since = now - timedelta(seconds=self.rate_limit_window_seconds)
        if self.repository.count_codes_since(email, since) >= self.rate_limit_max_codes:
            logger.warning("Code request rate limited for scope %s", scope)
            raise RateLimited("Too many verification codes requested. Please try again later.")

        code = self.dev_code if self.dev_mode else self._generate_verification_code()
        self.repository.store_pending_code(
            email,
            scope,
            self._hash_code(code),
            now,
            now + timedelta(seconds=self.code_ttl_seconds),
        )
        self.email_sender.send_verification_code(email, code, self.code_ttl_seconds // 60)
        return code

    def _check_code(self, email: str, scope: str, code: str) -> None:
        result = self.repository.verify_code(
            email, scope, code.strip(), self.clock(), self.max_attempts
        )
        if result == VerifyResult.SUCCESS:
            return
        if result == VerifyResult.INVALID_CODE:
            raise InvalidCode("Invalid verification code")
        logger.info("Code validation failed for scope %s: %s", scope, result.value)
        raise SessionExpired(_FAILURE_MESSAGES[result])

    def _live_session(self, email: str, scope: str) -> VerifiedSession | None:
        session = self.repository.get_verified_session(email, scope)
        if session is None:
            return None
        window = timedelta(seconds=self.session_window_seconds)
        if self.clock() - session.verified_at > window:
            return None
        return session

    def _is_authenticated(self, email: str, event_id: str, attendee_token: str | None) -> bool:
        if attendee_token:
            owner = self.repository.get_attendee_email(attendee_token, self.clock())
            if owner is not None and owner == email:
                return True
        return self._live_session(email, event_id) is not None

    def _attendee_email(self, attendee_token: str) -> str:
        email = self.repository.get_attendee_email(attendee_token, self.clock())
        if email is None:
            raise TokenInvalid("Your sign-in has expired.")
        return email

    def _verified_profile(self, event_id: str, email: str) -> VerifiedProfile:
        """Profile from the qualifier roster, else the prior registration, else the email."""
        qualifier = self.repository.get_qualifier(event_id, email)
        if qualifier is not None:
            identity = {
                "unicityId": qualifier.unicity_id,
                "firstName": qualifier.first_name,
                "lastName": qualifier.last_name,
                "phone": qualifier.phone,
            }
        else:
            existing = self.repository.find_registration(event_id, email)
            identity = existing.fields if existing is not None else {}
        return VerifiedProfile(
            unicity_id=str(identity.get("unicityId") or ""),
            email=email,
            first_name=str(identity.get("firstName") or ""),
            last_name=str(identity.get("lastName") or ""),
            phone=str(identity.get("phone") or "") or None,
            verified_by_external_registry=True,
        )

    def _qualification(self, event: EventConfig, email: str, now: datetime) -> QualificationResult:
        if not resolve_mode(event).requires_qualification:
            return QualificationResult(is_qualified=True)
        qualifier = self.repository.get_qualifier(event.id, email)
        existing = self.repository.find_registration(event.id, email)
        return evaluate_qualification(event, qualifier, existing is not None, now)

    def _get_event(self, event_id: str) -> EventConfig:
        event = self.repository.get_event(event_id)
        if event is None:
            raise EventNotFound(event_id)
        return event

    def _published_event(self, event_id: str) -> EventConfig:
        event = self._get_event(event_id)
        if event.status != "published":
            raise RegistrationClosed(event.id)
        return event

    def _validated_email(self, email: str) -> str:
        normalized_email = normalize_email(email)
        if not EMAIL_PATTERN.match(normalized_email):
            raise InvalidEmail(normalized_email)
        return normalized_email

    def _generate_verification_code(self) -> str:
        """
        Generate cryptographically secure 6-digit verification code.

        Returns string to preserve leading zeros.
        """
        return "".join(secrets.choice("0123456789") for _ in range(6))

    def _hash_code(self, code: str) -> str:
        return bcrypt.hashpw(code.encode(), bcrypt.gensalt(rounds=self.bcrypt_cost)).decode()


def _split_payload(payload: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split a request body into registration columns and custom form data."""
    fields: dict[str, Any] = {}
    form_data = dict(payload.get("formData") or {})
    for key, value in payload.items():
        if key in _CONTROL_KEYS:
            continue
        if key in KNOWN_FIELDS:
            fields[key] = value
        else:
            form_data[key] = value
    return fields, form_data


def _validate_fields(
    event: EventConfig,
    email: str,
    fields: dict[str, Any],
    form_data: dict[str, Any],
    today: date,
) -> None:
    schema = DynamicFieldSchema(event.form_fields, today=lambda: today)
    schema.validate({**form_data, **fields, "email": email})


def _profile_to_dict(profile: VerifiedProfile) -> dict[str, Any]:
    return {
        "unicityId": profile.unicity_id,
        "email": profile.email,
        "firstName": profile.first_name,
        "lastName": profile.last_name,
        "phone": profile.phone,
        "verifiedByExternalRegistry": profile.verified_by_external_registry,
    }


def _profile_from_session(session: VerifiedSession) -> VerifiedProfile:
    data = session.profile
    return VerifiedProfile(
        unicity_id=data.get("unicityId") or "",
        email=session.email,
        first_name=data.get("firstName") or "",
        last_name=data.get("lastName") or "",
        phone=data.get("phone") or None,
        verified_by_external_registry=bool(data.get("verifiedByExternalRegistry", True)),
    )
