"""
In-memory repository adapter - Implements RegistrationRepository protocol.

Used for local development, the end-to-end test suite and the default
``storage_backend=memory`` server. Every operation takes one process-wide
lock, which gives the same atomicity the PostgreSQL adapter gets from
``SELECT ... FOR UPDATE`` and single-transaction inserts.
"""

import copy
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any

from eventreg.domain.models import (
    EventConfig,
    Qualifier,
    RegistrationRecord,
    VerifiedSession,
    normalize_email,
)
from eventreg.domain.ports import OtpState, VerifyResult

from .hashing import code_matches


@dataclass
class _OtpRow:
    code_hash: str | None
    state: OtpState
    created_at: datetime
    expires_at: datetime
    attempt_count: int = 0
    verified_at: datetime | None = None
    profile: dict[str, Any] = field(default_factory=dict)
    redirect_token: str | None = None
    redirect_expires_at: datetime | None = None
    redirect_consumed: bool = False


class InMemoryRegistrationRepository:
    """
    Implements RegistrationRepository protocol with plain dictionaries.

    Uses structural subtyping - no explicit inheritance from Protocol.
    Records are copied on the way in and out so callers never share state.
    Issued-code timestamps older than ``issued_retention`` are pruned when a
    new code is stored; keep it at least as long as the rate-limit window.
    """

    def __init__(self, issued_retention: timedelta = timedelta(days=1)) -> None:
        self._issued_retention = issued_retention
        self._lock = threading.Lock()
        self._events: dict[str, EventConfig] = {}
        self._qualifiers: dict[tuple[str, str], Qualifier] = {}
        self._issued: list[tuple[str, datetime]] = []
        self._otp: dict[tuple[str, str], _OtpRow] = {}
        self._registrations: dict[str, RegistrationRecord] = {}
        self._attendee_sessions: dict[str, tuple[str, datetime]] = {}

    # Events and qualifiers

    def get_event(self, event_id: str) -> EventConfig | None:
        with self._lock:
            event = self._events.get(event_id)
            if event is None:
                event = next((e for e in self._events.values() if e.slug == event_id), None)
            return copy.deepcopy(event)

    def save_event(self, event: EventConfig) -> None:
        with self._lock:
            self._events[event.id] = copy.deepcopy(event)

    def add_qualifier(self, qualifier: Qualifier) -> None:
        email = normalize_email(qualifier.email)
        with self._lock:
            self._qualifiers[(qualifier.event_id, email)] = replace(qualifier, email=email)

    def get_qualifier(self, event_id: str, email: str) -> Qualifier | None:
        with self._lock:
            return self._qualifiers.get((event_id, email))

    # OTP sessions

    def count_codes_since(self, email: str, since: datetime) -> int:
        with self._lock:
            return sum(1 for issued_to, at in self._issued if issued_to == email and at >= since)

    def store_pending_code(
        self, email: str, scope: str, code_hash: str, now: datetime, expires_at: datetime
    ) -> None:
        with self._lock:
            self._otp[(email, scope)] = _OtpRow(
                code_hash=code_hash,
                state=OtpState.PENDING,
                created_at=now,
                expires_at=expires_at,
            )
            cutoff = now - self._issued_retention
            self._issued = [entry for entry in self._issued if entry[1] >= cutoff]
            self._issued.append((email, now))

    def verify_code(
        self, email: str, scope: str, code: str, now: datetime, max_attempts: int
    ) -> VerifyResult:
        with self._lock:
            row = self._otp.get((email, scope))

            # Always run bcrypt before any state-based return
            code_valid = code_matches(code, row.code_hash if row is not None else None)

            if row is None:
                return VerifyResult.NOT_FOUND
            if row.state == OtpState.LOCKED:
                return VerifyResult.LOCKED
            if row.state != OtpState.PENDING:
                return VerifyResult.NOT_FOUND
            if now > row.expires_at:
                row.state = OtpState.EXPIRED
                row.code_hash = None
                return VerifyResult.EXPIRED
            if row.attempt_count >= max_attempts:
                row.state = OtpState.LOCKED
                return VerifyResult.LOCKED

            if not code_valid:
                row.attempt_count += 1
                if row.attempt_count >= max_attempts:
                    row.state = OtpState.LOCKED
                    row.code_hash = None
                    return VerifyResult.LOCKED
                return VerifyResult.INVALID_CODE

            row.state = OtpState.VERIFIED
            row.verified_at = now
            row.code_hash = None
            return VerifyResult.SUCCESS

    def save_verified_profile(
        self,
        email: str,
        scope: str,
        profile: dict[str, Any],
        redirect_token: str,
        redirect_expires_at: datetime,
    ) -> None:
        with self._lock:
            row = self._otp.get((email, scope))
            if row is None or row.state != OtpState.VERIFIED:
                return
            row.profile = dict(profile)
            row.redirect_token = redirect_token
            row.redirect_expires_at = redirect_expires_at
            row.redirect_consumed = False

    def get_verified_session(self, email: str, scope: str) -> VerifiedSession | None:
        with self._lock:
            row = self._otp.get((email, scope))
            if row is None or row.state != OtpState.VERIFIED or row.verified_at is None:
                return None
            return VerifiedSession(email, scope, row.verified_at, dict(row.profile))

    def consume_redirect_token(
        self, token: str, email: str, now: datetime
    ) -> VerifiedSession | None:
        with self._lock:
            for (row_email, scope), row in self._otp.items():
                if row.redirect_token != token:
                    continue
                if (
                    row_email != email
                    or row.state != OtpState.VERIFIED
                    or row.redirect_consumed
                    or row.redirect_expires_at is None
                    or now > row.redirect_expires_at
                    or row.verified_at is None
                ):
                    return None
                row.redirect_consumed = True
                return VerifiedSession(row_email, scope, row.verified_at, dict(row.profile))
            return None

    # Registrations

    def find_registration(self, event_id: str, email: str) -> RegistrationRecord | None:
        with self._lock:
            record = self._find(event_id, email)
            return copy.deepcopy(record)

    def get_registration(self, registration_id: str) -> RegistrationRecord | None:
        with self._lock:
            return copy.deepcopy(self._registrations.get(registration_id))

    def upsert_registration(
        self, record: RegistrationRecord, now: datetime
    ) -> tuple[RegistrationRecord, bool]:
        with self._lock:
            existing = self._find(record.event_id, record.email)
            if existing is None:
                stored = replace(copy.deepcopy(record), created_at=now, last_modified=now)
                self._registrations[stored.id] = stored
                return copy.deepcopy(stored), True

            existing.fields = {**existing.fields, **record.fields}
            existing.form_data = dict(record.form_data)
            existing.verified_by_external_registry = (
                existing.verified_by_external_registry or record.verified_by_external_registry
            )
            existing.last_modified = now
            return copy.deepcopy(existing), False

    def create_registrations(
        self, records: list[RegistrationRecord], now: datetime
    ) -> list[RegistrationRecord]:
        with self._lock:
            if any(record.id in self._registrations for record in records):
                raise ValueError("Duplicate registration id")
            stored = [
                replace(copy.deepcopy(record), created_at=now, last_modified=now)
                for record in records
            ]
            for record in stored:
                self._registrations[record.id] = record
            return copy.deepcopy(stored)

    def update_registration(
        self,
        registration_id: str,
        fields: dict[str, Any],
        form_data: dict[str, Any] | None,
        now: datetime,
    ) -> RegistrationRecord | None:
        with self._lock:
            record = self._registrations.get(registration_id)
            if record is None:
                return None
            record.fields = {**record.fields, **fields}
            if form_data is not None:
                record.form_data = dict(form_data)
            record.last_modified = now
            return copy.deepcopy(record)

    def _find(self, event_id: str, email: str) -> RegistrationRecord | None:
        for record in self._registrations.values():
            if record.event_id == event_id and record.email == email and record.order_id is None:
                return record
        return None

    # Attendee sessions

    def create_attendee_session(self, token: str, email: str, expires_at: datetime) -> None:
        with self._lock:
            self._attendee_sessions[token] = (email, expires_at)

    def get_attendee_email(self, token: str, now: datetime) -> str | None:
        with self._lock:
            session = self._attendee_sessions.get(token)
            if session is None or now > session[1]:
                return None
            return session[0]

    def delete_attendee_session(self, token: str) -> None:
        with self._lock:
            self._attendee_sessions.pop(token, None)
