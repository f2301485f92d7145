"""
PostgreSQL repository adapter - Implements RegistrationRepository protocol.

This module provides the PostgreSQL implementation of the domain's
repository port using psycopg3 with raw SQL.

Concurrency Design:
------------------
1. **verify_code()** locks the OTP session row with SELECT FOR UPDATE, so
   concurrent attempts against one code are serialized and the attempt
   counter can never be raced past the lockout threshold.

2. **consume_redirect_token()** is a single conditional UPDATE ... RETURNING:
   exactly one caller can flip ``redirect_consumed``.

3. **upsert_registration()** relies on the partial unique index on
   (event_id, email) WHERE order_id IS NULL. Concurrent first submissions
   for one email collapse into one row; ``xmax = 0`` tells the caller
   whether its statement inserted or updated.

4. **create_registrations()** inserts an anonymous order in one
   transaction: all attendees are stored or none are.

Timing oracle prevention: bcrypt always runs during verify_code(), against
a dummy hash when there is no pending code (see hashing.code_matches).

All timestamps come from the caller so the domain clock is authoritative.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from eventreg.domain.models import (
    EventConfig,
    FieldTemplateEntry,
    Qualifier,
    RegistrationRecord,
    VerifiedSession,
    normalize_email,
)
from eventreg.domain.ports import OtpState, RegistrationMode, VerifyResult

from .hashing import code_matches

logger = logging.getLogger(__name__)

_REGISTRATION_COLUMNS = """
    id, event_id, email, fields, form_data, order_id, attendee_index,
    verified_by_external_registry, status, created_at, last_modified
"""


class PostgresRegistrationRepository:
    """
    Implements RegistrationRepository protocol via psycopg3.

    Uses structural subtyping - no explicit inheritance from Protocol.
    All SQL uses parameterized queries for security.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        """
        Initialize repository with connection pool.

        Args:
            pool: psycopg3 ConnectionPool for database connections
        """
        self._pool = pool

    # Events and qualifiers

    def get_event(self, event_id: str) -> EventConfig | None:
        sql = """
            SELECT id, slug, status, registration_mode, requires_verification,
                   requires_qualification, form_fields, max_tickets,
                   qualification_start, qualification_end
            FROM events
            WHERE id = %s OR slug = %s
            ORDER BY (id = %s) DESC
            LIMIT 1
        """
        with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cursor:
            cursor.execute(sql, (event_id, event_id, event_id))
            row = cursor.fetchone()
        if row is None:
            return None
        return EventConfig(
            id=row["id"],
            registration_mode=row["registration_mode"],
            requires_verification=row["requires_verification"],
            requires_qualification=row["requires_qualification"],
            form_fields=[FieldTemplateEntry.from_dict(raw) for raw in row["form_fields"] or []],
            max_tickets=row["max_tickets"],
            status=row["status"],
            slug=row["slug"],
            qualification_start=row["qualification_start"],
            qualification_end=row["qualification_end"],
        )

    def save_event(self, event: EventConfig) -> None:
        sql = """
            INSERT INTO events (id, slug, status, registration_mode, requires_verification,
                                requires_qualification, form_fields, max_tickets,
                                qualification_start, qualification_end)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE
            SET slug = EXCLUDED.slug,
                status = EXCLUDED.status,
                registration_mode = EXCLUDED.registration_mode,
                requires_verification = EXCLUDED.requires_verification,
                requires_qualification = EXCLUDED.requires_qualification,
                form_fields = EXCLUDED.form_fields,
                max_tickets = EXCLUDED.max_tickets,
                qualification_start = EXCLUDED.qualification_start,
                qualification_end = EXCLUDED.qualification_end
        """
        mode = event.registration_mode
        if isinstance(mode, RegistrationMode):
            mode = mode.value
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(
                sql,
                (
                    event.id,
                    event.slug,
                    event.status,
                    mode,
                    event.requires_verification,
                    event.requires_qualification,
                    Jsonb([entry.to_dict() for entry in event.form_fields]),
                    event.max_tickets,
                    event.qualification_start,
                    event.qualification_end,
                ),
            )
            conn.commit()

    def add_qualifier(self, qualifier: Qualifier) -> None:
        sql = """
            INSERT INTO qualifiers (event_id, email, unicity_id, first_name, last_name, phone)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (event_id, email) DO UPDATE
            SET unicity_id = EXCLUDED.unicity_id,
                first_name = EXCLUDED.first_name,
                last_name = EXCLUDED.last_name,
                phone = EXCLUDED.phone
        """
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(
                sql,
                (
                    qualifier.event_id,
                    normalize_email(qualifier.email),
                    qualifier.unicity_id,
                    qualifier.first_name,
                    qualifier.last_name,
                    qualifier.phone,
                ),
            )
            conn.commit()

    def get_qualifier(self, event_id: str, email: str) -> Qualifier | None:
        sql = """
            SELECT event_id, email, unicity_id, first_name, last_name, phone
            FROM qualifiers
            WHERE event_id = %s AND email = %s
        """
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(sql, (event_id, email))
            row = cursor.fetchone()
        if row is None:
            return None
        return Qualifier(*row)

    # OTP sessions

    def count_codes_since(self, email: str, since: datetime) -> int:
        sql = "SELECT COUNT(*) FROM otp_issuance WHERE email = %s AND issued_at >= %s"
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(sql, (email, since))
            return cursor.fetchone()[0]

    def store_pending_code(
        self, email: str, scope: str, code_hash: str, now: datetime, expires_at: datetime
    ) -> None:
        """
        Replace the session for (email, scope) with a fresh PENDING one.

        Uses INSERT ... ON CONFLICT DO UPDATE so concurrent requests leave
        exactly one row: the last write wins.
        """
        upsert_sql = """
            INSERT INTO otp_sessions (email, scope, code_hash, state, attempt_count,
                                      created_at, expires_at)
            VALUES (%s, %s, %s, %s, 0, %s, %s)
            ON CONFLICT (email, scope) DO UPDATE
            SET code_hash = EXCLUDED.code_hash,
                state = EXCLUDED.state,
                attempt_count = 0,
                created_at = EXCLUDED.created_at,
                expires_at = EXCLUDED.expires_at,
                verified_at = NULL,
                profile = '{}'::jsonb,
                redirect_token = NULL,
                redirect_expires_at = NULL,
                redirect_consumed = FALSE
        """
        issuance_sql = "INSERT INTO otp_issuance (email, issued_at) VALUES (%s, %s)"

        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(
                upsert_sql, (email, scope, code_hash, OtpState.PENDING.value, now, expires_at)
            )
            cursor.execute(issuance_sql, (email, now))
            conn.commit()

    def verify_code(
        self, email: str, scope: str, code: str, now: datetime, max_attempts: int
    ) -> VerifyResult:
        """
        Check a code and transition the session under a row lock.

        Expiry is checked before the code; a wrong code only increments the
        attempt counter and never touches expires_at.
        """
        select_sql = """
            SELECT code_hash, state, attempt_count, expires_at
            FROM otp_sessions
            WHERE email = %s AND scope = %s
            FOR UPDATE
        """

        transition_sql = """
            UPDATE otp_sessions
            SET state = %s, code_hash = NULL
            WHERE email = %s AND scope = %s AND state = %s
        """

        increment_sql = """
            UPDATE otp_sessions
            SET attempt_count = attempt_count + 1
            WHERE email = %s AND scope = %s AND state = %s
        """

        lock_sql = """
            UPDATE otp_sessions
            SET state = %s, attempt_count = attempt_count + 1, code_hash = NULL
            WHERE email = %s AND scope = %s AND state = %s
        """

        verify_sql = """
            UPDATE otp_sessions
            SET state = %s, verified_at = %s, code_hash = NULL
            WHERE email = %s AND scope = %s AND state = %s
        """

        pending = OtpState.PENDING.value
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(select_sql, (email, scope))
            row = cursor.fetchone()

            # CRITICAL: bcrypt runs before any state-based return
            code_valid = code_matches(code, row[0] if row is not None else None)

            if row is None:
                conn.commit()
                return VerifyResult.NOT_FOUND

            _, state, attempt_count, expires_at = row

            if state == OtpState.LOCKED.value:
                conn.commit()
                return VerifyResult.LOCKED

            if state != pending:
                conn.commit()
                return VerifyResult.NOT_FOUND

            if now > expires_at:
                cursor.execute(transition_sql, (OtpState.EXPIRED.value, email, scope, pending))
                conn.commit()
                return VerifyResult.EXPIRED

            if attempt_count >= max_attempts:
                cursor.execute(transition_sql, (OtpState.LOCKED.value, email, scope, pending))
                conn.commit()
                return VerifyResult.LOCKED

            if not code_valid:
                if attempt_count + 1 >= max_attempts:
                    cursor.execute(lock_sql, (OtpState.LOCKED.value, email, scope, pending))
                    conn.commit()
                    return VerifyResult.LOCKED
                cursor.execute(increment_sql, (email, scope, pending))
                conn.commit()
                return VerifyResult.INVALID_CODE

            cursor.execute(verify_sql, (OtpState.VERIFIED.value, now, email, scope, pending))
            conn.commit()
            return VerifyResult.SUCCESS

    def save_verified_profile(
        self,
        email: str,
        scope: str,
        profile: dict[str, Any],
        redirect_token: str,
        redirect_expires_at: datetime,
    ) -> None:
        sql = """
            UPDATE otp_sessions
            SET profile = %s,
                redirect_token = %s,
                redirect_expires_at = %s,
                redirect_consumed = FALSE
            WHERE email = %s AND scope = %s AND state = %s
        """
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(
                sql,
                (
                    Jsonb(profile),
                    redirect_token,
                    redirect_expires_at,
                    email,
                    scope,
                    OtpState.VERIFIED.value,
                ),
            )
            conn.commit()

    def get_verified_session(self, email: str, scope: str) -> VerifiedSession | None:
        sql = """
            SELECT email, scope, verified_at, profile
            FROM otp_sessions
            WHERE email = %s AND scope = %s AND state = %s AND verified_at IS NOT NULL
        """
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(sql, (email, scope, OtpState.VERIFIED.value))
            row = cursor.fetchone()
        if row is None:
            return None
        return VerifiedSession(row[0], row[1], row[2], row[3] or {})

    def consume_redirect_token(
        self, token: str, email: str, now: datetime
    ) -> VerifiedSession | None:
        sql = """
            UPDATE otp_sessions
            SET redirect_consumed = TRUE
            WHERE redirect_token = %s
              AND email = %s
              AND state = %s
              AND NOT redirect_consumed
              AND redirect_expires_at > %s
            RETURNING email, scope, verified_at, profile
        """
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(sql, (token, email, OtpState.VERIFIED.value, now))
            row = cursor.fetchone()
            conn.commit()
        if row is None:
            return None
        return VerifiedSession(row[0], row[1], row[2], row[3] or {})

    # Registrations

    def find_registration(self, event_id: str, email: str) -> RegistrationRecord | None:
        sql = f"""
            SELECT {_REGISTRATION_COLUMNS}
            FROM registrations
            WHERE event_id = %s AND email = %s AND order_id IS NULL
        """
        with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cursor:
            cursor.execute(sql, (event_id, email))
            row = cursor.fetchone()
        return _row_to_record(row) if row is not None else None

    def get_registration(self, registration_id: str) -> RegistrationRecord | None:
        sql = f"SELECT {_REGISTRATION_COLUMNS} FROM registrations WHERE id = %s"
        with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cursor:
            cursor.execute(sql, (registration_id,))
            row = cursor.fetchone()
        return _row_to_record(row) if row is not None else None

    def upsert_registration(
        self, record: RegistrationRecord, now: datetime
    ) -> tuple[RegistrationRecord, bool]:
        sql = f"""
            INSERT INTO registrations (id, event_id, email, fields, form_data,
                                       verified_by_external_registry, status,
                                       created_at, last_modified)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (event_id, email) WHERE order_id IS NULL DO UPDATE
            SET fields = registrations.fields || EXCLUDED.fields,
                form_data = EXCLUDED.form_data,
                verified_by_external_registry = registrations.verified_by_external_registry
                    OR EXCLUDED.verified_by_external_registry,
                last_modified = EXCLUDED.last_modified
            RETURNING {_REGISTRATION_COLUMNS}, (xmax = 0) AS inserted
        """
        with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cursor:
            cursor.execute(
                sql,
                (
                    record.id,
                    record.event_id,
                    record.email,
                    Jsonb(record.fields),
                    Jsonb(record.form_data),
                    record.verified_by_external_registry,
                    record.status,
                    now,
                    now,
                ),
            )
            row = cursor.fetchone()
            conn.commit()
        return _row_to_record(row), bool(row["inserted"])

    def create_registrations(
        self, records: list[RegistrationRecord], now: datetime
    ) -> list[RegistrationRecord]:
        """Insert an anonymous order; the connection rolls back on any failure."""
        sql = f"""
            INSERT INTO registrations (id, event_id, email, fields, form_data, order_id,
                                       attendee_index, verified_by_external_registry,
                                       status, created_at, last_modified)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {_REGISTRATION_COLUMNS}
        """
        created = []
        with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cursor:
            for record in records:
                cursor.execute(
                    sql,
                    (
                        record.id,
                        record.event_id,
                        record.email,
                        Jsonb(record.fields),
                        Jsonb(record.form_data),
                        record.order_id,
                        record.attendee_index,
                        record.verified_by_external_registry,
                        record.status,
                        now,
                        now,
                    ),
                )
                created.append(_row_to_record(cursor.fetchone()))
            conn.commit()
        return created

    def update_registration(
        self,
        registration_id: str,
        fields: dict[str, Any],
        form_data: dict[str, Any] | None,
        now: datetime,
    ) -> RegistrationRecord | None:
        sql = f"""
            UPDATE registrations
            SET fields = fields || %s,
                form_data = COALESCE(%s, form_data),
                last_modified = %s
            WHERE id = %s
            RETURNING {_REGISTRATION_COLUMNS}
        """
        with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cursor:
            cursor.execute(
                sql,
                (
                    Jsonb(fields),
                    Jsonb(form_data) if form_data is not None else None,
                    now,
                    registration_id,
                ),
            )
            row = cursor.fetchone()
            conn.commit()
        return _row_to_record(row) if row is not None else None

    # Attendee sessions

    def create_attendee_session(self, token: str, email: str, expires_at: datetime) -> None:
        sql = "INSERT INTO attendee_sessions (token, email, expires_at) VALUES (%s, %s, %s)"
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(sql, (token, email, expires_at))
            conn.commit()

    def get_attendee_email(self, token: str, now: datetime) -> str | None:
        sql = "SELECT email FROM attendee_sessions WHERE token = %s AND expires_at >= %s"
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(sql, (token, now))
            row = cursor.fetchone()
        return row[0] if row is not None else None

    def delete_attendee_session(self, token: str) -> None:
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute("DELETE FROM attendee_sessions WHERE token = %s", (token,))
            conn.commit()


def _row_to_record(row: dict[str, Any]) -> RegistrationRecord:
    return RegistrationRecord(
        id=row["id"],
        event_id=row["event_id"],
        email=row["email"],
        fields=row["fields"] or {},
        form_data=row["form_data"] or {},
        order_id=row["order_id"],
        attendee_index=row["attendee_index"],
        verified_by_external_registry=row["verified_by_external_registry"],
        status=row["status"],
        created_at=row["created_at"],
        last_modified=row["last_modified"],
    )


def run_migrations(pool: ConnectionPool) -> None:
    """
    Execute all SQL migration files from the migrations directory.

    Migrations are executed in sorted order (alphabetically by filename).
    Each migration should be idempotent (use IF NOT EXISTS, etc.).

    Args:
        pool: psycopg3 ConnectionPool instance
    """
    # Structure: eventreg/adapters/repository/postgres.py -> migrations/
    migrations_dir = Path(__file__).parent.parent.parent.parent / "migrations"

    if not migrations_dir.exists():
        logger.warning("Migrations directory not found: %s", migrations_dir)
        return

    sql_files = sorted(migrations_dir.glob("*.sql"))

    if not sql_files:
        logger.info("No migration files found")
        return

    logger.info("Running %d migration(s)", len(sql_files))

    for sql_file in sql_files:
        logger.info("Executing migration: %s", sql_file.name)
        try:
            sql_content = sql_file.read_text()

            with pool.connection() as conn:
                conn.execute(sql_content)

            logger.info("Migration complete: %s", sql_file.name)
        except Exception as e:
            logger.error("Migration failed: %s - %s", sql_file.name, e)
            raise RuntimeError(f"Database migration failed: {sql_file.name}") from e
