"""
Session persistence - Restore verification across page reloads.

Nothing read from the session store is trusted until the server confirms
it: an attendee token is checked against the attendee registration
endpoint, a stored verified email against the session-status endpoint.
"""

from dataclasses import dataclass

from .exceptions import NetworkFailure, TokenInvalid
from .models import CodeRequest, ExistingRegistrationRecord, normalize_email
from .ports import RegistrationGateway, SessionStore

SESSION_EXPIRED_NOTICE = "Your verification session has expired. Please verify your email again."
TOKEN_EXPIRED_NOTICE = "Your sign-in has expired. Please verify your email again."
UNCONFIRMED_NOTICE = "We could not confirm your previous verification. Please verify your email."


@dataclass(frozen=True)
class RestoredSession:
    email: str
    attendee_token: str | None = None
    existing: ExistingRegistrationRecord | None = None

    @property
    def via_token(self) -> bool:
        return self.attendee_token is not None


@dataclass(frozen=True)
class RestoreOutcome:
    session: RestoredSession | None = None
    notice: str | None = None


class SessionPersistence:
    """Reads and clears the session store on behalf of the coordinator."""

    def __init__(self, store: SessionStore, gateway: RegistrationGateway) -> None:
        self._store = store
        self._gateway = gateway

    async def restore(self, event_id: str, require_registration: bool = False) -> RestoreOutcome:
        """
        Re-validate stored state for event_id.

        Order: attendee token first, then the session-scoped verified email.
        Invalid state is cleared; a network failure leaves it in place but
        is not trusted either.

        With require_registration (qualified events), a valid token only
        restores an identity that already registered for event_id. Otherwise
        the verified-email path decides, since the server checks eligibility
        there.
        """
        notice = None
        credentials = self._store.get_attendee_credentials()
        if credentials is not None:
            token, email = credentials
            try:
                record = await self._gateway.find_existing_with_token(event_id, token)
            except TokenInvalid:
                self._store.clear_attendee_credentials()
                notice = TOKEN_EXPIRED_NOTICE
            except NetworkFailure:
                return RestoreOutcome(notice=UNCONFIRMED_NOTICE)
            else:
                if record is not None or not require_registration:
                    return RestoreOutcome(
                        RestoredSession(
                            normalize_email(email), attendee_token=token, existing=record
                        )
                    )

        stored_email = self._store.get_verified_email(event_id)
        if stored_email is None:
            return RestoreOutcome(notice=notice)

        try:
            status = await self._gateway.session_status(stored_email, event_id)
        except NetworkFailure:
            return RestoreOutcome(notice=UNCONFIRMED_NOTICE)

        confirmed = status.email is None or normalize_email(status.email) == normalize_email(
            stored_email
        )
        if status.verified and confirmed:
            return RestoreOutcome(RestoredSession(normalize_email(stored_email)))

        self._store.clear_verified_email(event_id)
        return RestoreOutcome(notice=SESSION_EXPIRED_NOTICE)

    def forget(self, event_id: str) -> None:
        """Explicit logout: drop every stored credential."""
        self._store.clear_verified_email(event_id)
        self._store.clear_attendee_credentials()

    def forget_attendee(self) -> None:
        self._store.clear_attendee_credentials()

    def forget_verified(self, event_id: str) -> None:
        self._store.clear_verified_email(event_id)

    def attendee_credentials(self) -> tuple[str, str] | None:
        return self._store.get_attendee_credentials()


class AttendeeLogin:
    """The separate "my events" login that yields a long-lived attendee token."""

    def __init__(self, gateway: RegistrationGateway, store: SessionStore) -> None:
        self._gateway = gateway
        self._store = store

    async def request_code(self, email: str) -> CodeRequest:
        return await self._gateway.request_attendee_code(normalize_email(email))

    async def confirm(self, email: str, code: str) -> str:
        normalized = normalize_email(email)
        token = await self._gateway.validate_attendee_code(normalized, code.strip())
        self._store.set_attendee_credentials(token, normalized)
        return token

    async def logout(self) -> None:
        credentials = self._store.get_attendee_credentials()
        self._store.clear_attendee_credentials()
        if credentials is not None:
            await self._gateway.logout_attendee(credentials[0])
