"""
Unit tests for RegistrationService domain logic.

Tests domain logic against the in-memory repository to verify:
- Verification code generation, hashing and rate limiting
- OTP validation (wrong code, expiry, lockout, last-write-wins)
- Qualification and verified-session checks
- One-time redirect tokens
- Registration create/upsert/update and anonymous batches
- Attendee portal sessions
"""

import re
from unittest.mock import Mock, patch

import bcrypt
import pytest

from eventreg.adapters.repository.memory import InMemoryRegistrationRepository
from eventreg.domain.exceptions import (
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
from eventreg.domain.models import (
    EventConfig,
    FieldTemplateEntry,
    OtpValidation,
    Qualifier,
    RegistrationRecord,
)
from eventreg.domain.registration import ATTENDEE_SCOPE, RegistrationService

FIELDS = [
    FieldTemplateEntry("firstName", required=True),
    FieldTemplateEntry("lastName", required=True),
    FieldTemplateEntry("shirtSize"),
    FieldTemplateEntry("favouriteTrack"),
]

ADA = {
    "email": "a@x.com",
    "unicityId": "U100",
    "firstName": "Ada",
    "lastName": "Lovelace",
    "shirtSize": "M",
}


@pytest.fixture(autouse=True)
def events(repository: InMemoryRegistrationRepository) -> None:
    repository.save_event(
        EventConfig(
            id="e1", slug="summit", registration_mode="qualified_verified", form_fields=FIELDS
        )
    )
    repository.save_event(EventConfig(id="e2", registration_mode="open_verified", form_fields=FIELDS))
    repository.save_event(
        EventConfig(id="e3", registration_mode="open_anonymous", form_fields=FIELDS, max_tickets=3)
    )
    repository.save_event(EventConfig(id="draft", registration_mode="open_verified", status="draft"))
    repository.add_qualifier(
        Qualifier(
            event_id="e1", email="A@x.com", unicity_id="U100", first_name="Ada", last_name="Lovelace"
        )
    )


def sent_code(email_sender: Mock) -> str:
    return email_sender.send_verification_code.call_args[0][1]


def verify(
    service: RegistrationService, email_sender: Mock, email: str = "a@x.com", event_id: str = "e1"
) -> OtpValidation:
    service.generate_code(email, event_id)
    return service.validate_code(email, sent_code(email_sender), event_id)


class TestCodeGeneration:
    """Tests for verification code issuance."""

    def test_code_is_six_digits(self, service: RegistrationService, email_sender: Mock) -> None:
        """Verification code is a 6-digit string (preserves leading zeros)."""
        service.generate_code("a@x.com", "e1")

        code = sent_code(email_sender)
        assert isinstance(code, str)
        assert re.match(r"^\d{6}$", code)

    def test_code_sent_to_normalized_email(
        self, service: RegistrationService, email_sender: Mock
    ) -> None:
        """Code is sent to the normalized email with the TTL in minutes."""
        service.generate_code("  A@X.COM  ", "e1")

        email, _, minutes = email_sender.send_verification_code.call_args[0]
        assert email == "a@x.com"
        assert minutes == 10

    def test_code_not_returned_outside_dev_mode(self, service: RegistrationService) -> None:
        result = service.generate_code("a@x.com", "e1")

        assert result.accepted
        assert result.dev_code is None

    def test_dev_mode_uses_fixed_code(
        self, repository: InMemoryRegistrationRepository, email_sender: Mock
    ) -> None:
        """Dev mode issues the configured code and echoes it back."""
        service = RegistrationService(repository, email_sender, dev_mode=True, bcrypt_cost=4)

        result = service.generate_code("a@x.com", "e1")

        assert result.dev_code == "123456"
        assert service.validate_code("a@x.com", "123456", "e1").verified

    def test_event_resolved_by_slug(self, service: RegistrationService, email_sender: Mock) -> None:
        service.generate_code("a@x.com", "summit")

        result = service.validate_code("a@x.com", sent_code(email_sender), "summit")

        assert result.verified

    def test_malformed_email_rejected(self, service: RegistrationService, email_sender: Mock) -> None:
        with pytest.raises(InvalidEmail):
            service.generate_code("not-an-email", "e1")

        email_sender.send_verification_code.assert_not_called()

    def test_unknown_event(self, service: RegistrationService) -> None:
        with pytest.raises(EventNotFound):
            service.generate_code("a@x.com", "missing")

    def test_unpublished_event(self, service: RegistrationService) -> None:
        with pytest.raises(RegistrationClosed):
            service.generate_code("a@x.com", "draft")

    def test_rate_limit(self, service: RegistrationService, clock) -> None:
        """The sixth code inside the window is refused; the window slides."""
        for _ in range(5):
            service.generate_code("a@x.com", "e1")

        with pytest.raises(RateLimited):
            service.generate_code("a@x.com", "e1")

        clock.advance(901)
        assert service.generate_code("a@x.com", "e1").accepted


class TestCodeHashing:
    """Codes are stored as bcrypt hashes, never plaintext."""

    def test_stored_hash_is_bcrypt(self, email_sender: Mock) -> None:
        repo = Mock()
        repo.get_event.return_value = EventConfig(id="e1")
        repo.count_codes_since.return_value = 0

        service = RegistrationService(repository=repo, email_sender=email_sender, bcrypt_cost=4)
        service.generate_code("a@x.com", "e1")

        email, scope, code_hash, _, _ = repo.store_pending_code.call_args[0]
        code = sent_code(email_sender)
        assert (email, scope) == ("a@x.com", "e1")
        assert code_hash != code
        assert re.match(r"^\$2[aby]\$", code_hash)
        assert bcrypt.checkpw(code.encode(), code_hash.encode())

    def test_default_cost_factor_at_least_10(self) -> None:
        service = RegistrationService(repository=Mock(), email_sender=Mock())

        cost = int(service._hash_code("123456").split("$")[2])

        assert cost >= 10


class TestCodeValidation:
    """Tests for the PENDING -> VERIFIED | EXPIRED | LOCKED transitions."""

    def test_qualified_profile(self, service: RegistrationService, email_sender: Mock) -> None:
        """A roster email gets its distributor profile and a positive verdict."""
        result = verify(service, email_sender)

        assert result.verified
        assert result.profile.unicity_id == "U100"
        assert result.profile.first_name == "Ada"
        assert result.profile.verified_by_external_registry
        assert result.qualification.is_qualified
        assert result.redirect_token

    def test_unqualified_email_still_verifies(
        self, service: RegistrationService, email_sender: Mock
    ) -> None:
        """Eligibility is reported, not enforced, at validation time."""
        result = verify(service, email_sender, "b@y.com")

        assert result.verified
        assert not result.qualification.is_qualified

    def test_open_event_always_qualifies(
        self, service: RegistrationService, email_sender: Mock
    ) -> None:
        result = verify(service, email_sender, "b@y.com", "e2")

        assert result.qualification.is_qualified

    def test_returning_registrant_profile_from_prior_registration(
        self,
        service: RegistrationService,
        email_sender: Mock,
        repository: InMemoryRegistrationRepository,
        clock,
    ) -> None:
        repository.upsert_registration(
            RegistrationRecord(
                id="r1",
                event_id="e2",
                email="b@y.com",
                fields={"firstName": "Grace", "lastName": "Hopper", "phone": "+15551234567"},
            ),
            clock(),
        )

        result = verify(service, email_sender, "b@y.com", "e2")

        assert result.profile.first_name == "Grace"
        assert result.profile.last_name == "Hopper"
        assert result.profile.phone == "+15551234567"
        assert result.profile.unicity_id == ""

    def test_unknown_email_gets_bare_profile(
        self, service: RegistrationService, email_sender: Mock
    ) -> None:
        result = verify(service, email_sender, "c@y.com", "e2")

        assert result.profile.email == "c@y.com"
        assert result.profile.first_name == ""
        assert result.profile.phone is None

    def test_wrong_code_does_not_extend_expiry(
        self, service: RegistrationService, email_sender: Mock, clock
    ) -> None:
        service.generate_code("a@x.com", "e1")
        code = sent_code(email_sender)
        wrong = "000000" if code != "000000" else "111111"

        clock.advance(300)
        with pytest.raises(InvalidCode):
            service.validate_code("a@x.com", wrong, "e1")

        clock.advance(301)
        with pytest.raises(SessionExpired, match="expired"):
            service.validate_code("a@x.com", code, "e1")

    def test_lockout_after_max_attempts(
        self, service: RegistrationService, email_sender: Mock
    ) -> None:
        """The fifth wrong code locks the session; the right code no longer works."""
        service.generate_code("a@x.com", "e1")
        code = sent_code(email_sender)
        wrong = "000000" if code != "000000" else "111111"

        for _ in range(4):
            with pytest.raises(InvalidCode):
                service.validate_code("a@x.com", wrong, "e1")
        with pytest.raises(SessionExpired, match="Too many"):
            service.validate_code("a@x.com", wrong, "e1")
        with pytest.raises(SessionExpired):
            service.validate_code("a@x.com", code, "e1")

    def test_newest_code_wins(self, service: RegistrationService) -> None:
        with patch.object(
            RegistrationService, "_generate_verification_code", side_effect=["111111", "222222"]
        ):
            service.generate_code("a@x.com", "e1")
            service.generate_code("a@x.com", "e1")

        with pytest.raises(InvalidCode):
            service.validate_code("a@x.com", "111111", "e1")
        assert service.validate_code("a@x.com", "222222", "e1").verified

    def test_code_is_single_use(self, service: RegistrationService, email_sender: Mock) -> None:
        service.generate_code("a@x.com", "e1")
        code = sent_code(email_sender)
        service.validate_code("a@x.com", code, "e1")

        with pytest.raises(SessionExpired):
            service.validate_code("a@x.com", code, "e1")

    def test_no_pending_code(self, service: RegistrationService) -> None:
        with pytest.raises(SessionExpired, match="No pending"):
            service.validate_code("a@x.com", "123456", "e1")

    def test_codes_are_scoped_to_event(
        self, service: RegistrationService, email_sender: Mock
    ) -> None:
        service.generate_code("a@x.com", "e1")

        with pytest.raises(SessionExpired):
            service.validate_code("a@x.com", sent_code(email_sender), "e2")


class TestSessionStatus:
    def test_live_session(self, service: RegistrationService, email_sender: Mock) -> None:
        verify(service, email_sender)

        status = service.session_status("A@x.com", "e1")

        assert status.verified
        assert status.email == "a@x.com"

    def test_no_session(self, service: RegistrationService) -> None:
        assert not service.session_status("a@x.com", "e1").verified

    def test_session_window_elapsed(
        self, service: RegistrationService, email_sender: Mock, clock
    ) -> None:
        verify(service, email_sender)

        clock.advance(1801)

        assert not service.session_status("a@x.com", "e1").verified

    def test_unqualified_session_reported_unverified(
        self, service: RegistrationService, email_sender: Mock
    ) -> None:
        verify(service, email_sender, "b@y.com")

        assert not service.session_status("b@y.com", "e1").verified


class TestRedirectToken:
    def test_consumed_once(self, service: RegistrationService, email_sender: Mock) -> None:
        """The token yields the verified profile exactly once."""
        token = verify(service, email_sender).redirect_token

        profile = service.consume_token(token, "a@x.com", "e1")

        assert profile.unicity_id == "U100"
        assert profile.email == "a@x.com"
        with pytest.raises(TokenInvalid):
            service.consume_token(token, "a@x.com", "e1")

    def test_other_email_rejected(self, service: RegistrationService, email_sender: Mock) -> None:
        token = verify(service, email_sender).redirect_token

        with pytest.raises(TokenInvalid):
            service.consume_token(token, "b@y.com", "e1")

    def test_other_event_rejected(self, service: RegistrationService, email_sender: Mock) -> None:
        token = verify(service, email_sender).redirect_token

        with pytest.raises(TokenInvalid):
            service.consume_token(token, "a@x.com", "e2")

    def test_expired_token(self, service: RegistrationService, email_sender: Mock, clock) -> None:
        token = verify(service, email_sender).redirect_token

        clock.advance(601)

        with pytest.raises(TokenInvalid):
            service.consume_token(token, "a@x.com", "e1")

    def test_unqualified_identity(self, service: RegistrationService, email_sender: Mock) -> None:
        token = verify(service, email_sender, "b@y.com").redirect_token

        with pytest.raises(QualificationDenied):
            service.consume_token(token, "b@y.com", "e1")


class TestRegister:
    """Tests for create/upsert of verified registrations."""

    def test_requires_verification(self, service: RegistrationService) -> None:
        with pytest.raises(VerificationRequired):
            service.register("e1", ADA)

    def test_creates_registration(self, service: RegistrationService, email_sender: Mock) -> None:
        verify(service, email_sender)

        outcome = service.register("e1", {**ADA, "email": " A@X.com "})

        assert outcome.created
        assert outcome.primary.email == "a@x.com"
        assert outcome.primary.fields["unicityId"] == "U100"
        assert outcome.primary.verified_by_external_registry

    def test_second_submit_updates_same_record(
        self, service: RegistrationService, email_sender: Mock, repository: InMemoryRegistrationRepository
    ) -> None:
        """Create on (event, email) upserts: one record, fields merged."""
        verify(service, email_sender)
        first = service.register("e1", ADA)

        second = service.register("e1", {**ADA, "shirtSize": "XL"})

        assert not second.created
        assert second.primary.id == first.primary.id
        assert repository.find_registration("e1", "a@x.com").fields["shirtSize"] == "XL"

    def test_custom_fields_stored_as_form_data(
        self, service: RegistrationService, email_sender: Mock
    ) -> None:
        verify(service, email_sender, "b@y.com", "e2")

        outcome = service.register(
            "e2",
            {
                "email": "b@y.com",
                "firstName": "Bea",
                "lastName": "Young",
                "formData": {"favouriteTrack": "B"},
                "verifiedByExternalRegistry": True,
            },
        )

        assert outcome.primary.form_data == {"favouriteTrack": "B"}
        assert "verifiedByExternalRegistry" not in outcome.primary.fields

    def test_unqualified_email_refused(
        self, service: RegistrationService, email_sender: Mock
    ) -> None:
        verify(service, email_sender, "b@y.com")

        with pytest.raises(QualificationDenied):
            service.register("e1", {**ADA, "email": "b@y.com"})

    def test_missing_fields(self, service: RegistrationService, email_sender: Mock) -> None:
        verify(service, email_sender)

        with pytest.raises(FormValidationError) as exc_info:
            service.register("e1", {"email": "a@x.com", "firstName": "Ada"})

        assert exc_info.value.missing == ["lastName"]

    def test_expired_session_refused(
        self, service: RegistrationService, email_sender: Mock, clock
    ) -> None:
        verify(service, email_sender)
        clock.advance(1801)

        with pytest.raises(VerificationRequired):
            service.register("e1", ADA)

    def test_attendee_token_authenticates(
        self, service: RegistrationService, email_sender: Mock
    ) -> None:
        service.request_attendee_code("a@x.com")
        session = service.validate_attendee_code("a@x.com", sent_code(email_sender))

        outcome = service.register("e1", ADA, attendee_token=session.token)

        assert outcome.created

    def test_prior_registration_requalifies(
        self,
        service: RegistrationService,
        email_sender: Mock,
        repository: InMemoryRegistrationRepository,
        clock,
    ) -> None:
        """Someone already registered stays eligible after the window closes."""
        verify(service, email_sender)
        service.register("e1", ADA)
        event = repository.get_event("e1")
        event.qualification_end = clock()
        repository.save_event(event)
        clock.advance(60)

        assert service.session_status("a@x.com", "e1").verified


class TestAnonymousBatch:
    def test_one_record_per_attendee(self, service: RegistrationService) -> None:
        """All attendees share an order id; no verification is needed."""
        outcome = service.register(
            "e3",
            {
                **ADA,
                "ticketCount": 3,
                "attendees": [
                    dict(ADA),
                    {"firstName": "Bob", "lastName": "Two", "email": "B@y.com"},
                    {"firstName": "Cy", "lastName": "Three", "email": "c@y.com", "phone": "+15551234567"},
                ],
            },
        )

        assert outcome.created
        assert outcome.order_id
        assert [r.attendee_index for r in outcome.records] == [0, 1, 2]
        assert {r.order_id for r in outcome.records} == {outcome.order_id}
        assert outcome.records[1].email == "b@y.com"
        assert outcome.records[2].fields["phone"] == "+15551234567"

    def test_repeat_orders_are_separate(self, service: RegistrationService) -> None:
        first = service.register("e3", ADA)
        second = service.register("e3", ADA)

        assert first.primary.id != second.primary.id
        assert first.order_id != second.order_id

    def test_ticket_limit(self, service: RegistrationService) -> None:
        attendees = [dict(ADA)] + [
            {"firstName": "X", "lastName": "Y", "email": f"p{i}@y.com"} for i in range(3)
        ]

        with pytest.raises(FormValidationError) as exc_info:
            service.register("e3", {**ADA, "attendees": attendees})

        assert exc_info.value.invalid == ["ticketCount"]

    def test_incomplete_attendee(self, service: RegistrationService) -> None:
        with pytest.raises(FormValidationError) as exc_info:
            service.register("e3", {**ADA, "attendees": [dict(ADA), {"firstName": "Bob"}]})

        assert exc_info.value.missing == ["attendee 2 lastName", "attendee 2 email"]


class TestFindExisting:
    def test_requires_verified_session(self, service: RegistrationService) -> None:
        with pytest.raises(SessionExpired):
            service.find_existing("a@x.com", "e1")

    def test_returns_prior_registration(
        self, service: RegistrationService, email_sender: Mock
    ) -> None:
        verify(service, email_sender)
        created = service.register("e1", ADA).primary

        assert service.find_existing("a@x.com", "e1").id == created.id

    def test_none_when_not_registered(
        self, service: RegistrationService, email_sender: Mock
    ) -> None:
        verify(service, email_sender)

        assert service.find_existing("a@x.com", "e1") is None


class TestUpdate:
    """Tests for updates to an owned registration."""

    @pytest.fixture
    def registration_id(self, service: RegistrationService, email_sender: Mock) -> str:
        verify(service, email_sender)
        return service.register("e1", ADA).primary.id

    def test_partial_update_merges(self, service: RegistrationService, registration_id: str) -> None:
        updated = service.update("e1", registration_id, {"email": "a@x.com", "shirtSize": "S"})

        assert updated.fields["shirtSize"] == "S"
        assert updated.fields["firstName"] == "Ada"

    def test_unknown_registration(self, service: RegistrationService, registration_id: str) -> None:
        with pytest.raises(RegistrationNotFound):
            service.update("e1", "nope", ADA)

    def test_registration_of_other_event(
        self, service: RegistrationService, registration_id: str
    ) -> None:
        with pytest.raises(RegistrationNotFound):
            service.update("e2", registration_id, ADA)

    def test_requires_authentication(
        self, service: RegistrationService, registration_id: str, clock
    ) -> None:
        clock.advance(1801)

        with pytest.raises(VerificationRequired):
            service.update("e1", registration_id, ADA)

    def test_email_cannot_change(self, service: RegistrationService, registration_id: str) -> None:
        with pytest.raises(IdentityMismatch):
            service.update("e1", registration_id, {**ADA, "email": "b@y.com"})

    def test_other_attendee_token(
        self, service: RegistrationService, email_sender: Mock, registration_id: str
    ) -> None:
        service.request_attendee_code("b@y.com")
        session = service.validate_attendee_code("b@y.com", sent_code(email_sender))

        with pytest.raises(IdentityMismatch):
            service.update("e1", registration_id, ADA, attendee_token=session.token)

    def test_unknown_attendee_token(
        self, service: RegistrationService, registration_id: str
    ) -> None:
        with pytest.raises(TokenInvalid):
            service.update("e1", registration_id, ADA, attendee_token="forged")


class TestAttendeePortal:
    def test_login_lookup_logout(
        self, service: RegistrationService, email_sender: Mock, clock
    ) -> None:
        verify(service, email_sender)
        created = service.register("e1", ADA).primary

        service.request_attendee_code("A@x.com")
        session = service.validate_attendee_code("a@x.com", sent_code(email_sender))

        assert session.email == "a@x.com"
        assert (session.expires_at - clock()).total_seconds() == 86400
        assert service.attendee_registration("e1", session.token).id == created.id

        service.logout_attendee(session.token)
        with pytest.raises(TokenInvalid):
            service.attendee_registration("e1", session.token)

    def test_session_expires(self, service: RegistrationService, email_sender: Mock, clock) -> None:
        service.request_attendee_code("a@x.com")
        session = service.validate_attendee_code("a@x.com", sent_code(email_sender))

        clock.advance(86401)

        with pytest.raises(TokenInvalid):
            service.attendee_registration("e1", session.token)

    def test_attendee_codes_use_own_scope(
        self, service: RegistrationService, email_sender: Mock
    ) -> None:
        """A portal code cannot be used to verify an event registration."""
        service.request_attendee_code("a@x.com")
        code = sent_code(email_sender)

        with pytest.raises(SessionExpired):
            service.validate_code("a@x.com", code, "e1")
        assert service.validate_attendee_code("a@x.com", code).email == "a@x.com"

    def test_attendee_scope_constant(self) -> None:
        assert ATTENDEE_SCOPE == "attendee-portal"
