"""
Unit tests for InMemoryRegistrationRepository.

Tests verify:
- OTP state transitions and their ordering (expiry before code check)
- Redirect token consumption
- Upsert on (event, email) while anonymous orders stay separate
"""

from datetime import datetime, timedelta, timezone

import bcrypt
import pytest

from eventreg.adapters.repository.memory import InMemoryRegistrationRepository
from eventreg.domain.models import EventConfig, Qualifier, RegistrationRecord
from eventreg.domain.ports import VerifyResult

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
LATER = NOW + timedelta(minutes=10)


def hashed(code: str) -> str:
    return bcrypt.hashpw(code.encode(), bcrypt.gensalt(rounds=4)).decode()


@pytest.fixture
def pending(repository: InMemoryRegistrationRepository) -> InMemoryRegistrationRepository:
    repository.store_pending_code("a@x.com", "e1", hashed("123456"), NOW, LATER)
    return repository


class TestEvents:
    def test_lookup_by_id_or_slug(self, repository: InMemoryRegistrationRepository) -> None:
        repository.save_event(EventConfig(id="e1", slug="summit"))

        assert repository.get_event("e1").id == "e1"
        assert repository.get_event("summit").id == "e1"
        assert repository.get_event("nope") is None

    def test_returned_event_is_a_copy(self, repository: InMemoryRegistrationRepository) -> None:
        repository.save_event(EventConfig(id="e1"))

        repository.get_event("e1").status = "draft"

        assert repository.get_event("e1").status == "published"

    def test_qualifier_email_normalized(self, repository: InMemoryRegistrationRepository) -> None:
        repository.add_qualifier(Qualifier(event_id="e1", email=" A@X.com"))

        assert repository.get_qualifier("e1", "a@x.com") is not None


class TestVerifyCode:
    def test_success(self, pending: InMemoryRegistrationRepository) -> None:
        assert pending.verify_code("a@x.com", "e1", "123456", NOW, 5) is VerifyResult.SUCCESS
        assert pending.get_verified_session("a@x.com", "e1").verified_at == NOW

    def test_not_found(self, repository: InMemoryRegistrationRepository) -> None:
        assert repository.verify_code("a@x.com", "e1", "123456", NOW, 5) is VerifyResult.NOT_FOUND

    def test_expiry_checked_before_code(self, pending: InMemoryRegistrationRepository) -> None:
        late = LATER + timedelta(seconds=1)

        assert pending.verify_code("a@x.com", "e1", "123456", late, 5) is VerifyResult.EXPIRED
        assert pending.verify_code("a@x.com", "e1", "123456", NOW, 5) is VerifyResult.NOT_FOUND

    def test_invalid_code_counts_attempts(self, pending: InMemoryRegistrationRepository) -> None:
        results = [pending.verify_code("a@x.com", "e1", "000000", NOW, 3) for _ in range(3)]

        assert results == [VerifyResult.INVALID_CODE, VerifyResult.INVALID_CODE, VerifyResult.LOCKED]
        assert pending.verify_code("a@x.com", "e1", "123456", NOW, 3) is VerifyResult.LOCKED

    def test_new_code_replaces_session(self, pending: InMemoryRegistrationRepository) -> None:
        pending.store_pending_code("a@x.com", "e1", hashed("654321"), NOW, LATER)

        assert pending.verify_code("a@x.com", "e1", "123456", NOW, 5) is VerifyResult.INVALID_CODE
        assert pending.verify_code("a@x.com", "e1", "654321", NOW, 5) is VerifyResult.SUCCESS

    def test_codes_counted_for_rate_limit(self, pending: InMemoryRegistrationRepository) -> None:
        pending.store_pending_code("a@x.com", "attendee-portal", hashed("1"), LATER, LATER)

        assert pending.count_codes_since("a@x.com", NOW) == 2
        assert pending.count_codes_since("a@x.com", LATER) == 1

    def test_issued_codes_pruned_after_retention(self) -> None:
        repository = InMemoryRegistrationRepository(issued_retention=timedelta(minutes=15))
        repository.store_pending_code("a@x.com", "e1", hashed("1"), NOW, LATER)
        much_later = NOW + timedelta(hours=1)

        repository.store_pending_code("b@y.com", "e1", hashed("2"), much_later, much_later)

        assert repository.count_codes_since("a@x.com", NOW - timedelta(days=1)) == 0
        assert repository.count_codes_since("b@y.com", NOW) == 1
        assert len(repository._issued) == 1


class TestRedirectToken:
    @pytest.fixture
    def verified(self, pending: InMemoryRegistrationRepository) -> InMemoryRegistrationRepository:
        pending.verify_code("a@x.com", "e1", "123456", NOW, 5)
        pending.save_verified_profile("a@x.com", "e1", {"unicityId": "U100"}, "rt", LATER)
        return pending

    def test_consumed_once(self, verified: InMemoryRegistrationRepository) -> None:
        session = verified.consume_redirect_token("rt", "a@x.com", NOW)

        assert session.scope == "e1"
        assert session.profile == {"unicityId": "U100"}
        assert verified.consume_redirect_token("rt", "a@x.com", NOW) is None

    def test_expired(self, verified: InMemoryRegistrationRepository) -> None:
        assert verified.consume_redirect_token("rt", "a@x.com", LATER + timedelta(seconds=1)) is None

    def test_wrong_email(self, verified: InMemoryRegistrationRepository) -> None:
        assert verified.consume_redirect_token("rt", "b@y.com", NOW) is None

    def test_profile_not_saved_for_pending_session(
        self, pending: InMemoryRegistrationRepository
    ) -> None:
        pending.save_verified_profile("a@x.com", "e1", {}, "rt", LATER)

        assert pending.consume_redirect_token("rt", "a@x.com", NOW) is None


class TestRegistrations:
    def test_upsert_creates_then_merges(self, repository: InMemoryRegistrationRepository) -> None:
        first, created = repository.upsert_registration(
            RegistrationRecord(
                id="r1",
                event_id="e1",
                email="a@x.com",
                fields={"firstName": "Ada", "shirtSize": "M"},
                form_data={"track": "A"},
            ),
            NOW,
        )
        second, created_again = repository.upsert_registration(
            RegistrationRecord(
                id="r2", event_id="e1", email="a@x.com", fields={"shirtSize": "L"}, form_data={}
            ),
            LATER,
        )

        assert created and not created_again
        assert second.id == first.id == "r1"
        assert second.fields == {"firstName": "Ada", "shirtSize": "L"}
        assert second.form_data == {}
        assert second.created_at == NOW
        assert second.last_modified == LATER

    def test_batch_records_do_not_block_upsert(
        self, repository: InMemoryRegistrationRepository
    ) -> None:
        repository.create_registrations(
            [RegistrationRecord(id="o1", event_id="e1", email="a@x.com", order_id="order")], NOW
        )

        _, created = repository.upsert_registration(
            RegistrationRecord(id="r1", event_id="e1", email="a@x.com"), NOW
        )

        assert created
        assert repository.find_registration("e1", "a@x.com").id == "r1"

    def test_batch_rejects_duplicate_ids(self, repository: InMemoryRegistrationRepository) -> None:
        repository.create_registrations([RegistrationRecord(id="o1", event_id="e1", email="a@x.com")], NOW)

        with pytest.raises(ValueError):
            repository.create_registrations(
                [
                    RegistrationRecord(id="o2", event_id="e1", email="b@y.com"),
                    RegistrationRecord(id="o1", event_id="e1", email="c@y.com"),
                ],
                NOW,
            )

        assert repository.get_registration("o2") is None

    def test_update_keeps_form_data_when_omitted(
        self, repository: InMemoryRegistrationRepository
    ) -> None:
        repository.upsert_registration(
            RegistrationRecord(id="r1", event_id="e1", email="a@x.com", form_data={"track": "A"}),
            NOW,
        )

        updated = repository.update_registration("r1", {"shirtSize": "S"}, None, LATER)

        assert updated.fields == {"shirtSize": "S"}
        assert updated.form_data == {"track": "A"}
        assert repository.update_registration("missing", {}, None, LATER) is None


class TestAttendeeSessions:
    def test_lifecycle(self, repository: InMemoryRegistrationRepository) -> None:
        repository.create_attendee_session("tok", "a@x.com", LATER)

        assert repository.get_attendee_email("tok", NOW) == "a@x.com"
        assert repository.get_attendee_email("tok", LATER + timedelta(seconds=1)) is None

        repository.delete_attendee_session("tok")
        assert repository.get_attendee_email("tok", NOW) is None
