"""
Shared test fixtures and configuration.

This module provides pytest fixtures for:
- Client-side fakes (session store, notifier, mocked gateway)
- Server-side wiring (in-memory repository, controllable clock)
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest

from eventreg.adapters.notify.console import LoggingNotifier
from eventreg.adapters.repository.memory import InMemoryRegistrationRepository
from eventreg.adapters.session.memory import InMemorySessionStore
from eventreg.domain.models import (
    CodeRequest,
    OtpValidation,
    QualificationResult,
    SessionStatus,
    VerifiedProfile,
)
from eventreg.domain.ports import RegistrationGateway
from eventreg.domain.registration import RegistrationService


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def notifier() -> LoggingNotifier:
    return LoggingNotifier()


@pytest.fixture
def gateway() -> AsyncMock:
    """Gateway mock answering like a server that knows nobody."""
    mock = AsyncMock(spec=RegistrationGateway)
    mock.request_code.return_value = CodeRequest(accepted=True)
    mock.validate_code.return_value = OtpValidation(
        verified=True,
        profile=VerifiedProfile(unicity_id="", email="a@x.com"),
        qualification=QualificationResult(is_qualified=True),
    )
    mock.session_status.return_value = SessionStatus(verified=False)
    mock.find_existing.return_value = None
    mock.find_existing_with_token.return_value = None
    mock.create_registration.return_value = {
        "id": "reg-1",
        "wasUpdated": False,
        "message": "Registration successful",
    }
    mock.update_registration.return_value = {
        "id": "reg-1",
        "wasUpdated": True,
        "message": "Registration updated",
    }
    return mock


@pytest.fixture
def repository() -> InMemoryRegistrationRepository:
    return InMemoryRegistrationRepository()


@pytest.fixture
def email_sender() -> Mock:
    return Mock()


@pytest.fixture
def service(
    repository: InMemoryRegistrationRepository, email_sender: Mock, clock: FakeClock
) -> RegistrationService:
    """Service with a cheap bcrypt cost and a controllable clock."""
    return RegistrationService(
        repository=repository,
        email_sender=email_sender,
        bcrypt_cost=4,
        clock=clock,
    )
