"""
Shared fixtures for adversarial tests.

Attacks run against RegistrationService over the in-memory repository
(see tests/conftest.py) and, for HTTP-level attacks, the FastAPI app.
"""

from collections.abc import Iterator
from unittest.mock import Mock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from eventreg.adapters.repository.memory import InMemoryRegistrationRepository
from eventreg.api.dependencies import get_email_sender
from eventreg.api.main import create_app
from eventreg.config.settings import Settings, get_settings
from eventreg.domain.models import EventConfig, FieldTemplateEntry, Qualifier

FIELDS = [FieldTemplateEntry("shirtSize", type="select")]


@pytest.fixture(autouse=True)
def events(repository: InMemoryRegistrationRepository) -> None:
    repository.save_event(
        EventConfig(id="e1", registration_mode="qualified_verified", form_fields=FIELDS)
    )
    repository.save_event(EventConfig(id="e2", registration_mode="open_verified", form_fields=FIELDS))
    repository.add_qualifier(
        Qualifier(
            event_id="e1", email="victim@example.com", first_name="Vic", last_name="Tim"
        )
    )


@pytest.fixture
def app(repository: InMemoryRegistrationRepository, email_sender: Mock) -> Iterator[FastAPI]:
    application = create_app(repository)
    application.dependency_overrides[get_settings] = lambda: Settings(bcrypt_cost=4)
    application.dependency_overrides[get_email_sender] = lambda: email_sender
    try:
        yield application
    finally:
        application.dependency_overrides.clear()


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    return TestClient(app)
