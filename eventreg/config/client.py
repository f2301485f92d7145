"""
Client wiring - Factories for the registration page client.

The client-side counterpart of the API's dependency factories: settings
decide the API base URL, the request timeout and the support contact shown
to registrants who are not eligible.
"""

from eventreg.adapters.http import HttpRegistrationGateway
from eventreg.config.settings import Settings, get_settings
from eventreg.domain.coordinator import SubmissionCoordinator
from eventreg.domain.models import EventConfig, Invitation
from eventreg.domain.ports import Notifier, RegistrationGateway, SessionStore


def create_gateway(settings: Settings | None = None) -> HttpRegistrationGateway:
    """Create an HTTP gateway for the configured API."""
    settings = settings or get_settings()
    return HttpRegistrationGateway(settings.api_base_url, timeout=settings.client_timeout_seconds)


def create_coordinator(
    event: EventConfig,
    store: SessionStore,
    notifier: Notifier,
    invitation: Invitation | None = None,
    gateway: RegistrationGateway | None = None,
    settings: Settings | None = None,
) -> SubmissionCoordinator:
    """
    Create the coordinator for one registration page.

    A gateway is created from settings unless one is passed in.
    """
    settings = settings or get_settings()
    return SubmissionCoordinator(
        event,
        gateway or create_gateway(settings),
        store,
        notifier,
        invitation,
        support_email=settings.support_email,
    )
