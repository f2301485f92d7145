"""
FastAPI dependencies - Dependency injection factories.

This module provides Depends() factories for injecting
domain services and infrastructure adapters into routes.
"""

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from eventreg.adapters.smtp.console import ConsoleEmailSender
from eventreg.config.settings import Settings, get_settings
from eventreg.domain.ports import RegistrationRepository
from eventreg.domain.registration import RegistrationService

# Module-level singleton - ConsoleEmailSender is stateless
_email_sender = ConsoleEmailSender()


def get_repository(request: Request) -> RegistrationRepository:
    """
    Get the repository from app state.

    The repository (in-memory, or PostgreSQL over the connection pool) is
    created during app startup and stored in app.state.
    """
    return request.app.state.repository


def get_email_sender() -> ConsoleEmailSender:
    """Get console email sender (singleton)."""
    return _email_sender


def get_registration_service(
    repository: RegistrationRepository = Depends(get_repository),
    email_sender: ConsoleEmailSender = Depends(get_email_sender),
    settings: Settings = Depends(get_settings),
) -> RegistrationService:
    """
    Create registration service with injected dependencies.

    Wires together the repository, email sender and verification settings.
    """
    return RegistrationService(
        repository=repository,
        email_sender=email_sender,
        code_ttl_seconds=settings.otp_ttl_seconds,
        session_window_seconds=settings.session_window_seconds,
        redirect_token_ttl_seconds=settings.redirect_token_ttl_seconds,
        max_attempts=settings.max_attempts,
        rate_limit_max_codes=settings.rate_limit_max_codes,
        rate_limit_window_seconds=settings.rate_limit_window_seconds,
        attendee_session_ttl_seconds=settings.attendee_session_ttl_seconds,
        dev_mode=settings.dev_mode,
        dev_code=settings.dev_code,
        bcrypt_cost=settings.bcrypt_cost,
    )


# Bearer scheme for the long-lived attendee token
attendee_bearer = HTTPBearer(auto_error=False, description="Attendee session token")


def get_attendee_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(attendee_bearer),
) -> str | None:
    """Extract the attendee token from the Authorization header, if present."""
    if credentials is None or not credentials.credentials.strip():
        return None
    return credentials.credentials.strip()
