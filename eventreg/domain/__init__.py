"""
Domain layer - Pure business logic with zero framework imports.

This package contains the registration coordinator (client side) and the
registration service (server side). It defines its own port interfaces for
infrastructure abstraction, ensuring true hexagonal architecture decoupling.
"""

from .coordinator import SubmissionCoordinator
from .exceptions import (
    FieldLocked,
    FormValidationError,
    InvalidCode,
    InvalidEmail,
    InvalidTransition,
    NetworkFailure,
    QualificationDenied,
    RateLimited,
    RegistrationError,
    SessionExpired,
    TokenInvalid,
    VerificationFailed,
    VerificationRequired,
)
from .existing import ExistingRegistrationResolver
from .mode import ResolvedMode, resolve_mode
from .ports import (
    EmailSender,
    FlowStep,
    Notifier,
    OtpState,
    RegistrationGateway,
    RegistrationMode,
    RegistrationRepository,
    SessionStore,
    VerifyResult,
)
from .qualification import QualificationGate, evaluate_qualification
from .registration import RegistrationService
from .schema import DynamicFieldSchema
from .session import AttendeeLogin, SessionPersistence
from .verification import OtpVerificationService, VerificationFlow

__all__ = [
    "AttendeeLogin",
    "DynamicFieldSchema",
    "EmailSender",
    "ExistingRegistrationResolver",
    "FieldLocked",
    "FlowStep",
    "FormValidationError",
    "InvalidCode",
    "InvalidEmail",
    "InvalidTransition",
    "NetworkFailure",
    "Notifier",
    "OtpState",
    "OtpVerificationService",
    "QualificationDenied",
    "QualificationGate",
    "RateLimited",
    "RegistrationError",
    "RegistrationGateway",
    "RegistrationMode",
    "RegistrationRepository",
    "RegistrationService",
    "ResolvedMode",
    "SessionExpired",
    "SessionPersistence",
    "SessionStore",
    "SubmissionCoordinator",
    "TokenInvalid",
    "VerificationFailed",
    "VerificationFlow",
    "VerificationRequired",
    "VerifyResult",
    "evaluate_qualification",
    "resolve_mode",
]
