"""
API request and response models.

Pydantic models for FastAPI endpoint validation and OpenAPI schema generation.
Field names are snake_case in Python and camelCase on the wire.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serializing to camelCase and accepting either spelling."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OtpGenerateRequest(CamelModel):
    """Request model for registration code issuance."""

    email: str = Field(..., min_length=1, max_length=320)
    event_id: str = Field(..., min_length=1)
    distributor_id: str | None = None


class CodeResponse(CamelModel):
    """Response model for any code issuance; dev_code only in development mode."""

    accepted: bool
    dev_code: str | None = None


class OtpValidateRequest(CamelModel):
    """Request model for registration code validation."""

    email: str = Field(..., min_length=1, max_length=320)
    code: str = Field(..., min_length=1, max_length=12, description="Verification code")
    event_id: str = Field(..., min_length=1)


class ProfileModel(CamelModel):
    """Verified identity returned after validation or token consumption."""

    unicity_id: str = ""
    email: EmailStr
    first_name: str = ""
    last_name: str = ""
    phone: str | None = None


class OtpValidateResponse(CamelModel):
    """Response model for successful code validation."""

    verified: bool
    profile: ProfileModel | None = None
    verified_by_external_registry: bool = False
    is_qualified: bool = True
    qualification_message: str = ""
    redirect_token: str | None = None


class SessionStatusResponse(CamelModel):
    verified: bool
    email: str | None = None


class ExistingRequest(CamelModel):
    email: str = Field(..., min_length=1, max_length=320)
    event_id: str = Field(..., min_length=1)


class ExistingResponse(CamelModel):
    """Existing-registration lookup; registration fields are flattened."""

    success: bool = True
    exists: bool
    registration: dict[str, Any] | None = None


class ConsumeTokenRequest(CamelModel):
    token: str = Field(..., min_length=1)
    email: str = Field(..., min_length=1, max_length=320)
    event_id: str = Field(..., min_length=1)


class ConsumeTokenResponse(CamelModel):
    success: bool = True
    verified: bool = True
    profile: ProfileModel


class RegistrationResponse(CamelModel):
    """Response model for a single create, upsert or update."""

    success: bool = True
    id: str
    was_updated: bool
    message: str
    registration: dict[str, Any]


class BatchRegistrationResponse(CamelModel):
    """Response model for an anonymous multi-attendee order."""

    success: bool = True
    order_id: str
    message: str
    registrations: list[dict[str, Any]]


class AttendeeCodeRequest(CamelModel):
    email: str = Field(..., min_length=1, max_length=320)


class AttendeeValidateRequest(CamelModel):
    email: str = Field(..., min_length=1, max_length=320)
    code: str = Field(..., min_length=1, max_length=12)


class AttendeeSessionResponse(CamelModel):
    """Long-lived attendee token for the "my events" portal."""

    token: str
    email: EmailStr
    expires_at: datetime


class ErrorResponse(BaseModel):
    """Standard error response model."""

    detail: str
    code: str
    missing: list[str] | None = None
    invalid: list[str] | None = None
