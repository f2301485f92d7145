"""
API routes - Verification, registration and attendee endpoints.

This module defines the HTTP endpoints (mounted under /api):
- POST /register/otp/generate - Send a verification code
- POST /register/otp/validate - Validate a code, report qualification
- GET  /register/session-status - Is a stored verification still live?
- POST /register/otp/session/consume - Exchange a one-time redirect token
- POST /register/existing - Prior registration for a verified email
- POST /events/{event_id}/register - Create, upsert, or anonymous batch
- PUT  /events/{event_id}/register/{registration_id} - Update
- POST /attendee/otp/generate, /attendee/otp/validate, /attendee/logout
- GET  /attendee/registration/{event_id} - Prior registration via token

Domain exceptions propagate to the handlers in eventreg.api.errors.
Routes are plain functions: the service does blocking I/O (bcrypt,
psycopg), so FastAPI runs them in its threadpool.
"""

from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Response, status

from eventreg.api.dependencies import get_attendee_token, get_registration_service
from eventreg.api.models import (
    AttendeeCodeRequest,
    AttendeeSessionResponse,
    AttendeeValidateRequest,
    BatchRegistrationResponse,
    CodeResponse,
    ConsumeTokenRequest,
    ConsumeTokenResponse,
    ErrorResponse,
    ExistingRequest,
    ExistingResponse,
    OtpGenerateRequest,
    OtpValidateRequest,
    OtpValidateResponse,
    ProfileModel,
    RegistrationResponse,
    SessionStatusResponse,
)
from eventreg.domain.exceptions import TokenInvalid
from eventreg.domain.models import RegistrationRecord, VerifiedProfile
from eventreg.domain.registration import RegistrationService

router = APIRouter()

CREATED_MESSAGE = "Registration successful"
UPDATED_MESSAGE = "Registration updated"
BATCH_MESSAGE = "Registration complete. Registrations cannot be edited after submission."

_CODE_ERRORS: dict[int | str, dict[str, Any]] = {
    400: {"model": ErrorResponse, "description": "Invalid email or code, or registration closed"},
    403: {"model": ErrorResponse, "description": "Session expired or locked"},
    404: {"model": ErrorResponse, "description": "Event not found"},
    429: {"model": ErrorResponse, "description": "Too many codes requested"},
}


def _profile_model(profile: VerifiedProfile) -> ProfileModel:
    return ProfileModel(
        unicity_id=profile.unicity_id,
        email=profile.email,
        first_name=profile.first_name,
        last_name=profile.last_name,
        phone=profile.phone,
    )


def _registration_view(record: RegistrationRecord) -> dict[str, Any]:
    """Flattened camelCase view: columns top-level, custom fields in formData."""
    view: dict[str, Any] = {"id": record.id, "eventId": record.event_id, "email": record.email}
    view.update(record.fields)
    view["formData"] = record.form_data
    view["verifiedByExternalRegistry"] = record.verified_by_external_registry
    view["status"] = record.status
    if record.order_id is not None:
        view["orderId"] = record.order_id
    if record.last_modified is not None:
        view["lastModified"] = record.last_modified.isoformat()
    return view


# Registration verification


@router.post(
    "/register/otp/generate",
    response_model=CodeResponse,
    response_model_exclude_none=True,
    responses=_CODE_ERRORS,
    tags=["verification"],
    summary="Send a registration verification code",
)
def generate_code(
    body: OtpGenerateRequest,
    service: RegistrationService = Depends(get_registration_service),
) -> CodeResponse:
    """
    Send a 6-digit code to the email, scoped to the event.

    Any code sent earlier for the same email and event stops working.
    """
    result = service.generate_code(body.email, body.event_id, body.distributor_id)
    return CodeResponse(accepted=result.accepted, dev_code=result.dev_code)


@router.post(
    "/register/otp/validate",
    response_model=OtpValidateResponse,
    responses=_CODE_ERRORS,
    tags=["verification"],
    summary="Validate a registration verification code",
)
def validate_code(
    body: OtpValidateRequest,
    service: RegistrationService = Depends(get_registration_service),
) -> OtpValidateResponse:
    validation = service.validate_code(body.email, body.code, body.event_id)
    profile = validation.profile
    qualification = validation.qualification
    return OtpValidateResponse(
        verified=validation.verified,
        profile=_profile_model(profile) if profile else None,
        verified_by_external_registry=bool(profile and profile.verified_by_external_registry),
        is_qualified=qualification.is_qualified if qualification else True,
        qualification_message=qualification.message if qualification else "",
        redirect_token=validation.redirect_token,
    )


@router.get(
    "/register/session-status",
    response_model=SessionStatusResponse,
    responses={404: {"model": ErrorResponse, "description": "Event not found"}},
    tags=["verification"],
    summary="Check a stored verification",
)
def session_status(
    email: str = Query(..., min_length=1),
    event_id: str = Query(..., alias="eventId", min_length=1),
    service: RegistrationService = Depends(get_registration_service),
) -> SessionStatusResponse:
    result = service.session_status(email, event_id)
    return SessionStatusResponse(verified=result.verified, email=result.email)


@router.post(
    "/register/otp/session/consume",
    response_model=ConsumeTokenResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Token invalid, used or expired"},
        403: {"model": ErrorResponse, "description": "Not qualified"},
    },
    tags=["verification"],
    summary="Consume a one-time redirect token",
)
def consume_token(
    body: ConsumeTokenRequest,
    service: RegistrationService = Depends(get_registration_service),
) -> ConsumeTokenResponse:
    profile = service.consume_token(body.token, body.email, body.event_id)
    return ConsumeTokenResponse(profile=_profile_model(profile))


# Registrations


@router.post(
    "/register/existing",
    response_model=ExistingResponse,
    responses={403: {"model": ErrorResponse, "description": "Email not verified"}},
    tags=["registrations"],
    summary="Look up a prior registration for a verified email",
)
def find_existing(
    body: ExistingRequest,
    service: RegistrationService = Depends(get_registration_service),
) -> ExistingResponse:
    record = service.find_existing(body.email, body.event_id)
    if record is None:
        return ExistingResponse(exists=False)
    return ExistingResponse(exists=True, registration=_registration_view(record))


@router.post(
    "/events/{event_id}/register",
    response_model=RegistrationResponse | BatchRegistrationResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        200: {"model": RegistrationResponse, "description": "Existing registration updated"},
        403: {"model": ErrorResponse, "description": "Verification required or not qualified"},
        404: {"model": ErrorResponse, "description": "Event not found"},
        422: {"model": ErrorResponse, "description": "Missing or invalid fields"},
    },
    tags=["registrations"],
    summary="Register for an event",
)
def register(
    event_id: str,
    response: Response,
    payload: dict[str, Any] = Body(...),
    attendee_token: str | None = Depends(get_attendee_token),
    service: RegistrationService = Depends(get_registration_service),
) -> RegistrationResponse | BatchRegistrationResponse:
    """
    Create a registration.

    Verified events upsert on (event, email): a second submission updates
    the first and returns 200 with wasUpdated. Anonymous events create one
    registration per entry in ``attendees`` under a shared orderId.
    """
    outcome = service.register(event_id, payload, attendee_token)
    if outcome.order_id is not None:
        return BatchRegistrationResponse(
            order_id=outcome.order_id,
            message=BATCH_MESSAGE,
            registrations=[_registration_view(record) for record in outcome.records],
        )

    record = outcome.primary
    if not outcome.created:
        response.status_code = status.HTTP_200_OK
    return RegistrationResponse(
        id=record.id,
        was_updated=not outcome.created,
        message=CREATED_MESSAGE if outcome.created else UPDATED_MESSAGE,
        registration=_registration_view(record),
    )


@router.put(
    "/events/{event_id}/register/{registration_id}",
    response_model=RegistrationResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Attendee token invalid"},
        403: {"model": ErrorResponse, "description": "Verification required or not the owner"},
        404: {"model": ErrorResponse, "description": "Registration not found"},
        422: {"model": ErrorResponse, "description": "Missing or invalid fields"},
    },
    tags=["registrations"],
    summary="Update a registration",
)
def update_registration(
    event_id: str,
    registration_id: str,
    payload: dict[str, Any] = Body(...),
    attendee_token: str | None = Depends(get_attendee_token),
    service: RegistrationService = Depends(get_registration_service),
) -> RegistrationResponse:
    record = service.update(event_id, registration_id, payload, attendee_token)
    return RegistrationResponse(
        id=record.id,
        was_updated=True,
        message=UPDATED_MESSAGE,
        registration=_registration_view(record),
    )


# Attendee portal


@router.post(
    "/attendee/otp/generate",
    response_model=CodeResponse,
    response_model_exclude_none=True,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid email"},
        429: {"model": ErrorResponse, "description": "Too many codes requested"},
    },
    tags=["attendee"],
    summary="Send an attendee portal login code",
)
def generate_attendee_code(
    body: AttendeeCodeRequest,
    service: RegistrationService = Depends(get_registration_service),
) -> CodeResponse:
    result = service.request_attendee_code(body.email)
    return CodeResponse(accepted=result.accepted, dev_code=result.dev_code)


@router.post(
    "/attendee/otp/validate",
    response_model=AttendeeSessionResponse,
    responses=_CODE_ERRORS,
    tags=["attendee"],
    summary="Exchange a login code for an attendee token",
)
def validate_attendee_code(
    body: AttendeeValidateRequest,
    service: RegistrationService = Depends(get_registration_service),
) -> AttendeeSessionResponse:
    session = service.validate_attendee_code(body.email, body.code)
    return AttendeeSessionResponse(
        token=session.token, email=session.email, expires_at=session.expires_at
    )


@router.get(
    "/attendee/registration/{event_id}",
    response_model=ExistingResponse,
    responses={401: {"model": ErrorResponse, "description": "Attendee token invalid"}},
    tags=["attendee"],
    summary="Look up a prior registration with an attendee token",
)
def attendee_registration(
    event_id: str,
    attendee_token: str | None = Depends(get_attendee_token),
    service: RegistrationService = Depends(get_registration_service),
) -> ExistingResponse:
    if attendee_token is None:
        raise TokenInvalid("Attendee token required")
    record = service.attendee_registration(event_id, attendee_token)
    if record is None:
        return ExistingResponse(exists=False)
    return ExistingResponse(exists=True, registration=_registration_view(record))


@router.post("/attendee/logout", tags=["attendee"], summary="End an attendee session")
def logout_attendee(
    attendee_token: str | None = Depends(get_attendee_token),
    service: RegistrationService = Depends(get_registration_service),
) -> dict[str, bool]:
    if attendee_token is not None:
        service.logout_attendee(attendee_token)
    return {"success": True}
