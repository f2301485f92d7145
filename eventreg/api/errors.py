"""
API error mapping.

Domain exceptions are translated to HTTP status codes and a stable
machine-readable ``code`` here, once, for every route. Response bodies
always have the ErrorResponse shape ``{detail, code}``.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from eventreg.api.models import ErrorResponse
from eventreg.domain.exceptions import (
    EventNotFound,
    FormValidationError,
    IdentityMismatch,
    InvalidCode,
    InvalidEmail,
    QualificationDenied,
    RateLimited,
    RegistrationClosed,
    RegistrationError,
    RegistrationNotFound,
    SessionExpired,
    TokenInvalid,
    VerificationRequired,
)

logger = logging.getLogger(__name__)

# Named HTTP_422_UNPROCESSABLE_CONTENT in newer Starlette releases
_UNPROCESSABLE = 422

# (status, code, fallback detail) per exception type, most specific first
ERROR_MAP: list[tuple[type[RegistrationError], int, str, str]] = [
    (FormValidationError, _UNPROCESSABLE, "VALIDATION_ERROR", "Invalid form"),
    (InvalidEmail, status.HTTP_400_BAD_REQUEST, "INVALID_EMAIL", "Invalid email address"),
    (RateLimited, status.HTTP_429_TOO_MANY_REQUESTS, "RATE_LIMITED", "Too many requests"),
    (InvalidCode, status.HTTP_400_BAD_REQUEST, "INVALID_CODE", "Invalid verification code"),
    (SessionExpired, status.HTTP_403_FORBIDDEN, "SESSION_EXPIRED", "Session expired"),
    (QualificationDenied, status.HTTP_403_FORBIDDEN, "NOT_QUALIFIED", "Not qualified"),
    (TokenInvalid, status.HTTP_401_UNAUTHORIZED, "TOKEN_INVALID", "Invalid or expired token"),
    (
        VerificationRequired,
        status.HTTP_403_FORBIDDEN,
        "VERIFICATION_REQUIRED",
        "Email verification required",
    ),
    (EventNotFound, status.HTTP_404_NOT_FOUND, "EVENT_NOT_FOUND", "Event not found"),
    (
        RegistrationClosed,
        status.HTTP_400_BAD_REQUEST,
        "REGISTRATION_CLOSED",
        "Registration is not open for this event",
    ),
    (
        RegistrationNotFound,
        status.HTTP_404_NOT_FOUND,
        "REGISTRATION_NOT_FOUND",
        "Registration not found",
    ),
    (IdentityMismatch, status.HTTP_403_FORBIDDEN, "FORBIDDEN", "Not allowed"),
]

# Exceptions whose message is an identifier rather than user-facing text
_OPAQUE = (InvalidEmail, EventNotFound, RegistrationClosed, RegistrationNotFound, IdentityMismatch)


def error_response(exc: RegistrationError) -> JSONResponse:
    """Build the JSON error response for a domain exception."""
    for error_type, status_code, code, fallback in ERROR_MAP:
        if isinstance(exc, error_type):
            break
    else:
        status_code, code, fallback = status.HTTP_400_BAD_REQUEST, "BAD_REQUEST", "Bad request"

    detail = fallback if isinstance(exc, _OPAQUE) else (str(exc) or fallback)
    body = ErrorResponse(detail=detail, code=code)
    if isinstance(exc, FormValidationError):
        body.missing = exc.missing
        body.invalid = exc.invalid
    return JSONResponse(
        status_code=status_code, content=jsonable_encoder(body, exclude_none=True)
    )


async def registration_error_handler(request: Request, exc: RegistrationError) -> JSONResponse:
    logger.info("%s %s -> %s", request.method, request.url.path, exc.__class__.__name__)
    return error_response(exc)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(part) for part in error["loc"][1:]) for error in exc.errors()]
    body = ErrorResponse(detail="Request validation failed", code="VALIDATION_ERROR", invalid=fields)
    return JSONResponse(
        status_code=_UNPROCESSABLE,
        content=jsonable_encoder(body, exclude_none=True),
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RegistrationError, registration_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
