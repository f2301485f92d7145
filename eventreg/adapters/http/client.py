"""
HTTP gateway adapter - Implements RegistrationGateway protocol.

Talks to the registration REST API with an ``httpx.AsyncClient`` and maps
every failure back onto the domain error taxonomy:

- error bodies carry ``{"detail": ..., "code": ...}``; the code decides
  the exception type
- responses without a known code fall back on the status (429 is rate
  limiting, anything else is a NetworkFailure)
- transport errors and malformed bodies become NetworkFailure
"""

import logging
from typing import Any

import httpx

from eventreg.domain.exceptions import (
    EventNotFound,
    FormValidationError,
    IdentityMismatch,
    InvalidCode,
    InvalidEmail,
    NetworkFailure,
    QualificationDenied,
    RateLimited,
    RegistrationClosed,
    RegistrationError,
    RegistrationNotFound,
    SessionExpired,
    TokenInvalid,
    VerificationRequired,
)
from eventreg.domain.models import (
    CodeRequest,
    ExistingRegistrationRecord,
    OtpValidation,
    QualificationResult,
    SessionStatus,
    VerifiedProfile,
)
from eventreg.domain.schema import KNOWN_FIELDS

logger = logging.getLogger(__name__)

_ERRORS_BY_CODE: dict[str, type[RegistrationError]] = {
    "INVALID_EMAIL": InvalidEmail,
    "RATE_LIMITED": RateLimited,
    "INVALID_CODE": InvalidCode,
    "SESSION_EXPIRED": SessionExpired,
    "NOT_QUALIFIED": QualificationDenied,
    "TOKEN_INVALID": TokenInvalid,
    "VERIFICATION_REQUIRED": VerificationRequired,
    "EVENT_NOT_FOUND": EventNotFound,
    "REGISTRATION_CLOSED": RegistrationClosed,
    "REGISTRATION_NOT_FOUND": RegistrationNotFound,
    "FORBIDDEN": IdentityMismatch,
}

# Registration keys that are not form values.
_RECORD_META_KEYS = frozenset({"id", "eventId", "email", "formData", "lastModified", "orderId"})


class HttpRegistrationGateway:
    """
    Implements RegistrationGateway protocol via httpx.

    Uses structural subtyping - no explicit inheritance from Protocol.
    Pass ``client`` to reuse a configured AsyncClient (for example one with
    an ASGI transport in tests); otherwise one is created from base_url.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpRegistrationGateway":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # Registration verification

    async def request_code(
        self, email: str, event_id: str, distributor_id: str | None = None
    ) -> CodeRequest:
        body: dict[str, Any] = {"email": email, "eventId": event_id}
        if distributor_id:
            body["distributorId"] = distributor_id
        data = await self._request("POST", "/register/otp/generate", json=body)
        return CodeRequest(accepted=bool(data.get("accepted", True)), dev_code=data.get("devCode"))

    async def validate_code(self, email: str, code: str, event_id: str) -> OtpValidation:
        data = await self._request(
            "POST",
            "/register/otp/validate",
            json={"email": email, "code": code, "eventId": event_id},
        )
        profile = data.get("profile")
        qualification = None
        if data.get("isQualified") is not None:
            qualification = QualificationResult(
                is_qualified=bool(data["isQualified"]),
                message=data.get("qualificationMessage") or "",
            )
        return OtpValidation(
            verified=bool(data.get("verified")),
            profile=_profile(profile, data.get("verifiedByExternalRegistry")) if profile else None,
            qualification=qualification,
            redirect_token=data.get("redirectToken"),
        )

    async def session_status(self, email: str, event_id: str) -> SessionStatus:
        data = await self._request(
            "GET", "/register/session-status", params={"email": email, "eventId": event_id}
        )
        return SessionStatus(verified=bool(data.get("verified")), email=data.get("email"))

    async def consume_redirect_token(
        self, token: str, email: str, event_id: str
    ) -> VerifiedProfile:
        data = await self._request(
            "POST",
            "/register/otp/session/consume",
            json={"token": token, "email": email, "eventId": event_id},
        )
        if not data.get("verified") or not data.get("profile"):
            raise TokenInvalid("This sign-in link is invalid or has expired.")
        return _profile(data["profile"])

    # Existing registrations

    async def find_existing(
        self, email: str, event_id: str
    ) -> ExistingRegistrationRecord | None:
        data = await self._request(
            "POST", "/register/existing", json={"email": email, "eventId": event_id}
        )
        return _existing(data)

    async def find_existing_with_token(
        self, event_id: str, attendee_token: str
    ) -> ExistingRegistrationRecord | None:
        try:
            data = await self._request(
                "GET", f"/attendee/registration/{event_id}", token=attendee_token
            )
        except (SessionExpired, IdentityMismatch, VerificationRequired) as exc:
            raise TokenInvalid(str(exc)) from exc
        return _existing(data)

    async def create_registration(
        self, event_id: str, payload: dict[str, Any], attendee_token: str | None = None
    ) -> dict[str, Any]:
        return await self._request(
            "POST", f"/events/{event_id}/register", json=payload, token=attendee_token
        )

    async def update_registration(
        self,
        event_id: str,
        registration_id: str,
        payload: dict[str, Any],
        attendee_token: str | None = None,
    ) -> dict[str, Any]:
        return await self._request(
            "PUT",
            f"/events/{event_id}/register/{registration_id}",
            json=payload,
            token=attendee_token,
        )

    # Attendee portal

    async def request_attendee_code(self, email: str) -> CodeRequest:
        data = await self._request("POST", "/attendee/otp/generate", json={"email": email})
        return CodeRequest(accepted=bool(data.get("accepted", True)), dev_code=data.get("devCode"))

    async def validate_attendee_code(self, email: str, code: str) -> str:
        data = await self._request(
            "POST", "/attendee/otp/validate", json={"email": email, "code": code}
        )
        token = data.get("token")
        if not token:
            raise NetworkFailure("Attendee login returned no token")
        return token

    async def logout_attendee(self, attendee_token: str) -> None:
        await self._request("POST", "/attendee/logout", token=attendee_token)

    # Transport

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        token: str | None = None,
    ) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            response = await self._client.request(
                method, path, json=json, params=params, headers=headers
            )
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise NetworkFailure(str(exc) or exc.__class__.__name__) from exc

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = None

        if response.is_success:
            if not isinstance(data, dict):
                raise NetworkFailure(f"Unexpected response from {path}")
            return data

        raise _error_for(response.status_code, data if isinstance(data, dict) else {})


def _error_for(status_code: int, body: dict[str, Any]) -> RegistrationError:
    code = body.get("code")
    detail = body.get("detail")
    message = detail if isinstance(detail, str) else f"Request failed ({status_code})"
    if code == "VALIDATION_ERROR":
        return FormValidationError(missing=body.get("missing"), invalid=body.get("invalid"))
    error_type = _ERRORS_BY_CODE.get(code or "")
    if error_type is not None:
        return error_type(message)
    if status_code == 429:
        return RateLimited(message)
    logger.warning("Unmapped API error %d: %s", status_code, message)
    return NetworkFailure(message)


def _profile(raw: dict[str, Any], external: bool | None = None) -> VerifiedProfile:
    if external is None:
        external = raw.get("verifiedByExternalRegistry", False)
    return VerifiedProfile(
        unicity_id=raw.get("unicityId") or "",
        email=raw.get("email") or "",
        first_name=raw.get("firstName") or "",
        last_name=raw.get("lastName") or "",
        phone=raw.get("phone") or None,
        verified_by_external_registry=bool(external),
    )


def _existing(data: dict[str, Any]) -> ExistingRegistrationRecord | None:
    registration = data.get("registration")
    if not data.get("exists") or not registration:
        return None
    return ExistingRegistrationRecord(
        id=str(registration["id"]),
        event_id=registration.get("eventId", ""),
        email=registration.get("email", ""),
        fields={
            key: value
            for key, value in registration.items()
            if key in KNOWN_FIELDS and key not in _RECORD_META_KEYS
        },
        form_data=dict(registration.get("formData") or {}),
    )
