"""
Domain models - Value objects shared by the coordinator and the server.

Plain dataclasses only. Wire-format translation (camelCase JSON) lives in
the adapters and the API layer.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .ports import RegistrationMode


def normalize_email(email: str) -> str:
    """
    Normalize email address for consistent storage and lookup.

    Applies: strip whitespace + lowercase
    """
    return email.strip().lower()


@dataclass(frozen=True)
class IdentityKey:
    """(normalized email, event id) scoping every piece of per-person state."""

    email: str
    event_id: str

    @classmethod
    def of(cls, email: str, event_id: str) -> "IdentityKey":
        return cls(normalize_email(email), event_id)


@dataclass(frozen=True)
class FieldCondition:
    field: str
    value: Any


@dataclass(frozen=True)
class FieldTemplateEntry:
    """One entry of an event's ordered form template."""

    key: str
    type: str = "text"
    required: bool = False
    conditional_on: FieldCondition | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "FieldTemplateEntry":
        """Accept both the template JSON shape (``name``) and ``key``."""
        condition = raw.get("conditionalOn") or raw.get("conditional_on")
        return cls(
            key=raw.get("key") or raw["name"],
            type=raw.get("type", "text"),
            required=bool(raw.get("required", False)),
            conditional_on=(
                FieldCondition(condition["field"], condition["value"]) if condition else None
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"key": self.key, "type": self.type, "required": self.required}
        if self.conditional_on is not None:
            data["conditionalOn"] = {
                "field": self.conditional_on.field,
                "value": self.conditional_on.value,
            }
        return data


@dataclass
class EventConfig:
    """Registration-relevant slice of an event."""

    id: str
    registration_mode: RegistrationMode | str | None = None
    requires_verification: bool | None = None
    requires_qualification: bool | None = None
    form_fields: list[FieldTemplateEntry] = field(default_factory=list)
    max_tickets: int = 10
    status: str = "published"
    slug: str | None = None
    qualification_start: datetime | None = None
    qualification_end: datetime | None = None


@dataclass(frozen=True)
class Invitation:
    """Identity pre-populated from a registration URL."""

    distributor_id: str = ""
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    redirect_token: str = ""


@dataclass(frozen=True)
class VerifiedProfile:
    """Identity established by OTP validation or a consumed redirect token."""

    unicity_id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    phone: str | None = None
    verified_by_external_registry: bool = False

    def as_fields(self) -> dict[str, str]:
        """Non-empty form values supplied (and locked) by this profile."""
        values = {
            "unicityId": self.unicity_id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "phone": self.phone or "",
        }
        return {key: value for key, value in values.items() if value}


@dataclass(frozen=True)
class QualificationResult:
    is_qualified: bool
    message: str = ""


@dataclass(frozen=True)
class CodeRequest:
    accepted: bool
    dev_code: str | None = None


@dataclass(frozen=True)
class OtpValidation:
    verified: bool
    profile: VerifiedProfile | None = None
    qualification: QualificationResult | None = None
    redirect_token: str | None = None


@dataclass(frozen=True)
class SessionStatus:
    verified: bool
    email: str | None = None


@dataclass(frozen=True)
class ExistingRegistrationRecord:
    """A prior submission for (email, event id)."""

    id: str
    event_id: str
    email: str
    fields: dict[str, Any] = field(default_factory=dict)
    form_data: dict[str, Any] = field(default_factory=dict)

    def as_form_values(self) -> dict[str, Any]:
        values = {key: value for key, value in self.fields.items() if value is not None}
        values.update(self.form_data)
        values["email"] = self.email
        return values


@dataclass(frozen=True)
class AttendeeInfo:
    """Minimal identity of an additional attendee in an anonymous batch."""

    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""

    def as_payload(self) -> dict[str, str]:
        payload = {
            "firstName": self.first_name.strip(),
            "lastName": self.last_name.strip(),
            "email": normalize_email(self.email),
        }
        if self.phone:
            payload["phone"] = self.phone.strip()
        return payload


class SubmissionStatus(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    BATCH_CREATED = "batch_created"
    VERIFICATION_PENDING = "verification_pending"


@dataclass(frozen=True)
class SubmissionResult:
    status: SubmissionStatus
    registration_ids: tuple[str, ...] = ()
    message: str = ""


# Server-side records


@dataclass(frozen=True)
class Qualifier:
    """One row of an event's qualified-registrant roster."""

    event_id: str
    email: str
    unicity_id: str = ""
    first_name: str = ""
    last_name: str = ""
    phone: str = ""


@dataclass
class RegistrationRecord:
    """A persisted registration."""

    id: str
    event_id: str
    email: str
    fields: dict[str, Any] = field(default_factory=dict)
    form_data: dict[str, Any] = field(default_factory=dict)
    order_id: str | None = None
    attendee_index: int | None = None
    verified_by_external_registry: bool = False
    status: str = "registered"
    created_at: datetime | None = None
    last_modified: datetime | None = None

    def to_existing(self) -> ExistingRegistrationRecord:
        return ExistingRegistrationRecord(
            id=self.id,
            event_id=self.event_id,
            email=self.email,
            fields=dict(self.fields),
            form_data=dict(self.form_data),
        )


@dataclass(frozen=True)
class VerifiedSession:
    """A server-side OTP session that reached VERIFIED."""

    email: str
    scope: str
    verified_at: datetime
    profile: dict[str, Any] = field(default_factory=dict)
