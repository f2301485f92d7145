"""
Dynamic field schema - Per-event validation built from a field template.

One generic rule evaluator consumes the event's ordered list of
FieldTemplateEntry descriptors:

- absent from the list: not rendered, not validated
- present, required, unconditional: mandatory
- present with conditional_on: active only while the controlling field's
  current value equals the configured value; inactive fields are skipped
  entirely and any value they hold is discarded

Discarding happens in ``prune()``, which every value change and every
payload build goes through, so a hidden conditional value can never be
submitted.
"""

import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import date, datetime
from typing import Any

from .exceptions import FormValidationError
from .models import FieldTemplateEntry

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_PATTERN = re.compile(r"^\+[1-9]\d{6,14}$")

# Identity fields every submission carries, whether or not the template
# lists them. They are supplied by the verified profile when one exists.
IDENTITY_FIELDS = ("unicityId", "email", "firstName", "lastName", "phone")
REQUIRED_IDENTITY_FIELDS = ("email", "firstName", "lastName")

# Required whenever passportNumber is active and the template lists them.
PASSPORT_DETAILS = ("passportCountry", "passportExpiration")

# Fixed superset of fields stored as registration columns. Every other
# template key is a custom field and travels inside ``formData``.
KNOWN_FIELDS = frozenset(
    {
        "unicityId",
        "email",
        "firstName",
        "lastName",
        "phone",
        "gender",
        "dateOfBirth",
        "passportNumber",
        "passportCountry",
        "passportExpiration",
        "emergencyContact",
        "emergencyContactPhone",
        "shirtSize",
        "pantSize",
        "dietaryRestrictions",
        "adaAccommodations",
        "roomType",
        "termsAccepted",
        "language",
    }
)


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def condition_matches(current: Any, expected: Any) -> bool:
    """Template values are strings; checkboxes hold booleans."""
    if current is None:
        return False
    if isinstance(current, bool) or isinstance(expected, bool):
        return str(current).lower() == str(expected).lower()
    return str(current) == str(expected)


class DynamicFieldSchema:
    """Required/optional/conditional rules for one event's form."""

    def __init__(
        self,
        entries: Sequence[FieldTemplateEntry],
        always_required: Iterable[str] = REQUIRED_IDENTITY_FIELDS,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._entries = list(entries)
        self._by_key = {entry.key: entry for entry in self._entries}
        self._always_required = tuple(always_required)
        self._today = today

    @classmethod
    def from_template(
        cls, raw_fields: Iterable[Mapping[str, Any]] | None, **kwargs: Any
    ) -> "DynamicFieldSchema":
        return cls([FieldTemplateEntry.from_dict(dict(raw)) for raw in raw_fields or []], **kwargs)

    @property
    def entries(self) -> list[FieldTemplateEntry]:
        return list(self._entries)

    def is_present(self, key: str) -> bool:
        return key in self._by_key

    def is_active(self, key: str, values: Mapping[str, Any]) -> bool:
        """Present, and its condition (if any) currently holds."""
        return self._is_active(key, values, frozenset())

    def _is_active(self, key: str, values: Mapping[str, Any], seen: frozenset[str]) -> bool:
        entry = self._by_key.get(key)
        if entry is None:
            return False
        condition = entry.conditional_on
        if condition is None:
            return True
        if key in seen:
            return False
        # A controlling field that is itself hidden cannot activate anything.
        if condition.field in self._by_key and not self._is_active(
            condition.field, values, seen | {key}
        ):
            return False
        return condition_matches(values.get(condition.field), condition.value)

    def is_required(self, key: str, values: Mapping[str, Any]) -> bool:
        if key in self._always_required:
            return True
        entry = self._by_key.get(key)
        if entry is None or not self.is_active(key, values):
            return False
        if key in PASSPORT_DETAILS and self.is_active("passportNumber", values):
            return True
        return entry.required

    def visible_fields(self, values: Mapping[str, Any]) -> list[str]:
        """Template keys to render, in template order."""
        return [entry.key for entry in self._entries if self.is_active(entry.key, values)]

    def prune(self, values: Mapping[str, Any]) -> dict[str, Any]:
        """Drop values held by conditional fields that are currently inactive."""
        pruned = dict(values)
        changed = True
        while changed:
            changed = False
            for entry in self._entries:
                if entry.conditional_on is None or entry.key not in pruned:
                    continue
                if not self.is_active(entry.key, pruned):
                    del pruned[entry.key]
                    changed = True
        return pruned

    def apply_change(self, values: Mapping[str, Any], key: str, value: Any) -> dict[str, Any]:
        """Set one value and discard anything the change just hid."""
        updated = dict(values)
        updated[key] = value
        return self.prune(updated)

    def errors(self, values: Mapping[str, Any]) -> tuple[list[str], list[str]]:
        """Return (missing, invalid) field keys, each in a stable order."""
        missing: list[str] = []
        invalid: list[str] = []
        keys = list(self._always_required) + [
            entry.key for entry in self._entries if entry.key not in self._always_required
        ]
        for key in keys:
            if not self.is_required(key, values) and not self.is_active(key, values):
                continue
            entry = self._by_key.get(key)
            value = values.get(key)
            field_type = entry.type if entry is not None else ("email" if key == "email" else "text")
            if self.is_required(key, values) and (
                is_blank(value) or (field_type == "checkbox" and value is not True)
            ):
                missing.append(key)
                continue
            if not is_blank(value) and not self._well_formed(key, field_type, value):
                invalid.append(key)
        return missing, invalid

    def validate(self, values: Mapping[str, Any]) -> None:
        """Raise FormValidationError listing every failing field."""
        missing, invalid = self.errors(values)
        if missing or invalid:
            raise FormValidationError(missing=missing, invalid=invalid)

    def payload(self, values: Mapping[str, Any]) -> dict[str, Any]:
        """
        Build the submission body from the current values.

        Only active template fields and identity fields are sent. Known
        registration columns stay top-level; custom fields go in formData.
        """
        pruned = self.prune(values)
        body: dict[str, Any] = {}
        form_data: dict[str, Any] = {}
        for key, value in pruned.items():
            if key not in IDENTITY_FIELDS and not self.is_active(key, pruned):
                continue
            if key in KNOWN_FIELDS:
                body[key] = value
            else:
                form_data[key] = value
        if form_data:
            body["formData"] = form_data
        return body

    def _well_formed(self, key: str, field_type: str, value: Any) -> bool:
        if key == "passportExpiration":
            return self._is_future_date(value)
        if field_type == "email":
            return isinstance(value, str) and bool(EMAIL_PATTERN.match(value.strip()))
        if field_type == "phone":
            return isinstance(value, str) and bool(PHONE_PATTERN.match(value.replace(" ", "")))
        return True

    def _is_future_date(self, value: Any) -> bool:
        """ISO date (a trailing time part is ignored) strictly after today."""
        if isinstance(value, datetime):
            value = value.date()
        if not isinstance(value, date):
            try:
                value = date.fromisoformat(str(value).strip()[:10])
            except ValueError:
                return False
        return value > self._today()
