"""
Registration mode resolution.

Events carry either the ``registration_mode`` enum or the legacy
``requires_verification`` / ``requires_qualification`` booleans. Both shapes
are translated here, once, and nothing deeper in the system branches on the
legacy booleans.
"""

from dataclasses import dataclass

from .models import EventConfig, Invitation
from .ports import RegistrationMode


@dataclass(frozen=True)
class ResolvedMode:
    mode: RegistrationMode
    requires_verification: bool
    requires_qualification: bool
    skip_verification: bool = False

    @property
    def is_anonymous(self) -> bool:
        return self.mode is RegistrationMode.OPEN_ANONYMOUS

    @property
    def defers_verification(self) -> bool:
        """Form is shown before verification; the OTP gate runs at submit."""
        return self.mode is RegistrationMode.OPEN_VERIFIED


def flags_for(mode: RegistrationMode) -> tuple[bool, bool]:
    """Return (requires_verification, requires_qualification) for a mode."""
    if mode is RegistrationMode.QUALIFIED_VERIFIED:
        return True, True
    if mode is RegistrationMode.OPEN_ANONYMOUS:
        return False, False
    return True, False


def _legacy_mode(
    requires_verification: bool | None, requires_qualification: bool | None
) -> RegistrationMode:
    if requires_qualification:
        return RegistrationMode.QUALIFIED_VERIFIED
    if requires_verification is False:
        return RegistrationMode.OPEN_ANONYMOUS
    return RegistrationMode.OPEN_VERIFIED


def _explicit_mode(value: RegistrationMode | str | None) -> RegistrationMode | None:
    if value is None or value == "":
        return None
    try:
        return RegistrationMode(value)
    except ValueError:
        return None


def resolve_mode(event: EventConfig, invitation: Invitation | None = None) -> ResolvedMode:
    """
    Derive the effective registration mode of an event.

    The explicit enum wins when present and recognised; otherwise the legacy
    booleans decide (missing booleans mean verification is required). A
    pre-qualified invitation link carrying both a distributor id and an
    email skips verification in every mode.
    """
    mode = _explicit_mode(event.registration_mode)
    if mode is None:
        mode = _legacy_mode(event.requires_verification, event.requires_qualification)
    requires_verification, requires_qualification = flags_for(mode)
    skip = bool(invitation and invitation.distributor_id and invitation.email)
    return ResolvedMode(
        mode=mode,
        requires_verification=requires_verification,
        requires_qualification=requires_qualification,
        skip_verification=skip,
    )
