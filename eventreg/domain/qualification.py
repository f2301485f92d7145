"""
Qualification gate.

The server decides eligibility when a code is validated; the client only
branches on the result it receives. Both halves live here.
"""

from datetime import datetime

from .exceptions import QualificationDenied
from .mode import ResolvedMode
from .models import EventConfig, OtpValidation, Qualifier, QualificationResult

NOT_ON_LIST = "You are not on the qualified registrants list for this event."
ON_LIST = "You are on the qualified registrants list."
PRE_QUALIFIED = "You are pre-qualified for this event."
NOT_STARTED = "Registration period has not started yet."
ENDED = "Registration period has ended."
MISSING_RESULT = "Qualification could not be confirmed."

_ALWAYS_QUALIFIED = QualificationResult(is_qualified=True)


class QualificationGate:
    """Client-side branch on the server's qualification verdict."""

    def check(self, mode: ResolvedMode, validation: OtpValidation) -> QualificationResult:
        """
        Outside qualified_verified every verified person is eligible.

        A qualified_verified response without a verdict fails closed.
        """
        if not mode.requires_qualification:
            return _ALWAYS_QUALIFIED
        if validation.qualification is None:
            return QualificationResult(is_qualified=False, message=MISSING_RESULT)
        return validation.qualification

    def enforce(self, mode: ResolvedMode, validation: OtpValidation) -> QualificationResult:
        result = self.check(mode, validation)
        if not result.is_qualified:
            raise QualificationDenied(result.message or NOT_ON_LIST)
        return result


def evaluate_qualification(
    event: EventConfig,
    qualifier: Qualifier | None,
    has_registration: bool,
    now: datetime,
) -> QualificationResult:
    """
    Server-side eligibility for a verified email.

    A prior registration always qualifies. Otherwise the email must be on the
    roster and, when the event defines one, inside the qualification window.
    """
    if has_registration:
        return QualificationResult(True, PRE_QUALIFIED)
    if qualifier is None:
        return QualificationResult(False, NOT_ON_LIST)
    if event.qualification_start is not None and now < event.qualification_start:
        return QualificationResult(False, NOT_STARTED)
    if event.qualification_end is not None and now > event.qualification_end:
        return QualificationResult(False, ENDED)
    return QualificationResult(True, ON_LIST)
