"""
Console email sender adapter - Implements EmailSender protocol.

This module provides a console-based implementation of the domain's
email sender port, logging verification codes for development.
"""

import logging

logger = logging.getLogger(__name__)


class ConsoleEmailSender:
    """
    Implements EmailSender protocol via console logging.

    Uses structural subtyping - no explicit inheritance from Protocol.
    For demo/development purposes - this is the only place a code is logged.
    """

    def send_verification_code(self, email: str, code: str, expires_in_minutes: int) -> None:
        """
        Log verification code to console (simulates email delivery).

        In production, this would be replaced with an SMTP adapter.

        Args:
            email: Recipient email address (normalized by domain layer)
            code: 6-digit verification code
            expires_in_minutes: Validity window shown to the recipient
        """
        logger.info(
            "[VERIFICATION] Email: %s Code: %s (expires in %d minutes)",
            email,
            code,
            expires_in_minutes,
        )
