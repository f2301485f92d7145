"""
In-memory session store adapter - Implements SessionStore protocol.

Mirrors browser storage: verified emails are session-scoped and dropped by
``end_session()``, attendee credentials are long-lived.
"""


class InMemorySessionStore:
    """Implements SessionStore protocol with plain attributes."""

    def __init__(self) -> None:
        self._verified: dict[str, str] = {}
        self._attendee: tuple[str, str] | None = None

    def get_verified_email(self, event_id: str) -> str | None:
        return self._verified.get(event_id)

    def set_verified_email(self, event_id: str, email: str) -> None:
        self._verified[event_id] = email

    def clear_verified_email(self, event_id: str) -> None:
        self._verified.pop(event_id, None)

    def get_attendee_credentials(self) -> tuple[str, str] | None:
        return self._attendee

    def set_attendee_credentials(self, token: str, email: str) -> None:
        self._attendee = (token, email)

    def clear_attendee_credentials(self) -> None:
        self._attendee = None

    def end_session(self) -> None:
        """Simulate the browser session ending."""
        self._verified.clear()
