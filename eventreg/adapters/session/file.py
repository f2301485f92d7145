"""
JSON file session store adapter - Implements SessionStore protocol.

Persists client state for command-line and headless clients. The file has
two sections::

    {
      "session": {"verifiedEmail": {"<eventId>": "<email>"}},
      "attendee": {"token": "...", "email": "..."}
    }

``end_session()`` drops the session section, like closing a browser.
Writes go through a temporary file and an atomic rename.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class JsonFileSessionStore:
    """Implements SessionStore protocol on top of a JSON file."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    def get_verified_email(self, event_id: str) -> str | None:
        return self._read().get("session", {}).get("verifiedEmail", {}).get(event_id)

    def set_verified_email(self, event_id: str, email: str) -> None:
        data = self._read()
        data.setdefault("session", {}).setdefault("verifiedEmail", {})[event_id] = email
        self._write(data)

    def clear_verified_email(self, event_id: str) -> None:
        data = self._read()
        verified = data.get("session", {}).get("verifiedEmail", {})
        if verified.pop(event_id, None) is not None:
            self._write(data)

    def get_attendee_credentials(self) -> tuple[str, str] | None:
        attendee = self._read().get("attendee") or {}
        token, email = attendee.get("token"), attendee.get("email")
        if not token or not email:
            return None
        return token, email

    def set_attendee_credentials(self, token: str, email: str) -> None:
        data = self._read()
        data["attendee"] = {"token": token, "email": email}
        self._write(data)

    def clear_attendee_credentials(self) -> None:
        data = self._read()
        if data.pop("attendee", None) is not None:
            self._write(data)

    def end_session(self) -> None:
        data = self._read()
        if data.pop("session", None) is not None:
            self._write(data)

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable session file: %s", self._path)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(tmp_path, self._path)
