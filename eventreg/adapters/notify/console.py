"""
Logging notifier adapter - Implements Notifier protocol.

Renders coordinator toasts as log records. Headless clients and the test
suite read ``history`` to see what the user would have been shown.
"""

import logging

logger = logging.getLogger(__name__)

_LEVELS = {
    "success": logging.INFO,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class LoggingNotifier:
    """Implements Notifier protocol via the logging module."""

    def __init__(self) -> None:
        self.history: list[tuple[str, str, str]] = []

    def notify(self, title: str, message: str = "", level: str = "info") -> None:
        self.history.append((title, message, level))
        logger.log(_LEVELS.get(level, logging.INFO), "[%s] %s: %s", level.upper(), title, message)
