"""Notifier adapters - User-visible notification surfaces."""

from .console import LoggingNotifier

__all__ = ["LoggingNotifier"]
