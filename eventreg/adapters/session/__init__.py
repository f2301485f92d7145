"""Session store adapters - Durable client state."""

from .file import JsonFileSessionStore
from .memory import InMemorySessionStore

__all__ = ["InMemorySessionStore", "JsonFileSessionStore"]
