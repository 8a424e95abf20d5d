"""Service layer helpers (settings persistence)."""

from .settings import Settings, SettingsStore, coerce_comment_probability

__all__ = ["Settings", "SettingsStore", "coerce_comment_probability"]
