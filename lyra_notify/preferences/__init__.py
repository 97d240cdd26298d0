"""User notification preference components."""

from lyra_notify.preferences.store import (
    DEFAULT_PREFERENCES,
    PreferenceStore,
    SQLitePreferenceStore,
)

__all__ = [
    "DEFAULT_PREFERENCES",
    "PreferenceStore",
    "SQLitePreferenceStore",
]
