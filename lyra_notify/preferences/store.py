"""
Tool: Notification Preference Store
Purpose: Per-user, per-template notification settings and global settings

Usage:
    from lyra_notify.preferences.store import SQLitePreferenceStore

    store = SQLitePreferenceStore(db_path, defaults=GlobalSettings())
    pref = await store.get_preference("alice", "mood_reminder")
    await store.set_quiet_hours("alice", "23:00", "07:00")

Design:
    - Sensible defaults: absent rows fall back to DEFAULT_PREFERENCES, then
      to the template's default frequency
    - Promotions are opt-in
    - conditions are stored and returned verbatim; the triggering caller
      evaluates them
"""

from __future__ import annotations

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from lyra_notify.clock import normalize_hhmm
from lyra_notify.errors import PersistenceWriteFailed, PreferenceLookupFailed
from lyra_notify.models import Frequency, GlobalSettings, UserPreference
from lyra_notify.persistence.database import get_connection
from lyra_notify.templates.registry import TemplateRegistry

logger = logging.getLogger(__name__)


DEFAULT_PREFERENCES: dict[str, dict[str, Any]] = {
    "mood_reminder": {
        "enabled": True,
        "frequency": "daily",
        "time": "09:00",
        "conditions": {"minDaysSinceLastEntry": 1},
    },
    "journal_reminder": {
        "enabled": True,
        "frequency": "daily",
        "time": "21:00",
        "conditions": {"minDaysSinceLastEntry": 1},
    },
    "sleep_reminder": {"enabled": True, "frequency": "daily", "time": "22:00", "conditions": {}},
    "savings_celebration": {
        "enabled": True,
        "frequency": "weekly",
        "conditions": {"minSavingsAmount": 10},
    },
    "mood_insight": {"enabled": True, "frequency": "weekly", "conditions": {"minDataPoints": 7}},
    "location_alert": {
        "enabled": True,
        "frequency": "immediate",
        "conditions": {"moodThreshold": 4, "maxDistance": 500},
    },
    "weekly_summary": {"enabled": True, "frequency": "weekly", "time": "10:00", "conditions": {}},
    "goal_reminder": {
        "enabled": True,
        "frequency": "weekly",
        "time": "11:00",
        "conditions": {"hasActiveGoals": True},
    },
    "crisis_support": {
        "enabled": True,
        "frequency": "immediate",
        "conditions": {"moodThreshold": 2, "consecutiveDays": 3},
    },
    "subscription_upgrade": {
        "enabled": False,  # Opt-in
        "frequency": "monthly",
        "conditions": {"isFreeUser": True, "minUsageDays": 7},
    },
    "weather_mood_insight": {
        "enabled": True,
        "frequency": "weekly",
        "conditions": {"hasWeatherData": True, "minDataPoints": 14},
    },
    "sleep_insight": {
        "enabled": True,
        "frequency": "weekly",
        "conditions": {"hasSleepData": True, "minDataPoints": 7},
    },
    "energy_insight": {
        "enabled": True,
        "frequency": "weekly",
        "conditions": {"hasEnergyData": True, "minDataPoints": 7},
    },
    "focus_reminder": {
        "enabled": True,
        "frequency": "daily",
        "time": "14:00",
        "conditions": {"hasFocusGoals": True},
    },
    "data_export_reminder": {
        "enabled": False,  # Opt-in
        "frequency": "monthly",
        "conditions": {"hasData": True, "lastExportDays": 30},
    },
}

_PREFERENCE_FIELDS = {"enabled", "frequency", "preferred_time", "conditions"}
_GLOBAL_FIELDS = {
    "enabled",
    "quiet_hours_start",
    "quiet_hours_end",
    "max_notifications_per_day",
    "timezone",
}


class PreferenceStore(ABC):
    """Read-mostly source of user preferences consumed by the orchestrator."""

    @abstractmethod
    async def get_preference(self, user_id: str, template_id: str) -> UserPreference:
        """Preference for (user, template), falling back to defaults. Raises PreferenceLookupFailed."""

    @abstractmethod
    async def get_global_settings(self) -> GlobalSettings:
        """Process-wide settings snapshot."""

    @abstractmethod
    async def update_preference(
        self, user_id: str, template_id: str, **updates: Any
    ) -> UserPreference:
        """Write path for the settings UI; the engine itself never calls it."""


class SQLitePreferenceStore(PreferenceStore):
    """Preference store backed by the shared SQLite database."""

    def __init__(
        self,
        db_path: Path,
        defaults: GlobalSettings | None = None,
        registry: TemplateRegistry | None = None,
    ):
        self.db_path = Path(db_path)
        self.defaults = defaults or GlobalSettings()
        self.registry = registry

    def _connect(self) -> sqlite3.Connection:
        return get_connection(self.db_path)

    async def get_global_settings(self) -> GlobalSettings:
        return self.defaults

    async def get_preference(self, user_id: str, template_id: str) -> UserPreference:
        try:
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT * FROM notification_preferences WHERE user_id = ? AND template_id = ?",
                    (user_id, template_id),
                ).fetchone()
                overrides = conn.execute(
                    "SELECT * FROM notification_global_settings WHERE user_id = ?",
                    (user_id,),
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PreferenceLookupFailed(
                f"Preference lookup failed for {user_id}/{template_id}: {e}"
            ) from e

        base = self._default_for(template_id)
        custom = dict(row) if row else {}
        if custom.get("conditions"):
            try:
                custom["conditions"] = json.loads(custom["conditions"])
            except (json.JSONDecodeError, TypeError):
                custom["conditions"] = None

        def pick(key: str, default_key: str | None = None) -> Any:
            value = custom.get(key)
            return value if value is not None else base.get(default_key or key)

        extra = dict(overrides) if overrides else {}
        enabled_override = extra.get("enabled")

        return UserPreference(
            user_id=user_id,
            template_id=template_id,
            enabled=bool(pick("enabled")),
            frequency=Frequency(pick("frequency")),
            preferred_time=pick("preferred_time", "time"),
            conditions=pick("conditions") or {},
            globally_enabled=bool(enabled_override) if enabled_override is not None else None,
            quiet_hours_start=extra.get("quiet_hours_start"),
            quiet_hours_end=extra.get("quiet_hours_end"),
            max_notifications_per_day=extra.get("max_notifications_per_day"),
            timezone=extra.get("timezone"),
        )

    async def get_all_preferences(self, user_id: str) -> list[UserPreference]:
        template_ids = list(DEFAULT_PREFERENCES)
        if self.registry is not None:
            template_ids += [t.id for t in self.registry.all() if t.id not in DEFAULT_PREFERENCES]
        return [await self.get_preference(user_id, tid) for tid in template_ids]

    async def update_preference(
        self, user_id: str, template_id: str, **updates: Any
    ) -> UserPreference:
        """
        Update one template preference.

        Args:
            user_id: The user ID
            template_id: The template ID
            **updates: enabled, frequency, preferred_time, conditions

        Returns:
            The merged preference after the update
        """
        invalid_fields = set(updates) - _PREFERENCE_FIELDS
        if invalid_fields:
            raise ValueError(f"Invalid fields: {invalid_fields}")

        if "frequency" in updates:
            updates["frequency"] = Frequency(updates["frequency"]).value
        if updates.get("preferred_time") is not None:
            updates["preferred_time"] = normalize_hhmm(updates["preferred_time"])
        if "conditions" in updates:
            updates["conditions"] = json.dumps(updates["conditions"] or {})

        self._upsert(
            "notification_preferences",
            {"user_id": user_id, "template_id": template_id},
            updates,
        )
        logger.info(f"Updated preference {template_id} for user {user_id}")
        return await self.get_preference(user_id, template_id)

    async def toggle_preference(self, user_id: str, template_id: str, enabled: bool) -> UserPreference:
        return await self.update_preference(user_id, template_id, enabled=enabled)

    async def set_global_settings(self, user_id: str, **overrides: Any) -> None:
        """Store per-user overrides of quiet hours, daily cap, timezone or enabled."""
        invalid_fields = set(overrides) - _GLOBAL_FIELDS
        if invalid_fields:
            raise ValueError(f"Invalid fields: {invalid_fields}")

        for key in ("quiet_hours_start", "quiet_hours_end"):
            if overrides.get(key) is not None:
                overrides[key] = normalize_hhmm(overrides[key])

        self._upsert("notification_global_settings", {"user_id": user_id}, overrides)

    async def set_quiet_hours(
        self,
        user_id: str,
        start: str,
        end: str,
        timezone: str | None = None,
    ) -> None:
        """
        Set quiet hours (e.g., '22:00' to '08:00').

        Args:
            user_id: The user ID
            start: Start time in HH:MM format
            end: End time in HH:MM format
            timezone: Optional IANA timezone for the user
        """
        updates: dict[str, Any] = {"quiet_hours_start": start, "quiet_hours_end": end}
        if timezone:
            updates["timezone"] = timezone
        await self.set_global_settings(user_id, **updates)
        logger.info(f"Set quiet hours for user {user_id}: {start} - {end}")

    async def reset_to_defaults(self, user_id: str) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute("DELETE FROM notification_preferences WHERE user_id = ?", (user_id,))
                conn.execute(
                    "DELETE FROM notification_global_settings WHERE user_id = ?", (user_id,)
                )
        except sqlite3.Error as e:
            raise PersistenceWriteFailed(f"Failed to reset preferences for {user_id}: {e}") from e
        finally:
            conn.close()

    def _default_for(self, template_id: str) -> dict[str, Any]:
        if template_id in DEFAULT_PREFERENCES:
            return DEFAULT_PREFERENCES[template_id]

        frequency = Frequency.IMMEDIATE
        if self.registry is not None and template_id in self.registry:
            frequency = self.registry.get(template_id).default_frequency
        return {"enabled": True, "frequency": frequency.value, "conditions": {}}

    def _upsert(self, table: str, keys: dict[str, Any], updates: dict[str, Any]) -> None:
        if not updates:
            return

        columns = {**keys, **updates}
        names = ", ".join(columns)
        placeholders = ", ".join("?" * len(columns))
        assignments = ", ".join(f"{k} = excluded.{k}" for k in updates)

        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    f"""
                    INSERT INTO {table} ({names}, updated_at)
                    VALUES ({placeholders}, CURRENT_TIMESTAMP)
                    ON CONFLICT({", ".join(keys)}) DO UPDATE SET
                        {assignments}, updated_at = CURRENT_TIMESTAMP
                    """,
                    list(columns.values()),
                )
        except sqlite3.Error as e:
            raise PersistenceWriteFailed(f"Failed to update {table}: {e}") from e
        finally:
            conn.close()
