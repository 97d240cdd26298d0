"""Tests for lyra_notify/preferences/store.py"""

import sqlite3
from unittest.mock import patch

import pytest

from lyra_notify.errors import PreferenceLookupFailed
from lyra_notify.models import Frequency, GlobalSettings
from lyra_notify.preferences.store import DEFAULT_PREFERENCES, SQLitePreferenceStore


@pytest.fixture
def store(temp_db, registry):
    return SQLitePreferenceStore(temp_db, defaults=GlobalSettings(), registry=registry)


class TestDefaults:
    def test_default_table_covers_every_template(self, registry):
        assert set(DEFAULT_PREFERENCES) == {t.id for t in registry.all()}

    @pytest.mark.asyncio
    async def test_absent_row_uses_defaults(self, store, mock_user_id):
        pref = await store.get_preference(mock_user_id, "mood_reminder")
        assert pref.enabled is True
        assert pref.frequency == Frequency.DAILY
        assert pref.preferred_time == "09:00"
        assert pref.conditions == {"minDaysSinceLastEntry": 1}

    @pytest.mark.asyncio
    async def test_promotions_are_opt_in(self, store, mock_user_id):
        pref = await store.get_preference(mock_user_id, "subscription_upgrade")
        assert pref.enabled is False

    @pytest.mark.asyncio
    async def test_unknown_template_falls_back_to_immediate(self, store, mock_user_id):
        pref = await store.get_preference(mock_user_id, "not_in_defaults")
        assert pref.enabled is True
        assert pref.frequency == Frequency.IMMEDIATE

    @pytest.mark.asyncio
    async def test_global_settings_are_process_defaults(self, store):
        settings = await store.get_global_settings()
        assert settings.quiet_hours_start == "22:00"
        assert settings.max_notifications_per_day == 10

    @pytest.mark.asyncio
    async def test_get_all_preferences(self, store, mock_user_id):
        prefs = await store.get_all_preferences(mock_user_id)
        assert len(prefs) == len(DEFAULT_PREFERENCES)


class TestUpdates:
    @pytest.mark.asyncio
    async def test_update_preference(self, store, mock_user_id):
        pref = await store.update_preference(
            mock_user_id,
            "mood_reminder",
            frequency="weekly",
            preferred_time="07:30",
            conditions={"custom": True},
        )
        assert pref.frequency == Frequency.WEEKLY
        assert pref.preferred_time == "07:30"
        assert pref.conditions == {"custom": True}
        # Fields not updated keep their defaults
        assert pref.enabled is True

    @pytest.mark.asyncio
    async def test_update_is_per_user(self, store, mock_user_id):
        await store.toggle_preference(mock_user_id, "mood_reminder", False)
        other = await store.get_preference("someone_else", "mood_reminder")
        assert other.enabled is True
        mine = await store.get_preference(mock_user_id, "mood_reminder")
        assert mine.enabled is False

    @pytest.mark.asyncio
    async def test_invalid_field_rejected(self, store, mock_user_id):
        with pytest.raises(ValueError, match="Invalid fields"):
            await store.update_preference(mock_user_id, "mood_reminder", color="blue")

    @pytest.mark.asyncio
    async def test_invalid_time_rejected(self, store, mock_user_id):
        with pytest.raises(ValueError, match="HH:MM"):
            await store.update_preference(mock_user_id, "mood_reminder", preferred_time="9am")

    @pytest.mark.asyncio
    async def test_invalid_frequency_rejected(self, store, mock_user_id):
        with pytest.raises(ValueError):
            await store.update_preference(mock_user_id, "mood_reminder", frequency="hourly")

    @pytest.mark.asyncio
    async def test_reset_to_defaults(self, store, mock_user_id):
        await store.toggle_preference(mock_user_id, "mood_reminder", False)
        await store.set_quiet_hours(mock_user_id, "23:00", "06:00")
        await store.reset_to_defaults(mock_user_id)

        pref = await store.get_preference(mock_user_id, "mood_reminder")
        assert pref.enabled is True
        assert pref.quiet_hours_start is None


class TestGlobalOverrides:
    @pytest.mark.asyncio
    async def test_set_quiet_hours(self, store, mock_user_id):
        await store.set_quiet_hours(mock_user_id, "23:00", "07:00", timezone="Europe/Paris")
        pref = await store.get_preference(mock_user_id, "journal_reminder")
        assert pref.quiet_hours_start == "23:00"
        assert pref.quiet_hours_end == "07:00"
        assert pref.timezone == "Europe/Paris"

        settings = (await store.get_global_settings()).with_overrides(pref)
        assert settings.quiet_hours_start == "23:00"
        assert settings.timezone == "Europe/Paris"
        assert settings.max_notifications_per_day == 10

    @pytest.mark.asyncio
    async def test_set_quiet_hours_validates(self, store, mock_user_id):
        with pytest.raises(ValueError):
            await store.set_quiet_hours(mock_user_id, "25:00", "07:00")

    @pytest.mark.asyncio
    async def test_single_digit_hour_stored_zero_padded(self, store, mock_user_id):
        await store.set_quiet_hours(mock_user_id, "22:00", "7:00")
        pref = await store.get_preference(mock_user_id, "journal_reminder")
        assert pref.quiet_hours_start == "22:00"
        assert pref.quiet_hours_end == "07:00"

        pref = await store.update_preference(mock_user_id, "journal_reminder", preferred_time="8:05")
        assert pref.preferred_time == "08:05"

    @pytest.mark.asyncio
    async def test_user_can_disable_globally(self, store, mock_user_id):
        await store.set_global_settings(mock_user_id, enabled=False, max_notifications_per_day=2)
        pref = await store.get_preference(mock_user_id, "mood_reminder")
        settings = GlobalSettings().with_overrides(pref)
        assert settings.enabled is False
        assert settings.max_notifications_per_day == 2

    @pytest.mark.asyncio
    async def test_user_cannot_reenable_when_process_disabled(self, store, mock_user_id):
        await store.set_global_settings(mock_user_id, enabled=True)
        pref = await store.get_preference(mock_user_id, "mood_reminder")
        assert GlobalSettings(enabled=False).with_overrides(pref).enabled is False

    @pytest.mark.asyncio
    async def test_invalid_global_field_rejected(self, store, mock_user_id):
        with pytest.raises(ValueError, match="Invalid fields"):
            await store.set_global_settings(mock_user_id, theme="dark")


class TestLookupFailure:
    @pytest.mark.asyncio
    async def test_sqlite_error_becomes_lookup_failed(self, store, mock_user_id):
        with patch.object(store, "_connect", side_effect=sqlite3.OperationalError("locked")):
            with pytest.raises(PreferenceLookupFailed):
                await store.get_preference(mock_user_id, "mood_reminder")
