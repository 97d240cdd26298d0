"""Shared test fixtures for notification engine tests.

This module provides common fixtures used across all test modules:
- Database isolation with temporary files
- A controllable clock
- A scripted fake transport and in-memory device directory
- An orchestrator wired to all of the above

Usage:
    async def test_something(make_orchestrator, clock):
        orchestrator = make_orchestrator()
        ...
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from lyra_notify.config_models import NotificationsConfig
from lyra_notify.models import GlobalSettings
from lyra_notify.persistence.sqlite_store import SQLitePersistence
from lyra_notify.preferences.store import SQLitePreferenceStore
from lyra_notify.push.devices import DeviceDirectory
from lyra_notify.push.dispatcher import Dispatcher
from lyra_notify.push.transport import Transport
from lyra_notify.queue.orchestrator import JobOrchestrator
from lyra_notify.templates.registry import TemplateRegistry


# ─────────────────────────────────────────────────────────────────────────────
# Fakes
# ─────────────────────────────────────────────────────────────────────────────


class FakeClock:
    """Manually advanced clock. Call it to read the current time."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeTransport(Transport):
    """Records every send; raises the queued errors first, then succeeds."""

    def __init__(self, errors: list[Exception] | None = None):
        self.errors = list(errors or [])
        self.calls: list[dict] = []

    async def send(self, destination_token, title, body, priority, data=None):
        self.calls.append(
            {"token": destination_token, "title": title, "body": body, "priority": priority}
        )
        if self.errors:
            raise self.errors.pop(0)


class FakeDeviceDirectory(DeviceDirectory):
    def __init__(self, tokens: dict[str, list[str]] | None = None):
        self.tokens = {user: list(t) for user, t in (tokens or {}).items()}
        self.deactivated: list[str] = []

    async def get_active_tokens(self, user_id: str) -> list[str]:
        return list(self.tokens.get(user_id, []))

    async def deactivate_token(self, token: str) -> None:
        self.deactivated.append(token)
        for tokens in self.tokens.values():
            if token in tokens:
                tokens.remove(token)


async def no_sleep(delay: float) -> None:
    return None


# ─────────────────────────────────────────────────────────────────────────────
# Database Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def temp_db(tmp_path: Path) -> Path:
    """Path to a fresh SQLite database file inside tmp_path."""
    return tmp_path / "data" / "notifications.db"


# ─────────────────────────────────────────────────────────────────────────────
# Engine Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def mock_user_id() -> str:
    """Standard test user ID."""
    return "test_user_123"


@pytest.fixture
def clock() -> FakeClock:
    # Monday 2026-01-05 09:00 UTC
    return FakeClock(datetime(2026, 1, 5, 9, 0, tzinfo=UTC))


@pytest.fixture
def registry() -> TemplateRegistry:
    return TemplateRegistry.with_defaults()


@pytest.fixture
def settings() -> GlobalSettings:
    return GlobalSettings(
        enabled=True,
        quiet_hours_start="22:00",
        quiet_hours_end="08:00",
        max_notifications_per_day=10,
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def devices(mock_user_id: str) -> FakeDeviceDirectory:
    return FakeDeviceDirectory(
        {mock_user_id: ["ExponentPushToken[primary]"], "other_user": ["ExponentPushToken[other]"]}
    )


@pytest.fixture
def make_orchestrator(
    temp_db: Path,
    registry: TemplateRegistry,
    settings: GlobalSettings,
    transport: FakeTransport,
    devices: FakeDeviceDirectory,
    clock: FakeClock,
) -> Callable[..., JobOrchestrator]:
    """Factory so tests can build a second orchestrator over the same database."""

    def factory(config: NotificationsConfig | None = None, **overrides) -> JobOrchestrator:
        dispatcher = overrides.pop(
            "dispatcher",
            Dispatcher(transport, devices, max_workers=4, max_attempts=3, sleep=no_sleep),
        )
        return JobOrchestrator(
            registry=overrides.pop("registry", registry),
            preferences=overrides.pop(
                "preferences",
                SQLitePreferenceStore(temp_db, defaults=settings, registry=registry),
            ),
            persistence=overrides.pop("persistence", SQLitePersistence(temp_db)),
            dispatcher=dispatcher,
            config=config,
            clock=clock,
        )

    return factory
