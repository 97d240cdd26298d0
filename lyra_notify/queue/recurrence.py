"""
Tool: Recurrence Rules
Purpose: Calendar-anchored schedules for recurring notification jobs

Usage:
    from lyra_notify.queue.recurrence import RecurrenceRule

    rule = RecurrenceRule("0 10 * * 1", timezone="Europe/London")  # Mondays 10:00
    next_at = rule.next_fire_after(previous_slot)

A rule is a pure value: the next slot depends only on the previous slot, never
on when the job actually ran. A job that fired late (or not at all during
downtime) still lands on the next calendar slot.

Dependencies:
    - croniter>=2.0.0
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from lyra_notify.clock import ensure_utc
from lyra_notify.errors import InvalidRecurrenceRule


@dataclass(frozen=True)
class RecurrenceRule:
    """Five-field cron expression evaluated in a fixed timezone."""

    cron: str
    timezone: str = "UTC"

    def __post_init__(self) -> None:
        if not self.cron or len(self.cron.split()) != 5:
            raise InvalidRecurrenceRule(
                f"Invalid cron expression: {self.cron!r} (expected 5 fields)"
            )
        if not croniter.is_valid(self.cron):
            raise InvalidRecurrenceRule(f"Invalid cron expression: {self.cron!r}")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise InvalidRecurrenceRule(f"Unknown timezone: {self.timezone!r}") from e

    @classmethod
    def daily_at(cls, hhmm: str, timezone: str = "UTC") -> RecurrenceRule:
        """Every day at HH:MM local time."""
        hour, minute = _parse_hhmm(hhmm)
        return cls(f"{minute} {hour} * * *", timezone)

    @classmethod
    def weekly_at(cls, day_of_week: int, hhmm: str, timezone: str = "UTC") -> RecurrenceRule:
        """Every week on day_of_week (0=Sunday .. 6=Saturday) at HH:MM."""
        if not 0 <= day_of_week <= 6:
            raise InvalidRecurrenceRule(f"Invalid day of week: {day_of_week}")
        hour, minute = _parse_hhmm(hhmm)
        return cls(f"{minute} {hour} * * {day_of_week}", timezone)

    def next_fire_after(self, last_fire_at: datetime) -> datetime:
        """Next slot strictly after last_fire_at, returned in UTC."""
        base = ensure_utc(last_fire_at).astimezone(ZoneInfo(self.timezone))
        next_local = croniter(self.cron, base).get_next(datetime)
        return next_local.astimezone(UTC)

    def next_fire_after_slot(self, last_slot: datetime, now: datetime) -> datetime:
        """
        Re-arm from the previously computed slot.

        Returns the slot following last_slot; if that is already in the past
        (the process was down across one or more slots), missed slots
        collapse into the first slot after now.
        """
        candidate = self.next_fire_after(last_slot)
        if candidate <= ensure_utc(now):
            candidate = self.next_fire_after(now)
        return candidate

    def to_dict(self) -> dict[str, str]:
        return {"cron": self.cron, "timezone": self.timezone}

    @classmethod
    def from_dict(cls, data: dict[str, str]) -> RecurrenceRule:
        return cls(cron=data["cron"], timezone=data.get("timezone") or "UTC")


def _parse_hhmm(hhmm: str) -> tuple[int, int]:
    try:
        hour_str, minute_str = hhmm.split(":")
        hour, minute = int(hour_str), int(minute_str)
    except (ValueError, AttributeError) as e:
        raise InvalidRecurrenceRule(f"Invalid time format: {hhmm!r}. Use HH:MM") from e
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise InvalidRecurrenceRule(f"Invalid time format: {hhmm!r}. Use HH:MM")
    return hour, minute
