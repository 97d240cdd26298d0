"""
Tool: Rate/Quiet Gate
Purpose: Decide whether a candidate notification may be sent right now

Usage:
    from lyra_notify.queue.gate import decide, is_in_quiet_hours

    decision = decide(
        user_id, template_id, category, now,
        settings=settings, pref=pref,
        todays_send_count=3, period_send_count=0,
    )
    if not decision.allowed:
        print(decision.reason)

Checks (first match wins):
    1. Global enabled=false          -> GLOBAL_DISABLED
    2. Template enabled=false        -> TEMPLATE_DISABLED
    3. Inside quiet hours            -> QUIET_HOURS (support/critical bypass)
    4. Daily cap reached             -> DAILY_CAP_REACHED
    5. Already sent this period      -> ALREADY_SENT_THIS_PERIOD
    6. Otherwise                     -> allowed

Pure: no I/O, no clock reads. Everything is passed in.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from lyra_notify.clock import ensure_utc, normalize_hhmm
from lyra_notify.models import (
    Category,
    Frequency,
    GlobalSettings,
    Priority,
    SuppressionReason,
    UserPreference,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: SuppressionReason | None = None

    @classmethod
    def allow(cls) -> Decision:
        return cls(allowed=True)

    @classmethod
    def suppress(cls, reason: SuppressionReason) -> Decision:
        return cls(allowed=False, reason=reason)


def decide(
    user_id: str,
    template_id: str,
    category: Category | str,
    now: datetime,
    settings: GlobalSettings,
    pref: UserPreference,
    todays_send_count: int,
    period_send_count: int = 0,
    priority: Priority | str = Priority.NORMAL,
) -> Decision:
    """
    Apply the gate rules in order.

    Args:
        user_id: The user being notified
        template_id: Candidate template
        category: Template category (SUPPORT bypasses quiet hours)
        now: Decision time
        settings: GlobalSettings snapshot with per-user overrides applied
        pref: UserPreference snapshot for (user_id, template_id)
        todays_send_count: Sent records for the user today, any template
        period_send_count: Sent records for this template in its frequency window
        priority: Template priority (CRITICAL bypasses quiet hours)

    Returns:
        Decision.allow() or Decision.suppress(reason)
    """
    if not settings.enabled:
        return Decision.suppress(SuppressionReason.GLOBAL_DISABLED)

    if not pref.enabled:
        return Decision.suppress(SuppressionReason.TEMPLATE_DISABLED)

    if not bypasses_quiet_hours(category, priority) and is_in_quiet_hours(
        now, settings.quiet_hours_start, settings.quiet_hours_end, settings.timezone
    ):
        return Decision.suppress(SuppressionReason.QUIET_HOURS)

    if todays_send_count >= settings.max_notifications_per_day:
        return Decision.suppress(SuppressionReason.DAILY_CAP_REACHED)

    if pref.frequency != Frequency.IMMEDIATE and period_send_count > 0:
        return Decision.suppress(SuppressionReason.ALREADY_SENT_THIS_PERIOD)

    return Decision.allow()


def bypasses_quiet_hours(category: Category | str, priority: Priority | str) -> bool:
    return category == Category.SUPPORT or priority == Priority.CRITICAL


def is_in_quiet_hours(
    now: datetime,
    start: str | None,
    end: str | None,
    timezone: str = "UTC",
) -> bool:
    """
    Check whether now falls in the [start, end) quiet window, local time.

    start > end means the window spans midnight (e.g. 22:00 - 08:00).
    start == end, or either bound missing, means no quiet hours.
    """
    if not start or not end:
        return False

    try:
        start_time = time.fromisoformat(normalize_hhmm(start))
        end_time = time.fromisoformat(normalize_hhmm(end))
    except ValueError:
        logger.warning(f"Ignoring malformed quiet hours: {start!r} - {end!r}")
        return False

    current = ensure_utc(now).astimezone(_zone(timezone)).time()

    if start_time == end_time:
        return False
    if start_time < end_time:
        # Same day range
        return start_time <= current < end_time
    # Overnight range
    return current >= start_time or current < end_time


def local_day_start(now: datetime, timezone: str = "UTC") -> datetime:
    """Midnight of now's calendar day in the user's timezone, as an aware datetime."""
    local = ensure_utc(now).astimezone(_zone(timezone))
    return local.replace(hour=0, minute=0, second=0, microsecond=0)


def period_start(frequency: Frequency | str, now: datetime, timezone: str = "UTC") -> datetime | None:
    """
    Start of the dedup window for a frequency.

    daily   -> local midnight today
    weekly  -> local midnight on Monday of this week
    monthly -> local midnight on the 1st of this month
    immediate -> None (no dedup)
    """
    day_start = local_day_start(now, timezone)
    if frequency == Frequency.DAILY:
        return day_start
    if frequency == Frequency.WEEKLY:
        return day_start - timedelta(days=day_start.weekday())
    if frequency == Frequency.MONTHLY:
        return day_start.replace(day=1)
    return None


def _zone(timezone: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {timezone!r}, falling back to UTC")
        return ZoneInfo("UTC")
