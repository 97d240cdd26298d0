"""Tests for lyra_notify/queue/recurrence.py"""

from datetime import UTC, datetime, timedelta

import pytest

from lyra_notify.errors import InvalidRecurrenceRule
from lyra_notify.queue.recurrence import RecurrenceRule

MONDAY_10 = datetime(2026, 1, 5, 10, 0, tzinfo=UTC)


class TestValidation:
    @pytest.mark.parametrize("cron", ["", "* * *", "0 10 * * 1 2026", "99 10 * * 1", "every day"])
    def test_invalid_cron(self, cron):
        with pytest.raises(InvalidRecurrenceRule):
            RecurrenceRule(cron)

    def test_unknown_timezone(self):
        with pytest.raises(InvalidRecurrenceRule):
            RecurrenceRule("0 10 * * 1", "Not/AZone")

    def test_daily_at(self):
        assert RecurrenceRule.daily_at("09:30").cron == "30 9 * * *"

    def test_weekly_at(self):
        assert RecurrenceRule.weekly_at(1, "10:00").cron == "0 10 * * 1"

    @pytest.mark.parametrize("hhmm", ["9", "24:00", "ab:cd"])
    def test_daily_at_rejects_bad_time(self, hhmm):
        with pytest.raises(InvalidRecurrenceRule):
            RecurrenceRule.daily_at(hhmm)

    def test_round_trip_dict(self):
        rule = RecurrenceRule("0 9 1 * *", "Europe/London")
        assert RecurrenceRule.from_dict(rule.to_dict()) == rule


class TestNextFire:
    def test_weekly_next_is_seven_days_later(self):
        rule = RecurrenceRule("0 10 * * 1")
        assert rule.next_fire_after(MONDAY_10) == MONDAY_10 + timedelta(days=7)

    def test_strictly_after(self):
        rule = RecurrenceRule("0 10 * * 1")
        just_before = MONDAY_10 - timedelta(seconds=1)
        assert rule.next_fire_after(just_before) == MONDAY_10

    def test_monthly(self):
        rule = RecurrenceRule("0 9 1 * *")
        assert rule.next_fire_after(MONDAY_10) == datetime(2026, 2, 1, 9, 0, tzinfo=UTC)

    def test_evaluated_in_rule_timezone(self):
        # 10:00 in London during winter is 10:00 UTC, in summer 09:00 UTC
        rule = RecurrenceRule("0 10 * * *", "Europe/London")
        assert rule.next_fire_after(datetime(2026, 7, 1, 0, 0, tzinfo=UTC)) == datetime(
            2026, 7, 1, 9, 0, tzinfo=UTC
        )

    def test_result_is_utc(self):
        rule = RecurrenceRule("0 10 * * *", "Asia/Tokyo")
        assert rule.next_fire_after(MONDAY_10).tzinfo == UTC


class TestNextFireAfterSlot:
    def test_anchored_to_slot_not_actual_fire_time(self):
        rule = RecurrenceRule("0 10 * * 1")
        delayed_fire = MONDAY_10 + timedelta(hours=3)
        assert rule.next_fire_after_slot(MONDAY_10, delayed_fire) == MONDAY_10 + timedelta(days=7)

    def test_missed_slots_collapse(self):
        rule = RecurrenceRule("0 10 * * 1")
        # Down for three weeks: next slot is the first after now, not the backlog
        now = MONDAY_10 + timedelta(days=21, hours=1)
        assert rule.next_fire_after_slot(MONDAY_10, now) == MONDAY_10 + timedelta(days=28)

    def test_next_slot_always_in_future(self):
        rule = RecurrenceRule("*/5 * * * *")
        now = MONDAY_10 + timedelta(minutes=5)
        assert rule.next_fire_after_slot(MONDAY_10, now) > now
