"""Tests for lyra_notify/persistence/sqlite_store.py"""

import sqlite3
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from unittest.mock import patch
from zoneinfo import ZoneInfo

import pytest

from lyra_notify.errors import PersistenceWriteFailed
from lyra_notify.models import (
    JobStatus,
    NotificationRequest,
    RequestKind,
    ScheduledJob,
    SendOutcome,
    SendRecord,
)
from lyra_notify.persistence.database import get_connection
from lyra_notify.persistence.sqlite_store import SQLitePersistence
from lyra_notify.queue.recurrence import RecurrenceRule

NOW = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)


@pytest.fixture
def store(temp_db):
    return SQLitePersistence(temp_db)


def _recurring_job(job_id="job_weekly", user_id="u1"):
    rule = RecurrenceRule("0 10 * * 1", "Europe/London")
    request = NotificationRequest(
        user_id=user_id,
        template_id="weekly_summary",
        variables={"userName": "Ann"},
        requested_at=NOW,
        kind=RequestKind.RECURRING,
        rule=rule,
    )
    return ScheduledJob(
        job_id=job_id,
        request=request,
        next_fire_at=rule.next_fire_after(NOW),
        created_at=NOW,
    )


def _one_shot_job(job_id="job_once", at=None):
    at = at or NOW + timedelta(hours=1)
    request = NotificationRequest(
        user_id="u1",
        template_id="journal_reminder",
        requested_at=NOW,
        kind=RequestKind.SCHEDULED,
        at=at,
    )
    return ScheduledJob(job_id=job_id, request=request, next_fire_at=at, created_at=NOW)


def _record(outcome=SendOutcome.SENT, sent_at=NOW, user_id="u1", template_id="mood_reminder"):
    return SendRecord(
        user_id=user_id, template_id=template_id, sent_at=sent_at, outcome=outcome
    )


class TestSchema:
    def test_creates_tables(self, temp_db):
        conn = get_connection(temp_db)
        tables = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
        conn.close()
        assert {
            "scheduled_jobs",
            "send_records",
            "notification_preferences",
            "notification_global_settings",
            "push_devices",
        } <= tables


class TestJobs:
    @pytest.mark.asyncio
    async def test_round_trip_after_restart(self, temp_db):
        job = _recurring_job()
        once = _one_shot_job()
        await SQLitePersistence(temp_db).save_job(job)
        await SQLitePersistence(temp_db).save_job(once)

        # A new adapter over the same file simulates a process restart
        loaded = {j.job_id: j for j in await SQLitePersistence(temp_db).load_all_pending_jobs()}

        assert set(loaded) == {"job_weekly", "job_once"}
        restored = loaded["job_weekly"]
        assert restored.next_fire_at == job.next_fire_at
        assert restored.request.rule == job.request.rule
        assert restored.request.variables == {"userName": "Ann"}
        assert restored.request.kind == RequestKind.RECURRING
        assert loaded["job_once"].request.at == once.next_fire_at

    @pytest.mark.asyncio
    async def test_load_orders_by_next_fire(self, store):
        await store.save_job(_one_shot_job("late", at=NOW + timedelta(days=2)))
        await store.save_job(_one_shot_job("early", at=NOW + timedelta(hours=1)))
        jobs = await store.load_all_pending_jobs()
        assert [j.job_id for j in jobs] == ["early", "late"]

    @pytest.mark.asyncio
    async def test_canceled_jobs_not_loaded(self, store):
        job = _one_shot_job()
        job.status = JobStatus.CANCELED
        await store.save_job(job)
        assert await store.load_all_pending_jobs() == []

    @pytest.mark.asyncio
    async def test_unreadable_row_skipped(self, store, temp_db):
        await store.save_job(_one_shot_job("good"))
        await store.save_job(_one_shot_job("bad"))
        conn = get_connection(temp_db)
        with conn:
            conn.execute("UPDATE scheduled_jobs SET next_fire_at = 'garbage' WHERE id = 'bad'")
        conn.close()

        jobs = await store.load_all_pending_jobs()
        assert [j.job_id for j in jobs] == ["good"]


class TestRecordFiring:
    @pytest.mark.asyncio
    async def test_one_shot_deleted_with_record(self, store):
        job = _one_shot_job()
        await store.save_job(job)
        job.status = JobStatus.DONE

        await store.record_firing(job, _record())

        assert await store.load_all_pending_jobs() == []
        assert len(await store.list_send_records()) == 1

    @pytest.mark.asyncio
    async def test_recurring_rearmed_with_record(self, store):
        job = _recurring_job()
        await store.save_job(job)
        job.next_fire_at = job.next_fire_at + timedelta(days=7)

        await store.record_firing(job, _record())

        [loaded] = await store.load_all_pending_jobs()
        assert loaded.next_fire_at == job.next_fire_at

    @pytest.mark.asyncio
    async def test_rearm_skipped_when_canceled_in_storage(self, store):
        job = _recurring_job()
        await store.save_job(job)
        await store.save_job(replace(job, status=JobStatus.CANCELED))
        rearmed = replace(job, next_fire_at=job.next_fire_at + timedelta(days=7))

        assert await store.record_firing(rearmed, _record()) is False

        assert await store.get_job_status(job.job_id) == JobStatus.CANCELED
        assert await store.load_all_pending_jobs() == []
        # The delivery already happened, so its record is kept
        assert len(await store.list_send_records()) == 1

    @pytest.mark.asyncio
    async def test_rearm_skipped_when_row_missing(self, store):
        assert await store.record_firing(_recurring_job(), _record()) is False
        assert await store.get_job_status("job_weekly") is None

    @pytest.mark.asyncio
    async def test_atomic_on_failure(self, store):
        job = _recurring_job()
        await store.save_job(job)
        original_next = job.next_fire_at
        job.next_fire_at = original_next + timedelta(days=7)

        with patch(
            "lyra_notify.persistence.sqlite_store._rearm_job",
            side_effect=sqlite3.OperationalError("disk I/O error"),
        ):
            with pytest.raises(PersistenceWriteFailed):
                await store.record_firing(job, _record())

        # Neither the record nor the re-arm was written
        assert await store.list_send_records() == []
        [loaded] = await store.load_all_pending_jobs()
        assert loaded.next_fire_at == original_next


class TestSendRecords:
    @pytest.mark.asyncio
    async def test_count_only_sent_outcomes(self, store):
        await store.append_send_record(_record(SendOutcome.SENT))
        await store.append_send_record(_record(SendOutcome.SUPPRESSED))
        await store.append_send_record(_record(SendOutcome.FAILED))
        assert await store.count_sent_today("u1", None, NOW - timedelta(hours=1)) == 1

    @pytest.mark.asyncio
    async def test_count_respects_window_and_template(self, store):
        await store.append_send_record(_record(sent_at=NOW - timedelta(days=1)))
        await store.append_send_record(_record(sent_at=NOW))
        await store.append_send_record(_record(sent_at=NOW, template_id="journal_reminder"))

        window = datetime(2026, 1, 5, tzinfo=UTC)
        assert await store.count_sent_today("u1", None, window) == 2
        assert await store.count_sent_today("u1", "mood_reminder", window) == 1
        assert await store.count_sent_today("u2", None, window) == 0

    @pytest.mark.asyncio
    async def test_window_in_other_timezone(self, store):
        await store.append_send_record(_record(sent_at=datetime(2026, 1, 5, 14, 0, tzinfo=UTC)))
        # Midnight on the 6th in Sydney is 13:00 UTC on the 5th
        window = datetime(2026, 1, 6, tzinfo=ZoneInfo("Australia/Sydney"))
        assert await store.count_sent_today("u1", None, window) == 1

    @pytest.mark.asyncio
    async def test_purge(self, store):
        await store.append_send_record(_record(sent_at=NOW - timedelta(days=40)))
        await store.append_send_record(_record(sent_at=NOW))
        removed = await store.purge_send_records(NOW - timedelta(days=30))
        assert removed == 1
        assert len(await store.list_send_records()) == 1

    @pytest.mark.asyncio
    async def test_list_filters_and_orders(self, store):
        await store.append_send_record(_record(sent_at=NOW - timedelta(hours=2)))
        await store.append_send_record(_record(sent_at=NOW))
        await store.append_send_record(_record(user_id="u2"))

        records = await store.list_send_records(user_id="u1")
        assert [r.sent_at for r in records] == [NOW, NOW - timedelta(hours=2)]
        assert records[0].outcome == SendOutcome.SENT
