"""
Tool: SQLite Persistence Adapter
Purpose: Store scheduled jobs and the send audit trail in SQLite

Usage:
    from lyra_notify.persistence.sqlite_store import SQLitePersistence

    store = SQLitePersistence(db_path)
    await store.save_job(job)
    jobs = await store.load_all_pending_jobs()
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from pathlib import Path

from lyra_notify.clock import format_timestamp
from lyra_notify.errors import PersistenceWriteFailed
from lyra_notify.models import JobStatus, ScheduledJob, SendOutcome, SendRecord
from lyra_notify.persistence.base import PersistenceAdapter
from lyra_notify.persistence.database import get_connection

logger = logging.getLogger(__name__)

_JOB_COLUMNS = (
    "id",
    "user_id",
    "template_id",
    "kind",
    "variables",
    "cron",
    "timezone",
    "requested_at",
    "next_fire_at",
    "status",
    "created_at",
    "last_fired_at",
)

_RECORD_COLUMNS = (
    "id",
    "user_id",
    "template_id",
    "sent_at",
    "outcome",
    "reason",
    "job_id",
    "attempts",
)


class SQLitePersistence(PersistenceAdapter):
    """Persistence adapter backed by a single SQLite file."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    def _connect(self) -> sqlite3.Connection:
        return get_connection(self.db_path)

    async def save_job(self, job: ScheduledJob) -> None:
        conn = self._connect()
        try:
            with conn:
                _upsert_job(conn, job)
        except sqlite3.Error as e:
            raise PersistenceWriteFailed(f"Failed to save job {job.job_id}: {e}") from e
        finally:
            conn.close()

    async def load_all_pending_jobs(self) -> list[ScheduledJob]:
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                SELECT * FROM scheduled_jobs
                WHERE status = ?
                ORDER BY next_fire_at ASC
                """,
                (JobStatus.PENDING.value,),
            )
            rows = cursor.fetchall()
        finally:
            conn.close()

        jobs = []
        for row in rows:
            try:
                jobs.append(ScheduledJob.from_dict(dict(row)))
            except Exception:
                # A corrupt row must not keep the rest of the queue from loading
                logger.exception(f"Skipping unreadable job row {row['id']}")
        return jobs

    async def get_job_status(self, job_id: str) -> JobStatus | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT status FROM scheduled_jobs WHERE id = ?", (job_id,)
            ).fetchone()
        finally:
            conn.close()
        return JobStatus(row["status"]) if row else None

    async def append_send_record(self, record: SendRecord) -> None:
        conn = self._connect()
        try:
            with conn:
                _insert_record(conn, record)
        except sqlite3.Error as e:
            raise PersistenceWriteFailed(f"Failed to append send record: {e}") from e
        finally:
            conn.close()

    async def record_firing(self, job: ScheduledJob, record: SendRecord) -> bool:
        conn = self._connect()
        try:
            with conn:
                _insert_record(conn, record)
                if job.status == JobStatus.DONE:
                    conn.execute("DELETE FROM scheduled_jobs WHERE id = ?", (job.job_id,))
                    return True
                rearmed = _rearm_job(conn, job)
        except sqlite3.Error as e:
            raise PersistenceWriteFailed(
                f"Failed to record firing of job {job.job_id}: {e}"
            ) from e
        finally:
            conn.close()

        if not rearmed:
            logger.info(f"Job {job.job_id} was canceled in storage, not re-arming")
        return rearmed

    async def count_sent_today(
        self,
        user_id: str,
        template_id: str | None,
        window_start: datetime,
    ) -> int:
        query = """
            SELECT COUNT(*) AS count FROM send_records
            WHERE user_id = ? AND outcome = ? AND sent_at >= ?
        """
        params: list = [user_id, SendOutcome.SENT.value, format_timestamp(window_start)]
        if template_id is not None:
            query += " AND template_id = ?"
            params.append(template_id)

        conn = self._connect()
        try:
            row = conn.execute(query, params).fetchone()
        finally:
            conn.close()
        return row["count"] if row else 0

    async def purge_send_records(self, before: datetime) -> int:
        conn = self._connect()
        try:
            with conn:
                cursor = conn.execute(
                    "DELETE FROM send_records WHERE sent_at < ?",
                    (format_timestamp(before),),
                )
                removed = cursor.rowcount
        except sqlite3.Error as e:
            raise PersistenceWriteFailed(f"Failed to purge send records: {e}") from e
        finally:
            conn.close()
        return removed

    async def list_send_records(
        self,
        user_id: str | None = None,
        limit: int = 100,
    ) -> list[SendRecord]:
        query = "SELECT * FROM send_records WHERE 1=1"
        params: list = []

        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)

        query += " ORDER BY sent_at DESC LIMIT ?"
        params.append(limit)

        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [SendRecord.from_dict(dict(row)) for row in rows]


def _upsert_job(conn: sqlite3.Connection, job: ScheduledJob) -> None:
    data = job.to_dict()
    placeholders = ", ".join("?" * len(_JOB_COLUMNS))
    conn.execute(
        f"""
        INSERT OR REPLACE INTO scheduled_jobs ({", ".join(_JOB_COLUMNS)}, updated_at)
        VALUES ({placeholders}, CURRENT_TIMESTAMP)
        """,
        [data[column] for column in _JOB_COLUMNS],
    )


def _rearm_job(conn: sqlite3.Connection, job: ScheduledJob) -> bool:
    data = job.to_dict()
    cursor = conn.execute(
        """
        UPDATE scheduled_jobs
        SET status = ?, next_fire_at = ?, last_fired_at = ?, updated_at = CURRENT_TIMESTAMP
        WHERE id = ? AND status != ?
        """,
        (
            data["status"],
            data["next_fire_at"],
            data["last_fired_at"],
            job.job_id,
            JobStatus.CANCELED.value,
        ),
    )
    return cursor.rowcount > 0


def _insert_record(conn: sqlite3.Connection, record: SendRecord) -> None:
    data = record.to_dict()
    placeholders = ", ".join("?" * len(_RECORD_COLUMNS))
    conn.execute(
        f"INSERT INTO send_records ({', '.join(_RECORD_COLUMNS)}) VALUES ({placeholders})",
        [data[column] for column in _RECORD_COLUMNS],
    )
