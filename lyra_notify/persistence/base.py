"""
Persistence Adapter Interface

Durable storage for scheduled jobs and the send audit trail. The orchestrator
rebuilds its in-memory queue from load_all_pending_jobs() at startup and
writes each firing's outcome through record_firing(), which must commit the
send record and the job's new state as one unit.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from lyra_notify.models import JobStatus, ScheduledJob, SendRecord


class PersistenceAdapter(ABC):
    @abstractmethod
    async def save_job(self, job: ScheduledJob) -> None:
        """Insert or replace a job definition. Raises PersistenceWriteFailed."""

    @abstractmethod
    async def load_all_pending_jobs(self) -> list[ScheduledJob]:
        """All jobs with status=pending, oldest next_fire_at first."""

    @abstractmethod
    async def get_job_status(self, job_id: str) -> JobStatus | None:
        """Stored status of a job, or None if the row no longer exists."""

    @abstractmethod
    async def append_send_record(self, record: SendRecord) -> None:
        """Append one audit record. Raises PersistenceWriteFailed."""

    @abstractmethod
    async def record_firing(self, job: ScheduledJob, record: SendRecord) -> bool:
        """
        Atomically append record and apply the job's post-firing state.

        A job in status DONE is deleted. Any other job is re-armed from the
        given state unless its stored row is gone or canceled, which another
        process may have done while this one was firing.

        Returns:
            False if the stored job was canceled or missing and was left as is

        Raises PersistenceWriteFailed, in which case nothing was written.
        """

    @abstractmethod
    async def count_sent_today(
        self,
        user_id: str,
        template_id: str | None,
        window_start: datetime,
    ) -> int:
        """Count outcome=sent records at or after window_start; template_id=None counts all."""

    @abstractmethod
    async def purge_send_records(self, before: datetime) -> int:
        """Delete audit records older than before. Returns number removed."""

    @abstractmethod
    async def list_send_records(
        self,
        user_id: str | None = None,
        limit: int = 100,
    ) -> list[SendRecord]:
        """Most recent records first."""
