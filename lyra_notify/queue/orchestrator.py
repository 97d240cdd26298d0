"""
Tool: Job Orchestrator
Purpose: Own the scheduled job set, fire due jobs through the decision
         pipeline and hand approved notifications to the dispatcher

Usage:
    from lyra_notify.queue.orchestrator import JobOrchestrator

    orchestrator = JobOrchestrator(registry, preferences, persistence, dispatcher)
    await orchestrator.start()          # restore + scheduler/contextual loops

    await orchestrator.trigger_immediate("alice", "crisis_support", {})
    job = await orchestrator.schedule_once("alice", "mood_reminder", {"userName": "Ann"}, at)
    await orchestrator.cancel(job.job_id)

Job lifecycle:
    pending -> fired -> pending (recurring, re-armed) | done (one-shot)
    pending -> canceled (here, or in storage by another process sharing it)

Decision pipeline (per firing):
    preference snapshot -> gate -> template render -> dispatcher

Concurrency:
    - Tick selection is serialized by a lock; a selected job is claimed
      (time-bounded) before any await so no two workers fire it
    - Claimed jobs run on a bounded pool (max_concurrent_jobs)
    - Decisions for the same user run one at a time so the daily cap and
      the send records for a (user, template) pair are linearized
    - The send record and the job's re-armed state are written in one
      persistence call
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from lyra_notify.clock import Clock, ensure_utc, utcnow
from lyra_notify.config_models import NotificationsConfig
from lyra_notify.errors import (
    InvalidSchedule,
    MissingVariable,
    PersistenceWriteFailed,
    PreferenceLookupFailed,
    UnknownJob,
    UnknownTemplate,
)
from lyra_notify.logging_config import bind_job_context
from lyra_notify.models import (
    GlobalSettings,
    JobStatus,
    NotificationRequest,
    RequestKind,
    ScheduledJob,
    SendOutcome,
    SendRecord,
    SuppressionReason,
    UserPreference,
)
from lyra_notify.persistence.base import PersistenceAdapter
from lyra_notify.preferences.store import PreferenceStore
from lyra_notify.push.dispatcher import Dispatcher
from lyra_notify.queue.gate import decide, local_day_start, period_start
from lyra_notify.queue.recurrence import RecurrenceRule
from lyra_notify.templates.registry import TemplateRegistry

logger = logging.getLogger(__name__)

_GLOBAL_KEY = ("*", "*")
_PREFERENCE_ATTEMPTS = 2


class JobOrchestrator:
    """Scheduling core: job table, clock-driven ticks and contextual queue."""

    def __init__(
        self,
        registry: TemplateRegistry,
        preferences: PreferenceStore,
        persistence: PersistenceAdapter,
        dispatcher: Dispatcher,
        config: NotificationsConfig | None = None,
        clock: Clock | None = None,
    ):
        self.registry = registry
        self.preferences = preferences
        self.persistence = persistence
        self.dispatcher = dispatcher
        self.config = config or NotificationsConfig()
        self._clock = clock or utcnow

        scheduler_config = self.config.scheduler
        self.poll_interval = scheduler_config.poll_interval_seconds
        self.contextual_interval = scheduler_config.contextual_interval_seconds
        self.claim_timeout = timedelta(seconds=scheduler_config.claim_timeout_seconds)

        # Active job set and claim table: the only mutable shared state
        self._jobs: dict[str, ScheduledJob] = {}
        self._claims: dict[str, datetime] = {}
        self._pending_cancel: set[str] = set()

        self._tick_lock = asyncio.Lock()
        self._user_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._workers = asyncio.Semaphore(scheduler_config.max_concurrent_jobs)
        self._contextual: asyncio.Queue[NotificationRequest] = asyncio.Queue()

        self._cleanup_rule = RecurrenceRule(
            self.config.retention.cleanup_schedule, scheduler_config.timezone
        )
        self._next_cleanup_at: datetime | None = None

        self.running = False
        self.restored = False
        self.tasks: list[asyncio.Task] = []
        self.last_tick_at: datetime | None = None
        self.counters = {"sent": 0, "suppressed": 0, "failed": 0, "errors": 0}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def restore(self) -> int:
        """Rebuild the in-memory job set from persistence. Returns job count."""
        jobs = await self.persistence.load_all_pending_jobs()
        self._jobs = {job.job_id: job for job in jobs}
        self._claims.clear()
        self.restored = True
        logger.info(f"Restored {len(jobs)} pending jobs")
        return len(jobs)

    async def start(self) -> None:
        if self.running:
            return
        if not self.restored:
            await self.restore()

        self.running = True
        self.tasks = [
            asyncio.create_task(self._run_scheduler_loop(), name="notify-scheduler"),
            asyncio.create_task(self._run_contextual_loop(), name="notify-contextual"),
        ]
        logger.info("Job orchestrator started")

    async def stop(self) -> None:
        self.running = False
        for task in self.tasks:
            task.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks = []
        logger.info("Job orchestrator stopped")

    async def _run_scheduler_loop(self) -> None:
        while self.running:
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
                self.counters["errors"] += 1
            await asyncio.sleep(self.poll_interval)

    async def _run_contextual_loop(self) -> None:
        while self.running:
            try:
                await self.process_contextual()
            except Exception:
                logger.exception("Contextual processing failed")
                self.counters["errors"] += 1
            await asyncio.sleep(self.contextual_interval)

    # =========================================================================
    # Trigger API
    # =========================================================================

    async def trigger_immediate(
        self,
        user_id: str,
        template_id: str,
        variables: dict[str, Any] | None = None,
    ) -> SendRecord:
        """
        Run the decision pipeline now and deliver if allowed.

        Raises:
            UnknownTemplate, MissingVariable: malformed request

        Returns:
            The SendRecord written for this decision
        """
        variables = dict(variables or {})
        self.registry.validate(template_id, variables)

        now = self._now()
        request = NotificationRequest(
            user_id=user_id,
            template_id=template_id,
            variables=variables,
            requested_at=now,
            kind=RequestKind.IMMEDIATE,
        )
        return await self._process_request(request, now)

    async def schedule_once(
        self,
        user_id: str,
        template_id: str,
        variables: dict[str, Any] | None,
        at: datetime,
    ) -> ScheduledJob:
        """
        Schedule a one-shot notification.

        Raises:
            UnknownTemplate, MissingVariable: malformed request
            InvalidSchedule: at is not in the future
            PersistenceWriteFailed: the job could not be stored
        """
        variables = dict(variables or {})
        self.registry.validate(template_id, variables)

        now = self._now()
        at = ensure_utc(at)
        if at <= now:
            raise InvalidSchedule(f"Fire time {at.isoformat()} is not in the future")

        request = NotificationRequest(
            user_id=user_id,
            template_id=template_id,
            variables=variables,
            requested_at=now,
            kind=RequestKind.SCHEDULED,
            at=at,
        )
        job = ScheduledJob(
            job_id=ScheduledJob.generate_id(),
            request=request,
            next_fire_at=at,
            created_at=now,
        )
        await self.persistence.save_job(job)
        self._jobs[job.job_id] = job

        logger.info(f"Scheduled {template_id} for user {user_id} at {at.isoformat()} ({job.job_id})")
        return job

    async def schedule_recurring(
        self,
        user_id: str,
        template_id: str,
        variables: dict[str, Any] | None,
        rule: RecurrenceRule | str,
        timezone: str = "UTC",
    ) -> ScheduledJob:
        """
        Schedule a calendar-anchored recurring notification.

        Args:
            rule: RecurrenceRule, or a cron expression evaluated in timezone

        Raises:
            UnknownTemplate, MissingVariable: malformed request
            InvalidRecurrenceRule: malformed cron expression or timezone
            PersistenceWriteFailed: the job could not be stored
        """
        variables = dict(variables or {})
        self.registry.validate(template_id, variables)
        if isinstance(rule, str):
            rule = RecurrenceRule(rule, timezone)

        now = self._now()
        request = NotificationRequest(
            user_id=user_id,
            template_id=template_id,
            variables=variables,
            requested_at=now,
            kind=RequestKind.RECURRING,
            rule=rule,
        )
        job = ScheduledJob(
            job_id=ScheduledJob.generate_id(),
            request=request,
            next_fire_at=rule.next_fire_after(now),
            created_at=now,
        )
        await self.persistence.save_job(job)
        self._jobs[job.job_id] = job

        logger.info(
            f"Scheduled recurring {template_id} for user {user_id} "
            f"'{rule.cron}' ({rule.timezone}), first at {job.next_fire_at.isoformat()}"
        )
        return job

    async def cancel(self, job_id: str) -> bool:
        """
        Cancel a job by id.

        Returns:
            True if canceled now; False if the job is mid-firing, in which
            case the cancellation is applied once that firing completes

        Raises:
            UnknownJob: no active job with this id
        """
        job = self._jobs.get(job_id)
        if job is None or job.status == JobStatus.CANCELED:
            raise UnknownJob(job_id)

        if job_id in self._claims:
            self._pending_cancel.add(job_id)
            logger.info(f"Job {job_id} is firing, cancellation deferred")
            return False

        await self._apply_cancel(job)
        return True

    async def enqueue_contextual(
        self,
        user_id: str,
        template_id: str,
        variables: dict[str, Any] | None = None,
    ) -> None:
        """Queue an event-driven request for the contextual loop."""
        variables = dict(variables or {})
        self.registry.validate(template_id, variables)
        self._contextual.put_nowait(
            NotificationRequest(
                user_id=user_id,
                template_id=template_id,
                variables=variables,
                requested_at=self._now(),
                kind=RequestKind.IMMEDIATE,
            )
        )

    async def process_contextual(self) -> list[SendRecord]:
        """Drain the contextual queue through the decision pipeline."""
        records = []
        while not self._contextual.empty():
            request = self._contextual.get_nowait()
            try:
                records.append(await self._process_request(request, self._now()))
            except Exception:
                logger.exception(
                    f"Contextual request {request.template_id} for user {request.user_id} failed"
                )
                self.counters["errors"] += 1
            finally:
                self._contextual.task_done()
        return records

    # =========================================================================
    # Ticks
    # =========================================================================

    async def tick(self, now: datetime | None = None) -> dict[str, int]:
        """
        Fire every pending job due at or before now.

        Returns:
            {"due", "sent", "suppressed", "failed", "canceled", "errors"} for this tick
        """
        now = ensure_utc(now) if now else self._now()

        async with self._tick_lock:
            self._expire_stale_claims(now)
            # A FIRED job without a claim is left over from an expired claim
            due = sorted(
                (
                    job
                    for job in self._jobs.values()
                    if job.status in (JobStatus.PENDING, JobStatus.FIRED)
                    and job.next_fire_at <= now
                    and job.job_id not in self._claims
                ),
                key=lambda job: job.next_fire_at,
            )
            for job in due:
                self._claims[job.job_id] = now
            self.last_tick_at = now

        summary = {
            "due": len(due),
            "sent": 0,
            "suppressed": 0,
            "failed": 0,
            "canceled": 0,
            "errors": 0,
        }
        if due:
            logger.info(f"Tick {now.isoformat()}: {len(due)} due jobs")

        cache: dict[tuple[str, str], Any] = {}
        results = await asyncio.gather(
            *(self._run_claimed(job, now, cache) for job in due)
        )
        for job, record in zip(due, results):
            if record is not None:
                summary[record.outcome.value] += 1
            elif job.status == JobStatus.CANCELED:
                summary["canceled"] += 1
            else:
                summary["errors"] += 1

        await self._maybe_cleanup(now)
        return summary

    async def trigger_job_now(self, job_id: str) -> SendRecord | None:
        """
        Fire a job outside the clock.

        A recurring job keeps its next slot; a one-shot job is consumed.
        Returns None if the job is already firing, was canceled in storage,
        or the firing errored.
        """
        job = self._jobs.get(job_id)
        if job is None or job.status == JobStatus.CANCELED:
            raise UnknownJob(job_id)

        now = self._now()
        async with self._tick_lock:
            if job_id in self._claims:
                logger.warning(f"Job {job_id} is already firing")
                return None
            self._claims[job_id] = now

        return await self._run_claimed(job, now, {}, consume_slot=not job.is_recurring)

    async def purge_old_records(self, now: datetime | None = None) -> int:
        now = ensure_utc(now) if now else self._now()
        cutoff = now - timedelta(days=self.config.retention.send_record_days)
        removed = await self.persistence.purge_send_records(cutoff)
        logger.info(f"Purged {removed} send records older than {cutoff.isoformat()}")
        return removed

    # =========================================================================
    # Administrative surface
    # =========================================================================

    def get_status(self) -> dict[str, Any]:
        pending = sum(1 for job in self._jobs.values() if job.status == JobStatus.PENDING)
        return {
            "running": self.running,
            "pending_jobs": pending,
            "claimed_jobs": len(self._claims),
            "contextual_queued": self._contextual.qsize(),
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "next_cleanup_at": (
                self._next_cleanup_at.isoformat() if self._next_cleanup_at else None
            ),
            "counters": dict(self.counters),
        }

    def list_jobs(self, user_id: str | None = None) -> list[ScheduledJob]:
        jobs = [job for job in self._jobs.values() if user_id is None or job.user_id == user_id]
        return sorted(jobs, key=lambda job: job.next_fire_at)

    def get_job(self, job_id: str) -> ScheduledJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise UnknownJob(job_id)
        return job

    # =========================================================================
    # Firing
    # =========================================================================

    async def _run_claimed(
        self,
        job: ScheduledJob,
        now: datetime,
        cache: dict[tuple[str, str], Any],
        consume_slot: bool = True,
    ) -> SendRecord | None:
        """Fire one claimed job. Failures are isolated to this job."""
        with bind_job_context(job):
            try:
                async with self._workers:
                    return await self._fire(job, now, cache, consume_slot)
            except Exception:
                logger.exception(f"Job {job.job_id} ({job.template_id}) failed")
                self.counters["errors"] += 1
                return None
            finally:
                await self._release(job.job_id)

    async def _fire(
        self,
        job: ScheduledJob,
        now: datetime,
        cache: dict[tuple[str, str], Any],
        consume_slot: bool,
    ) -> SendRecord | None:
        request = replace(job.request, requested_at=now)
        job.status = JobStatus.FIRED

        try:
            async with self._user_lock(job.user_id):
                if not await self._still_scheduled(job):
                    return None

                record = await self._evaluate(request, now, job.job_id, cache)

                if not consume_slot:
                    await self.persistence.append_send_record(record)
                    job.status = JobStatus.PENDING
                    self._count(record)
                    return record

                if job.is_recurring:
                    updated = replace(
                        job,
                        status=JobStatus.PENDING,
                        next_fire_at=job.request.rule.next_fire_after_slot(job.next_fire_at, now),
                        last_fired_at=now,
                    )
                else:
                    updated = replace(job, status=JobStatus.DONE, last_fired_at=now)

                rearmed = await self.persistence.record_firing(updated, record)
        except PersistenceWriteFailed as e:
            job.status = JobStatus.PENDING
            logger.error(f"Job {job.job_id} stays pending, persistence write failed: {e}")
            self.counters["errors"] += 1
            return None
        except BaseException:
            job.status = JobStatus.PENDING
            raise

        if not rearmed:
            job.status = JobStatus.CANCELED
            self._jobs.pop(job.job_id, None)
        elif updated.status == JobStatus.DONE:
            self._jobs.pop(job.job_id, None)
        else:
            self._jobs[job.job_id] = updated
            logger.debug(f"Re-armed {job.job_id} for {updated.next_fire_at.isoformat()}")

        self._count(record)
        return record

    async def _still_scheduled(self, job: ScheduledJob) -> bool:
        """False, and the job is dropped, if storage shows it canceled or removed."""
        stored = await self.persistence.get_job_status(job.job_id)
        if stored in (JobStatus.PENDING, JobStatus.FIRED):
            return True
        job.status = JobStatus.CANCELED
        self._jobs.pop(job.job_id, None)
        logger.info(f"Job {job.job_id} is {stored.value if stored else 'gone'} in storage, dropping")
        return False

    async def _process_request(self, request: NotificationRequest, now: datetime) -> SendRecord:
        """Unqueued path shared by immediate and contextual triggers."""
        async with self._user_lock(request.user_id):
            record = await self._evaluate(request, now, None, {})
            await self.persistence.append_send_record(record)
        self._count(record)
        return record

    async def _evaluate(
        self,
        request: NotificationRequest,
        now: datetime,
        job_id: str | None,
        cache: dict[tuple[str, str], Any],
    ) -> SendRecord:
        """Preference snapshot -> gate -> render -> deliver. Always returns a record."""

        def record(outcome: SendOutcome, reason: str | None = None, attempts: int = 0) -> SendRecord:
            logger.info(
                f"Notification {outcome.value}: user={request.user_id} "
                f"template={request.template_id} reason={reason or '-'}"
            )
            return SendRecord(
                user_id=request.user_id,
                template_id=request.template_id,
                sent_at=now,
                outcome=outcome,
                reason=reason,
                job_id=job_id,
                attempts=attempts,
            )

        try:
            template = self.registry.get(request.template_id)
        except UnknownTemplate:
            return record(SendOutcome.FAILED, "unknown_template")

        snapshot = await self._snapshot(request.user_id, request.template_id, cache)
        if snapshot is None:
            return record(
                SendOutcome.SUPPRESSED, SuppressionReason.PREFERENCE_LOOKUP_FAILED.value
            )
        settings, pref = snapshot

        todays_count = await self.persistence.count_sent_today(
            request.user_id, None, local_day_start(now, settings.timezone)
        )
        window = period_start(pref.frequency, now, settings.timezone)
        period_count = 0
        if window is not None:
            period_count = await self.persistence.count_sent_today(
                request.user_id, request.template_id, window
            )

        decision = decide(
            request.user_id,
            request.template_id,
            template.category,
            now,
            settings=settings,
            pref=pref,
            todays_send_count=todays_count,
            period_send_count=period_count,
            priority=template.priority,
        )
        if not decision.allowed:
            return record(SendOutcome.SUPPRESSED, decision.reason.value)

        try:
            rendered = self.registry.resolve(
                request.template_id, request.variables, user_id=request.user_id
            )
        except MissingVariable as e:
            logger.warning(str(e))
            return record(SendOutcome.FAILED, "missing_variable")

        delivery = await self.dispatcher.deliver(rendered)
        return record(delivery.outcome, delivery.reason, delivery.attempts)

    async def _snapshot(
        self,
        user_id: str,
        template_id: str,
        cache: dict[tuple[str, str], Any],
    ) -> tuple[GlobalSettings, UserPreference] | None:
        """Settings and preference taken once per decision, retried once on failure."""
        for attempt in range(1, _PREFERENCE_ATTEMPTS + 1):
            try:
                if _GLOBAL_KEY not in cache:
                    cache[_GLOBAL_KEY] = await self.preferences.get_global_settings()
                key = (user_id, template_id)
                if key not in cache:
                    cache[key] = await self.preferences.get_preference(user_id, template_id)
                pref = cache[key]
                return cache[_GLOBAL_KEY].with_overrides(pref), pref
            except PreferenceLookupFailed as e:
                logger.warning(
                    f"Preference lookup failed for {user_id}/{template_id} "
                    f"(attempt {attempt}/{_PREFERENCE_ATTEMPTS}): {e}"
                )
        return None

    # =========================================================================
    # Claims, cancellation and housekeeping
    # =========================================================================

    @asynccontextmanager
    async def _user_lock(self, user_id: str) -> AsyncIterator[None]:
        """Hold the per-user decision lock; the entry is dropped once nobody waits on it."""
        lock = self._user_locks.setdefault(user_id, asyncio.Lock())
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_id] -= 1
            if not self._lock_users[user_id]:
                del self._lock_users[user_id]
                del self._user_locks[user_id]

    def _expire_stale_claims(self, now: datetime) -> None:
        for job_id, claimed_at in list(self._claims.items()):
            if now - claimed_at > self.claim_timeout:
                logger.warning(f"Claim on job {job_id} expired after {self.claim_timeout}")
                del self._claims[job_id]

    async def _release(self, job_id: str) -> None:
        self._claims.pop(job_id, None)
        if job_id not in self._pending_cancel:
            return

        self._pending_cancel.discard(job_id)
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.PENDING:
            return
        try:
            await self._apply_cancel(job)
        except PersistenceWriteFailed as e:
            logger.error(f"Deferred cancel of job {job_id} failed: {e}")
            self.counters["errors"] += 1

    async def _apply_cancel(self, job: ScheduledJob) -> None:
        # Status flips before the await so a concurrent tick cannot select it
        job.status = JobStatus.CANCELED
        try:
            await self.persistence.save_job(job)
        except PersistenceWriteFailed:
            job.status = JobStatus.PENDING
            raise
        self._jobs.pop(job.job_id, None)
        logger.info(f"Canceled job {job.job_id} ({job.template_id}, user {job.user_id})")

    async def _maybe_cleanup(self, now: datetime) -> None:
        if self._next_cleanup_at is None:
            self._next_cleanup_at = self._cleanup_rule.next_fire_after(now)
            return
        if now < self._next_cleanup_at:
            return

        try:
            await self.purge_old_records(now)
        except PersistenceWriteFailed as e:
            logger.error(f"Send record cleanup failed: {e}")
            self.counters["errors"] += 1
        self._next_cleanup_at = self._cleanup_rule.next_fire_after_slot(self._next_cleanup_at, now)

    def _count(self, record: SendRecord) -> None:
        self.counters[record.outcome.value] += 1

    def _now(self) -> datetime:
        return ensure_utc(self._clock())
