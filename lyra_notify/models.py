"""
Tool: Notification Engine Models
Purpose: Data structures shared by the decision pipeline, orchestrator and dispatcher

Usage:
    from lyra_notify.models import (
        Template,
        UserPreference,
        GlobalSettings,
        NotificationRequest,
        ScheduledJob,
        SendRecord,
        RenderedNotification,
    )
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import Any

from lyra_notify.clock import format_timestamp, parse_timestamp, utcnow
from lyra_notify.queue.recurrence import RecurrenceRule


class Category(StrEnum):
    """Notification categories. SUPPORT bypasses quiet hours."""

    REMINDER = "reminder"
    INSIGHT = "insight"
    INTERVENTION = "intervention"
    ACHIEVEMENT = "achievement"
    PROMOTION = "promotion"
    SUPPORT = "support"


class Frequency(StrEnum):
    IMMEDIATE = "immediate"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class Priority(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"  # Crisis-level, bypasses quiet hours


class RequestKind(StrEnum):
    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"
    RECURRING = "recurring"


class JobStatus(StrEnum):
    PENDING = "pending"
    FIRED = "fired"
    DONE = "done"
    CANCELED = "canceled"


class SendOutcome(StrEnum):
    SENT = "sent"
    SUPPRESSED = "suppressed"
    FAILED = "failed"


class SuppressionReason(StrEnum):
    """Why a candidate notification was not sent. Order matches gate precedence."""

    GLOBAL_DISABLED = "global_disabled"
    TEMPLATE_DISABLED = "template_disabled"
    QUIET_HOURS = "quiet_hours"
    DAILY_CAP_REACHED = "daily_cap_reached"
    ALREADY_SENT_THIS_PERIOD = "already_sent_this_period"
    PREFERENCE_LOOKUP_FAILED = "preference_lookup_failed"
    NO_ACTIVE_DEVICES = "no_active_devices"


@dataclass(frozen=True)
class Template:
    """
    Notification content template.

    Patterns use ${name} placeholders. Immutable once loaded.
    """

    id: str
    category: Category
    title_pattern: str
    body_pattern: str
    default_frequency: Frequency = Frequency.IMMEDIATE
    name: str = ""
    priority: Priority = Priority.NORMAL
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Template:
        """Create from a YAML/JSON mapping."""
        return cls(
            id=data["id"],
            category=Category(data["category"]),
            title_pattern=data["title"],
            body_pattern=data["body"],
            default_frequency=Frequency(data.get("frequency", "immediate")),
            name=data.get("name", ""),
            priority=Priority(data.get("priority", "normal")),
            data=dict(data.get("data") or {}),
        )


@dataclass(frozen=True)
class GlobalSettings:
    """
    Process-wide delivery settings.

    Passed explicitly into every decision as a snapshot; per-user overrides
    are merged in with with_overrides().
    """

    enabled: bool = True
    quiet_hours_start: str | None = "22:00"
    quiet_hours_end: str | None = "08:00"
    max_notifications_per_day: int = 10
    priority_level: str = "normal"
    timezone: str = "UTC"

    def with_overrides(self, pref: UserPreference | None) -> GlobalSettings:
        if pref is None:
            return self
        overrides = {
            "quiet_hours_start": pref.quiet_hours_start,
            "quiet_hours_end": pref.quiet_hours_end,
            "max_notifications_per_day": pref.max_notifications_per_day,
            "timezone": pref.timezone,
        }
        overrides = {k: v for k, v in overrides.items() if v is not None}
        if pref.globally_enabled is not None:
            overrides["enabled"] = self.enabled and pref.globally_enabled
        return replace(self, **overrides) if overrides else self


@dataclass(frozen=True)
class UserPreference:
    """
    One user's setting for one template.

    conditions is an opaque bag evaluated by the triggering caller; the
    engine stores and returns it but never interprets it. The trailing
    optional fields are per-user overrides of GlobalSettings.
    """

    user_id: str
    template_id: str
    enabled: bool = True
    frequency: Frequency = Frequency.IMMEDIATE
    preferred_time: str | None = None  # HH:MM
    conditions: dict[str, Any] = field(default_factory=dict)

    # Per-user overrides
    globally_enabled: bool | None = None
    quiet_hours_start: str | None = None
    quiet_hours_end: str | None = None
    max_notifications_per_day: int | None = None
    timezone: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "template_id": self.template_id,
            "enabled": self.enabled,
            "frequency": self.frequency.value,
            "preferred_time": self.preferred_time,
            "conditions": self.conditions,
        }


@dataclass(frozen=True)
class NotificationRequest:
    """
    A trigger's ask to notify a user.

    Consumed exactly once; recurring jobs synthesize a fresh request at
    every firing.
    """

    user_id: str
    template_id: str
    variables: dict[str, Any] = field(default_factory=dict)
    requested_at: datetime = field(default_factory=utcnow)
    kind: RequestKind = RequestKind.IMMEDIATE
    at: datetime | None = None  # SCHEDULED
    rule: RecurrenceRule | None = None  # RECURRING


@dataclass
class ScheduledJob:
    """
    Persistent record of a non-immediate request.

    Owned and mutated only by the orchestrator.
    """

    job_id: str
    request: NotificationRequest
    next_fire_at: datetime
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    last_fired_at: datetime | None = None

    @property
    def is_recurring(self) -> bool:
        return self.request.kind == RequestKind.RECURRING

    @property
    def user_id(self) -> str:
        return self.request.user_id

    @property
    def template_id(self) -> str:
        return self.request.template_id

    @staticmethod
    def generate_id() -> str:
        """Generate a new job ID."""
        return f"job_{uuid.uuid4().hex[:12]}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for database storage."""
        return {
            "id": self.job_id,
            "user_id": self.request.user_id,
            "template_id": self.request.template_id,
            "kind": self.request.kind.value,
            "variables": json.dumps(self.request.variables),
            "cron": self.request.rule.cron if self.request.rule else None,
            "timezone": self.request.rule.timezone if self.request.rule else None,
            "requested_at": format_timestamp(self.request.requested_at),
            "next_fire_at": format_timestamp(self.next_fire_at),
            "status": self.status.value,
            "created_at": format_timestamp(self.created_at),
            "last_fired_at": (
                format_timestamp(self.last_fired_at) if self.last_fired_at else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScheduledJob:
        """Create from a database row."""
        kind = RequestKind(data["kind"])
        next_fire_at = parse_timestamp(data["next_fire_at"])
        rule = None
        if data.get("cron"):
            rule = RecurrenceRule(data["cron"], data.get("timezone") or "UTC")

        variables = data.get("variables")
        if isinstance(variables, str):
            variables = json.loads(variables) if variables else {}

        request = NotificationRequest(
            user_id=data["user_id"],
            template_id=data["template_id"],
            variables=variables or {},
            requested_at=parse_timestamp(data.get("requested_at")) or utcnow(),
            kind=kind,
            at=next_fire_at if kind == RequestKind.SCHEDULED else None,
            rule=rule,
        )
        return cls(
            job_id=data["id"],
            request=request,
            next_fire_at=next_fire_at,
            status=JobStatus(data.get("status", "pending")),
            created_at=parse_timestamp(data.get("created_at")) or utcnow(),
            last_fired_at=parse_timestamp(data.get("last_fired_at")),
        )


@dataclass(frozen=True)
class SendRecord:
    """Audit trail entry for one terminal decision."""

    user_id: str
    template_id: str
    sent_at: datetime
    outcome: SendOutcome
    reason: str | None = None
    job_id: str | None = None
    attempts: int = 0
    id: str = field(default_factory=lambda: f"rec_{uuid.uuid4().hex[:12]}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "template_id": self.template_id,
            "sent_at": format_timestamp(self.sent_at),
            "outcome": self.outcome.value,
            "reason": self.reason,
            "job_id": self.job_id,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SendRecord:
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            template_id=data["template_id"],
            sent_at=parse_timestamp(data["sent_at"]),
            outcome=SendOutcome(data["outcome"]),
            reason=data.get("reason"),
            job_id=data.get("job_id"),
            attempts=data.get("attempts") or 0,
        )


@dataclass(frozen=True)
class RenderedNotification:
    """Fully resolved notification handed to the dispatcher. Never persisted."""

    user_id: str
    template_id: str
    title: str
    body: str
    category: Category
    priority: Priority = Priority.NORMAL
    data: dict[str, Any] = field(default_factory=dict)

    def to_push_payload(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "body": self.body,
            "data": {**self.data, "templateId": self.template_id, "userId": self.user_id},
            "priority": self.priority.value,
            "category": self.category.value,
        }
