"""
Notification engine error types.

Suppressions (quiet hours, daily cap, disabled templates...) are not errors:
they are recorded as SendRecords with outcome=suppressed and never raised.
"""

from __future__ import annotations


class NotificationError(Exception):
    """Base class for notification engine errors."""


class UnknownTemplate(NotificationError):
    def __init__(self, template_id: str):
        super().__init__(f"Template '{template_id}' not found")
        self.template_id = template_id


class MissingVariable(NotificationError):
    def __init__(self, name: str, template_id: str | None = None):
        where = f" for template '{template_id}'" if template_id else ""
        super().__init__(f"Missing variable '{name}'{where}")
        self.name = name
        self.template_id = template_id


class InvalidRecurrenceRule(NotificationError):
    pass


class InvalidSchedule(NotificationError):
    """Raised for malformed one-shot schedules (e.g. a fire time in the past)."""


class UnknownJob(NotificationError):
    def __init__(self, job_id: str):
        super().__init__(f"Job '{job_id}' not found")
        self.job_id = job_id


class PreferenceLookupFailed(NotificationError):
    """Transient failure reading the preference store."""


class PersistenceWriteFailed(NotificationError):
    """A durable write did not complete; the caller's state is unchanged."""


class TransportError(NotificationError):
    pass


class TransportRetryable(TransportError):
    """Timeout or gateway-side (5xx-like) failure; worth retrying."""


class TransportTerminal(TransportError):
    """Permanent failure such as an invalid destination token."""


__all__ = [
    "NotificationError",
    "UnknownTemplate",
    "MissingVariable",
    "InvalidRecurrenceRule",
    "InvalidSchedule",
    "UnknownJob",
    "PreferenceLookupFailed",
    "PersistenceWriteFailed",
    "TransportError",
    "TransportRetryable",
    "TransportTerminal",
]
