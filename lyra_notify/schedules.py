"""
Tool: Built-in Recurring Schedules
Purpose: Enroll a user in the app's calendar notifications

Usage:
    from lyra_notify.schedules import enroll_user

    jobs = await enroll_user(orchestrator, preferences, "alice",
                             variables={"userName": "Alice"},
                             timezone="Europe/London")

Calendar jobs:
    weekly_summary        Mondays 10:00
    mood_insight          1st of the month 09:00
    subscription_upgrade  Fridays 15:00
    goal_reminder         Tuesdays 11:00
    crisis_support        daily 18:00

Daily reminders (frequency=daily with a preferred time) run every day at the
user's preferred time.
"""

from __future__ import annotations

import logging
from typing import Any

from lyra_notify.errors import MissingVariable
from lyra_notify.models import Frequency, ScheduledJob
from lyra_notify.preferences.store import PreferenceStore
from lyra_notify.queue.orchestrator import JobOrchestrator
from lyra_notify.queue.recurrence import RecurrenceRule

logger = logging.getLogger(__name__)


BUILTIN_SCHEDULES: dict[str, str] = {
    "weekly_summary": "0 10 * * 1",
    "mood_insight": "0 9 1 * *",
    "subscription_upgrade": "0 15 * * 5",
    "goal_reminder": "0 11 * * 2",
    "crisis_support": "0 18 * * *",
}


async def enroll_user(
    orchestrator: JobOrchestrator,
    preferences: PreferenceStore,
    user_id: str,
    variables: dict[str, Any] | None = None,
    timezone: str = "UTC",
) -> list[ScheduledJob]:
    """
    Schedule the built-in recurring jobs and daily reminders for a user.

    Templates the user has disabled, and templates the user already has a
    recurring job for, are skipped. Each job receives only the variables its
    template declares; a template whose variables are not supplied is skipped.

    Returns:
        The newly created jobs
    """
    variables = variables or {}
    registry = orchestrator.registry
    enrolled = {
        job.template_id for job in orchestrator.list_jobs(user_id) if job.is_recurring
    }

    rules: dict[str, RecurrenceRule] = {
        template_id: RecurrenceRule(cron, timezone)
        for template_id, cron in BUILTIN_SCHEDULES.items()
        if template_id in registry
    }
    for template in registry.all():
        if template.id in rules:
            continue
        pref = await preferences.get_preference(user_id, template.id)
        if pref.frequency == Frequency.DAILY and pref.preferred_time:
            rules[template.id] = RecurrenceRule.daily_at(pref.preferred_time, timezone)

    created = []
    for template_id, rule in rules.items():
        if template_id in enrolled:
            continue

        pref = await preferences.get_preference(user_id, template_id)
        if not pref.enabled:
            logger.debug(f"Skipping disabled {template_id} for user {user_id}")
            continue

        declared = registry.declared_variables(template_id)
        job_variables = {k: v for k, v in variables.items() if k in declared}
        try:
            job = await orchestrator.schedule_recurring(user_id, template_id, job_variables, rule)
        except MissingVariable as e:
            logger.warning(f"Not enrolling user {user_id} in {template_id}: {e}")
            continue
        created.append(job)

    logger.info(f"Enrolled user {user_id} in {len(created)} recurring notifications")
    return created
