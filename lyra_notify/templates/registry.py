"""
Tool: Template Registry
Purpose: Map template ids to notification content and render ${name} placeholders

Usage:
    from lyra_notify.templates.registry import TemplateRegistry

    registry = TemplateRegistry.with_defaults()
    rendered = registry.resolve("mood_reminder", {"userName": "Ann"}, user_id="u1")

The registry is built once at startup and read-only afterwards. Rendering is
strict: a placeholder without a supplied value raises MissingVariable rather
than leaking "${name}" or empty text to the user.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml

from lyra_notify.errors import MissingVariable, UnknownTemplate
from lyra_notify.models import Category, Frequency, Priority, RenderedNotification, Template

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\$\{(\w+)\}")


DEFAULT_TEMPLATES: tuple[Template, ...] = (
    Template(
        id="mood_reminder",
        name="Mood Check-in Reminder",
        category=Category.REMINDER,
        title_pattern="How are you feeling?",
        body_pattern="Hi ${userName}, take a moment to check in with your mood. It only takes 30 seconds!",
        default_frequency=Frequency.DAILY,
        data={"type": "mood_reminder", "action": "check_mood"},
    ),
    Template(
        id="journal_reminder",
        name="Journal Reminder",
        category=Category.REMINDER,
        title_pattern="Time to reflect",
        body_pattern="Capture your thoughts and feelings in your journal. What made today special?",
        default_frequency=Frequency.DAILY,
        data={"type": "journal_reminder", "action": "open_journal"},
    ),
    Template(
        id="sleep_reminder",
        name="Sleep Reminder",
        category=Category.REMINDER,
        title_pattern="Wind down time",
        body_pattern="Your optimal bedtime is approaching. Start your wind-down routine for better sleep.",
        default_frequency=Frequency.DAILY,
        data={"type": "sleep_reminder", "action": "sleep_tracking"},
    ),
    Template(
        id="savings_celebration",
        name="Savings Celebration",
        category=Category.ACHIEVEMENT,
        title_pattern="Great job saving!",
        body_pattern="You've saved ${savingsAmount} this week. Keep up the excellent work!",
        default_frequency=Frequency.WEEKLY,
        data={"type": "savings_celebration", "action": "view_savings"},
    ),
    Template(
        id="mood_insight",
        name="Mood Insight",
        category=Category.INSIGHT,
        title_pattern="Your mood pattern",
        body_pattern="Hi ${userName}, your monthly mood insights are ready. Here's what we noticed.",
        default_frequency=Frequency.MONTHLY,
        data={"type": "mood_insight", "action": "view_insights"},
    ),
    Template(
        id="location_alert",
        name="Location Spending Alert",
        category=Category.INTERVENTION,
        title_pattern="Spending alert",
        body_pattern=(
            "You're near expensive stores and your mood is low. "
            "Consider waiting before making purchases."
        ),
        priority=Priority.HIGH,
        data={"type": "location_alert", "action": "view_intervention"},
    ),
    Template(
        id="weekly_summary",
        name="Weekly Summary",
        category=Category.INSIGHT,
        title_pattern="Your week in review",
        body_pattern="Hi ${userName}, your weekly insights are ready: mood, sleep and savings in one place.",
        default_frequency=Frequency.WEEKLY,
        data={"type": "weekly_summary", "action": "view_summary"},
    ),
    Template(
        id="goal_reminder",
        name="Goal Reminder",
        category=Category.REMINDER,
        title_pattern="Progress check",
        body_pattern="How are you progressing toward your goals? Take a moment to update your progress.",
        default_frequency=Frequency.WEEKLY,
        data={"type": "goal_reminder", "action": "update_goals"},
    ),
    Template(
        id="crisis_support",
        name="Crisis Support",
        category=Category.SUPPORT,
        title_pattern="I'm here for you",
        body_pattern=(
            "I noticed you might be struggling. Remember, you're not alone. "
            "Here are some resources."
        ),
        priority=Priority.CRITICAL,
        data={"type": "crisis_support", "action": "crisis_help"},
    ),
    Template(
        id="subscription_upgrade",
        name="Subscription Upgrade",
        category=Category.PROMOTION,
        title_pattern="Unlock more features",
        body_pattern=(
            "You've been using Lyra for a while. "
            "Upgrade to Pro for advanced insights and features."
        ),
        default_frequency=Frequency.MONTHLY,
        data={"type": "subscription_upgrade", "action": "upgrade"},
    ),
    Template(
        id="weather_mood_insight",
        name="Weather-Mood Insight",
        category=Category.INSIGHT,
        title_pattern="Weather and your mood",
        body_pattern="We found a link between the weather and your mood. Take a look at this week's pattern.",
        default_frequency=Frequency.WEEKLY,
        data={"type": "weather_mood_insight", "action": "view_insights"},
    ),
    Template(
        id="sleep_insight",
        name="Sleep Quality Insight",
        category=Category.INSIGHT,
        title_pattern="Your sleep patterns",
        body_pattern="You averaged ${sleepHours}h of sleep this week. See what helped you rest.",
        default_frequency=Frequency.WEEKLY,
        data={"type": "sleep_insight", "action": "view_sleep"},
    ),
    Template(
        id="energy_insight",
        name="Energy Level Insight",
        category=Category.INSIGHT,
        title_pattern="Your energy patterns",
        body_pattern="Your energy tends to peak at certain times of day. Plan around it this week.",
        default_frequency=Frequency.WEEKLY,
        data={"type": "energy_insight", "action": "view_energy"},
    ),
    Template(
        id="focus_reminder",
        name="Focus Session Reminder",
        category=Category.REMINDER,
        title_pattern="Ready to focus?",
        body_pattern="A short focus session now keeps your goals moving. Start one when you're ready.",
        default_frequency=Frequency.DAILY,
        data={"type": "focus_reminder", "action": "start_focus"},
    ),
    Template(
        id="data_export_reminder",
        name="Data Export Reminder",
        category=Category.REMINDER,
        title_pattern="Back up your data",
        body_pattern="It's been a while since your last export. Download a copy of your data anytime.",
        default_frequency=Frequency.MONTHLY,
        data={"type": "data_export_reminder", "action": "export_data"},
    ),
)


class TemplateRegistry:
    """Read-only template table with O(1) lookup."""

    def __init__(self, templates: Iterable[Template] = ()):
        table: dict[str, Template] = {}
        for template in templates:
            if template.id in table:
                raise ValueError(f"Duplicate template id: {template.id}")
            table[template.id] = template
        self._templates: Mapping[str, Template] = MappingProxyType(table)
        self._variables: Mapping[str, frozenset[str]] = MappingProxyType(
            {tid: _placeholders(t) for tid, t in table.items()}
        )
        logger.info(f"Initialized {len(table)} notification templates")

    @classmethod
    def with_defaults(cls, extra: Iterable[Template] = ()) -> TemplateRegistry:
        return cls([*DEFAULT_TEMPLATES, *extra])

    @classmethod
    def from_yaml(cls, path: Path, include_defaults: bool = True) -> TemplateRegistry:
        """
        Load templates from a YAML file.

        The file holds a top-level "templates" list of mappings with id,
        category, title, body and optional frequency, name, priority, data.
        """
        with open(path) as f:
            raw = yaml.safe_load(f) or {}

        loaded = [Template.from_dict(item) for item in raw.get("templates", [])]
        base = DEFAULT_TEMPLATES if include_defaults else ()
        return cls([*base, *loaded])

    def __contains__(self, template_id: object) -> bool:
        return template_id in self._templates

    def __len__(self) -> int:
        return len(self._templates)

    def get(self, template_id: str) -> Template:
        try:
            return self._templates[template_id]
        except KeyError:
            raise UnknownTemplate(template_id) from None

    def all(self) -> list[Template]:
        return list(self._templates.values())

    def by_category(self, category: Category | str) -> list[Template]:
        return [t for t in self._templates.values() if t.category == category]

    def declared_variables(self, template_id: str) -> frozenset[str]:
        self.get(template_id)
        return self._variables[template_id]

    def validate(self, template_id: str, variables: Mapping[str, Any] | None) -> Template:
        """Check the template exists and every declared variable is supplied."""
        template = self.get(template_id)
        supplied = variables or {}
        for name in sorted(self._variables[template_id]):
            if supplied.get(name) is None:
                raise MissingVariable(name, template_id)
        return template

    def resolve(
        self,
        template_id: str,
        variables: Mapping[str, Any] | None,
        *,
        user_id: str,
    ) -> RenderedNotification:
        template = self.get(template_id)
        supplied = variables or {}
        return RenderedNotification(
            user_id=user_id,
            template_id=template.id,
            title=render(template.title_pattern, supplied, template.id),
            body=render(template.body_pattern, supplied, template.id),
            category=template.category,
            priority=template.priority,
            data=dict(template.data),
        )


def render(pattern: str, variables: Mapping[str, Any], template_id: str | None = None) -> str:
    def substitute(match: re.Match) -> str:
        name = match.group(1)
        value = variables.get(name)
        if value is None:
            raise MissingVariable(name, template_id)
        return str(value)

    return PLACEHOLDER.sub(substitute, pattern)


def _placeholders(template: Template) -> frozenset[str]:
    return frozenset(
        PLACEHOLDER.findall(template.title_pattern) + PLACEHOLDER.findall(template.body_pattern)
    )
