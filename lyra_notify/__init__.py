"""Lyra Notify: notification scheduling and delivery engine

Philosophy:
    A wellbeing app earns the right to interrupt someone. Every candidate
    notification goes through the same decision pipeline, whether it comes
    from a user action, a one-shot timer, or a calendar-based recurring job.

Components:
    templates/: Template registry and variable substitution
    preferences/: User notification preferences and global settings
    queue/: Rate/quiet gate, recurrence rules, job orchestrator
    push/: Dispatcher, transport interface, device directory
    persistence/: Durable job table and send audit trail

Database: data/notifications.db
    - scheduled_jobs: One-shot and recurring job definitions
    - send_records: Append-only audit trail of terminal decisions
    - notification_preferences: Per-user, per-template overrides
    - notification_global_settings: Per-user quiet hours / cap overrides
    - push_devices: Destination tokens per user
"""

from pathlib import Path


# Path constants
PROJECT_ROOT = Path(__file__).parent.parent
ARGS_DIR = PROJECT_ROOT / "args"
DATA_DIR = PROJECT_ROOT / "data"
CONFIG_PATH = ARGS_DIR / "notifications.yaml"
DB_PATH = DATA_DIR / "notifications.db"

__all__ = [
    "PROJECT_ROOT",
    "ARGS_DIR",
    "DATA_DIR",
    "CONFIG_PATH",
    "DB_PATH",
]
