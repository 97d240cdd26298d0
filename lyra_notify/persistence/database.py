"""
SQLite connection helper shared by the persistence adapter, the preference
store and the device directory. Every table lives in one database file so
that a job's re-arm and its send record commit in the same transaction.
"""

import sqlite3
from pathlib import Path


def get_connection(db_path: Path) -> sqlite3.Connection:
    """
    Get database connection, creating tables if needed.

    Args:
        db_path: Path to the SQLite database file

    Returns:
        SQLite connection with row_factory set
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=10.0)
    conn.row_factory = sqlite3.Row

    cursor = conn.cursor()

    # Scheduled jobs (one-shot and recurring)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS scheduled_jobs (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            template_id TEXT NOT NULL,
            kind TEXT CHECK(kind IN ('scheduled', 'recurring')) NOT NULL,
            variables TEXT,
            cron TEXT,
            timezone TEXT,
            requested_at TEXT NOT NULL,
            next_fire_at TEXT NOT NULL,
            status TEXT CHECK(status IN ('pending', 'fired', 'done', 'canceled')) NOT NULL,
            created_at TEXT NOT NULL,
            last_fired_at TEXT,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """)

    # Send audit trail
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS send_records (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            template_id TEXT NOT NULL,
            sent_at TEXT NOT NULL,
            outcome TEXT CHECK(outcome IN ('sent', 'suppressed', 'failed')) NOT NULL,
            reason TEXT,
            job_id TEXT,
            attempts INTEGER DEFAULT 0
        )
    """)

    # Per-user, per-template preference overrides
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS notification_preferences (
            user_id TEXT NOT NULL,
            template_id TEXT NOT NULL,
            enabled BOOLEAN,
            frequency TEXT,
            preferred_time TEXT,
            conditions TEXT,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (user_id, template_id)
        )
    """)

    # Per-user overrides of the process-wide settings
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS notification_global_settings (
            user_id TEXT PRIMARY KEY,
            enabled BOOLEAN,
            quiet_hours_start TEXT,
            quiet_hours_end TEXT,
            max_notifications_per_day INTEGER,
            timezone TEXT,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """)

    # Push destinations
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS push_devices (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            token TEXT NOT NULL UNIQUE,
            platform TEXT DEFAULT 'expo',
            device_name TEXT,
            is_active BOOLEAN DEFAULT TRUE,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            last_used_at TEXT
        )
    """)

    # Indexes for efficient queries
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_status_next "
        "ON scheduled_jobs(status, next_fire_at)"
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_user "
        "ON scheduled_jobs(user_id, template_id)"
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_records_user_sent "
        "ON send_records(user_id, outcome, sent_at)"
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_records_sent_at "
        "ON send_records(sent_at)"
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_devices_user "
        "ON push_devices(user_id, is_active)"
    )

    conn.commit()
    return conn
