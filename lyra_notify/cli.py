"""
Tool: Notification Engine CLI
Purpose: Run the scheduler and inspect or modify the job table

Usage:
    python -m lyra_notify.cli --action run
    python -m lyra_notify.cli --action status
    python -m lyra_notify.cli --action templates --category reminder
    python -m lyra_notify.cli --action jobs --user alice
    python -m lyra_notify.cli --action schedule --user alice --template mood_reminder \
        --vars '{"userName": "Alice"}' --at 2026-01-01T09:00:00+00:00
    python -m lyra_notify.cli --action schedule --user alice --template weekly_summary \
        --vars '{"userName": "Alice"}' --cron "0 10 * * 1" --timezone Europe/London
    python -m lyra_notify.cli --action enroll --user alice --vars '{"userName": "Alice"}'
    python -m lyra_notify.cli --action cancel --job job_abc123
    python -m lyra_notify.cli --action trigger-job --job job_abc123
    python -m lyra_notify.cli --action register-device --user alice --token ExponentPushToken[x]

"run" delivers through a dry-run transport that only logs.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

from lyra_notify.config_models import NotificationsConfig, load_and_validate
from lyra_notify.errors import NotificationError
from lyra_notify.logging_config import get_logger, setup_logging
from lyra_notify.models import GlobalSettings
from lyra_notify.persistence.sqlite_store import SQLitePersistence
from lyra_notify.preferences.store import SQLitePreferenceStore
from lyra_notify.push.devices import SQLiteDeviceDirectory
from lyra_notify.push.dispatcher import Dispatcher
from lyra_notify.push.transport import LogTransport, Transport
from lyra_notify.queue.orchestrator import JobOrchestrator
from lyra_notify.schedules import enroll_user
from lyra_notify.templates.registry import TemplateRegistry

log = get_logger("lyra_notify.cli")


def build_orchestrator(
    config: NotificationsConfig,
    transport: Transport | None = None,
) -> JobOrchestrator:
    """Wire the SQLite-backed collaborators into an orchestrator."""
    db_path = config.storage.resolve_db_path()

    if config.templates_file:
        registry = TemplateRegistry.from_yaml(Path(config.templates_file))
    else:
        registry = TemplateRegistry.with_defaults()

    defaults = config.defaults
    settings = GlobalSettings(
        enabled=defaults.enabled,
        quiet_hours_start=defaults.quiet_hours_start,
        quiet_hours_end=defaults.quiet_hours_end,
        max_notifications_per_day=defaults.max_notifications_per_day,
        priority_level=defaults.priority_level,
        timezone=defaults.timezone,
    )

    devices = SQLiteDeviceDirectory(db_path)
    dispatcher = Dispatcher.from_config(transport or LogTransport(), devices, config.dispatch)
    return JobOrchestrator(
        registry=registry,
        preferences=SQLitePreferenceStore(db_path, defaults=settings, registry=registry),
        persistence=SQLitePersistence(db_path),
        dispatcher=dispatcher,
        config=config,
    )


async def run_forever(orchestrator: JobOrchestrator) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await orchestrator.start()
    log.info("notification engine running", pending=orchestrator.get_status()["pending_jobs"])
    try:
        await stop.wait()
    finally:
        await orchestrator.stop()


def _job_summary(job) -> dict[str, Any]:
    data = job.to_dict()
    data["variables"] = job.request.variables
    return data


async def dispatch_action(args: argparse.Namespace, config: NotificationsConfig) -> dict[str, Any]:
    orchestrator = build_orchestrator(config)

    if args.action == "templates":
        registry = orchestrator.registry
        templates = registry.by_category(args.category) if args.category else registry.all()
        return {
            "success": True,
            "templates": [
                {
                    "id": t.id,
                    "name": t.name,
                    "category": t.category.value,
                    "priority": t.priority.value,
                    "frequency": t.default_frequency.value,
                    "variables": sorted(registry.declared_variables(t.id)),
                }
                for t in templates
            ],
            "count": len(templates),
        }

    if args.action == "register-device":
        _require(args, "user", "token")
        devices = orchestrator.dispatcher.devices
        device_id = await devices.register_device(args.user, args.token, platform=args.platform)
        return {"success": True, "device_id": device_id}

    await orchestrator.restore()

    if args.action == "run":
        await run_forever(orchestrator)
        return {"success": True, "status": orchestrator.get_status()}

    if args.action == "status":
        records = await orchestrator.persistence.list_send_records(
            user_id=args.user, limit=args.limit
        )
        return {
            "success": True,
            "status": orchestrator.get_status(),
            "recent_records": [r.to_dict() for r in records],
        }

    if args.action == "jobs":
        jobs = orchestrator.list_jobs(args.user)
        return {"success": True, "jobs": [_job_summary(j) for j in jobs], "count": len(jobs)}

    if args.action == "schedule":
        _require(args, "user", "template")
        variables = json.loads(args.vars) if args.vars else {}
        if args.cron:
            job = await orchestrator.schedule_recurring(
                args.user, args.template, variables, args.cron, timezone=args.timezone
            )
        elif args.at:
            job = await orchestrator.schedule_once(
                args.user, args.template, variables, datetime.fromisoformat(args.at)
            )
        else:
            raise SystemExit("Error: --at or --cron required for schedule")
        return {"success": True, "job": _job_summary(job)}

    if args.action == "enroll":
        _require(args, "user")
        variables = json.loads(args.vars) if args.vars else {}
        jobs = await enroll_user(
            orchestrator, orchestrator.preferences, args.user, variables, timezone=args.timezone
        )
        return {"success": True, "jobs": [_job_summary(j) for j in jobs], "count": len(jobs)}

    if args.action == "cancel":
        _require(args, "job")
        canceled = await orchestrator.cancel(args.job)
        return {"success": True, "canceled": canceled}

    if args.action == "trigger-job":
        _require(args, "job")
        record = await orchestrator.trigger_job_now(args.job)
        return {"success": record is not None, "record": record.to_dict() if record else None}

    raise SystemExit(f"Error: unknown action {args.action}")


def _require(args: argparse.Namespace, *names: str) -> None:
    missing = [f"--{name}" for name in names if not getattr(args, name)]
    if missing:
        raise SystemExit(f"Error: {', '.join(missing)} required for {args.action}")


def main():
    parser = argparse.ArgumentParser(description="Notification Engine")
    parser.add_argument(
        "--action",
        required=True,
        choices=[
            "run",
            "status",
            "templates",
            "jobs",
            "schedule",
            "enroll",
            "cancel",
            "trigger-job",
            "register-device",
        ],
        help="Action to perform",
    )
    parser.add_argument("--config", help="Path to notifications.yaml")

    # Identifiers
    parser.add_argument("--user", help="User ID")
    parser.add_argument("--template", help="Template ID")
    parser.add_argument("--job", help="Job ID")

    # Scheduling
    parser.add_argument("--vars", help="Template variables as a JSON object")
    parser.add_argument("--at", help="One-shot fire time (ISO 8601)")
    parser.add_argument("--cron", help="Recurring cron expression")
    parser.add_argument("--timezone", default="UTC", help="IANA timezone for --cron")

    # Devices
    parser.add_argument("--token", help="Push destination token")
    parser.add_argument("--platform", default="expo", help="Device platform")

    # Filters
    parser.add_argument("--category", help="Filter templates by category")
    parser.add_argument("--limit", type=int, default=20, help="Result limit")

    args = parser.parse_args()

    setup_logging()
    config = load_and_validate(Path(args.config) if args.config else None)

    try:
        result = asyncio.run(dispatch_action(args, config))
    except NotificationError as e:
        result = {"success": False, "error": str(e), "error_type": type(e).__name__}
    except json.JSONDecodeError as e:
        result = {"success": False, "error": f"Invalid --vars JSON: {e}"}

    print(json.dumps(result, indent=2, default=str))
    if not result.get("success"):
        sys.exit(1)


if __name__ == "__main__":
    main()
