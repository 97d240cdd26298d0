"""
Structured logging for the notification engine: structlog wrapping stdlib.

Every module logs through a plain ``logging.getLogger(__name__)``; records are
rendered by one structlog ProcessorFormatter so they share the same fields.
While a job fires, its job_id, user_id and template_id are bound as context
variables and appear on every line logged during that firing, including the
dispatcher's and the persistence adapter's.

Environment:
    LYRA_NOTIFY_LOG_LEVEL   DEBUG | INFO (default) | WARNING | ERROR
    LYRA_NOTIFY_LOG_FORMAT  "json" for one JSON object per line, else console

Usage:
    from lyra_notify.logging_config import bind_job_context, setup_logging

    setup_logging()
    with bind_job_context(job):
        ...
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from lyra_notify.models import ScheduledJob

SERVICE_NAME = "lyra-notify"

# Chatty third-party loggers held at WARNING unless the root level is stricter
_QUIET_LOGGERS = ("asyncio",)


def _add_service(logger: Any, method_name: str, event_dict: dict) -> dict:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def _shared_processors() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        _add_service,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def setup_logging(level: str | None = None, json_output: bool | None = None) -> None:
    if level is None:
        level = os.environ.get("LYRA_NOTIFY_LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.environ.get("LYRA_NOTIFY_LOG_FORMAT", "").lower() == "json"

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    shared = _shared_processors()

    if json_output:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))


@contextmanager
def bind_job_context(job: ScheduledJob) -> Iterator[None]:
    """Tag every log line emitted inside the block with the job's identity."""
    with structlog.contextvars.bound_contextvars(
        job_id=job.job_id, user_id=job.user_id, template_id=job.template_id
    ):
        yield


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


__all__ = ["SERVICE_NAME", "bind_job_context", "get_logger", "setup_logging"]
