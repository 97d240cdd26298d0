"""
Transport Interface

The engine decides what to send and when; the actual network call to a push
gateway belongs to a Transport implementation supplied by the application.

Contract:
    send() returns normally on success, raises TransportRetryable for
    timeouts and gateway-side failures, and TransportTerminal for permanent
    failures such as an invalid destination token.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from lyra_notify.models import Priority

logger = logging.getLogger(__name__)


class Transport(ABC):
    @abstractmethod
    async def send(
        self,
        destination_token: str,
        title: str,
        body: str,
        priority: Priority,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Deliver one notification to one destination."""


class LogTransport(Transport):
    """Dry-run transport that logs instead of calling a gateway."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    async def send(
        self,
        destination_token: str,
        title: str,
        body: str,
        priority: Priority,
        data: dict[str, Any] | None = None,
    ) -> None:
        self.sent.append(
            {"to": destination_token, "title": title, "body": body, "priority": str(priority)}
        )
        logger.info(f"[dry-run] push to {destination_token[:12]}...: {title} ({priority})")
