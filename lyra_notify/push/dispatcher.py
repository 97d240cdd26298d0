"""
Tool: Push Dispatcher
Purpose: Deliver rendered notifications to every active device with bounded
         concurrency and exponential-backoff retry

Usage:
    from lyra_notify.push.dispatcher import Dispatcher

    dispatcher = Dispatcher(transport, devices, max_workers=4)
    outcome = await dispatcher.deliver(rendered)
    if outcome.outcome == SendOutcome.SENT:
        ...

Retry policy (per destination token):
    - TransportRetryable, TimeoutError, OSError: back off
      initial_delay * multiplier**n (capped at max_delay) and try again, up to
      max_attempts transport calls in total
    - TransportTerminal: no retry, the token is deactivated
    - Anything else: no retry, the token counts as failed (transport_error)

A notification counts as sent when at least one destination accepted it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from lyra_notify.config_models import DispatchConfig
from lyra_notify.errors import PersistenceWriteFailed, TransportRetryable, TransportTerminal
from lyra_notify.models import RenderedNotification, SendOutcome, SuppressionReason
from lyra_notify.push.devices import DeviceDirectory
from lyra_notify.push.transport import Transport

logger = logging.getLogger(__name__)

REASON_TERMINAL = "transport_terminal"
REASON_RETRIES_EXHAUSTED = "transport_retries_exhausted"
REASON_ERROR = "transport_error"


@dataclass(frozen=True)
class DeliveryOutcome:
    outcome: SendOutcome
    reason: str | None = None
    attempts: int = 0
    delivered_tokens: tuple[str, ...] = ()
    failed_tokens: tuple[str, ...] = ()


@dataclass
class _TokenResult:
    token: str
    success: bool
    attempts: int
    reason: str | None = None
    errors: list[str] = field(default_factory=list)


class Dispatcher:
    """Fan a rendered notification out to a user's destinations."""

    def __init__(
        self,
        transport: Transport,
        devices: DeviceDirectory,
        max_workers: int = 4,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        backoff_multiplier: float = 2.0,
        max_delay: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.transport = transport
        self.devices = devices
        self.max_workers = max_workers
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.backoff_multiplier = backoff_multiplier
        self.max_delay = max_delay
        self._sleep = sleep
        self._workers = asyncio.Semaphore(max_workers)

        self.in_flight = 0
        self.peak_in_flight = 0

    @classmethod
    def from_config(
        cls,
        transport: Transport,
        devices: DeviceDirectory,
        config: DispatchConfig,
    ) -> Dispatcher:
        return cls(
            transport,
            devices,
            max_workers=config.max_workers,
            max_attempts=config.retry.max_attempts,
            initial_delay=config.retry.initial_delay_seconds,
            backoff_multiplier=config.retry.backoff_multiplier,
            max_delay=config.retry.max_delay_seconds,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        delay = self.initial_delay * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay)

    async def deliver(self, notification: RenderedNotification) -> DeliveryOutcome:
        """
        Deliver to all active destinations of notification.user_id.

        Returns:
            DeliveryOutcome with outcome sent (any destination accepted),
            failed (all destinations failed) or suppressed (no destinations)
        """
        tokens = await self.devices.get_active_tokens(notification.user_id)
        if not tokens:
            logger.info(
                f"No active devices for user {notification.user_id}, "
                f"skipping {notification.template_id}"
            )
            return DeliveryOutcome(
                outcome=SendOutcome.SUPPRESSED,
                reason=SuppressionReason.NO_ACTIVE_DEVICES.value,
            )

        results = await asyncio.gather(
            *(self._deliver_to_token(notification, token) for token in tokens)
        )

        attempts = sum(r.attempts for r in results)
        delivered = tuple(r.token for r in results if r.success)
        failed = tuple(r.token for r in results if not r.success)

        if delivered:
            if failed:
                logger.warning(
                    f"Delivered {notification.template_id} to {len(delivered)}/{len(results)} "
                    f"devices of user {notification.user_id}"
                )
            return DeliveryOutcome(
                outcome=SendOutcome.SENT,
                attempts=attempts,
                delivered_tokens=delivered,
                failed_tokens=failed,
            )

        # Mixed per-token reasons report as exhausted
        reasons = {r.reason for r in results}
        reason = reasons.pop() if len(reasons) == 1 else REASON_RETRIES_EXHAUSTED
        logger.error(
            f"Failed to deliver {notification.template_id} to user {notification.user_id}: "
            f"{'; '.join(e for r in results for e in r.errors[-1:])}"
        )
        return DeliveryOutcome(
            outcome=SendOutcome.FAILED,
            reason=reason,
            attempts=attempts,
            failed_tokens=failed,
        )

    async def _deliver_to_token(
        self, notification: RenderedNotification, token: str
    ) -> _TokenResult:
        result = _TokenResult(token=token, success=False, attempts=0)

        for attempt in range(1, self.max_attempts + 1):
            result.attempts = attempt
            try:
                async with self._workers:
                    self.in_flight += 1
                    self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
                    try:
                        await self.transport.send(
                            token,
                            notification.title,
                            notification.body,
                            notification.priority,
                            notification.to_push_payload()["data"],
                        )
                    finally:
                        self.in_flight -= 1
                result.success = True
                return result

            except TransportTerminal as e:
                result.errors.append(str(e))
                result.reason = REASON_TERMINAL
                logger.warning(f"Terminal push failure for token {token[:12]}...: {e}")
                try:
                    await self.devices.deactivate_token(token)
                except PersistenceWriteFailed as deactivate_error:
                    logger.error(f"Could not deactivate token {token[:12]}...: {deactivate_error}")
                return result

            except (TransportRetryable, TimeoutError, OSError) as e:
                result.errors.append(str(e) or type(e).__name__)
                logger.info(
                    f"Push attempt {attempt}/{self.max_attempts} failed for "
                    f"token {token[:12]}...: {e!r}"
                )

            except Exception as e:
                result.errors.append(str(e) or type(e).__name__)
                result.reason = REASON_ERROR
                logger.exception(f"Unexpected push failure for token {token[:12]}...")
                return result

            # Back off outside the worker slot
            if attempt < self.max_attempts:
                await self._sleep(self.backoff_delay(attempt))

        result.reason = REASON_RETRIES_EXHAUSTED
        return result
