# src/batch/retry.py — v1
"""Automatic retry policy and per-item retry timers.

Delays come from a fixed escalating sequence (default 5s, 10s, 20s); the
last delay repeats if the retry budget is longer than the sequence. Each item
arms its own timer, so many items can wait concurrently. When a timer fires
the callback is awaited as-is; the controller makes it queue behind any
in-flight pipeline call.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable

from stepbatch.core.errors import StepBatchError

if TYPE_CHECKING:
    from stepbatch.config.settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded escalating backoff."""

    delays_s: tuple[float, ...] = (5.0, 10.0, 20.0)
    max_retries: int = 3

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            delays_s=tuple(settings.auto_retry_delays_list),
            max_retries=settings.max_auto_retries,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before automatic retry number ``attempt`` (0-based)."""
        if not self.delays_s:
            return 0.0
        return self.delays_s[min(attempt, len(self.delays_s) - 1)]

    def should_retry(self, error: StepBatchError, attempts_made: int) -> bool:
        return error.retryable and attempts_made < self.max_retries


class RetryScheduler:
    """Owns the pending auto-retry timers, keyed by item id."""

    def __init__(self, policy: RetryPolicy) -> None:
        self.policy = policy
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._running: set[asyncio.Task[None]] = set()

    def schedule(
        self, item_id: str, attempt: int, fire: Callable[[], Awaitable[None]],
    ) -> float:
        """Arm a timer for ``item_id``; replaces any timer already armed.

        Returns:
            The delay in seconds.
        """
        self.cancel(item_id)
        delay = self.policy.delay_for(attempt)
        task = asyncio.create_task(self._wait_then_fire(item_id, delay, fire))
        self._timers[item_id] = task
        self._running.add(task)
        task.add_done_callback(self._running.discard)
        logger.info(
            "Item %s: auto-retry %d/%d in %.1fs",
            item_id, attempt + 1, self.policy.max_retries, delay,
        )
        return delay

    def cancel(self, item_id: str) -> bool:
        """Cancel the armed timer for ``item_id``. True if one was pending."""
        task = self._timers.pop(item_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.debug("Item %s: auto-retry timer cancelled", item_id)
        return True

    def cancel_all(self) -> None:
        for item_id in list(self._timers):
            self.cancel(item_id)

    def is_pending(self, item_id: str) -> bool:
        task = self._timers.get(item_id)
        return task is not None and not task.done()

    @property
    def pending_ids(self) -> list[str]:
        return [item_id for item_id in self._timers if self.is_pending(item_id)]

    async def wait_idle(self) -> None:
        """Wait until no timer is armed and no fired retry is still running."""
        while self._running:
            results = await asyncio.gather(*list(self._running), return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error("Auto-retry task failed: %s", result)

    async def _wait_then_fire(
        self, item_id: str, delay: float, fire: Callable[[], Awaitable[None]],
    ) -> None:
        await asyncio.sleep(delay)
        # Disarm before firing so the callback may schedule the next attempt.
        if self._timers.get(item_id) is asyncio.current_task():
            del self._timers[item_id]
        await fire()
