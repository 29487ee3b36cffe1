"""
Two-tier bounded backoff for reconnecting after unintentional disconnects.

Attempts are grouped into cycles. The delay before attempt n of a cycle is
``base * n``; exhausting a cycle imposes a fixed cooldown before attempt 1 of
the next one. Once every cycle is exhausted the policy gives up and stays that
way until ``reset()`` is called for a manual connect.

The policy also owns the pending retry timer, so an intentional disconnect can
cancel it as a first-class operation.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from voice_session.config.constants import (
    LOGGER_NAME,
    RETRY_BASE_DELAY,
    RETRY_CYCLE_COOLDOWN,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_CYCLES,
)

logger = logging.getLogger(LOGGER_NAME)


@dataclass(frozen=True)
class RetryDecision:
    """The next scheduled reconnect: which attempt of which cycle, and after how long."""
    attempt: int
    cycle: int
    delay: float
    cooldown: bool = False


class RetryPolicy:
    """
    Retry counters plus the single pending retry timer.

    State is (attempt, cycle), starting at (0, 1). Only ``record_failure``
    advances it and only ``reset`` rewinds it.
    """

    def __init__(
        self,
        max_attempts: int = RETRY_MAX_ATTEMPTS,
        max_cycles: int = RETRY_MAX_CYCLES,
        base_delay: float = RETRY_BASE_DELAY,
        cooldown: float = RETRY_CYCLE_COOLDOWN,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_attempts = max_attempts
        self.max_cycles = max_cycles
        self.base_delay = base_delay
        self.cooldown = cooldown
        self._sleep = sleep
        self.attempt = 0
        self.cycle = 1
        self.exhausted = False
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self):
        return self.attempt, self.cycle

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending_task(self) -> Optional[asyncio.Task]:
        return self._task if self.pending else None

    def reset(self) -> None:
        """Rewind to (0, 1). Called on success, on authorization failures and on manual connects."""
        self.attempt = 0
        self.cycle = 1
        self.exhausted = False

    def record_failure(self) -> Optional[RetryDecision]:
        """
        Advance the counters after an unintentional disconnect.

        Returns:
            RetryDecision for the next attempt, or None once all cycles are exhausted
        """
        if self.exhausted:
            return None

        cooldown = False
        self.attempt += 1
        if self.attempt > self.max_attempts:
            self.cycle += 1
            self.attempt = 1
            cooldown = True

        if self.cycle > self.max_cycles:
            self.exhausted = True
            logger.warning(
                f"Retry policy exhausted after {self.max_cycles} cycles of {self.max_attempts} attempts"
            )
            return None

        delay = self.cooldown if cooldown else self.base_delay * self.attempt
        return RetryDecision(attempt=self.attempt, cycle=self.cycle, delay=delay, cooldown=cooldown)

    def schedule(self, decision: RetryDecision, callback: Callable[[], Awaitable[None]]) -> asyncio.Task:
        """
        Run ``callback`` after the decision's delay, replacing any pending timer.

        Args:
            decision: The decision returned by record_failure
            callback: Coroutine function that performs the reconnect

        Returns:
            asyncio.Task: The timer task
        """
        self.cancel()
        logger.info(
            f"Scheduling reconnect attempt {decision.attempt}/{self.max_attempts} "
            f"(cycle {decision.cycle}/{self.max_cycles}) in {decision.delay:g}s"
        )
        self._task = asyncio.create_task(self._run(decision.delay, callback))
        return self._task

    async def _run(self, delay: float, callback: Callable[[], Awaitable[None]]) -> None:
        await self._sleep(delay)
        # The callback may schedule the next timer, which must not cancel this one.
        self._task = None
        await callback()

    def cancel(self) -> bool:
        """Cancel the pending retry timer, if any. Returns True when one was cancelled."""
        task, self._task = self._task, None
        if task is None or task.done():
            return False
        if task is asyncio.current_task():
            return False
        task.cancel()
        logger.debug("Pending reconnect cancelled")
        return True
