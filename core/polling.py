import asyncio
import random
from dataclasses import dataclass
from typing import Optional

from core.exceptions import ConfigurationError, OperationCancelled


@dataclass
class PollingPolicy:
    """
    Back-off schedule for loops that wait on the store for something to change.

    The delay for attempt ``n`` (starting at 0) is
    ``min(interval * multiplier ** n, max_interval)`` plus up to ``jitter``
    of that delay, chosen at random so that competing workers drift apart.
    """

    interval: float = 15.0
    max_interval: float = 15.0
    multiplier: float = 2.0
    jitter: float = 0.1

    def __post_init__(self):
        if self.interval < 0 or self.max_interval < 0:
            raise ConfigurationError("Polling intervals cannot be negative")
        if self.multiplier < 1:
            raise ConfigurationError("Polling multiplier must be at least 1")
        if not 0 <= self.jitter <= 1:
            raise ConfigurationError("Polling jitter must be between 0 and 1")
        if self.max_interval < self.interval:
            self.max_interval = self.interval

    @classmethod
    def from_options(cls, options) -> "PollingPolicy":
        return cls(
            interval=options.queue_poll_interval,
            max_interval=options.queue_poll_max_interval,
        )

    def delay(self, attempt: int) -> float:
        try:
            base = min(self.interval * (self.multiplier ** attempt), self.max_interval)
        except OverflowError:
            # Long waits push the growth past float range; the cap applies anyway
            base = self.max_interval if self.interval else 0.0
        if self.jitter:
            base += random.uniform(0, base * self.jitter)
        return base

    async def sleep(
        self,
        attempt: int,
        cancel: Optional[asyncio.Event] = None,
        remaining: Optional[float] = None,
    ) -> None:
        """
        Wait for the back-off delay of ``attempt``, never longer than ``remaining``.

        Raises:
            OperationCancelled: if ``cancel`` is set before or during the wait
        """
        delay = self.delay(attempt)
        if remaining is not None:
            delay = max(0.0, min(delay, remaining))

        if cancel is None:
            await asyncio.sleep(delay)
            return

        if cancel.is_set():
            raise OperationCancelled("Operation cancelled")

        try:
            await asyncio.wait_for(cancel.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise OperationCancelled("Operation cancelled")


def check_cancelled(cancel: Optional[asyncio.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("Operation cancelled")
