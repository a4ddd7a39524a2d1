"""
Polling scheduler for the Changelog Watcher.

Runs a check coroutine on an asyncio event loop: once shortly after
start, then every ``interval_minutes``. The scheduler owns a single timer
handle, so restarting always replaces the pending timer.

Checks are fire-and-forget. A check still running when the timer fires
again is not waited for; both run to completion independently.
"""

import asyncio
from typing import Awaitable, Callable, Optional, Set

from changelog_watcher.utils import get_logger


# Module logger
logger = get_logger("scheduler")

# Delay before the first check, letting the host finish starting up
DEFAULT_STARTUP_DELAY = 5.0  # seconds


class PollingScheduler:
    """
    Periodic driver for the poll cycle.

    Args:
        callback: Coroutine function run on every tick.
        interval_minutes: Period between checks.
        startup_delay: Seconds before the first check after ``start``.
        loop: Event loop to schedule on; defaults to the running loop.
    """

    def __init__(
        self,
        callback: Callable[[], Awaitable[None]],
        interval_minutes: int,
        startup_delay: float = DEFAULT_STARTUP_DELAY,
        loop: Optional[asyncio.AbstractEventLoop] = None
    ):
        if interval_minutes <= 0:
            raise ValueError(f"interval_minutes must be positive, got: {interval_minutes}")

        self.callback = callback
        self.interval_minutes = interval_minutes
        self.startup_delay = startup_delay
        self._loop = loop
        self._handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def interval_seconds(self) -> float:
        return self.interval_minutes * 60.0

    @property
    def is_running(self) -> bool:
        return self._handle is not None and not self._handle.cancelled()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def _schedule(self, delay: float) -> None:
        self.cancel()
        self._handle = self.loop.call_later(delay, self._tick)

    def cancel(self) -> None:
        """Cancel the pending timer, if any."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def start(self) -> None:
        """Schedule the first check after the startup delay."""
        logger.info(
            f"Polling every {self.interval_minutes} minute(s), "
            f"first check in {self.startup_delay:g}s"
        )
        self._schedule(self.startup_delay)

    def restart(self, interval_minutes: Optional[int] = None) -> None:
        """
        Replace the pending timer with one using the new interval.

        A check missed while the old timer was pending is not replayed;
        the next check runs one full interval from now.

        Args:
            interval_minutes: New period; keeps the current one if None.
        """
        if interval_minutes is not None:
            if interval_minutes <= 0:
                raise ValueError(f"interval_minutes must be positive, got: {interval_minutes}")
            self.interval_minutes = interval_minutes

        logger.info(f"Restarting polling with a {self.interval_minutes} minute interval")
        self._schedule(self.interval_seconds)

    def stop(self) -> None:
        """Stop scheduling further checks. Checks in flight run to completion."""
        self.cancel()
        logger.info("Polling stopped")

    def _tick(self) -> None:
        self._handle = None
        self.fire()
        self._schedule(self.interval_seconds)

    def fire(self) -> asyncio.Task:
        """Start a check now without waiting for it."""
        task = self.loop.create_task(self._run_guarded())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_guarded(self) -> None:
        try:
            await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Keep polling; the next tick is the retry
            logger.exception(f"Scheduled check failed: {e}")

    async def wait_idle(self) -> None:
        """Wait for the checks currently in flight to finish."""
        tasks = list(self._tasks)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
