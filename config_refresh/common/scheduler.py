"""
Scheduler for Fixed-Interval Execution

Provides ScheduledLoop class that fires callbacks at exact intervals,
accounting for callback execution time to prevent drift.

Unlike asyncio.sleep()-based loops, this scheduler:
- Fires at exact wall-clock boundaries
- Skips missed intervals to catch up
- Stops gracefully: a callback already running is allowed to finish
- Reports drift metrics for observability

Usage:
    async def my_callback():
        # Do work...
        pass

    scheduler = ScheduledLoop(30.0, my_callback, name="refresh")
    await scheduler.start()

    # Later:
    await scheduler.stop()
    print(f"Total drift: {scheduler.drift_seconds:.3f}s")
"""

import asyncio
import time
from typing import Callable, Awaitable
from config_refresh.common.logging_setup import get_service_logger

logger = get_service_logger("scheduler")

# Drift larger than this is treated as a system clock correction
CLOCK_JUMP_THRESHOLD_S = 30.0


class ScheduledLoop:
    """
    Fixed interval scheduler that accounts for execution time.

    The next iteration is scheduled relative to the original schedule,
    not relative to when the callback finished. The wait between
    iterations is interruptible, so stop() never waits a full interval,
    but it never cancels a callback mid-flight either.

    Attributes:
        interval: The interval in seconds between executions
        callback: Async function to call each interval
        drift_seconds: Total accumulated drift (for observability)
        skipped_count: Number of intervals skipped (to catch up)
    """

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], Awaitable[object]],
        name: str = "unnamed",
    ):
        """
        Initialize a scheduled loop.

        Args:
            interval_seconds: Time between executions (supports sub-second)
            callback: Async function to call each interval
            name: Name for logging/identification
        """
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")

        self.interval = interval_seconds
        self.callback = callback
        self.name = name

        self._next_run: float = 0
        self._running = False
        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None

        # Observability metrics
        self._drift_total: float = 0
        self._skipped_count: int = 0
        self._execution_count: int = 0
        self._error_count: int = 0
        self._last_execution_time: float = 0
        self._last_drift_ms: float = 0

    @property
    def is_running(self) -> bool:
        """True while the background task is alive."""
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the scheduled loop in a background task. No-op if running."""
        if self._running:
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"scheduler:{self.name}")

    async def stop(self) -> None:
        """
        Stop the scheduled loop.

        Wakes the loop if it is waiting and waits for an in-flight
        callback to complete before returning.
        """
        self._running = False
        if self._stop_event:
            self._stop_event.set()

        task = self._task
        if task is None:
            return
        self._task = None

        # Called from inside the callback: the loop exits on its own
        if task is asyncio.current_task():
            return

        await task

    async def _wait_for_stop(self, timeout: float) -> bool:
        """Wait up to timeout seconds. Returns True if stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _run(self) -> None:
        """Main loop that fires callback at exact intervals."""
        # Align first run to next interval boundary
        now = time.time()
        self._next_run = ((now // self.interval) + 1) * self.interval

        while self._running:
            sleep_duration = self._next_run - time.time()
            if sleep_duration > 0:
                if await self._wait_for_stop(sleep_duration):
                    break

            if not self._running:
                break

            # Track drift (how late we are)
            actual_time = time.time()
            drift = actual_time - self._next_run

            if drift > CLOCK_JUMP_THRESHOLD_S:
                # Clock jump (NTP sync, suspend/resume): not real drift
                logger.info(
                    f"Scheduler '{self.name}' clock jump detected ({drift:.0f}s), realigning"
                )
                self._last_drift_ms = 0
            else:
                self._drift_total += max(0, drift)
                self._last_drift_ms = drift * 1000

            try:
                start = time.time()
                await self.callback()
                self._last_execution_time = time.time() - start
                self._execution_count += 1
            except Exception as e:
                self._error_count += 1
                logger.error(f"Scheduled callback '{self.name}' error: {e}")

            # Skip missed intervals to catch up (don't queue up missed executions)
            now = time.time()
            skipped = 0
            while self._next_run <= now:
                self._next_run += self.interval
                skipped += 1

            # First skip is expected (the one we just executed)
            if skipped > 1:
                self._skipped_count += skipped - 1
                logger.warning(
                    f"Scheduler '{self.name}' skipped {skipped - 1} intervals "
                    f"(execution took {self._last_execution_time:.3f}s)"
                )

    @property
    def drift_seconds(self) -> float:
        """Total accumulated drift in seconds."""
        return self._drift_total

    @property
    def drift_ms(self) -> float:
        """Most recent drift in milliseconds."""
        return self._last_drift_ms

    @property
    def skipped_count(self) -> int:
        """Number of intervals skipped to catch up."""
        return self._skipped_count

    @property
    def execution_count(self) -> int:
        """Total number of successful executions."""
        return self._execution_count

    @property
    def last_execution_time(self) -> float:
        """Duration of last callback execution in seconds."""
        return self._last_execution_time

    def get_stats(self) -> dict:
        """Get scheduler statistics for observability."""
        return {
            "name": self.name,
            "interval_s": self.interval,
            "running": self.is_running,
            "execution_count": self._execution_count,
            "error_count": self._error_count,
            "drift_total_s": round(self._drift_total, 3),
            "drift_last_ms": round(self._last_drift_ms, 1),
            "skipped_count": self._skipped_count,
            "last_execution_s": round(self._last_execution_time, 3),
        }
