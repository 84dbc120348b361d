"""
Refresh Coordinator

Keeps the SnapshotStore in sync with the remote source:
- Polls on a fixed interval (ScheduledLoop)
- Skips ticks until the cache expiration has elapsed (RefreshPolicy)
- Compares the sentinel against the last observed value
- Fetches and swaps in the full entry set only when the sentinel changed
- Treats fetch failures as non-fatal: the next tick simply tries again

State machine:
    IDLE -> CHECKING -> (UNCHANGED | APPLYING) -> IDLE
    FAILED holds until the next tick, then back to IDLE
"""

import asyncio
import time
from enum import Enum
from typing import Any, Callable

from config_refresh.common.config import NULL_LABEL, Sentinel, StartupPolicy
from config_refresh.common.exceptions import ConfigError, FetchError, StartupFetchError
from config_refresh.common.logging_setup import get_service_logger, log_refresh_outcome
from config_refresh.common.scheduler import ScheduledLoop

from .cache import SnapshotCache
from .policy import RefreshPolicy
from .source import RemoteSource
from .store import Snapshot, SnapshotStore

logger = get_service_logger("refresh.coordinator")

# Scheduler wake-ups jitter by a few milliseconds; a check that falls due
# within this share of a tick interval is taken at the current tick
TICK_SLACK_FRACTION = 0.05

SnapshotListener = Callable[[Snapshot], None]


class CoordinatorState(str, Enum):
    IDLE = "idle"
    CHECKING = "checking"
    UNCHANGED = "unchanged"
    APPLYING = "applying"
    FAILED = "failed"


class RefreshOutcome(str, Enum):
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    ERROR = "error"


class RefreshCoordinator:
    """
    Single writer of the SnapshotStore.

    Consumers only read the store; nothing they do triggers a refresh.
    """

    def __init__(
        self,
        source: RemoteSource,
        store: SnapshotStore,
        sentinel_key: str,
        sentinel_label: str = NULL_LABEL,
        label_filter: str = NULL_LABEL,
        tick_interval_s: float = 30.0,
        cache_expiration_s: float = 30.0,
        startup_policy: StartupPolicy = StartupPolicy.FAIL,
        cache: SnapshotCache | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.store = store
        self.sentinel = Sentinel(key=sentinel_key, label=sentinel_label)
        self.label_filter = label_filter
        self.policy = RefreshPolicy(cache_expiration_s)
        self.startup_policy = startup_policy
        self.cache = cache
        self._clock = clock

        self._loop = ScheduledLoop(tick_interval_s, self.tick, name="refresh")
        self._tick_slack = tick_interval_s * TICK_SLACK_FRACTION
        self._start_lock = asyncio.Lock()
        self._refresh_lock = asyncio.Lock()
        self._started = False
        self._listeners: list[SnapshotListener] = []

        self.state = CoordinatorState.IDLE
        self.last_check: float | None = None
        self.last_outcome: RefreshOutcome | None = None
        self.last_error: str | None = None

        # Observability counters
        self._refresh_count = 0
        self._unchanged_count = 0
        self._error_count = 0
        self._skipped_count = 0

    @property
    def is_running(self) -> bool:
        return self._loop.is_running

    def add_listener(self, listener: SnapshotListener) -> None:
        """Register a callback invoked with each newly applied snapshot"""
        self._listeners.append(listener)

    def mark_dirty(self) -> None:
        """Make the next tick due regardless of cache expiration"""
        self.last_check = None

    async def start(self) -> None:
        """
        Load the initial snapshot and start the polling loop.

        Idempotent: a second call while started does nothing.

        Raises:
            StartupFetchError: if the initial load fails and the
                startup policy does not allow continuing
        """
        async with self._start_lock:
            if self._started:
                logger.debug("Refresh coordinator already started")
                return

            await self._load_initial()

            await self._loop.start()
            self._started = True

        logger.info(
            f"Refresh coordinator started (tick: {self._loop.interval}s, "
            f"expiration: {self.policy.cache_expiration_s}s, label filter: {self.label_filter!r})",
            extra={
                "sentinel_key": self.sentinel.key,
                "label_filter": self.label_filter,
                "startup_policy": self.startup_policy.value,
            },
        )

    async def stop(self) -> None:
        """Stop the polling loop, letting an in-flight tick finish"""
        async with self._start_lock:
            if not self._started:
                return
            await self._loop.stop()
            self._started = False

        logger.info("Refresh coordinator stopped")

    async def _load_initial(self) -> None:
        """Populate the store before serving, per the startup policy"""
        attempted_at = self._clock()
        outcome = await self.try_refresh_once()
        self.last_check = attempted_at

        if outcome is not RefreshOutcome.ERROR:
            logger.info(
                f"Initial configuration loaded: {len(self.store)} entries "
                f"(version: {self.sentinel.last_observed})",
                extra={"entry_count": len(self.store), "version": self.sentinel.last_observed},
            )
            return

        if self.startup_policy is StartupPolicy.EMPTY:
            logger.warning(
                f"Initial configuration load failed, starting with empty snapshot: {self.last_error}",
                extra={"startup_policy": self.startup_policy.value},
            )
            self.mark_dirty()
            return

        if self.startup_policy is StartupPolicy.CACHED:
            snapshot = self.cache.load() if self.cache else None
            if snapshot is not None:
                self.store.restore(snapshot)
                self.sentinel.observe(snapshot.version)
                logger.warning(
                    f"Initial configuration load failed, serving cached snapshot "
                    f"(version: {snapshot.version}, entries: {len(snapshot)})",
                    extra={"startup_policy": self.startup_policy.value, "version": snapshot.version},
                )
                self.mark_dirty()
                return
            raise StartupFetchError(f"Initial load failed and no cached snapshot: {self.last_error}")

        raise StartupFetchError(f"Initial load failed: {self.last_error}")

    async def tick(self) -> RefreshOutcome | None:
        """
        One loop iteration.

        Returns:
            The refresh outcome, or None if no attempt was due
        """
        if self.state is CoordinatorState.FAILED:
            self.state = CoordinatorState.IDLE

        now = self._clock()
        if not self.policy.is_due(now + self._tick_slack, self.last_check):
            self._skipped_count += 1
            return None

        start = time.time()
        outcome = await self.try_refresh_once()
        # Start of the attempt, whatever the outcome: ticks stay one
        # interval apart regardless of fetch duration
        self.last_check = now

        log_refresh_outcome(
            logger,
            outcome.value,
            version=self.sentinel.last_observed,
            entry_count=len(self.store),
            error=self.last_error if outcome is RefreshOutcome.ERROR else None,
            duration_ms=round((time.time() - start) * 1000, 1),
        )
        return outcome

    async def try_refresh_once(self) -> RefreshOutcome:
        """
        Single refresh attempt.

        Fetches the sentinel; only if it differs from the last observed
        value is the full entry set fetched and swapped in. Errors are
        reported through the outcome and never raised.

        Attempts are serialized, so ticks and forced refreshes never
        write the store concurrently.
        """
        async with self._refresh_lock:
            return await self._refresh_once()

    async def _refresh_once(self) -> RefreshOutcome:
        self.state = CoordinatorState.CHECKING

        try:
            version = await self.source.fetch_sentinel(self.sentinel.key, self.sentinel.label)

            if not self.sentinel.has_changed(version):
                self.state = CoordinatorState.UNCHANGED
                self._unchanged_count += 1
                return self._finish(RefreshOutcome.UNCHANGED)

            self.state = CoordinatorState.APPLYING
            entries = await self.source.fetch_all(self.label_filter)
            snapshot = self.store.replace(entries, version=version)
            self.sentinel.observe(version)

        except (FetchError, ConfigError) as e:
            return self._fail(e)
        except Exception as e:
            logger.error(f"Unexpected error during refresh: {e}", exc_info=True)
            return self._fail(e)

        self._refresh_count += 1
        self._notify(snapshot)
        return self._finish(RefreshOutcome.CHANGED)

    def _fail(self, error: Exception) -> RefreshOutcome:
        """Snapshot and last observed sentinel stay untouched"""
        self.state = CoordinatorState.FAILED
        self._error_count += 1
        self.last_error = str(error)
        self.last_outcome = RefreshOutcome.ERROR
        return RefreshOutcome.ERROR

    def _finish(self, outcome: RefreshOutcome) -> RefreshOutcome:
        self.state = CoordinatorState.IDLE
        self.last_outcome = outcome
        self.last_error = None
        return outcome

    def _notify(self, snapshot: Snapshot) -> None:
        """Run change listeners; a failing listener never fails the refresh"""
        for listener in self._listeners:
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(
                    f"Snapshot listener {getattr(listener, '__qualname__', listener)!r} failed: {e}",
                    exc_info=True,
                )

    def get_stats(self) -> dict[str, Any]:
        """Get coordinator statistics for observability"""
        snapshot = self.store.snapshot
        next_due = self.policy.next_due(self.last_check)
        return {
            "state": self.state.value,
            "running": self.is_running,
            "last_outcome": self.last_outcome.value if self.last_outcome else None,
            "last_error": self.last_error,
            "sentinel": {
                "key": self.sentinel.key,
                "label": self.sentinel.label,
                "last_observed": self.sentinel.last_observed,
            },
            "refresh_count": self._refresh_count,
            "unchanged_count": self._unchanged_count,
            "error_count": self._error_count,
            "skipped_count": self._skipped_count,
            "next_check_in_s": (
                round(max(0.0, next_due - self._clock()), 3) if next_due is not None else 0.0
            ),
            "entry_count": len(snapshot),
            "loaded_at": snapshot.loaded_at.isoformat(),
            "scheduler": self._loop.get_stats(),
        }
