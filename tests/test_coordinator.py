"""Tests for the refresh coordinator."""

import asyncio
import time

import pytest

from conftest import SENTINEL_KEY
from config_refresh.common.config import ConfigEntry, StartupPolicy
from config_refresh.common.exceptions import FetchError, StartupFetchError
from config_refresh.services.refresh.cache import SnapshotCache
from config_refresh.services.refresh.coordinator import CoordinatorState, RefreshOutcome
from config_refresh.services.refresh.source import InMemoryRemoteSource
from config_refresh.services.refresh.store import Snapshot


class BlockingSource(InMemoryRemoteSource):
    """Source whose sentinel fetch can be held open by the test."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.block = False
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch_sentinel(self, key, label=""):
        if self.block:
            self.entered.set()
            await self.release.wait()
        return await super().fetch_sentinel(key, label)


class SlowSource(InMemoryRemoteSource):
    """Source whose sentinel fetch takes `duration` seconds on the fake clock."""

    def __init__(self, clock, duration, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.clock = clock
        self.duration = duration

    async def fetch_sentinel(self, key, label=""):
        self.clock.advance(self.duration)
        return await super().fetch_sentinel(key, label)


class TestTryRefreshOnce:
    """Tests for a single refresh attempt."""

    @pytest.mark.asyncio
    async def test_first_attempt_loads_everything(self, make_coordinator, source, store):
        coordinator = make_coordinator()

        assert await coordinator.try_refresh_once() is RefreshOutcome.CHANGED
        assert store.get("Foo") == "old"
        assert store.version == "v1"
        assert coordinator.sentinel.last_observed == "v1"
        assert coordinator.state is CoordinatorState.IDLE
        assert source.fetch_all_calls == 1

    @pytest.mark.asyncio
    async def test_unchanged_sentinel_skips_full_fetch(self, make_coordinator, source):
        coordinator = make_coordinator()
        await coordinator.try_refresh_once()

        for _ in range(3):
            assert await coordinator.try_refresh_once() is RefreshOutcome.UNCHANGED

        assert source.sentinel_calls == 4
        assert source.fetch_all_calls == 1

    @pytest.mark.asyncio
    async def test_changed_sentinel_replaces_snapshot(self, make_coordinator, source, store):
        coordinator = make_coordinator()
        await coordinator.try_refresh_once()

        source.set("Foo", "new")
        source.delete("Bar")
        source.set(SENTINEL_KEY, "v2")

        assert await coordinator.try_refresh_once() is RefreshOutcome.CHANGED
        assert store.get("Foo") == "new"
        assert "Bar" not in store
        assert store.version == "v2"

    @pytest.mark.asyncio
    async def test_value_changes_without_sentinel_are_not_picked_up(self, make_coordinator, source, store):
        coordinator = make_coordinator()
        await coordinator.try_refresh_once()

        source.set("Foo", "sneaky")

        assert await coordinator.try_refresh_once() is RefreshOutcome.UNCHANGED
        assert store.get("Foo") == "old"

    @pytest.mark.asyncio
    async def test_missing_sentinel_compared_as_none(self, make_coordinator, source, store):
        coordinator = make_coordinator()
        await coordinator.try_refresh_once()

        source.delete(SENTINEL_KEY)
        assert await coordinator.try_refresh_once() is RefreshOutcome.CHANGED
        assert coordinator.sentinel.last_observed is None

        assert await coordinator.try_refresh_once() is RefreshOutcome.UNCHANGED

    @pytest.mark.asyncio
    async def test_sentinel_error_keeps_snapshot(self, make_coordinator, source, store):
        coordinator = make_coordinator()
        await coordinator.try_refresh_once()

        source.fail_next(1, "service unavailable")
        source.set(SENTINEL_KEY, "v2")
        source.set("Foo", "new")

        assert await coordinator.try_refresh_once() is RefreshOutcome.ERROR
        assert coordinator.state is CoordinatorState.FAILED
        assert "service unavailable" in coordinator.last_error
        assert store.get("Foo") == "old"
        assert coordinator.sentinel.last_observed == "v1"

    @pytest.mark.asyncio
    async def test_fetch_all_error_retries_next_time(self, make_coordinator, source, store, monkeypatch):
        coordinator = make_coordinator()
        await coordinator.try_refresh_once()
        source.set(SENTINEL_KEY, "v2")
        source.set("Foo", "new")

        original = source.fetch_all

        async def failing_fetch_all(label_filter=""):
            raise FetchError("timeout", operation="fetch_all")

        monkeypatch.setattr(source, "fetch_all", failing_fetch_all)
        assert await coordinator.try_refresh_once() is RefreshOutcome.ERROR
        assert coordinator.sentinel.last_observed == "v1"
        assert store.get("Foo") == "old"

        monkeypatch.setattr(source, "fetch_all", original)
        assert await coordinator.try_refresh_once() is RefreshOutcome.CHANGED
        assert store.get("Foo") == "new"

    @pytest.mark.asyncio
    async def test_duplicate_entries_reported_as_error(self, make_coordinator, store, monkeypatch):
        coordinator = make_coordinator()

        async def duplicated(label_filter=""):
            return [ConfigEntry(key="Foo", value="a"), ConfigEntry(key="Foo", value="b")]

        monkeypatch.setattr(coordinator.source, "fetch_all", duplicated)

        assert await coordinator.try_refresh_once() is RefreshOutcome.ERROR
        assert len(store) == 0
        assert not coordinator.sentinel.observed

    @pytest.mark.asyncio
    async def test_unexpected_exception_reported_as_error(self, make_coordinator, monkeypatch):
        coordinator = make_coordinator()

        async def broken(key, label=""):
            raise RuntimeError("bug in source")

        monkeypatch.setattr(coordinator.source, "fetch_sentinel", broken)

        assert await coordinator.try_refresh_once() is RefreshOutcome.ERROR
        assert coordinator.last_error == "bug in source"

    @pytest.mark.asyncio
    async def test_label_filter_passed_to_source(self, make_coordinator, store):
        source = InMemoryRemoteSource()
        source.set(SENTINEL_KEY, "v1", label="prod")
        source.set("Foo", "base", label="base")
        source.set("Foo", "prod", label="prod")
        source.set("Foo", "staging", label="staging")

        coordinator = make_coordinator(
            source=source,
            sentinel_label="prod",
            label_filter="base,prod",
        )
        await coordinator.try_refresh_once()

        assert store.get("Foo") == "prod"
        assert store.get("Foo", "base") == "base"
        assert store.get_value("Foo", "staging") is None


class TestListeners:
    """Tests for change notification."""

    @pytest.mark.asyncio
    async def test_listener_called_on_change_only(self, make_coordinator, source):
        coordinator = make_coordinator()
        seen: list[Snapshot] = []
        coordinator.add_listener(seen.append)

        await coordinator.try_refresh_once()
        await coordinator.try_refresh_once()
        source.set(SENTINEL_KEY, "v2")
        await coordinator.try_refresh_once()

        assert [s.version for s in seen] == ["v1", "v2"]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_fail_refresh(self, make_coordinator, store):
        coordinator = make_coordinator()

        def broken(snapshot):
            raise RuntimeError("listener bug")

        calls = []
        coordinator.add_listener(broken)
        coordinator.add_listener(calls.append)

        assert await coordinator.try_refresh_once() is RefreshOutcome.CHANGED
        assert store.get("Foo") == "old"
        assert len(calls) == 1


class TestTick:
    """Tests for loop ticks and the cache expiration policy."""

    @pytest.mark.asyncio
    async def test_sentinel_scenario_v1_then_v2(self, make_coordinator, source, store, clock):
        coordinator = make_coordinator()
        await coordinator.try_refresh_once()
        coordinator.last_check = clock()

        clock.advance(30)
        assert await coordinator.tick() is RefreshOutcome.UNCHANGED
        assert store.get("Foo") == "old"

        source.set(SENTINEL_KEY, "v2")
        source.set("Foo", "new")
        clock.advance(30)
        assert await coordinator.tick() is RefreshOutcome.CHANGED
        assert source.fetch_all_calls == 2
        assert store.get("Foo") == "new"

    @pytest.mark.asyncio
    async def test_not_due_skips_attempt(self, make_coordinator, clock, monkeypatch):
        coordinator = make_coordinator()
        attempts = []
        original = coordinator.try_refresh_once

        async def counting():
            attempts.append(clock())
            return await original()

        monkeypatch.setattr(coordinator, "try_refresh_once", counting)

        assert await coordinator.tick() is RefreshOutcome.CHANGED
        clock.advance(10)
        assert await coordinator.tick() is None
        clock.advance(10)
        assert await coordinator.tick() is None

        assert len(attempts) == 1
        assert coordinator.get_stats()["skipped_count"] == 2

    @pytest.mark.asyncio
    async def test_reads_one_second_apart_cause_at_most_one_fetch(self, make_coordinator, source, store, clock):
        coordinator = make_coordinator()
        await coordinator.tick()
        calls_before = source.sentinel_calls

        assert store.get("Foo") == "old"
        await coordinator.tick()
        clock.advance(1)
        assert store.get("Foo") == "old"
        await coordinator.tick()

        assert source.sentinel_calls - calls_before <= 1

    @pytest.mark.asyncio
    async def test_last_check_updated_on_error(self, make_coordinator, source, clock):
        coordinator = make_coordinator()
        source.fail_next(1)

        assert await coordinator.tick() is RefreshOutcome.ERROR
        assert coordinator.last_check == clock()

        clock.advance(5)
        assert await coordinator.tick() is None

    @pytest.mark.asyncio
    async def test_error_then_recovery(self, make_coordinator, source, store, clock):
        coordinator = make_coordinator()
        await coordinator.tick()

        source.fail_next(1)
        clock.advance(30)
        assert await coordinator.tick() is RefreshOutcome.ERROR
        assert store.get("Foo") == "old"
        assert coordinator.state is CoordinatorState.FAILED

        source.set(SENTINEL_KEY, "v2")
        source.set("Foo", "new")
        clock.advance(30)
        assert await coordinator.tick() is RefreshOutcome.CHANGED
        assert coordinator.state is CoordinatorState.IDLE
        assert store.get("Foo") == "new"

    @pytest.mark.asyncio
    async def test_fetch_duration_does_not_delay_next_check(self, make_coordinator, clock):
        source = SlowSource(clock, 2.0, [ConfigEntry(key=SENTINEL_KEY, value="v1")])
        coordinator = make_coordinator(source=source)

        assert await coordinator.tick() is RefreshOutcome.CHANGED
        tick_started = clock() - 2.0
        assert coordinator.last_check == tick_started

        # Next tick fires one interval after the previous one started
        clock.now = tick_started + 30
        assert await coordinator.tick() is RefreshOutcome.UNCHANGED
        assert source.sentinel_calls == 2

    @pytest.mark.asyncio
    async def test_tick_slightly_early_is_still_due(self, make_coordinator, source, clock):
        coordinator = make_coordinator()
        await coordinator.tick()

        clock.advance(29.9)
        assert await coordinator.tick() is RefreshOutcome.UNCHANGED
        assert source.sentinel_calls == 2

    @pytest.mark.asyncio
    async def test_zero_expiration_checks_every_tick(self, make_coordinator, source):
        coordinator = make_coordinator(cache_expiration_s=0)

        for _ in range(3):
            assert await coordinator.tick() is not None

        assert source.sentinel_calls == 3

    @pytest.mark.asyncio
    async def test_mark_dirty_forces_next_tick(self, make_coordinator, source, clock):
        coordinator = make_coordinator()
        await coordinator.tick()

        coordinator.mark_dirty()
        assert await coordinator.tick() is RefreshOutcome.UNCHANGED
        assert source.sentinel_calls == 2

    @pytest.mark.asyncio
    async def test_stats(self, make_coordinator, source, clock):
        coordinator = make_coordinator()
        await coordinator.tick()
        source.fail_next(1)
        clock.advance(30)
        await coordinator.tick()

        stats = coordinator.get_stats()
        assert stats["refresh_count"] == 1
        assert stats["error_count"] == 1
        assert stats["last_outcome"] == "error"
        assert stats["sentinel"]["last_observed"] == "v1"
        assert stats["entry_count"] == 3
        assert stats["next_check_in_s"] == 30.0
        assert stats["scheduler"]["name"] == "refresh"


class TestLifecycle:
    """Tests for start/stop and startup policies."""

    @pytest.mark.asyncio
    async def test_start_loads_and_runs(self, make_coordinator, store):
        coordinator = make_coordinator()
        await coordinator.start()
        try:
            assert coordinator.is_running
            assert store.get("Foo") == "old"
        finally:
            await coordinator.stop()

        assert not coordinator.is_running

    @pytest.mark.asyncio
    async def test_start_twice_runs_one_loop(self, make_coordinator, source):
        coordinator = make_coordinator()
        await coordinator.start()
        task = coordinator._loop._task
        await coordinator.start()
        try:
            assert coordinator._loop._task is task
            assert source.sentinel_calls == 1
            loops = [t for t in asyncio.all_tasks() if t.get_name() == "scheduler:refresh"]
            assert len(loops) == 1
        finally:
            await coordinator.stop()

    @pytest.mark.asyncio
    async def test_concurrent_starts_run_one_loop(self, make_coordinator, source):
        coordinator = make_coordinator()
        await asyncio.gather(coordinator.start(), coordinator.start())
        try:
            assert source.sentinel_calls == 1
            loops = [t for t in asyncio.all_tasks() if t.get_name() == "scheduler:refresh"]
            assert len(loops) == 1
        finally:
            await coordinator.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, make_coordinator):
        coordinator = make_coordinator()
        await coordinator.stop()
        await coordinator.start()
        await coordinator.stop()
        await coordinator.stop()
        assert not coordinator.is_running

    @pytest.mark.asyncio
    async def test_startup_fail_policy(self, make_coordinator, source, store):
        coordinator = make_coordinator(startup_policy=StartupPolicy.FAIL)
        source.fail_next(1, "unreachable")

        with pytest.raises(StartupFetchError) as exc_info:
            await coordinator.start()

        assert exc_info.value.recoverable is False
        assert "unreachable" in str(exc_info.value)
        assert not coordinator.is_running
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_startup_empty_policy(self, make_coordinator, source, store):
        coordinator = make_coordinator(startup_policy=StartupPolicy.EMPTY)
        source.fail_next(1)

        await coordinator.start()
        try:
            assert coordinator.is_running
            assert len(store) == 0
            assert coordinator.last_check is None

            assert await coordinator.tick() is RefreshOutcome.CHANGED
            assert store.get("Foo") == "old"
        finally:
            await coordinator.stop()

    @pytest.mark.asyncio
    async def test_startup_cached_policy(self, make_coordinator, source, store, tmp_path):
        cache = SnapshotCache(tmp_path)
        cache.save(Snapshot.build([ConfigEntry(key="Foo", value="cached")], version="v1"))

        coordinator = make_coordinator(startup_policy=StartupPolicy.CACHED, cache=cache)
        source.fail_next(1)

        await coordinator.start()
        try:
            assert store.get("Foo") == "cached"
            assert coordinator.sentinel.last_observed == "v1"

            # Remote still at v1: cached snapshot is current
            assert await coordinator.tick() is RefreshOutcome.UNCHANGED
        finally:
            await coordinator.stop()

    @pytest.mark.asyncio
    async def test_startup_cached_policy_without_cache(self, make_coordinator, source, tmp_path):
        coordinator = make_coordinator(
            startup_policy=StartupPolicy.CACHED,
            cache=SnapshotCache(tmp_path),
        )
        source.fail_next(1)

        with pytest.raises(StartupFetchError):
            await coordinator.start()
        assert not coordinator.is_running

    @pytest.mark.asyncio
    async def test_loop_keeps_running_after_errors(self, make_coordinator, source, store):
        coordinator = make_coordinator(tick_interval_s=0.02, cache_expiration_s=0, clock=time.monotonic)
        await coordinator.start()
        try:
            source.fail_next(3)
            for _ in range(100):
                if coordinator.get_stats()["error_count"] >= 3 and coordinator.last_outcome is RefreshOutcome.UNCHANGED:
                    break
                await asyncio.sleep(0.02)

            assert coordinator.get_stats()["error_count"] == 3
            assert coordinator.last_outcome is RefreshOutcome.UNCHANGED
            assert coordinator.is_running
            assert store.get("Foo") == "old"
        finally:
            await coordinator.stop()

    @pytest.mark.asyncio
    async def test_loop_polls_every_tick_when_expiration_equals_interval(self, make_coordinator):
        source = InMemoryRemoteSource([ConfigEntry(key=SENTINEL_KEY, value="v1")], delay_s=0.02)
        coordinator = make_coordinator(
            source=source,
            tick_interval_s=0.1,
            cache_expiration_s=0.1,
            clock=time.monotonic,
        )
        await coordinator.start()
        try:
            await asyncio.sleep(1.05)
        finally:
            await coordinator.stop()

        stats = coordinator.get_stats()
        ticks = stats["scheduler"]["execution_count"]
        polls = source.sentinel_calls - 1

        assert ticks >= 8
        # Only the first tick can fall inside the initial load's interval
        assert stats["skipped_count"] <= 1
        assert polls >= ticks - 1

    @pytest.mark.asyncio
    async def test_stop_drains_in_flight_tick(self, make_coordinator):
        source = BlockingSource([
            ConfigEntry(key=SENTINEL_KEY, value="v1"),
            ConfigEntry(key="Foo", value="old"),
        ])
        coordinator = make_coordinator(
            source=source,
            tick_interval_s=0.02,
            cache_expiration_s=0,
            clock=time.monotonic,
        )
        await coordinator.start()

        source.block = True
        await asyncio.wait_for(source.entered.wait(), timeout=2)

        stop_task = asyncio.create_task(coordinator.stop())
        await asyncio.sleep(0.05)
        assert not stop_task.done()

        source.release.set()
        await asyncio.wait_for(stop_task, timeout=2)

        assert not coordinator.is_running
        assert coordinator.last_outcome is RefreshOutcome.UNCHANGED
        assert coordinator.state is CoordinatorState.IDLE
