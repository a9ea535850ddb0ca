"""Tests for the single-flight coordinator against the in-memory store."""

from __future__ import annotations

import asyncio
import threading
import time
from unittest.mock import patch

import pytest

from keyfence.coordination.coordinator import SingleFlightCoordinator
from keyfence.coordination.local_cache import LocalTrackerCache
from keyfence.coordination.portal import EventLoopThread
from keyfence.coordination.tracker import ExecutionTracker
from keyfence.store.keys import StoreKeys
from tests.unit.fakes import START, FakeClock, FakeStore

KEY = "Mutex-reports.build(7)"


def make_coordinator(store: FakeStore, clock: FakeClock) -> SingleFlightCoordinator:
    """One coordinator per simulated process, each with its own local cache."""
    return SingleFlightCoordinator(
        store,
        LocalTrackerCache(clock=clock),
        acquisition_timeout=0,
        clock=clock,
        max_clock_skew=0,
    )


class Counter:
    def __init__(self, result: bool = True):
        self.calls = 0
        self.result = result

    async def __call__(self, *args: object) -> bool:
        self.calls += 1
        await asyncio.sleep(0)
        return self.result


class TestFrequencyGating:
    """Tests for rate-gated execution."""

    @pytest.mark.asyncio
    async def test_first_call_runs(self, store: FakeStore, clock: FakeClock) -> None:
        coordinator = make_coordinator(store, clock)
        op = Counter()

        ran = await coordinator.run(
            "reports.build", [7], op, lease_duration=10, frequency_window=60
        )

        assert ran is True
        assert op.calls == 1
        tracker = ExecutionTracker.from_bytes(store.raw(KEY))
        assert tracker is not None
        assert tracker.timestamp == START
        assert store.raw(StoreKeys.lock(KEY)) is None

    @pytest.mark.asyncio
    async def test_repeat_within_window_refused_locally(
        self, store: FakeStore, clock: FakeClock
    ) -> None:
        """Same process, one second later: refused without acquiring."""
        coordinator = make_coordinator(store, clock)
        op = Counter()
        await coordinator.run("reports.build", [7], op, lease_duration=10, frequency_window=60)
        clock.advance(1)
        store.unavailable = True

        ran = await coordinator.run(
            "reports.build", [7], op, lease_duration=10, frequency_window=60
        )

        assert ran is False
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_other_process_refused_by_stored_tracker(
        self, store: FakeStore, clock: FakeClock
    ) -> None:
        op = Counter()
        await make_coordinator(store, clock).run(
            "reports.build", [7], op, lease_duration=10, frequency_window=60
        )
        clock.advance(1)

        ran = await make_coordinator(store, clock).run(
            "reports.build", [7], op, lease_duration=10, frequency_window=60
        )

        assert ran is False
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_runs_again_after_window(self, store: FakeStore, clock: FakeClock) -> None:
        coordinator = make_coordinator(store, clock)
        op = Counter()
        await coordinator.run("reports.build", [7], op, lease_duration=10, frequency_window=60)
        clock.advance(1)
        await coordinator.run("reports.build", [7], op, lease_duration=10, frequency_window=60)
        clock.advance(60)

        ran = await coordinator.run(
            "reports.build", [7], op, lease_duration=10, frequency_window=60
        )

        assert ran is True
        assert op.calls == 2

    @pytest.mark.asyncio
    async def test_stale_tracker_past_lease_window_runs(
        self, store: FakeStore, clock: FakeClock
    ) -> None:
        """A stored tracker only blocks while the previous lease window is open."""
        await store.set(KEY, ExecutionTracker.at(START - 11).to_bytes())
        op = Counter()

        ran = await make_coordinator(store, clock).run(
            "reports.build", [7], op, lease_duration=10, frequency_window=60
        )

        assert ran is True

    @pytest.mark.asyncio
    async def test_refusal_rewrites_tracker(self, store: FakeStore, clock: FakeClock) -> None:
        await store.set(KEY, ExecutionTracker.at(START - 1).to_bytes())

        await make_coordinator(store, clock).run(
            "reports.build", [7], Counter(), lease_duration=10, frequency_window=60
        )

        tracker = ExecutionTracker.from_bytes(store.raw(KEY))
        assert tracker is not None
        assert tracker.timestamp == START

    @pytest.mark.asyncio
    async def test_tracker_expires_with_window(self, store: FakeStore, clock: FakeClock) -> None:
        await make_coordinator(store, clock).run(
            "reports.build", [7], Counter(), lease_duration=10, frequency_window=60
        )

        clock.advance(60)

        assert store.raw(KEY) is None

    @pytest.mark.asyncio
    async def test_arguments_select_independent_keys(
        self, store: FakeStore, clock: FakeClock
    ) -> None:
        coordinator = make_coordinator(store, clock)
        op = Counter()

        first = await coordinator.run(
            "reports.build", [7], op, lease_duration=10, frequency_window=60
        )
        second = await coordinator.run(
            "reports.build", [8], op, lease_duration=10, frequency_window=60
        )

        assert first and second
        assert op.calls == 2


class TestMutualExclusion:
    """Tests for runs without a frequency window."""

    @pytest.mark.asyncio
    async def test_sequential_calls_all_run(self, store: FakeStore, clock: FakeClock) -> None:
        coordinator = make_coordinator(store, clock)
        op = Counter()

        results = [
            await coordinator.run("reports.build", [7], op, lease_duration=10) for _ in range(3)
        ]

        assert results == [True, True, True]
        assert op.calls == 3
        assert store.raw(KEY) is None

    @pytest.mark.parametrize("callers", [2, 10, 50])
    @pytest.mark.asyncio
    async def test_concurrent_callers_run_once(
        self, store: FakeStore, clock: FakeClock, callers: int
    ) -> None:
        release = asyncio.Event()
        calls = 0

        async def slow() -> bool:
            nonlocal calls
            calls += 1
            await release.wait()
            return True

        async def caller() -> bool:
            return await make_coordinator(store, clock).run(
                "reports.build", [7], slow, lease_duration=10
            )

        tasks = [asyncio.create_task(caller()) for _ in range(callers)]
        for _ in range(50):
            await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks)

        assert calls == 1
        assert sum(results) == 1

    @pytest.mark.asyncio
    async def test_in_flight_refused_locally(self, store: FakeStore, clock: FakeClock) -> None:
        coordinator = make_coordinator(store, clock)
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow() -> bool:
            started.set()
            await release.wait()
            return True

        task = asyncio.create_task(coordinator.run("reports.build", [7], slow, lease_duration=10))
        await started.wait()

        assert await coordinator.run("reports.build", [7], slow, lease_duration=10) is False
        assert coordinator.cache.get(KEY) is not None

        release.set()
        assert await task is True
        assert coordinator.cache.get(KEY) is None


class TestFailureHandling:
    """Errors are reported as False and never escape."""

    @pytest.mark.asyncio
    async def test_operation_error_returns_false(
        self, store: FakeStore, clock: FakeClock
    ) -> None:
        async def boom() -> bool:
            raise RuntimeError("boom")

        ran = await make_coordinator(store, clock).run(
            "reports.build", [7], boom, lease_duration=10
        )

        assert ran is False
        assert store.raw(StoreKeys.lock(KEY)) is None

    @pytest.mark.asyncio
    async def test_failed_attempt_is_recorded(self, store: FakeStore, clock: FakeClock) -> None:
        """A failing run still counts against the frequency window."""
        op = Counter(result=False)

        ran = await make_coordinator(store, clock).run(
            "reports.build", [7], op, lease_duration=10, frequency_window=60
        )
        clock.advance(1)
        again = await make_coordinator(store, clock).run(
            "reports.build", [7], op, lease_duration=10, frequency_window=60
        )

        assert ran is False
        assert again is False
        assert op.calls == 1
        assert store.raw(KEY) is not None

    @pytest.mark.asyncio
    async def test_store_outage_returns_false(self, store: FakeStore, clock: FakeClock) -> None:
        store.unavailable = True
        op = Counter()

        ran = await make_coordinator(store, clock).run(
            "reports.build", [7], op, lease_duration=10, frequency_window=60
        )

        assert ran is False
        assert op.calls == 0

    @pytest.mark.asyncio
    async def test_held_lease_refuses(self, store: FakeStore, clock: FakeClock) -> None:
        await store.set(StoreKeys.lock(KEY), b"99999999999999")
        op = Counter()

        ran = await make_coordinator(store, clock).run(
            "reports.build", [7], op, lease_duration=10
        )

        assert ran is False
        assert op.calls == 0

    @pytest.mark.asyncio
    async def test_truthiness_of_result(self, store: FakeStore, clock: FakeClock) -> None:
        async def returns_none() -> None:
            return None

        assert (
            await make_coordinator(store, clock).run("f", [], returns_none, lease_duration=10)
            is False
        )

    @pytest.mark.asyncio
    async def test_invalid_arguments_raise(self, store: FakeStore, clock: FakeClock) -> None:
        coordinator = make_coordinator(store, clock)

        with pytest.raises(ValueError, match="lease_duration"):
            await coordinator.run("f", [], Counter(), lease_duration=0)
        with pytest.raises(ValueError, match="frequency_window"):
            await coordinator.run("f", [], Counter(), lease_duration=10, frequency_window=-1)

    @pytest.mark.asyncio
    async def test_lease_within_skew_bound_raises(
        self, store: FakeStore, clock: FakeClock
    ) -> None:
        coordinator = SingleFlightCoordinator(
            store,
            LocalTrackerCache(clock=clock),
            acquisition_timeout=0,
            clock=clock,
            max_clock_skew=0.5,
        )
        op = Counter()

        with pytest.raises(ValueError, match="clock skew"):
            await coordinator.run("f", [], op, lease_duration=2)

        assert op.calls == 0
        assert await coordinator.run("f", [], op, lease_duration=2.5) is True
        assert op.calls == 1


class TestCallShapes:
    """Tests for sync operations, blocking entry points and the decorator."""

    @pytest.mark.asyncio
    async def test_sync_operation_runs_in_worker_thread(
        self, store: FakeStore, clock: FakeClock
    ) -> None:
        main = threading.get_ident()
        seen: list[int] = []

        def work(n: int) -> bool:
            seen.append(threading.get_ident())
            return n == 7

        ran = await make_coordinator(store, clock).run(
            "reports.build", [7], work, lease_duration=10
        )

        assert ran is True
        assert seen and seen[0] != main

    @pytest.mark.asyncio
    async def test_async_decorator(self, store: FakeStore, clock: FakeClock) -> None:
        coordinator = make_coordinator(store, clock)
        calls: list[tuple[int, str]] = []

        @coordinator.guard(lease_duration=10, frequency_window=60, name="reports.build")
        async def build(report_id: int, fmt: str = "pdf") -> bool:
            calls.append((report_id, fmt))
            return True

        assert await build(7) is True
        assert await build(7) is False
        assert await build(7, fmt="csv") is True
        assert calls == [(7, "pdf"), (7, "csv")]
        assert build.__name__ == "build"
        assert store.raw("Mutex-reports.build(7,fmt=csv)") is not None

    def test_blocking_decorator(self, store: FakeStore, clock: FakeClock) -> None:
        coordinator = make_coordinator(store, clock)
        calls: list[int] = []

        @coordinator.guard(lease_duration=10, frequency_window=60, name="reports.build")
        def build(report_id: int) -> bool:
            calls.append(report_id)
            return True

        try:
            assert build(7) is True
            assert build(7) is False
        finally:
            coordinator.close()

        assert calls == [7]

    def test_run_blocking(self, store: FakeStore, clock: FakeClock) -> None:
        coordinator = make_coordinator(store, clock)
        op = Counter()

        try:
            ran = coordinator.run_blocking("reports.build", [7], op, lease_duration=10)
        finally:
            coordinator.close()

        assert ran is True
        assert op.calls == 1

    def test_default_name_is_qualified(self, store: FakeStore, clock: FakeClock) -> None:
        coordinator = make_coordinator(store, clock)

        @coordinator.guard(lease_duration=10, frequency_window=60)
        def nightly() -> bool:
            return True

        try:
            nightly()
        finally:
            coordinator.close()

        assert any(key.startswith("Mutex-") and "nightly()" in key for key in store._values)

    def test_concurrent_blocking_callers_share_one_loop_thread(
        self, store: FakeStore, clock: FakeClock
    ) -> None:
        created: list[EventLoopThread] = []

        class SlowEventLoopThread(EventLoopThread):
            def __init__(self) -> None:
                time.sleep(0.05)
                super().__init__()
                created.append(self)

        coordinator = make_coordinator(store, clock)
        barrier = threading.Barrier(2)
        portals: list[EventLoopThread] = []

        def get_portal() -> None:
            barrier.wait()
            portals.append(coordinator._get_portal())

        with patch(
            "keyfence.coordination.coordinator.EventLoopThread", SlowEventLoopThread
        ):
            threads = [threading.Thread(target=get_portal) for _ in range(2)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

        assert len(created) == 1
        assert portals[0] is portals[1] is created[0]
        coordinator.close()
