"""Integration tests for single-flight coordination against a real Redis."""

from __future__ import annotations

import asyncio

import pytest
from redis.asyncio import Redis

from keyfence.coordination import LocalTrackerCache, SingleFlightCoordinator
from keyfence.coordination.tracker import ExecutionTracker
from keyfence.store.redis import RedisStore

pytestmark = pytest.mark.integration


def coordinator(store: RedisStore) -> SingleFlightCoordinator:
    """A fresh coordinator stands in for a separate process."""
    return SingleFlightCoordinator(
        store, LocalTrackerCache(), acquisition_timeout=0, max_clock_skew=0
    )


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_fleet_runs_once_within_window(
        self, redis_store: RedisStore, redis_client: Redis
    ) -> None:
        calls = 0

        async def rebuild(tenant: str) -> bool:
            nonlocal calls
            calls += 1
            return True

        first = await coordinator(redis_store).run(
            "search.rebuild", ["acme"], rebuild, lease_duration=5, frequency_window=60
        )
        second = await coordinator(redis_store).run(
            "search.rebuild", ["acme"], rebuild, lease_duration=5, frequency_window=60
        )

        assert (first, second) == (True, False)
        assert calls == 1
        stored = await redis_client.get("Mutex-search.rebuild(acme)")
        assert ExecutionTracker.from_bytes(stored) is not None
        assert 0 < await redis_client.pttl("Mutex-search.rebuild(acme)") <= 60_000

    @pytest.mark.parametrize("callers", [2, 10, 50])
    @pytest.mark.asyncio
    async def test_concurrent_fleet_runs_once(
        self, redis_store: RedisStore, callers: int
    ) -> None:
        calls = 0

        async def rebuild() -> bool:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.1)
            return True

        results = await asyncio.gather(
            *(
                coordinator(redis_store).run(
                    "search.rebuild", [], rebuild, lease_duration=5, frequency_window=60
                )
                for _ in range(callers)
            )
        )

        assert calls == 1
        assert sum(results) == 1
