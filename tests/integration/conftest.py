"""Integration test fixtures using Docker.

Provides a containerized Redis for exercising leases, tags and the
single-flight coordinator against a real server. Set
``KEYFENCE_TEST_REDIS_URL`` to run against an existing server instead.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import AsyncIterator, Iterator

import pytest
import pytest_asyncio

from keyfence.store.redis import RedisStore
from tests.integration.docker_utils import redis_server


@pytest.fixture(scope="session")
def redis_url() -> Iterator[str]:
    """URL of the Redis used by the session; skips if none can be had."""
    external = os.environ.get("KEYFENCE_TEST_REDIS_URL")
    if external:
        yield external
        return

    import docker

    try:
        client = docker.from_env()
        client.ping()
    except Exception as exc:
        pytest.skip(f"Docker not available: {exc}")
    try:
        with redis_server(client) as server:
            yield server.url
    finally:
        client.close()


@pytest_asyncio.fixture
async def redis_client(redis_url: str):
    """Create a Redis client for tests."""
    import redis.asyncio as redis

    client = redis.from_url(redis_url)
    await _wait_for_redis(client)
    yield client
    await client.flushdb()  # Clean up after each test
    await client.aclose()


@pytest_asyncio.fixture
async def redis_store(redis_client) -> AsyncIterator[RedisStore]:
    """Store adapter over the test Redis."""
    yield RedisStore(redis_client)


async def _wait_for_redis(client, timeout: float = 30.0) -> None:
    """Wait for Redis to accept connections."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            await client.ping()
            return
        except Exception:
            if time.monotonic() >= deadline:
                raise
            await asyncio.sleep(0.5)
