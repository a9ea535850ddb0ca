"""In-memory test doubles.

``FakeStore`` is an in-memory stand-in for ``RedisStore`` covering the
plain, conditional and watch/transaction operations the lease and the
coordinator use. Every operation yields to the event loop once so that
concurrent tasks interleave the way they would against a real server.
TTLs follow the injected ``FakeClock``.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from keyfence.errors import StoreUnavailableError
from keyfence.store.redis import encode_value

START = 1_700_000_000.0


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, now: float = START):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransaction:
    def __init__(self, store: FakeStore, watched: tuple[str, ...]):
        self._store = store
        self.watched = watched
        self._versions = {key: store._version(key) for key in watched}
        self._ops: list[tuple[str, tuple[Any, ...]]] = []
        self._done = False

    async def get(self, key: str) -> bytes | None:
        if self._ops:
            raise RuntimeError("Reads must happen before commands are queued")
        return await self._store.get(key)

    def queue_set(self, key: str, value: Any, ttl: float | None = None) -> None:
        self._ops.append(("set", (key, value, ttl)))

    def queue_remove(self, *keys: str) -> None:
        self._ops.append(("remove", keys))

    async def unwatch(self) -> None:
        self._done = True

    async def commit(self) -> bool:
        if self._done:
            raise RuntimeError("Transaction already finished")
        self._done = True
        await self._store._tick()
        if any(self._store._version(k) != v for k, v in self._versions.items()):
            return False
        for op, args in self._ops:
            if op == "set":
                self._store._write(*args)
            else:
                for key in args:
                    self._store._delete(key)
        return True


class FakeStore:
    """Dict-backed store with Redis-like semantics for keys and watches."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.unavailable = False
        self._values: dict[str, bytes] = {}
        self._expires: dict[str, float] = {}
        self._versions: dict[str, int] = {}

    async def _tick(self) -> None:
        await asyncio.sleep(0)
        if self.unavailable:
            raise StoreUnavailableError("Redis unavailable: fake outage")

    def _purge(self, key: str) -> None:
        expires = self._expires.get(key)
        if expires is not None and expires <= self.clock():
            self._delete(key)

    def _version(self, key: str) -> int:
        self._purge(key)
        return self._versions.get(key, 0)

    def _write(self, key: str, value: Any, ttl: float | None = None) -> None:
        self._values[key] = encode_value(value)
        if ttl is None:
            self._expires.pop(key, None)
        else:
            self._expires[key] = self.clock() + ttl
        self._versions[key] = self._versions.get(key, 0) + 1

    def _delete(self, key: str) -> bool:
        if key not in self._values:
            return False
        del self._values[key]
        self._expires.pop(key, None)
        self._versions[key] = self._versions.get(key, 0) + 1
        return True

    def raw(self, key: str) -> bytes | None:
        """Synchronous peek for assertions."""
        self._purge(key)
        return self._values.get(key)

    async def get(self, key: str) -> bytes | None:
        await self._tick()
        self._purge(key)
        return self._values.get(key)

    async def get_many(self, keys: list[str]) -> dict[str, bytes | None]:
        return {key: await self.get(key) for key in keys}

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        await self._tick()
        self._write(key, value, ttl)

    async def set_if_absent(self, key: str, value: Any) -> bool:
        await self._tick()
        self._purge(key)
        if key in self._values:
            return False
        self._write(key, value)
        return True

    async def get_and_set(self, key: str, value: Any) -> bytes | None:
        await self._tick()
        self._purge(key)
        previous = self._values.get(key)
        self._write(key, value)
        return previous

    async def remove(self, *keys: str) -> int:
        await self._tick()
        return sum(self._delete(key) for key in keys)

    async def exists(self, key: str) -> bool:
        await self._tick()
        self._purge(key)
        return key in self._values

    @asynccontextmanager
    async def watch(self, *keys: str) -> AsyncIterator[FakeTransaction]:
        await self._tick()
        yield FakeTransaction(self, keys)


