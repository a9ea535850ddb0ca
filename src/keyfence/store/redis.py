"""Redis store adapter for keyfence.

Provides the small capability surface the lease lock and the tag index
build on: plain and conditional writes, optimistic watch + transaction,
server-side scripts and set algebra. Uses the redis-py async client for
connection pooling.

Every transport failure surfaces as ``StoreUnavailableError`` so callers
can tell "the store is down" apart from "the key is absent" (``None``).
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Iterable, Iterator
from contextlib import asynccontextmanager, contextmanager
from typing import TYPE_CHECKING, Any, cast

import orjson
import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, WatchError
from redis.exceptions import TimeoutError as RedisTimeoutError

from keyfence.config import settings
from keyfence.errors import StoreUnavailableError

if TYPE_CHECKING:
    from redis.asyncio import Redis
    from redis.asyncio.client import Pipeline
    from redis.commands.core import AsyncScript

# Module-level connection pool
_redis_client: Redis | None = None


async def get_redis() -> Redis:
    """Get or create the Redis client.

    Uses connection pooling for efficient connection management.
    """
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(  # type: ignore[no-untyped-call]
            settings.redis_url,
            encoding="utf-8",
            decode_responses=False,  # Values are opaque bytes
        )
    return _redis_client


async def close_redis() -> None:
    """Close Redis connections."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


def encode_value(value: Any) -> bytes:
    """Serialize a value for storage.

    Bytes pass through untouched and strings are UTF-8 encoded, so values
    written here read back unchanged through any plain Redis client.
    Everything else is stored as JSON.
    """
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    return orjson.dumps(value)


def _decode(value: bytes | str) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


def _ttl_ms(ttl: float | None) -> int | None:
    """Convert a TTL in seconds to whole milliseconds for PX."""
    if ttl is None:
        return None
    if ttl <= 0:
        raise ValueError(f"TTL must be positive, got {ttl}")
    return max(1, int(ttl * 1000))


@contextmanager
def _translate_errors(key: str | None = None) -> Iterator[None]:
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as e:
        raise StoreUnavailableError(f"Redis unavailable: {e}", key) from e


class Transaction:
    """Optimistic transaction over watched keys.

    Reads go straight to the server while the watch is armed. The first
    queued command switches the pipeline into MULTI mode; ``commit`` then
    runs EXEC and reports False if any watched key changed in between.
    """

    def __init__(self, pipe: Pipeline, watched: tuple[str, ...]):
        self._pipe = pipe
        self.watched = watched
        self._in_multi = False
        self._done = False

    async def get(self, key: str) -> bytes | None:
        """Read a key without leaving the watch."""
        if self._in_multi:
            raise RuntimeError("Reads must happen before commands are queued")
        with _translate_errors(key):
            return cast(bytes | None, await self._pipe.get(key))

    def _begin(self) -> None:
        if not self._in_multi:
            self._pipe.multi()
            self._in_multi = True

    def queue_set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Queue a SET, optionally with a TTL in seconds."""
        self._begin()
        self._pipe.set(key, encode_value(value), px=_ttl_ms(ttl))

    def queue_remove(self, *keys: str) -> None:
        """Queue a DEL of one or more keys."""
        self._begin()
        self._pipe.delete(*keys)

    async def unwatch(self) -> None:
        """Drop the watch without running anything."""
        if self._done:
            return
        self._done = True
        if not self._in_multi:
            with _translate_errors():
                await self._pipe.unwatch()

    async def commit(self) -> bool:
        """Run the queued commands atomically.

        Returns:
            True if committed, False if a watched key changed since the watch.
        """
        if self._done:
            raise RuntimeError("Transaction already finished")
        self._done = True
        self._begin()
        try:
            with _translate_errors(self.watched[0] if self.watched else None):
                await self._pipe.execute()
        except WatchError:
            return False
        return True


class RedisStore:
    """Capability surface over a shared Redis instance.

    Args:
        client: Async Redis client (bytes responses)
    """

    def __init__(self, client: Redis):
        self.client = client

    @classmethod
    async def from_settings(cls) -> RedisStore:
        """Build a store on the module-level pooled client."""
        return cls(await get_redis())

    # -------------------------------------------------------------------------
    # Plain key operations
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> bytes | None:
        """Get a value, or None if absent."""
        with _translate_errors(key):
            return cast(bytes | None, await self.client.get(key))

    async def get_many(self, keys: Iterable[str]) -> dict[str, bytes | None]:
        """Get several values in one round trip; missing keys map to None."""
        key_list = list(keys)
        if not key_list:
            return {}
        with _translate_errors():
            values = await self.client.mget(key_list)
        return dict(zip(key_list, values))

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Set a value, optionally expiring after ``ttl`` seconds."""
        with _translate_errors(key):
            await self.client.set(key, encode_value(value), px=_ttl_ms(ttl))

    async def set_if_absent(self, key: str, value: Any) -> bool:
        """SET NX. Returns True if this call created the key."""
        with _translate_errors(key):
            return bool(await self.client.set(key, encode_value(value), nx=True))

    async def get_and_set(self, key: str, value: Any) -> bytes | None:
        """Atomically replace a value and return the previous one."""
        with _translate_errors(key):
            return cast(bytes | None, await self.client.set(key, encode_value(value), get=True))

    async def remove(self, *keys: str) -> int:
        """Delete keys. Returns the number removed."""
        with _translate_errors(keys[0] if keys else None):
            return cast(int, await self.client.delete(*keys))

    async def exists(self, key: str) -> bool:
        with _translate_errors(key):
            return bool(await self.client.exists(key))

    # -------------------------------------------------------------------------
    # Optimistic concurrency
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def watch(self, *keys: str) -> AsyncIterator[Transaction]:
        """Watch keys and yield a transaction bound to that watch.

        The pipeline is reset on exit, which also drops an unused watch.

        Example:
            async with store.watch(lock_key) as tx:
                if await tx.get(lock_key) == token:
                    tx.queue_remove(lock_key)
                    committed = await tx.commit()
        """
        async with self.client.pipeline(transaction=True) as pipe:
            with _translate_errors(keys[0] if keys else None):
                await pipe.watch(*keys)
            yield Transaction(pipe, keys)

    # -------------------------------------------------------------------------
    # Scripts
    # -------------------------------------------------------------------------

    def register_script(self, source: str) -> AsyncScript:
        """Register a Lua script; it runs by SHA and reloads itself if flushed."""
        return self.client.register_script(source)

    async def exec_script(
        self,
        script: AsyncScript,
        keys: list[str],
        args: list[Any] | None = None,
    ) -> Any:
        """Run a registered script atomically on the server."""
        with _translate_errors(keys[0] if keys else None):
            return await script(keys=keys, args=args or [])

    # -------------------------------------------------------------------------
    # Set algebra
    # -------------------------------------------------------------------------

    async def members_of_set(self, key: str) -> set[str]:
        """All members of one set."""
        with _translate_errors(key):
            members = await cast(Awaitable[Iterable[bytes]], self.client.smembers(key))
        return {_decode(m) for m in members}

    async def union_of_sets(self, keys: list[str]) -> set[str]:
        """Members present in any of the sets."""
        with _translate_errors(keys[0] if keys else None):
            members = await cast(Awaitable[Iterable[bytes]], self.client.sunion(keys))
        return {_decode(m) for m in members}

    async def intersection_of_sets(self, keys: list[str]) -> set[str]:
        """Members present in all of the sets."""
        with _translate_errors(keys[0] if keys else None):
            members = await cast(Awaitable[Iterable[bytes]], self.client.sinter(keys))
        return {_decode(m) for m in members}

    async def ping(self) -> bool:
        """Check Redis connectivity."""
        try:
            await cast(Awaitable[bool], self.client.ping())
            return True
        except RedisError:
            return False
