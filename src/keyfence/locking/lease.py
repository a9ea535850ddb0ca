"""Lease locks with fencing tokens.

A lease grants exclusive use of a logical key for a bounded time. The
lease record lives under a namespaced lock key and holds only the fencing
token: the lease's expiry instant in epoch milliseconds, plus one. Redis
never expires the record itself; expiry is decided by comparing the token
with the current time, which lets a new caller take over a lease that its
holder abandoned.

Acquisition (retried with randomized exponential backoff):
1. SET NX the lock key to a fresh token -> acquired
2. Otherwise read the stored token; unparsable means contention
3. A stored token still in the future means a live holder
4. An expired token is replaced with SET GET; the takeover only counts
   if the previous value is the one read in step 2

Release only deletes the lock key while it still holds this lease's token,
checked under WATCH so a newer holder's lease is never destroyed.

Example:
    async with Lease(store, "reports:daily", lease_duration=60) as lease:
        if lease.acquired:
            await build_report()
            await lease.put_and_release(b"done", ttl=3600)

Tokens derive from wall-clock time, so hosts must agree on time to well
within the lease duration (see ``settings.max_clock_skew``).
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from enum import Enum
from types import TracebackType
from typing import TYPE_CHECKING, Any, Awaitable, Callable, cast

from redis.exceptions import RedisError

from keyfence.config import settings
from keyfence.errors import (
    InvalidOperationError,
    LockCorruptedError,
    LockExpiredError,
    LockNotFoundError,
    StoreUnavailableError,
)
from keyfence.observability.metrics import (
    record_lock_acquisition,
    record_lock_fault,
    record_lock_release,
)
from keyfence.store.keys import StoreKeys

if TYPE_CHECKING:
    from keyfence.store.redis import RedisStore, Transaction

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]

# Lease durations must exceed the tolerated clock skew by this factor
SKEW_SAFETY_FACTOR = 4


def check_lease_duration(lease_duration: float, max_clock_skew: float | None = None) -> None:
    """Raise ValueError unless the duration is positive and clear of the skew bound."""
    skew = settings.max_clock_skew if max_clock_skew is None else max_clock_skew
    if lease_duration <= 0:
        raise ValueError(f"lease_duration must be positive, got {lease_duration}")
    if lease_duration <= skew * SKEW_SAFETY_FACTOR:
        raise ValueError(
            f"lease_duration {lease_duration}s is too short for a clock skew bound of {skew}s"
        )


class LeaseState(str, Enum):
    """Lifecycle state of a lease."""

    UNACQUIRED = "unacquired"
    ACQUIRED = "acquired"
    RELEASED = "released"
    INVALID = "invalid"


def compute_fencing_token(now: float, lease_duration: float) -> int:
    """Token for a lease requested at ``now`` (epoch seconds)."""
    return math.floor((now + lease_duration) * 1000) + 1


def parse_fencing_token(raw: bytes | str | None) -> int | None:
    """Parse a stored token, returning None if absent or malformed."""
    if raw is None:
        return None
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    try:
        return int(text)
    except ValueError:
        return None


def backoff_delay(attempt: int, uniform: Callable[[float, float], float] = random.uniform) -> float:
    """Sleep before retry ``attempt``: uniform in [attempt², (attempt+1)²] ms."""
    return uniform(attempt**2, (attempt + 1) ** 2) / 1000


class Lease:
    """Fencing-token lease on a logical key.

    The lease key doubles as the payload key: ``get_value``/``put_value``
    read and write the value stored under ``key`` while the lease is held.

    A lease is owned by the task that acquired it. The release family is
    serialized by an internal lock so concurrent release calls on the same
    object collapse into one store mutation.

    Args:
        store: Store adapter
        key: Logical key to lock (also the payload key)
        lease_duration: Seconds until the lease may be taken over
        acquisition_timeout: Seconds to keep retrying in ``acquire``
        clock: Wall-clock source in epoch seconds (tokens derive from it)
        sleep: Awaitable sleep used between attempts
        max_clock_skew: Tolerated host clock drift in seconds
    """

    def __init__(
        self,
        store: RedisStore,
        key: str,
        lease_duration: float | None = None,
        *,
        acquisition_timeout: float | None = None,
        clock: Clock = time.time,
        sleep: Sleep = asyncio.sleep,
        max_clock_skew: float | None = None,
    ):
        if key is None:
            raise ValueError("key is required")

        self.lease_duration = (
            settings.default_lease_duration if lease_duration is None else lease_duration
        )
        self.acquisition_timeout = (
            settings.default_acquisition_timeout
            if acquisition_timeout is None
            else acquisition_timeout
        )
        check_lease_duration(self.lease_duration, max_clock_skew)

        self.store = store
        self.key = key
        self._lock_key = StoreKeys.lock(key)
        self._clock = clock
        self._sleep = sleep

        self._token: str | None = None
        self._state = LeaseState.UNACQUIRED
        self._attempted = False
        self._release_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def lock_key(self) -> str:
        """The Redis key holding the lease record."""
        return self._lock_key

    @property
    def fencing_token(self) -> str | None:
        """Token of the acquired lease, or None if never acquired."""
        return self._token

    @property
    def state(self) -> LeaseState:
        return self._state

    @property
    def acquired(self) -> bool:
        """True if an acquisition attempt succeeded (even if since released)."""
        return self._token is not None

    @property
    def is_released(self) -> bool:
        """True once released, found superseded or failed to acquire. Never reverts."""
        return self._state in (LeaseState.RELEASED, LeaseState.INVALID)

    def __str__(self) -> str:
        return f"Lease:{self.key}:{self._token}"

    def __repr__(self) -> str:
        return f"<Lease key={self.key!r} token={self._token} state={self._state.value}>"

    # -------------------------------------------------------------------------
    # Acquisition
    # -------------------------------------------------------------------------

    async def acquire(self, acquisition_timeout: float | None = None) -> bool:
        """Try to acquire the lease until the timeout elapses.

        At least one attempt is always made, even with a zero timeout.
        Store outages during an attempt count as a failed attempt.

        Returns:
            True if acquired, False if the timeout elapsed first
        """
        if self._attempted:
            raise InvalidOperationError(
                "A lease can only be acquired once; create a new Lease", self.key
            )
        self._attempted = True

        timeout = self.acquisition_timeout if acquisition_timeout is None else acquisition_timeout
        started = time.monotonic()
        attempt = 0

        while True:
            attempt += 1
            try:
                if await self._try_acquire():
                    self._state = LeaseState.ACQUIRED
                    record_lock_acquisition("acquired", time.monotonic() - started)
                    logger.debug(f"Acquired {self} after {attempt} attempt(s)")
                    return True
            except StoreUnavailableError as e:
                logger.warning(f"Store unavailable while acquiring '{self.key}': {e}")

            if time.monotonic() - started >= timeout:
                break
            await self._sleep(backoff_delay(attempt))

        # A resolved attempt never returns to UNACQUIRED
        self._state = LeaseState.RELEASED
        record_lock_acquisition("timeout", time.monotonic() - started)
        logger.debug(f"Gave up acquiring '{self.key}' after {attempt} attempt(s)")
        return False

    async def _try_acquire(self) -> bool:
        """One pass of the SETNX / expiry-check / SET GET sequence."""
        now = self._clock()
        token = str(compute_fencing_token(now, self.lease_duration))

        if await self.store.set_if_absent(self._lock_key, token):
            self._token = token
            return True

        existing = await self.store.get(self._lock_key)
        existing_expiry = parse_fencing_token(existing)
        if existing_expiry is None:
            return False

        if existing_expiry > math.floor(now * 1000):
            return False

        # Abandoned lease: only the racer that swaps out the value it read wins
        previous = await self.store.get_and_set(self._lock_key, token)
        if previous == existing:
            self._token = token
            logger.info(f"Took over expired lease on '{self.key}'")
            return True
        return False

    # -------------------------------------------------------------------------
    # Validity
    # -------------------------------------------------------------------------

    def _assert_usable(self, operation: str) -> None:
        if self._token is None:
            raise InvalidOperationError(
                f"You cannot perform this operation ({operation}) on a lease which was "
                "not acquired.",
                self.key,
            )
        if self.is_released:
            raise InvalidOperationError(
                f"You cannot perform this operation ({operation}) once the lease has "
                "been released.",
                self.key,
            )

    def _matches(self, raw: bytes | str | None) -> bool:
        if raw is None:
            return False
        value = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        return value == self._token

    async def assert_valid(self, tx: Transaction | None = None) -> None:
        """Verify the store still holds this lease's token.

        Args:
            tx: Transaction watching the lock key. When given, the read goes
                through it and the watch stays armed if the lease is valid,
                so the caller can queue commands and commit.

        Raises:
            InvalidOperationError: The lease was never acquired or is released
            LockNotFoundError: The lock record was deleted externally
            LockCorruptedError: The record is malformed or older than our token
            LockExpiredError: A newer holder has superseded this lease
        """
        self._assert_usable("assert_valid")

        current = await (tx.get(self._lock_key) if tx else self.store.get(self._lock_key))
        if self._matches(current):
            return

        if tx is not None:
            await tx.unwatch()

        # Every outcome below is permanent
        self._state = LeaseState.INVALID

        if current is None:
            record_lock_fault("not_found")
            raise LockNotFoundError(
                "The lock seems to have been removed from the store through unsupported means.",
                self.key,
                self,
            )

        own = int(cast(str, self._token))
        stored = parse_fencing_token(current)
        if stored is None or stored < own:
            record_lock_fault("corrupted")
            raise LockCorruptedError(
                f"The lock was found but is in an inconsistent state. "
                f"Value: {current!r}, Expected: {self._token}",
                self.key,
                self,
            )

        record_lock_fault("expired")
        raise LockExpiredError(
            f"The lease expired and is held by a lease {stored - own}ms newer.",
            self.key,
            self,
        )

    # -------------------------------------------------------------------------
    # Payload access
    # -------------------------------------------------------------------------

    async def get_value(self) -> bytes | None:
        """Read the payload stored under the locked key."""
        await self.assert_valid()
        return await self.store.get(self.key)

    async def put_value(self, value: Any, ttl: float | None = None) -> bool:
        """Write the payload without releasing the lease.

        Returns:
            True if written, False if the lock record changed mid-transaction
        """
        self._assert_usable("put_value")
        async with self.store.watch(self._lock_key) as tx:
            await self.assert_valid(tx)
            tx.queue_set(self.key, value, ttl)
            return await tx.commit()

    # -------------------------------------------------------------------------
    # Release family
    # -------------------------------------------------------------------------

    async def put_and_release(self, value: Any, ttl: float | None = None) -> bool:
        """Write the payload and release the lease in one transaction.

        Returns:
            True if committed and the lease is now released. False if the
            lease turned out to be superseded or the store failed; nothing
            was written in that case.

        Raises:
            InvalidOperationError: The lease was never acquired or is released
        """
        return await self._release_with(
            "put_and_release", lambda tx: tx.queue_set(self.key, value, ttl)
        )

    async def delete_and_release(self) -> bool:
        """Delete the payload and release the lease in one transaction.

        Returns and raises as ``put_and_release``.
        """
        return await self._release_with(
            "delete_and_release", lambda tx: tx.queue_remove(self.key)
        )

    async def _release_with(self, operation: str, queue: Callable[[Transaction], None]) -> bool:
        self._assert_usable(operation)
        async with self._release_lock:
            self._assert_usable(operation)
            try:
                async with self.store.watch(self._lock_key) as tx:
                    await self.assert_valid(tx)
                    queue(tx)
                    tx.queue_remove(self._lock_key)
                    committed = await tx.commit()
            except (LockNotFoundError, LockCorruptedError, LockExpiredError) as e:
                logger.warning(f"{operation} skipped, lease no longer held: {e}")
                record_lock_release("superseded")
                return False
            except (StoreUnavailableError, RedisError) as e:
                logger.error(f"An error occurred during {operation} of {self}: {e}")
                record_lock_release("error")
                return False

            if committed:
                self._state = LeaseState.RELEASED
                record_lock_release("released")
            else:
                # Lock record changed under the watch; whether we still hold it is unknown
                logger.warning(f"{operation} of {self} aborted by a concurrent change")
                record_lock_release("superseded")
            return committed

    async def release(self) -> None:
        """Release the lease if this holder still owns it.

        Idempotent and never raises: the lease is marked released before
        touching the store, and store errors are logged and suppressed.
        """
        if self._token is None or self.is_released:
            return
        async with self._release_lock:
            if self.is_released:
                return
            self._state = LeaseState.RELEASED

            try:
                async with self.store.watch(self._lock_key) as tx:
                    current = await tx.get(self._lock_key)
                    if not self._matches(current):
                        # Superseded, and by implication already released
                        await tx.unwatch()
                        record_lock_release("superseded")
                        return
                    tx.queue_remove(self._lock_key)
                    committed = await tx.commit()
            except (StoreUnavailableError, RedisError) as e:
                logger.error(f"An error occurred while cleaning up {self}: {e}")
                record_lock_release("error")
                return

            record_lock_release("released" if committed else "superseded")
            logger.debug(f"Released {self}")

    # -------------------------------------------------------------------------
    # Context manager
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> Lease:
        """Acquire on entry unless an attempt was already made."""
        if not self._attempted:
            await self.acquire()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Release on exit, whether or not the body raised."""
        await self.release()


async def acquire_lease(
    store: RedisStore,
    key: str,
    lease_duration: float | None = None,
    acquisition_timeout: float | None = None,
    **kwargs: Any,
) -> Lease:
    """Create a lease and make one acquisition attempt.

    Check ``lease.acquired`` on the result; a timeout is not an error.
    """
    lease = Lease(
        store,
        key,
        lease_duration,
        acquisition_timeout=acquisition_timeout,
        **kwargs,
    )
    await lease.acquire()
    return lease
