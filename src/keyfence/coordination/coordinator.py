"""Rate-gated single-flight execution across a fleet.

The coordinator runs a guarded operation for a logical key at most once at
a time across every process sharing the Redis instance, and (with a
frequency window) refuses reruns that come too soon after the last one.

Per invocation:
1. A live local cache entry for the key refuses the call without any
   network round trip.
2. Otherwise a lease on the key is acquired; failing that, refuse.
3. Without a frequency window every lease holder runs the operation.
   With one, the stored execution tracker is read through the lease and
   the operation runs only if there is no tracker or the previous run's
   lease window has fully elapsed.
4. A fresh tracker is written back with the lease released in the same
   transaction, and cached locally until the frequency window closes.

The outcome is a plain bool: True when the operation ran and reported
success. Every refusal, lease fault, store outage and operation error is
logged and comes back as False; nothing propagates to the caller.

Caller obligation: the lease duration must exceed the operation's
worst-case runtime. A run that outlives its lease can overlap with the
next holder's run.

Example:
    coordinator = SingleFlightCoordinator(store, LocalTrackerCache())

    @coordinator.guard(lease_duration=10, frequency_window=60)
    async def rebuild_index(tenant: str) -> bool:
        ...

    ran = await rebuild_index("acme")  # False if refused
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import threading
import time
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar

from keyfence.config import settings
from keyfence.coordination.keys import derive_operation_key, operation_name
from keyfence.coordination.local_cache import LocalEntry, LocalTrackerCache
from keyfence.coordination.portal import EventLoopThread
from keyfence.coordination.tracker import ExecutionTracker
from keyfence.locking.lease import Lease, check_lease_duration
from keyfence.observability.logging import LogContext
from keyfence.observability.metrics import record_guarded_run
from keyfence.observability.tracing import get_tracer

if TYPE_CHECKING:
    from keyfence.store.redis import RedisStore

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")

GuardedCall = Callable[[], Any]


class SingleFlightCoordinator:
    """Lease-backed single-flight runner with frequency gating.

    Args:
        store: Store adapter shared with other processes
        cache: Process-wide local tracker cache
        key_prefix: Prefix for derived keys (default ``"Mutex-"``)
        acquisition_timeout: Seconds to wait for the lease before refusing
        clock: Wall-clock source in epoch seconds
        max_clock_skew: Passed through to each ``Lease``
        portal: Loop thread used by blocking entry points (created lazily)
    """

    def __init__(
        self,
        store: RedisStore,
        cache: LocalTrackerCache,
        *,
        key_prefix: str | None = None,
        acquisition_timeout: float | None = None,
        clock: Callable[[], float] = time.time,
        max_clock_skew: float | None = None,
        portal: EventLoopThread | None = None,
    ):
        self.store = store
        self.cache = cache
        self.key_prefix = settings.coordinator_key_prefix if key_prefix is None else key_prefix
        self.acquisition_timeout = (
            settings.coordinator_acquisition_timeout
            if acquisition_timeout is None
            else acquisition_timeout
        )
        self._clock = clock
        self._max_clock_skew = max_clock_skew
        self._portal = portal
        self._portal_lock = threading.Lock()
        self._tracer = get_tracer(__name__)

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def run(
        self,
        name: str,
        args: Sequence[Any],
        operation: Callable[..., Any],
        *,
        lease_duration: float,
        frequency_window: float = 0.0,
    ) -> bool:
        """Run ``operation(*args)`` under the single-flight rules.

        Args:
            name: Stable operation name; with ``args`` it forms the key
            args: Positional arguments, also rendered into the key
            operation: Sync or async callable returning a success flag
            lease_duration: Seconds the lease is held at most
            frequency_window: Minimum seconds between runs; 0 disables gating

        Returns:
            True if the operation ran and returned a truthy result
        """
        key = derive_operation_key(name, args, self.key_prefix)
        return await self._guarded(
            key,
            functools.partial(operation, *args),
            lease_duration=lease_duration,
            frequency_window=frequency_window,
        )

    def run_blocking(
        self,
        name: str,
        args: Sequence[Any],
        operation: Callable[..., Any],
        *,
        lease_duration: float,
        frequency_window: float = 0.0,
    ) -> bool:
        """Synchronous ``run``: blocks the calling thread until done.

        Drives the same algorithm on the coordinator's loop thread.
        """
        coro = self.run(
            name,
            args,
            operation,
            lease_duration=lease_duration,
            frequency_window=frequency_window,
        )
        return self._get_portal().call(coro)

    def guard(
        self,
        lease_duration: float,
        frequency_window: float = 0.0,
        name: str | None = None,
    ) -> Callable[[Callable[P, R]], Callable[P, Any]]:
        """Decorator form.

        An ``async def`` target gets an async wrapper (a refusal awaits to
        False); a plain function gets a blocking wrapper returning a bool.
        Keyword arguments are rendered into the key as ``name=value`` after
        the positional ones, sorted by name.

        Example:
            @coordinator.guard(lease_duration=30)
            def send_digest(user_id: int) -> bool:
                ...
        """

        def decorator(func: Callable[P, R]) -> Callable[P, Any]:
            op_name = name or operation_name(func)

            def key_for(args: tuple[Any, ...], kwargs: dict[str, Any]) -> str:
                key_args = [*args, *(f"{k}={v}" for k, v in sorted(kwargs.items()))]
                return derive_operation_key(op_name, key_args, self.key_prefix)

            if inspect.iscoroutinefunction(func):

                @functools.wraps(func)
                async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> bool:
                    return await self._guarded(
                        key_for(args, kwargs),
                        functools.partial(func, *args, **kwargs),
                        lease_duration=lease_duration,
                        frequency_window=frequency_window,
                    )

                return async_wrapper

            @functools.wraps(func)
            def wrapper(*args: P.args, **kwargs: P.kwargs) -> bool:
                coro = self._guarded(
                    key_for(args, kwargs),
                    functools.partial(func, *args, **kwargs),
                    lease_duration=lease_duration,
                    frequency_window=frequency_window,
                )
                return self._get_portal().call(coro)

            return wrapper

        return decorator

    def close(self) -> None:
        """Stop the loop thread used by blocking entry points, if any."""
        if self._portal is not None:
            self._portal.stop()

    # -------------------------------------------------------------------------
    # Algorithm
    # -------------------------------------------------------------------------

    async def _guarded(
        self,
        key: str,
        call: GuardedCall,
        *,
        lease_duration: float,
        frequency_window: float,
    ) -> bool:
        check_lease_duration(lease_duration, self._max_clock_skew)
        if frequency_window < 0:
            raise ValueError(f"frequency_window must not be negative, got {frequency_window}")

        with LogContext(operation_key=key), self._tracer.start_as_current_span(
            "keyfence.single_flight"
        ) as span:
            span.set_attribute("keyfence.key", key)
            span.set_attribute("keyfence.lease_duration", lease_duration)
            span.set_attribute("keyfence.frequency_window", frequency_window)
            try:
                outcome, result = await self._decide_and_run(
                    key, call, lease_duration, frequency_window
                )
            except Exception as e:
                logger.error(f"Single-flight run for '{key}' failed: {e}", exc_info=True)
                span.record_exception(e)
                outcome, result = "error", False

            span.set_attribute("keyfence.outcome", outcome)
            record_guarded_run(outcome)
            return result

    async def _decide_and_run(
        self,
        key: str,
        call: GuardedCall,
        lease_duration: float,
        frequency_window: float,
    ) -> tuple[str, bool]:
        entry = self.cache.get(key)
        if entry is not None and self._locally_blocked(entry, frequency_window):
            logger.debug(f"Refusing '{key}': recently run or running in this process")
            return "refused_local", False

        lease = Lease(
            self.store,
            key,
            lease_duration,
            acquisition_timeout=self.acquisition_timeout,
            clock=self._clock,
            max_clock_skew=self._max_clock_skew,
        )
        async with lease:
            if not lease.acquired:
                logger.debug(f"Refusing '{key}': lease held elsewhere")
                return "refused_lock", False

            if frequency_window == 0:
                return await self._run_exclusive(key, call, lease_duration)
            return await self._run_gated(key, lease, call, lease_duration, frequency_window)

    def _locally_blocked(self, entry: LocalEntry, frequency_window: float) -> bool:
        if entry.tracker is None:
            return True
        return entry.tracker.timestamp + frequency_window > self._clock()

    async def _run_exclusive(
        self, key: str, call: GuardedCall, lease_duration: float
    ) -> tuple[str, bool]:
        """Mutual exclusion only: every lease holder runs."""
        self.cache.mark_in_flight(key, lease_duration)
        try:
            ok = await self._invoke(call)
        finally:
            self.cache.remove(key)
        return ("ran" if ok else "failed"), ok

    async def _run_gated(
        self,
        key: str,
        lease: Lease,
        call: GuardedCall,
        lease_duration: float,
        frequency_window: float,
    ) -> tuple[str, bool]:
        """Frequency-gated run; the tracker is always rewritten."""
        tracker = ExecutionTracker.from_bytes(await lease.get_value())
        now = self._clock()

        if tracker is None or tracker.timestamp + lease_duration <= now:
            ok = await self._invoke(call)
            outcome = "ran" if ok else "failed"
        else:
            logger.debug(f"Refusing '{key}': previous run's lease window still open")
            ok, outcome = False, "refused_recent"

        fresh = ExecutionTracker.at(self._clock())
        if not await lease.put_and_release(fresh.to_bytes(), ttl=frequency_window):
            logger.warning(f"Execution tracker for '{key}' was not recorded")
        self.cache.set_tracker(key, fresh, frequency_window)
        return outcome, ok

    async def _invoke(self, call: GuardedCall) -> bool:
        """Run the operation; failures count as an unsuccessful run."""
        try:
            if inspect.iscoroutinefunction(call):
                result = await call()
            else:
                result = await asyncio.to_thread(call)
                if inspect.isawaitable(result):
                    result = await result
        except Exception as e:
            logger.error(f"Guarded operation raised: {e}", exc_info=True)
            return False
        return bool(result)

    def _get_portal(self) -> EventLoopThread:
        if self._portal is None:
            with self._portal_lock:
                if self._portal is None:
                    self._portal = EventLoopThread()
        return self._portal

