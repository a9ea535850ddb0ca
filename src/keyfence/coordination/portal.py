"""Background event loop for blocking callers.

The coordinator is written against the async Redis client. Synchronous
callers reach it through an ``EventLoopThread``: a daemon thread running
its own loop, to which coroutines are submitted with
``asyncio.run_coroutine_threadsafe`` and awaited from the calling thread.

Redis connections are bound to the loop that opened them, so a store used
through a portal must not also be used from another loop.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Coroutine
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventLoopThread:
    """Runs an asyncio loop in a daemon thread and executes coroutines on it.

    Thread-safe: any number of threads may call ``call`` concurrently.
    """

    def __init__(self, name: str = "keyfence-portal"):
        self.name = name
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the loop thread if it is not running yet."""
        with self._lock:
            if self.running:
                return
            loop = asyncio.new_event_loop()
            ready = threading.Event()

            def run() -> None:
                asyncio.set_event_loop(loop)
                loop.call_soon(ready.set)
                loop.run_forever()
                loop.close()

            self._loop = loop
            self._thread = threading.Thread(target=run, name=self.name, daemon=True)
            self._thread.start()
            ready.wait()
            logger.debug(f"Started event loop thread '{self.name}'")

    def call(self, coro: Coroutine[Any, Any, T], timeout: float | None = None) -> T:
        """Run ``coro`` on the loop thread and block until it finishes.

        Raises:
            RuntimeError: Called from the loop thread itself
            TimeoutError: ``timeout`` elapsed first
        """
        self.start()
        assert self._loop is not None
        if threading.current_thread() is self._thread:
            coro.close()
            raise RuntimeError("EventLoopThread.call() cannot be used from its own loop")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result(timeout=timeout)

    def stop(self) -> None:
        """Stop the loop and join the thread."""
        with self._lock:
            if not self.running or self._loop is None:
                return
            self._loop.call_soon_threadsafe(self._loop.stop)
            assert self._thread is not None
            self._thread.join()
            self._thread = None
            self._loop = None
            logger.debug(f"Stopped event loop thread '{self.name}'")
