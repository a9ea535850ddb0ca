"""Logical keys for guarded operations."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any


def derive_operation_key(name: str, args: Iterable[Any] = (), prefix: str = "") -> str:
    """Build the key identifying one operation invocation.

    Format: ``{prefix}{name}({arg1},{arg2},...)`` with ``null`` for None.

    >>> derive_operation_key("jobs.rebuild", [7, None], prefix="Mutex-")
    'Mutex-jobs.rebuild(7,null)'
    """
    rendered = ",".join("null" if arg is None else str(arg) for arg in args)
    return f"{prefix}{name}({rendered})"


def operation_name(func: Callable[..., Any]) -> str:
    """Stable name for a function: its module plus qualified name."""
    return f"{func.__module__}.{func.__qualname__}"
