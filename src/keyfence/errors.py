"""Error taxonomy for keyfence.

Every error carries the key it relates to and a numeric ``error_code``
built from an error family and a per-class number. Families are rooted on
different bits so callers can test membership with a shift:

    if (exc.error_code >> 17) == 1:
        ...  # a lock-family error

A lease that cannot be acquired within its timeout is *not* an error; it is
reported through ``Lease.acquired``.
"""

from __future__ import annotations

GENERAL_FAMILY = 1 << 16
LOCK_FAMILY = 1 << 17


class KeyfenceError(Exception):
    """Base class for all keyfence errors."""

    error_family: int = GENERAL_FAMILY
    error_number: int = 1

    def __init__(self, message: str, key: str | None = None):
        super().__init__(message)
        self.message = message
        self.key = key

    @property
    def error_code(self) -> int:
        return self.error_family + self.error_number


class StoreUnavailableError(KeyfenceError):
    """The key-value store could not be reached or timed out."""

    error_number = 7


class LockError(KeyfenceError):
    """Base class for lease lifecycle faults."""

    error_family = LOCK_FAMILY
    error_number = 1

    def __init__(self, message: str, key: str | None = None, lease: object | None = None):
        if lease is not None:
            message = f"{lease} - {message}"
        super().__init__(message, key)


class LockNotFoundError(LockError):
    """The lock record vanished from the store through unsupported means."""

    error_number = 3


class LockCorruptedError(LockError):
    """The lock record is malformed or older than the token this lease holds."""

    error_number = 4


class LockExpiredError(LockError):
    """Another holder has superseded this lease with a newer token."""

    error_number = 5


class InvalidOperationError(KeyfenceError, RuntimeError):
    """An operation was attempted on a lease that was never acquired or is released."""

    error_family = LOCK_FAMILY
    error_number = 6
