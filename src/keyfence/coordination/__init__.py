"""Single-flight coordination for keyfence.

Runs an operation at most once at a time per logical key across a fleet,
optionally refusing reruns inside a frequency window:
- Lease-backed mutual exclusion keyed by operation name and arguments
- Execution trackers persisted atomically with the lease release
- A process-local tracker cache that refuses without a network round trip
- Async and blocking entry points, plus a decorator form
"""

from keyfence.coordination.coordinator import SingleFlightCoordinator
from keyfence.coordination.keys import derive_operation_key, operation_name
from keyfence.coordination.local_cache import LocalEntry, LocalTrackerCache
from keyfence.coordination.portal import EventLoopThread
from keyfence.coordination.tracker import ExecutionTracker

__all__ = [
    "EventLoopThread",
    "ExecutionTracker",
    "LocalEntry",
    "LocalTrackerCache",
    "SingleFlightCoordinator",
    "derive_operation_key",
    "operation_name",
]
