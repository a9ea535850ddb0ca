"""Lease locks for keyfence.

Provides fencing-token leases on logical keys:
- Acquisition with randomized exponential backoff and takeover of
  abandoned leases
- Validity checks that classify how a lease was lost
- Watch-guarded release that never deletes a newer holder's lease

Example:
    from keyfence.locking import Lease

    async with Lease(store, "invoices:2026-10", lease_duration=120) as lease:
        if lease.acquired:
            ...
"""

from keyfence.locking.lease import (
    Lease,
    LeaseState,
    acquire_lease,
    check_lease_duration,
    compute_fencing_token,
    parse_fencing_token,
)

__all__ = [
    "Lease",
    "LeaseState",
    "acquire_lease",
    "check_lease_duration",
    "compute_fencing_token",
    "parse_fencing_token",
]
