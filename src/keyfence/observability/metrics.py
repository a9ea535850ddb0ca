"""Prometheus metrics for keyfence.

Provides metrics collection and exposure:
- Lease metrics (acquisitions, acquisition latency, releases, faults)
- Single-flight metrics (guarded runs by outcome)
- Tag index metrics (cleanup passes and pruned members)

Usage:
    from keyfence.observability.metrics import get_metrics

    metrics = get_metrics()
    metrics.lock_acquisitions_total.labels(outcome="acquired").inc()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from prometheus_client import REGISTRY, Counter, Histogram
from prometheus_client import generate_latest as prometheus_generate_latest

from keyfence.config import settings

logger = logging.getLogger(__name__)


@dataclass
class MetricsRegistry:
    """Registry for Prometheus metrics."""

    # Lease metrics
    lock_acquisitions_total: Any = None
    lock_acquisition_duration_seconds: Any = None
    lock_releases_total: Any = None
    lock_faults_total: Any = None

    # Coordinator metrics
    guarded_runs_total: Any = None

    # Tag metrics
    tag_cleanups_total: Any = None
    tag_members_pruned_total: Any = None

    # Internal state
    _initialized: bool = field(default=False, repr=False)
    _registry: Any = field(default=None, repr=False)

    def initialize(self) -> None:
        """Initialize Prometheus metrics."""
        if self._initialized:
            return

        if not settings.enable_metrics:
            logger.info("Metrics are disabled")
            self._initialized = True
            return

        self._registry = REGISTRY

        self.lock_acquisitions_total = Counter(
            "keyfence_lock_acquisitions_total",
            "Lease acquisition attempts by outcome",
            ["outcome"],
        )

        self.lock_acquisition_duration_seconds = Histogram(
            "keyfence_lock_acquisition_duration_seconds",
            "Time spent acquiring a lease, including backoff",
            ["outcome"],
            buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 30.0),
        )

        self.lock_releases_total = Counter(
            "keyfence_lock_releases_total",
            "Lease releases by outcome",
            ["outcome"],
        )

        self.lock_faults_total = Counter(
            "keyfence_lock_faults_total",
            "Lease validity faults by kind",
            ["kind"],
        )

        self.guarded_runs_total = Counter(
            "keyfence_guarded_runs_total",
            "Single-flight invocations by outcome",
            ["outcome"],
        )

        self.tag_cleanups_total = Counter(
            "keyfence_tag_cleanups_total",
            "Tag cleanup passes",
        )

        self.tag_members_pruned_total = Counter(
            "keyfence_tag_members_pruned_total",
            "Stale tag members removed by cleanup",
        )

        self._initialized = True
        logger.info("Prometheus metrics initialized")

    def generate_latest(self) -> bytes:
        """Generate Prometheus metrics in exposition format."""
        if not settings.enable_metrics or self._registry is None:
            return b"# Metrics disabled\n"
        return prometheus_generate_latest(self._registry)


# Global metrics registry
metrics_registry = MetricsRegistry()


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry.

    Initializes metrics on first access.
    """
    if not metrics_registry._initialized:
        metrics_registry.initialize()
    return metrics_registry


def record_lock_acquisition(outcome: str, duration: float) -> None:
    """Record a finished acquisition attempt.

    Args:
        outcome: "acquired" or "timeout"
        duration: Wall time spent in seconds
    """
    metrics = get_metrics()
    if metrics.lock_acquisitions_total:
        metrics.lock_acquisitions_total.labels(outcome=outcome).inc()
    if metrics.lock_acquisition_duration_seconds:
        metrics.lock_acquisition_duration_seconds.labels(outcome=outcome).observe(duration)


def record_lock_release(outcome: str) -> None:
    """Record a release ("released", "superseded", "error")."""
    metrics = get_metrics()
    if metrics.lock_releases_total:
        metrics.lock_releases_total.labels(outcome=outcome).inc()


def record_lock_fault(kind: str) -> None:
    """Record a validity fault ("not_found", "corrupted", "expired")."""
    metrics = get_metrics()
    if metrics.lock_faults_total:
        metrics.lock_faults_total.labels(kind=kind).inc()


def record_guarded_run(outcome: str) -> None:
    """Record a coordinator decision.

    Args:
        outcome: "ran", "failed", "refused_local", "refused_lock",
            "refused_recent" or "error"
    """
    metrics = get_metrics()
    if metrics.guarded_runs_total:
        metrics.guarded_runs_total.labels(outcome=outcome).inc()


def record_tag_cleanup(pruned: int) -> None:
    """Record a cleanup pass and how many members it removed."""
    metrics = get_metrics()
    if metrics.tag_cleanups_total:
        metrics.tag_cleanups_total.inc()
    if metrics.tag_members_pruned_total and pruned:
        metrics.tag_members_pruned_total.inc(pruned)
