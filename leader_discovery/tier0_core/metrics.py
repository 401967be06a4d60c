"""
leader_discovery.tier0_core.metrics
────────────────────────────────────
Counters and gauges with standard naming and labels, plus the fixed set of
metrics the finders record.

Minimal stack: prometheus-client
"""
from __future__ import annotations

import os
from typing import Callable

from prometheus_client import Counter, Gauge

# Standard labels applied to every metric
_DEFAULT_LABELS = ["service", "env"]
_SERVICE = os.getenv("APP_NAME", "leader-discovery")
_ENV = os.getenv("APP_ENV", "development")
_DEFAULT_LABEL_VALUES = [_SERVICE, _ENV]
# prometheus_client refuses label values passed both by position and keyword
_DEFAULT_LABEL_MAP = dict(zip(_DEFAULT_LABELS, _DEFAULT_LABEL_VALUES))


def counter(name: str, description: str, labels: list[str] | None = None) -> Callable:
    """
    Create a counter with standard labels.

    Usage:
        refreshes = counter("refresh_total", "Refresh cycles", ["outcome"])
        refreshes(outcome="published").inc()
    """
    all_labels = _DEFAULT_LABELS + (labels or [])
    c = Counter(name, description, all_labels)

    def _counter(**extra_labels: str) -> Counter:
        return c.labels(**_DEFAULT_LABEL_MAP, **extra_labels)

    return _counter


def gauge(name: str, description: str, labels: list[str] | None = None) -> Callable:
    """
    Create a gauge with standard labels.

    Usage:
        running = gauge("watchers_running", "Running watchers")
        running().inc()
    """
    all_labels = _DEFAULT_LABELS + (labels or [])
    g = Gauge(name, description, all_labels)

    def _gauge(**extra_labels: str) -> Gauge:
        return g.labels(**_DEFAULT_LABEL_MAP, **extra_labels)

    return _gauge


# ── Finder metrics ────────────────────────────────────────────────────────────

refresh_total = counter(
    "leader_discovery_refresh_total",
    "Watcher refresh cycles by outcome",
    ["outcome"],
)
leader_changes_total = counter(
    "leader_discovery_leader_changes_total",
    "Times the published leader address changed",
)
session_events_total = counter(
    "leader_discovery_session_events_total",
    "Coordination session state transitions",
    ["state"],
)
probe_total = counter(
    "leader_discovery_probe_total",
    "HTTP leader probes by outcome",
    ["outcome"],
)
watchers_running = gauge(
    "leader_discovery_watchers_running",
    "Coordination watchers with a live refresh thread",
)


__all__ = [
    "counter",
    "gauge",
    "refresh_total",
    "leader_changes_total",
    "session_events_total",
    "probe_total",
    "watchers_running",
]
