"""Prometheus metrics exported by fleetguard.

All collectors are registered on the default registry so the REST layer can
expose them through ``prometheus_client.make_asgi_app``.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

reconcile_total = Counter(
    "fleetguard_reconcile_total",
    "Reconciliation passes by resource kind and result.",
    ["kind", "result"],
)

reconcile_duration_seconds = Histogram(
    "fleetguard_reconcile_duration_seconds",
    "Wall-clock duration of a single reconciliation pass.",
    ["kind"],
)

guard_marker_changes_total = Counter(
    "fleetguard_guard_marker_changes_total",
    "Guard markers added to or removed from shared credentials.",
    ["action"],  # added | removed | failed
)

tracking_resets_total = Counter(
    "fleetguard_tracking_resets_total",
    "Service tracking records reset after a credential fingerprint change.",
    ["service"],
)

job_dispatch_total = Counter(
    "fleetguard_job_dispatch_total",
    "Job runner results observed by the dispatcher.",
    ["state"],
)

store_conflicts_total = Counter(
    "fleetguard_store_conflicts_total",
    "Optimistic-concurrency conflicts retried by read-modify-write helpers.",
    ["kind"],
)
