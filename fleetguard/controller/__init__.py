"""Scheduling: the reconcile loop and the store watches that feed it."""

from fleetguard.controller.loop import ReconcileLoop, backoff_delay
from fleetguard.controller.outcome import ReconcileOutcome
from fleetguard.controller.watch import StoreWatcher

__all__ = ["ReconcileLoop", "ReconcileOutcome", "StoreWatcher", "backoff_delay"]
