"""Versioned record store.

Submodules:
    base   -- RecordStore protocol, store errors, retry_on_conflict helper.
    memory -- In-process store with optimistic concurrency, finalizers and
              owner cascade.
    manifests -- YAML manifest loading used to seed a store.
"""

from fleetguard.store.base import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    RecordStore,
    StoreError,
    WatchEvent,
    get_or_none,
    retry_on_conflict,
)
from fleetguard.store.manifests import ManifestError, load_manifests, parse_document
from fleetguard.store.memory import InMemoryRecordStore

__all__ = [
    "AlreadyExistsError",
    "ConflictError",
    "InMemoryRecordStore",
    "ManifestError",
    "NotFoundError",
    "RecordStore",
    "StoreError",
    "WatchEvent",
    "get_or_none",
    "load_manifests",
    "parse_document",
    "retry_on_conflict",
]
