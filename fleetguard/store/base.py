"""Record store contract and optimistic-concurrency helpers."""

from __future__ import annotations

from collections.abc import Callable
from enum import StrEnum
from typing import Protocol, TypeVar

import structlog

from fleetguard.models.resources import Resource
from fleetguard.observability.metrics import store_conflicts_total

_log = structlog.get_logger(component="store")

R = TypeVar("R", bound=Resource)
T = TypeVar("T")


class StoreError(Exception):
    """Base class for record store failures."""


class NotFoundError(StoreError):
    def __init__(self, kind: str, namespace: str, name: str) -> None:
        super().__init__(f"{kind} {namespace}/{name} not found")
        self.kind = kind
        self.namespace = namespace
        self.name = name


class AlreadyExistsError(StoreError):
    def __init__(self, kind: str, namespace: str, name: str) -> None:
        super().__init__(f"{kind} {namespace}/{name} already exists")
        self.kind = kind
        self.namespace = namespace
        self.name = name


class ConflictError(StoreError):
    """Raised when an update carries a stale ``resource_version``."""

    def __init__(self, kind: str, namespace: str, name: str, expected: int, actual: int) -> None:
        super().__init__(
            f"{kind} {namespace}/{name} was modified (have version {expected}, stored version {actual})"
        )
        self.kind = kind
        self.namespace = namespace
        self.name = name


class WatchEvent(StrEnum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


Subscriber = Callable[[WatchEvent, Resource], None]


class RecordStore(Protocol):
    """Generic versioned key-value store keyed by (kind, namespace, name).

    Objects returned by the store are copies: mutating them has no effect
    until they are written back with ``update``.
    """

    def get(self, kind: type[R], namespace: str, name: str) -> R: ...

    def list(self, kind: type[R], namespace: str | None = None) -> list[R]: ...

    def create(self, obj: R) -> R: ...

    def update(self, obj: R) -> R: ...

    def delete(self, kind: type[Resource], namespace: str, name: str) -> None: ...

    def subscribe(self, callback: Subscriber) -> None: ...


def get_or_none(store: RecordStore, kind: type[R], namespace: str, name: str) -> R | None:
    """Return the record or None when it does not exist."""
    try:
        return store.get(kind, namespace, name)
    except NotFoundError:
        return None


def retry_on_conflict(fn: Callable[[], T], attempts: int = 5, kind: str = "") -> T:
    """Run a read-modify-write closure, re-running it on write races.

    A stale update (ConflictError) and a lost creation race
    (AlreadyExistsError) both re-run *fn*, which must re-read the record it
    modifies on every call.  The last error is re-raised once *attempts*
    runs have failed, so a concurrent update is never silently lost.
    """
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except (ConflictError, AlreadyExistsError) as exc:
            store_conflicts_total.labels(kind=kind or exc.kind).inc()
            if attempt >= attempts:
                raise
            _log.debug(
                "store_conflict_retry",
                kind=exc.kind,
                namespace=exc.namespace,
                name=exc.name,
                attempt=attempt,
            )
    raise ValueError("attempts must be at least 1")
