"""In-process record store.

Holds deep copies of every record keyed by (kind, namespace, name) and
applies the same write rules a remote versioned store would: stale
``resource_version`` rejection, generation bumps on spec changes, deletion
blocked by finalizers, and owner cascade on purge.
"""

from __future__ import annotations

import copy
import threading
from collections.abc import Callable
from typing import TypeVar

import structlog

from fleetguard.models.resources import Resource, utcnow
from fleetguard.store.base import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    Subscriber,
    WatchEvent,
)

_log = structlog.get_logger(component="store")

R = TypeVar("R", bound=Resource)

_Key = tuple[str, str, str]
Admission = Callable[[Resource | None, Resource], None]


class InMemoryRecordStore:
    """Thread-safe versioned record store.

    Subscribers are called after the write has been applied and outside the
    store lock, so a subscriber may itself read from or write to the store.
    *admission* is called with the stored and the incoming record before a
    create or update is applied and rejects the write by raising.
    """

    def __init__(self, admission: Admission | None = None) -> None:
        self._admission = admission
        self._objects: dict[_Key, Resource] = {}
        self._subscribers: list[Subscriber] = []
        self._lock = threading.RLock()
        self._revision = 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, kind: type[R], namespace: str, name: str) -> R:
        with self._lock:
            obj = self._objects.get((kind.kind, namespace, name))
            if obj is None:
                raise NotFoundError(kind.kind, namespace, name)
            return copy.deepcopy(obj)  # type: ignore[return-value]

    def list(self, kind: type[R], namespace: str | None = None) -> list[R]:
        """Return every record of *kind*, in creation order."""
        with self._lock:
            return [
                copy.deepcopy(obj)  # type: ignore[misc]
                for (k, ns, _), obj in self._objects.items()
                if k == kind.kind and (namespace is None or ns == namespace)
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, obj: R) -> R:
        events: list[tuple[WatchEvent, Resource]] = []
        with self._lock:
            key = obj.key
            if key in self._objects:
                raise AlreadyExistsError(*key)
            if self._admission is not None:
                self._admission(None, obj)
            stored = copy.deepcopy(obj)
            stored.resource_version = self._next_revision()
            stored.generation = 1
            self._objects[key] = stored
            events.append((WatchEvent.ADDED, copy.deepcopy(stored)))
            result = copy.deepcopy(stored)
        self._notify(events)
        return result

    def update(self, obj: R) -> R:
        """Write *obj* back if its ``resource_version`` is still current.

        ``created_at`` and ``deleted_at`` are owned by the store and cannot
        be changed through an update.
        """
        events: list[tuple[WatchEvent, Resource]] = []
        with self._lock:
            key = obj.key
            current = self._objects.get(key)
            if current is None:
                raise NotFoundError(*key)
            if obj.resource_version != current.resource_version:
                raise ConflictError(*key, obj.resource_version, current.resource_version)
            if self._admission is not None:
                self._admission(current, obj)
            stored = copy.deepcopy(obj)
            stored.created_at = current.created_at
            stored.deleted_at = current.deleted_at
            stored.generation = current.generation
            if stored.spec_snapshot() != current.spec_snapshot():
                stored.generation += 1
            stored.resource_version = self._next_revision()
            if stored.is_deleting and not stored.finalizers:
                self._objects[key] = stored
                self._purge(key, events)
            else:
                self._objects[key] = stored
                events.append((WatchEvent.MODIFIED, copy.deepcopy(stored)))
            result = copy.deepcopy(stored)
        self._notify(events)
        return result

    def delete(self, kind: type[Resource], namespace: str, name: str) -> None:
        """Delete a record.

        A record carrying finalizers is only stamped with ``deleted_at``;
        it disappears once an update removes the last finalizer.
        """
        events: list[tuple[WatchEvent, Resource]] = []
        with self._lock:
            self._delete_locked((kind.kind, namespace, name), events)
        self._notify(events)

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _next_revision(self) -> int:
        self._revision += 1
        return self._revision

    def _delete_locked(self, key: _Key, events: list[tuple[WatchEvent, Resource]]) -> None:
        current = self._objects.get(key)
        if current is None:
            raise NotFoundError(*key)
        if current.finalizers:
            if not current.is_deleting:
                current.deleted_at = utcnow()
                current.resource_version = self._next_revision()
                events.append((WatchEvent.MODIFIED, copy.deepcopy(current)))
                _log.info(
                    "deletion_blocked_by_finalizers",
                    kind=key[0],
                    namespace=key[1],
                    name=key[2],
                    finalizers=list(current.finalizers),
                )
            return
        self._purge(key, events)

    def _purge(self, key: _Key, events: list[tuple[WatchEvent, Resource]]) -> None:
        obj = self._objects.pop(key)
        events.append((WatchEvent.DELETED, copy.deepcopy(obj)))
        kind, namespace, name = key
        owned = [
            k
            for k, child in self._objects.items()
            if k[1] == namespace and child.owner == (kind, name)
        ]
        for child_key in owned:
            if child_key in self._objects:
                self._delete_locked(child_key, events)

    def _notify(self, events: list[tuple[WatchEvent, Resource]]) -> None:
        for event, obj in events:
            for callback in list(self._subscribers):
                try:
                    callback(event, obj)
                except Exception as exc:
                    _log.error(
                        "store_subscriber_failed",
                        event=str(event),
                        kind=obj.kind,
                        namespace=obj.namespace,
                        name=obj.name,
                        error=str(exc),
                    )
