"""Maps record store changes to reconcile requests."""

from __future__ import annotations

import threading
from typing import Protocol

import structlog

from fleetguard.models.fleet import NodeGroup, Secret, SharedCredential, TrackingRecord
from fleetguard.models.resources import Resource
from fleetguard.models.rollout import RolloutRequest
from fleetguard.store.base import RecordStore, WatchEvent

_log = structlog.get_logger(component="watch")

_NAMESPACE_WIDE = (Secret.kind, SharedCredential.kind, TrackingRecord.kind)


class Enqueuer(Protocol):
    def enqueue(self, kind: str, namespace: str, name: str, delay: float = 0.0) -> None: ...


class StoreWatcher:
    """Store subscriber that enqueues the objects affected by a change.

    Status-only writes to a rollout request or node group do not re-enqueue
    the object itself, only the objects that depend on it.
    """

    def __init__(self, store: RecordStore, queue: Enqueuer) -> None:
        self._store = store
        self._queue = queue
        self._generations: dict[tuple[str, str, str], int] = {}
        self._lock = threading.Lock()

    def attach(self) -> None:
        self._store.subscribe(self)

    def prime(self) -> None:
        """Enqueue every existing node group and rollout request."""
        for group in self._store.list(NodeGroup):
            self._remember(group)
            self._queue.enqueue(NodeGroup.kind, group.namespace, group.name)
        for request in self._store.list(RolloutRequest):
            self._remember(request)
            self._queue.enqueue(RolloutRequest.kind, request.namespace, request.name)

    def __call__(self, event: WatchEvent, obj: Resource) -> None:
        if obj.kind == RolloutRequest.kind:
            self._on_request(event, obj)  # type: ignore[arg-type]
        elif obj.kind == NodeGroup.kind:
            self._on_node_group(event, obj)  # type: ignore[arg-type]
        elif obj.kind in _NAMESPACE_WIDE:
            for group in self._store.list(NodeGroup, obj.namespace):
                self._queue.enqueue(NodeGroup.kind, group.namespace, group.name)

    def _on_request(self, event: WatchEvent, request: RolloutRequest) -> None:
        if self._spec_changed(event, request):
            self._queue.enqueue(RolloutRequest.kind, request.namespace, request.name)
        for group in request.node_groups:
            self._queue.enqueue(NodeGroup.kind, request.namespace, group)

    def _on_node_group(self, event: WatchEvent, group: NodeGroup) -> None:
        if self._spec_changed(event, group) or group.is_deleting:
            self._queue.enqueue(NodeGroup.kind, group.namespace, group.name)
        if event == WatchEvent.DELETED:
            return
        for request in self._store.list(RolloutRequest, group.namespace):
            if request.targets(group.name) and not request.status.deployed and not request.status.terminal_failure:
                self._queue.enqueue(RolloutRequest.kind, request.namespace, request.name)

    def _remember(self, obj: Resource) -> None:
        with self._lock:
            self._generations[obj.key] = obj.generation

    def _spec_changed(self, event: WatchEvent, obj: Resource) -> bool:
        with self._lock:
            if event == WatchEvent.DELETED:
                self._generations.pop(obj.key, None)
                return False
            previous = self._generations.get(obj.key)
            self._generations[obj.key] = obj.generation
        changed = event == WatchEvent.ADDED or previous != obj.generation
        if changed:
            _log.debug("spec_change_observed", kind=obj.kind, namespace=obj.namespace, name=obj.name)
        return changed
