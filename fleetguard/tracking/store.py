"""Service tracking store.

One TrackingRecord per node group, named ``<nodegroup>-service-tracking`` and
owned by the node group, holds two string fields per service::

    <service>.credentialFingerprint   last observed credential fingerprint
    <service>.updatedNodes            JSON array of nodes that adopted it

Every mutation is a read-modify-write retried on version conflicts, so
concurrent writers for different services of the same node group never
lose each other's updates.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

import structlog

from fleetguard.models.fleet import NodeGroup, TrackingRecord
from fleetguard.observability.metrics import tracking_resets_total
from fleetguard.store.base import RecordStore, get_or_none, retry_on_conflict

_log = structlog.get_logger(component="tracking")

TRACKING_SUFFIX = "-service-tracking"


class TrackingDataError(ValueError):
    """Raised when a stored ``updatedNodes`` field is not a JSON string array."""


def tracking_record_name(node_group: str) -> str:
    return node_group + TRACKING_SUFFIX


def _fingerprint_key(service: str) -> str:
    return f"{service}.credentialFingerprint"


def _nodes_key(service: str) -> str:
    return f"{service}.updatedNodes"


@dataclass
class ServiceTrackingRecord:
    credential_fingerprint: str = ""
    updated_nodes: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.credential_fingerprint and not self.updated_nodes


def _decode(record: TrackingRecord | None, service: str) -> ServiceTrackingRecord:
    if record is None:
        return ServiceTrackingRecord()
    tracking = ServiceTrackingRecord(credential_fingerprint=record.data.get(_fingerprint_key(service), ""))
    raw = record.data.get(_nodes_key(service), "")
    if raw:
        try:
            nodes = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise TrackingDataError(f"{record.name}: {_nodes_key(service)} is not valid JSON: {exc}") from exc
        if not isinstance(nodes, list) or not all(isinstance(n, str) for n in nodes):
            raise TrackingDataError(f"{record.name}: {_nodes_key(service)} must be a JSON array of strings")
        tracking.updated_nodes = nodes
    return tracking


def _encode(record: TrackingRecord, service: str, tracking: ServiceTrackingRecord) -> None:
    record.data[_fingerprint_key(service)] = tracking.credential_fingerprint
    record.data[_nodes_key(service)] = json.dumps(tracking.updated_nodes)


class ServiceTrackingStore:
    """Reads and mutates service tracking records in a RecordStore."""

    def __init__(self, store: RecordStore, conflict_retries: int = 5) -> None:
        self._store = store
        self._retries = conflict_retries

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, node_group: NodeGroup, service: str) -> ServiceTrackingRecord:
        """Return the tracking state, or an empty record when none exists."""
        record = get_or_none(
            self._store, TrackingRecord, node_group.namespace, tracking_record_name(node_group.name)
        )
        return _decode(record, service)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def reset(self, node_group: NodeGroup, service: str, fingerprint: str) -> None:
        """Replace the record with ``{fingerprint, []}``."""

        def mutate(current: ServiceTrackingRecord) -> ServiceTrackingRecord | None:
            return ServiceTrackingRecord(credential_fingerprint=fingerprint)

        self._modify(node_group, service, mutate)
        tracking_resets_total.labels(service=service).inc()
        _log.info(
            "tracking_reset",
            namespace=node_group.namespace,
            node_group=node_group.name,
            service=service,
            fingerprint=fingerprint[:12],
        )

    def observe(self, node_group: NodeGroup, service: str, fingerprint: str) -> bool:
        """Reset the record only if *fingerprint* differs from the stored one.

        Returns True when a reset happened.
        """
        if self.get(node_group, service).credential_fingerprint == fingerprint:
            return False
        reset = False

        def mutate(current: ServiceTrackingRecord) -> ServiceTrackingRecord | None:
            nonlocal reset
            if current.credential_fingerprint == fingerprint:
                reset = False
                return None
            reset = True
            return ServiceTrackingRecord(credential_fingerprint=fingerprint)

        self._modify(node_group, service, mutate)
        if reset:
            tracking_resets_total.labels(service=service).inc()
            _log.info(
                "tracking_reset",
                namespace=node_group.namespace,
                node_group=node_group.name,
                service=service,
                fingerprint=fingerprint[:12],
            )
        return reset

    def mark_node_updated(self, node_group: NodeGroup, service: str, node: str) -> None:
        self.mark_nodes_updated(node_group, service, [node])

    def mark_nodes_updated(self, node_group: NodeGroup, service: str, nodes: Iterable[str]) -> None:
        """Add *nodes* to ``updatedNodes``; nodes already present are ignored."""
        nodes = list(nodes)

        def mutate(current: ServiceTrackingRecord) -> ServiceTrackingRecord | None:
            seen = set(current.updated_nodes)
            added = False
            for node in nodes:
                if node not in seen:
                    current.updated_nodes.append(node)
                    seen.add(node)
                    added = True
            return current if added else None

        if self._modify(node_group, service, mutate):
            _log.debug(
                "tracking_nodes_marked",
                namespace=node_group.namespace,
                node_group=node_group.name,
                service=service,
                nodes=nodes,
            )

    def retain_nodes(self, node_group: NodeGroup, service: str, nodes: Iterable[str]) -> None:
        """Drop updated nodes that are no longer members of the node group."""
        keep = set(nodes)

        def mutate(current: ServiceTrackingRecord) -> ServiceTrackingRecord | None:
            kept = [n for n in current.updated_nodes if n in keep]
            if len(kept) == len(current.updated_nodes):
                return None
            current.updated_nodes = kept
            return current

        if self._modify(node_group, service, mutate, create=False):
            _log.info(
                "tracking_nodes_pruned",
                namespace=node_group.namespace,
                node_group=node_group.name,
                service=service,
            )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _modify(
        self,
        node_group: NodeGroup,
        service: str,
        mutate: Callable[[ServiceTrackingRecord], ServiceTrackingRecord | None],
        create: bool = True,
    ) -> bool:
        """Apply *mutate* to the decoded record and write it back.

        *mutate* returns None to signal that nothing changed.  Returns True
        when a write happened.
        """
        name = tracking_record_name(node_group.name)

        def attempt() -> bool:
            record = get_or_none(self._store, TrackingRecord, node_group.namespace, name)
            updated = mutate(_decode(record, service))
            if updated is None:
                return False
            if record is None:
                if not create:
                    return False
                record = TrackingRecord(
                    name=name,
                    namespace=node_group.namespace,
                    owner=(NodeGroup.kind, node_group.name),
                )
                _encode(record, service, updated)
                self._store.create(record)
                return True
            _encode(record, service, updated)
            self._store.update(record)
            return True

        return retry_on_conflict(attempt, self._retries, kind=TrackingRecord.kind)
