"""YAML manifest loading.

A manifest document has the shape::

    kind: NodeGroup
    metadata:
      name: edpm-compute
      namespace: openstack
      labels: {}
    spec:
      services: [nova]
      nodes:
        compute-0: {hostname: compute-0.ctlplane}

``spec`` keys are the record's field names.  Nested nodes and mounts are
converted to their dataclasses.
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import structlog
import yaml

from fleetguard.models.fleet import Mount, Node, NodeGroup, Secret, Service, SharedCredential
from fleetguard.models.resources import Resource
from fleetguard.models.rollout import RolloutRequest
from fleetguard.store.base import AlreadyExistsError, RecordStore

_log = structlog.get_logger(component="manifests")

MANIFEST_KINDS: dict[str, type[Resource]] = {
    cls.kind: cls for cls in (NodeGroup, Service, Secret, SharedCredential, RolloutRequest)
}


class ManifestError(ValueError):
    """Raised for a document that cannot be turned into a record."""


def _node_group_spec(spec: dict[str, Any]) -> dict[str, Any]:
    nodes = spec.get("nodes") or {}
    if not isinstance(nodes, dict):
        raise ManifestError("NodeGroup spec.nodes must be a mapping of node name to node")
    spec["nodes"] = {name: Node(**(node or {})) for name, node in nodes.items()}
    return spec


def _service_spec(spec: dict[str, Any]) -> dict[str, Any]:
    spec["mounts"] = [Mount(**m) for m in spec.get("mounts") or []]
    return spec


def parse_document(doc: dict[str, Any]) -> Resource:
    """Build a record from one manifest document."""
    if not isinstance(doc, dict):
        raise ManifestError("manifest document must be a mapping")
    kind = doc.get("kind", "")
    cls = MANIFEST_KINDS.get(kind)
    if cls is None:
        raise ManifestError(f"unsupported kind {kind!r}; expected one of {sorted(MANIFEST_KINDS)}")
    metadata = doc.get("metadata") or {}
    if not metadata.get("name"):
        raise ManifestError(f"{kind} manifest has no metadata.name")
    spec = dict(doc.get("spec") or {})
    try:
        if cls is NodeGroup:
            spec = _node_group_spec(spec)
        elif cls is Service:
            spec = _service_spec(spec)
        return cls(
            name=metadata["name"],
            namespace=metadata.get("namespace", "default"),
            labels=dict(metadata.get("labels") or {}),
            **spec,
        )
    except TypeError as exc:
        raise ManifestError(f"{kind} {metadata['name']}: {exc}") from exc


def iter_manifests(path: Path) -> Iterator[Resource]:
    """Yield the records defined in *path*, a YAML file or a directory of them."""
    files = sorted(p for p in path.iterdir() if p.suffix in (".yaml", ".yml")) if path.is_dir() else [path]
    for file in files:
        try:
            docs = list(yaml.safe_load_all(file.read_text()))
        except yaml.YAMLError as exc:
            raise ManifestError(f"{file}: {exc}") from exc
        for doc in docs:
            if doc is None:
                continue
            yield parse_document(doc)


def load_manifests(store: RecordStore, path: Path) -> int:
    """Create every record found under *path*.  Existing records are left alone."""
    created = 0
    for obj in iter_manifests(path):
        try:
            store.create(obj)
        except AlreadyExistsError:
            _log.debug("manifest_record_exists", kind=obj.kind, namespace=obj.namespace, name=obj.name)
            continue
        created += 1
    _log.info("manifests_loaded", path=str(path), created=created)
    return created
