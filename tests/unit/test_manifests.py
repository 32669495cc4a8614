"""Tests for YAML manifest loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from fleetguard.models.fleet import Mount, Node, NodeGroup, Service, SharedCredential
from fleetguard.models.rollout import RolloutRequest
from fleetguard.store import InMemoryRecordStore, ManifestError, load_manifests, parse_document

_FLEET = """\
kind: NodeGroup
metadata:
  name: edpm-compute
  namespace: openstack
  labels:
    tier: compute
spec:
  services: [nova, libvirt]
  vars:
    ansible_user: cloud-admin
  nodes:
    compute-0:
      hostname: compute-0.ctlplane
      vars:
        edpm_network: ctlplane
    compute-1:
      hostname: compute-1.ctlplane
---
kind: Service
metadata:
  name: nova
  namespace: openstack
spec:
  playbook: osp.edpm.nova
  mounts:
    - name: nova-config
      secret_name: nova-cell1-compute-config
      mount_path: /runner/nova
---
kind: SharedCredential
metadata:
  name: nova-cell1
  namespace: openstack
username: ignored
"""


class TestParseDocument:
    def test_node_group(self) -> None:
        obj = parse_document(
            {
                "kind": "NodeGroup",
                "metadata": {"name": "edpm-compute", "namespace": "openstack"},
                "spec": {"nodes": {"compute-0": {"hostname": "compute-0.ctlplane"}}, "services": ["nova"]},
            }
        )
        assert isinstance(obj, NodeGroup)
        assert obj.nodes == {"compute-0": Node(hostname="compute-0.ctlplane")}
        assert obj.namespace == "openstack"

    def test_rollout_request(self) -> None:
        obj = parse_document(
            {
                "kind": "RolloutRequest",
                "metadata": {"name": "deploy"},
                "spec": {"node_groups": ["edpm-compute"], "node_limit": "compute-0"},
            }
        )
        assert isinstance(obj, RolloutRequest)
        assert obj.namespace == "default"
        assert obj.node_limit == "compute-0"

    @pytest.mark.parametrize(
        ("doc", "match"),
        [
            ({"kind": "Pod", "metadata": {"name": "x"}}, "unsupported kind"),
            ({"kind": "Service", "metadata": {}}, "no metadata.name"),
            ({"kind": "Service", "metadata": {"name": "x"}, "spec": {"bogus": 1}}, "Service x"),
            ({"kind": "NodeGroup", "metadata": {"name": "g"}, "spec": {"nodes": ["a"]}}, "mapping"),
            ({"kind": "NodeGroup", "metadata": {"name": "g"}, "spec": {"nodes": {"n0": {}}}}, "NodeGroup g"),
        ],
    )
    def test_rejected_documents(self, doc: dict, match: str) -> None:
        with pytest.raises(ManifestError, match=match):
            parse_document(doc)

    def test_non_mapping(self) -> None:
        with pytest.raises(ManifestError):
            parse_document(["not", "a", "mapping"])  # type: ignore[arg-type]


class TestLoadManifests:
    def test_load_file(self, tmp_path: Path) -> None:
        path = tmp_path / "fleet.yaml"
        path.write_text(_FLEET)
        store = InMemoryRecordStore()

        assert load_manifests(store, path) == 3

        group = store.get(NodeGroup, "openstack", "edpm-compute")
        assert group.labels == {"tier": "compute"}
        assert group.nodes["compute-0"].vars == {"edpm_network": "ctlplane"}
        service = store.get(Service, "openstack", "nova")
        assert service.mounts == [
            Mount(name="nova-config", secret_name="nova-cell1-compute-config", mount_path="/runner/nova")
        ]
        # Top-level keys outside spec are not record fields.
        assert store.get(SharedCredential, "openstack", "nova-cell1").username == ""

    def test_load_directory_skips_existing(self, tmp_path: Path) -> None:
        (tmp_path / "a.yaml").write_text(_FLEET)
        (tmp_path / "b.yml").write_text("kind: Service\nmetadata: {name: libvirt, namespace: openstack}\n")
        (tmp_path / "notes.txt").write_text("kind: Service\n")
        store = InMemoryRecordStore()
        store.create(Service(name="nova", namespace="openstack", playbook="existing"))

        assert load_manifests(store, tmp_path) == 3
        assert store.get(Service, "openstack", "nova").playbook == "existing"
        assert store.get(Service, "openstack", "libvirt").name == "libvirt"

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.yaml"
        path.write_text("kind: [unclosed\n")
        with pytest.raises(ManifestError, match="broken.yaml"):
            load_manifests(InMemoryRecordStore(), path)
