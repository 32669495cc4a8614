"""Fleet data structures: node groups, services and credential material."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

from fleetguard.models.conditions import Conditions
from fleetguard.models.resources import Resource
from fleetguard.models.rollout import NodeGroupRolloutStatus


@dataclass
class Node:
    """A managed node.  ``vars`` override the group-level variables."""

    hostname: str
    vars: dict[str, Any] = field(default_factory=dict)


@dataclass
class NodeGroupStatus:
    conditions: Conditions = field(default_factory=Conditions)
    rollout_statuses: dict[str, NodeGroupRolloutStatus] = field(default_factory=dict)
    config_fingerprint: str = ""
    deployed_config_fingerprint: str = ""
    guard_id: str = ""
    observed_generation: int = 0


@dataclass(kw_only=True)
class NodeGroup(Resource):
    """A named collection of managed nodes sharing configuration templates.

    ``nodes`` is keyed by node name, which keeps names unique within the
    group and preserves declaration order.
    """

    kind: ClassVar[str] = "NodeGroup"
    spec_fields: ClassVar[tuple[str, ...]] = ("nodes", "services", "vars")

    nodes: dict[str, Node] = field(default_factory=dict)
    services: list[str] = field(default_factory=list)
    vars: dict[str, Any] = field(default_factory=dict)
    status: NodeGroupStatus = field(default_factory=NodeGroupStatus)

    @property
    def node_names(self) -> list[str]:
        return list(self.nodes)


@dataclass
class Mount:
    """A secret key mounted into the job container."""

    name: str
    secret_name: str
    mount_path: str
    key: str = ""
    sub_path: str = ""


@dataclass(kw_only=True)
class Service(Resource):
    """A named unit of configuration work.

    Exactly one of ``playbook``, ``playbook_contents`` or ``role`` drives the
    job.  ``service_type`` names the credential kind the service depends on
    and defaults to the service name.
    """

    kind: ClassVar[str] = "Service"
    spec_fields: ClassVar[tuple[str, ...]] = (
        "service_type",
        "playbook",
        "playbook_contents",
        "role",
        "extra_vars",
        "mounts",
        "env",
        "deploy_on_all_node_groups",
    )

    service_type: str = ""
    playbook: str = ""
    playbook_contents: str = ""
    role: str = ""
    extra_vars: dict[str, Any] = field(default_factory=dict)
    mounts: list[Mount] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    deploy_on_all_node_groups: bool = False

    @property
    def credential_kind(self) -> str:
        return self.service_type or self.name


@dataclass(kw_only=True)
class Secret(Resource):
    """Live credential material, as rendered by the control plane."""

    kind: ClassVar[str] = "Secret"
    spec_fields: ClassVar[tuple[str, ...]] = ("data",)

    data: dict[str, str] = field(default_factory=dict)


@dataclass(kw_only=True)
class SharedCredential(Resource):
    """A broker account shared by every node group in a namespace.

    ``username`` is the identity the broker reports for the account, which
    may differ from the record name.  Guard markers live in ``finalizers``.
    """

    kind: ClassVar[str] = "SharedCredential"
    spec_fields: ClassVar[tuple[str, ...]] = ()

    username: str = ""


@dataclass(kw_only=True)
class TrackingRecord(Resource):
    """Per-node-group string map holding service tracking fields."""

    kind: ClassVar[str] = "TrackingRecord"
    spec_fields: ClassVar[tuple[str, ...]] = ()

    data: dict[str, str] = field(default_factory=dict)


@dataclass(kw_only=True)
class SequenceCounter(Resource):
    """Monotonic counter used to order rollout completions."""

    kind: ClassVar[str] = "SequenceCounter"
    spec_fields: ClassVar[tuple[str, ...]] = ()

    value: int = 0
