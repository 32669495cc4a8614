"""Rollout request data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, ClassVar

from fleetguard.models.conditions import Conditions
from fleetguard.models.resources import Resource


class RolloutPhase(StrEnum):
    """Lifecycle of a rollout request.

    FAILED covers both the retryable and the terminal outcome; the
    ``terminal_failure`` flag on the status tells them apart.
    """

    PENDING = "Pending"
    RUNNING = "Running"
    READY = "Ready"
    FAILED = "Failed"


class NodeGroupRolloutState(StrEnum):
    PENDING = "Pending"
    RUNNING = "Running"
    READY = "Ready"
    FAILED = "Failed"


@dataclass
class NodeGroupRolloutStatus:
    """Progress of one request against one node group."""

    state: NodeGroupRolloutState = NodeGroupRolloutState.PENDING
    error: str = ""
    terminal: bool = False
    config_fingerprint: str = ""  # node group config the request deployed
    services_ready: list[str] = field(default_factory=list)
    completion_sequence: int = 0  # 0 until the state becomes READY or terminal FAILED
    completed_at: datetime | None = None

    @property
    def is_finished(self) -> bool:
        if self.state == NodeGroupRolloutState.READY:
            return True
        return self.state == NodeGroupRolloutState.FAILED and self.terminal


@dataclass
class RolloutStatus:
    phase: RolloutPhase = RolloutPhase.PENDING
    conditions: Conditions = field(default_factory=Conditions)
    node_groups: dict[str, NodeGroupRolloutStatus] = field(default_factory=dict)
    job_fingerprints: dict[str, str] = field(default_factory=dict)
    job_credential_fingerprints: dict[str, str] = field(default_factory=dict)
    deployed: bool = False
    terminal_failure: bool = False
    error: str = ""
    completion_sequence: int = 0
    completed_at: datetime | None = None
    observed_generation: int = 0


@dataclass(kw_only=True)
class RolloutRequest(Resource):
    """A request to apply services to one or more node groups.

    ``node_limit`` restricts execution to a subset of nodes using the
    ansible ``--limit`` pattern grammar.  ``backoff_limit`` and
    ``requeue_seconds`` fall back to the controller configuration when unset.
    """

    kind: ClassVar[str] = "RolloutRequest"
    spec_fields: ClassVar[tuple[str, ...]] = (
        "node_groups",
        "services_override",
        "node_limit",
        "tags",
        "skip_tags",
        "extra_vars",
        "backoff_limit",
        "job_node_selector",
    )

    node_groups: list[str] = field(default_factory=list)
    services_override: list[str] = field(default_factory=list)
    node_limit: str = ""
    tags: str = ""
    skip_tags: str = ""
    extra_vars: dict[str, Any] = field(default_factory=dict)
    backoff_limit: int | None = None
    requeue_seconds: int | None = None
    job_node_selector: dict[str, str] = field(default_factory=dict)
    status: RolloutStatus = field(default_factory=RolloutStatus)

    def targets(self, node_group: str) -> bool:
        return node_group in self.node_groups
