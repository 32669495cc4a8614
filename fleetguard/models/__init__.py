"""Core data structures for fleetguard."""

from fleetguard.models.conditions import (
    Condition,
    Conditions,
    ConditionStatus,
    ConditionType,
    Reason,
    Severity,
)
from fleetguard.models.config import FleetGuardConfig
from fleetguard.models.fleet import (
    Mount,
    Node,
    NodeGroup,
    NodeGroupStatus,
    Secret,
    SequenceCounter,
    Service,
    SharedCredential,
    TrackingRecord,
)
from fleetguard.models.resources import Resource
from fleetguard.models.rollout import (
    NodeGroupRolloutState,
    NodeGroupRolloutStatus,
    RolloutPhase,
    RolloutRequest,
    RolloutStatus,
)

__all__ = [
    "Condition",
    "ConditionStatus",
    "ConditionType",
    "Conditions",
    "FleetGuardConfig",
    "Mount",
    "Node",
    "NodeGroup",
    "NodeGroupRolloutState",
    "NodeGroupRolloutStatus",
    "NodeGroupStatus",
    "Reason",
    "Resource",
    "RolloutPhase",
    "RolloutRequest",
    "RolloutStatus",
    "Secret",
    "SequenceCounter",
    "Service",
    "Severity",
    "SharedCredential",
    "TrackingRecord",
]
