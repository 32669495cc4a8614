"""Rollout execution: request validation, per-group deployment and aggregation."""

from fleetguard.rollout.aggregator import RolloutAggregator
from fleetguard.rollout.deployer import DeployResult, Deployer, DeploymentError, dedupe_services
from fleetguard.rollout.nodegroup import CLEANUP_FINALIZER, NodeGroupReconciler, node_group_config_fingerprint
from fleetguard.rollout.sequence import Sequencer
from fleetguard.rollout.validation import (
    ValidationError,
    admit,
    ensure_node_group_mutable,
    parse_node_limit,
    resolve_node_limit,
    validate_name,
    validate_rollout_request,
)

__all__ = [
    "CLEANUP_FINALIZER",
    "DeployResult",
    "Deployer",
    "DeploymentError",
    "NodeGroupReconciler",
    "RolloutAggregator",
    "Sequencer",
    "ValidationError",
    "admit",
    "dedupe_services",
    "ensure_node_group_mutable",
    "node_group_config_fingerprint",
    "parse_node_limit",
    "resolve_node_limit",
    "validate_name",
    "validate_rollout_request",
]
