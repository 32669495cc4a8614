"""Rollout request reconciliation.

State machine per request::

    Pending -> Running -> Ready
                       -> Failed (retryable, requeued with backoff)
                       -> Failed (terminal, not reconciled until the request is edited)

Node groups are processed in submission order without waiting on each
other; the request is Ready once every targeted node group is Ready.
"""

from __future__ import annotations

import copy
import dataclasses

import structlog

from fleetguard.controller.outcome import ReconcileOutcome
from fleetguard.models.conditions import ConditionStatus, ConditionType, Reason, Severity
from fleetguard.models.config import RolloutConfig
from fleetguard.models.fleet import NodeGroup, Service
from fleetguard.models.resources import utcnow
from fleetguard.models.rollout import (
    NodeGroupRolloutState,
    NodeGroupRolloutStatus,
    RolloutPhase,
    RolloutRequest,
    RolloutStatus,
)
from fleetguard.rollout.deployer import Deployer, DeploymentError, dedupe_services
from fleetguard.rollout.nodegroup import node_group_config_fingerprint
from fleetguard.rollout.sequence import Sequencer
from fleetguard.rollout.validation import ValidationError, validate_rollout_request
from fleetguard.store.base import RecordStore, get_or_none, retry_on_conflict

_log = structlog.get_logger(component="rollout")

_SUB_CONDITIONS = (ConditionType.INPUT_READY, ConditionType.DEPLOYMENT_READY)


def _init_conditions(status: RolloutStatus) -> None:
    for cond_type in (ConditionType.READY, *_SUB_CONDITIONS):
        if status.conditions.get(cond_type) is None:
            status.conditions.mark_unknown(cond_type)


def _mirror_ready(status: RolloutStatus) -> None:
    """Derive Ready from the sub-conditions: true when all are, else the first non-true one."""
    for cond_type in _SUB_CONDITIONS:
        cond = status.conditions.get(cond_type)
        if cond is not None and cond.status != ConditionStatus.TRUE:
            status.conditions.set(dataclasses.replace(cond, type=ConditionType.READY))
            return
    if all(status.conditions.is_true(t) for t in _SUB_CONDITIONS):
        status.conditions.mark_true(ConditionType.READY, "Setup complete")


class RolloutAggregator:
    def __init__(
        self,
        store: RecordStore,
        deployer: Deployer,
        sequencer: Sequencer,
        config: RolloutConfig,
    ) -> None:
        self._store = store
        self._deployer = deployer
        self._sequencer = sequencer
        self._config = config

    def reconcile(self, namespace: str, name: str) -> ReconcileOutcome:
        request = get_or_none(self._store, RolloutRequest, namespace, name)
        if request is None or request.is_deleting:
            return ReconcileOutcome()
        log = _log.bind(namespace=namespace, rollout=name)
        status = request.status

        if status.deployed:
            log.debug("rollout_already_deployed")
            return ReconcileOutcome()
        if status.terminal_failure:
            if status.observed_generation == request.generation:
                log.debug("rollout_terminal_skipped", error=status.error)
                return ReconcileOutcome()
            log.info("rollout_spec_changed_after_failure", generation=request.generation)
            status.terminal_failure = False
            status.error = ""
            status.completion_sequence = 0
            status.completed_at = None
            status.node_groups = {}

        original = copy.deepcopy(status)
        status.observed_generation = request.generation
        _init_conditions(status)
        requeue = float(request.requeue_seconds or self._config.requeue_seconds)

        # --- validation ----------------------------------------------------
        try:
            validate_rollout_request(request)
        except ValidationError as exc:
            log.warning("rollout_invalid", error=str(exc))
            status.conditions.mark_false(ConditionType.INPUT_READY, Reason.ERROR, Severity.ERROR, str(exc))
            status.phase = RolloutPhase.FAILED
            status.error = str(exc)
            self._finish(request, terminal=True)
            _mirror_ready(status)
            self._write_status(request, original)
            return ReconcileOutcome()

        # --- inputs --------------------------------------------------------
        groups: list[NodeGroup] = []
        for group_name in request.node_groups:
            group = get_or_none(self._store, NodeGroup, namespace, group_name)
            if group is None:
                log.info("rollout_waiting_for_node_group", node_group=group_name)
                status.conditions.mark_false(
                    ConditionType.INPUT_READY,
                    Reason.REQUESTED,
                    Severity.INFO,
                    f"waiting for node group {group_name}",
                )
                _mirror_ready(status)
                self._write_status(request, original)
                return ReconcileOutcome(requeue_after=requeue)
            groups.append(group)
        status.conditions.mark_true(ConditionType.INPUT_READY, "Input data complete")

        services = {s.name: s for s in self._store.list(Service, namespace)}
        service_map = dedupe_services(groups, request.services_override, services)

        # --- deployment ----------------------------------------------------
        status.phase = RolloutPhase.RUNNING
        status.conditions.mark_false(
            ConditionType.DEPLOYMENT_READY, Reason.REQUESTED, Severity.INFO, "Deployment in progress"
        )
        errors: list[str] = []
        terminal = False
        in_progress = False

        for group in groups:
            entry = status.node_groups.setdefault(group.name, NodeGroupRolloutStatus())
            if entry.is_finished:
                if entry.state == NodeGroupRolloutState.FAILED:
                    errors.append(f"nodeGroup: {group.name} error: {entry.error}")
                    terminal = True
                continue
            log.info("rollout_deploying_node_group", node_group=group.name)
            try:
                result = self._deployer.deploy(request, group, service_map.get(group.name, []), groups)
            except DeploymentError as exc:
                log.warning("rollout_node_group_failed", node_group=group.name, error=str(exc), terminal=exc.terminal)
                errors.append(f"nodeGroup: {group.name} error: {exc}")
                entry.state = NodeGroupRolloutState.FAILED
                entry.error = str(exc)
                entry.terminal = exc.terminal
                if exc.terminal:
                    terminal = True
                    self._complete_entry(namespace, entry)
                continue

            entry.services_ready = result.services_ready
            entry.error = ""
            if result.state == NodeGroupRolloutState.READY:
                entry.state = NodeGroupRolloutState.READY
                entry.config_fingerprint = node_group_config_fingerprint(group)
                self._complete_entry(namespace, entry)
                log.info("rollout_node_group_ready", node_group=group.name, sequence=entry.completion_sequence)
            else:
                entry.state = NodeGroupRolloutState.RUNNING
                in_progress = True

        if errors:
            message = " & ".join(errors)
            reason = Reason.BACKOFF_LIMIT_EXCEEDED if terminal else Reason.ERROR
            severity = Severity.ERROR if terminal else Severity.WARNING
            status.conditions.mark_false(ConditionType.DEPLOYMENT_READY, reason, severity, message)
            status.phase = RolloutPhase.FAILED
            status.error = message
            if terminal:
                self._finish(request, terminal=True)
            _mirror_ready(status)
            self._write_status(request, original)
            if terminal:
                log.error("rollout_failed_terminal", error=message)
                self._deployer.release(request)
                return ReconcileOutcome()
            return ReconcileOutcome(error=message)

        status.error = ""
        if in_progress:
            _mirror_ready(status)
            self._write_status(request, original)
            return ReconcileOutcome(requeue_after=requeue)

        status.conditions.mark_true(ConditionType.DEPLOYMENT_READY, "Deployment completed")
        status.phase = RolloutPhase.READY
        status.deployed = True
        self._finish(request, terminal=False)
        _mirror_ready(status)
        self._write_status(request, original)
        log.info("rollout_ready", sequence=status.completion_sequence)
        self._deployer.release(request)
        return ReconcileOutcome()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _complete_entry(self, namespace: str, entry: NodeGroupRolloutStatus) -> None:
        entry.completion_sequence = self._sequencer.next(namespace)
        entry.completed_at = utcnow()

    def _finish(self, request: RolloutRequest, terminal: bool) -> None:
        request.status.terminal_failure = terminal
        request.status.completion_sequence = self._sequencer.next(request.namespace)
        request.status.completed_at = utcnow()

    def _write_status(self, request: RolloutRequest, original: RolloutStatus) -> None:
        if request.status == original:
            return
        status = request.status

        def attempt() -> None:
            current = self._store.get(RolloutRequest, request.namespace, request.name)
            current.status = status
            self._store.update(current)

        retry_on_conflict(attempt, self._config.conflict_retries, kind=RolloutRequest.kind)
