"""Node group reconciliation.

Aggregates every rollout request that targets a node group into the node
group's status, decides which request currently determines the group's
deployment condition, and drives the credential guard for the group's
services.
"""

from __future__ import annotations

import copy
import dataclasses

import structlog

from fleetguard.controller.outcome import ReconcileOutcome
from fleetguard.credentials.guard import CredentialGuardManager, guard_id
from fleetguard.credentials.identity import get_resolver
from fleetguard.fingerprint import FingerprintError, credential_fingerprint, fingerprint_object
from fleetguard.models.conditions import ConditionStatus, ConditionType, Reason, Severity
from fleetguard.models.fleet import NodeGroup, NodeGroupStatus, Secret, Service
from fleetguard.models.rollout import NodeGroupRolloutState, NodeGroupRolloutStatus, RolloutRequest
from fleetguard.store.base import RecordStore, StoreError, get_or_none, retry_on_conflict
from fleetguard.tracking.store import ServiceTrackingStore, TrackingDataError

_log = structlog.get_logger(component="nodegroup")

CLEANUP_FINALIZER = "fleetguard.io/guard-cleanup"


def node_group_config_fingerprint(node_group: NodeGroup) -> str:
    """Fingerprint of the configuration a rollout applies to *node_group*."""
    return fingerprint_object(
        {"nodes": node_group.nodes, "services": node_group.services, "vars": node_group.vars}
    )


def _entry_for(request: RolloutRequest, node_group: str) -> NodeGroupRolloutStatus:
    entry = request.status.node_groups.get(node_group)
    entry = copy.deepcopy(entry) if entry is not None else NodeGroupRolloutStatus()
    # A request that ended terminally before reaching this group still
    # finished for it.
    if request.status.terminal_failure and not entry.is_finished:
        entry.state = NodeGroupRolloutState.FAILED
        entry.terminal = True
        entry.error = entry.error or request.status.error
        entry.completion_sequence = entry.completion_sequence or request.status.completion_sequence
        entry.completed_at = entry.completed_at or request.status.completed_at
    return entry


class NodeGroupReconciler:
    def __init__(
        self,
        store: RecordStore,
        tracking: ServiceTrackingStore,
        guard: CredentialGuardManager,
        conflict_retries: int = 5,
    ) -> None:
        self._store = store
        self._tracking = tracking
        self._guard = guard
        self._retries = conflict_retries

    def reconcile(self, namespace: str, name: str) -> ReconcileOutcome:
        node_group = get_or_none(self._store, NodeGroup, namespace, name)
        if node_group is None:
            return ReconcileOutcome()
        log = _log.bind(namespace=namespace, node_group=name)

        if node_group.is_deleting:
            return self._finalize(node_group)
        if CLEANUP_FINALIZER not in node_group.finalizers:
            try:
                node_group = self._add_finalizer(node_group)
            except StoreError as exc:
                log.warning("finalizer_add_failed", error=str(exc))
                return ReconcileOutcome(error=str(exc))

        original = copy.deepcopy(node_group.status)
        status = node_group.status
        status.observed_generation = node_group.generation
        status.guard_id = guard_id(node_group.name)
        errors: list[str] = []
        try:
            status.config_fingerprint = node_group_config_fingerprint(node_group)
        except FingerprintError as exc:
            log.error("config_fingerprint_failed", error=str(exc))
            status.config_fingerprint = ""
            errors.append(f"configuration: {exc}")

        requests = sorted(
            (r for r in self._store.list(RolloutRequest, namespace) if r.targets(name)),
            key=lambda r: (r.created_at, r.name),
        )
        status.rollout_statuses = {r.name: _entry_for(r, name) for r in requests}
        self._set_deployment_condition(node_group, requests)
        if errors:
            status.conditions.mark_false(
                ConditionType.NODE_GROUP_DEPLOYMENT_READY, Reason.ERROR, Severity.WARNING, errors[0]
            )
        self._mirror_ready(status)

        services = self._tracked_services(node_group)
        secrets = self._store.list(Secret, namespace)

        # Phase one: follow credential rotations and node removals.
        untracked: set[str] = set()
        for service in services:
            resolver = get_resolver(service.credential_kind)
            live = credential_fingerprint(resolver.credential_secrets(secrets)) if resolver else ""
            try:
                stored = self._tracking.get(node_group, service.name)
                if stored.credential_fingerprint and live and stored.credential_fingerprint != live:
                    log.info("credential_rotation_detected", service=service.name)
                    self._tracking.reset(node_group, service.name, live)
                self._tracking.retain_nodes(node_group, service.name, node_group.node_names)
            except (StoreError, TrackingDataError) as exc:
                log.error("tracking_maintenance_failed", service=service.name, error=str(exc))
                errors.append(f"service {service.name}: {exc}")
                untracked.add(service.name)

        # Phase two: guard markers, only for services whose tracking is current.
        for service in services:
            if service.name in untracked:
                log.warning("guard_pass_skipped", service=service.name, reason="tracking maintenance failed")
                continue
            try:
                report = self._guard.reconcile(node_group, service)
            except (StoreError, TrackingDataError) as exc:
                log.error("guard_pass_failed", service=service.name, error=str(exc))
                errors.append(f"service {service.name}: {exc}")
                continue
            if report.failed:
                errors.append(f"service {service.name}: guard marker update failed for {', '.join(report.failed)}")

        try:
            self._write_status(node_group, original)
        except StoreError as exc:
            log.warning("status_write_failed", error=str(exc))
            errors.append(str(exc))

        if errors:
            return ReconcileOutcome(error=" & ".join(errors))
        return ReconcileOutcome()

    # ------------------------------------------------------------------
    # Conditions
    # ------------------------------------------------------------------

    def _set_deployment_condition(self, node_group: NodeGroup, requests: list[RolloutRequest]) -> None:
        """Pick the request that decides the deployment condition and apply it.

        The most recently created request decides while it is unfinished.
        Otherwise the request that finished last, by completion sequence,
        decides.  A Ready outcome only counts while the node group still has
        the configuration that request deployed.
        """
        status = node_group.status
        conditions = status.conditions
        cond_type = ConditionType.NODE_GROUP_DEPLOYMENT_READY
        if not requests:
            conditions.mark_unknown(cond_type, Reason.INIT, "No rollout requested")
            return

        latest = requests[-1]
        entry = status.rollout_statuses[latest.name]
        if not entry.is_finished:
            if entry.state == NodeGroupRolloutState.FAILED:
                conditions.mark_false(cond_type, Reason.ERROR, Severity.WARNING, entry.error)
            else:
                conditions.mark_false(
                    cond_type, Reason.REQUESTED, Severity.INFO, f"Deployment {latest.name} in progress"
                )
            return

        finished = [
            (name, e) for name, e in status.rollout_statuses.items() if e.is_finished and e.completion_sequence
        ] or [(latest.name, entry)]
        decider, outcome = max(finished, key=lambda item: item[1].completion_sequence)
        if outcome.state == NodeGroupRolloutState.READY:
            if outcome.config_fingerprint == status.config_fingerprint:
                conditions.mark_true(cond_type, f"Deployed by {decider}")
                status.deployed_config_fingerprint = outcome.config_fingerprint
            else:
                conditions.mark_false(
                    cond_type,
                    Reason.CONFIG_CHANGED,
                    Severity.WARNING,
                    f"Configuration changed since {decider} was deployed",
                )
            return
        conditions.mark_false(cond_type, Reason.BACKOFF_LIMIT_EXCEEDED, Severity.ERROR, outcome.error)

    @staticmethod
    def _mirror_ready(status: NodeGroupStatus) -> None:
        cond = status.conditions.get(ConditionType.NODE_GROUP_DEPLOYMENT_READY)
        if cond is None:
            return
        if cond.status == ConditionStatus.TRUE:
            status.conditions.mark_true(ConditionType.READY, "NodeGroup ready")
        else:
            status.conditions.set(dataclasses.replace(cond, type=ConditionType.READY))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _tracked_services(self, node_group: NodeGroup) -> list[Service]:
        services: list[Service] = []
        for name in node_group.services:
            service = get_or_none(self._store, Service, node_group.namespace, name)
            if service is None:
                _log.debug("service_not_found", namespace=node_group.namespace, node_group=node_group.name, service=name)
                continue
            if get_resolver(service.credential_kind) is not None:
                services.append(service)
        return services

    def _add_finalizer(self, node_group: NodeGroup) -> NodeGroup:
        def attempt() -> NodeGroup:
            current = self._store.get(NodeGroup, node_group.namespace, node_group.name)
            if CLEANUP_FINALIZER not in current.finalizers:
                current.finalizers.append(CLEANUP_FINALIZER)
                current = self._store.update(current)
            return current

        return retry_on_conflict(attempt, self._retries, kind=NodeGroup.kind)

    def _finalize(self, node_group: NodeGroup) -> ReconcileOutcome:
        log = _log.bind(namespace=node_group.namespace, node_group=node_group.name)
        if CLEANUP_FINALIZER not in node_group.finalizers:
            return ReconcileOutcome()
        try:
            released = self._guard.release_all(node_group)
        except StoreError as exc:
            log.error("guard_release_failed", error=str(exc))
            return ReconcileOutcome(error=str(exc))
        log.info("node_group_guards_released", credentials=released)

        def attempt() -> None:
            current = get_or_none(self._store, NodeGroup, node_group.namespace, node_group.name)
            if current is None or CLEANUP_FINALIZER not in current.finalizers:
                return
            current.finalizers = [f for f in current.finalizers if f != CLEANUP_FINALIZER]
            self._store.update(current)

        try:
            retry_on_conflict(attempt, self._retries, kind=NodeGroup.kind)
        except StoreError as exc:
            log.warning("finalizer_remove_failed", error=str(exc))
            return ReconcileOutcome(error=str(exc))
        return ReconcileOutcome()

    def _write_status(self, node_group: NodeGroup, original: NodeGroupStatus) -> None:
        if node_group.status == original:
            return
        status = node_group.status

        def attempt() -> None:
            current = self._store.get(NodeGroup, node_group.namespace, node_group.name)
            current.status = status
            self._store.update(current)

        retry_on_conflict(attempt, self._retries, kind=NodeGroup.kind)
