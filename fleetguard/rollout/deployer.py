"""Runs one node group's services, in order, for one rollout request."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

import structlog

from fleetguard.credentials.identity import get_resolver
from fleetguard.fingerprint import FingerprintError, credential_fingerprint
from fleetguard.models.fleet import NodeGroup, Secret, Service
from fleetguard.models.rollout import NodeGroupRolloutState, RolloutRequest
from fleetguard.rollout.validation import ValidationError, resolve_node_limit
from fleetguard.runner.executor import JobDispatcher, JobState
from fleetguard.runner.job import build_job_input
from fleetguard.store.base import NotFoundError, RecordStore, StoreError
from fleetguard.tracking.store import ServiceTrackingStore, TrackingDataError

_log = structlog.get_logger(component="deployer")


class DeploymentError(Exception):
    """A service on a node group failed.

    ``terminal`` is set when the job runner gave up after exhausting the
    retry budget; the request then stops being reconciled.
    """

    def __init__(self, message: str, terminal: bool = False) -> None:
        super().__init__(message)
        self.terminal = terminal


def dedupe_services(
    node_groups: list[NodeGroup],
    override: list[str],
    services: Mapping[str, Service],
) -> dict[str, list[str]]:
    """Map each node group to the services it should run.

    Within a node group only the first service of each service type is
    kept.  A ``deploy_on_all_node_groups`` service is kept only for the
    first node group that lists it, since its job targets every group.
    Unknown service names are kept so the deployer reports them.
    """
    result: dict[str, list[str]] = {}
    global_services: set[str] = set()
    for group in node_groups:
        names = override or group.services
        deduped: list[str] = []
        service_types: set[str] = set()
        for name in names:
            if name in deduped:
                continue
            service = services.get(name)
            if service is None:
                _log.warning("service_not_found", namespace=group.namespace, node_group=group.name, service=name)
                deduped.append(name)
                continue
            if service.credential_kind in service_types:
                continue
            if service.deploy_on_all_node_groups:
                if name in global_services:
                    continue
                global_services.add(name)
            service_types.add(service.credential_kind)
            deduped.append(name)
        result[group.name] = deduped
    return result


@dataclass
class DeployResult:
    state: NodeGroupRolloutState
    services_ready: list[str] = field(default_factory=list)


class Deployer:
    def __init__(
        self,
        store: RecordStore,
        dispatcher: JobDispatcher,
        tracking: ServiceTrackingStore,
        image: str,
        backoff_limit: int,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._tracking = tracking
        self._image = image
        self._backoff_limit = backoff_limit

    def deploy(
        self,
        request: RolloutRequest,
        node_group: NodeGroup,
        services: list[str],
        request_groups: list[NodeGroup],
    ) -> DeployResult:
        """Advance *services* on *node_group* by one step.

        Services run strictly in order: the first one whose job is not yet
        done stops the pass with state RUNNING.  Job fingerprints are
        recorded on ``request.status``; the caller persists them.

        Raises DeploymentError when a service is missing, its job cannot be
        built, or its job failed for good.
        """
        log = _log.bind(namespace=request.namespace, rollout=request.name, node_group=node_group.name)
        backoff_limit = request.backoff_limit if request.backoff_limit is not None else self._backoff_limit
        secrets = self._store.list(Secret, request.namespace)
        ready: list[str] = []

        for name in services:
            try:
                service = self._store.get(Service, request.namespace, name)
            except NotFoundError as exc:
                raise DeploymentError(f"service {name} not found") from exc

            resolver = get_resolver(service.credential_kind)
            live_fingerprint = credential_fingerprint(resolver.credential_secrets(secrets)) if resolver else ""
            inventory_groups = request_groups if service.deploy_on_all_node_groups else [node_group]
            try:
                spec = build_job_input(
                    service,
                    request,
                    node_group,
                    inventory_groups=inventory_groups,
                    image=self._image,
                    backoff_limit=backoff_limit,
                    credential_fingerprint=live_fingerprint,
                )
            except FingerprintError as exc:
                raise DeploymentError(f"service {name}: {exc}") from exc

            recorded = request.status.job_fingerprints.get(spec.name, "")
            dispatch = self._dispatcher.ensure(spec, recorded)
            if dispatch.changed:
                request.status.job_fingerprints[spec.name] = dispatch.fingerprint
                request.status.job_credential_fingerprints[spec.name] = live_fingerprint

            if dispatch.result.state == JobState.RUNNING:
                log.info("service_running", service=name, job=spec.name, attempts=dispatch.result.attempts)
                return DeployResult(NodeGroupRolloutState.RUNNING, ready)
            if dispatch.result.state == JobState.FAILED:
                raise DeploymentError(
                    dispatch.result.message or f"execution {spec.name} failed",
                    terminal=True,
                )

            job_fingerprint = request.status.job_credential_fingerprints.get(spec.name, "")
            if resolver is not None and live_fingerprint and job_fingerprint == live_fingerprint:
                for group in inventory_groups:
                    self._record_adoption(request, group, service, live_fingerprint)
            elif resolver is not None and live_fingerprint:
                log.info(
                    "adoption_not_recorded",
                    service=name,
                    job=spec.name,
                    reason="credentials changed since the job was dispatched",
                )
            ready.append(name)
            log.debug("service_ready", service=name, job=spec.name)

        return DeployResult(NodeGroupRolloutState.READY, ready)

    def release(self, request: RolloutRequest) -> None:
        """Let the runner drop the jobs of a request that reached a final state."""
        self._dispatcher.release(request.status.job_fingerprints)
        _log.debug("rollout_jobs_released", namespace=request.namespace, rollout=request.name)

    def _record_adoption(
        self,
        request: RolloutRequest,
        node_group: NodeGroup,
        service: Service,
        fingerprint: str,
    ) -> None:
        """Phase one: the limit-selected nodes now run on *fingerprint*."""
        try:
            nodes = resolve_node_limit(request.node_limit, node_group.node_names, node_group.name)
        except ValidationError as exc:
            raise DeploymentError(f"invalid node limit: {exc}") from exc
        try:
            self._tracking.observe(node_group, service.name, fingerprint)
            self._tracking.mark_nodes_updated(node_group, service.name, nodes)
        except (StoreError, TrackingDataError) as exc:
            raise DeploymentError(f"service {service.name}: recording updated nodes failed: {exc}") from exc
