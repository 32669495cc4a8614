"""Read-only REST endpoints."""

from __future__ import annotations

from dataclasses import asdict

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from fleetguard.api.schemas import (
    ConditionModel,
    CredentialListResponse,
    CredentialResponse,
    ErrorResponse,
    HealthResponse,
    NodeGroupResponse,
    NodeGroupRolloutModel,
    RolloutResponse,
    ServiceTrackingModel,
)
from fleetguard.models.conditions import Conditions
from fleetguard.models.fleet import NodeGroup, SharedCredential
from fleetguard.models.rollout import NodeGroupRolloutStatus, RolloutRequest
from fleetguard.store.base import get_or_none
from fleetguard.tracking.store import TrackingDataError

_log = structlog.get_logger(component="api.routes")

router = APIRouter()


def _not_found(what: str, namespace: str, name: str) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content=ErrorResponse(error="NOT_FOUND", detail=f"{what} {namespace}/{name} not found").model_dump(),
    )


def _conditions(conditions: Conditions) -> list[ConditionModel]:
    return [ConditionModel(**asdict(c)) for c in conditions.items]


def _rollout_entries(entries: dict[str, NodeGroupRolloutStatus]) -> dict[str, NodeGroupRolloutModel]:
    return {name: NodeGroupRolloutModel(**asdict(e)) for name, e in entries.items()}


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    from fleetguard import __version__

    loop = request.app.state.reconcile_loop
    state = "running" if loop is not None and loop.running else "stopped"
    return HealthResponse(status="ok", version=__version__, reconcile_loop=state)


@router.get("/nodegroups/{namespace}/{name}", response_model=NodeGroupResponse)
async def get_node_group(namespace: str, name: str, request: Request) -> NodeGroupResponse | JSONResponse:
    store = request.app.state.store
    group = get_or_none(store, NodeGroup, namespace, name)
    if group is None:
        return _not_found("NodeGroup", namespace, name)

    tracking: dict[str, ServiceTrackingModel] = {}
    tracking_store = request.app.state.tracking
    if tracking_store is not None:
        for service in group.services:
            try:
                record = tracking_store.get(group, service)
            except TrackingDataError as exc:
                _log.warning("tracking_unreadable", namespace=namespace, node_group=name, service=service, error=str(exc))
                continue
            if not record.is_empty:
                tracking[service] = ServiceTrackingModel(
                    credential_fingerprint=record.credential_fingerprint,
                    updated_nodes=record.updated_nodes,
                )

    status = group.status
    return NodeGroupResponse(
        namespace=group.namespace,
        name=group.name,
        generation=group.generation,
        nodes=group.node_names,
        services=group.services,
        guard_id=status.guard_id,
        config_fingerprint=status.config_fingerprint,
        deployed_config_fingerprint=status.deployed_config_fingerprint,
        deleting=group.is_deleting,
        conditions=_conditions(status.conditions),
        rollout_statuses=_rollout_entries(status.rollout_statuses),
        tracking=tracking,
    )


@router.get("/rollouts/{namespace}/{name}", response_model=RolloutResponse)
async def get_rollout(namespace: str, name: str, request: Request) -> RolloutResponse | JSONResponse:
    rollout = get_or_none(request.app.state.store, RolloutRequest, namespace, name)
    if rollout is None:
        return _not_found("RolloutRequest", namespace, name)
    status = rollout.status
    return RolloutResponse(
        namespace=rollout.namespace,
        name=rollout.name,
        generation=rollout.generation,
        node_groups=rollout.node_groups,
        phase=status.phase,
        deployed=status.deployed,
        terminal_failure=status.terminal_failure,
        error=status.error,
        completion_sequence=status.completion_sequence,
        conditions=_conditions(status.conditions),
        node_group_statuses=_rollout_entries(status.node_groups),
    )


@router.get("/credentials/{namespace}", response_model=CredentialListResponse)
async def list_credentials(namespace: str, request: Request) -> CredentialListResponse:
    """Shared credentials in *namespace* with the guard markers they carry."""
    prefix = request.app.state.guard_prefix
    credentials = [
        CredentialResponse(
            name=c.name,
            username=c.username,
            markers=[f for f in c.finalizers if f.startswith(prefix + "/")],
            deleting=c.is_deleting,
        )
        for c in request.app.state.store.list(SharedCredential, namespace)
    ]
    return CredentialListResponse(namespace=namespace, prefix=prefix, credentials=credentials)
