"""Pydantic response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Error envelope returned by every failing endpoint."""

    error: str
    detail: str = ""


class HealthResponse(BaseModel):
    status: str
    version: str
    reconcile_loop: str


class ConditionModel(BaseModel):
    type: str
    status: str
    reason: str = ""
    severity: str = ""
    message: str = ""
    last_transition_time: datetime


class NodeGroupRolloutModel(BaseModel):
    state: str
    error: str = ""
    terminal: bool = False
    config_fingerprint: str = ""
    services_ready: list[str] = Field(default_factory=list)
    completion_sequence: int = 0
    completed_at: datetime | None = None


class ServiceTrackingModel(BaseModel):
    credential_fingerprint: str = ""
    updated_nodes: list[str] = Field(default_factory=list)


class NodeGroupResponse(BaseModel):
    namespace: str
    name: str
    generation: int
    nodes: list[str]
    services: list[str]
    guard_id: str
    config_fingerprint: str
    deployed_config_fingerprint: str
    deleting: bool = False
    conditions: list[ConditionModel]
    rollout_statuses: dict[str, NodeGroupRolloutModel]
    tracking: dict[str, ServiceTrackingModel]


class RolloutResponse(BaseModel):
    namespace: str
    name: str
    generation: int
    node_groups: list[str]
    phase: str
    deployed: bool
    terminal_failure: bool
    error: str = ""
    completion_sequence: int = 0
    conditions: list[ConditionModel]
    node_group_statuses: dict[str, NodeGroupRolloutModel]


class CredentialResponse(BaseModel):
    name: str
    username: str = ""
    markers: list[str]
    deleting: bool = False


class CredentialListResponse(BaseModel):
    namespace: str
    prefix: str
    credentials: list[CredentialResponse]
