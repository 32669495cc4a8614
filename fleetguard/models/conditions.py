"""Status conditions attached to node groups and rollout requests."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from fleetguard.models.resources import utcnow


class ConditionStatus(StrEnum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Severity(StrEnum):
    """Severity of a False condition.  Error marks a terminal outcome."""

    NONE = ""
    INFO = "Info"
    WARNING = "Warning"
    ERROR = "Error"


class ConditionType(StrEnum):
    READY = "Ready"
    INPUT_READY = "InputReady"
    DEPLOYMENT_READY = "DeploymentReady"
    NODE_GROUP_DEPLOYMENT_READY = "NodeGroupDeploymentReady"


class Reason(StrEnum):
    INIT = "Init"
    REQUESTED = "Requested"
    READY = "Ready"
    ERROR = "Error"
    BACKOFF_LIMIT_EXCEEDED = "BackoffLimitExceeded"
    CONFIG_CHANGED = "ConfigChanged"


@dataclass
class Condition:
    type: str
    status: ConditionStatus
    reason: str = ""
    severity: Severity = Severity.NONE
    message: str = ""
    last_transition_time: datetime = field(default_factory=utcnow)

    def is_error(self) -> bool:
        return self.status == ConditionStatus.FALSE and self.severity == Severity.ERROR


@dataclass
class Conditions:
    """Ordered condition list keyed by condition type."""

    items: list[Condition] = field(default_factory=list)

    def get(self, cond_type: str) -> Condition | None:
        for cond in self.items:
            if cond.type == cond_type:
                return cond
        return None

    def set(self, cond: Condition) -> None:
        """Insert or replace *cond*.

        The previous ``last_transition_time`` is kept when the status does
        not change, so repeated passes do not look like transitions.
        """
        for i, existing in enumerate(self.items):
            if existing.type == cond.type:
                if existing.status == cond.status:
                    cond.last_transition_time = existing.last_transition_time
                self.items[i] = cond
                return
        self.items.append(cond)

    def mark_true(self, cond_type: str, message: str = "") -> None:
        self.set(Condition(cond_type, ConditionStatus.TRUE, Reason.READY, Severity.NONE, message))

    def mark_false(self, cond_type: str, reason: str, severity: Severity, message: str = "") -> None:
        self.set(Condition(cond_type, ConditionStatus.FALSE, reason, severity, message))

    def mark_unknown(self, cond_type: str, reason: str = Reason.INIT, message: str = "") -> None:
        self.set(Condition(cond_type, ConditionStatus.UNKNOWN, reason, Severity.NONE, message))

    def is_true(self, cond_type: str) -> bool:
        cond = self.get(cond_type)
        return cond is not None and cond.status == ConditionStatus.TRUE

    def is_false(self, cond_type: str) -> bool:
        cond = self.get(cond_type)
        return cond is not None and cond.status == ConditionStatus.FALSE

    def is_unknown(self, cond_type: str) -> bool:
        cond = self.get(cond_type)
        return cond is None or cond.status == ConditionStatus.UNKNOWN

    def is_error(self, cond_type: str) -> bool:
        cond = self.get(cond_type)
        return cond is not None and cond.is_error()
