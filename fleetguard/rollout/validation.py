"""Field-level validation for rollout requests and node group edits."""

from __future__ import annotations

import fnmatch
import re
from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum

from fleetguard.models.fleet import NodeGroup
from fleetguard.models.resources import Resource
from fleetguard.models.rollout import RolloutRequest

MAX_LABEL_LENGTH = 63

_RFC1123_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_GLOB_BODY = re.compile(r"^[A-Za-z0-9_.\-*?\[\]]+$")


class ValidationError(ValueError):
    """A malformed request.  Never retried until the request changes."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


def validate_name(name: str, what: str = "name") -> None:
    if len(name) > MAX_LABEL_LENGTH:
        raise ValidationError([f"{what} {name!r} must be no more than {MAX_LABEL_LENGTH} characters"])
    if not _RFC1123_LABEL.match(name):
        raise ValidationError(
            [
                f"{what} {name!r} must consist of lower case alphanumeric characters or '-', "
                "and must start and end with an alphanumeric character"
            ]
        )


# ---------------------------------------------------------------------------
# Node limit expressions
# ---------------------------------------------------------------------------


class LimitOp(StrEnum):
    INCLUDE = "include"
    INTERSECT = "intersect"
    EXCLUDE = "exclude"


@dataclass(frozen=True)
class LimitPattern:
    op: LimitOp
    pattern: str
    regex: re.Pattern[str] | None = None

    def matches(self, name: str) -> bool:
        if self.regex is not None:
            return self.regex.search(name) is not None
        return fnmatch.fnmatchcase(name, self.pattern)


def _split_limit(expr: str) -> list[str]:
    # ',' wins; ':' is the legacy separator and is never split inside a regex.
    if "," in expr:
        return [p.strip() for p in expr.split(",")]
    if expr.lstrip("!&").startswith("~"):
        return [expr.strip()]
    return [p.strip() for p in expr.split(":")]


def parse_node_limit(expr: str) -> list[LimitPattern]:
    """Parse an ansible ``--limit`` expression.

    Supports ``,`` or ``:`` separated patterns, ``!`` exclusion, ``&``
    intersection, ``*``/``?``/``[...]`` globs and ``~regex``.  Empty
    patterns between separators are ignored.  Raises ValidationError on a
    malformed pattern.
    """
    patterns: list[LimitPattern] = []
    errors: list[str] = []
    for raw in _split_limit(expr):
        if not raw:
            continue
        op = LimitOp.INCLUDE
        body = raw
        if body.startswith("!"):
            op, body = LimitOp.EXCLUDE, body[1:]
        elif body.startswith("&"):
            op, body = LimitOp.INTERSECT, body[1:]
        if not body:
            errors.append(f"limit pattern {raw!r} is empty")
            continue
        if body.startswith("~"):
            try:
                patterns.append(LimitPattern(op, body, re.compile(body[1:])))
            except re.error as exc:
                errors.append(f"limit pattern {raw!r} is not a valid regular expression: {exc}")
            continue
        if not _GLOB_BODY.match(body):
            errors.append(f"limit pattern {raw!r} contains invalid characters")
            continue
        patterns.append(LimitPattern(op, body))
    if errors:
        raise ValidationError(errors)
    return patterns


def resolve_node_limit(expr: str, nodes: Iterable[str], group: str = "") -> list[str]:
    """Return the nodes *expr* selects, in input order.

    An empty expression selects every node.  A pattern matching ``all`` or
    the node group's own name selects the whole group.  With no include
    patterns, exclusions and intersections apply to every node.
    """
    nodes = list(nodes)
    patterns = parse_node_limit(expr) if expr else []
    if not patterns:
        return nodes

    def selects(pattern: LimitPattern, node: str) -> bool:
        if pattern.pattern == "all":
            return True
        if group and pattern.matches(group):
            return True
        return pattern.matches(node)

    includes = [p for p in patterns if p.op == LimitOp.INCLUDE]
    selected = [n for n in nodes if not includes or any(selects(p, n) for p in includes)]
    for pattern in patterns:
        if pattern.op == LimitOp.INTERSECT:
            selected = [n for n in selected if selects(pattern, n)]
        elif pattern.op == LimitOp.EXCLUDE:
            selected = [n for n in selected if not selects(pattern, n)]
    return selected


# ---------------------------------------------------------------------------
# Request and node group checks
# ---------------------------------------------------------------------------


def validate_rollout_request(request: RolloutRequest) -> None:
    """Raise ValidationError listing every problem with *request*."""
    errors: list[str] = []

    def check(name: str, what: str) -> None:
        try:
            validate_name(name, what)
        except ValidationError as exc:
            errors.extend(exc.errors)

    check(request.name, "rollout name")
    if not request.node_groups:
        errors.append("rollout must target at least one node group")
    seen: set[str] = set()
    for group in request.node_groups:
        check(group, "node group")
        if group in seen:
            errors.append(f"node group {group!r} is listed more than once")
        seen.add(group)
    for service in request.services_override:
        check(service, "service")
    if request.node_limit:
        try:
            parse_node_limit(request.node_limit)
        except ValidationError as exc:
            errors.extend(exc.errors)
    if request.backoff_limit is not None and request.backoff_limit < 0:
        errors.append("backoff_limit must not be negative")
    if request.requeue_seconds is not None and request.requeue_seconds < 1:
        errors.append("requeue_seconds must be at least 1")
    if errors:
        raise ValidationError(errors)


def ensure_node_group_mutable(node_group: NodeGroup) -> None:
    """Refuse edits while a rollout recorded on the node group is unfinished."""
    for request_name, entry in node_group.status.rollout_statuses.items():
        if not entry.is_finished:
            raise ValidationError(
                [f"node group {node_group.name} cannot be changed while rollout {request_name} is {entry.state.value}"]
            )


def admit(current: Resource | None, new: Resource) -> None:
    """Store admission check for rollout requests and node groups.

    Node group status writes are always admitted; only edits that change
    the node group's spec are refused while a rollout is unfinished.
    """
    if isinstance(new, RolloutRequest):
        if current is None or current.spec_snapshot() != new.spec_snapshot():
            validate_rollout_request(new)
    elif isinstance(new, NodeGroup):
        if current is None:
            validate_name(new.name, "node group")
        elif isinstance(current, NodeGroup) and current.spec_snapshot() != new.spec_snapshot():
            ensure_node_group_mutable(current)
