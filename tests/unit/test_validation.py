"""Tests for rollout request validation and node limit expressions."""

from __future__ import annotations

import pytest

from fleetguard.models.fleet import NodeGroup
from fleetguard.models.rollout import NodeGroupRolloutState, NodeGroupRolloutStatus, RolloutRequest
from fleetguard.rollout.validation import (
    LimitOp,
    ValidationError,
    admit,
    ensure_node_group_mutable,
    parse_node_limit,
    resolve_node_limit,
    validate_name,
    validate_rollout_request,
)

_NODES = ["compute-0", "compute-1", "compute-2", "networker-0"]

# ---------------------------------------------------------------------------
# Names
# ---------------------------------------------------------------------------


class TestValidateName:
    @pytest.mark.parametrize("name", ["compute", "edpm-compute-0", "a", "a" * 63])
    def test_valid(self, name: str) -> None:
        validate_name(name)

    @pytest.mark.parametrize("name", ["", "Compute", "-compute", "compute-", "comp_ute", "a" * 64])
    def test_invalid(self, name: str) -> None:
        with pytest.raises(ValidationError):
            validate_name(name)


# ---------------------------------------------------------------------------
# Node limit parsing
# ---------------------------------------------------------------------------


class TestParseNodeLimit:
    def test_operators(self) -> None:
        patterns = parse_node_limit("compute-*,!compute-2,&*-1")
        assert [p.op for p in patterns] == [LimitOp.INCLUDE, LimitOp.EXCLUDE, LimitOp.INTERSECT]

    def test_colon_separator(self) -> None:
        assert [p.pattern for p in parse_node_limit("compute-0:compute-1")] == ["compute-0", "compute-1"]

    def test_empty_segments_ignored(self) -> None:
        assert len(parse_node_limit("compute-0,,compute-1,")) == 2

    @pytest.mark.parametrize("expr", ["!", "~[unclosed", "compute 0", "node$"])
    def test_malformed(self, expr: str) -> None:
        with pytest.raises(ValidationError):
            parse_node_limit(expr)


class TestResolveNodeLimit:
    @pytest.mark.parametrize(
        ("expr", "expected"),
        [
            ("", _NODES),
            ("all", _NODES),
            ("compute-0", ["compute-0"]),
            ("compute-*", ["compute-0", "compute-1", "compute-2"]),
            ("compute-*,!compute-1", ["compute-0", "compute-2"]),
            ("compute-*,&*-1", ["compute-1"]),
            ("!networker-0", ["compute-0", "compute-1", "compute-2"]),
            ("~^compute-[02]$", ["compute-0", "compute-2"]),
            ("compute-?", ["compute-0", "compute-1", "compute-2"]),
            ("missing", []),
        ],
    )
    def test_selection(self, expr: str, expected: list[str]) -> None:
        assert resolve_node_limit(expr, _NODES) == expected

    def test_group_name_selects_all(self) -> None:
        """Naming the node group targets every node in it."""
        assert resolve_node_limit("edpm-compute", _NODES, group="edpm-compute") == _NODES


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class TestValidateRolloutRequest:
    def test_valid_request(self) -> None:
        validate_rollout_request(RolloutRequest(name="r1", node_groups=["compute"], node_limit="compute-0"))

    def test_collects_every_problem(self) -> None:
        """All errors are reported at once."""
        request = RolloutRequest(
            name="Bad_Name",
            node_groups=["compute", "compute"],
            node_limit="~(",
            backoff_limit=-1,
        )
        with pytest.raises(ValidationError) as excinfo:
            validate_rollout_request(request)
        assert len(excinfo.value.errors) == 4

    def test_no_node_groups(self) -> None:
        with pytest.raises(ValidationError, match="at least one node group"):
            validate_rollout_request(RolloutRequest(name="r1"))


# ---------------------------------------------------------------------------
# Node group edits
# ---------------------------------------------------------------------------


def _group(*states: NodeGroupRolloutState, terminal: bool = False) -> NodeGroup:
    group = NodeGroup(name="compute")
    for i, state in enumerate(states):
        group.status.rollout_statuses[f"r{i}"] = NodeGroupRolloutStatus(state=state, terminal=terminal)
    return group


class TestNodeGroupMutability:
    def test_running_rollout_blocks(self) -> None:
        with pytest.raises(ValidationError, match="cannot be changed"):
            ensure_node_group_mutable(_group(NodeGroupRolloutState.READY, NodeGroupRolloutState.RUNNING))

    def test_finished_rollouts_allow(self) -> None:
        ensure_node_group_mutable(_group(NodeGroupRolloutState.READY))
        ensure_node_group_mutable(_group(NodeGroupRolloutState.FAILED, terminal=True))

    def test_retryable_failure_blocks(self) -> None:
        """A failure that will be retried is still an unfinished rollout."""
        with pytest.raises(ValidationError):
            ensure_node_group_mutable(_group(NodeGroupRolloutState.FAILED))


class TestAdmit:
    def test_rollout_create_validated(self) -> None:
        with pytest.raises(ValidationError):
            admit(None, RolloutRequest(name="r1"))

    def test_rollout_status_write_not_revalidated(self) -> None:
        """Status writes to an already stored request are admitted as is."""
        request = RolloutRequest(name="r1")
        updated = RolloutRequest(name="r1")
        updated.status.error = "x"
        admit(request, updated)

    def test_node_group_spec_edit_blocked_while_running(self) -> None:
        current = _group(NodeGroupRolloutState.RUNNING)
        edited = NodeGroup(name="compute", services=["nova"])
        with pytest.raises(ValidationError):
            admit(current, edited)

    def test_node_group_status_write_allowed_while_running(self) -> None:
        current = _group(NodeGroupRolloutState.RUNNING)
        updated = _group(NodeGroupRolloutState.RUNNING)
        updated.status.guard_id = "b04a12f6"
        admit(current, updated)
