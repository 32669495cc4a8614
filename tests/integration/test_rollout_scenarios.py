"""End-to-end rollout scenarios through the aggregator and node group reconciler."""

from __future__ import annotations

import pytest

from fleetguard.models.conditions import ConditionStatus, ConditionType, Reason, Severity
from fleetguard.models.fleet import Node
from fleetguard.models.rollout import NodeGroupRolloutState, RolloutPhase
from fleetguard.rollout.validation import ValidationError
from fleetguard.store.memory import InMemoryRecordStore

from .conftest import Fleet, ScriptedRunner, build_fleet

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _compute_fleet(fleet: Fleet) -> None:
    fleet.add_service("bootstrap")
    fleet.add_service("nova")
    fleet.add_node_group("compute", ["c0", "c1"], ["bootstrap", "nova"])
    fleet.set_cell_credential("nova-cell1")
    fleet.add_credential("nova-cell1")


def _deploy(fleet: Fleet, request: str, jobs: list[str]) -> None:
    """Reconcile *request*, completing each job as it starts."""
    for job in jobs:
        fleet.reconcile_rollout(request)
        fleet.runner.succeed(job)
    fleet.reconcile_rollout(request)


# ---------------------------------------------------------------------------
# Single request
# ---------------------------------------------------------------------------


class TestSingleRollout:
    def test_services_run_in_order(self, fleet: Fleet) -> None:
        """The second service starts only after the first succeeded."""
        _compute_fleet(fleet)
        fleet.request("r1", ["compute"])

        outcome = fleet.reconcile_rollout("r1")

        assert outcome.requeue_after == 15
        assert fleet.runner.running() == ["bootstrap-r1-compute"]
        assert fleet.rollout("r1").status.phase == RolloutPhase.RUNNING

    def test_request_becomes_ready(self, fleet: Fleet) -> None:
        """All services succeeding marks the request deployed with a completion sequence."""
        _compute_fleet(fleet)
        fleet.request("r1", ["compute"])

        _deploy(fleet, "r1", ["bootstrap-r1-compute", "nova-r1-compute"])

        status = fleet.rollout("r1").status
        assert status.deployed is True
        assert status.phase == RolloutPhase.READY
        assert status.conditions.is_true(ConditionType.READY)
        assert status.node_groups["compute"].state == NodeGroupRolloutState.READY
        assert status.node_groups["compute"].services_ready == ["bootstrap", "nova"]
        assert status.completion_sequence > status.node_groups["compute"].completion_sequence > 0

    def test_successful_job_records_adoption(self, fleet: Fleet) -> None:
        """A succeeded credential-bearing job marks the limit-selected nodes updated."""
        _compute_fleet(fleet)
        fleet.request("r1", ["compute"], node_limit="c0")

        _deploy(fleet, "r1", ["bootstrap-r1-compute", "nova-r1-compute"])

        record = fleet.tracking.get(fleet.node_group("compute"), "nova")
        assert record.credential_fingerprint == fleet.live_fingerprint()
        assert record.updated_nodes == ["c0"]

    def test_node_group_reconcile_adds_guard_marker(self, fleet: Fleet) -> None:
        """After the rollout the node group pass protects the credential in use."""
        _compute_fleet(fleet)
        fleet.request("r1", ["compute"])
        _deploy(fleet, "r1", ["bootstrap-r1-compute", "nova-r1-compute"])

        outcome = fleet.reconcile_node_group("compute")

        assert outcome.ok
        assert fleet.markers("nova-cell1") == [fleet.marker("compute", "nova")]
        ng = fleet.node_group("compute")
        assert ng.status.conditions.is_true(ConditionType.NODE_GROUP_DEPLOYMENT_READY)
        assert ng.status.deployed_config_fingerprint == ng.status.config_fingerprint

    def test_ready_request_is_not_reconciled_again(self, fleet: Fleet) -> None:
        """A deployed request short-circuits and launches nothing."""
        _compute_fleet(fleet)
        fleet.request("r1", ["compute"])
        _deploy(fleet, "r1", ["bootstrap-r1-compute", "nova-r1-compute"])
        launches = len(fleet.runner.launches)

        outcome = fleet.reconcile_rollout("r1")

        assert outcome.ok and outcome.requeue_after is None
        assert len(fleet.runner.launches) == launches

    def test_changed_inputs_replace_running_job(self, fleet: Fleet) -> None:
        """Editing the request while a job runs re-dispatches it with new inputs."""
        _compute_fleet(fleet)
        fleet.request("r1", ["compute"])
        fleet.reconcile_rollout("r1")
        request = fleet.rollout("r1")
        request.extra_vars = {"edpm_debug": True}
        fleet.store.update(request)

        fleet.reconcile_rollout("r1")

        names = [spec.name for spec in fleet.runner.launches]
        assert names == ["bootstrap-r1-compute", "bootstrap-r1-compute"]
        assert fleet.runner.launches[1].extra_vars["edpm_debug"] is True

    def test_rotation_after_job_success_is_not_recorded(self, fleet: Fleet) -> None:
        """Nodes are not marked for credentials the job never saw."""
        _compute_fleet(fleet)
        fleet.request("r1", ["compute"])
        fleet.reconcile_rollout("r1")
        fleet.runner.succeed("bootstrap-r1-compute")
        fleet.reconcile_rollout("r1")
        fleet.runner.succeed("nova-r1-compute")
        fleet.set_cell_credential("nova-cell1-v2")

        fleet.reconcile_rollout("r1")

        assert fleet.tracking.get(fleet.node_group("compute"), "nova").updated_nodes == []


# ---------------------------------------------------------------------------
# Latest outcome wins
# ---------------------------------------------------------------------------


class TestRolloutAggregation:
    def test_newer_terminal_failure_decides_condition(self, fleet: Fleet) -> None:
        """R1 succeeds, R2 with a service override fails for good: R2 decides."""
        _compute_fleet(fleet)
        fleet.request("r1", ["compute"])
        _deploy(fleet, "r1", ["bootstrap-r1-compute", "nova-r1-compute"])
        fleet.reconcile_node_group("compute")

        fleet.request("r2", ["compute"], services_override=["nova"])
        fleet.reconcile_rollout("r2")
        fleet.runner.fail("nova-r2-compute")
        outcome = fleet.reconcile_rollout("r2")
        fleet.reconcile_node_group("compute")

        assert outcome.ok
        ng = fleet.node_group("compute")
        assert set(ng.status.rollout_statuses) == {"r1", "r2"}
        assert ng.status.rollout_statuses["r1"].state == NodeGroupRolloutState.READY
        assert ng.status.rollout_statuses["r2"].state == NodeGroupRolloutState.FAILED
        ready = ng.status.conditions.get(ConditionType.READY)
        assert ready is not None
        assert ready.status == ConditionStatus.FALSE
        assert ready.reason == Reason.BACKOFF_LIMIT_EXCEEDED
        assert ready.severity == Severity.ERROR

    def test_running_newer_request_shows_in_progress(self, fleet: Fleet) -> None:
        """While R2 runs, the node group reports a deployment in progress."""
        _compute_fleet(fleet)
        fleet.request("r1", ["compute"])
        _deploy(fleet, "r1", ["bootstrap-r1-compute", "nova-r1-compute"])
        fleet.request("r2", ["compute"], services_override=["nova"])
        fleet.reconcile_rollout("r2")

        fleet.reconcile_node_group("compute")

        cond = fleet.node_group("compute").status.conditions.get(ConditionType.NODE_GROUP_DEPLOYMENT_READY)
        assert cond is not None
        assert cond.reason == Reason.REQUESTED
        assert cond.severity == Severity.INFO

    def test_newer_success_restores_ready(self, fleet: Fleet) -> None:
        """A later successful request overrides an earlier terminal failure."""
        _compute_fleet(fleet)
        fleet.request("r1", ["compute"], services_override=["nova"])
        fleet.reconcile_rollout("r1")
        fleet.runner.fail("nova-r1-compute")
        fleet.reconcile_rollout("r1")
        fleet.request("r2", ["compute"], services_override=["nova"])
        _deploy(fleet, "r2", ["nova-r2-compute"])

        fleet.reconcile_node_group("compute")

        assert fleet.node_group("compute").status.conditions.is_true(ConditionType.READY)

    def test_config_change_after_success(self, fleet: Fleet) -> None:
        """Adding a node after a rollout marks the group out of date."""
        _compute_fleet(fleet)
        fleet.request("r1", ["compute"])
        _deploy(fleet, "r1", ["bootstrap-r1-compute", "nova-r1-compute"])
        fleet.reconcile_node_group("compute")
        ng = fleet.node_group("compute")
        ng.nodes["c2"] = Node(hostname="c2.ctlplane")
        fleet.store.update(ng)

        fleet.reconcile_node_group("compute")

        cond = fleet.node_group("compute").status.conditions.get(ConditionType.NODE_GROUP_DEPLOYMENT_READY)
        assert cond is not None
        assert cond.reason == Reason.CONFIG_CHANGED


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestRolloutFailures:
    def test_terminal_failure_is_not_retried(self, fleet: Fleet) -> None:
        """A job that exhausted its retries fails the request for good."""
        _compute_fleet(fleet)
        fleet.request("r1", ["compute"])
        fleet.reconcile_rollout("r1")
        fleet.runner.fail("bootstrap-r1-compute")

        outcome = fleet.reconcile_rollout("r1")

        status = fleet.rollout("r1").status
        assert outcome.ok and outcome.requeue_after is None
        assert status.terminal_failure is True
        assert status.phase == RolloutPhase.FAILED
        assert status.error.startswith("nodeGroup: compute error: execution bootstrap-r1-compute")
        cond = status.conditions.get(ConditionType.DEPLOYMENT_READY)
        assert cond is not None
        assert cond.reason == Reason.BACKOFF_LIMIT_EXCEEDED
        assert cond.severity == Severity.ERROR

        launches = len(fleet.runner.launches)
        fleet.reconcile_rollout("r1")
        assert len(fleet.runner.launches) == launches

    def test_spec_change_revives_terminal_request(self, fleet: Fleet) -> None:
        """Changing a failed request's spec makes it reconcile again."""
        _compute_fleet(fleet)
        fleet.request("r1", ["compute"])
        fleet.reconcile_rollout("r1")
        fleet.runner.fail("bootstrap-r1-compute")
        fleet.reconcile_rollout("r1")
        request = fleet.rollout("r1")
        request.services_override = ["nova"]
        fleet.store.update(request)

        outcome = fleet.reconcile_rollout("r1")

        status = fleet.rollout("r1").status
        assert status.terminal_failure is False
        assert status.phase == RolloutPhase.RUNNING
        assert outcome.requeue_after == 15
        assert "nova-r1-compute" in fleet.runner.running()

    def test_errors_from_groups_are_concatenated(self, fleet: Fleet) -> None:
        """Per-group errors are joined into one request error and retried."""
        fleet.add_node_group("group-a", ["a0"], ["ghost"])
        fleet.add_node_group("group-b", ["b0"], ["ghost"])
        fleet.request("r1", ["group-a", "group-b"])

        outcome = fleet.reconcile_rollout("r1")

        expected = "nodeGroup: group-a error: service ghost not found & nodeGroup: group-b error: service ghost not found"
        assert outcome.error == expected
        status = fleet.rollout("r1").status
        assert status.error == expected
        assert status.terminal_failure is False
        cond = status.conditions.get(ConditionType.DEPLOYMENT_READY)
        assert cond is not None
        assert cond.reason == Reason.ERROR
        assert cond.severity == Severity.WARNING

    def test_missing_node_group_requeues(self, fleet: Fleet) -> None:
        """A request waits for its node groups to exist."""
        fleet.request("r1", ["compute"])

        outcome = fleet.reconcile_rollout("r1")

        assert outcome.requeue_after == 15
        status = fleet.rollout("r1").status
        cond = status.conditions.get(ConditionType.INPUT_READY)
        assert cond is not None
        assert cond.status == ConditionStatus.FALSE
        assert cond.reason == Reason.REQUESTED
        assert status.phase == RolloutPhase.PENDING

    def test_one_group_failing_does_not_block_the_other(self, fleet: Fleet) -> None:
        """The healthy group keeps deploying while the other reports an error."""
        fleet.add_service("bootstrap")
        fleet.add_node_group("group-a", ["a0"], ["ghost"])
        fleet.add_node_group("group-b", ["b0"], ["bootstrap"])
        fleet.request("r1", ["group-a", "group-b"])

        fleet.reconcile_rollout("r1")

        assert fleet.runner.running() == ["bootstrap-r1-group-b"]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestRolloutValidation:
    def test_store_rejects_invalid_request(self, fleet: Fleet) -> None:
        """Admission refuses a malformed request synchronously."""
        with pytest.raises(ValidationError):
            fleet.request("r1", [])

    def test_invalid_request_fails_without_running(self) -> None:
        """Without admission, the aggregator marks a malformed request failed for good."""
        fleet = build_fleet(InMemoryRecordStore(), ScriptedRunner())
        fleet.request("r1", ["compute"], node_limit="~[broken")

        outcome = fleet.reconcile_rollout("r1")

        status = fleet.rollout("r1").status
        assert outcome.ok
        assert status.phase == RolloutPhase.FAILED
        assert status.terminal_failure is True
        cond = status.conditions.get(ConditionType.INPUT_READY)
        assert cond is not None
        assert cond.reason == Reason.ERROR
        assert cond.severity == Severity.ERROR
        assert fleet.runner.launches == []

    def test_node_group_locked_while_rollout_runs(self, fleet: Fleet) -> None:
        """Node group edits are refused while a rollout on it is unfinished."""
        _compute_fleet(fleet)
        fleet.request("r1", ["compute"])
        fleet.reconcile_rollout("r1")
        fleet.reconcile_node_group("compute")
        ng = fleet.node_group("compute")
        ng.services = ["nova"]

        with pytest.raises(ValidationError):
            fleet.store.update(ng)

    def test_status_writes_allowed_while_locked(self, fleet: Fleet) -> None:
        """Only spec edits are refused; reconciler status writes still land."""
        _compute_fleet(fleet)
        fleet.request("r1", ["compute"])
        fleet.reconcile_rollout("r1")
        fleet.reconcile_node_group("compute")

        assert fleet.reconcile_node_group("compute").ok
        entry = fleet.node_group("compute").status.rollout_statuses["r1"]
        assert entry.state == NodeGroupRolloutState.RUNNING


# ---------------------------------------------------------------------------
# Job cleanup
# ---------------------------------------------------------------------------


class TestJobRelease:
    def test_jobs_released_once_request_is_ready(self, fleet: Fleet) -> None:
        _compute_fleet(fleet)
        fleet.request("r1", ["compute"])

        _deploy(fleet, "r1", ["bootstrap-r1-compute", "nova-r1-compute"])

        assert fleet.rollout("r1").status.deployed is True
        assert sorted(fleet.runner.forgotten) == ["bootstrap-r1-compute", "nova-r1-compute"]
        assert fleet.runner.results == {}

    def test_running_jobs_survive_terminal_failure(self, fleet: Fleet) -> None:
        """A terminal failure in one group does not cut another group's job short."""
        fleet.add_service("bootstrap")
        fleet.add_node_group("group-a", ["a0"], ["bootstrap"])
        fleet.add_node_group("group-b", ["b0"], ["bootstrap"])
        fleet.request("r1", ["group-a", "group-b"])
        fleet.reconcile_rollout("r1")
        fleet.runner.fail("bootstrap-r1-group-a")

        fleet.reconcile_rollout("r1")

        assert fleet.rollout("r1").status.terminal_failure is True
        assert fleet.runner.forgotten == ["bootstrap-r1-group-a"]
        assert fleet.runner.running() == ["bootstrap-r1-group-b"]

    def test_unfinished_request_keeps_jobs(self, fleet: Fleet) -> None:
        _compute_fleet(fleet)
        fleet.request("r1", ["compute"])
        fleet.reconcile_rollout("r1")
        fleet.runner.succeed("bootstrap-r1-compute")

        fleet.reconcile_rollout("r1")

        assert fleet.runner.forgotten == []
        assert fleet.runner.running() == ["nova-r1-compute"]
