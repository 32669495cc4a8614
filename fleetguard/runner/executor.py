"""Job execution: the runner contract, the at-most-once dispatcher and a
local ansible-runner backed implementation.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import IO, Protocol

import structlog
import yaml

from fleetguard.models.config import RunnerConfig
from fleetguard.observability.metrics import job_dispatch_total
from fleetguard.runner.job import INLINE_PLAYBOOK, RUNNER_DIR, JobInputSpec, runner_args

_log = structlog.get_logger(component="runner")

SecretReader = Callable[[str, str], dict[str, str]]


class JobState(StrEnum):
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


@dataclass
class JobResult:
    """Observed state of one execution.

    FAILED is only reported once the retry budget is exhausted; a failed
    attempt that will be retried is still RUNNING.
    """

    state: JobState
    attempts: int = 0
    message: str = ""


class JobRunner(Protocol):
    def execute(self, spec: JobInputSpec) -> JobResult:
        """Start or poll the execution named ``spec.name``.

        Idempotent per (name, fingerprint); a different fingerprint replaces
        the previous execution.
        """
        ...

    def status(self, name: str) -> JobResult | None: ...

    def forget(self, name: str) -> None:
        """Drop the execution named *name*; later calls treat it as never run."""
        ...


@dataclass
class JobDispatch:
    result: JobResult
    fingerprint: str
    changed: bool


class JobDispatcher:
    """Applies the at-most-once-per-change rule in front of a JobRunner."""

    def __init__(self, runner: JobRunner) -> None:
        self._runner = runner

    def ensure(self, spec: JobInputSpec, recorded: str = "") -> JobDispatch:
        """Make sure the execution for *spec* exists and report its state.

        A job that already succeeded under this name is never run again, even
        if its inputs changed since.  Otherwise the runner is asked to execute
        *spec*, which re-executes only when the fingerprint differs from the
        running one.  ``changed`` tells the caller to record the new
        fingerprint.
        """
        existing = self._runner.status(spec.name)
        if existing is not None and existing.state == JobState.SUCCEEDED:
            return JobDispatch(result=existing, fingerprint=recorded or spec.fingerprint, changed=not recorded)

        result = self._runner.execute(spec)
        job_dispatch_total.labels(state=result.state.value).inc()
        changed = spec.fingerprint != recorded
        if changed and recorded:
            _log.info(
                "job_inputs_changed",
                job=spec.name,
                namespace=spec.namespace,
                previous=recorded[:12],
                current=spec.fingerprint[:12],
            )
        return JobDispatch(result=result, fingerprint=spec.fingerprint, changed=changed)

    def release(self, names: Iterable[str]) -> None:
        """Forget finished executions whose outcome the caller has persisted.

        Executions still running are left alone so their process is not cut
        short.
        """
        for name in names:
            result = self._runner.status(name)
            if result is not None and result.state != JobState.RUNNING:
                self._runner.forget(name)


class _LocalExecution:
    """One ansible-runner process tree for a job name, with retries."""

    def __init__(self, spec: JobInputSpec, private_data_dir: Path, command: str) -> None:
        self.spec = spec
        self.private_data_dir = private_data_dir
        self.command = command
        self.attempts = 0
        self.returncode: int | None = None
        self._proc: subprocess.Popen[bytes] | None = None
        self._output: IO[bytes] | None = None

    def launch(self) -> None:
        args = runner_args(self.spec, str(self.private_data_dir))
        args[0] = self.command
        env = {**os.environ, **self.spec.env}
        self._close_output()
        self._output = open(self.private_data_dir / f"attempt-{self.attempts + 1}.log", "wb")  # noqa: SIM115
        self._proc = subprocess.Popen(args, stdout=self._output, stderr=subprocess.STDOUT, env=env)
        self.attempts += 1
        _log.info(
            "job_launched",
            job=self.spec.name,
            namespace=self.spec.namespace,
            attempt=self.attempts,
            pid=self._proc.pid,
        )

    def poll(self) -> JobResult:
        if self.returncode == 0:
            return JobResult(JobState.SUCCEEDED, self.attempts)
        if self.returncode is not None:
            return self._failed()
        assert self._proc is not None
        rc = self._proc.poll()
        if rc is None:
            return JobResult(JobState.RUNNING, self.attempts)
        if rc == 0:
            self.returncode = 0
            self._close_output()
            _log.info("job_succeeded", job=self.spec.name, namespace=self.spec.namespace, attempts=self.attempts)
            return JobResult(JobState.SUCCEEDED, self.attempts)
        _log.warning(
            "job_attempt_failed",
            job=self.spec.name,
            namespace=self.spec.namespace,
            attempt=self.attempts,
            returncode=rc,
        )
        if self.attempts <= self.spec.backoff_limit:
            self.launch()
            return JobResult(JobState.RUNNING, self.attempts, f"retrying after exit code {rc}")
        self.returncode = rc
        self._close_output()
        return self._failed()

    def _failed(self) -> JobResult:
        return JobResult(
            JobState.FAILED,
            self.attempts,
            f"execution {self.spec.name} reached the retry limit ({self.attempts} attempts, exit code {self.returncode})",
        )

    def terminate(self) -> None:
        if self._proc is not None and self._proc.poll() is None:
            self._proc.terminate()
            try:
                self._proc.wait(timeout=10)
            except subprocess.TimeoutExpired:
                self._proc.kill()
                self._proc.wait()
        self._close_output()

    def _close_output(self) -> None:
        if self._output is not None:
            self._output.close()
            self._output = None


class AnsibleRunnerJobRunner:
    """Runs jobs as local ``ansible-runner`` processes.

    Each execution gets its own private data directory under the configured
    work dir, laid out the way ansible-runner expects::

        env/extravars  env/cmdline  project/playbook.yaml  inventory/hosts

    Mounts whose path lies under ``/runner`` are materialised from secrets
    through *secret_reader*.  Processes are started without blocking and
    polled on every ``execute`` call.
    """

    def __init__(self, config: RunnerConfig, secret_reader: SecretReader | None = None) -> None:
        self._config = config
        self._secret_reader = secret_reader
        self._executions: dict[str, _LocalExecution] = {}
        self._work_dir = Path(config.work_dir)

    def status(self, name: str) -> JobResult | None:
        execution = self._executions.get(name)
        if execution is None:
            return None
        return execution.poll()

    def execute(self, spec: JobInputSpec) -> JobResult:
        execution = self._executions.get(spec.name)
        if execution is not None and execution.spec.fingerprint == spec.fingerprint:
            return execution.poll()
        if execution is not None:
            _log.info("job_replaced", job=spec.name, namespace=spec.namespace)
            execution.terminate()
        private_data_dir = self._prepare(spec)
        execution = _LocalExecution(spec, private_data_dir, self._config.command)
        execution.launch()
        self._executions[spec.name] = execution
        return execution.poll()

    def forget(self, name: str) -> None:
        execution = self._executions.pop(name, None)
        if execution is None:
            return
        execution.terminate()
        # Logs of failed executions stay until the job name is reused.
        if execution.returncode == 0:
            shutil.rmtree(execution.private_data_dir, ignore_errors=True)
        _log.debug("job_forgotten", job=name, namespace=execution.spec.namespace)

    def shutdown(self) -> None:
        for execution in self._executions.values():
            execution.terminate()

    def _prepare(self, spec: JobInputSpec) -> Path:
        root = self._work_dir / spec.namespace / spec.name
        if root.exists():
            shutil.rmtree(root)
        (root / "env").mkdir(parents=True)
        (root / "project").mkdir()
        (root / "inventory").mkdir()

        (root / "env" / "extravars").write_text(yaml.safe_dump(spec.extra_vars, sort_keys=True))
        if spec.cmdline:
            (root / "env" / "cmdline").write_text(spec.cmdline)
        if spec.playbook_contents:
            (root / "project" / INLINE_PLAYBOOK).write_text(spec.playbook_contents)
        (root / "inventory" / "hosts").write_text(yaml.safe_dump(spec.inventory, sort_keys=True))

        for mount in spec.mounts:
            self._write_mount(root, spec, mount.secret_name, mount.key, mount.mount_path)
        return root

    def _write_mount(self, root: Path, spec: JobInputSpec, secret_name: str, key: str, mount_path: str) -> None:
        if not mount_path.startswith(RUNNER_DIR + "/"):
            _log.debug("mount_skipped", job=spec.name, secret=secret_name, path=mount_path)
            return
        if self._secret_reader is None:
            _log.warning("mount_without_secret_reader", job=spec.name, secret=secret_name)
            return
        data = self._secret_reader(spec.namespace, secret_name)
        target = root / mount_path[len(RUNNER_DIR) + 1 :]
        if key:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(data.get(key, ""))
            return
        target.mkdir(parents=True, exist_ok=True)
        for item, value in data.items():
            (target / item).write_text(value)
