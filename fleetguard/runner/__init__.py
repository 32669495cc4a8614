"""Job input bundles and job execution."""

from fleetguard.runner.executor import (
    AnsibleRunnerJobRunner,
    JobDispatch,
    JobDispatcher,
    JobResult,
    JobRunner,
    JobState,
)
from fleetguard.runner.job import (
    JobInputSpec,
    build_job_input,
    execution_name,
    fingerprint_job,
    format_cmdline,
)

__all__ = [
    "AnsibleRunnerJobRunner",
    "JobDispatch",
    "JobDispatcher",
    "JobInputSpec",
    "JobResult",
    "JobRunner",
    "JobState",
    "build_job_input",
    "execution_name",
    "fingerprint_job",
    "format_cmdline",
]
