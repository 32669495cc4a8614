"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field

DEFAULT_RUNNER_IMAGE = "quay.io/fleetguard/ansible-runner:latest"


@dataclass
class GuardConfig:
    """Credential guard configuration."""

    prefix: str = "nodegroup.fleet"


@dataclass
class RolloutConfig:
    """Rollout reconciliation configuration."""

    requeue_seconds: int = 15
    backoff_limit: int = 6
    conflict_retries: int = 5


@dataclass
class RunnerConfig:
    """Local job runner configuration."""

    command: str = "ansible-runner"
    work_dir: str = "/tmp/fleetguard-runner"
    image: str = DEFAULT_RUNNER_IMAGE


@dataclass
class StoreConfig:
    """Record store seeding configuration."""

    manifest_dir: str = ""


@dataclass
class APIConfig:
    """REST API configuration."""

    port: int = 8080


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"
    format: str = "json"


@dataclass
class FleetGuardConfig:
    """Top-level fleetguard configuration."""

    guard: GuardConfig = field(default_factory=GuardConfig)
    rollout: RolloutConfig = field(default_factory=RolloutConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    api: APIConfig = field(default_factory=APIConfig)
    log: LogConfig = field(default_factory=LogConfig)
