"""Configuration loading from environment variables."""

from __future__ import annotations

import os
import re

from fleetguard.models.config import (
    DEFAULT_RUNNER_IMAGE,
    APIConfig,
    FleetGuardConfig,
    GuardConfig,
    LogConfig,
    RolloutConfig,
    RunnerConfig,
    StoreConfig,
)
from fleetguard.observability.logging import LOG_FORMATS

_DNS_SUBDOMAIN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"FLEETGUARD_{key}", default)


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    val = int(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def _validate_guard_prefix(value: str) -> str:
    # Marker is <prefix>/<8 hex>-<service> and must stay within 63 characters.
    if not _DNS_SUBDOMAIN.match(value) or len(value) > 40:
        raise ValueError(f"Invalid guard prefix: {value}")
    return value


def _validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log level: {value}. Must be one of {valid}")
    return value.lower()


def _validate_log_format(value: str) -> str:
    if value.lower() not in LOG_FORMATS:
        raise ValueError(f"Invalid log format: {value}. Must be one of {LOG_FORMATS}")
    return value.lower()


def load_config() -> FleetGuardConfig:
    """Load configuration from FLEETGUARD_* environment variables."""
    return FleetGuardConfig(
        guard=GuardConfig(
            prefix=_validate_guard_prefix(_env("GUARD_PREFIX", "nodegroup.fleet")),
        ),
        rollout=RolloutConfig(
            requeue_seconds=_env_int("REQUEUE_SECONDS", 15, min_val=1, max_val=600),
            backoff_limit=_env_int("BACKOFF_LIMIT", 6, min_val=0, max_val=20),
            conflict_retries=_env_int("CONFLICT_RETRIES", 5, min_val=1, max_val=20),
        ),
        runner=RunnerConfig(
            command=_env("RUNNER_COMMAND", "ansible-runner"),
            work_dir=_env("RUNNER_WORK_DIR", "/tmp/fleetguard-runner"),
            image=_env("RUNNER_IMAGE", DEFAULT_RUNNER_IMAGE),
        ),
        store=StoreConfig(
            manifest_dir=_env("MANIFEST_DIR", ""),
        ),
        api=APIConfig(
            port=_env_int("API_PORT", 8080, min_val=1024, max_val=65535),
        ),
        log=LogConfig(
            level=_validate_log_level(_env("LOG_LEVEL", "info")),
            format=_validate_log_format(_env("LOG_FORMAT", "json")),
        ),
    )
