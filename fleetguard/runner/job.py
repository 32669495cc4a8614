"""Job input bundle: what one service execution against a node group needs.

The bundle is what the job runner consumes and what the dispatcher
fingerprints to decide whether an execution must be replaced.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import yaml

from fleetguard.fingerprint import FingerprintError, combine, fingerprint, fingerprint_object
from fleetguard.models.fleet import Mount, NodeGroup, Service
from fleetguard.models.rollout import RolloutRequest

# Execution names are used as DNS labels by container runtimes.
MAX_NAME_LENGTH = 63
_SERVICE_PREFIX_LENGTH = MAX_NAME_LENGTH - 10

INLINE_PLAYBOOK = "playbook.yaml"
RUNNER_DIR = "/runner"

LABEL_SERVICE = "fleetguard.io/service"
LABEL_ROLLOUT = "fleetguard.io/rollout"
LABEL_NODE_GROUP = "fleetguard.io/nodegroup"


@dataclass
class JobInputSpec:
    name: str
    namespace: str
    labels: dict[str, str] = field(default_factory=dict)
    image: str = ""
    cmdline: str = ""
    extra_vars: dict[str, Any] = field(default_factory=dict)
    playbook: str = ""
    playbook_contents: str = ""
    role: str = ""
    inventory: dict[str, Any] = field(default_factory=dict)
    mounts: list[Mount] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    node_selector: dict[str, str] = field(default_factory=dict)
    backoff_limit: int = 6
    credential_fingerprint: str = ""
    fingerprint: str = ""


def execution_name(service: str, request: str, node_group: str = "") -> str:
    """Return the execution name ``<service>-<request>[-<nodegroup>]``.

    The service part is cut to leave room for the suffixes and the whole
    name is cut to 63 characters without a trailing ``-`` or ``.``.
    """
    name = f"{service[:_SERVICE_PREFIX_LENGTH]}-{request}"
    if node_group:
        name = f"{name}-{node_group}"
    if len(name) > MAX_NAME_LENGTH:
        name = name[:MAX_NAME_LENGTH].rstrip("-.")
    return name


def format_cmdline(tags: str = "", limit: str = "", skip_tags: str = "") -> str:
    args: list[str] = []
    if tags:
        args.append(f"--tags {tags}")
    if limit:
        args.append(f"--limit {limit}")
    if skip_tags:
        args.append(f"--skip-tags {skip_tags}")
    return " ".join(args)


def build_extra_vars(service: Service, request: RolloutRequest, node_group: str) -> dict[str, Any]:
    """Merge request variables with the host-targeting variables every play reads.

    Services deployed on every node group target ``all`` hosts instead of the
    node group's own inventory group.
    """
    extra_vars: dict[str, Any] = dict(request.extra_vars)
    extra_vars["fleet_override_hosts"] = "all" if service.deploy_on_all_node_groups else node_group
    extra_vars["fleet_service_type"] = service.credential_kind
    if request.services_override:
        extra_vars["fleet_services_override"] = list(request.services_override)
    return extra_vars


def build_inventory(node_groups: list[NodeGroup]) -> dict[str, Any]:
    """Render a YAML-style ansible inventory with one group per node group."""
    inventory: dict[str, Any] = {}
    for group in node_groups:
        hosts: dict[str, Any] = {}
        for node_name, node in group.nodes.items():
            hosts[node_name] = {"ansible_host": node.hostname or node_name, **node.vars}
        inventory[group.name] = {"hosts": hosts, "vars": dict(group.vars)}
    return inventory


def runner_args(spec: JobInputSpec, private_data_dir: str = RUNNER_DIR) -> list[str]:
    """Return the ansible-runner argument vector for *spec*.

    Raises FingerprintError when *spec* names no playbook, inline playbook
    or role, because there is nothing to execute or fingerprint.
    """
    if spec.playbook:
        param, artifact = "-p", spec.playbook
    elif spec.playbook_contents:
        param, artifact = "-p", INLINE_PLAYBOOK
    elif spec.role:
        param, artifact = "-r", spec.role
    else:
        raise FingerprintError(f"job {spec.name}: no playbook, playbook_contents or role specified")
    return ["ansible-runner", "run", private_data_dir, param, artifact, "-i", spec.name]


def render_extra_vars(extra_vars: dict[str, Any]) -> str:
    try:
        return yaml.safe_dump(extra_vars, sort_keys=True, default_flow_style=False)
    except yaml.YAMLError as exc:
        raise FingerprintError(f"cannot render extra vars: {exc}") from exc


def fingerprint_job(spec: JobInputSpec) -> str:
    """Fold the job's inputs into one fingerprint.

    Each present input contributes a sub-fingerprint: command line, extra
    vars, playbook source, pod spec, inventory and credentials.
    """
    parts: dict[str, str] = {}
    if spec.cmdline:
        parts["cmdline"] = fingerprint(spec.cmdline)
    if spec.extra_vars:
        parts["extraVars"] = fingerprint(render_extra_vars(spec.extra_vars))
    if spec.role:
        parts["role"] = fingerprint(spec.role)
    if spec.playbook_contents:
        parts["playbookContents"] = fingerprint(spec.playbook_contents)
    elif spec.playbook:
        parts["playbooks"] = fingerprint(spec.playbook)
    parts["podspec"] = fingerprint_object(
        {
            "image": spec.image,
            "args": runner_args(spec),
            "env": spec.env,
            "mounts": spec.mounts,
            "nodeSelector": spec.node_selector,
        }
    )
    if spec.inventory:
        parts["inventory"] = fingerprint_object(spec.inventory)
    if spec.credential_fingerprint:
        parts["credentials"] = spec.credential_fingerprint
    return combine(parts)


def build_job_input(
    service: Service,
    request: RolloutRequest,
    node_group: NodeGroup,
    *,
    inventory_groups: list[NodeGroup] | None = None,
    image: str,
    backoff_limit: int,
    credential_fingerprint: str = "",
) -> JobInputSpec:
    """Assemble and fingerprint the job bundle for one service on one node group.

    *inventory_groups* defaults to the node group itself; services deployed on
    every node group pass all of the request's groups.
    """
    suffix = "" if service.deploy_on_all_node_groups else node_group.name
    spec = JobInputSpec(
        name=execution_name(service.name, request.name, suffix),
        namespace=request.namespace,
        labels={
            LABEL_SERVICE: service.name,
            LABEL_ROLLOUT: request.name,
            LABEL_NODE_GROUP: node_group.name,
        },
        image=image,
        cmdline=format_cmdline(request.tags, request.node_limit, request.skip_tags),
        extra_vars={**service.extra_vars, **build_extra_vars(service, request, node_group.name)},
        playbook=service.playbook,
        playbook_contents=service.playbook_contents,
        role=service.role,
        inventory=build_inventory(inventory_groups or [node_group]),
        mounts=list(service.mounts),
        env=dict(service.env),
        node_selector=dict(request.job_node_selector),
        backoff_limit=backoff_limit,
        credential_fingerprint=credential_fingerprint,
    )
    spec.fingerprint = fingerprint_job(spec)
    return spec
