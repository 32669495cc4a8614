"""fleetguard command-line interface."""

from __future__ import annotations

import asyncio
from pathlib import Path

import click

from fleetguard import __version__
from fleetguard.credentials.guard import GuardMarkerError, guard_id, guard_marker
from fleetguard.fingerprint import fingerprint
from fleetguard.rollout.validation import ValidationError, resolve_node_limit


@click.group()
@click.version_option(version=__version__, prog_name="fleetguard")
def cli() -> None:
    """fleetguard - phased configuration rollout with credential guards."""


@cli.command()
def serve() -> None:
    """Run the reconcile loop and the REST API until interrupted.

    Configuration is read from FLEETGUARD_* environment variables.
    """
    from fleetguard.app import main

    asyncio.run(main())


@cli.command("guard-id")
@click.argument("node_group")
@click.option("--service", "-s", default="", help="Print the full guard marker for this service.")
@click.option("--prefix", default="nodegroup.fleet", show_default=True, help="Guard marker prefix.")
def guard_id_cmd(node_group: str, service: str, prefix: str) -> None:
    """Print the guard ID of NODE_GROUP, or its marker for a service."""
    gid = guard_id(node_group)
    if not service:
        click.echo(gid)
        return
    try:
        click.echo(guard_marker(prefix, gid, service))
    except GuardMarkerError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("fingerprint")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def fingerprint_cmd(path: Path) -> None:
    """Print the SHA-256 change fingerprint of a file's bytes."""
    click.echo(fingerprint(path.read_bytes()))


@cli.command("check-limit")
@click.argument("expression")
@click.argument("nodes", nargs=-1)
@click.option("--group", "-g", default="", help="Node group name; matching it selects every node.")
def check_limit(expression: str, nodes: tuple[str, ...], group: str) -> None:
    """Validate a node-limit EXPRESSION and print the NODES it selects."""
    try:
        selected = resolve_node_limit(expression, nodes, group)
    except ValidationError as exc:
        raise click.ClickException(str(exc)) from exc
    for node in selected:
        click.echo(node)
