"""fleetguard command-line interface.

Exposes:
    cli -- Click group entry point (registered as ``fleetguard`` script).
"""

from fleetguard.cli.main import cli

__all__ = ["cli"]
