"""fleetguard: phased configuration rollout with shared-credential guarding."""

__version__ = "0.1.0"
