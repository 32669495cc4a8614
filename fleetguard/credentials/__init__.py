"""Shared credential identity resolution and guard markers."""

from fleetguard.credentials.guard import (
    CredentialGuardManager,
    GuardMarkerError,
    GuardReport,
    guard_id,
    guard_marker,
)
from fleetguard.credentials.identity import (
    IdentityNotFoundError,
    IdentityResolver,
    get_resolver,
    register_resolver,
    tracked_service_kinds,
)

__all__ = [
    "CredentialGuardManager",
    "GuardMarkerError",
    "GuardReport",
    "IdentityNotFoundError",
    "IdentityResolver",
    "get_resolver",
    "guard_id",
    "guard_marker",
    "register_resolver",
    "tracked_service_kinds",
]
