"""Change-fingerprint engine.

Deterministic SHA-256 digests used to decide whether a unit of work must be
re-executed and whether credential material has rotated.
"""

from fleetguard.fingerprint.engine import (
    FingerprintError,
    combine,
    credential_fingerprint,
    fingerprint,
    fingerprint_object,
)

__all__ = [
    "FingerprintError",
    "combine",
    "credential_fingerprint",
    "fingerprint",
    "fingerprint_object",
]
