"""SHA-256 fingerprints over bytes, JSON-able values and credential secrets."""

from __future__ import annotations

import dataclasses
import datetime
import hashlib
import json
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from fleetguard.models.fleet import Secret


class FingerprintError(Exception):
    """Raised when an input cannot be serialized for fingerprinting."""


def fingerprint(data: bytes | str) -> str:
    """Return the hex SHA-256 digest of *data* (str is UTF-8 encoded)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    if isinstance(value, (datetime.date, datetime.time)):
        return value.isoformat()
    raise TypeError(f"unsupported value of type {type(value).__name__}")


def canonical_json(value: Any) -> str:
    """Serialize *value* with sorted keys and compact separators."""
    try:
        return json.dumps(
            value,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
            default=_json_default,
        )
    except (TypeError, ValueError) as exc:
        raise FingerprintError(f"cannot serialize value for fingerprint: {exc}") from exc


def fingerprint_object(value: Any) -> str:
    return fingerprint(canonical_json(value))


def combine(parts: Mapping[str, str]) -> str:
    """Fold several sub-fingerprints into one.

    The mapping is serialized as canonical JSON, so the result does not
    depend on the order it was built in and no two mappings collide.
    """
    return fingerprint_object(dict(parts))


def credential_fingerprint(secrets: Iterable[Secret]) -> str:
    """Fingerprint the content of the secrets a service's credentials live in.

    Returns ``""`` when there are no secrets, which callers treat as "nothing
    observed yet".
    """
    parts = {secret.name: fingerprint_object(secret.data) for secret in secrets}
    if not parts:
        return ""
    return combine(parts)
