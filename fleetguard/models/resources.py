"""Base record type shared by every persisted fleetguard object."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, ClassVar


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(kw_only=True)
class Resource:
    """A named, namespaced, versioned record.

    ``resource_version`` is owned by the record store and bumped on every
    write; callers hand back the version they read so stale writes can be
    rejected.  ``generation`` only moves when one of ``spec_fields`` changes.
    ``finalizers`` block deletion: a delete stamps ``deleted_at`` and the
    record is purged once the last finalizer is removed.
    """

    kind: ClassVar[str] = "Resource"
    spec_fields: ClassVar[tuple[str, ...]] = ()

    name: str
    namespace: str = "default"
    resource_version: int = 0
    generation: int = 1
    created_at: datetime = field(default_factory=utcnow)
    labels: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    deleted_at: datetime | None = None
    owner: tuple[str, str] | None = None  # (kind, name) in the same namespace

    @property
    def key(self) -> tuple[str, str, str]:
        """Return the unique key for this record."""
        return (self.kind, self.namespace, self.name)

    @property
    def is_deleting(self) -> bool:
        return self.deleted_at is not None

    def spec_snapshot(self) -> tuple[Any, ...]:
        """Values of the fields whose change bumps ``generation``."""
        return tuple(getattr(self, name) for name in self.spec_fields)
