"""Result of a single reconciliation pass."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ReconcileOutcome:
    """What the scheduling loop should do after a pass.

    ``requeue_after`` asks for another pass after that many seconds.
    ``error`` marks a failed pass, which is retried with per-key backoff.
    An empty outcome means "done until something relevant changes".
    """

    requeue_after: float | None = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.error
