"""Completion sequence numbers.

Rollout outcomes are ordered by the sequence number handed out when they
finish, not by wall-clock creation time.  One SequenceCounter record per
namespace holds the last value; concurrent callers serialise through its
resource version.
"""

from __future__ import annotations

from fleetguard.models.fleet import SequenceCounter
from fleetguard.store.base import RecordStore, get_or_none, retry_on_conflict

COUNTER_NAME = "rollout-completions"


class Sequencer:
    def __init__(self, store: RecordStore, conflict_retries: int = 5) -> None:
        self._store = store
        self._retries = conflict_retries

    def next(self, namespace: str) -> int:
        """Return the next completion number for *namespace*, starting at 1."""

        def attempt() -> int:
            counter = get_or_none(self._store, SequenceCounter, namespace, COUNTER_NAME)
            if counter is None:
                self._store.create(SequenceCounter(name=COUNTER_NAME, namespace=namespace, value=1))
                return 1
            counter.value += 1
            self._store.update(counter)
            return counter.value

        return retry_on_conflict(attempt, self._retries, kind=SequenceCounter.kind)
