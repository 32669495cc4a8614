"""Tests for completion sequence numbering."""

from __future__ import annotations

import pytest

from fleetguard.models.fleet import SequenceCounter
from fleetguard.rollout import Sequencer
from fleetguard.rollout.sequence import COUNTER_NAME
from fleetguard.store import ConflictError, InMemoryRecordStore


class TestSequencer:
    def test_starts_at_one_and_increments(self) -> None:
        sequencer = Sequencer(InMemoryRecordStore())
        assert [sequencer.next("openstack") for _ in range(3)] == [1, 2, 3]

    def test_namespaces_are_independent(self) -> None:
        sequencer = Sequencer(InMemoryRecordStore())
        sequencer.next("a")
        sequencer.next("a")
        assert sequencer.next("b") == 1

    def test_survives_a_racing_writer(self) -> None:
        """A concurrent increment between read and write is not lost."""
        store = InMemoryRecordStore()
        sequencer = Sequencer(store)
        sequencer.next("openstack")

        original_update = store.update
        raced = False

        def racing_update(obj):
            nonlocal raced
            if isinstance(obj, SequenceCounter) and not raced:
                raced = True
                other = store.get(SequenceCounter, "openstack", COUNTER_NAME)
                other.value += 1
                original_update(other)
            return original_update(obj)

        store.update = racing_update  # type: ignore[method-assign]

        assert sequencer.next("openstack") == 3
        assert store.get(SequenceCounter, "openstack", COUNTER_NAME).value == 3

    def test_conflicts_exhausted(self) -> None:
        store = InMemoryRecordStore()
        sequencer = Sequencer(store, conflict_retries=2)
        sequencer.next("openstack")

        def always_conflict(obj):
            raise ConflictError("SequenceCounter", "openstack", COUNTER_NAME, 1, 2)

        store.update = always_conflict  # type: ignore[method-assign]
        with pytest.raises(ConflictError):
            sequencer.next("openstack")
