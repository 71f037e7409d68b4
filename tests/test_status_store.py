"""
epochsettle/tests/test_status_store.py

Unit tests for distribution statuses and the status store.
"""

import pytest

from epochsettle.protocol.status_store import (
    BatchOutcome,
    DistributionPhase,
    DistributionStatus,
    InvalidTransition,
    StatusStore,
)


def create_test_status(epoch_id="1000-2000", phase=DistributionPhase.IDLE, started_at=None):
    from_block, to_block = (int(p) for p in epoch_id.split("-"))
    status = DistributionStatus(epoch_id=epoch_id, from_block=from_block, to_block=to_block, phase=phase)
    if started_at is not None:
        status.started_at = started_at
    return status


# ============================================================================
# State machine
# ============================================================================

class TestTransitions:
    """Test DistributionStatus.transition."""

    def test_happy_path(self):
        status = create_test_status()
        for phase in (
            DistributionPhase.CALCULATING,
            DistributionPhase.GENERATING_TREE,
            DistributionPhase.COMMITTING,
            DistributionPhase.DISTRIBUTING,
            DistributionPhase.COMPLETED,
        ):
            status.transition(phase)

        assert status.phase == DistributionPhase.COMPLETED
        assert status.completed_at is not None

    def test_backwards_rejected(self):
        status = create_test_status(phase=DistributionPhase.COMMITTING)
        with pytest.raises(InvalidTransition):
            status.transition(DistributionPhase.CALCULATING)

    def test_completed_is_final(self):
        status = create_test_status(phase=DistributionPhase.COMPLETED)
        with pytest.raises(InvalidTransition):
            status.transition(DistributionPhase.DISTRIBUTING)

    def test_same_phase_allowed(self):
        status = create_test_status(phase=DistributionPhase.DISTRIBUTING)
        status.transition(DistributionPhase.DISTRIBUTING)
        assert status.phase == DistributionPhase.DISTRIBUTING

    def test_failed_can_retry(self):
        status = create_test_status()
        status.transition(DistributionPhase.FAILED)
        status.error = "boom"

        status.transition(DistributionPhase.CALCULATING)

        assert status.error is None
        assert status.completed_at is None

    def test_to_dict(self):
        status = create_test_status()
        status.total_rewards = 10 ** 24
        status.batches.append(BatchOutcome(index=0, leaf_hash="0xab", status="distributed", tx_hash="0x1"))

        data = status.to_dict()

        assert data["status"] == "idle"
        assert data["total_rewards"] == str(10 ** 24)
        assert data["batches"][0]["tx_hash"] == "0x1"


# ============================================================================
# Store
# ============================================================================

class TestStatusStore:
    """Test StatusStore."""

    def test_upsert_and_get(self):
        store = StatusStore()
        store.upsert(create_test_status())

        assert store.get("1000-2000").from_block == 1000
        assert store.get("missing") is None
        assert len(store) == 1

    def test_get_returns_copy(self):
        store = StatusStore()
        store.upsert(create_test_status())

        snapshot = store.get("1000-2000")
        snapshot.error = "changed"

        assert store.get("1000-2000").error is None

    def test_list_newest_first_and_filtered(self):
        store = StatusStore()
        store.upsert(create_test_status("1-2", started_at=100))
        store.upsert(create_test_status("3-4", DistributionPhase.FAILED, started_at=300))
        store.upsert(create_test_status("5-6", started_at=200))

        assert [s.epoch_id for s in store.list()] == ["3-4", "5-6", "1-2"]
        assert [s.epoch_id for s in store.list(DistributionPhase.FAILED)] == ["3-4"]

    def test_counts_every_phase(self):
        store = StatusStore()
        store.upsert(create_test_status("1-2", DistributionPhase.COMPLETED))
        store.upsert(create_test_status("3-4", DistributionPhase.COMPLETED))

        counts = store.counts()
        assert counts["completed"] == 2
        assert counts["idle"] == 0
        assert set(counts) == {p.value for p in DistributionPhase}

    def test_evict_only_old_terminal(self):
        store = StatusStore()
        old = create_test_status("1-2", DistributionPhase.COMPLETED)
        old.completed_at = 1000.0
        recent = create_test_status("3-4", DistributionPhase.FAILED)
        recent.completed_at = 1900.0
        running = create_test_status("5-6", DistributionPhase.DISTRIBUTING)
        for status in (old, recent, running):
            store.upsert(status)

        removed = store.evict(max_age_seconds=500, now=2000.0)

        assert removed == 1
        assert store.get("1-2") is None
        assert store.get("3-4") is not None
        assert store.get("5-6") is not None
