"""
epochsettle/tests/test_gateway.py

Unit tests for the in-memory ledger and gateway.
"""

import pytest

from epochsettle.blockchain.batches import EpochRange, create_batches
from epochsettle.blockchain.gateway import (
    Commitment,
    InMemoryGateway,
    InMemoryLedger,
    LedgerRevert,
    StakeResult,
)
from epochsettle.blockchain.merkle import build_tree
from epochsettle.protocol.rewards import RewardAssignment

RANGE = EpochRange(1000, 2000)


def create_test_ledger(**kwargs):
    kwargs.setdefault("distributors", ["0xA", "0xB"])
    return InMemoryLedger(**kwargs)


def create_test_plan(count=3, batch_size=2):
    assignments = [RewardAssignment(i + 1, 10 * (i + 1), i) for i in range(count)]
    batches = create_batches(assignments, batch_size)
    return batches, build_tree([b.leaf_hash for b in batches])


# ============================================================================
# Reads
# ============================================================================

class TestInMemoryReads:
    """Test gateway read accessors."""

    def test_commit_window_rotates(self):
        ledger = create_test_ledger(block_number=0)
        a = InMemoryGateway(ledger, "0xA")
        b = InMemoryGateway(ledger, "0xB")

        assert a.can_commit("0xA") and not b.can_commit("0xB")
        ledger.advance(256)
        assert b.can_commit("0xB") and not a.can_commit("0xA")

    def test_block_timestamp(self):
        gateway = InMemoryGateway(create_test_ledger(), "0xA")
        assert gateway.block_timestamp(10) - gateway.block_timestamp(0) == 120.0

    def test_worker_registry(self):
        ledger = create_test_ledger()
        ledger.register_worker("peer-1", stake=500, registered_block=40)
        ledger.register_worker("peer-2", registered_block=10)
        gateway = InMemoryGateway(ledger, "0xA")

        assert gateway.worker_ids_of(["peer-1", "ghost"]) == {"peer-1": 1, "ghost": None}
        assert gateway.first_registration_block() == 10
        assert gateway.active_worker_count() == 2

    def test_stakes_per_worker_results(self):
        ledger = create_test_ledger()
        ledger.register_worker("peer-1", stake=500)
        ledger.register_worker("peer-2", stake=700)
        ledger.fail_stake_lookup(2)
        gateway = InMemoryGateway(ledger, "0xA")

        results = gateway.stakes([1, 2])

        assert results[1] == StakeResult.success(1, 500)
        assert not results[2].ok
        assert results[2].unwrap_or(0) == 0

    def test_missing_commitment(self):
        gateway = InMemoryGateway(create_test_ledger(), "0xA")
        assert gateway.commitments(RANGE.key) == Commitment()
        assert not gateway.is_committed(1000, 2000)


# ============================================================================
# Contract rules
# ============================================================================

class TestInMemoryLedgerRules:
    """Test the simulated contract rules."""

    def test_commit_outside_window_reverts(self):
        ledger = create_test_ledger()
        batches, tree = create_test_plan()

        with pytest.raises(LedgerRevert, match="Not allowed to commit"):
            InMemoryGateway(ledger, "0xB").commit_root(RANGE, tree.root, len(batches), "")

    def test_commit_once_per_range(self):
        ledger = create_test_ledger()
        gateway = InMemoryGateway(ledger, "0xA")
        batches, tree = create_test_plan()

        tx = gateway.commit_root(RANGE, tree.root, len(batches), "ipfs://x")
        assert tx.startswith("0x")

        with pytest.raises(LedgerRevert, match="ALREADY_COMMITTED"):
            gateway.commit_root(RANGE, tree.root, len(batches), "ipfs://x")

        commitment = gateway.commitments(RANGE.key)
        assert commitment.exists
        assert commitment.approval_count == 1
        assert gateway.recent_commitments()[-1].author == "0xA"

    def test_approve_once_per_distributor(self):
        ledger = create_test_ledger()
        batches, tree = create_test_plan()
        InMemoryGateway(ledger, "0xA").commit_root(RANGE, tree.root, len(batches), "")
        b = InMemoryGateway(ledger, "0xB")

        b.approve_root(RANGE)
        with pytest.raises(LedgerRevert, match="Already approved"):
            b.approve_root(RANGE)
        with pytest.raises(LedgerRevert, match="Not allowed to approve"):
            InMemoryGateway(ledger, "0xC").approve_root(RANGE)

        assert b.commitments(RANGE.key).approval_count == 2

    def test_distribute_requires_approvals(self):
        ledger = create_test_ledger(approvals_required=2)
        gateway = InMemoryGateway(ledger, "0xA")
        batches, tree = create_test_plan()
        gateway.commit_root(RANGE, tree.root, len(batches), "")
        batch = batches[0]

        with pytest.raises(LedgerRevert, match="Not enough approvals"):
            gateway.distribute(RANGE, batch.recipients, batch.worker_rewards,
                               batch.staker_rewards, tree.get_proof(0))

    def test_distribute_all_batches(self):
        ledger = create_test_ledger()
        gateway = InMemoryGateway(ledger, "0xA")
        batches, tree = create_test_plan(count=3, batch_size=2)
        gateway.commit_root(RANGE, tree.root, len(batches), "")

        for i, batch in enumerate(batches):
            gateway.distribute(RANGE, batch.recipients, batch.worker_rewards,
                               batch.staker_rewards, tree.get_proof(i))
            assert gateway.processed(RANGE.key, batch.leaf_hash)

        assert ledger.balances == {1: 10, 2: 21, 3: 32}
        assert gateway.commitments(RANGE.key).is_fully_processed
        assert gateway.last_rewarded_block() == 2000

    def test_batch_processed_once(self):
        ledger = create_test_ledger()
        gateway = InMemoryGateway(ledger, "0xA")
        batches, tree = create_test_plan()
        gateway.commit_root(RANGE, tree.root, len(batches), "")
        batch = batches[0]
        args = (RANGE, batch.recipients, batch.worker_rewards, batch.staker_rewards, tree.get_proof(0))

        gateway.distribute(*args)
        with pytest.raises(LedgerRevert, match="already processed"):
            gateway.distribute(*args)
        assert ledger.balances[1] == 10

    def test_bad_proof_reverts(self):
        ledger = create_test_ledger()
        gateway = InMemoryGateway(ledger, "0xA")
        batches, tree = create_test_plan()
        gateway.commit_root(RANGE, tree.root, len(batches), "")
        batch = batches[0]

        with pytest.raises(LedgerRevert, match="Invalid merkle proof"):
            gateway.distribute(RANGE, batch.recipients, batch.worker_rewards,
                               batch.staker_rewards, tree.get_proof(1))
        assert ledger.balances == {}
