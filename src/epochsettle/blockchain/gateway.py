"""
epochsettle/blockchain/gateway.py

Ledger access for the settlement engine.

Architecture:
    ChainGateway (abstract)
    ├── InMemoryGateway (simulated ledger - dry runs and tests)
    └── Web3ChainGateway (EVM contracts - see web3_gateway.py)

All methods are blocking; the coordinator runs them in worker threads.
Read accessors return safe defaults only where one is unambiguous (stake
lookups come back as failed StakeResults). Write methods raise on any
rejection and leave classification to the coordinator.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from eth_utils import keccak

from .batches import EpochRange, commitment_key, leaf_hash
from .merkle import MerkleTree

logger = logging.getLogger("epochsettle.blockchain.gateway")

EMPTY_ROOT = b"\x00" * 32


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class Commitment:
    """Ledger-side record of a committed root."""
    exists: bool = False
    merkle_root: bytes = EMPTY_ROOT
    total_batches: int = 0
    processed_batches: int = 0
    approval_count: int = 0
    metadata_link: str = ""

    @property
    def is_fully_processed(self) -> bool:
        return self.exists and self.processed_batches >= self.total_batches

    def to_dict(self) -> dict:
        return {
            'exists': self.exists,
            'merkle_root': "0x" + self.merkle_root.hex(),
            'total_batches': self.total_batches,
            'processed_batches': self.processed_batches,
            'approval_count': self.approval_count,
            'metadata_link': self.metadata_link,
        }


@dataclass(frozen=True)
class CommitmentEvent:
    """A NewCommitment event read from the ledger."""
    epoch_range: EpochRange
    author: str
    block_number: int
    key: bytes


@dataclass(frozen=True)
class StakeResult:
    """Outcome of one stake lookup: a value or an error, never both."""
    worker_id: int
    value: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap_or(self, default: int) -> int:
        return self.value if self.ok and self.value is not None else default

    @classmethod
    def success(cls, worker_id: int, value: int) -> "StakeResult":
        return cls(worker_id=worker_id, value=value)

    @classmethod
    def failure(cls, worker_id: int, error: str) -> "StakeResult":
        return cls(worker_id=worker_id, error=error)


class LedgerRevert(Exception):
    """Write rejected by the ledger."""


# ============================================================================
# ABSTRACT GATEWAY
# ============================================================================

class ChainGateway(ABC):
    """Reads and writes against the settlement ledger."""

    @property
    @abstractmethod
    def address(self) -> str:
        """Address this gateway signs writes with."""

    # ========== Reads ==========

    @abstractmethod
    def current_block(self) -> int:
        pass

    @abstractmethod
    def block_timestamp(self, block_number: int) -> float:
        """Unix timestamp of a block."""

    @abstractmethod
    def epoch_length(self) -> int:
        pass

    @abstractmethod
    def bond_amount(self) -> int:
        pass

    @abstractmethod
    def last_rewarded_block(self) -> int:
        pass

    @abstractmethod
    def first_registration_block(self) -> int:
        """Block of the earliest worker registration, 0 when none."""

    @abstractmethod
    def can_commit(self, address: str) -> bool:
        pass

    @abstractmethod
    def required_approvals(self) -> int:
        pass

    @abstractmethod
    def commitments(self, key: bytes) -> Commitment:
        pass

    @abstractmethod
    def processed(self, key: bytes, leaf: bytes) -> bool:
        pass

    @abstractmethod
    def recent_commitments(self) -> List[CommitmentEvent]:
        """Commitment events, newest last."""

    @abstractmethod
    def active_worker_count(self) -> int:
        pass

    @abstractmethod
    def worker_id_of(self, peer_id: str) -> Optional[int]:
        """Ledger id for a peer, None when unregistered."""

    @abstractmethod
    def stakes(self, worker_ids: Sequence[int]) -> Dict[int, StakeResult]:
        """One StakeResult per requested id."""

    def is_committed(self, from_block: int, to_block: int) -> bool:
        return self.commitments(commitment_key(from_block, to_block)).exists

    def worker_ids_of(self, peer_ids: Iterable[str]) -> Dict[str, Optional[int]]:
        return {peer_id: self.worker_id_of(peer_id) for peer_id in peer_ids}

    # ========== Writes ==========

    @abstractmethod
    def commit_root(
        self,
        epoch_range: EpochRange,
        root: bytes,
        total_batches: int,
        metadata_link: str,
    ) -> str:
        """Commit a root; returns the transaction hash."""

    @abstractmethod
    def approve_root(self, epoch_range: EpochRange) -> str:
        pass

    @abstractmethod
    def distribute(
        self,
        epoch_range: EpochRange,
        recipients: Sequence[int],
        worker_rewards: Sequence[int],
        staker_rewards: Sequence[int],
        proof: Sequence[bytes],
    ) -> str:
        pass


# ============================================================================
# IN-MEMORY LEDGER
# ============================================================================

@dataclass
class _Worker:
    worker_id: int
    peer_id: str
    stake: int
    registered_block: int


@dataclass
class InMemoryLedger:
    """
    Simulated settlement contract shared by several distributors.

    Mirrors the contract rules the engine relies on: round-robin commit
    windows, one commitment per range, one approval per distributor, proof
    checks and one-shot batch processing.
    """
    distributors: List[str] = field(default_factory=list)
    window_blocks: int = 256
    block_number: int = 0
    block_time: float = 12.0
    genesis_time: float = 1_700_000_000.0
    bond: int = 100
    epoch_blocks: int = 7000
    approvals_required: int = 1
    last_rewarded: int = 0

    def __post_init__(self):
        self._lock = threading.RLock()
        self._commitments: Dict[bytes, Commitment] = {}
        self._approvers: Dict[bytes, Set[str]] = {}
        self._processed: Set[Tuple[bytes, bytes]] = set()
        self._events: List[CommitmentEvent] = []
        self._workers: Dict[str, _Worker] = {}
        self._failing_stakes: Set[int] = set()
        self.balances: Dict[int, int] = {}
        self.writes: List[Tuple[str, str]] = []
        self._tx_counter = 0

    # ========== Setup ==========

    def register_worker(self, peer_id: str, stake: int = 0, registered_block: int = 0) -> int:
        with self._lock:
            worker_id = len(self._workers) + 1
            self._workers[peer_id] = _Worker(worker_id, peer_id, stake, registered_block)
            return worker_id

    def fail_stake_lookup(self, worker_id: int) -> None:
        self._failing_stakes.add(worker_id)

    def advance(self, blocks: int) -> None:
        with self._lock:
            self.block_number += blocks

    # ========== Contract rules ==========

    def current_distributor(self) -> Optional[str]:
        if not self.distributors:
            return None
        index = (self.block_number // self.window_blocks) % len(self.distributors)
        return self.distributors[index]

    def _tx(self, action: str, sender: str) -> str:
        self._tx_counter += 1
        self.writes.append((action, sender))
        return "0x" + keccak(text=f"{action}:{sender}:{self._tx_counter}").hex()

    def commit(self, sender: str, epoch_range: EpochRange, root: bytes,
               total_batches: int, metadata_link: str) -> str:
        with self._lock:
            if self.current_distributor() != sender:
                raise LedgerRevert("Not allowed to commit")
            key = epoch_range.key
            if key in self._commitments:
                raise LedgerRevert("Rewards: ALREADY_COMMITTED")
            if total_batches < 1:
                raise LedgerRevert("Empty commitment")
            self._commitments[key] = Commitment(
                exists=True,
                merkle_root=root,
                total_batches=total_batches,
                approval_count=1,
                metadata_link=metadata_link,
            )
            self._approvers[key] = {sender}
            self._events.append(CommitmentEvent(epoch_range, sender, self.block_number, key))
            return self._tx("commit", sender)

    def approve(self, sender: str, epoch_range: EpochRange) -> str:
        with self._lock:
            key = epoch_range.key
            if key not in self._commitments:
                raise LedgerRevert("Commitment does not exist")
            if sender not in self.distributors:
                raise LedgerRevert("Not allowed to approve")
            if sender in self._approvers[key]:
                raise LedgerRevert("Already approved")
            self._approvers[key].add(sender)
            self._commitments[key].approval_count += 1
            return self._tx("approve", sender)

    def distribute(self, sender: str, epoch_range: EpochRange, recipients: Sequence[int],
                   worker_rewards: Sequence[int], staker_rewards: Sequence[int],
                   proof: Sequence[bytes]) -> str:
        with self._lock:
            key = epoch_range.key
            commitment = self._commitments.get(key)
            if commitment is None:
                raise LedgerRevert("Commitment does not exist")
            if commitment.approval_count < self.approvals_required:
                raise LedgerRevert("Not enough approvals")
            leaf = leaf_hash(recipients, worker_rewards, staker_rewards)
            if (key, leaf) in self._processed:
                raise LedgerRevert("Batch already processed")
            if not MerkleTree.verify_proof(leaf, proof, commitment.merkle_root):
                raise LedgerRevert("Invalid merkle proof")

            self._processed.add((key, leaf))
            commitment.processed_batches += 1
            for worker_id, w, s in zip(recipients, worker_rewards, staker_rewards):
                self.balances[worker_id] = self.balances.get(worker_id, 0) + w + s
            if commitment.processed_batches == commitment.total_batches:
                self.last_rewarded = max(self.last_rewarded, epoch_range.to_block)
            return self._tx("distribute", sender)


class InMemoryGateway(ChainGateway):
    """ChainGateway over an InMemoryLedger, acting as one distributor."""

    def __init__(self, ledger: InMemoryLedger, address: str):
        self.ledger = ledger
        self._address = address

    @property
    def address(self) -> str:
        return self._address

    def current_block(self) -> int:
        return self.ledger.block_number

    def block_timestamp(self, block_number: int) -> float:
        return self.ledger.genesis_time + block_number * self.ledger.block_time

    def epoch_length(self) -> int:
        return self.ledger.epoch_blocks

    def bond_amount(self) -> int:
        return self.ledger.bond

    def last_rewarded_block(self) -> int:
        return self.ledger.last_rewarded

    def first_registration_block(self) -> int:
        blocks = [w.registered_block for w in self.ledger._workers.values()]
        return min(blocks) if blocks else 0

    def can_commit(self, address: str) -> bool:
        return self.ledger.current_distributor() == address

    def required_approvals(self) -> int:
        return self.ledger.approvals_required

    def commitments(self, key: bytes) -> Commitment:
        with self.ledger._lock:
            commitment = self.ledger._commitments.get(key)
            if commitment is None:
                return Commitment()
            return Commitment(**vars(commitment))

    def processed(self, key: bytes, leaf: bytes) -> bool:
        return (key, leaf) in self.ledger._processed

    def recent_commitments(self) -> List[CommitmentEvent]:
        return list(self.ledger._events)

    def active_worker_count(self) -> int:
        return len(self.ledger._workers)

    def worker_id_of(self, peer_id: str) -> Optional[int]:
        worker = self.ledger._workers.get(peer_id)
        return worker.worker_id if worker else None

    def stakes(self, worker_ids: Sequence[int]) -> Dict[int, StakeResult]:
        by_id = {w.worker_id: w for w in self.ledger._workers.values()}
        results = {}
        for worker_id in worker_ids:
            if worker_id in self.ledger._failing_stakes or worker_id not in by_id:
                results[worker_id] = StakeResult.failure(worker_id, "stake lookup reverted")
            else:
                results[worker_id] = StakeResult.success(worker_id, by_id[worker_id].stake)
        return results

    def commit_root(self, epoch_range: EpochRange, root: bytes, total_batches: int,
                    metadata_link: str) -> str:
        return self.ledger.commit(self._address, epoch_range, root, total_batches, metadata_link)

    def approve_root(self, epoch_range: EpochRange) -> str:
        return self.ledger.approve(self._address, epoch_range)

    def distribute(self, epoch_range: EpochRange, recipients: Sequence[int],
                   worker_rewards: Sequence[int], staker_rewards: Sequence[int],
                   proof: Sequence[bytes]) -> str:
        return self.ledger.distribute(
            self._address, epoch_range, recipients, worker_rewards, staker_rewards, proof,
        )
