"""
epochsettle/protocol/status_store.py

Process-local tracking of distribution attempts, one record per range.

The store is injected into the coordinator and the admin API. Reads
return copies, so the API can list statuses while a distribution is
mutating its own record.
"""

import copy
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

logger = logging.getLogger("epochsettle.protocol.status_store")


class DistributionPhase(Enum):
    """Phases of a distribution attempt."""
    IDLE = "idle"
    CALCULATING = "calculating"
    GENERATING_TREE = "generating_tree"
    COMMITTING = "committing"
    DISTRIBUTING = "distributing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DistributionPhase.COMPLETED, DistributionPhase.FAILED)


# Allowed forward transitions; FAILED may re-enter CALCULATING on retry
_TRANSITIONS = {
    DistributionPhase.IDLE: {DistributionPhase.CALCULATING, DistributionPhase.FAILED},
    DistributionPhase.CALCULATING: {
        DistributionPhase.GENERATING_TREE,
        DistributionPhase.COMPLETED,
        DistributionPhase.FAILED,
    },
    DistributionPhase.GENERATING_TREE: {DistributionPhase.COMMITTING, DistributionPhase.FAILED},
    DistributionPhase.COMMITTING: {
        DistributionPhase.DISTRIBUTING,
        DistributionPhase.COMPLETED,
        DistributionPhase.FAILED,
    },
    DistributionPhase.DISTRIBUTING: {DistributionPhase.COMPLETED, DistributionPhase.FAILED},
    DistributionPhase.COMPLETED: set(),
    DistributionPhase.FAILED: {DistributionPhase.CALCULATING},
}


class InvalidTransition(ValueError):
    """Phase change not allowed by the state machine."""


@dataclass
class BatchOutcome:
    """Result of settling one batch."""
    index: int
    leaf_hash: str
    status: str                         # distributed | skipped | failed
    tx_hash: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'index': self.index,
            'leaf_hash': self.leaf_hash,
            'status': self.status,
            'tx_hash': self.tx_hash,
            'error': self.error,
        }


@dataclass
class DistributionStatus:
    """Status of a distribution attempt for one range."""
    epoch_id: str
    from_block: int
    to_block: int
    phase: DistributionPhase = DistributionPhase.IDLE
    total_workers: int = 0
    total_batches: int = 0
    processed_batches: int = 0
    total_rewards: int = 0
    merkle_root: Optional[str] = None
    commit_tx_hash: Optional[str] = None
    error: Optional[str] = None
    batches: List[BatchOutcome] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None

    def transition(self, phase: DistributionPhase) -> None:
        """Move to phase; raises InvalidTransition on a backwards move."""
        if phase != self.phase and phase not in _TRANSITIONS[self.phase]:
            raise InvalidTransition(f"{self.epoch_id}: {self.phase.value} -> {phase.value}")
        self.phase = phase
        self.updated_at = time.time()
        if phase.is_terminal:
            self.completed_at = self.updated_at
        elif phase == DistributionPhase.CALCULATING:
            self.completed_at = None
            self.error = None

    def to_dict(self) -> dict:
        return {
            'epoch_id': self.epoch_id,
            'from_block': self.from_block,
            'to_block': self.to_block,
            'status': self.phase.value,
            'total_workers': self.total_workers,
            'total_batches': self.total_batches,
            'processed_batches': self.processed_batches,
            'total_rewards': str(self.total_rewards),
            'merkle_root': self.merkle_root,
            'commit_tx_hash': self.commit_tx_hash,
            'error': self.error,
            'batches': [b.to_dict() for b in self.batches],
            'started_at': self.started_at,
            'updated_at': self.updated_at,
            'completed_at': self.completed_at,
        }


class StatusStore:
    """
    Thread-safe map of epoch id to DistributionStatus.

    Usage:
        store = StatusStore()
        store.upsert(status)
        current = store.get("1000-2000")
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._statuses: Dict[str, DistributionStatus] = {}

    def get(self, epoch_id: str) -> Optional[DistributionStatus]:
        """Snapshot of one status, or None."""
        with self._lock:
            status = self._statuses.get(epoch_id)
            return copy.deepcopy(status) if status else None

    def list(self, phase: Optional[DistributionPhase] = None) -> List[DistributionStatus]:
        """Snapshots of all statuses, newest first."""
        with self._lock:
            statuses = [copy.deepcopy(s) for s in self._statuses.values()
                        if phase is None or s.phase == phase]
        return sorted(statuses, key=lambda s: s.started_at, reverse=True)

    def upsert(self, status: DistributionStatus) -> None:
        """Insert or replace the status for its epoch id."""
        with self._lock:
            self._statuses[status.epoch_id] = copy.deepcopy(status)

    def evict(self, max_age_seconds: float, now: Optional[float] = None) -> int:
        """
        Remove completed/failed statuses that finished more than
        max_age_seconds ago.

        Returns:
            Number of statuses removed
        """
        now = time.time() if now is None else now
        with self._lock:
            stale = [
                epoch_id for epoch_id, s in self._statuses.items()
                if s.phase.is_terminal and s.completed_at is not None
                and now - s.completed_at > max_age_seconds
            ]
            for epoch_id in stale:
                del self._statuses[epoch_id]
        if stale:
            logger.info(f"Evicted {len(stale)} finished distribution statuses")
        return len(stale)

    def counts(self) -> Dict[str, int]:
        """Number of statuses per phase, every phase present."""
        counts = {phase.value: 0 for phase in DistributionPhase}
        with self._lock:
            for s in self._statuses.values():
                counts[s.phase.value] += 1
        return counts

    def __len__(self) -> int:
        with self._lock:
            return len(self._statuses)
