"""
epochsettle/blockchain/batches.py

Epoch ranges, reward batches and their canonical ledger encoding.

A batch is a consecutive slice of reward assignments. Its leaf hash is
keccak256 over the packed encoding of three uint256 arrays (recipients,
worker rewards, staker rewards), in assignment order, exactly as the
settlement contract re-encodes the distribute() arguments.
"""

import logging
from dataclasses import dataclass
from typing import List, Sequence, Tuple, TYPE_CHECKING

from eth_abi.packed import encode_packed
from eth_utils import keccak

if TYPE_CHECKING:
    from ..protocol.rewards import RewardAssignment

logger = logging.getLogger("epochsettle.blockchain.batches")


# ============================================================================
# EPOCH RANGE
# ============================================================================

@dataclass(frozen=True, order=True)
class EpochRange:
    """Half-open block interval settled as one unit."""
    from_block: int
    to_block: int

    def __post_init__(self):
        if self.from_block < 0:
            raise ValueError(f"from_block must be >= 0, got {self.from_block}")
        if self.from_block >= self.to_block:
            raise ValueError(
                f"Invalid range: from_block ({self.from_block}) must be < to_block ({self.to_block})"
            )

    @property
    def epoch_id(self) -> str:
        return f"{self.from_block}-{self.to_block}"

    @property
    def length(self) -> int:
        return self.to_block - self.from_block

    @property
    def key(self) -> bytes:
        return commitment_key(self.from_block, self.to_block)

    def as_list(self) -> List[int]:
        return [self.from_block, self.to_block]

    @classmethod
    def parse(cls, epoch_id: str) -> "EpochRange":
        """Parse an "<from>-<to>" id; raises ValueError when malformed."""
        parts = epoch_id.split("-")
        if len(parts) != 2:
            raise ValueError(f"Malformed epoch id: {epoch_id!r}")
        return cls(int(parts[0]), int(parts[1]))

    def __str__(self) -> str:
        return self.epoch_id


def commitment_key(from_block: int, to_block: int) -> bytes:
    """keccak256(abi.encodePacked(uint256 from, uint256 to)), as the ledger keys commitments."""
    return keccak(encode_packed(["uint256", "uint256"], [from_block, to_block]))


# ============================================================================
# BATCHES
# ============================================================================

def encode_batch(
    recipients: Sequence[int],
    worker_rewards: Sequence[int],
    staker_rewards: Sequence[int],
) -> bytes:
    """Packed encoding of the three arrays; order-sensitive, never sorted."""
    if not len(recipients) == len(worker_rewards) == len(staker_rewards):
        raise ValueError("Batch arrays must have equal length")
    return encode_packed(
        ["uint256[]", "uint256[]", "uint256[]"],
        [list(recipients), list(worker_rewards), list(staker_rewards)],
    )


def leaf_hash(
    recipients: Sequence[int],
    worker_rewards: Sequence[int],
    staker_rewards: Sequence[int],
) -> bytes:
    """Leaf hash of one batch."""
    return keccak(encode_batch(recipients, worker_rewards, staker_rewards))


@dataclass(frozen=True)
class Batch:
    """One Merkle leaf worth of reward assignments."""
    index: int
    recipients: Tuple[int, ...]
    worker_rewards: Tuple[int, ...]
    staker_rewards: Tuple[int, ...]
    leaf_hash: bytes

    @classmethod
    def from_assignments(cls, index: int, assignments: Sequence["RewardAssignment"]) -> "Batch":
        recipients = tuple(a.worker_id for a in assignments)
        worker_rewards = tuple(a.worker_reward for a in assignments)
        staker_rewards = tuple(a.staker_reward for a in assignments)
        return cls(
            index=index,
            recipients=recipients,
            worker_rewards=worker_rewards,
            staker_rewards=staker_rewards,
            leaf_hash=leaf_hash(recipients, worker_rewards, staker_rewards),
        )

    @property
    def size(self) -> int:
        return len(self.recipients)

    @property
    def total_reward(self) -> int:
        return sum(self.worker_rewards) + sum(self.staker_rewards)

    def to_dict(self) -> dict:
        return {
            'index': self.index,
            'recipients': list(self.recipients),
            'worker_rewards': [str(r) for r in self.worker_rewards],
            'staker_rewards': [str(r) for r in self.staker_rewards],
            'leaf_hash': "0x" + self.leaf_hash.hex(),
        }


def create_batches(assignments: Sequence["RewardAssignment"], batch_size: int) -> List[Batch]:
    """
    Partition assignments into consecutive batches of batch_size.

    Input order is preserved; the last batch may be smaller.

    Raises:
        ValueError: no assignments, or batch_size < 1
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    if not assignments:
        raise ValueError("Cannot build Merkle tree with no leaves")

    batches = []
    for index, start in enumerate(range(0, len(assignments), batch_size)):
        batches.append(Batch.from_assignments(index, assignments[start:start + batch_size]))

    logger.debug(f"Split {len(assignments)} assignments into {len(batches)} batches of <= {batch_size}")
    return batches
