"""
epochsettle/blockchain/merkle.py

Merkle tree over batch leaves, matching the settlement contract's proof
verification.

Conventions (must match the contract bit for bit):
- Parent = keccak256(min(a, b) || max(a, b)), children sorted by byte value
- An odd node at the end of a level is paired with itself
- Proofs are plain sibling lists; no left/right flags are needed

Usage:
    from epochsettle.blockchain.merkle import MerkleTree

    tree = MerkleTree([batch.leaf_hash for batch in batches])
    proof = tree.get_proof(0)
    assert MerkleTree.verify_proof(batches[0].leaf_hash, proof, tree.root)
"""

import logging
from typing import List, Sequence

from eth_utils import keccak

logger = logging.getLogger("epochsettle.blockchain.merkle")

HASH_LENGTH = 32


def hash_pair(a: bytes, b: bytes) -> bytes:
    """Hash two nodes in sorted order."""
    if a <= b:
        return keccak(a + b)
    return keccak(b + a)


class MerkleTree:
    """
    Binary Merkle tree with sorted-pair hashing.

    Built once from an ordered list of 32-byte leaves. Levels are kept so
    proofs can be read off without rehashing; rebuilding from the same
    leaves always yields identical roots and proofs.
    """

    def __init__(self, leaves: Sequence[bytes]):
        """
        Initialize MerkleTree.

        Args:
            leaves: Ordered 32-byte leaf hashes

        Raises:
            ValueError: leaves is empty or a leaf is not 32 bytes
        """
        if not leaves:
            raise ValueError("Cannot build Merkle tree with no leaves")
        for leaf in leaves:
            if len(leaf) != HASH_LENGTH:
                raise ValueError(f"Leaf must be {HASH_LENGTH} bytes, got {len(leaf)}")

        self.leaves: List[bytes] = list(leaves)
        self.levels: List[List[bytes]] = []
        self._build()

    def _build(self) -> None:
        """Build the tree bottom-up."""
        current_level = list(self.leaves)
        self.levels = [current_level]

        while len(current_level) > 1:
            next_level = []
            for i in range(0, len(current_level), 2):
                left = current_level[i]
                # Odd count: pair the last node with itself
                right = current_level[i + 1] if i + 1 < len(current_level) else left
                next_level.append(hash_pair(left, right))
            self.levels.append(next_level)
            current_level = next_level

    @property
    def root(self) -> bytes:
        return self.levels[-1][0]

    @property
    def root_hex(self) -> str:
        return "0x" + self.root.hex()

    def __len__(self) -> int:
        return len(self.leaves)

    def get_proof(self, leaf_index: int) -> List[bytes]:
        """
        Get the sibling path from a leaf to the root.

        Args:
            leaf_index: Index of leaf in leaves list

        Returns:
            Sibling hashes, leaf level first. Empty for a single-leaf tree.

        Raises:
            IndexError: leaf_index out of range
        """
        if not 0 <= leaf_index < len(self.leaves):
            raise IndexError(f"Leaf index {leaf_index} out of range (0..{len(self.leaves) - 1})")

        proof = []
        idx = leaf_index
        for level in self.levels[:-1]:
            sibling_idx = idx ^ 1
            if sibling_idx < len(level):
                proof.append(level[sibling_idx])
            else:
                proof.append(level[idx])
            idx //= 2
        return proof

    def get_proofs(self) -> List[List[bytes]]:
        """Proofs for every leaf, in leaf order."""
        return [self.get_proof(i) for i in range(len(self.leaves))]

    @staticmethod
    def verify_proof(leaf: bytes, proof: Sequence[bytes], root: bytes) -> bool:
        """
        Verify a Merkle proof.

        Args:
            leaf: Leaf hash being verified
            proof: Sibling hashes from get_proof
            root: Expected root

        Returns:
            True if the proof re-derives root
        """
        current = leaf
        for sibling in proof:
            current = hash_pair(current, sibling)
        return current == root


def build_tree(leaves: Sequence[bytes]) -> MerkleTree:
    """Build a MerkleTree; raises ValueError on an empty leaf set."""
    tree = MerkleTree(leaves)
    logger.debug(f"Built Merkle tree over {len(tree)} leaves, root {tree.root_hex}")
    return tree
