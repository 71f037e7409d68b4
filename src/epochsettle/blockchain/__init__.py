"""
epochsettle/blockchain/

Ledger-facing pieces: epoch ranges, batch encoding, the Merkle tree and
the ChainGateway abstraction.

The web3 gateway is imported from its module so the in-memory ledger
can be used without an RPC node:

    from epochsettle.blockchain.web3_gateway import Web3ChainGateway
"""

from .batches import (
    EpochRange,
    Batch,
    commitment_key,
    encode_batch,
    leaf_hash,
    create_batches,
)
from .merkle import MerkleTree, build_tree, hash_pair
from .gateway import (
    ChainGateway,
    Commitment,
    CommitmentEvent,
    StakeResult,
    LedgerRevert,
    InMemoryLedger,
    InMemoryGateway,
)

__all__ = [
    # Batches
    "EpochRange",
    "Batch",
    "commitment_key",
    "encode_batch",
    "leaf_hash",
    "create_batches",
    # Merkle
    "MerkleTree",
    "build_tree",
    "hash_pair",
    # Gateway
    "ChainGateway",
    "Commitment",
    "CommitmentEvent",
    "StakeResult",
    "LedgerRevert",
    "InMemoryLedger",
    "InMemoryGateway",
]
