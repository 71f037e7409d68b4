"""
epochsettle/blockchain/web3_gateway.py

ChainGateway for the EVM settlement contracts, over web3.py.

Three contracts are involved:
- rewards distribution: commitments, approvals, batch distribution
- worker registration: bond, epoch length, peer id -> worker id
- staking: active stake per worker

Writes are simulated with eth_call first so reverts surface with their
reason string, then signed locally with eth-account and sent raw. Each
write waits for its receipt up to ChainConfig.tx_timeout_seconds.

Usage:
    from epochsettle.blockchain.web3_gateway import Web3ChainGateway

    gateway = Web3ChainGateway(config.chain)
    if gateway.can_commit(gateway.address):
        ...
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

import base58
from eth_account import Account
from eth_utils import keccak
from web3 import Web3, HTTPProvider

from ..config import ChainConfig
from ..errors import ConfigError
from .batches import EpochRange
from .gateway import (
    ChainGateway,
    Commitment,
    CommitmentEvent,
    LedgerRevert,
    StakeResult,
)

logger = logging.getLogger("epochsettle.blockchain.web3_gateway")


# ============================================================================
# ABIS (only the members the engine touches)
# ============================================================================

def _fn(name: str, inputs: List[tuple], outputs: List[tuple], mutability: str = "view") -> dict:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in outputs],
    }


DISTRIBUTION_ABI = [
    _fn("commitRoot", [("blockRange", "uint256[2]"), ("merkleRoot", "bytes32"),
                       ("totalBatches", "uint16"), ("ipfsLink", "string")], [], "nonpayable"),
    _fn("approveRoot", [("blockRange", "uint256[2]")], [], "nonpayable"),
    _fn("distribute", [("blockRange", "uint256[2]"), ("recipients", "uint256[]"),
                       ("workerRewards", "uint256[]"), ("stakerRewards", "uint256[]"),
                       ("merkleProof", "bytes32[]")], [], "nonpayable"),
    _fn("commitments", [("key", "bytes32")], [
        ("exists", "bool"), ("merkleRoot", "bytes32"), ("totalBatches", "uint16"),
        ("processedBatches", "uint16"), ("approvalCount", "uint256"), ("ipfsLink", "string"),
    ]),
    _fn("processed", [("commitmentKey", "bytes32"), ("leafHash", "bytes32")], [("", "bool")]),
    _fn("canCommit", [("who", "address")], [("", "bool")]),
    _fn("requiredApproves", [], [("", "uint256")]),
    _fn("lastBlockRewarded", [], [("", "uint256")]),
    {
        "type": "event",
        "name": "NewCommitment",
        "anonymous": False,
        "inputs": [
            {"name": "who", "type": "address", "indexed": True},
            {"name": "fromBlock", "type": "uint256", "indexed": False},
            {"name": "toBlock", "type": "uint256", "indexed": False},
            {"name": "commitment", "type": "bytes32", "indexed": False},
        ],
    },
]

REGISTRATION_ABI = [
    _fn("epochLength", [], [("", "uint128")]),
    _fn("bondAmount", [], [("", "uint256")]),
    _fn("workerIds", [("peerId", "bytes")], [("", "uint256")]),
    _fn("getActiveWorkerCount", [], [("", "uint256")]),
]

STAKING_ABI = [
    _fn("activeStake", [("workers", "uint256[]")], [("", "uint256")]),
]

NEW_COMMITMENT_TOPIC = "0x" + keccak(text="NewCommitment(address,uint256,uint256,bytes32)").hex()
WORKER_REGISTERED_TOPIC = "0x" + keccak(
    text="WorkerRegistered(uint256,bytes,address,uint256,string)"
).hex()


# ============================================================================
# GATEWAY
# ============================================================================

class Web3ChainGateway(ChainGateway):
    """ChainGateway backed by a JSON-RPC node and a local signing key."""

    def __init__(self, config: ChainConfig, w3: Optional[Web3] = None):
        """
        Initialize Web3ChainGateway.

        Args:
            config: RPC url, contract addresses and signing key
            w3: Pre-built Web3 instance (tests inject one)

        Raises:
            ConfigError: required chain settings are missing
        """
        if not config.is_configured:
            raise ConfigError(
                "Chain config requires rpc_url, contract, registration and staking "
                "addresses, and private_key"
            )
        self.config = config
        self.w3 = w3 or Web3(HTTPProvider(config.rpc_url))
        self.account = Account.from_key(config.private_key)

        self.distribution = self.w3.eth.contract(
            address=Web3.to_checksum_address(config.contract_address), abi=DISTRIBUTION_ABI,
        )
        self.registration = self.w3.eth.contract(
            address=Web3.to_checksum_address(config.registration_address), abi=REGISTRATION_ABI,
        )
        self.staking = self.w3.eth.contract(
            address=Web3.to_checksum_address(config.staking_address), abi=STAKING_ABI,
        )
        self._chain_id = config.chain_id
        self._first_registration: Optional[int] = None

        logger.info(f"Web3 gateway for {self.account.address} on {config.rpc_url}")

    @property
    def address(self) -> str:
        return self.account.address

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = self.w3.eth.chain_id
        return self._chain_id

    # ========== Reads ==========

    def current_block(self) -> int:
        return self.w3.eth.block_number

    def block_timestamp(self, block_number: int) -> float:
        return float(self.w3.eth.get_block(block_number)["timestamp"])

    def epoch_length(self) -> int:
        return int(self.registration.functions.epochLength().call())

    def bond_amount(self) -> int:
        return int(self.registration.functions.bondAmount().call())

    def last_rewarded_block(self) -> int:
        return int(self.distribution.functions.lastBlockRewarded().call())

    def first_registration_block(self) -> int:
        if self._first_registration is None:
            logs = self.w3.eth.get_logs({
                "address": self.registration.address,
                "fromBlock": self.config.logs_from_block,
                "toBlock": "latest",
                "topics": [WORKER_REGISTERED_TOPIC],
            })
            self._first_registration = min((log["blockNumber"] for log in logs), default=0)
        return self._first_registration

    def can_commit(self, address: str) -> bool:
        return bool(self.distribution.functions.canCommit(Web3.to_checksum_address(address)).call())

    def required_approvals(self) -> int:
        return int(self.distribution.functions.requiredApproves().call())

    def commitments(self, key: bytes) -> Commitment:
        exists, root, total, processed, approvals, link = (
            self.distribution.functions.commitments(key).call()
        )
        return Commitment(
            exists=bool(exists),
            merkle_root=bytes(root),
            total_batches=int(total),
            processed_batches=int(processed),
            approval_count=int(approvals),
            metadata_link=link,
        )

    def processed(self, key: bytes, leaf: bytes) -> bool:
        return bool(self.distribution.functions.processed(key, leaf).call())

    def recent_commitments(self) -> List[CommitmentEvent]:
        logs = self.w3.eth.get_logs({
            "address": self.distribution.address,
            "fromBlock": self.config.logs_from_block,
            "toBlock": "latest",
            "topics": [NEW_COMMITMENT_TOPIC],
        })
        events = []
        for log in logs:
            decoded = self.distribution.events.NewCommitment().process_log(log)
            args = decoded["args"]
            events.append(CommitmentEvent(
                epoch_range=EpochRange(int(args["fromBlock"]), int(args["toBlock"])),
                author=args["who"],
                block_number=int(log["blockNumber"]),
                key=bytes(args["commitment"]),
            ))
        events.sort(key=lambda e: e.block_number)
        return events

    def active_worker_count(self) -> int:
        return int(self.registration.functions.getActiveWorkerCount().call())

    def worker_id_of(self, peer_id: str) -> Optional[int]:
        try:
            raw = base58.b58decode(peer_id)
        except ValueError:
            logger.warning(f"Peer id {peer_id} is not valid base58")
            return None
        worker_id = int(self.registration.functions.workerIds(raw).call())
        return worker_id or None

    def stakes(self, worker_ids: Sequence[int]) -> Dict[int, StakeResult]:
        results = {}
        for worker_id in worker_ids:
            try:
                stake = self.staking.functions.activeStake([worker_id]).call()
                results[worker_id] = StakeResult.success(worker_id, int(stake))
            except Exception as e:
                logger.warning(f"Stake lookup failed for worker {worker_id}: {e}")
                results[worker_id] = StakeResult.failure(worker_id, str(e))
        return results

    # ========== Writes ==========

    def _send(self, action: str, fn: Any) -> str:
        """Simulate, sign, send and wait for one contract call."""
        fn.call({"from": self.account.address})

        params = {
            "from": self.account.address,
            "nonce": self.w3.eth.get_transaction_count(self.account.address),
            "chainId": self.chain_id,
        }
        if self.config.gas_limit:
            params["gas"] = self.config.gas_limit
        tx = fn.build_transaction(params)

        signed = self.account.sign_transaction(tx)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        tx_hex = Web3.to_hex(tx_hash)
        logger.info(f"Sent {action} tx {tx_hex}")

        receipt = self.w3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=self.config.tx_timeout_seconds,
        )
        if receipt["status"] != 1:
            raise LedgerRevert(f"{action} transaction {tx_hex} reverted")
        return tx_hex

    def commit_root(self, epoch_range: EpochRange, root: bytes, total_batches: int,
                    metadata_link: str) -> str:
        fn = self.distribution.functions.commitRoot(
            epoch_range.as_list(), root, total_batches, metadata_link,
        )
        return self._send("commitRoot", fn)

    def approve_root(self, epoch_range: EpochRange) -> str:
        return self._send("approveRoot", self.distribution.functions.approveRoot(epoch_range.as_list()))

    def distribute(self, epoch_range: EpochRange, recipients: Sequence[int],
                   worker_rewards: Sequence[int], staker_rewards: Sequence[int],
                   proof: Sequence[bytes]) -> str:
        fn = self.distribution.functions.distribute(
            epoch_range.as_list(),
            list(recipients),
            list(worker_rewards),
            list(staker_rewards),
            list(proof),
        )
        return self._send("distribute", fn)
