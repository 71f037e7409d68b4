"""
epochsettle - Worker reward computation and batched settlement

Computes performance-weighted rewards for a fleet of workers, packs them
into Merkle-committed batches and settles them on an EVM ledger through
a commit / approve / distribute protocol shared by several distributors.

Usage:
    from epochsettle import SettlementConfig, DistributionCoordinator
    from epochsettle.blockchain.web3_gateway import Web3ChainGateway
    from epochsettle.analytics import ClickHouseMetricsView

    config = SettlementConfig.from_env()
    coordinator = DistributionCoordinator.from_config(
        config,
        gateway=Web3ChainGateway(config.chain),
        metrics_view=ClickHouseMetricsView(config.clickhouse),
    )
    trio.run(coordinator.run)

REST API Usage:
    from epochsettle.api import SettlementAPI

    api = SettlementAPI(coordinator, host="0.0.0.0", port=8080)
    await api.start()
"""

from .config import (
    SettlementConfig,
    RewardConfig,
    BatchConfig,
    RetryPolicy,
    CoordinatorConfig,
    AprConfig,
    ChainConfig,
    ClickHouseConfig,
    ApiConfig,
)
from .errors import (
    SettlementError,
    AlreadySettled,
    NotEligible,
    ProofInvalid,
    UpstreamUnavailable,
    InsufficientData,
    RangeCollision,
    ConfigError,
    classify_error,
)
from .blockchain import EpochRange, MerkleTree, create_batches, build_tree
from .protocol import (
    RewardEngine,
    DistributionCoordinator,
    StatusStore,
    DistributionPhase,
    AuditLog,
)
from .api import SettlementAPI
from .metrics import SettlementMetrics

__version__ = "0.1.0"

__all__ = [
    # Config
    "SettlementConfig",
    "RewardConfig",
    "BatchConfig",
    "RetryPolicy",
    "CoordinatorConfig",
    "AprConfig",
    "ChainConfig",
    "ClickHouseConfig",
    "ApiConfig",
    # Errors
    "SettlementError",
    "AlreadySettled",
    "NotEligible",
    "ProofInvalid",
    "UpstreamUnavailable",
    "InsufficientData",
    "RangeCollision",
    "ConfigError",
    "classify_error",
    # Core
    "EpochRange",
    "MerkleTree",
    "create_batches",
    "build_tree",
    "RewardEngine",
    "DistributionCoordinator",
    "StatusStore",
    "DistributionPhase",
    "AuditLog",
    "SettlementAPI",
    "SettlementMetrics",
]
