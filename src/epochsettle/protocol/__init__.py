"""
epochsettle/protocol/

Reward calculation and the settlement protocol.
"""

from .uptime import (
    compute_liveness,
    liveness_coefficient,
    tenure_coefficient,
    compute_tenure,
    TenureRecord,
)
from .rewards import (
    RewardEngine,
    WorkerMetrics,
    NetworkParams,
    RewardAssignment,
    RewardResult,
)
from .apr import target_apr
from .retry import RetryExhausted, advance_range, retry_async
from .status_store import (
    DistributionPhase,
    DistributionStatus,
    BatchOutcome,
    StatusStore,
)
from .audit import AuditLog, AuditEntry
from .coordinator import (
    DistributionCoordinator,
    SettlementPlan,
    CommitStatus,
    CommitOutcome,
    ApproveOutcome,
)

__all__ = [
    # Uptime
    "compute_liveness",
    "liveness_coefficient",
    "tenure_coefficient",
    "compute_tenure",
    "TenureRecord",
    # Rewards
    "RewardEngine",
    "WorkerMetrics",
    "NetworkParams",
    "RewardAssignment",
    "RewardResult",
    "target_apr",
    # Retry
    "RetryExhausted",
    "advance_range",
    "retry_async",
    # Status
    "DistributionPhase",
    "DistributionStatus",
    "BatchOutcome",
    "StatusStore",
    "AuditLog",
    "AuditEntry",
    # Coordinator
    "DistributionCoordinator",
    "SettlementPlan",
    "CommitStatus",
    "CommitOutcome",
    "ApproveOutcome",
]
