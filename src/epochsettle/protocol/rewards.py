"""
epochsettle/protocol/rewards.py

Per-worker reward computation for one epoch range.

Formula (per worker w):
    T(w)          = sqrt(bytes(w)/Σbytes * chunks(w)/Σchunks)
    dTraffic(w)   = min(1, (T(w) / ΣT / stakeShare(w)) ^ ALPHA)
    stakeShare(w) = (bond + stake(w)) / Σ(bond + stake)
    dLiveness(w)  = liveness_coefficient(L(w))
    dTenure(w)    = tenure coefficient (0.5 .. 1.0)
    yield(w)      = rMax * dLiveness * dTraffic * dTenure
    rMax          = targetApr * epochSeconds / secondsPerYear

    workerReward  = yield * (bond + stake/2)
    stakerReward  = yield * stake/2

Coefficients are floats in [0, 1] quantized to the configured precision
before they touch token amounts; everything after that is integer math
with floor division, so the sum of rewards never exceeds the unlocked cap
rMax * Σ(bond + stake).

Key Features:
- Drops workers with no ledger identity
- Zero totals short-circuit to zero coefficients
- Structured per-worker and per-range reports
"""

import json
import logging
import math
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Sequence

from ..config import RewardConfig
from .uptime import liveness_coefficient

logger = logging.getLogger("epochsettle.protocol.rewards")
report_logger = logging.getLogger("epochsettle.reports")


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class WorkerMetrics:
    """Activity of one worker over the epoch window."""
    peer_id: str
    worker_id: Optional[int]            # ledger id; None when unregistered
    bytes_sent: int = 0
    chunks_read: int = 0
    total_requests: int = 0
    valid_requests: int = 0
    stake: int = 0                      # delegated stake backing the worker
    total_delegated_stake: int = 0
    liveness_factor: float = 0.0        # observed uptime ratio L
    tenure_factor: float = 0.5          # tenure coefficient

    def __post_init__(self):
        for name in ('bytes_sent', 'chunks_read', 'total_requests', 'valid_requests',
                     'stake', 'total_delegated_stake'):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative for worker {self.peer_id}")
        if self.valid_requests > self.total_requests:
            raise ValueError(f"valid_requests exceeds total_requests for worker {self.peer_id}")
        if not 0 <= self.liveness_factor <= 1:
            raise ValueError(f"liveness_factor out of range for worker {self.peer_id}")
        if not 0 <= self.tenure_factor <= 1:
            raise ValueError(f"tenure_factor out of range for worker {self.peer_id}")


@dataclass
class NetworkParams:
    """Network-wide inputs for one range."""
    bond_amount: int
    epoch_length_seconds: float
    target_apr: float

    def __post_init__(self):
        if self.bond_amount < 0:
            raise ValueError("bond_amount must be non-negative")
        if self.epoch_length_seconds < 0:
            raise ValueError("epoch_length_seconds must be non-negative")
        if self.target_apr < 0:
            raise ValueError("target_apr must be non-negative")


@dataclass(frozen=True)
class RewardAssignment:
    """Integer rewards for one worker, in the ledger's smallest unit."""
    worker_id: int
    worker_reward: int
    staker_reward: int

    @property
    def total(self) -> int:
        return self.worker_reward + self.staker_reward

    def to_dict(self) -> dict:
        return {
            'worker_id': self.worker_id,
            'worker_reward': str(self.worker_reward),
            'staker_reward': str(self.staker_reward),
        }


@dataclass
class RewardBreakdown:
    """Intermediate coefficients for one worker (reporting only)."""
    worker_id: int
    peer_id: str
    t_i: float
    liveness: float
    d_liveness: float
    d_traffic: float
    d_tenure: float
    stake: int
    bytes_sent: int
    chunks_read: int
    worker_reward: int
    staker_reward: int

    def to_report(self) -> dict:
        data = asdict(self)
        data['worker_reward'] = str(self.worker_reward)
        data['staker_reward'] = str(self.staker_reward)
        data['stake'] = str(self.stake)
        return data


@dataclass
class RewardResult:
    """Output of one RewardEngine run."""
    assignments: List[RewardAssignment]
    breakdowns: List[RewardBreakdown] = field(default_factory=list)
    r_max: float = 0.0
    unlocked_cap: int = 0
    total_supply: int = 0
    dropped: List[str] = field(default_factory=list)

    @property
    def total_reward(self) -> int:
        return sum(a.total for a in self.assignments)

    @property
    def total_workers(self) -> int:
        return len(self.assignments)

    def to_dict(self) -> dict:
        return {
            'assignments': [a.to_dict() for a in self.assignments],
            'r_max': self.r_max,
            'unlocked_cap': str(self.unlocked_cap),
            'total_supply': str(self.total_supply),
            'total_reward': str(self.total_reward),
            'total_workers': self.total_workers,
            'dropped': self.dropped,
        }


# ============================================================================
# COEFFICIENTS
# ============================================================================

def traffic_weights(metrics: Sequence[WorkerMetrics]) -> List[float]:
    """T(w) for each worker; 0 when a total is zero."""
    total_bytes = sum(m.bytes_sent for m in metrics)
    total_chunks = sum(m.chunks_read for m in metrics)
    if total_bytes == 0 or total_chunks == 0:
        return [0.0] * len(metrics)
    return [
        math.sqrt((m.bytes_sent / total_bytes) * (m.chunks_read / total_chunks))
        for m in metrics
    ]


def traffic_coefficient(t_i: float, total_t: float, stake_share: float, alpha: float) -> float:
    """dTraffic = min(1, (t_i / total_t / stake_share) ^ alpha)."""
    if t_i <= 0 or total_t <= 0:
        return 0.0
    if stake_share <= 0:
        return 1.0
    return min(1.0, (t_i / total_t / stake_share) ** alpha)


def max_yield(target_apr: float, epoch_seconds: float, seconds_per_year: int) -> float:
    """rMax for the epoch."""
    return target_apr * epoch_seconds / seconds_per_year


# ============================================================================
# ENGINE
# ============================================================================

class RewardEngine:
    """
    Turns worker metrics and network params into reward assignments.

    Pure: no I/O, same inputs always give the same assignments. Output is
    ordered by ledger worker id.

    Usage:
        engine = RewardEngine(RewardConfig())
        result = engine.compute(metrics, NetworkParams(bond, seconds, apr))
    """

    def __init__(self, config: Optional[RewardConfig] = None):
        self.config = config or RewardConfig()

    def quantize(self, value: float) -> int:
        """Coefficient in [0, 1] to a fixed-point integer in [0, precision]."""
        precision = self.config.precision
        return max(0, min(precision, int(round(value * precision))))

    def unlocked_cap(self, params: NetworkParams, total_supply: int) -> int:
        """Maximum total reward for the range."""
        r_max = max_yield(params.target_apr, params.epoch_length_seconds, self.config.seconds_per_year)
        r_max_q = int(round(r_max * self.config.precision))
        return r_max_q * total_supply // self.config.precision

    def _eligible(self, metrics: Sequence[WorkerMetrics], dropped: List[str]) -> List[WorkerMetrics]:
        seen: Dict[int, WorkerMetrics] = {}
        for m in metrics:
            if m.worker_id is None:
                logger.warning(f"Worker {m.peer_id} has no ledger id, dropping from rewards")
                dropped.append(m.peer_id)
                continue
            if m.worker_id in seen:
                logger.warning(f"Duplicate metrics for worker id {m.worker_id} ({m.peer_id}), keeping first")
                dropped.append(m.peer_id)
                continue
            seen[m.worker_id] = m
        return [seen[k] for k in sorted(seen)]

    def compute(self, metrics: Sequence[WorkerMetrics], params: NetworkParams) -> RewardResult:
        """
        Compute rewards for every registered worker.

        Args:
            metrics: Metrics for all active workers in the range
            params: Bond, epoch length and target APR

        Returns:
            RewardResult with one assignment per registered worker
        """
        cfg = self.config
        precision = cfg.precision
        dropped: List[str] = []
        workers = self._eligible(metrics, dropped)

        r_max = max_yield(params.target_apr, params.epoch_length_seconds, cfg.seconds_per_year)
        r_max_q = int(round(r_max * precision))

        bond = params.bond_amount
        total_supply = sum(bond + m.stake for m in workers)
        t_values = traffic_weights(workers)
        total_t = sum(t_values)

        assignments = []
        breakdowns = []
        for m, t_i in zip(workers, t_values):
            stake_share = (bond + m.stake) / total_supply if total_supply > 0 else 0.0
            d_traffic = traffic_coefficient(t_i, total_t, stake_share, cfg.alpha)
            d_liveness = liveness_coefficient(m.liveness_factor)
            d_tenure = m.tenure_factor

            yield_q = (
                r_max_q
                * self.quantize(d_liveness)
                * self.quantize(d_traffic)
                * self.quantize(d_tenure)
            ) // (precision ** 3)

            half_stake = m.stake // 2
            worker_reward = yield_q * (bond + half_stake) // precision
            staker_reward = yield_q * half_stake // precision

            assignments.append(RewardAssignment(m.worker_id, worker_reward, staker_reward))
            breakdowns.append(RewardBreakdown(
                worker_id=m.worker_id,
                peer_id=m.peer_id,
                t_i=t_i,
                liveness=m.liveness_factor,
                d_liveness=d_liveness,
                d_traffic=d_traffic,
                d_tenure=d_tenure,
                stake=m.stake,
                bytes_sent=m.bytes_sent,
                chunks_read=m.chunks_read,
                worker_reward=worker_reward,
                staker_reward=staker_reward,
            ))

        result = RewardResult(
            assignments=assignments,
            breakdowns=breakdowns,
            r_max=r_max,
            unlocked_cap=r_max_q * total_supply // precision,
            total_supply=total_supply,
            dropped=dropped,
        )
        logger.info(
            f"Computed rewards for {result.total_workers} workers "
            f"(dropped {len(dropped)}), total {result.total_reward}, cap {result.unlocked_cap}"
        )
        return result


# ============================================================================
# REPORTS
# ============================================================================

def emit_worker_reports(result: RewardResult) -> None:
    """Log one worker_report JSON line per worker."""
    for breakdown in result.breakdowns:
        report_logger.info(json.dumps({'type': 'worker_report', **breakdown.to_report()}))


def build_rewards_report(
    result: RewardResult,
    from_block: int,
    to_block: int,
    bot_address: str,
    target_apr: float,
    commit_tx_hash: Optional[str] = None,
    commit_error: Optional[str] = None,
) -> dict:
    return {
        'type': 'rewards_report',
        'epoch_start': from_block,
        'epoch_end': to_block,
        'bot_address': bot_address,
        'is_commit_success': commit_error is None and commit_tx_hash is not None,
        'commit_tx_hash': commit_tx_hash,
        'commit_error_message': commit_error,
        'active_workers_count': result.total_workers,
        'target_apr': target_apr,
        'r_max': result.r_max,
        'total_reward': str(result.total_reward),
    }


def emit_rewards_report(report: dict) -> None:
    report_logger.info(json.dumps(report))
