"""
epochsettle/protocol/uptime.py

Worker liveness from ping timestamps, and tenure from historical liveness.

Workers ping periodically. Any gap between consecutive pings longer than
the offline threshold is counted as offline time in full. The window
start and end act as virtual pings, so a worker that stops pinging midway
is charged for the remainder of the window.

Key Features:
- Liveness ratio over a window
- Piecewise-linear liveness coefficient
- Per-epoch liveness history over a tenure window
- Tenure coefficient from the number of well-live historical epochs
"""

import logging
from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence

from ..config import DEFAULT_OFFLINE_THRESHOLD, DEFAULT_TENURE_LIVENESS

logger = logging.getLogger("epochsettle.protocol.uptime")


# ============================================================================
# CONSTANTS
# ============================================================================

# Liveness coefficient breakpoints
LIVENESS_ZERO_BELOW = 0.8
LIVENESS_FIRST_RAMP_END = 0.9
LIVENESS_FULL_AT = 0.95


# ============================================================================
# LIVENESS
# ============================================================================

def compute_liveness(
    pings: Iterable[float],
    window_start: float,
    window_end: float,
    offline_threshold: float = DEFAULT_OFFLINE_THRESHOLD,
) -> float:
    """
    Fraction of the window a worker was online.

    Args:
        pings: Ping timestamps in seconds; ones outside the window are ignored
        window_start: Window start timestamp
        window_end: Window end timestamp
        offline_threshold: Gaps longer than this count as offline

    Returns:
        Liveness in [0, 1]; 0 for a worker with no pings in the window
    """
    duration = window_end - window_start
    if duration <= 0:
        return 0.0

    inside = sorted(t for t in pings if window_start <= t <= window_end)
    if not inside:
        return 0.0

    points = [window_start] + inside + [window_end]
    offline = 0.0
    for prev, cur in zip(points, points[1:]):
        gap = cur - prev
        if gap > offline_threshold:
            offline += gap

    return max(0.0, min(1.0, 1.0 - offline / duration))


def liveness_coefficient(liveness: float) -> float:
    """
    Map a liveness ratio to its reward coefficient.

    0 below 0.8, ramps 9L - 7.2 up to 0.9, then 2L - 0.9 up to 0.95,
    then 1.
    """
    if liveness < LIVENESS_ZERO_BELOW:
        return 0.0
    if liveness < LIVENESS_FIRST_RAMP_END:
        return max(0.0, 9 * liveness - 7.2)
    if liveness < LIVENESS_FULL_AT:
        return min(1.0, 2 * liveness - 0.9)
    return 1.0


# ============================================================================
# TENURE
# ============================================================================

def split_pings_by_epoch(pings: Sequence[float], boundaries: Sequence[float]) -> List[List[float]]:
    """
    Split sorted ping timestamps into consecutive epochs.

    Args:
        pings: Ping timestamps (any order)
        boundaries: N + 1 ascending epoch boundary timestamps

    Returns:
        N lists of pings, one per [boundaries[i], boundaries[i + 1]]
    """
    ordered = sorted(pings)
    epochs = []
    for start, end in zip(boundaries, boundaries[1:]):
        lo = bisect_left(ordered, start)
        hi = bisect_right(ordered, end)
        epochs.append(ordered[lo:hi])
    return epochs


def historical_liveness(
    pings: Sequence[float],
    boundaries: Sequence[float],
    offline_threshold: float = DEFAULT_OFFLINE_THRESHOLD,
) -> List[float]:
    """Liveness for each epoch delimited by boundaries."""
    history = []
    for (start, end), epoch_pings in zip(
        zip(boundaries, boundaries[1:]),
        split_pings_by_epoch(pings, boundaries),
    ):
        history.append(compute_liveness(epoch_pings, start, end, offline_threshold))
    return history


def tenure_coefficient(live_epochs: int) -> float:
    """
    Tenure bonus: 0.5 plus 0.1 per two well-live epochs, capped at 1.

    Computed on integer tenths so 10 live epochs land exactly on 1.0.
    """
    tenths = 5 + max(0, live_epochs) // 2
    return min(10, tenths) / 10


def count_live_epochs(history: Iterable[float], threshold: float = DEFAULT_TENURE_LIVENESS) -> int:
    return sum(1 for liveness in history if liveness >= threshold)


@dataclass
class TenureRecord:
    """Historical liveness of one worker over the tenure window."""
    peer_id: str
    history: List[float] = field(default_factory=list)
    threshold: float = DEFAULT_TENURE_LIVENESS

    @property
    def live_epochs(self) -> int:
        return count_live_epochs(self.history, self.threshold)

    @property
    def coefficient(self) -> float:
        return tenure_coefficient(self.live_epochs)

    def to_dict(self) -> dict:
        return {
            'peer_id': self.peer_id,
            'history': self.history,
            'live_epochs': self.live_epochs,
            'coefficient': self.coefficient,
        }


def compute_tenure(
    pings_by_worker: Dict[str, Sequence[float]],
    boundaries: Sequence[float],
    offline_threshold: float = DEFAULT_OFFLINE_THRESHOLD,
    threshold: float = DEFAULT_TENURE_LIVENESS,
) -> Dict[str, TenureRecord]:
    """
    Tenure records for every worker with pings in the tenure window.

    Workers absent from pings_by_worker get no record; callers treat them
    as having zero live epochs.
    """
    records = {}
    for peer_id, pings in pings_by_worker.items():
        records[peer_id] = TenureRecord(
            peer_id=peer_id,
            history=historical_liveness(pings, boundaries, offline_threshold),
            threshold=threshold,
        )
    logger.debug(f"Computed tenure for {len(records)} workers over {max(0, len(boundaries) - 1)} epochs")
    return records
