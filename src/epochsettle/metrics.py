"""
epochsettle/metrics.py

Prometheus metrics for the settlement engine.

Counters are fed by the coordinator as it commits, approves and
distributes; distribution phase gauges are read from the status store at
collection time.
"""

import time
import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from .protocol.status_store import StatusStore

logger = logging.getLogger("epochsettle.metrics")


class SettlementMetrics:
    """
    Prometheus metrics collector for a distributor process.

    Usage:
        metrics = SettlementMetrics(store)
        coordinator = DistributionCoordinator(..., metrics=metrics)

        prometheus_output = metrics.collect()
    """

    METRICS = {
        "epochsettle_distributions": {
            "type": "gauge",
            "help": "Tracked distributions by phase",
        },
        "epochsettle_commits_total": {
            "type": "counter",
            "help": "Commit attempts by outcome",
        },
        "epochsettle_approvals_total": {
            "type": "counter",
            "help": "Approval attempts by outcome",
        },
        "epochsettle_batches_total": {
            "type": "counter",
            "help": "Batch settlement attempts by outcome",
        },
        "epochsettle_rewards_distributed_total": {
            "type": "counter",
            "help": "Reward amount settled on the ledger (smallest unit)",
        },
        "epochsettle_last_committed_block": {
            "type": "gauge",
            "help": "Upper block of the last range this process committed",
        },
        "epochsettle_uptime_seconds": {
            "type": "counter",
            "help": "Process uptime in seconds",
        },
    }

    def __init__(self, store: Optional["StatusStore"] = None):
        """
        Initialize metrics collector.

        Args:
            store: Status store to read distribution phases from
        """
        self.store = store
        self._start_time = time.time()

        self._commits: Dict[str, int] = {}
        self._approvals: Dict[str, int] = {}
        self._batches: Dict[str, int] = {}
        self._rewards_distributed = 0
        self._last_committed_block = 0

    def record_commit(self, outcome: str) -> None:
        self._commits[outcome] = self._commits.get(outcome, 0) + 1

    def record_approval(self, outcome: str) -> None:
        self._approvals[outcome] = self._approvals.get(outcome, 0) + 1

    def record_batch(self, outcome: str, amount: int = 0) -> None:
        self._batches[outcome] = self._batches.get(outcome, 0) + 1
        if outcome == "distributed":
            self._rewards_distributed += amount

    def set_last_committed_block(self, block: int) -> None:
        self._last_committed_block = max(self._last_committed_block, block)

    def collect(self) -> str:
        """
        Collect all metrics and return in Prometheus format.

        Returns:
            Prometheus-formatted metrics string
        """
        lines = []

        def header(name: str) -> None:
            metric_def = self.METRICS[name]
            lines.append(f"# HELP {name} {metric_def['help']}")
            lines.append(f"# TYPE {name} {metric_def['type']}")

        def labelled(name: str, label: str, values: Dict[str, Any]) -> None:
            header(name)
            for key, value in sorted(values.items()):
                lines.append(f'{name}{{{label}="{key}"}} {value}')

        try:
            if self.store is not None:
                labelled("epochsettle_distributions", "phase", self.store.counts())

            labelled("epochsettle_commits_total", "outcome", self._commits)
            labelled("epochsettle_approvals_total", "outcome", self._approvals)
            labelled("epochsettle_batches_total", "outcome", self._batches)

            header("epochsettle_rewards_distributed_total")
            lines.append(f"epochsettle_rewards_distributed_total {self._rewards_distributed}")

            header("epochsettle_last_committed_block")
            lines.append(f"epochsettle_last_committed_block {self._last_committed_block}")

            header("epochsettle_uptime_seconds")
            lines.append(f"epochsettle_uptime_seconds {time.time() - self._start_time}")

        except Exception as e:
            logger.error(f"Error collecting metrics: {e}")
            lines.append(f"# Error collecting metrics: {e}")

        return "\n".join(lines) + "\n"

    def get_stats(self) -> Dict[str, Any]:
        """Metrics as a dictionary (for the JSON API)."""
        return {
            "distributions": self.store.counts() if self.store is not None else {},
            "commits": dict(self._commits),
            "approvals": dict(self._approvals),
            "batches": dict(self._batches),
            "rewards_distributed": str(self._rewards_distributed),
            "last_committed_block": self._last_committed_block,
            "uptime_seconds": time.time() - self._start_time,
        }

    def reset_counters(self) -> None:
        """Reset all counters (useful for testing)."""
        self._commits = {}
        self._approvals = {}
        self._batches = {}
        self._rewards_distributed = 0
        self._last_committed_block = 0
