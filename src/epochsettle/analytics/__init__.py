"""
epochsettle/analytics/

Worker activity sources for reward calculation.
"""

from .metrics_view import (
    WorkerActivity,
    MetricsSnapshot,
    WorkerMetricsView,
    InMemoryMetricsView,
    ClickHouseMetricsView,
)

__all__ = [
    "WorkerActivity",
    "MetricsSnapshot",
    "WorkerMetricsView",
    "InMemoryMetricsView",
    "ClickHouseMetricsView",
]
