"""
epochsettle/analytics/metrics_view.py

Read-only view of raw worker activity for a time window.

Architecture:
    WorkerMetricsView (abstract)
    ├── InMemoryMetricsView (fixtures, dry runs)
    └── ClickHouseMetricsView (analytics store over its HTTP interface)

The view knows nothing about ledger ids or stakes; it reports activity
keyed by peer id and the raw ping timestamps the liveness calculation
needs.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

import requests

from ..config import ClickHouseConfig
from ..errors import ConfigError, UpstreamUnavailable

logger = logging.getLogger("epochsettle.analytics.metrics_view")


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class WorkerActivity:
    """Aggregated activity of one worker in a window."""
    peer_id: str
    bytes_sent: int = 0
    chunks_read: int = 0
    total_requests: int = 0
    valid_requests: int = 0
    pings: List[float] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'peer_id': self.peer_id,
            'bytes_sent': self.bytes_sent,
            'chunks_read': self.chunks_read,
            'total_requests': self.total_requests,
            'valid_requests': self.valid_requests,
            'pings': len(self.pings),
        }


@dataclass
class MetricsSnapshot:
    """Activity of every worker seen in [window_start, window_end]."""
    window_start: float
    window_end: float
    workers: Dict[str, WorkerActivity] = field(default_factory=dict)

    @property
    def duration(self) -> float:
        return self.window_end - self.window_start

    def __len__(self) -> int:
        return len(self.workers)


# ============================================================================
# ABSTRACT VIEW
# ============================================================================

class WorkerMetricsView(ABC):
    """Windowed queries over worker traffic and pings."""

    @abstractmethod
    def snapshot(self, window_start: float, window_end: float) -> MetricsSnapshot:
        """Traffic and pings of workers active in the window."""

    @abstractmethod
    def pings(self, window_start: float, window_end: float) -> Dict[str, List[float]]:
        """Raw ping timestamps per peer id."""

    @abstractmethod
    def has_data_after(self, timestamp: float) -> bool:
        """True once the store has ingested pings newer than timestamp."""


# ============================================================================
# IN-MEMORY VIEW
# ============================================================================

@dataclass
class _Request:
    peer_id: str
    timestamp: float
    bytes_sent: int
    chunks_read: int
    valid: bool


class InMemoryMetricsView(WorkerMetricsView):
    """View over requests and pings recorded in memory."""

    def __init__(self):
        self._requests: List[_Request] = []
        self._pings: Dict[str, List[float]] = {}

    def record_request(self, peer_id: str, timestamp: float, bytes_sent: int,
                       chunks_read: int, valid: bool = True) -> None:
        self._requests.append(_Request(peer_id, timestamp, bytes_sent, chunks_read, valid))

    def record_ping(self, peer_id: str, timestamp: float) -> None:
        self._pings.setdefault(peer_id, []).append(timestamp)

    def record_pings(self, peer_id: str, timestamps: List[float]) -> None:
        self._pings.setdefault(peer_id, []).extend(timestamps)

    def snapshot(self, window_start: float, window_end: float) -> MetricsSnapshot:
        workers: Dict[str, WorkerActivity] = {}
        for req in self._requests:
            if not window_start <= req.timestamp <= window_end:
                continue
            activity = workers.setdefault(req.peer_id, WorkerActivity(req.peer_id))
            activity.total_requests += 1
            # traffic counts only for requests that passed validation
            if req.valid:
                activity.valid_requests += 1
                activity.bytes_sent += req.bytes_sent
                activity.chunks_read += req.chunks_read

        for peer_id, pings in self.pings(window_start, window_end).items():
            if peer_id in workers:
                workers[peer_id].pings = pings

        return MetricsSnapshot(window_start, window_end, workers)

    def pings(self, window_start: float, window_end: float) -> Dict[str, List[float]]:
        result = {}
        for peer_id, pings in self._pings.items():
            inside = sorted(t for t in pings if window_start <= t <= window_end)
            if inside:
                result[peer_id] = inside
        return result

    def has_data_after(self, timestamp: float) -> bool:
        return any(t > timestamp for pings in self._pings.values() for t in pings)


# ============================================================================
# CLICKHOUSE VIEW
# ============================================================================

def format_timestamp(ts: float) -> str:
    """ClickHouse DateTime literal in UTC."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


class ClickHouseMetricsView(WorkerMetricsView):
    """
    WorkerMetricsView over the ClickHouse HTTP interface.

    Expects `queries(workerId, timestamp, responseBytes, readChunks)` and
    `worker_pings(workerId, timestamp)` tables in the configured database.
    Rows in `queries` are written only after the query signatures
    validate, so every aggregated request counts as valid.
    """

    def __init__(self, config: ClickHouseConfig, session: Optional[requests.Session] = None):
        if not config.url:
            raise ConfigError("ClickHouse url is not configured")
        self.config = config
        self.session = session or requests.Session()

    def _query(self, sql: str) -> List[dict]:
        """Run a query and return JSONEachRow rows."""
        auth = (self.config.username, self.config.password) if self.config.username else None
        try:
            response = self.session.post(
                self.config.url,
                params={"database": self.config.database},
                data=(sql + " FORMAT JSONEachRow").encode("utf-8"),
                auth=auth,
                timeout=self.config.timeout,
            )
        except requests.RequestException as e:
            raise UpstreamUnavailable(f"ClickHouse request failed: {e}", cause=e)

        if response.status_code != 200:
            raise UpstreamUnavailable(
                f"ClickHouse returned {response.status_code}: {response.text[:200]}"
            )
        return [json.loads(line) for line in response.text.splitlines() if line.strip()]

    def snapshot(self, window_start: float, window_end: float) -> MetricsSnapshot:
        sql = (
            "SELECT workerId, sum(responseBytes) AS bytes, sum(readChunks) AS chunks, "
            "count() AS requests "
            f"FROM {self.config.database}.queries "
            f"WHERE timestamp >= '{format_timestamp(window_start)}' "
            f"AND timestamp <= '{format_timestamp(window_end)}' "
            "GROUP BY workerId"
        )
        workers = {}
        for row in self._query(sql):
            peer_id = row["workerId"]
            requests_count = int(row["requests"])
            workers[peer_id] = WorkerActivity(
                peer_id=peer_id,
                bytes_sent=int(row["bytes"]),
                chunks_read=int(row["chunks"]),
                total_requests=requests_count,
                valid_requests=requests_count,
            )

        for peer_id, pings in self.pings(window_start, window_end).items():
            if peer_id in workers:
                workers[peer_id].pings = pings

        logger.info(f"Loaded activity for {len(workers)} workers from ClickHouse")
        return MetricsSnapshot(window_start, window_end, workers)

    def pings(self, window_start: float, window_end: float) -> Dict[str, List[float]]:
        sql = (
            "SELECT workerId, toUnixTimestamp(timestamp) AS ts "
            f"FROM {self.config.database}.worker_pings "
            f"WHERE timestamp >= '{format_timestamp(window_start)}' "
            f"AND timestamp <= '{format_timestamp(window_end)}' "
            "ORDER BY timestamp"
        )
        pings: Dict[str, List[float]] = {}
        for row in self._query(sql):
            pings.setdefault(row["workerId"], []).append(float(row["ts"]))
        return pings

    def has_data_after(self, timestamp: float) -> bool:
        sql = (
            "SELECT count() AS count "
            f"FROM {self.config.database}.worker_pings "
            f"WHERE timestamp > '{format_timestamp(timestamp)}'"
        )
        rows = self._query(sql)
        return bool(rows) and int(rows[0]["count"]) > 0
