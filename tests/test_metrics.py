"""
epochsettle/tests/test_metrics.py

Unit tests for the Prometheus metrics collector.
"""

from epochsettle.metrics import SettlementMetrics
from epochsettle.protocol.status_store import DistributionPhase, DistributionStatus, StatusStore


class TestSettlementMetrics:
    """Test SettlementMetrics."""

    def test_collect_prometheus_format(self):
        store = StatusStore()
        store.upsert(DistributionStatus("1-2", 1, 2, phase=DistributionPhase.COMPLETED))
        metrics = SettlementMetrics(store)
        metrics.record_commit("committed")
        metrics.record_commit("committed")
        metrics.record_approval("already_approved")
        metrics.record_batch("distributed", 150)
        metrics.record_batch("skipped")
        metrics.set_last_committed_block(2000)

        output = metrics.collect()

        assert "# HELP epochsettle_commits_total" in output
        assert "# TYPE epochsettle_distributions gauge" in output
        assert 'epochsettle_distributions{phase="completed"} 1' in output
        assert 'epochsettle_distributions{phase="failed"} 0' in output
        assert 'epochsettle_commits_total{outcome="committed"} 2' in output
        assert 'epochsettle_approvals_total{outcome="already_approved"} 1' in output
        assert 'epochsettle_batches_total{outcome="skipped"} 1' in output
        assert "epochsettle_rewards_distributed_total 150" in output
        assert "epochsettle_last_committed_block 2000" in output

    def test_without_store(self):
        output = SettlementMetrics().collect()
        assert "epochsettle_distributions" not in output
        assert "epochsettle_uptime_seconds" in output

    def test_only_distributed_batches_add_rewards(self):
        metrics = SettlementMetrics()
        metrics.record_batch("failed", 500)
        metrics.record_batch("distributed", 20)

        assert metrics.get_stats()["rewards_distributed"] == "20"

    def test_last_committed_block_monotonic(self):
        metrics = SettlementMetrics()
        metrics.set_last_committed_block(3000)
        metrics.set_last_committed_block(2000)

        assert metrics.get_stats()["last_committed_block"] == 3000

    def test_reset_counters(self):
        metrics = SettlementMetrics()
        metrics.record_commit("failed")
        metrics.reset_counters()

        stats = metrics.get_stats()
        assert stats["commits"] == {}
        assert stats["distributions"] == {}
