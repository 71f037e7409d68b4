"""
epochsettle/tests/test_rewards.py

Unit tests for the reward engine:
- Traffic weights and traffic coefficient
- Fixed-point yield and reward split
- Dropped workers and zero-total edge cases
- Unlocked cap property
- Structured reports
"""

import json
import logging
import random

import pytest

from epochsettle.config import SECONDS_PER_YEAR, RewardConfig
from epochsettle.protocol.rewards import (
    NetworkParams,
    RewardAssignment,
    RewardEngine,
    WorkerMetrics,
    build_rewards_report,
    emit_rewards_report,
    emit_worker_reports,
    max_yield,
    traffic_coefficient,
    traffic_weights,
)


def create_test_metrics(
    worker_id,
    bytes_sent=100,
    chunks_read=10,
    stake=0,
    liveness=1.0,
    tenure=1.0,
    peer_id=None,
):
    return WorkerMetrics(
        peer_id=peer_id or f"peer-{worker_id}",
        worker_id=worker_id,
        bytes_sent=bytes_sent,
        chunks_read=chunks_read,
        total_requests=10,
        valid_requests=10,
        stake=stake,
        total_delegated_stake=stake,
        liveness_factor=liveness,
        tenure_factor=tenure,
    )


# Half of the annual APR over a one-year epoch: rMax = 0.5
YEAR_PARAMS = NetworkParams(bond_amount=100, epoch_length_seconds=SECONDS_PER_YEAR, target_apr=0.5)


@pytest.fixture
def engine():
    return RewardEngine(RewardConfig())


# ============================================================================
# Coefficients
# ============================================================================

class TestCoefficients:
    """Test traffic and yield helpers."""

    def test_traffic_weights(self):
        metrics = [create_test_metrics(1, 100, 10), create_test_metrics(2, 300, 30)]
        weights = traffic_weights(metrics)

        assert weights[0] == pytest.approx(0.25)
        assert weights[1] == pytest.approx(0.75)

    def test_traffic_weights_zero_total(self):
        metrics = [create_test_metrics(1, 0, 0), create_test_metrics(2, 0, 0)]
        assert traffic_weights(metrics) == [0.0, 0.0]

    def test_traffic_coefficient_capped(self):
        assert traffic_coefficient(0.9, 1.0, 0.1, 0.1) == 1.0

    def test_traffic_coefficient_damped(self):
        value = traffic_coefficient(0.1, 1.0, 0.5, 0.1)
        assert value == pytest.approx(0.2 ** 0.1)
        assert value < 1.0

    def test_traffic_coefficient_zero_traffic(self):
        assert traffic_coefficient(0.0, 1.0, 0.5, 0.1) == 0.0
        assert traffic_coefficient(0.5, 0.0, 0.5, 0.1) == 0.0

    def test_traffic_coefficient_zero_stake_share(self):
        assert traffic_coefficient(0.5, 1.0, 0.0, 0.1) == 1.0

    def test_max_yield(self):
        assert max_yield(0.2, SECONDS_PER_YEAR / 2, SECONDS_PER_YEAR) == pytest.approx(0.1)

    def test_quantize_clamps(self, engine):
        assert engine.quantize(1.5) == engine.config.precision
        assert engine.quantize(-0.1) == 0
        assert engine.quantize(0.5) == engine.config.precision // 2


# ============================================================================
# Engine
# ============================================================================

class TestRewardEngine:
    """Test RewardEngine.compute."""

    def test_equal_traffic_full_coefficients(self, engine):
        metrics = [create_test_metrics(i) for i in range(1, 6)]
        result = engine.compute(metrics, YEAR_PARAMS)

        assert [a.worker_reward for a in result.assignments] == [50] * 5
        assert [a.staker_reward for a in result.assignments] == [0] * 5
        # rMax * bond * workers
        assert result.total_reward == 250
        assert result.unlocked_cap == 250

    def test_single_worker_without_stake(self, engine):
        result = engine.compute([create_test_metrics(1)], YEAR_PARAMS)

        assert result.assignments == [RewardAssignment(1, 50, 0)]

    def test_reward_split_with_stake(self, engine):
        result = engine.compute([create_test_metrics(1, stake=1000)], YEAR_PARAMS)
        assignment = result.assignments[0]

        # 0.5 * (100 + 500) and 0.5 * 500
        assert assignment.worker_reward == 300
        assert assignment.staker_reward == 250

    def test_odd_stake_floors_half(self, engine):
        result = engine.compute([create_test_metrics(1, stake=1001)], YEAR_PARAMS)
        assert result.assignments[0].worker_reward == 300
        assert result.assignments[0].staker_reward == 250

    def test_low_liveness_earns_nothing(self, engine):
        metrics = [
            create_test_metrics(1, bytes_sent=10_000, chunks_read=1000, liveness=0.79),
            create_test_metrics(2),
        ]
        result = engine.compute(metrics, YEAR_PARAMS)

        assert result.assignments[0].worker_reward == 0
        assert result.assignments[0].staker_reward == 0

    def test_tenure_scales_yield(self, engine):
        result = engine.compute([create_test_metrics(1, tenure=0.5)], YEAR_PARAMS)
        assert result.assignments[0].worker_reward == 25

    def test_unregistered_worker_dropped(self, engine):
        metrics = [create_test_metrics(1), create_test_metrics(None, peer_id="ghost")]
        result = engine.compute(metrics, YEAR_PARAMS)

        assert [a.worker_id for a in result.assignments] == [1]
        assert result.dropped == ["ghost"]

    def test_duplicate_worker_id_dropped(self, engine):
        metrics = [create_test_metrics(1, peer_id="a"), create_test_metrics(1, peer_id="b")]
        result = engine.compute(metrics, YEAR_PARAMS)

        assert result.total_workers == 1
        assert result.dropped == ["b"]

    def test_sorted_by_worker_id(self, engine):
        metrics = [create_test_metrics(i) for i in (5, 2, 9, 1)]
        result = engine.compute(metrics, YEAR_PARAMS)
        assert [a.worker_id for a in result.assignments] == [1, 2, 5, 9]

    def test_no_traffic_is_zero_not_error(self, engine):
        metrics = [create_test_metrics(1, 0, 0), create_test_metrics(2, 0, 0)]
        result = engine.compute(metrics, YEAR_PARAMS)

        assert result.total_reward == 0
        assert result.total_workers == 2

    def test_zero_supply_is_zero_not_error(self, engine):
        params = NetworkParams(bond_amount=0, epoch_length_seconds=SECONDS_PER_YEAR, target_apr=0.5)
        result = engine.compute([create_test_metrics(1), create_test_metrics(2)], params)

        assert result.total_reward == 0
        assert result.unlocked_cap == 0

    def test_empty_input(self, engine):
        result = engine.compute([], YEAR_PARAMS)
        assert result.assignments == []
        assert result.total_reward == 0

    def test_skewed_traffic_within_cap(self, engine):
        metrics = [
            create_test_metrics(i + 1, bytes_sent=b, chunks_read=10)
            for i, b in enumerate([10, 20, 30, 25, 15])
        ]
        result = engine.compute(metrics, YEAR_PARAMS)

        assert result.total_workers == 5
        assert result.total_reward <= result.unlocked_cap
        # Workers above their stake share are capped at the full rate
        assert result.assignments[2].worker_reward == 50
        assert result.assignments[0].worker_reward < 50

    def test_total_never_exceeds_cap(self, engine):
        rng = random.Random(7)
        for _ in range(100):
            metrics = [
                create_test_metrics(
                    i + 1,
                    bytes_sent=rng.randint(0, 10 ** 9),
                    chunks_read=rng.randint(0, 10 ** 6),
                    stake=rng.randint(0, 10 ** 24),
                    liveness=rng.random(),
                    tenure=rng.uniform(0.5, 1.0),
                )
                for i in range(rng.randint(1, 40))
            ]
            params = NetworkParams(
                bond_amount=rng.randint(0, 10 ** 21),
                epoch_length_seconds=rng.uniform(0, SECONDS_PER_YEAR),
                target_apr=rng.uniform(0, 1),
            )
            result = engine.compute(metrics, params)
            assert result.total_reward <= result.unlocked_cap

    def test_unlocked_cap_helper(self, engine):
        assert engine.unlocked_cap(YEAR_PARAMS, 1000) == 500

    def test_deterministic(self, engine):
        metrics = [create_test_metrics(i, bytes_sent=i * 7, stake=i * 11) for i in range(1, 10)]
        assert engine.compute(metrics, YEAR_PARAMS).assignments == engine.compute(metrics, YEAR_PARAMS).assignments


class TestWorkerMetricsValidation:
    """Test WorkerMetrics invariants."""

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            create_test_metrics(1, bytes_sent=-1)

    def test_valid_above_total_rejected(self):
        with pytest.raises(ValueError):
            WorkerMetrics(peer_id="p", worker_id=1, total_requests=1, valid_requests=2)

    def test_liveness_range(self):
        with pytest.raises(ValueError):
            create_test_metrics(1, liveness=1.5)


# ============================================================================
# Reports
# ============================================================================

class TestReports:
    """Test structured reports."""

    def test_rewards_report_success(self, engine):
        result = engine.compute([create_test_metrics(1)], YEAR_PARAMS)
        report = build_rewards_report(result, 1000, 2000, "0xA", 0.5, commit_tx_hash="0xabc")

        assert report["type"] == "rewards_report"
        assert report["epoch_start"] == 1000
        assert report["epoch_end"] == 2000
        assert report["is_commit_success"] is True
        assert report["active_workers_count"] == 1
        assert report["total_reward"] == "50"

    def test_rewards_report_failure(self, engine):
        result = engine.compute([create_test_metrics(1)], YEAR_PARAMS)
        report = build_rewards_report(result, 1000, 2000, "0xA", 0.5, commit_error="reverted")

        assert report["is_commit_success"] is False
        assert report["commit_error_message"] == "reverted"

    def test_reports_logged_as_json(self, engine, caplog):
        result = engine.compute([create_test_metrics(1), create_test_metrics(2)], YEAR_PARAMS)

        with caplog.at_level(logging.INFO, logger="epochsettle.reports"):
            emit_worker_reports(result)
            emit_rewards_report(build_rewards_report(result, 1, 2, "0xA", 0.5))

        records = [json.loads(r.getMessage()) for r in caplog.records if r.name == "epochsettle.reports"]
        assert [r["type"] for r in records] == ["worker_report", "worker_report", "rewards_report"]
        assert records[0]["worker_id"] == 1
        assert records[0]["worker_reward"] == "50"
