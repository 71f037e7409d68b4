"""
epochsettle/tests/test_cli.py

Tests for the command line entry point.
"""

import json
from unittest.mock import AsyncMock, patch

import pytest
import requests
from click.testing import CliRunner

from epochsettle.analytics.metrics_view import InMemoryMetricsView
from epochsettle.blockchain.gateway import InMemoryGateway, InMemoryLedger
from epochsettle.cli import cli
from epochsettle.config import AprConfig, RewardConfig
from epochsettle.protocol.coordinator import DistributionCoordinator
from epochsettle.protocol.rewards import RewardEngine

# Empty values keep defaults regardless of the caller's environment
CLEAN_ENV = {"EPOCHSETTLE_RPC_URL": "", "EPOCHSETTLE_BATCH_SIZE": ""}


@pytest.fixture
def runner():
    return CliRunner()


def create_test_coordinator():
    ledger = InMemoryLedger(distributors=["0xA"])
    view = InMemoryMetricsView()
    for peer in ("peer-1", "peer-2"):
        ledger.register_worker(peer)
        view.record_request(peer, ledger.genesis_time + 1500 * ledger.block_time, 100, 10)
        view.record_pings(peer, [ledger.genesis_time + 60.0 * i for i in range(801)])
    return DistributionCoordinator(
        gateway=InMemoryGateway(ledger, "0xA"),
        metrics_view=view,
        engine=RewardEngine(RewardConfig(seconds_per_year=12000, tenure_epoch_count=0)),
        apr_config=AprConfig(base_apr=0.5),
    )


class TestCli:
    """Test CLI commands."""

    def test_help(self, runner):
        result = runner.invoke(cli, ["--help"], env=CLEAN_ENV)
        assert result.exit_code == 0
        assert "distribute" in result.output

    def test_bad_env_value(self, runner):
        result = runner.invoke(cli, ["calculate", "1000", "2000"], env={"EPOCHSETTLE_BATCH_SIZE": "lots"})
        assert result.exit_code == 1
        assert "EPOCHSETTLE_BATCH_SIZE" in result.output

    def test_missing_chain_config(self, runner):
        result = runner.invoke(cli, ["--log-level", "ERROR", "calculate", "1000", "2000"], env=CLEAN_ENV)
        assert result.exit_code == 1
        assert "Chain config requires" in result.output

    def test_invalid_range(self, runner):
        result = runner.invoke(cli, ["distribute", "2000", "1000"], env=CLEAN_ENV)
        assert result.exit_code == 2

    def test_calculate(self, runner):
        with patch("epochsettle.cli.build_coordinator", return_value=create_test_coordinator()):
            result = runner.invoke(cli, ["--log-level", "ERROR", "calculate", "1000", "2000"], env=CLEAN_ENV)

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["epoch_id"] == "1000-2000"
        assert data["total_reward"] == "100"

    def test_distribute(self, runner):
        coordinator = create_test_coordinator()
        with patch("epochsettle.cli.build_coordinator", return_value=coordinator):
            result = runner.invoke(cli, ["--log-level", "ERROR", "distribute", "1000", "2000"], env=CLEAN_ENV)

        assert result.exit_code == 0
        assert json.loads(result.output)["status"] == "completed"
        assert coordinator.gateway.ledger.balances == {1: 50, 2: 50}

    def test_calculate_upstream_error_is_reported(self, runner):
        coordinator = create_test_coordinator()
        coordinator.calculate = AsyncMock(side_effect=requests.ConnectionError("node unreachable"))
        with patch("epochsettle.cli.build_coordinator", return_value=coordinator):
            result = runner.invoke(cli, ["--log-level", "ERROR", "calculate", "1000", "2000"], env=CLEAN_ENV)

        assert result.exit_code == 1
        assert "UpstreamUnavailable: node unreachable" in result.output
        assert isinstance(result.exception, SystemExit)
