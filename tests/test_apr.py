"""
epochsettle/tests/test_apr.py

Unit tests for static and utilization-driven APR.
"""

import pytest

from epochsettle.config import AprConfig
from epochsettle.errors import ConfigError
from epochsettle.protocol.apr import dynamic_apr, target_apr, utilization


class TestUtilization:
    """Test the utilization ratio."""

    def test_ratio(self):
        assert utilization(25, 100) == 0.25

    def test_no_capacity(self):
        assert utilization(25, 0) == 0.0


class TestDynamicApr:
    """Test the three utilization bands."""

    @pytest.fixture
    def config(self):
        return AprConfig(base_apr=0.2, min_apr=0.05, max_apr=0.7, dynamic=True, target_capacity=100)

    @pytest.mark.parametrize("util, expected", [
        (0.0, 0.16),
        (0.05, 0.18),
        (0.1, 0.2),
        (0.15, 0.2),
        (0.2, 0.2),
        (0.6, 0.45),
        (1.0, 0.7),
        (2.0, 0.7),
    ])
    def test_bands(self, config, util, expected):
        assert dynamic_apr(util, config) == pytest.approx(expected)

    def test_floor_at_min(self):
        config = AprConfig(base_apr=0.2, min_apr=0.19, max_apr=0.7, dynamic=True, target_capacity=100)
        assert dynamic_apr(0.0, config) == pytest.approx(0.19)

    def test_target_apr_uses_worker_count(self, config):
        assert target_apr(config, 60) == pytest.approx(0.45)


class TestStaticApr:
    """Test fixed APR."""

    def test_returns_base(self):
        config = AprConfig(base_apr=0.3)
        assert target_apr(config, 0) == 0.3
        assert target_apr(config, 10_000) == 0.3

    def test_dynamic_requires_capacity(self):
        with pytest.raises(ConfigError):
            AprConfig(dynamic=True, target_capacity=0)

    def test_bounds_ordered(self):
        with pytest.raises(ConfigError):
            AprConfig(base_apr=0.8, max_apr=0.7)
