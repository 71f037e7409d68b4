"""
epochsettle/tests/test_uptime.py

Unit tests for liveness and tenure.
"""

import pytest

from epochsettle.protocol.uptime import (
    TenureRecord,
    compute_liveness,
    compute_tenure,
    count_live_epochs,
    historical_liveness,
    liveness_coefficient,
    split_pings_by_epoch,
    tenure_coefficient,
)


def create_test_pings(start, end, every=60.0, skip=None):
    """Pings from start to end inclusive, optionally skipping an interval."""
    pings = []
    t = start
    while t <= end:
        if not (skip and skip[0] < t < skip[1]):
            pings.append(t)
        t += every
    return pings


# ============================================================================
# Liveness
# ============================================================================

class TestComputeLiveness:
    """Test compute_liveness."""

    def test_regular_pings_fully_live(self):
        pings = create_test_pings(0, 3600)
        assert compute_liveness(pings, 0, 3600) == 1.0

    def test_no_pings(self):
        assert compute_liveness([], 0, 3600) == 0.0

    def test_gap_counted_in_full(self):
        pings = create_test_pings(0, 3600, skip=(1200, 1800))
        assert compute_liveness(pings, 0, 3600) == pytest.approx(1 - 600 / 3600)

    def test_stopped_midway(self):
        pings = create_test_pings(0, 3000)
        assert compute_liveness(pings, 0, 3600) == pytest.approx(1 - 600 / 3600)

    def test_started_late(self):
        pings = create_test_pings(900, 3600)
        assert compute_liveness(pings, 0, 3600) == pytest.approx(0.75)

    def test_gap_at_threshold_not_offline(self):
        pings = create_test_pings(0, 650, every=65.0)
        assert compute_liveness(pings, 0, 650, offline_threshold=65) == 1.0

    def test_pings_outside_window_ignored(self):
        pings = [-100.0, 5000.0] + create_test_pings(0, 3600)
        assert compute_liveness(pings, 0, 3600) == 1.0

    def test_unsorted_input(self):
        pings = list(reversed(create_test_pings(0, 3600)))
        assert compute_liveness(pings, 0, 3600) == 1.0

    def test_empty_window(self):
        assert compute_liveness([10.0], 10, 10) == 0.0


class TestLivenessCoefficient:
    """Test the piecewise-linear coefficient."""

    @pytest.mark.parametrize("liveness, expected", [
        (0.0, 0.0),
        (0.79, 0.0),
        (0.8, 0.0),
        (0.85, 0.45),
        (0.9, 0.9),
        (0.94, 0.98),
        (0.95, 1.0),
        (1.0, 1.0),
    ])
    def test_breakpoints(self, liveness, expected):
        assert liveness_coefficient(liveness) == pytest.approx(expected, abs=1e-9)

    def test_monotonic_within_ramps(self):
        values = [liveness_coefficient(0.8 + i * 0.001) for i in range(100)]
        assert values == sorted(values)


# ============================================================================
# Tenure
# ============================================================================

class TestTenure:
    """Test tenure from historical liveness."""

    @pytest.mark.parametrize("live_epochs, expected", [
        (0, 0.5), (1, 0.5), (2, 0.6), (3, 0.6), (9, 0.9), (10, 1.0), (25, 1.0),
    ])
    def test_tenure_coefficient(self, live_epochs, expected):
        assert tenure_coefficient(live_epochs) == expected

    def test_count_live_epochs(self):
        assert count_live_epochs([1.0, 0.9, 0.89, 0.0], threshold=0.9) == 2

    def test_split_pings_by_epoch(self):
        epochs = split_pings_by_epoch([5, 15, 25, 12], [0, 10, 20, 30])
        assert epochs == [[5], [12, 15], [25]]

    def test_historical_liveness(self):
        boundaries = [0, 3600, 7200, 10800]
        pings = create_test_pings(0, 3600) + create_test_pings(7200, 10800)
        history = historical_liveness(pings, boundaries)

        assert history[0] == 1.0
        assert history[1] < 0.1
        assert history[2] == 1.0

    def test_compute_tenure(self):
        boundaries = [i * 3600 for i in range(11)]
        always = create_test_pings(0, 36000)
        half = create_test_pings(0, 18000)

        records = compute_tenure({"a": always, "b": half, "c": []}, boundaries)

        assert records["a"].live_epochs == 10
        assert records["a"].coefficient == 1.0
        assert records["b"].live_epochs == 5
        assert records["b"].coefficient == 0.7
        assert records["c"].coefficient == 0.5

    def test_record_to_dict(self):
        record = TenureRecord("p", history=[1.0, 1.0, 0.5])
        data = record.to_dict()
        assert data["live_epochs"] == 2
        assert data["coefficient"] == 0.6
