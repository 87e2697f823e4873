"""
Tests for metrics statistics helpers.

This test module validates:
- Latency aggregation with nearest-rank p95
- Jitter from successive latency differences
- RFC 3550 running jitter per host
- Quality bands and overall rating
"""

from __future__ import annotations

import pytest

from watcher_metrics.metrics.stats import (
    JITTER_THRESHOLDS,
    LATENCY_THRESHOLDS,
    QUALITY_CRITICAL,
    QUALITY_FAIR,
    QUALITY_GOOD,
    QUALITY_POOR,
    JitterTracker,
    aggregate_latencies,
    calculate_jitter_from_latency_array,
    calculate_jitter_rfc3550,
    get_overall_quality_rating,
    get_quality_rating,
    nearest_rank_index,
    rate,
)

STABLE = [15.2, 15.5, 15.3, 15.4, 15.1, 15.6, 15.2, 15.3]
UNSTABLE = [15, 45, 12, 80, 20, 60, 15, 100]

# =============================================================================
# Tests for aggregate_latencies
# =============================================================================


class TestAggregateLatencies:
    """Tests for latency aggregation."""

    def test_ten_values(self) -> None:
        """Test the p95 of ten samples is the maximum."""
        result = aggregate_latencies([10, 20, 30, 40, 50, 60, 70, 80, 90, 100])

        assert result == {"min": 10, "max": 100, "avg": 55, "p95": 100}

    def test_order_does_not_matter(self) -> None:
        """Test unsorted input gives the same statistics."""
        result = aggregate_latencies([100, 10, 70, 40, 90, 20, 60, 30, 80, 50])
        assert result["p95"] == 100
        assert result["min"] == 10

    def test_p95_of_large_sample(self) -> None:
        """Test the nearest-rank p95 of 1..100 is 95."""
        result = aggregate_latencies(range(1, 101))
        assert result["p95"] == 95

    def test_p95_of_twenty_one_samples(self) -> None:
        """Test 21 samples select rank 20, not the maximum."""
        result = aggregate_latencies(range(1, 22))
        assert result["p95"] == 20

    def test_single_value(self) -> None:
        """Test a single sample is every statistic."""
        assert aggregate_latencies([42.25], precision=1) == {
            "min": 42.2,
            "max": 42.2,
            "avg": 42.2,
            "p95": 42.2,
        }

    def test_empty(self) -> None:
        """Test no samples gives None statistics."""
        assert aggregate_latencies([]) == {"min": None, "max": None, "avg": None, "p95": None}

    def test_without_p95(self) -> None:
        """Test p95 can be omitted."""
        assert "p95" not in aggregate_latencies([1, 2, 3], include_p95=False)

    def test_precision(self) -> None:
        """Test rounding precision is applied."""
        assert aggregate_latencies([1.23456, 2.34567], precision=3)["avg"] == 1.79


class TestNearestRankIndex:
    """Tests for nearest_rank_index."""

    @pytest.mark.parametrize(
        ("count", "expected"),
        [(1, 0), (10, 9), (20, 18), (21, 19), (100, 94)],
    )
    def test_p95_indices(self, count: int, expected: int) -> None:
        """Test zero-based p95 indices for several sample sizes."""
        assert nearest_rank_index(count, 95) == expected


# =============================================================================
# Tests for Jitter
# =============================================================================


class TestJitterFromLatencyArray:
    """Tests for calculate_jitter_from_latency_array."""

    def test_stable_lower_than_unstable(self) -> None:
        """Test a stable series has strictly lower avg and max jitter."""
        stable = calculate_jitter_from_latency_array(STABLE)
        unstable = calculate_jitter_from_latency_array(UNSTABLE)

        assert stable is not None and unstable is not None
        assert stable["avg"] < unstable["avg"]
        assert stable["max"] < unstable["max"]

    def test_mean_and_max_of_differences(self) -> None:
        """Test avg and max are taken over absolute successive differences."""
        result = calculate_jitter_from_latency_array([10, 20, 15, 15])

        # differences: 10, 5, 0
        assert result == {"avg": 5.0, "max": 10.0}

    def test_uses_input_order(self) -> None:
        """Test the input is not sorted before differencing."""
        ordered = calculate_jitter_from_latency_array([10, 20, 30])
        shuffled = calculate_jitter_from_latency_array([10, 30, 20])

        assert ordered == {"avg": 10.0, "max": 10.0}
        assert shuffled == {"avg": 15.0, "max": 20.0}

    def test_insufficient_samples(self) -> None:
        """Test fewer than two samples gives None."""
        assert calculate_jitter_from_latency_array([]) is None
        assert calculate_jitter_from_latency_array([12.0]) is None


class TestJitterTracker:
    """Tests for RFC 3550 running jitter."""

    def test_single_step(self) -> None:
        """Test one estimator step."""
        assert calculate_jitter_rfc3550(0.0, 10.0, 26.0) == 1.0

    def test_first_sample_primes(self) -> None:
        """Test the first latency of a host yields no jitter."""
        tracker = JitterTracker()

        assert tracker.update("fpp-1", 10.0) is None
        assert "fpp-1" in tracker
        assert tracker.update("fpp-1", 26.0) == 1.0

    def test_hosts_are_independent(self) -> None:
        """Test each host keeps its own estimate."""
        tracker = JitterTracker()
        tracker.update("a", 10.0)
        tracker.update("b", 100.0)

        assert tracker.update("a", 10.0) == 0.0
        assert tracker.update("b", 132.0) == 2.0

    def test_reset(self) -> None:
        """Test reset forgets one host or all hosts."""
        tracker = JitterTracker()
        tracker.update("a", 1.0)
        tracker.update("b", 1.0)

        tracker.reset("a")
        assert "a" not in tracker
        assert "b" in tracker

        tracker.reset()
        assert "b" not in tracker


# =============================================================================
# Tests for Quality Ratings
# =============================================================================


class TestQualityRating:
    """Tests for quality band classification."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (25, QUALITY_GOOD),
            (75, QUALITY_FAIR),
            (150, QUALITY_POOR),
            (300, QUALITY_CRITICAL),
        ],
    )
    def test_latency_bands(self, value: float, expected: str) -> None:
        """Test the four latency bands."""
        assert get_quality_rating(value, 50, 100, 250) == expected

    @pytest.mark.parametrize(
        ("value", "expected"),
        [(50, QUALITY_GOOD), (100, QUALITY_FAIR), (250, QUALITY_POOR), (250.01, QUALITY_CRITICAL)],
    )
    def test_upper_bounds_inclusive(self, value: float, expected: str) -> None:
        """Test each band includes its upper bound."""
        assert get_quality_rating(value, 50, 100, 250) == expected

    def test_rate_with_thresholds(self) -> None:
        """Test rate() applies a threshold table and passes None through."""
        assert rate(15, JITTER_THRESHOLDS) == QUALITY_FAIR
        assert rate(None, LATENCY_THRESHOLDS) is None

    def test_overall_is_worst(self) -> None:
        """Test the overall rating is the worst individual rating."""
        assert get_overall_quality_rating(QUALITY_GOOD, QUALITY_POOR, QUALITY_FAIR) == QUALITY_POOR
        assert get_overall_quality_rating(QUALITY_CRITICAL, QUALITY_GOOD) == QUALITY_CRITICAL

    def test_overall_ignores_unrated(self) -> None:
        """Test None ratings are ignored."""
        assert get_overall_quality_rating(None, QUALITY_FAIR, None) == QUALITY_FAIR
        assert get_overall_quality_rating() == QUALITY_GOOD
