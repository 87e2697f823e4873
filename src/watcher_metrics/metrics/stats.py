"""
Statistical helpers used inside rollup aggregate functions.

All functions are pure: no state, no I/O. They implement latency
aggregation with a nearest-rank p95, jitter estimation and quality-band
classification for latency, jitter and packet loss.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import NamedTuple

# =============================================================================
# Quality Ratings
# =============================================================================

QUALITY_GOOD = "good"
QUALITY_FAIR = "fair"
QUALITY_POOR = "poor"
QUALITY_CRITICAL = "critical"

# Ordered best to worst
QUALITY_LEVELS = (QUALITY_GOOD, QUALITY_FAIR, QUALITY_POOR, QUALITY_CRITICAL)


class QualityThresholds(NamedTuple):
    """Upper bounds (inclusive) of the good, fair and poor bands."""

    good: float
    fair: float
    poor: float


# Latency in milliseconds
LATENCY_THRESHOLDS = QualityThresholds(good=50, fair=100, poor=250)

# Jitter in milliseconds
JITTER_THRESHOLDS = QualityThresholds(good=10, fair=20, poor=50)

# Packet loss in percent
PACKET_LOSS_THRESHOLDS = QualityThresholds(good=1, fair=2, poor=5)

# Smoothing divisor of the RFC 3550 interarrival jitter estimator
RFC3550_GAIN_DIVISOR = 16.0


def get_quality_rating(
    value: float,
    good_max: float,
    fair_max: float,
    poor_max: float,
) -> str:
    """
    Classify a value into a quality band.

    Thresholds must be strictly increasing; each band includes its upper
    bound.

    Args:
        value: The metric value (latency ms, jitter ms, loss %).
        good_max: Largest value still rated "good".
        fair_max: Largest value still rated "fair".
        poor_max: Largest value still rated "poor".

    Returns:
        One of "good", "fair", "poor" or "critical".

    Example:
        >>> get_quality_rating(75, 50, 100, 250)
        'fair'
    """
    if value <= good_max:
        return QUALITY_GOOD
    if value <= fair_max:
        return QUALITY_FAIR
    if value <= poor_max:
        return QUALITY_POOR
    return QUALITY_CRITICAL


def rate(value: float | None, thresholds: QualityThresholds) -> str | None:
    """Rate a value against a threshold table, passing None through."""
    if value is None:
        return None
    return get_quality_rating(value, *thresholds)


def get_overall_quality_rating(*ratings: str | None) -> str:
    """
    Combine individual ratings into the worst one.

    Unrated (None) inputs are ignored; with nothing rated the result is
    "good".
    """
    worst = 0
    for rating in ratings:
        if rating is None:
            continue
        worst = max(worst, QUALITY_LEVELS.index(rating))
    return QUALITY_LEVELS[worst]


# =============================================================================
# Latency Aggregation
# =============================================================================


def nearest_rank_index(count: int, percentile: int) -> int:
    """
    Zero-based index of the nearest-rank percentile in a sorted sample.

    Uses integer arithmetic for ``ceil(percentile / 100 * count)`` so that
    float rounding never shifts the selected rank.
    """
    rank = (percentile * count + 99) // 100
    return max(rank, 1) - 1


def aggregate_latencies(
    values: Iterable[float],
    precision: int = 1,
    include_p95: bool = True,
) -> dict[str, float | None]:
    """
    Aggregate latency samples into min, max, avg and p95.

    The p95 uses the nearest-rank method on the ascending-sorted samples, so
    for small buckets (n <= 20) it is the maximum value.

    Args:
        values: Latency samples in any order.
        precision: Decimal places for rounding.
        include_p95: Whether to compute the p95 key.

    Returns:
        Dictionary with "min", "max", "avg" and (optionally) "p95"; all
        None when no samples were given.

    Example:
        >>> aggregate_latencies([10, 20, 30, 40, 50, 60, 70, 80, 90, 100])
        {'min': 10.0, 'max': 100.0, 'avg': 55.0, 'p95': 100.0}
    """
    ordered = sorted(float(v) for v in values)

    if not ordered:
        result: dict[str, float | None] = {"min": None, "max": None, "avg": None}
        if include_p95:
            result["p95"] = None
        return result

    count = len(ordered)
    result = {
        "min": round(ordered[0], precision),
        "max": round(ordered[-1], precision),
        "avg": round(sum(ordered) / count, precision),
    }
    if include_p95:
        result["p95"] = round(ordered[nearest_rank_index(count, 95)], precision)
    return result


# =============================================================================
# Jitter
# =============================================================================


def calculate_jitter_from_latency_array(
    values: Sequence[float],
) -> dict[str, float] | None:
    """
    Estimate jitter from consecutive latency samples.

    Jitter is derived from the absolute differences between consecutive
    samples in input order; the input is never sorted.

    Args:
        values: Latency samples in time order.

    Returns:
        Dictionary with "avg" (mean difference) and "max" (largest
        difference), rounded to 2 decimals, or None for fewer than two
        samples.
    """
    if len(values) < 2:
        return None

    deltas = [abs(float(values[i]) - float(values[i - 1])) for i in range(1, len(values))]

    return {
        "avg": round(sum(deltas) / len(deltas), 2),
        "max": round(max(deltas), 2),
    }


def calculate_jitter_rfc3550(
    previous_jitter: float,
    previous_latency: float,
    latency: float,
) -> float:
    """One step of the RFC 3550 estimator: J += (|D| - J) / 16."""
    delta = abs(latency - previous_latency)
    return previous_jitter + (delta - previous_jitter) / RFC3550_GAIN_DIVISOR


class JitterTracker:
    """
    Per-host running RFC 3550 jitter.

    Used at sample time, where only the newest latency per host is known.
    The first latency of a host primes the tracker and yields no jitter.
    """

    def __init__(self) -> None:
        self._hosts: dict[str, tuple[float, float]] = {}

    def update(self, host: str, latency: float) -> float | None:
        """Feed one latency sample, returning the host's smoothed jitter."""
        latency = float(latency)
        previous = self._hosts.get(host)
        if previous is None:
            self._hosts[host] = (latency, 0.0)
            return None

        previous_latency, previous_jitter = previous
        jitter = calculate_jitter_rfc3550(previous_jitter, previous_latency, latency)
        self._hosts[host] = (latency, jitter)
        return round(jitter, 2)

    def reset(self, host: str | None = None) -> None:
        """Forget one host, or all hosts."""
        if host is None:
            self._hosts.clear()
        else:
            self._hosts.pop(host, None)

    def __contains__(self, host: object) -> bool:
        return host in self._hosts
