"""
Rollup tier registry.

A tier is a fixed bucket width plus the retention of its rollup log. The
default set runs from 1-minute buckets kept for six hours to 2-hour buckets
kept for ninety days.

Tier selection for a dashboard look-back window picks the finest tier whose
retention still covers the window:

    hours <= 6    -> 1min
    hours <= 48   -> 5min
    hours <= 336  -> 30min   (14 days)
    otherwise     -> 2hour
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any

from watcher_metrics.errors import InvalidArgumentError

# =============================================================================
# Data Models
# =============================================================================


@dataclass(frozen=True)
class RollupTier:
    """A rollup resolution.

    Attributes:
        name: Tier name (e.g., '5min').
        interval_seconds: Bucket width.
        retention_seconds: How long rows are kept in the tier's rollup log.
        label: Human-readable description.
    """

    name: str
    interval_seconds: int
    retention_seconds: int
    label: str = ""

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise InvalidArgumentError(
                "interval_seconds must be positive",
                details={"tier": self.name, "interval_seconds": self.interval_seconds},
            )
        if self.retention_seconds < self.interval_seconds:
            raise InvalidArgumentError(
                "retention_seconds must cover at least one bucket",
                details={
                    "tier": self.name,
                    "interval_seconds": self.interval_seconds,
                    "retention_seconds": self.retention_seconds,
                },
            )

    def bucket_start(self, timestamp: float) -> int:
        """Epoch-aligned start of the bucket containing ``timestamp``."""
        return int(timestamp // self.interval_seconds) * self.interval_seconds

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "interval": self.interval_seconds,
            "interval_label": format_interval(self.interval_seconds),
            "retention": self.retention_seconds,
            "retention_label": format_duration(self.retention_seconds),
            "label": self.label,
        }


# =============================================================================
# Constants
# =============================================================================

TIER_1MIN = "1min"
TIER_5MIN = "5min"
TIER_30MIN = "30min"
TIER_2HOUR = "2hour"

DEFAULT_TIERS: tuple[RollupTier, ...] = (
    RollupTier(TIER_1MIN, 60, 6 * 3600, "1-minute averages"),
    RollupTier(TIER_5MIN, 300, 48 * 3600, "5-minute averages"),
    RollupTier(TIER_30MIN, 1800, 14 * 86400, "30-minute averages"),
    RollupTier(TIER_2HOUR, 7200, 90 * 86400, "2-hour averages"),
)

# Upper look-back bound (hours, inclusive) served by each tier position;
# anything beyond the last bound goes to the coarsest tier.
TIER_HOUR_BOUNDS: tuple[int, ...] = (6, 48, 336)

# Tiers with rare writes and reads, stored gzip-compressed
COMPRESSED_TIERS = frozenset({TIER_30MIN, TIER_2HOUR})


# =============================================================================
# Formatting
# =============================================================================


def _trim(value: float) -> str:
    return f"{value:g}"


def format_interval(seconds: int) -> str:
    """Human-readable bucket width, e.g. '5 minutes'."""
    if seconds < 60:
        return f"{seconds} seconds"
    if seconds < 3600:
        return f"{_trim(seconds / 60)} minutes"
    return f"{_trim(seconds / 3600)} hours"


def format_duration(seconds: int) -> str:
    """Human-readable retention, e.g. '14 days'."""
    if seconds < 3600:
        return f"{_trim(seconds / 60)} minutes"
    if seconds < 86400:
        return f"{_trim(seconds / 3600)} hours"
    return f"{_trim(seconds / 86400)} days"


# =============================================================================
# TierRegistry Class
# =============================================================================


class TierRegistry:
    """
    Immutable set of rollup tiers, finest first.

    Example:
        >>> registry = TierRegistry()
        >>> registry.get_best_tier_for_hours(12)
        '5min'
        >>> registry.get_tier("5min").interval_seconds
        300
    """

    def __init__(self, tiers: Iterable[RollupTier] | None = None) -> None:
        ordered = sorted(tiers if tiers is not None else DEFAULT_TIERS, key=lambda t: t.interval_seconds)
        if not ordered:
            raise InvalidArgumentError("At least one rollup tier is required")

        self._tiers: dict[str, RollupTier] = {}
        for tier in ordered:
            if tier.name in self._tiers:
                raise InvalidArgumentError(
                    "Duplicate rollup tier name",
                    details={"tier": tier.name},
                )
            self._tiers[tier.name] = tier

    @classmethod
    def with_retention_cap(cls, retention_seconds: int) -> TierRegistry:
        """
        Default tiers with retention capped at ``retention_seconds``.

        The coarsest tier keeps exactly the cap, so a short configured
        retention still has one tier covering all of it.
        """
        capped = []
        for index, tier in enumerate(DEFAULT_TIERS):
            is_coarsest = index == len(DEFAULT_TIERS) - 1
            retention = retention_seconds if is_coarsest else min(tier.retention_seconds, retention_seconds)
            capped.append(
                RollupTier(
                    tier.name,
                    tier.interval_seconds,
                    max(retention, tier.interval_seconds),
                    tier.label,
                )
            )
        return cls(capped)

    def get_tiers(self) -> dict[str, RollupTier]:
        """Return a copy of the tier table, finest first."""
        return dict(self._tiers)

    @property
    def names(self) -> list[str]:
        """Tier names, finest first."""
        return list(self._tiers)

    def get_tier(self, name: str) -> RollupTier:
        """
        Look up a tier by name.

        Raises:
            InvalidArgumentError: If the tier does not exist.
        """
        try:
            return self._tiers[name]
        except KeyError:
            raise InvalidArgumentError(
                f"Unknown rollup tier: {name}",
                details={"tier": name, "valid": self.names},
            ) from None

    def previous_tier(self, name: str) -> RollupTier | None:
        """The next finer tier, or None for the finest."""
        names = self.names
        index = names.index(self.get_tier(name).name)
        if index == 0:
            return None
        return self._tiers[names[index - 1]]

    def get_best_tier_for_hours(self, hours: float) -> str:
        """
        Pick the tier for a look-back window.

        The mapping is a monotone step function over TIER_HOUR_BOUNDS: a
        longer window never selects a finer tier.

        Args:
            hours: Requested look-back window in hours.

        Returns:
            Tier name.

        Raises:
            InvalidArgumentError: If hours is negative.
        """
        if hours < 0:
            raise InvalidArgumentError(
                "hours must be non-negative",
                details={"hours": hours},
            )

        names = self.names
        position = sum(1 for bound in TIER_HOUR_BOUNDS if hours > bound)
        return names[min(position, len(names) - 1)]

    def __iter__(self) -> Iterator[RollupTier]:
        return iter(self._tiers.values())

    def __len__(self) -> int:
        return len(self._tiers)

    def __contains__(self, name: object) -> bool:
        return name in self._tiers


_DEFAULT_REGISTRY = TierRegistry()


def get_tiers() -> dict[str, RollupTier]:
    """Default tier table."""
    return _DEFAULT_REGISTRY.get_tiers()


def get_best_tier_for_hours(hours: float) -> str:
    """Default tier for a look-back window of ``hours``."""
    return _DEFAULT_REGISTRY.get_best_tier_for_hours(hours)


def tiers_from_mapping(table: Mapping[str, Mapping[str, Any]]) -> TierRegistry:
    """
    Build a registry from ``{name: {"interval": s, "retention": s}}``.

    Also accepts ``interval_seconds``/``retention_seconds`` keys.
    """
    tiers = []
    for name, entry in table.items():
        tiers.append(
            RollupTier(
                name=name,
                interval_seconds=int(entry.get("interval_seconds", entry.get("interval", 0))),
                retention_seconds=int(entry.get("retention_seconds", entry.get("retention", 0))),
                label=str(entry.get("label", "")),
            )
        )
    return TierRegistry(tiers)
