"""
Metrics pipeline for watcher.

Components:
- storage: append-only raw and rollup line logs
- tiers: rollup tier table and tier selection
- state: per-tier rollup checkpoints
- rollup: incremental bucketing and aggregation engine
- stats: latency, jitter and quality helpers
- collectors: metric sources bound to the pipeline
- daemon: asyncio collection loop
"""

from watcher_metrics.metrics.collectors import (
    EfuseCollector,
    MetricsCollector,
    NetworkQualityCollector,
    PingCollector,
    SystemMetricsCollector,
    build_collectors,
)
from watcher_metrics.metrics.daemon import DaemonState, DaemonStatus, MetricsDaemon
from watcher_metrics.metrics.rollup import RollupProcessor, RollupQueryResult
from watcher_metrics.metrics.state import RollupStateStore, TierState
from watcher_metrics.metrics.storage import RawMetricStore, RotationResult
from watcher_metrics.metrics.tiers import RollupTier, TierRegistry, get_best_tier_for_hours, get_tiers

__all__ = [
    "DaemonState",
    "DaemonStatus",
    "EfuseCollector",
    "MetricsCollector",
    "MetricsDaemon",
    "NetworkQualityCollector",
    "PingCollector",
    "RawMetricStore",
    "RollupProcessor",
    "RollupQueryResult",
    "RollupStateStore",
    "RollupTier",
    "RotationResult",
    "SystemMetricsCollector",
    "TierRegistry",
    "TierState",
    "build_collectors",
    "get_best_tier_for_hours",
    "get_tiers",
]
