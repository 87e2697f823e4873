"""
Incremental, tiered rollup of raw metric logs.

The processor is metric-agnostic. For each tier it reads the raw records
added since the tier's checkpoint, groups them into epoch-aligned buckets,
hands every closed bucket to a caller-supplied aggregate function and
appends the resulting rows to the tier's rollup log. The checkpoint is then
advanced and persisted through RollupStateStore.

A bucket ``[start, start + interval)`` is closed once
``start + interval + safety_margin <= now``; open buckets are left for a
later pass, so a bucket is aggregated at most once and never while it may
still receive samples.

Rollup rows are appended before the checkpoint is saved. A crash between
the two can repeat the last pass's rows on restart, but never drops one.
"""

from __future__ import annotations

import contextlib
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from watcher_metrics.errors import FailedPreconditionError, InternalError, WatcherError
from watcher_metrics.logging import get_logger
from watcher_metrics.metrics.state import RollupStateStore, TierState
from watcher_metrics.metrics.storage import (
    GZIP_SUFFIX,
    TIMESTAMP_FIELD,
    RawMetricStore,
    RecordFilter,
    RotationResult,
)
from watcher_metrics.metrics.tiers import COMPRESSED_TIERS, RollupTier, TierRegistry

logger = get_logger(__name__)

# =============================================================================
# Types and Constants
# =============================================================================

Record = dict[str, Any]
AggregateResult = Mapping[str, Any] | Sequence[Mapping[str, Any]] | None
AggregateFn = Callable[[list[Record], int, int], AggregateResult]
PathResolver = Callable[[str], "str | Path"]
SourceResolver = Callable[[str], "str | Path | None"]

DEFAULT_SAFETY_MARGIN_SECONDS = 120

# Rollup logs smaller than this are not worth rewriting for retention
ROTATE_THRESHOLD_BYTES = 1024 * 1024
ROTATE_THRESHOLD_GZIP_BYTES = 100 * 1024

# Look-back used when reading a tier the registry does not know
FALLBACK_WINDOW_SECONDS = 24 * 3600

ROLLUP_SUFFIX = ".log"


@dataclass
class RollupQueryResult:
    """Result of reading a tier's rollup log.

    Attributes:
        success: False when the tier has no rollup log yet.
        data: Rows within the requested range, ascending by timestamp.
        count: Number of rows in data.
        tier: Tier the rows belong to.
        period_start: Inclusive range start.
        period_end: Inclusive range end.
        error: Reason for an unsuccessful read.
    """

    success: bool
    data: list[Record] = field(default_factory=list)
    count: int = 0
    tier: str | None = None
    period_start: int | None = None
    period_end: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        if not self.success:
            return {"success": False, "error": self.error, "data": self.data}
        return {
            "success": True,
            "count": self.count,
            "data": self.data,
            "tier": self.tier,
            "period": {"start": self.period_start, "end": self.period_end},
        }


def bucket_midpoint(bucket_start: int, interval: int) -> int:
    """Timestamp stamped on a bucket's rollup rows."""
    return bucket_start + interval // 2


def _normalize_rows(result: AggregateResult, bucket_start: int, interval: int) -> list[Record]:
    """Flatten an aggregate result into rows; rows without a timestamp get the bucket midpoint."""
    if result is None:
        return []
    if isinstance(result, Mapping):
        items: Sequence[Mapping[str, Any]] = [result]
    else:
        items = result

    rows = []
    for item in items:
        row = dict(item)
        row.setdefault(TIMESTAMP_FIELD, bucket_midpoint(bucket_start, interval))
        rows.append(row)
    return rows


# =============================================================================
# RollupProcessor Class
# =============================================================================


class RollupProcessor:
    """
    Generic tiered rollup engine shared by every metric source.

    Example:
        >>> processor = RollupProcessor()
        >>> processor.process_tier(
        ...     "1min",
        ...     processor.registry.get_tier("1min"),
        ...     "/data/ping/rollup-state.json",
        ...     "/data/ping/raw.log",
        ...     lambda tier: processor.get_rollup_file_path("/data/ping", tier),
        ...     aggregate_ping_bucket,
        ... )
    """

    def __init__(
        self,
        registry: TierRegistry | None = None,
        raw_store: RawMetricStore | None = None,
        state_store: RollupStateStore | None = None,
        safety_margin_seconds: int = DEFAULT_SAFETY_MARGIN_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the processor.

        Args:
            registry: Tier table; defaults to the standard four tiers.
            raw_store: Store used to read raw logs.
            state_store: Checkpoint persistence.
            safety_margin_seconds: Delay after a bucket's end before it is
                considered closed.
            clock: Source of the current epoch time.
        """
        self.registry = registry or TierRegistry()
        self.raw_store = raw_store or RawMetricStore(clock=clock)
        self.state_store = state_store or RollupStateStore(self.registry.names)
        self.safety_margin_seconds = safety_margin_seconds
        self._clock = clock
        self._rollup_store = RawMetricStore(prefixed=False, clock=clock)

    # =========================================================================
    # Tier Processing
    # =========================================================================

    def process_tier(
        self,
        tier_name: str,
        tier_config: RollupTier | None,
        state_file: str | Path,
        raw_log_path: str | Path,
        rollup_path_resolver: PathResolver,
        aggregate_fn: AggregateFn,
        *,
        force: bool = False,
        max_bucket_end: int | None = None,
    ) -> TierState:
        """
        Run one incremental rollup pass for a tier.

        Args:
            tier_name: Tier to process.
            tier_config: Tier definition; looked up in the registry when None.
            state_file: Checkpoint document of the metric source.
            raw_log_path: Log the tier aggregates from.
            rollup_path_resolver: Maps a tier name to its rollup log path.
            aggregate_fn: ``(records, bucket_start, interval)`` returning a
                row, a list of rows, or None for a bucket with nothing to
                report.
            force: Ignore the per-tier throttle.
            max_bucket_end: Latest bucket end that may be closed. Set when
                raw_log_path is another tier's rollup log, which is only
                complete up to that tier's ``last_bucket_end``.

        Returns:
            The tier's checkpoint after the pass (unchanged when throttled).

        Raises:
            InternalError: If aggregate_fn raises; no rows are written.
            FailedPreconditionError: If rows or state cannot be persisted;
                the checkpoint is not advanced.
        """
        tier = tier_config or self.registry.get_tier(tier_name)
        interval = tier.interval_seconds
        now = int(self._clock())

        state = self.state_store.get_state(state_file)
        tier_state = state.get(tier_name, TierState())

        if not force and now - tier_state.last_rollup < interval:
            logger.debug(
                "Rollup tier throttled",
                extra={"tier": tier_name, "last_rollup": tier_state.last_rollup, "now": now},
            )
            return tier_state

        records = self.raw_store.read(raw_log_path, since_timestamp=tier_state.last_processed, sort=True)

        buckets: dict[int, list[Record]] = {}
        for record in records:
            buckets.setdefault(tier.bucket_start(record[TIMESTAMP_FIELD]), []).append(record)

        rows: list[Record] = []
        newest_consumed = tier_state.last_processed
        last_closed_end = tier_state.last_bucket_end
        closed = 0

        for bucket_start in sorted(buckets):
            bucket_end = bucket_start + interval
            if bucket_end <= tier_state.last_bucket_end:
                continue
            if bucket_end + self.safety_margin_seconds > now:
                break
            if max_bucket_end is not None and bucket_end > max_bucket_end:
                break

            bucket_records = buckets[bucket_start]
            try:
                result = aggregate_fn(bucket_records, bucket_start, interval)
            except WatcherError:
                raise
            except Exception as e:
                logger.error(
                    "Aggregate function failed",
                    extra={"tier": tier_name, "bucket_start": bucket_start, "error": str(e)},
                )
                raise InternalError(
                    f"Aggregate function failed for bucket {bucket_start}: {e}",
                    details={"tier": tier_name, "bucket_start": bucket_start},
                ) from e

            rows.extend(_normalize_rows(result, bucket_start, interval))
            newest_consumed = max(newest_consumed, int(bucket_records[-1][TIMESTAMP_FIELD]))
            last_closed_end = bucket_end
            closed += 1

        rollup_path = Path(rollup_path_resolver(tier_name))
        if rows and not self.append_rollup_entries(rollup_path, rows):
            raise FailedPreconditionError(
                "Unable to append rollup entries",
                details={"tier": tier_name, "path": str(rollup_path), "count": len(rows)},
            )

        new_state = tier_state.advance(
            last_processed=newest_consumed,
            last_bucket_end=last_closed_end,
            last_rollup=now,
        )
        state[tier_name] = new_state
        self.state_store.save_state(state_file, state)

        if closed:
            logger.info(
                "Processed rollup tier",
                extra={
                    "tier": tier_name,
                    "buckets": closed,
                    "rows": len(rows),
                    "last_bucket_end": new_state.last_bucket_end,
                },
            )

        try:
            self.rotate_rollup_file(rollup_path, tier.retention_seconds)
        except FailedPreconditionError as e:
            logger.warning(
                "Rollup retention rotation failed",
                extra={"tier": tier_name, "path": str(rollup_path), "error": e.message},
            )

        return new_state

    def process_all(
        self,
        state_file: str | Path,
        raw_log_path: str | Path,
        rollup_path_resolver: PathResolver,
        aggregate_fn: AggregateFn,
        *,
        source_resolver: SourceResolver | None = None,
        force: bool = False,
    ) -> dict[str, TierState]:
        """
        Process every tier, finest first.

        A failing tier is logged and skipped; the remaining tiers still run.

        Args:
            source_resolver: Optional ``tier -> path`` overriding the log a
                tier reads from (None keeps ``raw_log_path``). A tier reading
                another log only closes buckets the previous tier has
                already rolled up.

        Returns:
            Mapping of tier name to its checkpoint after the pass. Failed
            tiers are omitted.
        """
        results: dict[str, TierState] = {}
        for tier in self.registry:
            source = source_resolver(tier.name) if source_resolver else None
            max_bucket_end = None
            if source is not None:
                previous = self.registry.previous_tier(tier.name)
                if previous is not None:
                    state = self.state_store.get_state(state_file)
                    max_bucket_end = state.get(previous.name, TierState()).last_bucket_end
            try:
                results[tier.name] = self.process_tier(
                    tier.name,
                    tier,
                    state_file,
                    source if source is not None else raw_log_path,
                    rollup_path_resolver,
                    aggregate_fn,
                    force=force,
                    max_bucket_end=max_bucket_end,
                )
            except WatcherError as e:
                logger.error(
                    "Rollup tier failed",
                    extra={"tier": tier.name, "error_code": e.error_code, "error": e.message},
                )
        return results

    # =========================================================================
    # Rollup File Operations
    # =========================================================================

    def should_compress_tier(self, tier: str) -> bool:
        """Whether a tier's rollup log is stored gzip-compressed."""
        return tier in COMPRESSED_TIERS

    def get_rollup_file_path(self, base_dir: str | Path, tier: str) -> Path:
        """``<base_dir>/<tier>.log``, with ``.gz`` appended for compressed tiers."""
        path = Path(base_dir) / f"{tier}{ROLLUP_SUFFIX}"
        if self.should_compress_tier(tier):
            return path.with_name(path.name + GZIP_SUFFIX)
        return path

    def append_rollup_entries(self, rollup_path: str | Path, entries: Sequence[Mapping[str, Any]]) -> bool:
        """Append rows to a rollup log in one exclusive write; ``.gz`` paths get a new gzip member."""
        return self._rollup_store.write_batch(rollup_path, entries)

    def rotate_rollup_file(
        self,
        rollup_path: str | Path,
        retention_seconds: int,
        *,
        threshold_bytes: int = ROTATE_THRESHOLD_BYTES,
        gzip_threshold_bytes: int = ROTATE_THRESHOLD_GZIP_BYTES,
    ) -> RotationResult | None:
        """
        Drop rows older than the tier retention.

        Only files at or above the size threshold are rewritten, keeping
        rotation I/O off the frequent small-file path.

        Returns:
            RotationResult, or None when the file is missing or below the
            threshold.
        """
        rollup_path = Path(rollup_path)
        try:
            size = rollup_path.stat().st_size
        except FileNotFoundError:
            return None

        threshold = gzip_threshold_bytes if rollup_path.name.endswith(GZIP_SUFFIX) else threshold_bytes
        if size < threshold:
            return None

        return self._rollup_store.rotate(rollup_path, retention_seconds, backup_suffix=None)

    def migrate_to_compressed(self, base_dir: str | Path, tier: str) -> bool:
        """
        Move an existing plain ``<tier>.log`` into ``<tier>.log.gz``.

        Returns:
            True if a migration happened; False when the tier is not
            compressed, there is no plain file, or a compressed file already
            exists.
        """
        if not self.should_compress_tier(tier):
            return False

        plain_path = Path(base_dir) / f"{tier}{ROLLUP_SUFFIX}"
        compressed_path = plain_path.with_name(plain_path.name + GZIP_SUFFIX)
        if not plain_path.exists() or compressed_path.exists():
            return False

        entries = self._rollup_store.read(plain_path)
        if entries and not self._rollup_store.write_batch(compressed_path, entries):
            return False

        with contextlib.suppress(FileNotFoundError):
            plain_path.unlink()

        logger.info(
            "Migrated rollup tier to compressed format",
            extra={"tier": tier, "entries": len(entries), "path": str(compressed_path)},
        )
        return True

    # =========================================================================
    # Queries
    # =========================================================================

    def read_rollup_data(
        self,
        rollup_path: str | Path,
        tier_name: str,
        start_time: int | None = None,
        end_time: int | None = None,
        filter_fn: RecordFilter | None = None,
    ) -> RollupQueryResult:
        """
        Read a tier's rows within ``[start_time, end_time]``.

        Args:
            rollup_path: Tier rollup log.
            tier_name: Tier the log belongs to.
            start_time: Inclusive start; defaults to ``end_time`` minus the
                tier retention.
            end_time: Inclusive end; defaults to now.
            filter_fn: Optional extra predicate on rows.

        Returns:
            RollupQueryResult; ``success`` is False when the log does not
            exist yet, which callers treat as "no data".
        """
        rollup_path = Path(rollup_path)
        if not rollup_path.exists():
            return RollupQueryResult(success=False, error="Rollup file not found")

        if end_time is None:
            end_time = int(self._clock())
        if start_time is None:
            window = (
                self.registry.get_tier(tier_name).retention_seconds
                if tier_name in self.registry
                else FALLBACK_WINDOW_SECONDS
            )
            start_time = end_time - window

        def in_range(row: Record) -> bool:
            if row[TIMESTAMP_FIELD] > end_time:
                return False
            return filter_fn is None or filter_fn(row)

        data = self._rollup_store.read(rollup_path, since_timestamp=start_time, filter_fn=in_range, sort=True)

        return RollupQueryResult(
            success=True,
            data=data,
            count=len(data),
            tier=tier_name,
            period_start=start_time,
            period_end=end_time,
        )

    def get_tiers_info(self, rollup_path_resolver: PathResolver) -> dict[str, dict[str, Any]]:
        """Describe each tier along with its rollup log's presence and size."""
        info: dict[str, dict[str, Any]] = {}
        for tier in self.registry:
            path = Path(rollup_path_resolver(tier.name))
            exists = path.exists()
            info[tier.name] = {
                **tier.to_dict(),
                "file_exists": exists,
                "file_size": path.stat().st_size if exists else 0,
                "compressed": self.should_compress_tier(tier.name),
            }
        return info
