"""
Metric collectors.

A collector binds one metric source directory to the rollup pipeline::

    <data_dir>/raw.log              raw samples (prefixed JSON lines)
    <data_dir>/rollup-state.json    per-tier checkpoints
    <data_dir>/<tier>.log[.gz]      rollup rows per tier

Each subclass supplies the domain-specific bucket aggregation; the
incremental bucketing and checkpointing are shared through RollupProcessor.
Collectors that can sample by themselves (system metrics) also implement
``collect()``; the others are fed by external probes through
``write_samples()``.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar

import psutil

from watcher_metrics.logging import get_logger
from watcher_metrics.metrics.rollup import Record, RollupProcessor, RollupQueryResult, bucket_midpoint
from watcher_metrics.metrics.state import TierState
from watcher_metrics.metrics.stats import (
    JITTER_THRESHOLDS,
    LATENCY_THRESHOLDS,
    PACKET_LOSS_THRESHOLDS,
    JitterTracker,
    aggregate_latencies,
    calculate_jitter_from_latency_array,
    get_overall_quality_rating,
    rate,
)
from watcher_metrics.metrics.storage import TIMESTAMP_FIELD, RawMetricStore, RecordFilter, RotationResult
from watcher_metrics.metrics.tiers import TierRegistry

if TYPE_CHECKING:
    from watcher_metrics.config import AppConfig

logger = get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

RAW_LOG_NAME = "raw.log"
STATE_FILE_NAME = "rollup-state.json"

DEFAULT_RAW_RETENTION_SECONDS = 25 * 3600

STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _bucket_bounds(bucket_start: int, interval: int) -> dict[str, int]:
    return {
        TIMESTAMP_FIELD: bucket_midpoint(bucket_start, interval),
        "period_start": bucket_start,
        "period_end": bucket_start + interval,
    }


# =============================================================================
# MetricsCollector Base Class
# =============================================================================


class MetricsCollector(ABC):
    """
    Base class binding a metric source directory to the rollup pipeline.

    Subclasses set ``source_name`` and implement ``aggregate_for_rollup``.
    """

    source_name: ClassVar[str] = ""

    def __init__(
        self,
        data_dir: str | Path,
        *,
        processor: RollupProcessor | None = None,
        raw_store: RawMetricStore | None = None,
        raw_retention_seconds: int = DEFAULT_RAW_RETENTION_SECONDS,
        safety_margin_seconds: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the collector.

        Args:
            data_dir: Directory holding this source's logs.
            processor: Rollup engine; built from ``build_registry()`` if None.
            raw_store: Raw log store.
            raw_retention_seconds: Age after which raw samples are rotated out.
            safety_margin_seconds: Closed-bucket margin for a default processor.
            clock: Source of the current epoch time.
        """
        self.data_dir = Path(data_dir)
        self._clock = clock
        self.raw_store = raw_store or RawMetricStore(clock=clock)
        if processor is None:
            kwargs: dict[str, Any] = {}
            if safety_margin_seconds is not None:
                kwargs["safety_margin_seconds"] = safety_margin_seconds
            processor = RollupProcessor(
                registry=self.build_registry(),
                raw_store=self.raw_store,
                clock=clock,
                **kwargs,
            )
        self.processor = processor
        self.raw_retention_seconds = raw_retention_seconds

    def build_registry(self) -> TierRegistry:
        """Tier table used when no processor is injected."""
        return TierRegistry()

    @property
    def registry(self) -> TierRegistry:
        return self.processor.registry

    @property
    def raw_log_path(self) -> Path:
        return self.data_dir / RAW_LOG_NAME

    @property
    def state_file(self) -> Path:
        return self.data_dir / STATE_FILE_NAME

    def now(self) -> int:
        return int(self._clock())

    def get_rollup_file_path(self, tier: str) -> Path:
        return self.processor.get_rollup_file_path(self.data_dir, tier)

    def source_for_tier(self, tier: str) -> Path | None:
        """Log a tier aggregates from; None means the raw log."""
        return None

    # =========================================================================
    # Raw Samples
    # =========================================================================

    def collect(self) -> list[Record]:
        """Take one round of samples; passive collectors return nothing."""
        return []

    def write_samples(self, records: Iterable[Mapping[str, Any]]) -> bool:
        """Append samples to the raw log as one batch."""
        return self.raw_store.write_batch(self.raw_log_path, records)

    def read_raw(self, since_timestamp: float = 0, filter_fn: RecordFilter | None = None) -> list[Record]:
        return self.raw_store.read(self.raw_log_path, since_timestamp=since_timestamp, filter_fn=filter_fn, sort=True)

    def rotate_raw(self) -> RotationResult:
        """Drop raw samples older than the raw retention."""
        return self.raw_store.rotate(self.raw_log_path, self.raw_retention_seconds)

    # =========================================================================
    # Rollups
    # =========================================================================

    @abstractmethod
    def aggregate_for_rollup(
        self,
        records: list[Record],
        bucket_start: int,
        interval: int,
    ) -> Record | list[Record] | None:
        """Aggregate one closed bucket into rollup row(s), or None to record nothing."""

    def process_all_rollups(self, force: bool = False) -> dict[str, TierState]:
        """Run every tier once; compressed tiers are migrated from plain logs first."""
        for tier in self.registry:
            self.processor.migrate_to_compressed(self.data_dir, tier.name)

        return self.processor.process_all(
            self.state_file,
            self.raw_log_path,
            self.get_rollup_file_path,
            self.aggregate_for_rollup,
            source_resolver=self.source_for_tier,
            force=force,
        )

    def read_rollup_data(
        self,
        tier: str,
        start_time: int | None = None,
        end_time: int | None = None,
        filter_fn: RecordFilter | None = None,
    ) -> RollupQueryResult:
        return self.processor.read_rollup_data(
            self.get_rollup_file_path(tier),
            tier,
            start_time,
            end_time,
            filter_fn,
        )

    def get_best_rollup_tier(self, hours_back: float) -> str:
        return self.registry.get_best_tier_for_hours(hours_back)

    def get_metrics(self, hours_back: float = 24, filter_fn: RecordFilter | None = None) -> dict[str, Any]:
        """
        Rollup rows covering the last ``hours_back`` hours.

        The tier is picked automatically for the window. When its rollup log
        does not exist yet, the next finer tier with a log is read instead.
        Successful results carry a ``tier_info`` entry describing the tier
        actually used.
        """
        end_time = self.now()
        start_time = end_time - int(hours_back * 3600)

        tier = self.registry.get_tier(self.get_best_rollup_tier(hours_back))
        candidate = tier
        while candidate is not None and not self.get_rollup_file_path(candidate.name).exists():
            candidate = self.registry.previous_tier(candidate.name)
        if candidate is not None and candidate != tier:
            logger.debug(
                "Falling back to finer rollup tier",
                extra={"source": self.source_name, "preferred": tier.name, "tier": candidate.name},
            )
            tier = candidate
        tier_name = tier.name

        result = self.read_rollup_data(tier_name, start_time, end_time, filter_fn).to_dict()
        if result["success"]:
            result["tier_info"] = {
                "tier": tier_name,
                "interval": tier.interval_seconds,
                "label": tier.label,
            }
        return result

    def get_tiers_info(self) -> dict[str, dict[str, Any]]:
        return self.processor.get_tiers_info(self.get_rollup_file_path)


# =============================================================================
# Ping
# =============================================================================


class PingCollector(MetricsCollector):
    """
    Connectivity ping results.

    Raw samples: ``{timestamp, host, latency, status}`` where status is
    "success" or "failure" and latency is None for failed pings.
    """

    source_name = "ping"

    def aggregate_for_rollup(self, records: list[Record], bucket_start: int, interval: int) -> Record | None:
        if not records:
            return None

        latencies: list[float] = []
        hosts: dict[str, int] = {}
        success_count = 0

        for record in records:
            latency = record.get("latency")
            if _is_number(latency):
                latencies.append(float(latency))

            host = record.get("host")
            if host is not None:
                hosts[host] = hosts.get(host, 0) + 1

            if record.get("status") == STATUS_SUCCESS:
                success_count += 1

        sample_count = len(records)
        failure_count = sample_count - success_count
        packet_loss = round(failure_count / sample_count * 100, 1)

        stats = aggregate_latencies(latencies, precision=3)
        jitter = calculate_jitter_from_latency_array(latencies)

        return {
            **_bucket_bounds(bucket_start, interval),
            "latency_min": stats["min"],
            "latency_max": stats["max"],
            "latency_avg": stats["avg"],
            "latency_p95": stats["p95"],
            "jitter_avg": jitter["avg"] if jitter else None,
            "jitter_max": jitter["max"] if jitter else None,
            "latency_quality": rate(stats["avg"], LATENCY_THRESHOLDS),
            "packet_loss_pct": packet_loss,
            "packet_loss_quality": rate(packet_loss, PACKET_LOSS_THRESHOLDS),
            "sample_count": sample_count,
            "success_count": success_count,
            "failure_count": failure_count,
            "hosts": hosts,
        }


# =============================================================================
# Network Quality
# =============================================================================


class NetworkQualityCollector(MetricsCollector):
    """
    Per-host network quality between this node and its peers.

    Raw samples: ``{timestamp, hostname, latency, jitter}``; jitter is the
    RFC 3550 running estimate at record time. Rollups produce one row per
    host and bucket.
    """

    source_name = "network_quality"

    def __init__(self, data_dir: str | Path, **kwargs: Any) -> None:
        super().__init__(data_dir, **kwargs)
        self.jitter_tracker = JitterTracker()

    def record_samples(self, measurements: Iterable[Mapping[str, Any]]) -> list[Record]:
        """
        Stamp, rate and store one round of host measurements.

        Args:
            measurements: Mappings with ``hostname`` and ``latency`` (ms,
                None when unreachable) plus optional ``packet_loss`` (%).

        Returns:
            The records as written.
        """
        timestamp = self.now()
        records: list[Record] = []

        for measurement in measurements:
            hostname = measurement.get("hostname")
            if not hostname:
                continue

            latency = measurement.get("latency")
            jitter = self.jitter_tracker.update(hostname, latency) if _is_number(latency) else None

            record: Record = {
                **measurement,
                TIMESTAMP_FIELD: timestamp,
                "hostname": hostname,
                "latency": latency,
                "jitter": jitter,
            }
            if _is_number(latency):
                record["latency_quality"] = rate(latency, LATENCY_THRESHOLDS)
            if jitter is not None:
                record["jitter_quality"] = rate(jitter, JITTER_THRESHOLDS)
            records.append(record)

        if records:
            self.write_samples(records)
        return records

    def _aggregate_host(self, hostname: str, records: list[Record]) -> Record:
        latencies = [float(r["latency"]) for r in records if _is_number(r.get("latency"))]
        stats = aggregate_latencies(latencies)

        jitter = calculate_jitter_from_latency_array(latencies)
        if jitter is None:
            recorded = [float(r["jitter"]) for r in records if _is_number(r.get("jitter"))]
            if recorded:
                jitter = {"avg": round(sum(recorded) / len(recorded), 2), "max": round(max(recorded), 2)}

        losses = [float(r["packet_loss"]) for r in records if _is_number(r.get("packet_loss"))]
        packet_loss = round(sum(losses) / len(losses), 1) if losses else None

        latency_quality = rate(stats["avg"], LATENCY_THRESHOLDS)
        jitter_quality = rate(jitter["avg"], JITTER_THRESHOLDS) if jitter else None
        packet_loss_quality = rate(packet_loss, PACKET_LOSS_THRESHOLDS)

        return {
            "hostname": hostname,
            "sample_count": len(records),
            "latency_min": stats["min"],
            "latency_max": stats["max"],
            "latency_avg": stats["avg"],
            "latency_p95": stats["p95"],
            "latency_quality": latency_quality,
            "jitter_avg": jitter["avg"] if jitter else None,
            "jitter_max": jitter["max"] if jitter else None,
            "jitter_quality": jitter_quality,
            "packet_loss_pct": packet_loss,
            "packet_loss_quality": packet_loss_quality,
            "overall_quality": get_overall_quality_rating(latency_quality, jitter_quality, packet_loss_quality),
        }

    def aggregate_for_rollup(self, records: list[Record], bucket_start: int, interval: int) -> list[Record] | None:
        by_host: dict[str, list[Record]] = {}
        for record in records:
            hostname = record.get("hostname")
            if hostname:
                by_host.setdefault(hostname, []).append(record)

        if not by_host:
            return None

        bounds = _bucket_bounds(bucket_start, interval)
        return [{**bounds, **self._aggregate_host(host, by_host[host])} for host in sorted(by_host)]

    def read_rollup_data(
        self,
        tier: str,
        start_time: int | None = None,
        end_time: int | None = None,
        filter_fn: RecordFilter | None = None,
        hostname: str | None = None,
    ) -> RollupQueryResult:
        """Read rollup rows, optionally restricted to one host."""
        if hostname is None:
            return super().read_rollup_data(tier, start_time, end_time, filter_fn)

        def for_host(row: Record) -> bool:
            if row.get("hostname") != hostname:
                return False
            return filter_fn is None or filter_fn(row)

        return super().read_rollup_data(tier, start_time, end_time, for_host)


# =============================================================================
# System Metrics
# =============================================================================

SYSTEM_FIELDS = (
    "cpu_percent",
    "memory_percent",
    "memory_used_bytes",
    "memory_available_bytes",
    "disk_percent",
    "disk_free_bytes",
    "load_1m",
    "load_5m",
    "load_15m",
    "temperature_celsius",
)


def get_cpu_temperature() -> float | None:
    """
    Get CPU temperature in Celsius.

    Reads /sys/class/thermal/thermal_zone*/temp first, then psutil sensors.

    Returns:
        Temperature in Celsius, or None if unavailable.
    """
    for temp_path in sorted(Path("/sys/class/thermal").glob("thermal_zone*/temp")):
        try:
            return int(temp_path.read_text().strip()) / 1000.0
        except (OSError, ValueError):
            continue

    sensors = getattr(psutil, "sensors_temperatures", None)
    if sensors is None:
        return None

    temps = sensors()
    for sensor_name in ("cpu_thermal", "coretemp", "k10temp", "acpitz"):
        if temps.get(sensor_name):
            return temps[sensor_name][0].current
    for readings in temps.values():
        if readings:
            return readings[0].current
    return None


class SystemMetricsCollector(MetricsCollector):
    """
    Host CPU, memory, disk, load and temperature sampled through psutil.

    Rollup rows carry ``<field>_min``, ``<field>_max`` and ``<field>_avg``
    for every numeric field present in the bucket.
    """

    source_name = "system"

    def __init__(self, data_dir: str | Path, *, disk_path: str = "/", **kwargs: Any) -> None:
        super().__init__(data_dir, **kwargs)
        self.disk_path = disk_path

    def collect(self) -> list[Record]:
        record: Record = {TIMESTAMP_FIELD: self.now()}

        record["cpu_percent"] = psutil.cpu_percent(interval=0.1)

        memory = psutil.virtual_memory()
        record["memory_percent"] = memory.percent
        record["memory_used_bytes"] = memory.used
        record["memory_available_bytes"] = memory.available

        try:
            disk = psutil.disk_usage(self.disk_path)
            record["disk_percent"] = disk.percent
            record["disk_free_bytes"] = disk.free
        except OSError as e:
            logger.warning("Disk usage unavailable", extra={"path": self.disk_path, "error": str(e)})

        try:
            load_1m, load_5m, load_15m = psutil.getloadavg()
            record.update(load_1m=round(load_1m, 2), load_5m=round(load_5m, 2), load_15m=round(load_15m, 2))
        except OSError:
            pass

        temperature = get_cpu_temperature()
        if temperature is not None:
            record["temperature_celsius"] = round(temperature, 1)

        return [record]

    def aggregate_for_rollup(self, records: list[Record], bucket_start: int, interval: int) -> Record | None:
        row: Record = {}
        for name in SYSTEM_FIELDS:
            values = [float(r[name]) for r in records if _is_number(r.get(name))]
            if not values:
                continue
            row[f"{name}_min"] = round(min(values), 2)
            row[f"{name}_max"] = round(max(values), 2)
            row[f"{name}_avg"] = round(sum(values) / len(values), 2)

        if not row:
            return None
        return {**_bucket_bounds(bucket_start, interval), "sample_count": len(records), **row}


# =============================================================================
# eFuse Current
# =============================================================================

TOTAL_PORT = "_total"
EFUSE_RAW_RETENTION_SECONDS = 6 * 3600
DEFAULT_EFUSE_RETENTION_DAYS = 7


class EfuseCollector(MetricsCollector):
    """
    Per-port eFuse current readings in mA.

    Raw samples: ``{timestamp, ports: {name: mA}}`` including a ``_total``
    port. Tiers are capped by the configured retention, and every tier above
    the finest aggregates the previous tier's rollup rows instead of the raw
    log, so aggregation accepts both plain integers and rolled-up
    ``{avg, min, max, samples}`` port values.
    """

    source_name = "efuse"

    def __init__(
        self,
        data_dir: str | Path,
        *,
        retention_days: int = DEFAULT_EFUSE_RETENTION_DAYS,
        raw_retention_seconds: int = EFUSE_RAW_RETENTION_SECONDS,
        **kwargs: Any,
    ) -> None:
        self.retention_days = retention_days
        super().__init__(data_dir, raw_retention_seconds=raw_retention_seconds, **kwargs)

    def build_registry(self) -> TierRegistry:
        return TierRegistry.with_retention_cap(self.retention_days * 86400)

    def source_for_tier(self, tier: str) -> Path | None:
        previous = self.registry.previous_tier(tier)
        if previous is None:
            return None
        return self.get_rollup_file_path(previous.name)

    def record_reading(self, ports: Mapping[str, int | float]) -> Record:
        """Store one reading, adding the ``_total`` port."""
        values = {name: int(round(mA)) for name, mA in ports.items() if name != TOTAL_PORT and _is_number(mA)}
        values[TOTAL_PORT] = sum(values.values())
        record: Record = {TIMESTAMP_FIELD: self.now(), "ports": values}
        self.write_samples([record])
        return record

    def aggregate_for_rollup(self, records: list[Record], bucket_start: int, interval: int) -> Record | None:
        port_data: dict[str, dict[str, Any]] = {}

        for record in records:
            ports = record.get("ports")
            if not isinstance(ports, Mapping):
                continue
            for name, value in ports.items():
                data = port_data.setdefault(name, {"values": [], "mins": [], "maxs": [], "samples": 0})
                if isinstance(value, Mapping):
                    data["values"].append(value.get("avg", 0))
                    data["mins"].append(value.get("min", 0))
                    data["maxs"].append(value.get("max", 0))
                    data["samples"] += value.get("samples", 1)
                elif _is_number(value):
                    data["values"].append(value)
                    data["mins"].append(value)
                    data["maxs"].append(value)
                    data["samples"] += 1

        aggregated = {}
        for name, data in port_data.items():
            if not data["values"]:
                continue
            peak = max(data["maxs"])
            aggregated[name] = {
                "avg": int(round(sum(data["values"]) / len(data["values"]))),
                "min": min(data["mins"]),
                "max": peak,
                "peak": peak,
                "samples": data["samples"],
            }

        if not aggregated:
            return None
        return {**_bucket_bounds(bucket_start, interval), "interval": interval, "ports": aggregated}

    def get_port_metrics(self, port: str, hours_back: float = 24) -> dict[str, Any]:
        """Rollup rows that include ``port``."""
        return self.get_metrics(hours_back, filter_fn=lambda row: port in row.get("ports", {}))


# =============================================================================
# Factory
# =============================================================================

COLLECTOR_TYPES: dict[str, type[MetricsCollector]] = {
    cls.source_name: cls
    for cls in (SystemMetricsCollector, PingCollector, NetworkQualityCollector, EfuseCollector)
}


def build_collectors(
    config: AppConfig,
    clock: Callable[[], float] = time.time,
) -> list[MetricsCollector]:
    """Instantiate the collectors enabled in ``config.collection.collectors``."""
    collectors: list[MetricsCollector] = []
    for name in config.collection.collectors:
        cls = COLLECTOR_TYPES[name]
        kwargs: dict[str, Any] = {
            "safety_margin_seconds": config.rollup.safety_margin_seconds,
            "clock": clock,
        }
        if cls is EfuseCollector:
            kwargs["retention_days"] = config.efuse.retention_days
        else:
            kwargs["raw_retention_seconds"] = config.storage.raw_retention_seconds
        collectors.append(cls(config.source_dir(name), **kwargs))
    return collectors
