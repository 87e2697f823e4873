"""
Tests for the metric collectors.

This test module validates:
- Ping bucket aggregation
- Per-host network quality samples and rollups
- System metrics sampling (psutil mocked) and aggregation
- eFuse tier cascade and retention cap
- Tier auto-selection in get_metrics
- Collector construction from AppConfig
"""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from watcher_metrics.config import AppConfig, CollectionConfig, EfuseConfig, RollupConfig, StorageConfig
from watcher_metrics.metrics import collectors as collectors_module
from watcher_metrics.metrics.collectors import (
    EFUSE_RAW_RETENTION_SECONDS,
    EfuseCollector,
    NetworkQualityCollector,
    PingCollector,
    SystemMetricsCollector,
    build_collectors,
    get_cpu_temperature,
)
from watcher_metrics.metrics.stats import QUALITY_CRITICAL, QUALITY_FAIR, QUALITY_GOOD, QUALITY_POOR

BASE = 1_714_564_800


# =============================================================================
# Tests for PingCollector
# =============================================================================


class TestPingCollector:
    """Tests for ping aggregation and queries."""

    @pytest.fixture
    def collector(self, tmp_path: Path, clock) -> PingCollector:
        return PingCollector(tmp_path / "ping", clock=clock)

    def test_aggregate_bucket(self, collector: PingCollector) -> None:
        """Test latency, jitter, loss and host counts of one bucket."""
        records = [
            {"timestamp": BASE + 1, "host": "8.8.8.8", "latency": 10.0, "status": "success"},
            {"timestamp": BASE + 2, "host": "8.8.8.8", "latency": 20.0, "status": "success"},
            {"timestamp": BASE + 3, "host": "1.1.1.1", "latency": 30.0, "status": "success"},
            {"timestamp": BASE + 4, "host": "1.1.1.1", "latency": None, "status": "failure"},
        ]

        row = collector.aggregate_for_rollup(records, BASE, 60)

        assert row["timestamp"] == BASE + 30
        assert row["period_start"] == BASE
        assert row["period_end"] == BASE + 60
        assert (row["latency_min"], row["latency_max"], row["latency_avg"], row["latency_p95"]) == (
            10.0,
            30.0,
            20.0,
            30.0,
        )
        assert (row["jitter_avg"], row["jitter_max"]) == (10.0, 10.0)
        assert row["latency_quality"] == QUALITY_GOOD
        assert row["packet_loss_pct"] == 25.0
        assert row["packet_loss_quality"] == QUALITY_CRITICAL
        assert (row["sample_count"], row["success_count"], row["failure_count"]) == (4, 3, 1)
        assert row["hosts"] == {"8.8.8.8": 2, "1.1.1.1": 2}

    def test_all_failed(self, collector: PingCollector) -> None:
        """Test a bucket of failures has no latency statistics."""
        row = collector.aggregate_for_rollup(
            [{"timestamp": BASE, "host": "8.8.8.8", "latency": None, "status": "failure"}],
            BASE,
            60,
        )

        assert row["latency_avg"] is None
        assert row["latency_quality"] is None
        assert row["jitter_avg"] is None
        assert row["packet_loss_pct"] == 100.0

    def test_empty_bucket(self, collector: PingCollector) -> None:
        """Test an empty bucket produces no row."""
        assert collector.aggregate_for_rollup([], BASE, 60) is None

    def test_collect_is_passive(self, collector: PingCollector) -> None:
        """Test ping samples are fed externally."""
        assert collector.collect() == []

    def test_get_metrics_tier_info(self, collector: PingCollector) -> None:
        """Test get_metrics picks the tier for the window and describes it."""
        collector.write_samples(
            [
                {"timestamp": BASE - 3600 + i * 10, "host": "8.8.8.8", "latency": 12.0, "status": "success"}
                for i in range(30)
            ]
        )
        collector.process_all_rollups(force=True)

        day = collector.get_metrics(24)
        hour = collector.get_metrics(1)

        assert day["success"] is True
        assert day["tier_info"] == {"tier": "5min", "interval": 300, "label": "5-minute averages"}
        assert day["count"] == 1
        assert day["period"] == {"start": BASE - 86400, "end": BASE}
        assert hour["tier_info"]["tier"] == "1min"
        assert hour["count"] == 5

    def test_get_metrics_without_rollups(self, collector: PingCollector) -> None:
        """Test a missing tier log reports no data without tier info."""
        result = collector.get_metrics(200)

        assert result["success"] is False
        assert "tier_info" not in result

    def test_get_metrics_falls_back_to_finer_tier(self, collector: PingCollector) -> None:
        """Test a window whose tier has no log yet is served from the finest existing tier."""
        collector.write_samples(
            [
                {"timestamp": BASE - 300 + i * 10, "host": "8.8.8.8", "latency": 12.0, "status": "success"}
                for i in range(10)
            ]
        )
        collector.process_all_rollups(force=True)
        assert not collector.get_rollup_file_path("30min").exists()
        assert not collector.get_rollup_file_path("5min").exists()

        result = collector.get_metrics(72)

        assert result["success"] is True
        assert result["tier_info"] == {"tier": "1min", "interval": 60, "label": "1-minute averages"}
        assert result["tier"] == "1min"
        assert [row["sample_count"] for row in result["data"]] == [6, 4]

    def test_rollup_rows_stamped_at_midpoint(self, collector: PingCollector) -> None:
        """Test a closed bucket's row is stamped halfway through the bucket."""
        collector.write_samples([{"timestamp": BASE - 600 + 5, "host": "8.8.8.8", "latency": 9.0, "status": "success"}])

        collector.process_all_rollups()

        (row,) = collector.read_rollup_data("1min", 0, BASE).data
        assert row["timestamp"] == BASE - 570
        assert (row["period_start"], row["period_end"]) == (BASE - 600, BASE - 540)

    def test_process_all_rollups_migrates_plain_logs(self, collector: PingCollector) -> None:
        """Test a legacy plain coarse-tier log is compressed before processing."""
        collector.data_dir.mkdir(parents=True)
        (collector.data_dir / "30min.log").write_text(f'{{"timestamp": {BASE - 86400}, "legacy": true}}\n')

        collector.process_all_rollups(force=True)

        assert not (collector.data_dir / "30min.log").exists()
        rows = collector.read_rollup_data("30min", 0, BASE).data
        assert rows == [{"timestamp": BASE - 86400, "legacy": True}]

    def test_rotate_raw(self, collector: PingCollector) -> None:
        """Test raw samples older than the raw retention are rotated out."""
        collector.write_samples([{"timestamp": BASE - 26 * 3600}, {"timestamp": BASE - 60}])

        result = collector.rotate_raw()

        assert (result.purged, result.kept) == (1, 1)
        assert [r["timestamp"] for r in collector.read_raw()] == [BASE - 60]

    def test_get_tiers_info(self, collector: PingCollector) -> None:
        """Test tier info lists every tier."""
        assert list(collector.get_tiers_info()) == ["1min", "5min", "30min", "2hour"]


# =============================================================================
# Tests for NetworkQualityCollector
# =============================================================================


class TestNetworkQualityCollector:
    """Tests for per-host network quality."""

    @pytest.fixture
    def collector(self, tmp_path: Path, clock) -> NetworkQualityCollector:
        return NetworkQualityCollector(tmp_path / "network_quality", clock=clock)

    def test_record_samples(self, collector: NetworkQualityCollector, clock) -> None:
        """Test samples are stamped, rated and carry RFC 3550 jitter."""
        first = collector.record_samples([{"hostname": "fpp-a", "latency": 10.0}])
        clock.advance(10)
        second = collector.record_samples(
            [{"hostname": "fpp-a", "latency": 26.0}, {"hostname": "fpp-b", "latency": None}, {"latency": 5}]
        )

        assert first[0]["jitter"] is None
        assert first[0]["latency_quality"] == QUALITY_GOOD
        assert second[0]["jitter"] == 1.0
        assert second[0]["jitter_quality"] == QUALITY_GOOD
        assert second[1]["latency"] is None
        assert "latency_quality" not in second[1]
        assert len(second) == 2

        raw = collector.read_raw()
        assert [(r["timestamp"], r["hostname"]) for r in raw] == [
            (BASE, "fpp-a"),
            (BASE + 10, "fpp-a"),
            (BASE + 10, "fpp-b"),
        ]

    def test_aggregate_per_host(self, collector: NetworkQualityCollector) -> None:
        """Test one row per host, sorted by hostname."""
        records = [
            {"timestamp": BASE + 1, "hostname": "fpp-b", "latency": 50.0, "jitter": None, "packet_loss": 0},
            {"timestamp": BASE + 2, "hostname": "fpp-a", "latency": 10.0, "jitter": None},
            {"timestamp": BASE + 12, "hostname": "fpp-a", "latency": 26.0, "jitter": 1.0},
        ]

        rows = collector.aggregate_for_rollup(records, BASE, 60)

        assert [r["hostname"] for r in rows] == ["fpp-a", "fpp-b"]
        a, b = rows
        assert a["timestamp"] == BASE + 30
        assert a["period_start"] == BASE
        assert (a["latency_min"], a["latency_max"], a["latency_avg"], a["latency_p95"]) == (10.0, 26.0, 18.0, 26.0)
        assert (a["jitter_avg"], a["jitter_max"]) == (16.0, 16.0)
        assert a["jitter_quality"] == QUALITY_FAIR
        assert a["packet_loss_pct"] is None
        assert a["overall_quality"] == QUALITY_FAIR

        assert b["latency_quality"] == QUALITY_GOOD
        assert b["jitter_avg"] is None
        assert b["packet_loss_pct"] == 0.0
        assert b["overall_quality"] == QUALITY_GOOD

    def test_single_sample_uses_recorded_jitter(self, collector: NetworkQualityCollector) -> None:
        """Test a lone sample falls back to its recorded jitter."""
        rows = collector.aggregate_for_rollup(
            [{"timestamp": BASE, "hostname": "fpp-a", "latency": 80.0, "jitter": 25.0}],
            BASE,
            60,
        )

        assert rows[0]["jitter_avg"] == 25.0
        assert rows[0]["jitter_quality"] == QUALITY_POOR
        assert rows[0]["overall_quality"] == QUALITY_POOR

    def test_no_hosts(self, collector: NetworkQualityCollector) -> None:
        """Test records without hostnames produce no rows."""
        assert collector.aggregate_for_rollup([{"timestamp": BASE, "latency": 1.0}], BASE, 60) is None

    def test_read_rollup_data_for_host(self, collector: NetworkQualityCollector, clock) -> None:
        """Test rollup queries can be restricted to one host."""
        clock.now = BASE - 600
        collector.record_samples([{"hostname": "fpp-a", "latency": 10.0}, {"hostname": "fpp-b", "latency": 20.0}])
        clock.now = BASE
        collector.process_all_rollups()

        result = collector.read_rollup_data("1min", hostname="fpp-b")

        assert [r["hostname"] for r in result.data] == ["fpp-b"]
        assert len(collector.read_rollup_data("1min").data) == 2


# =============================================================================
# Tests for SystemMetricsCollector
# =============================================================================


class TestSystemMetricsCollector:
    """Tests for psutil sampling and min/max/avg rollups."""

    @pytest.fixture
    def collector(self, tmp_path: Path, clock) -> SystemMetricsCollector:
        return SystemMetricsCollector(tmp_path / "system", clock=clock, disk_path="/data")

    @pytest.fixture
    def mock_psutil(self):
        with patch.object(collectors_module, "psutil") as mocked:
            mocked.cpu_percent.return_value = 12.5
            mocked.virtual_memory.return_value = MagicMock(percent=40.0, used=400, available=600)
            mocked.disk_usage.return_value = MagicMock(percent=70.0, free=3000)
            mocked.getloadavg.return_value = (0.5, 0.25, 0.1)
            yield mocked

    def test_collect(self, collector: SystemMetricsCollector, mock_psutil: MagicMock) -> None:
        """Test one sample holds every system field."""
        with patch.object(collectors_module, "get_cpu_temperature", return_value=48.26):
            [record] = collector.collect()

        assert record == {
            "timestamp": BASE,
            "cpu_percent": 12.5,
            "memory_percent": 40.0,
            "memory_used_bytes": 400,
            "memory_available_bytes": 600,
            "disk_percent": 70.0,
            "disk_free_bytes": 3000,
            "load_1m": 0.5,
            "load_5m": 0.25,
            "load_15m": 0.1,
            "temperature_celsius": 48.3,
        }
        mock_psutil.disk_usage.assert_called_once_with("/data")

    def test_collect_without_disk_or_temperature(
        self, collector: SystemMetricsCollector, mock_psutil: MagicMock
    ) -> None:
        """Test unavailable readings are left out of the sample."""
        mock_psutil.disk_usage.side_effect = OSError("No such file or directory")
        mock_psutil.getloadavg.side_effect = OSError("unsupported")

        with patch.object(collectors_module, "get_cpu_temperature", return_value=None):
            [record] = collector.collect()

        assert "disk_percent" not in record
        assert "load_1m" not in record
        assert "temperature_celsius" not in record
        assert record["cpu_percent"] == 12.5

    def test_aggregate(self, collector: SystemMetricsCollector) -> None:
        """Test min, max and avg per field present in the bucket."""
        records = [
            {"timestamp": BASE, "cpu_percent": 10.0, "memory_percent": 50.0},
            {"timestamp": BASE + 30, "cpu_percent": 20.0},
        ]

        row = collector.aggregate_for_rollup(records, BASE, 60)

        assert row["sample_count"] == 2
        assert (row["cpu_percent_min"], row["cpu_percent_max"], row["cpu_percent_avg"]) == (10.0, 20.0, 15.0)
        assert row["memory_percent_avg"] == 50.0
        assert "disk_percent_avg" not in row
        assert row["period_end"] == BASE + 60

    def test_aggregate_without_fields(self, collector: SystemMetricsCollector) -> None:
        """Test a bucket with no known fields produces no row."""
        assert collector.aggregate_for_rollup([{"timestamp": BASE}], BASE, 60) is None

    def test_cpu_temperature_from_sensors(self) -> None:
        """Test psutil sensors are used when no thermal zone is readable."""
        sensors = {"acpitz": [SimpleNamespace(current=41.0)], "coretemp": [SimpleNamespace(current=55.0)]}

        with (
            patch.object(collectors_module.Path, "glob", return_value=[]),
            patch.object(collectors_module.psutil, "sensors_temperatures", create=True, return_value=sensors),
        ):
            assert get_cpu_temperature() == 55.0


# =============================================================================
# Tests for EfuseCollector
# =============================================================================


class TestEfuseCollector:
    """Tests for eFuse readings and the tier cascade."""

    @pytest.fixture
    def collector(self, tmp_path: Path, clock) -> EfuseCollector:
        return EfuseCollector(tmp_path / "efuse", clock=clock, retention_days=7)

    def test_retention_cap(self, collector: EfuseCollector) -> None:
        """Test tier retention is capped at the configured days."""
        assert collector.registry.get_tier("2hour").retention_seconds == 7 * 86400
        assert collector.registry.get_tier("1min").retention_seconds == 6 * 3600
        assert collector.raw_retention_seconds == EFUSE_RAW_RETENTION_SECONDS

    def test_source_for_tier(self, collector: EfuseCollector) -> None:
        """Test each tier reads the previous tier's rollup log."""
        assert collector.source_for_tier("1min") is None
        assert collector.source_for_tier("5min") == collector.data_dir / "1min.log"
        assert collector.source_for_tier("2hour") == collector.data_dir / "30min.log.gz"

    def test_record_reading_adds_total(self, collector: EfuseCollector) -> None:
        """Test the total port is the sum of the port readings."""
        record = collector.record_reading({"port1": 100.4, "port2": 250, "_total": 9999})

        assert record["ports"] == {"port1": 100, "port2": 250, "_total": 350}
        assert collector.read_raw()[0]["ports"]["_total"] == 350

    def test_aggregate_mixed_values(self, collector: EfuseCollector) -> None:
        """Test raw integers and rolled-up port values aggregate together."""
        records = [
            {"timestamp": BASE, "ports": {"port1": 100}},
            {"timestamp": BASE + 60, "ports": {"port1": {"avg": 200, "min": 150, "max": 400, "samples": 5}}},
            {"timestamp": BASE + 120, "ports": "invalid"},
        ]

        row = collector.aggregate_for_rollup(records, BASE, 300)

        assert row == {
            "timestamp": BASE + 150,
            "period_start": BASE,
            "period_end": BASE + 300,
            "interval": 300,
            "ports": {"port1": {"avg": 150, "min": 100, "max": 400, "peak": 400, "samples": 6}},
        }

    def test_tier_cascade(self, collector: EfuseCollector, clock) -> None:
        """Test coarse tiers are built from the finer tiers' rows."""
        clock.now = BASE - 4 * 3600
        for i in range(240):
            collector.record_reading({"port1": 100, "port2": 100 if i % 2 == 0 else 300})
            clock.advance(60)
        assert clock.now == BASE

        collector.process_all_rollups(force=True)

        two_hour = collector.read_rollup_data("2hour", 0, BASE).data
        assert len(two_hour) == 1
        assert two_hour[0]["timestamp"] == BASE - 3 * 3600
        assert two_hour[0]["period_start"] == BASE - 4 * 3600
        assert two_hour[0]["ports"]["port2"] == {"avg": 200, "min": 100, "max": 300, "peak": 300, "samples": 120}
        assert two_hour[0]["ports"]["_total"]["avg"] == 300

        five_min = collector.read_rollup_data("5min", 0, BASE).data
        assert {row["ports"]["port1"]["samples"] for row in five_min} == {5}

    def test_cascade_waits_for_finer_tier(self, collector: EfuseCollector, clock) -> None:
        """Test a coarse bucket is not closed before the finer tier has rolled it up."""
        collector.write_samples([{"timestamp": BASE + i * 10, "ports": {"port1": 100}} for i in range(60)])

        def five_minute_samples() -> dict[int, int]:
            rows = collector.read_rollup_data("5min", 0, BASE + 3600).data
            return {row["period_start"] - BASE: row["ports"]["port1"]["samples"] for row in rows}

        # Uneven cadence: the 1min tier is throttled when the 5min tier runs at +725
        for offset in (100, 420, 475, 535, 595, 655, 715, 725):
            clock.now = BASE + offset
            collector.process_all_rollups()

        assert five_minute_samples() == {0: 30}
        assert collector.processor.state_store.get_tier_state(collector.state_file, "1min").last_bucket_end == BASE + 540

        clock.now = BASE + 2000
        collector.process_all_rollups()

        assert five_minute_samples() == {0: 30, 300: 30}

    def test_get_port_metrics(self, collector: EfuseCollector, clock) -> None:
        """Test port metrics only include rows carrying the port."""
        clock.now = BASE - 600
        collector.record_reading({"port1": 100})
        clock.now = BASE
        collector.process_all_rollups()

        assert collector.get_port_metrics("port1", hours_back=1)["count"] == 1
        assert collector.get_port_metrics("port9", hours_back=1)["count"] == 0


# =============================================================================
# Tests for build_collectors
# =============================================================================


class TestBuildCollectors:
    """Tests for building collectors from configuration."""

    def test_build_from_config(self, tmp_path: Path, clock) -> None:
        """Test every configured collector is built with its settings."""
        config = AppConfig(
            storage=StorageConfig(data_dir=str(tmp_path), raw_retention_seconds=7200),
            rollup=RollupConfig(safety_margin_seconds=30),
            collection=CollectionConfig(collectors=["system", "ping", "network_quality", "efuse"]),
            efuse=EfuseConfig(retention_days=3),
        )

        built = build_collectors(config, clock=clock)

        assert [type(c) for c in built] == [
            SystemMetricsCollector,
            PingCollector,
            NetworkQualityCollector,
            EfuseCollector,
        ]
        system, ping, _, efuse = built
        assert ping.data_dir == tmp_path / "ping"
        assert ping.raw_retention_seconds == 7200
        assert ping.processor.safety_margin_seconds == 30
        assert system.now() == BASE
        assert efuse.retention_days == 3
        assert efuse.raw_retention_seconds == EFUSE_RAW_RETENTION_SECONDS
        assert efuse.registry.get_tier("2hour").retention_seconds == 3 * 86400
