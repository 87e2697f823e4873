"""
Background collection daemon using asyncio.

This module implements the MetricsDaemon class that:
- Samples every collector at the collection interval and appends the
  samples to the collector's raw log
- Runs the rollup pass of every collector at the rollup interval
- Rotates raw logs once an hour
- Holds a DaemonLock so only one daemon instance runs per name

Blocking file and psutil work runs in the default executor.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from watcher_metrics.config import AppConfig
from watcher_metrics.daemon_lock import DaemonLock
from watcher_metrics.errors import FailedPreconditionError, UnavailableError
from watcher_metrics.logging import get_logger
from watcher_metrics.metrics.collectors import MetricsCollector

logger = get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

RAW_ROTATION_INTERVAL = 3600  # seconds
STOP_TIMEOUT = 10.0  # seconds


# =============================================================================
# Enums and Data Models
# =============================================================================


class DaemonStatus(str, Enum):
    """Status of the collection daemon."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class DaemonState:
    """
    Current state of the collection daemon.

    Attributes:
        status: Current daemon status.
        job_id: Identifier of the current run.
        collection_interval_seconds: Sampling interval.
        rollup_interval_seconds: Rollup pass interval.
        collectors: Names of the collectors being driven.
        started_at: When the daemon was started.
        last_collection_at: When samples were last written.
        last_rollup_at: When the last rollup pass finished.
        sample_count: Total samples written.
        rollup_count: Number of completed rollup passes.
        error_count: Number of failed collector operations.
        last_error: Last error message if any.
    """

    status: DaemonStatus = DaemonStatus.STOPPED
    job_id: str | None = None
    collection_interval_seconds: int = 60
    rollup_interval_seconds: int = 60
    collectors: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    last_collection_at: datetime | None = None
    last_rollup_at: datetime | None = None
    sample_count: int = 0
    rollup_count: int = 0
    error_count: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "status": self.status.value,
            "job_id": self.job_id,
            "collection_interval_seconds": self.collection_interval_seconds,
            "rollup_interval_seconds": self.rollup_interval_seconds,
            "collectors": self.collectors,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_collection_at": (self.last_collection_at.isoformat() if self.last_collection_at else None),
            "last_rollup_at": self.last_rollup_at.isoformat() if self.last_rollup_at else None,
            "sample_count": self.sample_count,
            "rollup_count": self.rollup_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }


# =============================================================================
# MetricsDaemon Class
# =============================================================================


class MetricsDaemon:
    """
    Drives a set of collectors from one asyncio background task.

    Example:
        >>> config = load_config()
        >>> daemon = MetricsDaemon(build_collectors(config), config=config)
        >>> await daemon.start()
        >>> daemon.get_status().status
        <DaemonStatus.RUNNING: 'running'>
        >>> await daemon.stop()
    """

    def __init__(
        self,
        collectors: Sequence[MetricsCollector],
        config: AppConfig | None = None,
        lock: DaemonLock | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the daemon.

        Args:
            collectors: Collectors to sample and roll up.
            config: Application config for intervals and lock settings.
            lock: Single-instance lock; built from ``config.daemon`` if None.
            clock: Source of the current epoch time for scheduling.
        """
        self._config = config or AppConfig()
        self._collectors = list(collectors)
        self._daemon_lock = lock or DaemonLock(self._config.daemon.name, self._config.daemon.lock_dir)
        self._clock = clock
        self._state = DaemonState(
            collection_interval_seconds=self._config.collection.interval_seconds,
            rollup_interval_seconds=self._config.rollup.interval_seconds,
            collectors=[c.source_name for c in self._collectors],
        )
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._lock = asyncio.Lock()
        self._last_rollup = 0.0
        self._last_rotation = 0.0

    @property
    def is_running(self) -> bool:
        """Check if the daemon is currently running."""
        return self._state.status == DaemonStatus.RUNNING

    def get_status(self) -> DaemonState:
        """
        Get the current daemon state.

        Returns:
            Copy of the current DaemonState.
        """
        return DaemonState(
            status=self._state.status,
            job_id=self._state.job_id,
            collection_interval_seconds=self._state.collection_interval_seconds,
            rollup_interval_seconds=self._state.rollup_interval_seconds,
            collectors=self._state.collectors.copy(),
            started_at=self._state.started_at,
            last_collection_at=self._state.last_collection_at,
            last_rollup_at=self._state.last_rollup_at,
            sample_count=self._state.sample_count,
            rollup_count=self._state.rollup_count,
            error_count=self._state.error_count,
            last_error=self._state.last_error,
        )

    async def start(self) -> DaemonState:
        """
        Start the background loop.

        Returns:
            Current DaemonState after starting.

        Raises:
            FailedPreconditionError: If this daemon is already running.
            UnavailableError: If another instance holds the daemon lock.
        """
        async with self._lock:
            if self._state.status in (DaemonStatus.RUNNING, DaemonStatus.STARTING):
                raise FailedPreconditionError(
                    "Daemon is already running",
                    details={"job_id": self._state.job_id},
                )

            if not self._daemon_lock.acquire():
                raise UnavailableError(
                    f"Daemon {self._daemon_lock.name} is already running",
                    details={"pid": self._daemon_lock.get_pid(), "lock_file": str(self._daemon_lock.lock_path)},
                )

            self._state.status = DaemonStatus.STARTING
            self._state.job_id = str(uuid.uuid4())[:8]
            self._state.started_at = datetime.now()
            self._state.sample_count = 0
            self._state.rollup_count = 0
            self._state.error_count = 0
            self._state.last_error = None
            self._last_rollup = 0.0
            self._last_rotation = 0.0
            self._stop_event.clear()

            self._task = asyncio.create_task(self._run_loop())
            self._state.status = DaemonStatus.RUNNING

            logger.info(
                "Metrics daemon started",
                extra={
                    "job_id": self._state.job_id,
                    "collectors": self._state.collectors,
                    "collection_interval_seconds": self._state.collection_interval_seconds,
                    "rollup_interval_seconds": self._state.rollup_interval_seconds,
                },
            )

            return self.get_status()

    async def stop(self) -> DaemonState:
        """
        Stop the background loop gracefully and release the daemon lock.

        Returns:
            Current DaemonState after stopping.
        """
        async with self._lock:
            if self._state.status not in (DaemonStatus.RUNNING, DaemonStatus.STARTING):
                return self.get_status()

            self._state.status = DaemonStatus.STOPPING
            self._stop_event.set()

            if self._task:
                try:
                    await asyncio.wait_for(self._task, timeout=STOP_TIMEOUT)
                except TimeoutError:
                    logger.warning("Daemon task did not stop gracefully, cancelling")
                    self._task.cancel()
                    try:
                        await self._task
                    except asyncio.CancelledError:
                        pass
                except asyncio.CancelledError:
                    pass
                self._task = None

            self._daemon_lock.release()
            self._state.status = DaemonStatus.STOPPED

            logger.info(
                "Metrics daemon stopped",
                extra={
                    "job_id": self._state.job_id,
                    "sample_count": self._state.sample_count,
                    "rollup_count": self._state.rollup_count,
                },
            )

            return self.get_status()

    def request_stop(self) -> None:
        """Ask the loop to exit after the current tick (signal-handler safe)."""
        self._stop_event.set()

    async def run(self) -> DaemonState:
        """Start, block until a stop is requested, then stop."""
        await self.start()
        if self._task:
            await self._task
        return await self.stop()

    # =========================================================================
    # Loop
    # =========================================================================

    async def run_once(self) -> None:
        """
        Run one daemon tick.

        Collects from every collector, then runs rollups and raw rotation
        when their intervals have elapsed. Failures are counted and logged
        per collector; one failing collector does not affect the others.
        """
        loop = asyncio.get_running_loop()

        written = 0
        for collector in self._collectors:
            try:
                samples = await loop.run_in_executor(None, collector.collect)
                if samples:
                    if await loop.run_in_executor(None, collector.write_samples, samples):
                        written += len(samples)
                    else:
                        self._record_error(collector, "Failed to write samples")
            except Exception as e:
                self._record_error(collector, str(e))

        if written:
            self._state.sample_count += written
            self._state.last_collection_at = datetime.now()

        now = self._clock()
        if now - self._last_rollup >= self._state.rollup_interval_seconds:
            for collector in self._collectors:
                try:
                    await loop.run_in_executor(None, collector.process_all_rollups)
                except Exception as e:
                    self._record_error(collector, str(e))
            self._last_rollup = now
            self._state.rollup_count += 1
            self._state.last_rollup_at = datetime.now()

        if now - self._last_rotation >= RAW_ROTATION_INTERVAL:
            for collector in self._collectors:
                try:
                    result = await loop.run_in_executor(None, collector.rotate_raw)
                    if result.purged:
                        logger.debug(
                            "Raw log rotated",
                            extra={"source": collector.source_name, **result.to_dict()},
                        )
                except Exception as e:
                    self._record_error(collector, str(e))
            self._last_rotation = now

    def _record_error(self, collector: MetricsCollector, message: str) -> None:
        self._state.error_count += 1
        self._state.last_error = f"{collector.source_name}: {message}"
        logger.error(
            "Error during metrics collection",
            extra={"source": collector.source_name, "error": message, "job_id": self._state.job_id},
        )

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            await self.run_once()

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=float(self._state.collection_interval_seconds),
                )
                break
            except TimeoutError:
                pass
