"""
Single-instance coordination for collector daemons.

A daemon holds a non-blocking ``flock`` on ``<lock_dir>/watcher-<name>.lock``
for its whole lifetime and records its PID in the file. The kernel drops the
lock when the holder exits. If the lock is still held but the recorded PID
no longer exists (for example an inherited descriptor outlived the daemon),
the lock is treated as stale: the file is removed and acquisition is retried
once on a fresh file.

Process liveness goes through a ProcessChecker so staleness handling can be
exercised without real processes.
"""

from __future__ import annotations

import contextlib
import fcntl
import os
from pathlib import Path
from types import TracebackType
from typing import Protocol

import psutil

from watcher_metrics.errors import UnavailableError
from watcher_metrics.logging import get_logger

logger = get_logger(__name__)

LOCK_PREFIX = "watcher-"
LOCK_SUFFIX = ".lock"
DEFAULT_LOCK_DIR = "/tmp"

# Attempts at locking the file at lock_path when a holder removes it underneath us
MAX_LOCK_ATTEMPTS = 5


class ProcessChecker(Protocol):
    """Answers whether a PID belongs to a live process."""

    def is_alive(self, pid: int) -> bool: ...


class PsutilProcessChecker:
    """ProcessChecker backed by the OS process table."""

    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        return psutil.pid_exists(pid)


class DaemonLock:
    """
    PID lock file guaranteeing at most one running daemon per name.

    Example:
        >>> with DaemonLock("metrics-collector") as lock:
        ...     run_daemon()
    """

    def __init__(
        self,
        name: str,
        lock_dir: str | Path = DEFAULT_LOCK_DIR,
        process_checker: ProcessChecker | None = None,
    ) -> None:
        self.name = name
        self.lock_path = Path(lock_dir) / f"{LOCK_PREFIX}{name}{LOCK_SUFFIX}"
        self.process_checker = process_checker or PsutilProcessChecker()
        self._fd: int | None = None

    @property
    def acquired(self) -> bool:
        """Whether this instance currently holds the lock."""
        return self._fd is not None

    def _try_lock(self) -> bool:
        for _ in range(MAX_LOCK_ATTEMPTS):
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                return False

            # The file may have been unlinked by a releasing holder after we opened it
            try:
                current = os.stat(self.lock_path)
            except FileNotFoundError:
                current = None
            if current is not None and current.st_ino == os.fstat(fd).st_ino:
                break
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
        else:
            return False

        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        os.fsync(fd)
        self._fd = fd
        return True

    def acquire(self) -> bool:
        """
        Try to take the lock without blocking.

        Returns:
            True if the lock is now held by this process, False if another
            live instance holds it or the lock file cannot be opened.
        """
        if self.acquired:
            return True

        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            if self._try_lock():
                logger.debug("Daemon lock acquired", extra={"daemon": self.name, "path": str(self.lock_path)})
                return True
        except OSError as e:
            logger.error(
                "Failed to open lock file",
                extra={"daemon": self.name, "path": str(self.lock_path), "error": str(e)},
            )
            return False

        holder = self.get_pid()
        if holder is None:
            logger.info("Another instance is already running", extra={"daemon": self.name})
            return False

        if self.process_checker.is_alive(holder):
            logger.info(
                "Another instance is already running",
                extra={"daemon": self.name, "pid": holder},
            )
            return False

        logger.info(
            "Detected stale lock, clearing it",
            extra={"daemon": self.name, "pid": holder},
        )
        try:
            with contextlib.suppress(FileNotFoundError):
                self.lock_path.unlink()
            if self._try_lock():
                logger.info("Acquired lock after clearing stale lock", extra={"daemon": self.name})
                return True
        except OSError as e:
            logger.error(
                "Failed to reclaim stale lock",
                extra={"daemon": self.name, "path": str(self.lock_path), "error": str(e)},
            )
            return False

        logger.info("Failed to acquire lock even after clearing stale lock", extra={"daemon": self.name})
        return False

    def release(self) -> None:
        """Release the lock and remove the lock file. No-op if not held."""
        if self._fd is None:
            return

        fd, self._fd = self._fd, None
        # Unlinked while still locked; a waiter that opened this inode fails the path check in _try_lock
        with contextlib.suppress(FileNotFoundError):
            self.lock_path.unlink()
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)
        logger.debug("Daemon lock released", extra={"daemon": self.name})

    def get_pid(self) -> int | None:
        """PID recorded in the lock file, or None if absent or unreadable."""
        try:
            content = self.lock_path.read_text().strip()
        except OSError:
            return None
        if not content.isdigit():
            return None
        return int(content)

    def is_running(self) -> bool:
        """Whether the process recorded in the lock file is alive."""
        pid = self.get_pid()
        return pid is not None and self.process_checker.is_alive(pid)

    def __enter__(self) -> DaemonLock:
        if not self.acquire():
            raise UnavailableError(
                f"Daemon {self.name} is already running",
                details={"daemon": self.name, "pid": self.get_pid(), "lock_file": str(self.lock_path)},
            )
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()
