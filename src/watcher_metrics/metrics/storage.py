"""
Line-oriented storage layer for raw metric samples and rollup rows.

Every metric source owns an append-only log file holding one self-contained
record per line. Raw logs use a human-inspectable prefixed form::

    [2024-05-01 12:00:00] {"timestamp":1714564800,"latency":12.3}

while rollup logs hold plain JSON objects, one per line. Both forms are
accepted on read.

Concurrency model:
- Appends take an exclusive ``flock`` and write the whole batch with one
  write call, so batches from concurrent processes never interleave.
- Readers take a shared ``flock``.
- Rotation writes the surviving lines to a temp file and ``os.replace``s
  it over the log; writers that were waiting on the old inode notice the
  swap and reopen the new file.

Paths ending in ``.gz`` are stored as concatenated gzip members, one member
per appended batch, which ``gzip`` reads back as a single stream.
"""

from __future__ import annotations

import contextlib
import fcntl
import gzip
import io
import json
import os
import re
import shutil
import time
from collections.abc import Callable, Generator, Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Any

from watcher_metrics.errors import FailedPreconditionError
from watcher_metrics.logging import get_logger

logger = get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

TIMESTAMP_FIELD = "timestamp"

# strftime format of the raw line prefix
LINE_PREFIX_FORMAT = "%Y-%m-%d %H:%M:%S"

GZIP_SUFFIX = ".gz"
GZIP_COMPRESSION_LEVEL = 6

DEFAULT_BACKUP_SUFFIX = ".old"
TEMP_SUFFIX = ".tmp"

# Attempts at locking the live file when a rotation swaps it underneath us
MAX_APPEND_ATTEMPTS = 5

# Matches only lines whose payload opens with the timestamp, as format_line writes them
_TIMESTAMP_RE = re.compile(r'\s*(?:\[[^\]]*\]\s*)?\{\s*"timestamp"\s*:\s*(-?\d+(?:\.\d+)?)\s*[,}]')

RecordFilter = Callable[[dict[str, Any]], bool]


# =============================================================================
# Data Models
# =============================================================================


@dataclass(frozen=True)
class RotationResult:
    """Outcome of a retention rotation.

    Attributes:
        purged: Records removed because they were older than the cutoff.
        kept: Records still present after the rotation.
    """

    purged: int = 0
    kept: int = 0

    def to_dict(self) -> dict[str, int]:
        """Convert to dictionary for serialization."""
        return {"purged": self.purged, "kept": self.kept}


# =============================================================================
# Line Encoding
# =============================================================================


def is_timestamp(value: Any) -> bool:
    """True for int/float epoch values (bool is rejected)."""
    return isinstance(value, int | float) and not isinstance(value, bool)


def parse_line(line: str) -> dict[str, Any] | None:
    """
    Parse one log line into a record.

    Accepts both plain JSON lines and the ``[datetime] {json}`` form.

    Returns:
        The record, or None when the line is blank, not a JSON object, or
        lacks a numeric timestamp.
    """
    line = line.strip()
    if not line:
        return None

    if line[0] != "{":
        brace = line.find("{")
        if brace < 0:
            return None
        line = line[brace:]

    try:
        record = json.loads(line)
    except ValueError:
        return None

    if not isinstance(record, dict) or not is_timestamp(record.get(TIMESTAMP_FIELD)):
        return None
    return record


def format_line(record: Mapping[str, Any], *, prefixed: bool = True) -> str:
    """
    Encode a record as one newline-terminated log line.

    The timestamp field is always serialized first so readers can pre-filter
    lines with a regex instead of decoding JSON.
    """
    entry = {TIMESTAMP_FIELD: record[TIMESTAMP_FIELD], **record}
    payload = json.dumps(entry, separators=(",", ":"))
    if not prefixed:
        return payload + "\n"
    stamp = datetime.fromtimestamp(entry[TIMESTAMP_FIELD], UTC).strftime(LINE_PREFIX_FORMAT)
    return f"[{stamp}] {payload}\n"


def _peek_timestamp(line: str) -> float | None:
    match = _TIMESTAMP_RE.match(line)
    if match is None:
        return None
    return float(match.group(1))


def _is_gzip(path: Path) -> bool:
    return path.name.endswith(GZIP_SUFFIX)


def _encode(path: Path, text: str) -> bytes:
    data = text.encode("utf-8")
    if _is_gzip(path):
        return gzip.compress(data, compresslevel=GZIP_COMPRESSION_LEVEL)
    return data


def _decode_stream(path: Path, raw: IO[bytes]) -> Iterator[str]:
    if _is_gzip(path):
        return io.TextIOWrapper(gzip.GzipFile(fileobj=raw, mode="rb"), encoding="utf-8", errors="replace")
    return io.TextIOWrapper(raw, encoding="utf-8", errors="replace")


# =============================================================================
# Locked File Access
# =============================================================================


@contextmanager
def locked_append(path: Path) -> Generator[IO[bytes], None, None]:
    """
    Open ``path`` for appending under an exclusive lock.

    If a rotation replaced the file while we waited for the lock, the stale
    handle is dropped and the current file is opened instead.
    """
    for _ in range(MAX_APPEND_ATTEMPTS):
        fh = open(path, "ab")
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            try:
                current = os.stat(path)
            except FileNotFoundError:
                current = None
            if current is not None and current.st_ino == os.fstat(fh.fileno()).st_ino:
                try:
                    yield fh
                    fh.flush()
                finally:
                    fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
                return
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        finally:
            fh.close()

    raise OSError(f"Log file kept changing while acquiring append lock: {path}")


@contextmanager
def locked_reader(path: Path, *, exclusive: bool = False) -> Generator[Iterator[str], None, None]:
    """Iterate over the decoded lines of ``path`` under a shared (or exclusive) lock."""
    with open(path, "rb") as raw:
        fcntl.flock(raw.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
        try:
            yield _decode_stream(path, raw)
        finally:
            fcntl.flock(raw.fileno(), fcntl.LOCK_UN)


def atomic_write_text(path: Path, text: str) -> None:
    """
    Replace ``path`` with ``text`` via a fsynced temp file and ``os.replace``.

    Readers observe either the old or the new content, never a truncated
    file. Gzip paths are written compressed.

    Raises:
        OSError: If the temp file cannot be written or moved into place; the
            original file is left untouched.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + TEMP_SUFFIX)
    try:
        with open(tmp_path, "wb") as fh:
            fh.write(_encode(path, text))
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            tmp_path.unlink()
        raise


# =============================================================================
# RawMetricStore Class
# =============================================================================


class RawMetricStore:
    """
    Append-only, line-oriented store for timestamped records.

    One instance can serve any number of log files; every method takes the
    log path. The same class backs rollup logs with ``prefixed=False``.

    Example:
        >>> store = RawMetricStore()
        >>> store.write_batch("/tmp/ping/raw.log", [{"timestamp": 1714564800, "latency": 12.3}])
        True
        >>> store.read("/tmp/ping/raw.log", since_timestamp=1714564800)
        [{'timestamp': 1714564800, 'latency': 12.3}]
    """

    def __init__(
        self,
        *,
        prefixed: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the store.

        Args:
            prefixed: Write the ``[datetime]`` prefix before each JSON record.
            clock: Source of the current epoch time (rotation cutoff and
                timestamps for records missing one).
        """
        self.prefixed = prefixed
        self._clock = clock

    def write_batch(self, path: str | Path, records: Iterable[Mapping[str, Any]]) -> bool:
        """
        Append a batch of records as one exclusive write.

        Args:
            path: Log file path; parent directories are created on demand.
            records: Records to append. Records without a numeric timestamp
                are stamped with the current time.

        Returns:
            True on success (including an empty batch, which creates
            nothing), False when the file could not be written.
        """
        path = Path(path)
        now = int(self._clock())

        lines = []
        for record in records:
            if not is_timestamp(record.get(TIMESTAMP_FIELD)):
                record = {**record, TIMESTAMP_FIELD: now}
            lines.append(format_line(record, prefixed=self.prefixed))

        if not lines:
            return True

        payload = _encode(path, "".join(lines))

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with locked_append(path) as fh:
                fh.write(payload)
        except OSError as e:
            logger.error(
                "Failed to append metric batch",
                extra={"path": str(path), "count": len(lines), "error": str(e)},
            )
            return False

        logger.debug(
            "Appended metric batch",
            extra={"path": str(path), "count": len(lines)},
        )
        return True

    def read(
        self,
        path: str | Path,
        since_timestamp: float = 0,
        filter_fn: RecordFilter | None = None,
        sort: bool = False,
    ) -> list[dict[str, Any]]:
        """
        Read records from a log.

        Args:
            path: Log file path.
            since_timestamp: Only return records with timestamp >= this value.
            filter_fn: Optional predicate a record must satisfy.
            sort: Order the result ascending by timestamp. Concurrent writers
                can leave lines slightly out of order.

        Returns:
            Matching records. A missing file yields an empty list; malformed
            lines are skipped.

        Raises:
            FailedPreconditionError: If an existing file cannot be opened.
        """
        path = Path(path)
        records: list[dict[str, Any]] = []
        malformed = 0

        try:
            with locked_reader(path) as lines:
                for line in lines:
                    if since_timestamp > 0:
                        peeked = _peek_timestamp(line)
                        if peeked is not None and peeked < since_timestamp:
                            continue

                    record = parse_line(line)
                    if record is None:
                        if line.strip():
                            malformed += 1
                        continue

                    if record[TIMESTAMP_FIELD] < since_timestamp:
                        continue
                    if filter_fn is not None and not filter_fn(record):
                        continue
                    records.append(record)
        except FileNotFoundError:
            return []
        except (EOFError, gzip.BadGzipFile) as e:
            # Truncated trailing gzip member; keep what decoded cleanly
            logger.warning(
                "Compressed log is truncated",
                extra={"path": str(path), "error": str(e), "recovered": len(records)},
            )
        except OSError as e:
            logger.error(
                "Failed to read metrics log",
                extra={"path": str(path), "error": str(e)},
            )
            raise FailedPreconditionError(
                f"Failed to read metrics log: {e}",
                details={"path": str(path)},
            ) from e

        if malformed:
            logger.debug(
                "Skipped malformed log lines",
                extra={"path": str(path), "malformed": malformed},
            )

        if sort:
            records.sort(key=lambda r: r[TIMESTAMP_FIELD])

        return records

    def rotate(
        self,
        path: str | Path,
        max_age_seconds: float,
        backup_suffix: str | None = DEFAULT_BACKUP_SUFFIX,
    ) -> RotationResult:
        """
        Remove records older than ``max_age_seconds``.

        The log is locked exclusively for the duration, so appends pause.
        When anything is purged, the surviving lines are written to a temp
        file, the pre-rotation log is copied to ``path + backup_suffix`` and
        the temp file atomically replaces the log. Malformed lines are dropped
        by a rewrite but are counted as neither purged nor kept.

        Args:
            path: Log file path.
            max_age_seconds: Maximum record age relative to now.
            backup_suffix: Suffix of the pre-rotation backup copy; None
                skips the backup.

        Returns:
            RotationResult with purged and kept counts.

        Raises:
            FailedPreconditionError: If the rewrite fails; the log is left as
                it was before the call.
        """
        path = Path(path)
        cutoff = self._clock() - max_age_seconds
        kept_lines: list[str] = []
        purged = 0

        try:
            with locked_reader(path, exclusive=True) as lines:
                for line in lines:
                    record = parse_line(line)
                    if record is None:
                        continue
                    if record[TIMESTAMP_FIELD] >= cutoff:
                        kept_lines.append(line if line.endswith("\n") else line + "\n")
                    else:
                        purged += 1

                if purged == 0:
                    return RotationResult(purged=0, kept=len(kept_lines))

                if backup_suffix is not None:
                    shutil.copy2(path, path.with_name(path.name + backup_suffix))
                atomic_write_text(path, "".join(kept_lines))
        except FileNotFoundError:
            return RotationResult()
        except OSError as e:
            logger.error(
                "Failed to rotate metrics log",
                extra={"path": str(path), "error": str(e)},
            )
            raise FailedPreconditionError(
                f"Failed to rotate metrics log: {e}",
                details={"path": str(path)},
            ) from e

        logger.info(
            "Rotated metrics log",
            extra={"path": str(path), "purged": purged, "kept": len(kept_lines)},
        )
        return RotationResult(purged=purged, kept=len(kept_lines))
