"""
Durable per-tier rollup checkpoints.

Each metric source keeps one JSON document mapping tier name to its
checkpoint::

    {
      "1min": {"last_processed": 1714564790, "last_bucket_end": 1714564740,
               "last_rollup": 1714564800},
      ...
    }

The document is the only persistence boundary of the rollup processor:
callers read the whole document, replace one tier's TierState and write the
whole document back.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from watcher_metrics.errors import FailedPreconditionError
from watcher_metrics.logging import get_logger
from watcher_metrics.metrics.storage import atomic_write_text
from watcher_metrics.metrics.tiers import TierRegistry

logger = get_logger(__name__)

STATE_FIELDS = ("last_processed", "last_bucket_end", "last_rollup")


@dataclass(frozen=True)
class TierState:
    """Checkpoint of one rollup tier.

    Attributes:
        last_processed: Timestamp of the newest raw record folded into a rollup.
        last_bucket_end: End boundary of the most recently closed bucket.
        last_rollup: Wall-clock time the tier was last run.
    """

    last_processed: int = 0
    last_bucket_end: int = 0
    last_rollup: int = 0

    def advance(
        self,
        *,
        last_processed: int | None = None,
        last_bucket_end: int | None = None,
        last_rollup: int | None = None,
    ) -> TierState:
        """Return a copy moved forward; checkpoints never move backwards."""
        return replace(
            self,
            last_processed=max(self.last_processed, last_processed or 0),
            last_bucket_end=max(self.last_bucket_end, last_bucket_end or 0),
            last_rollup=last_rollup if last_rollup is not None else self.last_rollup,
        )

    def to_dict(self) -> dict[str, int]:
        """Convert to dictionary for serialization."""
        return {
            "last_processed": self.last_processed,
            "last_bucket_end": self.last_bucket_end,
            "last_rollup": self.last_rollup,
        }

    @classmethod
    def from_dict(cls, data: Any) -> TierState | None:
        """
        Build a TierState from a stored mapping.

        Missing fields default to zero. Returns None when ``data`` is not a
        mapping or a field holds something other than a number.
        """
        if not isinstance(data, Mapping):
            return None

        values: dict[str, int] = {}
        for name in STATE_FIELDS:
            value = data.get(name, 0)
            if isinstance(value, bool) or not isinstance(value, int | float):
                return None
            values[name] = int(value)
        return cls(**values)


class RollupStateStore:
    """
    Loads and saves the checkpoint document of one metric source.

    Example:
        >>> store = RollupStateStore(["1min", "5min"])
        >>> state = store.get_state("/tmp/ping/rollup-state.json")
        >>> state["1min"]
        TierState(last_processed=0, last_bucket_end=0, last_rollup=0)
    """

    def __init__(self, tier_names: Iterable[str] | None = None) -> None:
        """
        Initialize the store.

        Args:
            tier_names: Tiers always present in loaded state; defaults to the
                default tier registry.
        """
        self.tier_names = list(tier_names) if tier_names is not None else TierRegistry().names

    def _load_document(self, state_file: Path) -> dict[str, Any]:
        try:
            content = state_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            logger.error(
                "Failed to read rollup state",
                extra={"state_file": str(state_file), "error": str(e)},
            )
            raise FailedPreconditionError(
                f"Failed to read rollup state: {e}",
                details={"state_file": str(state_file)},
            ) from e

        if not content.strip():
            return {}

        try:
            document = json.loads(content)
        except ValueError:
            document = None

        if not isinstance(document, dict):
            logger.warning(
                "Corrupted rollup state file, rebuilding from zero",
                extra={"state_file": str(state_file)},
            )
            return {}
        return document

    def get_state(self, state_file: str | Path) -> dict[str, TierState]:
        """
        Load every tier's checkpoint.

        Tiers absent from the document, or stored with invalid values, come
        back zeroed so they are re-scanned from the beginning; other tiers
        are unaffected.

        Args:
            state_file: Path of the JSON checkpoint document.

        Returns:
            Mapping of tier name to TierState, covering at least the store's
            tiers.
        """
        state_file = Path(state_file)
        document = self._load_document(state_file)

        state: dict[str, TierState] = {}
        for name in [*self.tier_names, *(k for k in document if k not in self.tier_names)]:
            if name not in document:
                state[name] = TierState()
                continue

            tier_state = TierState.from_dict(document[name])
            if tier_state is None:
                logger.warning(
                    "Invalid checkpoint for tier, resetting it",
                    extra={"state_file": str(state_file), "tier": name},
                )
                tier_state = TierState()
            state[name] = tier_state

        return state

    def get_tier_state(self, state_file: str | Path, tier: str) -> TierState:
        """Checkpoint of a single tier."""
        return self.get_state(state_file).get(tier, TierState())

    def save_state(self, state_file: str | Path, state: Mapping[str, TierState]) -> None:
        """
        Persist the full checkpoint document, replacing the previous one.

        Raises:
            FailedPreconditionError: If the document cannot be written; the
                previous document stays intact.
        """
        state_file = Path(state_file)
        document = {name: tier_state.to_dict() for name, tier_state in state.items()}

        try:
            atomic_write_text(state_file, json.dumps(document, indent=4, sort_keys=False))
        except OSError as e:
            logger.error(
                "Unable to write rollup state file",
                extra={"state_file": str(state_file), "error": str(e)},
            )
            raise FailedPreconditionError(
                f"Unable to write rollup state file: {e}",
                details={"state_file": str(state_file)},
            ) from e

    def save_tier_state(self, state_file: str | Path, tier: str, tier_state: TierState) -> dict[str, TierState]:
        """Read-modify-write one tier's checkpoint."""
        state = self.get_state(state_file)
        state[tier] = tier_state
        self.save_state(state_file, state)
        return state

    def reset_state(self, state_file: str | Path, tier: str | None = None) -> dict[str, TierState]:
        """
        Reset one tier (or every tier) to zero so it is reprocessed from scratch.

        Returns:
            The state document as written.
        """
        if tier is None:
            state = {name: TierState() for name in self.get_state(state_file)}
            self.save_state(state_file, state)
        else:
            state = self.save_tier_state(state_file, tier, TierState())

        logger.info(
            "Rollup state reset",
            extra={"state_file": str(state_file), "tier": tier or "all"},
        )
        return state
