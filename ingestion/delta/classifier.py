"""
Delta sync classification of rows against previously stored hashes
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
import logging

from core.exceptions import ConfigurationError, DeltaSyncError, DuplicateKeyError
from ingestion.delta.hashing import compute_row_hash, normalize_reef_id
from models.base import DuplicateStrategy, NullKeyStrategy, RowChange
from schemas.profile import DeltaSyncConfig

logger = logging.getLogger(__name__)


@dataclass
class RowClassification:
    """Outcome for one row. change is None when the row was dropped."""

    change: Optional[RowChange]
    reef_id: Optional[str] = None
    row_hash: Optional[str] = None
    reason: Optional[str] = None

    @property
    def dropped(self) -> bool:
        return self.change is None

    @property
    def needs_write(self) -> bool:
        return self.change in (RowChange.NEW, RowChange.CHANGED)


@dataclass
class DeltaSyncSummary:
    new: List[str] = field(default_factory=list)
    changed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    dropped: int = 0


class DeltaSyncClassifier:
    """
    Classify rows as New, Changed or Unchanged while they stream past,
    then report Deleted keys once the input is exhausted.

    previous_state maps natural key to the last stored hash for keys that
    are not soft-deleted. The classifier is owned by one execution.
    """

    def __init__(self, config: DeltaSyncConfig, previous_state: Optional[Dict[str, str]] = None):
        if not config.reef_id_column:
            raise ConfigurationError(
                "Delta sync requires reef_id_column",
                context={"field": "delta_sync.reef_id_column"}
            )
        self.config = config
        self.previous_state = dict(previous_state or {})
        self.current_state: Dict[str, str] = {}
        self._occurrences: Dict[str, int] = {}
        self.counts = {change: 0 for change in RowChange}
        self.dropped = 0

    def _raw_key(self, columns: Dict[str, Any]) -> Any:
        column = self.config.reef_id_column
        if column in columns:
            return columns[column]
        lowered = column.lower()
        for name, value in columns.items():
            if name.lower() == lowered:
                return value
        return None

    def resolve_key(self, columns: Dict[str, Any]) -> Optional[str]:
        """
        Normalised natural key for a row, applying the null key strategy.

        Raises:
            DeltaSyncError: Strict strategy and the key is null or blank
        """
        key = normalize_reef_id(self._raw_key(columns), self.config.reef_id_normalization)
        if key is not None:
            return key

        strategy = self.config.null_key_strategy
        if strategy == NullKeyStrategy.GENERATE:
            return f"GENERATED_{uuid.uuid4().hex}"
        if strategy == NullKeyStrategy.SKIP:
            return None
        raise DeltaSyncError(
            f"Row has no value in natural key column '{self.config.reef_id_column}'",
            context={"reef_id_column": self.config.reef_id_column}
        )

    def _dedupe(self, key: str) -> Optional[str]:
        """Apply the duplicate strategy; None means drop the row"""
        seen = self._occurrences.get(key, 0) + 1
        self._occurrences[key] = seen
        if seen == 1:
            return key

        strategy = self.config.duplicate_strategy
        if strategy == DuplicateStrategy.SKIP:
            return None
        if strategy == DuplicateStrategy.COMPOSITE:
            return f"{key}#{seen}"
        raise DuplicateKeyError(
            f"Duplicate natural key '{key}' in one import",
            context={"reef_id": key, "occurrence": seen}
        )

    def classify(self, columns: Dict[str, Any]) -> RowClassification:
        key = self.resolve_key(columns)
        if key is None:
            self.dropped += 1
            return RowClassification(change=None, reason="null natural key")

        unique_key = self._dedupe(key)
        if unique_key is None:
            self.dropped += 1
            return RowClassification(change=None, reef_id=key, reason="duplicate natural key")

        row_hash = compute_row_hash(unique_key, columns, self.config)
        self.current_state[unique_key] = row_hash

        previous = self.previous_state.get(unique_key)
        if previous is None:
            change = RowChange.NEW
        elif previous != row_hash:
            change = RowChange.CHANGED
        else:
            change = RowChange.UNCHANGED

        self.counts[change] += 1
        return RowClassification(change=change, reef_id=unique_key, row_hash=row_hash)

    def revert(self, key: str):
        """Drop this run's hash for a key whose row never reached the target"""
        previous = self.previous_state.get(key)
        if previous is None:
            self.current_state.pop(key, None)
        else:
            self.current_state[key] = previous

    def deleted_keys(self) -> List[str]:
        """Previously tracked keys not seen in this run (delete tracking only)"""
        if not self.config.track_deletes:
            return []
        deleted = [key for key in self.previous_state if key not in self.current_state]
        self.counts[RowChange.DELETED] = len(deleted)
        return deleted


def classify_rows(
    rows: Iterable[Dict[str, Any]],
    config: DeltaSyncConfig,
    previous_state: Optional[Dict[str, str]] = None
) -> DeltaSyncSummary:
    """Classify a complete row set in one call"""
    classifier = DeltaSyncClassifier(config, previous_state)
    summary = DeltaSyncSummary()
    buckets = {
        RowChange.NEW: summary.new,
        RowChange.CHANGED: summary.changed,
        RowChange.UNCHANGED: summary.unchanged,
    }

    for columns in rows:
        result = classifier.classify(columns)
        if result.dropped:
            summary.dropped += 1
        else:
            buckets[result.change].append(result.reef_id)

    summary.deleted = classifier.deleted_keys()
    return summary
