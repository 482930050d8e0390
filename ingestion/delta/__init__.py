"""
Delta sync: row hashing, change classification and persisted state.
"""

from ingestion.delta.hashing import compute_row_hash, normalize_reef_id, schema_fingerprint
from ingestion.delta.classifier import (
    DeltaSyncClassifier,
    DeltaSyncSummary,
    RowClassification,
    classify_rows,
)
from ingestion.delta.state_store import DeltaSyncStateStore

__all__ = [
    "compute_row_hash",
    "normalize_reef_id",
    "schema_fingerprint",
    "DeltaSyncClassifier",
    "DeltaSyncSummary",
    "RowClassification",
    "classify_rows",
    "DeltaSyncStateStore",
]
