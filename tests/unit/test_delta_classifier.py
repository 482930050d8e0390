"""
Unit tests for delta sync classification
"""

import pytest

from core.exceptions import ConfigurationError, DeltaSyncError, DuplicateKeyError
from ingestion.delta.classifier import DeltaSyncClassifier, classify_rows
from ingestion.delta.hashing import compute_row_hash
from models.base import RowChange
from schemas.profile import DeltaSyncConfig


def config(**kwargs) -> DeltaSyncConfig:
    kwargs.setdefault("reef_id_column", "id")
    return DeltaSyncConfig(enabled=True, **kwargs)


def state_for(rows, cfg):
    return {row["id"]: compute_row_hash(row["id"], row, cfg) for row in rows}


class TestDeltaSyncClassifier:
    """Test row classification"""

    def test_requires_reef_id_column(self):
        with pytest.raises(ConfigurationError):
            DeltaSyncClassifier(DeltaSyncConfig(enabled=True))

    def test_first_run_everything_is_new(self, mock_customer_rows):
        classifier = DeltaSyncClassifier(config())

        results = [classifier.classify(row) for row in mock_customer_rows]

        assert all(r.change == RowChange.NEW for r in results)
        assert all(r.needs_write for r in results)
        assert classifier.counts[RowChange.NEW] == 3
        assert set(classifier.current_state) == {"C001", "C002", "C003"}

    def test_new_changed_unchanged_deleted(self, mock_customer_rows):
        """The second run sees one change, one removal and one addition"""
        cfg = config(track_deletes=True)
        classifier = DeltaSyncClassifier(cfg, state_for(mock_customer_rows, cfg))

        second_run = [
            {"id": "C001", "name": "Alice", "city": "Oslo"},
            {"id": "C002", "name": "Bob", "city": "Stavanger"},
            {"id": "C004", "name": "Dave", "city": "Bodo"},
        ]
        changes = [classifier.classify(row).change for row in second_run]

        assert changes == [RowChange.UNCHANGED, RowChange.CHANGED, RowChange.NEW]
        assert classifier.deleted_keys() == ["C003"]
        assert classifier.counts[RowChange.DELETED] == 1

    def test_deletes_not_tracked(self, mock_customer_rows):
        cfg = config(track_deletes=False)
        classifier = DeltaSyncClassifier(cfg, state_for(mock_customer_rows, cfg))

        classifier.classify(mock_customer_rows[0])

        assert classifier.deleted_keys() == []

    def test_key_lookup_and_normalisation(self):
        classifier = DeltaSyncClassifier(config(reef_id_normalization="Trim,Lowercase"))

        result = classifier.classify({"ID": "  AbC ", "name": "x"})

        assert result.reef_id == "abc"

    def test_null_key_strict(self):
        classifier = DeltaSyncClassifier(config())

        with pytest.raises(DeltaSyncError):
            classifier.classify({"id": "  ", "name": "x"})

    def test_null_key_skip(self):
        classifier = DeltaSyncClassifier(config(null_key_strategy="Skip"))

        result = classifier.classify({"name": "x"})

        assert result.dropped
        assert not result.needs_write
        assert classifier.dropped == 1
        assert classifier.current_state == {}

    def test_null_key_generate(self):
        classifier = DeltaSyncClassifier(config(null_key_strategy="Generate"))

        first = classifier.classify({"id": None, "name": "x"})
        second = classifier.classify({"id": None, "name": "x"})

        assert first.reef_id.startswith("GENERATED_")
        assert first.reef_id != second.reef_id
        assert first.change == RowChange.NEW

    def test_duplicate_strict(self):
        classifier = DeltaSyncClassifier(config())
        classifier.classify({"id": "A", "v": "1"})

        with pytest.raises(DuplicateKeyError):
            classifier.classify({"id": "A", "v": "2"})

    def test_duplicate_skip(self):
        classifier = DeltaSyncClassifier(config(duplicate_strategy="Skip"))
        classifier.classify({"id": "A", "v": "1"})

        result = classifier.classify({"id": "A", "v": "2"})

        assert result.dropped
        assert list(classifier.current_state) == ["A"]

    def test_duplicate_composite(self):
        classifier = DeltaSyncClassifier(config(duplicate_strategy="Composite"))
        classifier.classify({"id": "A", "v": "1"})

        second = classifier.classify({"id": "A", "v": "2"})
        third = classifier.classify({"id": "A", "v": "3"})

        assert second.reef_id == "A#2"
        assert third.reef_id == "A#3"
        assert set(classifier.current_state) == {"A", "A#2", "A#3"}


    def test_revert_unwritten_rows(self, mock_customer_rows):
        cfg = config(track_deletes=True)
        previous = state_for(mock_customer_rows[:2], cfg)
        classifier = DeltaSyncClassifier(cfg, previous)

        classifier.classify({"id": "C001", "name": "Alice", "city": "Paris"})
        classifier.classify({"id": "C002", "name": "Bob", "city": "Bergen"})
        classifier.classify(mock_customer_rows[2])
        classifier.revert("C001")
        classifier.revert("C003")

        # Changed row keeps its old hash, new row is forgotten, neither is deleted
        assert classifier.current_state["C001"] == previous["C001"]
        assert "C003" not in classifier.current_state
        assert classifier.deleted_keys() == []


class TestClassifyRows:
    """Test whole-set classification"""

    def test_summary(self, mock_customer_rows):
        cfg = config(track_deletes=True, null_key_strategy="Skip")
        previous = state_for(mock_customer_rows[:2], cfg)
        previous["C009"] = "stale"

        summary = classify_rows(mock_customer_rows + [{"id": None}], cfg, previous)

        assert summary.unchanged == ["C001", "C002"]
        assert summary.new == ["C003"]
        assert summary.changed == []
        assert summary.deleted == ["C009"]
        assert summary.dropped == 1
