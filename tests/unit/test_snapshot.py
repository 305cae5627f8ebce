"""
Unit tests for legacy snapshot normalization.

Covers field normalization, id handling, skip/duplicate accounting and the
timestamps carried onto v2 rows.
"""

from datetime import UTC, datetime

from clientrecords.hashing import compute_record_hash, compute_rows_checksum
from clientrecords.snapshot import (
    normalize_legacy_record_to_v2_row,
    normalize_legacy_records_snapshot,
    normalize_record_field_value,
)


class TestNormalizeRecordFieldValue:
    """Tests for normalize_record_field_value."""

    def test_scalars(self):
        assert normalize_record_field_value(None) == ""
        assert normalize_record_field_value("  hi ") == "hi"
        assert normalize_record_field_value(True) == "Yes"
        assert normalize_record_field_value(False) == ""
        assert normalize_record_field_value(7) == "7"
        assert normalize_record_field_value(7.0) == "7"
        assert normalize_record_field_value(7.5) == "7.5"
        assert normalize_record_field_value(float("inf")) == ""

    def test_lists_are_normalized_recursively(self):
        assert normalize_record_field_value([" a ", 1, None]) == ["a", "1", ""]

    def test_objects_trim_keys_and_drop_empty_keys(self):
        value = {" name ": " Ann ", "": "dropped", "  ": "dropped", "n": {"k": False}}
        assert normalize_record_field_value(value) == {"name": "Ann", "n": {"k": ""}}

    def test_unknown_types_become_empty(self):
        assert normalize_record_field_value(object()) == ""


class TestNormalizeLegacyRecordToV2Row:
    """Tests for normalize_legacy_record_to_v2_row."""

    def test_basic_record(self):
        revision = datetime(2024, 5, 1, 10, 0, tzinfo=UTC)
        row = normalize_legacy_record_to_v2_row(
            {"id": " r-1 ", "clientName": " Ann ", "createdAt": "2024-04-01T00:00:00Z"},
            source_state_row_id=3,
            source_state_updated_at=revision,
            write_timestamp=revision,
        )

        assert row is not None
        assert row.id == "r-1"
        assert row.record == {"id": "r-1", "clientName": "Ann", "createdAt": "2024-04-01T00:00:00Z"}
        assert row.record_hash == compute_record_hash(row.record)
        assert row.source_state_row_id == 3
        assert row.source_state_updated_at == revision
        assert row.created_at == datetime(2024, 4, 1, tzinfo=UTC)
        assert row.write_timestamp == revision

    def test_numeric_id_becomes_string(self):
        row = normalize_legacy_record_to_v2_row({"id": 42})
        assert row is not None
        assert row.id == "42"
        assert row.record["id"] == "42"

    def test_long_id_is_truncated(self):
        row = normalize_legacy_record_to_v2_row({"id": "x" * 500})
        assert row is not None
        assert len(row.id) == 180

    def test_unparseable_created_at(self):
        row = normalize_legacy_record_to_v2_row({"id": "a", "createdAt": "soon"})
        assert row is not None
        assert row.created_at is None

    def test_out_of_range_created_at(self):
        row = normalize_legacy_record_to_v2_row({"id": "a", "createdAt": "253402300800000"})
        assert row is not None
        assert row.created_at is None
        assert row.record["createdAt"] == "253402300800000"

    def test_missing_id(self):
        assert normalize_legacy_record_to_v2_row({"name": "x"}) is None
        assert normalize_legacy_record_to_v2_row({"id": "   "}) is None

    def test_non_object(self):
        assert normalize_legacy_record_to_v2_row(["id", "a"]) is None
        assert normalize_legacy_record_to_v2_row("a") is None

    def test_same_content_same_hash_regardless_of_formatting(self):
        first = normalize_legacy_record_to_v2_row({"id": "a", "n": 1, "ok": True})
        second = normalize_legacy_record_to_v2_row({"ok": True, "n": "1 ", "id": " a"})
        assert first is not None and second is not None
        assert first.record_hash == second.record_hash


class TestNormalizeLegacyRecordsSnapshot:
    """Tests for normalize_legacy_records_snapshot."""

    def test_counts_and_order(self):
        snapshot = normalize_legacy_records_snapshot(
            [
                {"id": "b", "v": "1"},
                "not an object",
                {"name": "no id"},
                {"id": "a"},
                {"id": "b", "v": "2"},
                None,
            ]
        )

        assert snapshot.ids == ["a", "b"]
        assert snapshot.expected_count == 2
        assert snapshot.skipped_invalid_record_count == 2
        assert snapshot.skipped_missing_id_count == 1
        assert snapshot.duplicate_id_count == 1

    def test_last_duplicate_wins(self):
        snapshot = normalize_legacy_records_snapshot([{"id": "a", "v": "1"}, {"id": "a", "v": "2"}])
        assert snapshot.rows[0].record["v"] == "2"

    def test_empty_and_none(self):
        assert normalize_legacy_records_snapshot(None).expected_count == 0
        assert normalize_legacy_records_snapshot([]).expected_count == 0

    def test_checksum_matches_rows(self):
        snapshot = normalize_legacy_records_snapshot([{"id": "a"}, {"id": "b"}])
        assert snapshot.checksum == compute_rows_checksum(snapshot.rows)

    def test_source_row_id_is_applied(self):
        snapshot = normalize_legacy_records_snapshot([{"id": "a"}], source_state_row_id=9)
        assert snapshot.rows[0].source_state_row_id == 9

    def test_bigint_revision_is_converted(self):
        snapshot = normalize_legacy_records_snapshot(
            [{"id": "a"}],
            source_state_updated_at=1714557600123,
        )
        assert snapshot.rows[0].source_state_updated_at == datetime(
            2024, 5, 1, 10, 0, 0, 123000, tzinfo=UTC
        )
