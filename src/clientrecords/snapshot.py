"""
Normalization of the legacy records array into v2 rows.

The legacy snapshot is a JSON array of loosely-typed record objects. Before a
record can be stored as a v2 row its keys are trimmed, its values are
normalized to the shapes the UI writes (strings, lists, nested objects), and
its content hash is computed over the normalized document. Both the
dual-write path and the reconciliation audit go through this module, so the
hashes they compare are always computed the same way.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from clientrecords.hashing import (
    MAX_ID_LENGTH,
    compute_record_hash,
    compute_rows_checksum,
    sanitize_text_value,
)
from clientrecords.revision import normalize_record_state_timestamp, timestamp_from_ms

MAX_KEY_LENGTH = 120
DEFAULT_SOURCE_STATE_ROW_ID = 1


@dataclass(frozen=True)
class V2Row:
    """
    A record normalized for storage in the v2 table.

    Attributes:
        id: Record id (trimmed, at most 180 characters).
        record: Normalized record document.
        record_hash: SHA-256 of the canonical JSON of ``record``.
        source_state_row_id: Legacy singleton row this record came from.
        source_state_updated_at: Legacy revision the row was derived from.
        created_at: The record's own ``createdAt``, when it parses.
        write_timestamp: Wall clock of the write that produced the row.
    """

    id: str
    record: dict[str, Any]
    record_hash: str
    source_state_row_id: int
    source_state_updated_at: datetime | None = None
    created_at: datetime | None = None
    write_timestamp: datetime | None = None


@dataclass
class LegacySnapshot:
    """
    A normalized legacy records array.

    Attributes:
        rows: Normalized rows, de-duplicated by id and sorted by id.
        skipped_invalid_record_count: Entries that were not objects.
        skipped_missing_id_count: Objects without a usable id.
        duplicate_id_count: Ids seen more than once (last one wins).
    """

    rows: list[V2Row] = field(default_factory=list)
    skipped_invalid_record_count: int = 0
    skipped_missing_id_count: int = 0
    duplicate_id_count: int = 0

    @property
    def expected_count(self) -> int:
        """Number of v2 rows this snapshot should produce."""
        return len(self.rows)

    @property
    def ids(self) -> list[str]:
        return [row.id for row in self.rows]

    @property
    def checksum(self) -> str:
        return compute_rows_checksum(self.rows)


def normalize_record_field_value(raw_value: Any) -> Any:
    """
    Normalize a single record field value.

    ``None`` becomes ``""``, strings are trimmed, finite numbers become
    strings, ``True`` becomes ``"Yes"`` and ``False`` becomes ``""``. Lists
    and objects are normalized recursively.
    """
    if raw_value is None:
        return ""
    if isinstance(raw_value, str):
        return raw_value.strip()
    if isinstance(raw_value, bool):
        return "Yes" if raw_value else ""
    if isinstance(raw_value, int):
        return str(raw_value)
    if isinstance(raw_value, float):
        if not math.isfinite(raw_value):
            return ""
        return str(int(raw_value)) if raw_value.is_integer() else repr(raw_value)
    if isinstance(raw_value, (list, tuple)):
        return [normalize_record_field_value(item) for item in raw_value]
    if isinstance(raw_value, Mapping):
        normalized: dict[str, Any] = {}
        for key, value in raw_value.items():
            normalized_key = sanitize_text_value(key, MAX_KEY_LENGTH)
            if not normalized_key:
                continue
            normalized[normalized_key] = normalize_record_field_value(value)
        return normalized
    return ""


def _normalize_timestamp(raw_value: Any) -> datetime | None:
    epoch_ms = normalize_record_state_timestamp(raw_value)
    if epoch_ms is None:
        return None
    return timestamp_from_ms(epoch_ms)


def normalize_legacy_record_to_v2_row(
    raw_record: Any,
    *,
    source_state_row_id: int = DEFAULT_SOURCE_STATE_ROW_ID,
    source_state_updated_at: Any = None,
    write_timestamp: Any = None,
) -> V2Row | None:
    """
    Normalize one legacy record into a v2 row.

    Args:
        raw_record: The legacy record object.
        source_state_row_id: Id of the legacy singleton row.
        source_state_updated_at: Legacy revision the row is derived from.
        write_timestamp: Wall clock of the write producing the row.

    Returns:
        The normalized row, or None when the record is not an object or has
        no usable id.
    """
    if not isinstance(raw_record, Mapping):
        return None

    normalized_record = normalize_record_field_value(raw_record)
    record_id = sanitize_text_value(normalized_record.get("id"), MAX_ID_LENGTH)
    if not record_id:
        return None
    normalized_record["id"] = record_id

    return V2Row(
        id=record_id,
        record=normalized_record,
        record_hash=compute_record_hash(normalized_record),
        source_state_row_id=source_state_row_id,
        source_state_updated_at=_normalize_timestamp(source_state_updated_at),
        created_at=_normalize_timestamp(normalized_record.get("createdAt")),
        write_timestamp=_normalize_timestamp(write_timestamp),
    )


def normalize_legacy_records_snapshot(
    raw_records: Iterable[Any] | None,
    *,
    source_state_row_id: int = DEFAULT_SOURCE_STATE_ROW_ID,
    source_state_updated_at: Any = None,
    write_timestamp: Any = None,
) -> LegacySnapshot:
    """
    Normalize a full legacy records array.

    Args:
        raw_records: The legacy records array (anything non-iterable is
            treated as empty).
        source_state_row_id: Id of the legacy singleton row.
        source_state_updated_at: Legacy revision the rows are derived from.
        write_timestamp: Wall clock of the write producing the rows.

    Returns:
        LegacySnapshot with rows sorted by id.
    """
    snapshot = LegacySnapshot()
    rows_by_id: dict[str, V2Row] = {}

    for raw_record in raw_records or []:
        if not isinstance(raw_record, Mapping):
            snapshot.skipped_invalid_record_count += 1
            continue

        row = normalize_legacy_record_to_v2_row(
            raw_record,
            source_state_row_id=source_state_row_id,
            source_state_updated_at=source_state_updated_at,
            write_timestamp=write_timestamp,
        )
        if row is None:
            snapshot.skipped_missing_id_count += 1
            continue

        if row.id in rows_by_id:
            snapshot.duplicate_id_count += 1
        rows_by_id[row.id] = row

    snapshot.rows = sorted(rows_by_id.values(), key=lambda row: row.id)
    return snapshot


__all__ = [
    "DEFAULT_SOURCE_STATE_ROW_ID",
    "LegacySnapshot",
    "V2Row",
    "normalize_legacy_record_to_v2_row",
    "normalize_legacy_records_snapshot",
    "normalize_record_field_value",
]
