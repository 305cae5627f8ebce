"""
Reconciliation of the legacy snapshot against the v2 table.

Legacy rows are normalized with the same code the write path uses, so their
hashes are directly comparable to the hashes of the v2 documents. The v2
side also re-hashes each stored document and flags rows whose persisted
``record_hash`` no longer matches it.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from clientrecords.hashing import MAX_ID_LENGTH, compute_record_hash, compute_rows_checksum, sanitize_text_value
from clientrecords.models import DualReadCompareSummary
from clientrecords.snapshot import V2Row

DEFAULT_SAMPLE_SIZE = 20
MAX_SAMPLE_SIZE = 50
DEFAULT_COMPARE_SOURCE = "records.get"


@dataclass(frozen=True)
class CompareRow:
    """
    A row reduced to what the compare needs.

    Attributes:
        id: Record id.
        record_hash: Hash recomputed from the record document.
        stored_hash_matches: Whether the persisted hash equals the recomputed
            one. Always True for legacy rows.
    """

    id: str
    record_hash: str
    stored_hash_matches: bool = True


def clamp_sample_size(raw_value: Any, default: int = DEFAULT_SAMPLE_SIZE, maximum: int = MAX_SAMPLE_SIZE) -> int:
    """Parse a sample size and clamp it to ``1..maximum``."""
    try:
        value = int(raw_value)
    except (TypeError, ValueError):
        value = default
    if value <= 0:
        value = default
    return min(max(value, 1), maximum)


def _row_value(row: Any, name: str) -> Any:
    if isinstance(row, Mapping):
        return row.get(name)
    return getattr(row, name, None)


def normalize_v2_row_for_compare(raw_row: Any) -> CompareRow | None:
    """
    Reduce a stored v2 row to a CompareRow.

    Args:
        raw_row: Mapping or object with ``id``, ``record`` and ``record_hash``.

    Returns:
        The compare row, or None when the row has no id.
    """
    row_id = sanitize_text_value(_row_value(raw_row, "id"), MAX_ID_LENGTH)
    if not row_id:
        return None
    record = _row_value(raw_row, "record")
    if not isinstance(record, Mapping):
        record = {}
    record_hash = compute_record_hash(dict(record))
    stored_hash = sanitize_text_value(_row_value(raw_row, "record_hash"), 128).lower()
    return CompareRow(
        id=row_id,
        record_hash=record_hash,
        stored_hash_matches=bool(stored_hash) and stored_hash == record_hash,
    )


def legacy_rows_for_compare(rows: Iterable[V2Row]) -> list[CompareRow]:
    return [CompareRow(id=row.id, record_hash=row.record_hash) for row in rows]


def compare_legacy_and_v2_snapshots(
    legacy_rows: Iterable[CompareRow],
    v2_rows: Iterable[CompareRow],
    *,
    source: str = DEFAULT_COMPARE_SOURCE,
    sample_size: int = DEFAULT_SAMPLE_SIZE,
    requested_by: str = "",
) -> DualReadCompareSummary:
    """
    Compare normalized legacy rows with v2 rows.

    Args:
        legacy_rows: Rows derived from the legacy snapshot.
        v2_rows: Rows read from the v2 table.
        source: Label of the read path that triggered the compare.
        sample_size: Max ids to list per difference category. Callers clamp
            it; values below 1 are treated as 1.
        requested_by: Identity of the caller, for logs.

    Returns:
        DualReadCompareSummary; check ``mismatch_detected``.
    """
    legacy_list = list(legacy_rows)
    v2_list = list(v2_rows)
    limit = max(sample_size, 1)
    legacy_hashes = {row.id: row.record_hash for row in legacy_list}
    v2_hashes = {row.id: row.record_hash for row in v2_list}

    missing_in_v2: list[str] = []
    hash_mismatch: list[str] = []
    for row_id, legacy_hash in legacy_hashes.items():
        if row_id not in v2_hashes:
            missing_in_v2.append(row_id)
        elif v2_hashes[row_id] != legacy_hash:
            hash_mismatch.append(row_id)

    extra_in_v2: list[str] = []
    stored_hash_mismatch: list[str] = []
    for row in v2_list:
        if row.id not in legacy_hashes:
            extra_in_v2.append(row.id)
        if not row.stored_hash_matches:
            stored_hash_mismatch.append(row.id)

    return DualReadCompareSummary(
        source=sanitize_text_value(source, 80) or DEFAULT_COMPARE_SOURCE,
        requested_by=sanitize_text_value(requested_by, 160),
        legacy_count=len(legacy_list),
        v2_count=len(v2_list),
        legacy_checksum=compute_rows_checksum(legacy_list),
        v2_checksum=compute_rows_checksum(v2_list),
        missing_in_v2_count=len(missing_in_v2),
        extra_in_v2_count=len(extra_in_v2),
        hash_mismatch_count=len(hash_mismatch),
        v2_stored_hash_mismatch_count=len(stored_hash_mismatch),
        missing_in_v2=missing_in_v2[:limit],
        extra_in_v2=extra_in_v2[:limit],
        hash_mismatch=hash_mismatch[:limit],
        v2_stored_hash_mismatch=stored_hash_mismatch[:limit],
    )


__all__ = [
    "DEFAULT_COMPARE_SOURCE",
    "DEFAULT_SAMPLE_SIZE",
    "MAX_SAMPLE_SIZE",
    "CompareRow",
    "clamp_sample_size",
    "compare_legacy_and_v2_snapshots",
    "legacy_rows_for_compare",
    "normalize_v2_row_for_compare",
]
