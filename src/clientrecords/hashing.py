"""
Content hashing for client records.

Record hashes are SHA-256 digests of a canonical JSON rendering (sorted keys,
no whitespace), so two documents with the same content always hash the same
regardless of key order. Row-set checksums fold ``id:hash`` pairs in id order
and give an O(1) "are these identical" signal for reconciliation.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping
from typing import Any

MAX_ID_LENGTH = 180


def sanitize_text_value(value: Any, max_length: int = 4000) -> str:
    """Render a value as trimmed text, truncated to ``max_length``."""
    if value is None:
        return ""
    return str(value).strip()[:max_length]


def stable_stringify(value: Any) -> str:
    """
    Render a value as canonical JSON.

    Args:
        value: JSON-compatible value.

    Returns:
        JSON text with sorted object keys and no insignificant whitespace.
    """
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
        default=str,
    )


def compute_record_hash(record: Any) -> str:
    """SHA-256 hex digest of the canonical JSON of ``record``."""
    return hashlib.sha256(stable_stringify(record).encode("utf-8")).hexdigest()


def _row_field(row: Any, name: str) -> Any:
    if isinstance(row, Mapping):
        return row.get(name)
    return getattr(row, name, None)


def compute_rows_checksum(rows: Iterable[Any]) -> str:
    """
    Compute a checksum over a set of rows.

    Rows may be mappings or objects exposing ``id`` and ``record_hash`` (or
    ``record``, which is hashed on the fly). Rows are sorted by id, rows
    without an id are skipped.

    Args:
        rows: The rows to fold.

    Returns:
        SHA-256 hex digest.
    """
    keyed: list[tuple[str, str]] = []
    for row in rows:
        row_id = sanitize_text_value(_row_field(row, "id"), MAX_ID_LENGTH)
        if not row_id:
            continue
        record_hash = sanitize_text_value(_row_field(row, "record_hash"), 64)
        if not record_hash:
            record_hash = compute_record_hash(_row_field(row, "record") or {})
        keyed.append((row_id, record_hash))

    keyed.sort(key=lambda item: item[0])
    digest = hashlib.sha256()
    for row_id, record_hash in keyed:
        digest.update(f"{row_id}:{record_hash}\n".encode())
    return digest.hexdigest()


__all__ = [
    "MAX_ID_LENGTH",
    "compute_record_hash",
    "compute_rows_checksum",
    "sanitize_text_value",
    "stable_stringify",
]
