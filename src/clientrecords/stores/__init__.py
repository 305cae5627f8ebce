"""
Storage layer for client records.

- LegacyStateStore: the single-row JSONB array with its revision
- V2RecordStore: one normalized row per record
- UpdatedAtModeProbe / ensure_records_schema: schema probing and bootstrap
"""

from clientrecords.stores.legacy import LegacyState, LegacyStateStore, writer_lock_id
from clientrecords.stores.schema import (
    UpdatedAtMode,
    UpdatedAtModeProbe,
    build_safe_index_name,
    ensure_records_schema,
    parse_qualified_table_name,
)
from clientrecords.stores.v2 import UpsertOutcome, V2RecordStore, V2StoredRow

__all__ = [
    "LegacyState",
    "LegacyStateStore",
    "UpdatedAtMode",
    "UpdatedAtModeProbe",
    "UpsertOutcome",
    "V2RecordStore",
    "V2StoredRow",
    "build_safe_index_name",
    "ensure_records_schema",
    "parse_qualified_table_name",
    "writer_lock_id",
]
