"""
Normalized per-record store (v2).

One row per record, keyed by record id and tagged with the legacy row it was
derived from. Snapshots are written with a single bulk upsert, rows whose
content did not change are left untouched, and rows whose id left the
snapshot are deleted. The caller checks the final row count against the
snapshot inside the same transaction.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from clientrecords.config import RecordsTables
from clientrecords.exceptions import InvalidRecordError
from clientrecords.models import DualWriteSummary, WriteMode
from clientrecords.snapshot import (
    V2Row,
    normalize_legacy_record_to_v2_row,
    normalize_legacy_records_snapshot,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class V2StoredRow:
    """A row as read back from the v2 table."""

    id: str
    record: dict[str, Any]
    record_hash: str
    source_state_updated_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class UpsertOutcome:
    """Ids written by a bulk upsert, split by insert/update."""

    inserted_ids: tuple[str, ...] = ()
    updated_ids: tuple[str, ...] = ()

    @property
    def upserted_count(self) -> int:
        return len(self.inserted_ids) + len(self.updated_ids)


def _decode_record(raw_value: Any) -> dict[str, Any]:
    if raw_value is None:
        return {}
    value = raw_value if isinstance(raw_value, (dict, list)) else json.loads(raw_value)
    return dict(value) if isinstance(value, Mapping) else {}


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _row_payload(row: V2Row) -> dict[str, Any]:
    return {
        "id": row.id,
        "record": row.record,
        "record_hash": row.record_hash,
        "source_state_row_id": row.source_state_row_id,
        "source_state_updated_at": _iso(row.source_state_updated_at),
        "created_at": _iso(row.created_at),
        "write_timestamp": _iso(row.write_timestamp),
    }


class V2RecordStore:
    """
    Reads and writes the v2 table for one legacy source row.

    Args:
        tables: Table locations; ``state_row_id`` selects the source.

    Example:
        >>> store = V2RecordStore(tables)
        >>> async with engine.begin() as conn:
        ...     summary = await store.sync_snapshot(conn, records, write_timestamp=revision)
        ...     assert summary.in_sync
    """

    def __init__(self, tables: RecordsTables) -> None:
        self._tables = tables

    @property
    def tables(self) -> RecordsTables:
        return self._tables

    @property
    def source_state_row_id(self) -> int:
        return self._tables.state_row_id

    async def upsert_rows(self, conn: AsyncConnection, rows: Sequence[V2Row]) -> UpsertOutcome:
        """
        Bulk upsert normalized rows.

        Existing rows are only rewritten when their hash, source or
        ``created_at`` differ, so no-op writes keep their ``updated_at``.

        Args:
            conn: Connection inside a transaction.
            rows: Rows to write.

        Returns:
            The ids that were inserted or changed.
        """
        if not rows:
            return UpsertOutcome()

        result = await conn.execute(
            text(
                f"""
                INSERT INTO {self._tables.v2_table} AS existing (
                    id, record, record_hash, source_state_row_id, source_state_updated_at,
                    created_at, inserted_at, updated_at, write_timestamp
                )
                SELECT
                    r.id,
                    r.record,
                    r.record_hash,
                    r.source_state_row_id,
                    r.source_state_updated_at,
                    r.created_at,
                    COALESCE(r.write_timestamp, NOW()),
                    COALESCE(r.write_timestamp, NOW()),
                    COALESCE(r.write_timestamp, NOW())
                FROM jsonb_to_recordset(CAST(:rows AS jsonb)) AS r(
                    id text,
                    record jsonb,
                    record_hash text,
                    source_state_row_id bigint,
                    source_state_updated_at timestamptz,
                    created_at timestamptz,
                    write_timestamp timestamptz
                )
                ON CONFLICT (id)
                DO UPDATE SET
                    record = EXCLUDED.record,
                    record_hash = EXCLUDED.record_hash,
                    source_state_row_id = EXCLUDED.source_state_row_id,
                    source_state_updated_at = EXCLUDED.source_state_updated_at,
                    created_at = EXCLUDED.created_at,
                    updated_at = EXCLUDED.updated_at,
                    write_timestamp = EXCLUDED.write_timestamp
                WHERE
                    (existing.record_hash, existing.source_state_row_id, existing.created_at)
                    IS DISTINCT FROM
                    (EXCLUDED.record_hash, EXCLUDED.source_state_row_id, EXCLUDED.created_at)
                RETURNING existing.id, (existing.xmax = 0) AS inserted
                """
            ),
            {"rows": json.dumps([_row_payload(row) for row in rows], ensure_ascii=False)},
        )
        inserted: list[str] = []
        updated: list[str] = []
        for row_id, was_inserted in result.fetchall():
            (inserted if was_inserted else updated).append(row_id)
        return UpsertOutcome(inserted_ids=tuple(inserted), updated_ids=tuple(updated))

    async def delete_rows_not_in(self, conn: AsyncConnection, ids: Iterable[str]) -> int:
        """
        Delete this source's rows whose id is not in ``ids``.

        Returns:
            Number of deleted rows.
        """
        id_list = list(ids)
        if id_list:
            result = await conn.execute(
                text(
                    f"""
                    DELETE FROM {self._tables.v2_table}
                    WHERE source_state_row_id = :source_state_row_id
                      AND id <> ALL(CAST(:ids AS text[]))
                    """
                ),
                {"source_state_row_id": self.source_state_row_id, "ids": id_list},
            )
        else:
            result = await conn.execute(
                text(
                    f"DELETE FROM {self._tables.v2_table} "
                    "WHERE source_state_row_id = :source_state_row_id"
                ),
                {"source_state_row_id": self.source_state_row_id},
            )
        return max(result.rowcount or 0, 0)

    async def count_rows(self, conn: AsyncConnection) -> int:
        result = await conn.execute(
            text(
                f"SELECT COUNT(*) FROM {self._tables.v2_table} "
                "WHERE source_state_row_id = :source_state_row_id"
            ),
            {"source_state_row_id": self.source_state_row_id},
        )
        return int(result.scalar() or 0)

    async def sync_snapshot(
        self,
        conn: AsyncConnection,
        records: Iterable[Any] | None,
        *,
        write_timestamp: datetime,
        source_state_updated_at: datetime | None = None,
        mode: WriteMode = "put",
    ) -> DualWriteSummary:
        """
        Make this source's rows mirror a records snapshot.

        Normalizes the snapshot, bulk upserts it, deletes rows for ids no
        longer present, then recounts.

        Args:
            conn: Connection inside a transaction holding the writer lock.
            records: The full records array.
            write_timestamp: Wall clock of the write.
            source_state_updated_at: Legacy revision the snapshot belongs to
                (defaults to ``write_timestamp``).
            mode: ``put`` or ``patch``, for the summary.

        Returns:
            DualWriteSummary; the caller must check ``in_sync``.
        """
        snapshot = normalize_legacy_records_snapshot(
            records,
            source_state_row_id=self.source_state_row_id,
            source_state_updated_at=source_state_updated_at or write_timestamp,
            write_timestamp=write_timestamp,
        )
        summary = DualWriteSummary(
            mode=mode,
            expected_count=snapshot.expected_count,
            skipped_invalid_record_count=snapshot.skipped_invalid_record_count,
            skipped_missing_id_count=snapshot.skipped_missing_id_count,
            duplicate_id_count=snapshot.duplicate_id_count,
            checksum=snapshot.checksum,
        )

        outcome = await self.upsert_rows(conn, snapshot.rows)
        summary.upserted_count = outcome.upserted_count
        summary.deleted_count = await self.delete_rows_not_in(conn, snapshot.ids)
        summary.v2_count = await self.count_rows(conn)
        summary.in_sync = summary.v2_count == summary.expected_count

        logger.debug(
            "Synchronized v2 snapshot: table=%s, mode=%s, expected=%d, upserted=%d, deleted=%d, v2_count=%d",
            self._tables.v2_table,
            mode,
            summary.expected_count,
            summary.upserted_count,
            summary.deleted_count,
            summary.v2_count,
        )
        return summary

    async def list_rows(self, conn: AsyncConnection) -> list[V2StoredRow]:
        """All rows for this source, ordered by id."""
        result = await conn.execute(
            text(
                f"""
                SELECT id, record, record_hash, source_state_updated_at, updated_at
                FROM {self._tables.v2_table}
                WHERE source_state_row_id = :source_state_row_id
                ORDER BY id ASC
                """
            ),
            {"source_state_row_id": self.source_state_row_id},
        )
        return [
            V2StoredRow(
                id=row[0],
                record=_decode_record(row[1]),
                record_hash=row[2] or "",
                source_state_updated_at=row[3],
                updated_at=row[4],
            )
            for row in result.fetchall()
        ]

    async def list_records(self, conn: AsyncConnection) -> list[dict[str, Any]]:
        """
        All record documents for this source, ordered by id.

        Documents always carry their row id under ``id``.
        """
        result = await conn.execute(
            text(
                f"""
                SELECT id, record
                FROM {self._tables.v2_table}
                WHERE source_state_row_id = :source_state_row_id
                ORDER BY id ASC
                """
            ),
            {"source_state_row_id": self.source_state_row_id},
        )
        records: list[dict[str, Any]] = []
        for row_id, raw_record in result.fetchall():
            record = _decode_record(raw_record)
            record["id"] = row_id
            records.append(record)
        return records

    async def upsert_record(
        self,
        conn: AsyncConnection,
        record: Mapping[str, Any],
        *,
        write_timestamp: datetime,
    ) -> V2Row:
        """
        Insert or update a single record.

        Args:
            conn: Connection inside a transaction holding the writer lock.
            record: The raw record.
            write_timestamp: Wall clock of the write, also used as the row's
                ``source_state_updated_at``.

        Returns:
            The normalized row that was written.

        Raises:
            InvalidRecordError: If the record has no usable id.
        """
        row = normalize_legacy_record_to_v2_row(
            record,
            source_state_row_id=self.source_state_row_id,
            source_state_updated_at=write_timestamp,
            write_timestamp=write_timestamp,
        )
        if row is None:
            raise InvalidRecordError()
        await self.upsert_rows(conn, [row])
        return row


__all__ = [
    "UpsertOutcome",
    "V2RecordStore",
    "V2StoredRow",
]
