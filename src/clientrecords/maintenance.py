"""
Operational tasks: backfilling v2 from legacy and verifying the two agree.

Both tasks work on one legacy source row at a time. The backfill takes the
same writer lock as the repository, so it can run while the application is
serving writes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from clientrecords.compare import (
    compare_legacy_and_v2_snapshots,
    clamp_sample_size,
    legacy_rows_for_compare,
    normalize_v2_row_for_compare,
)
from clientrecords.config import RecordsTables
from clientrecords.models import DualReadCompareSummary
from clientrecords.revision import format_api_timestamp, utc_now_ms
from clientrecords.snapshot import normalize_legacy_records_snapshot
from clientrecords.stores.legacy import LegacyStateStore
from clientrecords.stores.schema import UpdatedAtModeProbe, ensure_records_schema
from clientrecords.stores.v2 import V2RecordStore

logger = logging.getLogger(__name__)

DEFAULT_BACKFILL_BATCH_SIZE = 300
VERIFY_DEFAULT_MAX_DIFF_ITEMS = 50
VERIFY_MAX_DIFF_ITEMS = 500


@dataclass(frozen=True)
class BackfillReport:
    """Outcome of a backfill run."""

    dry_run: bool
    delete_missing: bool
    source_row_id: int
    batch_size: int
    batch_count: int
    source_state_updated_at: str | None
    legacy_record_count_raw: int
    legacy_record_count_normalized: int
    v2_record_count: int
    inserted_count: int
    updated_count: int
    unchanged_count: int
    deleted_count: int
    skipped_invalid_record_count: int
    skipped_missing_id_count: int
    duplicate_id_count: int
    legacy_checksum: str
    table: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "ok": True,
            "dry_run": self.dry_run,
            "delete_missing": self.delete_missing,
            "source_row_id": self.source_row_id,
            "batch_size": self.batch_size,
            "batch_count": self.batch_count,
            "source_state_updated_at": self.source_state_updated_at,
            "legacy_record_count_raw": self.legacy_record_count_raw,
            "legacy_record_count_normalized": self.legacy_record_count_normalized,
            "v2_record_count": self.v2_record_count,
            "inserted_count": self.inserted_count,
            "updated_count": self.updated_count,
            "unchanged_count": self.unchanged_count,
            "deleted_count": self.deleted_count,
            "skipped_invalid_record_count": self.skipped_invalid_record_count,
            "skipped_missing_id_count": self.skipped_missing_id_count,
            "duplicate_id_count": self.duplicate_id_count,
            "legacy_checksum": self.legacy_checksum,
            "table": self.table,
        }


async def backfill_records_to_v2(
    engine: AsyncEngine,
    tables: RecordsTables,
    *,
    dry_run: bool = False,
    delete_missing: bool = True,
    batch_size: int = DEFAULT_BACKFILL_BATCH_SIZE,
) -> BackfillReport:
    """
    Copy the legacy snapshot of ``tables.state_row_id`` into v2.

    Runs in one transaction holding the writer lock, upserting the rows in
    slices of ``batch_size``. Unchanged rows are not rewritten. With
    ``dry_run`` the transaction is rolled back after the counts are taken.

    Args:
        engine: Database engine.
        tables: Table locations and source row.
        dry_run: Roll back instead of committing.
        delete_missing: Delete v2 rows whose id is not in the snapshot.
        batch_size: Rows per upsert statement.

    Returns:
        BackfillReport with per-row outcome counts.

    Raises:
        ValueError: If ``batch_size`` is less than 1.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be a positive integer, got {batch_size}")

    legacy_store = LegacyStateStore(tables, UpdatedAtModeProbe(tables))
    v2_store = V2RecordStore(tables)

    async with engine.connect() as conn:
        transaction = await conn.begin()
        try:
            await ensure_records_schema(conn, tables)
            state = await legacy_store.lock_revision(conn, include_records=True)
            snapshot = normalize_legacy_records_snapshot(
                state.records,
                source_state_row_id=tables.state_row_id,
                source_state_updated_at=state.updated_at,
                write_timestamp=utc_now_ms(),
            )

            inserted_ids: list[str] = []
            updated_ids: list[str] = []
            batch_count = 0
            for offset in range(0, len(snapshot.rows), batch_size):
                batch = snapshot.rows[offset : offset + batch_size]
                outcome = await v2_store.upsert_rows(conn, batch)
                inserted_ids.extend(outcome.inserted_ids)
                updated_ids.extend(outcome.updated_ids)
                batch_count += 1
                logger.debug(
                    "Backfill batch %d: %d rows, inserted=%d, updated=%d",
                    batch_count,
                    len(batch),
                    len(outcome.inserted_ids),
                    len(outcome.updated_ids),
                )
            deleted_count = 0
            if delete_missing:
                deleted_count = await v2_store.delete_rows_not_in(conn, snapshot.ids)
            v2_count = await v2_store.count_rows(conn)
        except Exception:
            await transaction.rollback()
            raise

        if dry_run:
            await transaction.rollback()
        else:
            await transaction.commit()

    report = BackfillReport(
        dry_run=dry_run,
        delete_missing=delete_missing,
        source_row_id=tables.state_row_id,
        batch_size=batch_size,
        batch_count=batch_count,
        source_state_updated_at=state.api_updated_at,
        legacy_record_count_raw=len(state.records),
        legacy_record_count_normalized=snapshot.expected_count,
        v2_record_count=v2_count,
        inserted_count=len(inserted_ids),
        updated_count=len(updated_ids),
        unchanged_count=snapshot.expected_count - len(inserted_ids) - len(updated_ids),
        deleted_count=deleted_count,
        skipped_invalid_record_count=snapshot.skipped_invalid_record_count,
        skipped_missing_id_count=snapshot.skipped_missing_id_count,
        duplicate_id_count=snapshot.duplicate_id_count,
        legacy_checksum=snapshot.checksum,
        table=tables.v2_table,
    )
    logger.info(
        "Backfilled %s from %s row %d: inserted=%d, updated=%d, unchanged=%d, deleted=%d, dry_run=%s",
        tables.v2_table,
        tables.state_table,
        tables.state_row_id,
        report.inserted_count,
        report.updated_count,
        report.unchanged_count,
        report.deleted_count,
        dry_run,
    )
    return report


async def verify_records_v2(
    engine: AsyncEngine,
    tables: RecordsTables,
    *,
    max_diff_items: int = VERIFY_DEFAULT_MAX_DIFF_ITEMS,
) -> DualReadCompareSummary:
    """
    Compare the legacy snapshot of ``tables.state_row_id`` with v2.

    Both sides are read in one repeatable-read transaction so they come from
    the same database snapshot.

    Args:
        engine: Database engine.
        tables: Table locations and source row.
        max_diff_items: Ids listed per difference category (1..500).

    Returns:
        The compare summary; ``mismatch_detected`` tells whether they differ.
    """
    legacy_store = LegacyStateStore(tables, UpdatedAtModeProbe(tables))
    v2_store = V2RecordStore(tables)

    async with engine.connect() as conn:
        await conn.execution_options(isolation_level="REPEATABLE READ")
        async with conn.begin():
            state = await legacy_store.read_state(conn)
            stored_rows = await v2_store.list_rows(conn)

    records = state.records if state is not None else []
    snapshot = normalize_legacy_records_snapshot(
        records,
        source_state_row_id=tables.state_row_id,
        source_state_updated_at=state.updated_at if state is not None else None,
    )
    v2_rows = [
        compare_row
        for compare_row in (normalize_v2_row_for_compare(row) for row in stored_rows)
        if compare_row is not None
    ]
    summary = compare_legacy_and_v2_snapshots(
        legacy_rows_for_compare(snapshot.rows),
        v2_rows,
        source="verify",
        sample_size=clamp_sample_size(
            max_diff_items,
            default=VERIFY_DEFAULT_MAX_DIFF_ITEMS,
            maximum=VERIFY_MAX_DIFF_ITEMS,
        ),
    )
    logger.info(
        "Verified %s against %s row %d (revision %s): ok=%s",
        tables.v2_table,
        tables.state_table,
        tables.state_row_id,
        format_api_timestamp(state.updated_at) if state is not None else None,
        not summary.mismatch_detected,
    )
    return summary


__all__ = [
    "DEFAULT_BACKFILL_BATCH_SIZE",
    "VERIFY_DEFAULT_MAX_DIFF_ITEMS",
    "VERIFY_MAX_DIFF_ITEMS",
    "BackfillReport",
    "backfill_records_to_v2",
    "verify_records_v2",
]
