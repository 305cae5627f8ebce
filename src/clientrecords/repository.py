"""
Records repository: the single entry point for reading and writing records.

Writes go to whichever store the migration phase makes authoritative:

- LEGACY_ONLY / SHADOW_WRITE_V2: the legacy row is primary. In
  SHADOW_WRITE_V2 the v2 table is synchronized in the same transaction and a
  row-count mismatch rolls the whole write back.
- CUTOVER_V2 / CUTOVER_V2_WITH_MIRROR: the v2 table is primary and the
  legacy row only carries the revision. With the mirror enabled the records
  are also copied into legacy inside a savepoint; a failed mirror is logged
  and never fails the write.

Every write is gated on the caller's ``expected_updated_at``. Writers take
the row's advisory lock and ``FOR UPDATE`` lock before comparing revisions,
so of two writers holding the same revision exactly one succeeds.

Example:
    >>> settings = RecordsSettings.from_env()
    >>> database = RecordsDatabase.from_settings(settings, bootstrap_schema=True)
    >>> repo = RecordsRepository(database, settings)
    >>> state = await repo.get_stored_records()
    >>> revision = await repo.save_stored_records(
    ...     [*state.records, {"id": "r-1", "clientName": "Acme"}],
    ...     expected_updated_at=state.updated_at,
    ... )
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from clientrecords.compare import (
    DEFAULT_COMPARE_SOURCE,
    clamp_sample_size,
    compare_legacy_and_v2_snapshots,
    legacy_rows_for_compare,
    normalize_v2_row_for_compare,
)
from clientrecords.config import MigrationPhase, RecordsMode, RecordsSettings
from clientrecords.database import RecordsDatabase, execute_with_connection
from clientrecords.exceptions import (
    DualWriteDesyncError,
    DualWriteFailedError,
    InvalidExpectedUpdatedAtError,
    PreconditionRequiredError,
    RecordsConflictError,
    database_error_code,
)
from clientrecords.hashing import sanitize_text_value
from clientrecords.metrics import RecordsMetrics
from clientrecords.models import (
    DualReadCompareSummary,
    DualWriteSummary,
    MirrorResult,
    PatchResult,
    RecordsState,
    WriteMode,
)
from clientrecords.observability import (
    ATTR_DB_SYSTEM,
    ATTR_MIGRATION_PHASE,
    ATTR_PATCH_OPERATION_COUNT,
    ATTR_READ_SOURCE,
    ATTR_RECORD_COUNT,
    ATTR_REQUEST_SOURCE,
    ATTR_STATE_ROW_ID,
    ATTR_WRITE_MODE,
    Tracer,
    create_tracer,
)
from clientrecords.patch import apply_records_patch_operations, parse_patch_operations
from clientrecords.revision import (
    format_api_timestamp,
    is_record_state_revision_match,
    next_revision,
    normalize_record_state_timestamp,
    resolve_latest_revision,
    timestamp_from_ms,
    utc_now_ms,
)
from clientrecords.snapshot import V2Row, normalize_legacy_records_snapshot
from clientrecords.stores.legacy import LegacyState, LegacyStateStore
from clientrecords.stores.schema import UpdatedAtModeProbe
from clientrecords.stores.v2 import V2RecordStore

logger = logging.getLogger(__name__)

ConnectionLike = AsyncConnection | AsyncEngine


def _write_timestamp(raw_value: Any) -> datetime:
    epoch_ms = normalize_record_state_timestamp(raw_value)
    if epoch_ms is None:
        return utc_now_ms()
    return timestamp_from_ms(epoch_ms)


def _validate_expected_updated_at(options: Mapping[str, Any]) -> Any:
    if "expected_updated_at" not in options:
        raise PreconditionRequiredError()
    expected = options["expected_updated_at"]
    if expected is not None and expected != "" and normalize_record_state_timestamp(expected) is None:
        raise InvalidExpectedUpdatedAtError()
    return expected


def _check_revision(expected: Any, state: LegacyState) -> None:
    if not is_record_state_revision_match(expected, state.updated_at):
        raise RecordsConflictError(state.api_updated_at)


class RecordsRepository:
    """
    Reads and writes client records across the legacy and v2 stores.

    Args:
        database: Engine holder.
        settings: Tables and migration flags (defaults to the environment).
        metrics: Counters (a fresh RecordsMetrics by default).
        tracer: Tracer for spans; created from ``enable_tracing`` if omitted.
        enable_tracing: Whether to create OpenTelemetry spans.
        legacy_store: Override for the legacy store.
        v2_store: Override for the v2 store.
    """

    def __init__(
        self,
        database: RecordsDatabase,
        settings: RecordsSettings | None = None,
        *,
        metrics: RecordsMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        legacy_store: LegacyStateStore | None = None,
        v2_store: V2RecordStore | None = None,
    ) -> None:
        self._database = database
        self._settings = settings or RecordsSettings.from_env()
        self._metrics = metrics or RecordsMetrics()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        tables = self._settings.tables
        self._legacy = legacy_store or LegacyStateStore(tables, UpdatedAtModeProbe(tables))
        self._v2 = v2_store or V2RecordStore(tables)
        self._background_tasks: set[asyncio.Task[Any]] = set()

    @property
    def mode(self) -> RecordsMode:
        return self._settings.mode

    @property
    def phase(self) -> MigrationPhase:
        return self._settings.mode.phase

    @property
    def metrics(self) -> RecordsMetrics:
        return self._metrics

    @property
    def legacy_store(self) -> LegacyStateStore:
        return self._legacy

    @property
    def v2_store(self) -> V2RecordStore:
        return self._v2

    def reset_updated_at_mode(self) -> None:
        """Forget the probed legacy ``updated_at`` type (e.g. after a schema change)."""
        self._legacy.probe.reset()

    def _span_attributes(self, **extra: Any) -> dict[str, Any]:
        attributes: dict[str, Any] = {
            ATTR_DB_SYSTEM: "postgresql",
            ATTR_MIGRATION_PHASE: self.phase.value,
            ATTR_STATE_ROW_ID: self._settings.tables.state_row_id,
        }
        attributes.update(extra)
        return attributes

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_stored_records(self) -> RecordsState:
        """
        Read the records array from the legacy row.

        Returns:
            RecordsState in stored order; empty with ``updated_at=None`` when
            nothing has been written yet.
        """
        with self._tracer.span(
            "clientrecords.repository.get",
            self._span_attributes(**{ATTR_READ_SOURCE: "legacy"}),
        ):
            async with self._database.connect() as conn:
                state = await self._legacy.read_state(conn)
            if state is None:
                return RecordsState()
            return RecordsState(records=state.records, updated_at=state.api_updated_at)

    async def get_stored_records_from_v2(self) -> RecordsState:
        """
        Read the records from the v2 table, ordered by id.

        The revision is the latest of every row's ``source_state_updated_at``
        and ``updated_at`` and the legacy revision.
        """
        with self._tracer.span(
            "clientrecords.repository.get",
            self._span_attributes(**{ATTR_READ_SOURCE: "v2"}),
        ):
            async with self._database.connect() as conn:
                rows = await self._v2.list_rows(conn)
                legacy_revision = await self._legacy.read_revision(conn)

            records: list[dict[str, Any]] = []
            candidates: list[Any] = []
            for row in rows:
                record = dict(row.record)
                record["id"] = row.id
                records.append(record)
                candidates.extend((row.source_state_updated_at, row.updated_at))
            candidates.append(legacy_revision)
            return RecordsState(
                records=records,
                updated_at=resolve_latest_revision(candidates),
                source="v2",
            )

    async def get_stored_records_head_revision(self) -> str | None:
        """Current legacy revision in API format, or None."""
        async with self._database.connect() as conn:
            return format_api_timestamp(await self._legacy.read_revision(conn))

    async def get_stored_records_for_api(
        self,
        *,
        requested_by: str | None = None,
        source: str = DEFAULT_COMPARE_SOURCE,
    ) -> RecordsState:
        """
        Read records the way the API serves them.

        With ``read_v2`` the v2 table is served, falling back to legacy when
        the v2 read fails. Otherwise legacy is served and, with
        ``dual_read_compare``, an audit against v2 is scheduled in the
        background.

        Args:
            requested_by: Caller identity, for audit logs.
            source: Label of the read path, for audit logs.
        """
        if self.mode.serve_reads_from_v2:
            try:
                return await self.get_stored_records_from_v2()
            except Exception as e:
                logger.warning(
                    "Serving records from legacy after v2 read failed (phase=%s, code=%s): %s",
                    self.phase.value,
                    database_error_code(e) or "no_code",
                    sanitize_text_value(e, 320) or "unknown error",
                )
            if self.phase is MigrationPhase.CUTOVER_V2:
                # Legacy records stop being written at cutover.
                logger.warning(
                    "Legacy records are not mirrored in phase %s; the fallback may serve "
                    "stale or empty records under the current revision",
                    self.phase.value,
                )
            state = await self.get_stored_records()
            state.fallback_from_v2 = True
            return state

        state = await self.get_stored_records()
        if self.mode.audit_reads:
            self.schedule_dual_read_compare(state.records, source=source, requested_by=requested_by)
        return state

    # =========================================================================
    # Writes
    # =========================================================================

    async def save_stored_records(self, records: Sequence[Mapping[str, Any]], **options: Any) -> str | None:
        """
        Replace the whole records array.

        Args:
            records: The new records array.
            **options: Must include ``expected_updated_at`` (None means "no
                prior state").

        Returns:
            The new revision in API format.

        Raises:
            PreconditionRequiredError: If ``expected_updated_at`` is absent.
            InvalidExpectedUpdatedAtError: If it is not a valid revision.
            RecordsConflictError: If it is stale.
            DualWriteDesyncError: If v2 does not match after the sync.
            DualWriteFailedError: If the shadow v2 sync raised.
        """
        expected = _validate_expected_updated_at(options)
        record_list = [dict(record) if isinstance(record, Mapping) else record for record in records]

        with self._tracer.span(
            "clientrecords.repository.save",
            self._span_attributes(**{ATTR_WRITE_MODE: "put", ATTR_RECORD_COUNT: len(record_list)}),
        ):
            if self.phase.writes_v2_primary:
                return await self.save_stored_records_using_v2(record_list, expected_updated_at=expected)

            async with self._database.transaction() as conn:
                state = await self._legacy.lock_revision(conn, include_records=False)
                _check_revision(expected, state)
                revision = next_revision(state.updated_at)
                updated_at = await self._legacy.write_records(conn, record_list, revision)
                await self._apply_shadow_write(conn, record_list, mode="put", revision=revision)
                return updated_at

    async def save_stored_records_patch(
        self,
        operations: Iterable[Any] | None,
        **options: Any,
    ) -> PatchResult:
        """
        Apply upsert/delete operations to the records array.

        An empty operation list writes nothing and returns the current
        revision, after the revision check.

        Args:
            operations: Raw operation mappings or parsed operations.
            **options: Must include ``expected_updated_at``.

        Returns:
            PatchResult with the resulting revision.

        Raises:
            InvalidPatchOperationError: If an operation is malformed.
            (plus everything save_stored_records raises)
        """
        expected = _validate_expected_updated_at(options)
        parsed = parse_patch_operations(operations or [])

        with self._tracer.span(
            "clientrecords.repository.save_patch",
            self._span_attributes(**{ATTR_WRITE_MODE: "patch", ATTR_PATCH_OPERATION_COUNT: len(parsed)}),
        ):
            if self.phase.writes_v2_primary:
                return await self.save_stored_records_patch_using_v2(parsed, expected_updated_at=expected)

            async with self._database.transaction() as conn:
                state = await self._legacy.lock_revision(conn, include_records=True)
                _check_revision(expected, state)
                if not parsed:
                    return PatchResult(updated_at=state.api_updated_at)

                revision = next_revision(state.updated_at)
                next_records = apply_records_patch_operations(state.records, parsed, now=revision)
                updated_at = await self._legacy.write_records(conn, next_records, revision)
                await self._apply_shadow_write(conn, next_records, mode="patch", revision=revision)
                return PatchResult(updated_at=updated_at)

    async def save_stored_records_using_v2(
        self,
        records: Sequence[Mapping[str, Any]],
        **options: Any,
    ) -> str | None:
        """
        Replace the records with v2 as the primary store.

        Args:
            records: The new records array.
            **options: Must include ``expected_updated_at``.

        Returns:
            The new revision in API format.
        """
        expected = _validate_expected_updated_at(options)
        record_list = [dict(record) if isinstance(record, Mapping) else record for record in records]

        async with self._database.transaction() as conn:
            state = await self._legacy.lock_revision(conn, include_records=False)
            _check_revision(expected, state)
            revision = next_revision(state.updated_at)
            return await self._write_v2_primary(conn, record_list, mode="put", revision=revision)

    async def save_stored_records_patch_using_v2(
        self,
        operations: Iterable[Any] | None,
        **options: Any,
    ) -> PatchResult:
        """
        Patch the records with v2 as the primary store.

        The current set is materialized from v2 in id order before the
        operations are applied.
        """
        expected = _validate_expected_updated_at(options)
        parsed = parse_patch_operations(operations or [])

        async with self._database.transaction() as conn:
            state = await self._legacy.lock_revision(conn, include_records=False)
            _check_revision(expected, state)
            if not parsed:
                return PatchResult(updated_at=state.api_updated_at)

            current_records = await self._v2.list_records(conn)
            revision = next_revision(state.updated_at)
            next_records = apply_records_patch_operations(current_records, parsed, now=revision)
            updated_at = await self._write_v2_primary(conn, next_records, mode="patch", revision=revision)
            return PatchResult(updated_at=updated_at)

    async def _write_v2_primary(
        self,
        conn: AsyncConnection,
        records: list[dict[str, Any]],
        *,
        mode: WriteMode,
        revision: datetime,
    ) -> str | None:
        self._metrics.record_dual_write_attempt(mode)
        summary = await self._v2.sync_snapshot(
            conn,
            records,
            write_timestamp=revision,
            source_state_updated_at=revision,
            mode=mode,
        )
        self._raise_if_desynced(summary)
        self._metrics.record_dual_write_success(mode)

        updated_at = await self._legacy.write_revision_pointer(conn, revision)
        if self.mode.mirror_to_legacy:
            await self.mirror_legacy_state_records_best_effort(conn, records, revision, mode=mode)
        return updated_at

    async def _apply_shadow_write(
        self,
        conn: AsyncConnection,
        records: list[dict[str, Any]],
        *,
        mode: WriteMode,
        revision: datetime,
    ) -> DualWriteSummary | None:
        if self.phase is not MigrationPhase.SHADOW_WRITE_V2:
            return None

        self._metrics.record_dual_write_attempt(mode)
        try:
            summary = await self._v2.sync_snapshot(
                conn,
                records,
                write_timestamp=revision,
                source_state_updated_at=revision,
                mode=mode,
            )
        except Exception as e:
            failure = DualWriteSummary(
                mode=mode,
                expected_count=len(records),
                error_code=database_error_code(e) or None,
                error_message=sanitize_text_value(e, 320) or None,
            )
            self._metrics.record_dual_write_failure(mode, failure.error_code or "")
            error = DualWriteFailedError(summary=failure.to_dict())
            logger.log(
                error.severity.log_level,
                "Dual-write to v2 failed (mode=%s, code=%s): %s",
                mode,
                failure.error_code or "no_code",
                failure.error_message or "unknown error",
                extra={"summary": error.summary, "recoverability": error.recoverability.value},
            )
            raise error from e

        self._raise_if_desynced(summary)
        self._metrics.record_dual_write_success(mode)
        return summary

    def _raise_if_desynced(self, summary: DualWriteSummary) -> None:
        if summary.in_sync:
            return
        self._metrics.record_dual_write_failure(summary.mode, DualWriteDesyncError.code)
        error = DualWriteDesyncError(summary=summary.to_dict())
        logger.log(
            error.severity.log_level,
            "Dual-write desync (mode=%s): expected %d v2 rows, found %d",
            summary.mode,
            summary.expected_count,
            summary.v2_count,
            extra={"summary": error.summary, "recoverability": error.recoverability.value},
        )
        raise error

    # =========================================================================
    # Connection-scoped building blocks
    # =========================================================================

    async def mirror_legacy_state_records_best_effort(
        self,
        conn: AsyncConnection,
        records: Sequence[Mapping[str, Any]],
        updated_at: Any,
        *,
        mode: WriteMode = "put",
    ) -> MirrorResult:
        """
        Copy the records into the legacy row inside a savepoint.

        A failure rolls back to the savepoint, is logged and counted, and
        leaves the enclosing transaction usable.

        Args:
            conn: Connection inside a transaction.
            records: Records to mirror.
            updated_at: Revision to store with them.
            mode: ``put`` or ``patch``, for logs and metrics.
        """
        try:
            async with conn.begin_nested():
                await self._legacy.write_records(conn, records, _write_timestamp(updated_at))
        except Exception as e:
            error_code = database_error_code(e) or None
            self._metrics.record_legacy_mirror_failure(mode, error_code or "")
            logger.warning(
                "Legacy mirror write skipped after v2 %s (code=%s): %s",
                mode,
                error_code or "no_code",
                sanitize_text_value(e, 320) or "unknown error",
            )
            return MirrorResult(mirrored=False, error_code=error_code)
        return MirrorResult(mirrored=True)

    async def sync_legacy_records_snapshot_to_v2(
        self,
        conn: ConnectionLike,
        records: Iterable[Any] | None,
        *,
        write_timestamp: Any = None,
        source_state_updated_at: Any = None,
        mode: WriteMode = "put",
    ) -> DualWriteSummary:
        """
        Synchronize v2 with a snapshot on the caller's connection.

        The caller is responsible for holding the writer lock and checking
        ``in_sync``.
        """
        timestamp = _write_timestamp(write_timestamp)
        source_updated_at = (
            _write_timestamp(source_state_updated_at) if source_state_updated_at is not None else timestamp
        )
        async with execute_with_connection(conn) as connection:
            return await self._v2.sync_snapshot(
                connection,
                records,
                write_timestamp=timestamp,
                source_state_updated_at=source_updated_at,
                mode=mode,
            )

    async def list_current_records_from_v2_for_write(self, conn: ConnectionLike) -> list[dict[str, Any]]:
        """Current v2 records for the source, ordered by id."""
        async with execute_with_connection(conn) as connection:
            return await self._v2.list_records(connection)

    async def upsert_legacy_state_revision_pointer(
        self,
        conn: ConnectionLike,
        updated_at: Any = None,
    ) -> str | None:
        """Set the legacy revision (now when ``updated_at`` is None)."""
        async with execute_with_connection(conn) as connection:
            return await self._legacy.write_revision_pointer(connection, _write_timestamp(updated_at))

    async def prepend_single_record_to_legacy_state(
        self,
        conn: ConnectionLike,
        record: Mapping[str, Any],
        *,
        write_timestamp: Any = None,
    ) -> str | None:
        """Put one record at the front of the legacy array and advance the revision."""
        async with execute_with_connection(conn) as connection:
            return await self._legacy.prepend_record(connection, record, _write_timestamp(write_timestamp))

    async def upsert_single_record_to_v2(
        self,
        conn: ConnectionLike,
        record: Mapping[str, Any],
        *,
        write_timestamp: Any = None,
    ) -> V2Row:
        """
        Insert or update one v2 row.

        Raises:
            InvalidRecordError: If the record has no usable id.
        """
        async with execute_with_connection(conn) as connection:
            return await self._v2.upsert_record(
                connection, record, write_timestamp=_write_timestamp(write_timestamp)
            )

    # =========================================================================
    # Dual-read compare
    # =========================================================================

    async def run_dual_read_compare_for_legacy_records(
        self,
        records: Iterable[Any] | None,
        *,
        source: str = DEFAULT_COMPARE_SOURCE,
        requested_by: str | None = None,
    ) -> DualReadCompareSummary | None:
        """
        Audit a legacy read against the v2 table.

        Never raises: failures are logged and counted.

        Args:
            records: The records array that was served from legacy.
            source: Label of the read path.
            requested_by: Caller identity.

        Returns:
            The summary, or None when auditing is off or the compare failed.
        """
        if not self.mode.audit_reads or not self._database.configured:
            return None

        source_label = sanitize_text_value(source, 80) or DEFAULT_COMPARE_SOURCE
        self._metrics.record_dual_read_compare_attempt(source_label)
        try:
            with self._tracer.span(
                "clientrecords.repository.dual_read_compare",
                self._span_attributes(**{ATTR_REQUEST_SOURCE: source_label}),
            ):
                snapshot = normalize_legacy_records_snapshot(
                    records,
                    source_state_row_id=self._settings.tables.state_row_id,
                )
                async with self._database.connect() as conn:
                    stored_rows = await self._v2.list_rows(conn)
                v2_rows = [
                    compare_row
                    for compare_row in (normalize_v2_row_for_compare(row) for row in stored_rows)
                    if compare_row is not None
                ]
                summary = compare_legacy_and_v2_snapshots(
                    legacy_rows_for_compare(snapshot.rows),
                    v2_rows,
                    source=source_label,
                    sample_size=clamp_sample_size(self._settings.compare_sample_size),
                    requested_by=requested_by or "",
                )
        except Exception as e:
            self._metrics.record_dual_read_compare_failure(source_label)
            logger.warning(
                "Dual-read compare failed for %s (code=%s): %s",
                source_label,
                database_error_code(e) or "no_code",
                sanitize_text_value(e, 320) or "unknown error",
            )
            return None

        requester = sanitize_text_value(requested_by, 180) or "anonymous"
        if summary.mismatch_detected:
            self._metrics.record_dual_read_compare_mismatch(source_label)
            logger.warning(
                "Dual-read compare mismatch for %s (requested_by=%s): "
                "legacy=%d, v2=%d, missing=%d, extra=%d, hash_mismatch=%d",
                source_label,
                requester,
                summary.legacy_count,
                summary.v2_count,
                summary.missing_in_v2_count,
                summary.extra_in_v2_count,
                summary.hash_mismatch_count,
                extra={"summary": summary.to_dict()},
            )
        else:
            self._metrics.record_dual_read_compare_success(source_label)
            logger.debug(
                "Dual-read compare matched for %s (requested_by=%s): %d records",
                source_label,
                requester,
                summary.legacy_count,
            )
        return summary

    def schedule_dual_read_compare(
        self,
        records: Iterable[Any] | None,
        *,
        source: str = DEFAULT_COMPARE_SOURCE,
        requested_by: str | None = None,
    ) -> asyncio.Task[DualReadCompareSummary | None] | None:
        """
        Run the dual-read compare in the background.

        The repository keeps a reference to the task until it completes.

        Returns:
            The task, or None when auditing is off.
        """
        if not self.mode.audit_reads:
            return None
        snapshot = [dict(record) if isinstance(record, Mapping) else record for record in records or []]
        task = asyncio.create_task(
            self.run_dual_read_compare_for_legacy_records(
                snapshot, source=source, requested_by=requested_by
            )
        )
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def drain_background_tasks(self) -> None:
        """Wait for every scheduled background compare to finish."""
        while self._background_tasks:
            pending = list(self._background_tasks)
            await asyncio.gather(*pending, return_exceptions=True)
            self._background_tasks.difference_update(pending)


__all__ = [
    "RecordsRepository",
]
