"""
Legacy single-row state store.

The legacy table holds the whole records array in one JSONB column of a
singleton row, plus the ``updated_at`` revision used for optimistic
concurrency. All methods take an AsyncConnection so they compose inside the
caller's transaction.

Writers serialize in two steps: a transaction-scoped advisory lock keyed by
the table and row id, then ``SELECT ... FOR UPDATE`` of the row. The
advisory lock also covers the first write, when there is no row to lock yet.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from clientrecords.config import RecordsTables
from clientrecords.revision import format_api_timestamp, normalize_record_state_timestamp
from clientrecords.stores.schema import UpdatedAtMode, UpdatedAtModeProbe

logger = logging.getLogger(__name__)


@dataclass
class LegacyState:
    """
    Contents of the legacy singleton row.

    Attributes:
        records: The records array (empty when not loaded or not stored).
        updated_at: Raw ``updated_at`` value (datetime or epoch ms).
        exists: Whether the row exists.
    """

    records: list[Any] = field(default_factory=list)
    updated_at: Any = None
    exists: bool = False

    @property
    def api_updated_at(self) -> str | None:
        return format_api_timestamp(self.updated_at)


def writer_lock_id(tables: RecordsTables) -> int:
    """
    Advisory lock id serializing writers of one legacy row.

    SHA-256 of the qualified table name and row id, truncated to 63 bits so
    it fits a signed PostgreSQL bigint.
    """
    key = f"clientrecords:{tables.state_table}:{tables.state_row_id}"
    hash_bytes = hashlib.sha256(key.encode()).digest()
    return int.from_bytes(hash_bytes[:8], byteorder="big") & 0x7FFFFFFFFFFFFFFF


def decode_records(raw_value: Any) -> list[Any]:
    """
    Decode the ``records`` column.

    Args:
        raw_value: Decoded JSON, JSON text, or None.

    Returns:
        The records list, entries in stored order and unchanged. Anything
        that is not a list decodes to ``[]``.
    """
    if raw_value is None:
        return []
    value = raw_value if isinstance(raw_value, (list, dict)) else json.loads(raw_value)
    if not isinstance(value, list):
        return []
    return [dict(item) if isinstance(item, Mapping) else item for item in value]


class LegacyStateStore:
    """
    Reads and writes the legacy singleton row.

    Args:
        tables: Table locations.
        probe: Shared memo of the ``updated_at`` column type.

    Example:
        >>> store = LegacyStateStore(tables, UpdatedAtModeProbe(tables))
        >>> async with engine.begin() as conn:
        ...     state = await store.lock_revision(conn, include_records=True)
        ...     await store.write_records(conn, records, next_revision(state.updated_at))
    """

    def __init__(self, tables: RecordsTables, probe: UpdatedAtModeProbe) -> None:
        self._tables = tables
        self._probe = probe

    @property
    def tables(self) -> RecordsTables:
        return self._tables

    @property
    def probe(self) -> UpdatedAtModeProbe:
        return self._probe

    async def read_state(self, conn: AsyncConnection) -> LegacyState | None:
        """
        Read records and revision without locking.

        Returns:
            LegacyState, or None when the row does not exist.
        """
        result = await conn.execute(
            text(f"SELECT records, updated_at FROM {self._tables.state_table} WHERE id = :id"),
            {"id": self._tables.state_row_id},
        )
        row = result.fetchone()
        if row is None:
            return None
        return LegacyState(records=decode_records(row[0]), updated_at=row[1], exists=True)

    async def read_revision(self, conn: AsyncConnection) -> Any:
        """
        Read the raw revision without locking.

        Returns:
            Raw ``updated_at``, or None when the row does not exist.
        """
        result = await conn.execute(
            text(f"SELECT updated_at FROM {self._tables.state_table} WHERE id = :id"),
            {"id": self._tables.state_row_id},
        )
        row = result.fetchone()
        return row[0] if row is not None else None

    async def acquire_writer_lock(self, conn: AsyncConnection) -> None:
        """Take the transaction-scoped writer lock for this row."""
        lock_id = writer_lock_id(self._tables)
        await conn.execute(text("SELECT pg_advisory_xact_lock(:lock_id)"), {"lock_id": lock_id})
        logger.debug(
            "Acquired records writer lock: table=%s, row_id=%d, lock_id=%d",
            self._tables.state_table,
            self._tables.state_row_id,
            lock_id,
        )

    async def lock_revision(
        self,
        conn: AsyncConnection,
        *,
        include_records: bool = False,
    ) -> LegacyState:
        """
        Lock the row for the rest of the transaction and read it.

        Args:
            conn: Connection inside a transaction.
            include_records: Also load the records array.

        Returns:
            LegacyState; ``exists`` is False when the row was never written.
        """
        await self.acquire_writer_lock(conn)
        columns = "records, updated_at" if include_records else "updated_at"
        result = await conn.execute(
            text(f"SELECT {columns} FROM {self._tables.state_table} WHERE id = :id FOR UPDATE"),
            {"id": self._tables.state_row_id},
        )
        row = result.fetchone()
        if row is None:
            return LegacyState()
        if include_records:
            return LegacyState(records=decode_records(row[0]), updated_at=row[1], exists=True)
        return LegacyState(updated_at=row[0], exists=True)

    async def _revision_param(self, conn: AsyncConnection, write_timestamp: datetime) -> tuple[str, Any]:
        mode = await self._probe.resolve(conn)
        if mode is UpdatedAtMode.BIGINT:
            return "bigint", normalize_record_state_timestamp(write_timestamp)
        return "timestamptz", write_timestamp

    async def write_records(
        self,
        conn: AsyncConnection,
        records: Sequence[Any],
        write_timestamp: datetime,
    ) -> str | None:
        """
        Upsert the records array and revision.

        Args:
            conn: Connection inside a transaction.
            records: The full records array. Entries are stored as given,
                including ones that are not objects.
            write_timestamp: The new revision.

        Returns:
            The stored revision in API format.
        """
        cast_type, revision = await self._revision_param(conn, write_timestamp)
        result = await conn.execute(
            text(
                f"""
                INSERT INTO {self._tables.state_table} (id, records, updated_at)
                VALUES (:id, CAST(:records AS jsonb), CAST(:updated_at AS {cast_type}))
                ON CONFLICT (id)
                DO UPDATE SET records = EXCLUDED.records, updated_at = EXCLUDED.updated_at
                RETURNING updated_at
                """
            ),
            {
                "id": self._tables.state_row_id,
                "records": json.dumps(
                    [dict(record) if isinstance(record, Mapping) else record for record in records]
                ),
                "updated_at": revision,
            },
        )
        row = result.fetchone()
        return format_api_timestamp(row[0] if row is not None else write_timestamp)

    async def write_revision_pointer(
        self,
        conn: AsyncConnection,
        write_timestamp: datetime,
    ) -> str | None:
        """
        Advance the revision without touching the records array.

        Inserts the row with an empty array when it does not exist yet.

        Returns:
            The stored revision in API format.
        """
        cast_type, revision = await self._revision_param(conn, write_timestamp)
        result = await conn.execute(
            text(
                f"""
                INSERT INTO {self._tables.state_table} (id, records, updated_at)
                VALUES (:id, '[]'::jsonb, CAST(:updated_at AS {cast_type}))
                ON CONFLICT (id)
                DO UPDATE SET updated_at = EXCLUDED.updated_at
                RETURNING updated_at
                """
            ),
            {"id": self._tables.state_row_id, "updated_at": revision},
        )
        row = result.fetchone()
        return format_api_timestamp(row[0] if row is not None else write_timestamp)

    async def prepend_record(
        self,
        conn: AsyncConnection,
        record: Mapping[str, Any],
        write_timestamp: datetime,
    ) -> str | None:
        """
        Prepend one record to the records array and advance the revision.

        Args:
            conn: Connection inside a transaction that holds the writer lock.
            record: The record to put first.
            write_timestamp: The new revision.

        Returns:
            The stored revision in API format.
        """
        cast_type, revision = await self._revision_param(conn, write_timestamp)
        result = await conn.execute(
            text(
                f"""
                INSERT INTO {self._tables.state_table} (id, records, updated_at)
                VALUES (
                    :id,
                    jsonb_build_array(CAST(:record AS jsonb)),
                    CAST(:updated_at AS {cast_type})
                )
                ON CONFLICT (id)
                DO UPDATE SET
                    records = jsonb_build_array(CAST(:record AS jsonb))
                        || CASE
                            WHEN jsonb_typeof({self._tables.state_table}.records) = 'array'
                                THEN {self._tables.state_table}.records
                            ELSE '[]'::jsonb
                        END,
                    updated_at = EXCLUDED.updated_at
                RETURNING updated_at
                """
            ),
            {
                "id": self._tables.state_row_id,
                "record": json.dumps(dict(record)),
                "updated_at": revision,
            },
        )
        row = result.fetchone()
        return format_api_timestamp(row[0] if row is not None else write_timestamp)


__all__ = [
    "LegacyState",
    "LegacyStateStore",
    "decode_records",
    "writer_lock_id",
]
