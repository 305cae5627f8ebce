"""
Configuration for the records storage engine.

Settings are plain dataclasses, loaded from the process environment by the
``from_env`` constructors. Table names are validated and quoted once here so
that stores can interpolate them into SQL text.

Environment:
    DATABASE_URL: PostgreSQL connection URL (``postgres://``,
        ``postgresql://`` or ``postgresql+asyncpg://``).
    DB_SCHEMA: Schema of the records tables (default ``public``).
    DB_TABLE_NAME: Legacy state table (default ``client_records_state``).
    DB_CLIENT_RECORDS_V2_TABLE_NAME: v2 table (default ``client_records_v2``).
    DB_STATE_ROW_ID: Id of the legacy singleton row (default ``1``).
    DUAL_WRITE_V2, DUAL_READ_COMPARE, WRITE_V2, LEGACY_MIRROR, READ_V2:
        Migration flags (``1``/``true``/``yes``/``on``).

Example:
    >>> from clientrecords.config import RecordsSettings
    >>> settings = RecordsSettings.from_env({"DUAL_WRITE_V2": "true"})
    >>> settings.mode.phase
    <MigrationPhase.SHADOW_WRITE_V2: 'shadow_write_v2'>
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from clientrecords.exceptions import MigrationModeError

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA = "public"
DEFAULT_STATE_TABLE = "client_records_state"
DEFAULT_V2_TABLE = "client_records_v2"
DEFAULT_STATE_ROW_ID = 1
DEFAULT_COMPARE_SAMPLE_SIZE = 20

_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_TRUTHY = frozenset({"1", "true", "yes", "on"})


def quote_identifier(name: str) -> str:
    """
    Quote a validated SQL identifier.

    Raises:
        ValueError: If the name is not a plain identifier.
    """
    if not _IDENTIFIER_PATTERN.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return f'"{name}"'


def parse_bool(raw_value: str | None, default: bool = False) -> bool:
    """Parse an environment flag; unset or empty values use ``default``."""
    if raw_value is None or not raw_value.strip():
        return default
    return raw_value.strip().lower() in _TRUTHY


def normalize_database_url(raw_url: str | None) -> str | None:
    """
    Normalize a PostgreSQL URL to the asyncpg driver.

    Args:
        raw_url: URL from the environment.

    Returns:
        ``postgresql+asyncpg://`` URL, or None when unset.
    """
    if raw_url is None:
        return None
    url = raw_url.strip()
    if not url:
        return None
    for prefix in ("postgres://", "postgresql://", "postgresql+psycopg2://", "postgresql+psycopg://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix) :]
    return url


@dataclass(frozen=True)
class RecordsTables:
    """
    Physical location of the records tables.

    Attributes:
        schema: Schema holding both tables.
        state_table_name: Unquoted legacy state table name.
        v2_table_name: Unquoted v2 table name.
        state_row_id: Id of the legacy singleton row.
    """

    schema: str = DEFAULT_SCHEMA
    state_table_name: str = DEFAULT_STATE_TABLE
    v2_table_name: str = DEFAULT_V2_TABLE
    state_row_id: int = DEFAULT_STATE_ROW_ID

    def __post_init__(self) -> None:
        for name in (self.schema, self.state_table_name, self.v2_table_name):
            quote_identifier(name)
        if self.state_row_id < 1:
            raise ValueError(f"state_row_id must be positive, got {self.state_row_id}")

    @property
    def state_table(self) -> str:
        """Quoted, schema-qualified legacy table name."""
        return f"{quote_identifier(self.schema)}.{quote_identifier(self.state_table_name)}"

    @property
    def v2_table(self) -> str:
        """Quoted, schema-qualified v2 table name."""
        return f"{quote_identifier(self.schema)}.{quote_identifier(self.v2_table_name)}"

    def with_state_row_id(self, state_row_id: int) -> RecordsTables:
        """Copy of these tables targeting another legacy row."""
        return RecordsTables(
            schema=self.schema,
            state_table_name=self.state_table_name,
            v2_table_name=self.v2_table_name,
            state_row_id=state_row_id,
        )

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> RecordsTables:
        """
        Load table settings from the environment.

        ``DB_TABLE_NAME`` and ``DB_CLIENT_RECORDS_V2_TABLE_NAME`` may be
        schema-qualified, in which case the schema must equal ``DB_SCHEMA``.

        Raises:
            ValueError: If a name or the row id is invalid.
        """
        from clientrecords.stores.schema import parse_qualified_table_name

        source = os.environ if env is None else env
        schema = (source.get("DB_SCHEMA") or DEFAULT_SCHEMA).strip()

        names: dict[str, str] = {}
        for variable, default in (
            ("DB_TABLE_NAME", DEFAULT_STATE_TABLE),
            ("DB_CLIENT_RECORDS_V2_TABLE_NAME", DEFAULT_V2_TABLE),
        ):
            raw_name = (source.get(variable) or default).strip()
            parsed = parse_qualified_table_name(raw_name)
            if parsed is None:
                raise ValueError(f"Invalid {variable}: {raw_name!r}")
            table_schema, table_name = parsed
            if "." in raw_name and table_schema != schema:
                raise ValueError(f"{variable} must live in schema {schema!r}")
            names[variable] = table_name

        raw_row_id = (source.get("DB_STATE_ROW_ID") or str(DEFAULT_STATE_ROW_ID)).strip()
        try:
            state_row_id = int(raw_row_id)
        except ValueError as e:
            raise ValueError(f"Invalid DB_STATE_ROW_ID: {raw_row_id!r}") from e

        return cls(
            schema=schema,
            state_table_name=names["DB_TABLE_NAME"],
            v2_table_name=names["DB_CLIENT_RECORDS_V2_TABLE_NAME"],
            state_row_id=state_row_id,
        )


@dataclass(frozen=True)
class RecordsFlags:
    """
    Raw migration flags, as configured.

    Attributes:
        dual_write_v2: Keep v2 synchronized while legacy is primary.
        dual_read_compare: Audit legacy reads against v2.
        write_v2: v2 is the primary write target.
        legacy_mirror: Mirror v2 writes back into legacy (best-effort).
        read_v2: Serve reads from v2, falling back to legacy on failure.
    """

    dual_write_v2: bool = False
    dual_read_compare: bool = False
    write_v2: bool = False
    legacy_mirror: bool = False
    read_v2: bool = False

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> RecordsFlags:
        source = os.environ if env is None else env
        return cls(
            dual_write_v2=parse_bool(source.get("DUAL_WRITE_V2")),
            dual_read_compare=parse_bool(source.get("DUAL_READ_COMPARE")),
            write_v2=parse_bool(source.get("WRITE_V2")),
            legacy_mirror=parse_bool(source.get("LEGACY_MIRROR")),
            read_v2=parse_bool(source.get("READ_V2")),
        )


class MigrationPhase(Enum):
    """
    Named migration phases.

    Values:
        LEGACY_ONLY: Legacy is the only store.
        SHADOW_WRITE_V2: Legacy is primary, v2 is synchronized in the same
            transaction.
        CUTOVER_V2: v2 is primary, legacy only tracks the revision.
        CUTOVER_V2_WITH_MIRROR: v2 is primary, records are mirrored into
            legacy best-effort.
    """

    LEGACY_ONLY = "legacy_only"
    SHADOW_WRITE_V2 = "shadow_write_v2"
    CUTOVER_V2 = "cutover_v2"
    CUTOVER_V2_WITH_MIRROR = "cutover_v2_with_mirror"

    @property
    def writes_v2_primary(self) -> bool:
        return self in (MigrationPhase.CUTOVER_V2, MigrationPhase.CUTOVER_V2_WITH_MIRROR)

    @property
    def maintains_v2(self) -> bool:
        """True when v2 is kept current by the write path."""
        return self is not MigrationPhase.LEGACY_ONLY


@dataclass(frozen=True)
class RecordsMode:
    """
    Resolved migration mode.

    Attributes:
        phase: The write phase.
        audit_reads: Run dual-read compares on legacy reads.
        serve_reads_from_v2: Serve API reads from v2.
        warnings: Flag combinations that were ignored.
    """

    phase: MigrationPhase = MigrationPhase.LEGACY_ONLY
    audit_reads: bool = False
    serve_reads_from_v2: bool = False
    warnings: tuple[str, ...] = ()

    @property
    def mirror_to_legacy(self) -> bool:
        return self.phase is MigrationPhase.CUTOVER_V2_WITH_MIRROR

    @classmethod
    def from_flags(cls, flags: RecordsFlags, strict: bool = False) -> RecordsMode:
        """
        Resolve flags into a phase and sub-flags.

        Args:
            flags: Raw flags.
            strict: Raise instead of warning on meaningless combinations.

        Returns:
            The resolved mode.

        Raises:
            MigrationModeError: In strict mode, if any combination is ignored.
        """
        if flags.write_v2:
            phase = (
                MigrationPhase.CUTOVER_V2_WITH_MIRROR
                if flags.legacy_mirror
                else MigrationPhase.CUTOVER_V2
            )
        elif flags.dual_write_v2:
            phase = MigrationPhase.SHADOW_WRITE_V2
        else:
            phase = MigrationPhase.LEGACY_ONLY

        problems: list[str] = []
        if flags.legacy_mirror and not flags.write_v2:
            problems.append("LEGACY_MIRROR has no effect without WRITE_V2")
        if flags.dual_write_v2 and flags.write_v2:
            problems.append("DUAL_WRITE_V2 is ignored when WRITE_V2 makes v2 primary")
        serve_reads_from_v2 = flags.read_v2
        if flags.read_v2 and not phase.maintains_v2:
            problems.append("READ_V2 is ignored while v2 is not maintained by writes")
            serve_reads_from_v2 = False
        audit_reads = flags.dual_read_compare
        if flags.dual_read_compare and serve_reads_from_v2:
            problems.append("DUAL_READ_COMPARE is ignored when reads are served from v2")
            audit_reads = False

        if problems and strict:
            raise MigrationModeError(problems)
        for problem in problems:
            logger.warning("Records migration flags: %s", problem)

        return cls(
            phase=phase,
            audit_reads=audit_reads,
            serve_reads_from_v2=serve_reads_from_v2,
            warnings=tuple(problems),
        )


@dataclass(frozen=True)
class RecordsSettings:
    """
    Complete configuration of a records repository.

    Attributes:
        tables: Table locations.
        flags: Raw migration flags.
        database_url: asyncpg URL, or None when no database is configured.
        compare_sample_size: Max ids listed per category in compare summaries.
        strict: Whether the mode was resolved with strict validation.
    """

    tables: RecordsTables = field(default_factory=RecordsTables)
    flags: RecordsFlags = field(default_factory=RecordsFlags)
    database_url: str | None = None
    compare_sample_size: int = DEFAULT_COMPARE_SAMPLE_SIZE
    strict: bool = False
    mode: RecordsMode = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "mode", RecordsMode.from_flags(self.flags, strict=self.strict))

    @classmethod
    def from_env(
        cls,
        env: Mapping[str, str] | None = None,
        strict: bool = False,
    ) -> RecordsSettings:
        """
        Load all settings from the environment.

        Args:
            env: Mapping to read instead of ``os.environ``.
            strict: Reject meaningless flag combinations.

        Raises:
            ValueError: If a table setting is invalid.
            MigrationModeError: In strict mode, on conflicting flags.
        """
        source = os.environ if env is None else env
        return cls(
            tables=RecordsTables.from_env(source),
            flags=RecordsFlags.from_env(source),
            database_url=normalize_database_url(source.get("DATABASE_URL")),
            strict=strict,
        )


__all__ = [
    "DEFAULT_COMPARE_SAMPLE_SIZE",
    "MigrationPhase",
    "RecordsFlags",
    "RecordsMode",
    "RecordsSettings",
    "RecordsTables",
    "normalize_database_url",
    "parse_bool",
    "quote_identifier",
]
