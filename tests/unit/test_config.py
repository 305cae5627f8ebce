"""
Unit tests for configuration loading and migration mode resolution.
"""

import logging

import pytest

from clientrecords.config import (
    MigrationPhase,
    RecordsFlags,
    RecordsMode,
    RecordsSettings,
    RecordsTables,
    normalize_database_url,
    parse_bool,
    quote_identifier,
)
from clientrecords.exceptions import MigrationModeError

# ============================================================================
# Helpers
# ============================================================================


class TestHelpers:
    """Tests for identifier quoting, flag parsing and URL normalization."""

    def test_quote_identifier(self):
        assert quote_identifier("client_records_v2") == '"client_records_v2"'

    @pytest.mark.parametrize("name", ["", "1abc", "a-b", 'a"b', "a.b", "a b"])
    def test_quote_identifier_rejects(self, name):
        with pytest.raises(ValueError):
            quote_identifier(name)

    @pytest.mark.parametrize("raw", ["1", "true", "TRUE", " yes ", "on"])
    def test_parse_bool_truthy(self, raw):
        assert parse_bool(raw) is True

    @pytest.mark.parametrize("raw", ["0", "false", "no", "off", "maybe"])
    def test_parse_bool_falsy(self, raw):
        assert parse_bool(raw) is False

    def test_parse_bool_default(self):
        assert parse_bool(None, default=True) is True
        assert parse_bool("  ", default=True) is True

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("postgres://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
            ("postgresql://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
            ("postgresql+psycopg2://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
            ("postgresql+asyncpg://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
            ("  ", None),
            (None, None),
        ],
    )
    def test_normalize_database_url(self, raw, expected):
        assert normalize_database_url(raw) == expected


# ============================================================================
# Tables
# ============================================================================


class TestRecordsTables:
    """Tests for RecordsTables."""

    def test_defaults(self):
        tables = RecordsTables()
        assert tables.state_table == '"public"."client_records_state"'
        assert tables.v2_table == '"public"."client_records_v2"'
        assert tables.state_row_id == 1

    def test_invalid_identifier(self):
        with pytest.raises(ValueError):
            RecordsTables(schema="bad-schema")

    def test_invalid_row_id(self):
        with pytest.raises(ValueError):
            RecordsTables(state_row_id=0)

    def test_with_state_row_id(self):
        tables = RecordsTables(schema="crm").with_state_row_id(7)
        assert tables.schema == "crm"
        assert tables.state_row_id == 7

    def test_from_env_defaults(self):
        assert RecordsTables.from_env({}) == RecordsTables()

    def test_from_env_custom(self):
        tables = RecordsTables.from_env(
            {
                "DB_SCHEMA": "crm",
                "DB_TABLE_NAME": '"crm"."state"',
                "DB_CLIENT_RECORDS_V2_TABLE_NAME": "records_v2",
                "DB_STATE_ROW_ID": "3",
            }
        )
        assert tables == RecordsTables(
            schema="crm", state_table_name="state", v2_table_name="records_v2", state_row_id=3
        )

    def test_from_env_schema_mismatch(self):
        with pytest.raises(ValueError, match="DB_TABLE_NAME"):
            RecordsTables.from_env({"DB_SCHEMA": "crm", "DB_TABLE_NAME": "other.state"})

    def test_from_env_invalid_table(self):
        with pytest.raises(ValueError):
            RecordsTables.from_env({"DB_TABLE_NAME": "a.b.c"})

    def test_from_env_invalid_row_id(self):
        with pytest.raises(ValueError, match="DB_STATE_ROW_ID"):
            RecordsTables.from_env({"DB_STATE_ROW_ID": "one"})


# ============================================================================
# Migration mode
# ============================================================================


class TestRecordsMode:
    """Tests for resolving flags into a migration mode."""

    def test_legacy_only(self):
        mode = RecordsMode.from_flags(RecordsFlags())
        assert mode.phase is MigrationPhase.LEGACY_ONLY
        assert not mode.audit_reads
        assert not mode.serve_reads_from_v2
        assert mode.warnings == ()

    def test_shadow_write(self):
        mode = RecordsMode.from_flags(RecordsFlags(dual_write_v2=True, dual_read_compare=True))
        assert mode.phase is MigrationPhase.SHADOW_WRITE_V2
        assert mode.audit_reads
        assert not mode.phase.writes_v2_primary

    def test_cutover(self):
        mode = RecordsMode.from_flags(RecordsFlags(write_v2=True, read_v2=True))
        assert mode.phase is MigrationPhase.CUTOVER_V2
        assert mode.serve_reads_from_v2
        assert mode.phase.writes_v2_primary
        assert not mode.mirror_to_legacy

    def test_cutover_with_mirror(self):
        mode = RecordsMode.from_flags(RecordsFlags(write_v2=True, legacy_mirror=True))
        assert mode.phase is MigrationPhase.CUTOVER_V2_WITH_MIRROR
        assert mode.mirror_to_legacy

    def test_mirror_without_write_v2_warns(self, caplog):
        with caplog.at_level(logging.WARNING, logger="clientrecords.config"):
            mode = RecordsMode.from_flags(RecordsFlags(legacy_mirror=True))
        assert mode.phase is MigrationPhase.LEGACY_ONLY
        assert len(mode.warnings) == 1
        assert "LEGACY_MIRROR" in caplog.text

    def test_read_v2_ignored_in_legacy_only(self):
        mode = RecordsMode.from_flags(RecordsFlags(read_v2=True))
        assert not mode.serve_reads_from_v2
        assert any("READ_V2" in warning for warning in mode.warnings)

    def test_read_v2_allowed_in_shadow_write(self):
        mode = RecordsMode.from_flags(RecordsFlags(dual_write_v2=True, read_v2=True))
        assert mode.serve_reads_from_v2

    def test_compare_ignored_when_serving_from_v2(self):
        mode = RecordsMode.from_flags(
            RecordsFlags(write_v2=True, read_v2=True, dual_read_compare=True)
        )
        assert mode.serve_reads_from_v2
        assert not mode.audit_reads

    def test_dual_write_with_write_v2_warns(self):
        mode = RecordsMode.from_flags(RecordsFlags(dual_write_v2=True, write_v2=True))
        assert mode.phase is MigrationPhase.CUTOVER_V2
        assert any("DUAL_WRITE_V2" in warning for warning in mode.warnings)

    def test_strict_rejects_meaningless_combination(self):
        with pytest.raises(MigrationModeError) as exc_info:
            RecordsMode.from_flags(RecordsFlags(legacy_mirror=True, read_v2=True), strict=True)
        assert len(exc_info.value.problems) == 2

    def test_maintains_v2(self):
        assert not MigrationPhase.LEGACY_ONLY.maintains_v2
        assert MigrationPhase.SHADOW_WRITE_V2.maintains_v2
        assert MigrationPhase.CUTOVER_V2_WITH_MIRROR.maintains_v2


class TestRecordsSettings:
    """Tests for RecordsSettings."""

    def test_from_env(self):
        settings = RecordsSettings.from_env(
            {
                "DATABASE_URL": "postgres://u:p@h/db",
                "DUAL_WRITE_V2": "1",
                "DUAL_READ_COMPARE": "yes",
            }
        )
        assert settings.database_url == "postgresql+asyncpg://u:p@h/db"
        assert settings.mode.phase is MigrationPhase.SHADOW_WRITE_V2
        assert settings.mode.audit_reads

    def test_defaults_without_database(self):
        settings = RecordsSettings()
        assert settings.database_url is None
        assert settings.mode.phase is MigrationPhase.LEGACY_ONLY

    def test_strict_from_env(self):
        with pytest.raises(MigrationModeError):
            RecordsSettings.from_env({"LEGACY_MIRROR": "true"}, strict=True)
