"""
Span and metric attribute names for clientrecords.

Names follow OpenTelemetry semantic conventions where one exists (``db.*``)
and use the ``clientrecords.`` prefix otherwise.

Example:
    >>> from clientrecords.observability.attributes import ATTR_MIGRATION_PHASE
    >>> with tracer.span("clientrecords.repository.save", {ATTR_MIGRATION_PHASE: "shadow_write_v2"}):
    ...     pass
"""

# =============================================================================
# Records Attributes
# =============================================================================

ATTR_RECORD_COUNT = "clientrecords.records.count"
"""Number of records in the submitted or returned snapshot (integer)."""

ATTR_PATCH_OPERATION_COUNT = "clientrecords.patch.operation_count"
"""Number of operations in a patch request (integer)."""

ATTR_STATE_ROW_ID = "clientrecords.state.row_id"
"""Id of the legacy singleton row (integer)."""

ATTR_READ_SOURCE = "clientrecords.read.source"
"""Storage a read was served from: ``legacy`` or ``v2`` (string)."""

ATTR_REQUEST_SOURCE = "clientrecords.request.source"
"""Caller-supplied label for the read path, e.g. ``records.get`` (string)."""

# =============================================================================
# Migration Attributes
# =============================================================================

ATTR_MIGRATION_PHASE = "clientrecords.migration.phase"
"""Resolved migration phase (string)."""

ATTR_WRITE_MODE = "clientrecords.write.mode"
"""Write mode: ``put`` or ``patch`` (string)."""

ATTR_ERROR_CODE = "clientrecords.error.code"
"""Code of the error that ended the span: a RecordsError code or the exception class (string)."""

# =============================================================================
# Database Attributes (OpenTelemetry semantic conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (always ``postgresql``)."""


__all__ = [
    "ATTR_DB_SYSTEM",
    "ATTR_ERROR_CODE",
    "ATTR_MIGRATION_PHASE",
    "ATTR_PATCH_OPERATION_COUNT",
    "ATTR_READ_SOURCE",
    "ATTR_RECORD_COUNT",
    "ATTR_REQUEST_SOURCE",
    "ATTR_STATE_ROW_ID",
    "ATTR_WRITE_MODE",
]
