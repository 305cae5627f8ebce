"""
clientrecords - Revision-guarded client records storage with a staged v2 migration.

This library provides:
- A legacy single-row JSONB records store guarded by an updated_at revision
- A normalized per-record v2 table kept in sync inside the same transaction
- Migration phases: shadow writes, v2 cutover, optional legacy mirroring
- Dual-read comparison of legacy and v2 with metrics and tracing
- Backfill and verify maintenance commands
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("clientrecords")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from clientrecords.compare import (
    CompareRow,
    clamp_sample_size,
    compare_legacy_and_v2_snapshots,
    legacy_rows_for_compare,
    normalize_v2_row_for_compare,
)
from clientrecords.config import (
    MigrationPhase,
    RecordsFlags,
    RecordsMode,
    RecordsSettings,
    RecordsTables,
)
from clientrecords.database import RecordsDatabase, execute_with_connection
from clientrecords.exceptions import (
    DatabaseNotConfiguredError,
    DualWriteDesyncError,
    DualWriteError,
    DualWriteFailedError,
    InvalidExpectedUpdatedAtError,
    InvalidPatchOperationError,
    InvalidRecordError,
    MigrationModeError,
    PreconditionRequiredError,
    RecordsConflictError,
    RecordsError,
    resolve_http_status,
)
from clientrecords.hashing import compute_record_hash, compute_rows_checksum, stable_stringify
from clientrecords.maintenance import BackfillReport, backfill_records_to_v2, verify_records_v2
from clientrecords.metrics import RecordsMetrics, RecordsMetricSnapshot
from clientrecords.models import (
    DualReadCompareSummary,
    DualWriteSummary,
    MirrorResult,
    PatchResult,
    RecordsState,
)
from clientrecords.patch import (
    DeleteOperation,
    PatchOperation,
    UpsertOperation,
    apply_records_patch_operations,
    parse_patch_operations,
)
from clientrecords.repository import RecordsRepository
from clientrecords.revision import (
    format_api_timestamp,
    is_record_state_revision_match,
    normalize_record_state_timestamp,
)
from clientrecords.snapshot import (
    LegacySnapshot,
    V2Row,
    normalize_legacy_record_to_v2_row,
    normalize_legacy_records_snapshot,
)

__all__ = [
    "__version__",
    # Configuration
    "MigrationPhase",
    "RecordsFlags",
    "RecordsMode",
    "RecordsSettings",
    "RecordsTables",
    # Database
    "RecordsDatabase",
    "execute_with_connection",
    # Repository
    "RecordsRepository",
    "RecordsState",
    "PatchResult",
    "MirrorResult",
    "DualWriteSummary",
    "DualReadCompareSummary",
    # Patches
    "DeleteOperation",
    "PatchOperation",
    "UpsertOperation",
    "apply_records_patch_operations",
    "parse_patch_operations",
    # Normalization and hashing
    "LegacySnapshot",
    "V2Row",
    "compute_record_hash",
    "compute_rows_checksum",
    "normalize_legacy_record_to_v2_row",
    "normalize_legacy_records_snapshot",
    "stable_stringify",
    # Revisions
    "format_api_timestamp",
    "is_record_state_revision_match",
    "normalize_record_state_timestamp",
    # Compare
    "CompareRow",
    "clamp_sample_size",
    "compare_legacy_and_v2_snapshots",
    "legacy_rows_for_compare",
    "normalize_v2_row_for_compare",
    # Metrics
    "RecordsMetrics",
    "RecordsMetricSnapshot",
    # Maintenance
    "BackfillReport",
    "backfill_records_to_v2",
    "verify_records_v2",
    # Exceptions
    "DatabaseNotConfiguredError",
    "DualWriteDesyncError",
    "DualWriteError",
    "DualWriteFailedError",
    "InvalidExpectedUpdatedAtError",
    "InvalidPatchOperationError",
    "InvalidRecordError",
    "MigrationModeError",
    "PreconditionRequiredError",
    "RecordsConflictError",
    "RecordsError",
    "resolve_http_status",
]
