"""
Exceptions raised by the records storage engine.

Every error that reaches the request boundary derives from RecordsError and
carries a machine-readable ``code`` and an HTTP ``status``. Messages are safe
to show to users: database driver messages and codes are only kept in logs
and in the ``summary`` payload of integrity errors.

Exception Hierarchy:
    RecordsError (base)
    +-- DatabaseNotConfiguredError
    +-- PreconditionRequiredError
    +-- InvalidExpectedUpdatedAtError
    +-- InvalidPatchOperationError
    +-- InvalidRecordError
    +-- RecordsConflictError
    +-- DualWriteError
    |   +-- DualWriteDesyncError
    |   +-- DualWriteFailedError
    +-- MigrationModeError

Error Classification:
    - Client precondition errors (4xx) are RECOVERABLE by re-fetching.
    - Optimistic-lock conflicts (409) are RECOVERABLE by refetch-and-retry
      and are never merged automatically.
    - Data-integrity faults (desync) are FATAL and CRITICAL: they are not
      retried and are logged with the full summary.

The repository logs dual-write errors at ``severity.log_level`` and tags the
record with ``recoverability``.
"""

from __future__ import annotations

import errno
import logging
from enum import Enum
from typing import Any


class ErrorSeverity(Enum):
    """
    Severity level of records errors.

    Attributes:
        CRITICAL: Migration invariant broken, requires immediate attention.
        ERROR: Unexpected server-side failure.
        WARNING: Caller-side problem that the caller can fix.
    """

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"

    @property
    def log_level(self) -> int:
        """Get the corresponding Python logging level."""
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    How a caller can recover from a records error.

    Attributes:
        RECOVERABLE: The caller can re-fetch state and try again.
        TRANSIENT: Infrastructure problem that may resolve on its own.
        FATAL: Must not be retried; an operator has to investigate.
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def should_retry(self) -> bool:
        """True only for TRANSIENT errors."""
        return self == ErrorRecoverability.TRANSIENT


class RecordsError(Exception):
    """
    Base exception for the records storage engine.

    Attributes:
        message: User-facing error description.
        code: Stable machine-readable error code.
        status: HTTP status the boundary layer should respond with.
    """

    code: str = "records_error"
    status: int = 500
    severity: ErrorSeverity = ErrorSeverity.ERROR
    recoverability: ErrorRecoverability = ErrorRecoverability.FATAL

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status: int | None = None,
    ) -> None:
        self.message = message
        if code is not None:
            self.code = code
        if status is not None:
            self.status = status
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Build the response body for this error.

        Returns:
            Dictionary with ``error`` and ``code`` keys.
        """
        return {"error": self.message, "code": self.code}


class DatabaseNotConfiguredError(RecordsError):
    """Raised when no database connection has been configured."""

    code = "db_not_configured"
    status = 503
    recoverability = ErrorRecoverability.TRANSIENT

    def __init__(self, message: str = "Database is not configured. Set DATABASE_URL.") -> None:
        super().__init__(message)


class PreconditionRequiredError(RecordsError):
    """Raised when a write omits ``expected_updated_at`` entirely."""

    code = "records_precondition_required"
    status = 428
    severity = ErrorSeverity.WARNING
    recoverability = ErrorRecoverability.RECOVERABLE

    def __init__(
        self,
        message: str = (
            "Payload must include `expectedUpdatedAt` (latest revision from GET /api/records)."
        ),
    ) -> None:
        super().__init__(message)


class InvalidExpectedUpdatedAtError(RecordsError):
    """Raised when ``expected_updated_at`` is present but not a valid revision."""

    code = "invalid_expected_updated_at"
    status = 400
    severity = ErrorSeverity.WARNING
    recoverability = ErrorRecoverability.RECOVERABLE

    def __init__(
        self,
        message: str = "`expectedUpdatedAt` must be a valid ISO datetime or null.",
    ) -> None:
        super().__init__(message)


class InvalidPatchOperationError(RecordsError):
    """Raised when a patch payload contains a malformed operation."""

    code = "invalid_records_patch"
    status = 400
    severity = ErrorSeverity.WARNING
    recoverability = ErrorRecoverability.RECOVERABLE

    def __init__(self, message: str, *, index: int | None = None) -> None:
        self.index = index
        super().__init__(message)


class InvalidRecordError(RecordsError):
    """Raised when a single record cannot be normalized for v2 storage."""

    code = "invalid_submission_record"
    status = 400
    severity = ErrorSeverity.WARNING
    recoverability = ErrorRecoverability.RECOVERABLE

    def __init__(
        self,
        message: str = "Cannot approve submission. Record payload is invalid.",
    ) -> None:
        super().__init__(message)


class RecordsConflictError(RecordsError):
    """
    Raised when the caller's revision does not match the stored revision.

    Attributes:
        current_updated_at: The revision currently stored, in API format,
            so the caller can re-fetch and retry.
    """

    code = "records_conflict"
    status = 409
    severity = ErrorSeverity.WARNING
    recoverability = ErrorRecoverability.RECOVERABLE

    def __init__(
        self,
        current_updated_at: str | None,
        message: str = "Records were updated by another operation. Refresh records and try again.",
    ) -> None:
        self.current_updated_at = current_updated_at
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["currentUpdatedAt"] = self.current_updated_at
        return body


class DualWriteError(RecordsError):
    """
    Base class for failures while synchronizing the v2 table.

    Attributes:
        summary: Diagnostic payload for logs and metrics. Never returned
            to the user verbatim.
    """

    def __init__(self, message: str, *, summary: dict[str, Any] | None = None) -> None:
        self.summary = dict(summary or {})
        super().__init__(message)


class DualWriteDesyncError(DualWriteError):
    """Raised when the v2 row count disagrees with the snapshot after a sync."""

    code = "records_dual_write_desync"
    status = 500
    severity = ErrorSeverity.CRITICAL
    recoverability = ErrorRecoverability.FATAL

    def __init__(
        self,
        *,
        summary: dict[str, Any] | None = None,
        message: str = "Dual-write synchronization failed. client_records_v2 row count mismatch.",
    ) -> None:
        super().__init__(message, summary=summary)


class DualWriteFailedError(DualWriteError):
    """Wraps an unexpected error raised while synchronizing the v2 table."""

    code = "records_dual_write_failed"
    status = 500

    def __init__(
        self,
        *,
        summary: dict[str, Any] | None = None,
        message: str = "Dual-write synchronization to client_records_v2 failed.",
    ) -> None:
        super().__init__(message, summary=summary)


class MigrationModeError(RecordsError):
    """Raised by strict validation when the migration flags make no sense together."""

    code = "invalid_migration_mode"
    status = 500

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__("Invalid records migration mode: " + "; ".join(self.problems))


# SQLSTATE codes and socket errors that mean "the database is unreachable"
DB_UNAVAILABLE_ERROR_CODES = frozenset(
    {
        "28P01",
        "3D000",
        "08001",
        "08003",
        "08004",
        "08006",
        "57P01",
        "57P02",
        "57P03",
        "ENOTFOUND",
        "ECONNREFUSED",
        "ECONNRESET",
        "ETIMEDOUT",
        "EHOSTUNREACH",
    }
)


def database_error_code(error: BaseException | None) -> str:
    """
    Extract the most specific error code available for a database error.

    Looks at the driver exception wrapped by SQLAlchemy (``orig``) first,
    preferring the SQLSTATE, then falls back to ``code``/``errno`` on the
    error itself.

    Args:
        error: The exception to inspect.

    Returns:
        Upper-cased error code, or an empty string when none is available.
    """
    if error is None:
        return ""
    candidates = (getattr(error, "orig", None), error)
    for candidate in candidates:
        if candidate is None:
            continue
        for attribute in ("sqlstate", "pgcode"):
            value = getattr(candidate, attribute, None)
            if value:
                return str(value).strip().upper()
    if isinstance(error, RecordsError):
        return error.code
    if isinstance(error, OSError) and error.errno is not None:
        return errno.errorcode.get(error.errno, str(error.errno)).upper()
    return ""


def is_database_unavailable_error(error: BaseException | None) -> bool:
    """
    Check whether an error means the database cannot be reached.

    Args:
        error: The exception to classify.

    Returns:
        True for connection-level failures that the boundary should report
        as HTTP 503.
    """
    if isinstance(error, DatabaseNotConfiguredError):
        return True
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True
    return database_error_code(error) in DB_UNAVAILABLE_ERROR_CODES


def resolve_http_status(error: BaseException, fallback_status: int = 500) -> int:
    """Map an error to the HTTP status the boundary should respond with."""
    if isinstance(error, RecordsError):
        return error.status
    if is_database_unavailable_error(error):
        return 503
    return fallback_status


__all__ = [
    "DB_UNAVAILABLE_ERROR_CODES",
    "DatabaseNotConfiguredError",
    "DualWriteDesyncError",
    "DualWriteError",
    "DualWriteFailedError",
    "ErrorRecoverability",
    "ErrorSeverity",
    "InvalidExpectedUpdatedAtError",
    "InvalidPatchOperationError",
    "InvalidRecordError",
    "MigrationModeError",
    "PreconditionRequiredError",
    "RecordsConflictError",
    "RecordsError",
    "database_error_code",
    "is_database_unavailable_error",
    "resolve_http_status",
]
