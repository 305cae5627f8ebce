"""
Observability utilities for clientrecords.

Provides the injectable Tracer abstraction and the standard span attribute
names used by the repository.

Example:
    >>> from clientrecords.observability import ATTR_WRITE_MODE, create_tracer
    >>>
    >>> tracer = create_tracer(__name__)
    >>> with tracer.span("clientrecords.repository.save", {ATTR_WRITE_MODE: "put"}):
    ...     pass
"""

from clientrecords.observability.attributes import (
    ATTR_DB_SYSTEM,
    ATTR_ERROR_CODE,
    ATTR_MIGRATION_PHASE,
    ATTR_PATCH_OPERATION_COUNT,
    ATTR_READ_SOURCE,
    ATTR_RECORD_COUNT,
    ATTR_REQUEST_SOURCE,
    ATTR_STATE_ROW_ID,
    ATTR_WRITE_MODE,
)
from clientrecords.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
    error_code,
    is_expected_error,
)

__all__ = [
    # Attributes
    "ATTR_DB_SYSTEM",
    "ATTR_ERROR_CODE",
    "ATTR_MIGRATION_PHASE",
    "ATTR_PATCH_OPERATION_COUNT",
    "ATTR_READ_SOURCE",
    "ATTR_RECORD_COUNT",
    "ATTR_REQUEST_SOURCE",
    "ATTR_STATE_ROW_ID",
    "ATTR_WRITE_MODE",
    # Tracer
    "MockTracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "Tracer",
    "create_tracer",
    "error_code",
    "is_expected_error",
]
