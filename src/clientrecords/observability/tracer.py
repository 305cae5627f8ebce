"""
Tracers used by the records repository.

The repository is handed a Tracer instead of calling OpenTelemetry itself.
``create_tracer`` picks the real or the no-op implementation, and tests pass
a MockTracer to assert on span names and outcomes.

Errors raised inside a span are classified: a RecordsError below 500 (a
revision conflict, a missing precondition, a malformed patch) is a normal
outcome of the request and only tags the span with its code. Anything else
is recorded on the span and marks it as failed.

Example:
    >>> tracer = create_tracer("clientrecords.repository")
    >>> with tracer.span("clientrecords.repository.save", {ATTR_WRITE_MODE: "put"}):
    ...     await write()
"""

from __future__ import annotations

import contextlib
from collections.abc import Iterator
from contextlib import AbstractContextManager
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from clientrecords.exceptions import RecordsError
from clientrecords.observability.attributes import ATTR_ERROR_CODE

if TYPE_CHECKING:
    from opentelemetry.trace import Span


def is_expected_error(error: BaseException) -> bool:
    """True for errors that answer a bad request rather than signal a fault."""
    return isinstance(error, RecordsError) and error.status < 500


def error_code(error: BaseException) -> str:
    """Stable code for a span attribute: the RecordsError code or the class name."""
    if isinstance(error, RecordsError):
        return error.code
    return type(error).__name__


@runtime_checkable
class Tracer(Protocol):
    """Something that opens spans around repository operations."""

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        """
        Open a span for the duration of the ``with`` block.

        Args:
            name: Span name, e.g. ``clientrecords.repository.save``.
            attributes: Initial span attributes.
        """
        ...

    @property
    def enabled(self) -> bool:
        ...


class NullTracer:
    """Tracer used when tracing is switched off; spans are None."""

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Iterator[None]:
        yield None

    @property
    def enabled(self) -> bool:
        return False


class OpenTelemetryTracer:
    """
    Tracer backed by the OpenTelemetry API.

    Spans only leave the process when the application installs an SDK
    TracerProvider; with the bare API they are non-recording.

    Args:
        tracer_name: Instrumentation scope name.
    """

    def __init__(self, tracer_name: str) -> None:
        self._tracer = trace.get_tracer(tracer_name)

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Iterator[Span]:
        with self._tracer.start_as_current_span(
            name,
            attributes=attributes or {},
            record_exception=False,
            set_status_on_exception=False,
        ) as span:
            try:
                yield span
            except BaseException as e:
                span.set_attribute(ATTR_ERROR_CODE, error_code(e))
                if not is_expected_error(e):
                    span.record_exception(e)
                    span.set_status(Status(StatusCode.ERROR, type(e).__name__))
                raise

    @property
    def enabled(self) -> bool:
        return True


class MockTracer:
    """
    In-memory tracer for tests.

    Attributes:
        spans: ``(name, attributes)`` for every span opened, in order.
        errors: ``(name, code)`` for every span left by an exception.

    Example:
        >>> tracer = MockTracer()
        >>> repo = RecordsRepository(database, settings, tracer=tracer)
        >>> await repo.get_stored_records()
        >>> tracer.span_names
        ['clientrecords.repository.get']
    """

    def __init__(self) -> None:
        self.spans: list[tuple[str, dict[str, Any] | None]] = []
        self.errors: list[tuple[str, str]] = []

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Iterator[None]:
        self.spans.append((name, attributes))
        try:
            yield None
        except BaseException as e:
            self.errors.append((name, error_code(e)))
            raise

    @property
    def enabled(self) -> bool:
        return True

    @property
    def span_names(self) -> list[str]:
        return [name for name, _ in self.spans]

    def clear(self) -> None:
        self.spans.clear()
        self.errors.clear()


def create_tracer(name: str, enable_tracing: bool = True) -> Tracer:
    """Return an OpenTelemetryTracer, or a NullTracer when tracing is off."""
    if enable_tracing:
        return OpenTelemetryTracer(name)
    return NullTracer()


__all__ = [
    "MockTracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "Tracer",
    "create_tracer",
    "error_code",
    "is_expected_error",
]
