"""
OpenTelemetry metrics for the records migration.

Metrics Exposed:
    - records.dual_write.attempts (Counter): v2 syncs attempted on the write path
    - records.dual_write.successes (Counter): v2 syncs that ended in sync
    - records.dual_write.failures (Counter): desyncs and wrapped sync errors
    - records.dual_read_compare.attempts (Counter): legacy/v2 audits started
    - records.dual_read_compare.mismatches (Counter): audits that found differences
    - records.dual_read_compare.successes (Counter): audits that found no differences
    - records.dual_read_compare.failures (Counter): audits that raised
    - records.legacy_mirror.failures (Counter): best-effort mirrors that failed

All counters carry a ``mode`` attribute (``put``/``patch``) on the write
path and a ``source`` attribute on the read path. The requester of an
audited read is written to the compare log lines only; it is never a
metric attribute, so series stay bounded. In-process counters are
kept alongside the instruments and exposed via ``snapshot()``.

Example:
    >>> from clientrecords.metrics import RecordsMetrics
    >>>
    >>> metrics = RecordsMetrics()
    >>> metrics.record_dual_write_attempt("put")
    >>> metrics.record_dual_write_success("put")
    >>> metrics.snapshot().dual_write_successes
    1
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from opentelemetry import metrics

METER_NAME = "clientrecords"

# Module-level meter instance
_meter: Any = None


def _get_meter() -> Any:
    """Get or create the module meter from the global MeterProvider."""
    global _meter
    if _meter is None:
        _meter = metrics.get_meter(METER_NAME, version="1.0.0")
    return _meter


def reset_meter() -> None:
    """
    Reset the module meter instance.

    Useful for testing to pick up a MeterProvider installed after import.
    """
    global _meter
    _meter = None


@dataclass(frozen=True)
class RecordsMetricSnapshot:
    """Point-in-time copy of the in-process counters."""

    dual_write_attempts: int = 0
    dual_write_successes: int = 0
    dual_write_failures: int = 0
    dual_read_compare_attempts: int = 0
    dual_read_compare_mismatches: int = 0
    dual_read_compare_successes: int = 0
    dual_read_compare_failures: int = 0
    legacy_mirror_failures: int = 0

    def to_dict(self) -> dict[str, int]:
        """Convert to dictionary for serialization."""
        return {
            "dual_write_attempts": self.dual_write_attempts,
            "dual_write_successes": self.dual_write_successes,
            "dual_write_failures": self.dual_write_failures,
            "dual_read_compare_attempts": self.dual_read_compare_attempts,
            "dual_read_compare_mismatches": self.dual_read_compare_mismatches,
            "dual_read_compare_successes": self.dual_read_compare_successes,
            "dual_read_compare_failures": self.dual_read_compare_failures,
            "legacy_mirror_failures": self.legacy_mirror_failures,
        }


_COUNTERS: dict[str, tuple[str, str]] = {
    "dual_write_attempts": (
        "records.dual_write.attempts",
        "Number of v2 synchronizations attempted on the write path",
    ),
    "dual_write_successes": (
        "records.dual_write.successes",
        "Number of v2 synchronizations whose row count matched the snapshot",
    ),
    "dual_write_failures": (
        "records.dual_write.failures",
        "Number of v2 synchronizations that desynced or raised",
    ),
    "dual_read_compare_attempts": (
        "records.dual_read_compare.attempts",
        "Number of legacy/v2 read audits started",
    ),
    "dual_read_compare_mismatches": (
        "records.dual_read_compare.mismatches",
        "Number of legacy/v2 read audits that found differences",
    ),
    "dual_read_compare_successes": (
        "records.dual_read_compare.successes",
        "Number of legacy/v2 read audits that found no differences",
    ),
    "dual_read_compare_failures": (
        "records.dual_read_compare.failures",
        "Number of legacy/v2 read audits that raised",
    ),
    "legacy_mirror_failures": (
        "records.legacy_mirror.failures",
        "Number of best-effort legacy mirror writes that failed",
    ),
}


@dataclass
class RecordsMetrics:
    """
    Container for the records migration counters.

    Attributes:
        enable_metrics: When False, only the in-process counters are kept.
        meter: Meter to create instruments on. Defaults to the meter of the
            global MeterProvider.
    """

    enable_metrics: bool = True
    meter: Any = None

    _instruments: dict[str, Any] = field(default_factory=dict, init=False, repr=False)
    _counts: dict[str, int] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        self._counts = dict.fromkeys(_COUNTERS, 0)
        if not self.enable_metrics:
            return
        meter = self.meter if self.meter is not None else _get_meter()
        for key, (name, description) in _COUNTERS.items():
            self._instruments[key] = meter.create_counter(
                name=name,
                unit="1",
                description=description,
            )

    def _add(self, key: str, attributes: dict[str, str]) -> None:
        self._counts[key] += 1
        instrument = self._instruments.get(key)
        if instrument is not None:
            instrument.add(1, attributes)

    # Write path

    def record_dual_write_attempt(self, mode: str) -> None:
        self._add("dual_write_attempts", {"mode": mode})

    def record_dual_write_success(self, mode: str) -> None:
        self._add("dual_write_successes", {"mode": mode})

    def record_dual_write_failure(self, mode: str, code: str = "") -> None:
        """
        Record a failed v2 synchronization.

        Args:
            mode: ``put`` or ``patch``
            code: Error code of the failure (desync or driver code)
        """
        self._add("dual_write_failures", {"mode": mode, "code": code or "unknown"})

    def record_legacy_mirror_failure(self, mode: str, code: str = "") -> None:
        self._add("legacy_mirror_failures", {"mode": mode, "code": code or "unknown"})

    # Read path

    def record_dual_read_compare_attempt(self, source: str) -> None:
        self._add("dual_read_compare_attempts", {"source": source})

    def record_dual_read_compare_mismatch(self, source: str) -> None:
        self._add("dual_read_compare_mismatches", {"source": source})

    def record_dual_read_compare_success(self, source: str) -> None:
        self._add("dual_read_compare_successes", {"source": source})

    def record_dual_read_compare_failure(self, source: str) -> None:
        self._add("dual_read_compare_failures", {"source": source})

    def snapshot(self) -> RecordsMetricSnapshot:
        """Get the current in-process counter values."""
        return RecordsMetricSnapshot(**self._counts)

    def reset(self) -> None:
        """Zero the in-process counters (instruments are cumulative and unaffected)."""
        self._counts = dict.fromkeys(_COUNTERS, 0)


__all__ = [
    "METER_NAME",
    "RecordsMetricSnapshot",
    "RecordsMetrics",
    "reset_meter",
]
