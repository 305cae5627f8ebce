"""
Revision token handling for the records state.

The legacy ``updated_at`` column is the only optimistic-concurrency token
exposed to callers. Depending on the deployment it is stored either as a
``timestamptz`` or as a legacy ``bigint`` holding epoch milliseconds, so
every comparison goes through millisecond-normalized epoch values.

Example:
    >>> from clientrecords.revision import is_record_state_revision_match
    >>> is_record_state_revision_match("2024-05-01T10:00:00.123Z", 1714557600123)
    True
"""

from __future__ import annotations

import math
import re
from datetime import UTC, datetime, timedelta
from typing import Any

_EPOCH_MS_PATTERN = re.compile(r"^-?\d{1,16}$")
_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
_ONE_MS = timedelta(milliseconds=1)
# Epoch milliseconds representable as a datetime (years 1 through 9999).
_MIN_EPOCH_MS = (datetime.min.replace(tzinfo=UTC) - _EPOCH) // _ONE_MS
_MAX_EPOCH_MS = (datetime.max.replace(tzinfo=UTC) - _EPOCH) // _ONE_MS


def _bounded(epoch_ms: int) -> int | None:
    if _MIN_EPOCH_MS <= epoch_ms <= _MAX_EPOCH_MS:
        return epoch_ms
    return None


def normalize_record_state_timestamp(raw_value: Any) -> int | None:
    """
    Normalize a revision value to epoch milliseconds.

    Accepts ``datetime`` objects (naive values are treated as UTC), integer
    or float epoch milliseconds (as stored in ``bigint`` columns), all-digit
    strings, and ISO-8601 strings (a trailing ``Z`` is accepted).

    Args:
        raw_value: The value to normalize.

    Returns:
        Epoch milliseconds, or None when the value is empty, unparseable,
        or outside the years 1 through 9999.
    """
    if raw_value is None or isinstance(raw_value, bool):
        return None

    if isinstance(raw_value, datetime):
        value = raw_value if raw_value.tzinfo else raw_value.replace(tzinfo=UTC)
        return _bounded((value - _EPOCH) // _ONE_MS)

    if isinstance(raw_value, (int, float)):
        if isinstance(raw_value, float) and not math.isfinite(raw_value):
            return None
        return _bounded(math.floor(raw_value))

    text = str(raw_value).strip()
    if not text:
        return None

    if _EPOCH_MS_PATTERN.match(text):
        return _bounded(int(text))

    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return normalize_record_state_timestamp(parsed)


def is_record_state_revision_match(expected_updated_at: Any, current_updated_at: Any) -> bool:
    """
    Compare the caller's expected revision against the stored one.

    An expected value that normalizes to a timestamp matches only the same
    millisecond. ``None`` or ``""`` means "no prior state" and matches only
    when nothing has been stored yet.

    Args:
        expected_updated_at: Revision supplied by the caller.
        current_updated_at: Raw revision read from the legacy row.

    Returns:
        True when the write may proceed.
    """
    expected_ms = normalize_record_state_timestamp(expected_updated_at)
    current_ms = normalize_record_state_timestamp(current_updated_at)

    if expected_ms is not None:
        return current_ms is not None and current_ms == expected_ms

    expects_empty_state = expected_updated_at is None or expected_updated_at == ""
    return expects_empty_state and current_ms is None


def timestamp_from_ms(epoch_ms: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return _EPOCH + timedelta(milliseconds=epoch_ms)


def format_api_timestamp(raw_value: Any) -> str | None:
    """
    Format a revision value the way the API exposes it.

    Args:
        raw_value: Any value accepted by normalize_record_state_timestamp.

    Returns:
        ISO-8601 UTC string with millisecond precision and a ``Z`` suffix,
        e.g. ``2024-05-01T10:00:00.123Z``, or None for empty values.
    """
    epoch_ms = normalize_record_state_timestamp(raw_value)
    if epoch_ms is None:
        return None
    value = timestamp_from_ms(epoch_ms)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def utc_now_ms() -> datetime:
    """Current wall-clock time truncated to milliseconds."""
    now = datetime.now(UTC)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def next_revision(current_updated_at: Any = None, now: datetime | None = None) -> datetime:
    """
    Compute the revision for the next successful write.

    Uses the wall clock at millisecond precision. When the clock is not
    ahead of the stored revision the result is bumped to one millisecond
    past it, so revisions strictly increase even across clock skew.

    Args:
        current_updated_at: The revision currently stored (raw or formatted).
        now: Override for the wall clock.

    Returns:
        Aware UTC datetime with millisecond precision.
    """
    candidate = now if now is not None else utc_now_ms()
    if candidate.tzinfo is None:
        candidate = candidate.replace(tzinfo=UTC)
    candidate_ms = (candidate - _EPOCH) // _ONE_MS
    current_ms = normalize_record_state_timestamp(current_updated_at)
    if current_ms is not None and candidate_ms <= current_ms:
        candidate_ms = current_ms + 1
    return timestamp_from_ms(candidate_ms)


def resolve_latest_revision(candidates: list[Any]) -> str | None:
    """
    Pick the most recent revision from a list of raw values.

    Args:
        candidates: Raw timestamps; unparseable entries are ignored.

    Returns:
        The maximum value in API format, or None if none parse.
    """
    latest: int | None = None
    for candidate in candidates:
        normalized = normalize_record_state_timestamp(candidate)
        if normalized is None:
            continue
        if latest is None or normalized > latest:
            latest = normalized
    if latest is None:
        return None
    return format_api_timestamp(latest)


__all__ = [
    "format_api_timestamp",
    "is_record_state_revision_match",
    "next_revision",
    "normalize_record_state_timestamp",
    "resolve_latest_revision",
    "timestamp_from_ms",
    "utc_now_ms",
]
