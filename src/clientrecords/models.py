"""
Result and summary models returned by the records repository.

Models in this module:

Read results:
    - RecordsState: A records array with its revision and read source

Write results:
    - PatchResult: Revision after a patch
    - MirrorResult: Outcome of a best-effort legacy mirror
    - DualWriteSummary: Outcome of synchronizing v2 with a snapshot

Audit results:
    - DualReadCompareSummary: Differences between legacy and v2
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

ReadSource = Literal["legacy", "v2"]
WriteMode = Literal["put", "patch"]


@dataclass
class RecordsState:
    """
    A records array and the revision it was read at.

    Attributes:
        records: Record objects. Legacy reads keep stored order, v2 reads
            are ordered by id.
        updated_at: Revision in API format, or None when nothing is stored.
        source: Storage the records were read from.
        fallback_from_v2: True when a v2 read failed and legacy was served.
    """

    records: list[dict[str, Any]] = field(default_factory=list)
    updated_at: str | None = None
    source: ReadSource = "legacy"
    fallback_from_v2: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to the API response shape."""
        return {"records": list(self.records), "updatedAt": self.updated_at}


@dataclass(frozen=True)
class PatchResult:
    """Revision after a patch (unchanged for an empty patch)."""

    updated_at: str | None


@dataclass(frozen=True)
class MirrorResult:
    """
    Outcome of a best-effort legacy mirror.

    Attributes:
        mirrored: True when the legacy records were written.
        error_code: Driver error code when the mirror failed.
    """

    mirrored: bool
    error_code: str | None = None


@dataclass
class DualWriteSummary:
    """
    Outcome of synchronizing the v2 table with a snapshot.

    Attributes:
        mode: ``put`` or ``patch``.
        expected_count: Distinct ids in the snapshot.
        upserted_count: Rows inserted or changed.
        deleted_count: Rows removed because their id left the snapshot.
        v2_count: Rows counted for the source after the sync.
        in_sync: ``v2_count == expected_count``.
        skipped_invalid_record_count: Snapshot entries that were not objects.
        skipped_missing_id_count: Snapshot objects without a usable id.
        duplicate_id_count: Ids repeated in the snapshot.
        checksum: Row-set checksum of the snapshot.
        error_code: Error code when the sync raised.
        error_message: Driver message when the sync raised (logs only).
    """

    mode: WriteMode = "put"
    expected_count: int = 0
    upserted_count: int = 0
    deleted_count: int = 0
    v2_count: int = 0
    in_sync: bool = False
    skipped_invalid_record_count: int = 0
    skipped_missing_id_count: int = 0
    duplicate_id_count: int = 0
    checksum: str = ""
    error_code: str | None = None
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logs and error payloads."""
        data: dict[str, Any] = {
            "mode": self.mode,
            "expected_count": self.expected_count,
            "upserted_count": self.upserted_count,
            "deleted_count": self.deleted_count,
            "v2_count": self.v2_count,
            "in_sync": self.in_sync,
            "skipped_invalid_record_count": self.skipped_invalid_record_count,
            "skipped_missing_id_count": self.skipped_missing_id_count,
            "duplicate_id_count": self.duplicate_id_count,
            "checksum": self.checksum,
        }
        if self.error_code is not None:
            data["error_code"] = self.error_code
        if self.error_message is not None:
            data["error_message"] = self.error_message
        return data


@dataclass
class DualReadCompareSummary:
    """
    Differences between a legacy snapshot and the v2 rows.

    Sample lists hold at most ``sample_size`` ids each; the matching
    ``*_count`` fields hold the full totals.
    """

    source: str
    legacy_count: int = 0
    v2_count: int = 0
    legacy_checksum: str = ""
    v2_checksum: str = ""
    missing_in_v2_count: int = 0
    extra_in_v2_count: int = 0
    hash_mismatch_count: int = 0
    v2_stored_hash_mismatch_count: int = 0
    missing_in_v2: list[str] = field(default_factory=list)
    extra_in_v2: list[str] = field(default_factory=list)
    hash_mismatch: list[str] = field(default_factory=list)
    v2_stored_hash_mismatch: list[str] = field(default_factory=list)
    requested_by: str = ""

    @property
    def counts_match(self) -> bool:
        return self.legacy_count == self.v2_count

    @property
    def checksums_match(self) -> bool:
        return self.legacy_checksum == self.v2_checksum

    @property
    def mismatch_detected(self) -> bool:
        """True when any difference was found."""
        return (
            not self.counts_match
            or not self.checksums_match
            or self.missing_in_v2_count > 0
            or self.extra_in_v2_count > 0
            or self.hash_mismatch_count > 0
            or self.v2_stored_hash_mismatch_count > 0
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logs and CLI output."""
        return {
            "source": self.source,
            "requested_by": self.requested_by,
            "ok": not self.mismatch_detected,
            "counts_match": self.counts_match,
            "checksums_match": self.checksums_match,
            "legacy_count": self.legacy_count,
            "v2_count": self.v2_count,
            "legacy_checksum": self.legacy_checksum,
            "v2_checksum": self.v2_checksum,
            "missing_in_v2_count": self.missing_in_v2_count,
            "extra_in_v2_count": self.extra_in_v2_count,
            "hash_mismatch_count": self.hash_mismatch_count,
            "v2_stored_hash_mismatch_count": self.v2_stored_hash_mismatch_count,
            "missing_in_v2": list(self.missing_in_v2),
            "extra_in_v2": list(self.extra_in_v2),
            "hash_mismatch": list(self.hash_mismatch),
            "v2_stored_hash_mismatch": list(self.v2_stored_hash_mismatch),
        }


__all__ = [
    "DualReadCompareSummary",
    "DualWriteSummary",
    "MirrorResult",
    "PatchResult",
    "ReadSource",
    "RecordsState",
    "WriteMode",
]
