"""
Patch operations over the logical records array.

A patch is an ordered list of upsert/delete operations. Operations are applied
left to right against a copy of the base array, so later operations on the
same id win. The same function is used whether the base array was read from
the legacy blob or materialized from the v2 table, which keeps a single patch
semantics for both storage modes.

Example:
    >>> from clientrecords.patch import apply_records_patch_operations, parse_patch_operations
    >>> operations = parse_patch_operations([
    ...     {"type": "upsert", "id": "a", "record": {"clientName": "Acme"}},
    ...     {"type": "delete", "id": "b"},
    ... ])
    >>> apply_records_patch_operations([{"id": "b"}], operations)[0]["id"]
    'a'
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from clientrecords.exceptions import InvalidPatchOperationError
from clientrecords.hashing import MAX_ID_LENGTH, sanitize_text_value
from clientrecords.revision import format_api_timestamp, utc_now_ms

PATCH_OPERATION_UPSERT = "upsert"
PATCH_OPERATION_DELETE = "delete"


class _PatchOperationBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> str:
        if isinstance(value, (Mapping, list, tuple)):
            raise ValueError("id must be a scalar value")
        return sanitize_text_value(value, MAX_ID_LENGTH)


class UpsertOperation(_PatchOperationBase):
    """Insert a record, or merge ``record`` over the existing record with this id."""

    type: Literal["upsert"] = PATCH_OPERATION_UPSERT
    record: dict[str, Any] = Field(default_factory=dict)


class DeleteOperation(_PatchOperationBase):
    """Remove the record with this id (no-op when absent)."""

    type: Literal["delete"] = PATCH_OPERATION_DELETE


PatchOperation = Annotated[UpsertOperation | DeleteOperation, Field(discriminator="type")]

_operation_adapter: TypeAdapter[UpsertOperation | DeleteOperation] = TypeAdapter(PatchOperation)


def _normalize_operation_type(raw_type: Any) -> str:
    normalized = sanitize_text_value(raw_type, 32).lower()
    if normalized in (PATCH_OPERATION_UPSERT, PATCH_OPERATION_DELETE):
        return normalized
    return ""


def parse_patch_operations(
    raw_operations: Iterable[Any],
    *,
    max_operations: int | None = None,
) -> list[UpsertOperation | DeleteOperation]:
    """
    Validate a raw patch payload.

    Each operation must be an object with a ``type`` (or ``op``) of
    ``upsert``/``delete`` in any case, and a non-empty ``id``. Upserts may
    carry a ``record`` object. Already-parsed operations pass through.

    Args:
        raw_operations: The operations list from the request payload.
        max_operations: Optional upper bound on the number of operations.

    Returns:
        Parsed operations, in input order.

    Raises:
        InvalidPatchOperationError: If the payload or any operation is invalid.
    """
    if isinstance(raw_operations, (str, bytes, Mapping)):
        raise InvalidPatchOperationError("Patch operations must be a list.")

    operations: list[UpsertOperation | DeleteOperation] = []
    for index, raw in enumerate(raw_operations):
        if max_operations is not None and index >= max_operations:
            raise InvalidPatchOperationError(
                f"Patch payload is too large. Maximum allowed operations: {max_operations}.",
                index=index,
            )
        if isinstance(raw, (UpsertOperation, DeleteOperation)):
            operations.append(raw)
            continue
        if not isinstance(raw, Mapping):
            raise InvalidPatchOperationError(
                f"Operation at index {index} must be an object.", index=index
            )

        operation_type = _normalize_operation_type(raw.get("type") or raw.get("op"))
        if not operation_type:
            raise InvalidPatchOperationError(
                f"Operation at index {index} has invalid type. Allowed values: upsert, delete.",
                index=index,
            )

        payload = dict(raw)
        payload.pop("op", None)
        payload["type"] = operation_type
        if operation_type == PATCH_OPERATION_UPSERT and payload.get("record") is None:
            payload["record"] = {}

        try:
            operations.append(_operation_adapter.validate_python(payload))
        except ValidationError as e:
            fields = ", ".join(".".join(str(part) for part in err["loc"]) for err in e.errors())
            raise InvalidPatchOperationError(
                f"Operation at index {index} is invalid ({fields or 'payload'}).",
                index=index,
            ) from e

    return operations


def _record_id(record: Any) -> str:
    if not isinstance(record, Mapping):
        return ""
    return sanitize_text_value(record.get("id"), MAX_ID_LENGTH)


def _index_by_id(records: Sequence[dict[str, Any]]) -> dict[str, int]:
    index: dict[str, int] = {}
    for position, record in enumerate(records):
        record_id = _record_id(record)
        if record_id:
            index[record_id] = position
    return index


def apply_records_patch_operations(
    current_records: Iterable[Any] | None,
    operations: Iterable[UpsertOperation | DeleteOperation],
    *,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """
    Apply patch operations to a records array.

    The input is never mutated. Non-object entries in the base array are
    replaced by empty objects, matching how the legacy blob is read.

    Args:
        current_records: The base records array.
        operations: Parsed operations, applied left to right.
        now: Timestamp used for ``createdAt`` of records that lack one.

    Returns:
        The next records array.
    """
    created_at_default = format_api_timestamp(now or utc_now_ms())
    next_records: list[dict[str, Any]] = [
        dict(record) if isinstance(record, Mapping) else {} for record in current_records or []
    ]
    index_by_id = _index_by_id(next_records)

    for operation in operations:
        if isinstance(operation, DeleteOperation):
            existing_index = index_by_id.get(operation.id)
            if existing_index is None:
                continue
            del next_records[existing_index]
            index_by_id = _index_by_id(next_records)
            continue

        existing_index = index_by_id.get(operation.id)
        if existing_index is None:
            next_record = {**operation.record, "id": operation.id}
        else:
            next_record = {**next_records[existing_index], **operation.record, "id": operation.id}

        if not format_api_timestamp(next_record.get("createdAt")):
            next_record["createdAt"] = created_at_default

        if existing_index is None:
            next_records.append(next_record)
            index_by_id[operation.id] = len(next_records) - 1
        else:
            next_records[existing_index] = next_record

    return next_records


__all__ = [
    "PATCH_OPERATION_DELETE",
    "PATCH_OPERATION_UPSERT",
    "DeleteOperation",
    "PatchOperation",
    "UpsertOperation",
    "apply_records_patch_operations",
    "parse_patch_operations",
]
