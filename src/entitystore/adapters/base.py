"""Persistence adapter interface and shared payload helpers."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from pydantic import ValidationError as PydanticValidationError

from entitystore.exceptions import StoreOperationError, ValidationError
from entitystore.models.record import Record, RecordId


class PersistenceAdapter(Protocol):
    """Uniform list/create/update/remove over one backend.

    ``list`` raises ``ConnectivityError`` when the backend is unreachable,
    ``create`` raises ``ValidationError`` on a malformed payload, ``update``
    raises ``NotFoundError`` for an absent id and ``remove`` treats an absent
    id as success.
    """

    async def list(self, key: str) -> list[Record]: ...

    async def create(self, key: str, partial: Mapping[str, Any]) -> Record: ...

    async def update(self, key: str, record_id: RecordId, patch: Mapping[str, Any]) -> Record: ...

    async def remove(self, key: str, record_id: RecordId) -> None: ...


def require_mapping(value: Any, *, resource: str, what: str) -> dict[str, Any]:
    """Return *value* as a plain dict or raise :class:`ValidationError`."""
    if not isinstance(value, Mapping):
        raise ValidationError(
            f"{what} for {resource!r} must be a mapping, got {type(value).__name__}",
            resource=resource,
        )
    result: dict[str, Any] = {}
    for field_name, field_value in value.items():
        if not isinstance(field_name, str):
            raise ValidationError(f"{what} for {resource!r} has a non-string key {field_name!r}", resource=resource)
        result[field_name] = field_value
    return result


def parse_record(
    data: Any,
    *,
    resource: str,
    error_cls: type[StoreOperationError] = ValidationError,
) -> Record:
    """Validate one backend item as a :class:`Record`.

    *error_cls* lets the remote adapter report bad server bodies as
    ``RemoteServiceError`` while local payload problems stay validation
    errors.
    """
    if not isinstance(data, Mapping):
        raise error_cls(f"{resource!r} item is not an object: {data!r:.80}", resource=resource)
    try:
        return Record.model_validate(dict(data))
    except PydanticValidationError as exc:
        raise error_cls(f"{resource!r} item is not a valid record: {exc.errors()[0]['msg']}", resource=resource) from exc
