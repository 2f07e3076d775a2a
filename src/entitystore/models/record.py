"""Generic record model and the shallow-merge used for patches.

A record is "a unique, comparable ``id`` plus an opaque payload". The store
never interprets the payload; concrete per-resource schemas are bound at the
call site (see :meth:`entitystore.state.store.EntityStore.records_as`).
"""

from __future__ import annotations

import secrets
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, StrictInt, StrictStr

RecordId = StrictInt | StrictStr
"""Record ids are ints or strings. ``bool`` is rejected."""

PROVISIONAL_ID_PREFIX = "tmp_"


class Record(BaseModel):
    """One record of a resource collection.

    Only ``id`` is declared; every other field is kept as an extra field
    exactly as received.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    id: RecordId

    def payload(self) -> dict[str, Any]:
        """All fields except ``id``."""
        return self.model_dump(exclude={"id"})

    @property
    def is_provisional(self) -> bool:
        return is_provisional_id(self.id)


def id_key(record_id: RecordId) -> str:
    """Canonical comparison key for an id (``1`` and ``"1"`` are the same record)."""
    return str(record_id)


def same_id(left: RecordId, right: RecordId) -> bool:
    return id_key(left) == id_key(right)


def new_provisional_id() -> str:
    return f"{PROVISIONAL_ID_PREFIX}{secrets.token_hex(8)}"


def is_provisional_id(record_id: RecordId) -> bool:
    return isinstance(record_id, str) and record_id.startswith(PROVISIONAL_ID_PREFIX)


def index_of(records: list[Record] | tuple[Record, ...], record_id: RecordId) -> int | None:
    """Position of the record with *record_id*, or ``None``."""
    key = id_key(record_id)
    for index, record in enumerate(records):
        if id_key(record.id) == key:
            return index
    return None


def merge_patch(record: Record, patch: Mapping[str, Any]) -> Record:
    """Shallow-merge *patch* into *record* and return the new record.

    Keys present in the patch overwrite; nested values are replaced, not
    merged. The patch may repeat the record's id but never change it.
    """
    if "id" in patch and not same_id(patch["id"], record.id):
        raise ValueError(f"patch cannot change id {record.id!r} to {patch['id']!r}")
    merged = record.model_dump()
    merged.update(patch)
    merged["id"] = record.id
    return Record.model_validate(merged)
