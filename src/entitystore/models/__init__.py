"""Pydantic models shared by every layer of the store."""

from entitystore.models.record import (
    PROVISIONAL_ID_PREFIX,
    Record,
    RecordId,
    id_key,
    index_of,
    is_provisional_id,
    merge_patch,
    new_provisional_id,
    same_id,
)
from entitystore.models.snapshot import ErrorKind, StoreSnapshot

__all__ = [
    "PROVISIONAL_ID_PREFIX",
    "ErrorKind",
    "Record",
    "RecordId",
    "StoreSnapshot",
    "id_key",
    "index_of",
    "is_provisional_id",
    "merge_patch",
    "new_provisional_id",
    "same_id",
]
