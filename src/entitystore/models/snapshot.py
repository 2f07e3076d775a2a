"""Immutable per-resource snapshots published to consumers."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from entitystore.models.record import Record, RecordId, index_of


class ErrorKind(StrEnum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONNECTIVITY = "connectivity"
    CONFLICT = "conflict"
    REMOTE = "remote"
    INTERNAL = "internal"


class StoreSnapshot(BaseModel):
    """The atomic ``{records, loading, error}`` state of one resource.

    Parameters
    ----------
    resource : str
        Resource key the snapshot belongs to.
    records : tuple[Record, ...]
        Ordered records, optimistic mutations already applied.
    loading : bool
        ``True`` while a list/refresh for this resource is outstanding.
    pending : int
        Number of mutations not yet confirmed or rolled back.
    error : ErrorKind or None
        Kind of the most recent failure, cleared by the next success.
    generation : int
        Incremented for every snapshot the store publishes.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    resource: str
    records: tuple[Record, ...] = Field(default_factory=tuple)
    loading: bool = False
    pending: int = 0
    error: ErrorKind | None = None
    generation: int = 0

    def get(self, record_id: RecordId) -> Record | None:
        index = index_of(self.records, record_id)
        return None if index is None else self.records[index]

    @property
    def ids(self) -> list[RecordId]:
        return [record.id for record in self.records]

    def same_state(self, other: StoreSnapshot) -> bool:
        """Equal in everything a consumer can observe except ``generation``."""
        return (
            self.records == other.records
            and self.loading == other.loading
            and self.pending == other.pending
            and self.error == other.error
        )
