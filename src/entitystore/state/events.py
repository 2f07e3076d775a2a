"""Mutation kinds and server-pushed change events.

A :class:`ChangeEvent` describes a change that happened on the backend
without this process issuing it (the dashboard's ``<event>_created`` /
``_updated`` / ``_deleted`` socket messages). Receiving those messages is
the application's job; only the store is allowed to apply them.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from entitystore.models.record import Record, RecordId


class MutationKind(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    REMOVE = "remove"


class ChangeKind(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class ChangeEvent(BaseModel):
    """A backend-side change to apply to a store's confirmed records."""

    model_config = ConfigDict(frozen=True)

    resource: str = Field(..., description="Resource key")
    kind: ChangeKind
    record: Record | None = Field(default=None, description="Full record for created/updated")
    record_id: RecordId | None = Field(default=None, description="Id for deleted")
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("resource")
    @classmethod
    def _normalize_resource(cls, value: str) -> str:
        resource = value.strip()
        if not resource:
            raise ValueError("resource must be non-empty")
        return resource

    @model_validator(mode="after")
    def _check_target(self) -> ChangeEvent:
        if self.kind is ChangeKind.DELETED:
            if self.record_id is None and self.record is None:
                raise ValueError("deleted events need record_id or record")
        elif self.record is None:
            raise ValueError(f"{self.kind} events need the full record")
        return self

    @property
    def target_id(self) -> RecordId:
        if self.record_id is not None:
            return self.record_id
        assert self.record is not None  # noqa: S101
        return self.record.id

    @classmethod
    def from_wire(cls, resource: str, event_name: str, payload: dict[str, Any]) -> ChangeEvent:
        """Build an event from a ``<name>_created|_updated|_deleted`` message."""
        _, _, suffix = event_name.rpartition("_")
        kind = ChangeKind(suffix)
        if kind is ChangeKind.DELETED:
            return cls(resource=resource, kind=kind, record_id=payload.get("id"))
        return cls(resource=resource, kind=kind, record=Record.model_validate(payload))
