"""Custom exception hierarchy for entitystore."""

from __future__ import annotations

from typing import ClassVar

from entitystore.models.snapshot import ErrorKind
from entitystore.models.record import RecordId


class EntityStoreError(Exception):
    """Base exception for all entitystore errors."""


class StoreConfigError(EntityStoreError):
    """Invalid or missing configuration, or registry used before setup."""


class StoreOperationError(EntityStoreError):
    """A list/create/update/remove operation failed.

    Every subclass maps to one :class:`ErrorKind`, which is what a store
    snapshot exposes as its ``error`` after the failure.
    """

    kind: ClassVar[ErrorKind] = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        resource: str = "",
        record_id: RecordId | None = None,
        status_code: int | None = None,
    ) -> None:
        self.resource = resource
        self.record_id = record_id
        self.status_code = status_code
        super().__init__(message)


class ValidationError(StoreOperationError):
    """Malformed create/update payload. Not retried; the caller must fix the input."""

    kind = ErrorKind.VALIDATION


class NotFoundError(StoreOperationError):
    """The operation referenced an id absent from the backend."""

    kind = ErrorKind.NOT_FOUND


class ConnectivityError(StoreOperationError):
    """No backend could be reached (network failure, timeout, unwritable disk).

    Retryable by the caller, typically through ``refresh()``.
    """

    kind = ErrorKind.CONNECTIVITY


class ConflictError(StoreOperationError):
    """The remote service rejected the write as conflicting (HTTP 409).

    The store performs no concurrent-edit detection of its own; this only
    carries a server-side rejection upward.
    """

    kind = ErrorKind.CONFLICT


class RemoteServiceError(StoreOperationError):
    """The remote service answered, but not with something usable.

    Covers unexpected HTTP statuses, undecodable JSON and bodies of the
    wrong shape.
    """

    kind = ErrorKind.REMOTE
