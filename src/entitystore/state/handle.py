"""Awaitable handles returned by store operations."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Generator
from typing import Any, Generic, TypeVar

from entitystore.models.record import RecordId

_logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationHandle(Generic[T]):
    """Result of issuing a store operation.

    The optimistic effect is already visible when the handle is returned;
    awaiting it yields the confirmed result or raises the operation's error.

    Cancelling a task that awaits the handle does not abort the operation:
    a write already sent to the backend always runs to completion.
    :meth:`detach` drops delivery of the outcome to this caller (the store
    still applies it).
    """

    def __init__(
        self,
        task: asyncio.Task[T],
        *,
        operation: str,
        resource: str,
        record_id: RecordId | None = None,
    ) -> None:
        self._task = task
        self.operation = operation
        self.resource = resource
        self.record_id = record_id
        self._detached = False
        task.add_done_callback(self._retrieve)

    def _retrieve(self, task: asyncio.Task[T]) -> None:
        # Mark the exception as retrieved so unawaited failures do not spam
        # "Task exception was never retrieved"; the store already recorded it.
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and self._detached:
            _logger.debug("Detached %s on %s failed: %s", self.operation, self.resource, exc)

    def __await__(self) -> Generator[Any, None, T]:
        if self._detached:
            raise RuntimeError(f"{self.operation} handle on {self.resource!r} was detached")
        return asyncio.shield(self._task).__await__()

    def detach(self) -> None:
        """Stop caring about the outcome. The underlying write is not cancelled."""
        self._detached = True

    @property
    def detached(self) -> bool:
        return self._detached

    def done(self) -> bool:
        return self._task.done()

    def result(self) -> T:
        """Result of a finished operation (raises its error, like :meth:`asyncio.Task.result`)."""
        return self._task.result()

    def __repr__(self) -> str:
        state = "done" if self._task.done() else "pending"
        return f"<OperationHandle {self.operation} {self.resource}:{self.record_id} {state}>"
