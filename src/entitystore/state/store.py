"""Per-resource entity store.

This is the only component allowed to change a resource's cached records.

The store keeps two things:

* the *confirmed* list, i.e. the last record list the adapter vouched for,
  updated by refreshes, by confirmed mutations and by pushed change events;
* an ordered *overlay* of mutations that have been issued but not settled.

The public snapshot is always the confirmed list with the visible overlay
applied on top, recomputed as a whole. Rolling a failed mutation back is
removing it from the overlay, which restores exactly the state the other
operations imply.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import Callable, Coroutine, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from entitystore._constants import DEFAULT_STALE_AFTER
from entitystore._redact import redact_for_log
from entitystore.adapters.base import PersistenceAdapter, require_mapping
from entitystore.exceptions import (
    NotFoundError,
    StoreConfigError,
    StoreOperationError,
    ValidationError,
)
from entitystore.models.record import (
    Record,
    RecordId,
    id_key,
    index_of,
    merge_patch,
    new_provisional_id,
    same_id,
)
from entitystore.models.snapshot import ErrorKind, StoreSnapshot
from entitystore.state.broker import Listener, Subscription, SubscriptionBroker
from entitystore.state.events import ChangeEvent, ChangeKind, MutationKind
from entitystore.state.handle import OperationHandle
from entitystore.state.serializer import KeyedSerializer, SerialSlot

_logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

# Provisional ids remembered after their create finished, oldest dropped first.
_ALIAS_LIMIT = 256


@dataclass(slots=True)
class _PendingMutation:
    """An issued, unsettled mutation in the overlay."""

    op_id: int
    kind: MutationKind
    record_id: RecordId
    payload: dict[str, Any] = field(default_factory=dict)
    # Cleared when a refresh replaces the confirmed list while in flight.
    visible: bool = True


def _error_kind(exc: BaseException) -> ErrorKind:
    if isinstance(exc, StoreOperationError):
        return exc.kind
    return ErrorKind.INTERNAL


def _check_record_id(resource: str, record_id: Any) -> RecordId:
    if isinstance(record_id, bool) or not isinstance(record_id, (int, str)):
        raise ValidationError(f"{resource!r}: record id must be an int or str, got {record_id!r}", resource=resource)
    return record_id


def _validate_with(schema: type[BaseModel], data: Mapping[str, Any], *, resource: str) -> dict[str, Any]:
    try:
        model = schema.model_validate(dict(data))
    except PydanticValidationError as exc:
        raise ValidationError(f"{resource!r}: {exc}", resource=resource) from exc
    return model.model_dump(mode="json")


def _dedupe(resource: str, records: list[Record]) -> list[Record]:
    seen: set[str] = set()
    unique: list[Record] = []
    for record in records:
        key = id_key(record.id)
        if key in seen:
            _logger.warning("Dropping duplicate id %r in %s list", record.id, resource)
            continue
        seen.add(key)
        unique.append(record)
    return unique


class EntityStore:
    """Live, cached, optimistically mutated record list of one resource.

    Obtain instances from :meth:`entitystore.registry.StoreRegistry.acquire`;
    every caller acquiring the same key shares one store.

    Usage::

        tasks = registry.acquire("tasks")
        with tasks.subscribe(render):
            record = await tasks.create({"title": "T1"})
            await tasks.update(record.id, {"done": True})
    """

    def __init__(
        self,
        key: str,
        adapter: PersistenceAdapter,
        broker: SubscriptionBroker,
        *,
        clock: Callable[[], float] = time.monotonic,
        stale_after: float = DEFAULT_STALE_AFTER,
    ) -> None:
        self._key = key
        self._adapter = adapter
        self._broker = broker
        self._clock = clock
        self._stale_after = stale_after
        self._confirmed: list[Record] = []
        self._overlay: dict[int, _PendingMutation] = {}
        # provisional id -> canonical id, for creates that succeeded
        self._aliases: dict[str, RecordId] = {}
        # canonical id key -> provisional id, the serializer key of that record
        self._serial_keys: dict[str, str] = {}
        # provisional ids whose create is in flight or failed
        self._provisional: dict[str, None] = {}
        self._serializer = KeyedSerializer()
        self._op_ids = itertools.count(1)
        self._fetch_seq = 0
        self._applied_seq = 0
        self._fetching = 0
        self._error: ErrorKind | None = None
        self._refreshed_at: float | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._snapshot = StoreSnapshot(resource=key)

    def __repr__(self) -> str:
        snap = self._snapshot
        return f"<EntityStore {self._key} records={len(snap.records)} generation={snap.generation}>"

    # ------------------------------------------------------------------
    # Read surface
    # ------------------------------------------------------------------

    @property
    def key(self) -> str:
        return self._key

    @property
    def snapshot(self) -> StoreSnapshot:
        """The current snapshot. Shared by every consumer of this key."""
        return self._snapshot

    @property
    def records(self) -> tuple[Record, ...]:
        return self._snapshot.records

    @property
    def loading(self) -> bool:
        return self._snapshot.loading

    @property
    def error(self) -> ErrorKind | None:
        return self._snapshot.error

    @property
    def pending(self) -> int:
        return self._snapshot.pending

    @property
    def generation(self) -> int:
        return self._snapshot.generation

    def get(self, record_id: RecordId) -> Record | None:
        return self._snapshot.get(self._resolve(record_id))

    def records_as(self, schema: type[M]) -> list[M]:
        """Parse the current records with a caller-supplied pydantic schema."""
        parsed: list[M] = []
        for record in self._snapshot.records:
            try:
                parsed.append(schema.model_validate(record.model_dump()))
            except PydanticValidationError as exc:
                raise ValidationError(
                    f"{self._key!r} record {record.id!r} does not match {schema.__name__}: {exc}",
                    resource=self._key,
                    record_id=record.id,
                ) from exc
        return parsed

    def subscribe(self, listener: Listener) -> Subscription:
        """Receive every new snapshot of this resource; the current one is replayed immediately."""
        return self._broker.subscribe(self._key, listener, current=self._snapshot)

    @property
    def subscriber_count(self) -> int:
        return self._broker.subscriber_count(self._key)

    # ------------------------------------------------------------------
    # Staleness
    # ------------------------------------------------------------------

    @property
    def refreshed_at(self) -> float | None:
        """Clock value of the last successful list, ``None`` before the first."""
        return self._refreshed_at

    @property
    def is_stale(self) -> bool:
        if self._refreshed_at is None:
            return True
        if self._stale_after <= 0:
            return False
        return self._clock() - self._refreshed_at > self._stale_after

    def mark_stale(self) -> None:
        """Keep the records but make the next :meth:`is_stale` check true."""
        self._refreshed_at = None

    # ------------------------------------------------------------------
    # Refresh protocol
    # ------------------------------------------------------------------

    def refresh(self) -> OperationHandle[StoreSnapshot]:
        """Re-list the resource and replace the confirmed records wholesale.

        Optimistic overlays of mutations still in flight are dropped; their
        confirmed results are applied when they settle. A response older
        than one already applied is discarded.
        """
        self._require_loop()
        self._fetch_seq += 1
        self._fetching += 1
        self._publish()
        return self._spawn(self._run_refresh(self._fetch_seq), "refresh")

    async def _run_refresh(self, seq: int) -> StoreSnapshot:
        try:
            records = await self._adapter.list(self._key)
        except asyncio.CancelledError:
            self._fetching -= 1
            self._publish()
            raise
        except Exception as exc:
            self._fetching -= 1
            if seq > self._applied_seq:
                self._error = _error_kind(exc)
            _logger.debug("List of %s failed: %s", self._key, exc)
            self._publish()
            raise

        self._fetching -= 1
        if seq <= self._applied_seq:
            _logger.debug("Discarding out-of-order list response for %s", self._key)
            self._publish()
            return self._snapshot

        self._applied_seq = seq
        self._confirmed = _dedupe(self._key, list(records))
        for mutation in self._overlay.values():
            mutation.visible = False
        self._refreshed_at = self._clock()
        self._error = None
        _logger.debug("Listed %d %s record(s)", len(self._confirmed), self._key)
        self._publish()
        return self._snapshot

    # ------------------------------------------------------------------
    # Mutation pipeline
    # ------------------------------------------------------------------

    def create(self, partial: Mapping[str, Any], *, schema: type[BaseModel] | None = None) -> OperationHandle[Record]:
        """Insert a provisional record now, persist it, then swap in the canonical one.

        Raises :class:`ValidationError` immediately when *partial* is not a
        mapping or does not satisfy *schema*.
        """
        self._require_loop()
        payload = require_mapping(partial, resource=self._key, what="create payload")
        if schema is not None:
            payload = _validate_with(schema, payload, resource=self._key)
            if payload.get("id") is None:
                payload.pop("id", None)
        if payload.get("id") is not None:
            _check_record_id(self._key, payload["id"])

        provisional_id = new_provisional_id()
        self._provisional[provisional_id] = None
        slot = self._serializer.reserve(provisional_id)
        mutation = self._begin(MutationKind.CREATE, provisional_id, payload)
        return self._spawn(self._run_create(mutation, slot), "create", provisional_id)

    def update(
        self,
        record_id: RecordId,
        patch: Mapping[str, Any],
        *,
        schema: type[BaseModel] | None = None,
    ) -> OperationHandle[Record]:
        """Merge *patch* into the cached record now, then persist it.

        With *schema*, the merged record must validate against it.
        """
        self._require_loop()
        record_id = _check_record_id(self._key, record_id)
        payload = require_mapping(patch, resource=self._key, what="update patch")
        if "id" in payload:
            if not same_id(payload["id"], record_id):
                raise ValidationError(
                    f"{self._key!r}: patch cannot change id {record_id!r} to {payload['id']!r}",
                    resource=self._key,
                    record_id=record_id,
                )
            del payload["id"]
        if schema is not None:
            current = self.get(record_id)
            if current is not None:
                _validate_with(schema, merge_patch(current, payload).model_dump(), resource=self._key)

        slot = self._serializer.reserve(self._serial_key(record_id))
        mutation = self._begin(MutationKind.UPDATE, record_id, payload)
        return self._spawn(self._run_update(mutation, slot), "update", record_id)

    def remove(self, record_id: RecordId) -> OperationHandle[None]:
        """Filter the record out now, then delete it. Absent ids succeed."""
        self._require_loop()
        record_id = _check_record_id(self._key, record_id)
        slot = self._serializer.reserve(self._serial_key(record_id))
        mutation = self._begin(MutationKind.REMOVE, record_id)
        return self._spawn(self._run_remove(mutation, slot), "remove", record_id)

    async def _run_create(self, mutation: _PendingMutation, slot: SerialSlot) -> Record:
        provisional_id = id_key(mutation.record_id)
        try:
            async with slot:
                canonical = await self._adapter.create(self._key, dict(mutation.payload))
                del self._provisional[provisional_id]
                self._aliases[provisional_id] = canonical.id
                # Later operations on the canonical id queue behind those issued on the provisional one.
                self._serial_keys[id_key(canonical.id)] = provisional_id
                self._upsert_confirmed(canonical, front=True)
                self._settle(mutation)
                return canonical
        except BaseException as exc:
            self._rollback(mutation, exc)
            raise
        finally:
            self._prune_provisional()

    async def _run_update(self, mutation: _PendingMutation, slot: SerialSlot) -> Record:
        try:
            async with slot:
                target = self._resolve(mutation.record_id)
                if id_key(target) in self._provisional:
                    raise NotFoundError(
                        f"{self._key!r} record {mutation.record_id!r} was never created",
                        resource=self._key,
                        record_id=mutation.record_id,
                    )
                updated = await self._adapter.update(self._key, target, dict(mutation.payload))
        except BaseException as exc:
            self._rollback(mutation, exc)
            raise
        index = index_of(self._confirmed, updated.id)
        if index is not None:
            self._confirmed[index] = updated
        self._settle(mutation)
        return updated

    async def _run_remove(self, mutation: _PendingMutation, slot: SerialSlot) -> None:
        try:
            async with slot:
                target = self._resolve(mutation.record_id)
                if id_key(target) in self._provisional:
                    self._settle(mutation)
                    return
                try:
                    await self._adapter.remove(self._key, target)
                except NotFoundError:
                    _logger.debug("%s %r already absent", self._key, target)
        except BaseException as exc:
            self._rollback(mutation, exc)
            raise
        index = index_of(self._confirmed, target)
        if index is not None:
            del self._confirmed[index]
        self._settle(mutation)

    def _begin(
        self,
        kind: MutationKind,
        record_id: RecordId,
        payload: dict[str, Any] | None = None,
    ) -> _PendingMutation:
        mutation = _PendingMutation(next(self._op_ids), kind, record_id, payload or {})
        self._overlay[mutation.op_id] = mutation
        if _logger.isEnabledFor(logging.DEBUG):
            _logger.debug("%s %s %r %s", kind, self._key, record_id, redact_for_log(mutation.payload))
        self._publish()
        return mutation

    def _settle(self, mutation: _PendingMutation) -> None:
        self._overlay.pop(mutation.op_id, None)
        self._error = None
        self._publish()

    def _rollback(self, mutation: _PendingMutation, exc: BaseException) -> None:
        self._overlay.pop(mutation.op_id, None)
        if not isinstance(exc, asyncio.CancelledError):
            self._error = _error_kind(exc)
            _logger.debug("%s %s %r rolled back: %s", mutation.kind, self._key, mutation.record_id, exc)
        self._publish()

    # ------------------------------------------------------------------
    # Pushed change events
    # ------------------------------------------------------------------

    def apply_event(self, event: ChangeEvent) -> None:
        """Apply a backend-side change to the confirmed records."""
        if event.resource != self._key:
            raise ValueError(f"event for {event.resource!r} applied to store {self._key!r}")
        if event.kind is ChangeKind.CREATED:
            assert event.record is not None  # noqa: S101
            self._upsert_confirmed(event.record, front=True)
        elif event.kind is ChangeKind.UPDATED:
            assert event.record is not None  # noqa: S101
            index = index_of(self._confirmed, event.record.id)
            if index is not None:
                self._confirmed[index] = event.record
        else:
            index = index_of(self._confirmed, event.target_id)
            if index is not None:
                del self._confirmed[index]
        self._publish()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        try:
            return asyncio.get_running_loop()
        except RuntimeError as exc:
            raise StoreConfigError(f"{self._key!r}: store operations need a running event loop") from exc

    def _resolve(self, record_id: RecordId) -> RecordId:
        """Map a provisional id to its canonical id once the create has settled."""
        return self._aliases.get(id_key(record_id), record_id)

    def _serial_key(self, record_id: RecordId) -> str:
        """Serializer key of a record: the first id the store knew it by."""
        key = id_key(self._resolve(record_id))
        return self._serial_keys.get(key, key)

    def _prune_provisional(self) -> None:
        """Forget the oldest provisional ids that no queued operation still refers to."""
        for table in (self._aliases, self._provisional):
            for provisional_id in list(table):
                if len(table) <= _ALIAS_LIMIT:
                    break
                if self._serializer.busy(provisional_id):
                    continue
                canonical = table.pop(provisional_id)
                if canonical is not None and self._serial_keys.get(id_key(canonical)) == provisional_id:
                    del self._serial_keys[id_key(canonical)]

    def _upsert_confirmed(self, record: Record, *, front: bool) -> None:
        index = index_of(self._confirmed, record.id)
        if index is not None:
            self._confirmed[index] = record
        elif front:
            self._confirmed.insert(0, record)
        else:
            self._confirmed.append(record)

    def _project(self) -> tuple[Record, ...]:
        records = list(self._confirmed)
        for mutation in self._overlay.values():
            if not mutation.visible:
                continue
            if mutation.kind is MutationKind.CREATE:
                records.insert(0, Record.model_validate({**mutation.payload, "id": mutation.record_id}))
                continue
            index = index_of(records, self._resolve(mutation.record_id))
            if index is None:
                continue
            if mutation.kind is MutationKind.UPDATE:
                records[index] = merge_patch(records[index], mutation.payload)
            else:
                del records[index]
        return tuple(records)

    def _publish(self) -> None:
        candidate = StoreSnapshot(
            resource=self._key,
            records=self._project(),
            loading=self._fetching > 0,
            pending=len(self._overlay),
            error=self._error,
            generation=self._snapshot.generation + 1,
        )
        if candidate.same_state(self._snapshot):
            return
        self._snapshot = candidate
        self._broker.publish(self._key, candidate)

    def _spawn(
        self,
        coro: Coroutine[Any, Any, T],
        operation: str,
        record_id: RecordId | None = None,
    ) -> OperationHandle[T]:
        task = asyncio.get_running_loop().create_task(coro, name=f"entitystore:{self._key}:{operation}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return OperationHandle(task, operation=operation, resource=self._key, record_id=record_id)

    async def drain(self) -> None:
        """Wait until every operation issued so far (and any issued meanwhile) has finished."""
        while self._tasks:
            await asyncio.gather(*tuple(self._tasks), return_exceptions=True)
