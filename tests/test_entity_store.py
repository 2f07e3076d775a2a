from __future__ import annotations

import asyncio

import pytest
from pydantic import BaseModel

from entitystore.exceptions import ConnectivityError, NotFoundError, StoreConfigError, ValidationError
from entitystore.models.record import Record
from entitystore.models.snapshot import ErrorKind, StoreSnapshot
from entitystore.registry import StoreRegistry
from entitystore.state.broker import SubscriptionBroker
from entitystore.state.events import ChangeEvent, ChangeKind
from entitystore.state.store import EntityStore
from fakes import FakeAdapter


async def _ready(registry: StoreRegistry, key: str) -> EntityStore:
    store = registry.acquire(key)
    await store.drain()
    return store


class Task(BaseModel):
    id: int | None = None
    title: str
    done: bool = False


# ------------------------------------------------------------------
# Scenarios
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_empty_backend_then_create_then_failed_create_rolls_back(adapter: FakeAdapter) -> None:
    registry = StoreRegistry(adapter=adapter)
    tasks = registry.acquire("tasks")
    assert tasks.loading is True

    await tasks.drain()
    assert tasks.records == ()
    assert tasks.loading is False
    assert tasks.error is None

    record = await tasks.create({"title": "T1"})
    assert len(tasks.records) == 1
    assert tasks.records[0].id == record.id == 100
    assert not record.is_provisional

    adapter.fail_next(ConnectivityError("backend down", resource="tasks"))
    handle = tasks.create({"title": "T2"})
    assert len(tasks.records) == 2
    assert tasks.records[0].is_provisional
    with pytest.raises(ConnectivityError):
        await handle
    assert [r.id for r in tasks.records] == [100]
    assert tasks.error is ErrorKind.CONNECTIVITY


@pytest.mark.asyncio
async def test_failed_first_create_leaves_empty_list(adapter: FakeAdapter) -> None:
    tasks = await _ready(StoreRegistry(adapter=adapter), "tasks")

    adapter.fail_next(ConnectivityError("backend down", resource="tasks"))
    handle = tasks.create({"title": "T1"})
    assert len(tasks.records) == 1
    with pytest.raises(ConnectivityError):
        await handle
    assert len(tasks.records) == 0


@pytest.mark.asyncio
async def test_two_consumers_observe_create_without_refresh(adapter: FakeAdapter) -> None:
    registry = StoreRegistry(adapter=adapter)
    first = registry.acquire("campaigns")
    second = registry.acquire("campaigns")
    await first.drain()

    seen_first: list[StoreSnapshot] = []
    seen_second: list[StoreSnapshot] = []
    first.subscribe(seen_first.append)
    second.subscribe(seen_second.append)

    record = await first.create({"name": "Autumn sale"})

    assert seen_first[-1] is seen_second[-1]
    assert seen_second[-1].get(record.id) is not None
    assert adapter.count("list") == 1


@pytest.mark.asyncio
async def test_remove_of_absent_id_succeeds_and_keeps_records(adapter: FakeAdapter) -> None:
    campaigns = await _ready(StoreRegistry(adapter=adapter), "campaigns")
    before = campaigns.records

    await campaigns.remove(42)

    assert campaigns.records == before
    assert campaigns.error is None
    assert campaigns.pending == 0


# ------------------------------------------------------------------
# Optimistic application and rollback
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_failed_create_restores_exact_previous_list(adapter: FakeAdapter) -> None:
    campaigns = await _ready(StoreRegistry(adapter=adapter), "campaigns")
    before = campaigns.records

    adapter.fail_next(ValidationError("name required", resource="campaigns"))
    handle = campaigns.create({"status": "draft"})
    with pytest.raises(ValidationError):
        await handle

    assert campaigns.records == before
    assert campaigns.error is ErrorKind.VALIDATION


@pytest.mark.asyncio
async def test_failed_update_restores_prior_fields(adapter: FakeAdapter) -> None:
    campaigns = await _ready(StoreRegistry(adapter=adapter), "campaigns")

    adapter.fail_next(ConnectivityError("timeout", resource="campaigns"))
    handle = campaigns.update(1, {"status": "paused", "owner": "ana"})
    optimistic = campaigns.get(1)
    assert optimistic is not None
    assert optimistic.model_dump() == {"id": 1, "name": "Spring launch", "status": "paused", "owner": "ana"}

    with pytest.raises(ConnectivityError):
        await handle

    restored = campaigns.get(1)
    assert restored is not None
    assert restored.model_dump() == {"id": 1, "name": "Spring launch", "status": "active"}


@pytest.mark.asyncio
async def test_failed_remove_reinserts_at_original_position(adapter: FakeAdapter) -> None:
    campaigns = await _ready(StoreRegistry(adapter=adapter), "campaigns")

    adapter.fail_next(ConnectivityError("timeout", resource="campaigns"))
    handle = campaigns.remove(1)
    assert campaigns.snapshot.ids == [2]

    with pytest.raises(ConnectivityError):
        await handle
    assert campaigns.snapshot.ids == [1, 2]


@pytest.mark.asyncio
async def test_successful_operation_clears_error(adapter: FakeAdapter) -> None:
    campaigns = await _ready(StoreRegistry(adapter=adapter), "campaigns")

    adapter.fail_next(ConnectivityError("timeout", resource="campaigns"))
    with pytest.raises(ConnectivityError):
        await campaigns.update(2, {"status": "active"})
    assert campaigns.error is ErrorKind.CONNECTIVITY

    await campaigns.update(2, {"status": "active"})
    assert campaigns.error is None


@pytest.mark.asyncio
async def test_update_of_unknown_id_surfaces_not_found(adapter: FakeAdapter) -> None:
    campaigns = await _ready(StoreRegistry(adapter=adapter), "campaigns")
    before = campaigns.records

    with pytest.raises(NotFoundError):
        await campaigns.update(99, {"status": "paused"})
    assert campaigns.records == before
    assert campaigns.error is ErrorKind.NOT_FOUND


# ------------------------------------------------------------------
# Per-id serialization
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_updates_on_same_id_run_in_call_order() -> None:
    adapter = FakeAdapter({"campaigns": [{"id": 1, "status": "active"}]}, delay=0.01)
    campaigns = await _ready(StoreRegistry(adapter=adapter), "campaigns")

    first = campaigns.update(1, {"status": "paused", "budget": 10})
    second = campaigns.update(1, {"status": "archived"})
    optimistic = campaigns.get(1)
    assert optimistic is not None
    assert optimistic.model_dump() == {"id": 1, "status": "archived", "budget": 10}

    await first
    final = await second

    assert [event[0] for event in adapter.events] == ["start", "end", "start", "end"]
    assert adapter.events[0][2] == {"status": "paused", "budget": 10}
    assert final.model_dump() == {"id": 1, "status": "archived", "budget": 10}
    assert campaigns.get(1) == final


@pytest.mark.asyncio
async def test_updates_on_different_ids_run_concurrently() -> None:
    adapter = FakeAdapter({"campaigns": [{"id": 1}, {"id": 2}]}, delay=0.01)
    campaigns = await _ready(StoreRegistry(adapter=adapter), "campaigns")

    await asyncio.gather(
        campaigns.update(1, {"status": "a"}),
        campaigns.update(2, {"status": "b"}),
    )

    assert [event[0] for event in adapter.events] == ["start", "start", "end", "end"]


@pytest.mark.asyncio
async def test_update_issued_against_provisional_id_reaches_canonical_record(adapter: FakeAdapter) -> None:
    tasks = await _ready(StoreRegistry(adapter=adapter), "tasks")
    adapter.gate = asyncio.Event()

    created = tasks.create({"title": "T1"})
    provisional_id = tasks.records[0].id
    updated = tasks.update(provisional_id, {"done": True})
    optimistic = tasks.get(provisional_id)
    assert optimistic is not None
    assert optimistic.model_dump() == {"id": provisional_id, "title": "T1", "done": True}

    adapter.gate.set()
    record = await created
    after = await updated

    assert after.id == record.id == 100
    assert adapter.calls[-1] == ("update", "tasks", 100, {"done": True})
    assert tasks.snapshot.ids == [100]
    assert tasks.get(provisional_id) == after


@pytest.mark.asyncio
async def test_update_on_canonical_id_waits_for_update_issued_on_provisional_id() -> None:
    adapter = FakeAdapter({"tasks": []}, delay=0.02)
    tasks = await _ready(StoreRegistry(adapter=adapter), "tasks")

    created = tasks.create({"title": "T1"})
    early = tasks.update(tasks.records[0].id, {"v": 1})
    record = await created
    late = tasks.update(record.id, {"v": 2})
    await early
    final = await late

    assert adapter.events == [
        ("start", "100", {"v": 1}),
        ("end", "100", {"v": 1}),
        ("start", "100", {"v": 2}),
        ("end", "100", {"v": 2}),
    ]
    assert final.model_dump() == {"id": 100, "title": "T1", "v": 2}


@pytest.mark.asyncio
async def test_cancelled_queued_updates_are_rolled_back(adapter: FakeAdapter) -> None:
    campaigns = await _ready(StoreRegistry(adapter=adapter), "campaigns")
    adapter.gate = asyncio.Event()

    campaigns.update(1, {"status": "paused"})
    campaigns.update(1, {"status": "archived"})
    await asyncio.sleep(0)
    for task in asyncio.all_tasks():
        if task.get_name() == "entitystore:campaigns:update":
            task.cancel()
    await campaigns.drain()

    restored = campaigns.get(1)
    assert restored is not None
    assert restored.model_dump() == {"id": 1, "name": "Spring launch", "status": "active"}
    assert campaigns.pending == 0
    assert campaigns.error is None
    assert adapter.count("update") == 1


@pytest.mark.asyncio
async def test_settled_provisional_ids_are_forgotten_beyond_limit(
    adapter: FakeAdapter, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("entitystore.state.store._ALIAS_LIMIT", 2)
    tasks = await _ready(StoreRegistry(adapter=adapter), "tasks")

    provisional_ids = []
    for title in ("a", "b", "c", "d"):
        handle = tasks.create({"title": title})
        provisional_ids.append(tasks.records[0].id)
        await handle

    assert [tasks.get(p) is None for p in provisional_ids] == [True, True, False, False]
    assert tasks.snapshot.ids == [103, 102, 101, 100]


@pytest.mark.asyncio
async def test_failed_provisional_ids_are_forgotten_beyond_limit(
    adapter: FakeAdapter, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("entitystore.state.store._ALIAS_LIMIT", 2)
    tasks = await _ready(StoreRegistry(adapter=adapter), "tasks")

    provisional_ids = []
    for title in ("a", "b", "c"):
        adapter.fail_next(ConnectivityError("down", resource="tasks"))
        handle = tasks.create({"title": title})
        provisional_ids.append(tasks.records[0].id)
        with pytest.raises(ConnectivityError):
            await handle

    with pytest.raises(NotFoundError):
        await tasks.update(provisional_ids[-1], {"done": True})
    assert adapter.count("update") == 0

    # The oldest id is no longer known as provisional, so the backend answers for it.
    with pytest.raises(NotFoundError):
        await tasks.update(provisional_ids[0], {"done": True})
    assert adapter.count("update") == 1


@pytest.mark.asyncio
async def test_update_after_failed_create_is_not_found(adapter: FakeAdapter) -> None:
    tasks = await _ready(StoreRegistry(adapter=adapter), "tasks")

    adapter.fail_next(ConnectivityError("down", resource="tasks"))
    created = tasks.create({"title": "T1"})
    updated = tasks.update(tasks.records[0].id, {"done": True})

    with pytest.raises(ConnectivityError):
        await created
    with pytest.raises(NotFoundError):
        await updated
    assert tasks.records == ()
    assert adapter.count("update") == 0


# ------------------------------------------------------------------
# Remove
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_remove_twice_is_idempotent(adapter: FakeAdapter) -> None:
    campaigns = await _ready(StoreRegistry(adapter=adapter), "campaigns")

    await campaigns.remove(1)
    after_first = campaigns.records
    await campaigns.remove(1)

    assert campaigns.records == after_first
    assert campaigns.snapshot.ids == [2]


@pytest.mark.asyncio
async def test_remove_matches_ids_by_string_form(adapter: FakeAdapter) -> None:
    campaigns = await _ready(StoreRegistry(adapter=adapter), "campaigns")

    await campaigns.remove("2")

    assert campaigns.snapshot.ids == [1]


# ------------------------------------------------------------------
# Refresh protocol
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_refresh_after_create_contains_canonical_record(adapter: FakeAdapter) -> None:
    tasks = await _ready(StoreRegistry(adapter=adapter), "tasks")

    record = await tasks.create({"title": "T1"})
    await tasks.refresh()

    assert tasks.snapshot.ids == [record.id]
    assert not any(r.is_provisional for r in tasks.records)


@pytest.mark.asyncio
async def test_refresh_replaces_records_wholesale(adapter: FakeAdapter) -> None:
    campaigns = await _ready(StoreRegistry(adapter=adapter), "campaigns")
    adapter.data["campaigns"] = adapter.data["campaigns"][1:]

    snapshot = await campaigns.refresh()

    assert snapshot.ids == [2]
    assert campaigns.snapshot is snapshot
    assert campaigns.is_stale is False


class _HeldListAdapter(FakeAdapter):
    """Holds the answer of one list call, read at call time, until released."""

    def __init__(self, initial: dict[str, list[dict[str, object]]], *, hold_call: int) -> None:
        super().__init__(initial)
        self.hold_call = hold_call
        self.release = asyncio.Event()

    async def list(self, key: str) -> list[Record]:
        self.calls.append(("list", key))
        records = list(self.data.get(key, []))
        if self.count("list") == self.hold_call:
            await self.release.wait()
        return records


@pytest.mark.asyncio
async def test_older_list_response_does_not_overwrite_newer() -> None:
    adapter = _HeldListAdapter({"campaigns": [{"id": 1}, {"id": 2}]}, hold_call=2)
    campaigns = await _ready(StoreRegistry(adapter=adapter), "campaigns")

    older = campaigns.refresh()
    await asyncio.sleep(0)
    adapter.data["campaigns"] = adapter.data["campaigns"][1:]
    newer = await campaigns.refresh()
    assert newer.ids == [2]
    assert campaigns.loading is True

    adapter.release.set()
    await older

    assert campaigns.snapshot.ids == [2]
    assert campaigns.loading is False


@pytest.mark.asyncio
async def test_refresh_during_create_hides_overlay_until_create_settles(adapter: FakeAdapter) -> None:
    tasks = await _ready(StoreRegistry(adapter=adapter), "tasks")
    gate = asyncio.Event()
    adapter.gate = gate

    created = tasks.create({"title": "T1"})
    await asyncio.sleep(0)
    adapter.gate = None
    snapshot = await tasks.refresh()

    assert snapshot.ids == []
    assert snapshot.pending == 1

    gate.set()
    record = await created

    assert tasks.snapshot.ids == [record.id]
    assert tasks.pending == 0


@pytest.mark.asyncio
async def test_refresh_failure_keeps_last_good_records(adapter: FakeAdapter) -> None:
    campaigns = await _ready(StoreRegistry(adapter=adapter), "campaigns")
    before = campaigns.records

    adapter.fail_next(ConnectivityError("neither backend reachable", resource="campaigns"))
    with pytest.raises(ConnectivityError):
        await campaigns.refresh()

    assert campaigns.records == before
    assert campaigns.loading is False
    assert campaigns.error is ErrorKind.CONNECTIVITY


@pytest.mark.asyncio
async def test_initial_load_failure_is_reported_in_snapshot() -> None:
    adapter = FakeAdapter()
    adapter.fail_next(ConnectivityError("down", resource="users"))
    users = await _ready(StoreRegistry(adapter=adapter), "users")

    assert users.records == ()
    assert users.loading is False
    assert users.error is ErrorKind.CONNECTIVITY


@pytest.mark.asyncio
async def test_loading_flag_is_published_to_subscribers(adapter: FakeAdapter) -> None:
    registry = StoreRegistry(adapter=adapter)
    campaigns = registry.acquire("campaigns")
    seen: list[tuple[bool, int]] = []
    campaigns.subscribe(lambda snap: seen.append((snap.loading, len(snap.records))))

    await campaigns.drain()

    assert seen == [(True, 0), (False, 2)]


# ------------------------------------------------------------------
# Handles
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_detached_create_still_completes(adapter: FakeAdapter) -> None:
    tasks = await _ready(StoreRegistry(adapter=adapter), "tasks")

    handle = tasks.create({"title": "T1"})
    handle.detach()
    await tasks.drain()

    assert tasks.snapshot.ids == [100]
    assert handle.done()
    with pytest.raises(RuntimeError):
        await handle


@pytest.mark.asyncio
async def test_cancelling_the_waiter_does_not_abort_the_write() -> None:
    adapter = FakeAdapter({"tasks": []}, delay=0.02)
    tasks = await _ready(StoreRegistry(adapter=adapter), "tasks")

    handle = tasks.create({"title": "T1"})

    async def _wait() -> object:
        return await handle

    waiter = asyncio.create_task(_wait())
    await asyncio.sleep(0)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    await tasks.drain()
    assert adapter.count("create") == 1
    assert tasks.snapshot.ids == [100]


# ------------------------------------------------------------------
# Input validation and schemas
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_rejects_non_mapping_without_touching_records(adapter: FakeAdapter) -> None:
    tasks = await _ready(StoreRegistry(adapter=adapter), "tasks")
    generation = tasks.generation

    with pytest.raises(ValidationError):
        tasks.create(["title", "T1"])  # type: ignore[arg-type]

    assert tasks.generation == generation
    assert adapter.count("create") == 0


@pytest.mark.asyncio
async def test_create_validates_against_bound_schema(adapter: FakeAdapter) -> None:
    tasks = await _ready(StoreRegistry(adapter=adapter), "tasks")

    with pytest.raises(ValidationError):
        tasks.create({"title": 5}, schema=Task)

    record = await tasks.create({"title": "T1"}, schema=Task)
    assert adapter.calls[-1] == ("create", "tasks", {"title": "T1", "done": False})
    assert tasks.records_as(Task) == [Task(id=record.id, title="T1", done=False)]


@pytest.mark.asyncio
async def test_update_validates_merged_record_against_schema(adapter: FakeAdapter) -> None:
    tasks = await _ready(StoreRegistry(adapter=adapter), "tasks")
    record = await tasks.create({"title": "T1"}, schema=Task)

    with pytest.raises(ValidationError):
        tasks.update(record.id, {"done": "not-a-bool"}, schema=Task)


@pytest.mark.asyncio
async def test_patch_cannot_change_id(adapter: FakeAdapter) -> None:
    campaigns = await _ready(StoreRegistry(adapter=adapter), "campaigns")

    with pytest.raises(ValidationError):
        campaigns.update(1, {"id": 7})
    with pytest.raises(ValidationError):
        campaigns.remove(True)  # type: ignore[arg-type]


def test_operations_require_running_loop() -> None:
    store = EntityStore("tasks", FakeAdapter(), SubscriptionBroker())

    with pytest.raises(StoreConfigError):
        store.refresh()


# ------------------------------------------------------------------
# Pushed change events
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_change_events_update_confirmed_records(adapter: FakeAdapter) -> None:
    campaigns = await _ready(StoreRegistry(adapter=adapter), "campaigns")

    campaigns.apply_event(ChangeEvent(resource="campaigns", kind=ChangeKind.CREATED, record={"id": 3, "name": "New"}))
    campaigns.apply_event(
        ChangeEvent(resource="campaigns", kind=ChangeKind.UPDATED, record={"id": 1, "name": "Renamed"})
    )
    campaigns.apply_event(ChangeEvent(resource="campaigns", kind=ChangeKind.DELETED, record_id=2))

    assert campaigns.snapshot.ids == [3, 1]
    renamed = campaigns.get(1)
    assert renamed is not None
    assert renamed.model_dump() == {"id": 1, "name": "Renamed"}
    assert adapter.count("list") == 1


@pytest.mark.asyncio
async def test_change_event_for_other_resource_is_rejected(adapter: FakeAdapter) -> None:
    campaigns = await _ready(StoreRegistry(adapter=adapter), "campaigns")

    with pytest.raises(ValueError):
        campaigns.apply_event(ChangeEvent(resource="tasks", kind=ChangeKind.DELETED, record_id=1))
