"""Application-owned registry of entity stores."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import Callable, Iterator
from typing import Any

import aiohttp

from entitystore.adapters import build_adapter
from entitystore.adapters.base import PersistenceAdapter
from entitystore.config import StoreConfig
from entitystore.exceptions import StoreConfigError
from entitystore.models.snapshot import StoreSnapshot
from entitystore.state.broker import SubscriptionBroker
from entitystore.state.events import ChangeEvent
from entitystore.state.handle import OperationHandle
from entitystore.state.store import EntityStore

_logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True, slots=True)
class StoreStats:
    """Point-in-time statistics of one store."""

    resource: str
    records: int
    generation: int
    loading: bool
    pending: int
    subscribers: int
    age_seconds: float | None
    stale: bool


def _normalize_key(key: str) -> str:
    if not isinstance(key, str):
        raise ValueError(f"resource key must be a string, got {type(key).__name__}")
    normalized = key.strip()
    if not normalized:
        raise ValueError("resource key must be non-empty")
    return normalized


class StoreRegistry:
    """Keyed cache of :class:`EntityStore` objects, one per resource key.

    The application root creates one registry and hands it to every view;
    nothing in this package keeps module-level state.

    Usage::

        async with StoreRegistry(StoreConfig.from_env()) as registry:
            campaigns = registry.acquire("campaigns")
            await campaigns.create({"name": "Spring launch"})

    An *adapter* may be injected instead of building one from the config,
    in which case the registry is usable without entering the context.
    """

    def __init__(
        self,
        config: StoreConfig | None = None,
        *,
        adapter: PersistenceAdapter | None = None,
        session: aiohttp.ClientSession | None = None,
        broker: SubscriptionBroker | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or StoreConfig()
        self._adapter = adapter
        self._external_session = session is not None
        self._http_session = session
        self._broker = broker or SubscriptionBroker()
        self._clock = clock
        self._stores: dict[str, EntityStore] = {}

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> StoreRegistry:
        if self._adapter is None:
            if self._config.has_remote and self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            self._adapter = build_adapter(self._config, self._http_session)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.drain()
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    # ------------------------------------------------------------------
    # Stores
    # ------------------------------------------------------------------

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def broker(self) -> SubscriptionBroker:
        return self._broker

    @property
    def adapter(self) -> PersistenceAdapter:
        return self._require_adapter()

    def _require_adapter(self) -> PersistenceAdapter:
        if self._adapter is None:
            raise StoreConfigError("Registry not initialized. Use 'async with StoreRegistry(...) as registry:'")
        return self._adapter

    def acquire(self, key: str) -> EntityStore:
        """Return the store for *key*, creating it on first use.

        Repeated calls return the identical store. The first call starts the
        initial list in the background; the store reports ``loading=True``
        until it finishes, and a failure shows up as ``store.error``.
        """
        key = _normalize_key(key)
        store = self._stores.get(key)
        if store is not None:
            return store

        store = EntityStore(
            key,
            self._require_adapter(),
            self._broker,
            clock=self._clock,
            stale_after=self._config.stale_after,
        )
        handle = store.refresh()
        handle.detach()
        self._stores[key] = store
        _logger.debug("Created store for %s", key)
        return store

    def get(self, key: str) -> EntityStore | None:
        """The store for *key* if it was acquired, without creating one."""
        return self._stores.get(_normalize_key(key))

    def keys(self) -> list[str]:
        return list(self._stores)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.strip() in self._stores

    def __len__(self) -> int:
        return len(self._stores)

    def __iter__(self) -> Iterator[EntityStore]:
        return iter(list(self._stores.values()))

    # ------------------------------------------------------------------
    # Caller-driven invalidation
    # ------------------------------------------------------------------

    def refresh(self, *keys: str) -> list[OperationHandle[StoreSnapshot]]:
        """Refresh several resources, e.g. siblings affected by a cross-resource edit.

        Keys that were never acquired are acquired (their initial list is
        the refresh).
        """
        handles: list[OperationHandle[StoreSnapshot]] = []
        for key in keys:
            existing = self.get(key)
            if existing is None:
                self.acquire(key)
                continue
            handles.append(existing.refresh())
        return handles

    async def refresh_stale(self) -> list[str]:
        """Refresh every acquired store whose data is stale; return their keys."""
        stale = [store for store in self._stores.values() if store.is_stale and not store.loading]
        if not stale:
            return []
        handles = [store.refresh() for store in stale]
        results = await asyncio.gather(*handles, return_exceptions=True)
        for store, result in zip(stale, results, strict=True):
            if isinstance(result, BaseException):
                _logger.debug("Stale refresh of %s failed: %s", store.key, result)
        return [store.key for store in stale]

    def dispatch(self, event: ChangeEvent) -> bool:
        """Apply a pushed change to its store. Returns ``False`` when nobody acquired that key."""
        store = self._stores.get(event.resource)
        if store is None:
            _logger.debug("Ignoring %s event for unacquired resource %s", event.kind, event.resource)
            return False
        store.apply_event(event)
        return True

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def stats(self) -> list[StoreStats]:
        now = self._clock()
        result: list[StoreStats] = []
        for key, store in self._stores.items():
            snapshot = store.snapshot
            refreshed_at = store.refreshed_at
            result.append(
                StoreStats(
                    resource=key,
                    records=len(snapshot.records),
                    generation=snapshot.generation,
                    loading=snapshot.loading,
                    pending=snapshot.pending,
                    subscribers=store.subscriber_count,
                    age_seconds=None if refreshed_at is None else now - refreshed_at,
                    stale=store.is_stale,
                )
            )
        return result

    async def drain(self) -> None:
        """Wait for every outstanding operation of every store."""
        for store in list(self._stores.values()):
            await store.drain()
