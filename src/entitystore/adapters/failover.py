"""Backend selection: remote first, local durable snapshot as fallback."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

from entitystore.adapters.local import LocalAdapter
from entitystore.adapters.remote import RemoteAdapter
from entitystore.exceptions import ConnectivityError
from entitystore.models.record import Record, RecordId

_logger = logging.getLogger(__name__)

T = TypeVar("T")


class FailoverAdapter:
    """Compose a :class:`RemoteAdapter` and a :class:`LocalAdapter`.

    Policy:
    - keys in *local_only* (and every key when *remote* is ``None``) use the
      local snapshot only;
    - reads try remote first and fall back to local on ``ConnectivityError``,
      invisibly to the caller;
    - writes try remote first and are persisted locally only on
      ``ConnectivityError``. Validation, not-found, conflict and other
      remote errors propagate untouched.
    """

    def __init__(
        self,
        local: LocalAdapter,
        remote: RemoteAdapter | None = None,
        *,
        local_only: frozenset[str] = frozenset(),
        mirror_reads: bool = True,
    ) -> None:
        self._local = local
        self._remote = remote
        self._local_only = local_only
        self._mirror_reads = mirror_reads
        self._offline: set[str] = set()

    def uses_remote(self, key: str) -> bool:
        return self._remote is not None and key not in self._local_only

    def is_offline(self, key: str) -> bool:
        """``True`` when the last remote attempt for *key* could not connect."""
        return key in self._offline

    @property
    def offline_resources(self) -> frozenset[str]:
        return frozenset(self._offline)

    async def _with_fallback(
        self,
        key: str,
        operation: str,
        remote_call: Callable[[RemoteAdapter], Awaitable[T]],
        local_call: Callable[[LocalAdapter], Awaitable[T]],
    ) -> T:
        remote = self._remote
        if remote is None or key in self._local_only:
            return await local_call(self._local)

        try:
            result = await remote_call(remote)
        except ConnectivityError as remote_exc:
            if key not in self._offline:
                _logger.info("Remote unreachable for %s (%s); using local snapshot", key, remote_exc)
            self._offline.add(key)
            try:
                return await local_call(self._local)
            except ConnectivityError as local_exc:
                raise ConnectivityError(
                    f"{operation} {key!r}: neither remote nor local backend reachable ({local_exc})",
                    resource=key,
                ) from remote_exc

        if key in self._offline:
            _logger.info("Remote reachable again for %s", key)
            self._offline.discard(key)
        return result

    async def list(self, key: str) -> list[Record]:
        records = await self._with_fallback(
            key,
            "list",
            lambda remote: remote.list(key),
            lambda local: local.list(key),
        )
        if self._mirror_reads and self.uses_remote(key) and not self.is_offline(key):
            try:
                await self._local.replace_all(key, records)
            except ConnectivityError:
                _logger.debug("Could not mirror %s into the local snapshot", key, exc_info=True)
        return records

    async def create(self, key: str, partial: Mapping[str, Any]) -> Record:
        return await self._with_fallback(
            key,
            "create",
            lambda remote: remote.create(key, partial),
            lambda local: local.create(key, partial),
        )

    async def update(self, key: str, record_id: RecordId, patch: Mapping[str, Any]) -> Record:
        return await self._with_fallback(
            key,
            "update",
            lambda remote: remote.update(key, record_id, patch),
            lambda local: local.update(key, record_id, patch),
        )

    async def remove(self, key: str, record_id: RecordId) -> None:
        await self._with_fallback(
            key,
            "remove",
            lambda remote: remote.remove(key, record_id),
            lambda local: local.remove(key, record_id),
        )
