"""Per-key FIFO serialization of async operations.

A slot is reserved synchronously when an operation is *issued*, so the run
order is the call order even if the event loop starts the tasks in a
different order. Operations on different keys never wait for each other.
"""

from __future__ import annotations

import asyncio
from typing import Any


class SerialSlot:
    def __init__(
        self,
        owner: KeyedSerializer,
        key: str,
        previous: asyncio.Future[None] | None,
        done: asyncio.Future[None],
    ) -> None:
        self._owner = owner
        self._key = key
        self._previous = previous
        self._done = done

    async def __aenter__(self) -> None:
        if self._previous is None:
            return
        try:
            await asyncio.shield(self._previous)
        except asyncio.CancelledError:
            # Keep the chain intact: the next slot still waits for our predecessor.
            self._previous.add_done_callback(lambda _fut: self.release())
            raise

    async def __aexit__(self, *exc: Any) -> None:
        self.release()

    def release(self) -> None:
        if not self._done.done():
            self._done.set_result(None)
        self._owner._forget(self._key, self._done)


class KeyedSerializer:
    """Chain operations per key: each waits for the previous one on that key."""

    def __init__(self) -> None:
        self._tails: dict[str, asyncio.Future[None]] = {}

    def reserve(self, key: str) -> SerialSlot:
        """Reserve the next position for *key*; use the result as ``async with``."""
        loop = asyncio.get_running_loop()
        previous = self._tails.get(key)
        done: asyncio.Future[None] = loop.create_future()
        self._tails[key] = done
        return SerialSlot(self, key, previous, done)

    def busy(self, key: str) -> bool:
        return key in self._tails

    def _forget(self, key: str, done: asyncio.Future[None]) -> None:
        if self._tails.get(key) is done:
            del self._tails[key]
