"""Fan-out of store snapshots to every subscriber of a resource key.

Delivery is synchronous: when a store publishes, every active subscriber of
that key has received the snapshot before ``publish`` returns. A listener
that publishes again from inside its callback (for example by issuing a
mutation) does not cause later subscribers to receive the older snapshot
after the newer one; they skip straight to the newest.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from entitystore.models.snapshot import StoreSnapshot

_logger = logging.getLogger(__name__)

Listener = Callable[[StoreSnapshot], None]


class Subscription:
    """One mounted consumer of a resource key."""

    def __init__(self, broker: SubscriptionBroker, key: str, listener: Listener) -> None:
        self._broker = broker
        self.key = key
        self._listener = listener
        self._active = True
        self._last_generation = -1

    @property
    def active(self) -> bool:
        return self._active

    def close(self) -> None:
        """Unmount. Snapshots published afterwards are no longer delivered."""
        if self._active:
            self._active = False
            self._broker._remove(self)

    def _deliver(self, snapshot: StoreSnapshot) -> None:
        if not self._active or snapshot.generation <= self._last_generation:
            return
        self._last_generation = snapshot.generation
        try:
            self._listener(snapshot)
        except Exception:
            _logger.warning("Subscriber of %s failed on generation %d", self.key, snapshot.generation, exc_info=True)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class SubscriptionBroker:
    """Registry of subscribers per resource key."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscription]] = {}
        self._latest: dict[str, StoreSnapshot] = {}
        self._delivering: set[str] = set()

    def subscribe(self, key: str, listener: Listener, *, current: StoreSnapshot | None = None) -> Subscription:
        """Register *listener* for *key*, replaying *current* to it right away."""
        subscription = Subscription(self, key, listener)
        self._subscribers.setdefault(key, []).append(subscription)
        replay = current if current is not None else self._latest.get(key)
        if replay is not None:
            subscription._deliver(replay)
        return subscription

    def subscriber_count(self, key: str) -> int:
        return len(self._subscribers.get(key, ()))

    def publish(self, key: str, snapshot: StoreSnapshot) -> None:
        """Deliver *snapshot* to every subscriber of *key*.

        With nobody subscribed the snapshot is only remembered for future
        subscribers; nothing is queued and no error is raised.
        """
        self._latest[key] = snapshot
        if key in self._delivering:
            # Re-entrant publish: the outer loop picks up the newer snapshot.
            return
        self._delivering.add(key)
        try:
            delivered: StoreSnapshot | None = None
            while self._latest[key] is not delivered:
                current = self._latest[key]
                delivered = current
                for subscription in tuple(self._subscribers.get(key, ())):
                    if self._latest[key] is not current:
                        break
                    subscription._deliver(current)
        finally:
            self._delivering.discard(key)

    def _remove(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.key)
        if not subscribers:
            return
        try:
            subscribers.remove(subscription)
        except ValueError:
            return
        if not subscribers:
            del self._subscribers[subscription.key]
