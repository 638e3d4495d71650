"""Publish/subscribe for cache entry transitions."""

from __future__ import annotations

import logging
from itertools import count
from typing import TYPE_CHECKING, Callable, Dict, Optional

from caseload.sync.keys import KeyOrPattern, QueryKey, matches

if TYPE_CHECKING:
    from caseload.sync.store import CacheEntry

logger = logging.getLogger(__name__)

Listener = Callable[[QueryKey, Optional["CacheEntry"]], None]


class Subscription:
    """Handle returned by `CacheStore.subscribe`."""

    def __init__(self, registry: "SubscriptionRegistry", subscription_id: int, target: KeyOrPattern):
        self._registry = registry
        self.id = subscription_id
        self.target = target

    @property
    def active(self) -> bool:
        return self._registry.is_registered(self.id)

    def unsubscribe(self) -> None:
        """Stop notifications. Cached values are left untouched."""
        self._registry.remove(self.id)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.unsubscribe()


class SubscriptionRegistry:
    def __init__(self) -> None:
        self._listeners: Dict[int, tuple[KeyOrPattern, Listener]] = {}
        self._ids = count(1)

    def add(self, target: KeyOrPattern, listener: Listener) -> Subscription:
        subscription_id = next(self._ids)
        self._listeners[subscription_id] = (target, listener)
        return Subscription(self, subscription_id, target)

    def remove(self, subscription_id: int) -> None:
        self._listeners.pop(subscription_id, None)

    def is_registered(self, subscription_id: int) -> bool:
        return subscription_id in self._listeners

    def __len__(self) -> int:
        return len(self._listeners)

    def publish(self, key: QueryKey, entry: Optional["CacheEntry"]) -> None:
        # Snapshot: listeners may unsubscribe while being notified.
        for subscription_id, (target, listener) in list(self._listeners.items()):
            if not matches(target, key) or not self.is_registered(subscription_id):
                continue
            try:
                listener(key, entry)
            except Exception:
                logger.exception(
                    "cache.subscriber.failed",
                    extra={"key": str(key), "subscription_id": subscription_id},
                )

    def clear(self) -> None:
        self._listeners.clear()


__all__ = ["Listener", "Subscription", "SubscriptionRegistry"]
