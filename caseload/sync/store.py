"""In-process cache of server-owned entities.

`CacheStore` is the single shared mutable resource of the sync layer. Every
operation is synchronous and performs no I/O, so each call is atomic with
respect to every other call on the event loop; multi-step orchestration
(optimistic patch, remote dispatch, commit or rollback) lives in the mutation
executor and serialises itself with per-key locks.

Status lifecycle per key::

    absent -> fetching -> fresh | error
    fresh  -> stale (invalidate) -> fetching -> fresh
    any    -> fresh with optimistic_by=<mutation id> (patch)

An entry is `fetching` exactly while a fetch token is outstanding for it.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass
from enum import Enum
from itertools import count
from typing import Any, Callable, Dict, List, Optional, Tuple

from caseload.domain.errors import ProgrammingError
from caseload.sync.keys import KeyOrPattern, KeyPattern, QueryKey
from caseload.sync.subscriptions import Listener, Subscription, SubscriptionRegistry

logger = logging.getLogger(__name__)


class EntryStatus(str, Enum):
    ABSENT = "absent"
    FETCHING = "fetching"
    FRESH = "fresh"
    STALE = "stale"
    ERROR = "error"


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    version: int
    status: EntryStatus
    updated_at: float
    error: Optional[BaseException] = None
    optimistic_by: Optional[str] = None

    @property
    def is_optimistic(self) -> bool:
        return self.optimistic_by is not None

    @property
    def has_value(self) -> bool:
        return self.value is not None

    def age(self, now: float) -> float:
        return max(0.0, now - self.updated_at)


@dataclass
class CacheStoreMetrics:
    """Simple counters describing store behaviour."""

    writes: int = 0
    patches: int = 0
    invalidations: int = 0
    removals: int = 0
    restores: int = 0
    fetches_started: int = 0
    fetches_discarded: int = 0


@dataclass
class _Fetch:
    token: int
    previous: Optional[CacheEntry]


class CacheStore:
    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: Dict[QueryKey, CacheEntry] = {}
        self._fetches: Dict[QueryKey, _Fetch] = {}
        self._subscriptions = SubscriptionRegistry()
        self._versions = count(1)
        self._tokens = count(1)
        self._clock = clock
        self.stats = CacheStoreMetrics()

    # Internal helpers ----------------------------------------------------

    def _write(
        self,
        key: QueryKey,
        value: Any,
        status: EntryStatus,
        *,
        error: Optional[BaseException] = None,
        optimistic_by: Optional[str] = None,
        touch: bool = True,
    ) -> CacheEntry:
        previous = self._entries.get(key)
        updated_at = self._clock() if touch or previous is None else previous.updated_at
        entry = CacheEntry(
            value=value,
            version=next(self._versions),
            status=status,
            updated_at=updated_at,
            error=error,
            optimistic_by=optimistic_by,
        )
        self._entries[key] = entry
        self._subscriptions.publish(key, entry)
        return entry

    def _drop(self, key: QueryKey) -> Optional[CacheEntry]:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._subscriptions.publish(key, None)
        return entry

    def _matching(self, target: KeyOrPattern) -> List[QueryKey]:
        if isinstance(target, KeyPattern):
            return [key for key in self._entries if target.matches(key)]
        return [target] if target in self._entries else []

    # Public API ----------------------------------------------------------

    def get(self, key: QueryKey) -> Optional[CacheEntry]:
        """Current entry, or None when the key is absent."""
        return self._entries.get(key)

    def status(self, key: QueryKey) -> EntryStatus:
        entry = self._entries.get(key)
        return entry.status if entry is not None else EntryStatus.ABSENT

    def set(self, key: QueryKey, value: Any) -> CacheEntry:
        """Replace the value with a server-confirmed one and mark it fresh.

        An outstanding fetch for `key` is superseded; its late result is ignored.
        """
        self._supersede_fetch(key)
        self.stats.writes += 1
        return self._write(key, value, EntryStatus.FRESH)

    def patch(
        self,
        key: QueryKey,
        fn: Callable[[Any], Any],
        *,
        mutation_id: Optional[str] = None,
    ) -> Any:
        """Apply a pure transform to the current value and return the previous value.

        `fn` receives None for an absent key; returning None leaves the store
        untouched. With `mutation_id` the result is marked speculative so a
        later rollback can recognise it.
        """

        current = self._entries.get(key)
        previous = current.value if current is not None else None
        updated = fn(previous)
        if updated is None:
            return previous
        self._supersede_fetch(key)
        self.stats.patches += 1
        self._write(key, updated, EntryStatus.FRESH, optimistic_by=mutation_id)
        return previous

    def invalidate(self, target: KeyOrPattern) -> List[QueryKey]:
        """Mark matching entries stale, keeping their values.

        An outstanding fetch on a matching key is discarded: its result was
        requested before the change that caused the invalidation.
        """

        invalidated: List[QueryKey] = []
        for key in self._matching(target):
            entry = self._entries[key]
            invalidated.append(key)
            if key in self._fetches:
                self._abandon_fetch(key)
                continue
            if entry.status is EntryStatus.STALE:
                continue
            self._write(
                key,
                entry.value,
                EntryStatus.STALE,
                error=entry.error,
                optimistic_by=entry.optimistic_by,
                touch=False,
            )
        if invalidated:
            self.stats.invalidations += len(invalidated)
            logger.debug("cache.invalidate", extra={"target": str(target), "count": len(invalidated)})
        return invalidated

    def remove(self, key: QueryKey) -> Optional[CacheEntry]:
        self._fetches.pop(key, None)
        entry = self._drop(key)
        if entry is not None:
            self.stats.removals += 1
        return entry

    def restore(self, key: QueryKey, snapshot: Optional[CacheEntry], *, mutation_id: str) -> None:
        """Put back the pre-mutation entry captured in `snapshot`.

        Raises ProgrammingError when the current entry was not introduced by
        `mutation_id`. A key that was invalidated while the mutation was in
        flight stays stale.
        """

        current = self._entries.get(key)
        if current is None or current.optimistic_by != mutation_id:
            raise ProgrammingError(
                f"rollback of {key} by mutation {mutation_id} found an entry it did not introduce "
                f"(optimistic_by={current.optimistic_by if current else None!r})"
            )
        self.stats.restores += 1
        if snapshot is None:
            self._drop(key)
            return
        restored = snapshot
        if current.status is EntryStatus.STALE and snapshot.status is not EntryStatus.STALE:
            restored = dataclasses.replace(snapshot, status=EntryStatus.STALE)
        self._entries[key] = restored
        self._subscriptions.publish(key, restored)

    # Read bookkeeping ----------------------------------------------------

    def begin_fetch(self, key: QueryKey) -> Optional[int]:
        """Mark `key` as fetching and return a token, or None if a fetch may not start.

        Refused while another fetch is outstanding or while the entry holds an
        unconfirmed optimistic value.
        """

        if key in self._fetches:
            return None
        current = self._entries.get(key)
        if current is not None and current.optimistic_by is not None:
            return None
        token = next(self._tokens)
        self._fetches[key] = _Fetch(token=token, previous=current)
        self.stats.fetches_started += 1
        self._write(
            key,
            current.value if current is not None else None,
            EntryStatus.FETCHING,
            error=current.error if current is not None else None,
            touch=current is None,
        )
        return token

    def complete_fetch(self, key: QueryKey, token: int, value: Any) -> bool:
        """Store a fetched value; returns False when the fetch was superseded."""
        fetch = self._fetches.get(key)
        if fetch is None or fetch.token != token:
            self.stats.fetches_discarded += 1
            return False
        del self._fetches[key]
        self.stats.writes += 1
        self._write(key, value, EntryStatus.FRESH)
        return True

    def fail_fetch(self, key: QueryKey, token: int, error: BaseException) -> bool:
        """Record a failed fetch; the previous value stays servable."""
        fetch = self._fetches.get(key)
        if fetch is None or fetch.token != token:
            self.stats.fetches_discarded += 1
            return False
        del self._fetches[key]
        current = self._entries.get(key)
        self._write(
            key,
            current.value if current is not None else None,
            EntryStatus.ERROR,
            error=error,
            touch=False,
        )
        return True

    def cancel_fetch(self, key: QueryKey, token: Optional[int] = None) -> bool:
        """Abandon an outstanding fetch. A late result for it is ignored.

        With `token`, only that particular fetch is abandoned.
        """
        fetch = self._fetches.get(key)
        if fetch is None or (token is not None and fetch.token != token):
            return False
        self._abandon_fetch(key)
        return True

    def _abandon_fetch(self, key: QueryKey) -> None:
        fetch = self._fetches.pop(key)
        previous = fetch.previous
        if previous is None or previous.value is None:
            self._drop(key)
            return
        self._write(key, previous.value, EntryStatus.STALE, error=previous.error, touch=False)

    def is_fetching(self, key: QueryKey) -> bool:
        return key in self._fetches

    def fetch_token(self, key: QueryKey) -> Optional[int]:
        """Token of the outstanding fetch for `key`, or None."""
        fetch = self._fetches.get(key)
        return fetch.token if fetch is not None else None

    def _supersede_fetch(self, key: QueryKey) -> None:
        if self._fetches.pop(key, None) is not None:
            logger.debug("cache.fetch.superseded", extra={"key": str(key)})

    # Subscriptions -------------------------------------------------------

    def subscribe(self, target: KeyOrPattern, listener: Listener) -> Subscription:
        """Notify `listener(key, entry)` after every transition of a matching key.

        `entry` is None when the key became absent.
        """
        return self._subscriptions.add(target, listener)

    # Introspection -------------------------------------------------------

    def keys(self) -> List[QueryKey]:
        return list(self._entries)

    def items(self) -> List[Tuple[QueryKey, CacheEntry]]:
        return list(self._entries.items())

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        """Drop every entry and outstanding fetch. Subscriptions survive."""
        self._fetches.clear()
        for key in list(self._entries):
            self._drop(key)


__all__ = ["CacheEntry", "CacheStore", "CacheStoreMetrics", "EntryStatus"]
