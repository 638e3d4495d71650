"""Read path: stale-while-revalidate on top of `CacheStore`.

`QueryClient.read` is synchronous. It returns whatever the store holds and,
when that is missing, stale, failed or older than `stale_after`, schedules a
background refresh. At most one refresh per key is in flight; concurrent
readers join it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from caseload.core.error_handler import GracefulShutdown, safe_background_task
from caseload.core.metrics import record_cache_read, record_refresh
from caseload.core.result import Failure, Result, Success
from caseload.domain.errors import SyncError
from caseload.remote.base import DataBackend
from caseload.remote.routes import Route, route_for
from caseload.sync.keys import KeyOrPattern, QueryKey
from caseload.sync.store import CacheEntry, CacheStore, EntryStatus

logger = logging.getLogger(__name__)


@dataclass
class QueryMetrics:
    hits: int = 0
    misses: int = 0
    stale_reads: int = 0
    refreshes: int = 0
    refresh_failures: int = 0
    refreshes_discarded: int = 0


@dataclass
class _Refresh:
    token: int
    task: asyncio.Task


class QueryClient:
    def __init__(
        self,
        store: CacheStore,
        backend: DataBackend,
        *,
        stale_after: float = 300.0,
        router: Callable[[QueryKey], Route] = route_for,
        shutdown: Optional[GracefulShutdown] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._backend = backend
        self._stale_after = stale_after
        self._router = router
        self._shutdown = shutdown
        self._clock = clock
        self._inflight: Dict[QueryKey, _Refresh] = {}
        self._tasks: Set[asyncio.Task] = set()
        self.metrics = QueryMetrics()

    @property
    def store(self) -> CacheStore:
        return self._store

    def _expired(self, entry: CacheEntry) -> bool:
        if entry.optimistic_by is not None:
            return False
        return entry.age(self._clock()) >= self._stale_after

    def _needs_refresh(self, entry: Optional[CacheEntry]) -> bool:
        if entry is None:
            return True
        if entry.status in (EntryStatus.STALE, EntryStatus.ERROR):
            return True
        if entry.status is EntryStatus.FRESH:
            return self._expired(entry)
        return False

    def _record_read(self, entry: Optional[CacheEntry]) -> None:
        if entry is None or not entry.has_value:
            self.metrics.misses += 1
            record_cache_read("miss")
        elif entry.status is EntryStatus.FRESH and not self._expired(entry):
            self.metrics.hits += 1
            record_cache_read("hit")
        else:
            self.metrics.stale_reads += 1
            record_cache_read("stale")

    # Reads ---------------------------------------------------------------

    def read(self, key: QueryKey) -> Optional[CacheEntry]:
        """Return the cached entry for `key`, scheduling a refresh when needed.

        A stale value is always returned as-is while its refresh runs. For a
        key that was never loaded the returned entry is `fetching` with no
        value yet.
        """

        entry = self._store.get(key)
        self._record_read(entry)
        if self._needs_refresh(entry):
            self._schedule(key)
            entry = self._store.get(key)
        return entry

    async def fetch(self, key: QueryKey) -> Any:
        """Return a fresh value, loading it if necessary. Raises the typed error on failure."""

        entry = self._store.get(key)
        self._record_read(entry)
        if entry is not None and entry.value is not None and not self._needs_refresh(entry):
            if entry.status is not EntryStatus.FETCHING:
                return entry.value

        task = self._schedule(key)
        if task is None:
            entry = self._store.get(key)
            if entry is not None and entry.optimistic_by is not None:
                return entry.value
            return await self._load_direct(key)
        result = await asyncio.shield(task)
        return result.unwrap()

    async def refresh(self, key: QueryKey) -> Any:
        """Reload `key` even if it is fresh."""

        task = self._schedule(key)
        if task is None:
            entry = self._store.get(key)
            return entry.value if entry is not None else None
        result = await asyncio.shield(task)
        return result.unwrap()

    async def prefetch(self, key: QueryKey) -> None:
        """Warm `key` ahead of a read. Failures are recorded on the entry, not raised."""

        try:
            await self.fetch(key)
        except SyncError as error:
            logger.warning("cache.prefetch.failed", extra={"key": str(key), "error": type(error).__name__})

    def invalidate(self, target: KeyOrPattern) -> List[QueryKey]:
        return self._store.invalidate(target)

    def inflight_keys(self) -> List[QueryKey]:
        return [key for key, refresh in self._inflight.items() if not refresh.task.done()]

    # Refresh machinery ---------------------------------------------------

    def _schedule(self, key: QueryKey) -> Optional[asyncio.Task]:
        existing = self._inflight.get(key)
        if existing is not None and not existing.task.done():
            # Join only while the store still honours this refresh's token.
            if self._store.fetch_token(key) == existing.token:
                return existing.task
        route = self._router(key)
        token = self._store.begin_fetch(key)
        if token is None:
            return None
        task = safe_background_task(
            f"cache.refresh:{key}",
            self._load(key, token, route),
            shutdown=self._shutdown,
        )
        self._inflight[key] = _Refresh(token=token, task=task)
        self._tasks.add(task)
        task.add_done_callback(lambda done, key=key: self._forget(key, done))
        return task

    def _forget(self, key: QueryKey, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        current = self._inflight.get(key)
        if current is not None and current.task is task:
            del self._inflight[key]
        if not task.cancelled():
            # Already logged by safe_background_task.
            task.exception()

    async def _load(self, key: QueryKey, token: int, route: Route) -> Result[Any, SyncError]:
        entity_type, query = route
        self.metrics.refreshes += 1
        try:
            value = await self._backend.fetch(entity_type, query)
        except SyncError as error:
            self.metrics.refresh_failures += 1
            self._store.fail_fetch(key, token, error)
            record_refresh("error")
            logger.warning(
                "cache.refresh.failed",
                extra={"key": str(key), "error": type(error).__name__, "detail": str(error)},
            )
            return Failure(error)
        except asyncio.CancelledError:
            self._store.cancel_fetch(key, token)
            raise
        except Exception as error:
            self.metrics.refresh_failures += 1
            self._store.fail_fetch(key, token, error)
            record_refresh("error")
            raise

        if self._store.complete_fetch(key, token, value):
            record_refresh("success")
        else:
            self.metrics.refreshes_discarded += 1
            record_refresh("discarded")
            logger.debug("cache.refresh.discarded", extra={"key": str(key)})
        return Success(value)

    async def _load_direct(self, key: QueryKey) -> Any:
        entity_type, query = self._router(key)
        return await self._backend.fetch(entity_type, query)

    async def close(self) -> None:
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._inflight.clear()
        self._tasks.clear()


__all__ = ["QueryClient", "QueryMetrics"]
