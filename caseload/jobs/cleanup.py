"""Periodic removal of expired one-time tokens.

Deletes expired setup tokens and expired, never-accepted invitations through
the cleanup collaborator, then marks the cached token lists stale. Token keys
are disjoint from everything the foreground mutation engine writes; if an
in-flight mutation holds one anyway, the overlap is logged as an error and
not resolved here.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Set, Tuple

from caseload.core.metrics import record_invalidation
from caseload.domain.entities import EntityType
from caseload.jobs.scheduler import ScheduledJob
from caseload.remote.base import CleanupBackend
from caseload.sync.invalidation import InvalidationGraph, MutationKind
from caseload.sync.keys import QueryKey, matches
from caseload.sync.store import CacheStore

logger = logging.getLogger(__name__)

CLEANUP_JOB_NAME = "token_cleanup"
DEFAULT_CLEANUP_INTERVAL_SECONDS = 60 * 60

CATEGORY_ENTITIES: Dict[str, EntityType] = {
    "setup_tokens": EntityType.SETUP_TOKEN,
    "invitations": EntityType.INVITATION,
}


class TokenCleanupJob:
    def __init__(
        self,
        backend: CleanupBackend,
        store: CacheStore,
        graph: InvalidationGraph,
        *,
        pending_keys: Callable[[], Set[QueryKey]] = set,
        categories: Iterable[str] = tuple(CATEGORY_ENTITIES),
    ) -> None:
        self._backend = backend
        self._store = store
        self._graph = graph
        self._pending_keys = pending_keys
        self._categories: Tuple[str, ...] = tuple(categories)
        unknown = [name for name in self._categories if name not in CATEGORY_ENTITIES]
        if unknown:
            raise ValueError(f"unknown cleanup categories: {', '.join(unknown)}")
        self.overlaps: List[QueryKey] = []

    async def __call__(self, affected: Dict[str, int]) -> None:
        for category in self._categories:
            deleted = await self._backend.delete_expired(category)
            affected[category] = deleted
            if deleted:
                self._invalidate(category)
        if any(affected.values()):
            logger.info("token_cleanup.deleted", extra={"affected": dict(affected)})

    def _invalidate(self, category: str) -> List[QueryKey]:
        entity_type = CATEGORY_ENTITIES[category]
        pending = self._pending_keys()
        invalidated: List[QueryKey] = []
        for target in self._graph.resolve(entity_type, MutationKind.EXPIRE):
            overlap = [key for key in pending if matches(target, key)]
            if overlap:
                self.overlaps.extend(overlap)
                logger.error(
                    "token_cleanup.overlap",
                    extra={"category": category, "keys": [str(key) for key in overlap]},
                )
            invalidated.extend(self._store.invalidate(target))
        record_invalidation(entity_type.value, len(invalidated))
        return invalidated


def build_cleanup_job(
    backend: CleanupBackend,
    store: CacheStore,
    graph: InvalidationGraph,
    *,
    pending_keys: Callable[[], Set[QueryKey]] = set,
    interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
) -> ScheduledJob:
    action = TokenCleanupJob(backend, store, graph, pending_keys=pending_keys)
    return ScheduledJob(CLEANUP_JOB_NAME, action, interval_seconds=interval_seconds)


__all__ = [
    "CATEGORY_ENTITIES",
    "CLEANUP_JOB_NAME",
    "DEFAULT_CLEANUP_INTERVAL_SECONDS",
    "TokenCleanupJob",
    "build_cleanup_job",
]
