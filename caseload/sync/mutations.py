"""Optimistic writes: patch, dispatch, then commit or roll back.

One engine serves every entity type. A write is described by a
`MutationDescriptor` and handed to `MutationExecutor.execute`, which:

1. locks every key the write touches (in a fixed total order),
2. abandons in-flight reads of those keys,
3. snapshots them,
4. applies the optimistic patches,
5. awaits the remote call (the only suspension point),
6. on success writes the confirmed values and marks dependent reads stale,
   on failure restores the snapshots and performs no invalidation.

A second write on an overlapping key waits at step 1, before its snapshot is
taken, so its rollback can never restore an intermediate value.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple
from uuid import uuid4

from caseload.core.metrics import record_invalidation, record_mutation, record_rollback
from caseload.core.result import Failure, Result, Success
from caseload.domain.entities import EntityType
from caseload.domain.errors import RECOVERABLE_ERRORS, AuthFailure, ProgrammingError, SyncError
from caseload.sync.invalidation import InvalidationGraph, MutationKind
from caseload.sync.keys import QueryKey
from caseload.sync.store import CacheEntry, CacheStore

logger = logging.getLogger(__name__)

Patch = Callable[[Any], Any]
Reconcile = Callable[[Any, Any], Any]
Seed = Callable[[Any], Iterable[Tuple[QueryKey, Any]]]


@dataclass(frozen=True)
class MutationTarget:
    """One key the optimistic patch touches.

    `patch(previous) -> speculative` must be pure; returning None skips the
    key. `reconcile(current, confirmed) -> value` builds the committed value
    from the speculative one and the server's answer; without it the
    confirmed value is written as-is. Returning None from `reconcile`
    removes the key.
    """

    key: QueryKey
    patch: Patch
    reconcile: Optional[Reconcile] = None


@dataclass
class MutationDescriptor:
    entity_type: EntityType
    kind: MutationKind
    remote: Callable[[], Awaitable[Any]]
    targets: List[MutationTarget] = field(default_factory=list)
    removes: List[QueryKey] = field(default_factory=list)
    seed: Optional[Seed] = None
    subject: Any = None
    id: str = field(default_factory=lambda: uuid4().hex[:12])
    snapshot: Dict[QueryKey, Optional[CacheEntry]] = field(default_factory=dict)
    applied: List[QueryKey] = field(default_factory=list)
    invalidated: List[QueryKey] = field(default_factory=list)

    def target_keys(self) -> List[QueryKey]:
        return [target.key for target in self.targets]

    def lock_keys(self) -> List[QueryKey]:
        """Every key the write may change, deduplicated and totally ordered."""
        unique = {*self.target_keys(), *self.removes}
        return sorted(unique, key=QueryKey.sort_key)


@dataclass
class MutationMetrics:
    started: int = 0
    succeeded: int = 0
    failed: int = 0
    rolled_back: int = 0
    waited_on_lock: int = 0


class MutationExecutor:
    def __init__(self, store: CacheStore, graph: InvalidationGraph) -> None:
        self._store = store
        self._graph = graph
        self._locks: Dict[QueryKey, asyncio.Lock] = {}
        self._lock_refs: Dict[QueryKey, int] = {}
        self._held: Dict[QueryKey, str] = {}
        self.metrics = MutationMetrics()

    @property
    def store(self) -> CacheStore:
        return self._store

    @property
    def graph(self) -> InvalidationGraph:
        return self._graph

    def pending_keys(self) -> Set[QueryKey]:
        """Keys currently held by an in-flight mutation."""
        return set(self._held)

    # Locking -------------------------------------------------------------

    def _lock_for(self, key: QueryKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._lock_refs[key] = self._lock_refs.get(key, 0) + 1
        return lock

    def _unref(self, key: QueryKey) -> None:
        refs = self._lock_refs.get(key, 0) - 1
        if refs <= 0:
            self._lock_refs.pop(key, None)
            self._locks.pop(key, None)
        else:
            self._lock_refs[key] = refs

    async def _acquire(self, keys: List[QueryKey], mutation_id: str) -> None:
        acquired: List[QueryKey] = []
        try:
            for key in keys:
                lock = self._lock_for(key)
                if lock.locked():
                    self.metrics.waited_on_lock += 1
                    logger.debug(
                        "mutation.lock.wait",
                        extra={"key": str(key), "mutation_id": mutation_id, "holder": self._held.get(key)},
                    )
                try:
                    await lock.acquire()
                except BaseException:
                    self._unref(key)
                    raise
                self._held[key] = mutation_id
                acquired.append(key)
        except BaseException:
            self._release(acquired)
            raise

    def _release(self, keys: List[QueryKey]) -> None:
        for key in reversed(keys):
            self._held.pop(key, None)
            lock = self._locks.get(key)
            if lock is not None and lock.locked():
                lock.release()
            self._unref(key)

    # Execution -----------------------------------------------------------

    async def execute(self, descriptor: MutationDescriptor) -> Result[Any, SyncError]:
        """Run one write to settlement.

        Returns `Success(confirmed)` or `Failure(error)` for recoverable
        failures. AuthFailure and unexpected exceptions propagate after the
        rollback. A rollback that finds foreign state raises ProgrammingError.
        """

        keys = descriptor.lock_keys()
        await self._acquire(keys, descriptor.id)
        try:
            return await self._run(descriptor)
        finally:
            self._release(keys)

    async def _run(self, descriptor: MutationDescriptor) -> Result[Any, SyncError]:
        store = self._store
        entity_type = EntityType(descriptor.entity_type).value
        kind = MutationKind(descriptor.kind).value
        log_extra = {"mutation_id": descriptor.id, "entity_type": entity_type, "kind": kind}
        self.metrics.started += 1

        for key in descriptor.lock_keys():
            store.cancel_fetch(key)
        descriptor.snapshot = {key: store.get(key) for key in descriptor.target_keys()}
        descriptor.applied = []

        try:
            for target in descriptor.targets:
                store.patch(target.key, target.patch, mutation_id=descriptor.id)
                entry = store.get(target.key)
                if entry is not None and entry.optimistic_by == descriptor.id:
                    descriptor.applied.append(target.key)
            logger.debug("mutation.applied", extra={**log_extra, "keys": [str(k) for k in descriptor.applied]})
            confirmed = await descriptor.remote()
        except RECOVERABLE_ERRORS as error:
            self._rollback(descriptor)
            self.metrics.failed += 1
            record_mutation(entity_type, kind, "failure")
            logger.warning(
                "mutation.failed",
                extra={**log_extra, "error": type(error).__name__, "detail": str(error)},
            )
            return Failure(error)
        except AuthFailure:
            self._rollback(descriptor)
            self.metrics.failed += 1
            record_mutation(entity_type, kind, "auth_failure")
            logger.warning("mutation.auth_failure", extra=log_extra)
            raise
        except asyncio.CancelledError:
            self._rollback(descriptor)
            record_mutation(entity_type, kind, "cancelled")
            raise
        except Exception:
            self._rollback(descriptor)
            self.metrics.failed += 1
            record_mutation(entity_type, kind, "error")
            logger.exception("mutation.unexpected_error", extra=log_extra)
            raise

        self._commit(descriptor, confirmed)
        self.metrics.succeeded += 1
        record_mutation(entity_type, kind, "success")
        logger.info(
            "mutation.committed",
            extra={**log_extra, "invalidated": len(descriptor.invalidated)},
        )
        return Success(confirmed)

    def _commit(self, descriptor: MutationDescriptor, confirmed: Any) -> None:
        store = self._store
        targets = {target.key: target for target in descriptor.targets}
        for key in descriptor.applied:
            target = targets[key]
            if target.reconcile is None:
                value = confirmed
            else:
                current = store.get(key)
                value = target.reconcile(current.value if current is not None else None, confirmed)
            if value is None:
                store.remove(key)
            else:
                store.set(key, value)

        for key in descriptor.removes:
            store.remove(key)

        if descriptor.seed is not None:
            for key, value in descriptor.seed(confirmed):
                store.set(key, value)

        invalidated: List[QueryKey] = []
        for target in self._graph.resolve(descriptor.entity_type, descriptor.kind, descriptor.subject, confirmed):
            invalidated.extend(store.invalidate(target))
        descriptor.invalidated = invalidated
        record_invalidation(EntityType(descriptor.entity_type).value, len(invalidated))

    def _rollback(self, descriptor: MutationDescriptor) -> None:
        if not descriptor.applied:
            return
        self.metrics.rolled_back += 1
        record_rollback(EntityType(descriptor.entity_type).value)
        foreign: List[str] = []
        for key in descriptor.applied:
            try:
                self._store.restore(key, descriptor.snapshot.get(key), mutation_id=descriptor.id)
            except ProgrammingError:
                foreign.append(str(key))
        logger.info(
            "mutation.rolled_back",
            extra={"mutation_id": descriptor.id, "keys": [str(k) for k in descriptor.applied]},
        )
        if foreign:
            logger.error(
                "mutation.rollback.foreign_state",
                extra={"mutation_id": descriptor.id, "keys": foreign},
            )
            raise ProgrammingError(
                f"mutation {descriptor.id} could not roll back keys it did not own: {', '.join(foreign)}"
            )


__all__ = ["MutationDescriptor", "MutationExecutor", "MutationMetrics", "MutationTarget"]
