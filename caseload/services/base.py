"""Shared write path for every entity type.

Each concrete service only declares where its entities live in the cache
(detail key, list keys, search tag, list order). Building the optimistic
patches, reconciling placeholders and handing the descriptor to the executor
is done once, here.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, ClassVar, Dict, Iterable, List, Mapping, Optional, Type

from pydantic import ValidationError

from caseload.core.result import Failure, Result
from caseload.domain.entities import Entity, EntityType, Payload
from caseload.domain.errors import SyncError, ValidationFailure
from caseload.remote.base import DataBackend
from caseload.sync.invalidation import MutationKind
from caseload.sync.keys import QueryKey
from caseload.sync.mutations import MutationDescriptor, MutationExecutor, MutationTarget
from caseload.sync.store import CacheStore

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "temp-"


def placeholder_id(mutation_id: str) -> str:
    return f"{PLACEHOLDER_PREFIX}{mutation_id}"


def is_placeholder(entity: Any) -> bool:
    return str(getattr(entity, "id", "")).startswith(PLACEHOLDER_PREFIX)


def _contains(items: Iterable[Any], entity_id: str) -> bool:
    return any(getattr(item, "id", None) == entity_id for item in items)


def replace_placeholder(temp_id: str) -> Callable[[Any, Any], Any]:
    """Reconcile a list: swap the placeholder for the confirmed entity, never duplicating it."""

    def reconcile(items: Optional[List[Any]], confirmed: Any) -> Optional[List[Any]]:
        if items is None:
            return None
        result: List[Any] = []
        placed = False
        for item in items:
            item_id = getattr(item, "id", None)
            if item_id == temp_id or item_id == confirmed.id:
                if not placed:
                    result.append(confirmed)
                    placed = True
                continue
            result.append(item)
        if not placed:
            result.append(confirmed)
        return result

    return reconcile


def keep_current(items: Any, _confirmed: Any) -> Any:
    return items


def validation_failure(entity_type: EntityType, error: ValidationError) -> ValidationFailure:
    first = error.errors()[0] if error.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    return ValidationFailure(
        f"{EntityType(entity_type).value} payload rejected: {error.error_count()} error(s); "
        f"{location or 'payload'}: {first.get('msg', 'invalid')}",
        entity_type=EntityType(entity_type).value,
        field=location or None,
    )


class EntityService:
    entity_type: ClassVar[EntityType]
    model: ClassVar[Type[Entity]]
    create_schema: ClassVar[Type[Payload]]
    update_schema: ClassVar[Type[Payload]]
    search_tag: ClassVar[Optional[str]] = None

    def __init__(self, executor: MutationExecutor, backend: DataBackend) -> None:
        self._executor = executor
        self._backend = backend

    @property
    def store(self) -> CacheStore:
        return self._executor.store

    # Cache layout hooks -------------------------------------------------

    def detail_key(self, entity_id: str) -> Optional[QueryKey]:
        return None

    def list_keys(self, entity: Any) -> List[QueryKey]:
        """List keys that would contain `entity` when loaded."""
        return []

    def belongs(self, key: QueryKey, entity: Any) -> bool:
        return True

    def sort_key(self, entity: Any) -> Any:
        return None

    def apply_changes(self, entity: Any, changes: Mapping[str, Any]) -> Any:
        return entity.model_copy(update=dict(changes))

    # Helpers -------------------------------------------------------------

    def _search_keys(self) -> List[QueryKey]:
        if self.search_tag is None:
            return []
        return [key for key in self.store.keys() if key.tag == self.search_tag]

    def _order(self, items: List[Any]) -> List[Any]:
        if not items or self.sort_key(items[0]) is None:
            return items
        return sorted(items, key=self.sort_key)

    def cached(self, entity_id: str) -> Optional[Any]:
        """Best cached copy of an entity: its detail key first, then any loaded list."""

        detail = self.detail_key(entity_id)
        if detail is not None:
            entry = self.store.get(detail)
            if entry is not None and isinstance(entry.value, self.model):
                return entry.value
        for _key, entry in self.store.items():
            if not isinstance(entry.value, list):
                continue
            for item in entry.value:
                if isinstance(item, self.model) and item.id == entity_id:
                    return item
        return None

    def _insert_patch(self, key: QueryKey, placeholder: Any) -> Callable[[Any], Any]:
        def patch(items: Optional[List[Any]]) -> Optional[List[Any]]:
            if items is None or not self.belongs(key, placeholder):
                return None
            return self._order([*items, placeholder])

        return patch

    def _replace_patch(self, key: QueryKey, entity_id: str, changes: Mapping[str, Any]) -> Callable[[Any], Any]:
        def patch(items: Optional[List[Any]]) -> Optional[List[Any]]:
            if items is None or not _contains(items, entity_id):
                return None
            updated: List[Any] = []
            for item in items:
                if getattr(item, "id", None) != entity_id:
                    updated.append(item)
                    continue
                changed = self.apply_changes(item, changes)
                if self.belongs(key, changed):
                    updated.append(changed)
            return self._order(updated)

        return patch

    def _reconcile_update(self, key: QueryKey) -> Callable[[Any, Any], Any]:
        def reconcile(items: Optional[List[Any]], confirmed: Any) -> Optional[List[Any]]:
            if items is None:
                return None
            updated = [item for item in items if getattr(item, "id", None) != confirmed.id]
            if self.belongs(key, confirmed):
                updated.append(confirmed)
            return self._order(updated)

        return reconcile

    @staticmethod
    def _remove_patch(entity_id: str) -> Callable[[Any], Any]:
        def patch(items: Optional[List[Any]]) -> Optional[List[Any]]:
            if items is None or not _contains(items, entity_id):
                return None
            return [item for item in items if getattr(item, "id", None) != entity_id]

        return patch

    async def _execute(self, descriptor: MutationDescriptor) -> Result[Any, SyncError]:
        return await self._executor.execute(descriptor)

    # Write operations ----------------------------------------------------

    async def create(self, **fields: Any) -> Result[Any, SyncError]:
        try:
            payload = self.create_schema(**fields)
        except ValidationError as error:
            return Failure(validation_failure(self.entity_type, error))
        data = payload.changes()

        descriptor = MutationDescriptor(
            entity_type=self.entity_type,
            kind=MutationKind.CREATE,
            remote=lambda: self._backend.create(self.entity_type, data),
        )
        temp_id = placeholder_id(descriptor.id)
        placeholder = self.model.model_validate({**data, "id": temp_id})
        reconcile = replace_placeholder(temp_id)
        descriptor.targets = [
            MutationTarget(key, self._insert_patch(key, placeholder), reconcile)
            for key in self.list_keys(placeholder)
        ]
        descriptor.subject = placeholder

        def seed(confirmed: Any) -> List[tuple]:
            detail = self.detail_key(confirmed.id)
            return [(detail, confirmed)] if detail is not None else []

        descriptor.seed = seed
        return await self._execute(descriptor)

    async def update(self, entity_id: str, **changes: Any) -> Result[Any, SyncError]:
        try:
            payload = self.update_schema(**changes)
        except ValidationError as error:
            return Failure(validation_failure(self.entity_type, error))
        data = payload.changes()
        if not data:
            return Failure(
                ValidationFailure("no changes supplied", entity_type=EntityType(self.entity_type).value)
            )
        return await self._update(entity_id, data)

    async def _update(self, entity_id: str, data: Dict[str, Any]) -> Result[Any, SyncError]:
        current = self.cached(entity_id)
        descriptor = MutationDescriptor(
            entity_type=self.entity_type,
            kind=MutationKind.UPDATE,
            remote=lambda: self._backend.update(self.entity_type, {"id": entity_id, **data}),
            subject=current,
        )

        targets: List[MutationTarget] = []
        detail = self.detail_key(entity_id)
        if detail is not None:
            targets.append(
                MutationTarget(
                    detail,
                    lambda value: None if value is None else self.apply_changes(value, data),
                )
            )
        list_keys = self.list_keys(current) if current is not None else []
        for key in dict.fromkeys([*list_keys, *self._search_keys()]):
            targets.append(
                MutationTarget(key, self._replace_patch(key, entity_id, data), self._reconcile_update(key))
            )
        descriptor.targets = targets
        return await self._execute(descriptor)

    async def delete(self, entity_id: str) -> Result[Any, SyncError]:
        current = self.cached(entity_id)
        descriptor = MutationDescriptor(
            entity_type=self.entity_type,
            kind=MutationKind.DELETE,
            remote=lambda: self._backend.delete(self.entity_type, {"id": entity_id}),
            subject=current,
        )
        list_keys = self.list_keys(current) if current is not None else self.list_keys(None)
        descriptor.targets = [
            MutationTarget(key, self._remove_patch(entity_id), keep_current)
            for key in dict.fromkeys([*list_keys, *self._search_keys()])
        ]
        detail = self.detail_key(entity_id)
        if detail is not None:
            descriptor.removes = [detail]
        return await self._execute(descriptor)


__all__ = [
    "EntityService",
    "PLACEHOLDER_PREFIX",
    "is_placeholder",
    "keep_current",
    "placeholder_id",
    "replace_placeholder",
    "validation_failure",
]
