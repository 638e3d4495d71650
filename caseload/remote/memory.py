"""In-process backend used by tests and local runs.

Implements all three collaborator contracts over plain dicts. Tests steer it
with `fail_next` (inject a typed failure into the next call of an operation)
and `gate` (hold calls of an operation until the returned event is set).
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Tuple
from uuid import uuid4

from caseload.domain.entities import (
    ENTITY_MODELS,
    EntityType,
    Interaction,
    ReasonCategory,
    apply_interaction_changes,
    summarize_dashboard,
)
from caseload.domain.errors import NotFound, ValidationFailure
from caseload.remote.base import EQ, GTE, IS_NULL, LTE, Filter, Query, TokenClaims, TokenValidation
from caseload.remote.routes import DASHBOARD_AGGREGATE

logger = logging.getLogger(__name__)

TOKEN_TABLES = {
    "setup_tokens": EntityType.SETUP_TOKEN,
    "invitations": EntityType.INVITATION,
}


def _utc(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _field(record: Any, name: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def _matches(record: Any, flt: Filter) -> bool:
    value = _utc(_field(record, flt.field))
    expected = _utc(flt.value)
    if flt.op == EQ:
        return value == expected
    if flt.op == IS_NULL:
        return (value is None) == bool(expected)
    if value is None:
        return False
    if flt.op == GTE:
        return value >= expected
    if flt.op == LTE:
        return value <= expected
    raise ValueError(f"unsupported filter operator {flt.op!r}")


@dataclass
class RecordedCall:
    operation: str
    entity_type: Optional[str]
    detail: Any = None


class InMemoryBackend:
    def __init__(self, *, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)) -> None:
        self._clock = clock
        self._tables: Dict[EntityType, Dict[str, Any]] = defaultdict(dict)
        self._failures: Dict[str, Deque[BaseException]] = defaultdict(deque)
        self._gates: Dict[str, asyncio.Event] = {}
        self.calls: List[RecordedCall] = []

    # Test controls -------------------------------------------------------

    def seed(self, entity_type: EntityType, *records: Any) -> None:
        table = self._tables[EntityType(entity_type)]
        for record in records:
            table[str(_field(record, "id"))] = record

    def add_token(
        self,
        category: str,
        token: str,
        *,
        expires_at: datetime,
        accepted_at: Optional[datetime] = None,
        claims: Optional[TokenClaims] = None,
    ) -> Dict[str, Any]:
        row = {
            "id": uuid4().hex,
            "token": token,
            "expires_at": _utc(expires_at),
            "accepted_at": _utc(accepted_at),
            "created_at": self._clock(),
            "claims": claims or TokenClaims(),
        }
        self.seed(TOKEN_TABLES[category], row)
        return row

    def rows(self, entity_type: EntityType) -> List[Any]:
        return list(self._tables[EntityType(entity_type)].values())

    def fail_next(self, operation: str, error: BaseException, *, times: int = 1) -> None:
        """Make the next `times` calls of `operation` raise `error`."""
        for _ in range(times):
            self._failures[operation].append(error)

    def gate(self, operation: str) -> asyncio.Event:
        """Hold calls of `operation` until the returned event is set."""
        event = asyncio.Event()
        self._gates[operation] = event
        return event

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call.operation == operation)

    async def _enter(self, operation: str, entity_type: Optional[EntityType], detail: Any = None) -> None:
        self.calls.append(
            RecordedCall(operation, EntityType(entity_type).value if entity_type else None, detail)
        )
        gate = self._gates.get(operation)
        if gate is not None:
            await gate.wait()
        else:
            await asyncio.sleep(0)
        pending = self._failures.get(operation)
        if pending:
            raise pending.popleft()

    # DataBackend ---------------------------------------------------------

    def _select(self, entity_type: EntityType, query: Query) -> List[Any]:
        records: Iterable[Any] = self._tables[EntityType(entity_type)].values()
        for flt in query.filters:
            records = [record for record in records if _matches(record, flt)]
        records = list(records)
        if query.search:
            needle = query.search.lower()
            records = [
                record
                for record in records
                if any(needle in str(_field(record, name) or "").lower() for name in query.search_fields)
            ]
        if query.order_by:
            records.sort(
                key=lambda record: (_field(record, query.order_by) is None, _utc(_field(record, query.order_by))),
                reverse=query.descending,
            )
        return records

    async def fetch(self, entity_type: EntityType, query: Query) -> Any:
        await self._enter("fetch", entity_type, query)
        if query.aggregate == DASHBOARD_AGGREGATE:
            selected = self._select(entity_type, Query(filters=query.filters))
            return summarize_dashboard(
                [item for item in selected if isinstance(item, Interaction)],
                [item for item in self.rows(EntityType.CATEGORY) if isinstance(item, ReasonCategory)],
                start=date.fromisoformat(query.param("start")),
                end=date.fromisoformat(query.param("end")),
            )
        records = self._select(entity_type, query)
        if query.single:
            if not records:
                ids = [flt.value for flt in query.filters if flt.field == "id"]
                raise NotFound(EntityType(entity_type).value, ids[0] if ids else None)
            return records[0]
        return records

    async def create(self, entity_type: EntityType, payload: Mapping[str, Any]) -> Any:
        await self._enter("create", entity_type, dict(payload))
        entity_type = EntityType(entity_type)
        now = self._clock()
        data = {key: value for key, value in payload.items() if key != "id"}
        model = ENTITY_MODELS.get(entity_type)
        if model is None:
            raise ValidationFailure(f"{entity_type.value} is not writable", entity_type=entity_type.value)
        entity = model.model_validate({**data, "id": str(uuid4()), "created_at": now, "updated_at": now})
        self._tables[entity_type][entity.id] = entity
        return entity

    async def update(self, entity_type: EntityType, payload: Mapping[str, Any]) -> Any:
        await self._enter("update", entity_type, dict(payload))
        entity_type = EntityType(entity_type)
        entity_id = str(payload.get("id"))
        current = self._tables[entity_type].get(entity_id)
        if current is None:
            raise NotFound(entity_type.value, entity_id)
        changes = {key: value for key, value in payload.items() if key != "id"}
        changes["updated_at"] = self._clock()
        if isinstance(current, Interaction):
            updated = apply_interaction_changes(current, changes)
        else:
            updated = current.model_copy(update=changes)
        self._tables[entity_type][entity_id] = updated
        return updated

    async def delete(self, entity_type: EntityType, payload: Mapping[str, Any]) -> Any:
        await self._enter("delete", entity_type, dict(payload))
        entity_type = EntityType(entity_type)
        entity_id = str(payload.get("id"))
        removed = self._tables[entity_type].pop(entity_id, None)
        if removed is None:
            raise NotFound(entity_type.value, entity_id)
        return removed

    # CleanupBackend ------------------------------------------------------

    async def delete_expired(self, category: str) -> int:
        await self._enter("delete_expired", None, category)
        try:
            entity_type = TOKEN_TABLES[category]
        except KeyError:
            raise ValidationFailure(f"unknown cleanup category {category!r}") from None
        now = self._clock()
        table = self._tables[entity_type]
        expired = [
            row_id
            for row_id, row in table.items()
            if row["expires_at"] < now and (entity_type is not EntityType.INVITATION or row["accepted_at"] is None)
        ]
        for row_id in expired:
            del table[row_id]
        logger.debug("memory_backend.delete_expired", extra={"category": category, "deleted": len(expired)})
        return len(expired)

    # TokenValidator ------------------------------------------------------

    def _find_token(self, token: str) -> Optional[Tuple[EntityType, Dict[str, Any]]]:
        for entity_type in TOKEN_TABLES.values():
            for row in self._tables[entity_type].values():
                if row["token"] == token:
                    return entity_type, row
        return None

    async def validate(self, token: str) -> TokenValidation:
        await self._enter("validate", None, token)
        found = self._find_token(token)
        if found is None:
            return TokenValidation(is_valid=False)
        entity_type, row = found
        valid = row["expires_at"] > self._clock()
        if entity_type is EntityType.INVITATION and row["accepted_at"] is not None:
            valid = False
        return TokenValidation(is_valid=valid, claims=row["claims"], expires_at=row["expires_at"])

    async def close(self) -> None:
        return None


__all__ = ["InMemoryBackend", "RecordedCall", "TOKEN_TABLES"]
