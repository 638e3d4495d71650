"""Collaborator contracts the sync core depends on.

The core never implements these against a real data store itself; it is
handed an implementation by the composition root. Every method fails with a
`caseload.domain.errors.SyncError` subclass, never with a transport error.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional, Protocol, Tuple

from caseload.domain.entities import EntityType

# Filter operators understood by every backend.
EQ = "eq"
GTE = "gte"
LTE = "lte"
IS_NULL = "is_null"


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any = None


@dataclass(frozen=True)
class Query:
    """Backend-agnostic description of one read."""

    filters: Tuple[Filter, ...] = ()
    order_by: Optional[str] = None
    descending: bool = False
    single: bool = False
    search: Optional[str] = None
    search_fields: Tuple[str, ...] = ()
    aggregate: Optional[str] = None
    params: Tuple[Tuple[str, Any], ...] = field(default=())

    def param(self, name: str, default: Any = None) -> Any:
        return dict(self.params).get(name, default)


@dataclass(frozen=True)
class TokenClaims:
    email: Optional[str] = None
    role: Optional[str] = None
    tenant_id: Optional[str] = None
    tenant_name: Optional[str] = None
    admin_email: Optional[str] = None


@dataclass(frozen=True)
class TokenValidation:
    is_valid: bool
    claims: TokenClaims = field(default_factory=TokenClaims)
    expires_at: Optional[datetime] = None


class DataBackend(Protocol):
    async def fetch(self, entity_type: EntityType, query: Query) -> Any:
        """Return one entity (`query.single`), a list of entities, or an aggregate."""

    async def create(self, entity_type: EntityType, payload: Mapping[str, Any]) -> Any:
        """Insert and return the confirmed entity with its server-assigned id."""

    async def update(self, entity_type: EntityType, payload: Mapping[str, Any]) -> Any:
        """Apply `payload` (which carries `id`) and return the confirmed entity."""

    async def delete(self, entity_type: EntityType, payload: Mapping[str, Any]) -> Any:
        """Delete by `payload["id"]` and return the deleted entity."""


class CleanupBackend(Protocol):
    async def delete_expired(self, category: str) -> int:
        """Delete expired records of `category`, returning how many went away.

        Idempotent: a second call with nothing newly expired returns 0.
        """


class TokenValidator(Protocol):
    async def validate(self, token: str) -> TokenValidation:
        ...


__all__ = [
    "CleanupBackend",
    "DataBackend",
    "EQ",
    "Filter",
    "GTE",
    "IS_NULL",
    "LTE",
    "Query",
    "TokenClaims",
    "TokenValidation",
    "TokenValidator",
]
