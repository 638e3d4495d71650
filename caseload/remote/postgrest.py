"""REST adapter for a PostgREST (Supabase-style) backend.

Implements `DataBackend`, `CleanupBackend` and `TokenValidator`. Every HTTP failure is mapped
onto the sync error taxonomy here so nothing above this module ever sees an
aiohttp exception.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import aiohttp

from caseload.domain.entities import (
    ENTITY_MODELS,
    TABLE_NAMES,
    EntityType,
    parse_entities,
    summarize_dashboard,
)
from caseload.domain.errors import (
    AuthFailure,
    Conflict,
    NetworkFailure,
    NotFound,
    SyncError,
    ValidationFailure,
)
from caseload.remote.base import EQ, GTE, IS_NULL, LTE, Filter, Query, TokenClaims, TokenValidation
from caseload.remote.routes import DASHBOARD_AGGREGATE

logger = logging.getLogger(__name__)

_OPERATORS = {EQ: "eq", GTE: "gte", LTE: "lte"}

CLEANUP_FILTERS: Dict[str, Tuple[Tuple[str, str], ...]] = {
    "setup_tokens": (),
    "invitations": (("accepted_at", "is.null"),),
}

# (table, column that marks the token as consumed)
VALIDATION_TABLES: Tuple[Tuple[str, str], ...] = (
    ("setup_tokens", "used_at"),
    ("invitations", "accepted_at"),
)


def _encode(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


def encode_filter(flt: Filter) -> Tuple[str, str]:
    if flt.op == IS_NULL:
        return flt.field, "is.null" if flt.value else "not.is.null"
    return flt.field, f"{_OPERATORS[flt.op]}.{_encode(flt.value)}"


def encode_query(query: Query) -> List[Tuple[str, str]]:
    """Translate a `Query` into PostgREST query-string pairs."""

    params: List[Tuple[str, str]] = [("select", "*")]
    params.extend(encode_filter(flt) for flt in query.filters)
    if query.search and query.search_fields:
        needle = query.search.replace(",", " ").replace("(", " ").replace(")", " ").strip()
        clauses = ",".join(f"{name}.ilike.*{needle}*" for name in query.search_fields)
        params.append(("or", f"({clauses})"))
    if query.order_by:
        direction = "desc" if query.descending else "asc"
        params.append(("order", f"{query.order_by}.{direction}"))
    if query.single:
        params.append(("limit", "1"))
    return params


def error_for_status(status: int, body: Any, *, entity_type: Optional[str] = None) -> SyncError:
    """Map a PostgREST error response onto the sync error taxonomy."""

    code = ""
    message = ""
    if isinstance(body, Mapping):
        code = str(body.get("code") or "")
        message = str(body.get("message") or body.get("details") or "")
    message = message or f"HTTP {status}"

    if status in (401, 403) or code in {"42501", "PGRST301", "PGRST302"}:
        return AuthFailure(message, entity_type=entity_type)
    if status == 404 or code == "PGRST116":
        return NotFound(entity_type or "record", message=message)
    if status == 409 or code == "23505":
        return Conflict(entity_type or "record", message)
    if status in (400, 406, 422) or code.startswith("22") or code.startswith("23"):
        return ValidationFailure(message, entity_type=entity_type)
    return NetworkFailure(message, entity_type=entity_type)


class PostgrestBackend:
    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = "",
        timeout: float = 10.0,
        rest_path: str = "/rest/v1",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._base_url = f"{base_url.rstrip('/')}{rest_path}"
        self._api_key = api_key
        self._timeout = timeout
        self._clock = clock
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def configured(self) -> bool:
        return bool(self._base_url)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    def _headers(self, *, representation: bool = False) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self._api_key:
            headers["apikey"] = self._api_key
            headers["Authorization"] = f"Bearer {self._api_key}"
        if representation:
            headers["Prefer"] = "return=representation"
        return headers

    async def _request(
        self,
        method: str,
        entity_type: EntityType,
        *,
        params: Sequence[Tuple[str, str]] = (),
        payload: Optional[Mapping[str, Any]] = None,
        representation: bool = False,
        table: Optional[str] = None,
    ) -> Any:
        entity_name = EntityType(entity_type).value
        url = f"{self._base_url}/{table or TABLE_NAMES[EntityType(entity_type)]}"
        data = json.dumps(_jsonable(payload)) if payload is not None else None
        session = self._get_session()
        try:
            async with session.request(
                method,
                url,
                params=list(params),
                data=data,
                headers=self._headers(representation=representation),
            ) as resp:
                raw = await resp.text()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning(
                "backend.request.failed",
                extra={"method": method, "entity_type": entity_name, "error": type(exc).__name__},
            )
            raise NetworkFailure(str(exc) or type(exc).__name__, entity_type=entity_name) from exc

        try:
            body = json.loads(raw) if raw else None
        except ValueError:
            body = {"message": raw[:500]}

        if status >= 400:
            error = error_for_status(status, body, entity_type=entity_name)
            logger.warning(
                "backend.request.rejected",
                extra={
                    "method": method,
                    "entity_type": entity_name,
                    "status": status,
                    "error": type(error).__name__,
                },
            )
            raise error
        return body

    def _parse(self, entity_type: EntityType, rows: Any) -> List[Any]:
        rows = rows or []
        if EntityType(entity_type) in ENTITY_MODELS:
            return parse_entities(entity_type, rows)
        return list(rows)

    @staticmethod
    def _one(entity_type: EntityType, rows: List[Any], entity_id: Any = None) -> Any:
        if not rows:
            raise NotFound(EntityType(entity_type).value, None if entity_id is None else str(entity_id))
        return rows[0]

    # DataBackend ---------------------------------------------------------

    async def fetch(self, entity_type: EntityType, query: Query) -> Any:
        if query.aggregate == DASHBOARD_AGGREGATE:
            return await self._dashboard(query)
        rows = await self._request("GET", entity_type, params=encode_query(query))
        items = self._parse(entity_type, rows)
        if query.single:
            ids = [flt.value for flt in query.filters if flt.field == "id"]
            return self._one(entity_type, items, ids[0] if ids else None)
        return items

    async def _dashboard(self, query: Query) -> Any:
        interactions = await self.fetch(EntityType.INTERACTION, Query(filters=query.filters))
        categories = await self.fetch(EntityType.CATEGORY, Query(order_by="sort_order"))
        return summarize_dashboard(
            interactions,
            categories,
            start=date.fromisoformat(query.param("start")),
            end=date.fromisoformat(query.param("end")),
        )

    async def create(self, entity_type: EntityType, payload: Mapping[str, Any]) -> Any:
        data = {key: value for key, value in payload.items() if key != "id"}
        rows = await self._request("POST", entity_type, payload=data, representation=True)
        return self._one(entity_type, self._parse(entity_type, rows))

    async def update(self, entity_type: EntityType, payload: Mapping[str, Any]) -> Any:
        entity_id = payload.get("id")
        changes = {key: value for key, value in payload.items() if key != "id"}
        rows = await self._request(
            "PATCH",
            entity_type,
            params=[encode_filter(Filter("id", EQ, entity_id))],
            payload=changes,
            representation=True,
        )
        return self._one(entity_type, self._parse(entity_type, rows), entity_id)

    async def delete(self, entity_type: EntityType, payload: Mapping[str, Any]) -> Any:
        entity_id = payload.get("id")
        rows = await self._request(
            "DELETE",
            entity_type,
            params=[encode_filter(Filter("id", EQ, entity_id))],
            representation=True,
        )
        return self._one(entity_type, self._parse(entity_type, rows), entity_id)

    # CleanupBackend ------------------------------------------------------

    async def delete_expired(self, category: str) -> int:
        try:
            extra = CLEANUP_FILTERS[category]
        except KeyError:
            raise ValidationFailure(f"unknown cleanup category {category!r}") from None
        entity_type = EntityType.SETUP_TOKEN if category == "setup_tokens" else EntityType.INVITATION
        params = [
            ("select", "id"),
            ("expires_at", f"lt.{self._clock().isoformat()}"),
            *extra,
        ]
        rows = await self._request("DELETE", entity_type, params=params, representation=True, table=category)
        return len(rows or [])

    # TokenValidator ------------------------------------------------------

    async def validate(self, token: str) -> TokenValidation:
        """Look the token up among unused setup tokens, then pending invitations."""

        if not token or not token.strip():
            return TokenValidation(is_valid=False)
        for category, used_field in VALIDATION_TABLES:
            entity_type = EntityType.SETUP_TOKEN if category == "setup_tokens" else EntityType.INVITATION
            params = [
                ("select", "*"),
                ("token", f"eq.{token}"),
                (used_field, "is.null"),
                ("limit", "1"),
            ]
            rows = await self._request("GET", entity_type, params=params, table=category)
            if not rows:
                continue
            row = rows[0]
            expires_at = _parse_timestamp(row.get("expires_at"))
            claims = TokenClaims(
                email=row.get("email") or row.get("admin_email"),
                role=row.get("role"),
                tenant_id=row.get("tenant_id"),
                tenant_name=row.get("tenant_name"),
                admin_email=row.get("admin_email"),
            )
            is_valid = expires_at is not None and expires_at > self._clock()
            return TokenValidation(is_valid=is_valid, claims=claims, expires_at=expires_at)
        return TokenValidation(is_valid=False)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None


__all__ = ["PostgrestBackend", "encode_filter", "encode_query", "error_for_status"]
