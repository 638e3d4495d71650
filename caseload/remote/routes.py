"""Map cache keys onto backend reads."""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Callable, Dict, Tuple

from caseload.domain.entities import EntityType
from caseload.remote.base import EQ, GTE, IS_NULL, LTE, Filter, Query
from caseload.sync import keys
from caseload.sync.keys import QueryKey

Route = Tuple[EntityType, Query]

DASHBOARD_AGGREGATE = "dashboard_stats"

_STUDENT_SEARCH_FIELDS = ("first_name", "last_name", "student_id")
_CONTACT_SEARCH_FIELDS = ("first_name", "last_name", "organization")


def _day_start(value: str) -> datetime:
    return datetime.combine(date.fromisoformat(value), time.min, tzinfo=timezone.utc)


def _day_end(value: str) -> datetime:
    return datetime.combine(date.fromisoformat(value), time.max, tzinfo=timezone.utc)


def _by_id(entity_type: EntityType) -> Callable[[QueryKey], Route]:
    def route(key: QueryKey) -> Route:
        return entity_type, Query(filters=(Filter("id", EQ, key.get("id")),), single=True)

    return route


def _range(key: QueryKey) -> Tuple[Filter, ...]:
    return (
        Filter("start_time", GTE, _day_start(key.get("start"))),
        Filter("start_time", LTE, _day_end(key.get("end"))),
    )


_INTERACTION_ORDER = {"order_by": "start_time", "descending": True}

_ROUTES: Dict[str, Callable[[QueryKey], Route]] = {
    keys.STUDENTS: lambda key: (EntityType.STUDENT, Query(order_by="last_name")),
    keys.STUDENT: _by_id(EntityType.STUDENT),
    keys.STUDENT_SEARCH: lambda key: (
        EntityType.STUDENT,
        Query(order_by="last_name", search=key.get("q"), search_fields=_STUDENT_SEARCH_FIELDS),
    ),
    keys.CONTACTS: lambda key: (EntityType.CONTACT, Query(order_by="last_name")),
    keys.CONTACT: _by_id(EntityType.CONTACT),
    keys.CONTACT_SEARCH: lambda key: (
        EntityType.CONTACT,
        Query(order_by="last_name", search=key.get("q"), search_fields=_CONTACT_SEARCH_FIELDS),
    ),
    keys.INTERACTIONS: lambda key: (EntityType.INTERACTION, Query(**_INTERACTION_ORDER)),
    keys.INTERACTION: _by_id(EntityType.INTERACTION),
    keys.INTERACTIONS_BY_STUDENT: lambda key: (
        EntityType.INTERACTION,
        Query(filters=(Filter("student_id", EQ, key.get("student_id")),), **_INTERACTION_ORDER),
    ),
    keys.INTERACTIONS_BY_CONTACT: lambda key: (
        EntityType.INTERACTION,
        Query(filters=(Filter("contact_id", EQ, key.get("contact_id")),), **_INTERACTION_ORDER),
    ),
    keys.INTERACTIONS_BY_RANGE: lambda key: (
        EntityType.INTERACTION,
        Query(filters=_range(key), **_INTERACTION_ORDER),
    ),
    keys.FOLLOW_UPS: lambda key: (
        EntityType.INTERACTION,
        Query(
            filters=(Filter("needs_follow_up", EQ, True), Filter("is_follow_up_complete", EQ, False)),
            order_by="follow_up_date",
        ),
    ),
    keys.FOLLOW_UPS_BY_STUDENT: lambda key: (
        EntityType.INTERACTION,
        Query(
            filters=(
                Filter("student_id", EQ, key.get("student_id")),
                Filter("needs_follow_up", EQ, True),
                Filter("is_follow_up_complete", EQ, False),
            ),
            order_by="follow_up_date",
        ),
    ),
    keys.CATEGORIES: lambda key: (EntityType.CATEGORY, Query(order_by="sort_order")),
    keys.CATEGORY: _by_id(EntityType.CATEGORY),
    keys.SUBCATEGORIES: lambda key: (EntityType.SUBCATEGORY, Query(order_by="sort_order")),
    keys.SUBCATEGORIES_BY_CATEGORY: lambda key: (
        EntityType.SUBCATEGORY,
        Query(filters=(Filter("category_id", EQ, key.get("category_id")),), order_by="sort_order"),
    ),
    keys.DASHBOARD_STATS: lambda key: (
        EntityType.INTERACTION,
        Query(
            filters=_range(key),
            aggregate=DASHBOARD_AGGREGATE,
            params=(("start", key.get("start")), ("end", key.get("end"))),
        ),
    ),
    keys.INVITATIONS: lambda key: (
        EntityType.INVITATION,
        Query(
            filters=(Filter("accepted_at", IS_NULL, True),) if key.get("status") == "pending" else (),
            order_by="created_at",
            descending=True,
        ),
    ),
    keys.SETUP_TOKENS: lambda key: (
        EntityType.SETUP_TOKEN,
        Query(order_by="created_at", descending=True),
    ),
}


def route_for(key: QueryKey) -> Route:
    """Return the `(entity_type, query)` that loads `key`.

    Raises KeyError for tags with no registered route.
    """

    try:
        builder = _ROUTES[key.tag]
    except KeyError:
        raise KeyError(f"no backend route for cache key {key}") from None
    return builder(key)


def has_route(key: QueryKey) -> bool:
    return key.tag in _ROUTES


__all__ = ["DASHBOARD_AGGREGATE", "Route", "has_route", "route_for"]
