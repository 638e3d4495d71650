"""Structured cache addresses.

A `QueryKey` names one cached read: a tag plus an order-independent set of
qualifiers. A `KeyPattern` matches every key of one tag whose qualifiers
include the required ones; it is what invalidation rules and subscriptions
use to address "all searches" or "every date range".
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, FrozenSet, Mapping, Optional, Tuple, Union

Qualifier = Tuple[str, Any]


def _hashable(value: Any) -> Any:
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Mapping):
        return tuple(sorted((str(name), _hashable(item)) for name, item in value.items()))
    if isinstance(value, (list, tuple)):
        return tuple(_hashable(item) for item in value)
    if isinstance(value, (set, frozenset)):
        return tuple(sorted((_hashable(item) for item in value), key=repr))
    return value


def _freeze(qualifiers: dict) -> FrozenSet[Qualifier]:
    return frozenset((name, _hashable(value)) for name, value in qualifiers.items() if value is not None)


@dataclass(frozen=True)
class QueryKey:
    tag: str
    qualifiers: FrozenSet[Qualifier] = field(default_factory=frozenset)

    @classmethod
    def of(cls, tag: str, **qualifiers: Any) -> "QueryKey":
        """Build a key; `None` qualifiers are dropped, dates become ISO strings and
        mappings or sequences become tuples."""
        return cls(tag, _freeze(qualifiers))

    def get(self, name: str, default: Any = None) -> Any:
        for key, value in self.qualifiers:
            if key == name:
                return value
        return default

    def sort_key(self) -> Tuple[str, Tuple[Tuple[str, str], ...]]:
        """Total order used to acquire per-key locks without deadlocks."""
        return self.tag, tuple(sorted((name, repr(value)) for name, value in self.qualifiers))

    def __str__(self) -> str:
        if not self.qualifiers:
            return self.tag
        inner = ",".join(f"{name}={value}" for name, value in sorted(self.qualifiers, key=lambda q: q[0]))
        return f"{self.tag}[{inner}]"


@dataclass(frozen=True)
class KeyPattern:
    tag: str
    required: FrozenSet[Qualifier] = field(default_factory=frozenset)

    @classmethod
    def of(cls, tag: str, **required: Any) -> "KeyPattern":
        return cls(tag, _freeze(required))

    def matches(self, key: QueryKey) -> bool:
        return key.tag == self.tag and self.required <= key.qualifiers

    def __str__(self) -> str:
        if not self.required:
            return f"{self.tag}[*]"
        inner = ",".join(f"{name}={value}" for name, value in sorted(self.required, key=lambda q: q[0]))
        return f"{self.tag}[{inner},*]"


KeyOrPattern = Union[QueryKey, KeyPattern]


def matches(target: KeyOrPattern, key: QueryKey) -> bool:
    if isinstance(target, KeyPattern):
        return target.matches(key)
    return target == key


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------

STUDENTS = "students"
STUDENT = "student"
STUDENT_SEARCH = "student_search"
CONTACTS = "contacts"
CONTACT = "contact"
CONTACT_SEARCH = "contact_search"
INTERACTIONS = "interactions"
INTERACTION = "interaction"
INTERACTIONS_BY_STUDENT = "interactions_by_student"
INTERACTIONS_BY_CONTACT = "interactions_by_contact"
INTERACTIONS_BY_RANGE = "interactions_by_range"
FOLLOW_UPS = "follow_ups"
FOLLOW_UPS_BY_STUDENT = "follow_ups_by_student"
CATEGORIES = "categories"
CATEGORY = "category"
SUBCATEGORIES = "subcategories"
SUBCATEGORIES_BY_CATEGORY = "subcategories_by_category"
DASHBOARD_STATS = "dashboard_stats"
INVITATIONS = "invitations"
SETUP_TOKENS = "setup_tokens"


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def students() -> QueryKey:
    return QueryKey.of(STUDENTS)


def student(student_id: str) -> QueryKey:
    return QueryKey.of(STUDENT, id=student_id)


def student_search(query: str) -> QueryKey:
    return QueryKey.of(STUDENT_SEARCH, q=query.strip().lower())


def contacts() -> QueryKey:
    return QueryKey.of(CONTACTS)


def contact(contact_id: str) -> QueryKey:
    return QueryKey.of(CONTACT, id=contact_id)


def contact_search(query: str) -> QueryKey:
    return QueryKey.of(CONTACT_SEARCH, q=query.strip().lower())


def interactions() -> QueryKey:
    return QueryKey.of(INTERACTIONS)


def interaction(interaction_id: str) -> QueryKey:
    return QueryKey.of(INTERACTION, id=interaction_id)


def interactions_by_student(student_id: str) -> QueryKey:
    return QueryKey.of(INTERACTIONS_BY_STUDENT, student_id=student_id)


def interactions_by_contact(contact_id: str) -> QueryKey:
    return QueryKey.of(INTERACTIONS_BY_CONTACT, contact_id=contact_id)


def interactions_by_range(start: date, end: date) -> QueryKey:
    return QueryKey.of(INTERACTIONS_BY_RANGE, start=start, end=end)


def follow_ups() -> QueryKey:
    return QueryKey.of(FOLLOW_UPS)


def follow_ups_by_student(student_id: str) -> QueryKey:
    return QueryKey.of(FOLLOW_UPS_BY_STUDENT, student_id=student_id)


def categories() -> QueryKey:
    return QueryKey.of(CATEGORIES)


def category(category_id: str) -> QueryKey:
    return QueryKey.of(CATEGORY, id=category_id)


def subcategories() -> QueryKey:
    return QueryKey.of(SUBCATEGORIES)


def subcategories_by_category(category_id: str) -> QueryKey:
    return QueryKey.of(SUBCATEGORIES_BY_CATEGORY, category_id=category_id)


def dashboard_stats(start: date, end: date) -> QueryKey:
    return QueryKey.of(DASHBOARD_STATS, start=start, end=end)


def invitations(status: Optional[str] = None) -> QueryKey:
    return QueryKey.of(INVITATIONS, status=status)


def setup_tokens() -> QueryKey:
    return QueryKey.of(SETUP_TOKENS)


def every(tag: str) -> KeyPattern:
    """Pattern over every key of `tag`."""
    return KeyPattern.of(tag)


__all__ = [
    "KeyOrPattern",
    "KeyPattern",
    "QueryKey",
    "categories",
    "category",
    "contact",
    "contact_search",
    "contacts",
    "dashboard_stats",
    "every",
    "follow_ups",
    "follow_ups_by_student",
    "interaction",
    "interactions",
    "interactions_by_contact",
    "interactions_by_range",
    "interactions_by_student",
    "invitations",
    "matches",
    "setup_tokens",
    "student",
    "student_search",
    "students",
    "subcategories",
    "subcategories_by_category",
]
