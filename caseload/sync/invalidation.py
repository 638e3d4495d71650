"""Which cached reads a committed write makes stale.

Rules are declared once at startup and frozen. A target is either a static
`QueryKey`/`KeyPattern` or a pure function of the mutated entity that builds
per-instance keys from its foreign-key fields, so resolving never needs to
look at the cache itself.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from caseload.domain.entities import EntityType
from caseload.sync import keys
from caseload.sync.keys import KeyOrPattern, KeyPattern, QueryKey


class MutationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    EXPIRE = "expire"


DynamicTarget = Callable[[Any], Union[KeyOrPattern, Iterable[KeyOrPattern], None]]
Target = Union[QueryKey, KeyPattern, DynamicTarget]

ALL_WRITES = (MutationKind.CREATE, MutationKind.UPDATE, MutationKind.DELETE)


@dataclass(frozen=True)
class InvalidationRule:
    entity_type: EntityType
    kind: MutationKind
    targets: Tuple[Target, ...]


def entity_field(entity: Any, name: str) -> Any:
    if entity is None:
        return None
    if isinstance(entity, dict):
        return entity.get(name)
    return getattr(entity, name, None)


def by_field(name: str, builder: Callable[[str], QueryKey]) -> DynamicTarget:
    """Dynamic target keyed by one foreign-key field; skipped when the field is empty."""

    def target(entity: Any) -> Optional[QueryKey]:
        value = entity_field(entity, name)
        if not value:
            return None
        return builder(value)

    target.__name__ = f"{builder.__name__}({name})"
    return target


class InvalidationGraph:
    def __init__(self, rules: Iterable[InvalidationRule] = ()) -> None:
        self._table: Dict[Tuple[EntityType, MutationKind], List[Target]] = {}
        self._frozen = False
        for rule in rules:
            self._add(rule.entity_type, rule.kind, rule.targets)

    def _add(self, entity_type: EntityType, kind: MutationKind, targets: Iterable[Target]) -> None:
        if self._frozen:
            raise RuntimeError("invalidation rules are read-only once the graph is frozen")
        bucket = self._table.setdefault((EntityType(entity_type), MutationKind(kind)), [])
        bucket.extend(targets)

    def declare(
        self,
        entity_type: EntityType,
        kinds: Union[MutationKind, Iterable[MutationKind]],
        *targets: Target,
    ) -> "InvalidationGraph":
        if isinstance(kinds, MutationKind):
            kinds = (kinds,)
        for kind in kinds:
            self._add(entity_type, kind, targets)
        return self

    def freeze(self) -> "InvalidationGraph":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def rules(self) -> List[InvalidationRule]:
        return [
            InvalidationRule(entity_type, kind, tuple(targets))
            for (entity_type, kind), targets in self._table.items()
        ]

    def has_rule(self, entity_type: EntityType, kind: MutationKind) -> bool:
        return (EntityType(entity_type), MutationKind(kind)) in self._table

    def resolve(self, entity_type: EntityType, kind: MutationKind, *subjects: Any) -> List[KeyOrPattern]:
        """Every key or pattern to mark stale, deduplicated in declaration order.

        Dynamic targets are evaluated once per non-None subject, so passing
        both the pre-mutation entity and the confirmed one covers a foreign
        key that the write changed.
        """

        targets = self._table.get((EntityType(entity_type), MutationKind(kind)), ())
        resolved: Dict[KeyOrPattern, None] = {}
        for target in targets:
            if isinstance(target, (QueryKey, KeyPattern)):
                resolved[target] = None
                continue
            for subject in subjects:
                if subject is None:
                    continue
                produced = target(subject)
                if produced is None:
                    continue
                if isinstance(produced, (QueryKey, KeyPattern)):
                    resolved[produced] = None
                else:
                    for item in produced:
                        resolved[item] = None
        return list(resolved)


def build_default_graph() -> InvalidationGraph:
    graph = InvalidationGraph()

    student_lists = (keys.students(), keys.every(keys.STUDENT_SEARCH))
    graph.declare(EntityType.STUDENT, (MutationKind.CREATE, MutationKind.UPDATE), *student_lists)
    graph.declare(
        EntityType.STUDENT,
        MutationKind.DELETE,
        *student_lists,
        by_field("id", keys.interactions_by_student),
        by_field("id", keys.follow_ups_by_student),
        keys.interactions(),
    )

    contact_lists = (keys.contacts(), keys.every(keys.CONTACT_SEARCH))
    graph.declare(EntityType.CONTACT, (MutationKind.CREATE, MutationKind.UPDATE), *contact_lists)
    graph.declare(
        EntityType.CONTACT,
        MutationKind.DELETE,
        *contact_lists,
        by_field("id", keys.interactions_by_contact),
        keys.interactions(),
    )

    graph.declare(
        EntityType.INTERACTION,
        ALL_WRITES,
        keys.interactions(),
        by_field("student_id", keys.interactions_by_student),
        by_field("regarding_student_id", keys.interactions_by_student),
        by_field("contact_id", keys.interactions_by_contact),
        keys.every(keys.INTERACTIONS_BY_RANGE),
        keys.follow_ups(),
        by_field("student_id", keys.follow_ups_by_student),
        keys.every(keys.DASHBOARD_STATS),
    )

    graph.declare(EntityType.CATEGORY, ALL_WRITES, keys.categories())
    graph.declare(
        EntityType.SUBCATEGORY,
        ALL_WRITES,
        keys.subcategories(),
        by_field("category_id", keys.subcategories_by_category),
        keys.categories(),
    )

    graph.declare(EntityType.INVITATION, MutationKind.EXPIRE, keys.every(keys.INVITATIONS))
    graph.declare(EntityType.SETUP_TOKEN, MutationKind.EXPIRE, keys.every(keys.SETUP_TOKENS))
    return graph.freeze()


__all__ = [
    "ALL_WRITES",
    "InvalidationGraph",
    "InvalidationRule",
    "MutationKind",
    "build_default_graph",
    "by_field",
    "entity_field",
]
