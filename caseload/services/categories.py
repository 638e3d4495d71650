"""Reason categories and their subcategories.

Both are small, admin-managed lists ordered by `sort_order`; the counselor
forms read them on every interaction entry.
"""

from __future__ import annotations

from typing import Any, List, Optional

from caseload.domain.entities import (
    CategoryCreate,
    CategoryUpdate,
    EntityType,
    ReasonCategory,
    ReasonSubcategory,
    SubcategoryCreate,
    SubcategoryUpdate,
)
from caseload.services.base import EntityService
from caseload.sync import keys
from caseload.sync.keys import QueryKey


class CategoryService(EntityService):
    entity_type = EntityType.CATEGORY
    model = ReasonCategory
    create_schema = CategoryCreate
    update_schema = CategoryUpdate

    def detail_key(self, entity_id: str) -> Optional[QueryKey]:
        return keys.category(entity_id)

    def list_keys(self, entity: Any) -> List[QueryKey]:
        return [keys.categories()]

    def sort_key(self, entity: ReasonCategory) -> Any:
        return (entity.sort_order, entity.name.lower())


class SubcategoryService(EntityService):
    entity_type = EntityType.SUBCATEGORY
    model = ReasonSubcategory
    create_schema = SubcategoryCreate
    update_schema = SubcategoryUpdate

    def list_keys(self, entity: Any) -> List[QueryKey]:
        found = [keys.subcategories()]
        if entity is not None and entity.category_id:
            found.append(keys.subcategories_by_category(entity.category_id))
        return found

    def belongs(self, key: QueryKey, entity: Any) -> bool:
        if key.tag == keys.SUBCATEGORIES_BY_CATEGORY:
            return key.get("category_id") == entity.category_id
        return True

    def sort_key(self, entity: ReasonSubcategory) -> Any:
        return (entity.sort_order, entity.name.lower())
