from __future__ import annotations

from typing import Any, List, Optional

from caseload.domain.entities import Contact, ContactCreate, ContactUpdate, EntityType
from caseload.services.base import EntityService
from caseload.sync import keys
from caseload.sync.keys import QueryKey


class ContactService(EntityService):
    entity_type = EntityType.CONTACT
    model = Contact
    create_schema = ContactCreate
    update_schema = ContactUpdate
    search_tag = keys.CONTACT_SEARCH

    def detail_key(self, entity_id: str) -> Optional[QueryKey]:
        return keys.contact(entity_id)

    def list_keys(self, entity: Any) -> List[QueryKey]:
        return [keys.contacts()]

    def sort_key(self, entity: Contact) -> Any:
        return (entity.last_name.lower(), entity.first_name.lower())
