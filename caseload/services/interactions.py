from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional

from caseload.core.result import Failure, Result
from caseload.domain.entities import (
    EntityType,
    Interaction,
    InteractionCreate,
    InteractionUpdate,
    apply_interaction_changes,
    follow_up_completion_note,
)
from caseload.domain.errors import SyncError
from caseload.remote.routes import route_for
from caseload.services.base import EntityService
from caseload.sync import keys
from caseload.sync.keys import QueryKey

_FOLLOW_UP_TAGS = {keys.FOLLOW_UPS, keys.FOLLOW_UPS_BY_STUDENT}


class InteractionService(EntityService):
    entity_type = EntityType.INTERACTION
    model = Interaction
    create_schema = InteractionCreate
    update_schema = InteractionUpdate

    def detail_key(self, entity_id: str) -> Optional[QueryKey]:
        return keys.interaction(entity_id)

    def list_keys(self, entity: Any) -> List[QueryKey]:
        found = [keys.interactions()]
        if entity is None:
            return found
        if entity.student_id:
            found.append(keys.interactions_by_student(entity.student_id))
        if entity.contact_id:
            found.append(keys.interactions_by_contact(entity.contact_id))
        found.append(keys.follow_ups())
        if entity.student_id:
            found.append(keys.follow_ups_by_student(entity.student_id))
        return found

    def belongs(self, key: QueryKey, entity: Any) -> bool:
        if key.tag in _FOLLOW_UP_TAGS and not entity.is_pending_follow_up:
            return False
        if key.tag in (keys.INTERACTIONS_BY_STUDENT, keys.FOLLOW_UPS_BY_STUDENT):
            return key.get("student_id") == entity.student_id
        if key.tag == keys.INTERACTIONS_BY_CONTACT:
            return key.get("contact_id") == entity.contact_id
        return True

    def sort_key(self, entity: Interaction) -> Any:
        return -entity.start_time.timestamp()

    def apply_changes(self, entity: Any, changes: Mapping[str, Any]) -> Any:
        return apply_interaction_changes(entity, changes)

    async def complete_follow_up(
        self,
        interaction_id: str,
        completion_notes: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Result[Any, SyncError]:
        """Mark a follow-up done, appending the completion stamp to the notes."""

        current = self.cached(interaction_id)
        if current is None:
            entity_type, query = route_for(keys.interaction(interaction_id))
            try:
                current = await self._backend.fetch(entity_type, query)
            except SyncError as error:
                return Failure(error)

        changes: dict = {"is_follow_up_complete": True}
        if completion_notes:
            changes["notes"] = follow_up_completion_note(
                current.notes,
                completion_notes,
                now=now or datetime.now(timezone.utc),
            )
        return await self._update(interaction_id, changes)
