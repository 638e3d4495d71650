from __future__ import annotations

from typing import Any, List, Optional

from caseload.domain.entities import EntityType, Student, StudentCreate, StudentUpdate
from caseload.services.base import EntityService
from caseload.sync import keys
from caseload.sync.keys import QueryKey


class StudentService(EntityService):
    entity_type = EntityType.STUDENT
    model = Student
    create_schema = StudentCreate
    update_schema = StudentUpdate
    search_tag = keys.STUDENT_SEARCH

    def detail_key(self, entity_id: str) -> Optional[QueryKey]:
        return keys.student(entity_id)

    def list_keys(self, entity: Any) -> List[QueryKey]:
        return [keys.students()]

    def sort_key(self, entity: Student) -> Any:
        return (entity.last_name.lower(), entity.first_name.lower())
