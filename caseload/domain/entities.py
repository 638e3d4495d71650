"""Entity models mirrored from the hosted backend.

Field names follow the backend's column names so rows parse without a
mapping layer. Models are frozen: the cache hands the same instances to every
reader, so nothing downstream may mutate them in place.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class EntityType(str, Enum):
    STUDENT = "student"
    CONTACT = "contact"
    INTERACTION = "interaction"
    CATEGORY = "category"
    SUBCATEGORY = "subcategory"
    INVITATION = "invitation"
    SETUP_TOKEN = "setup_token"


TABLE_NAMES: Dict[EntityType, str] = {
    EntityType.STUDENT: "students",
    EntityType.CONTACT: "contacts",
    EntityType.INTERACTION: "interactions",
    EntityType.CATEGORY: "reason_categories",
    EntityType.SUBCATEGORY: "reason_subcategories",
    EntityType.INVITATION: "invitations",
    EntityType.SETUP_TOKEN: "setup_tokens",
}

GRADE_LEVELS = (
    "Pre-K",
    "Kindergarten",
    "1st Grade",
    "2nd Grade",
    "3rd Grade",
    "4th Grade",
    "5th Grade",
    "6th Grade",
    "7th Grade",
    "8th Grade",
    "9th Grade",
    "10th Grade",
    "11th Grade",
    "12th Grade",
)


class Entity(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Student(Entity):
    student_id: str
    first_name: str
    last_name: str
    grade_level: str
    email: Optional[str] = None
    phone: Optional[str] = None
    needs_follow_up: bool = False
    follow_up_notes: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Contact(Entity):
    first_name: str
    last_name: str
    relationship: str
    email: Optional[str] = None
    phone: Optional[str] = None
    organization: Optional[str] = None
    notes: Optional[str] = None


class Interaction(Entity):
    counselor_id: Optional[str] = None
    student_id: Optional[str] = None
    contact_id: Optional[str] = None
    regarding_student_id: Optional[str] = None
    category_id: str
    subcategory_id: Optional[str] = None
    custom_reason: Optional[str] = None
    start_time: datetime
    duration_minutes: int
    end_time: Optional[datetime] = None
    notes: Optional[str] = None
    needs_follow_up: bool = False
    follow_up_date: Optional[datetime] = None
    follow_up_notes: Optional[str] = None
    is_follow_up_complete: bool = False

    @property
    def is_pending_follow_up(self) -> bool:
        return self.needs_follow_up and not self.is_follow_up_complete


class ReasonCategory(Entity):
    name: str
    color: Optional[str] = None
    sort_order: int = 0


class ReasonSubcategory(Entity):
    category_id: str
    name: str
    sort_order: int = 0


ENTITY_MODELS: Dict[EntityType, Type[Entity]] = {
    EntityType.STUDENT: Student,
    EntityType.CONTACT: Contact,
    EntityType.INTERACTION: Interaction,
    EntityType.CATEGORY: ReasonCategory,
    EntityType.SUBCATEGORY: ReasonSubcategory,
}


def parse_entity(entity_type: EntityType, row: Mapping[str, Any]) -> Entity:
    """Validate one backend row into its model."""

    model = ENTITY_MODELS[EntityType(entity_type)]
    return model.model_validate(dict(row))


def parse_entities(entity_type: EntityType, rows: Iterable[Mapping[str, Any]]) -> List[Entity]:
    return [parse_entity(entity_type, row) for row in rows]


# ---------------------------------------------------------------------------
# Write payloads
# ---------------------------------------------------------------------------


class Payload(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    def changes(self) -> Dict[str, Any]:
        """Fields the caller actually set, ready to merge into an entity."""
        return self.model_dump(exclude_unset=True)


class StudentCreate(Payload):
    student_id: str = Field(min_length=1, max_length=20)
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    grade_level: str = Field(min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None
    needs_follow_up: bool = False
    follow_up_notes: Optional[str] = Field(default=None, max_length=500)

    @field_validator("email", "phone", "follow_up_notes")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        return value or None


class StudentUpdate(Payload):
    student_id: Optional[str] = Field(default=None, min_length=1, max_length=20)
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    grade_level: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    needs_follow_up: Optional[bool] = None
    follow_up_notes: Optional[str] = Field(default=None, max_length=500)


class ContactCreate(Payload):
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    relationship: str = Field(min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None
    organization: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("email", "phone", "organization", "notes")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        return value or None


class ContactUpdate(Payload):
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    relationship: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    organization: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class InteractionCreate(Payload):
    counselor_id: Optional[str] = None
    student_id: Optional[str] = None
    contact_id: Optional[str] = None
    regarding_student_id: Optional[str] = None
    category_id: str = Field(min_length=1)
    subcategory_id: Optional[str] = None
    custom_reason: Optional[str] = None
    start_time: datetime
    duration_minutes: int = Field(gt=0, le=24 * 60)
    notes: Optional[str] = None
    needs_follow_up: bool = False
    follow_up_date: Optional[datetime] = None
    follow_up_notes: Optional[str] = None

    @model_validator(mode="after")
    def _check_party(self) -> "InteractionCreate":
        if bool(self.student_id) == bool(self.contact_id):
            raise ValueError("exactly one of student_id or contact_id is required")
        if self.regarding_student_id and not self.contact_id:
            raise ValueError("regarding_student_id only applies to contact interactions")
        if self.needs_follow_up and self.follow_up_date is None:
            raise ValueError("follow_up_date is required when needs_follow_up is set")
        return self

    def changes(self) -> Dict[str, Any]:
        data = self.model_dump()
        data["end_time"] = self.start_time + timedelta(minutes=self.duration_minutes)
        return data


class InteractionUpdate(Payload):
    category_id: Optional[str] = None
    subcategory_id: Optional[str] = None
    custom_reason: Optional[str] = None
    start_time: Optional[datetime] = None
    duration_minutes: Optional[int] = Field(default=None, gt=0, le=24 * 60)
    notes: Optional[str] = None
    needs_follow_up: Optional[bool] = None
    follow_up_date: Optional[datetime] = None
    follow_up_notes: Optional[str] = None
    is_follow_up_complete: Optional[bool] = None


class CategoryCreate(Payload):
    name: str = Field(min_length=1, max_length=100)
    color: Optional[str] = None
    sort_order: int = 0


class CategoryUpdate(Payload):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    color: Optional[str] = None
    sort_order: Optional[int] = None


class SubcategoryCreate(Payload):
    category_id: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=100)
    sort_order: int = 0


class SubcategoryUpdate(Payload):
    category_id: Optional[str] = None
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    sort_order: Optional[int] = None


def apply_interaction_changes(interaction: Interaction, changes: Mapping[str, Any]) -> Interaction:
    """Merge an update into an interaction, keeping `end_time` consistent."""

    updated = interaction.model_copy(update=dict(changes))
    if "start_time" in changes or "duration_minutes" in changes:
        updated = updated.model_copy(
            update={"end_time": updated.start_time + timedelta(minutes=updated.duration_minutes)}
        )
    return updated


def follow_up_completion_note(notes: Optional[str], completion_notes: Optional[str], *, now: datetime) -> Optional[str]:
    """Append the completion stamp the way counselors see it in the notes field."""

    if not completion_notes:
        return notes
    stamp = now.strftime("%b %d, %Y %I:%M %p").replace(" 0", " ")
    return f"{notes or ''}\n\n[Follow-up completed on {stamp}]\n{completion_notes}"


# ---------------------------------------------------------------------------
# Dashboard aggregate
# ---------------------------------------------------------------------------


class CategoryBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    category_id: str
    category_name: str
    count: int
    percentage: int
    color: Optional[str] = None


class DashboardStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: date
    end: date
    total_interactions: int = 0
    total_students: int = 0
    total_time_spent: int = 0
    category_breakdown: List[CategoryBreakdown] = Field(default_factory=list)
    recent_interactions: List[Interaction] = Field(default_factory=list)


def summarize_dashboard(
    interactions: Iterable[Interaction],
    categories: Iterable[ReasonCategory],
    *,
    start: date,
    end: date,
    recent_limit: int = 10,
) -> DashboardStats:
    """Aggregate interactions whose start date falls within [start, end]."""

    selected = sorted(
        (item for item in interactions if start <= item.start_time.date() <= end),
        key=lambda item: item.start_time,
        reverse=True,
    )
    by_id = {category.id: category for category in categories}
    total = len(selected)

    counts: Dict[str, int] = {}
    for item in selected:
        counts[item.category_id] = counts.get(item.category_id, 0) + 1

    breakdown = []
    for category_id, count in counts.items():
        category = by_id.get(category_id)
        breakdown.append(
            CategoryBreakdown(
                category_id=category_id,
                category_name=category.name if category else "Unknown",
                count=count,
                percentage=round(count / total * 100) if total else 0,
                color=category.color if category else None,
            )
        )
    breakdown.sort(key=lambda row: row.count, reverse=True)

    students = {item.student_id for item in selected if item.student_id}
    return DashboardStats(
        start=start,
        end=end,
        total_interactions=total,
        total_students=len(students),
        total_time_spent=sum(item.duration_minutes for item in selected),
        category_breakdown=breakdown,
        recent_interactions=selected[:recent_limit],
    )


__all__ = [
    "CategoryBreakdown",
    "CategoryCreate",
    "CategoryUpdate",
    "Contact",
    "ContactCreate",
    "ContactUpdate",
    "DashboardStats",
    "ENTITY_MODELS",
    "Entity",
    "EntityType",
    "GRADE_LEVELS",
    "Interaction",
    "InteractionCreate",
    "InteractionUpdate",
    "Payload",
    "ReasonCategory",
    "ReasonSubcategory",
    "Student",
    "StudentCreate",
    "StudentUpdate",
    "SubcategoryCreate",
    "SubcategoryUpdate",
    "TABLE_NAMES",
    "apply_interaction_changes",
    "follow_up_completion_note",
    "parse_entities",
    "parse_entity",
    "summarize_dashboard",
]
