import asyncio
from datetime import datetime, timezone

import pytest

from caseload.domain.entities import EntityType, Interaction, ReasonSubcategory, Student
from caseload.domain.errors import Conflict, NetworkFailure, NotFound, ValidationFailure
from caseload.services.base import is_placeholder
from caseload.services.categories import SubcategoryService
from caseload.services.interactions import InteractionService
from caseload.services.students import StudentService
from caseload.sync import keys
from caseload.sync.store import EntryStatus

START = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


async def _settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def _student(student_id: str, **overrides) -> Student:
    data = {
        "id": student_id,
        "student_id": f"ID-{student_id}",
        "first_name": "Sam",
        "last_name": "Rivera",
        "grade_level": "9th Grade",
    }
    data.update(overrides)
    return Student(**data)


def _interaction(interaction_id: str, student_id: str, **overrides) -> Interaction:
    data = {
        "id": interaction_id,
        "student_id": student_id,
        "category_id": "K1",
        "start_time": START,
        "duration_minutes": 30,
    }
    data.update(overrides)
    return Interaction(**data)


@pytest.fixture
def students(executor, backend) -> StudentService:
    return StudentService(executor, backend)


@pytest.fixture
def interactions(executor, backend) -> InteractionService:
    return InteractionService(executor, backend)


@pytest.mark.asyncio
async def test_create_student_shows_placeholder_then_confirmed_row(store, backend, students):
    store.set(keys.students(), [])
    gate = backend.gate("create")

    task = asyncio.create_task(
        students.create(student_id="S100", first_name="Ann", last_name="Lee", grade_level="9")
    )
    await _settle()

    pending = store.get(keys.students())
    assert len(pending.value) == 1
    assert is_placeholder(pending.value[0])
    assert pending.is_optimistic
    assert pending.value[0].first_name == "Ann"

    gate.set()
    result = await task

    assert result.is_success()
    created = result.value
    rows = store.get(keys.students()).value
    assert len(rows) == 1
    assert rows[0].id == created.id
    assert not is_placeholder(rows[0])
    assert (rows[0].student_id, rows[0].first_name, rows[0].last_name, rows[0].grade_level) == (
        "S100",
        "Ann",
        "Lee",
        "9",
    )
    assert store.get(keys.student(created.id)).value == created


@pytest.mark.asyncio
async def test_create_student_failure_restores_list(store, backend, students):
    store.set(keys.students(), [_student("S1")])
    before = store.get(keys.students())
    backend.fail_next("create", Conflict("student", "duplicate student_id", conflicting_field="student_id"))

    result = await students.create(student_id="ID-S1", first_name="Ann", last_name="Lee", grade_level="9")

    assert result.is_failure()
    assert isinstance(result.error, Conflict)
    assert store.get(keys.students()) is before


@pytest.mark.asyncio
async def test_create_with_invalid_payload_never_reaches_backend(store, backend, students):
    result = await students.create(student_id="", first_name="Ann", last_name="Lee", grade_level="9")

    assert isinstance(result.error, ValidationFailure)
    assert result.error.field == "student_id"
    assert backend.count("create") == 0


@pytest.mark.asyncio
async def test_create_does_not_materialise_unloaded_list(store, students):
    result = await students.create(student_id="S100", first_name="Ann", last_name="Lee", grade_level="9")

    assert result.is_success()
    assert store.get(keys.students()) is None
    assert store.get(keys.student(result.value.id)) is not None


@pytest.mark.asyncio
async def test_update_student_patches_list_and_detail(store, backend, students):
    original = _student("S1")
    backend.seed(EntityType.STUDENT, original)
    store.set(keys.students(), [original])
    store.set(keys.student("S1"), original)

    result = await students.update("S1", grade_level="10th Grade")

    assert result.is_success()
    assert store.get(keys.student("S1")).value.grade_level == "10th Grade"
    assert store.get(keys.students()).value[0].grade_level == "10th Grade"
    assert backend.rows(EntityType.STUDENT)[0].grade_level == "10th Grade"


@pytest.mark.asyncio
async def test_update_failure_restores_detail(store, backend, students):
    original = _student("S1")
    backend.seed(EntityType.STUDENT, original)
    store.set(keys.student("S1"), original)
    before = store.get(keys.student("S1"))
    backend.fail_next("update", NetworkFailure("timeout"))

    result = await students.update("S1", grade_level="10th Grade")

    assert isinstance(result.error, NetworkFailure)
    assert store.get(keys.student("S1")) is before


@pytest.mark.asyncio
async def test_update_without_changes_is_rejected(students, backend):
    result = await students.update("S1")

    assert isinstance(result.error, ValidationFailure)
    assert backend.count("update") == 0


@pytest.mark.asyncio
async def test_update_of_missing_student_reports_not_found(students):
    result = await students.update("missing", first_name="Ann")

    assert isinstance(result.error, NotFound)


@pytest.mark.asyncio
async def test_update_reorders_search_results(store, backend, students):
    alpha = _student("S1", last_name="Adams")
    beta = _student("S2", last_name="Baker")
    backend.seed(EntityType.STUDENT, alpha, beta)
    store.set(keys.student_search("sam"), [alpha, beta])

    await students.update("S1", last_name="Young")

    entry = store.get(keys.student_search("sam"))
    assert [row.id for row in entry.value] == ["S2", "S1"]
    assert entry.status is EntryStatus.STALE


@pytest.mark.asyncio
async def test_delete_interaction_invalidates_only_its_student(store, backend, interactions):
    first = _interaction("I1", "S1")
    second = _interaction("I2", "S2")
    backend.seed(EntityType.INTERACTION, first, second)
    store.set(keys.interactions(), [first, second])
    store.set(keys.interactions_by_student("S1"), [first])
    store.set(keys.interactions_by_student("S2"), [second])
    store.set(keys.interaction("I1"), first)

    result = await interactions.delete("I1")

    assert result.is_success()
    everything = store.get(keys.interactions())
    assert everything.status is EntryStatus.STALE
    assert [row.id for row in everything.value] == ["I2"]
    owner = store.get(keys.interactions_by_student("S1"))
    assert owner.status is EntryStatus.STALE
    assert owner.value == []
    other = store.get(keys.interactions_by_student("S2"))
    assert other.status is EntryStatus.FRESH
    assert other.value == [second]
    assert store.get(keys.interaction("I1")) is None


@pytest.mark.asyncio
async def test_create_interaction_only_touches_matching_lists(store, backend, interactions):
    store.set(keys.interactions_by_student("S1"), [])
    store.set(keys.interactions_by_student("S2"), [])
    other_before = store.get(keys.interactions_by_student("S2"))
    gate = backend.gate("create")

    task = asyncio.create_task(
        interactions.create(student_id="S1", category_id="K1", start_time=START, duration_minutes=45)
    )
    await _settle()

    assert len(store.get(keys.interactions_by_student("S1")).value) == 1
    assert store.get(keys.interactions_by_student("S2")) is other_before

    gate.set()
    result = await task

    assert result.value.end_time == datetime(2024, 3, 1, 9, 45, tzinfo=timezone.utc)
    assert [row.id for row in store.get(keys.interactions_by_student("S1")).value] == [result.value.id]
    assert store.status(keys.interactions_by_student("S2")) is EntryStatus.FRESH


@pytest.mark.asyncio
async def test_interaction_needs_exactly_one_party(interactions, backend):
    result = await interactions.create(
        student_id="S1",
        contact_id="C1",
        category_id="K1",
        start_time=START,
        duration_minutes=30,
    )

    assert isinstance(result.error, ValidationFailure)
    assert backend.count("create") == 0


@pytest.mark.asyncio
async def test_complete_follow_up_leaves_follow_up_list(store, backend, interactions):
    pending = _interaction(
        "I1",
        "S1",
        notes="Initial",
        needs_follow_up=True,
        follow_up_date=datetime(2024, 3, 4, tzinfo=timezone.utc),
    )
    backend.seed(EntityType.INTERACTION, pending)
    store.set(keys.follow_ups(), [pending])

    result = await interactions.complete_follow_up(
        "I1",
        "Called parent",
        now=datetime(2024, 3, 5, 14, 30, tzinfo=timezone.utc),
    )

    assert result.is_success()
    assert result.value.is_follow_up_complete
    assert result.value.notes == "Initial\n\n[Follow-up completed on Mar 5, 2024 2:30 PM]\nCalled parent"
    follow_ups = store.get(keys.follow_ups())
    assert follow_ups.value == []
    assert follow_ups.status is EntryStatus.STALE


@pytest.mark.asyncio
async def test_complete_follow_up_for_unknown_interaction(interactions):
    result = await interactions.complete_follow_up("missing")

    assert isinstance(result.error, NotFound)


@pytest.mark.asyncio
async def test_subcategory_create_targets_its_category(store, executor, backend):
    service = SubcategoryService(executor, backend)
    existing = ReasonSubcategory(id="X1", category_id="K1", name="Attendance", sort_order=2)
    store.set(keys.subcategories_by_category("K1"), [existing])
    store.set(keys.subcategories_by_category("K2"), [])

    result = await service.create(category_id="K1", name="Anxiety", sort_order=1)

    names = [row.name for row in store.get(keys.subcategories_by_category("K1")).value]
    assert result.is_success()
    assert names == ["Anxiety", "Attendance"]
    assert store.get(keys.subcategories_by_category("K2")).value == []
    assert store.status(keys.subcategories_by_category("K2")) is EntryStatus.FRESH
