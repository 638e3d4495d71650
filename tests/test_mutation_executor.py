import asyncio

import pytest

from caseload.core.result import Failure, Success
from caseload.domain.entities import EntityType
from caseload.domain.errors import AuthFailure, Conflict, NetworkFailure, ProgrammingError
from caseload.sync import keys
from caseload.sync.invalidation import MutationKind
from caseload.sync.mutations import MutationDescriptor, MutationTarget
from caseload.sync.store import EntryStatus


async def _settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def _returning(value):
    async def remote():
        return value

    return remote


def _raising(error):
    async def remote():
        raise error

    return remote


def _student_update(remote, *targets, subject=None) -> MutationDescriptor:
    return MutationDescriptor(
        entity_type=EntityType.STUDENT,
        kind=MutationKind.UPDATE,
        remote=remote,
        targets=list(targets),
        subject=subject,
    )


@pytest.mark.asyncio
async def test_rollback_restores_entry_exactly(store, executor):
    store.set(keys.student("S1"), {"id": "S1", "grade_level": "9"})
    before = store.get(keys.student("S1"))

    descriptor = _student_update(
        _raising(NetworkFailure("timeout")),
        MutationTarget(keys.student("S1"), lambda value: {**value, "grade_level": "10"}),
    )
    result = await executor.execute(descriptor)

    assert isinstance(result, Failure)
    assert isinstance(result.error, NetworkFailure)
    assert store.get(keys.student("S1")) is before
    assert executor.metrics.rolled_back == 1


@pytest.mark.asyncio
async def test_rollback_removes_key_that_was_absent(store, executor):
    descriptor = _student_update(
        _raising(Conflict("student", "duplicate")),
        MutationTarget(keys.student("S1"), lambda value: {"id": "S1"}),
    )

    result = await executor.execute(descriptor)

    assert result.is_failure()
    assert store.get(keys.student("S1")) is None


@pytest.mark.asyncio
async def test_failed_mutation_invalidates_nothing(store, executor):
    store.set(keys.students(), ["a"])
    store.set(keys.student_search("ann"), ["a"])

    await executor.execute(
        _student_update(
            _raising(NetworkFailure("offline")),
            MutationTarget(keys.student("S1"), lambda value: {"id": "S1"}),
        )
    )

    assert store.status(keys.students()) is EntryStatus.FRESH
    assert store.status(keys.student_search("ann")) is EntryStatus.FRESH


@pytest.mark.asyncio
async def test_commit_writes_confirmed_value_and_invalidates_dependents(store, executor):
    store.set(keys.students(), ["a"])
    store.set(keys.student_search("ann"), ["a"])
    store.set(keys.contacts(), ["c"])
    confirmed = {"id": "S1", "grade_level": "10"}

    descriptor = _student_update(
        _returning(confirmed),
        MutationTarget(keys.student("S1"), lambda value: {"id": "S1", "grade_level": "10?"}),
    )
    result = await executor.execute(descriptor)

    assert result == Success(confirmed)
    detail = store.get(keys.student("S1"))
    assert detail.value == confirmed
    assert detail.status is EntryStatus.FRESH
    assert not detail.is_optimistic
    assert store.status(keys.students()) is EntryStatus.STALE
    assert store.status(keys.student_search("ann")) is EntryStatus.STALE
    assert store.status(keys.contacts()) is EntryStatus.FRESH
    assert set(descriptor.invalidated) == {keys.students(), keys.student_search("ann")}


@pytest.mark.asyncio
async def test_reconcile_and_removes_run_on_commit(store, executor):
    store.set(keys.students(), ["a", "b"])
    store.set(keys.student("b"), "b")

    descriptor = MutationDescriptor(
        entity_type=EntityType.STUDENT,
        kind=MutationKind.DELETE,
        remote=_returning({"id": "b"}),
        targets=[
            MutationTarget(
                keys.students(),
                lambda items: [item for item in items if item != "b"],
                lambda current, confirmed: current,
            )
        ],
        removes=[keys.student("b")],
    )
    await executor.execute(descriptor)

    assert store.get(keys.students()).value == ["a"]
    assert store.get(keys.student("b")) is None


@pytest.mark.asyncio
async def test_auth_failure_rolls_back_and_propagates(store, executor):
    store.set(keys.student("S1"), "before")
    before = store.get(keys.student("S1"))

    with pytest.raises(AuthFailure):
        await executor.execute(
            _student_update(
                _raising(AuthFailure("session expired")),
                MutationTarget(keys.student("S1"), lambda value: "after"),
            )
        )

    assert store.get(keys.student("S1")) is before
    assert executor.pending_keys() == set()


@pytest.mark.asyncio
async def test_unexpected_error_rolls_back_and_propagates(store, executor):
    store.set(keys.student("S1"), "before")
    before = store.get(keys.student("S1"))

    with pytest.raises(RuntimeError):
        await executor.execute(
            _student_update(
                _raising(RuntimeError("bug in adapter")),
                MutationTarget(keys.student("S1"), lambda value: "after"),
            )
        )

    assert store.get(keys.student("S1")) is before


@pytest.mark.asyncio
async def test_rollback_of_foreign_state_is_a_programming_error(store, executor):
    async def remote():
        store.set(keys.student("S1"), "written by someone else")
        raise NetworkFailure("timeout")

    with pytest.raises(ProgrammingError):
        await executor.execute(
            _student_update(remote, MutationTarget(keys.student("S1"), lambda value: "optimistic"))
        )


@pytest.mark.asyncio
async def test_invalidated_key_stays_stale_after_rollback(store, executor):
    store.set(keys.students(), ["a"])

    async def remote():
        store.invalidate(keys.students())
        raise NetworkFailure("timeout")

    await executor.execute(
        _student_update(remote, MutationTarget(keys.students(), lambda items: [*items, "b"]))
    )

    entry = store.get(keys.students())
    assert entry.value == ["a"]
    assert entry.status is EntryStatus.STALE


@pytest.mark.asyncio
async def test_inflight_read_is_abandoned_before_snapshot(store, executor):
    store.set(keys.student("S1"), "v0")
    token = store.begin_fetch(keys.student("S1"))

    await executor.execute(
        _student_update(_returning("v1"), MutationTarget(keys.student("S1"), lambda value: "v1?"))
    )

    assert store.complete_fetch(keys.student("S1"), token, "late") is False
    assert store.get(keys.student("S1")).value == "v1"


@pytest.mark.asyncio
async def test_overlapping_mutations_are_serialised(store, executor):
    store.set(keys.student("S1"), 0)
    gate = asyncio.Event()
    calls = []

    async def first_remote():
        calls.append("first")
        await gate.wait()
        raise NetworkFailure("timeout")

    async def second_remote():
        calls.append("second")
        return 10

    first = _student_update(first_remote, MutationTarget(keys.student("S1"), lambda value: value + 1))
    second = _student_update(second_remote, MutationTarget(keys.student("S1"), lambda value: value + 10))

    first_task = asyncio.create_task(executor.execute(first))
    await _settle()
    second_task = asyncio.create_task(executor.execute(second))
    await _settle()

    assert store.get(keys.student("S1")).value == 1
    assert calls == ["first"]
    assert second.snapshot == {}
    assert executor.metrics.waited_on_lock == 1
    assert executor.pending_keys() == {keys.student("S1")}

    gate.set()
    first_result = await first_task
    second_result = await second_task

    assert first_result.is_failure()
    assert second_result == Success(10)
    assert second.snapshot[keys.student("S1")].value == 0
    assert store.get(keys.student("S1")).value == 10
    assert executor.pending_keys() == set()


@pytest.mark.asyncio
async def test_disjoint_mutations_do_not_wait(store, executor):
    gate = asyncio.Event()

    async def slow():
        await gate.wait()
        return "slow"

    slow_task = asyncio.create_task(
        executor.execute(_student_update(slow, MutationTarget(keys.student("S1"), lambda value: "x")))
    )
    await _settle()

    result = await executor.execute(
        _student_update(_returning("fast"), MutationTarget(keys.student("S2"), lambda value: "y"))
    )

    assert result == Success("fast")
    assert executor.metrics.waited_on_lock == 0
    gate.set()
    assert (await slow_task) == Success("slow")


@pytest.mark.asyncio
async def test_lock_order_is_independent_of_target_order(store, executor):
    descriptor = _student_update(
        _returning(None),
        MutationTarget(keys.student("S2"), lambda value: None),
        MutationTarget(keys.students(), lambda value: None),
        MutationTarget(keys.student("S1"), lambda value: None),
    )

    assert descriptor.lock_keys() == [keys.student("S1"), keys.student("S2"), keys.students()]
