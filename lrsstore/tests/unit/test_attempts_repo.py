from __future__ import annotations

import pytest

from lrsstore.core.config import TABLE_KEYS
from lrsstore.core.errors import PreconditionFailedError, TransientStoreError, ValidationError
from lrsstore.domain.models import Attempt, AttemptUpdate
from lrsstore.domain.patch import CLEARED
from lrsstore.persistence.memory import MemoryTableStore
from lrsstore.persistence.registry import TableRegistry
from lrsstore.persistence.repos.attempts import AttemptRepository
from lrsstore.persistence.store import UpdateMode
from lrsstore.services.telemetry import counters_snapshot


def _registry_with(store: MemoryTableStore) -> TableRegistry:
    stores = {key: MemoryTableStore(key) for key in TABLE_KEYS}
    stores["course_attempts"] = store
    return TableRegistry(stores)


class RacingStore(MemoryTableStore):
    # Simulates another writer landing between our read and our conditional write.
    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.races = 1
        self.update_calls = 0

    async def update_entity(self, entity, mode=UpdateMode.REPLACE, *, etag=None):
        self.update_calls += 1
        if self.races:
            self.races -= 1
            await self.upsert_entity(
                {"PartitionKey": entity["PartitionKey"], "RowKey": entity["RowKey"], "progressPercent": 40},
                UpdateMode.MERGE,
            )
        return await super().update_entity(entity, mode, etag=etag)


class AlwaysRacingStore(RacingStore):
    async def update_entity(self, entity, mode=UpdateMode.REPLACE, *, etag=None):
        self.races = 1
        return await super().update_entity(entity, mode, etag=etag)


class LostAckDeleteStore(MemoryTableStore):
    # The first delete lands on the server but the response never arrives.
    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.delete_calls = 0

    async def delete_entity(self, partition_key, row_key):
        self.delete_calls += 1
        await super().delete_entity(partition_key, row_key)
        if self.delete_calls == 1:
            raise TransientStoreError("response lost", status_code=503)


class BrokenListingStore(MemoryTableStore):
    # Yields one row then drops the connection on every enumeration.
    async def query_entities(self, query_filter=None, *, select=None, page_size=None):
        rows = self._matching(query_filter, select)
        yield rows[0]
        raise TransientStoreError("connection reset", status_code=503)


@pytest.fixture
def repo(registry, fast_policy, clock) -> AttemptRepository:
    return AttemptRepository(registry, policy=fast_policy, clock=clock)


@pytest.mark.asyncio
async def test_create_and_get_attempt_normalizes_email(repo: AttemptRepository) -> None:
    await repo.create_attempt(Attempt(registration_id="reg-1", user_email=" Jane@Example.com", course_id="c1"))
    attempt = await repo.get_attempt("jane@example.com", "reg-1")
    assert attempt is not None
    assert attempt.user_email == "jane@example.com"
    assert attempt.completion_status == "in_progress"
    assert attempt.launched_at == "2024-03-01T12:00:00Z"
    assert attempt.time_spent == 0


@pytest.mark.asyncio
async def test_missing_identifiers_raise_before_io(repo: AttemptRepository) -> None:
    with pytest.raises(ValidationError):
        await repo.get_attempt("", "reg-1")
    with pytest.raises(ValidationError):
        await repo.upsert_attempt_progress("jane@example.com", "", AttemptUpdate(score=1))
    with pytest.raises(ValidationError):
        await repo.create_attempt(Attempt(registration_id="reg/1", user_email="jane@example.com"))


@pytest.mark.asyncio
async def test_progress_update_keeps_unsupplied_fields(repo: AttemptRepository) -> None:
    await repo.create_attempt(Attempt(registration_id="reg-1", user_email="jane@example.com", course_id="c1"))
    await repo.upsert_attempt_progress(
        "jane@example.com", "reg-1", AttemptUpdate(score=50, time_spent=120, module_progress={"m1": 1})
    )
    updated = await repo.upsert_attempt_progress("jane@example.com", "reg-1", AttemptUpdate(score=80))
    assert updated.score == 80
    assert updated.time_spent == 120
    assert updated.course_id == "c1"

    stored = await repo.get_attempt("jane@example.com", "reg-1")
    assert stored.module_progress == {"m1": 1}
    assert stored.time_spent == 120


@pytest.mark.asyncio
async def test_progress_update_zero_and_cleared(repo: AttemptRepository) -> None:
    await repo.upsert_attempt_progress("jane@example.com", "reg-1", AttemptUpdate(score=50, time_spent=120))
    updated = await repo.upsert_attempt_progress(
        "jane@example.com", "reg-1", AttemptUpdate(time_spent=0, score=CLEARED)
    )
    assert updated.time_spent == 0
    assert updated.score is None


@pytest.mark.asyncio
async def test_progress_update_creates_missing_attempt(repo: AttemptRepository) -> None:
    attempt = await repo.upsert_attempt_progress("jane@example.com", "reg-9", AttemptUpdate(course_id="c1"))
    assert attempt.launched_at == "2024-03-01T12:00:00Z"
    assert (await repo.get_attempt("jane@example.com", "reg-9")).course_id == "c1"


@pytest.mark.asyncio
async def test_terminal_status_frozen_and_completed_at_stamped(repo: AttemptRepository, clock) -> None:
    await repo.create_attempt(Attempt(registration_id="reg-1", user_email="jane@example.com", course_id="c1"))
    passed = await repo.upsert_attempt_progress(
        "jane@example.com", "reg-1", AttemptUpdate(completion_status="passed", success=True)
    )
    assert passed.completed_at == "2024-03-01T12:00:00Z"

    clock.advance(hours=1)
    again = await repo.upsert_attempt_progress(
        "jane@example.com", "reg-1", AttemptUpdate(completion_status="in_progress", progress_percent=10)
    )
    assert again.completion_status == "passed"
    assert again.completed_at == "2024-03-01T12:00:00Z"
    assert again.progress_percent == 10


@pytest.mark.asyncio
async def test_concurrent_write_is_remerged(fast_policy, clock) -> None:
    store = RacingStore("CourseAttempts")
    repo = AttemptRepository(_registry_with(store), policy=fast_policy, clock=clock)
    await repo.create_attempt(Attempt(registration_id="reg-1", user_email="jane@example.com", course_id="c1"))

    updated = await repo.upsert_attempt_progress("jane@example.com", "reg-1", AttemptUpdate(score=90))
    assert store.update_calls == 2
    assert updated.score == 90
    assert updated.progress_percent == 40


@pytest.mark.asyncio
async def test_persistent_conflicts_propagate(fast_policy, clock) -> None:
    store = AlwaysRacingStore("CourseAttempts")
    repo = AttemptRepository(_registry_with(store), policy=fast_policy, clock=clock)
    await repo.create_attempt(Attempt(registration_id="reg-1", user_email="jane@example.com"))
    with pytest.raises(PreconditionFailedError):
        await repo.upsert_attempt_progress("jane@example.com", "reg-1", AttemptUpdate(score=90))
    assert store.update_calls == 3


@pytest.mark.asyncio
async def test_latest_open_attempt_uses_launch_time(repo: AttemptRepository) -> None:
    email = "jane@example.com"
    await repo.create_attempt(
        Attempt(registration_id="b-old", user_email=email, course_id="c1", launched_at="2024-01-01T00:00:00Z")
    )
    await repo.create_attempt(
        Attempt(registration_id="a-new", user_email=email, course_id="c1", launched_at="2024-02-01T00:00:00Z")
    )
    await repo.create_attempt(
        Attempt(
            registration_id="z-done",
            user_email=email,
            course_id="c1",
            launched_at="2024-03-01T00:00:00Z",
            completion_status="completed",
        )
    )
    await repo.create_attempt(
        Attempt(registration_id="other", user_email=email, course_id="c2", launched_at="2024-04-01T00:00:00Z")
    )
    latest = await repo.get_latest_open_attempt("JANE@example.com", "c1")
    assert latest is not None
    assert latest.registration_id == "a-new"
    assert await repo.get_latest_open_attempt(email, "c3") is None


@pytest.mark.asyncio
async def test_listing_unknown_partition_is_empty(repo: AttemptRepository) -> None:
    assert await repo.list_attempts_by_user("nobody@example.com") == []
    assert await repo.list_attempts_by_user(None) == []
    assert await repo.list_attempts_by_course("") == []


@pytest.mark.asyncio
async def test_list_by_course_and_paging(repo: AttemptRepository) -> None:
    for index in range(3):
        await repo.create_attempt(
            Attempt(registration_id=f"reg-{index}", user_email=f"user{index}@example.com", course_id="c1")
        )
    assert len(await repo.list_attempts_by_course("c1")) == 3
    assert len(await repo.list_attempts(limit=2)) == 2

    first = await repo.list_attempts_page(page_size=2)
    assert len(first.items) == 2
    second = await repo.list_attempts_page(page_size=2, continuation=first.continuation)
    assert len(second.items) == 1
    assert second.continuation is None


@pytest.mark.asyncio
async def test_delete_is_idempotent(repo: AttemptRepository) -> None:
    await repo.create_attempt(Attempt(registration_id="reg-1", user_email="jane@example.com"))
    assert await repo.delete_attempt("jane@example.com", "reg-1") is True
    assert await repo.delete_attempt("jane@example.com", "reg-1") is False
    assert await repo.get_attempt("jane@example.com", "reg-1") is None


@pytest.mark.asyncio
async def test_delete_reports_true_when_first_response_is_lost(fast_policy, clock) -> None:
    store = LostAckDeleteStore("CourseAttempts")
    repo = AttemptRepository(_registry_with(store), policy=fast_policy, clock=clock)
    await repo.create_attempt(Attempt(registration_id="reg-1", user_email="jane@example.com"))

    assert await repo.delete_attempt("jane@example.com", "reg-1") is True
    assert store.delete_calls == 2
    assert await repo.get_attempt("jane@example.com", "reg-1") is None


@pytest.mark.asyncio
async def test_listing_failure_degrades_to_partial_results(fast_policy, clock) -> None:
    store = BrokenListingStore("CourseAttempts")
    repo = AttemptRepository(_registry_with(store), policy=fast_policy, clock=clock)
    for index in range(2):
        await repo.create_attempt(Attempt(registration_id=f"reg-{index}", user_email="jane@example.com"))

    attempts = await repo.list_attempts_by_user("jane@example.com")
    assert [attempt.registration_id for attempt in attempts] == ["reg-0"]
    counters = counters_snapshot()
    assert counters["store_list_degraded_total"] == 1
    assert counters["store_retries_total"] == 2
