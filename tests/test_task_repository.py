"""
Tests for the task state machine (in-memory repository)

InMemoryTaskRepository shares its semantics with the PostgreSQL repository:
idempotent create, pending poll by created_at, chunk readiness with
promotion of chunked tasks from ingested to pending.
"""

import asyncio

import pytest
from pydantic import ValidationError as PydanticValidationError

from conftest import make_chunked_task, make_single_task, minutes_after
from database.models import ChunkedTask, parse_task
from database.repositories_async import InMemoryTaskRepository


@pytest.fixture
def repo():
    return InMemoryTaskRepository()


class TestCreateAndRead:
    async def test_create_then_get(self, repo):
        assert await repo.create_task(make_single_task("T1")) is True

        task = await repo.get_task("T1")
        assert task.pk == "T1"
        assert task.processing_mode == "single_chunk"

    async def test_duplicate_create_returns_false(self, repo):
        await repo.create_task(make_single_task("T1"))
        assert await repo.create_task(make_chunked_task("T1")) is False

        # First write wins
        assert (await repo.get_task("T1")).processing_mode == "single_chunk"
        assert len(repo) == 1

    async def test_missing_task_is_none(self, repo):
        assert await repo.get_task("nope") is None

    async def test_returned_task_is_a_copy(self, repo):
        await repo.create_task(make_chunked_task("T1"))

        task = await repo.get_task("T1")
        task.chunks[0].status = "ready"

        assert (await repo.get_task("T1")).chunks[0].status == "notReady"


class TestPendingPoll:
    async def test_oldest_first(self, repo):
        await repo.create_task(make_single_task("late", created_at=minutes_after(10)))
        await repo.create_task(make_single_task("early", created_at=minutes_after(1)))
        await repo.create_task(make_chunked_task("ingested", created_at=minutes_after(0)))

        pending = await repo.get_next_pending(limit=10)

        assert [t.pk for t in pending] == ["early", "late"]

    async def test_limit(self, repo):
        for i in range(5):
            await repo.create_task(make_single_task(f"T{i}", created_at=minutes_after(i)))

        assert [t.pk for t in await repo.get_next_pending(limit=2)] == ["T0", "T1"]
        assert await repo.get_next_pending(limit=0) == []

    async def test_other_status_partition(self, repo):
        await repo.create_task(make_chunked_task("C1"))

        assert [t.pk for t in await repo.get_next_pending(status="ingested")] == ["C1"]


class TestChunkReadiness:
    async def test_promotes_when_last_chunk_ready(self, repo):
        await repo.create_task(make_chunked_task("C1", chunk_count=2))

        after_first = await repo.mark_chunk_ready("C1", "CHUNK#0")
        assert after_first.status == "ingested"
        assert after_first.ready_count == 1

        after_second = await repo.mark_chunk_ready("C1", "CHUNK#1")
        assert after_second.status == "pending"
        assert after_second.all_chunks_ready
        assert after_second.updated_at >= after_first.updated_at

    async def test_repeat_is_a_no_op(self, repo):
        await repo.create_task(make_chunked_task("C1", chunk_count=2))
        first = await repo.mark_chunk_ready("C1", "CHUNK#0")

        again = await repo.mark_chunk_ready("C1", "CHUNK#0")

        assert again.ready_count == 1
        assert again.updated_at == first.updated_at

    async def test_unknown_chunk_leaves_task_unchanged(self, repo):
        await repo.create_task(make_chunked_task("C1", chunk_count=1))

        task = await repo.mark_chunk_ready("C1", "CHUNK#9")

        assert task.status == "ingested"
        assert task.ready_count == 0

    async def test_missing_task(self, repo):
        assert await repo.mark_chunk_ready("nope", "CHUNK#0") is None

    async def test_single_chunk_task_unchanged(self, repo):
        await repo.create_task(make_single_task("S1"))

        task = await repo.mark_chunk_ready("S1", "CHUNK#0")

        assert task.status == "pending"

    async def test_completed_task_not_demoted(self, repo):
        await repo.create_task(make_chunked_task("C1", chunk_count=1, status="completed"))

        task = await repo.mark_chunk_ready("C1", "CHUNK#0")

        assert task.status == "completed"
        assert task.all_chunks_ready

    async def test_concurrent_updates_promote_once(self, repo):
        await repo.create_task(make_chunked_task("C1", chunk_count=6))

        await asyncio.gather(*(repo.mark_chunk_ready("C1", f"CHUNK#{i}") for i in range(6)))

        task = await repo.get_task("C1")
        assert task.all_chunks_ready
        assert task.status == "pending"


class TestCompletion:
    async def test_mark_task_succeeded(self, repo):
        await repo.create_task(make_single_task("S1"))

        task = await repo.mark_task_succeeded("S1")

        assert task.status == "completed"
        assert (await repo.count_by_status()) == {"completed": 1}

    async def test_missing_task(self, repo):
        assert await repo.mark_task_succeeded("nope") is None


class TestTaskModels:
    def test_parse_task_picks_variant(self):
        data = make_chunked_task("C1").to_dict()
        assert isinstance(parse_task(data), ChunkedTask)

    def test_chunked_task_needs_chunks(self):
        data = make_chunked_task("C1").to_dict()
        data["chunks"] = []
        with pytest.raises(PydanticValidationError):
            parse_task(data)

    def test_duplicate_chunk_ids_rejected(self):
        data = make_chunked_task("C1", chunk_count=2).to_dict()
        data["chunks"][1]["id"] = data["chunks"][0]["id"]
        with pytest.raises(PydanticValidationError):
            parse_task(data)

    def test_blank_pk_rejected(self):
        with pytest.raises(PydanticValidationError):
            make_single_task("   ")

    def test_unknown_status_rejected(self):
        with pytest.raises(PydanticValidationError):
            make_single_task("S1", status="processing")
