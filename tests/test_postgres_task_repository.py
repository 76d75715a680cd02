"""
Tests for the asyncpg TaskRepository against a scripted connection

The fake pool hands out one connection whose fetchrow/fetch/fetchval/execute
results are queued per test, and records every statement issued.
"""

import json

import asyncpg
import pytest

from conftest import BASE_TIME, make_chunked_task, make_single_task, make_summary
from database.models import ChunkedTask, SingleChunkTask
from database.repositories_async import TaskRepository
from database.repositories_async.base import BaseRepository
from database.repositories_async.tasks import row_to_task
from exceptions import TaskStoreError


class FakeTransaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeConnection:
    def __init__(self):
        self.calls = []
        self.results = {"fetchrow": [], "fetch": [], "fetchval": [], "execute": []}
        self.fail_with = None

    def queue(self, method, *values):
        self.results[method].extend(values)

    def _next(self, method, query, args, default):
        self.calls.append((method, " ".join(query.split()), args))
        if self.fail_with is not None:
            raise self.fail_with
        queued = self.results[method]
        return queued.pop(0) if queued else default

    async def fetchrow(self, query, *args):
        return self._next("fetchrow", query, args, None)

    async def fetch(self, query, *args):
        return self._next("fetch", query, args, [])

    async def fetchval(self, query, *args):
        return self._next("fetchval", query, args, None)

    async def execute(self, query, *args):
        return self._next("execute", query, args, "UPDATE 0")

    async def executemany(self, query, rows):
        self.calls.append(("executemany", " ".join(query.split()), list(rows)))

    def transaction(self):
        return FakeTransaction()

    def statements(self, method):
        return [call for call in self.calls if call[0] == method]


class FakeAcquire:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def acquire(self):
        return FakeAcquire(self.conn)


def task_row(pk, mode="single_chunk", status="pending", meeting_as_text=True):
    meeting = make_summary(pk).model_dump(mode="json")
    return {
        "pk": pk,
        "status": status,
        "processing_mode": mode,
        "llm": "gemini",
        "llm_model": "gemini-2.5-flash",
        "retry_attempts": 0,
        "prompt_url": f"s3://test-bucket/prompts/reduce/{pk}.json",
        "result_url": f"s3://test-bucket/results/{pk}_reduce.json",
        "attached_assets_url": None,
        "prompt_version": "v1",
        "meeting": json.dumps(meeting) if meeting_as_text else meeting,
        "created_at": BASE_TIME,
        "updated_at": BASE_TIME,
    }


def chunk_row(pk, position, status="notReady"):
    return {
        "task_pk": pk,
        "chunk_id": f"CHUNK#{position}",
        "position": position,
        "prompt_key": f"prompts/{pk}_{position}.json",
        "prompt_url": f"s3://test-bucket/prompts/{pk}_{position}.json",
        "result_url": f"s3://test-bucket/results/{pk}_{position}_result.json",
        "status": status,
        "indices": json.dumps([position]),
        "oversized": False,
    }


@pytest.fixture
def conn():
    return FakeConnection()


@pytest.fixture
def repo(conn):
    return TaskRepository(FakePool(conn))


class TestRowToTask:
    def test_single_chunk_row(self):
        task = row_to_task(task_row("S1"))
        assert isinstance(task, SingleChunkTask)
        assert task.meeting.issue_id == "S1"

    def test_chunk_rows_sorted_by_position(self):
        rows = [chunk_row("C1", 2), chunk_row("C1", 0), chunk_row("C1", 1, status="ready")]

        task = row_to_task(task_row("C1", mode="chunked", status="ingested"), rows)

        assert isinstance(task, ChunkedTask)
        assert [c.id for c in task.chunks] == ["CHUNK#0", "CHUNK#1", "CHUNK#2"]
        assert task.chunks[1].is_ready
        assert task.chunks[2].indices == [2]

    def test_decoded_jsonb_accepted(self):
        task = row_to_task(task_row("S1", meeting_as_text=False))
        assert task.meeting.name_of_meeting == "予算委員会"


class TestCreateTask:
    async def test_single_chunk_insert(self, repo, conn):
        conn.queue("fetchrow", {"pk": "S1"})

        assert await repo.create_task(make_single_task("S1")) is True

        method, query, args = conn.calls[0]
        assert "ON CONFLICT (pk) DO NOTHING" in query
        assert args[0] == "S1"
        assert args[2] == "single_chunk"
        assert conn.statements("executemany") == []

    async def test_chunked_insert_writes_chunk_rows(self, repo, conn):
        conn.queue("fetchrow", {"pk": "C1"})

        assert await repo.create_task(make_chunked_task("C1", chunk_count=3)) is True

        (_, query, rows), = conn.statements("executemany")
        assert "INSERT INTO llm_task_chunks" in query
        assert [(r[1], r[2], r[6]) for r in rows] == [
            ("CHUNK#0", 0, "notReady"),
            ("CHUNK#1", 1, "notReady"),
            ("CHUNK#2", 2, "notReady"),
        ]

    async def test_duplicate_returns_false(self, repo, conn):
        # ON CONFLICT DO NOTHING returns no row
        assert await repo.create_task(make_chunked_task("C1")) is False
        assert conn.statements("executemany") == []

    async def test_database_error_wrapped(self, repo, conn):
        conn.fail_with = asyncpg.PostgresError("connection lost")

        with pytest.raises(TaskStoreError) as exc_info:
            await repo.create_task(make_single_task("S1"))

        assert exc_info.value.pk == "S1"
        assert exc_info.value.operation == "create"


class TestReads:
    async def test_get_missing_task(self, repo):
        assert await repo.get_task("nope") is None

    async def test_get_chunked_task_loads_chunks(self, repo, conn):
        conn.queue("fetchrow", task_row("C1", mode="chunked", status="ingested"))
        conn.queue("fetch", [chunk_row("C1", 0), chunk_row("C1", 1)])

        task = await repo.get_task("C1")

        assert [c.id for c in task.chunks] == ["CHUNK#0", "CHUNK#1"]

    async def test_get_next_pending_groups_chunks(self, repo, conn):
        conn.queue(
            "fetch",
            [task_row("S1"), task_row("C1", mode="chunked")],
            [chunk_row("C1", 0, status="ready")],
        )

        tasks = await repo.get_next_pending(limit=5)

        assert [t.pk for t in tasks] == ["S1", "C1"]
        assert tasks[1].all_chunks_ready
        _, _, args = conn.statements("fetch")[0]
        assert args == ("pending", 5)
        _, _, chunk_args = conn.statements("fetch")[1]
        assert chunk_args == (["C1"],)

    async def test_zero_limit_skips_query(self, repo, conn):
        assert await repo.get_next_pending(limit=0) == []
        assert conn.calls == []


class TestMarkChunkReady:
    async def test_missing_task(self, repo, conn):
        assert await repo.mark_chunk_ready("nope", "CHUNK#0") is None
        assert conn.statements("execute") == []

    async def test_last_chunk_promotes(self, repo, conn):
        conn.queue("fetchrow", {"pk": "C1", "status": "ingested"}, task_row("C1", mode="chunked"))
        conn.queue("execute", "UPDATE 1", "UPDATE 1")
        conn.queue("fetchval", 0)
        conn.queue("fetch", [chunk_row("C1", 0, status="ready")])

        task = await repo.mark_chunk_ready("C1", "CHUNK#0")

        lock_query = conn.statements("fetchrow")[0][1]
        assert "FOR UPDATE" in lock_query
        _, task_update, args = conn.statements("execute")[1]
        assert "UPDATE llm_tasks" in task_update
        assert args[2] is True
        assert task.pk == "C1"

    async def test_remaining_chunks_do_not_promote(self, repo, conn):
        conn.queue("fetchrow", {"pk": "C1", "status": "ingested"}, task_row("C1", mode="chunked", status="ingested"))
        conn.queue("execute", "UPDATE 1", "UPDATE 1")
        conn.queue("fetchval", 2)
        conn.queue("fetch", [chunk_row("C1", 0, status="ready"), chunk_row("C1", 1), chunk_row("C1", 2)])

        await repo.mark_chunk_ready("C1", "CHUNK#0")

        _, _, args = conn.statements("execute")[1]
        assert args[2] is False

    async def test_already_ready_chunk_writes_nothing_else(self, repo, conn):
        conn.queue("fetchrow", {"pk": "C1", "status": "pending"}, task_row("C1", mode="chunked"))
        conn.queue("execute", "UPDATE 0")
        conn.queue("fetch", [chunk_row("C1", 0, status="ready")])

        await repo.mark_chunk_ready("C1", "CHUNK#0")

        assert len(conn.statements("execute")) == 1
        assert conn.statements("fetchval") == []


class TestMarkTaskSucceeded:
    async def test_completes_task(self, repo, conn):
        conn.queue("execute", "UPDATE 1")
        conn.queue("fetchrow", task_row("S1", status="completed"))

        task = await repo.mark_task_succeeded("S1")

        assert task.status == "completed"

    async def test_missing_task(self, repo, conn):
        conn.queue("execute", "UPDATE 0")
        assert await repo.mark_task_succeeded("nope") is None


class TestRowCount:
    @pytest.mark.parametrize("tag,expected", [("UPDATE 5", 5), ("INSERT 0 1", 1), ("", 0), (None, 0)])
    def test_parse_row_count(self, tag, expected):
        assert BaseRepository._parse_row_count(tag) == expected
