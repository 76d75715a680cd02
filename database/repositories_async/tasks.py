"""Async TaskRepository for LLM task records

State machine over llm_tasks.status:
    ingested -> pending -> completed
    (remake is a manual re-entry point, never set here)

- Idempotent create: INSERT ... ON CONFLICT DO NOTHING, duplicate -> False
- Pending poll ordered by created_at ascending on (status, created_at)
- Chunk readiness is one conditional UPDATE per chunk row; a chunked task is
  promoted ingested -> pending when its last chunk becomes ready
"""

import json
from typing import Any, Dict, Iterable, List, Optional

import asyncpg

from config import get_logger
from database.models import (
    CHUNK_NOT_READY,
    CHUNK_READY,
    PROCESSING_CHUNKED,
    ChunkedTask,
    IssueTask,
    parse_task,
    utcnow,
)
from database.repositories_async.base import BaseRepository
from exceptions import TaskStoreError

logger = get_logger(__name__).bind(component="task_repository")

TASK_COLUMNS = """
    pk, status, processing_mode, llm, llm_model, retry_attempts,
    prompt_url, result_url, attached_assets_url, prompt_version,
    meeting, created_at, updated_at
"""

CHUNK_COLUMNS = """
    task_pk, chunk_id, position, prompt_key, prompt_url, result_url,
    status, indices, oversized
"""


def _decode_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def row_to_task(row: Any, chunk_rows: Iterable[Any] = ()) -> IssueTask:
    """Build the task variant from an llm_tasks row and its chunk rows"""
    data: Dict[str, Any] = {
        "pk": row["pk"],
        "status": row["status"],
        "processing_mode": row["processing_mode"],
        "llm": row["llm"],
        "llm_model": row["llm_model"],
        "retry_attempts": row["retry_attempts"],
        "prompt_url": row["prompt_url"],
        "result_url": row["result_url"],
        "attached_assets_url": row["attached_assets_url"],
        "prompt_version": row["prompt_version"],
        "meeting": _decode_json(row["meeting"]),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }
    if row["processing_mode"] == PROCESSING_CHUNKED:
        ordered = sorted(chunk_rows, key=lambda c: c["position"])
        data["chunks"] = [
            {
                "id": c["chunk_id"],
                "prompt_key": c["prompt_key"],
                "prompt_url": c["prompt_url"],
                "result_url": c["result_url"],
                "status": c["status"],
                "indices": _decode_json(c["indices"]) or [],
                "oversized": c["oversized"],
            }
            for c in ordered
        ]
    return parse_task(data)


class TaskRepository(BaseRepository):
    """Repository for llm_tasks and llm_task_chunks

    Provides:
    - create_task with a must-not-exist guard
    - get_task / get_next_pending reads
    - mark_chunk_ready / mark_task_succeeded transitions
    """

    async def create_task(self, task: IssueTask) -> bool:
        """Insert task and its chunks atomically

        Returns:
            True if created, False if a task with this pk already exists

        Raises:
            TaskStoreError: Database failure
        """
        try:
            async with self.transaction() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO llm_tasks (
                        pk, status, processing_mode, llm, llm_model, retry_attempts,
                        prompt_url, result_url, attached_assets_url, prompt_version,
                        meeting, created_at, updated_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                    ON CONFLICT (pk) DO NOTHING
                    RETURNING pk
                    """,
                    task.pk,
                    task.status,
                    task.processing_mode,
                    task.llm,
                    task.llm_model,
                    task.retry_attempts,
                    task.prompt_url,
                    task.result_url,
                    task.attached_assets_url,
                    task.prompt_version,
                    task.meeting.model_dump(mode="json"),
                    task.created_at,
                    task.updated_at,
                )

                if row is None:
                    logger.info("task already exists", pk=task.pk)
                    return False

                if isinstance(task, ChunkedTask):
                    await conn.executemany(
                        """
                        INSERT INTO llm_task_chunks (
                            task_pk, chunk_id, position, prompt_key, prompt_url,
                            result_url, status, indices, oversized, updated_at
                        )
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                        """,
                        [
                            (
                                task.pk,
                                chunk.id,
                                position,
                                chunk.prompt_key,
                                chunk.prompt_url,
                                chunk.result_url,
                                chunk.status,
                                chunk.indices,
                                chunk.oversized,
                                task.created_at,
                            )
                            for position, chunk in enumerate(task.chunks)
                        ],
                    )
        except asyncpg.PostgresError as e:
            logger.error("task create failed", pk=task.pk, error=str(e))
            raise TaskStoreError(f"Failed to create task: {e}", pk=task.pk, operation="create") from e

        logger.info(
            "task created",
            pk=task.pk,
            processing_mode=task.processing_mode,
            status=task.status,
            chunks=len(task.chunks),
        )
        return True

    async def get_task(self, pk: str) -> Optional[IssueTask]:
        """Point read. None if no task has this pk."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {TASK_COLUMNS} FROM llm_tasks WHERE pk = $1", pk)
            if row is None:
                return None
            chunk_rows: List[Any] = []
            if row["processing_mode"] == PROCESSING_CHUNKED:
                chunk_rows = await conn.fetch(
                    f"SELECT {CHUNK_COLUMNS} FROM llm_task_chunks WHERE task_pk = $1 ORDER BY position",
                    pk,
                )
        return row_to_task(row, chunk_rows)

    async def get_next_pending(self, limit: int = 10, status: str = "pending") -> List[IssueTask]:
        """Oldest tasks in a status, created_at ascending

        Args:
            limit: Max tasks to return
            status: Status partition to poll (default: pending)
        """
        if limit <= 0:
            return []

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {TASK_COLUMNS} FROM llm_tasks
                WHERE status = $1
                ORDER BY created_at ASC, pk ASC
                LIMIT $2
                """,
                status,
                limit,
            )
            chunked = [r["pk"] for r in rows if r["processing_mode"] == PROCESSING_CHUNKED]
            chunk_rows: List[Any] = []
            if chunked:
                chunk_rows = await conn.fetch(
                    f"""
                    SELECT {CHUNK_COLUMNS} FROM llm_task_chunks
                    WHERE task_pk = ANY($1::text[])
                    ORDER BY task_pk, position
                    """,
                    chunked,
                )

        by_task: Dict[str, List[Any]] = {}
        for chunk_row in chunk_rows:
            by_task.setdefault(chunk_row["task_pk"], []).append(chunk_row)

        return [row_to_task(row, by_task.get(row["pk"], [])) for row in rows]

    async def mark_chunk_ready(self, pk: str, chunk_id: str) -> Optional[IssueTask]:
        """Flip one chunk notReady -> ready

        No write happens when the chunk is already ready or does not exist.
        When the last chunk becomes ready an ingested task moves to pending.

        Returns:
            Refreshed task, or None if the task does not exist
        """
        now = utcnow()
        try:
            async with self.transaction() as conn:
                # Row lock serializes the "last chunk" check across concurrent callers
                task_row = await conn.fetchrow(
                    "SELECT pk, status FROM llm_tasks WHERE pk = $1 FOR UPDATE",
                    pk,
                )
                if task_row is None:
                    logger.warning("chunk update for missing task", pk=pk, chunk_id=chunk_id)
                    return None

                result = await conn.execute(
                    """
                    UPDATE llm_task_chunks
                    SET status = $3, updated_at = $4
                    WHERE task_pk = $1 AND chunk_id = $2 AND status = $5
                    """,
                    pk,
                    chunk_id,
                    CHUNK_READY,
                    now,
                    CHUNK_NOT_READY,
                )

                if self._parse_row_count(result) == 0:
                    logger.debug("chunk already ready or absent", pk=pk, chunk_id=chunk_id)
                else:
                    remaining = await conn.fetchval(
                        "SELECT COUNT(*) FROM llm_task_chunks WHERE task_pk = $1 AND status = $2",
                        pk,
                        CHUNK_NOT_READY,
                    )
                    promote = remaining == 0 and task_row["status"] == "ingested"
                    await conn.execute(
                        """
                        UPDATE llm_tasks
                        SET updated_at = $2,
                            status = CASE WHEN $3 THEN 'pending' ELSE status END
                        WHERE pk = $1
                        """,
                        pk,
                        now,
                        promote,
                    )
                    logger.info(
                        "chunk marked ready",
                        pk=pk,
                        chunk_id=chunk_id,
                        remaining=remaining,
                        promoted=promote,
                    )
        except asyncpg.PostgresError as e:
            logger.error("chunk update failed", pk=pk, chunk_id=chunk_id, error=str(e))
            raise TaskStoreError(f"Failed to mark chunk ready: {e}", pk=pk, operation="mark_chunk_ready") from e

        return await self.get_task(pk)

    async def mark_task_succeeded(self, pk: str) -> Optional[IssueTask]:
        """Set status = completed unconditionally. None if the task does not exist."""
        try:
            result = await self._execute(
                "UPDATE llm_tasks SET status = 'completed', updated_at = $2 WHERE pk = $1",
                pk,
                utcnow(),
            )
        except asyncpg.PostgresError as e:
            logger.error("task completion failed", pk=pk, error=str(e))
            raise TaskStoreError(f"Failed to mark task succeeded: {e}", pk=pk, operation="mark_task_succeeded") from e

        if self._parse_row_count(result) == 0:
            logger.warning("completion for missing task", pk=pk)
            return None

        logger.info("task completed", pk=pk)
        return await self.get_task(pk)

    async def count_by_status(self) -> Dict[str, int]:
        rows = await self._fetch("SELECT status, COUNT(*) AS count FROM llm_tasks GROUP BY status")
        return {row["status"]: row["count"] for row in rows}

