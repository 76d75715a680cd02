"""In-memory task repository

Same interface and semantics as TaskRepository, for dry runs and tests.
Tasks are stored as deep copies so callers never mutate stored state.
"""

import asyncio
from typing import Dict, List, Optional

from config import get_logger
from database.models import CHUNK_NOT_READY, CHUNK_READY, ChunkedTask, IssueTask, utcnow

logger = get_logger(__name__).bind(component="task_repository")


class InMemoryTaskRepository:
    def __init__(self):
        self._tasks: Dict[str, IssueTask] = {}
        self._lock = asyncio.Lock()

    async def create_task(self, task: IssueTask) -> bool:
        async with self._lock:
            if task.pk in self._tasks:
                logger.info("task already exists", pk=task.pk)
                return False
            self._tasks[task.pk] = task.model_copy(deep=True)
        logger.info("task created", pk=task.pk, processing_mode=task.processing_mode, status=task.status)
        return True

    async def get_task(self, pk: str) -> Optional[IssueTask]:
        task = self._tasks.get(pk)
        return task.model_copy(deep=True) if task is not None else None

    async def get_next_pending(self, limit: int = 10, status: str = "pending") -> List[IssueTask]:
        if limit <= 0:
            return []
        matching = sorted(
            (task for task in self._tasks.values() if task.status == status),
            key=lambda task: (task.created_at, task.pk),
        )
        return [task.model_copy(deep=True) for task in matching[:limit]]

    async def mark_chunk_ready(self, pk: str, chunk_id: str) -> Optional[IssueTask]:
        async with self._lock:
            task = self._tasks.get(pk)
            if task is None:
                logger.warning("chunk update for missing task", pk=pk, chunk_id=chunk_id)
                return None
            if not isinstance(task, ChunkedTask):
                return task.model_copy(deep=True)

            chunk = task.get_chunk(chunk_id)
            if chunk is None or chunk.status != CHUNK_NOT_READY:
                logger.debug("chunk already ready or absent", pk=pk, chunk_id=chunk_id)
                return task.model_copy(deep=True)

            chunks = [
                c.model_copy(update={"status": CHUNK_READY}) if c.id == chunk_id else c
                for c in task.chunks
            ]
            update = {"chunks": chunks, "updated_at": utcnow()}
            if all(c.status == CHUNK_READY for c in chunks) and task.status == "ingested":
                update["status"] = "pending"
            self._tasks[pk] = task.model_copy(update=update)
            return self._tasks[pk].model_copy(deep=True)

    async def mark_task_succeeded(self, pk: str) -> Optional[IssueTask]:
        async with self._lock:
            task = self._tasks.get(pk)
            if task is None:
                logger.warning("completion for missing task", pk=pk)
                return None
            self._tasks[pk] = task.model_copy(update={"status": "completed", "updated_at": utcnow()})
            return self._tasks[pk].model_copy(deep=True)

    async def count_by_status(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for task in self._tasks.values():
            counts[task.status] = counts.get(task.status, 0) + 1
        return counts

    def __len__(self) -> int:
        return len(self._tasks)
