"""Async task repositories: asyncpg-backed and in-memory"""

from database.repositories_async.base import BaseRepository
from database.repositories_async.memory import InMemoryTaskRepository
from database.repositories_async.tasks import TaskRepository

__all__ = [
    "BaseRepository",
    "InMemoryTaskRepository",
    "TaskRepository",
]
