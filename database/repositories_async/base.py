"""Base repository with async PostgreSQL connection pooling

Repositories inherit from BaseRepository and share:
- One connection pool (never a connection per instance)
- Transaction context manager
- Query helpers

Return Type Conventions
-----------------------
    get_X(key) -> Optional[T]
        Point read. None when the row does not exist.

    get_Xs(...) -> List[T]
        Filtered read. [] when nothing matches.

    mark_X(key, ...) -> Optional[T]
        State transition. None when the key does not exist;
        the refreshed entity otherwise (also when nothing changed).

Connection Patterns
-------------------
    self.pool.acquire()
        Single read-only statements.

    self.transaction()
        Writes, and reads that must see a consistent snapshot with them.
"""

import asyncpg
from typing import Any, List, Optional
from contextlib import asynccontextmanager

from config import get_logger

logger = get_logger(__name__).bind(component="repository")


class BaseRepository:
    """Base class for async PostgreSQL repositories

    Design Principles:
    - Pool is passed in, not created here
    - Transactions are explicit (async with self.transaction())
    - Queries use $1, $2 placeholders
    """

    def __init__(self, pool: asyncpg.Pool):
        """
        Args:
            pool: asyncpg connection pool shared by every repository
        """
        self.pool = pool

    async def _fetchrow(self, query: str, *args: Any) -> Optional[asyncpg.Record]:
        """Execute query and fetch single row"""
        async with self.pool.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def _fetch(self, query: str, *args: Any) -> List[asyncpg.Record]:
        """Execute query and fetch all rows"""
        async with self.pool.acquire() as conn:
            return await conn.fetch(query, *args)

    async def _execute(self, query: str, *args: Any) -> str:
        """Execute query without returning rows; returns the status tag ('UPDATE 1')"""
        async with self.pool.acquire() as conn:
            return await conn.execute(query, *args)

    @asynccontextmanager
    async def transaction(self):
        """Context manager for explicit transactions

        Usage:
            async with self.transaction() as conn:
                await conn.execute("INSERT ...")
                await conn.executemany("INSERT ...", rows)
                # commits on exit, rolls back on exception
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    @staticmethod
    def _parse_row_count(result: str) -> int:
        """Extract row count from a status tag like 'UPDATE 5' or 'INSERT 0 1'."""
        if not result:
            return 0
        return int(result.split()[-1])
