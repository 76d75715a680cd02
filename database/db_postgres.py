"""PostgreSQL Database Layer with Repository Pattern

Owns the asyncpg pool and the task repository built on it.
"""

import asyncpg
import json
from pathlib import Path
from typing import Optional

from config import Config, get_logger
from database.repositories_async import TaskRepository
from exceptions import DatabaseConnectionError

logger = get_logger(__name__).bind(component="database_postgres")


def _jsonb_encoder(obj):
    """JSONB encoder with automatic Pydantic model serialization"""
    def default(o):
        if hasattr(o, 'model_dump'):
            return o.model_dump(mode="json")
        raise TypeError(f"Object of type {type(o).__name__} is not JSON serializable")

    return json.dumps(obj, default=default, ensure_ascii=False)


class Database:
    """Async PostgreSQL database with repository pattern

    Usage:
        db = await Database.create(config.get_postgres_dsn())
        task = await db.tasks.get_task("121705253X00120250115")
        await db.close()
    """

    pool: asyncpg.Pool
    tasks: TaskRepository

    def __init__(self, pool: asyncpg.Pool):
        """Use Database.create() instead of direct instantiation."""
        self.pool = pool
        self.tasks = TaskRepository(pool)

    @classmethod
    async def create(cls, dsn: str, min_size: int = 1, max_size: int = 5) -> "Database":
        """Create database with connection pool

        Args:
            dsn: PostgreSQL connection string
            min_size: Minimum pool size
            max_size: Maximum pool size

        Raises:
            DatabaseConnectionError: Pool could not be created
        """
        async def init_connection(conn):
            """Initialize connection with JSONB codec for automatic serialization"""
            await conn.set_type_codec(
                'jsonb',
                encoder=_jsonb_encoder,
                decoder=json.loads,
                schema='pg_catalog'
            )

        try:
            pool = await asyncpg.create_pool(
                dsn,
                min_size=min_size,
                max_size=max_size,
                command_timeout=60,
                init=init_connection,
            )
            logger.info("connection pool created", min_size=min_size, max_size=max_size)
            return cls(pool)
        except (asyncpg.PostgresError, OSError, ConnectionError) as e:
            # Connection-specific errors only - let programming errors fail loudly
            logger.error("failed to create connection pool", error=str(e))
            raise DatabaseConnectionError(f"Failed to connect to PostgreSQL: {e}") from e

    @classmethod
    async def from_config(cls, config: Config) -> "Database":
        return await cls.create(
            config.get_postgres_dsn(),
            min_size=config.POSTGRES_POOL_MIN_SIZE,
            max_size=config.POSTGRES_POOL_MAX_SIZE,
        )

    async def close(self):
        """Close connection pool"""
        await self.pool.close()
        logger.info("connection pool closed")

    async def init_schema(self, schema_path: Optional[Path] = None):
        """Create task tables and indexes. Safe to call repeatedly (IF NOT EXISTS)."""
        schema_path = schema_path or Path(__file__).parent / "schema_postgres.sql"
        if not schema_path.exists():
            raise FileNotFoundError(f"Schema file not found: {schema_path}")

        async with self.pool.acquire() as conn:
            await conn.execute(schema_path.read_text())

        logger.info("schema initialized", path=str(schema_path))
