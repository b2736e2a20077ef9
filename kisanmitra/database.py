"""Database connection and operations for Kisan Mitra."""

import asyncio
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from typing import Any

import asyncpg
import structlog
from pgvector.asyncpg import register_vector

from kisanmitra.errors import DeadlineExceededError, ProviderError
from kisanmitra.schema import get_schema

logger = structlog.get_logger()


@contextmanager
def translate_backend_errors(operation: str) -> Iterator[None]:
    """Map asyncpg and transport failures onto the error taxonomy."""
    try:
        yield
    except (asyncio.TimeoutError, TimeoutError) as e:
        raise DeadlineExceededError(
            f"{operation} exceeded its deadline", operation=operation
        ) from e
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
        logger.error("Backend operation failed", operation=operation, error=str(e))
        raise ProviderError(
            f"{operation} failed: {e}", operation=operation
        ) from e


class Database:
    """Async PostgreSQL database connection manager."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        """Create connection pool."""
        with translate_backend_errors("connect"):
            self.pool = await asyncpg.create_pool(
                self.database_url,
                min_size=2,
                max_size=10,
                init=self._init_connection,
            )
        logger.info("Database pool created")

    async def _init_connection(self, conn: asyncpg.Connection) -> None:
        """Initialize connection with pgvector extension."""
        await register_vector(conn)

    async def close(self) -> None:
        """Close connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Database pool closed")

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a connection from the pool."""
        if not self.pool:
            raise ProviderError("Database not connected")
        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a connection with transaction."""
        async with self.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def execute(
        self, query: str, *args: Any, timeout: float | None = None
    ) -> str:
        """Execute a query."""
        with translate_backend_errors("execute"):
            async with self.acquire() as conn:
                return await conn.execute(query, *args, timeout=timeout)

    async def fetch(
        self, query: str, *args: Any, timeout: float | None = None
    ) -> list[asyncpg.Record]:
        """Fetch all rows from a query."""
        with translate_backend_errors("fetch"):
            async with self.acquire() as conn:
                return await conn.fetch(query, *args, timeout=timeout)

    async def fetchrow(
        self, query: str, *args: Any, timeout: float | None = None
    ) -> asyncpg.Record | None:
        """Fetch a single row from a query."""
        with translate_backend_errors("fetchrow"):
            async with self.acquire() as conn:
                return await conn.fetchrow(query, *args, timeout=timeout)

    async def fetchval(
        self, query: str, *args: Any, timeout: float | None = None
    ) -> Any:
        """Fetch a single value from a query."""
        with translate_backend_errors("fetchval"):
            async with self.acquire() as conn:
                return await conn.fetchval(query, *args, timeout=timeout)


def affected_rows(status: str) -> int:
    """Parse the row count out of a command status such as 'DELETE 3'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


async def init_schema(db: Database, dimensions: int) -> None:
    """Initialize database schema."""
    with translate_backend_errors("init_schema"):
        async with db.transaction() as conn:
            await conn.execute(get_schema(dimensions))
    logger.info("Database schema initialized", dimensions=dimensions)
