"""asyncpg pool shared by every store."""
import asyncpg
from typing import Optional
from contextlib import asynccontextmanager
from config.settings import settings
from config.logging import get_logger

logger = get_logger(__name__)


class Database:
    """Connection pool for the publications database.

    Sessions run in UTC so that lease expiry computed with now() compares
    consistently across scheduler processes.
    """

    def __init__(self, url: Optional[str] = None) -> None:
        self.url = url or settings.database_url
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def host(self) -> str:
        """The URL without credentials, for logging."""
        return self.url.split("@")[-1]

    async def connect(self) -> None:
        """Create connection pool."""
        logger.info("Connecting to database", host=self.host)
        self._pool = await asyncpg.create_pool(
            self.url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            command_timeout=settings.db_command_timeout,
            server_settings={
                "application_name": "publisher",
                "timezone": "UTC",
            },
        )
        logger.info("Database connected", host=self.host)

    async def disconnect(self) -> None:
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Database disconnected")

    async def ping(self) -> bool:
        """True if the pool is up and answers a trivial query."""
        if not self._pool:
            return False
        try:
            return await self.fetchval("SELECT 1") == 1
        except (asyncpg.PostgresError, OSError) as e:
            logger.warning("Database ping failed", host=self.host, error=str(e))
            return False

    @asynccontextmanager
    async def acquire(self):
        """Acquire a connection from the pool."""
        if not self._pool:
            raise RuntimeError("Database not connected")
        async with self._pool.acquire() as conn:
            yield conn

    async def execute(self, query: str, *args) -> str:
        """Run a statement; returns the command status, e.g. 'UPDATE 3'."""
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch(self, query: str, *args):
        """Fetch multiple rows."""
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    async def fetchrow(self, query: str, *args):
        """Fetch a single row."""
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetchval(self, query: str, *args):
        """Fetch a single value."""
        async with self.acquire() as conn:
            return await conn.fetchval(query, *args)


# Global database instance
db = Database()
