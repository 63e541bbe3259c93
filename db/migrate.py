"""Database migration utilities."""
import asyncio
from pathlib import Path
from typing import Optional
from config.logging import get_logger
from db.connection import db as default_db, Database

logger = get_logger(__name__)

TABLES = (
    "email_delivery_attempts",
    "email_logs",
    "static_links",
    "subscribers",
    "publications",
    "articles",
)


async def run_migrations(database: Optional[Database] = None) -> None:
    """Run database migrations."""
    database = database or default_db
    logger.info("Running database migrations")

    schema_path = Path(__file__).parent / "schema.sql"

    if not schema_path.exists():
        raise FileNotFoundError(f"Schema file not found: {schema_path}")

    async with database.acquire() as conn:
        await conn.execute(schema_path.read_text())

    logger.info("Migrations completed successfully")


async def reset_database(database: Optional[Database] = None) -> None:
    """Drop and recreate all tables (development only)."""
    database = database or default_db
    logger.warning("Resetting database - all data will be lost")

    async with database.acquire() as conn:
        for table in TABLES:
            await conn.execute(f"DROP TABLE IF EXISTS {table} CASCADE")

    logger.info("Database reset complete")

    # Re-run migrations
    await run_migrations(database)


if __name__ == "__main__":
    async def main():
        await default_db.connect()
        try:
            await run_migrations()
        finally:
            await default_db.disconnect()

    asyncio.run(main())
