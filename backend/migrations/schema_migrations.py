"""
Auto-migration system for schema changes.

Creates missing tables on startup and, on PostgreSQL, adds columns that were
added to the models after the table was first created. Safe to run on every
start.
"""

import asyncio
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports when running standalone
if __name__ == "__main__":
    sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine
from database import Base
import models  # noqa: F401  (registers tables on Base.metadata)

logger = logging.getLogger(__name__)


async def get_table_columns(engine: AsyncEngine, table_name: str) -> set:
    """Get all column names for a table from the database."""
    async with engine.connect() as conn:
        if engine.dialect.name == "sqlite":
            result = await conn.execute(text(f"PRAGMA table_info({table_name})"))
            return {row[1] for row in result}
        result = await conn.execute(
            text("SELECT column_name FROM information_schema.columns WHERE table_name = :table"),
            {"table": table_name}
        )
        return {row[0] for row in result}


async def add_missing_columns(engine: AsyncEngine):
    """
    Check all models and add any missing nullable columns to the database.
    SQLite is skipped; create_all handles fresh SQLite databases.
    """
    if engine.dialect.name == "sqlite":
        logger.info("ℹ️ Skipping column detection for SQLite. create_all will handle table creation.")
        return

    logger.info("🔍 Checking for missing database columns...")
    changes_made = False

    for table_name, table in Base.metadata.tables.items():
        db_columns = await get_table_columns(engine, table_name)
        if not db_columns:
            continue

        missing_columns = {col.name for col in table.columns} - db_columns
        if not missing_columns:
            logger.debug(f"✅ Table '{table_name}' schema is up to date")
            continue

        logger.info(f"📝 Table '{table_name}' is missing columns: {missing_columns}")

        async with engine.begin() as conn:
            for col_name in sorted(missing_columns):
                col = table.columns[col_name]
                col_type = col.type.compile(engine.dialect)

                # Added columns are always nullable; backfills are separate data migrations
                alter_sql = f"ALTER TABLE {table_name} ADD COLUMN IF NOT EXISTS {col_name} {col_type} NULL"
                await conn.execute(text(alter_sql))
                logger.info(f"✅ Added column {table_name}.{col_name}")
                changes_made = True

    if changes_made:
        logger.info("✅ Schema migration completed - columns added")
    else:
        logger.info("✅ Schema is up to date - no changes needed")


async def run_migrations(engine: AsyncEngine):
    """
    Main migration entry point.
    1. Creates missing tables and indexes (via create_all)
    2. Adds missing columns to existing tables
    """
    logger.info("=" * 60)
    logger.info("Starting database schema migration...")
    logger.info("=" * 60)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✅ All tables exist")

    await add_missing_columns(engine)

    logger.info("=" * 60)
    logger.info("Database schema migration completed!")
    logger.info("=" * 60)


if __name__ == "__main__":
    from database import engine

    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_migrations(engine))
