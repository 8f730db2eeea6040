"""Script to initialize the database without running migrations."""

import asyncio

from sqlalchemy import text

from clinic_scheduler.database import engine
from clinic_scheduler.models import metadata


async def init_db() -> None:
    """Create the appointments table for local development."""
    async with engine.begin() as conn:
        if conn.dialect.name == "postgresql":
            await conn.execute(text('CREATE EXTENSION IF NOT EXISTS "pgcrypto"'))

        await conn.run_sync(metadata.create_all)

    print("✓ Database initialized successfully!")
    print("  Run `python scripts/migrate.py` instead to get the overlap exclusion constraint.")


if __name__ == "__main__":
    asyncio.run(init_db())
