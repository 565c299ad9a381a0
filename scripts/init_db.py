"""Script to create the appointments schema without running migrations."""

import asyncio

from app.database import engine
from app.models.appointments import metadata


async def init_db() -> None:
    """Create all tables and indexes that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    await engine.dispose()
    print("✓ Database initialized successfully!")


if __name__ == "__main__":
    asyncio.run(init_db())
