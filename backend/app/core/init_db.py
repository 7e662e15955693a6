"""
Database initialization script.

Creates the cloud action tables on a fresh database. Production schemas are
managed by the Alembic revisions under backend/alembic/versions; this is for
local SQLite runs and first boots.
"""

import asyncio

from sqlalchemy.ext.asyncio import AsyncEngine

from backend.app.core.database import Base, engine
from backend.app.core.logging import get_logger
from backend.app.models.cloud_action_orm import CloudActionLogORM, CloudActionORM  # noqa: F401
from backend.app.models.platform_credential_orm import PlatformCredentialORM  # noqa: F401

logger = get_logger(__name__)


async def create_tables(target: AsyncEngine = engine) -> None:
    """Create any missing tables registered on Base."""
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Database tables ensured: {', '.join(sorted(Base.metadata.tables))}")


if __name__ == "__main__":
    asyncio.run(create_tables())
