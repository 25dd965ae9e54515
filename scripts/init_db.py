"""
Create tables and seed the refresh configuration for every known table
"""

import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import Database
from core.logging import setup_logging
from refresh.registry import RefreshConfigRegistry
from refresh.tables import TABLE_SPECS
from models.refresh_config import RefreshConfig

logger = logging.getLogger(__name__)

# Higher priority runs first
SEED_PRIORITIES = {
    "asin_performance_data": 100,
    "search_query_performance": 90,
}


async def seed_refresh_configs(database: Database) -> int:
    """Insert a refresh_config row for each table spec that has none."""
    created = 0
    async with database.session() as session:
        registry = RefreshConfigRegistry(session)
        for spec in TABLE_SPECS.values():
            if await registry.get_by_identity(spec.table_schema, spec.table_name):
                continue
            session.add(RefreshConfig(
                table_schema=spec.table_schema,
                table_name=spec.table_name,
                function_name=spec.function_name,
                is_enabled=True,
                refresh_frequency_hours=24,
                priority=SEED_PRIORITIES.get(spec.table_name, 100),
            ))
            created += 1
        await session.commit()
    return created


async def init_database():
    setup_logging(settings)
    database = Database.from_settings(settings)
    logger.info(f"Connecting to {database.describe()}...")
    
    try:
        logger.info("Creating tables...")
        await database.create_all()
        created = await seed_refresh_configs(database)
        logger.info(f"Seeded {created} refresh config(s).")
    finally:
        await database.dispose()


if __name__ == "__main__":
    asyncio.run(init_database())
