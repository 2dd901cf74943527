import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from core.config import settings
# Import all models to ensure they are registered
from models import Base, ScraperSource

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DEFAULT_SOURCES = [
    {
        "code": "dime",
        "name": "DIME Project Monitoring",
        "description": "Digital Information for Monitoring and Evaluation of public infrastructure",
        "base_url": "https://www.dime.gov.ph",
        "endpoint_pattern": "/api/projects/{id}",
        "rate_limit": 2,
        "timeout": 30,
        "retry_attempts": 3,
        "settings": {"batch_size": 50, "rate_limit_delay": 60},
    },
    {
        "code": "sumbongsapangulo",
        "name": "Sumbong sa Pangulo",
        "description": "Projects published on sumbongsapangulo.ph",
        "base_url": "https://www.sumbongsapangulo.ph",
        "endpoint_pattern": "/_next/data/projects/{id}.json",
        "rate_limit": 2,
        "timeout": 30,
        "retry_attempts": 3,
        "settings": {"batch_size": 50},
    },
    {
        "code": "sumbong_flood_control",
        "name": "Sumbong sa Pangulo Flood Control",
        "description": "Flood-control projects listed on sumbongsapangulo.ph",
        "base_url": "https://sumbongsapangulo.ph",
        "endpoint_pattern": "/api/flood-projects/{id}",
        "rate_limit": 1,
        "timeout": 30,
        "retry_attempts": 3,
        "settings": {"batch_size": 100},
    },
    {
        "code": "manual",
        "name": "Manual Entry",
        "description": "Projects entered by hand; never fetched",
        "base_url": "http://localhost",
        "endpoint_pattern": None,
        "is_active": False,
    },
]


async def seed_sources(session: AsyncSession) -> int:
    """Insert missing default sources. Existing rows are left untouched."""
    created = 0
    for fields in DEFAULT_SOURCES:
        result = await session.execute(select(ScraperSource).where(ScraperSource.code == fields["code"]))
        if result.scalars().first() is not None:
            continue
        session.add(ScraperSource(**fields))
        created += 1
    await session.commit()
    return created


async def init_database():
    logger.info("Connecting to database...")
    # Create engine
    engine = create_async_engine(settings.DATABASE_URL, echo=False)

    async with engine.begin() as conn:
        logger.info("Creating tables...")
        # Create all tables defined in models
        await conn.run_sync(Base.metadata.create_all)
        logger.info("Tables created successfully.")

    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as session:
        created = await seed_sources(session)
        logger.info(f"Seeded {created} scraper sources.")

    await engine.dispose()

if __name__ == "__main__":
    asyncio.run(init_database())
