"""
Health check endpoint with database and job status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, text
from api.dependencies import get_db
from schemas.api import HealthCheckResponse
from models.base import JobStatus
from models.job import ScrapeJob
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Number of jobs currently running
    """
    db_connected = False
    running_jobs = 0

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    if db_connected:
        try:
            result = await db.execute(
                select(func.count(ScrapeJob.id)).where(ScrapeJob.status == JobStatus.RUNNING)
            )
            running_jobs = result.scalar() or 0
        except Exception as e:
            logger.error(f"Failed to count running jobs: {str(e)}")

    return HealthCheckResponse(
        status="healthy" if db_connected else "unhealthy",
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        running_jobs=running_jobs,
    )
