"""
Read-only job and source reporting endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy import select, func
from api.dependencies import get_db
from schemas.api import JobDetail, JobListResponse, JobSummary, SourceStatistics
from models.base import JobStatus
from models.job import ScrapeJob
from models.source import ScraperSource
from ingestion.ledger import JobLedger
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Jobs"])

# Error log entries returned by the job detail endpoint
ERROR_TAIL = 20


def _summary_fields(job: ScrapeJob) -> dict:
    return {
        "id": job.id,
        "source_code": job.source.code,
        "status": job.status,
        "start_id": job.start_id,
        "end_id": job.end_id,
        "current_id": job.current_id,
        "chunk_size": job.chunk_size,
        "success_count": job.success_count or 0,
        "error_count": job.error_count or 0,
        "skip_count": job.skip_count or 0,
        "create_count": job.create_count or 0,
        "update_count": job.update_count or 0,
        "progress_percentage": job.progress_percentage,
        "remaining_count": job.remaining_count,
        "duration": job.formatted_duration,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
        "triggered_by": job.triggered_by,
    }


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
    source: Optional[str] = Query(None, description="Filter by source code"),
    status: Optional[JobStatus] = Query(None, description="Filter by job status"),
    limit: int = Query(20, ge=1, le=100, description="Number of recent jobs to return"),
    db: AsyncSession = Depends(get_db)
):
    """Most recent jobs first, with progress."""
    query = select(ScrapeJob).options(selectinload(ScrapeJob.source))
    count_query = select(func.count(ScrapeJob.id))

    if source:
        query = query.join(ScrapeJob.source).where(ScraperSource.code == source)
        count_query = count_query.join(ScrapeJob.source).where(ScraperSource.code == source)
    if status:
        query = query.where(ScrapeJob.status == status)
        count_query = count_query.where(ScrapeJob.status == status)

    total = (await db.execute(count_query)).scalar() or 0
    result = await db.execute(query.order_by(ScrapeJob.id.desc()).limit(limit))
    jobs = result.scalars().all()

    return JobListResponse(
        total=total,
        jobs=[JobSummary(**_summary_fields(job)) for job in jobs]
    )


@router.get("/jobs/{job_id}", response_model=JobDetail)
async def get_job(job_id: int, db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(ScrapeJob).options(selectinload(ScrapeJob.source)).where(ScrapeJob.id == job_id)
    )
    job = result.scalars().first()
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")

    return JobDetail(
        **_summary_fields(job),
        stats=job.stats or {},
        recent_errors=(job.errors or [])[-ERROR_TAIL:],
        notes=job.notes,
    )


@router.get("/sources/{code}/stats", response_model=SourceStatistics)
async def get_source_stats(code: str, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(ScraperSource).where(ScraperSource.code == code))
    source = result.scalars().first()
    if source is None:
        raise HTTPException(status_code=404, detail=f"Source '{code}' not found")

    stats = await JobLedger(db).source_statistics(source)
    return SourceStatistics(code=source.code, name=source.name, is_active=source.is_active, **stats)
