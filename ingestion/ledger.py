"""
Job ledger: the only durable state of an ingestion run.

The ScrapeJob row carries the state machine and counters; this module
owns creating, finding, resuming and persisting jobs. A process that dies
can be resumed from the last persisted checkpoint.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from models.base import JobStatus
from models.job import ScrapeJob
from models.source import ScraperSource
from ingestion.conflict_guard import ConflictGuard
from core.config import settings
from core.exceptions import (
    DatabaseError,
    InvalidJobRangeError,
    JobNotFoundError,
    JobStateError,
)
import logging

logger = logging.getLogger(__name__)


class JobLedger:
    """
    Session-bound job operations.

    Responsibilities:
    - Validate and create jobs (range check + conflict guard)
    - Locate the most recent resumable job of a source
    - Reject resumes from non-resumable states
    - Persist checkpoints
    """

    def __init__(self, db_session: AsyncSession, conflict_guard: Optional[ConflictGuard] = None):
        self.db = db_session
        self.conflict_guard = conflict_guard or ConflictGuard(db_session)

    async def create_job(
        self,
        source: ScraperSource,
        start: int,
        end: int,
        chunk_size: Optional[int] = None,
        override: bool = False,
        triggered_by: Optional[str] = None,
        notes: Optional[str] = None
    ) -> ScrapeJob:
        """
        Create a PENDING job for ``[start, end]``.

        Raises:
            InvalidJobRangeError: start > end or a non-positive chunk size
            JobConflictError: range overlaps an active job and no override was given
        """
        if start > end:
            raise InvalidJobRangeError(
                f"Start id {start} is greater than end id {end}",
                context={"source": source.code, "start_id": start, "end_id": end}
            )

        chunk_size = chunk_size or source.setting("batch_size") or settings.DEFAULT_CHUNK_SIZE
        if chunk_size < 1:
            raise InvalidJobRangeError(
                f"Chunk size must be positive, got {chunk_size}",
                context={"source": source.code}
            )

        conflicts = await self.conflict_guard.check(source.id, start, end, override=override)

        job = ScrapeJob(
            source_id=source.id,
            start_id=start,
            end_id=end,
            current_id=start,
            chunk_size=chunk_size,
            status=JobStatus.PENDING,
            success_count=0,
            error_count=0,
            skip_count=0,
            create_count=0,
            update_count=0,
            stats={},
            errors=[],
            triggered_by=triggered_by,
            notes=notes,
        )
        if conflicts:
            job.add_statistic("overlap_override_job_ids", [c.id for c in conflicts])

        self.db.add(job)
        await self.checkpoint(job)
        await self.db.refresh(job)

        logger.info(
            f"Created job #{job.id} for {source.code}: ids {start}-{end}, chunk {chunk_size}"
        )
        return job

    async def get_job(self, job_id: int) -> ScrapeJob:
        job = await self.db.get(ScrapeJob, job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found", context={"job_id": job_id})
        return job

    def stale_after(self, source: ScraperSource) -> timedelta:
        """A RUNNING job untouched for longer than this belongs to a dead process."""
        budget = float(source.setting("max_runtime_seconds", settings.MAX_RUNTIME_SECONDS))
        return timedelta(seconds=budget + settings.STALE_JOB_GRACE_SECONDS)

    async def fail_stale_jobs(self, source: ScraperSource, now: Optional[datetime] = None) -> List[ScrapeJob]:
        """
        Mark RUNNING jobs whose last checkpoint is older than ``stale_after``
        as FAILED so they can be resumed from that checkpoint.
        """
        cutoff = (now or datetime.utcnow()) - self.stale_after(source)
        result = await self.db.execute(
            select(ScrapeJob).where(
                ScrapeJob.source_id == source.id,
                ScrapeJob.status == JobStatus.RUNNING,
                ScrapeJob.updated_at < cutoff,
            ).order_by(ScrapeJob.id)
        )
        stale = list(result.scalars().all())
        for job in stale:
            logger.warning(
                f"Job #{job.id} has not checkpointed since {job.updated_at}, "
                f"marking it failed at id {job.current_id}"
            )
            job.mark_failed(f"Stale: no checkpoint since {job.updated_at.isoformat()}, process presumed dead")
            await self.checkpoint(job)
        return stale

    async def find_resumable(self, source: ScraperSource) -> Optional[ScrapeJob]:
        """Most recent PAUSED or FAILED job of a source, after failing stale RUNNING jobs."""
        await self.fail_stale_jobs(source)
        result = await self.db.execute(
            select(ScrapeJob).where(
                ScrapeJob.source_id == source.id,
                ScrapeJob.status.in_((JobStatus.PAUSED, JobStatus.FAILED)),
            ).order_by(ScrapeJob.id.desc()).limit(1)
        )
        return result.scalars().first()

    async def find_running(self, source: ScraperSource) -> Optional[ScrapeJob]:
        result = await self.db.execute(
            select(ScrapeJob).where(
                ScrapeJob.source_id == source.id,
                ScrapeJob.status == JobStatus.RUNNING,
            ).order_by(ScrapeJob.id.desc()).limit(1)
        )
        return result.scalars().first()

    def resume(self, job: ScrapeJob) -> ScrapeJob:
        """
        Validate that ``job`` may be resumed. The runner performs the
        actual transition to RUNNING from the stored checkpoint.
        """
        if not job.can_resume:
            raise JobStateError(
                f"Job #{job.id} cannot be resumed from status {JobStatus(job.status).value}",
                context={"job_id": job.id, "status": JobStatus(job.status).value}
            )
        logger.info(f"Resuming job #{job.id} from id {job.current_id}")
        return job

    async def cancel(self, job: ScrapeJob) -> ScrapeJob:
        if not JobStatus(job.status).can_cancel:
            raise JobStateError(
                f"Job #{job.id} cannot be cancelled from status {JobStatus(job.status).value}",
                context={"job_id": job.id}
            )
        job.mark_cancelled()
        await self.checkpoint(job)
        return job

    async def checkpoint(self, job: ScrapeJob) -> None:
        """Persist the job row (position, counters, status, error log)."""
        try:
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            raise DatabaseError(
                f"Failed to persist job #{job.id}",
                context={"operation": "UPDATE", "table_name": "scrape_jobs", "job_id": job.id},
                original_exception=e
            )
        logger.debug(f"Checkpoint job #{job.id} at id {job.current_id}")

    async def source_statistics(self, source: ScraperSource) -> Dict[str, Any]:
        """Aggregate job counts and summed counters for one source."""
        result = await self.db.execute(
            select(
                func.count(ScrapeJob.id),
                func.count(ScrapeJob.id).filter(ScrapeJob.status == JobStatus.COMPLETED),
                func.count(ScrapeJob.id).filter(ScrapeJob.status == JobStatus.FAILED),
                func.count(ScrapeJob.id).filter(ScrapeJob.status == JobStatus.RUNNING),
                func.coalesce(func.sum(ScrapeJob.success_count), 0),
                func.coalesce(func.sum(ScrapeJob.error_count), 0),
                func.coalesce(func.sum(ScrapeJob.skip_count), 0),
                func.coalesce(func.sum(ScrapeJob.create_count), 0),
                func.coalesce(func.sum(ScrapeJob.update_count), 0),
            ).where(ScrapeJob.source_id == source.id)
        )
        row = result.one()
        return {
            "total_jobs": row[0],
            "completed_jobs": row[1],
            "failed_jobs": row[2],
            "running_jobs": row[3],
            "success_count": int(row[4]),
            "error_count": int(row[5]),
            "skip_count": int(row[6]),
            "create_count": int(row[7]),
            "update_count": int(row[8]),
        }
