"""
Detect overlapping id ranges between active jobs of the same source.
"""

from typing import List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from models.base import JobStatus
from models.job import ScrapeJob
from core.config import settings
from core.exceptions import JobConflictError
import logging

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = tuple(status for status in JobStatus if status.is_active)


def ranges_overlap(start: int, end: int, other_start: int, other_end: int) -> bool:
    """Inclusive range overlap; containment in either direction counts."""
    return start <= other_end and end >= other_start


class ConflictGuard:
    """
    Checks a requested range against PENDING/RUNNING/PAUSED jobs.

    Overlaps are reported, not silently merged. An explicit override lets
    the new job through (accepting duplicate upstream calls; row-level
    locking in the upsert engine still prevents duplicate rows) unless
    ``ALLOW_OVERLAP_OVERRIDE`` is disabled, in which case overlaps are a
    hard block.
    """

    def __init__(self, db_session: AsyncSession, allow_override: bool = None):
        self.db = db_session
        self.allow_override = (
            settings.ALLOW_OVERLAP_OVERRIDE if allow_override is None else allow_override
        )

    async def find_conflicts(self, source_id: int, start: int, end: int) -> List[ScrapeJob]:
        result = await self.db.execute(
            select(ScrapeJob).where(
                ScrapeJob.source_id == source_id,
                ScrapeJob.status.in_(ACTIVE_STATUSES),
                ScrapeJob.start_id <= end,
                ScrapeJob.end_id >= start,
            ).order_by(ScrapeJob.id)
        )
        jobs = list(result.scalars().all())
        return [job for job in jobs if ranges_overlap(start, end, job.start_id, job.end_id)]

    async def check(self, source_id: int, start: int, end: int, override: bool = False) -> List[ScrapeJob]:
        """
        Raise JobConflictError on overlap unless overridden.

        Returns:
            The conflicting jobs (empty when there is no overlap)
        """
        conflicts = await self.find_conflicts(source_id, start, end)
        if not conflicts:
            return conflicts

        summary = ", ".join(
            f"#{job.id} [{job.start_id}-{job.end_id}] {JobStatus(job.status).value}" for job in conflicts
        )

        if override and self.allow_override:
            logger.warning(
                f"Overlapping jobs for source_id={source_id} range [{start}-{end}]: {summary}. "
                f"Proceeding with override; duplicate upstream requests are possible."
            )
            return conflicts

        raise JobConflictError(
            f"Range [{start}-{end}] overlaps active jobs: {summary}",
            conflicts=conflicts,
            context={
                "source_id": source_id,
                "start_id": start,
                "end_id": end,
                "override_allowed": self.allow_override,
            }
        )
