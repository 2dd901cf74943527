import logging
from typing import Optional, Tuple
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from core.config import settings
from core.database import async_session_maker
from core.exceptions import JobConflictError
from models.base import JobStatus
from models.job import ScrapeJob
from models.source import ScraperSource
from ingestion.ledger import JobLedger
from ingestion.runner import BatchRunner
from ingestion.strategies import STRATEGIES, get_strategy

logger = logging.getLogger(__name__)

# Ids covered by one scheduled job when the source does not configure it
DEFAULT_SCHEDULED_RANGE = 1000


async def next_range(session: AsyncSession, source: ScraperSource) -> Tuple[int, int]:
    """Range following the highest id covered by the source's completed jobs."""
    result = await session.execute(
        select(func.max(ScrapeJob.end_id)).where(
            ScrapeJob.source_id == source.id,
            ScrapeJob.status == JobStatus.COMPLETED,
        )
    )
    last_end = result.scalar()
    start = (last_end or 0) + 1
    size = int(source.setting("scheduled_range", DEFAULT_SCHEDULED_RANGE))
    return start, start + size - 1


class IngestionScheduler:
    def __init__(self, session_factory=None, interval_minutes: Optional[int] = None):
        self.scheduler = AsyncIOScheduler()
        self.session_factory = session_factory or async_session_maker
        self.interval_minutes = interval_minutes or settings.SCHEDULER_INTERVAL_MINUTES

    async def run_source(self, session: AsyncSession, source: ScraperSource) -> Optional[dict]:
        """Resume the source's latest paused/failed job, or start the next range."""
        ledger = JobLedger(session)
        await ledger.fail_stale_jobs(source)

        if await ledger.find_running(source):
            logger.info(f"Scheduler: {source.code} already has a running job, skipping")
            return None

        job = await ledger.find_resumable(source)
        if job is None:
            start, end = await next_range(session, source)
            try:
                job = await ledger.create_job(source, start, end, triggered_by="scheduler")
            except JobConflictError as e:
                logger.warning(f"Scheduler: {e.message} (jobs {e.context['conflicting_job_ids']})")
                return None

        runner = BatchRunner(session, self.session_factory, get_strategy(source), ledger=ledger)
        return await runner.run(job)

    async def run_ingestion_cycle(self):
        """Job to run one ingestion pass over every active source"""
        logger.info("Scheduler: Starting ingestion cycle")
        async with self.session_factory() as session:
            result = await session.execute(
                select(ScraperSource).where(ScraperSource.is_active.is_(True)).order_by(ScraperSource.id)
            )
            sources = [s for s in result.scalars().all() if s.code in STRATEGIES]

            for source in sources:
                try:
                    summary = await self.run_source(session, source)
                    if summary:
                        logger.info(f"Scheduler: {source.code} -> {summary['status']} at id {summary['current']}")
                except Exception as e:
                    logger.error(f"Scheduler: ingestion failed for {source.code} - {e}")

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_ingestion_cycle,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id="ingestion_cycle",
            replace_existing=True,
            max_instances=1
        )
        self.scheduler.start()
        logger.info("Ingestion Scheduler started")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("Ingestion Scheduler stopped")
