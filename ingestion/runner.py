"""
Batch Runner - drives one job through its id range.

This module provides the checkpointed ingestion loop:
- Fetch the next chunk of ids through the source's fetch strategy
- Resolve locations and upsert each record in its own transaction
- Route per-record failures through the recovery engine
- Persist the checkpoint every N batches and on every exit
- Pause on the runtime budget or a cooperative stop signal
"""

from datetime import timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional
import asyncio
import time
from sqlalchemy.ext.asyncio import AsyncSession
from models.base import JobStatus, can_transition
from models.job import ScrapeJob
from schemas.project import ProjectRecord
from ingestion.geo_resolver import GeoCache, GeoResolver
from ingestion.ledger import JobLedger
from ingestion.loaders.postgres_loader import UpsertEngine, UpsertOutcome
from ingestion.recovery import RecoveryAction, RecoveryEngine, RecoveryResult
from ingestion.strategies.base import FetchResult, FetchStrategy
from core.config import settings
from core.exceptions import IngestionException
import logging

logger = logging.getLogger(__name__)


def stop_file_present(path: Optional[str] = None) -> bool:
    """Default stop signal: the stop file exists. It is consumed when seen."""
    stop_file = Path(path or settings.STOP_FILE)
    if not stop_file.exists():
        return False
    stop_file.unlink(missing_ok=True)
    return True


class BatchRunner:
    """
    Checkpointed, strictly sequential ingestion loop.

    Responsibilities:
    - Move the job PENDING/PAUSED/FAILED -> RUNNING -> COMPLETED or PAUSED
    - Advance ``current_id`` monotonically, one chunk at a time
    - Keep per-record failures from aborting the batch
    - Mark the job FAILED and re-raise on job-fatal errors

    Args:
        db_session: Session owning the job row (checkpoints commit here)
        session_factory: Opens the per-record upsert sessions
        strategy: Fetch strategy for the job's source
        recovery: RecoveryEngine (built for the strategy if omitted)
        ledger: JobLedger bound to ``db_session``
        geo_cache: Preloaded GeoCache; loaded per run if omitted
        sleep: Async sleep used between batches
        stop_requested: Zero-argument callable checked once per batch
        clock: Monotonic clock used for the runtime budget
    """

    def __init__(
        self,
        db_session: AsyncSession,
        session_factory: Callable[[], AsyncSession],
        strategy: FetchStrategy,
        recovery: Optional[RecoveryEngine] = None,
        ledger: Optional[JobLedger] = None,
        geo_cache: Optional[GeoCache] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        stop_requested: Optional[Callable[[], bool]] = None,
        clock: Optional[Callable[[], float]] = None,
        batch_delay: Optional[float] = None,
        checkpoint_every: Optional[int] = None,
        max_runtime: Optional[float] = None
    ):
        source = strategy.source
        self.db = db_session
        self.strategy = strategy
        self.recovery = recovery or RecoveryEngine(strategy)
        self.ledger = ledger or JobLedger(db_session)
        self.geo_cache = geo_cache
        self.sleep = sleep or asyncio.sleep
        self.stop_requested = stop_requested or stop_file_present
        self.clock = clock or time.monotonic

        self.batch_delay = settings.BATCH_DELAY_SECONDS if batch_delay is None else batch_delay
        self.checkpoint_every = checkpoint_every or settings.CHECKPOINT_EVERY_BATCHES
        self.max_runtime = (
            max_runtime
            if max_runtime is not None
            else float(source.setting("max_runtime_seconds", settings.MAX_RUNTIME_SECONDS))
        )
        self.upsert_engine = UpsertEngine(
            session_factory,
            unique_field=strategy.unique_field,
            freshness_window=timedelta(
                seconds=source.setting("freshness_window_seconds", settings.FRESHNESS_WINDOW_SECONDS)
            ),
        )

    async def run(self, job: ScrapeJob) -> Dict[str, Any]:
        """
        Run ``job`` from its checkpoint until the range is exhausted, the
        runtime budget is spent or a stop is requested.

        Returns:
            Summary with status, job_id, current, counters and stop_reason

        Raises:
            Exception: any job-fatal error, after the job is marked FAILED
        """
        # --------------------------------------------------
        # PHASE 1: INITIALIZATION
        # --------------------------------------------------
        try:
            if JobStatus(job.status).can_resume:
                self.ledger.resume(job)
            geo_cache = self.geo_cache or await GeoCache.load(self.db)
            resolver = GeoResolver(geo_cache, self.db)
            job.mark_running()
            await self.ledger.checkpoint(job)
        except Exception as e:
            logger.exception(f"Initialization failed for job #{job.id}")
            await self._fail(job, f"Initialization failed: {str(e)}")
            raise

        logger.info(
            f"Running job #{job.id} ({self.strategy.source.code}) "
            f"from id {job.current_id} to {job.end_id}, chunk {job.chunk_size}"
        )

        started = self.clock()
        batches = 0
        stop_reason = None

        # --------------------------------------------------
        # PHASE 2: BATCH LOOP
        # --------------------------------------------------
        try:
            while job.current_id <= job.end_id:
                chunk = self.recovery.batch_size or job.chunk_size
                batch_start = job.current_id
                batch_end = min(batch_start + chunk - 1, job.end_id)

                try:
                    await self._process_batch(job, resolver, batch_start, batch_end, chunk)
                except Exception as e:
                    # The checkpoint still advances past a failed batch
                    logger.error(f"Batch {batch_start}-{batch_end} of job #{job.id} failed: {str(e)}")
                    job.log_error(batch_start, f"Batch {batch_start}-{batch_end} failed: {str(e)}")
                    job.increment_statistic("failed_batches")

                job.update_progress(batch_end + 1)
                batches += 1
                job.increment_statistic("batches_processed")

                if batches % self.checkpoint_every == 0:
                    await self.ledger.checkpoint(job)

                if job.current_id > job.end_id:
                    break

                if self.clock() - started >= self.max_runtime:
                    stop_reason = "runtime_budget"
                elif self.stop_requested():
                    stop_reason = "stop_requested"
                if stop_reason:
                    break

                await self.sleep(self.batch_delay)

            # --------------------------------------------------
            # PHASE 3: FINALIZE
            # --------------------------------------------------
            self._record_recovery_stats(job)
            if stop_reason:
                job.mark_paused()
                logger.info(f"Job #{job.id} paused at id {job.current_id} ({stop_reason})")
            else:
                job.mark_completed()
                logger.info(
                    f"Job #{job.id} completed in {job.formatted_duration}: "
                    f"{job.success_count} ok, {job.skip_count} skipped, {job.error_count} errors"
                )
            await self.ledger.checkpoint(job)

        except Exception as e:
            logger.exception(f"Job #{job.id} failed at id {job.current_id}")
            await self._fail(job, f"Job failed: {str(e)}")
            raise

        return self._summary(job, stop_reason)

    async def _process_batch(
        self,
        job: ScrapeJob,
        resolver: GeoResolver,
        batch_start: int,
        batch_end: int,
        chunk: int
    ) -> None:
        logger.debug(f"Job #{job.id}: fetching ids {batch_start}-{batch_end}")
        async for result in self.strategy.fetch_batch(batch_start, batch_end):
            if result.skipped:
                job.increment_skip()
                continue
            if result.error is not None:
                await self._recover_fetch(job, resolver, result, chunk)
                continue
            await self._persist(job, resolver, result.item_id, result.record, chunk)

    async def _recover_fetch(
        self,
        job: ScrapeJob,
        resolver: GeoResolver,
        result: FetchResult,
        chunk: int
    ) -> None:
        recovery = await self.recovery.handle(
            result.error, item_id=result.item_id, data=result.fields, batch_size=chunk
        )
        self._count_recovery(job, recovery)

        if recovery.action == RecoveryAction.RETRY:
            retried = await self.strategy.refetch(result.item_id)
            if retried.skipped:
                job.increment_skip()
            elif retried.error is not None:
                self._record_error(job, result.item_id, retried.error, recovery)
            else:
                await self._persist(job, resolver, result.item_id, retried.record, chunk)
        elif recovery.action == RecoveryAction.USE_DATA:
            await self._persist_data(job, resolver, result.item_id, recovery.data, chunk)
        elif recovery.action == RecoveryAction.SKIP:
            job.increment_skip()
        else:
            self._record_error(job, result.item_id, result.error, recovery)

    async def _persist_data(
        self,
        job: ScrapeJob,
        resolver: GeoResolver,
        item_id: int,
        data: Optional[Dict[str, Any]],
        chunk: int
    ) -> None:
        try:
            record = self.strategy.build_record(data or {})
        except Exception as e:
            self._record_error(job, item_id, e)
            return
        await self._persist(job, resolver, item_id, record, chunk, attempt=2)

    async def _persist(
        self,
        job: ScrapeJob,
        resolver: GeoResolver,
        item_id: int,
        record: ProjectRecord,
        chunk: int,
        attempt: int = 1
    ) -> None:
        """Resolve, upsert and count one record; failures go through recovery once."""
        try:
            geo = await resolver.resolve(record.location_fields())
            outcome = await self.upsert_engine.upsert(record, geo)
        except Exception as e:
            if attempt > 1:
                self._record_error(job, item_id, e)
                return
            recovery = await self.recovery.handle(
                e, item_id=item_id, data=record.dict(), attempt=attempt, batch_size=chunk
            )
            self._count_recovery(job, recovery)
            if recovery.action == RecoveryAction.RETRY:
                await self._persist(job, resolver, item_id, record, chunk, attempt=attempt + 1)
            elif recovery.action == RecoveryAction.USE_DATA:
                await self._persist_data(job, resolver, item_id, recovery.data, chunk)
            elif recovery.action == RecoveryAction.SKIP:
                job.increment_skip()
            else:
                self._record_error(job, item_id, e, recovery)
            return

        job.increment_statistic(f"geo_{geo.outcome.value}")
        self.recovery.remember(item_id, record.dict())

        if outcome.outcome == UpsertOutcome.SKIPPED:
            job.increment_skip()
            job.increment_statistic("freshness_skips")
            return

        job.increment_success()
        if outcome.outcome == UpsertOutcome.CREATED:
            job.increment_create()
        else:
            job.increment_update()

    def _record_error(
        self,
        job: ScrapeJob,
        item_id: int,
        error: BaseException,
        recovery: Optional[RecoveryResult] = None
    ) -> None:
        context: Dict[str, Any] = {"error_type": type(error).__name__}
        if recovery is not None:
            context["classified_as"] = recovery.error_type.value
        status_code = getattr(error, "status_code", None)
        if isinstance(status_code, int):
            context["status_code"] = status_code

        message = str(error)
        if isinstance(error, IngestionException):
            details = error.to_dict()
            message = details["message"]
            context["details"] = {
                key: value for key, value in details["context"].items()
                if value is None or isinstance(value, (str, int, float, bool))
            }
            if details["original_error"]:
                context["caused_by"] = details["original_error"][:500]

        job.increment_error()
        job.log_error(item_id, message[:1000], context)
        logger.warning(f"Job #{job.id}: id {item_id} failed ({context.get('classified_as', 'unclassified')})")

    def _count_recovery(self, job: ScrapeJob, recovery: RecoveryResult) -> None:
        if recovery.recovered:
            job.increment_statistic("recoveries")
            job.increment_statistic(f"recovery_{recovery.tactic}")
        else:
            job.increment_statistic("unrecovered")

    def _record_recovery_stats(self, job: ScrapeJob) -> None:
        job.add_statistic("error_types", self.recovery.error_stats())
        if self.recovery.batch_size:
            job.add_statistic("reduced_batch_size", self.recovery.batch_size)

    async def _fail(self, job: ScrapeJob, reason: str) -> None:
        await self.db.rollback()
        await self.db.refresh(job)
        if not can_transition(JobStatus(job.status), JobStatus.FAILED):
            logger.error(f"Job #{job.id} left in {JobStatus(job.status).value}: {reason}")
            return
        job.mark_failed(reason)
        await self.ledger.checkpoint(job)

    def _summary(self, job: ScrapeJob, stop_reason: Optional[str]) -> Dict[str, Any]:
        return {
            "status": JobStatus(job.status).value,
            "job_id": job.id,
            "current": job.current_id,
            "success": job.success_count,
            "errors": job.error_count,
            "skipped": job.skip_count,
            "created": job.create_count,
            "updated": job.update_count,
            "progress": job.progress_percentage,
            "stop_reason": stop_reason,
        }
