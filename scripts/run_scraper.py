"""
Script to start or resume an ingestion job for one source
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from sqlalchemy import select
from core.config import settings
from core.database import async_session_maker, engine
from core.exceptions import IngestionException, JobConflictError
from core.logging import setup_logging
from ingestion.ledger import JobLedger
from ingestion.runner import BatchRunner
from ingestion.strategies import get_strategy
from models.base import JobStatus
from models.source import ScraperSource

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a resumable ingestion job")
    parser.add_argument("--source", required=True, help="Source code, e.g. dime")
    parser.add_argument("--start", type=int, help="First upstream id (inclusive)")
    parser.add_argument("--end", type=int, help="Last upstream id (inclusive)")
    parser.add_argument("--chunk", type=int, default=None, help="Ids per batch")
    parser.add_argument("--resume", action="store_true", help="Resume the latest paused or failed job")
    parser.add_argument("--force", action="store_true", help="Proceed despite overlapping active jobs")
    parser.add_argument("--check", action="store_true", help="Only check that the listing endpoint answers")
    return parser


async def load_source(session, code: str) -> ScraperSource:
    result = await session.execute(select(ScraperSource).where(ScraperSource.code == code))
    source = result.scalars().first()
    if source is None:
        raise SystemExit(f"Unknown source '{code}'. Run scripts/init_db.py to seed sources.")
    return source


async def check_source(source: ScraperSource) -> int:
    strategy = get_strategy(source)
    try:
        items = await strategy.fetch_listing(limit=5)
    except IngestionException as e:
        logger.error(f"{source.code} is not reachable: {e.message}")
        return 1
    logger.info(f"{source.code} is reachable, listing returned {len(items)} records")
    return 0


async def run_scraper(args: argparse.Namespace) -> int:
    """Returns the process exit code"""
    try:
        async with async_session_maker() as session:
            source = await load_source(session, args.source)

            if args.check:
                return await check_source(source)

            ledger = JobLedger(session)

            if args.resume:
                job = await ledger.find_resumable(source)
                if job is None:
                    logger.error(f"No paused, failed or stale running job to resume for {source.code}")
                    return 1
                ledger.resume(job)
            else:
                if args.start is None or args.end is None:
                    logger.error("--start and --end are required unless --resume is given")
                    return 2
                try:
                    job = await ledger.create_job(
                        source,
                        args.start,
                        args.end,
                        chunk_size=args.chunk,
                        override=args.force,
                        triggered_by="cli",
                    )
                except JobConflictError as e:
                    for conflict in e.conflicts:
                        logger.error(
                            f"Overlaps job #{conflict.id} [{conflict.start_id}-{conflict.end_id}] "
                            f"({JobStatus(conflict.status).label})"
                        )
                    logger.error("Re-run with --force to accept duplicate fetches")
                    return 1

            runner = BatchRunner(session, async_session_maker, get_strategy(source), ledger=ledger)
            summary = await runner.run(job)

            logger.info(
                f"Job #{summary['job_id']} {summary['status']}: "
                f"success={summary['success']} created={summary['created']} "
                f"updated={summary['updated']} skipped={summary['skipped']} errors={summary['errors']} "
                f"(next id {summary['current']})"
            )
            return 0

    except IngestionException as e:
        logger.error(f"Ingestion failed: {e.message}")
        return 1
    except Exception as e:
        logger.error(f"Ingestion pipeline error: {str(e)}")
        return 1
    finally:
        await engine.dispose()


if __name__ == "__main__":
    setup_logging(settings.LOG_LEVEL)
    sys.exit(asyncio.run(run_scraper(build_parser().parse_args())))
