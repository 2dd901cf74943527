"""
Job ledger and conflict guard against PostgreSQL
"""

import pytest
from core.exceptions import JobConflictError, JobNotFoundError
from ingestion.conflict_guard import ConflictGuard
from ingestion.ledger import JobLedger
from models.base import JobStatus
from models.job import ScrapeJob


@pytest.mark.asyncio
async def test_create_job_persists_pending(db_session, dime_source):
    job = await JobLedger(db_session).create_job(dime_source, 1, 100, triggered_by="cli")

    stored = await JobLedger(db_session).get_job(job.id)
    assert stored.status == JobStatus.PENDING
    assert stored.current_id == 1
    assert stored.chunk_size == 50
    assert stored.triggered_by == "cli"


@pytest.mark.asyncio
async def test_get_missing_job(db_session):
    with pytest.raises(JobNotFoundError):
        await JobLedger(db_session).get_job(999)


@pytest.mark.asyncio
async def test_overlapping_range_requires_override(db_session, dime_source):
    ledger = JobLedger(db_session, ConflictGuard(db_session, allow_override=True))
    first = await ledger.create_job(dime_source, 1, 100)

    with pytest.raises(JobConflictError) as exc_info:
        await ledger.create_job(dime_source, 50, 150)

    assert exc_info.value.context["conflicting_job_ids"] == [first.id]

    second = await ledger.create_job(dime_source, 50, 150, override=True)
    assert second.stats["overlap_override_job_ids"] == [first.id]


@pytest.mark.asyncio
async def test_overlap_is_a_hard_block_when_overrides_are_disabled(db_session, dime_source):
    ledger = JobLedger(db_session, ConflictGuard(db_session, allow_override=False))
    await ledger.create_job(dime_source, 1, 100)

    with pytest.raises(JobConflictError):
        await ledger.create_job(dime_source, 100, 200, override=True)


@pytest.mark.asyncio
async def test_finished_jobs_do_not_conflict(db_session, dime_source):
    ledger = JobLedger(db_session)
    job = await ledger.create_job(dime_source, 1, 100)
    job.mark_running()
    job.update_progress(101)
    job.mark_completed()
    await ledger.checkpoint(job)

    # Adjacent and overlapping ranges are both fine now
    assert (await ledger.create_job(dime_source, 101, 200)).id != job.id
    await ledger.cancel(await ledger.create_job(dime_source, 201, 300))
    assert (await ledger.create_job(dime_source, 50, 60, chunk_size=5)).chunk_size == 5


@pytest.mark.asyncio
async def test_find_resumable_picks_latest_paused_or_failed(db_session, dime_source):
    ledger = JobLedger(db_session)

    failed = await ledger.create_job(dime_source, 1, 10)
    failed.mark_running()
    failed.mark_failed("upstream went away")
    await ledger.checkpoint(failed)

    paused = await ledger.create_job(dime_source, 11, 20)
    paused.mark_running()
    paused.update_progress(15)
    paused.mark_paused()
    await ledger.checkpoint(paused)

    resumable = await ledger.find_resumable(dime_source)

    assert resumable.id == paused.id
    assert resumable.current_id == 15
    assert await ledger.find_running(dime_source) is None


@pytest.mark.asyncio
async def test_source_statistics(db_session, dime_source):
    ledger = JobLedger(db_session)

    done = await ledger.create_job(dime_source, 1, 10)
    done.mark_running()
    done.increment_success(8)
    done.increment_create(6)
    done.increment_update(2)
    done.increment_skip(2)
    done.update_progress(11)
    done.mark_completed()
    await ledger.checkpoint(done)

    broken = await ledger.create_job(dime_source, 11, 20)
    broken.mark_running()
    broken.increment_error(3)
    broken.mark_failed("boom")
    await ledger.checkpoint(broken)

    stats = await ledger.source_statistics(dime_source)

    assert stats["total_jobs"] == 2
    assert stats["completed_jobs"] == 1
    assert stats["failed_jobs"] == 1
    assert stats["running_jobs"] == 0
    assert stats["success_count"] == 8
    assert stats["create_count"] == 6
    assert stats["update_count"] == 2
    assert stats["skip_count"] == 2
    assert stats["error_count"] == 3


@pytest.mark.asyncio
async def test_checkpoint_survives_a_new_session(session_factory, db_session, dime_source):
    ledger = JobLedger(db_session)
    job = await ledger.create_job(dime_source, 1, 100)
    job.mark_running()
    job.update_progress(41)
    job.log_error(17, "HTTP 500")
    await ledger.checkpoint(job)

    async with session_factory() as other:
        reloaded = await other.get(ScrapeJob, job.id)

    assert reloaded.status == JobStatus.RUNNING
    assert reloaded.current_id == 41
    assert reloaded.errors[-1]["id"] == 17
