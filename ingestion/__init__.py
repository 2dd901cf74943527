"""
Resumable batch-ingestion pipeline.

Modules:
    ledger: Job creation, resume and checkpoint persistence
    conflict_guard: Overlap detection between active jobs of one source
    geo_resolver: Location text -> Region/Province/City/Barangay resolution
    recovery: Error classification and bounded recovery tactics
    runner: Checkpointed batch loop (the entry point for triggers)
    scheduler: APScheduler integration for periodic runs

Subpackages:
    strategies: Per-source fetch strategies and the source registry
    transformers: Tolerant value parsers
    loaders: Race-safe upsert engine and related-entity linking

Control flow:
    trigger -> JobLedger.create_job / resume -> BatchRunner.run(job)
        -> strategy.fetch_batch -> GeoResolver.resolve -> UpsertEngine.upsert
        (failures -> RecoveryEngine) -> JobLedger.checkpoint

Usage:
    from ingestion.ledger import JobLedger
    from ingestion.runner import BatchRunner
    from ingestion.strategies import get_strategy

    ledger = JobLedger(session)
    job = await ledger.create_job(source, start=1, end=500, chunk_size=50)
    runner = BatchRunner(session, async_session_maker, get_strategy(source))
    result = await runner.run(job)
"""

__all__ = [
    "JobLedger",
    "ConflictGuard",
    "GeoResolver",
    "RecoveryEngine",
    "BatchRunner",
    "UpsertEngine",
]
