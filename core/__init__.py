"""
Core utilities and configuration for the project ingestion pipeline.

Modules:
    config: Application configuration and environment variable management
    database: Database engine, session factory and session helpers
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration

Usage:
    from core.config import settings
    from core.database import get_db_session
    from core.exceptions import MaintenanceError, JobConflictError
    from core.logging import setup_logging

Example:
    setup_logging()

    async with get_db_session() as session:
        ledger = JobLedger(session)
"""

__all__ = [
    "settings",
    "get_db_session",
    "setup_logging",
    # Exceptions
    "IngestionException",
    "ExtractionError",
    "APIExtractionError",
    "NetworkError",
    "RateLimitError",
    "MaintenanceError",
    "AuthenticationError",
    "PayloadError",
    "TransformationError",
    "ValidationError",
    "LoadError",
    "DatabaseError",
    "UpsertError",
    "JobError",
    "InvalidJobRangeError",
    "JobStateError",
    "JobNotFoundError",
    "JobConflictError",
    "GeoResolutionError",
    "RetryableError",
    "NonRetryableError",
]
