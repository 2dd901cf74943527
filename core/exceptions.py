"""
Custom exceptions for the ingestion pipeline with structured error context.

Every exception carries a context dictionary so that the job error log,
the recovery engine and the structured log lines all see the same
details (source code, item id, status code, URL).

Exception Hierarchy:
    IngestionException (base)
    ├── ExtractionError
    │   ├── APIExtractionError
    │   │   ├── NetworkError (retryable)
    │   │   ├── RateLimitError (retryable)
    │   │   ├── MaintenanceError (retryable)
    │   │   └── AuthenticationError
    │   └── PayloadError
    ├── TransformationError
    │   └── ValidationError
    ├── LoadError
    │   ├── DatabaseError
    │   └── UpsertError
    ├── JobError
    │   ├── InvalidJobRangeError
    │   ├── JobStateError
    │   ├── JobConflictError
    │   └── JobNotFoundError
    ├── GeoResolutionError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any, List
from datetime import datetime


class IngestionException(Exception):
    """
    Base exception for all ingestion errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (source, item id, status code, ...)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    @property
    def status_code(self) -> Optional[int]:
        """HTTP status code recorded in the context, if any."""
        return self.context.get("status_code")

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(IngestionException):
    """
    Mixin for transient errors (timeouts, 429, 5xx, maintenance windows).

    Retry counts and delays belong to the fetch strategy and the recovery
    engine, not to the error.
    """
    pass


class NonRetryableError(IngestionException):
    """Mixin for permanent errors (401/403, bad payloads, bad job requests)."""
    pass


# ============================================================================
# Extraction Errors
# ============================================================================

class ExtractionError(IngestionException):
    """Base exception for data extraction failures."""
    pass


class APIExtractionError(ExtractionError):
    """
    Exception raised when an upstream request fails.

    Context should include:
        - url: The endpoint that failed
        - status_code: HTTP status code (if applicable)
        - item_id: Upstream id being fetched (if applicable)
        - attempts: Number of attempts made
    """
    pass


class NetworkError(RetryableError, APIExtractionError):
    """Timeouts, connection failures and exhausted 5xx retries."""
    pass


class RateLimitError(RetryableError, APIExtractionError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after
        if retry_after:
            self.context["retry_after"] = retry_after


class MaintenanceError(RetryableError, APIExtractionError):
    """Upstream answered 503 or reported a maintenance window."""
    pass


class AuthenticationError(NonRetryableError, APIExtractionError):
    """Authentication failures (HTTP 401, 403)."""
    pass


class PayloadError(NonRetryableError, ExtractionError):
    """Response body could not be decoded as JSON or embedded JSON."""
    pass


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(IngestionException):
    """Base exception for record transformation failures."""
    pass


class ValidationError(TransformationError):
    """
    Exception raised when a transformed record fails validation.

    Context should include:
        - field_name: Name of the field that failed validation
        - field_value: Value that failed validation
        - item_id: Upstream id of the record
    """
    pass


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(IngestionException):
    """Base exception for persistence failures."""
    pass


class DatabaseError(LoadError):
    """
    Exception raised when database operations fail.

    Context should include:
        - operation: Type of database operation (SELECT, INSERT, UPDATE)
        - table_name: Name of the table
    """
    pass


class UpsertError(LoadError):
    """
    Exception raised when an upsert transaction is rolled back.

    Context should include:
        - unique_field / unique_value: identity being written
        - source: Source code
    """
    pass


# ============================================================================
# Job Errors
# ============================================================================

class JobError(NonRetryableError):
    """Base exception for job ledger failures."""
    pass


class InvalidJobRangeError(JobError):
    """Raised when a job is requested with start > end."""
    pass


class JobStateError(JobError):
    """Raised on an illegal status transition or a rejected resume."""
    pass


class JobNotFoundError(JobError):
    """Raised when a job id does not exist."""
    pass


class JobConflictError(JobError):
    """
    Raised when a new job overlaps active jobs for the same source.

    The conflicting jobs are available on ``conflicts`` so the trigger can
    show them and ask for an explicit override.
    """

    def __init__(
        self,
        message: str,
        conflicts: Optional[List[Any]] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, context)
        self.conflicts = conflicts or []
        self.context["conflicting_job_ids"] = [getattr(job, "id", None) for job in self.conflicts]


# ============================================================================
# Geography Errors
# ============================================================================

class GeoResolutionError(IngestionException):
    """Raised when the geographic caches cannot be built."""
    pass
