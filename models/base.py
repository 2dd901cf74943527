from typing import Dict, FrozenSet
from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class JobStatus(str, enum.Enum):
    """Scrape job status"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"

    @property
    def label(self) -> str:
        return self.value.capitalize()

    @property
    def is_active(self) -> bool:
        """Statuses that still own their id range."""
        return self in (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED)

    @property
    def can_resume(self) -> bool:
        return self in (JobStatus.PAUSED, JobStatus.FAILED)

    @property
    def can_cancel(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED)


JOB_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.PAUSED,
        JobStatus.CANCELLED,
    }),
    JobStatus.PAUSED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.FAILED: frozenset({JobStatus.RUNNING}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Whether a job may move from ``current`` to ``target``."""
    return target in JOB_TRANSITIONS[JobStatus(current)]


class ProjectStatus(str, enum.Enum):
    """Normalized project status"""
    DRAFT = "draft"
    PENDING = "pending"
    ACTIVE = "active"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PublicationStatus(str, enum.Enum):
    """Publication status reported upstream"""
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class GeoMatch(str, enum.Enum):
    """Outcome of resolving a record's location against the hierarchy"""
    MATCHED = "matched"
    PARTIAL = "partial"
    UNMATCHED = "unmatched"
