from collections import deque
from datetime import datetime
from typing import Any, Dict, Optional
from sqlalchemy import Column, BigInteger, Integer, String, Enum, DateTime, Text, ForeignKey, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from models.base import Base, JobStatus, can_transition
from core.config import settings
from core.exceptions import JobStateError


class ScrapeJob(Base):
    """
    Durable record of one ingestion run over an inclusive id range.

    Purpose:
    - Checkpoint position (``current_id`` is the next id to fetch)
    - Status state machine (see ``models.base.JOB_TRANSITIONS``)
    - Counters and a bounded error log for audit and reporting

    The mutation methods only touch the in-memory row; persisting is the
    job ledger's responsibility.
    """
    __tablename__ = "scrape_jobs"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    source_id = Column(Integer, ForeignKey("scraper_sources.id"), nullable=False, index=True)

    # Range and checkpoint
    start_id = Column(BigInteger, nullable=False)
    end_id = Column(BigInteger, nullable=False)
    current_id = Column(BigInteger, nullable=True)
    chunk_size = Column(Integer, nullable=False, default=50)

    status = Column(Enum(JobStatus), default=JobStatus.PENDING, nullable=False, index=True)

    # Counters
    success_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    skip_count = Column(Integer, nullable=False, default=0)
    create_count = Column(Integer, nullable=False, default=0)
    update_count = Column(Integer, nullable=False, default=0)

    stats = Column(JSONB, nullable=True)
    errors = Column(JSONB, nullable=True)
    notes = Column(Text, nullable=True)
    triggered_by = Column(String(100), nullable=True)

    # Timestamps
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    source = relationship("ScraperSource", back_populates="jobs")

    __table_args__ = (
        Index("idx_scrape_job_source_status", "source_id", "status"),
    )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, target: JobStatus) -> None:
        current = self.status or JobStatus.PENDING
        if not can_transition(current, target):
            raise JobStateError(
                f"Cannot move job from {JobStatus(current).value} to {target.value}",
                context={"job_id": self.id, "from": JobStatus(current).value, "to": target.value}
            )
        self.status = target

    def mark_running(self) -> None:
        self._transition(JobStatus.RUNNING)
        if self.started_at is None:
            self.started_at = datetime.utcnow()
        self.completed_at = None
        if self.current_id is None:
            self.current_id = self.start_id

    def mark_completed(self) -> None:
        self._transition(JobStatus.COMPLETED)
        self.completed_at = datetime.utcnow()

    def mark_failed(self, reason: str) -> None:
        self._transition(JobStatus.FAILED)
        self.completed_at = datetime.utcnow()
        self._append_error({"timestamp": self.completed_at.isoformat(), "message": reason})

    def mark_paused(self) -> None:
        self._transition(JobStatus.PAUSED)

    def mark_cancelled(self) -> None:
        self._transition(JobStatus.CANCELLED)
        self.completed_at = datetime.utcnow()

    @property
    def can_resume(self) -> bool:
        return JobStatus(self.status or JobStatus.PENDING).can_resume

    # ------------------------------------------------------------------
    # Progress and counters
    # ------------------------------------------------------------------

    def update_progress(self, position: int) -> None:
        """Advance the checkpoint. Never moves backwards or past ``end_id + 1``."""
        if position > self.end_id + 1:
            raise JobStateError(
                f"Position {position} is beyond the end of the range",
                context={"job_id": self.id, "end_id": self.end_id}
            )
        if self.current_id is not None and position < self.current_id:
            raise JobStateError(
                f"Checkpoint cannot move backwards from {self.current_id} to {position}",
                context={"job_id": self.id}
            )
        self.current_id = position

    def increment_success(self, n: int = 1) -> None:
        self.success_count = (self.success_count or 0) + n

    def increment_error(self, n: int = 1) -> None:
        self.error_count = (self.error_count or 0) + n

    def increment_skip(self, n: int = 1) -> None:
        self.skip_count = (self.skip_count or 0) + n

    def increment_create(self, n: int = 1) -> None:
        self.create_count = (self.create_count or 0) + n

    def increment_update(self, n: int = 1) -> None:
        self.update_count = (self.update_count or 0) + n

    @property
    def total_processed(self) -> int:
        return (self.success_count or 0) + (self.error_count or 0) + (self.skip_count or 0)

    # ------------------------------------------------------------------
    # Error log and statistics
    # ------------------------------------------------------------------

    def _append_error(self, entry: Dict[str, Any]) -> None:
        buffer = deque(self.errors or [], maxlen=settings.ERROR_LOG_CAPACITY)
        buffer.append(entry)
        # New list so the JSONB column is flagged dirty
        self.errors = list(buffer)

    def log_error(self, item_id: Any, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        self._append_error({
            "id": item_id,
            "timestamp": datetime.utcnow().isoformat(),
            "message": message,
            "context": context or {},
        })

    def add_statistic(self, key: str, value: Any) -> None:
        stats = dict(self.stats or {})
        stats[key] = value
        self.stats = stats

    def increment_statistic(self, key: str, n: int = 1) -> None:
        stats = dict(self.stats or {})
        stats[key] = stats.get(key, 0) + n
        self.stats = stats

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def total_items(self) -> int:
        return self.end_id - self.start_id + 1

    @property
    def progress_percentage(self) -> float:
        if self.current_id is None:
            return 0.0
        done = min(max(self.current_id - self.start_id, 0), self.total_items)
        return round(done / self.total_items * 100, 2)

    @property
    def remaining_count(self) -> int:
        if self.current_id is None:
            return self.total_items
        return max(self.end_id - self.current_id + 1, 0)

    @property
    def duration(self) -> Optional[int]:
        """Seconds between start and completion (or now while unfinished)."""
        if not self.started_at:
            return None
        end = self.completed_at or datetime.utcnow()
        return int((end - self.started_at).total_seconds())

    @property
    def formatted_duration(self) -> Optional[str]:
        seconds = self.duration
        if seconds is None:
            return None
        hours, rest = divmod(seconds, 3600)
        minutes, secs = divmod(rest, 60)
        if hours:
            return f"{hours}h {minutes}m {secs}s"
        if minutes:
            return f"{minutes}m {secs}s"
        return f"{secs}s"

    def __repr__(self) -> str:
        return f"<ScrapeJob {self.id} [{self.start_id}-{self.end_id}] {self.status}>"
