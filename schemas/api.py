"""
Pydantic schemas for API response models
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import JobStatus

# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field(..., description="Overall system status: healthy, unhealthy")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    running_jobs: int = 0

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "running_jobs": 1,
            }
        }

# ============================================================================
# Job Schemas
# ============================================================================

class JobSummary(BaseModel):
    """One scrape job with derived progress"""
    id: int
    source_code: str
    status: JobStatus
    start_id: int
    end_id: int
    current_id: Optional[int]
    chunk_size: int
    success_count: int
    error_count: int
    skip_count: int
    create_count: int
    update_count: int
    progress_percentage: float
    remaining_count: int
    duration: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    triggered_by: Optional[str] = None

    class Config:
        use_enum_values = True


class JobDetail(JobSummary):
    """Job with statistics and the tail of its error log"""
    stats: Dict[str, Any] = Field(default_factory=dict)
    recent_errors: List[Dict[str, Any]] = Field(default_factory=list)
    notes: Optional[str] = None


class JobListResponse(BaseModel):
    total: int
    jobs: List[JobSummary]

# ============================================================================
# Source Schemas
# ============================================================================

class SourceStatistics(BaseModel):
    """Aggregate counters over all jobs of one source"""
    code: str
    name: str
    is_active: bool
    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    running_jobs: int = 0
    success_count: int = 0
    error_count: int = 0
    skip_count: int = 0
    create_count: int = 0
    update_count: int = 0
