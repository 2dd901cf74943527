"""
Pydantic schemas for validation and serialization.

Schemas:
    project: ProjectRecord, the canonical record every fetch strategy produces
    api: Response models of the reporting API

Usage:
    from schemas.project import ProjectRecord
    from schemas.api import JobDetail, SourceStatistics

Example:
    record = ProjectRecord(
        external_source="dime",
        external_id="1024",
        project_name="Construction of Flood Control Structure",
        date_started="12/31/2024",
    )

    # Unparseable dates become None instead of failing the record
    assert ProjectRecord(external_source="dime", external_id="1",
                         project_name="x", date_started="n/a").date_started is None
"""

__all__ = [
    "ProjectRecord",
    "HealthCheckResponse",
    "JobSummary",
    "JobDetail",
    "JobListResponse",
    "SourceStatistics",
]
