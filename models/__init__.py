"""
SQLAlchemy ORM models for database tables.

Models:
    base: Base declarative class and shared enums (JobStatus, ProjectStatus, ...)
    source: Upstream source descriptors
    job: Scrape job ledger (checkpoint, counters, bounded error log)
    geography: Region / Province / City / Barangay hierarchy
    project: Normalized projects and their lookup entities

Usage:
    from models import ScrapeJob, ScraperSource, Project
    from models.base import JobStatus

Relationships:
    - ScraperSource -> ScrapeJob (one-to-many)
    - Region -> Province -> City -> Barangay (one-to-many chain)
    - Project -> ImplementingOffice / Contractor / SourceOfFund (many-to-many)
    - Project -> Program (many-to-one)
"""

from models.base import Base, JobStatus, ProjectStatus, PublicationStatus, GeoMatch
from models.source import ScraperSource
from models.job import ScrapeJob
from models.geography import Region, Province, City, Barangay
from models.project import (
    Project,
    Program,
    ImplementingOffice,
    Contractor,
    SourceOfFund,
)

__all__ = [
    "Base",
    "JobStatus",
    "ProjectStatus",
    "PublicationStatus",
    "GeoMatch",
    "ScraperSource",
    "ScrapeJob",
    "Region",
    "Province",
    "City",
    "Barangay",
    "Project",
    "Program",
    "ImplementingOffice",
    "Contractor",
    "SourceOfFund",
]
