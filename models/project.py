from sqlalchemy import (
    Column, String, BigInteger, Integer, Enum, Text, Float, Numeric, Date, DateTime,
    Boolean, ForeignKey, Index, Table, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, ProjectStatus, PublicationStatus


# ============================================================================
# ASSOCIATION TABLES
# ============================================================================

project_implementing_offices = Table(
    "project_implementing_offices",
    Base.metadata,
    Column("project_id", BigInteger, ForeignKey("projects.id", ondelete="CASCADE"), primary_key=True),
    Column("implementing_office_id", Integer, ForeignKey("implementing_offices.id"), primary_key=True),
    Column("is_primary", Boolean, nullable=False, default=False),
)

project_contractors = Table(
    "project_contractors",
    Base.metadata,
    Column("project_id", BigInteger, ForeignKey("projects.id", ondelete="CASCADE"), primary_key=True),
    Column("contractor_id", Integer, ForeignKey("contractors.id"), primary_key=True),
    Column("is_primary", Boolean, nullable=False, default=False),
)

project_source_of_funds = Table(
    "project_source_of_funds",
    Base.metadata,
    Column("project_id", BigInteger, ForeignKey("projects.id", ondelete="CASCADE"), primary_key=True),
    Column("source_of_fund_id", Integer, ForeignKey("source_of_funds.id"), primary_key=True),
    Column("is_primary", Boolean, nullable=False, default=False),
)


# ============================================================================
# LOOKUP ENTITIES
# ============================================================================

class Program(Base):
    __tablename__ = "programs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    external_id = Column(String(100), nullable=True, index=True)
    name = Column(String(500), nullable=False, unique=True)
    abbreviation = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)


class ImplementingOffice(Base):
    __tablename__ = "implementing_offices"

    id = Column(Integer, primary_key=True, autoincrement=True)
    external_id = Column(String(100), nullable=True, index=True)
    name = Column(String(500), nullable=False, unique=True)
    abbreviation = Column(String(100), nullable=True)
    logo_url = Column(String(2048), nullable=True)


class Contractor(Base):
    __tablename__ = "contractors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    external_id = Column(String(100), nullable=True, index=True)
    name = Column(String(500), nullable=False, unique=True)
    abbreviation = Column(String(100), nullable=True)
    logo_url = Column(String(2048), nullable=True)


class SourceOfFund(Base):
    __tablename__ = "source_of_funds"

    id = Column(Integer, primary_key=True, autoincrement=True)
    external_id = Column(String(100), nullable=True, index=True)
    name = Column(String(500), nullable=False, unique=True)
    abbreviation = Column(String(100), nullable=True)
    logo_url = Column(String(2048), nullable=True)


# ============================================================================
# PROJECT
# ============================================================================

class Project(Base):
    """
    Normalized project row produced by the upsert engine.

    Identity is (external_source, external_id). ``project_code`` is the
    human-assigned code used as a secondary match when the upstream id
    changes between sources or releases.
    """
    __tablename__ = "projects"

    id = Column(BigInteger, primary_key=True, autoincrement=True)

    # Identity
    external_source = Column(String(100), nullable=False)
    external_id = Column(String(255), nullable=False)
    project_code = Column(String(255), nullable=True, index=True)
    slug = Column(String(600), nullable=True)

    # Descriptive
    project_name = Column(String(1000), nullable=False)
    description = Column(Text, nullable=True)
    project_image_url = Column(String(2048), nullable=True)
    program_id = Column(Integer, ForeignKey("programs.id"), nullable=True)

    # Location (free text kept alongside resolved keys)
    region_id = Column(Integer, ForeignKey("regions.id"), nullable=True, index=True)
    region_code = Column(String(20), nullable=True)
    region_name = Column(String(255), nullable=True)
    province_id = Column(Integer, ForeignKey("provinces.id"), nullable=True, index=True)
    province_code = Column(String(20), nullable=True)
    province_name = Column(String(255), nullable=True)
    city_id = Column(Integer, ForeignKey("cities.id"), nullable=True, index=True)
    city_code = Column(String(20), nullable=True)
    city_name = Column(String(255), nullable=True)
    barangay_id = Column(Integer, ForeignKey("barangays.id"), nullable=True)
    barangay_code = Column(String(20), nullable=True)
    barangay_name = Column(String(255), nullable=True)
    street_address = Column(String(1000), nullable=True)
    zip_code = Column(String(20), nullable=True)
    country = Column(String(100), nullable=True)
    state = Column(String(255), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    geo_match = Column(String(20), nullable=True)

    # Status
    status = Column(Enum(ProjectStatus), default=ProjectStatus.DRAFT, nullable=False, index=True)
    publication_status = Column(Enum(PublicationStatus), default=PublicationStatus.PUBLISHED, nullable=True)

    # Money
    cost = Column(Numeric(18, 2), nullable=True)
    utilized_amount = Column(Numeric(18, 2), nullable=True)
    physical_progress = Column(Float, nullable=True)

    # Dates
    date_started = Column(Date, nullable=True)
    actual_date_started = Column(Date, nullable=True)
    contract_completion_date = Column(Date, nullable=True)
    actual_contract_completion_date = Column(Date, nullable=True)
    as_of_date = Column(Date, nullable=True)
    last_updated_project_cost = Column(Date, nullable=True)
    updates_count = Column(Integer, nullable=True)

    extra_metadata = Column("metadata", JSONB, nullable=True)
    data_source = Column(String(100), nullable=True)

    last_synced_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    program = relationship("Program")
    implementing_offices = relationship("ImplementingOffice", secondary=project_implementing_offices)
    contractors = relationship("Contractor", secondary=project_contractors)
    source_of_funds = relationship("SourceOfFund", secondary=project_source_of_funds)

    __table_args__ = (
        UniqueConstraint("external_source", "external_id", name="uq_project_source_external"),
        Index("idx_project_location", "region_id", "province_id", "city_id"),
    )
