"""
Pydantic schema for the canonical project record produced by fetch strategies
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, Dict, Any
from datetime import date
from models.base import ProjectStatus, PublicationStatus
from ingestion.transformers.normalizer import ValueNormalizer

DATE_FIELDS = (
    "date_started",
    "actual_date_started",
    "contract_completion_date",
    "actual_contract_completion_date",
    "as_of_date",
    "last_updated_project_cost",
)


class ProjectRecord(BaseModel):
    """
    Source-agnostic representation of one upstream project.

    Ensures:
    - Identity fields are present and trimmed
    - Dates are real dates or None (never an exception)
    - Coordinates are inside valid ranges or None
    - Nested offices, contractors, funds and program stay in ``metadata``
    """

    # Identity (required)
    external_source: str = Field(..., min_length=1, max_length=100)
    external_id: str = Field(..., min_length=1, max_length=255)
    project_code: Optional[str] = Field(None, max_length=255)

    # Descriptive
    project_name: str = Field(..., min_length=1, max_length=1000)
    description: Optional[str] = None
    project_image_url: Optional[str] = Field(None, max_length=2048)

    # Free-text location
    street_address: Optional[str] = None
    barangay: Optional[str] = None
    barangay_code: Optional[str] = None
    city: Optional[str] = None
    city_code: Optional[str] = None
    province: Optional[str] = None
    province_code: Optional[str] = None
    region: Optional[str] = None
    region_code: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = "Philippines"
    state: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    # Status
    status: ProjectStatus = ProjectStatus.DRAFT
    publication_status: PublicationStatus = PublicationStatus.PUBLISHED

    # Money and progress
    cost: Optional[float] = None
    utilized_amount: Optional[float] = None
    physical_progress: Optional[float] = None

    # Dates
    date_started: Optional[date] = None
    actual_date_started: Optional[date] = None
    contract_completion_date: Optional[date] = None
    actual_contract_completion_date: Optional[date] = None
    as_of_date: Optional[date] = None
    last_updated_project_cost: Optional[date] = None
    updates_count: Optional[int] = None

    # Nested related entities, not yet resolved to foreign keys
    extra_metadata: Dict[str, Any] = Field(default_factory=dict, alias="metadata")

    @validator("external_id", "project_name", pre=True)
    def clean_identity(cls, v):
        """Identity values are stripped strings"""
        if v is None:
            return v
        v = str(v).strip()
        if not v:
            raise ValueError("Identity field cannot be empty")
        return v

    @validator(*DATE_FIELDS, pre=True)
    def parse_dates(cls, v):
        return ValueNormalizer.parse_date(v)

    @validator("latitude", pre=True)
    def check_latitude(cls, v):
        return ValueNormalizer.parse_latitude(v)

    @validator("longitude", pre=True)
    def check_longitude(cls, v):
        return ValueNormalizer.parse_longitude(v)

    @validator("cost", "utilized_amount", pre=True)
    def parse_amounts(cls, v):
        return ValueNormalizer.parse_amount(v)

    @validator(
        "project_code", "zip_code", "region_code", "province_code", "city_code", "barangay_code",
        pre=True
    )
    def stringify_codes(cls, v):
        if v is None or v == "":
            return None
        return str(v).strip()

    @validator("extra_metadata", pre=True)
    def clean_extra_metadata(cls, v):
        """Ensure metadata is a dict"""
        if not isinstance(v, dict):
            return {}
        return v

    def location_fields(self) -> Dict[str, Optional[str]]:
        return {
            "region": self.region,
            "region_code": self.region_code,
            "province": self.province,
            "province_code": self.province_code,
            "city": self.city,
            "city_code": self.city_code,
            "barangay": self.barangay,
            "barangay_code": self.barangay_code,
        }

    class Config:
        populate_by_name = True
