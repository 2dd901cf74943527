"""
Sumbong sa Pangulo project strategy (Next.js server-rendered records)
"""

from typing import Any, Dict, List, Optional
from ingestion.strategies.base import FetchStrategy
from ingestion.transformers.normalizer import ValueNormalizer
from models.base import PublicationStatus
import logging

logger = logging.getLogger(__name__)


class SumbongSaPanguloStrategy(FetchStrategy):
    """
    Records arrive either as ``{"pageProps": {"project": {...}}}`` or as the
    bare project object, with PascalCase or camelCase keys.

    Nested implementing offices, contractors, funding sources and program
    are kept in metadata and linked to lookup tables on upsert.
    """

    code = "sumbongsapangulo"
    unique_field = "external_id"

    def validate(self, raw: Dict[str, Any]) -> bool:
        if not isinstance(raw, dict):
            return False
        return self.has_identity(self.unwrap(raw), "project_name")

    def html_url(self, item_id: int) -> Optional[str]:
        return f"https://www.sumbongsapangulo.ph/project/{item_id}"

    def listing_html_url(self) -> Optional[str]:
        return "https://www.sumbongsapangulo.ph/projects"

    def _entities(self, items: Any) -> List[Dict[str, Any]]:
        if not isinstance(items, list):
            return []
        return [
            {
                "id": self.pick(item, "id"),
                "name": self.pick(item, "name"),
                "abbreviation": self.pick(item, "name_abbreviation"),
                "logo_url": self.pick(item, "logo_url"),
            }
            for item in items
            if isinstance(item, dict)
        ]

    def _program(self, program: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(program, dict):
            return None
        name = self.pick(program, "program_name", "name")
        if not name:
            return None
        return {
            "external_id": self.pick(program, "id"),
            "name": name,
            "abbreviation": self.pick(program, "name_abbreviation"),
            "description": self.pick(program, "program_description", "description"),
        }

    def _publication_status(self, value: Any) -> PublicationStatus:
        try:
            return PublicationStatus(str(value).strip().lower())
        except ValueError:
            return PublicationStatus.PUBLISHED

    def map_fields(self, raw: Dict[str, Any], item_id: Optional[int] = None) -> Dict[str, Any]:
        project = self.unwrap(raw)

        metadata = {
            "source": self.code,
            "raw_status": self.pick(project, "status"),
            "implementing_offices": self._entities(self.pick(project, "implementing_offices")),
            "contractors": self._entities(self.pick(project, "contractors")),
            "source_of_funds": self._entities(self.pick(project, "source_of_funds")),
            "program": self._program(self.pick(project, "program")),
            "resources": self.pick(project, "resources", default=[]),
            "progresses": self.pick(project, "progresses", default=[]),
            "physical_progress": self.pick(project, "physical_progress"),
            "contractor_name": self.pick(project, "contractor_name"),
            "project_location": self.pick(project, "project_location"),
            "source_created_at": self.pick(project, "created_at"),
            "source_updated_at": self.pick(project, "updated_at"),
        }

        return dict(
            external_source=self.code,
            external_id=self.pick(project, "id", default=item_id),
            project_code=self.pick(project, "project_code"),
            project_name=ValueNormalizer.clean_text(self.pick(project, "project_name")),
            description=ValueNormalizer.clean_text(self.pick(project, "description")),
            project_image_url=self.pick(project, "project_image_url"),
            street_address=self.pick(project, "street_address"),
            barangay=self.pick(project, "barangay"),
            barangay_code=self.pick(project, "barangay_code"),
            city=self.pick(project, "city"),
            city_code=self.pick(project, "city_code"),
            province=self.pick(project, "province"),
            province_code=self.pick(project, "province_code"),
            region=self.pick(project, "region"),
            region_code=self.pick(project, "region_code"),
            zip_code=self.pick(project, "zip_code"),
            country=self.pick(project, "country", default="Philippines"),
            state=self.pick(project, "state"),
            latitude=self.pick(project, "latitude"),
            longitude=self.pick(project, "longitude"),
            status=ValueNormalizer.map_status(self.pick(project, "status")),
            publication_status=self._publication_status(self.pick(project, "publication_status")),
            cost=self.pick(project, "cost", "approved_budget", default=0),
            utilized_amount=self.pick(project, "utilized_amount", default=0),
            physical_progress=ValueNormalizer.parse_percentage(self.pick(project, "physical_progress")),
            date_started=self.pick(project, "date_started"),
            actual_date_started=self.pick(project, "actual_date_started"),
            contract_completion_date=self.pick(project, "contract_completion_date"),
            actual_contract_completion_date=self.pick(project, "actual_contract_completion_date"),
            as_of_date=self.pick(project, "as_of_date"),
            last_updated_project_cost=self.pick(project, "last_updated_project_cost"),
            updates_count=ValueNormalizer.parse_int(self.pick(project, "updates_count", default=0)),
            metadata=metadata,
        )
