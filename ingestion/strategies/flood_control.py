"""
Flood-control project listing published through Sumbong sa Pangulo
"""

from datetime import date
from typing import Any, Dict, Optional, Tuple
import hashlib
import re
from ingestion.strategies.base import FetchStrategy
from ingestion.transformers.normalizer import ValueNormalizer
from models.base import ProjectStatus
import logging

logger = logging.getLogger(__name__)

_PARENS_RE = re.compile(r"[()]")


def split_location(location: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """``"COTABATO (NORTH COTABATO)"`` -> ``("COTABATO", "NORTH COTABATO")``"""
    text = (location or "").strip().upper()
    if not text:
        return None, None
    parts = [p.strip() for p in _PARENS_RE.split(text)]
    primary = parts[0] or None
    secondary = parts[1] if len(parts) > 1 and parts[1] else None
    return primary, secondary


def stable_id(description: Optional[str], location: Optional[str]) -> str:
    return hashlib.md5(f"{description or ''}|{location or ''}".encode("utf-8")).hexdigest()


class FloodControlStrategy(FetchStrategy):
    """
    Flat listing rows: description, location, contractor, cost and an
    MM/DD/YYYY completion date. Rows without an upstream id get a stable
    md5 identity derived from description and location.
    """

    code = "sumbong_flood_control"
    unique_field = "external_id"

    def validate(self, raw: Dict[str, Any]) -> bool:
        if not isinstance(raw, dict):
            return False
        return self.has_identity(raw, "project_description", "description", "title")

    @staticmethod
    def determine_status(completion: Optional[date], today: Optional[date] = None) -> ProjectStatus:
        if completion is None:
            return ProjectStatus.ACTIVE
        today = today or date.today()
        return ProjectStatus.COMPLETED if completion < today else ProjectStatus.ACTIVE

    def map_fields(self, raw: Dict[str, Any], item_id: Optional[int] = None) -> Dict[str, Any]:
        description = ValueNormalizer.clean_text(self.pick(raw, "project_description", "description", "title"))
        location = self.pick(raw, "location")
        province, region = split_location(location)

        completion = ValueNormalizer.parse_date(self.pick(raw, "completion_date", "target_completion"))
        contractor = self.pick(raw, "contractor")

        external_id = self.pick(raw, "id", "project_id") or stable_id(description, location)

        metadata = {
            "source": self.code,
            "project_category": "Flood Control",
            "type_of_work": self.pick(raw, "type_of_work"),
            "contract_id": self.pick(raw, "contract_id"),
            "funding_year": self.pick(raw, "year"),
            "full_location": location,
            "contractor_name": contractor,
        }
        if contractor:
            metadata["contractors"] = [contractor]

        return dict(
            external_source=self.code,
            external_id=external_id,
            project_code=self.pick(raw, "contract_id"),
            project_name=description,
            description=description,
            province=province,
            region=self.pick(raw, "region") or region,
            latitude=self.pick(raw, "latitude"),
            longitude=self.pick(raw, "longitude"),
            status=self.determine_status(completion),
            cost=self.pick(raw, "cost", "project_cost"),
            contract_completion_date=completion,
            actual_date_started=self.pick(raw, "start_date"),
            metadata={k: v for k, v in metadata.items() if v is not None},
        )
