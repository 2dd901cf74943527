"""
DIME (Digital Information for Monitoring and Evaluation) project strategy
"""

from typing import Any, Dict, Optional
from ingestion.strategies.base import FetchStrategy
from ingestion.transformers.normalizer import ValueNormalizer
import logging

logger = logging.getLogger(__name__)

# Copied verbatim into metadata when present
EXTRA_FIELDS = (
    "project_code",
    "procurement_mode",
    "fund_source",
    "project_classification",
    "remarks",
    "date_awarded",
    "notice_to_proceed",
    "target_completion",
    "revised_completion",
    "actual_completion",
)


class DimeStrategy(FetchStrategy):
    """
    Flat snake_case records from the DIME API.

    The public site serves the same record inside a Next.js page, so
    camelCase keys and the ``pageProps.project`` wrapper are accepted too.
    """

    code = "dime"
    unique_field = "external_id"
    alternate_endpoints = (
        "https://www.dime.gov.ph/api/projects",
        "https://api.dime.gov.ph/projects",
        "https://www.dime.gov.ph/api/v1/projects",
        "https://www.dime.gov.ph/_api/projects",
    )

    def validate(self, raw: Dict[str, Any]) -> bool:
        if not isinstance(raw, dict):
            return False
        return self.has_identity(self.unwrap(raw), "project_name", "title")

    def html_url(self, item_id: int) -> Optional[str]:
        return f"https://www.dime.gov.ph/project/{item_id}"

    def listing_html_url(self) -> Optional[str]:
        return "https://www.dime.gov.ph/projects"

    def map_fields(self, raw: Dict[str, Any], item_id: Optional[int] = None) -> Dict[str, Any]:
        data = self.unwrap(raw)
        external_id = self.pick(data, "id", default=item_id)

        agency = self.pick(data, "implementing_agency")
        contractor = self.pick(data, "contractor_name", "contractor")

        metadata: Dict[str, Any] = {
            "source": self.code,
            "raw_status": self.pick(data, "status"),
            "location": self.pick(data, "location"),
            "project_type": self.pick(data, "project_type"),
            "contract_amount": ValueNormalizer.parse_amount(self.pick(data, "contract_amount")),
            "beneficiaries": ValueNormalizer.parse_int(self.pick(data, "beneficiaries")),
            "contractor_name": contractor,
        }
        for key in EXTRA_FIELDS:
            value = self.pick(data, key)
            if value is not None:
                metadata[key] = value
        if agency:
            metadata["implementing_offices"] = [agency]
        if contractor:
            metadata["contractors"] = [contractor]
        fund_source = self.pick(data, "fund_source")
        if fund_source:
            metadata["source_of_funds"] = [fund_source]

        return dict(
            external_source=self.code,
            external_id=external_id,
            project_code=self.pick(data, "project_code"),
            project_name=ValueNormalizer.clean_text(self.pick(data, "project_name", "title")),
            description=ValueNormalizer.clean_text(self.pick(data, "project_description", "description")),
            street_address=self.pick(data, "location"),
            region=self.pick(data, "region"),
            province=self.pick(data, "province"),
            city=self.pick(data, "city", "municipality"),
            barangay=self.pick(data, "barangay"),
            latitude=self.pick(data, "lat", "latitude"),
            longitude=self.pick(data, "lng", "longitude"),
            status=ValueNormalizer.map_status(self.pick(data, "status")),
            cost=self.pick(data, "approved_budget", "cost", "contract_amount"),
            physical_progress=ValueNormalizer.parse_percentage(self.pick(data, "physical_progress", "progress")),
            date_started=self.pick(data, "start_date", "date_started"),
            contract_completion_date=self.pick(data, "end_date", "target_completion"),
            actual_contract_completion_date=self.pick(data, "actual_completion"),
            metadata={k: v for k, v in metadata.items() if v is not None},
        )
