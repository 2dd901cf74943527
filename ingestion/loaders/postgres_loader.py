"""
Race-safe create-or-update of canonical records into PostgreSQL
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
import enum
import re
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, or_, and_, case
from models.project import Project
from schemas.project import ProjectRecord
from ingestion.geo_resolver import GeoResolution
from ingestion.loaders.relations import RelatedEntityLinker
from core.config import settings
from core.exceptions import UpsertError
import logging

logger = logging.getLogger(__name__)

LOCATION_TEXT_FIELDS = {
    "region", "region_code",
    "province", "province_code",
    "city", "city_code",
    "barangay", "barangay_code",
}


class UpsertOutcome(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


@dataclass
class UpsertResult:
    outcome: UpsertOutcome
    project_id: Optional[int] = None
    matched_by: Optional[str] = None


def make_slug(name: str, external_id: str) -> str:
    base = re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-")[:500]
    return f"{base}-{external_id}" if base else str(external_id)


class UpsertEngine:
    """
    Create-or-update projects one identity at a time.

    Ensures:
    - Candidate rows (primary identity OR secondary code) are locked with
      SELECT ... FOR UPDATE for the whole operation
    - One transaction per record; any failure rolls everything back,
      including related-entity links
    - Re-ingesting the same record updates (or freshness-skips), never duplicates
    - Rows synced within the freshness window are left untouched

    Args:
        session_factory: async_sessionmaker; every upsert opens its own session
        unique_field: Primary identity column (scoped by external_source)
        secondary_field: Correlating column used when the primary key differs
        freshness_window: Grace period during which an existing row is not rewritten
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        unique_field: str = "external_id",
        secondary_field: Optional[str] = "project_code",
        freshness_window: Optional[timedelta] = None,
        link_related: bool = True
    ):
        self.session_factory = session_factory
        self.unique_field = unique_field
        self.secondary_field = secondary_field
        self.freshness_window = (
            freshness_window
            if freshness_window is not None
            else timedelta(seconds=settings.FRESHNESS_WINDOW_SECONDS)
        )
        self.link_related = link_related

    def _row_values(self, record: ProjectRecord, geo: Optional[GeoResolution]) -> Dict[str, Any]:
        values = record.dict(exclude=LOCATION_TEXT_FIELDS)
        values.update((geo or GeoResolution()).as_columns(record.location_fields()))
        values["data_source"] = record.external_source
        values["slug"] = make_slug(record.project_name, record.external_id)
        return values

    def _is_fresh(self, project: Project, now: datetime) -> bool:
        if not project.last_synced_at or self.freshness_window.total_seconds() <= 0:
            return False
        return now - project.last_synced_at < self.freshness_window

    async def _find_for_update(self, session: AsyncSession, record: ProjectRecord):
        unique_value = getattr(record, self.unique_field)
        primary = and_(
            Project.external_source == record.external_source,
            getattr(Project, self.unique_field) == unique_value,
        )
        conditions = [primary]

        secondary_value = getattr(record, self.secondary_field, None) if self.secondary_field else None
        if secondary_value:
            conditions.append(and_(
                Project.external_source == record.external_source,
                getattr(Project, self.secondary_field) == secondary_value,
            ))

        result = await session.execute(
            select(Project)
            .where(or_(*conditions))
            .order_by(case((primary, 0), else_=1), Project.id)
            .with_for_update()
        )
        rows = result.scalars().all()
        if not rows:
            return None, None

        project = rows[0]
        matched_by = (
            self.unique_field
            if getattr(project, self.unique_field) == unique_value
            else self.secondary_field
        )
        return project, matched_by

    async def upsert(
        self,
        record: ProjectRecord,
        geo: Optional[GeoResolution] = None
    ) -> UpsertResult:
        """
        Persist one record.

        Returns:
            UpsertResult with CREATED, UPDATED or SKIPPED (freshness guard)

        Raises:
            UpsertError: the transaction was rolled back; the cause is chained
        """
        values = self._row_values(record, geo)
        unique_value = getattr(record, self.unique_field)

        async with self.session_factory() as session:
            try:
                async with session.begin():
                    now = datetime.utcnow()
                    project, matched_by = await self._find_for_update(session, record)

                    if project is not None and self._is_fresh(project, now):
                        logger.debug(
                            f"Skipping {record.external_source}:{unique_value}, "
                            f"synced at {project.last_synced_at}"
                        )
                        return UpsertResult(UpsertOutcome.SKIPPED, project.id, matched_by)

                    if project is not None:
                        for key, value in values.items():
                            setattr(project, key, value)
                        project.last_synced_at = now
                        outcome = UpsertOutcome.UPDATED
                        if matched_by != self.unique_field:
                            logger.info(
                                f"Matched {record.external_source}:{unique_value} through "
                                f"{self.secondary_field}={getattr(record, self.secondary_field)}"
                            )
                    else:
                        project = Project(**values, last_synced_at=now)
                        session.add(project)
                        outcome = UpsertOutcome.CREATED

                    await session.flush()

                    if self.link_related:
                        await RelatedEntityLinker(session).link(project, record.extra_metadata)

                    project_id = project.id

            except Exception as e:
                logger.error(f"Upsert failed for {record.external_source}:{unique_value}: {str(e)}")
                raise UpsertError(
                    f"Upsert failed for {record.external_source}:{unique_value}",
                    context={
                        "source": record.external_source,
                        "unique_field": self.unique_field,
                        "unique_value": unique_value,
                        "operation": "UPSERT",
                        "table_name": "projects",
                    },
                    original_exception=e
                )

        logger.debug(f"{outcome.value.capitalize()} project {project_id} ({record.external_source}:{unique_value})")
        return UpsertResult(outcome, project_id, matched_by)
