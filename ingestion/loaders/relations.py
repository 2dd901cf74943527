"""
Normalize nested offices, contractors, funding sources and program from a
record's metadata into lookup rows and association links.
"""

from typing import Any, Dict, List, Optional, Type
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete, insert, Table
from models.project import (
    Project,
    Program,
    ImplementingOffice,
    Contractor,
    SourceOfFund,
    project_implementing_offices,
    project_contractors,
    project_source_of_funds,
)
import logging

logger = logging.getLogger(__name__)

# metadata key -> (lookup model, association table, association fk column)
RELATIONS = {
    "implementing_offices": (ImplementingOffice, project_implementing_offices, "implementing_office_id"),
    "contractors": (Contractor, project_contractors, "contractor_id"),
    "source_of_funds": (SourceOfFund, project_source_of_funds, "source_of_fund_id"),
}


def _entity_fields(item: Any) -> Optional[Dict[str, Any]]:
    if isinstance(item, str):
        name = item.strip()
        return {"name": name} if name else None
    if isinstance(item, dict):
        name = str(item.get("name") or "").strip()
        if not name:
            return None
        return {
            "name": name,
            "external_id": str(item["id"]) if item.get("id") is not None else None,
            "abbreviation": item.get("abbreviation"),
            "logo_url": item.get("logo_url"),
        }
    return None


class RelatedEntityLinker:
    """Find-or-create lookup entities by name and replace a project's links."""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def _first_or_create(self, model: Type, fields: Dict[str, Any]):
        result = await self.db.execute(select(model).where(model.name == fields["name"]))
        entity = result.scalars().first()
        if entity is None:
            entity = model(**{k: v for k, v in fields.items() if hasattr(model, k)})
            self.db.add(entity)
            await self.db.flush()
        return entity

    async def _replace_links(
        self, project: Project, model: Type, table: Table, fk_column: str, items: List[Any]
    ) -> int:
        await self.db.execute(delete(table).where(table.c.project_id == project.id))

        rows = []
        seen = set()
        for item in items:
            fields = _entity_fields(item)
            if not fields:
                continue
            entity = await self._first_or_create(model, fields)
            if entity.id in seen:
                continue
            seen.add(entity.id)
            rows.append({"project_id": project.id, fk_column: entity.id, "is_primary": not rows})

        if rows:
            await self.db.execute(insert(table), rows)
        return len(rows)

    async def link(self, project: Project, metadata: Optional[Dict[str, Any]]) -> Dict[str, int]:
        """
        Returns:
            Number of links written per relation
        """
        metadata = metadata or {}
        counts: Dict[str, int] = {}

        for key, (model, table, fk_column) in RELATIONS.items():
            items = metadata.get(key)
            if items is None:
                continue
            if not isinstance(items, list):
                items = [items]
            counts[key] = await self._replace_links(project, model, table, fk_column, items)

        program = metadata.get("program")
        fields = _entity_fields(program)
        if fields:
            if isinstance(program, dict):
                fields["description"] = program.get("description")
                if program.get("external_id") is not None:
                    fields["external_id"] = str(program["external_id"])
            entity = await self._first_or_create(Program, fields)
            project.program_id = entity.id
            counts["program"] = 1

        return counts

