"""
Resolve free-text and coded location references to the administrative
hierarchy (Region -> Province -> City/Municipality -> Barangay).

Region, province and city lookups run against a ``GeoCache`` built once
per job and passed in explicitly. Barangays are too numerous to preload
and are queried on demand, memoized for the lifetime of the resolver.

Per level, the first successful rule wins:
    1. exact code (or external code), scoped to the resolved parent
    2. exact case-insensitive name
    3. containment either way (longest key wins), scoped to the parent
    4. name with "City of" / "Municipality of" style prefixes removed

A resolved level back-fills unresolved ancestors through its stored
parent chain; a level that is already resolved is never overwritten.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, literal, or_
from models.base import GeoMatch
from models.geography import Region, Province, City, Barangay
from core.config import settings
from core.exceptions import GeoResolutionError
import logging

logger = logging.getLogger(__name__)

NAME_PREFIXES = (
    "city of ",
    "municipality of ",
    "municipality ",
    "province of ",
    "barangay ",
    "brgy. ",
    "brgy ",
)

# Containment matching ignores keys shorter than this
MIN_FUZZY_LENGTH = 4


def normalize_name(value: Optional[str]) -> str:
    if not value:
        return ""
    return " ".join(str(value).lower().split())


def strip_prefixes(value: str) -> str:
    name = normalize_name(value)
    for prefix in NAME_PREFIXES:
        if name.startswith(prefix):
            return name[len(prefix):].strip()
    return name


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass(frozen=True)
class GeoEntry:
    """Lightweight, session-independent copy of one hierarchy row."""
    id: int
    name: str
    code: Optional[str] = None
    external_code: Optional[str] = None
    parent_id: Optional[int] = None
    aliases: Tuple[str, ...] = ()


class LevelCache:
    """Lookup maps for a single hierarchy level."""

    def __init__(self, entries: Iterable[GeoEntry] = ()):
        self.by_id: Dict[int, GeoEntry] = {}
        self.by_code: Dict[str, List[GeoEntry]] = {}
        self.by_name: Dict[str, List[GeoEntry]] = {}
        self.by_stripped: Dict[str, List[GeoEntry]] = {}
        for entry in entries:
            self.add(entry)

    def add(self, entry: GeoEntry) -> None:
        self.by_id[entry.id] = entry
        for code in (entry.code, entry.external_code):
            if code:
                self.by_code.setdefault(str(code).strip().lower(), []).append(entry)
        for name in (entry.name,) + tuple(entry.aliases):
            key = normalize_name(name)
            if not key:
                continue
            bucket = self.by_name.setdefault(key, [])
            if entry not in bucket:
                bucket.append(entry)
            stripped = strip_prefixes(key)
            bucket = self.by_stripped.setdefault(stripped, [])
            if entry not in bucket:
                bucket.append(entry)

    def __len__(self) -> int:
        return len(self.by_id)

    @staticmethod
    def _scoped(candidates: List[GeoEntry], parent_id: Optional[int]) -> Optional[GeoEntry]:
        if parent_id is not None:
            candidates = [c for c in candidates if c.parent_id == parent_id]
        return candidates[0] if candidates else None

    def match(
        self,
        name: Optional[str] = None,
        code: Optional[str] = None,
        parent_id: Optional[int] = None
    ) -> Optional[GeoEntry]:
        if code:
            found = self._scoped(self.by_code.get(str(code).strip().lower(), []), parent_id)
            if found:
                return found

        key = normalize_name(name)
        if not key:
            return None

        found = self._scoped(self.by_name.get(key, []), parent_id)
        if found:
            return found

        found = self._contains(key, parent_id)
        if found:
            return found

        return self._scoped(self.by_stripped.get(strip_prefixes(key), []), parent_id)

    def _contains(self, key: str, parent_id: Optional[int]) -> Optional[GeoEntry]:
        if len(key) < MIN_FUZZY_LENGTH:
            return None
        best: Optional[Tuple[int, int, GeoEntry]] = None
        for candidate_key, entries in self.by_name.items():
            if len(candidate_key) < MIN_FUZZY_LENGTH:
                continue
            if candidate_key not in key and key not in candidate_key:
                continue
            entry = self._scoped(entries, parent_id)
            if entry is None:
                continue
            # Longest key first, lowest id on ties
            rank = (-len(candidate_key), entry.id)
            if best is None or rank < best[:2]:
                best = (rank[0], rank[1], entry)
        return best[2] if best else None


@dataclass
class GeoCache:
    """Per-job lookup context for the three cached levels."""
    regions: LevelCache = field(default_factory=LevelCache)
    provinces: LevelCache = field(default_factory=LevelCache)
    cities: LevelCache = field(default_factory=LevelCache)

    @classmethod
    async def load(cls, db_session: AsyncSession, city_limit: Optional[int] = None) -> "GeoCache":
        city_limit = city_limit or settings.CITY_CACHE_LIMIT
        try:
            regions = (await db_session.execute(select(Region).order_by(Region.id))).scalars().all()
            provinces = (await db_session.execute(select(Province).order_by(Province.id))).scalars().all()
            cities = (
                await db_session.execute(select(City).order_by(City.id).limit(city_limit))
            ).scalars().all()
        except Exception as e:
            raise GeoResolutionError(
                "Failed to build geographic caches",
                context={"city_limit": city_limit},
                original_exception=e
            )

        cache = cls(
            regions=LevelCache(
                GeoEntry(r.id, r.name, r.code, r.psa_code, None, _aliases(r.psa_name, r.abbreviation))
                for r in regions
            ),
            provinces=LevelCache(
                GeoEntry(p.id, p.name, p.code, p.psa_code, p.region_id, _aliases(p.psa_name, p.abbreviation))
                for p in provinces
            ),
            cities=LevelCache(
                GeoEntry(c.id, c.name, c.code, c.psa_code, c.province_id, _aliases(c.psa_name))
                for c in cities
            ),
        )
        logger.info(
            f"Geographic cache loaded: {len(cache.regions)} regions, "
            f"{len(cache.provinces)} provinces, {len(cache.cities)} cities"
        )
        return cache


def _aliases(*values: Optional[str]) -> Tuple[str, ...]:
    return tuple(v for v in values if v)


@dataclass
class GeoResolution:
    region: Optional[GeoEntry] = None
    province: Optional[GeoEntry] = None
    city: Optional[GeoEntry] = None
    barangay: Optional[GeoEntry] = None

    @property
    def matched_levels(self) -> int:
        return sum(1 for level in (self.region, self.province, self.city, self.barangay) if level)

    @property
    def outcome(self) -> GeoMatch:
        if self.matched_levels == 4:
            return GeoMatch.MATCHED
        if self.matched_levels == 0:
            return GeoMatch.UNMATCHED
        return GeoMatch.PARTIAL

    def as_columns(self, location: Dict[str, Optional[str]]) -> Dict[str, object]:
        """Project columns for the resolved levels, keeping raw text where unresolved."""
        columns: Dict[str, object] = {"geo_match": self.outcome.value}
        for level in ("region", "province", "city", "barangay"):
            entry: Optional[GeoEntry] = getattr(self, level)
            columns[f"{level}_id"] = entry.id if entry else None
            columns[f"{level}_name"] = entry.name if entry else location.get(level)
            columns[f"{level}_code"] = (
                (entry.external_code or entry.code) if entry else location.get(f"{level}_code")
            )
        return columns


class GeoResolver:
    """
    Resolve location fields of canonical records.

    Args:
        cache: Per-job GeoCache
        db_session: Used for on-demand barangay queries; without it the
            barangay level is left unresolved
    """

    def __init__(self, cache: GeoCache, db_session: Optional[AsyncSession] = None):
        self.cache = cache
        self.db = db_session
        self._barangay_memo: Dict[Tuple[Optional[int], str, str], Optional[GeoEntry]] = {}

    async def resolve(self, location: Dict[str, Optional[str]]) -> GeoResolution:
        resolution = GeoResolution()

        resolution.region = self.cache.regions.match(
            location.get("region"), location.get("region_code")
        )
        resolution.province = self.cache.provinces.match(
            location.get("province"),
            location.get("province_code"),
            parent_id=resolution.region.id if resolution.region else None,
        )
        resolution.city = self.cache.cities.match(
            location.get("city"),
            location.get("city_code"),
            parent_id=resolution.province.id if resolution.province else None,
        )
        resolution.barangay = await self._resolve_barangay(
            location.get("barangay"),
            location.get("barangay_code"),
            city_id=resolution.city.id if resolution.city else None,
        )

        self._backfill(resolution)

        logger.debug(
            f"Resolved location {location} -> {resolution.outcome.value} "
            f"({resolution.matched_levels}/4)"
        )
        return resolution

    def _backfill(self, resolution: GeoResolution) -> None:
        if resolution.barangay and not resolution.city and resolution.barangay.parent_id:
            resolution.city = self.cache.cities.by_id.get(resolution.barangay.parent_id)
        if resolution.city and not resolution.province and resolution.city.parent_id:
            resolution.province = self.cache.provinces.by_id.get(resolution.city.parent_id)
        if resolution.province and not resolution.region and resolution.province.parent_id:
            resolution.region = self.cache.regions.by_id.get(resolution.province.parent_id)

    async def _resolve_barangay(
        self,
        name: Optional[str],
        code: Optional[str],
        city_id: Optional[int]
    ) -> Optional[GeoEntry]:
        if self.db is None or not (name or code):
            return None

        memo_key = (city_id, normalize_name(name), str(code or "").strip().lower())
        if memo_key in self._barangay_memo:
            return self._barangay_memo[memo_key]

        scoped = select(Barangay).limit(1)
        if city_id is not None:
            scoped = scoped.where(Barangay.city_id == city_id)
        exact = scoped.order_by(Barangay.id)

        queries = []
        if code:
            code = str(code).strip()
            queries.append(exact.where(or_(Barangay.code == code, Barangay.psa_code == code)))
        key = normalize_name(name)
        if key:
            queries.append(exact.where(func.lower(Barangay.name) == key))
            if len(key) >= MIN_FUZZY_LENGTH:
                queries.append(
                    scoped.where(
                        func.length(Barangay.name) >= MIN_FUZZY_LENGTH,
                        or_(
                            Barangay.name.ilike(f"%{escape_like(key)}%", escape="\\"),
                            func.strpos(literal(key), func.lower(Barangay.name)) > 0,
                        ),
                    ).order_by(func.length(Barangay.name).desc(), Barangay.id)
                )
            stripped = strip_prefixes(key)
            if stripped and stripped != key:
                queries.append(exact.where(func.lower(Barangay.name) == stripped))

        found = None
        for query in queries:
            row = (await self.db.execute(query)).scalars().first()
            if row is not None:
                found = GeoEntry(row.id, row.name, row.code, row.psa_code, row.city_id)
                break

        self._barangay_memo[memo_key] = found
        return found
