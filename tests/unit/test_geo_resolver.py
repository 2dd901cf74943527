"""
Unit tests for the geographic resolver
"""

import pytest
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy.dialects import postgresql
from ingestion.geo_resolver import (
    GeoCache,
    GeoEntry,
    GeoResolver,
    LevelCache,
    escape_like,
    normalize_name,
    strip_prefixes,
)
from models.base import GeoMatch
from models.geography import Barangay


@pytest.fixture
def geo_cache():
    """Two regions, three provinces and a duplicated city name"""
    return GeoCache(
        regions=LevelCache([
            GeoEntry(1, "Region XII", "12", "1200000000", aliases=("SOCCSKSARGEN",)),
            GeoEntry(2, "Region VIII", "08", "0800000000", aliases=("Eastern Visayas",)),
        ]),
        provinces=LevelCache([
            GeoEntry(10, "Cotabato", "1247", None, parent_id=1, aliases=("North Cotabato",)),
            GeoEntry(11, "South Cotabato", "1263", None, parent_id=1),
            GeoEntry(20, "Leyte", "0837", None, parent_id=2),
        ]),
        cities=LevelCache([
            GeoEntry(100, "Kidapawan", "124704", None, parent_id=10),
            GeoEntry(101, "San Isidro", "124799", None, parent_id=10),
            GeoEntry(200, "San Isidro", "083799", None, parent_id=20),
        ]),
    )


class TestNameHelpers:

    def test_normalize_name(self):
        assert normalize_name("  Region   XII ") == "region xii"
        assert normalize_name(None) == ""

    def test_strip_prefixes(self):
        assert strip_prefixes("City of Kidapawan") == "kidapawan"
        assert strip_prefixes("Municipality of Makilala") == "makilala"
        assert strip_prefixes("Brgy. Poblacion") == "poblacion"

    def test_escape_like(self):
        assert escape_like("sta_ cruz") == "sta\\_ cruz"
        assert escape_like("100%") == "100\\%"
        assert escape_like("a\\b") == "a\\\\b"


class TestGeoResolver:

    @pytest.mark.asyncio
    async def test_exact_name_backfills_region(self, geo_cache):
        resolver = GeoResolver(geo_cache)

        resolution = await resolver.resolve({"province": "COTABATO", "city": "Kidapawan"})

        assert resolution.province.id == 10
        assert resolution.city.id == 100
        assert resolution.region.id == 1
        # No barangay lookup without a session
        assert resolution.barangay is None
        assert resolution.outcome == GeoMatch.PARTIAL
        assert resolution.matched_levels == 3

    @pytest.mark.asyncio
    async def test_code_match(self, geo_cache):
        resolution = await GeoResolver(geo_cache).resolve({"region_code": "1200000000"})

        assert resolution.region.id == 1

    @pytest.mark.asyncio
    async def test_alias_match(self, geo_cache):
        resolution = await GeoResolver(geo_cache).resolve({"region": "Eastern Visayas"})

        assert resolution.region.id == 2

    @pytest.mark.asyncio
    async def test_containment_match(self, geo_cache):
        resolution = await GeoResolver(geo_cache).resolve({"city": "City of Kidapawan"})

        assert resolution.city.id == 100
        assert resolution.province.id == 10

    @pytest.mark.asyncio
    async def test_containment_prefers_longest_key(self, geo_cache):
        resolution = await GeoResolver(geo_cache).resolve({"province": "Province of South Cotabato"})

        assert resolution.province.id == 11

    @pytest.mark.asyncio
    async def test_city_is_scoped_to_resolved_province(self, geo_cache):
        resolver = GeoResolver(geo_cache)

        in_leyte = await resolver.resolve({"province": "Leyte", "city": "San Isidro"})
        in_cotabato = await resolver.resolve({"province": "Cotabato", "city": "San Isidro"})

        assert in_leyte.city.id == 200
        assert in_leyte.region.id == 2
        assert in_cotabato.city.id == 101

    @pytest.mark.asyncio
    async def test_resolution_is_deterministic(self, geo_cache):
        resolver = GeoResolver(geo_cache)
        location = {"city": "San Isidro"}

        first = await resolver.resolve(location)
        second = await resolver.resolve(location)

        assert first.city == second.city
        assert first.city.id == 101

    @pytest.mark.asyncio
    async def test_unmatched_location(self, geo_cache):
        resolution = await GeoResolver(geo_cache).resolve({
            "region": "Atlantis",
            "province": "Nowhere",
            "city": "Xyzzy",
        })

        assert resolution.outcome == GeoMatch.UNMATCHED
        assert resolution.matched_levels == 0

    @pytest.mark.asyncio
    async def test_as_columns_keeps_unresolved_text(self, geo_cache):
        location = {"province": "Cotabato", "city": "Xyzzy", "city_code": "999"}
        resolution = await GeoResolver(geo_cache).resolve(location)

        columns = resolution.as_columns(location)

        assert columns["geo_match"] == "partial"
        assert columns["province_id"] == 10
        assert columns["region_id"] == 1
        assert columns["city_id"] is None
        assert columns["city_name"] == "Xyzzy"
        assert columns["city_code"] == "999"


def barangay_session(*rows):
    """Session whose barangay queries return ``rows`` in order, then nothing"""
    results = []
    for row in rows:
        result = MagicMock()
        result.scalars.return_value.first.return_value = row
        results.append(result)

    empty = MagicMock()
    empty.scalars.return_value.first.return_value = None

    session = MagicMock()
    session.execute = AsyncMock(side_effect=lambda query: results.pop(0) if results else empty)
    return session


class TestBarangayLookup:

    @pytest.mark.asyncio
    async def test_code_match_backfills_every_level(self, geo_cache):
        row = Barangay(id=5001, name="Poblacion", code="124704001", psa_code=None, city_id=100)
        session = barangay_session(row)

        resolution = await GeoResolver(geo_cache, session).resolve({"barangay_code": "124704001"})

        assert resolution.barangay.id == 5001
        assert resolution.city.id == 100
        assert resolution.province.id == 10
        assert resolution.region.id == 1
        assert resolution.outcome == GeoMatch.MATCHED
        session.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_lookups_are_memoized(self, geo_cache):
        session = barangay_session()
        resolver = GeoResolver(geo_cache, session)
        location = {"city": "Kidapawan", "barangay": "Poblacion"}

        assert (await resolver.resolve(location)).barangay is None
        calls = session.execute.await_count
        assert (await resolver.resolve(location)).barangay is None

        assert calls == 2
        assert session.execute.await_count == calls

    @pytest.mark.asyncio
    async def test_containment_query_escapes_wildcards_and_matches_both_ways(self, geo_cache):
        session = barangay_session()

        await GeoResolver(geo_cache, session).resolve({"city": "Kidapawan", "barangay": "Sta_ Cruz"})

        compiled = [
            call.args[0].compile(dialect=postgresql.dialect())
            for call in session.execute.await_args_list
        ]
        containment = [c for c in compiled if "strpos" in str(c)]
        assert len(containment) == 1
        assert "ESCAPE" in str(containment[0])
        assert "%sta\\_ cruz%" in containment[0].params.values()
        assert "sta_ cruz" in containment[0].params.values()
