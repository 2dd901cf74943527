"""
Unit tests for error classification and recovery tactics
"""

import asyncio
import pytest
import httpx
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy.exc import IntegrityError, OperationalError
from core.config import settings
from core.exceptions import (
    APIExtractionError,
    MaintenanceError,
    NetworkError,
    RateLimitError,
    UpsertError,
    ValidationError,
)
from ingestion import recovery as recovery_module
from ingestion.recovery import ErrorClassifier, ErrorType, RecoveryAction, RecoveryEngine
from ingestion.strategies.dime import DimeStrategy
from ingestion.strategies.flood_control import FloodControlStrategy


def make_client(get):
    client = MagicMock()
    client.get = get
    client.__aenter__.return_value = client
    return client


def upsert_error(message: str) -> UpsertError:
    cause = IntegrityError("INSERT INTO projects", {}, Exception(message))
    return UpsertError("Upsert failed for dime:1", original_exception=cause)


class TestErrorClassifier:

    @pytest.mark.parametrize("error, expected", [
        (MaintenanceError("down"), ErrorType.MAINTENANCE),
        (APIExtractionError("HTTP 503", context={"status_code": 503}), ErrorType.MAINTENANCE),
        (Exception("Site is under scheduled maintenance"), ErrorType.MAINTENANCE),
        (RateLimitError("slow down"), ErrorType.RATE_LIMIT),
        (APIExtractionError("HTTP 429", context={"status_code": 429}), ErrorType.RATE_LIMIT),
        (NetworkError("request failed"), ErrorType.NETWORK),
        (httpx.ConnectError("Connection refused"), ErrorType.NETWORK),
        (asyncio.TimeoutError(), ErrorType.NETWORK),
        (APIExtractionError("HTTP 404", context={"status_code": 404}), ErrorType.NOT_FOUND),
        (APIExtractionError("HTTP 403", context={"status_code": 403}), ErrorType.FORBIDDEN),
        (APIExtractionError("HTTP 400", context={"status_code": 400}), ErrorType.CLIENT_ERROR),
        (APIExtractionError("HTTP 500", context={"status_code": 500}), ErrorType.SERVER_ERROR),
        (ValidationError("bad record"), ErrorType.VALIDATION),
        (Exception("something odd happened"), ErrorType.UNKNOWN),
    ])
    def test_classify(self, error, expected):
        assert ErrorClassifier().classify(error) == expected

    def test_database_errors_follow_the_cause_chain(self):
        classifier = ErrorClassifier()

        assert classifier.classify(
            upsert_error('null value in column "project_name" violates not-null constraint')
        ) == ErrorType.NULL_CONSTRAINT
        assert classifier.classify(
            upsert_error("duplicate key value violates unique constraint")
        ) == ErrorType.DUPLICATE
        assert classifier.classify(
            upsert_error("insert violates foreign key constraint")
        ) == ErrorType.FOREIGN_KEY
        assert classifier.classify(
            OperationalError("SELECT 1", {}, Exception("server closed the connection"))
        ) == ErrorType.DATABASE

    def test_database_row_values_do_not_change_the_class(self):
        error = upsert_error(
            'null value in column "status" of relation "projects" violates not-null constraint\n'
            "DETAIL:  Failing row contains (7, dime, 41, Periodic maintenance of Davao river dike, null)."
        )

        assert ErrorClassifier().classify(error) == ErrorType.NULL_CONSTRAINT

    def test_validation_error_mentioning_maintenance(self):
        error = ValidationError("Missing project_name for 'Road maintenance, Tagum-Mabini section'")

        assert ErrorClassifier().classify(error) == ErrorType.VALIDATION

    def test_upstream_maintenance_page_with_server_error(self):
        error = APIExtractionError(
            "HTTP 500 after 3 attempts",
            context={"status_code": 500, "response_body": "<h1>Down for maintenance</h1>"}
        )

        assert ErrorClassifier().classify(error) == ErrorType.MAINTENANCE

    def test_status_code_from_httpx_response(self):
        request = httpx.Request("GET", "https://www.dime.gov.ph/api/projects/1")
        response = httpx.Response(404, request=request)
        error = httpx.HTTPStatusError("not found", request=request, response=response)

        assert ErrorClassifier.status_code(error) == 404
        assert ErrorClassifier().classify(error) == ErrorType.NOT_FOUND

    def test_is_database(self):
        assert ErrorType.DUPLICATE.is_database
        assert not ErrorType.NETWORK.is_database


class TestRecoveryEngine:

    @pytest.mark.asyncio
    async def test_maintenance_scenario_fails_without_retrying_forever(self, make_source):
        get = AsyncMock(return_value=httpx.Response(503, text="Site under maintenance"))
        client = make_client(get)
        sleep = AsyncMock()
        strategy = DimeStrategy(make_source(), client_factory=lambda: client, sleep=sleep)
        engine = RecoveryEngine(strategy, sleep=sleep, maintenance_max_wait=60, maintenance_poll=30)

        result = await engine.handle(MaintenanceError("down", context={"status_code": 503}), item_id=1)

        assert result.error_type == ErrorType.MAINTENANCE
        assert not result.recovered
        assert result.action == RecoveryAction.FAILED
        # Two bounded polls, then the alternates and the HTML page
        assert sleep.await_count == 2
        assert get.await_count == 2 + len(DimeStrategy.alternate_endpoints) + 1

    @pytest.mark.asyncio
    async def test_maintenance_recovers_when_site_returns(self, make_source):
        get = AsyncMock(side_effect=[
            httpx.Response(503, text="maintenance"),
            httpx.Response(200, text="ok"),
        ])
        strategy = DimeStrategy(make_source(), client_factory=lambda: make_client(get))
        engine = RecoveryEngine(strategy, sleep=AsyncMock(), maintenance_max_wait=300, maintenance_poll=30)

        result = await engine.handle(MaintenanceError("down"), item_id=1)

        assert result.recovered
        assert result.tactic == "wait_for_online"
        assert result.action == RecoveryAction.RETRY

    @pytest.mark.asyncio
    async def test_network_wait_and_retry(self):
        sleep = AsyncMock()
        engine = RecoveryEngine(sleep=sleep, max_retries=3)

        result = await engine.handle(NetworkError("timeout"), item_id=5, attempt=1)

        assert result.action == RecoveryAction.RETRY
        assert result.tactic == "wait_and_retry"
        sleep.assert_awaited_once_with(5)

    @pytest.mark.asyncio
    async def test_network_uses_cached_data_after_retries(self):
        engine = RecoveryEngine(sleep=AsyncMock(), max_retries=3)
        engine.remember(5, {"external_id": "5", "project_name": "Road"})

        result = await engine.handle(NetworkError("timeout"), item_id=5, attempt=3)

        assert result.action == RecoveryAction.USE_DATA
        assert result.tactic == "use_cached_data"
        assert result.data["project_name"] == "Road"

    @pytest.mark.asyncio
    async def test_network_switches_endpoint(self, make_source):
        get = AsyncMock(side_effect=[
            httpx.ConnectError("Connection refused"),
            httpx.Response(200, json={"data": []}),
        ])
        strategy = DimeStrategy(make_source(), client_factory=lambda: make_client(get))
        engine = RecoveryEngine(strategy, sleep=AsyncMock(), max_retries=3)

        result = await engine.handle(NetworkError("timeout"), item_id=5, attempt=3)

        assert result.tactic == "switch_endpoint"
        assert result.action == RecoveryAction.RETRY
        assert engine.active_endpoint == DimeStrategy.alternate_endpoints[1]
        assert strategy.alternate_urls(5)[0] == f"{DimeStrategy.alternate_endpoints[1]}/5"

    @pytest.mark.asyncio
    async def test_not_found_is_skipped_without_fallbacks(self, make_source):
        strategy = FloodControlStrategy(make_source("sumbong_flood_control"))
        engine = RecoveryEngine(strategy, sleep=AsyncMock())

        result = await engine.handle(
            APIExtractionError("HTTP 404", context={"status_code": 404}), item_id=3
        )

        assert result.tactic == "skip_item"
        assert result.action == RecoveryAction.SKIP

    @pytest.mark.asyncio
    async def test_not_found_uses_alternate_endpoint(self, make_source, dime_payload):
        get = AsyncMock(return_value=httpx.Response(200, json=dime_payload))
        strategy = DimeStrategy(make_source(), client_factory=lambda: make_client(get))
        engine = RecoveryEngine(strategy, sleep=AsyncMock())

        result = await engine.handle(
            APIExtractionError("HTTP 404", context={"status_code": 404}), item_id=1024
        )

        assert result.tactic == "check_alternative_endpoints"
        assert result.action == RecoveryAction.USE_DATA
        assert result.data["external_id"] == 1024

    @pytest.mark.asyncio
    async def test_rate_limit_backoff_then_smaller_batches(self):
        sleep = AsyncMock()
        engine = RecoveryEngine(sleep=sleep, max_retries=3)

        first = await engine.handle(RateLimitError("slow down"), item_id=1, attempt=1, batch_size=50)
        later = await engine.handle(RateLimitError("slow down"), item_id=1, attempt=3, batch_size=50)

        assert first.tactic == "exponential_backoff"
        sleep.assert_awaited_once_with(2)
        assert later.tactic == "reduce_batch_size"
        assert later.action == RecoveryAction.SKIP
        assert engine.batch_size == 25

    @pytest.mark.asyncio
    async def test_backoff_honours_retry_after(self):
        sleep = AsyncMock()
        engine = RecoveryEngine(sleep=sleep, max_retries=3)

        await engine.handle(RateLimitError("slow down", retry_after=30), item_id=1, attempt=1)

        sleep.assert_awaited_once_with(30)

    @pytest.mark.asyncio
    async def test_batch_size_has_a_floor(self):
        engine = RecoveryEngine(sleep=AsyncMock(), max_retries=1)

        for _ in range(5):
            await engine.handle(RateLimitError("slow down"), item_id=1, batch_size=50)

        assert engine.batch_size == 10

    @pytest.mark.asyncio
    async def test_reducing_never_grows_a_small_batch(self):
        engine = RecoveryEngine(sleep=AsyncMock(), max_retries=1)

        await engine.handle(RateLimitError("slow down"), item_id=1, batch_size=5)

        assert engine.batch_size == 5

    @pytest.mark.asyncio
    async def test_switch_api_key(self, make_source):
        strategy = DimeStrategy(make_source())
        engine = RecoveryEngine(strategy, sleep=AsyncMock(), max_retries=1, api_keys=["key-a"])
        engine._reduce_batch_size = AsyncMock(return_value=None)

        result = await engine.handle(RateLimitError("slow down"), item_id=1)

        assert result.tactic == "switch_api_key"
        assert strategy.headers["Authorization"] == "Bearer key-a"

    @pytest.mark.asyncio
    async def test_duplicate_retries_once_then_skips(self):
        engine = RecoveryEngine(sleep=AsyncMock())
        data = {"external_id": "1", "project_name": "Road"}
        error = upsert_error("duplicate key value violates unique constraint")

        first = await engine.handle(error, item_id=1, data=data, attempt=1)
        second = await engine.handle(error, item_id=1, data=data, attempt=2)

        assert first.tactic == "update_existing"
        assert first.action == RecoveryAction.RETRY
        assert second.tactic == "skip_item"
        assert second.action == RecoveryAction.SKIP

    @pytest.mark.asyncio
    async def test_null_constraint_provides_defaults(self):
        engine = RecoveryEngine(sleep=AsyncMock())
        data = {"external_source": "dime", "external_id": "7", "project_name": None, "cost": None}

        result = await engine.handle(upsert_error("null value in column"), item_id=7, data=data)

        assert result.tactic == "provide_defaults"
        assert result.data["project_name"] == "DIME Project 7"
        assert result.data["status"] == "draft"
        assert result.data["cost"] == 0

    @pytest.mark.asyncio
    async def test_validation_cleans_data(self):
        engine = RecoveryEngine(sleep=AsyncMock())
        data = {"external_id": "1", "project_name": " Road\x00 ", "metadata": {"remarks": "ok\x00"}}

        result = await engine.handle(ValidationError("bad record"), item_id=1, data=data)

        assert result.tactic == "clean_data"
        assert result.data["project_name"] == "Road"
        assert result.data["metadata"]["remarks"] == "ok"

    @pytest.mark.asyncio
    async def test_validation_applies_transformations(self):
        engine = RecoveryEngine(sleep=AsyncMock())
        data = {"external_id": "1", "project_name": "Road", "date_started": "31/02/2024", "latitude": 200}

        result = await engine.handle(ValidationError("bad record"), item_id=1, data=data)

        assert result.tactic == "apply_transformations"
        assert result.data["date_started"] is None
        assert result.data["latitude"] is None

    @pytest.mark.asyncio
    async def test_validation_fallback_values(self, make_source):
        engine = RecoveryEngine(DimeStrategy(make_source()), sleep=AsyncMock())

        result = await engine.handle(ValidationError("bad record"), item_id=9, data={"project_name": ""})

        assert result.tactic == "use_fallback_values"
        assert result.data == {"project_name": "DIME Project 9", "external_id": "9"}

    @pytest.mark.asyncio
    async def test_unknown_errors_are_not_recovered(self):
        engine = RecoveryEngine(sleep=AsyncMock())

        result = await engine.handle(Exception("something odd happened"), item_id=1)

        assert result.error_type == ErrorType.UNKNOWN
        assert not result.recovered
        assert result.action == RecoveryAction.FAILED

    @pytest.mark.asyncio
    async def test_error_log_is_bounded(self, monkeypatch):
        monkeypatch.setattr(settings, "RECOVERY_LOG_CAPACITY", 2)
        engine = RecoveryEngine(sleep=AsyncMock())

        await engine.handle(Exception("first"), item_id=1)
        await engine.handle(ValidationError("second"), item_id=2)
        await engine.handle(ValidationError("third"), item_id=3)

        assert len(engine.log) == 2
        assert engine.error_stats() == {"validation": 2}

        engine.clear_log()
        assert engine.error_stats() == {}

    def test_cache_is_bounded(self, monkeypatch):
        monkeypatch.setattr(recovery_module, "CACHE_CAPACITY", 2)
        engine = RecoveryEngine(sleep=AsyncMock())

        for item_id in (1, 2, 3):
            engine.remember(item_id, {"external_id": str(item_id)})

        assert list(engine._cache) == [2, 3]
