"""
API endpoint tests (database session mocked)
"""

import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock
from fastapi.testclient import TestClient
from api.main import app
from api.dependencies import get_db
from models.base import JobStatus
from models.job import ScrapeJob
from models.source import ScraperSource


def execute_results(*results):
    """Session whose execute() returns ``results`` in order"""
    session = MagicMock()
    session.execute = AsyncMock(side_effect=list(results))
    return session


def result_with(**methods):
    result = MagicMock()
    for name, value in methods.items():
        if name == "scalars_all":
            result.scalars.return_value.all.return_value = value
        elif name == "scalars_first":
            result.scalars.return_value.first.return_value = value
        else:
            getattr(result, name).return_value = value
    return result


def make_job(**overrides) -> ScrapeJob:
    started = datetime(2024, 5, 1, 8, 0, 0)
    fields = {
        "id": 7,
        "source_id": 1,
        "start_id": 1,
        "end_id": 100,
        "current_id": 51,
        "chunk_size": 25,
        "status": JobStatus.PAUSED,
        "success_count": 40,
        "error_count": 5,
        "skip_count": 5,
        "create_count": 30,
        "update_count": 10,
        "stats": {"batches_processed": 2},
        "errors": [{"id": i, "message": f"HTTP 500 for id {i}"} for i in range(30)],
        "started_at": started,
        "completed_at": started + timedelta(minutes=3, seconds=5),
        "triggered_by": "cli",
    }
    fields.update(overrides)
    job = ScrapeJob(**fields)
    job.source = ScraperSource(id=1, code="dime", name="DIME", base_url="https://www.dime.gov.ph", is_active=True)
    return job


@pytest.fixture
def client():
    """Test client whose get_db yields ``client.session``"""
    holder = {"session": execute_results()}

    async def override_get_db():
        yield holder["session"]

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        test_client.use_session = lambda session: holder.__setitem__("session", session)
        yield test_client

    app.dependency_overrides.clear()


def test_root(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["endpoints"]["jobs"] == "/jobs"


def test_request_id_header(client):
    client.use_session(execute_results(result_with(), result_with(scalar=0)))

    generated = client.get("/health")
    echoed = client.get("/", headers={"X-Request-ID": "abc-123"})

    assert generated.headers["X-Request-ID"]
    assert "X-API-Latency-ms" in generated.headers
    assert echoed.headers["X-Request-ID"] == "abc-123"


def test_health_reports_running_jobs(client):
    client.use_session(execute_results(result_with(), result_with(scalar=2)))

    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database_connected"] is True
    assert data["running_jobs"] == 2


def test_health_unhealthy_without_database(client):
    session = MagicMock()
    session.execute = AsyncMock(side_effect=OSError("connection refused"))
    client.use_session(session)

    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "unhealthy"
    assert data["database_connected"] is False
    assert data["running_jobs"] == 0


def test_list_jobs(client):
    jobs = [make_job(), make_job(id=6, status=JobStatus.COMPLETED, current_id=101)]
    client.use_session(execute_results(result_with(scalar=2), result_with(scalars_all=jobs)))

    response = client.get("/jobs", params={"source": "dime", "limit": 10})

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 2
    first = data["jobs"][0]
    assert first["id"] == 7
    assert first["source_code"] == "dime"
    assert first["status"] == "paused"
    assert first["progress_percentage"] == 50.0
    assert first["remaining_count"] == 50
    assert first["duration"] == "3m 5s"
    assert data["jobs"][1]["status"] == "completed"


def test_list_jobs_rejects_bad_limit(client):
    response = client.get("/jobs", params={"limit": 0})

    assert response.status_code == 422


def test_job_detail(client):
    client.use_session(execute_results(result_with(scalars_first=make_job())))

    response = client.get("/jobs/7")

    assert response.status_code == 200
    data = response.json()
    assert data["stats"] == {"batches_processed": 2}
    assert len(data["recent_errors"]) == 20
    assert data["recent_errors"][-1]["id"] == 29


def test_job_detail_not_found(client):
    client.use_session(execute_results(result_with(scalars_first=None)))

    response = client.get("/jobs/404")

    assert response.status_code == 404


def test_source_stats(client):
    source = ScraperSource(id=1, code="dime", name="DIME", base_url="https://www.dime.gov.ph", is_active=True)
    counters = (3, 2, 1, 0, 120, 4, 6, 100, 20)
    client.use_session(execute_results(result_with(scalars_first=source), result_with(one=counters)))

    response = client.get("/sources/dime/stats")

    assert response.status_code == 200
    data = response.json()
    assert data["code"] == "dime"
    assert data["total_jobs"] == 3
    assert data["failed_jobs"] == 1
    assert data["success_count"] == 120
    assert data["update_count"] == 20


def test_source_stats_unknown_source(client):
    client.use_session(execute_results(result_with(scalars_first=None)))

    response = client.get("/sources/nowhere/stats")

    assert response.status_code == 404
