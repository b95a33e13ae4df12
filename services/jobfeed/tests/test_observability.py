from __future__ import annotations

import logging

import pytest
from fastapi.testclient import TestClient

from jobfeed.main import create_app
from jobfeed.metrics import MetricsStore

pytestmark = pytest.mark.integration


@pytest.fixture
def client(settings, actor_api):
    app = create_app(settings=settings, actor_transport=actor_api.transport, sleep=lambda _: None)
    with TestClient(app) as test_client:
        yield test_client


def test_request_id_is_propagated(client: TestClient) -> None:
    response = client.get("/health", headers={"x-request-id": "req-123"})

    assert response.headers["x-request-id"] == "req-123"


def test_request_id_is_generated_when_missing(client: TestClient) -> None:
    response = client.get("/health")

    assert len(response.headers["x-request-id"]) == 36


def test_metrics_track_requests_and_errors(client: TestClient) -> None:
    client.get("/health")
    client.get("/profiles/unknown")
    client.post("/scrape", json={"query": ""})

    snapshot = client.get("/metrics").json()

    assert snapshot["totals"]["requests"] == 3
    assert snapshot["totals"]["errors"] == 2
    assert snapshot["endpoints"]["GET /health"]["2xx"] == 1
    assert snapshot["endpoints"]["GET /profiles/{profile_id}"]["4xx"] == 1
    assert snapshot["endpoints"]["POST /scrape"]["4xx"] == 1


def test_pipeline_errors_are_logged_as_events(
    client: TestClient,
    actor_api,
    caplog: pytest.LogCaptureFixture,
) -> None:
    actor_api.statuses = ["FAILED"]

    with caplog.at_level(logging.INFO, logger="jobmatch.jobfeed"):
        response = client.post("/scrape", json={"query": "Data Engineer"})

    assert response.status_code == 500
    messages = [record.getMessage() for record in caplog.records]
    assert any('"event": "invocation_failed"' in message for message in messages)
    assert any('"event": "ingestion_failed"' in message for message in messages)


def test_metrics_store_averages_latency() -> None:
    store = MetricsStore()
    store.observe(method="GET", path="/health", status_code=200, duration_ms=10.0)
    store.observe(method="GET", path="/health", status_code=503, duration_ms=30.0)

    endpoint = store.snapshot().endpoints["GET /health"]

    assert endpoint["count"] == 2
    assert endpoint["5xx"] == 1
    assert endpoint["latency_ms_avg"] == 20.0
    assert endpoint["latency_ms_max"] == 30.0


def test_metrics_group_requests_by_route_template(client: TestClient) -> None:
    for run_id in range(5):
        client.get(f"/recommendations/runs/{run_id}")
    client.get("/profiles/first_user")
    client.get("/profiles/second_user")

    endpoints = client.get("/metrics").json()["endpoints"]

    assert endpoints["GET /recommendations/runs/{run_id}"]["count"] == 5
    assert endpoints["GET /profiles/{profile_id}"]["4xx"] == 2
    assert not any(key.startswith("GET /recommendations/runs/0") for key in endpoints)
