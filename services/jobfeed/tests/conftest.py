from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest
from jobcommon.utils import now_utc_iso

from jobfeed.actor import ActorClient
from jobfeed.config import Settings
from jobfeed.models import NormalizedJob
from jobfeed.repository import JobFeedRepository


class FakeActorApi:
    """In-memory stand-in for the actor HTTP API, served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.items: list[dict[str, Any]] = []
        self.statuses: list[str] = ["RUNNING", "SUCCEEDED"]
        self.recent_runs: list[dict[str, Any]] = []
        self.datasets: dict[str, list[dict[str, Any]]] = {}
        self.failing_positions: set[str] = set()
        self.requests: list[httpx.Request] = []
        self.sleeps: list[float] = []
        self._poll_index = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def submitted_inputs(self) -> list[dict[str, Any]]:
        return [
            json.loads(request.content)
            for request in self.requests
            if request.method == "POST"
        ]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "POST" and path.endswith("/runs"):
            run_input = json.loads(request.content)
            if run_input.get("position") in self.failing_positions:
                return httpx.Response(502, text="actor unavailable")
            self._poll_index = 0
            return httpx.Response(
                201,
                json={"data": {"id": "run-1", "defaultDatasetId": "ds-1", "status": "READY"}},
            )
        if request.method == "GET" and path.endswith("/runs"):
            return httpx.Response(200, json={"data": {"items": self.recent_runs}})
        if request.method == "GET" and "/runs/" in path:
            status = self.statuses[min(self._poll_index, len(self.statuses) - 1)]
            self._poll_index += 1
            return httpx.Response(
                200,
                json={"data": {"id": "run-1", "defaultDatasetId": "ds-1", "status": status}},
            )
        if request.method == "GET" and "/datasets/" in path:
            dataset_id = path.rstrip("/").split("/")[-2]
            if dataset_id in self.datasets:
                return httpx.Response(200, json=self.datasets[dataset_id])
            if dataset_id == "ds-1":
                return httpx.Response(200, json=self.items)
            return httpx.Response(404, text="dataset not found")
        return httpx.Response(404, text="not found")


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_path=str(tmp_path / "jobfeed.sqlite3"),
        apify_api_token="test-token",
    )


@pytest.fixture
def repository(settings: Settings):
    repo = JobFeedRepository(settings.database_path)
    repo.connect()
    yield repo
    repo.close()


@pytest.fixture
def actor_api() -> FakeActorApi:
    return FakeActorApi()


@pytest.fixture
def actor_factory(settings: Settings, actor_api: FakeActorApi) -> Callable[[], ActorClient]:
    return lambda: ActorClient.from_settings(
        settings,
        transport=actor_api.transport,
        sleep=actor_api.sleeps.append,
    )


@pytest.fixture
def make_job() -> Callable[..., NormalizedJob]:
    def build(external_id: str, title: str, **overrides: Any) -> NormalizedJob:
        values: dict[str, Any] = {
            "external_id": external_id,
            "title": title,
            "company": "Acme Labs",
            "location": "Remote",
            "canonical_url": f"https://www.indeed.com/viewjob?jk={external_id}",
            "job_board": "Indeed",
            "quality_score": 7,
            "scraped_at": now_utc_iso(),
        }
        values.update(overrides)
        return NormalizedJob(**values)

    return build
