from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

import httpx

from jobfeed.config import Settings
from jobfeed.errors import ActorError, ActorRunFailedError, ActorTimeoutError

LOGGER = logging.getLogger("jobmatch.jobfeed.actor")

IN_PROGRESS_STATUSES = frozenset({"READY", "RUNNING"})
SUCCEEDED_STATUS = "SUCCEEDED"


class RunPhase(str, Enum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class ActorRun:
    run_id: str
    dataset_id: str | None
    status: str
    phase: RunPhase = RunPhase.SUBMITTED
    attempts: int = 0

    @property
    def finished(self) -> bool:
        return self.phase in (RunPhase.SUCCEEDED, RunPhase.FAILED, RunPhase.TIMED_OUT)


def next_phase(status: str, attempts: int, max_attempts: int) -> RunPhase:
    if status == SUCCEEDED_STATUS:
        return RunPhase.SUCCEEDED
    if status not in IN_PROGRESS_STATUSES:
        return RunPhase.FAILED
    if attempts >= max_attempts:
        return RunPhase.TIMED_OUT
    return RunPhase.POLLING


class ActorClient:
    """Client for an Apify-style actor: submit a run, poll it, read its dataset."""

    def __init__(
        self,
        *,
        token: str,
        base_url: str,
        actor_id: str,
        poll_interval_seconds: float = 5.0,
        max_poll_attempts: int = 60,
        timeout_seconds: float = 30.0,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.actor_id = actor_id
        self.poll_interval_seconds = poll_interval_seconds
        self.max_poll_attempts = max_poll_attempts
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout_seconds,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> ActorClient:
        return cls(
            token=settings.require_actor_token(),
            base_url=settings.apify_base_url,
            actor_id=settings.actor_id,
            poll_interval_seconds=settings.poll_interval_seconds,
            max_poll_attempts=settings.max_poll_attempts,
            timeout_seconds=settings.request_timeout_seconds,
            transport=transport,
            sleep=sleep,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> ActorClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise ActorError(f"Actor request {method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            raise ActorError(
                f"Actor request {method} {path} failed: {response.status_code} - {response.text}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ActorError(f"Actor request {method} {path} returned invalid JSON") from exc

    def submit(self, run_input: dict[str, Any]) -> ActorRun:
        body = self._request("POST", f"/acts/{self.actor_id}/runs", json=run_input)
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict) or not data.get("id"):
            raise ActorError("Actor run submission returned no run id")
        run = ActorRun(
            run_id=str(data["id"]),
            dataset_id=data.get("defaultDatasetId"),
            status=str(data.get("status") or "READY"),
        )
        LOGGER.info(json.dumps({"event": "actor_run_submitted", "run_id": run.run_id}))
        return run

    def poll(self, run: ActorRun) -> ActorRun:
        body = self._request("GET", f"/acts/{self.actor_id}/runs/{run.run_id}")
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise ActorError(f"Actor run {run.run_id} status response had no data")
        status = str(data.get("status") or "")
        attempts = run.attempts + 1
        polled = replace(
            run,
            status=status,
            dataset_id=data.get("defaultDatasetId") or run.dataset_id,
            attempts=attempts,
            phase=next_phase(status, attempts, self.max_poll_attempts),
        )
        LOGGER.info(
            json.dumps(
                {
                    "event": "actor_run_polled",
                    "run_id": run.run_id,
                    "status": status,
                    "attempt": attempts,
                }
            )
        )
        return polled

    def wait_for_completion(self, run: ActorRun) -> ActorRun:
        current = run
        while not current.finished:
            self._sleep(self.poll_interval_seconds)
            current = self.poll(current)

        if current.phase is RunPhase.TIMED_OUT:
            raise ActorTimeoutError(current.run_id, current.attempts)
        if current.phase is RunPhase.FAILED:
            raise ActorRunFailedError(current.run_id, current.status)
        return current

    def fetch_items(self, dataset_id: str) -> list[dict[str, Any]]:
        body = self._request("GET", f"/datasets/{dataset_id}/items")
        if not isinstance(body, list):
            raise ActorError(f"Dataset {dataset_id} did not return a list of items")
        return [item for item in body if isinstance(item, dict)]

    def run(self, run_input: dict[str, Any]) -> tuple[ActorRun, list[dict[str, Any]]]:
        finished = self.wait_for_completion(self.submit(run_input))
        if not finished.dataset_id:
            raise ActorError(f"Actor run {finished.run_id} has no dataset")
        return finished, self.fetch_items(finished.dataset_id)

    def list_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        body = self._request(
            "GET",
            f"/acts/{self.actor_id}/runs",
            params={"limit": limit, "desc": "true"},
        )
        data = body.get("data") if isinstance(body, dict) else None
        items = data.get("items", []) if isinstance(data, dict) else []
        return [item for item in items if isinstance(item, dict)]


def build_run_input(settings: Settings, query: str, location: str, max_jobs: int) -> dict[str, Any]:
    run_input: dict[str, Any] = {
        "position": query,
        "country": settings.country,
        "maxItems": max_jobs,
        "followApplyRedirects": False,
        "parseCompanyDetails": False,
        "saveOnlyUniqueItems": True,
    }
    if location.strip():
        run_input["location"] = location.strip()
    return run_input
