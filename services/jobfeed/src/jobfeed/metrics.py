from __future__ import annotations

import threading
from dataclasses import dataclass

from jobcommon.utils import now_utc_iso
from pydantic import BaseModel


class MetricsSnapshot(BaseModel):
    generated_at: str
    totals: dict[str, int]
    endpoints: dict[str, dict[str, float | int]]


@dataclass
class EndpointStats:
    count: int = 0
    ok: int = 0
    client_errors: int = 0
    server_errors: int = 0
    latency_ms_sum: float = 0.0
    latency_ms_max: float = 0.0

    def record(self, status_code: int, duration_ms: float) -> None:
        self.count += 1
        if 200 <= status_code < 300:
            self.ok += 1
        elif 400 <= status_code < 500:
            self.client_errors += 1
        elif status_code >= 500:
            self.server_errors += 1
        self.latency_ms_sum += duration_ms
        self.latency_ms_max = max(self.latency_ms_max, duration_ms)

    def as_dict(self) -> dict[str, float | int]:
        return {
            "count": self.count,
            "2xx": self.ok,
            "4xx": self.client_errors,
            "5xx": self.server_errors,
            "latency_ms_sum": self.latency_ms_sum,
            "latency_ms_avg": self.latency_ms_sum / self.count if self.count else 0.0,
            "latency_ms_max": self.latency_ms_max,
        }


class MetricsStore:
    """Per-route request counters; callers pass the route template, not the raw URL."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._requests = 0
        self._errors = 0
        self._endpoints: dict[str, EndpointStats] = {}

    def observe(self, *, method: str, path: str, status_code: int, duration_ms: float) -> None:
        with self._lock:
            self._requests += 1
            if status_code >= 400:
                self._errors += 1
            stats = self._endpoints.get(f"{method} {path}")
            if stats is None:
                stats = self._endpoints[f"{method} {path}"] = EndpointStats()
            stats.record(status_code, duration_ms)

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                generated_at=now_utc_iso(),
                totals={"requests": self._requests, "errors": self._errors},
                endpoints={key: stats.as_dict() for key, stats in self._endpoints.items()},
            )
