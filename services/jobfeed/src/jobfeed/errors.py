from __future__ import annotations


class PipelineError(Exception):
    """Base class for failures that abort a whole invocation."""

    status_code = 500


class ConfigurationError(PipelineError):
    pass


class ActorError(PipelineError):
    """Submitting, polling or reading the external scrape actor failed."""


class ActorRunFailedError(ActorError):
    def __init__(self, run_id: str, status: str) -> None:
        super().__init__(f"Actor run {run_id} did not succeed. Status: {status}")
        self.run_id = run_id
        self.status = status


class ActorTimeoutError(ActorError):
    def __init__(self, run_id: str, attempts: int) -> None:
        super().__init__(f"Actor run {run_id} still running after {attempts} polls")
        self.run_id = run_id
        self.attempts = attempts


class RecommendationRunError(PipelineError):
    def __init__(self, run_id: int, message: str) -> None:
        super().__init__(message)
        self.run_id = run_id
