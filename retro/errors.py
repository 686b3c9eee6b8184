"""Exception types shared by the pipeline, services and surfaces."""
from __future__ import annotations


class RetroError(Exception):
    """Base class for expected, user-visible failures."""


class RunNotFoundError(RetroError):
    def __init__(self, run_id: int):
        super().__init__(f"Analysis run {run_id} not found")
        self.run_id = run_id


class RunConflictError(RetroError):
    """A non-terminal run already exists for the (org, contributor, year) key."""
    def __init__(self, message: str, run_id: int | None = None):
        super().__init__(message)
        self.run_id = run_id


class InvalidTransitionError(RetroError):
    """The requested operation is not allowed in the run's current status."""


class ConfigurationError(RetroError):
    """Missing credentials or an unusable provider/model configuration."""


class GitHubError(RetroError):
    """Version-control API call failed."""
    def __init__(self, message: str, status: int | None = None, retryable: bool = False):
        super().__init__(message)
        self.status = status
        self.retryable = retryable
