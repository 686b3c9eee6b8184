"""Per-phase progress snapshots stored on ``AnalysisRun.progress_json``.

Each phase has its own model, discriminated by ``phase``.  Snapshots are
always written whole; readers validate through :data:`PROGRESS_ADAPTER`.
"""
from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError


class ProgressBase(BaseModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    message: str = ""


class RepoScanState(BaseModel):
    full_name: str
    status: Literal["pending", "scanning", "done", "failed"] = "pending"
    commits: int = 0
    error: str | None = None


class CostEstimate(BaseModel):
    sample_size: int = 0
    contributor_stages: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    provider: str = ""
    model: str = ""


class ReviewedUnit(BaseModel):
    work_unit_id: int
    repository: str = ""
    score: int | None = None
    ok: bool = True


class QueuedProgress(ProgressBase):
    phase: Literal["QUEUED"] = "QUEUED"


class ScanningReposProgress(ProgressBase):
    phase: Literal["SCANNING_REPOS"] = "SCANNING_REPOS"


class ScanningCommitsProgress(ProgressBase):
    phase: Literal["SCANNING_COMMITS"] = "SCANNING_COMMITS"
    current_repo: str | None = None
    repos: list[RepoScanState] = Field(default_factory=list)


class BuildingUnitsProgress(ProgressBase):
    phase: Literal["BUILDING_UNITS"] = "BUILDING_UNITS"
    work_units: int = 0


class AwaitingConfirmationProgress(ProgressBase):
    phase: Literal["AWAITING_AI_CONFIRMATION"] = "AWAITING_AI_CONFIRMATION"
    work_units: int = 0
    sampled_units: int = 0
    estimate: CostEstimate | None = None


class ReviewingProgress(ProgressBase):
    phase: Literal["REVIEWING"] = "REVIEWING"
    stage: int = 1
    in_progress: list[int] = Field(default_factory=list)
    recent: list[ReviewedUnit] = Field(default_factory=list)
    cost_usd: float = 0.0


class FinalizingProgress(ProgressBase):
    phase: Literal["FINALIZING"] = "FINALIZING"


class DoneProgress(ProgressBase):
    phase: Literal["DONE"] = "DONE"


Progress = Annotated[
    Union[
        QueuedProgress,
        ScanningReposProgress,
        ScanningCommitsProgress,
        BuildingUnitsProgress,
        AwaitingConfirmationProgress,
        ReviewingProgress,
        FinalizingProgress,
        DoneProgress,
    ],
    Field(discriminator="phase"),
]

PROGRESS_ADAPTER: TypeAdapter[Progress] = TypeAdapter(Progress)

RECENT_LIMIT = 10


def load_progress(raw: str | None) -> Progress:
    """Parse a stored snapshot; unreadable or empty blobs read as queued."""
    if not raw or raw == "{}":
        return QueuedProgress()
    try:
        return PROGRESS_ADAPTER.validate_json(raw)
    except ValidationError:
        return QueuedProgress(message="Progress snapshot unreadable")


def dump_progress(progress: Progress) -> str:
    return progress.model_dump_json()
