"""Pydantic request/response schemas for the Retro API."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, field_validator

from retro.config import RunOptions
from retro.pipeline import RestartMode


class AnalysisCreate(BaseModel):
    org_login: str
    user_login: str
    year: int
    options: RunOptions = RunOptions()

    @field_validator("org_login", "user_login")
    @classmethod
    def validate_login(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v


class ResumeRequest(BaseModel):
    mode: RestartMode = RestartMode.RESUME


class ConfirmRequest(BaseModel):
    skip: bool = False


class RunStatusOut(BaseModel):
    run_id: int
    status: str


class AnalysisOut(BaseModel):
    run_id: int
    org_login: str
    user_login: str
    year: int
    status: str
    phase: str
    progress: dict[str, Any] = {}
    options: dict[str, Any] = {}
    error: str | None = None
    created_at: str | None = None
    started_at: str | None = None
    finished_at: str | None = None


class ProgressOut(AnalysisOut):
    work_units: int = 0
    has_report: bool = False


class CostEstimateOut(BaseModel):
    sample_size: int
    contributor_stages: int
    input_tokens: int
    output_tokens: int
    cost_usd: float
    provider: str = ""
    model: str = ""


class WorkUnitOut(BaseModel):
    id: int
    repository: str
    start_at: str
    end_at: str
    commit_count: int
    additions: int
    deletions: int
    files_changed: int
    primary_paths: list[str] = []
    work_type: str
    impact_score: float
    impact_factors: dict[str, Any] = {}
    is_hotfix: bool
    has_revert: bool
    is_sampled: bool
    sample_reason: str = ""


class ReportOut(BaseModel):
    id: int
    run_id: int
    user_login: str
    year: int
    stats: dict[str, Any] = {}
    summary: str = ""
    strengths: list[Any] = []
    improvements: list[Any] = []
    action_items: list[Any] = []
    ai_insights: dict[str, Any] = {}
    overall_score: float | None = None
    grade: str | None = None
    is_placeholder: bool = False
    created_at: str | None = None


class InterimReportOut(BaseModel):
    run_id: int
    org_login: str
    user_login: str
    year: int
    status: str
    generated_at: str
    stats: dict[str, Any] = {}


class JobLogOut(BaseModel):
    id: int
    job_type: str
    status: str
    input: dict[str, Any] = {}
    output: dict[str, Any] = {}
    error: str | None = None
    started_at: str | None = None
    ended_at: str | None = None
