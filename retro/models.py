from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Ingested data (immutable once scanned)
# ---------------------------------------------------------------------------


class Repository(Base):
    __tablename__ = "repositories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_login: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    full_name: Mapped[str] = mapped_column(String(500), nullable=False, unique=True)
    description: Mapped[str] = mapped_column(Text, default="")
    language: Mapped[str] = mapped_column(String(100), default="")
    default_branch: Mapped[str] = mapped_column(String(200), default="main")
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False)
    is_private: Mapped[bool] = mapped_column(Boolean, default=False)
    synced_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    commits: Mapped[list[Commit]] = relationship("Commit", back_populates="repository", cascade="all, delete-orphan")
    pull_requests: Mapped[list[PullRequest]] = relationship("PullRequest", back_populates="repository", cascade="all, delete-orphan")


class Commit(Base):
    __tablename__ = "commits"
    __table_args__ = (UniqueConstraint("repo_id", "sha"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repo_id: Mapped[int] = mapped_column(Integer, ForeignKey("repositories.id"), nullable=False)
    sha: Mapped[str] = mapped_column(String(64), nullable=False)
    author_login: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    author_email: Mapped[str] = mapped_column(String(300), default="")
    message: Mapped[str] = mapped_column(Text, default="")
    committed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    additions: Mapped[int] = mapped_column(Integer, default=0)
    deletions: Mapped[int] = mapped_column(Integer, default=0)
    files_changed: Mapped[int] = mapped_column(Integer, default=0)

    repository: Mapped[Repository] = relationship("Repository", back_populates="commits")
    files: Mapped[list[CommitFile]] = relationship("CommitFile", back_populates="commit", cascade="all, delete-orphan")


class CommitFile(Base):
    __tablename__ = "commit_files"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    commit_id: Mapped[int] = mapped_column(Integer, ForeignKey("commits.id"), nullable=False)
    path: Mapped[str] = mapped_column(String(1000), nullable=False)
    status: Mapped[str] = mapped_column(String(30), default="modified")  # added | modified | removed | renamed
    additions: Mapped[int] = mapped_column(Integer, default=0)
    deletions: Mapped[int] = mapped_column(Integer, default=0)
    patch: Mapped[str] = mapped_column(Text, default="")

    commit: Mapped[Commit] = relationship("Commit", back_populates="files")


class PullRequest(Base):
    __tablename__ = "pull_requests"
    __table_args__ = (UniqueConstraint("repo_id", "number"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repo_id: Mapped[int] = mapped_column(Integer, ForeignKey("repositories.id"), nullable=False)
    number: Mapped[int] = mapped_column(Integer, nullable=False)
    author_login: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    title: Mapped[str] = mapped_column(Text, default="")
    state: Mapped[str] = mapped_column(String(20), default="open")  # open | closed | merged
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    merged_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    additions: Mapped[int] = mapped_column(Integer, default=0)
    deletions: Mapped[int] = mapped_column(Integer, default=0)

    repository: Mapped[Repository] = relationship("Repository", back_populates="pull_requests")


# ---------------------------------------------------------------------------
# Analysis runs and derived data
# ---------------------------------------------------------------------------


class AnalysisRun(Base):
    __tablename__ = "analysis_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_login: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    user_login: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(40), nullable=False, default="QUEUED")
    phase: Mapped[str] = mapped_column(String(40), nullable=False, default="QUEUED")
    progress_json: Mapped[str] = mapped_column(Text, default="{}")
    options_json: Mapped[str] = mapped_column(Text, default="{}")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    work_units: Mapped[list[WorkUnit]] = relationship("WorkUnit", back_populates="run", cascade="all, delete-orphan")
    reviews: Mapped[list[AiReview]] = relationship("AiReview", back_populates="run", cascade="all, delete-orphan")
    reports: Mapped[list[YearlyReport]] = relationship("YearlyReport", back_populates="run", cascade="all, delete-orphan")
    repo_summaries: Mapped[list[RepoSummary]] = relationship("RepoSummary", back_populates="run", cascade="all, delete-orphan")
    job_logs: Mapped[list[JobLog]] = relationship("JobLog", back_populates="run", cascade="all, delete-orphan")


class WorkUnit(Base):
    __tablename__ = "work_units"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(Integer, ForeignKey("analysis_runs.id"), nullable=False, index=True)
    repo_id: Mapped[int] = mapped_column(Integer, ForeignKey("repositories.id"), nullable=False)
    user_login: Mapped[str] = mapped_column(String(200), nullable=False)
    start_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    commit_count: Mapped[int] = mapped_column(Integer, default=0)
    additions: Mapped[int] = mapped_column(Integer, default=0)
    deletions: Mapped[int] = mapped_column(Integer, default=0)
    files_changed: Mapped[int] = mapped_column(Integer, default=0)
    primary_paths_json: Mapped[str] = mapped_column(Text, default="[]")
    work_type: Mapped[str] = mapped_column(String(30), default="chore")
    impact_score: Mapped[float] = mapped_column(Float, default=0.0)
    impact_factors_json: Mapped[str] = mapped_column(Text, default="{}")
    is_hotfix: Mapped[bool] = mapped_column(Boolean, default=False)
    has_revert: Mapped[bool] = mapped_column(Boolean, default=False)
    is_sampled: Mapped[bool] = mapped_column(Boolean, default=False)
    sample_reason: Mapped[str] = mapped_column(String(30), default="")  # top | impact | risk | random | all

    run: Mapped[AnalysisRun] = relationship("AnalysisRun", back_populates="work_units")
    repository: Mapped[Repository] = relationship("Repository")
    commit_links: Mapped[list[WorkUnitCommit]] = relationship(
        "WorkUnitCommit", back_populates="work_unit", cascade="all, delete-orphan",
        order_by="WorkUnitCommit.position",
    )


class WorkUnitCommit(Base):
    __tablename__ = "work_unit_commits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    work_unit_id: Mapped[int] = mapped_column(Integer, ForeignKey("work_units.id"), nullable=False, index=True)
    commit_id: Mapped[int] = mapped_column(Integer, ForeignKey("commits.id"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0)

    work_unit: Mapped[WorkUnit] = relationship("WorkUnit", back_populates="commit_links")
    commit: Mapped[Commit] = relationship("Commit")


class AiReview(Base):
    __tablename__ = "ai_reviews"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(Integer, ForeignKey("analysis_runs.id"), nullable=False, index=True)
    work_unit_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("work_units.id"), nullable=True)
    user_login: Mapped[str | None] = mapped_column(String(200), nullable=True)
    stage: Mapped[int] = mapped_column(Integer, nullable=False)  # 1 = per unit, 2-4 = per contributor
    model: Mapped[str] = mapped_column(String(100), default="")
    prompt_version: Mapped[str] = mapped_column(String(20), default="")
    result_json: Mapped[str] = mapped_column(Text, default="{}")
    input_tokens: Mapped[int] = mapped_column(Integer, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, default=0)
    cost_usd: Mapped[float] = mapped_column(Float, default=0.0)
    is_fallback: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    run: Mapped[AnalysisRun] = relationship("AnalysisRun", back_populates="reviews")


class RepoSummary(Base):
    __tablename__ = "repo_summaries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(Integer, ForeignKey("analysis_runs.id"), nullable=False, index=True)
    repo_id: Mapped[int] = mapped_column(Integer, ForeignKey("repositories.id"), nullable=False)
    total_units: Mapped[int] = mapped_column(Integer, default=0)
    sampled_units: Mapped[int] = mapped_column(Integer, default=0)
    top_impact_score: Mapped[float] = mapped_column(Float, default=0.0)
    avg_impact_score: Mapped[float] = mapped_column(Float, default=0.0)
    avg_code_quality: Mapped[float | None] = mapped_column(Float, nullable=True)
    key_insights_json: Mapped[str] = mapped_column(Text, default="[]")

    run: Mapped[AnalysisRun] = relationship("AnalysisRun", back_populates="repo_summaries")
    repository: Mapped[Repository] = relationship("Repository")


class YearlyReport(Base):
    __tablename__ = "yearly_reports"
    __table_args__ = (UniqueConstraint("run_id", "user_login"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(Integer, ForeignKey("analysis_runs.id"), nullable=False, index=True)
    user_login: Mapped[str] = mapped_column(String(200), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    stats_json: Mapped[str] = mapped_column(Text, default="{}")
    summary: Mapped[str] = mapped_column(Text, default="")
    strengths_json: Mapped[str] = mapped_column(Text, default="[]")
    improvements_json: Mapped[str] = mapped_column(Text, default="[]")
    action_items_json: Mapped[str] = mapped_column(Text, default="[]")
    ai_insights_json: Mapped[str] = mapped_column(Text, default="{}")
    overall_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    grade: Mapped[str | None] = mapped_column(String(2), nullable=True)
    is_placeholder: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    run: Mapped[AnalysisRun] = relationship("AnalysisRun", back_populates="reports")


class JobLog(Base):
    __tablename__ = "job_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("analysis_runs.id"), nullable=True, index=True)
    job_type: Mapped[str] = mapped_column(String(50), nullable=False)  # scan_repos | scan_commits | build_units | ai_review | finalize_reports
    status: Mapped[str] = mapped_column(String(20), default="running")  # running | done | failed
    input_json: Mapped[str] = mapped_column(Text, default="{}")
    output_json: Mapped[str] = mapped_column(Text, default="{}")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    ended_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    run: Mapped[AnalysisRun | None] = relationship("AnalysisRun", back_populates="job_logs")


class JobMessage(Base):
    """Queue entry consumed by the background worker."""

    __tablename__ = "job_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(Integer, ForeignKey("analysis_runs.id"), nullable=False)
    mode: Mapped[str] = mapped_column(String(20), default="resume")  # resume | full_restart
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)  # pending | running | done | failed
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
