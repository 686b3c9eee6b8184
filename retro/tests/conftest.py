"""Shared fixtures: in-memory database, fake LLM provider, fake GitHub source."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from retro.config import ReviewConfig, Settings
from retro.errors import GitHubError
from retro.github import CommitRecord, FileRecord, PullRequestRecord, RepoRecord
from retro.llm import LLMCallError, LLMProvider, ReviewRequest, ReviewResponse, TokenUsage
from retro.models import Base
from retro.prompts import STAGE1_SYSTEM, STAGE2_SYSTEM, STAGE3_SYSTEM, STAGE4_SYSTEM

STAGE_BY_SYSTEM = {STAGE1_SYSTEM: 1, STAGE2_SYSTEM: 2, STAGE3_SYSTEM: 3, STAGE4_SYSTEM: 4}

STAGE_PAYLOADS = {
    1: {
        "code_quality": {"score": 8, "readability": 7, "maintainability": 8, "best_practices": 7},
        "strengths": ["Clear naming", "Small focused changes"],
        "weaknesses": ["Sparse tests"],
        "code_patterns": ["guard clauses"],
        "suggestions": ["Add unit tests"],
    },
    2: {
        "work_style": "deep-diver",
        "collaboration_pattern": "collaborative",
        "productivity_insights": ["Steady weekly cadence"],
        "time_management_feedback": "Consistent delivery.",
    },
    3: {
        "areas_for_improvement": [
            {"area": "Testing", "priority": "high", "specific_feedback": "Cover edge cases",
             "suggested_resources": ["pytest docs"]},
        ],
        "learning_opportunities": ["Property-based testing"],
        "strengths_to_leverage": ["Code clarity"],
        "career_growth_suggestions": ["Lead a design review"],
    },
    4: {
        "executive_summary": "A productive year with clean, focused changes.",
        "overall_assessment": {
            "productivity": {"score": 8, "feedback": "High output"},
            "code_quality": {"score": 8, "feedback": "Clean"},
            "diversity": {"score": 7, "feedback": "Several repos"},
            "collaboration": {"score": 7, "feedback": "Good reviews"},
            "growth": {"score": 8, "feedback": "Improving"},
        },
        "top_achievements": ["Shipped billing v2"],
        "key_improvements": ["More tests"],
        "action_items": [{"item": "Write integration tests", "deadline": "Q1", "priority": "high"}],
    },
}


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(session_factory) -> Session:
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        home=tmp_path,
        database_path=tmp_path / "retro.db",
        config_file=tmp_path / "config.yaml",
        llm_provider="anthropic",
        llm_model="claude-sonnet-4-5",
        review=ReviewConfig(base_delay_seconds=0.0, max_delay_seconds=0.0),
    )


# ---------------------------------------------------------------------------
# Fake LLM provider
# ---------------------------------------------------------------------------


class FakeProvider(LLMProvider):
    """Returns canned stage payloads; failures are driven by predicates on the request."""

    name = "anthropic"

    def __init__(self, model: str = "claude-sonnet-4-5", *,
                 fail_when: Callable[[ReviewRequest], bool] | None = None,
                 invalid_when: Callable[[ReviewRequest], bool] | None = None,
                 on_call: Callable[[ReviewRequest, int], None] | None = None):
        super().__init__(model)
        self.fail_when = fail_when
        self.invalid_when = invalid_when
        self.on_call = on_call
        self.calls: list[tuple[int, ReviewRequest]] = []

    def stage_calls(self, stage: int) -> int:
        return sum(1 for s, _ in self.calls if s == stage)

    async def generate_review(self, request: ReviewRequest) -> ReviewResponse:
        stage = STAGE_BY_SYSTEM[request.system]
        self.calls.append((stage, request))
        if self.on_call is not None:
            self.on_call(request, stage)
        if self.fail_when is not None and self.fail_when(request):
            raise LLMCallError("LLM API call failed: 503 overloaded", retryable=True)
        if self.invalid_when is not None and self.invalid_when(request):
            raise LLMCallError("LLM returned invalid JSON: not json", retryable=False)
        usage = TokenUsage(1000, 200)
        usage.cost_usd = self.cost_for(usage.input_tokens, usage.output_tokens)
        return ReviewResponse(dict(STAGE_PAYLOADS[stage]), usage, self.model)


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider()


# ---------------------------------------------------------------------------
# Fake GitHub source
# ---------------------------------------------------------------------------


class FakeSource:
    """In-memory :class:`~retro.github.CommitSource`."""

    def __init__(self, repos: list[RepoRecord] | None = None,
                 commits: dict[str, list[CommitRecord]] | None = None,
                 prs: dict[str, list[PullRequestRecord]] | None = None,
                 failing_repos: set[str] | None = None):
        self.repos = repos or []
        self.commits = commits or {}
        self.prs = prs or {}
        self.failing_repos = failing_repos or set()
        self.fetched: list[str] = []
        self.closed = False

    async def list_repositories(self, org: str, include_archived: bool = False) -> list[RepoRecord]:
        return [r for r in self.repos if include_archived or not r.is_archived]

    async def list_commit_shas(self, full_name: str, author: str, since: datetime, until: datetime) -> list[str]:
        if full_name in self.failing_repos:
            raise GitHubError(f"GitHub returned 404 for {full_name}", status=404)
        return [
            c.sha for c in self.commits.get(full_name, [])
            if c.author_login.lower() == author.lower() and since <= c.committed_at < until
        ]

    async def get_commit(self, full_name: str, sha: str) -> CommitRecord:
        self.fetched.append(sha)
        return next(c for c in self.commits[full_name] if c.sha == sha)

    async def list_pull_requests(self, full_name: str, author: str, since: datetime,
                                 until: datetime) -> list[PullRequestRecord]:
        return [p for p in self.prs.get(full_name, []) if p.author_login.lower() == author.lower()]

    async def aclose(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def repo_record(full_name: str, **kwargs) -> RepoRecord:
    return RepoRecord(name=full_name.split("/")[-1], full_name=full_name, language="Python", **kwargs)


def commit_records(prefix: str, count: int, *, start: datetime = datetime(2024, 3, 1, 9),
                   spacing: timedelta = timedelta(hours=6), author: str = "alice",
                   path: str = "src/app/service.py", message: str = "feat: add feature") -> list[CommitRecord]:
    """*count* commits spaced far enough apart that each becomes its own work unit."""
    records = []
    for i in range(count):
        records.append(CommitRecord(
            sha=f"{prefix}{i:04d}".ljust(40, "0"),
            author_login=author,
            committed_at=start + spacing * i,
            message=f"{message} {i}",
            additions=10 + i,
            deletions=i % 3,
            files=[FileRecord(path=path, additions=10 + i, deletions=i % 3,
                              patch=f"@@ -1,1 +1,2 @@\n-old {i}\n+new {i}\n+more {i}")],
        ))
    return records


@pytest.fixture()
def three_repo_source() -> FakeSource:
    """40 commits by alice in 2024 over three repositories (15/15/10)."""
    repos = [repo_record("acme/api"), repo_record("acme/web"), repo_record("acme/tools")]
    commits = {
        "acme/api": commit_records("a", 15, path="src/auth/login.py"),
        "acme/web": commit_records("b", 15, path="web/components/button.tsx"),
        "acme/tools": commit_records("c", 10, path="scripts/deploy.sh", message="chore: bump deps"),
    }
    commits["acme/api"].append(commit_records("z", 1, author="bob")[0])
    return FakeSource(repos, commits)
