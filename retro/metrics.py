"""Developer activity metrics used as context for the contributor review stages."""
from __future__ import annotations

import re
from collections import Counter
from datetime import date, timedelta
from typing import Any, Iterable

from retro.models import Commit, PullRequest

CONVENTIONAL_RE = re.compile(
    r"^(feat|fix|docs|style|refactor|perf|test|build|ci|chore|revert)(\(.+\))?!?:\s.+"
)
ISSUE_REF_RE = re.compile(r"#\d+|[A-Z]+-\d+")
TEST_PATH_RE = re.compile(r"(^|/)(tests?|__tests__|spec)/|(_test|\.test|\.spec|_spec)\.\w+$|(^|/)test_[^/]+$")


def _pct(part: int, total: int) -> float:
    return round(part / total * 100, 1) if total else 0.0


def _time_bucket(hour: int) -> str:
    if 6 <= hour < 12:
        return "morning"
    if 12 <= hour < 18:
        return "afternoon"
    if 18 <= hour < 22:
        return "evening"
    return "night"


def longest_streak(days: Iterable[date]) -> int:
    """Longest run of consecutive calendar days with activity."""
    ordered = sorted(set(days))
    best = current = 0
    prev: date | None = None
    for day in ordered:
        current = current + 1 if prev is not None and day - prev == timedelta(days=1) else 1
        best = max(best, current)
        prev = day
    return best


def productivity_metrics(commits: list[Commit], prs: list[PullRequest]) -> dict[str, Any]:
    added = sum(c.additions for c in commits)
    deleted = sum(c.deletions for c in commits)
    working_days = len({c.committed_at.date() for c in commits})
    return {
        "total_commits": len(commits),
        "total_prs": len(prs),
        "lines_added": added,
        "lines_deleted": deleted,
        "net_lines": added - deleted,
        "working_days": working_days,
        "avg_commits_per_day": round(len(commits) / working_days, 2) if working_days else 0.0,
    }


def work_pattern_metrics(commits: list[Commit]) -> dict[str, Any]:
    buckets = Counter(_time_bucket(c.committed_at.hour) for c in commits)
    weekend = sum(1 for c in commits if c.committed_at.weekday() >= 5)
    total = len(commits)
    return {
        "time_distribution": {k: _pct(buckets.get(k, 0), total) for k in ("morning", "afternoon", "evening", "night")},
        "longest_streak": longest_streak(c.committed_at.date() for c in commits),
        "weekend_work_ratio": _pct(weekend, total),
    }


def diversity_metrics(commits: list[Commit]) -> dict[str, Any]:
    per_repo = Counter(c.repository.full_name if c.repository else str(c.repo_id) for c in commits)
    primary = per_repo.most_common(1)[0][0] if per_repo else None
    return {
        "repository_count": len(per_repo),
        "primary_repository": primary,
        "commits_per_repository": dict(per_repo.most_common()),
    }


def pr_metrics(prs: list[PullRequest]) -> dict[str, Any]:
    merged = [p for p in prs if p.merged_at is not None]
    sizes = [p.additions + p.deletions for p in prs]
    return {
        "opened": len(prs),
        "merged": len(merged),
        "merge_rate": _pct(len(merged), len(prs)),
        "avg_lines_per_pr": round(sum(sizes) / len(sizes), 1) if sizes else 0.0,
    }


def commit_quality_metrics(commits: list[Commit]) -> dict[str, Any]:
    total = len(commits)
    conventional = sum(1 for c in commits if CONVENTIONAL_RE.match((c.message or "").strip()))
    issue_refs = sum(1 for c in commits if ISSUE_REF_RE.search(c.message or ""))
    reverts = sum(1 for c in commits if (c.message or "").lower().startswith("revert"))
    test_commits = sum(1 for c in commits if any(TEST_PATH_RE.search(f.path) for f in c.files))
    return {
        "conventional_commit_rate": _pct(conventional, total),
        "issue_reference_rate": _pct(issue_refs, total),
        "revert_rate": _pct(reverts, total),
        "test_commit_rate": _pct(test_commits, total),
    }


def compute_developer_metrics(commits: list[Commit], prs: list[PullRequest]) -> dict[str, Any]:
    return {
        "productivity": productivity_metrics(commits, prs),
        "work_pattern": work_pattern_metrics(commits),
        "diversity": diversity_metrics(commits),
        "pr_activity": pr_metrics(prs),
        "commit_quality": commit_quality_metrics(commits),
    }
