"""Commit clustering: group one contributor's commits in one repository into work units.

A new unit starts whenever the gap since the previous commit exceeds
``max_gap_hours``, the unit would span more than ``max_unit_hours``, or it
already holds ``max_commits_per_unit`` commits.  The algorithm is purely
deterministic: commits are ordered by ``(committed_at, sha)`` and no
randomness is involved, so identical input and config always produce
identical unit boundaries.
"""
from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from fnmatch import fnmatch
from typing import Iterable

from retro.config import ClusteringConfig

HOTFIX_RE = re.compile(
    r"\bhot[\s_-]?fix\b|\burgent\b|\bemergency\b|\bcritical fix\b|^fix(?:\([^)]*\))?!:",
    re.IGNORECASE | re.MULTILINE,
)
REVERT_RE = re.compile(r"\brevert(?:s|ed|ing)?\b|this reverts commit", re.IGNORECASE)

WORK_TYPE_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("feature", re.compile(r"^feat\b|\bfeature\b|\badd(?:s|ed)?\b|\bimplement", re.IGNORECASE)),
    ("bugfix", re.compile(r"^fix\b|\bbug\b|\bfix(?:es|ed)?\b|\bpatch\b", re.IGNORECASE)),
    ("refactor", re.compile(r"^refactor\b|\brefactor|\bcleanup\b|\brestructure\b", re.IGNORECASE)),
    ("docs", re.compile(r"^docs?\b|\breadme\b|\bdocumentation\b", re.IGNORECASE)),
    ("test", re.compile(r"^test\b|\btests?\b|\bspec\b|\bcoverage\b", re.IGNORECASE)),
    ("style", re.compile(r"^style\b|\bformat(?:ting)?\b|\blint\b", re.IGNORECASE)),
    ("chore", re.compile(r"^(?:chore|build|ci)\b|\bbump\b|\bdeps?\b|\bdependenc", re.IGNORECASE)),
]
DEFAULT_WORK_TYPE = "chore"


@dataclass
class FileChange:
    path: str
    status: str = "modified"
    additions: int = 0
    deletions: int = 0


@dataclass
class ClusterCommit:
    sha: str
    committed_at: datetime
    message: str = ""
    additions: int = 0
    deletions: int = 0
    files: list[FileChange] = field(default_factory=list)
    commit_id: int | None = None


@dataclass
class WorkUnitData:
    commits: list[ClusterCommit]
    start_at: datetime
    end_at: datetime
    additions: int
    deletions: int
    files_changed: int
    touched_files: list[str]
    primary_paths: list[str]
    work_type: str
    is_hotfix: bool
    has_revert: bool

    @property
    def commit_count(self) -> int:
        return len(self.commits)

    @property
    def lines_changed(self) -> int:
        return self.additions + self.deletions


# ---------------------------------------------------------------------------
# Message classification
# ---------------------------------------------------------------------------


def is_hotfix_message(message: str) -> bool:
    return bool(HOTFIX_RE.search(message or ""))


def is_revert_message(message: str) -> bool:
    return bool(REVERT_RE.search(message or ""))


def classify_message(message: str) -> str | None:
    lines = (message or "").strip().splitlines()
    subject = lines[0] if lines else ""
    for work_type, pattern in WORK_TYPE_PATTERNS:
        if pattern.search(subject):
            return work_type
    return None


def infer_work_type(messages: Iterable[str]) -> str:
    """Most frequent work type across messages; ties go to the type seen first."""
    counts: Counter[str] = Counter()
    first_seen: dict[str, int] = {}
    for idx, message in enumerate(messages):
        work_type = classify_message(message)
        if work_type is None:
            continue
        counts[work_type] += 1
        first_seen.setdefault(work_type, idx)
    if not counts:
        return DEFAULT_WORK_TYPE
    return min(counts, key=lambda t: (-counts[t], first_seen[t]))


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def directory_of(path: str, depth: int = 2) -> str:
    """Leading ``depth`` directory segments of *path* (``"."`` for root files)."""
    parts = [p for p in path.split("/") if p][:-1]
    if not parts:
        return "."
    return "/".join(parts[:depth])


def rank_primary_paths(commits: list[ClusterCommit], top_n: int, depth: int) -> list[str]:
    """Directories ranked by the number of commits touching them."""
    counts: Counter[str] = Counter()
    first_seen: dict[str, int] = {}
    order = 0
    for commit in commits:
        dirs: list[str] = []
        for f in commit.files:
            d = directory_of(f.path, depth)
            if d not in dirs:
                dirs.append(d)
        for d in dirs:
            counts[d] += 1
            if d not in first_seen:
                first_seen[d] = order
                order += 1
    ranked = sorted(counts, key=lambda d: (-counts[d], first_seen[d]))
    return ranked[:top_n]


def filter_excluded_files(commit: ClusterCommit, exclude_paths: list[str]) -> ClusterCommit:
    """Drop files matching any exclusion glob, recomputing line stats from what remains."""
    if not exclude_paths or not commit.files:
        return commit
    kept = [f for f in commit.files if not any(fnmatch(f.path, pat) for pat in exclude_paths)]
    if len(kept) == len(commit.files):
        return commit
    return ClusterCommit(
        sha=commit.sha,
        committed_at=commit.committed_at,
        message=commit.message,
        additions=sum(f.additions for f in kept),
        deletions=sum(f.deletions for f in kept),
        files=kept,
        commit_id=commit.commit_id,
    )


# ---------------------------------------------------------------------------
# Clustering
# ---------------------------------------------------------------------------


def _build_unit(commits: list[ClusterCommit], config: ClusteringConfig) -> WorkUnitData:
    touched: list[str] = []
    seen: set[str] = set()
    for commit in commits:
        for f in commit.files:
            if f.path not in seen:
                seen.add(f.path)
                touched.append(f.path)
    messages = [c.message for c in commits]
    return WorkUnitData(
        commits=commits,
        start_at=commits[0].committed_at,
        end_at=commits[-1].committed_at,
        additions=sum(c.additions for c in commits),
        deletions=sum(c.deletions for c in commits),
        files_changed=len(touched),
        touched_files=touched,
        primary_paths=rank_primary_paths(commits, config.primary_paths_top_n, config.path_depth),
        work_type=infer_work_type(messages),
        is_hotfix=any(is_hotfix_message(m) for m in messages),
        has_revert=any(is_revert_message(m) for m in messages),
    )


def cluster_commits(commits: Iterable[ClusterCommit], config: ClusteringConfig | None = None) -> list[WorkUnitData]:
    """Split one repository's commits into time-bounded work units."""
    config = config or ClusteringConfig()
    ordered = sorted(commits, key=lambda c: (c.committed_at, c.sha))
    if not ordered:
        return []

    max_gap = timedelta(hours=config.max_gap_hours)
    max_span = timedelta(hours=config.max_unit_hours)
    max_commits = max(1, config.max_commits_per_unit)

    units: list[WorkUnitData] = []
    current: list[ClusterCommit] = [ordered[0]]
    for commit in ordered[1:]:
        gap = commit.committed_at - current[-1].committed_at
        span = commit.committed_at - current[0].committed_at
        if gap > max_gap or span > max_span or len(current) >= max_commits:
            units.append(_build_unit(current, config))
            current = [commit]
        else:
            current.append(commit)
    units.append(_build_unit(current, config))
    return units


def clustering_stats(units: list[WorkUnitData]) -> dict:
    if not units:
        return {"total_units": 0, "avg_commits_per_unit": 0.0, "avg_lines_per_unit": 0.0,
                "hotfix_units": 0, "revert_units": 0}
    total_commits = sum(u.commit_count for u in units)
    total_lines = sum(u.lines_changed for u in units)
    return {
        "total_units": len(units),
        "avg_commits_per_unit": round(total_commits / len(units), 1),
        "avg_lines_per_unit": round(total_lines / len(units), 1),
        "hotfix_units": sum(1 for u in units if u.is_hotfix),
        "revert_units": sum(1 for u in units if u.has_revert),
    }
