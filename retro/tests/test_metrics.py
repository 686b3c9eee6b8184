"""Tests for developer metrics and diff excerpts."""
from __future__ import annotations

from datetime import date, datetime

from retro.diffs import TRUNCATED, build_unit_diff, summarize_diff
from retro.metrics import commit_quality_metrics, compute_developer_metrics, longest_streak
from retro.models import Commit, CommitFile, PullRequest, Repository

API = Repository(org_login="acme", name="api", full_name="acme/api")
WEB = Repository(org_login="acme", name="web", full_name="acme/web")


def _commit(sha: str, when: datetime, message: str = "feat: thing", repo: Repository = API,
            paths: tuple[str, ...] = ("src/app.py",), additions: int = 10, patch: str = "@@ -1 +1 @@\n-a\n+b") -> Commit:
    commit = Commit(sha=sha, author_login="alice", message=message, committed_at=when,
                    additions=additions, deletions=1)
    commit.repository = repo
    commit.files = [CommitFile(path=p, status="modified", additions=additions, deletions=1, patch=patch)
                    for p in paths]
    return commit


class TestMetrics:
    def test_longest_streak(self):
        days = [date(2024, 1, 1), date(2024, 1, 2), date(2024, 1, 3), date(2024, 1, 5), date(2024, 1, 2)]
        assert longest_streak(days) == 3
        assert longest_streak([]) == 0

    def test_commit_quality(self):
        commits = [
            _commit("1", datetime(2024, 1, 1, 9), "feat(api): add endpoint #12"),
            _commit("2", datetime(2024, 1, 1, 10), "Revert \"feat: add endpoint\""),
            _commit("3", datetime(2024, 1, 2, 9), "wip", paths=("tests/test_app.py",)),
            _commit("4", datetime(2024, 1, 3, 9), "fix: PROJ-7 null check"),
        ]
        quality = commit_quality_metrics(commits)
        assert quality["conventional_commit_rate"] == 50.0
        assert quality["issue_reference_rate"] == 50.0
        assert quality["revert_rate"] == 25.0
        assert quality["test_commit_rate"] == 25.0

    def test_developer_metrics(self):
        commits = [
            _commit("1", datetime(2024, 3, 2, 9)),    # Saturday morning
            _commit("2", datetime(2024, 3, 4, 14)),
            _commit("3", datetime(2024, 3, 4, 23), repo=WEB),
        ]
        prs = [
            PullRequest(number=1, author_login="alice", created_at=datetime(2024, 3, 4),
                        merged_at=datetime(2024, 3, 5), additions=30, deletions=10),
            PullRequest(number=2, author_login="alice", created_at=datetime(2024, 4, 1),
                        additions=10, deletions=0),
        ]
        metrics = compute_developer_metrics(commits, prs)
        assert metrics["productivity"]["total_commits"] == 3
        assert metrics["productivity"]["working_days"] == 2
        assert metrics["productivity"]["net_lines"] == 27
        assert metrics["work_pattern"]["weekend_work_ratio"] == 33.3
        assert metrics["work_pattern"]["time_distribution"]["night"] == 33.3
        assert metrics["diversity"]["primary_repository"] == "acme/api"
        assert metrics["pr_activity"] == {"opened": 2, "merged": 1, "merge_rate": 50.0, "avg_lines_per_pr": 25.0}

    def test_empty(self):
        metrics = compute_developer_metrics([], [])
        assert metrics["productivity"]["avg_commits_per_day"] == 0.0
        assert metrics["diversity"]["primary_repository"] is None


class TestDiffs:
    def test_summarize_truncates_long_sections(self):
        diff = "--- a/x.py\n+++ b/x.py\n" + "\n".join(f"+line {i}" for i in range(200))
        out = summarize_diff(diff, max_lines=10)
        assert out.count("\n") == 10
        assert out.endswith(TRUNCATED)

    def test_unit_diff_uses_largest_commits(self):
        commits = [
            _commit("aaaaaaa1", datetime(2024, 1, 1), "small", additions=1),
            _commit("bbbbbbb2", datetime(2024, 1, 1), "big", additions=500),
        ]
        out = build_unit_diff(commits, max_commits=1)
        assert out.startswith("### bbbbbbb big")
        assert "small" not in out

    def test_no_patches(self):
        assert build_unit_diff([_commit("c", datetime(2024, 1, 1), patch="")]) == ""

    def test_token_budget(self):
        big_patch = "@@ -1 +1 @@\n" + "\n".join("+" + "x" * 70 for _ in range(60))
        commits = [_commit(f"{i}" * 7, datetime(2024, 1, 1), additions=100 - i, patch=big_patch) for i in range(1, 4)]
        out = build_unit_diff(commits, max_tokens=500, max_lines=100, max_chars_per_file=10_000)
        assert len(out) <= 500 * 4 + len(TRUNCATED) + 1
        assert out.endswith(TRUNCATED)
