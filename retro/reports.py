"""Yearly report assembly for the FINALIZING phase."""
from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from retro.models import AiReview, AnalysisRun, Commit, Repository, WorkUnit, YearlyReport
from retro.stages import calculate_overall_score, grade_for
from retro.utils import json_dump, json_parse, year_bounds

log = logging.getLogger(__name__)

NO_ACTIVITY_SUMMARY = "No activity recorded for {user} in {org} during {year}."
NO_AI_SUMMARY = (
    "{user} made {commits} commits across {repos} repositories in {year}. "
    "AI review was not run, so this report contains activity statistics only."
)


def contributor_commits(session: Session, run: AnalysisRun) -> list[Commit]:
    start, end = year_bounds(run.year)
    return list(session.execute(
        select(Commit)
        .join(Repository, Commit.repo_id == Repository.id)
        .where(
            Repository.org_login == run.org_login,
            func.lower(Commit.author_login) == run.user_login.lower(),
            Commit.committed_at >= start,
            Commit.committed_at < end,
        )
        .order_by(Commit.committed_at, Commit.sha)
    ).scalars().all())


def compute_report_stats(commits: list[Commit], units: list[WorkUnit]) -> dict[str, Any]:
    total = len(commits)
    per_repo = Counter(c.repository.full_name for c in commits)
    monthly = [0] * 12
    for c in commits:
        monthly[c.committed_at.month - 1] += 1
    scores = [u.impact_score for u in units]
    return {
        "total_commits": total,
        "total_work_units": len(units),
        "total_additions": sum(c.additions for c in commits),
        "total_deletions": sum(c.deletions for c in commits),
        "avg_impact_score": round(sum(scores) / len(scores), 2) if scores else 0.0,
        "top_repos": [
            {"name": name, "commits": n, "percentage": round(n / total * 100, 1)}
            for name, n in per_repo.most_common(5)
        ],
        "work_type_distribution": dict(Counter(u.work_type for u in units).most_common()),
        "monthly_activity": [{"month": i + 1, "commits": n} for i, n in enumerate(monthly)],
        "sampled_units": sum(1 for u in units if u.is_sampled),
    }


IMPACT_BUCKETS = [(20, "0-20"), (40, "20-40"), (60, "40-60"), (80, "60-80"), (100, "80-100")]
INTERIM_TOP_UNITS = 10


def _ratio(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


def compute_interim_stats(commits: list[Commit], units: list[WorkUnit]) -> dict[str, Any]:
    """Quantitative picture of the year available before any AI review.

    Extends :func:`compute_report_stats` with active days, per-month
    volumes, full per-repository contribution and the impact distribution.
    """
    stats = compute_report_stats(commits, units)
    total = stats["total_commits"]
    active_days = len({c.committed_at.date() for c in commits})

    months = [{"month": i + 1, "commits": 0, "work_units": 0, "additions": 0, "deletions": 0,
               "files_changed": 0} for i in range(12)]
    for c in commits:
        m = months[c.committed_at.month - 1]
        m["commits"] += 1
        m["additions"] += c.additions
        m["deletions"] += c.deletions
        m["files_changed"] += c.files_changed
    for u in units:
        months[u.start_at.month - 1]["work_units"] += 1

    repos: dict[str, dict[str, Any]] = {}
    for c in commits:
        entry = repos.setdefault(c.repository.full_name, {"name": c.repository.full_name, "commits": 0,
                                                          "additions": 0, "deletions": 0})
        entry["commits"] += 1
        entry["additions"] += c.additions
        entry["deletions"] += c.deletions
    contribution = sorted(repos.values(), key=lambda r: (-r["commits"], r["name"]))
    for entry in contribution:
        entry["percentage"] = _ratio(entry["commits"], total)

    distribution = {label: 0 for _, label in IMPACT_BUCKETS}
    distribution["100+"] = 0
    for u in units:
        label = next((lbl for bound, lbl in IMPACT_BUCKETS if u.impact_score < bound), "100+")
        distribution[label] += 1
    top = sorted(units, key=lambda u: (-u.impact_score, u.id))[:INTERIM_TOP_UNITS]

    stats.update({
        "total_files_changed": sum(c.files_changed for c in commits),
        "active_days": active_days,
        "avg_daily_commits": round(total / active_days, 1) if active_days else 0.0,
        "avg_commits_per_work_unit": round(total / len(units), 1) if units else 0.0,
        "monthly_activity": months,
        "repo_contribution": contribution,
        "hotfix_ratio": _ratio(sum(1 for u in units if u.is_hotfix), len(units)),
        "revert_ratio": _ratio(sum(1 for u in units if u.has_revert), len(units)),
        "impact_distribution": [{"range": k, "count": v} for k, v in distribution.items()],
        "top_work_units": [
            {
                "id": u.id,
                "repository": u.repository.full_name if u.repository else "",
                "impact_score": u.impact_score,
                "commit_count": u.commit_count,
                "primary_paths": json_parse(u.primary_paths_json, []),
            }
            for u in top
        ],
    })
    return stats


def _latest_stage(session: Session, run: AnalysisRun, stage: int) -> dict[str, Any] | None:
    review = session.execute(
        select(AiReview)
        .where(AiReview.run_id == run.id, AiReview.stage == stage, AiReview.user_login == run.user_login,
               AiReview.work_unit_id.is_(None))
        .order_by(AiReview.id.desc())
    ).scalars().first()
    return json_parse(review.result_json) if review else None


def build_report(session: Session, run: AnalysisRun, review_failures: int = 0) -> YearlyReport:
    """Replace the run's report for its contributor (caller must commit)."""
    session.execute(delete(YearlyReport).where(
        YearlyReport.run_id == run.id, YearlyReport.user_login == run.user_login,
    ))
    commits = contributor_commits(session, run)
    units = list(session.execute(select(WorkUnit).where(WorkUnit.run_id == run.id)).scalars().all())
    stats = compute_report_stats(commits, units)
    stats["review_failures"] = review_failures

    report = YearlyReport(run_id=run.id, user_login=run.user_login, year=run.year, stats_json=json_dump(stats))
    if not commits:
        report.summary = NO_ACTIVITY_SUMMARY.format(user=run.user_login, org=run.org_login, year=run.year)
        report.improvements_json = json_dump([])
        report.action_items_json = json_dump([])
        report.is_placeholder = True
        session.add(report)
        log.info("Run %d: no activity for %s, placeholder report created", run.id, run.user_login)
        return report

    stage2 = _latest_stage(session, run, 2)
    stage3 = _latest_stage(session, run, 3)
    stage4 = _latest_stage(session, run, 4)
    if stage4 is None:
        report.summary = NO_AI_SUMMARY.format(
            user=run.user_login, commits=len(commits), repos=len(stats["top_repos"]), year=run.year,
        )
        report.is_placeholder = True
    else:
        overall = calculate_overall_score(stage4)
        report.summary = stage4.get("executive_summary", "")
        report.strengths_json = json_dump(
            (stage3 or {}).get("strengths_to_leverage") or stage4.get("top_achievements", [])
        )
        report.improvements_json = json_dump(stage4.get("key_improvements", []))
        report.action_items_json = json_dump(stage4.get("action_items", []))
        report.overall_score = overall
        report.grade = grade_for(overall)
    report.ai_insights_json = json_dump({"work_pattern": stage2, "growth": stage3, "summary": stage4})
    session.add(report)
    return report


def report_to_dict(report: YearlyReport) -> dict[str, Any]:
    return {
        "id": report.id,
        "run_id": report.run_id,
        "user_login": report.user_login,
        "year": report.year,
        "summary": report.summary,
        "stats": json_parse(report.stats_json),
        "strengths": json_parse(report.strengths_json, []),
        "improvements": json_parse(report.improvements_json, []),
        "action_items": json_parse(report.action_items_json, []),
        "ai_insights": json_parse(report.ai_insights_json),
        "overall_score": report.overall_score,
        "grade": report.grade,
        "is_placeholder": report.is_placeholder,
    }
