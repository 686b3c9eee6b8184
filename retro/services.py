"""Operations exposed to the API, MCP server and CLI.

All functions take an open session and leave committing to the caller,
so each surface commits a state change and its queue message together.
"""
from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from retro.config import RunOptions, Settings, get_settings
from retro.errors import InvalidTransitionError, RunConflictError, RunNotFoundError
from retro.models import AnalysisRun, JobLog, Repository, WorkUnit, YearlyReport
from retro.orchestrator import ReviewOrchestrator
from retro.pipeline import CANCELLED_MESSAGE, STOP_STATUSES, TERMINAL_STATUSES, RestartMode, RunStatus
from retro.progress import CostEstimate, load_progress
from retro.reports import compute_interim_stats, contributor_commits, report_to_dict
from retro.utils import json_parse, utc_now
from retro.worker import enqueue_run

MIN_YEAR = 2000


def get_run(session: Session, run_id: int) -> AnalysisRun:
    run = session.get(AnalysisRun, run_id)
    if run is None:
        raise RunNotFoundError(run_id)
    return run


def find_active_run(session: Session, org_login: str, user_login: str, year: int) -> AnalysisRun | None:
    return session.execute(
        select(AnalysisRun).where(
            func.lower(AnalysisRun.org_login) == org_login.lower(),
            func.lower(AnalysisRun.user_login) == user_login.lower(),
            AnalysisRun.year == year,
            AnalysisRun.status.not_in(TERMINAL_STATUSES),
        )
    ).scalars().first()


def run_status(run: AnalysisRun) -> dict[str, Any]:
    return {"run_id": run.id, "status": run.status}


def run_to_dict(run: AnalysisRun) -> dict[str, Any]:
    return {
        "run_id": run.id,
        "org_login": run.org_login,
        "user_login": run.user_login,
        "year": run.year,
        "status": run.status,
        "phase": run.phase,
        "progress": load_progress(run.progress_json).model_dump(),
        "options": json_parse(run.options_json),
        "error": run.error,
        "created_at": run.created_at.isoformat() if run.created_at else None,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
    }


# ---------------------------------------------------------------------------
# Lifecycle operations (caller must commit)
# ---------------------------------------------------------------------------


def start_analysis(session: Session, org_login: str, user_login: str, year: int,
                   options: RunOptions | dict[str, Any] | None = None) -> AnalysisRun:
    """Create a run and queue it.

    Refuses a second run for the same (org, contributor, year) while one is
    still non-terminal.
    """
    org_login, user_login = org_login.strip(), user_login.strip()
    if not org_login or not user_login:
        raise ValueError("Organization and contributor are required")
    current_year = datetime.now(UTC).year
    if not MIN_YEAR <= year <= current_year:
        raise ValueError(f"Year must be between {MIN_YEAR} and {current_year}")
    opts = options if isinstance(options, RunOptions) else RunOptions.model_validate(options or {})

    active = find_active_run(session, org_login, user_login, year)
    if active is not None:
        raise RunConflictError(
            f"Run {active.id} for {org_login}/{user_login}/{year} is still {active.status}", run_id=active.id,
        )
    run = AnalysisRun(
        org_login=org_login, user_login=user_login, year=year,
        status=RunStatus.QUEUED.value, phase=RunStatus.QUEUED.value,
        options_json=opts.model_dump_json(),
    )
    session.add(run)
    session.flush()
    enqueue_run(session, run.id, RestartMode.RESUME)
    return run


def resume_analysis(session: Session, run_id: int, mode: RestartMode | str = RestartMode.RESUME) -> AnalysisRun:
    """Re-queue a paused or failed run.

    ``resume`` continues from the last recorded phase; ``full_restart``
    clears derived data and starts over (also allowed for finished runs).
    """
    mode = RestartMode(mode)
    run = get_run(session, run_id)
    allowed = set(STOP_STATUSES)
    if mode == RestartMode.FULL_RESTART:
        allowed.add(RunStatus.DONE.value)
    if run.status not in allowed:
        raise InvalidTransitionError(f"Cannot {mode.value} a run that is {run.status}")

    active = find_active_run(session, run.org_login, run.user_login, run.year)
    if active is not None and active.id != run.id:
        raise RunConflictError(f"Run {active.id} for the same contributor and year is still {active.status}",
                               run_id=active.id)

    run.error = None
    run.finished_at = None
    if mode == RestartMode.RESUME and run.phase == RunStatus.AWAITING_AI_CONFIRMATION.value \
            and not RunOptions.model_validate(json_parse(run.options_json)).ai_confirmed:
        # Nothing to run until someone confirms or skips.
        run.status = RunStatus.AWAITING_AI_CONFIRMATION.value
        return run
    run.status = RunStatus.QUEUED.value
    enqueue_run(session, run.id, mode)
    return run


def pause_analysis(session: Session, run_id: int) -> AnalysisRun:
    run = get_run(session, run_id)
    if run.status in TERMINAL_STATUSES or run.status == RunStatus.PAUSED.value:
        raise InvalidTransitionError(f"Cannot pause a run that is {run.status}")
    run.status = RunStatus.PAUSED.value
    return run


def cancel_analysis(session: Session, run_id: int) -> AnalysisRun:
    run = get_run(session, run_id)
    if run.status in TERMINAL_STATUSES:
        raise InvalidTransitionError(f"Cannot cancel a run that is {run.status}")
    run.status = RunStatus.FAILED.value
    run.error = CANCELLED_MESSAGE
    run.finished_at = utc_now()
    return run


def confirm_ai_review(session: Session, run_id: int, skip: bool = False) -> AnalysisRun:
    """Unblock a run waiting at AWAITING_AI_CONFIRMATION, with or without AI review."""
    run = get_run(session, run_id)
    if run.status != RunStatus.AWAITING_AI_CONFIRMATION.value:
        raise InvalidTransitionError(f"Run {run_id} is {run.status}, not awaiting AI confirmation")
    options = RunOptions.model_validate(json_parse(run.options_json))
    options = options.model_copy(update={"ai_confirmed": True, "skip_ai_review": skip})
    run.options_json = options.model_dump_json()
    run.status = RunStatus.FINALIZING.value if skip else RunStatus.REVIEWING.value
    enqueue_run(session, run.id, RestartMode.RESUME)
    return run


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def get_progress(session: Session, run_id: int) -> dict[str, Any]:
    run = get_run(session, run_id)
    data = run_to_dict(run)
    data["work_units"] = session.execute(
        select(func.count(WorkUnit.id)).where(WorkUnit.run_id == run_id)
    ).scalar_one()
    data["has_report"] = session.execute(
        select(func.count(YearlyReport.id)).where(YearlyReport.run_id == run_id)
    ).scalar_one() > 0
    return data


def estimate_review_cost(session: Session, run_id: int, settings: Settings | None = None) -> CostEstimate:
    """Token and cost estimate for the AI review still ahead of this run."""
    settings = settings or get_settings()
    run = get_run(session, run_id)
    config = settings.resolve(RunOptions.model_validate(json_parse(run.options_json)))
    units = list(session.execute(
        select(WorkUnit).where(WorkUnit.run_id == run_id, WorkUnit.is_sampled.is_(True))
    ).scalars().all())
    orchestrator = ReviewOrchestrator(session, None, config.review)
    return orchestrator.estimate(run, units, provider_name=config.llm_provider, model=config.llm_model)


def interim_report(session: Session, run_id: int) -> dict[str, Any]:
    """Activity statistics for a run whose work units exist, before AI review.

    Raises InvalidTransitionError while units have not been built yet.
    """
    run = get_run(session, run_id)
    units = list(session.execute(select(WorkUnit).where(WorkUnit.run_id == run_id)).scalars().all())
    if not units:
        raise InvalidTransitionError(
            f"Run {run_id} has no work units yet (status {run.status}); "
            f"the interim report is available from {RunStatus.AWAITING_AI_CONFIRMATION.value}"
        )
    return {
        "run_id": run.id,
        "org_login": run.org_login,
        "user_login": run.user_login,
        "year": run.year,
        "status": run.status,
        "generated_at": utc_now().isoformat(),
        "stats": compute_interim_stats(contributor_commits(session, run), units),
    }


def list_runs(session: Session, org_login: str | None = None, user_login: str | None = None,
              year: int | None = None) -> list[AnalysisRun]:
    stmt = select(AnalysisRun)
    if org_login:
        stmt = stmt.where(func.lower(AnalysisRun.org_login) == org_login.lower())
    if user_login:
        stmt = stmt.where(func.lower(AnalysisRun.user_login) == user_login.lower())
    if year:
        stmt = stmt.where(AnalysisRun.year == year)
    return list(session.execute(stmt.order_by(AnalysisRun.id.desc())).scalars().all())


def list_work_units(session: Session, run_id: int, sampled_only: bool = False) -> list[dict[str, Any]]:
    get_run(session, run_id)
    stmt = (
        select(WorkUnit, Repository.full_name)
        .join(Repository, WorkUnit.repo_id == Repository.id)
        .where(WorkUnit.run_id == run_id)
    )
    if sampled_only:
        stmt = stmt.where(WorkUnit.is_sampled.is_(True))
    rows = session.execute(stmt.order_by(WorkUnit.impact_score.desc(), WorkUnit.id)).all()
    return [
        {
            "id": u.id,
            "repository": repo_name,
            "start_at": u.start_at.isoformat(),
            "end_at": u.end_at.isoformat(),
            "commit_count": u.commit_count,
            "additions": u.additions,
            "deletions": u.deletions,
            "files_changed": u.files_changed,
            "primary_paths": json_parse(u.primary_paths_json, []),
            "work_type": u.work_type,
            "impact_score": u.impact_score,
            "impact_factors": json_parse(u.impact_factors_json),
            "is_hotfix": u.is_hotfix,
            "has_revert": u.has_revert,
            "is_sampled": u.is_sampled,
            "sample_reason": u.sample_reason,
        }
        for u, repo_name in rows
    ]


def get_report(session: Session, run_id: int) -> dict[str, Any] | None:
    run = get_run(session, run_id)
    report = session.execute(
        select(YearlyReport).where(YearlyReport.run_id == run_id, YearlyReport.user_login == run.user_login)
    ).scalars().first()
    return report_to_dict(report) if report else None


def list_job_logs(session: Session, run_id: int) -> list[dict[str, Any]]:
    get_run(session, run_id)
    logs = session.execute(
        select(JobLog).where(JobLog.run_id == run_id).order_by(JobLog.id)
    ).scalars().all()
    return [
        {
            "id": entry.id,
            "job_type": entry.job_type,
            "status": entry.status,
            "input": json_parse(entry.input_json),
            "output": json_parse(entry.output_json),
            "error": entry.error,
            "started_at": entry.started_at.isoformat() if entry.started_at else None,
            "ended_at": entry.ended_at.isoformat() if entry.ended_at else None,
        }
        for entry in logs
    ]
