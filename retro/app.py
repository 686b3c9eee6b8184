from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from retro import services
from retro.config import get_settings
from retro.db import get_session, init_db
from retro.errors import InvalidTransitionError, RunConflictError, RunNotFoundError
from retro.schemas import (
    AnalysisCreate,
    AnalysisOut,
    ConfirmRequest,
    CostEstimateOut,
    InterimReportOut,
    JobLogOut,
    ProgressOut,
    ReportOut,
    ResumeRequest,
    RunStatusOut,
    WorkUnitOut,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    worker = None
    if get_settings().embedded_worker:
        from retro.worker import AnalysisWorker
        worker = AnalysisWorker()
        worker.start()
    yield
    if worker is not None:
        worker.stop()


app = FastAPI(
    title="Retro",
    version="0.1.0",
    description=(
        "Contribution analysis API. Scans an organization's GitHub history for one "
        "contributor and year, clusters commits into work units, reviews a sample "
        "with an LLM and produces a yearly report. Runs execute in a background worker."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Analyses", "description": "Start, inspect and control analysis runs."},
        {"name": "Review", "description": "Cost estimate and AI review confirmation."},
        {"name": "Results", "description": "Work units, yearly reports and job logs."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@app.exception_handler(RunNotFoundError)
async def _not_found(request: Request, exc: RunNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(RunConflictError)
async def _conflict(request: Request, exc: RunConflictError):
    return JSONResponse(status_code=409, content={"detail": str(exc), "run_id": exc.run_id})


@app.exception_handler(InvalidTransitionError)
async def _invalid_transition(request: Request, exc: InvalidTransitionError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Routes: Analyses
# ---------------------------------------------------------------------------


@app.post("/api/analyses", response_model=RunStatusOut, status_code=201,
          tags=["Analyses"], summary="Start an analysis for one contributor and year")
async def start_analysis(body: AnalysisCreate, session: Session = Depends(db_session)):
    try:
        run = services.start_analysis(session, body.org_login, body.user_login, body.year, body.options)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    session.commit()
    return services.run_status(run)


@app.get("/api/analyses", response_model=list[AnalysisOut],
         tags=["Analyses"], summary="List analysis runs, newest first")
async def list_analyses(
    org: str | None = Query(None, description="Organization login"),
    user: str | None = Query(None, description="Contributor login"),
    year: int | None = Query(None),
    session: Session = Depends(db_session),
):
    return [services.run_to_dict(r) for r in services.list_runs(session, org, user, year)]


@app.get("/api/analyses/{run_id}", response_model=ProgressOut,
         tags=["Analyses"], summary="Get status, phase and progress of a run")
async def get_analysis(run_id: int, session: Session = Depends(db_session)):
    return services.get_progress(session, run_id)


@app.post("/api/analyses/{run_id}/resume", response_model=RunStatusOut,
          tags=["Analyses"], summary="Resume a paused or failed run, or restart it from scratch")
async def resume_analysis(run_id: int, body: ResumeRequest | None = None, session: Session = Depends(db_session)):
    run = services.resume_analysis(session, run_id, (body or ResumeRequest()).mode)
    session.commit()
    return services.run_status(run)


@app.post("/api/analyses/{run_id}/pause", response_model=RunStatusOut,
          tags=["Analyses"], summary="Pause a running analysis")
async def pause_analysis(run_id: int, session: Session = Depends(db_session)):
    run = services.pause_analysis(session, run_id)
    session.commit()
    return services.run_status(run)


@app.post("/api/analyses/{run_id}/cancel", response_model=RunStatusOut,
          tags=["Analyses"], summary="Cancel an analysis (marks it FAILED)")
async def cancel_analysis(run_id: int, session: Session = Depends(db_session)):
    run = services.cancel_analysis(session, run_id)
    session.commit()
    return services.run_status(run)


# ---------------------------------------------------------------------------
# Routes: Review
# ---------------------------------------------------------------------------


@app.get("/api/analyses/{run_id}/estimate", response_model=CostEstimateOut,
         tags=["Review"], summary="Estimate tokens and cost of the remaining AI review")
async def estimate_cost(run_id: int, session: Session = Depends(db_session)):
    return services.estimate_review_cost(session, run_id).model_dump()


@app.get("/api/analyses/{run_id}/interim-report", response_model=InterimReportOut,
         tags=["Review"], summary="Activity statistics available before the AI review")
async def interim_report(run_id: int, session: Session = Depends(db_session)):
    return services.interim_report(session, run_id)


@app.post("/api/analyses/{run_id}/confirm", response_model=RunStatusOut,
          tags=["Review"], summary="Confirm (or skip) the AI review of a waiting run")
async def confirm_review(run_id: int, body: ConfirmRequest | None = None, session: Session = Depends(db_session)):
    run = services.confirm_ai_review(session, run_id, skip=(body or ConfirmRequest()).skip)
    session.commit()
    return services.run_status(run)


# ---------------------------------------------------------------------------
# Routes: Results
# ---------------------------------------------------------------------------


@app.get("/api/analyses/{run_id}/work-units", response_model=list[WorkUnitOut],
         tags=["Results"], summary="List work units with impact scores")
async def list_work_units(run_id: int, sampled: bool = Query(False, description="Only sampled units"),
                          session: Session = Depends(db_session)):
    return services.list_work_units(session, run_id, sampled_only=sampled)


@app.get("/api/analyses/{run_id}/report", response_model=ReportOut,
         tags=["Results"], summary="Get the contributor's yearly report")
async def get_report(run_id: int, session: Session = Depends(db_session)):
    report = services.get_report(session, run_id)
    if report is None:
        raise HTTPException(404, "Report not found")
    return report


@app.get("/api/analyses/{run_id}/logs", response_model=list[JobLogOut],
         tags=["Results"], summary="List the job log entries of a run")
async def list_logs(run_id: int, session: Session = Depends(db_session)):
    return services.list_job_logs(session, run_id)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main(host: str = "127.0.0.1", port: int = 8001, reload: bool = False):
    import uvicorn
    uvicorn.run("retro.app:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    main()
