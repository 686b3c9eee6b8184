from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP

from retro import services
from retro.config import RunOptions
from retro.db import init_db, session_scope
from retro.errors import RetroError

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def retro_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Retro",
    instructions=(
        "Retro analyses one contributor's year of work in a GitHub organization. "
        "Start a run with start_analysis(), poll get_analysis(run_id) until it is "
        "AWAITING_AI_CONFIRMATION, read get_interim_report(run_id) and "
        "estimate_review_cost(run_id), then "
        "confirm_ai_review(run_id). Read the result with get_report(run_id). "
        "Runs are executed by a separate worker process (`retro worker`)."
    ),
    lifespan=retro_lifespan,
    json_response=True,
)


def _error(exc: Exception) -> dict:
    return {"error": str(exc)}


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("retro://overview")
def retro_overview() -> str:
    """Overview of Retro: phases, data model and workflow."""
    return json.dumps({
        "system": "Retro: yearly contribution analysis for GitHub organizations",
        "phases": [
            "QUEUED", "SCANNING_REPOS", "SCANNING_COMMITS", "BUILDING_UNITS",
            "AWAITING_AI_CONFIRMATION", "REVIEWING", "FINALIZING", "DONE",
        ],
        "data_model": {
            "work_unit": "A burst of related commits by the contributor in one repository, with an impact score.",
            "ai_review": "LLM output for a sampled work unit (stage 1) or for the contributor (stages 2-4).",
            "report": "Yearly report with stats, summary, strengths, improvements, action items and a grade.",
        },
        "workflow": [
            "1. start_analysis(org, user, year) to queue a run.",
            "2. get_analysis(run_id) to follow progress.",
            "3. get_interim_report(run_id) and estimate_review_cost(run_id) once the run awaits confirmation.",
            "4. confirm_ai_review(run_id) or confirm_ai_review(run_id, skip=True).",
            "5. get_report(run_id) when the run is DONE.",
        ],
        "grades": "S (>=9), A (>=8), B (>=7), C (>=6), D (>=5), F otherwise, on a 0-10 overall score.",
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Runs
# ---------------------------------------------------------------------------


@mcp.tool()
def start_analysis(org: str, user: str, year: int, auto_confirm: bool = False,
                   exclude_repos: list[str] | None = None, llm_provider: str | None = None,
                   llm_model: str | None = None) -> dict:
    """Queue an analysis of one contributor's year in an organization.

    Args:
        org: GitHub organization login.
        user: Contributor login.
        year: Calendar year to analyse (2000 up to the current year).
        auto_confirm: Start the AI review without waiting for confirmation.
        exclude_repos: Repository names or glob patterns to leave out.
        llm_provider: ``anthropic`` or ``openai``; defaults to configuration.
        llm_model: Model name; defaults to the provider's default.
    """
    options = RunOptions(auto_confirm=auto_confirm, exclude_repos=exclude_repos or [],
                         llm_provider=llm_provider, llm_model=llm_model)
    with session_scope() as session:
        try:
            run = services.start_analysis(session, org, user, year, options)
        except (RetroError, ValueError) as exc:
            return _error(exc)
        session.commit()
        return services.run_status(run)


@mcp.tool()
def list_analyses(org: str | None = None, user: str | None = None, year: int | None = None) -> list[dict]:
    """List analysis runs, newest first, optionally filtered by org, user and year."""
    with session_scope() as session:
        return [services.run_to_dict(r) for r in services.list_runs(session, org, user, year)]


@mcp.tool()
def get_analysis(run_id: int) -> dict:
    """Get status, phase and progress details of an analysis run."""
    with session_scope() as session:
        try:
            return services.get_progress(session, run_id)
        except RetroError as exc:
            return _error(exc)


def _transition(fn, run_id: int, *args: Any) -> dict:
    with session_scope() as session:
        try:
            run = fn(session, run_id, *args)
        except (RetroError, ValueError) as exc:
            return _error(exc)
        session.commit()
        return services.run_status(run)


@mcp.tool()
def resume_analysis(run_id: int, full_restart: bool = False) -> dict:
    """Resume a paused or failed run.

    Args:
        run_id: The run to resume.
        full_restart: Discard work units, reviews and reports and start over.
    """
    return _transition(services.resume_analysis, run_id, "full_restart" if full_restart else "resume")


@mcp.tool()
def pause_analysis(run_id: int) -> dict:
    """Pause a run. The worker stops at the next checkpoint."""
    return _transition(services.pause_analysis, run_id)


@mcp.tool()
def cancel_analysis(run_id: int) -> dict:
    """Cancel a run. It ends FAILED with 'Cancelled by user'."""
    return _transition(services.cancel_analysis, run_id)


# ---------------------------------------------------------------------------
# Tools: Review
# ---------------------------------------------------------------------------


@mcp.tool()
def estimate_review_cost(run_id: int) -> dict:
    """Estimate tokens and USD cost for the AI review still ahead of a run."""
    with session_scope() as session:
        try:
            return services.estimate_review_cost(session, run_id).model_dump()
        except RetroError as exc:
            return _error(exc)


@mcp.tool()
def get_interim_report(run_id: int) -> dict:
    """Activity statistics of a run, available once its work units are built.

    Read this at AWAITING_AI_CONFIRMATION to decide whether the AI review is worth its cost.
    """
    with session_scope() as session:
        try:
            return services.interim_report(session, run_id)
        except RetroError as exc:
            return _error(exc)


@mcp.tool()
def confirm_ai_review(run_id: int, skip: bool = False) -> dict:
    """Continue a run that awaits AI confirmation.

    Args:
        run_id: The waiting run.
        skip: Produce the report without AI review.
    """
    return _transition(services.confirm_ai_review, run_id, skip)


# ---------------------------------------------------------------------------
# Tools: Results
# ---------------------------------------------------------------------------


@mcp.tool()
def list_work_units(run_id: int, sampled_only: bool = False) -> list[dict] | dict:
    """List a run's work units ordered by impact score."""
    with session_scope() as session:
        try:
            return services.list_work_units(session, run_id, sampled_only=sampled_only)
        except RetroError as exc:
            return _error(exc)


@mcp.tool()
def get_report(run_id: int) -> dict:
    """Get the yearly report of a finished run."""
    with session_scope() as session:
        try:
            report = services.get_report(session, run_id)
        except RetroError as exc:
            return _error(exc)
        return report or {"error": f"No report for run {run_id} yet"}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Retro MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
