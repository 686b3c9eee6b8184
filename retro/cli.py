from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from pathlib import Path
from typing import Any

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from retro import services
from retro.config import RunOptions, get_settings
from retro.db import init_db, session_scope
from retro.errors import RetroError
from retro.pipeline import TERMINAL_STATUSES, RestartMode, RunStatus

app = typer.Typer(help="Yearly contribution analysis for GitHub organizations")
console = Console()


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=True)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING if verbose < 2 else logging.DEBUG)


@app.callback()
def app_callback(
    ctx: typer.Context,
    home: str | None = typer.Option(None, "--home", help="Directory holding retro.db and config.yaml."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    if home:
        os.environ["RETRO_HOME"] = str(Path(home).expanduser().resolve())
        get_settings.cache_clear()
    ctx.obj = {"json_output": json_output, "verbose": verbose}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _format_scalar(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.4f}"
    if value is None:
        return "-"
    return str(value)


def _render_table(title: str, rows: list[tuple[str, str]], *, border_style: str = "cyan") -> None:
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for key, value in rows:
        table.add_row(key, value)
    console.print(Panel(table, title=title, border_style=border_style))


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))
        return

    scalar_rows: list[tuple[str, str]] = []
    nested_rows: list[tuple[str, Any]] = []
    for key, value in payload.items():
        if isinstance(value, (str, int, float, bool)) or value is None:
            scalar_rows.append((key, _format_scalar(value)))
        else:
            nested_rows.append((key, value))

    if scalar_rows:
        _render_table(title, scalar_rows)
    for key, value in nested_rows:
        if isinstance(value, dict):
            _render_table(
                f"{title} · {key}",
                [(k, _format_scalar(v) if not isinstance(v, (dict, list)) else json.dumps(v, default=str)[:120])
                 for k, v in value.items()],
                border_style="magenta",
            )
        elif isinstance(value, list):
            _render_table(
                f"{title} · {key}",
                [("items", str(len(value))), ("preview", json.dumps(value[:3], ensure_ascii=False, default=str))],
                border_style="yellow",
            )


def _fail(exc: Exception) -> None:
    console.print(f"[red]Error:[/red] {exc}")
    raise typer.Exit(code=1)


def _transition(ctx: typer.Context, title: str, fn, run_id: int, *args: Any) -> None:
    init_db()
    with session_scope() as session:
        try:
            run = fn(session, run_id, *args)
        except (RetroError, ValueError) as exc:
            _fail(exc)
        session.commit()
        _print(title, services.run_status(run), ctx)


# ---------------------------------------------------------------------------
# Servers
# ---------------------------------------------------------------------------


@app.command("serve")
def serve_command(
    host: str = typer.Option("127.0.0.1", help="Bind address."),
    port: int = typer.Option(8001, help="Port."),
    with_worker: bool = typer.Option(False, "--with-worker", help="Run the analysis worker inside the API process."),
) -> None:
    """Run the HTTP API."""
    from retro.app import main

    if with_worker:
        os.environ["RETRO_EMBEDDED_WORKER"] = "1"
        get_settings.cache_clear()
    main(host=host, port=port)


@app.command("worker")
def worker_command(
    max_concurrent: int | None = typer.Option(None, help="Runs processed at the same time."),
    once: bool = typer.Option(False, "--once", help="Drain the queue and exit."),
) -> None:
    """Consume queued analysis runs."""
    from retro.worker import AnalysisWorker

    init_db()
    worker = AnalysisWorker(max_concurrent=max_concurrent)
    if once:
        processed = asyncio.run(worker.process_pending())
        console.print(f"Processed {processed} queued job(s)")
        return
    worker.start()
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        worker.stop()


@app.command("mcp")
def mcp_command() -> None:
    """Run the MCP server over stdio."""
    from retro.mcp_server import main

    main()


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


def _options(auto_confirm: bool, exclude_repo: list[str], exclude_path: list[str], provider: str | None,
             model: str | None, offline: bool) -> RunOptions:
    return RunOptions(
        auto_confirm=auto_confirm, exclude_repos=exclude_repo, exclude_paths=exclude_path,
        llm_provider=provider, llm_model=model, offline=offline,
    )


@app.command("start")
def start_command(
    ctx: typer.Context,
    org: str = typer.Argument(..., help="GitHub organization login."),
    user: str = typer.Argument(..., help="Contributor login."),
    year: int = typer.Argument(..., help="Calendar year."),
    auto_confirm: bool = typer.Option(False, "--auto-confirm", help="Skip the AI cost confirmation step."),
    exclude_repo: list[str] = typer.Option([], "--exclude-repo", help="Repository name or glob to skip."),
    exclude_path: list[str] = typer.Option([], "--exclude-path", help="File path glob to ignore."),
    provider: str | None = typer.Option(None, help="LLM provider: anthropic or openai."),
    model: str | None = typer.Option(None, help="LLM model name."),
    offline: bool = typer.Option(False, "--offline", help="Use already-ingested commits only."),
) -> None:
    """Queue an analysis run for the worker."""
    init_db()
    with session_scope() as session:
        try:
            run = services.start_analysis(session, org, user, year,
                                          _options(auto_confirm, exclude_repo, exclude_path, provider, model, offline))
        except (RetroError, ValueError) as exc:
            _fail(exc)
        session.commit()
        _print("start", services.run_status(run), ctx)


@app.command("run")
def run_command(
    ctx: typer.Context,
    org: str = typer.Argument(..., help="GitHub organization login."),
    user: str = typer.Argument(..., help="Contributor login."),
    year: int = typer.Argument(..., help="Calendar year."),
    auto_confirm: bool = typer.Option(True, "--auto-confirm/--confirm", help="Review without stopping for confirmation."),
    exclude_repo: list[str] = typer.Option([], "--exclude-repo", help="Repository name or glob to skip."),
    exclude_path: list[str] = typer.Option([], "--exclude-path", help="File path glob to ignore."),
    provider: str | None = typer.Option(None, help="LLM provider: anthropic or openai."),
    model: str | None = typer.Option(None, help="LLM model name."),
    offline: bool = typer.Option(False, "--offline", help="Use already-ingested commits only."),
) -> None:
    """Start an analysis and drive it in this process."""
    from retro.worker import AnalysisWorker

    init_db()
    with session_scope() as session:
        try:
            run = services.start_analysis(session, org, user, year,
                                          _options(auto_confirm, exclude_repo, exclude_path, provider, model, offline))
        except (RetroError, ValueError) as exc:
            _fail(exc)
        session.commit()
        run_id = run.id

    worker = AnalysisWorker()
    started = time.perf_counter()
    if _wants_json(ctx):
        asyncio.run(worker.process_pending())
    else:
        with console.status(f"[bold cyan]Analysing {org}/{user} {year}[/bold cyan]", spinner="dots"):
            asyncio.run(worker.process_pending())
        console.print(f"[green]✓[/green] run {run_id} ({time.perf_counter() - started:.2f}s)")

    with session_scope() as session:
        progress = services.get_progress(session, run_id)
        if progress["status"] == RunStatus.DONE.value:
            _print("report", services.get_report(session, run_id) or {}, ctx)
        else:
            _print("status", progress, ctx)


@app.command("status")
def status_command(
    ctx: typer.Context,
    run_id: int | None = typer.Argument(None, help="Run id; lists all runs when omitted."),
) -> None:
    """Show a run's progress, or list runs."""
    init_db()
    with session_scope() as session:
        if run_id is None:
            runs = services.list_runs(session)
            if _wants_json(ctx):
                typer.echo(json.dumps([services.run_to_dict(r) for r in runs], indent=2, default=str))
                return
            table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
            for column in ("ID", "Org", "User", "Year", "Status", "Message"):
                table.add_column(column)
            for r in runs:
                data = services.run_to_dict(r)
                style = "green" if r.status == RunStatus.DONE.value else ("red" if r.status in TERMINAL_STATUSES else "")
                table.add_row(str(r.id), r.org_login, r.user_login, str(r.year),
                              f"[{style}]{r.status}[/{style}]" if style else r.status,
                              r.error or data["progress"].get("message", ""))
            console.print(table)
            return
        try:
            _print(f"run {run_id}", services.get_progress(session, run_id), ctx)
        except RetroError as exc:
            _fail(exc)


@app.command("estimate")
def estimate_command(ctx: typer.Context, run_id: int = typer.Argument(...)) -> None:
    """Estimate the cost of the remaining AI review."""
    init_db()
    with session_scope() as session:
        try:
            _print("estimate", services.estimate_review_cost(session, run_id).model_dump(), ctx)
        except RetroError as exc:
            _fail(exc)


@app.command("interim")
def interim_command(ctx: typer.Context, run_id: int = typer.Argument(...)) -> None:
    """Show activity statistics before confirming the AI review."""
    init_db()
    with session_scope() as session:
        try:
            data = services.interim_report(session, run_id)
        except RetroError as exc:
            _fail(exc)
        if _wants_json(ctx):
            _print(f"interim {run_id}", data, ctx)
            return
        stats = data.pop("stats")
        _print(f"interim {run_id}", data, ctx)
        summary = {k: v for k, v in stats.items() if not isinstance(v, (dict, list))}
        _render_table("activity", [(k, _format_scalar(v)) for k, v in summary.items()])
        _render_table(
            "monthly activity",
            [(str(m["month"]), f'{m["commits"]} commits, {m["work_units"]} units, '
                               f'+{m["additions"]}/-{m["deletions"]}')
             for m in stats["monthly_activity"]],
            border_style="magenta",
        )
        _render_table(
            "repositories",
            [(r["name"], f'{r["commits"]} commits ({r["percentage"]}%)') for r in stats["repo_contribution"]],
            border_style="yellow",
        )


@app.command("confirm")
def confirm_command(
    ctx: typer.Context,
    run_id: int = typer.Argument(...),
    skip: bool = typer.Option(False, "--skip", help="Finish without AI review."),
) -> None:
    """Confirm (or skip) the AI review of a waiting run."""
    _transition(ctx, "confirm", services.confirm_ai_review, run_id, skip)


@app.command("pause")
def pause_command(ctx: typer.Context, run_id: int = typer.Argument(...)) -> None:
    """Pause a run at its next checkpoint."""
    _transition(ctx, "pause", services.pause_analysis, run_id)


@app.command("resume")
def resume_command(
    ctx: typer.Context,
    run_id: int = typer.Argument(...),
    full_restart: bool = typer.Option(False, "--full-restart", help="Discard derived data and start over."),
) -> None:
    """Resume a paused or failed run."""
    mode = RestartMode.FULL_RESTART if full_restart else RestartMode.RESUME
    _transition(ctx, "resume", services.resume_analysis, run_id, mode)


@app.command("cancel")
def cancel_command(ctx: typer.Context, run_id: int = typer.Argument(...)) -> None:
    """Cancel a run."""
    _transition(ctx, "cancel", services.cancel_analysis, run_id)


@app.command("report")
def report_command(ctx: typer.Context, run_id: int = typer.Argument(...)) -> None:
    """Show a run's yearly report."""
    init_db()
    with session_scope() as session:
        try:
            report = services.get_report(session, run_id)
        except RetroError as exc:
            _fail(exc)
        if report is None:
            _fail(RetroError(f"No report for run {run_id} yet"))
        _print(f"report {run_id}", report, ctx)


if __name__ == "__main__":
    app()
