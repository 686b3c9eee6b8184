"""Analysis run state machine.

Phases run strictly in order::

    QUEUED -> SCANNING_REPOS -> SCANNING_COMMITS -> BUILDING_UNITS
           -> AWAITING_AI_CONFIRMATION -> REVIEWING -> FINALIZING -> DONE

``FAILED`` and ``PAUSED`` are reachable from any non-terminal state.  Each
phase handler clears the rows it is about to rebuild, does its work, and
the driver then advances ``status``/``phase`` together with a fresh
progress snapshot.  A run is resumed by re-entering the sequence at its
recorded ``phase``; already-stored commits, work units and reviews are
reused.

Cancellation is cooperative: the driver re-reads the run's status between
phases and between items of long phases, and stops as soon as it sees
``PAUSED`` or ``FAILED``.
"""
from __future__ import annotations

import asyncio
import logging
import zlib
from collections import defaultdict
from contextlib import contextmanager
from enum import Enum
from typing import Any, Callable, Generator

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from retro.clustering import ClusterCommit, FileChange, cluster_commits, filter_excluded_files
from retro.config import EffectiveConfig, RunOptions, Settings, get_settings
from retro.errors import ConfigurationError, GitHubError, InvalidTransitionError, RunNotFoundError
from retro.github import CommitSource
from retro.llm import LLMProvider, create_provider
from retro.metrics import compute_developer_metrics
from retro.models import (
    AiReview,
    AnalysisRun,
    Commit,
    JobLog,
    PullRequest,
    RepoSummary,
    Repository,
    WorkUnit,
    WorkUnitCommit,
    YearlyReport,
)
from retro.orchestrator import ReviewOrchestrator
from retro.progress import (
    AwaitingConfirmationProgress,
    BuildingUnitsProgress,
    DoneProgress,
    FinalizingProgress,
    Progress,
    RepoScanState,
    ReviewingProgress,
    ScanningCommitsProgress,
    ScanningReposProgress,
    dump_progress,
    load_progress,
)
from retro.reports import build_report, contributor_commits
from retro.sampling import SampleCandidate, select_samples
from retro.scanner import is_excluded, scan_repositories, scan_with_retries
from retro.scoring import hotspot_files, score_work_unit
from retro.utils import json_dump, json_parse, utc_now, year_bounds

log = logging.getLogger(__name__)


class RunStatus(str, Enum):
    QUEUED = "QUEUED"
    SCANNING_REPOS = "SCANNING_REPOS"
    SCANNING_COMMITS = "SCANNING_COMMITS"
    BUILDING_UNITS = "BUILDING_UNITS"
    AWAITING_AI_CONFIRMATION = "AWAITING_AI_CONFIRMATION"
    REVIEWING = "REVIEWING"
    FINALIZING = "FINALIZING"
    DONE = "DONE"
    FAILED = "FAILED"
    PAUSED = "PAUSED"


class RestartMode(str, Enum):
    RESUME = "resume"
    FULL_RESTART = "full_restart"


TERMINAL_STATUSES = {RunStatus.DONE.value, RunStatus.FAILED.value}
STOP_STATUSES = {RunStatus.PAUSED.value, RunStatus.FAILED.value}

PHASES = [
    RunStatus.SCANNING_REPOS,
    RunStatus.SCANNING_COMMITS,
    RunStatus.BUILDING_UNITS,
    RunStatus.AWAITING_AI_CONFIRMATION,
    RunStatus.REVIEWING,
    RunStatus.FINALIZING,
]

CANCELLED_MESSAGE = "Cancelled by user"


class RunInterrupted(Exception):
    """The run was paused or cancelled while the driver was working on it."""


class _Stop(Exception):
    """A phase asked the driver to stop cleanly (awaiting confirmation)."""


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def default_sampling_seed(run: AnalysisRun) -> int:
    return zlib.crc32(f"{run.org_login}/{run.user_login}/{run.year}".lower().encode())


def entry_phase(phase: str) -> RunStatus:
    """Phase the driver re-enters for a run whose last recorded phase is *phase*."""
    if phase in (RunStatus.QUEUED.value, ""):
        return RunStatus.SCANNING_REPOS
    try:
        status = RunStatus(phase)
    except ValueError:
        return RunStatus.SCANNING_REPOS
    if status not in PHASES:
        raise InvalidTransitionError(f"Cannot resume a run from phase {phase}")
    return status


def clear_derived_data(session: Session, run_id: int, *, include_job_logs: bool = False) -> None:
    """Delete work units, reviews, summaries and reports of a run (caller must commit).

    Ingested commits and pull requests are never touched.
    """
    unit_ids = select(WorkUnit.id).where(WorkUnit.run_id == run_id)
    session.execute(delete(AiReview).where(AiReview.run_id == run_id))
    session.execute(delete(WorkUnitCommit).where(WorkUnitCommit.work_unit_id.in_(unit_ids)))
    session.execute(delete(WorkUnit).where(WorkUnit.run_id == run_id))
    session.execute(delete(RepoSummary).where(RepoSummary.run_id == run_id))
    session.execute(delete(YearlyReport).where(YearlyReport.run_id == run_id))
    if include_job_logs:
        session.execute(delete(JobLog).where(JobLog.run_id == run_id))


def _default_provider_factory(settings: Settings) -> Callable[[EffectiveConfig], LLMProvider]:
    def factory(config: EffectiveConfig) -> LLMProvider:
        try:
            return create_provider(
                config.llm_provider, config.llm_model or None,
                anthropic_api_key=settings.anthropic_api_key or None,
                openai_api_key=settings.openai_api_key or None,
                openai_base_url=settings.openai_base_url or None,
            )
        except ConfigurationError:
            raise
        except Exception as exc:
            raise ConfigurationError(f"Could not create LLM provider {config.llm_provider!r}: {exc}") from exc
    return factory


class PipelineRunner:
    """Drives one analysis run through its phases.

    Args:
        session: Session owned by the caller (worker or test).
        run_id: The run to drive.
        settings: Defaults for tuning blocks and credentials.
        source: Version-control source for the scanning phases.  When
            ``None`` the scanning phases work from already-ingested rows.
        provider: LLM provider to use; built lazily from settings when
            omitted and AI review is actually needed.
    """

    def __init__(self, session: Session, run_id: int, *, settings: Settings | None = None,
                 source: CommitSource | None = None, provider: LLMProvider | None = None,
                 provider_factory: Callable[[EffectiveConfig], LLMProvider] | None = None):
        self.session = session
        self.run_id = run_id
        self.settings = settings or get_settings()
        self.source = source
        self._provider = provider
        self._provider_factory = provider_factory or _default_provider_factory(self.settings)
        self.run: AnalysisRun = None  # type: ignore[assignment]
        self.options = RunOptions()
        self.config: EffectiveConfig = self.settings.resolve(self.options)

    # -- state helpers -------------------------------------------------------

    def _load(self) -> AnalysisRun:
        run = self.session.get(AnalysisRun, self.run_id)
        if run is None:
            raise RunNotFoundError(self.run_id)
        self.run = run
        self.options = RunOptions.model_validate(json_parse(run.options_json))
        self.config = self.settings.resolve(self.options)
        return run

    def stop_requested(self) -> bool:
        self.session.refresh(self.run, attribute_names=["status"])
        return self.run.status in STOP_STATUSES

    def _check_interrupted(self) -> None:
        if self.stop_requested():
            raise RunInterrupted(f"Run {self.run_id} is {self.run.status}")

    def _enter(self, status: RunStatus, progress: Progress) -> None:
        """Advance status and phase together with a fresh progress snapshot."""
        self.run.status = status.value
        self.run.phase = status.value
        self.run.progress_json = dump_progress(progress)
        self.session.commit()
        log.info("Run %d entered %s", self.run_id, status.value)

    def publish(self, progress: Progress) -> None:
        self.run.progress_json = dump_progress(progress)
        self.session.commit()

    @contextmanager
    def _job(self, job_type: str, payload: dict[str, Any] | None = None) -> Generator[dict[str, Any], None, None]:
        entry = JobLog(run_id=self.run_id, job_type=job_type, input_json=json_dump(payload or {}))
        self.session.add(entry)
        self.session.commit()
        output: dict[str, Any] = {}
        try:
            yield output
        except RunInterrupted:
            entry.status = "interrupted"
            entry.output_json = json_dump(output)
            entry.ended_at = utc_now()
            self.session.commit()
            raise
        except Exception as exc:
            self.session.rollback()
            entry.status = "failed"
            entry.error = str(exc)
            entry.output_json = json_dump(output)
            entry.ended_at = utc_now()
            self.session.commit()
            raise
        entry.status = "done"
        entry.output_json = json_dump(output)
        entry.ended_at = utc_now()
        self.session.commit()

    def _fail(self, exc: Exception) -> None:
        self.session.rollback()
        run = self.session.get(AnalysisRun, self.run_id)
        if run is None:
            return
        run.status = RunStatus.FAILED.value
        run.error = str(exc) or exc.__class__.__name__
        run.finished_at = utc_now()
        self.session.commit()

    def provider(self) -> LLMProvider:
        if self._provider is None:
            self._provider = self._provider_factory(self.config)
        return self._provider

    # -- driver --------------------------------------------------------------

    async def execute(self, mode: RestartMode = RestartMode.RESUME) -> str:
        """Run phases from the appropriate entry point; return the final status.

        Phase-fatal errors mark the run ``FAILED`` and are re-raised.
        """
        run = self._load()
        if mode == RestartMode.FULL_RESTART:
            clear_derived_data(self.session, run.id, include_job_logs=True)
            self._set_option(ai_confirmed=False, skip_ai_review=False)
            start = RunStatus.SCANNING_REPOS
        else:
            if run.phase == RunStatus.DONE.value:
                log.info("Run %d is already done", run.id)
                return run.status
            start = entry_phase(run.phase)
        if run.started_at is None or mode == RestartMode.FULL_RESTART:
            run.started_at = utc_now()
        run.finished_at = None
        self.session.commit()

        handlers = {
            RunStatus.SCANNING_REPOS: self.scan_repos,
            RunStatus.SCANNING_COMMITS: self.scan_commits,
            RunStatus.BUILDING_UNITS: self.build_units,
            RunStatus.AWAITING_AI_CONFIRMATION: self.await_confirmation,
            RunStatus.REVIEWING: self.review,
            RunStatus.FINALIZING: self.finalize,
        }
        try:
            for phase in PHASES[PHASES.index(start):]:
                self._check_interrupted()
                await handlers[phase]()
            self._check_interrupted()
            self.run.finished_at = utc_now()
            self._enter(RunStatus.DONE, DoneProgress(message="Analysis complete"))
        except (RunInterrupted, _Stop) as exc:
            log.info("Run %d stopped: %s", self.run_id, exc)
        except Exception as exc:
            log.exception("Run %d failed", self.run_id)
            self._fail(exc)
            raise
        return self.run.status

    # -- phases --------------------------------------------------------------

    def target_repositories(self) -> list[Repository]:
        stmt = select(Repository).where(Repository.org_login == self.run.org_login).order_by(Repository.full_name)
        repos = self.session.execute(stmt).scalars().all()
        return [
            r for r in repos
            if (self.options.include_archived or not r.is_archived)
            and not is_excluded(r.full_name, self.options.exclude_repos)
        ]

    async def scan_repos(self) -> None:
        self._enter(RunStatus.SCANNING_REPOS, ScanningReposProgress(message="Listing repositories"))
        with self._job("scan_repos", {"org": self.run.org_login}) as out:
            if self.source is not None:
                try:
                    await scan_repositories(
                        self.session, self.source, self.run.org_login,
                        include_archived=self.options.include_archived, exclude=self.options.exclude_repos,
                    )
                except GitHubError as exc:
                    raise GitHubError(f"Could not list repositories for {self.run.org_login}: {exc}",
                                      status=exc.status) from exc
            repos = self.target_repositories()
            out["repositories"] = len(repos)
        self.publish(ScanningReposProgress(
            total=len(repos), completed=len(repos), message=f"Found {len(repos)} repositories",
        ))

    async def scan_commits(self) -> None:
        previous = load_progress(self.run.progress_json)
        repos = self.target_repositories()
        known: dict[str, RepoScanState] = {}
        if isinstance(previous, ScanningCommitsProgress):
            known = {s.full_name: s for s in previous.repos}
        states = [known.get(r.full_name) or RepoScanState(full_name=r.full_name) for r in repos]
        for s in states:
            if s.status == "scanning":
                s.status = "pending"
        progress = ScanningCommitsProgress(
            total=len(states),
            completed=sum(1 for s in states if s.status == "done"),
            repos=states,
            message="Scanning commits",
        )
        self._enter(RunStatus.SCANNING_COMMITS, progress)

        since, until = year_bounds(self.run.year)
        sem = asyncio.Semaphore(max(1, self.settings.scan_repo_concurrency))
        by_name = {r.full_name: r for r in repos}
        interrupted = False

        async def scan_one(state: RepoScanState) -> None:
            nonlocal interrupted
            async with sem:
                if interrupted or self.stop_requested():
                    interrupted = True
                    return
                repo = by_name[state.full_name]
                state.status = "scanning"
                progress.current_repo = repo.full_name
                self.publish(progress)
                try:
                    if self.source is not None:
                        count = await scan_with_retries(
                            self.session, self.source, repo, self.run.user_login, since, until,
                            concurrency=self.settings.scan_commit_concurrency,
                            max_retries=self.settings.scan_max_retries,
                        )
                    else:
                        count = self._stored_commit_count(repo, since, until)
                except GitHubError as exc:
                    log.warning("Scanning %s failed: %s", repo.full_name, exc)
                    state.status = "failed"
                    state.error = str(exc)
                    progress.failed += 1
                else:
                    state.status = "done"
                    state.commits = count
                    state.error = None
                    progress.completed += 1
                progress.message = f"Scanned {progress.completed + progress.failed}/{progress.total} repositories"
                self.publish(progress)

        with self._job("scan_commits", {"repositories": len(states)}) as out:
            await asyncio.gather(*(scan_one(s) for s in states if s.status != "done"))
            out["scanned"] = progress.completed
            out["failed"] = progress.failed
            out["commits"] = sum(s.commits for s in states)
            if interrupted:
                raise RunInterrupted("Stopped while scanning commits")
        progress.current_repo = None
        self.publish(progress)

    def _stored_commit_count(self, repo: Repository, since, until) -> int:
        return self.session.execute(
            select(func.count(Commit.id)).where(
                Commit.repo_id == repo.id,
                func.lower(Commit.author_login) == self.run.user_login.lower(),
                Commit.committed_at >= since,
                Commit.committed_at < until,
            )
        ).scalar_one()

    def _cluster_inputs(self, commits: list[Commit]) -> dict[int, list[ClusterCommit]]:
        allowed = {r.id for r in self.target_repositories()}
        grouped: dict[int, list[ClusterCommit]] = defaultdict(list)
        for c in commits:
            if c.repo_id not in allowed:
                continue
            item = ClusterCommit(
                sha=c.sha,
                committed_at=c.committed_at,
                message=c.message,
                additions=c.additions,
                deletions=c.deletions,
                files=[FileChange(f.path, f.status, f.additions, f.deletions) for f in c.files],
                commit_id=c.id,
            )
            grouped[c.repo_id].append(filter_excluded_files(item, self.options.exclude_paths))
        return grouped

    async def build_units(self) -> None:
        clear_derived_data(self.session, self.run_id)
        self.session.commit()
        grouped = self._cluster_inputs(contributor_commits(self.session, self.run))
        progress = BuildingUnitsProgress(total=len(grouped), message="Clustering commits")
        self._enter(RunStatus.BUILDING_UNITS, progress)

        with self._job("build_units", {"repositories": len(grouped)}) as out:
            cfg = self.config
            year_commits = [c for items in grouped.values() for c in items]
            hotspots = hotspot_files(year_commits, cfg.impact.hotspot_top_n, cfg.impact.hotspot_min_touches)

            units: list[WorkUnit] = []
            for repo_id in sorted(grouped):
                self._check_interrupted()
                for data in cluster_commits(grouped[repo_id], cfg.clustering):
                    breakdown = score_work_unit(data, hotspots, cfg.impact)
                    unit = WorkUnit(
                        run_id=self.run_id,
                        repo_id=repo_id,
                        user_login=self.run.user_login,
                        start_at=data.start_at,
                        end_at=data.end_at,
                        commit_count=data.commit_count,
                        additions=data.additions,
                        deletions=data.deletions,
                        files_changed=data.files_changed,
                        primary_paths_json=json_dump(data.primary_paths),
                        work_type=data.work_type,
                        impact_score=breakdown.score,
                        impact_factors_json=json_dump(breakdown.factors()),
                        is_hotfix=data.is_hotfix,
                        has_revert=data.has_revert,
                    )
                    unit.commit_links = [
                        WorkUnitCommit(commit_id=c.commit_id, position=i) for i, c in enumerate(data.commits)
                    ]
                    self.session.add(unit)
                    units.append(unit)
                self.session.commit()
                progress.completed += 1
                progress.work_units = len(units)
                progress.message = f"Built {len(units)} work units"
                self.publish(progress)

            seed = cfg.sampling.seed if cfg.sampling.seed is not None else default_sampling_seed(self.run)
            result = select_samples(
                [SampleCandidate(u.id, u.repo_id, u.impact_score, u.is_hotfix, u.has_revert) for u in units],
                cfg.sampling, seed=seed,
            )
            for unit in units:
                if unit.id in result.reasons:
                    unit.is_sampled = True
                    unit.sample_reason = result.reasons[unit.id]
            for summary in result.summaries:
                self.session.add(RepoSummary(
                    run_id=self.run_id,
                    repo_id=summary.repo_id,
                    total_units=summary.total_units,
                    sampled_units=summary.sampled_units,
                    top_impact_score=summary.top_impact_score,
                    avg_impact_score=summary.avg_impact_score,
                ))
            self.session.commit()
            out["work_units"] = len(units)
            out["sampled"] = len(result.selected)
        progress.message = f"Built {len(units)} work units, sampled {len(result.selected)}"
        self.publish(progress)

    def sampled_units(self) -> list[WorkUnit]:
        return list(self.session.execute(
            select(WorkUnit)
            .where(WorkUnit.run_id == self.run_id, WorkUnit.is_sampled.is_(True))
            .order_by(WorkUnit.impact_score.desc(), WorkUnit.id)
        ).scalars().all())

    def orchestrator(self, provider: LLMProvider | None) -> ReviewOrchestrator:
        return ReviewOrchestrator(
            self.session, provider, self.config.review,
            should_stop=self.stop_requested, publish=self.publish,
        )

    async def await_confirmation(self) -> None:
        units = self.sampled_units()
        if not units and not self.options.skip_ai_review:
            log.info("Run %d has nothing to review, skipping AI confirmation", self.run_id)
            self._set_option(skip_ai_review=True, ai_confirmed=True)
        if self.options.ai_confirmed or self.options.skip_ai_review:
            return
        if self.options.auto_confirm:
            self._set_option(ai_confirmed=True)
            return
        total_units = self.session.execute(
            select(func.count(WorkUnit.id)).where(WorkUnit.run_id == self.run_id)
        ).scalar_one()
        estimate = self.orchestrator(self._provider).estimate(
            self.run, units, provider_name=self.config.llm_provider, model=self.config.llm_model,
        )
        self._enter(RunStatus.AWAITING_AI_CONFIRMATION, AwaitingConfirmationProgress(
            work_units=total_units,
            sampled_units=len(units),
            estimate=estimate,
            message=f"{len(units)} work units ready for AI review (est. ${estimate.cost_usd:.2f})",
        ))
        raise _Stop("awaiting AI review confirmation")

    def _set_option(self, **changes: Any) -> None:
        self.options = self.options.model_copy(update=changes)
        self.run.options_json = self.options.model_dump_json()
        self.session.commit()

    async def review(self) -> None:
        self.session.execute(delete(YearlyReport).where(YearlyReport.run_id == self.run_id))
        self.session.commit()
        if self.options.skip_ai_review:
            log.info("Run %d: AI review skipped", self.run_id)
            return
        units = self.sampled_units()
        self._enter(RunStatus.REVIEWING, ReviewingProgress(total=len(units), message="Starting AI review"))

        with self._job("ai_review", {"sampled_units": len(units)}) as out:
            orchestrator = self.orchestrator(self.provider())
            stage1 = await orchestrator.run_stage1(self.run, units)
            out.update(stage1_ok=stage1.succeeded, stage1_cached=stage1.cached,
                       stage1_fallbacks=stage1.fallbacks, stage1_failed=stage1.failed,
                       failed_unit_ids=stage1.failed_unit_ids)
            if stage1.interrupted:
                raise RunInterrupted("Stopped during stage 1 review")
            orchestrator.update_repo_summaries(self.run)

            commits = contributor_commits(self.session, self.run)
            metrics = compute_developer_metrics(commits, self._contributor_prs())
            contributor = await orchestrator.run_contributor_stages(self.run, metrics)
            out.update(contributor_cached=contributor.cached, contributor_failed=contributor.failed,
                       cost_usd=round(stage1.usage.cost_usd + contributor.usage.cost_usd, 4))
            if self.stop_requested():
                raise RunInterrupted("Stopped during contributor review")

    def _contributor_prs(self) -> list[PullRequest]:
        start, end = year_bounds(self.run.year)
        return list(self.session.execute(
            select(PullRequest)
            .join(Repository, PullRequest.repo_id == Repository.id)
            .where(
                Repository.org_login == self.run.org_login,
                func.lower(PullRequest.author_login) == self.run.user_login.lower(),
                PullRequest.created_at >= start,
                PullRequest.created_at < end,
            )
        ).scalars().all())

    def review_failures(self) -> int:
        """Sampled units that ended stage 1 without a stored review."""
        if self.options.skip_ai_review:
            return 0
        reviewed = select(AiReview.work_unit_id).where(AiReview.run_id == self.run_id, AiReview.stage == 1)
        return self.session.execute(
            select(func.count(WorkUnit.id)).where(
                WorkUnit.run_id == self.run_id,
                WorkUnit.is_sampled.is_(True),
                WorkUnit.id.not_in(reviewed),
            )
        ).scalar_one()

    async def finalize(self) -> None:
        self._enter(RunStatus.FINALIZING, FinalizingProgress(total=1, message="Building yearly report"))
        with self._job("finalize_reports", {"user": self.run.user_login}) as out:
            report = build_report(self.session, self.run, review_failures=self.review_failures())
            self.session.commit()
            out["report_id"] = report.id
            out["placeholder"] = report.is_placeholder
        self.publish(FinalizingProgress(total=1, completed=1, message="Report ready"))


async def run_pipeline(session: Session, run_id: int, mode: RestartMode | str = RestartMode.RESUME,
                       **kwargs: Any) -> str:
    """Convenience wrapper: drive *run_id* and return its final status."""
    runner = PipelineRunner(session, run_id, **kwargs)
    return await runner.execute(RestartMode(mode))
