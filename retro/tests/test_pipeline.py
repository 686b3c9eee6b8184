"""End-to-end tests for the run state machine, driven with fake GitHub and LLM sources."""
from __future__ import annotations

import pytest
from sqlalchemy import func, select

from retro import services
from retro.errors import GitHubError
from retro.models import AiReview, AnalysisRun, Commit, JobLog, RepoSummary, Repository, WorkUnit, YearlyReport
from retro.pipeline import CANCELLED_MESSAGE, RestartMode, RunStatus, run_pipeline
from retro.progress import AwaitingConfirmationProgress, load_progress

from conftest import FakeProvider, FakeSource, repo_record


def _start(session, **options) -> AnalysisRun:
    run = services.start_analysis(session, "acme", "alice", 2024, options)
    session.commit()
    return run


def _count(session, model, *criteria) -> int:
    return session.execute(select(func.count(model.id)).where(*criteria)).scalar_one()


def _report(session, run_id: int) -> dict:
    report = services.get_report(session, run_id)
    assert report is not None
    return report


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_auto_confirmed_run_completes(self, session, settings, three_repo_source):
        run = _start(session, auto_confirm=True)
        provider = FakeProvider()
        status = await run_pipeline(session, run.id, settings=settings, source=three_repo_source, provider=provider)

        assert status == RunStatus.DONE.value
        session.refresh(run)
        assert run.phase == RunStatus.DONE.value
        assert run.finished_at is not None

        # bob's commit is never ingested
        assert _count(session, Commit) == 40
        assert _count(session, WorkUnit, WorkUnit.run_id == run.id) == 40
        sampled = _count(session, WorkUnit, WorkUnit.run_id == run.id, WorkUnit.is_sampled.is_(True))
        assert sampled == 18

        summaries = session.execute(select(RepoSummary).where(RepoSummary.run_id == run.id)).scalars().all()
        assert len(summaries) == 3
        assert all(s.sampled_units > 0 for s in summaries)
        assert all(s.avg_code_quality == 8.0 for s in summaries)

        assert provider.stage_calls(1) == sampled
        assert [s for s, _ in provider.calls if s > 1] == [2, 3, 4]

        report = _report(session, run.id)
        assert report["stats"]["total_commits"] == 40
        assert report["stats"]["total_work_units"] == 40
        assert report["stats"]["review_failures"] == 0
        assert report["overall_score"] == 7.7
        assert report["grade"] == "B"
        assert report["is_placeholder"] is False
        assert _count(session, YearlyReport, YearlyReport.run_id == run.id) == 1

    @pytest.mark.asyncio
    async def test_job_logs_record_each_phase(self, session, settings, three_repo_source):
        run = _start(session, auto_confirm=True)
        await run_pipeline(session, run.id, settings=settings, source=three_repo_source, provider=FakeProvider())
        logs = session.execute(select(JobLog).where(JobLog.run_id == run.id).order_by(JobLog.id)).scalars().all()
        assert [entry.job_type for entry in logs] == [
            "scan_repos", "scan_commits", "build_units", "ai_review", "finalize_reports",
        ]
        assert all(entry.status == "done" for entry in logs)

    @pytest.mark.asyncio
    async def test_zero_commits_yields_placeholder_without_llm(self, session, settings):
        source = FakeSource([repo_record("acme/api")], {"acme/api": []})
        run = _start(session)
        provider = FakeProvider()
        status = await run_pipeline(session, run.id, settings=settings, source=source, provider=provider)

        assert status == RunStatus.DONE.value
        assert provider.calls == []
        report = _report(session, run.id)
        assert report["is_placeholder"] is True
        assert report["stats"]["total_commits"] == 0
        assert "No activity" in report["summary"]

    @pytest.mark.asyncio
    async def test_review_failures_are_counted(self, session, settings, three_repo_source):
        run = _start(session, auto_confirm=True)
        provider = FakeProvider(fail_when=lambda r: "REPOSITORY: acme/tools\n" in r.user)
        status = await run_pipeline(session, run.id, settings=settings, source=three_repo_source, provider=provider)

        assert status == RunStatus.DONE.value
        tools_sampled = session.execute(
            select(func.count(WorkUnit.id))
            .join(Repository, WorkUnit.repo_id == Repository.id)
            .where(WorkUnit.run_id == run.id, WorkUnit.is_sampled.is_(True), Repository.full_name == "acme/tools")
        ).scalar_one()
        assert tools_sampled > 0
        assert _report(session, run.id)["stats"]["review_failures"] == tools_sampled

    @pytest.mark.asyncio
    async def test_failing_repository_does_not_fail_run(self, session, settings, three_repo_source):
        three_repo_source.failing_repos = {"acme/web"}
        run = _start(session, auto_confirm=True)
        status = await run_pipeline(session, run.id, settings=settings, source=three_repo_source,
                                    provider=FakeProvider())
        assert status == RunStatus.DONE.value
        assert _report(session, run.id)["stats"]["total_commits"] == 25


class TestConfirmation:
    @pytest.mark.asyncio
    async def test_stops_at_confirmation_with_estimate(self, session, settings, three_repo_source):
        run = _start(session)
        provider = FakeProvider()
        status = await run_pipeline(session, run.id, settings=settings, source=three_repo_source, provider=provider)

        assert status == RunStatus.AWAITING_AI_CONFIRMATION.value
        assert provider.calls == []
        progress = load_progress(run.progress_json)
        assert isinstance(progress, AwaitingConfirmationProgress)
        assert progress.work_units == 40
        assert progress.estimate.sample_size == progress.sampled_units
        assert progress.estimate.contributor_stages == 3
        assert progress.estimate.cost_usd > 0

    @pytest.mark.asyncio
    async def test_interim_report_while_waiting(self, session, settings, three_repo_source):
        run = _start(session)
        await run_pipeline(session, run.id, settings=settings, source=three_repo_source, provider=FakeProvider())

        interim = services.interim_report(session, run.id)
        stats = interim["stats"]
        assert interim["status"] == RunStatus.AWAITING_AI_CONFIRMATION.value
        assert stats["total_commits"] == 40
        assert stats["total_work_units"] == 40
        assert stats["total_files_changed"] == 40
        assert stats["active_days"] == 4
        assert stats["avg_daily_commits"] == 10.0
        march = stats["monthly_activity"][2]
        assert (march["commits"], march["work_units"]) == (40, 40)
        assert march["additions"] == stats["total_additions"]
        assert sum(m["commits"] for m in stats["monthly_activity"]) == 40
        assert [(r["name"], r["commits"], r["percentage"]) for r in stats["repo_contribution"]] == [
            ("acme/api", 15, 37.5), ("acme/web", 15, 37.5), ("acme/tools", 10, 25.0),
        ]
        assert sum(b["count"] for b in stats["impact_distribution"]) == 40
        assert len(stats["top_work_units"]) == 10

    @pytest.mark.asyncio
    async def test_confirm_then_resume(self, session, settings, three_repo_source):
        run = _start(session)
        await run_pipeline(session, run.id, settings=settings, source=three_repo_source, provider=FakeProvider())

        services.confirm_ai_review(session, run.id)
        session.commit()
        provider = FakeProvider()
        status = await run_pipeline(session, run.id, settings=settings, source=three_repo_source, provider=provider)

        assert status == RunStatus.DONE.value
        assert provider.stage_calls(4) == 1
        assert _report(session, run.id)["grade"] == "B"

    @pytest.mark.asyncio
    async def test_skip_ai_review(self, session, settings, three_repo_source):
        run = _start(session)
        await run_pipeline(session, run.id, settings=settings, source=three_repo_source, provider=FakeProvider())

        services.confirm_ai_review(session, run.id, skip=True)
        session.commit()
        provider = FakeProvider()
        status = await run_pipeline(session, run.id, settings=settings, source=three_repo_source, provider=provider)

        assert status == RunStatus.DONE.value
        assert provider.calls == []
        report = _report(session, run.id)
        assert report["is_placeholder"] is True
        assert report["grade"] is None
        assert report["stats"]["total_commits"] == 40
        assert report["stats"]["review_failures"] == 0


class TestPauseAndResume:
    @pytest.mark.asyncio
    async def test_pause_during_review_then_resume_reuses_reviews(self, session, settings, three_repo_source):
        run = _start(session, auto_confirm=True)
        paused = {"done": False}

        def pause_once(request, stage):
            if not paused["done"]:
                paused["done"] = True
                services.pause_analysis(session, run.id)
                session.commit()

        first = FakeProvider(on_call=pause_once)
        status = await run_pipeline(session, run.id, settings=settings, source=three_repo_source, provider=first)
        assert status == RunStatus.PAUSED.value
        assert run.phase == RunStatus.REVIEWING.value
        stored = _count(session, AiReview, AiReview.run_id == run.id, AiReview.stage == 1)
        sampled = _count(session, WorkUnit, WorkUnit.run_id == run.id, WorkUnit.is_sampled.is_(True))
        assert stored < sampled

        services.resume_analysis(session, run.id)
        session.commit()
        second = FakeProvider()
        status = await run_pipeline(session, run.id, settings=settings, source=three_repo_source, provider=second)

        assert status == RunStatus.DONE.value
        assert second.stage_calls(1) == sampled - stored
        assert _count(session, AiReview, AiReview.run_id == run.id, AiReview.stage == 1) == sampled

    @pytest.mark.asyncio
    async def test_pause_while_scanning_gives_same_result(self, session, settings, three_repo_source):
        run = _start(session, auto_confirm=True)
        fetch = three_repo_source.get_commit

        async def pausing_fetch(full_name, sha):
            if run.status != RunStatus.PAUSED.value:
                services.pause_analysis(session, run.id)
                session.commit()
            return await fetch(full_name, sha)

        three_repo_source.get_commit = pausing_fetch
        status = await run_pipeline(session, run.id, settings=settings, source=three_repo_source,
                                    provider=FakeProvider())
        assert status == RunStatus.PAUSED.value
        assert run.phase == RunStatus.SCANNING_COMMITS.value
        assert _count(session, WorkUnit, WorkUnit.run_id == run.id) == 0

        three_repo_source.get_commit = fetch
        services.resume_analysis(session, run.id)
        session.commit()
        status = await run_pipeline(session, run.id, settings=settings, source=three_repo_source,
                                    provider=FakeProvider())

        assert status == RunStatus.DONE.value
        assert _count(session, WorkUnit, WorkUnit.run_id == run.id) == 40
        assert _count(session, WorkUnit, WorkUnit.run_id == run.id, WorkUnit.is_sampled.is_(True)) == 18
        assert _count(session, AiReview, AiReview.run_id == run.id, AiReview.stage == 1) == 18
        report = _report(session, run.id)
        assert report["stats"]["total_commits"] == 40
        assert report["grade"] == "B"

    @pytest.mark.asyncio
    async def test_cancel_during_review(self, session, settings, three_repo_source):
        run = _start(session, auto_confirm=True)

        def cancel(request, stage):
            if run.status != RunStatus.FAILED.value:
                services.cancel_analysis(session, run.id)
                session.commit()

        status = await run_pipeline(session, run.id, settings=settings, source=three_repo_source,
                                    provider=FakeProvider(on_call=cancel))
        assert status == RunStatus.FAILED.value
        assert run.error == CANCELLED_MESSAGE
        assert _count(session, YearlyReport, YearlyReport.run_id == run.id) == 0
        review_log = session.execute(
            select(JobLog).where(JobLog.run_id == run.id, JobLog.job_type == "ai_review")
        ).scalars().one()
        assert review_log.status == "interrupted"

    @pytest.mark.asyncio
    async def test_full_restart_rebuilds_without_refetching(self, session, settings, three_repo_source):
        run = _start(session, auto_confirm=True)
        await run_pipeline(session, run.id, settings=settings, source=three_repo_source, provider=FakeProvider())
        fetched = len(three_repo_source.fetched)

        services.resume_analysis(session, run.id, RestartMode.FULL_RESTART)
        session.commit()
        provider = FakeProvider()
        status = await run_pipeline(session, run.id, RestartMode.FULL_RESTART, settings=settings,
                                    source=three_repo_source, provider=provider)

        assert status == RunStatus.DONE.value
        assert len(three_repo_source.fetched) == fetched
        assert provider.stage_calls(1) == _count(
            session, WorkUnit, WorkUnit.run_id == run.id, WorkUnit.is_sampled.is_(True),
        )
        assert _count(session, YearlyReport, YearlyReport.run_id == run.id) == 1

    @pytest.mark.asyncio
    async def test_resume_of_done_run_is_noop(self, session, settings, three_repo_source):
        run = _start(session, auto_confirm=True)
        await run_pipeline(session, run.id, settings=settings, source=three_repo_source, provider=FakeProvider())
        provider = FakeProvider()
        status = await run_pipeline(session, run.id, settings=settings, source=three_repo_source, provider=provider)
        assert status == RunStatus.DONE.value
        assert provider.calls == []


class TestOfflineAndFailures:
    @pytest.mark.asyncio
    async def test_offline_run_uses_ingested_commits(self, session, settings, three_repo_source):
        first = _start(session, auto_confirm=True)
        await run_pipeline(session, first.id, settings=settings, source=three_repo_source, provider=FakeProvider())

        offline = services.start_analysis(session, "acme", "alice", 2024, {"auto_confirm": True, "offline": True})
        session.commit()
        status = await run_pipeline(session, offline.id, settings=settings, source=None, provider=FakeProvider())

        assert status == RunStatus.DONE.value
        assert _report(session, offline.id)["stats"]["total_commits"] == 40
        assert _count(session, Commit) == 40

    @pytest.mark.asyncio
    async def test_listing_failure_fails_run(self, session, settings):
        class BrokenSource(FakeSource):
            async def list_repositories(self, org, include_archived=False):
                raise GitHubError("GitHub returned 401", status=401)

        run = _start(session)
        with pytest.raises(GitHubError):
            await run_pipeline(session, run.id, settings=settings, source=BrokenSource(), provider=FakeProvider())
        session.refresh(run)
        assert run.status == RunStatus.FAILED.value
        assert "Could not list repositories for acme" in run.error
        assert run.finished_at is not None

    @pytest.mark.asyncio
    async def test_excluded_repository_is_skipped(self, session, settings, three_repo_source):
        run = _start(session, auto_confirm=True, exclude_repos=["tools"])
        await run_pipeline(session, run.id, settings=settings, source=three_repo_source, provider=FakeProvider())
        assert _report(session, run.id)["stats"]["total_commits"] == 30
