"""Tests for the job queue and the analysis worker."""
from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from retro import services
from retro.errors import GitHubError
from retro.models import AnalysisRun, JobMessage
from retro.pipeline import RestartMode, RunStatus
from retro.utils import utc_now
from retro.worker import AnalysisWorker, claim_next, enqueue_run, heartbeat, requeue_stale

from conftest import FakeProvider, FakeSource


def _worker(session_factory, settings, source, provider=None) -> AnalysisWorker:
    provider = provider or FakeProvider()
    return AnalysisWorker(
        session_factory, settings,
        poll_interval=0.01,
        source_factory=lambda s: source,
        provider_factory=lambda config: provider,
    )


class TestQueue:
    def test_claim_in_order(self, session):
        enqueue_run(session, 1)
        enqueue_run(session, 2, RestartMode.FULL_RESTART)
        session.commit()

        first = claim_next(session)
        second = claim_next(session)
        assert (first.run_id, first.status) == (1, "running")
        assert (second.run_id, second.mode) == (2, "full_restart")
        assert claim_next(session) is None

    def test_requeue_stale(self, session):
        enqueue_run(session, 1)
        enqueue_run(session, 2)
        session.commit()
        crashed = claim_next(session)
        live = claim_next(session)
        crashed.claimed_at = utc_now() - timedelta(hours=1)
        session.commit()

        assert requeue_stale(session, older_than=600) == 1
        session.expire_all()
        assert session.get(JobMessage, crashed.id).status == "pending"
        assert session.get(JobMessage, crashed.id).claimed_at is None
        assert session.get(JobMessage, live.id).status == "running"

    def test_heartbeat_keeps_claim(self, session):
        enqueue_run(session, 1)
        session.commit()
        message = claim_next(session)
        message.claimed_at = utc_now() - timedelta(hours=1)
        session.commit()

        heartbeat(session, message.id)
        assert requeue_stale(session, older_than=600) == 0
        session.expire_all()
        assert session.get(JobMessage, message.id).status == "running"

    def test_worker_start_leaves_live_claims(self, session, session_factory, settings):
        enqueue_run(session, 1)
        session.commit()
        claim_next(session)

        worker = AnalysisWorker(session_factory, settings, poll_interval=0.01)
        with session_factory() as other:
            assert requeue_stale(other, worker.stale_after) == 0


class TestProcessPending:
    @pytest.mark.asyncio
    async def test_runs_queued_analysis(self, session, session_factory, settings, three_repo_source):
        run = services.start_analysis(session, "acme", "alice", 2024, {"auto_confirm": True})
        session.commit()

        processed = await _worker(session_factory, settings, three_repo_source).process_pending()

        assert processed == 1
        session.expire_all()
        assert session.get(AnalysisRun, run.id).status == RunStatus.DONE.value
        message = session.execute(select(JobMessage)).scalars().one()
        assert message.status == "done"
        assert message.finished_at is not None
        assert three_repo_source.closed

    @pytest.mark.asyncio
    async def test_failed_run_marks_message(self, session, session_factory, settings):
        class BrokenSource(FakeSource):
            async def list_repositories(self, org, include_archived=False):
                raise GitHubError("GitHub returned 403", status=403)

        run = services.start_analysis(session, "acme", "alice", 2024)
        session.commit()

        await _worker(session_factory, settings, BrokenSource()).process_pending()

        session.expire_all()
        assert session.get(AnalysisRun, run.id).status == RunStatus.FAILED.value
        message = session.execute(select(JobMessage)).scalars().one()
        assert message.status == "failed"
        assert "403" in message.error

    @pytest.mark.asyncio
    async def test_offline_run_never_builds_source(self, session, session_factory, settings):
        services.start_analysis(session, "acme", "alice", 2024, {"offline": True})
        session.commit()

        def no_source(s):
            raise AssertionError("offline runs must not contact GitHub")

        worker = AnalysisWorker(session_factory, settings, source_factory=no_source,
                                provider_factory=lambda config: FakeProvider())
        assert await worker.process_pending() == 1
        message = session.execute(select(JobMessage)).scalars().one()
        session.refresh(message)
        assert message.status == "done"

    @pytest.mark.asyncio
    async def test_limit(self, session, session_factory, settings):
        services.start_analysis(session, "acme", "alice", 2024, {"offline": True})
        services.start_analysis(session, "acme", "bob", 2024, {"offline": True})
        session.commit()
        worker = _worker(session_factory, settings, FakeSource())
        assert await worker.process_pending(limit=1) == 1
        assert await worker.process_pending() == 1
