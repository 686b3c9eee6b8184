"""Tests for run lifecycle operations and queries."""
from __future__ import annotations

import pytest
from sqlalchemy import select

from retro import services
from retro.errors import InvalidTransitionError, RunConflictError, RunNotFoundError
from retro.models import JobMessage
from retro.pipeline import CANCELLED_MESSAGE, RestartMode, RunStatus


def _messages(session) -> list[JobMessage]:
    return list(session.execute(select(JobMessage).order_by(JobMessage.id)).scalars().all())


def _set_status(session, run, status: RunStatus, phase: RunStatus | None = None) -> None:
    run.status = status.value
    run.phase = (phase or status).value
    session.commit()


class TestStartAnalysis:
    def test_creates_queued_run_and_message(self, session):
        run = services.start_analysis(session, " acme ", "alice", 2024, {"auto_confirm": True})
        session.commit()
        assert run.status == RunStatus.QUEUED.value
        assert run.org_login == "acme"
        messages = _messages(session)
        assert [(m.run_id, m.mode, m.status) for m in messages] == [(run.id, "resume", "pending")]

    def test_duplicate_active_run_refused(self, session):
        first = services.start_analysis(session, "acme", "alice", 2024)
        session.commit()
        with pytest.raises(RunConflictError) as exc_info:
            services.start_analysis(session, "ACME", "Alice", 2024)
        assert exc_info.value.run_id == first.id

    def test_new_run_allowed_once_previous_is_terminal(self, session):
        first = services.start_analysis(session, "acme", "alice", 2024)
        session.commit()
        _set_status(session, first, RunStatus.DONE)
        second = services.start_analysis(session, "acme", "alice", 2024)
        assert second.id != first.id

    def test_other_year_is_independent(self, session):
        services.start_analysis(session, "acme", "alice", 2024)
        session.commit()
        services.start_analysis(session, "acme", "alice", 2023)

    @pytest.mark.parametrize("year", [1999, 3000])
    def test_year_out_of_range(self, session, year):
        with pytest.raises(ValueError):
            services.start_analysis(session, "acme", "alice", year)

    def test_blank_login(self, session):
        with pytest.raises(ValueError):
            services.start_analysis(session, "acme", "  ", 2024)


class TestTransitions:
    def test_pause_and_resume(self, session):
        run = services.start_analysis(session, "acme", "alice", 2024)
        session.commit()
        _set_status(session, run, RunStatus.SCANNING_COMMITS)

        services.pause_analysis(session, run.id)
        assert run.status == RunStatus.PAUSED.value
        with pytest.raises(InvalidTransitionError):
            services.pause_analysis(session, run.id)

        services.resume_analysis(session, run.id)
        session.commit()
        assert run.status == RunStatus.QUEUED.value
        assert len(_messages(session)) == 2

    def test_resume_requires_stopped_run(self, session):
        run = services.start_analysis(session, "acme", "alice", 2024)
        session.commit()
        with pytest.raises(InvalidTransitionError):
            services.resume_analysis(session, run.id)

    def test_full_restart_allowed_for_done_run(self, session):
        run = services.start_analysis(session, "acme", "alice", 2024)
        session.commit()
        _set_status(session, run, RunStatus.DONE)
        with pytest.raises(InvalidTransitionError):
            services.resume_analysis(session, run.id)
        services.resume_analysis(session, run.id, RestartMode.FULL_RESTART)
        session.commit()
        assert run.status == RunStatus.QUEUED.value
        assert _messages(session)[-1].mode == "full_restart"

    def test_resume_refused_while_another_run_active(self, session):
        old = services.start_analysis(session, "acme", "alice", 2024)
        session.commit()
        services.cancel_analysis(session, old.id)
        session.commit()
        services.start_analysis(session, "acme", "alice", 2024)
        session.commit()
        with pytest.raises(RunConflictError):
            services.resume_analysis(session, old.id)

    def test_resume_unconfirmed_run_returns_to_awaiting(self, session):
        run = services.start_analysis(session, "acme", "alice", 2024)
        session.commit()
        _set_status(session, run, RunStatus.PAUSED, RunStatus.AWAITING_AI_CONFIRMATION)
        services.resume_analysis(session, run.id)
        session.commit()
        assert run.status == RunStatus.AWAITING_AI_CONFIRMATION.value
        assert len(_messages(session)) == 1

    def test_cancel(self, session):
        run = services.start_analysis(session, "acme", "alice", 2024)
        session.commit()
        services.cancel_analysis(session, run.id)
        assert run.status == RunStatus.FAILED.value
        assert run.error == CANCELLED_MESSAGE
        assert run.finished_at is not None
        with pytest.raises(InvalidTransitionError):
            services.cancel_analysis(session, run.id)

    def test_unknown_run(self, session):
        with pytest.raises(RunNotFoundError):
            services.pause_analysis(session, 999)


class TestConfirm:
    def _awaiting(self, session):
        run = services.start_analysis(session, "acme", "alice", 2024)
        session.commit()
        _set_status(session, run, RunStatus.AWAITING_AI_CONFIRMATION)
        return run

    def test_confirm(self, session):
        run = self._awaiting(session)
        services.confirm_ai_review(session, run.id)
        session.commit()
        assert run.status == RunStatus.REVIEWING.value
        assert '"ai_confirmed":true' in run.options_json
        assert '"skip_ai_review":false' in run.options_json
        assert len(_messages(session)) == 2

    def test_skip(self, session):
        run = self._awaiting(session)
        services.confirm_ai_review(session, run.id, skip=True)
        assert run.status == RunStatus.FINALIZING.value
        assert '"skip_ai_review":true' in run.options_json

    def test_not_awaiting(self, session):
        run = services.start_analysis(session, "acme", "alice", 2024)
        session.commit()
        with pytest.raises(InvalidTransitionError):
            services.confirm_ai_review(session, run.id)


class TestQueries:
    def test_progress_of_new_run(self, session):
        run = services.start_analysis(session, "acme", "alice", 2024)
        session.commit()
        progress = services.get_progress(session, run.id)
        assert progress["status"] == "QUEUED"
        assert progress["progress"]["phase"] == "QUEUED"
        assert progress["work_units"] == 0
        assert progress["has_report"] is False

    def test_list_runs_filters(self, session):
        services.start_analysis(session, "acme", "alice", 2024)
        services.start_analysis(session, "acme", "bob", 2024)
        services.start_analysis(session, "other", "alice", 2024)
        session.commit()
        assert len(services.list_runs(session)) == 3
        assert len(services.list_runs(session, org_login="ACME")) == 2
        assert [r.user_login for r in services.list_runs(session, user_login="bob")] == ["bob"]

    def test_report_missing(self, session):
        run = services.start_analysis(session, "acme", "alice", 2024)
        session.commit()
        assert services.get_report(session, run.id) is None

    def test_estimate_without_units(self, session, settings):
        run = services.start_analysis(session, "acme", "alice", 2024)
        session.commit()
        estimate = services.estimate_review_cost(session, run.id, settings)
        assert estimate.sample_size == 0
        assert estimate.contributor_stages == 3
        assert estimate.provider == "anthropic"

    def test_interim_report_needs_work_units(self, session):
        run = services.start_analysis(session, "acme", "alice", 2024)
        session.commit()
        with pytest.raises(InvalidTransitionError, match="no work units"):
            services.interim_report(session, run.id)
        with pytest.raises(RunNotFoundError):
            services.interim_report(session, 999)
