"""Background worker consuming queued analysis runs.

Triggers (API, CLI, MCP) never run the pipeline themselves: they insert a
``JobMessage`` (run id + restart mode) and return.  The worker claims
pending messages and drives each run with :class:`PipelineRunner`.

Lifecycle:

1. ``start()`` spawns a daemon thread with its own asyncio loop
2. ``_poll_pending()`` claims pending messages every ``poll_interval``
3. each message runs under a semaphore of ``max_concurrent`` runs, with its
   own session and its own GitHub client, refreshing its claim while it runs
4. ``stop()`` signals shutdown

``process_pending()`` drains the queue inline, for the CLI and tests.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from datetime import timedelta
from typing import Callable

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from retro.config import EffectiveConfig, RunOptions, Settings, get_settings
from retro.github import CommitSource, GitHubClient
from retro.llm import LLMProvider
from retro.models import AnalysisRun, JobMessage
from retro.pipeline import PipelineRunner, RestartMode
from retro.utils import json_parse, utc_now

log = logging.getLogger(__name__)

SourceFactory = Callable[[Settings], CommitSource]
ProviderFactory = Callable[[EffectiveConfig], LLMProvider]


def enqueue_run(session: Session, run_id: int, mode: RestartMode | str = RestartMode.RESUME) -> JobMessage:
    """Queue a run for the worker (caller must commit)."""
    message = JobMessage(run_id=run_id, mode=RestartMode(mode).value)
    session.add(message)
    return message


def claim_next(session: Session) -> JobMessage | None:
    message = session.execute(
        select(JobMessage).where(JobMessage.status == "pending").order_by(JobMessage.id)
    ).scalars().first()
    if message is None:
        return None
    # Conditional update so two workers never claim the same message.
    claimed = session.execute(
        update(JobMessage)
        .where(JobMessage.id == message.id, JobMessage.status == "pending")
        .values(status="running", claimed_at=utc_now())
    ).rowcount
    session.commit()
    if not claimed:
        return None
    session.refresh(message)
    return message


def requeue_stale(session: Session, older_than: float = 600.0) -> int:
    """Return messages left ``running`` by a crashed worker to the queue.

    Only claims older than *older_than* seconds count as stale.  Live workers
    refresh ``claimed_at`` with :func:`heartbeat` while a run is executing,
    so a worker starting next to another one leaves its runs alone.
    """
    cutoff = utc_now() - timedelta(seconds=older_than)
    count = session.execute(
        update(JobMessage)
        .where(JobMessage.status == "running",
               or_(JobMessage.claimed_at.is_(None), JobMessage.claimed_at < cutoff))
        .values(status="pending", claimed_at=None)
    ).rowcount
    session.commit()
    if count:
        log.warning("Requeued %d stale job message(s)", count)
    return count


def heartbeat(session: Session, message_id: int) -> None:
    session.execute(
        update(JobMessage)
        .where(JobMessage.id == message_id, JobMessage.status == "running")
        .values(claimed_at=utc_now())
    )
    session.commit()


def github_source(settings: Settings) -> GitHubClient:
    return GitHubClient(
        token=settings.github_token,
        base_url=settings.github_api_url,
        timeout=settings.request_timeout_seconds,
        min_interval=settings.github_min_interval_seconds,
    )


async def execute_message(session: Session, message: JobMessage, *, settings: Settings,
                          source_factory: SourceFactory = github_source,
                          provider_factory: ProviderFactory | None = None) -> str:
    """Drive the message's run and record the outcome on the message."""
    run = session.get(AnalysisRun, message.run_id)
    offline = run is not None and RunOptions.model_validate(json_parse(run.options_json)).offline
    source = None if offline else source_factory(settings)
    runner = PipelineRunner(session, message.run_id, settings=settings, source=source,
                            provider_factory=provider_factory)
    try:
        status = await runner.execute(RestartMode(message.mode))
    except Exception as exc:
        session.rollback()
        message.status = "failed"
        message.error = str(exc)
        message.finished_at = utc_now()
        session.commit()
        log.error("Job %d for run %d failed: %s", message.id, message.run_id, exc)
        return "FAILED"
    finally:
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()
    message.status = "done"
    message.finished_at = utc_now()
    session.commit()
    log.info("Job %d for run %d finished with status %s", message.id, message.run_id, status)
    return status


class AnalysisWorker:
    """Background worker for analysis runs."""

    def __init__(self, session_factory: Callable[[], Session] | None = None, settings: Settings | None = None,
                 *, poll_interval: float | None = None, max_concurrent: int | None = None,
                 source_factory: SourceFactory = github_source,
                 provider_factory: ProviderFactory | None = None):
        if session_factory is None:
            from retro.db import get_session
            session_factory = get_session
        self._session_factory = session_factory
        self.settings = settings or get_settings()
        self.poll_interval = poll_interval if poll_interval is not None else self.settings.worker_poll_interval_seconds
        self.max_concurrent = max_concurrent or self.settings.worker_max_concurrent
        self.stale_after = self.settings.worker_stale_after_seconds
        self._source_factory = source_factory
        self._provider_factory = provider_factory

        self._queue: asyncio.Queue | None = None
        self._running = False
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._semaphore: asyncio.Semaphore | None = None

    def start(self) -> None:
        if self._running:
            log.warning("Analysis worker already running")
            return
        with self._session_factory() as session:
            requeue_stale(session, self.stale_after)
        self._running = True
        self._thread = threading.Thread(target=self._run_loop, daemon=True, name="analysis-worker")
        self._thread.start()
        log.info("Analysis worker started (max %d concurrent runs)", self.max_concurrent)

    def stop(self) -> None:
        self._running = False
        if self._thread:
            self._thread.join(timeout=self.poll_interval + 5.0)
        log.info("Analysis worker stopped")

    def _run_loop(self) -> None:
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._queue = asyncio.Queue()
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        try:
            self._loop.run_until_complete(self._main_loop())
        except Exception:
            log.exception("Analysis worker loop crashed")
        finally:
            self._loop.close()

    async def _main_loop(self) -> None:
        poll_task = asyncio.create_task(self._poll_pending())
        tasks: set[asyncio.Task] = set()
        while self._running:
            try:
                message_id = await asyncio.wait_for(self._queue.get(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                continue
            task = asyncio.create_task(self._process_with_semaphore(message_id))
            tasks.add(task)
            task.add_done_callback(tasks.discard)
        poll_task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _poll_pending(self) -> None:
        while self._running:
            # Only claim what can start right away; the rest stays pending for other workers.
            while self._semaphore.locked() and self._running:
                await asyncio.sleep(self.poll_interval)
            try:
                with self._session_factory() as session:
                    message = claim_next(session)
                if message is not None:
                    await self._queue.put(message.id)
                    continue
            except Exception:
                log.exception("Error polling job messages")
            await asyncio.sleep(self.poll_interval)

    async def _process_with_semaphore(self, message_id: int) -> None:
        async with self._semaphore:
            await self.process_message(message_id)

    async def _keep_claimed(self, message_id: int) -> None:
        interval = max(self.stale_after / 4, 1.0)
        while True:
            await asyncio.sleep(interval)
            try:
                with self._session_factory() as session:
                    heartbeat(session, message_id)
            except Exception:
                log.exception("Heartbeat failed for job %d", message_id)

    async def process_message(self, message_id: int) -> str:
        with self._session_factory() as session:
            message = session.get(JobMessage, message_id)
            if message is None:
                return "missing"
            keeper = asyncio.create_task(self._keep_claimed(message_id))
            try:
                return await execute_message(
                    session, message, settings=self.settings,
                    source_factory=self._source_factory, provider_factory=self._provider_factory,
                )
            finally:
                keeper.cancel()

    async def process_pending(self, limit: int | None = None) -> int:
        """Claim and run pending messages one by one; return how many ran."""
        processed = 0
        while limit is None or processed < limit:
            with self._session_factory() as session:
                message = claim_next(session)
            if message is None:
                break
            await self.process_message(message.id)
            processed += 1
        return processed
