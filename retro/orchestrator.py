"""Four-stage LLM review cascade.

Stage 1 reviews each sampled work unit with a bounded pool of concurrent
calls.  Stages 2-4 run once per contributor, strictly in order, each
consuming the previous stage's output.

Every stored result is an append-only ``AiReview`` row.  Before calling the
provider the orchestrator looks for an existing row keyed by
``(run, work unit, stage)`` or ``(run, contributor, stage)`` and reuses it,
which is what makes a resumed run skip work it already paid for.

Failure handling:

- retryable provider errors are retried with backoff; a unit that still
  fails is counted in ``failed`` and gets no row
- unparseable or malformed responses are logged and replaced by the
  stage's neutral default, stored with ``is_fallback=True``
- any other provider exception is logged and counted like a retryable
  failure, so one bad call never aborts the batch
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from retro.config import ReviewConfig
from retro.diffs import build_unit_diff
from retro.llm import (
    DEFAULT_MODELS,
    LLMCallError,
    LLMProvider,
    ReviewRequest,
    TokenUsage,
    calculate_cost,
    call_with_retry,
    estimate_usage,
)
from retro.models import AiReview, AnalysisRun, RepoSummary, WorkUnit
from retro.progress import RECENT_LIMIT, CostEstimate, ReviewedUnit, ReviewingProgress
from retro.prompts import (
    PROMPT_VERSION,
    STAGE1_SYSTEM,
    STAGE2_SYSTEM,
    STAGE3_SYSTEM,
    STAGE4_SYSTEM,
    build_stage1_prompt,
    build_stage2_prompt,
    build_stage3_prompt,
    build_stage4_prompt,
)
from retro.stages import (
    NORMALIZERS,
    default_stage1_result,
    extract_key_insights,
    normalize_stage1,
    summarize_stage1,
)
from retro.utils import json_dump, json_parse

log = logging.getLogger(__name__)

STAGE1_OUTPUT_TOKENS = 800
# Rough per-call sizes for the contributor stages, used only for estimates.
CONTRIBUTOR_STAGE_INPUT_TOKENS = 3000
CONTRIBUTOR_STAGE_OUTPUT_TOKENS = 1200
# Raised by normalizers on well-formed JSON of the wrong shape.
NORMALIZE_ERRORS = (TypeError, ValueError, AttributeError, KeyError, OverflowError)

STAGE_SYSTEMS = {2: STAGE2_SYSTEM, 3: STAGE3_SYSTEM, 4: STAGE4_SYSTEM}


@dataclass
class Stage1Outcome:
    attempted: int = 0
    succeeded: int = 0
    cached: int = 0
    fallbacks: int = 0
    failed: int = 0
    skipped: int = 0
    failed_unit_ids: list[int] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def interrupted(self) -> bool:
        return self.skipped > 0


@dataclass
class ContributorOutcome:
    results: dict[int, dict[str, Any]] = field(default_factory=dict)
    summary: dict[str, Any] = field(default_factory=dict)
    cached: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)


class ReviewOrchestrator:
    """Runs the review cascade for one analysis run.

    Args:
        session: Session used for cache lookups and for storing reviews.
        provider: Any :class:`LLMProvider`; may be ``None`` when only
            cached results or empty diffs are expected.
        config: Concurrency, retry and diff-budget settings.
        should_stop: Polled before each unit or stage starts; returning
            True stops the batch after in-flight calls settle.
        publish: Receives a fresh :class:`ReviewingProgress` snapshot after
            every completed unit or stage.
    """

    def __init__(self, session: Session, provider: LLMProvider | None, config: ReviewConfig | None = None, *,
                 should_stop: Callable[[], bool] | None = None,
                 publish: Callable[[ReviewingProgress], None] | None = None):
        self.session = session
        self.provider = provider
        self.config = config or ReviewConfig()
        self.should_stop = should_stop or (lambda: False)
        self.publish = publish or (lambda progress: None)

    # -- cache -------------------------------------------------------------

    def cached_review(self, run_id: int, stage: int, *, work_unit_id: int | None = None,
                      user_login: str | None = None) -> AiReview | None:
        stmt = select(AiReview).where(AiReview.run_id == run_id, AiReview.stage == stage)
        if work_unit_id is not None:
            stmt = stmt.where(AiReview.work_unit_id == work_unit_id)
        else:
            stmt = stmt.where(AiReview.work_unit_id.is_(None), AiReview.user_login == user_login)
        return self.session.execute(stmt.order_by(AiReview.id.desc())).scalars().first()

    def _store(self, run_id: int, stage: int, result: dict[str, Any], usage: TokenUsage, *,
               work_unit_id: int | None = None, user_login: str | None = None,
               model: str = "", is_fallback: bool = False) -> AiReview:
        review = AiReview(
            run_id=run_id,
            work_unit_id=work_unit_id,
            user_login=user_login,
            stage=stage,
            model=model,
            prompt_version=PROMPT_VERSION,
            result_json=json_dump(result),
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cost_usd=usage.cost_usd,
            is_fallback=is_fallback,
        )
        self.session.add(review)
        self.session.commit()
        return review

    async def _call(self, request: ReviewRequest):
        if self.provider is None:
            raise LLMCallError("No LLM provider configured", retryable=False)
        return await call_with_retry(
            self.provider, request,
            max_retries=self.config.max_retries,
            base_delay=self.config.base_delay_seconds,
            max_delay=self.config.max_delay_seconds,
        )

    # -- stage 1 -----------------------------------------------------------

    def unit_context(self, unit: WorkUnit) -> dict[str, Any]:
        repo = unit.repository
        return {
            "repository": repo.full_name if repo else "",
            "language": repo.language if repo else "",
            "work_type": unit.work_type,
            "start_at": unit.start_at.isoformat(),
            "end_at": unit.end_at.isoformat(),
            "commit_count": unit.commit_count,
            "additions": unit.additions,
            "deletions": unit.deletions,
            "files_changed": unit.files_changed,
            "primary_paths": json_parse(unit.primary_paths_json, []),
            "is_hotfix": unit.is_hotfix,
            "has_revert": unit.has_revert,
            "messages": [(link.commit.message or "").strip().split("\n")[0] for link in unit.commit_links],
        }

    def build_stage1_request(self, unit: WorkUnit) -> ReviewRequest | None:
        """Prompt for one unit, or ``None`` when it has no diff to review."""
        cfg = self.config
        diff = build_unit_diff(
            [link.commit for link in unit.commit_links],
            max_commits=cfg.max_commits_per_unit,
            max_tokens=cfg.max_diff_tokens,
            max_lines=cfg.max_lines_per_file,
            max_chars_per_file=cfg.max_chars_per_file,
        )
        if not diff.strip():
            return None
        return ReviewRequest(
            system=STAGE1_SYSTEM,
            user=build_stage1_prompt(self.unit_context(unit), diff),
            expected_output_tokens=STAGE1_OUTPUT_TOKENS,
        )

    async def review_unit(self, run: AnalysisRun, unit: WorkUnit) -> tuple[str, AiReview | None, TokenUsage]:
        """Review one unit. Returns ``(status, review, usage)``.

        ``status`` is one of ``cached``, ``ok``, ``fallback`` or ``failed``.
        """
        cached = self.cached_review(run.id, 1, work_unit_id=unit.id)
        if cached is not None:
            return "cached", cached, TokenUsage()

        request = self.build_stage1_request(unit)
        if request is None:
            log.info("Work unit %d has no diff, storing neutral result", unit.id)
            return "ok", self._store(run.id, 1, default_stage1_result(), TokenUsage(), work_unit_id=unit.id), TokenUsage()

        try:
            response = await self._call(request)
        except LLMCallError as exc:
            if exc.retryable:
                log.warning("Stage 1 failed for work unit %d: %s", unit.id, exc)
                return "failed", None, TokenUsage()
            log.warning("Stage 1 returned unusable output for work unit %d, using default: %s", unit.id, exc)
            return "fallback", self._stage1_fallback(run, unit), TokenUsage()
        except Exception:
            log.exception("Stage 1 provider error for work unit %d", unit.id)
            return "failed", None, TokenUsage()

        try:
            result = normalize_stage1(response.data)
        except NORMALIZE_ERRORS as exc:
            log.warning("Stage 1 output for work unit %d could not be normalized, using default: %s", unit.id, exc)
            return "fallback", self._stage1_fallback(run, unit, response.usage), response.usage
        review = self._store(run.id, 1, result, response.usage, work_unit_id=unit.id, model=response.model)
        return "ok", review, response.usage

    def _stage1_fallback(self, run: AnalysisRun, unit: WorkUnit, usage: TokenUsage | None = None) -> AiReview:
        model = self.provider.model if self.provider else ""
        return self._store(run.id, 1, default_stage1_result(), usage or TokenUsage(), work_unit_id=unit.id,
                           model=model, is_fallback=True)

    async def run_stage1(self, run: AnalysisRun, units: list[WorkUnit]) -> Stage1Outcome:
        outcome = Stage1Outcome()
        progress = ReviewingProgress(stage=1, total=len(units), message="Reviewing work units")
        self.publish(progress.model_copy(deep=True))
        sem = asyncio.Semaphore(max(1, self.config.concurrency))

        async def worker(unit: WorkUnit) -> None:
            async with sem:
                if self.should_stop():
                    outcome.skipped += 1
                    return
                progress.in_progress.append(unit.id)
                outcome.attempted += 1
                status, review, usage = await self.review_unit(run, unit)
                progress.in_progress.remove(unit.id)

                outcome.usage = outcome.usage + usage
                if status == "failed":
                    outcome.failed += 1
                    outcome.failed_unit_ids.append(unit.id)
                    progress.failed += 1
                else:
                    outcome.succeeded += 1
                    progress.completed += 1
                    if status == "cached":
                        outcome.cached += 1
                    elif status == "fallback":
                        outcome.fallbacks += 1
                score = None
                if review is not None:
                    score = json_parse(review.result_json).get("code_quality", {}).get("score")
                progress.recent.append(ReviewedUnit(
                    work_unit_id=unit.id,
                    repository=unit.repository.full_name if unit.repository else "",
                    score=score,
                    ok=status != "failed",
                ))
                progress.recent = progress.recent[-RECENT_LIMIT:]
                progress.cost_usd = outcome.usage.cost_usd
                progress.message = f"Reviewed {progress.completed + progress.failed}/{progress.total} work units"
                self.publish(progress.model_copy(deep=True))

        await asyncio.gather(*(worker(u) for u in units))
        log.info("Stage 1 for run %d: %d ok (%d cached, %d fallback), %d failed, %d skipped",
                 run.id, outcome.succeeded, outcome.cached, outcome.fallbacks, outcome.failed, outcome.skipped)
        return outcome

    def stage1_results(self, run_id: int) -> dict[int, dict[str, Any]]:
        """Latest stage-1 result per work unit."""
        rows = self.session.execute(
            select(AiReview).where(AiReview.run_id == run_id, AiReview.stage == 1).order_by(AiReview.id)
        ).scalars().all()
        return {r.work_unit_id: json_parse(r.result_json) for r in rows if r.work_unit_id is not None}

    def update_repo_summaries(self, run: AnalysisRun) -> None:
        results = self.stage1_results(run.id)
        units = self.session.execute(select(WorkUnit).where(WorkUnit.run_id == run.id)).scalars().all()
        repo_of = {u.id: u.repo_id for u in units}
        for summary in self.session.execute(
            select(RepoSummary).where(RepoSummary.run_id == run.id)
        ).scalars().all():
            repo_results = [r for uid, r in results.items() if repo_of.get(uid) == summary.repo_id]
            if not repo_results:
                continue
            scores = [r["code_quality"]["score"] for r in repo_results]
            summary.avg_code_quality = round(sum(scores) / len(scores), 1)
            summary.key_insights_json = json_dump(extract_key_insights(repo_results))
        self.session.commit()

    # -- stages 2-4 --------------------------------------------------------

    def _contributor_prompt(self, stage: int, run: AnalysisRun, summary: dict, prior: dict[int, dict],
                            metrics: dict) -> str:
        if stage == 2:
            return build_stage2_prompt(run.user_login, summary, metrics)
        if stage == 3:
            return build_stage3_prompt(run.user_login, summary, prior[2], metrics)
        return build_stage4_prompt(run.user_login, run.year, summary, prior[2], prior[3], metrics)

    async def run_contributor_stages(self, run: AnalysisRun, metrics: dict[str, Any]) -> ContributorOutcome:
        summary = summarize_stage1(list(self.stage1_results(run.id).values()))
        outcome = ContributorOutcome(summary=summary)
        progress = ReviewingProgress(stage=2, total=3, message="Analysing contributor")

        for stage in (2, 3, 4):
            if self.should_stop():
                break
            progress.stage = stage
            cached = self.cached_review(run.id, stage, user_login=run.user_login)
            if cached is not None:
                outcome.results[stage] = json_parse(cached.result_json)
                outcome.cached.append(stage)
                progress.completed += 1
                self.publish(progress.model_copy(deep=True))
                continue

            request = ReviewRequest(
                system=STAGE_SYSTEMS[stage],
                user=self._contributor_prompt(stage, run, summary, outcome.results, metrics),
                expected_output_tokens=CONTRIBUTOR_STAGE_OUTPUT_TOKENS,
            )
            normalize = NORMALIZERS[stage]
            fallback_model = self.provider.model if self.provider else ""
            try:
                response = await self._call(request)
            except Exception as exc:
                if isinstance(exc, LLMCallError) and not exc.retryable:
                    log.warning("Stage %d returned unusable output for %s, using default: %s",
                                stage, run.user_login, exc)
                    result = normalize({})
                    self._store(run.id, stage, result, TokenUsage(), user_login=run.user_login,
                                model=fallback_model, is_fallback=True)
                else:
                    log.warning("Stage %d failed for %s: %s", stage, run.user_login, exc)
                    outcome.failed.append(stage)
                    progress.failed += 1
                    self.publish(progress.model_copy(deep=True))
                    break
            else:
                outcome.usage = outcome.usage + response.usage
                try:
                    result = normalize(response.data)
                except NORMALIZE_ERRORS as exc:
                    log.warning("Stage %d output for %s could not be normalized, using default: %s",
                                stage, run.user_login, exc)
                    result = normalize({})
                    self._store(run.id, stage, result, response.usage, user_login=run.user_login,
                                model=fallback_model, is_fallback=True)
                else:
                    self._store(run.id, stage, result, response.usage, user_login=run.user_login,
                                model=response.model)
            outcome.results[stage] = result
            progress.completed += 1
            progress.cost_usd = outcome.usage.cost_usd
            self.publish(progress.model_copy(deep=True))
        return outcome

    # -- estimate ----------------------------------------------------------

    def estimate(self, run: AnalysisRun, units: list[WorkUnit], *, provider_name: str = "",
                 model: str = "") -> CostEstimate:
        """Pre-flight token and cost estimate for the work not yet cached.

        Without a provider instance, pricing falls back to *model*.
        """
        if self.provider is not None:
            provider_name, model = self.provider.name, self.provider.model
        model = model or DEFAULT_MODELS.get(provider_name, "")
        estimate = CostEstimate(provider=provider_name, model=model)
        for unit in units:
            if self.cached_review(run.id, 1, work_unit_id=unit.id) is not None:
                continue
            estimate.sample_size += 1
            request = self.build_stage1_request(unit)
            if request is None:
                continue
            if self.provider is not None:
                usage = self.provider.estimate_cost(request)
            else:
                usage = estimate_usage(request, model)
            estimate.input_tokens += usage.input_tokens
            estimate.output_tokens += usage.output_tokens
        for stage in (2, 3, 4):
            if self.cached_review(run.id, stage, user_login=run.user_login) is None:
                estimate.contributor_stages += 1
                estimate.input_tokens += CONTRIBUTOR_STAGE_INPUT_TOKENS
                estimate.output_tokens += CONTRIBUTOR_STAGE_OUTPUT_TOKENS
        estimate.cost_usd = calculate_cost(model, estimate.input_tokens, estimate.output_tokens)
        return estimate
