"""Select a bounded, representative subset of work units for AI review."""
from __future__ import annotations

import logging
import random
from collections import defaultdict
from dataclasses import dataclass, field

from retro.config import SamplingConfig

log = logging.getLogger(__name__)

# Lower tier wins when the global cap forces a cut.
TIER_TOP = 0
TIER_IMPACT = 1
TIER_RISK = 2
TIER_RANDOM = 3

_REASONS = {TIER_TOP: "top", TIER_IMPACT: "impact", TIER_RISK: "risk", TIER_RANDOM: "random"}


@dataclass
class SampleCandidate:
    unit_id: int
    repo_id: int
    impact_score: float
    is_hotfix: bool = False
    has_revert: bool = False


@dataclass
class RepoSampleSummary:
    repo_id: int
    total_units: int
    sampled_units: int
    top_impact_score: float
    avg_impact_score: float


@dataclass
class SamplingResult:
    selected: list[int]
    reasons: dict[int, str]
    summaries: list[RepoSampleSummary] = field(default_factory=list)

    @property
    def selected_set(self) -> set[int]:
        return set(self.selected)


def _rank(units: list[SampleCandidate]) -> list[SampleCandidate]:
    return sorted(units, key=lambda u: (-u.impact_score, u.unit_id))


def _select_for_repo(units: list[SampleCandidate], config: SamplingConfig,
                     rng: random.Random) -> list[tuple[int, SampleCandidate]]:
    """Return (tier, unit) picks for one repository."""
    ranked = _rank(units)
    if len(ranked) <= config.heuristic_threshold:
        picks = [(TIER_TOP, ranked[0])]
        picks.extend((TIER_IMPACT, u) for u in ranked[1:])
        return picks

    quota = max(1, config.max_per_repo)
    top_k = max(1, min(config.top_per_repo, quota))
    picks = [(TIER_TOP, ranked[0])]
    picks.extend((TIER_IMPACT, u) for u in ranked[1:top_k])
    chosen = {u.unit_id for _, u in picks}

    risky = [u for u in ranked if u.unit_id not in chosen and (u.is_hotfix or u.has_revert)]
    room = max(0, quota - len(picks))
    for u in risky[:min(config.max_risk_extras, room)]:
        picks.append((TIER_RISK, u))
        chosen.add(u.unit_id)

    rest = [u for u in ranked if u.unit_id not in chosen]
    room = max(0, quota - len(picks))
    if rest and room:
        for u in rng.sample(rest, min(room, len(rest))):
            picks.append((TIER_RANDOM, u))
    return picks


def select_samples(units: list[SampleCandidate], config: SamplingConfig | None = None,
                   seed: int | None = None) -> SamplingResult:
    """Pick units for review.

    Per repository: all units when at or below ``heuristic_threshold``,
    otherwise the top-impact units, a few extra hotfix/revert units and a
    random fill up to ``max_per_repo``.  The global ``max_total_samples``
    cap is applied last, keeping every repository's top unit before any
    other pick.
    """
    config = config or SamplingConfig()
    rng = random.Random(seed if seed is not None else config.seed)

    by_repo: dict[int, list[SampleCandidate]] = defaultdict(list)
    for u in units:
        by_repo[u.repo_id].append(u)

    picks: list[tuple[int, SampleCandidate]] = []
    for repo_id in sorted(by_repo):
        picks.extend(_select_for_repo(by_repo[repo_id], config, rng))

    picks.sort(key=lambda p: (p[0], -p[1].impact_score, p[1].unit_id))
    cap = config.max_total_samples
    if cap is not None and len(picks) > cap:
        log.info("Sampling cap %d reached, dropping %d candidate(s)", cap, len(picks) - cap)
        picks = picks[:cap]

    selected = [u.unit_id for _, u in picks]
    reasons = {u.unit_id: _REASONS[tier] for tier, u in picks}
    for repo_id, repo_units in by_repo.items():
        if len(repo_units) <= config.heuristic_threshold:
            for u in repo_units:
                if u.unit_id in reasons:
                    reasons[u.unit_id] = "all"

    selected_set = set(selected)
    summaries = []
    for repo_id in sorted(by_repo):
        repo_units = by_repo[repo_id]
        scores = [u.impact_score for u in repo_units]
        summaries.append(RepoSampleSummary(
            repo_id=repo_id,
            total_units=len(repo_units),
            sampled_units=sum(1 for u in repo_units if u.unit_id in selected_set),
            top_impact_score=max(scores),
            avg_impact_score=round(sum(scores) / len(scores), 2),
        ))
    return SamplingResult(selected=selected, reasons=reasons, summaries=summaries)
