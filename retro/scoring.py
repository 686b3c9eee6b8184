"""Impact scoring for work units.

The score is a product of a sub-linear size term and two multipliers, plus
a fixed risk adjustment::

    size      = 10 * log10(1 + additions + deletions)
    critical  = 1 + critical_scale * sum(weights of matched critical-path globs)
    hotspot   = 1 + hotspot_weight * (touched files among the top hotspot files)
    score     = max(0, size * critical * hotspot + hotfix_bonus - revert_penalty)

Every factor is returned in :class:`ImpactBreakdown` so callers can display
why a unit scored the way it did.
"""
from __future__ import annotations

import math
from collections import Counter
from dataclasses import asdict, dataclass, field
from fnmatch import fnmatch
from typing import Iterable

from retro.clustering import ClusterCommit, WorkUnitData
from retro.config import CriticalPath, ImpactConfig


@dataclass
class ImpactBreakdown:
    score: float
    size_factor: float
    lines_changed: int
    critical_multiplier: float
    matched_patterns: list[str] = field(default_factory=list)
    hotspot_multiplier: float = 1.0
    hotspot_files: list[str] = field(default_factory=list)
    hotfix_adjustment: float = 0.0
    revert_adjustment: float = 0.0

    def factors(self) -> dict:
        data = asdict(self)
        data.pop("score")
        return data


def hotspot_files(commits: Iterable[ClusterCommit], top_n: int = 20, min_touches: int = 2) -> list[str]:
    """Files touched by the most commits, most frequent first.

    Only files touched at least ``min_touches`` times qualify.  Ties are
    broken by path so the table is stable.
    """
    counts: Counter[str] = Counter()
    for commit in commits:
        for path in {f.path for f in commit.files}:
            counts[path] += 1
    ranked = sorted(
        (path for path, n in counts.items() if n >= min_touches),
        key=lambda p: (-counts[p], p),
    )
    return ranked[:top_n]


def matching_critical_paths(paths: list[str], rules: list[CriticalPath]) -> list[CriticalPath]:
    """Rules whose glob matches at least one of *paths*; each rule counts once."""
    matched = []
    for rule in rules:
        pattern = rule.pattern.lower()
        if any(fnmatch(p.lower(), pattern) or fnmatch(p.lower() + "/", pattern) for p in paths):
            matched.append(rule)
    return matched


def size_factor(lines_changed: int) -> float:
    return 10 * math.log10(1 + max(0, lines_changed))


def score_work_unit(unit: WorkUnitData, hotspots: list[str] | set[str], config: ImpactConfig | None = None) -> ImpactBreakdown:
    config = config or ImpactConfig()
    lines = unit.lines_changed
    size = size_factor(lines)

    matched = matching_critical_paths(unit.primary_paths, config.critical_paths)
    critical = 1 + config.critical_scale * sum(r.weight for r in matched)

    hotspot_set = set(hotspots)
    overlap = [p for p in unit.touched_files if p in hotspot_set]
    hotspot = 1 + config.hotspot_weight * len(overlap)

    hotfix_adj = config.hotfix_bonus if unit.is_hotfix else 0.0
    revert_adj = -config.revert_penalty if unit.has_revert else 0.0

    score = max(0.0, round(size * critical * hotspot + hotfix_adj + revert_adj, 2))
    return ImpactBreakdown(
        score=score,
        size_factor=round(size, 3),
        lines_changed=lines,
        critical_multiplier=round(critical, 3),
        matched_patterns=[r.pattern for r in matched],
        hotspot_multiplier=round(hotspot, 3),
        hotspot_files=overlap,
        hotfix_adjustment=hotfix_adj,
        revert_adjustment=revert_adj,
    )


def score_work_units(units: list[WorkUnitData], year_commits: list[ClusterCommit],
                     config: ImpactConfig | None = None) -> list[ImpactBreakdown]:
    """Score a batch of units against the contributor's whole-year hotspot table."""
    config = config or ImpactConfig()
    hotspots = hotspot_files(year_commits, config.hotspot_top_n, config.hotspot_min_touches)
    return [score_work_unit(u, hotspots, config) for u in units]
