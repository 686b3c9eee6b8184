"""Normalization and aggregation of stage results.

LLM output is never trusted as-is: every stage payload passes through a
``normalize_stage*`` function that clamps scores, coerces lists and falls
back to defaults for unknown enum values.
"""
from __future__ import annotations

import logging
import math
from collections import Counter
from typing import Any

log = logging.getLogger(__name__)

SCORE_MIN = 1
SCORE_MAX = 10
SCORE_DEFAULT = 5

VALID_WORK_STYLES = {"deep-diver", "multi-tasker", "firefighter", "architect"}
VALID_COLLABORATION = {"solo", "collaborative", "mentor", "learner"}
VALID_PRIORITIES = {"high", "medium", "low"}
VALID_DEADLINES = {"Q1", "Q2", "Q3", "Q4"}
ASSESSMENT_DIMENSIONS = ("productivity", "code_quality", "diversity", "collaboration", "growth")
QUALITY_FIELDS = ("score", "readability", "maintainability", "best_practices")

OVERALL_WEIGHTS = {
    "productivity": 0.25,
    "code_quality": 0.30,
    "diversity": 0.15,
    "collaboration": 0.15,
    "growth": 0.15,
}
GRADE_THRESHOLDS = [(9.0, "S"), (8.0, "A"), (7.0, "B"), (6.0, "C"), (5.0, "D")]


def clamp_score(val: Any, default: int = SCORE_DEFAULT) -> int:
    try:
        num = float(val)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(num):
        return default
    return int(max(SCORE_MIN, min(SCORE_MAX, round(num))))


def _string_list(val: Any, limit: int | None = None) -> list[str]:
    if isinstance(val, str):
        val = [val]
    if not isinstance(val, list):
        return []
    out = [str(v).strip() for v in val if v is not None and str(v).strip()]
    return out[:limit] if limit is not None else out


def _choice(val: Any, valid: set[str], default: str, label: str) -> str:
    choice = str(val or "").strip().lower()
    if choice not in valid:
        if val:
            log.warning("Unrecognized %s %r, defaulting to %s", label, val, default)
        return default
    return choice


# ---------------------------------------------------------------------------
# Stage 1: code quality per work unit
# ---------------------------------------------------------------------------


def default_stage1_result() -> dict[str, Any]:
    return {
        "code_quality": {f: SCORE_DEFAULT for f in QUALITY_FIELDS},
        "strengths": [],
        "weaknesses": [],
        "code_patterns": [],
        "suggestions": [],
    }


def normalize_stage1(raw: dict[str, Any]) -> dict[str, Any]:
    quality = raw.get("code_quality")
    if not isinstance(quality, dict):
        quality = {}
    return {
        "code_quality": {f: clamp_score(quality.get(f)) for f in QUALITY_FIELDS},
        "strengths": _string_list(raw.get("strengths")),
        "weaknesses": _string_list(raw.get("weaknesses")),
        "code_patterns": _string_list(raw.get("code_patterns")),
        "suggestions": _string_list(raw.get("suggestions")),
    }


def _top_frequent(items: list[str], n: int = 5) -> list[str]:
    counts = Counter(items)
    first_seen = {}
    for idx, item in enumerate(items):
        first_seen.setdefault(item, idx)
    return sorted(counts, key=lambda s: (-counts[s], first_seen[s]))[:n]


def summarize_stage1(results: list[dict[str, Any]]) -> dict[str, Any]:
    """Aggregate stage-1 results into averages plus frequency-ranked findings."""
    if not results:
        return {
            "units_reviewed": 0,
            "average_scores": {f: float(SCORE_DEFAULT) for f in QUALITY_FIELDS},
            "common_strengths": [],
            "common_weaknesses": [],
            "common_patterns": [],
        }
    averages = {}
    for f in QUALITY_FIELDS:
        values = [r["code_quality"][f] for r in results]
        averages[f] = round(sum(values) / len(values), 1)
    return {
        "units_reviewed": len(results),
        "average_scores": averages,
        "common_strengths": _top_frequent([s for r in results for s in r["strengths"]]),
        "common_weaknesses": _top_frequent([s for r in results for s in r["weaknesses"]]),
        "common_patterns": _top_frequent([s for r in results for s in r["code_patterns"]]),
    }


def extract_key_insights(results: list[dict[str, Any]]) -> list[str]:
    """Top 3 strengths and top 2 weaknesses across results."""
    strengths = _top_frequent([s for r in results for s in r["strengths"]], 3)
    weaknesses = _top_frequent([s for r in results for s in r["weaknesses"]], 2)
    return [f"+ {s}" for s in strengths] + [f"- {w}" for w in weaknesses]


# ---------------------------------------------------------------------------
# Stages 2-4: per contributor
# ---------------------------------------------------------------------------


def normalize_stage2(raw: dict[str, Any]) -> dict[str, Any]:
    return {
        "work_style": _choice(raw.get("work_style"), VALID_WORK_STYLES, "multi-tasker", "work style"),
        "collaboration_pattern": _choice(raw.get("collaboration_pattern"), VALID_COLLABORATION, "solo",
                                         "collaboration pattern"),
        "productivity_insights": _string_list(raw.get("productivity_insights")),
        "time_management_feedback": str(raw.get("time_management_feedback") or ""),
    }


def normalize_stage3(raw: dict[str, Any]) -> dict[str, Any]:
    areas = []
    items = raw.get("areas_for_improvement")
    for item in items if isinstance(items, list) else []:
        if not isinstance(item, dict) or not item.get("area"):
            continue
        areas.append({
            "area": str(item["area"]),
            "priority": _choice(item.get("priority"), VALID_PRIORITIES, "medium", "priority"),
            "specific_feedback": str(item.get("specific_feedback") or ""),
            "suggested_resources": _string_list(item.get("suggested_resources")),
        })
    return {
        "areas_for_improvement": areas[:5],
        "learning_opportunities": _string_list(raw.get("learning_opportunities"), 5),
        "strengths_to_leverage": _string_list(raw.get("strengths_to_leverage"), 5),
        "career_growth_suggestions": _string_list(raw.get("career_growth_suggestions"), 3),
    }


def normalize_stage4(raw: dict[str, Any]) -> dict[str, Any]:
    assessment_raw = raw.get("overall_assessment")
    if not isinstance(assessment_raw, dict):
        assessment_raw = {}
    assessment = {}
    for dim in ASSESSMENT_DIMENSIONS:
        entry = assessment_raw.get(dim)
        if not isinstance(entry, dict):
            entry = {}
        assessment[dim] = {"score": clamp_score(entry.get("score")), "feedback": str(entry.get("feedback") or "")}

    actions = []
    items = raw.get("action_items")
    for item in items if isinstance(items, list) else []:
        if isinstance(item, str):
            item = {"item": item}
        if not isinstance(item, dict) or not item.get("item"):
            continue
        deadline = str(item.get("deadline") or "Q1").strip().upper()
        actions.append({
            "item": str(item["item"]),
            "deadline": deadline if deadline in VALID_DEADLINES else "Q1",
            "priority": _choice(item.get("priority"), VALID_PRIORITIES, "medium", "priority"),
        })
    return {
        "executive_summary": str(raw.get("executive_summary") or ""),
        "overall_assessment": assessment,
        "top_achievements": _string_list(raw.get("top_achievements"), 5),
        "key_improvements": _string_list(raw.get("key_improvements"), 5),
        "action_items": actions[:5],
    }


NORMALIZERS = {1: normalize_stage1, 2: normalize_stage2, 3: normalize_stage3, 4: normalize_stage4}


# ---------------------------------------------------------------------------
# Overall score
# ---------------------------------------------------------------------------


def calculate_overall_score(stage4: dict[str, Any]) -> float:
    assessment = stage4.get("overall_assessment", {})
    total = sum(assessment.get(dim, {}).get("score", SCORE_DEFAULT) * w for dim, w in OVERALL_WEIGHTS.items())
    return round(total, 1)


def grade_for(score: float) -> str:
    for threshold, grade in GRADE_THRESHOLDS:
        if score >= threshold:
            return grade
    return "F"
