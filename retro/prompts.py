"""Prompt templates for the four review stages."""
from __future__ import annotations

import json
from typing import Any

PROMPT_VERSION = "v1.0.0"

# ---------------------------------------------------------------------------
# System prompts
# ---------------------------------------------------------------------------

STAGE1_SYSTEM = """\
You are a senior engineer reviewing one unit of a developer's work: a \
cluster of related commits in a single repository.

Judge the code in the diff excerpts, not the volume of change. Assess:
- Readability: naming, structure, clarity of intent
- Maintainability: modularity, coupling, testability
- Best practices: error handling, security, idiomatic use of the language

Be specific and constructive. Reference concrete patterns you see in the diff.

Scores are integers from 1 (poor) to 10 (exemplary).

Respond with ONLY valid JSON:
{
  "code_quality": {"score": <1-10>, "readability": <1-10>, "maintainability": <1-10>, "best_practices": <1-10>},
  "strengths": ["<strength>", ...],
  "weaknesses": ["<weakness>", ...],
  "code_patterns": ["<pattern observed>", ...],
  "suggestions": ["<actionable suggestion>", ...]
}
"""

STAGE2_SYSTEM = """\
You are an engineering manager analysing a developer's work pattern over a year.

Use the aggregated code review findings and activity metrics to describe how \
this person works: focus versus context switching, reactive versus planned \
work, and how they collaborate through pull requests.

work_style must be one of: deep-diver, multi-tasker, firefighter, architect.
collaboration_pattern must be one of: solo, collaborative, mentor, learner.

Respond with ONLY valid JSON:
{
  "work_style": "<deep-diver|multi-tasker|firefighter|architect>",
  "collaboration_pattern": "<solo|collaborative|mentor|learner>",
  "productivity_insights": ["<insight>", ...],
  "time_management_feedback": "<2-3 sentences>"
}
"""

STAGE3_SYSTEM = """\
You are a mentor identifying growth opportunities for a developer.

Base every point on the evidence provided (review findings, work pattern, \
metrics). Prioritise the few changes that would make the biggest difference.

Respond with ONLY valid JSON:
{
  "areas_for_improvement": [
    {"area": "<area>", "priority": "<high|medium|low>", "specific_feedback": "<feedback>",
     "suggested_resources": ["<resource>", ...]}
  ],
  "learning_opportunities": ["<opportunity>", ...],
  "strengths_to_leverage": ["<strength>", ...],
  "career_growth_suggestions": ["<suggestion>", ...]
}
"""

STAGE4_SYSTEM = """\
You are writing the annual contribution summary for a developer.

Combine all prior analysis into a fair, specific executive summary and an \
assessment across five dimensions, each scored 1-10 with one or two \
sentences of feedback.

Respond with ONLY valid JSON:
{
  "executive_summary": "<3-5 sentences>",
  "overall_assessment": {
    "productivity": {"score": <1-10>, "feedback": "<feedback>"},
    "code_quality": {"score": <1-10>, "feedback": "<feedback>"},
    "diversity": {"score": <1-10>, "feedback": "<feedback>"},
    "collaboration": {"score": <1-10>, "feedback": "<feedback>"},
    "growth": {"score": <1-10>, "feedback": "<feedback>"}
  },
  "top_achievements": ["<achievement>", ...],
  "key_improvements": ["<improvement>", ...],
  "action_items": [{"item": "<action>", "deadline": "<Q1|Q2|Q3|Q4>", "priority": "<high|medium|low>"}]
}
"""


def _block(label: str, payload: Any) -> str:
    return f"{label}:\n{json.dumps(payload, indent=2, ensure_ascii=False, default=str)}"


# ---------------------------------------------------------------------------
# User prompt builders
# ---------------------------------------------------------------------------


def build_stage1_prompt(unit: dict[str, Any], diff: str) -> str:
    lines = [
        f"REPOSITORY: {unit.get('repository', '')}",
        f"LANGUAGE: {unit.get('language') or 'unknown'}",
        f"WORK TYPE: {unit.get('work_type', '')}",
        f"PERIOD: {unit.get('start_at')} -> {unit.get('end_at')}",
        f"COMMITS: {unit.get('commit_count', 0)} (+{unit.get('additions', 0)} / -{unit.get('deletions', 0)}, "
        f"{unit.get('files_changed', 0)} files)",
        f"PRIMARY PATHS: {', '.join(unit.get('primary_paths', [])) or '-'}",
    ]
    if unit.get("is_hotfix"):
        lines.append("FLAGS: hotfix")
    if unit.get("has_revert"):
        lines.append("FLAGS: contains revert")
    messages = unit.get("messages", [])
    if messages:
        lines.append("COMMIT MESSAGES:")
        lines.extend(f"- {m}" for m in messages[:20])
    lines.append("")
    lines.append("DIFF EXCERPTS:")
    lines.append(diff)
    return "\n".join(lines)


def build_stage2_prompt(user_login: str, stage1_summary: dict[str, Any], metrics: dict[str, Any]) -> str:
    return "\n\n".join([
        f"DEVELOPER: {user_login}",
        _block("CODE REVIEW SUMMARY", stage1_summary),
        _block("ACTIVITY METRICS", metrics),
    ])


def build_stage3_prompt(user_login: str, stage1_summary: dict[str, Any], stage2: dict[str, Any],
                        metrics: dict[str, Any]) -> str:
    return "\n\n".join([
        f"DEVELOPER: {user_login}",
        _block("CODE REVIEW SUMMARY", stage1_summary),
        _block("WORK PATTERN", stage2),
        _block("ACTIVITY METRICS", metrics),
    ])


def build_stage4_prompt(user_login: str, year: int, stage1_summary: dict[str, Any], stage2: dict[str, Any],
                        stage3: dict[str, Any], metrics: dict[str, Any]) -> str:
    return "\n\n".join([
        f"DEVELOPER: {user_login}",
        f"YEAR: {year}",
        _block("CODE REVIEW SUMMARY", stage1_summary),
        _block("WORK PATTERN", stage2),
        _block("GROWTH POINTS", stage3),
        _block("ACTIVITY METRICS", metrics),
    ])
