"""Tests for stage result normalization, aggregation and grading."""
from __future__ import annotations

import pytest

from retro.stages import (
    calculate_overall_score,
    clamp_score,
    default_stage1_result,
    extract_key_insights,
    grade_for,
    normalize_stage1,
    normalize_stage2,
    normalize_stage3,
    normalize_stage4,
    summarize_stage1,
)


class TestClampScore:
    @pytest.mark.parametrize("raw,expected", [
        (7, 7), (7.6, 8), ("6", 6), (0, 1), (-3, 1), (42, 10), (None, 5), ("high", 5), (float("nan"), 5),
        ("Infinity", 5), (float("-inf"), 5), ("1e400", 5),
    ])
    def test_values(self, raw, expected):
        assert clamp_score(raw) == expected


class TestStage1:
    def test_normalizes_scores_and_lists(self):
        result = normalize_stage1({
            "code_quality": {"score": 12, "readability": "7", "maintainability": None},
            "strengths": "Single string",
            "weaknesses": ["", "  ", "Real one"],
        })
        assert result["code_quality"] == {"score": 10, "readability": 7, "maintainability": 5, "best_practices": 5}
        assert result["strengths"] == ["Single string"]
        assert result["weaknesses"] == ["Real one"]
        assert result["code_patterns"] == []

    def test_garbage_becomes_default(self):
        assert normalize_stage1({"code_quality": "great"}) == default_stage1_result()

    def test_summary_of_nothing_is_neutral(self):
        summary = summarize_stage1([])
        assert summary["units_reviewed"] == 0
        assert summary["average_scores"]["score"] == 5.0

    def test_summary_averages_and_frequency(self):
        a = normalize_stage1({"code_quality": {"score": 8}, "strengths": ["Tests", "Naming"], "weaknesses": ["Docs"]})
        b = normalize_stage1({"code_quality": {"score": 6}, "strengths": ["Naming"], "weaknesses": ["Docs", "Size"]})
        summary = summarize_stage1([a, b])
        assert summary["average_scores"]["score"] == 7.0
        assert summary["common_strengths"][0] == "Naming"
        assert summary["common_weaknesses"][0] == "Docs"
        assert extract_key_insights([a, b]) == ["+ Naming", "+ Tests", "- Docs", "- Size"]


class TestContributorStages:
    def test_stage2_unknown_enums(self):
        result = normalize_stage2({"work_style": "wizard", "collaboration_pattern": "Mentor"})
        assert result["work_style"] == "multi-tasker"
        assert result["collaboration_pattern"] == "mentor"

    def test_stage3_filters_bad_entries(self):
        result = normalize_stage3({
            "areas_for_improvement": [
                {"area": "Testing", "priority": "urgent"},
                "not a dict",
                {"priority": "high"},
            ],
            "learning_opportunities": ["a", "b", "c", "d", "e", "f"],
        })
        assert result["areas_for_improvement"] == [
            {"area": "Testing", "priority": "medium", "specific_feedback": "", "suggested_resources": []},
        ]
        assert len(result["learning_opportunities"]) == 5

    def test_stage4_defaults(self):
        result = normalize_stage4({
            "overall_assessment": {"productivity": {"score": 9}},
            "action_items": ["Write docs", {"item": "Pair more", "deadline": "q3", "priority": "LOW"},
                             {"item": "Ship", "deadline": "next year"}],
        })
        assert result["overall_assessment"]["productivity"]["score"] == 9
        assert result["overall_assessment"]["growth"]["score"] == 5
        assert result["action_items"] == [
            {"item": "Write docs", "deadline": "Q1", "priority": "medium"},
            {"item": "Pair more", "deadline": "Q3", "priority": "low"},
            {"item": "Ship", "deadline": "Q1", "priority": "medium"},
        ]

    @pytest.mark.parametrize("value", [3, "Testing", {"area": "Testing"}, True])
    def test_non_list_entries_are_ignored(self, value):
        assert normalize_stage3({"areas_for_improvement": value})["areas_for_improvement"] == []
        assert normalize_stage4({"action_items": value})["action_items"] == []


class TestOverallScore:
    def test_weighted(self):
        stage4 = normalize_stage4({"overall_assessment": {
            "productivity": {"score": 8}, "code_quality": {"score": 8}, "diversity": {"score": 7},
            "collaboration": {"score": 7}, "growth": {"score": 8},
        }})
        assert calculate_overall_score(stage4) == 7.7

    def test_all_default_is_five(self):
        assert calculate_overall_score(normalize_stage4({})) == 5.0

    @pytest.mark.parametrize("score,grade", [(9.5, "S"), (9.0, "S"), (8.2, "A"), (7.0, "B"), (6.4, "C"),
                                             (5.0, "D"), (4.9, "F")])
    def test_grades(self, score, grade):
        assert grade_for(score) == grade
