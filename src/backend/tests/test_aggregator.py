"""Tests for the evaluator aggregator.

Covers:
- Composite scoring (median for 3+ judges, weighted mean below)
- Reliability of close and split panels
- Issue merging (criterion, location and description similarity)
- Issue priority ordering
- Conflict detection between opposite edit requests
- Determinism
"""

import pytest

from refinery.core.aggregator import (
    aggregate,
    description_similarity,
    detect_conflicts,
    fix_direction,
    merge_issues,
    prioritise,
    same_issue,
)
from refinery.core.errors import JudgeUnavailable
from refinery.core.rubric import DEFAULT_RUBRIC
from refinery.models.schemas import Confidence, Criterion, JudgeVerdict, Reliability, Severity

from tests.fakes import judge_def, make_config, make_issue


def _verdict(judge_id: str, score: float, issues=(), confidence=Confidence.HIGH) -> JudgeVerdict:
    return JudgeVerdict(judge_id=judge_id, overall_score=score, issues=list(issues), confidence=confidence)


def _config(*weights):
    return make_config([judge_def(jid, weight=w) for jid, w in weights] or [judge_def("a")])


# ---------------------------------------------------------------------------
# Scores and reliability
# ---------------------------------------------------------------------------

class TestAggregateScores:
    def test_three_judges_take_median(self) -> None:
        verdicts = [_verdict("cheap", 0.95, confidence=Confidence.MEDIUM),
                    _verdict("p1", 0.93), _verdict("p2", 0.91)]
        result = aggregate(verdicts, DEFAULT_RUBRIC, _config())
        assert result.composite_score == pytest.approx(0.93)
        assert result.reliability == Reliability.RELIABLE
        assert result.agreement == pytest.approx(0.9952)
        assert result.judge_ids == ["cheap", "p1", "p2"]

    def test_split_panel_with_tiebreaker_is_low(self) -> None:
        verdicts = [_verdict("p1", 0.95), _verdict("p2", 0.55), _verdict("tb", 0.54)]
        result = aggregate(verdicts, DEFAULT_RUBRIC, _config(), tiebreak_used=True)
        assert result.composite_score == pytest.approx(0.55)
        assert result.reliability == Reliability.LOW
        assert result.tiebreak_used is True

    def test_two_judges_use_weighted_mean(self) -> None:
        verdicts = [_verdict("a", 0.6), _verdict("b", 0.8)]
        result = aggregate(verdicts, DEFAULT_RUBRIC, _config(("a", 1.0), ("b", 3.0)))
        assert result.composite_score == pytest.approx(0.75)

    def test_unknown_judge_weighs_one(self) -> None:
        verdicts = [_verdict("a", 0.6), _verdict("stranger", 0.8)]
        result = aggregate(verdicts, DEFAULT_RUBRIC, _config(("a", 1.0)))
        assert result.composite_score == pytest.approx(0.70)

    def test_per_judge_composites_reported(self) -> None:
        result = aggregate([_verdict("a", 0.6), _verdict("b", 0.8)], DEFAULT_RUBRIC, _config())
        assert result.judge_scores["a"] == pytest.approx(0.6)
        assert result.judge_scores["b"] == pytest.approx(0.8)
        assert result.tokens_used == 0

    def test_missing_judges_downgrade(self) -> None:
        verdicts = [_verdict("a", 0.8), _verdict("b", 0.8)]
        result = aggregate(verdicts, DEFAULT_RUBRIC, _config(), missing_judges=["c"])
        assert result.reliability == Reliability.TENTATIVE
        assert result.missing_judges == ["c"]

    def test_no_verdicts_raises(self) -> None:
        with pytest.raises(JudgeUnavailable):
            aggregate([], DEFAULT_RUBRIC, _config(), missing_judges=["a"])

    def test_deterministic(self) -> None:
        verdicts = [
            _verdict("a", 0.7, [make_issue(), make_issue("sec_1", Criterion.FACTUAL_ACCURACY, Severity.MAJOR,
                                                         "Oxygen source is misattributed")]),
            _verdict("b", 0.74, [make_issue(description="Calvin cycle lacks a worked example")]),
        ]
        first = aggregate(verdicts, DEFAULT_RUBRIC, _config())
        second = aggregate(verdicts, DEFAULT_RUBRIC, _config())
        assert first == second


# ---------------------------------------------------------------------------
# Issue merging
# ---------------------------------------------------------------------------

class TestIssueMerging:
    def test_similarity(self) -> None:
        a = "Calvin cycle section lacks a worked example"
        b = "Calvin cycle section lacks worked example of carbon fixation"
        assert description_similarity(a, b) == pytest.approx(0.75)
        assert description_similarity("", "") == 1.0

    def test_near_duplicates_merge(self) -> None:
        verdicts = [
            _verdict("a", 0.7, [make_issue(description="Calvin cycle section lacks a worked example")]),
            _verdict("b", 0.7, [make_issue(
                severity=Severity.MAJOR,
                description="Calvin cycle section lacks worked example of carbon fixation",
            )]),
        ]
        merged = merge_issues(verdicts, 0.6)
        assert len(merged) == 1
        assert merged[0].severity == Severity.MAJOR
        assert merged[0].judge_ids == ("a", "b")
        assert merged[0].description == "Calvin cycle section lacks a worked example"

    def test_different_sections_stay_apart(self) -> None:
        a = make_issue("sec_1")
        b = make_issue("sec_2")
        assert not same_issue(a, b, 0.6)

    def test_different_criteria_stay_apart(self) -> None:
        a = make_issue(criterion=Criterion.COMPLETENESS)
        b = make_issue(criterion=Criterion.CLARITY_READABILITY)
        assert not same_issue(a, b, 0.6)

    def test_unlocated_issue_matches_any_location(self) -> None:
        assert same_issue(make_issue(""), make_issue("Section 2"), 0.6)

    def test_locator_spellings_are_equivalent(self) -> None:
        assert same_issue(make_issue("sec_2"), make_issue("Section 2: Calvin Cycle"), 0.6)

    def test_priority_order(self) -> None:
        minor_heavy = make_issue(criterion=Criterion.LEARNING_OBJECTIVE_ALIGNMENT, description="objective drift")
        minor_light = make_issue(criterion=Criterion.COMPLETENESS, description="missing summary")
        critical = make_issue(criterion=Criterion.COMPLETENESS, severity=Severity.CRITICAL, description="wrong")
        backed = make_issue(criterion=Criterion.COMPLETENESS, description="no recap", judge_ids=("a", "b"))
        ordered = prioritise([minor_light, minor_heavy, backed, critical], DEFAULT_RUBRIC)
        assert ordered == [critical, minor_heavy, backed, minor_light]


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------

class TestConflicts:
    def _pair(self, second_judge: str = "b"):
        grow = make_issue(
            criterion=Criterion.ENGAGEMENT_EXAMPLES,
            description="Too few examples",
            suggested_fix="Add two more worked examples",
            judge_ids=("a",),
        )
        shrink = make_issue(
            criterion=Criterion.CLARITY_READABILITY,
            description="Section is too long",
            suggested_fix="Shorten and condense the section",
            judge_ids=(second_judge,),
        )
        return grow, shrink

    def test_direction(self) -> None:
        grow, shrink = self._pair()
        assert fix_direction(grow) == "expand"
        assert fix_direction(shrink) == "reduce"
        assert fix_direction(make_issue(suggested_fix="Rephrase the definition")) is None

    def test_opposite_requests_conflict(self) -> None:
        grow, shrink = self._pair()
        conflicts = detect_conflicts([shrink, grow])
        assert len(conflicts) == 1
        assert conflicts[0].section == "sec_2"
        assert conflicts[0].expand_issue == grow

    def test_same_judge_is_not_a_conflict(self) -> None:
        grow, shrink = self._pair(second_judge="a")
        assert detect_conflicts([grow, shrink]) == []

    def test_aggregate_reports_conflicts(self) -> None:
        grow, shrink = self._pair()
        verdicts = [_verdict("a", 0.8, [grow]), _verdict("b", 0.8, [shrink])]
        result = aggregate(verdicts, DEFAULT_RUBRIC, _config())
        assert len(result.conflicts) == 1
