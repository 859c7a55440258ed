"""Tests for cascading evaluation: heuristic pre-filter, cheap judge, panel, tiebreaker, timeouts."""

import asyncio

import pytest

from refinery.core.cascade import CascadeEvaluator
from refinery.core.config import JudgeRole
from refinery.core.errors import HardLimitExceeded, JudgeUnavailable
from refinery.core.rubric import DEFAULT_RUBRIC
from refinery.core.sections import parse_markdown
from refinery.models.schemas import Confidence, Criterion, Reliability

from tests.fakes import FakeJudge, judge_def, lesson, make_config, make_context


def _evaluator(judges, defs, **overrides):
    config = make_config(defs, **overrides)
    return CascadeEvaluator({j.judge_id: j for j in judges}, DEFAULT_RUBRIC, config)


# ---------------------------------------------------------------------------
# Cheap stage
# ---------------------------------------------------------------------------

class TestCheapStage:
    def test_confident_cheap_judge_skips_panel(self) -> None:
        cheap = FakeJudge("cheap", 0.70, Confidence.HIGH)
        panel = FakeJudge("p1", 0.90)
        evaluator = _evaluator([cheap, panel], [judge_def("cheap", JudgeRole.CHEAP), judge_def("p1")])
        ctx = make_context()

        verdict = asyncio.run(evaluator.evaluate(lesson(), ctx))

        assert verdict.composite_score == pytest.approx(0.70)
        assert verdict.judge_ids == ["cheap"]
        assert panel.calls == 0
        assert ctx.budget.used == 1

    def test_borderline_score_goes_to_panel(self) -> None:
        cheap = FakeJudge("cheap", 0.90, Confidence.HIGH)
        panel = FakeJudge("p1", 0.88)
        evaluator = _evaluator([cheap, panel], [judge_def("cheap", JudgeRole.CHEAP), judge_def("p1")])

        verdict = asyncio.run(evaluator.evaluate(lesson(), make_context()))

        assert panel.calls == 1
        assert verdict.judge_ids == ["cheap", "p1"]

    def test_medium_confidence_goes_to_panel(self) -> None:
        """A confident-looking score with medium confidence still needs the panel."""
        cheap = FakeJudge("cheap", 0.95, Confidence.MEDIUM)
        p1 = FakeJudge("p1", 0.93)
        p2 = FakeJudge("p2", 0.91)
        evaluator = _evaluator(
            [cheap, p1, p2],
            [judge_def("cheap", JudgeRole.CHEAP), judge_def("p1"), judge_def("p2")],
        )
        ctx = make_context()

        verdict = asyncio.run(evaluator.evaluate(lesson(), ctx))

        assert verdict.composite_score == pytest.approx(0.93)
        assert verdict.reliability == Reliability.RELIABLE
        assert verdict.tiebreak_used is False
        assert ctx.budget.used == 3
        assert ctx.ledger.call_count == 3


# ---------------------------------------------------------------------------
# Panel and tiebreaker
# ---------------------------------------------------------------------------

class TestPanel:
    def test_disagreement_calls_tiebreaker(self) -> None:
        p1 = FakeJudge("p1", 0.95)
        p2 = FakeJudge("p2", 0.55)
        tb = FakeJudge("tb", 0.54)
        evaluator = _evaluator(
            [p1, p2, tb], [judge_def("p1"), judge_def("p2"), judge_def("tb", JudgeRole.TIEBREAKER)],
        )

        verdict = asyncio.run(evaluator.evaluate(lesson(), make_context()))

        assert tb.calls == 1
        assert verdict.tiebreak_used is True
        assert verdict.composite_score == pytest.approx(0.55)
        assert verdict.reliability == Reliability.LOW

    def test_timed_out_judge_counts_as_missing(self) -> None:
        fast = FakeJudge("fast", 0.80)
        slow = FakeJudge("slow", 0.80, delay=1.0)
        evaluator = _evaluator(
            [fast, slow], [judge_def("fast"), judge_def("slow", timeout_seconds=0.05)],
        )

        verdict = asyncio.run(evaluator.evaluate(lesson(), make_context()))

        assert verdict.judge_ids == ["fast"]
        assert verdict.missing_judges == ["slow"]
        assert verdict.reliability == Reliability.TENTATIVE

    def test_failing_judge_counts_as_missing(self) -> None:
        ok = FakeJudge("ok", 0.80)
        broken = FakeJudge("broken", 0.80, error=RuntimeError("503 Service Unavailable"))
        evaluator = _evaluator([ok, broken], [judge_def("ok"), judge_def("broken")])

        verdict = asyncio.run(evaluator.evaluate(lesson(), make_context()))

        assert verdict.missing_judges == ["broken"]

    def test_no_responses_raises(self) -> None:
        broken = FakeJudge("broken", 0.80, error=RuntimeError("down"))
        evaluator = _evaluator([broken], [judge_def("broken")])
        with pytest.raises(JudgeUnavailable) as exc:
            asyncio.run(evaluator.evaluate(lesson(), make_context()))
        assert exc.value.failed_judges == ["broken"]

    def test_quorum_not_met_raises(self) -> None:
        ok = FakeJudge("ok", 0.80)
        broken = FakeJudge("broken", 0.80, error=RuntimeError("down"))
        evaluator = _evaluator([ok, broken], [judge_def("ok"), judge_def("broken")], judge_quorum=2)
        with pytest.raises(JudgeUnavailable):
            asyncio.run(evaluator.evaluate(lesson(), make_context()))

    def test_budget_charged_before_dispatch(self) -> None:
        p1 = FakeJudge("p1", 0.80)
        p2 = FakeJudge("p2", 0.80)
        evaluator = _evaluator([p1, p2], [judge_def("p1"), judge_def("p2")])
        ctx = make_context(max_calls=1)

        with pytest.raises(HardLimitExceeded):
            asyncio.run(evaluator.evaluate(lesson(), ctx))

        assert p1.calls == 0 and p2.calls == 0
        assert ctx.budget.used == 0


class TestEvaluateWith:
    def test_only_named_judges_run(self) -> None:
        p1 = FakeJudge("p1", 0.80)
        p2 = FakeJudge("p2", 0.60)
        evaluator = _evaluator([p1, p2], [judge_def("p1"), judge_def("p2")])

        verdict = asyncio.run(evaluator.evaluate_with(lesson(), ["p2"], make_context()))

        assert p1.calls == 0
        assert verdict.judge_ids == ["p2"]
        assert verdict.composite_score == pytest.approx(0.60)

    def test_judge_id_taken_from_config(self) -> None:
        judge = FakeJudge("whatever", 0.80)
        evaluator = CascadeEvaluator({"p1": judge}, DEFAULT_RUBRIC, make_config([judge_def("p1")]))

        verdict = asyncio.run(evaluator.evaluate(lesson(), make_context()))

        assert verdict.judge_ids == ["p1"]


# ---------------------------------------------------------------------------
# Heuristic pre-filter
# ---------------------------------------------------------------------------

THIN_LESSON = "# Photosynthesis\n\n## Light\nPlants use light.\n"


class TestPrefilter:
    def test_thin_lesson_skips_every_judge(self) -> None:
        cheap = FakeJudge("cheap", 0.95, Confidence.HIGH)
        evaluator = _evaluator([cheap], [judge_def("cheap", JudgeRole.CHEAP)])
        ctx = make_context()

        verdict = asyncio.run(evaluator.evaluate(parse_markdown(THIN_LESSON), ctx))

        assert cheap.calls == 0
        assert ctx.budget.used == 0
        assert verdict.composite_score == 0.0
        assert verdict.judge_ids == []
        assert set(verdict.criteria_scores.values()) == {0.0}
        assert any("words" in f for f in verdict.heuristic_failures)
        assert verdict.merged_issues[0].criterion == Criterion.COMPLETENESS

    def test_passing_lesson_reaches_judges(self) -> None:
        cheap = FakeJudge("cheap", 0.70, Confidence.HIGH)
        evaluator = _evaluator([cheap], [judge_def("cheap", JudgeRole.CHEAP)])

        verdict = asyncio.run(evaluator.evaluate(lesson(), make_context()))

        assert cheap.calls == 1
        assert verdict.heuristic_failures == []

    def test_disabled_prefilter_judges_anything(self) -> None:
        cheap = FakeJudge("cheap", 0.70, Confidence.HIGH)
        evaluator = _evaluator([cheap], [judge_def("cheap", JudgeRole.CHEAP)], heuristic_prefilter=False)

        verdict = asyncio.run(evaluator.evaluate(parse_markdown(THIN_LESSON), make_context()))

        assert cheap.calls == 1
        assert verdict.composite_score == pytest.approx(0.70)

    def test_targeted_rejudge_bypasses_prefilter(self) -> None:
        p1 = FakeJudge("p1", 0.80)
        evaluator = _evaluator([p1], [judge_def("p1")])

        asyncio.run(evaluator.evaluate_with(parse_markdown(THIN_LESSON), ["p1"], make_context()))

        assert p1.calls == 1
