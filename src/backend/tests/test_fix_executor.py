"""Tests for the targeted fix executor.

Covers:
- minor_refine: scoped fixes, byte-identical untouched sections
- Entailment grading (confirmed / flagged / failed) and flagged-issue follow-up
- Partial failures and FixApplicationFailed
- Quality-lock regressions on the candidate
- major_refine section regeneration and reject full regeneration
- Re-judge selection (focus match plus canaries)
- Call budget accounting
"""

import asyncio

import pytest

from refinery.core.cascade import CascadeEvaluator
from refinery.core.errors import FixApplicationFailed, HardLimitExceeded, RegressionDetected
from refinery.core.fix_executor import TargetedFixExecutor, build_regeneration_feedback
from refinery.core.quality_lock import QualityLock
from refinery.core.router import route
from refinery.core.rubric import DEFAULT_RUBRIC
from refinery.core.sections import get_section, section_ids
from refinery.models.schemas import (
    AggregatedVerdict,
    Criterion,
    IterationStatus,
    Reliability,
    Severity,
)

from tests.fakes import (
    FakeEntailment,
    FakeFixer,
    FakeJudge,
    FakeRegenerator,
    judge_def,
    lesson,
    make_config,
    make_context,
    make_issue,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _verdict(score: float, issues=(), judge_ids=("a",)) -> AggregatedVerdict:
    return AggregatedVerdict(
        composite_score=score,
        criteria_scores={c: score for c in Criterion},
        per_criterion_agreement={c: 1.0 for c in Criterion},
        agreement=1.0,
        reliability=Reliability.RELIABLE,
        merged_issues=list(issues),
        judge_ids=list(judge_ids),
    )


def _make_executor(
    judges=None,
    defs=None,
    fixer=None,
    entailment=0.9,
    regenerator=None,
    lock=None,
    on_reevaluate=None,
    **overrides,
):
    judges = judges or [FakeJudge("a", 0.85)]
    defs = defs or [judge_def(j.judge_id) for j in judges]
    config = make_config(defs, **overrides)
    evaluator = CascadeEvaluator({j.judge_id: j for j in judges}, DEFAULT_RUBRIC, config)
    return TargetedFixExecutor(
        fixer or FakeFixer(),
        FakeEntailment(entailment),
        regenerator or FakeRegenerator(),
        evaluator,
        lock or QualityLock(),
        config,
        on_reevaluate=on_reevaluate,
    ), config


def _run(executor, config, verdict, content=None, ctx=None):
    content = content or lesson()
    decision = route(verdict, [], config, content)
    return asyncio.run(executor.apply(content, verdict, decision.recommendation, ctx or make_context()))


# ---------------------------------------------------------------------------
# minor_refine
# ---------------------------------------------------------------------------

class TestMinorRefine:
    def test_only_targeted_section_changes(self) -> None:
        fixer = FakeFixer()
        judge = FakeJudge("a", 0.85)
        executor, config = _make_executor(judges=[judge], fixer=fixer)
        before = lesson()
        issue = make_issue("sec_2")
        ctx = make_context()

        outcome = _run(executor, config, _verdict(0.70, [issue]), before, ctx)

        assert outcome.status == IterationStatus.APPLIED
        assert outcome.sections_modified == ["sec_2"]
        for sid in ("sec_0", "sec_1", "sec_3"):
            assert get_section(outcome.content, sid) == get_section(before, sid)
        assert "Worked example" in get_section(outcome.content, "sec_2").body
        assert outcome.fixed_issues == [issue]
        assert judge.calls == 1
        assert ctx.budget.used == 3

    def test_fixer_sees_only_its_scope(self) -> None:
        fixer = FakeFixer()
        executor, config = _make_executor(fixer=fixer)
        _run(executor, config, _verdict(0.80, [make_issue("sec_2")]))

        scope = fixer.scopes[0]
        assert scope.section.section_id == "sec_2"
        assert len(scope.issues) == 1
        assert "Calvin Cycle" in scope.preserve_terminology

    def test_flagged_issue_resolved_when_judges_stop_reporting_it(self) -> None:
        executor, config = _make_executor(entailment=0.75)
        outcome = _run(executor, config, _verdict(0.80, [make_issue()]))
        assert len(outcome.fixed_issues) == 1
        assert "1/1 flagged resolved" in outcome.note

    def test_flagged_issue_unresolved_when_reported_again(self) -> None:
        judge = FakeJudge("a", 0.85, issues=[make_issue(judge_ids=("a",))])
        executor, config = _make_executor(judges=[judge], entailment=0.75)
        outcome = _run(executor, config, _verdict(0.80, [make_issue()]))
        assert outcome.fixed_issues == []
        assert len(outcome.unresolved_issues) == 1

    def test_failed_entailment_raises(self) -> None:
        judge = FakeJudge("a", 0.85)
        executor, config = _make_executor(judges=[judge], entailment=0.5)
        with pytest.raises(FixApplicationFailed):
            _run(executor, config, _verdict(0.80, [make_issue()]))
        assert judge.calls == 0

    def test_failing_section_is_kept(self) -> None:
        fixer = FakeFixer(fail_sections={"sec_1"})
        executor, config = _make_executor(fixer=fixer)
        before = lesson()
        other = make_issue("sec_1", Criterion.CLARITY_READABILITY, description="Define chlorophyll before using it")

        outcome = _run(executor, config, _verdict(0.80, [make_issue(), other]), before)

        assert outcome.sections_modified == ["sec_2"]
        assert get_section(outcome.content, "sec_1") == get_section(before, "sec_1")
        assert other in outcome.unresolved_issues

    def test_locked_criterion_regression_blocks_candidate(self) -> None:
        lock = QualityLock()
        lock.confirm({c: 0.90 for c in Criterion})
        executor, config = _make_executor(judges=[FakeJudge("a", 0.70)], lock=lock)

        with pytest.raises(RegressionDetected) as exc:
            _run(executor, config, _verdict(0.80, [make_issue()]))
        assert exc.value.candidate_score == pytest.approx(0.70)

    def test_budget_exhausted_mid_fix(self) -> None:
        executor, config = _make_executor()
        with pytest.raises(HardLimitExceeded):
            _run(executor, config, _verdict(0.80, [make_issue()]), ctx=make_context(max_calls=1))

    def test_reevaluation_hook_called(self) -> None:
        calls = []
        executor, config = _make_executor(on_reevaluate=lambda: calls.append(1))
        _run(executor, config, _verdict(0.80, [make_issue()]))
        assert calls == [1]

    @pytest.mark.parametrize("score,grade", [
        (0.85, "confirmed"), (0.84, "flagged"), (0.70, "flagged"), (0.69, "failed"),
    ])
    def test_grade(self, score, grade) -> None:
        executor, _ = _make_executor()
        assert executor.grade(score) == grade


# ---------------------------------------------------------------------------
# major_refine / reject
# ---------------------------------------------------------------------------

class TestRegeneration:
    def test_major_refine_regenerates_flagged_sections(self) -> None:
        regenerator = FakeRegenerator()
        executor, config = _make_executor(regenerator=regenerator)
        before = lesson()
        serious = make_issue("sec_1", Criterion.FACTUAL_ACCURACY, Severity.MAJOR, "Oxygen source is wrong")

        outcome = _run(executor, config, _verdict(0.65, [serious]), before)

        assert outcome.status == IterationStatus.REGENERATED
        assert regenerator.section_calls == ["sec_1"]
        assert get_section(outcome.content, "sec_1").body == "Regenerated body.\n\n"
        for sid in ("sec_0", "sec_2", "sec_3"):
            assert get_section(outcome.content, sid) == get_section(before, sid)
        assert "Issues to address:" in regenerator.feedback[0]

    def test_reject_regenerates_whole_lesson(self) -> None:
        regenerator = FakeRegenerator()
        judge = FakeJudge("a", 0.80)
        executor, config = _make_executor(judges=[judge], regenerator=regenerator)

        outcome = _run(executor, config, _verdict(0.40, [make_issue()]))

        assert regenerator.lesson_calls == 1
        assert outcome.status == IterationStatus.REGENERATED
        assert [s.title for s in outcome.content.sections[1:]] == ["What Plants Need", "How It Works"]
        assert outcome.sections_modified == section_ids(outcome.content)
        assert judge.calls == 1

    def test_full_regeneration_is_lock_checked(self) -> None:
        lock = QualityLock()
        lock.confirm({c: 0.90 for c in Criterion})
        executor, config = _make_executor(judges=[FakeJudge("a", 0.50)], lock=lock)
        with pytest.raises(RegressionDetected):
            _run(executor, config, _verdict(0.40, [make_issue()]))

    def test_feedback_orders_most_severe_group_first(self) -> None:
        feedback = build_regeneration_feedback([
            make_issue(),
            make_issue("sec_1", Criterion.FACTUAL_ACCURACY, Severity.CRITICAL, "Oxygen comes from CO2"),
        ])
        assert feedback.index("factual_accuracy") < feedback.index("engagement_examples")
        assert "[CRITICAL] (sec_1)" in feedback

    def test_feedback_without_issues(self) -> None:
        assert "No specific issues" in build_regeneration_feedback([])


# ---------------------------------------------------------------------------
# Re-judge selection
# ---------------------------------------------------------------------------

class TestRejudgeSelection:
    def _executor(self, canaries: int):
        judges = [FakeJudge(jid, 0.85) for jid in ("a", "b", "c")]
        defs = [
            judge_def("a", focus=[Criterion.FACTUAL_ACCURACY]),
            judge_def("b", focus=[Criterion.CLARITY_READABILITY]),
            judge_def("c"),
        ]
        executor, _ = _make_executor(judges=judges, defs=defs, canary_count=canaries)
        return executor

    def test_focus_match_plus_generalists(self) -> None:
        executor = self._executor(canaries=0)
        verdict = _verdict(0.8, judge_ids=("a", "b", "c"))
        assert executor.select_rejudges(verdict, {Criterion.CLARITY_READABILITY}) == ["b", "c"]

    def test_canary_added_from_the_rest(self) -> None:
        executor = self._executor(canaries=1)
        verdict = _verdict(0.8, judge_ids=("a", "b", "c"))
        assert executor.select_rejudges(verdict, {Criterion.CLARITY_READABILITY}) == ["a", "b", "c"]

    def test_pool_limited_to_previous_panel(self) -> None:
        executor = self._executor(canaries=0)
        verdict = _verdict(0.8, judge_ids=("a",))
        assert executor.select_rejudges(verdict, {Criterion.CLARITY_READABILITY}) == ["a"]

    def test_no_implicated_criteria_reruns_everyone(self) -> None:
        executor = self._executor(canaries=0)
        verdict = _verdict(0.8, judge_ids=("a", "b", "c"))
        assert executor.select_rejudges(verdict, set()) == ["a", "b", "c"]
