# [Core: Targeted Fix Executor]
"""
Targeted Fix Executor — applies a FixRecommendation and verifies it
without regenerating the whole lesson.

minor_refine:
  1. Isolate each targeted section, plus anchor excerpts of the sections
     it references; everything else is an opaque preserve block
  2. Ask the fix service for a revised section (bounded concurrency)
  3. Entailment per targeted issue: confirmed / flagged / failed
  4. Re-run the implicated judges plus a random canary subset
  5. Quality lock: block the candidate if a locked criterion regressed

major_refine regenerates the targeted sections instead of patching them
and goes through steps 4-5. reject regenerates the whole lesson and is
re-evaluated by the full cascade.

Collaborator contracts (duck-typed):
  fixer.apply_fix(scope: FixScope, recommendation) -> str
  entailment.score(revised_section: str, issue: Issue) -> float
  regenerator.regenerate_section(content, section_id, feedback) -> str
  regenerator.regenerate_lesson(content, feedback) -> LessonContent
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from refinery.core.aggregator import same_issue
from refinery.core.cascade import CascadeEvaluator
from refinery.core.config import RefinementConfig
from refinery.core.cost_tracker import CallContext, record_call
from refinery.core.errors import FixApplicationFailed, HardLimitExceeded
from refinery.core.quality_lock import QualityLock
from refinery.core.router import group_by_section
from refinery.core.sections import (
    anchor_excerpt,
    get_section,
    normalise_body,
    referenced_sections,
    render_markdown,
    replace_sections,
    section_ids,
    verify_preserved,
)
from refinery.models.schemas import (
    SEVERITY_RANK,
    Action,
    AggregatedVerdict,
    Criterion,
    FixRecommendation,
    Issue,
    IterationStatus,
    LessonContent,
    Section,
)

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Scope / outcome
# ──────────────────────────────────────────────

@dataclass
class FixScope:
    """Everything the fix service may see for one section."""
    section: Section
    issues: List[Issue]
    anchors: Dict[str, str] = field(default_factory=dict)
    preserve_terminology: List[str] = field(default_factory=list)


@dataclass
class FixOutcome:
    """Verified candidate from one fix round."""
    content: LessonContent
    verdict: AggregatedVerdict
    status: IterationStatus
    sections_modified: List[str] = field(default_factory=list)
    fixed_issues: List[Issue] = field(default_factory=list)
    unresolved_issues: List[Issue] = field(default_factory=list)
    note: str = ""


def build_scope(
    content: LessonContent,
    section_id: str,
    issues: Sequence[Issue],
    preserve_terminology: Sequence[str] = (),
) -> FixScope:
    section = get_section(content, section_id)
    if section is None:
        raise FixApplicationFailed(f"Section {section_id} not found", [section_id])
    anchors = {
        ref: anchor_excerpt(get_section(content, ref))
        for ref in referenced_sections(content, section_id)
    }
    return FixScope(
        section=section,
        issues=list(issues),
        anchors=anchors,
        preserve_terminology=list(preserve_terminology),
    )


def build_regeneration_feedback(issues: Sequence[Issue]) -> str:
    """Issues grouped by criterion, most severe group first, critical issues first within a group."""
    if not issues:
        return "No specific issues were reported; improve overall quality against the rubric."

    groups: Dict[Criterion, List[Issue]] = {}
    for issue in issues:
        groups.setdefault(issue.criterion, []).append(issue)

    def _group_rank(item):
        return -max(SEVERITY_RANK[i.severity] for i in item[1])

    lines = ["Issues to address:"]
    for criterion, group in sorted(groups.items(), key=_group_rank):
        lines.append(f"\n{criterion.value}:")
        for issue in sorted(group, key=lambda i: -SEVERITY_RANK[i.severity]):
            where = f" ({issue.location})" if issue.location else ""
            lines.append(f"- [{issue.severity.value.upper()}]{where} {issue.description}")
            if issue.suggested_fix:
                lines.append(f"  Fix: {issue.suggested_fix}")
    return "\n".join(lines)


# ──────────────────────────────────────────────
# Executor
# ──────────────────────────────────────────────

class TargetedFixExecutor:
    """
    Usage:
        executor = TargetedFixExecutor(fixer, entailment, regenerator, evaluator, lock, config)
        outcome = await executor.apply(content, verdict, recommendation, ctx)
    """

    def __init__(
        self,
        fixer,
        entailment,
        regenerator,
        evaluator: CascadeEvaluator,
        lock: QualityLock,
        config: RefinementConfig,
        rng: Optional[random.Random] = None,
        on_reevaluate: Optional[Callable[[], None]] = None,
    ):
        self.fixer = fixer
        self.entailment = entailment
        self.regenerator = regenerator
        self.evaluator = evaluator
        self.lock = lock
        self.config = config
        self.rng = rng or random.Random(config.seed)
        self.on_reevaluate = on_reevaluate

    async def apply(
        self,
        content: LessonContent,
        verdict: AggregatedVerdict,
        recommendation: FixRecommendation,
        ctx: CallContext,
    ) -> FixOutcome:
        if recommendation.action == Action.MINOR_REFINE:
            return await self._apply_fixes(content, verdict, recommendation, ctx)
        if recommendation.action == Action.MAJOR_REFINE:
            return await self._regenerate_sections(content, verdict, recommendation, ctx)
        if recommendation.action == Action.REJECT:
            return await self.regenerate_all(content, recommendation, ctx)
        raise ValueError(f"No fix path for action {recommendation.action.value}")

    # ── minor_refine ──

    async def _apply_fixes(
        self,
        content: LessonContent,
        verdict: AggregatedVerdict,
        rec: FixRecommendation,
        ctx: CallContext,
    ) -> FixOutcome:
        by_section = group_by_section(content, rec.target_issues)
        by_section = {sid: issues for sid, issues in by_section.items() if sid in rec.sections_to_modify}
        if not by_section:
            raise FixApplicationFailed("No targeted issue maps to a section in scope")

        semaphore = asyncio.Semaphore(self.config.max_concurrent_fixes)

        async def _fix_one(section_id: str, issues: List[Issue]):
            async with semaphore:
                return await self._fix_section(content, section_id, issues, rec, ctx)

        results = await asyncio.gather(
            *[_fix_one(sid, issues) for sid, issues in by_section.items()],
            return_exceptions=True,
        )

        new_bodies: Dict[str, str] = {}
        confirmed: List[Issue] = []
        flagged: List[Issue] = []
        failed: List[Issue] = []
        for (section_id, issues), result in zip(by_section.items(), results):
            if isinstance(result, (HardLimitExceeded, asyncio.CancelledError)):
                raise result
            if isinstance(result, BaseException):
                logger.warning(f"  [fix] {section_id} failed: {result}")
                failed.extend(issues)
                continue
            body, graded = result
            section_ok = [i for i, grade in graded if grade != "failed"]
            if not section_ok:
                logger.warning(f"  [fix] {section_id}: no issue passed entailment, section kept")
                failed.extend(issues)
                continue
            new_bodies[section_id] = body
            confirmed.extend(i for i, grade in graded if grade == "confirmed")
            flagged.extend(i for i, grade in graded if grade == "flagged")
            failed.extend(i for i, grade in graded if grade == "failed")

        if not new_bodies:
            raise FixApplicationFailed(
                f"All {len(failed)} targeted issue(s) failed verification", list(by_section)
            )

        candidate = replace_sections(content, new_bodies)
        verify_preserved(content, candidate, [sid for sid in section_ids(content) if sid not in new_bodies])

        implicated = {i.criterion for i in confirmed + flagged}
        candidate_verdict = await self._rejudge(candidate, verdict, implicated, ctx)

        resolved_flags = [
            i for i in flagged
            if not any(same_issue(i, new, self.config.issue_similarity_threshold)
                       for new in candidate_verdict.merged_issues)
        ]
        unresolved = [i for i in flagged if i not in resolved_flags] + failed

        return FixOutcome(
            content=candidate,
            verdict=candidate_verdict,
            status=IterationStatus.APPLIED,
            sections_modified=list(new_bodies),
            fixed_issues=confirmed + resolved_flags,
            unresolved_issues=unresolved,
            note=(
                f"{len(confirmed)} confirmed, {len(resolved_flags)}/{len(flagged)} flagged resolved, "
                f"{len(failed)} failed"
            ),
        )

    async def _fix_section(
        self,
        content: LessonContent,
        section_id: str,
        issues: List[Issue],
        rec: FixRecommendation,
        ctx: CallContext,
    ) -> Tuple[str, List[Tuple[Issue, str]]]:
        scope = build_scope(content, section_id, issues, rec.preserve_terminology)

        ctx.budget.charge(f"fix_{section_id}")
        t0 = time.monotonic()
        revised = await self.fixer.apply_fix(scope, rec)
        record_call(
            ctx.ledger, f"fix_{section_id}", scope.section.body, revised,
            int((time.monotonic() - t0) * 1000), iteration=ctx.iteration,
        )
        body = normalise_body(scope.section, revised)

        ctx.budget.charge(f"entailment_{section_id}", calls=len(issues))
        t0 = time.monotonic()
        scores = await asyncio.gather(*[self.entailment.score(body, issue) for issue in issues])
        latency = int((time.monotonic() - t0) * 1000)
        for issue, score in zip(issues, scores):
            record_call(
                ctx.ledger, f"entailment_{section_id}", body + issue.suggested_fix, f"{score:.2f}",
                latency, iteration=ctx.iteration,
            )

        graded = [(issue, self.grade(score)) for issue, score in zip(issues, scores)]
        logger.info(
            f"  [fix] {section_id}: "
            + ", ".join(f"{i.criterion.value}={s:.2f}" for i, s in zip(issues, scores))
        )
        return body, graded

    def grade(self, entailment: float) -> str:
        if entailment >= self.config.entailment_confirm:
            return "confirmed"
        if entailment >= self.config.entailment_flag:
            return "flagged"
        return "failed"

    # ── major_refine ──

    async def _regenerate_sections(
        self,
        content: LessonContent,
        verdict: AggregatedVerdict,
        rec: FixRecommendation,
        ctx: CallContext,
    ) -> FixOutcome:
        by_section = group_by_section(content, rec.target_issues)
        targets = [sid for sid in rec.sections_to_modify if sid in by_section]
        if not targets:
            raise FixApplicationFailed("No section to regenerate")

        semaphore = asyncio.Semaphore(self.config.max_concurrent_fixes)

        async def _regen_one(section_id: str) -> str:
            async with semaphore:
                feedback = build_regeneration_feedback(by_section[section_id])
                ctx.budget.charge(f"regenerate_{section_id}")
                t0 = time.monotonic()
                body = await self.regenerator.regenerate_section(content, section_id, feedback)
                record_call(
                    ctx.ledger, f"regenerate_{section_id}", feedback, body,
                    int((time.monotonic() - t0) * 1000), iteration=ctx.iteration,
                )
                return normalise_body(get_section(content, section_id), body)

        results = await asyncio.gather(*[_regen_one(sid) for sid in targets], return_exceptions=True)

        new_bodies: Dict[str, str] = {}
        for section_id, result in zip(targets, results):
            if isinstance(result, (HardLimitExceeded, asyncio.CancelledError)):
                raise result
            if isinstance(result, BaseException):
                logger.warning(f"  [regenerate] {section_id} failed: {result}")
                continue
            new_bodies[section_id] = result
        if not new_bodies:
            raise FixApplicationFailed("Section regeneration failed for every target", targets)

        candidate = replace_sections(content, new_bodies)
        verify_preserved(content, candidate, [sid for sid in section_ids(content) if sid not in new_bodies])

        implicated = {i.criterion for sid in new_bodies for i in by_section[sid]}
        candidate_verdict = await self._rejudge(candidate, verdict, implicated, ctx)

        return FixOutcome(
            content=candidate,
            verdict=candidate_verdict,
            status=IterationStatus.REGENERATED,
            sections_modified=list(new_bodies),
            note=f"regenerated {', '.join(new_bodies)}",
        )

    # ── reject ──

    async def regenerate_all(
        self,
        content: LessonContent,
        rec: FixRecommendation,
        ctx: CallContext,
    ) -> FixOutcome:
        feedback = build_regeneration_feedback(rec.target_issues)
        ctx.budget.charge("regenerate_lesson")
        t0 = time.monotonic()
        try:
            candidate = await self.regenerator.regenerate_lesson(content, feedback)
        except Exception as e:
            logger.warning(f"  [regenerate] lesson failed: {e}")
            raise FixApplicationFailed(f"Lesson regeneration failed: {e}") from e
        if not candidate.sections:
            raise FixApplicationFailed("Lesson regeneration returned no sections")
        record_call(
            ctx.ledger, "regenerate_lesson", render_markdown(content) + feedback,
            render_markdown(candidate), int((time.monotonic() - t0) * 1000), iteration=ctx.iteration,
        )

        if self.on_reevaluate:
            self.on_reevaluate()
        candidate_verdict = await self.evaluator.evaluate(candidate, ctx)
        self.lock.check(candidate_verdict.criteria_scores, candidate_verdict.composite_score)

        return FixOutcome(
            content=candidate,
            verdict=candidate_verdict,
            status=IterationStatus.REGENERATED,
            sections_modified=section_ids(candidate),
            note="full regeneration",
        )

    # ── verification ──

    def select_rejudges(self, verdict: AggregatedVerdict, implicated: Set[Criterion]) -> List[str]:
        """Judges whose focus covers the implicated criteria, plus random canaries from the rest."""
        pool = list(verdict.judge_ids) or [j.judge_id for j in self.config.judges]
        chosen: List[str] = []
        others: List[str] = []
        for judge_id in pool:
            jdef = self.config.judge(judge_id)
            focus = set(jdef.focus) if jdef else set()
            if not focus or not implicated or focus & implicated:
                chosen.append(judge_id)
            else:
                others.append(judge_id)
        canaries = self.rng.sample(others, min(self.config.canary_count, len(others)))
        if not chosen and not canaries and others:
            canaries = others[:1]
        selected = set(chosen) | set(canaries)
        return [jid for jid in pool if jid in selected]

    async def _rejudge(
        self,
        candidate: LessonContent,
        verdict: AggregatedVerdict,
        implicated: Set[Criterion],
        ctx: CallContext,
    ) -> AggregatedVerdict:
        judge_ids = self.select_rejudges(verdict, implicated)
        logger.info(f"  [re-evaluate] judges {judge_ids}")
        if self.on_reevaluate:
            self.on_reevaluate()
        candidate_verdict = await self.evaluator.evaluate_with(candidate, judge_ids, ctx)
        self.lock.check(candidate_verdict.criteria_scores, candidate_verdict.composite_score)
        return candidate_verdict
