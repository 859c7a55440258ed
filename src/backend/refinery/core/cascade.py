# [Core: Evaluator Aggregator]
"""
Cascading evaluation — cheap judge first, panel only when needed.

Stages run sequentially, each gated by the previous result:
  0. Heuristic pre-filter. A structurally broken lesson scores 0 with no
     model call and goes straight to full regeneration.
  1. Cheap judge(s). Stop here if every answer is high-confidence and
     outside the borderline band.
  2. Panel judges, dispatched concurrently.
  3. Tiebreaker, only when two responding judges' composites differ by
     more than the tiebreak threshold. Three or more verdicts aggregate
     by median.

Each judge call has its own timeout. A failed or timed-out judge is a
non-response: it shrinks K and downgrades reliability.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import List, Mapping, Sequence, Tuple

from refinery.core.aggregator import aggregate, judge_composite
from refinery.core.config import JudgeDef, JudgeRole, RefinementConfig
from refinery.core.cost_tracker import CallContext, record_call
from refinery.core.errors import JudgeUnavailable
from refinery.core.heuristics import HeuristicResult, run_prefilter
from refinery.core.rubric import Rubric
from refinery.core.sections import render_markdown
from refinery.models.schemas import (
    AggregatedVerdict,
    Confidence,
    JudgeVerdict,
    LessonContent,
    Reliability,
)

logger = logging.getLogger(__name__)


class CascadeEvaluator:
    """
    Runs the judge panel for one round.

    Usage:
        evaluator = CascadeEvaluator(judge_services, rubric, config)
        verdict = await evaluator.evaluate(content, ctx)
        verdict = await evaluator.evaluate_with(content, ["judge_a"], ctx)

    judge_services maps judge_id to any object with
    `async evaluate(content: LessonContent, rubric: Rubric) -> JudgeVerdict`.
    """

    def __init__(self, judge_services: Mapping[str, object], rubric: Rubric, config: RefinementConfig):
        self.judge_services = judge_services
        self.rubric = rubric
        self.config = config

    async def evaluate(self, content: LessonContent, ctx: CallContext) -> AggregatedVerdict:
        """Full cascade for a fresh evaluation round."""
        cfg = self.config
        if cfg.heuristic_prefilter:
            screened = run_prefilter(content, cfg)
            for warning in screened.warnings:
                logger.info(f"  [heuristic] {warning}")
            if not screened.passed:
                logger.info(f"  [heuristic] pre-filter failed, judges skipped: {screened.failures}")
                return self._prefilter_verdict(screened)

        verdicts: List[JudgeVerdict] = []
        missing: List[str] = []

        cheap = cfg.judges_with_role(JudgeRole.CHEAP)
        panel = cfg.judges_with_role(JudgeRole.PANEL)
        tiebreakers = cfg.judges_with_role(JudgeRole.TIEBREAKER)

        if cheap:
            got, failed = await self._dispatch(content, cheap, ctx)
            verdicts.extend(got)
            missing.extend(failed)
            if got and not failed and self._cheap_is_decisive(got):
                logger.info(
                    f"  [cascade] cheap judge decisive at "
                    f"{judge_composite(got[0], self.rubric):.3f}, panel skipped"
                )
                return self._finish(verdicts, missing, tiebreak_used=False)

        if panel:
            logger.info(f"  [cascade] dispatching panel ({len(panel)} judges)")
            got, failed = await self._dispatch(content, panel, ctx)
            verdicts.extend(got)
            missing.extend(failed)

        tiebreak_used = False
        if tiebreakers and len(verdicts) >= 2 and self._spread(verdicts) > cfg.tiebreak_threshold:
            logger.info(
                f"  [cascade] judges disagree by {self._spread(verdicts):.3f} "
                f"(> {cfg.tiebreak_threshold}), calling tiebreaker"
            )
            got, failed = await self._dispatch(content, tiebreakers[:1], ctx)
            verdicts.extend(got)
            missing.extend(failed)
            tiebreak_used = bool(got)

        return self._finish(verdicts, missing, tiebreak_used)

    async def evaluate_with(
        self,
        content: LessonContent,
        judge_ids: Sequence[str],
        ctx: CallContext,
    ) -> AggregatedVerdict:
        """Evaluate with a fixed set of judges (targeted re-evaluation)."""
        defs = [j for j in self.config.judges if j.judge_id in set(judge_ids)]
        verdicts, missing = await self._dispatch(content, defs, ctx)
        return self._finish(verdicts, missing, tiebreak_used=False)

    # ──────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────

    def _cheap_is_decisive(self, verdicts: List[JudgeVerdict]) -> bool:
        cfg = self.config
        for v in verdicts:
            if v.confidence != Confidence.HIGH:
                return False
            score = judge_composite(v, self.rubric)
            if cfg.borderline_low <= score < cfg.borderline_high:
                return False
        return True

    def _spread(self, verdicts: List[JudgeVerdict]) -> float:
        scores = [judge_composite(v, self.rubric) for v in verdicts]
        return max(scores) - min(scores)

    def _prefilter_verdict(self, screened: HeuristicResult) -> AggregatedVerdict:
        # Every criterion at 0 so the quality lock blocks a regeneration that fails the filter.
        zeros = {c: 0.0 for c in self.rubric.criteria}
        return AggregatedVerdict(
            composite_score=0.0,
            criteria_scores=zeros,
            per_criterion_agreement={c: 1.0 for c in self.rubric.criteria},
            agreement=1.0,
            reliability=Reliability.RELIABLE,
            merged_issues=list(screened.issues),
            heuristic_failures=screened.failures,
        )

    def _finish(
        self,
        verdicts: List[JudgeVerdict],
        missing: List[str],
        tiebreak_used: bool,
    ) -> AggregatedVerdict:
        if len(verdicts) < self.config.judge_quorum or not verdicts:
            raise JudgeUnavailable(
                f"Only {len(verdicts)} judge(s) responded, quorum is {self.config.judge_quorum}",
                missing,
            )
        return aggregate(
            verdicts,
            self.rubric,
            self.config,
            missing_judges=missing,
            tiebreak_used=tiebreak_used,
        )

    async def _dispatch(
        self,
        content: LessonContent,
        defs: Sequence[JudgeDef],
        ctx: CallContext,
    ) -> Tuple[List[JudgeVerdict], List[str]]:
        """Run judges concurrently. Returns (verdicts, ids of judges that did not answer)."""
        if not defs:
            return [], []
        ctx.budget.charge(f"judges {[d.judge_id for d in defs]}", calls=len(defs))

        results = await asyncio.gather(
            *[self._call_judge(d, content, ctx) for d in defs],
            return_exceptions=True,
        )

        verdicts: List[JudgeVerdict] = []
        missing: List[str] = []
        for jdef, result in zip(defs, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                reason = "timed out" if isinstance(result, asyncio.TimeoutError) else str(result)
                logger.warning(f"  [{jdef.judge_id}] no verdict: {reason or type(result).__name__}")
                missing.append(jdef.judge_id)
            else:
                verdicts.append(result)
        return verdicts, missing

    async def _call_judge(self, jdef: JudgeDef, content: LessonContent, ctx: CallContext) -> JudgeVerdict:
        service = self.judge_services[jdef.judge_id]
        timeout = jdef.timeout_seconds or self.config.judge_timeout_seconds
        t0 = time.monotonic()

        verdict = await asyncio.wait_for(service.evaluate(content, self.rubric), timeout=timeout)
        if verdict.judge_id != jdef.judge_id:
            verdict = verdict.model_copy(update={"judge_id": jdef.judge_id})

        elapsed_ms = int((time.monotonic() - t0) * 1000)
        record_call(
            ctx.ledger,
            step_name=f"judge_{jdef.judge_id}",
            prompt=render_markdown(content),
            response=verdict.model_dump_json(),
            latency_ms=elapsed_ms,
            iteration=ctx.iteration,
            reported_tokens=verdict.tokens_used,
        )
        logger.info(
            f"  [{jdef.judge_id}] composite {judge_composite(verdict, self.rubric):.3f}, "
            f"{len(verdict.issues)} issues, confidence {verdict.confidence.value}"
        )
        return verdict
