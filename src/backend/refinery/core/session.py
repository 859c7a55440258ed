# [Core: Refinement Session]
"""
Refinement Session — one lesson's evaluate / route / fix loop.

State machine:

    EVALUATING -> (route) -> FIXING -> RE_EVALUATING -> EVALUATING | TERMINAL

The session object owns everything mutable for one lesson: current
content, iteration log, issue ledger, quality lock, section locks, call
budget and cost ledger. Nothing is shared between sessions except read-only config, so
many sessions can run concurrently. Only one iteration of a given
session is ever in flight.

Usage:
    result = await run_refinement_session(markdown, DEFAULT_RUBRIC, config, services)

    session = RefinementSession(content, rubric, config, services)
    task = asyncio.create_task(session.run())
    session.cancel()        # honoured between rounds
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from datetime import datetime
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Union

from refinery.core.cascade import CascadeEvaluator
from refinery.core.config import RefinementConfig
from refinery.core.convergence import ControlState, ConvergenceController
from refinery.core.cost_tracker import CallBudget, CallContext, CostLedger
from refinery.core.errors import (
    ConfigurationInvalid,
    FixApplicationFailed,
    HardLimitExceeded,
    JudgeUnavailable,
    RefinementError,
    RegressionDetected,
)
from refinery.core.fix_executor import FixOutcome, TargetedFixExecutor
from refinery.core.issue_ledger import IssueLedger
from refinery.core.quality_lock import QualityLock
from refinery.core.router import route
from refinery.core.rubric import Rubric
from refinery.core.section_locks import SectionLocks
from refinery.core.sections import parse_markdown
from refinery.models.schemas import (
    Action,
    AggregatedVerdict,
    IterationRecord,
    IterationStatus,
    LessonContent,
    Outcome,
    RoutingDecision,
    SessionPhase,
    SessionResult,
    SessionStatus,
)

logger = logging.getLogger(__name__)


@dataclass
class RefinementServices:
    """External collaborators. judges maps judge_id to a judge service."""
    judges: Mapping[str, Any]
    fixer: Any
    entailment: Any
    regenerator: Any


class _Terminal(Exception):
    """Internal: ends the loop with a terminal outcome."""

    def __init__(self, outcome: Outcome, reason: str):
        self.outcome = outcome
        self.reason = reason
        super().__init__(reason)


class RefinementSession:
    def __init__(
        self,
        content: LessonContent,
        rubric: Rubric,
        config: RefinementConfig,
        services: RefinementServices,
        session_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        self.session_id = session_id or str(uuid.uuid4())[:8]
        self.rubric = rubric
        self.config = config
        self.services = services
        self.clock = clock
        self.created_at = datetime.utcnow()

        self.phase = SessionPhase.PENDING
        self.content = content
        self.verdict: Optional[AggregatedVerdict] = None
        self.iteration_log: List[IterationRecord] = []
        self.scores: List[float] = []
        self.result: Optional[SessionResult] = None

        self.budget = CallBudget(config.max_model_calls)
        self.ledger = CostLedger(session_id=self.session_id)
        self.issues = IssueLedger(config.issue_similarity_threshold)
        self.lock = QualityLock(config.lock_threshold, config.regression_tolerance)
        self.section_locks = SectionLocks(config.section_lock_after_edits, config.section_oscillation_tolerance)

        self.evaluator = CascadeEvaluator(services.judges, rubric, config)
        self.executor = TargetedFixExecutor(
            services.fixer,
            services.entailment,
            services.regenerator,
            self.evaluator,
            self.lock,
            config,
            rng=rng or random.Random(config.seed),
            on_reevaluate=self._enter_reevaluation,
        )
        self.controller = ConvergenceController(config)

        self._best: Optional[LessonContent] = None
        self._best_score: Optional[float] = None
        self._started_at: Optional[float] = None
        self._cancel_requested = False
        self._running = asyncio.Lock()

    # ──────────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────────

    @property
    def rounds(self) -> int:
        """Evaluation rounds performed: the initial one plus one per iteration."""
        return (1 if self.scores else 0) + len(self.iteration_log)

    @property
    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return self.clock() - self._started_at

    def cancel(self) -> None:
        """Request cancellation. Takes effect between rounds, never mid-fix."""
        self._cancel_requested = True

    def status(self) -> SessionStatus:
        return SessionStatus(
            session_id=self.session_id,
            phase=self.phase,
            round=self.rounds,
            model_calls=self.budget.used,
            current_score=self.verdict.composite_score if self.verdict else None,
            created_at=self.created_at,
            iteration_log=list(self.iteration_log),
            result=self.result,
        )

    async def run(self) -> SessionResult:
        if self._running.locked() or self.result is not None:
            raise RefinementError(f"Session {self.session_id} is already running or finished")
        async with self._running:
            self._validate()
            self._started_at = self.clock()
            logger.info(
                f"[session {self.session_id}] start: {len(self.content.sections)} sections, "
                f"mode {self.config.config_id}"
            )
            try:
                await self._loop()
            except _Terminal as t:
                return self._finish(t.outcome, t.reason)
            raise RuntimeError("refinement loop exited without a terminal state")

    # ──────────────────────────────────────────────
    # Loop
    # ──────────────────────────────────────────────

    def _validate(self) -> None:
        problems = self.rubric.problems() + self.config.problems()
        unknown = [j.judge_id for j in self.config.judges if j.judge_id not in self.services.judges]
        if unknown:
            problems.append(f"no judge service for {unknown}")
        if not self.content.sections:
            problems.append("lesson content has no sections")
        if problems:
            raise ConfigurationInvalid(problems)

    async def _loop(self) -> None:
        ctx = CallContext(budget=self.budget, ledger=self.ledger, iteration=0)

        self.phase = SessionPhase.EVALUATING
        try:
            verdict = await self._bounded(self.evaluator.evaluate(self.content, ctx))
        except HardLimitExceeded as e:
            raise _Terminal(Outcome.REJECTED_HARD_LIMIT, str(e))
        except JudgeUnavailable as e:
            raise _Terminal(Outcome.ESCALATED, f"judges unavailable: {e}")
        self._adopt(self.content, verdict)

        while True:
            self.phase = SessionPhase.EVALUATING
            decision = self.controller.check(ControlState(
                rounds=self.rounds,
                elapsed_seconds=self.elapsed,
                model_calls=self.budget.used,
                scores=list(self.scores),
                verdict=self.verdict,
            ))
            if decision.terminal:
                raise _Terminal(decision.outcome, decision.reason)
            if self._cancel_requested:
                raise _Terminal(Outcome.ESCALATED, "cancelled")

            routing = route(
                self.verdict, self.iteration_log, self.config, self.content, self.section_locks.locked
            )
            logger.info(
                f"[session {self.session_id}] round {self.rounds}: "
                f"{routing.action.value} ({routing.reason})"
            )
            if routing.action == Action.ACCEPT:
                raise _Terminal(Outcome.ACCEPTED, routing.reason)
            if routing.action == Action.ESCALATE:
                raise _Terminal(Outcome.ESCALATED, routing.reason)

            ctx.iteration = len(self.iteration_log) + 1
            await self._iterate(routing, ctx)

    async def _iterate(self, routing: RoutingDecision, ctx: CallContext) -> None:
        t0 = self.clock()
        calls_before = self.budget.used
        score_before = self.verdict.composite_score
        before = self.content
        self.phase = SessionPhase.FIXING

        status = None
        score_after = None
        regressions: List[str] = []
        note = ""
        outcome: Optional[FixOutcome] = None
        terminal: Optional[_Terminal] = None

        try:
            outcome = await self._bounded(
                self.executor.apply(self.content, self.verdict, routing.recommendation, ctx)
            )
            status = outcome.status
            score_after = outcome.verdict.composite_score
            note = outcome.note
        except RegressionDetected as e:
            status = IterationStatus.REGRESSION
            score_after = e.candidate_score
            regressions = sorted(e.regressions)
            note = str(e)
        except FixApplicationFailed as e:
            status = IterationStatus.FIX_FAILED
            note = str(e)
        except HardLimitExceeded as e:
            status = IterationStatus.ABORTED
            note = str(e)
            terminal = _Terminal(Outcome.REJECTED_HARD_LIMIT, str(e))
        except JudgeUnavailable as e:
            status = IterationStatus.ABORTED
            note = str(e)
            terminal = _Terminal(Outcome.ESCALATED, f"judges unavailable: {e}")

        if status != IterationStatus.ABORTED:
            logger.info(f"[session {self.session_id}] iteration {ctx.iteration}: {status.value} {note}")
        else:
            logger.warning(f"[session {self.session_id}] iteration {ctx.iteration} aborted: {note}")

        self.iteration_log.append(IterationRecord(
            iteration_index=ctx.iteration,
            action=routing.action,
            status=status,
            score_before=score_before,
            score_after=score_after,
            elapsed_seconds=self.clock() - t0,
            tokens_spent=self.ledger.tokens_at_iteration(ctx.iteration),
            model_calls=self.budget.used - calls_before,
            sections_modified=outcome.sections_modified if outcome else [],
            regressions=regressions,
            note=note,
        ))

        if terminal is not None:
            raise terminal
        if outcome is not None:
            self._settle_issues(before, routing.action, outcome, ctx.iteration)
            self._adopt(outcome.content, outcome.verdict)
            self._update_section_locks(routing.action, outcome)

    async def _bounded(self, coro: Awaitable):
        """Await coro within the session's remaining wall-clock time."""
        remaining = self.config.max_seconds - self.elapsed
        if remaining <= 0:
            coro.close()
            raise HardLimitExceeded("seconds", f"time limit reached ({self.config.max_seconds:.0f}s)")
        try:
            return await asyncio.wait_for(coro, timeout=remaining)
        except asyncio.TimeoutError:
            raise HardLimitExceeded(
                "seconds", f"time limit reached mid-round ({self.config.max_seconds:.0f}s)"
            ) from None

    def _enter_reevaluation(self) -> None:
        self.phase = SessionPhase.RE_EVALUATING

    # ──────────────────────────────────────────────
    # Bookkeeping
    # ──────────────────────────────────────────────

    def _settle_issues(self, before: LessonContent, action: Action, outcome: FixOutcome, round_index: int) -> None:
        if action == Action.MINOR_REFINE:
            self.issues.mark_fixed(outcome.fixed_issues, round_index)
        elif action == Action.MAJOR_REFINE:
            self.issues.supersede_sections(before, outcome.sections_modified, round_index)
        elif action == Action.REJECT:
            self.issues.supersede_all(round_index)

    def _update_section_locks(self, action: Action, outcome: FixOutcome) -> None:
        if action == Action.REJECT:
            self.section_locks.reset()
        else:
            self.section_locks.record_edits(outcome.sections_modified, self.scores)

    def _adopt(self, content: LessonContent, verdict: AggregatedVerdict) -> None:
        """Make a verified candidate current."""
        self.content = content
        self.verdict = verdict
        self.scores.append(verdict.composite_score)
        self.lock.confirm(verdict.criteria_scores)
        self.issues.observe(verdict.merged_issues, self.rounds)
        if self._best_score is None or verdict.composite_score > self._best_score:
            self._best = content
            self._best_score = verdict.composite_score

    def _finish(self, outcome: Outcome, reason: str) -> SessionResult:
        self.phase = SessionPhase.TERMINAL
        self.result = SessionResult(
            session_id=self.session_id,
            outcome=outcome,
            reason=reason,
            final_content=self.content,
            final_score=self.verdict.composite_score if self.verdict else None,
            final_reliability=self.verdict.reliability if self.verdict else None,
            best_effort_content=self._best,
            best_effort_score=self._best_score,
            rounds=self.rounds,
            model_calls=self.budget.used,
            elapsed_seconds=self.elapsed,
            iteration_log=list(self.iteration_log),
            issue_ledger=self.issues.entries(),
            locked_sections=self.section_locks.reasons(),
            cost=self.ledger.to_dict(),
        )
        logger.info(
            f"[session {self.session_id}] {outcome.value} after {self.rounds} round(s), "
            f"{self.budget.used} call(s): {reason}"
        )
        return self.result


async def run_refinement_session(
    initial_content: Union[str, LessonContent],
    rubric: Rubric,
    config: RefinementConfig,
    services: RefinementServices,
    **session_kwargs,
) -> SessionResult:
    """Refine one lesson to a terminal state. Markdown strings are parsed into sections."""
    content = parse_markdown(initial_content) if isinstance(initial_content, str) else initial_content
    session = RefinementSession(content, rubric, config, services, **session_kwargs)
    return await session.run()
