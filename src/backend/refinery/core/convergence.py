# [Core: Convergence Controller]
"""
Convergence Controller — decides after every evaluation round whether
the session continues and, if not, which terminal state it ends in.

Checks run in a fixed priority order. Hard limits come first so that
cost is bounded no matter how close the content is to passing:

  1. Hard limits (rounds, wall clock, model calls) -> rejected_hard_limit
  2. Target reached                                 -> accepted
  3. Plateau (no meaningful movement)               -> accepted if above the
                                                       minimum bar, else escalated
  4. Oscillation (lag-2 autocorrelation)            -> escalated
  5. Otherwise continue
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from refinery.core.config import RefinementConfig
from refinery.models.schemas import AggregatedVerdict, Outcome, Reliability


@dataclass
class ControlState:
    """Snapshot the controller reads each round."""
    rounds: int
    elapsed_seconds: float
    model_calls: int
    scores: List[float] = field(default_factory=list)
    """Composite of the initial round and of every adopted iteration, oldest first."""
    verdict: Optional[AggregatedVerdict] = None


@dataclass
class ControlDecision:
    terminal: bool
    outcome: Optional[Outcome] = None
    reason: str = ""

    @classmethod
    def proceed(cls) -> "ControlDecision":
        return cls(terminal=False, reason="continue")


def lag2_autocorrelation(scores: Sequence[float]) -> Optional[float]:
    """
    Lag-2 autocorrelation of a short score series.

    r(2) = mean(d[t] * d[t+2]) / mean(d[t]^2), d = deviation from the
    window mean. None when the series is too short or flat.
    """
    n = len(scores)
    if n < 3:
        return None
    mean = sum(scores) / n
    dev = [s - mean for s in scores]
    variance = sum(d * d for d in dev) / n
    if variance < 1e-12:
        return None
    covariance = sum(dev[t] * dev[t + 2] for t in range(n - 2)) / (n - 2)
    return covariance / variance


class ConvergenceController:
    def __init__(self, config: RefinementConfig):
        self.config = config

    def hard_limit(self, state: ControlState) -> Optional[ControlDecision]:
        cfg = self.config
        if state.rounds >= cfg.max_iterations:
            return ControlDecision(
                True, Outcome.REJECTED_HARD_LIMIT,
                f"iteration limit reached ({state.rounds}/{cfg.max_iterations})",
            )
        if state.elapsed_seconds >= cfg.max_seconds:
            return ControlDecision(
                True, Outcome.REJECTED_HARD_LIMIT,
                f"time limit reached ({state.elapsed_seconds:.1f}s/{cfg.max_seconds:.0f}s)",
            )
        if state.model_calls >= cfg.max_model_calls:
            return ControlDecision(
                True, Outcome.REJECTED_HARD_LIMIT,
                f"model-call budget reached ({state.model_calls}/{cfg.max_model_calls})",
            )
        return None

    def check(self, state: ControlState) -> ControlDecision:
        cfg = self.config

        limit = self.hard_limit(state)
        if limit is not None:
            return limit

        verdict = state.verdict
        if (
            verdict is not None
            and verdict.composite_score >= cfg.accept_threshold
            and verdict.reliability != Reliability.LOW
        ):
            return ControlDecision(
                True, Outcome.ACCEPTED, f"score {verdict.composite_score:.3f} meets accept bar"
            )

        scores = state.scores
        if len(scores) >= 2:
            prev, last = scores[-2], scores[-1]
            delta = abs(last - prev)
            if prev > 0:
                relative = delta / prev
            else:
                relative = 0.0 if delta == 0 else float("inf")
            if delta < cfg.plateau_abs and relative < cfg.plateau_rel:
                if last >= cfg.plateau_min_bar:
                    return ControlDecision(
                        True, Outcome.ACCEPTED,
                        f"plateau at {last:.3f}, above minimum bar {cfg.plateau_min_bar}",
                    )
                return ControlDecision(
                    True, Outcome.ESCALATED,
                    f"plateau at {last:.3f}, below minimum bar {cfg.plateau_min_bar}",
                )

        if len(scores) >= cfg.oscillation_window:
            window = scores[-cfg.oscillation_window:]
            r2 = lag2_autocorrelation(window)
            if r2 is not None and r2 > cfg.oscillation_threshold:
                return ControlDecision(
                    True, Outcome.ESCALATED,
                    f"oscillating scores {[round(s, 3) for s in window]} (lag-2 r={r2:.2f})",
                )

        return ControlDecision.proceed()
