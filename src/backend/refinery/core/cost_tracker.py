# [Core: Cost Accounting]
"""
Cost Tracker — model-call budget and token ledger for one session.

Every judge, fix, entailment and regeneration call is charged against the
session's CallBudget *before* it is dispatched, so the configured call
limit can never be exceeded. Completed calls are recorded in the
CostLedger for the per-iteration token figures in the iteration log.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import List

from refinery.core.errors import HardLimitExceeded


# ──────────────────────────────────────────────
# Pricing constants (approximate, per 1K tokens)
# ──────────────────────────────────────────────

COST_PER_1K_INPUT_TOKENS = 0.0015
COST_PER_1K_OUTPUT_TOKENS = 0.0020


@dataclass
class LLMCallRecord:
    """Record of a single model call with cost metadata."""
    call_id: str
    session_id: str
    step_name: str
    iteration: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    latency_ms: int = 0
    estimated_cost_usd: float = 0.0
    timestamp: float = 0.0


@dataclass
class CostLedger:
    """Running ledger of all model calls for a session."""
    session_id: str
    calls: List[LLMCallRecord] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return sum(c.total_tokens for c in self.calls)

    @property
    def total_cost_usd(self) -> float:
        return sum(c.estimated_cost_usd for c in self.calls)

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def tokens_at_iteration(self, iteration: int) -> int:
        return sum(c.total_tokens for c in self.calls if c.iteration == iteration)

    def tokens_per_iteration(self) -> dict[int, int]:
        iterations = sorted(set(c.iteration for c in self.calls))
        return {i: self.tokens_at_iteration(i) for i in iterations}

    def to_dict(self) -> dict:
        """Serialize for JSON output."""
        return {
            "session_id": self.session_id,
            "total_tokens": self.total_tokens,
            "total_cost_usd": round(self.total_cost_usd, 6),
            "call_count": self.call_count,
            "tokens_per_iteration": {str(k): v for k, v in self.tokens_per_iteration().items()},
        }


class CallBudget:
    """
    Hard cap on model calls for a session.

    Usage:
        budget = CallBudget(max_calls=50)
        budget.charge("judge_cheap")   # raises HardLimitExceeded when exhausted
    """

    def __init__(self, max_calls: int):
        self.max_calls = max_calls
        self.used = 0

    @property
    def remaining(self) -> int:
        return max(0, self.max_calls - self.used)

    @property
    def exhausted(self) -> bool:
        return self.used >= self.max_calls

    def charge(self, step_name: str, calls: int = 1) -> None:
        if self.used + calls > self.max_calls:
            raise HardLimitExceeded(
                "model_calls",
                f"Model-call budget exhausted ({self.used}/{self.max_calls}) before {step_name}",
            )
        self.used += calls


@dataclass
class CallContext:
    """Budget, ledger and iteration index handed to everything that makes model calls."""
    budget: CallBudget
    ledger: CostLedger
    iteration: int = 0


def estimate_tokens(text: str) -> int:
    """
    Rough token count estimation (4 chars ≈ 1 token for English text).

    Good enough for budget reporting when a service does not report usage.
    """
    return max(1, len(text) // 4)


def estimate_cost(input_tokens: int, output_tokens: int) -> float:
    """Estimate USD cost for a single call."""
    input_cost = (input_tokens / 1000) * COST_PER_1K_INPUT_TOKENS
    output_cost = (output_tokens / 1000) * COST_PER_1K_OUTPUT_TOKENS
    return input_cost + output_cost


def record_call(
    ledger: CostLedger,
    step_name: str,
    prompt: str,
    response: str,
    latency_ms: int,
    iteration: int = 0,
    reported_tokens: int = 0,
) -> LLMCallRecord:
    """
    Record a model call in the ledger.

    reported_tokens, when the service supplies it, replaces the estimate.
    """
    input_tokens = estimate_tokens(prompt)
    output_tokens = estimate_tokens(response)
    total_tokens = reported_tokens or (input_tokens + output_tokens)

    record = LLMCallRecord(
        call_id=f"{ledger.session_id}_{step_name}_{iteration}_{len(ledger.calls)}",
        session_id=ledger.session_id,
        step_name=step_name,
        iteration=iteration,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total_tokens,
        latency_ms=latency_ms,
        estimated_cost_usd=estimate_cost(input_tokens, output_tokens),
        timestamp=time.time(),
    )
    ledger.calls.append(record)
    return record
