"""
Error taxonomy for the refinement core.

Judge and fix-service errors are recovered locally (quorum degradation,
one retry). Anything that affects the correctness of the final verdict
surfaces to the caller as a terminal outcome.
"""
from __future__ import annotations

from typing import List, Optional


class RefinementError(Exception):
    """Base class for all refinement-core errors."""


class ConfigurationInvalid(RefinementError):
    """Rubric or thresholds are inconsistent. Raised before any model call."""

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "invalid configuration")


class JudgeUnavailable(RefinementError):
    """Too few judges responded to produce a verdict."""

    def __init__(self, message: str, failed_judges: Optional[List[str]] = None):
        self.failed_judges = list(failed_judges or [])
        super().__init__(message)


class FixApplicationFailed(RefinementError):
    """The fix service errored or no targeted issue passed verification."""

    def __init__(self, message: str, section_ids: Optional[List[str]] = None):
        self.section_ids = list(section_ids or [])
        super().__init__(message)


class RegressionDetected(RefinementError):
    """A locked criterion dropped by more than the tolerance."""

    def __init__(self, regressions: dict, candidate_score: Optional[float] = None):
        # criterion value -> (locked score, candidate score)
        self.regressions = dict(regressions)
        self.candidate_score = candidate_score
        detail = ", ".join(
            f"{name} {locked:.3f}->{now:.3f}" for name, (locked, now) in self.regressions.items()
        )
        super().__init__(f"Quality lock violated: {detail}")


class HardLimitExceeded(RefinementError):
    """Iteration, wall-clock or model-call budget exhausted. Not retryable."""

    def __init__(self, limit: str, message: str):
        self.limit = limit
        super().__init__(message)


class LLMResponseError(RefinementError):
    """The model returned output that could not be parsed into the expected schema."""
