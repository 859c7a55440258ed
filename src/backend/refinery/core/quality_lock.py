"""
Quality lock — regression guard for criteria that already pass.

A criterion is locked once an adopted round scores it at or above the
lock threshold. The lock value only ratchets upward. A candidate whose
locked criterion falls more than the tolerance below the lock value is
rejected with RegressionDetected and never adopted.
"""
from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional, Tuple

from refinery.core.errors import RegressionDetected
from refinery.models.schemas import Criterion

logger = logging.getLogger(__name__)


class QualityLock:
    def __init__(self, threshold: float = 0.75, tolerance: float = 0.05):
        self.threshold = threshold
        self.tolerance = tolerance
        self._locks: Dict[Criterion, float] = {}

    @property
    def locks(self) -> Dict[Criterion, float]:
        return dict(self._locks)

    def regressions(self, scores: Mapping[Criterion, float]) -> Dict[str, Tuple[float, float]]:
        """Locked criteria the candidate scores would break: name -> (locked, candidate)."""
        found = {}
        for criterion, locked in self._locks.items():
            now = scores.get(criterion)
            if now is not None and now < locked - self.tolerance - 1e-9:
                found[criterion.value] = (locked, now)
        return found

    def check(self, scores: Mapping[Criterion, float], composite: Optional[float] = None) -> None:
        found = self.regressions(scores)
        if found:
            raise RegressionDetected(found, candidate_score=composite)

    def confirm(self, scores: Mapping[Criterion, float]) -> None:
        """Record adopted scores: lock newly passing criteria, ratchet existing locks."""
        for criterion, score in scores.items():
            if criterion in self._locks:
                if score > self._locks[criterion]:
                    self._locks[criterion] = score
            elif score >= self.threshold:
                self._locks[criterion] = score
                logger.info(f"  [lock] {criterion.value} locked at {score:.3f}")
