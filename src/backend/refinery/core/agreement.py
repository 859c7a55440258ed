"""
Inter-rater agreement for judge panels.

Interval Krippendorff-style alpha on [0, 1] scores:

    alpha = 1 - D_o / D_e

D_o is the mean pairwise squared difference between judges on a
criterion. D_e is fixed at 1/6, the expected squared difference of two
independent uniform scores on [0, 1]. With at most three judges per
round the sample-based D_e of textbook alpha is degenerate (identical
scores give 0/0), so a fixed reference keeps the statistic defined and
deterministic. Results are clamped to [0, 1].
"""
from __future__ import annotations

from itertools import combinations
from typing import Dict, Iterable, List, Sequence

from refinery.models.schemas import Confidence, Criterion, JudgeVerdict, Reliability

EXPECTED_DISAGREEMENT = 1.0 / 6.0

_LEVELS = [Reliability.LOW, Reliability.TENTATIVE, Reliability.RELIABLE]


def observed_disagreement(scores: Sequence[float]) -> float:
    """Mean pairwise squared difference. 0.0 for fewer than two scores."""
    pairs = list(combinations(scores, 2))
    if not pairs:
        return 0.0
    return sum((a - b) ** 2 for a, b in pairs) / len(pairs)


def _alpha(d_o: float) -> float:
    return max(0.0, min(1.0, 1.0 - d_o / EXPECTED_DISAGREEMENT))


def criterion_agreement(
    verdicts: Sequence[JudgeVerdict],
    criteria: Iterable[Criterion],
) -> Dict[Criterion, float]:
    """Per-criterion alpha across the responding judges."""
    return {
        c: _alpha(observed_disagreement([v.score_for(c) for v in verdicts]))
        for c in criteria
    }


def pooled_agreement(verdicts: Sequence[JudgeVerdict], criteria: Iterable[Criterion]) -> float:
    """Alpha over all criteria, pooling observed disagreement."""
    criteria = list(criteria)
    if len(verdicts) < 2 or not criteria:
        return 1.0
    d_o = sum(
        observed_disagreement([v.score_for(c) for v in verdicts]) for c in criteria
    ) / len(criteria)
    return _alpha(d_o)


def bucket(agreement: float, reliable_at: float = 0.80, tentative_at: float = 0.67) -> Reliability:
    if agreement >= reliable_at:
        return Reliability.RELIABLE
    if agreement >= tentative_at:
        return Reliability.TENTATIVE
    return Reliability.LOW


def downgrade(reliability: Reliability, steps: int = 1) -> Reliability:
    index = max(0, _LEVELS.index(reliability) - steps)
    return _LEVELS[index]


def cap(reliability: Reliability, ceiling: Reliability) -> Reliability:
    return _LEVELS[min(_LEVELS.index(reliability), _LEVELS.index(ceiling))]


CONFIDENCE_CEILING = {
    Confidence.HIGH: Reliability.RELIABLE,
    Confidence.MEDIUM: Reliability.TENTATIVE,
    Confidence.LOW: Reliability.LOW,
}


def panel_reliability(
    verdicts: List[JudgeVerdict],
    agreement: float,
    missing_count: int = 0,
    reliable_at: float = 0.80,
    tentative_at: float = 0.67,
) -> Reliability:
    """
    Bucket the pooled agreement, then apply the panel adjustments: a lone
    judge is only as reliable as its own confidence, and any dispatched
    judge that failed to answer costs one level.
    """
    reliability = bucket(agreement, reliable_at, tentative_at)
    if len(verdicts) == 1:
        reliability = cap(reliability, CONFIDENCE_CEILING[verdicts[0].confidence])
    if missing_count:
        reliability = downgrade(reliability)
    return reliability
