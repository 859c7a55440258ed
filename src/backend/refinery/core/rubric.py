"""
Evaluation rubric — criterion weights and descriptions.

Weights are static for a session and must sum to 1.0. The default rubric
follows the OSCQR-derived lesson rubric used by the judges.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping

from refinery.core.errors import ConfigurationInvalid
from refinery.models.schemas import Criterion

WEIGHT_EPSILON = 1e-3


@dataclass(frozen=True)
class CriterionSpec:
    weight: float
    description: str = ""


@dataclass(frozen=True)
class Rubric:
    """Criterion -> weight table used for composite scores and issue priority."""
    criteria: Dict[Criterion, CriterionSpec] = field(default_factory=dict)

    @property
    def total_weight(self) -> float:
        return sum(spec.weight for spec in self.criteria.values())

    def weight(self, criterion: Criterion) -> float:
        spec = self.criteria.get(criterion)
        return spec.weight if spec else 0.0

    def composite(self, scores: Mapping[Criterion, float]) -> float:
        """Weighted sum of the given criterion scores (missing criteria count as 0)."""
        return sum(spec.weight * scores.get(c, 0.0) for c, spec in self.criteria.items())

    def problems(self) -> List[str]:
        found: List[str] = []
        if not self.criteria:
            found.append("rubric has no criteria")
            return found
        for criterion, spec in self.criteria.items():
            if spec.weight < 0:
                found.append(f"criterion {criterion.value} has negative weight {spec.weight}")
        total = self.total_weight
        if abs(total - 1.0) > WEIGHT_EPSILON:
            found.append(f"criterion weights sum to {total:.4f}, expected 1.0")
        return found

    def validate(self) -> "Rubric":
        problems = self.problems()
        if problems:
            raise ConfigurationInvalid(problems)
        return self

    def describe(self) -> str:
        """Prompt-ready listing of criteria, heaviest first."""
        ordered = sorted(self.criteria.items(), key=lambda kv: -kv[1].weight)
        return "\n".join(
            f"- {c.value} (weight {spec.weight:.2f}): {spec.description}" for c, spec in ordered
        )

    @classmethod
    def from_weights(cls, weights: Mapping[str, float]) -> "Rubric":
        """Build a rubric from a plain mapping, keeping default descriptions."""
        criteria = {}
        for name, weight in weights.items():
            try:
                criterion = Criterion(name)
            except ValueError:
                raise ConfigurationInvalid([f"unknown criterion '{name}'"]) from None
            default = DEFAULT_RUBRIC.criteria.get(criterion)
            criteria[criterion] = CriterionSpec(
                weight=float(weight), description=default.description if default else ""
            )
        return cls(criteria=criteria)


DEFAULT_RUBRIC = Rubric(criteria={
    Criterion.LEARNING_OBJECTIVE_ALIGNMENT: CriterionSpec(
        0.25, "Content directly serves the stated learning objectives"
    ),
    Criterion.PEDAGOGICAL_STRUCTURE: CriterionSpec(
        0.20, "Logical progression from foundations to application, with scaffolding"
    ),
    Criterion.FACTUAL_ACCURACY: CriterionSpec(
        0.15, "Claims, definitions and figures are correct"
    ),
    Criterion.CLARITY_READABILITY: CriterionSpec(
        0.15, "Plain language at the target level, terms defined before use"
    ),
    Criterion.ENGAGEMENT_EXAMPLES: CriterionSpec(
        0.15, "Concrete examples, exercises or scenarios that engage the learner"
    ),
    Criterion.COMPLETENESS: CriterionSpec(
        0.10, "All topics promised by the objectives are covered"
    ),
})
