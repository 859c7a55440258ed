"""
Refinement configuration — thresholds, limits and the judge weight table.

Every threshold here is tunable data. The defaults are the empirically
chosen values from the lesson-quality experiments; validate() fails fast
on inconsistent settings rather than coercing them.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional

from refinery.core.errors import ConfigurationInvalid
from refinery.models.schemas import Criterion

# Judges one evaluation round may dispatch: cheap + panel + one tiebreaker.
MAX_JUDGES_PER_ROUND = 3


class JudgeRole(str, Enum):
    CHEAP = "cheap"             # first stage of the cascade
    PANEL = "panel"             # dispatched when the cheap judge is unsure
    TIEBREAKER = "tiebreaker"   # dispatched when panel scores disagree


@dataclass
class JudgeDef:
    """One judge in the panel, as data. Never branch on judge identity in code."""
    judge_id: str
    role: JudgeRole = JudgeRole.PANEL
    weight: float = 1.0
    """Reliability weight used for the weighted mean when fewer than 3 judges respond."""
    focus: List[Criterion] = field(default_factory=list)
    """
    Criteria this judge specialises in. Empty means generalist. Used to pick
    which judges re-run during targeted re-evaluation.
    """
    model: str = ""
    timeout_seconds: Optional[float] = None


@dataclass
class RefinementConfig:
    """Configuration for one refinement session."""
    config_id: str = "semi_auto"

    # Router thresholds
    accept_threshold: float = 0.90
    minor_threshold: float = 0.75
    major_threshold: float = 0.60

    # Aggregation
    reliable_agreement: float = 0.80
    tentative_agreement: float = 0.67
    issue_similarity_threshold: float = 0.60
    borderline_low: float = 0.85
    borderline_high: float = 0.95
    """Cheap-judge composites in [borderline_low, borderline_high) go to the panel."""
    tiebreak_threshold: float = 0.10
    judge_quorum: int = 1
    judge_timeout_seconds: float = 60.0

    # Fix verification
    entailment_confirm: float = 0.85
    entailment_flag: float = 0.70
    regression_tolerance: float = 0.05
    lock_threshold: float = 0.75
    canary_count: int = 1
    max_concurrent_fixes: int = 3
    max_fix_retries: int = 1
    max_regression_retries: int = 0

    # Section locking
    section_lock_after_edits: int = 2
    """Adopted edits after which a section is frozen. 0 disables edit-count locking."""
    section_oscillation_tolerance: float = 0.01
    """Score rise then fall larger than this freezes the sections edited in the falling round."""

    # Heuristic pre-filter
    heuristic_prefilter: bool = True
    min_word_count: int = 20
    max_word_count: int = 10000
    readability_grade_min: float = 4.0
    readability_grade_max: float = 14.0
    required_sections: List[str] = field(default_factory=list)
    min_section_words: float = 10.0

    # Convergence
    max_iterations: int = 10
    max_seconds: float = 300.0
    max_model_calls: int = 50
    plateau_abs: float = 0.02
    plateau_rel: float = 0.05
    plateau_min_bar: float = 0.85
    oscillation_window: int = 4
    oscillation_threshold: float = 0.5

    seed: Optional[int] = None
    judges: List[JudgeDef] = field(default_factory=list)
    description: str = ""

    @property
    def judge_weights(self) -> Dict[str, float]:
        return {j.judge_id: j.weight for j in self.judges}

    def judges_with_role(self, role: JudgeRole) -> List[JudgeDef]:
        return [j for j in self.judges if j.role == role]

    def judge(self, judge_id: str) -> Optional[JudgeDef]:
        for j in self.judges:
            if j.judge_id == judge_id:
                return j
        return None

    def with_overrides(self, **overrides) -> "RefinementConfig":
        """Copy with the given non-None fields replaced."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def problems(self) -> List[str]:
        found: List[str] = []

        if not (0.0 <= self.major_threshold < self.minor_threshold < self.accept_threshold <= 1.0):
            found.append(
                "thresholds must satisfy 0 <= major < minor < accept <= 1 "
                f"(got {self.major_threshold}/{self.minor_threshold}/{self.accept_threshold})"
            )
        if not (0.0 <= self.tentative_agreement < self.reliable_agreement <= 1.0):
            found.append("agreement buckets must satisfy 0 <= tentative < reliable <= 1")
        if not (0.0 <= self.entailment_flag < self.entailment_confirm <= 1.0):
            found.append("entailment thresholds must satisfy 0 <= flag < confirm <= 1")
        if self.borderline_low > self.borderline_high:
            found.append("borderline band is inverted")
        if not (0.0 < self.issue_similarity_threshold <= 1.0):
            found.append("issue_similarity_threshold must be in (0, 1]")

        for name in ("regression_tolerance", "tiebreak_threshold", "plateau_abs", "plateau_rel"):
            if getattr(self, name) < 0:
                found.append(f"{name} must be non-negative")
        for name in ("max_iterations", "max_model_calls", "judge_quorum", "max_concurrent_fixes"):
            if getattr(self, name) < 1:
                found.append(f"{name} must be at least 1")
        for name in ("max_fix_retries", "max_regression_retries", "canary_count"):
            if getattr(self, name) < 0:
                found.append(f"{name} must be non-negative")
        if self.max_seconds <= 0 or self.judge_timeout_seconds <= 0:
            found.append("time limits must be positive")
        if self.oscillation_window < 3:
            found.append("oscillation_window must be at least 3")
        if self.section_lock_after_edits < 0 or self.section_oscillation_tolerance < 0:
            found.append("section lock settings must be non-negative")
        if not (0 < self.min_word_count <= self.max_word_count):
            found.append("word count bounds must satisfy 0 < min <= max")
        if not (0 <= self.readability_grade_min < self.readability_grade_max):
            found.append("readability grades must satisfy 0 <= min < max")
        if self.min_section_words < 0:
            found.append("min_section_words must be non-negative")

        if not self.judges:
            found.append("at least one judge is required")
        ids = [j.judge_id for j in self.judges]
        if len(ids) != len(set(ids)):
            found.append("judge ids must be unique")
        for j in self.judges:
            if j.weight <= 0:
                found.append(f"judge {j.judge_id} must have a positive weight")
        if self.judges and not (
            self.judges_with_role(JudgeRole.CHEAP) or self.judges_with_role(JudgeRole.PANEL)
        ):
            found.append("at least one cheap or panel judge is required")
        if self.judge_quorum > len(self.judges):
            found.append("judge_quorum exceeds the number of configured judges")
        per_round = (
            len(self.judges_with_role(JudgeRole.CHEAP))
            + len(self.judges_with_role(JudgeRole.PANEL))
            + min(1, len(self.judges_with_role(JudgeRole.TIEBREAKER)))
        )
        if per_round > MAX_JUDGES_PER_ROUND:
            found.append(
                f"a round can dispatch {per_round} judges (cheap + panel + tiebreaker), "
                f"at most {MAX_JUDGES_PER_ROUND} allowed"
            )

        return found

    def validate(self) -> "RefinementConfig":
        problems = self.problems()
        if problems:
            raise ConfigurationInvalid(problems)
        return self


# ──────────────────────────────────────────────
# Operation modes
# ──────────────────────────────────────────────

CONFIGS = [
    RefinementConfig(
        config_id="semi_auto",
        description="Human in the loop: strict accept bar, escalate when stuck",
    ),
    RefinementConfig(
        config_id="full_auto",
        accept_threshold=0.85,
        plateau_min_bar=0.75,
        description="Unattended: lower accept bar, plateau accepts anything above 0.75",
    ),
]


def get_config(config_id: str, judges: Optional[List[JudgeDef]] = None) -> RefinementConfig:
    """Look up an operation-mode preset and attach the judge panel."""
    for cfg in CONFIGS:
        if cfg.config_id == config_id:
            return replace(cfg, judges=list(judges) if judges is not None else list(cfg.judges))
    raise ConfigurationInvalid(
        [f"unknown mode '{config_id}' (expected one of {[c.config_id for c in CONFIGS]})"]
    )
