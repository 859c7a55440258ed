"""
Domain models for the Lesson Refinery.

These Pydantic models define the data flowing between judges, the
aggregator, the router, the fix executor and the convergence controller.
Judge output models are frozen: once a judge emits a verdict, nothing
downstream mutates it.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ──────────────────────────────────────────────
# Enums
# ──────────────────────────────────────────────

class Criterion(str, Enum):
    LEARNING_OBJECTIVE_ALIGNMENT = "learning_objective_alignment"
    PEDAGOGICAL_STRUCTURE = "pedagogical_structure"
    FACTUAL_ACCURACY = "factual_accuracy"
    CLARITY_READABILITY = "clarity_readability"
    ENGAGEMENT_EXAMPLES = "engagement_examples"
    COMPLETENESS = "completeness"


class Severity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"


SEVERITY_RANK = {Severity.CRITICAL: 3, Severity.MAJOR: 2, Severity.MINOR: 1}


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Reliability(str, Enum):
    RELIABLE = "reliable"
    TENTATIVE = "tentative"
    LOW = "low"


class Action(str, Enum):
    ACCEPT = "accept"
    MINOR_REFINE = "minor_refine"
    MAJOR_REFINE = "major_refine"
    REJECT = "reject"
    ESCALATE = "escalate"


class Outcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED_HARD_LIMIT = "rejected_hard_limit"
    ESCALATED = "escalated"


class IterationStatus(str, Enum):
    APPLIED = "applied"              # targeted fix verified and adopted
    REGENERATED = "regenerated"      # sections or whole lesson regenerated and adopted
    FIX_FAILED = "fix_failed"
    REGRESSION = "regression"        # candidate blocked by the quality lock
    ABORTED = "aborted"              # round cut short, partial work discarded


class SessionPhase(str, Enum):
    PENDING = "pending"
    EVALUATING = "evaluating"
    FIXING = "fixing"
    RE_EVALUATING = "re_evaluating"
    TERMINAL = "terminal"


class IssueStatus(str, Enum):
    OPEN = "open"
    FIXED = "fixed"
    SUPERSEDED = "superseded"


# ──────────────────────────────────────────────
# Judge output
# ──────────────────────────────────────────────

def _clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class Issue(BaseModel):
    """A single problem reported by one or more judges."""
    model_config = ConfigDict(frozen=True)

    criterion: Criterion
    severity: Severity
    location: str = Field("", description="Section locator, e.g. 'section 2' or a section title")
    description: str = Field(..., description="What is wrong")
    suggested_fix: str = Field("", description="How to fix it")
    quoted_text: Optional[str] = Field(None, description="Offending excerpt, if any")
    judge_ids: Tuple[str, ...] = Field(default=(), description="Judges reporting this issue")

    @field_validator("severity", mode="before")
    @classmethod
    def _normalise_severity(cls, v):
        # Some models answer on a high/moderate/low scale
        if isinstance(v, str):
            v = v.strip().lower()
            return {"high": "major", "moderate": "minor", "low": "minor"}.get(v, v)
        return v


class JudgeVerdict(BaseModel):
    """One judge's output for one evaluation call."""
    model_config = ConfigDict(frozen=True)

    judge_id: str = ""
    overall_score: float = Field(..., description="Overall quality in [0, 1]")
    criteria_scores: Dict[Criterion, float] = Field(default_factory=dict)
    issues: List[Issue] = Field(default_factory=list)
    confidence: Confidence = Confidence.MEDIUM
    tokens_used: int = 0

    @field_validator("overall_score", mode="before")
    @classmethod
    def _clamp_overall(cls, v):
        return _clamp_unit(v)

    @field_validator("criteria_scores", mode="before")
    @classmethod
    def _clean_criteria(cls, v):
        if not isinstance(v, dict):
            return v
        known = {c.value for c in Criterion}
        cleaned = {}
        for key, score in v.items():
            name = key.value if isinstance(key, Criterion) else str(key).strip().lower()
            if name in known and score is not None:
                cleaned[name] = _clamp_unit(score)
        return cleaned

    @field_validator("confidence", mode="before")
    @classmethod
    def _normalise_confidence(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
            return "medium" if v == "moderate" else v
        return v

    def score_for(self, criterion: Criterion) -> float:
        """Criterion score, falling back to the overall score when the judge omitted it."""
        return self.criteria_scores.get(criterion, self.overall_score)


class IssueConflict(BaseModel):
    """Two judges pulling the same section in opposite directions."""
    model_config = ConfigDict(frozen=True)

    section: str
    expand_issue: Issue
    reduce_issue: Issue


class AggregatedVerdict(BaseModel):
    """Panel verdict for one round. Recomputed every round, never carried over."""
    model_config = ConfigDict(frozen=True)

    composite_score: float
    criteria_scores: Dict[Criterion, float]
    per_criterion_agreement: Dict[Criterion, float]
    agreement: float
    reliability: Reliability
    merged_issues: List[Issue] = Field(default_factory=list)
    judge_ids: List[str] = Field(default_factory=list)
    judge_scores: Dict[str, float] = Field(default_factory=dict)
    missing_judges: List[str] = Field(default_factory=list)
    tiebreak_used: bool = False
    conflicts: List[IssueConflict] = Field(default_factory=list)
    tokens_used: int = 0
    heuristic_failures: List[str] = Field(
        default_factory=list, description="Pre-filter checks that failed; non-empty means no judge ran"
    )


# ──────────────────────────────────────────────
# Routing / fixing
# ──────────────────────────────────────────────

class FixRecommendation(BaseModel):
    """Scope of one fix round, produced by the router and consumed once."""
    model_config = ConfigDict(frozen=True)

    action: Action
    target_issues: List[Issue] = Field(default_factory=list)
    sections_to_modify: List[str] = Field(default_factory=list)
    sections_to_preserve: List[str] = Field(default_factory=list)
    preserve_terminology: List[str] = Field(default_factory=list)


class RoutingDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: Action
    reason: str
    recommendation: Optional[FixRecommendation] = None


class IterationRecord(BaseModel):
    """One refinement iteration. Appended to the session log, never edited."""
    model_config = ConfigDict(frozen=True)

    iteration_index: int
    action: Action
    status: IterationStatus
    score_before: float
    score_after: Optional[float] = None
    elapsed_seconds: float = 0.0
    tokens_spent: int = 0
    model_calls: int = 0
    sections_modified: List[str] = Field(default_factory=list)
    regressions: List[str] = Field(default_factory=list)
    note: str = ""


# ──────────────────────────────────────────────
# Lesson content
# ──────────────────────────────────────────────

class Section(BaseModel):
    model_config = ConfigDict(frozen=True)

    section_id: str
    title: str = ""
    body: str = ""
    heading: str = Field("", description="Heading line as written, line ending included")


class LessonContent(BaseModel):
    """Ordered lesson sections. Rendered to and parsed from Markdown."""
    model_config = ConfigDict(frozen=True)

    title: str = ""
    sections: List[Section] = Field(default_factory=list)


class IssueLedgerEntry(BaseModel):
    issue: Issue
    status: IssueStatus
    first_seen_round: int
    resolved_round: Optional[int] = None


# ──────────────────────────────────────────────
# Session result + API models
# ──────────────────────────────────────────────

class SessionResult(BaseModel):
    session_id: str
    outcome: Outcome
    reason: str
    final_content: LessonContent
    final_score: Optional[float] = None
    final_reliability: Optional[Reliability] = None
    best_effort_content: Optional[LessonContent] = None
    best_effort_score: Optional[float] = None
    rounds: int = 0
    model_calls: int = 0
    elapsed_seconds: float = 0.0
    iteration_log: List[IterationRecord] = Field(default_factory=list)
    issue_ledger: List[IssueLedgerEntry] = Field(default_factory=list)
    locked_sections: Dict[str, str] = Field(default_factory=dict, description="Section id -> why it was frozen")
    cost: Dict = Field(default_factory=dict)


class SessionSubmission(BaseModel):
    """Refinement request from the client."""
    content: str = Field(..., min_length=1, description="Lesson content as Markdown")
    mode: Optional[str] = Field(None, description="Operation mode preset; server default when omitted")
    max_iterations: Optional[int] = Field(None, ge=1, le=50)
    max_seconds: Optional[float] = Field(None, gt=0)
    max_model_calls: Optional[int] = Field(None, ge=1)


class SessionResponse(BaseModel):
    session_id: str
    status: str
    message: str = ""


class SessionStatus(BaseModel):
    session_id: str
    phase: SessionPhase
    round: int = 0
    model_calls: int = 0
    current_score: Optional[float] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    iteration_log: List[IterationRecord] = Field(default_factory=list)
    result: Optional[SessionResult] = None
    error: Optional[str] = None
