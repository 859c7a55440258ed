# [Core: Evaluator Aggregator]
"""
Evaluator Aggregator — turns K judge verdicts into one panel verdict.

On each call:
  1. Score every criterion: judge-weighted mean for K < 3, median for K >= 3
  2. Composite = rubric-weighted sum of those criterion scores
  3. Measure inter-rater agreement and bucket reliability
  4. Merge near-duplicate issues and order them by priority
  5. Flag sections where judges ask for opposite edits

Pure: the same verdicts in the same order always give the same result.
"""
from __future__ import annotations

import re
from statistics import median
from typing import Dict, List, Mapping, Optional, Sequence

from refinery.core.agreement import criterion_agreement, panel_reliability, pooled_agreement
from refinery.core.config import RefinementConfig
from refinery.core.errors import JudgeUnavailable
from refinery.core.rubric import Rubric
from refinery.core.sections import locator_key
from refinery.models.schemas import (
    SEVERITY_RANK,
    AggregatedVerdict,
    Issue,
    IssueConflict,
    JudgeVerdict,
)

_WORD_RE = re.compile(r"[a-z0-9]+")

EXPAND_WORDS = {
    "add", "adding", "expand", "include", "elaborate", "extend", "insert",
    "introduce", "more", "additional", "lengthen", "longer",
}
REDUCE_WORDS = {
    "remove", "shorten", "cut", "condense", "trim", "delete", "reduce",
    "fewer", "less", "drop", "tighten", "shorter", "concise",
}


# ──────────────────────────────────────────────
# Issue similarity / merging
# ──────────────────────────────────────────────

def _tokens(text: str) -> set:
    return {w for w in _WORD_RE.findall(text.lower()) if len(w) > 2}


def description_similarity(a: str, b: str) -> float:
    """Token Jaccard overlap between two issue descriptions."""
    ta, tb = _tokens(a), _tokens(b)
    if not ta and not tb:
        return 1.0
    union = len(ta | tb)
    return len(ta & tb) / union if union else 0.0


def same_issue(a: Issue, b: Issue, threshold: float) -> bool:
    """Same criterion, compatible location, similar description."""
    if a.criterion != b.criterion:
        return False
    ka, kb = locator_key(a.location), locator_key(b.location)
    if ka and kb and ka != kb:
        return False
    return description_similarity(a.description, b.description) >= threshold


def _merge_pair(kept: Issue, other: Issue) -> Issue:
    severity = kept.severity
    if SEVERITY_RANK[other.severity] > SEVERITY_RANK[severity]:
        severity = other.severity
    return kept.model_copy(update={
        "severity": severity,
        "location": kept.location or other.location,
        "suggested_fix": kept.suggested_fix or other.suggested_fix,
        "quoted_text": kept.quoted_text if kept.quoted_text is not None else other.quoted_text,
        "judge_ids": tuple(sorted(set(kept.judge_ids) | set(other.judge_ids))),
    })


def merge_issues(verdicts: Sequence[JudgeVerdict], threshold: float) -> List[Issue]:
    """Deduplicate issues across judges, first-seen wins for wording."""
    merged: List[Issue] = []
    for verdict in verdicts:
        for issue in verdict.issues:
            if not issue.judge_ids and verdict.judge_id:
                issue = issue.model_copy(update={"judge_ids": (verdict.judge_id,)})
            for i, existing in enumerate(merged):
                if same_issue(existing, issue, threshold):
                    merged[i] = _merge_pair(existing, issue)
                    break
            else:
                merged.append(issue)
    return merged


def prioritise(issues: Sequence[Issue], rubric: Rubric) -> List[Issue]:
    """Severity, then criterion weight, then number of supporting judges."""
    return sorted(
        issues,
        key=lambda i: (
            -SEVERITY_RANK[i.severity],
            -rubric.weight(i.criterion),
            -len(i.judge_ids),
            locator_key(i.location),
            i.description,
        ),
    )


# ──────────────────────────────────────────────
# Conflicts
# ──────────────────────────────────────────────

def fix_direction(issue: Issue) -> Optional[str]:
    """'expand', 'reduce' or None, from the wording of the suggested fix."""
    words = set(_WORD_RE.findall((issue.suggested_fix or issue.description).lower()))
    grow = len(words & EXPAND_WORDS)
    shrink = len(words & REDUCE_WORDS)
    if grow > shrink:
        return "expand"
    if shrink > grow:
        return "reduce"
    return None


def detect_conflicts(issues: Sequence[Issue]) -> List[IssueConflict]:
    """Pairs of issues from different judges asking for opposite edits to one section."""
    conflicts: List[IssueConflict] = []
    for i, a in enumerate(issues):
        key = locator_key(a.location)
        if not key:
            continue
        for b in issues[i + 1:]:
            if locator_key(b.location) != key or set(a.judge_ids) == set(b.judge_ids):
                continue
            da, db = fix_direction(a), fix_direction(b)
            if {da, db} == {"expand", "reduce"}:
                grow, shrink = (a, b) if da == "expand" else (b, a)
                conflicts.append(IssueConflict(section=key, expand_issue=grow, reduce_issue=shrink))
    return conflicts


# ──────────────────────────────────────────────
# Aggregation
# ──────────────────────────────────────────────

def judge_composite(verdict: JudgeVerdict, rubric: Rubric) -> float:
    """One judge's composite under the rubric."""
    return rubric.composite({c: verdict.score_for(c) for c in rubric.criteria})


def _combine(scores: List[float], weights: List[float]) -> float:
    if len(scores) >= 3:
        return float(median(scores))
    total = sum(weights)
    return sum(s * w for s, w in zip(scores, weights)) / total


def aggregate(
    verdicts: Sequence[JudgeVerdict],
    rubric: Rubric,
    config: RefinementConfig,
    missing_judges: Sequence[str] = (),
    tiebreak_used: bool = False,
    weights: Optional[Mapping[str, float]] = None,
) -> AggregatedVerdict:
    """
    Combine the responding judges' verdicts for one round.

    Raises JudgeUnavailable when no judge responded.
    """
    verdicts = list(verdicts)
    if not verdicts:
        raise JudgeUnavailable(
            "No judge verdicts to aggregate (reliability low)", list(missing_judges)
        )

    weight_table = dict(config.judge_weights if weights is None else weights)
    judge_weights = [weight_table.get(v.judge_id, 1.0) for v in verdicts]

    criteria_scores: Dict = {
        c: _combine([v.score_for(c) for v in verdicts], judge_weights) for c in rubric.criteria
    }
    composite = rubric.composite(criteria_scores)

    per_criterion = criterion_agreement(verdicts, rubric.criteria)
    agreement = pooled_agreement(verdicts, rubric.criteria)
    reliability = panel_reliability(
        verdicts,
        agreement,
        missing_count=len(missing_judges),
        reliable_at=config.reliable_agreement,
        tentative_at=config.tentative_agreement,
    )

    issues = prioritise(merge_issues(verdicts, config.issue_similarity_threshold), rubric)

    return AggregatedVerdict(
        composite_score=composite,
        criteria_scores=criteria_scores,
        per_criterion_agreement=per_criterion,
        agreement=agreement,
        reliability=reliability,
        merged_issues=issues,
        judge_ids=[v.judge_id for v in verdicts],
        judge_scores={v.judge_id: judge_composite(v, rubric) for v in verdicts},
        missing_judges=list(missing_judges),
        tiebreak_used=tiebreak_used,
        conflicts=detect_conflicts(issues),
        tokens_used=sum(v.tokens_used for v in verdicts),
    )
