# [Core: Refinement Router]
"""
Refinement Router — maps a panel verdict and the iteration history to
one action.

Four score tiers replace the old "any refine verdict means full
regeneration" behaviour:

    composite >= accept          -> accept
    minor <= composite < accept  -> minor_refine  (targeted fixes)
    major <= composite < minor   -> major_refine  (regenerate flagged sections)
    composite < major            -> reject        (regenerate everything)

Low reliability and unresolved judge conflicts override the score and
escalate to a human. Locked sections are never offered for editing.
route() is a pure function of its arguments.
"""
from __future__ import annotations

import re
from typing import Collection, Dict, List, Optional, Sequence

from refinery.core.config import RefinementConfig
from refinery.core.sections import PREAMBLE_ID, resolve_locator, section_ids
from refinery.models.schemas import (
    Action,
    AggregatedVerdict,
    FixRecommendation,
    Issue,
    IterationRecord,
    IterationStatus,
    LessonContent,
    Reliability,
    RoutingDecision,
    Severity,
)

_MIN_TERM_LEN = 3
_BOLD_RE = re.compile(r"\*\*([^*\n]{1,60})\*\*")


def trailing_count(history: Sequence[IterationRecord], status: IterationStatus) -> int:
    """How many of the most recent records have this status, back to the first that does not."""
    count = 0
    for record in reversed(history):
        if record.status != status:
            break
        count += 1
    return count


def group_by_section(content: LessonContent, issues: Sequence[Issue]) -> Dict[str, List[Issue]]:
    """Issues keyed by resolved section id, in document order. Issues with no resolvable section are left out."""
    grouped: Dict[str, List[Issue]] = {}
    for issue in issues:
        section_id = resolve_locator(content, issue.location)
        if section_id is not None:
            grouped.setdefault(section_id, []).append(issue)
    order = section_ids(content)
    return {sid: grouped[sid] for sid in order if sid in grouped}


def preserve_terms(content: LessonContent) -> List[str]:
    """Terms the fixer must keep verbatim: section titles and bolded key terms."""
    terms: List[str] = []
    for section in content.sections:
        candidates = [section.title] if section.section_id != PREAMBLE_ID else []
        candidates.extend(_BOLD_RE.findall(section.body))
        for term in candidates:
            term = term.strip()
            if len(term) >= _MIN_TERM_LEN and term not in terms:
                terms.append(term)
    return terms


def _recommendation(
    action: Action,
    content: LessonContent,
    issues: Sequence[Issue],
    locked: Collection[str] = (),
) -> Optional[FixRecommendation]:
    grouped = {
        sid: section_issues
        for sid, section_issues in group_by_section(content, issues).items()
        if sid not in locked
    }
    if not grouped:
        return None
    targets = [i for section_issues in grouped.values() for i in section_issues]
    modify = list(grouped)
    preserve = [sid for sid in section_ids(content) if sid not in grouped]
    return FixRecommendation(
        action=action,
        target_issues=targets,
        sections_to_modify=modify,
        sections_to_preserve=preserve,
        preserve_terminology=preserve_terms(content),
    )


def _unfixable(
    reason: str,
    content: LessonContent,
    issues: Sequence[Issue],
    locked: Collection[str],
) -> RoutingDecision:
    blocked = [sid for sid in group_by_section(content, issues) if sid in locked]
    if blocked:
        reason = f"{reason}: remaining issues are in locked sections {', '.join(blocked)}"
    return RoutingDecision(action=Action.ESCALATE, reason=reason)


def route(
    verdict: AggregatedVerdict,
    history: Sequence[IterationRecord],
    config: RefinementConfig,
    content: LessonContent,
    locked_sections: Collection[str] = (),
) -> RoutingDecision:
    """Decide the next action. Same inputs, same decision."""
    score = verdict.composite_score

    if verdict.reliability == Reliability.LOW:
        return RoutingDecision(
            action=Action.ESCALATE,
            reason=f"judge agreement too low ({verdict.agreement:.2f}) to trust score {score:.3f}",
        )

    if verdict.conflicts:
        sections = sorted({c.section for c in verdict.conflicts})
        return RoutingDecision(
            action=Action.ESCALATE,
            reason=f"judges request opposite edits in {', '.join(sections)}",
        )

    if score >= config.accept_threshold:
        return RoutingDecision(action=Action.ACCEPT, reason=f"score {score:.3f} meets accept bar")

    regressions = trailing_count(history, IterationStatus.REGRESSION)
    if regressions > config.max_regression_retries:
        return RoutingDecision(
            action=Action.ESCALATE,
            reason=f"quality lock blocked {regressions} consecutive iteration(s)",
        )
    failures = trailing_count(history, IterationStatus.FIX_FAILED)
    if failures > config.max_fix_retries:
        return RoutingDecision(
            action=Action.ESCALATE,
            reason=f"fix failed {failures} consecutive time(s)",
        )

    if score >= config.minor_threshold:
        rec = _recommendation(Action.MINOR_REFINE, content, verdict.merged_issues, locked_sections)
        if rec is None:
            return _unfixable(
                f"score {score:.3f} below accept bar but no localisable issues to fix",
                content, verdict.merged_issues, locked_sections,
            )
        return RoutingDecision(
            action=Action.MINOR_REFINE,
            reason=f"score {score:.3f} in minor band, {len(rec.target_issues)} issue(s) targeted",
            recommendation=rec,
        )

    if score >= config.major_threshold:
        serious = [i for i in verdict.merged_issues if i.severity != Severity.MINOR]
        if serious:
            rec = _recommendation(Action.MAJOR_REFINE, content, serious, locked_sections)
            if rec is not None:
                return RoutingDecision(
                    action=Action.MAJOR_REFINE,
                    reason=(
                        f"score {score:.3f} in major band, regenerating "
                        f"{', '.join(rec.sections_to_modify)}"
                    ),
                    recommendation=rec,
                )
        # Only minor issues can be localised: patch them instead of regenerating.
        rec = _recommendation(Action.MINOR_REFINE, content, verdict.merged_issues, locked_sections)
        if rec is None:
            return _unfixable(
                f"score {score:.3f} in major band but no localisable issues",
                content, verdict.merged_issues, locked_sections,
            )
        return RoutingDecision(
            action=Action.MINOR_REFINE,
            reason=f"score {score:.3f} in major band, only minor issues localised",
            recommendation=rec,
        )

    return RoutingDecision(
        action=Action.REJECT,
        reason=f"score {score:.3f} below {config.major_threshold}, full regeneration",
        recommendation=FixRecommendation(
            action=Action.REJECT,
            target_issues=list(verdict.merged_issues),
        ),
    )
