# [Core: Heuristic Pre-filter]
"""
Heuristic pre-filter — cheap structural checks run before any judge.

Lessons that fail a check at MAJOR or CRITICAL severity never reach the
panel: they are scored 0 and routed straight to full regeneration.
MINOR findings and warnings are reported but do not block.

Checks:
  - word count against [min_word_count, max_word_count]
  - Flesch-Kincaid grade against [readability_grade_min, readability_grade_max]
  - required sections, found by heading or by mention in the text
  - average words per headed section
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List

from refinery.core.config import RefinementConfig
from refinery.core.sections import PREAMBLE_ID, render_markdown
from refinery.models.schemas import Criterion, Issue, LessonContent, Severity

_WORD_RE = re.compile(r"\b[a-zA-Z]+\b")
_SENTENCE_RE = re.compile(r"[.!?]+")
_VOWEL_GROUP_RE = re.compile(r"[aeiouy]+")

HEURISTIC_JUDGE_ID = "heuristic"


@dataclass
class HeuristicResult:
    passed: bool
    issues: List[Issue] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    metrics: Dict[str, float] = field(default_factory=dict)

    @property
    def failures(self) -> List[str]:
        return [
            i.description for i in self.issues
            if i.severity in (Severity.CRITICAL, Severity.MAJOR)
        ]


# ──────────────────────────────────────────────
# Text metrics
# ──────────────────────────────────────────────

def words(text: str) -> List[str]:
    return _WORD_RE.findall(text)


def count_syllables(word: str) -> int:
    """Vowel-group estimate. Silent trailing 'e' dropped, at least one per word."""
    word = word.lower()
    if len(word) <= 3:
        return 1
    if word.endswith("e") and not word.endswith("le"):
        word = word[:-1]
    return max(1, len(_VOWEL_GROUP_RE.findall(word)))


def flesch_kincaid_grade(text: str) -> float:
    """Flesch-Kincaid grade level, clamped to 1..20. Empty text is grade 1."""
    found = words(text)
    if not found:
        return 1.0
    sentences = [s for s in _SENTENCE_RE.split(text) if words(s)]
    n_sentences = max(1, len(sentences))
    syllables = sum(count_syllables(w) for w in found)
    grade = 0.39 * (len(found) / n_sentences) + 11.8 * (syllables / len(found)) - 15.59
    return max(1.0, min(20.0, grade))


# ──────────────────────────────────────────────
# Pre-filter
# ──────────────────────────────────────────────

def _issue(criterion: Criterion, severity: Severity, description: str, fix: str = "") -> Issue:
    return Issue(
        criterion=criterion,
        severity=severity,
        description=description,
        suggested_fix=fix,
        judge_ids=(HEURISTIC_JUDGE_ID,),
    )


def run_prefilter(content: LessonContent, config: RefinementConfig) -> HeuristicResult:
    text = render_markdown(content)
    word_count = len(words(text))
    headed = [s for s in content.sections if s.section_id != PREAMBLE_ID]
    grade = flesch_kincaid_grade(text)
    density = word_count / max(1, len(headed))

    issues: List[Issue] = []
    warnings: List[str] = []

    if word_count < config.min_word_count:
        severity = Severity.CRITICAL if word_count < config.min_word_count / 2 else Severity.MAJOR
        issues.append(_issue(
            Criterion.COMPLETENESS, severity,
            f"Lesson has {word_count} words, minimum is {config.min_word_count}",
            "Expand the explanations and add examples",
        ))
    elif word_count > config.max_word_count:
        warnings.append(f"Lesson has {word_count} words, more than {config.max_word_count}")

    low, high = config.readability_grade_min, config.readability_grade_max
    if not (low <= grade <= high):
        distance = low - grade if grade < low else grade - high
        issues.append(_issue(
            Criterion.CLARITY_READABILITY,
            Severity.MAJOR if distance > 2 else Severity.MINOR,
            f"Reading grade {grade:.1f} outside {low:g}-{high:g}",
            "Simplify sentences" if grade > high else "Use fuller sentences and precise terms",
        ))

    if config.required_sections:
        lowered = text.lower()
        titles = [s.title.lower() for s in headed]
        missing = [
            name for name in config.required_sections
            if not any(name.lower() in t for t in titles) and name.lower() not in lowered
        ]
        if missing:
            severity = (
                Severity.CRITICAL if len(missing) > len(config.required_sections) / 2
                else Severity.MAJOR
            )
            issues.append(_issue(
                Criterion.PEDAGOGICAL_STRUCTURE, severity,
                f"Missing required sections: {', '.join(missing)}",
                f"Add sections for {', '.join(missing)}",
            ))

    if headed and density < config.min_section_words:
        issues.append(_issue(
            Criterion.COMPLETENESS,
            Severity.MAJOR if density < config.min_section_words / 2 else Severity.MINOR,
            f"Sections average {density:.1f} words, minimum is {config.min_section_words:g}",
            "Develop each section beyond a heading and a line",
        ))

    passed = not any(i.severity in (Severity.CRITICAL, Severity.MAJOR) for i in issues)
    return HeuristicResult(
        passed=passed,
        issues=issues,
        warnings=warnings,
        metrics={
            "word_count": float(word_count),
            "reading_grade": round(grade, 2),
            "section_count": float(len(headed)),
            "words_per_section": round(density, 2),
        },
    )
