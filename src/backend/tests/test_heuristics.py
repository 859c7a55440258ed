"""Tests for the heuristic pre-filter.

Covers:
- Syllable and reading-grade estimates
- Word count, readability, required sections and section density checks
- Severity grading: MAJOR and CRITICAL block, MINOR and warnings do not
"""

import pytest

from refinery.core.heuristics import count_syllables, flesch_kincaid_grade, run_prefilter
from refinery.core.sections import parse_markdown
from refinery.models.schemas import Criterion, Severity

from tests.fakes import judge_def, lesson, make_config


def _screen(content=None, **overrides):
    return run_prefilter(content or lesson(), make_config([judge_def("a")], **overrides))


def _only(result, criterion):
    found = [i for i in result.issues if i.criterion == criterion]
    assert len(found) == 1
    return found[0]


# ---------------------------------------------------------------------------
# Text metrics
# ---------------------------------------------------------------------------

class TestMetrics:
    @pytest.mark.parametrize("word,expected", [
        ("cat", 1),
        ("water", 2),
        ("make", 1),
        ("table", 2),
        ("photosynthesis", 5),
    ])
    def test_syllables(self, word, expected) -> None:
        assert count_syllables(word) == expected

    def test_empty_text_is_lowest_grade(self) -> None:
        assert flesch_kincaid_grade("") == 1.0

    def test_grade_is_clamped(self) -> None:
        assert flesch_kincaid_grade("The cat sat. The dog ran.") == 1.0
        dense = (
            "Photosynthetic organisms convert electromagnetic radiation into biochemical "
            "potential energy through complicated interdependent mechanisms."
        )
        assert flesch_kincaid_grade(dense) == 20.0


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------

class TestPrefilter:
    def test_sample_lesson_passes(self) -> None:
        result = _screen()
        assert result.passed
        assert result.issues == []
        assert result.metrics["word_count"] == 53
        assert result.metrics["section_count"] == 3

    def test_short_lesson_is_major(self) -> None:
        result = _screen(min_word_count=100)
        issue = _only(result, Criterion.COMPLETENESS)
        assert issue.severity == Severity.MAJOR
        assert issue.judge_ids == ("heuristic",)
        assert not result.passed

    def test_very_short_lesson_is_critical(self) -> None:
        result = _screen(min_word_count=200)
        assert _only(result, Criterion.COMPLETENESS).severity == Severity.CRITICAL
        assert result.failures == ["Lesson has 53 words, minimum is 200"]

    def test_long_lesson_only_warns(self) -> None:
        result = _screen(max_word_count=30)
        assert result.passed
        assert result.warnings == ["Lesson has 53 words, more than 30"]

    def test_reading_grade_far_out_of_range_blocks(self) -> None:
        result = _screen(readability_grade_min=1.0, readability_grade_max=3.0)
        assert _only(result, Criterion.CLARITY_READABILITY).severity == Severity.MAJOR
        assert not result.passed

    def test_reading_grade_slightly_out_of_range_is_minor(self) -> None:
        grade = _screen().metrics["reading_grade"]
        result = _screen(readability_grade_min=1.0, readability_grade_max=grade - 1)
        assert _only(result, Criterion.CLARITY_READABILITY).severity == Severity.MINOR
        assert result.passed

    def test_required_section_found_by_heading_or_mention(self) -> None:
        assert _screen(required_sections=["Practice", "Calvin cycle", "light reactions"]).passed

    def test_one_missing_section_is_major(self) -> None:
        result = _screen(required_sections=["Practice", "Summary"])
        issue = _only(result, Criterion.PEDAGOGICAL_STRUCTURE)
        assert issue.severity == Severity.MAJOR
        assert "Summary" in issue.description

    def test_most_sections_missing_is_critical(self) -> None:
        result = _screen(required_sections=["Practice", "Summary", "Glossary"])
        assert _only(result, Criterion.PEDAGOGICAL_STRUCTURE).severity == Severity.CRITICAL

    def test_thin_sections(self) -> None:
        assert _only(_screen(min_section_words=30), Criterion.COMPLETENESS).severity == Severity.MINOR
        assert _only(_screen(min_section_words=40), Criterion.COMPLETENESS).severity == Severity.MAJOR

    def test_preamble_only_lesson_skips_density(self) -> None:
        content = parse_markdown("# Title\n\n" + "Plants turn light into sugar. " * 10)
        result = _screen(content)
        assert result.metrics["section_count"] == 0
        assert all("Sections average" not in i.description for i in result.issues)
