"""Tests for lesson section parsing, locator resolution and scoped edits."""

import pytest

from refinery.core.errors import FixApplicationFailed
from refinery.core.sections import (
    anchor_excerpt,
    get_section,
    locator_key,
    normalise_body,
    parse_markdown,
    referenced_sections,
    render_markdown,
    replace_sections,
    resolve_locator,
    section_ids,
    verify_preserved,
)

from tests.fakes import LESSON, lesson


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

class TestParsing:
    def test_sections_in_document_order(self) -> None:
        content = lesson()
        assert content.title == "Photosynthesis"
        assert section_ids(content) == ["sec_0", "sec_1", "sec_2", "sec_3"]
        assert get_section(content, "sec_2").title == "Calvin Cycle"

    def test_render_round_trips(self) -> None:
        assert render_markdown(lesson()) == LESSON

    def test_no_preamble(self) -> None:
        content = parse_markdown("## Only\nbody\n")
        assert section_ids(content) == ["sec_1"]
        assert content.title == ""

    def test_heading_inside_code_fence_is_body(self) -> None:
        text = "## Code\n```markdown\n## not a heading\n```\n## Next\nx\n"
        content = parse_markdown(text)
        assert section_ids(content) == ["sec_1", "sec_2"]
        assert "## not a heading" in get_section(content, "sec_1").body
        assert render_markdown(content) == text

    @pytest.mark.parametrize("text", [
        "# T\r\n\r\n## Intro\r\nbody one\r\n## Second\r\nbody two\r\n",
        "## Intro  \nbody\n##   Spaced   title\t\nmore\n",
        "## No trailing newline",
    ])
    def test_headings_round_trip_byte_for_byte(self, text) -> None:
        assert render_markdown(parse_markdown(text)) == text

    def test_title_is_stripped_but_heading_kept(self) -> None:
        section = get_section(parse_markdown("##   Spaced   title\t\r\nbody\r\n"), "sec_1")
        assert section.title == "Spaced   title"
        assert section.heading == "##   Spaced   title\t\r\n"

    def test_replaced_body_keeps_original_heading(self) -> None:
        content = parse_markdown("## Intro  \r\nold\r\n## Next\r\nx\r\n")
        updated = replace_sections(content, {"sec_1": "new\r\n"})
        assert render_markdown(updated) == "## Intro  \r\nnew\r\n## Next\r\nx\r\n"


# ---------------------------------------------------------------------------
# Locators
# ---------------------------------------------------------------------------

class TestLocators:
    @pytest.mark.parametrize("location,key", [
        ("sec_2", "sec_2"),
        ("Section 2", "sec_2"),
        ("section 2: Calvin Cycle", "sec_2"),
        ("Calvin Cycle", "calvin cycle"),
        ("", ""),
    ])
    def test_locator_key(self, location, key) -> None:
        assert locator_key(location) == key

    @pytest.mark.parametrize("location,section_id", [
        ("sec_3", "sec_3"),
        ("Calvin Cycle", "sec_2"),
        ("the calvin cycle part", "sec_2"),
        ("Introduction", "sec_1"),
        ("sec_9", None),
        ("Glossary", None),
    ])
    def test_resolve(self, location, section_id) -> None:
        assert resolve_locator(lesson(), location) == section_id

    def test_referenced_sections(self) -> None:
        content = parse_markdown(
            "## Basics\nTerms.\n## Practice\nRevisit section 1 and the Worked Example.\n"
            "## Worked Example\nSteps.\n"
        )
        assert referenced_sections(content, "sec_2") == ["sec_1", "sec_3"]
        assert referenced_sections(content, "sec_9") == []

    def test_anchor_excerpt_is_bounded(self) -> None:
        section = get_section(parse_markdown("## Long\n" + "word " * 200 + "\n"), "sec_1")
        excerpt = anchor_excerpt(section, max_chars=50)
        assert excerpt.startswith("## Long\n")
        assert excerpt.endswith("...")
        assert len(excerpt) < 80


# ---------------------------------------------------------------------------
# Scoped edits
# ---------------------------------------------------------------------------

class TestEdits:
    def test_normalise_drops_echoed_heading_and_demotes(self) -> None:
        original = get_section(lesson(), "sec_2")
        body = normalise_body(original, "## Calvin Cycle\nNew text.\n## Sub part\nMore.")
        assert body == "New text.\n### Sub part\nMore.\n\n"

    def test_normalise_keeps_trailing_whitespace(self) -> None:
        original = get_section(lesson(), "sec_1")
        assert normalise_body(original, "Short.").endswith("\n\n")

    def test_replace_leaves_other_sections_identical(self) -> None:
        before = lesson()
        after = replace_sections(before, {"sec_2": "Rewritten.\n\n"})
        for sid in ("sec_0", "sec_1", "sec_3"):
            assert get_section(after, sid) == get_section(before, sid)
        assert get_section(after, "sec_2").body == "Rewritten.\n\n"
        verify_preserved(before, after, ["sec_0", "sec_1", "sec_3"])

    def test_replace_unknown_section(self) -> None:
        with pytest.raises(FixApplicationFailed) as exc:
            replace_sections(lesson(), {"sec_9": "x"})
        assert exc.value.section_ids == ["sec_9"]

    def test_verify_preserved_detects_one_byte(self) -> None:
        before = lesson()
        body = get_section(before, "sec_1").body
        after = replace_sections(before, {"sec_1": body + " "})
        with pytest.raises(FixApplicationFailed, match="sec_1"):
            verify_preserved(before, after, ["sec_1"])

    def test_verify_preserved_detects_heading_whitespace(self) -> None:
        before = parse_markdown("## Intro\r\nbody\r\n")
        section = get_section(before, "sec_1")
        after = before.model_copy(update={"sections": [section.model_copy(update={"heading": "## Intro\n"})]})
        with pytest.raises(FixApplicationFailed, match="sec_1"):
            verify_preserved(before, after, ["sec_1"])
