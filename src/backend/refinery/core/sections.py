"""
Lesson sections — Markdown parsing, locator resolution and scoped edits.

A lesson is split on level-2 headings (`## `). Text before the first
heading becomes `sec_0`; headed sections are `sec_1..sec_n` in document
order. Section bodies are kept verbatim so that untouched sections stay
byte-identical across fix rounds.
"""
from __future__ import annotations

import re
from typing import Iterable, List, Mapping, Optional

from refinery.core.errors import FixApplicationFailed
from refinery.models.schemas import LessonContent, Section

PREAMBLE_ID = "sec_0"
ANCHOR_MAX_CHARS = 400

_SECTION_NUMBER_RE = re.compile(r"\bsec(?:tion)?[\s_#.:-]*(\d+)\b", re.IGNORECASE)
_INTRO_WORDS = {"intro", "introduction", "opening", "overview"}


# ──────────────────────────────────────────────
# Markdown <-> LessonContent
# ──────────────────────────────────────────────

def _is_heading(line: str) -> bool:
    return line.startswith("## ")


def parse_markdown(text: str) -> LessonContent:
    """Split Markdown into sections. render_markdown gives back the input byte for byte."""
    preamble: List[str] = []
    sections: List[Section] = []
    current_title: Optional[str] = None
    current_heading = ""
    current_body: List[str] = []
    in_fence = False

    def _flush():
        if current_title is not None:
            sections.append(Section(
                section_id=f"sec_{len(sections) + 1}",
                title=current_title,
                body="".join(current_body),
                heading=current_heading,
            ))

    for line in text.splitlines(keepends=True):
        if line.lstrip().startswith("```"):
            in_fence = not in_fence
        if not in_fence and _is_heading(line):
            _flush()
            current_title = line[3:].rstrip("\r\n").strip()
            current_heading = line
            current_body = []
            continue
        if current_title is None:
            preamble.append(line)
        else:
            current_body.append(line)
    _flush()

    lesson_title = ""
    for line in preamble:
        if line.startswith("# "):
            lesson_title = line[2:].strip()
            break

    all_sections = []
    if preamble:
        all_sections.append(Section(section_id=PREAMBLE_ID, title="", body="".join(preamble)))
    all_sections.extend(sections)
    return LessonContent(title=lesson_title, sections=all_sections)


def render_markdown(content: LessonContent) -> str:
    parts = []
    for section in content.sections:
        if section.section_id == PREAMBLE_ID:
            parts.append(section.body)
        else:
            heading = section.heading or f"## {section.title}\n"
            parts.append(f"{heading}{section.body}")
    return "".join(parts)


def get_section(content: LessonContent, section_id: str) -> Optional[Section]:
    for section in content.sections:
        if section.section_id == section_id:
            return section
    return None


def section_ids(content: LessonContent) -> List[str]:
    return [s.section_id for s in content.sections]


# ──────────────────────────────────────────────
# Locator resolution
# ──────────────────────────────────────────────

def _norm(text: str) -> str:
    return " ".join(re.findall(r"[a-z0-9]+", text.lower()))


def locator_key(location: str) -> str:
    """
    Content-free normal form of an issue locator.

    "Section 2", "sec_2", "section 2: Worked Examples" all map to "sec_2";
    anything else maps to its normalised words.
    """
    if not location:
        return ""
    match = _SECTION_NUMBER_RE.search(location)
    if match:
        return f"sec_{int(match.group(1))}"
    return _norm(location)


def resolve_locator(content: LessonContent, location: str) -> Optional[str]:
    """Resolve an issue locator to a section id in this lesson, or None."""
    key = locator_key(location)
    if not key:
        return None
    if key.startswith("sec_") and get_section(content, key):
        return key

    headed = [s for s in content.sections if s.section_id != PREAMBLE_ID]
    for section in headed:
        if _norm(section.title) == key:
            return section.section_id
    for section in headed:
        title = _norm(section.title)
        if title and (title in key or key in title):
            return section.section_id

    if set(key.split()) & _INTRO_WORDS and headed:
        return headed[0].section_id
    return None


def referenced_sections(content: LessonContent, section_id: str) -> List[str]:
    """Other sections this section points at, by number or by title."""
    section = get_section(content, section_id)
    if section is None:
        return []
    found: List[str] = []
    for match in _SECTION_NUMBER_RE.finditer(section.body):
        ref = f"sec_{int(match.group(1))}"
        if ref != section_id and get_section(content, ref) and ref not in found:
            found.append(ref)
    body = _norm(section.body)
    for other in content.sections:
        if other.section_id in (section_id, PREAMBLE_ID) or other.section_id in found:
            continue
        title = _norm(other.title)
        if len(title) >= 4 and f" {title} " in f" {body} ":
            found.append(other.section_id)
    return found


def anchor_excerpt(section: Section, max_chars: int = ANCHOR_MAX_CHARS) -> str:
    """Heading plus the opening of the section, enough for continuity."""
    body = section.body.strip()
    first_para = body.split("\n\n", 1)[0]
    if len(first_para) > max_chars:
        first_para = first_para[:max_chars].rstrip() + " ..."
    heading = f"## {section.title}" if section.title else "(preamble)"
    return f"{heading}\n{first_para}"


# ──────────────────────────────────────────────
# Scoped edits
# ──────────────────────────────────────────────

def normalise_body(original: Section, revised: str) -> str:
    """
    Fit a model-written body into the section slot: drop an echoed heading,
    demote any level-2 headings so the section count cannot change, and
    keep the original trailing whitespace.
    """
    text = revised.replace("\r\n", "\n")
    lines = text.split("\n")
    while lines and not lines[0].strip():
        lines.pop(0)
    if lines and lines[0].startswith("## ") and _norm(lines[0][3:]) == _norm(original.title):
        lines.pop(0)
    lines = [("#" + line) if _is_heading(line) else line for line in lines]
    core = "\n".join(lines).strip("\n")

    trailing = original.body[len(original.body.rstrip()):] or "\n"
    leading = "\n" if original.body.startswith("\n") else ""
    return f"{leading}{core}{trailing}"


def replace_sections(content: LessonContent, new_bodies: Mapping[str, str]) -> LessonContent:
    """Return a copy with the given section bodies replaced. Unknown ids are an error."""
    unknown = set(new_bodies) - set(section_ids(content))
    if unknown:
        raise FixApplicationFailed(f"Unknown sections {sorted(unknown)}", sorted(unknown))
    sections = [
        s.model_copy(update={"body": new_bodies[s.section_id]}) if s.section_id in new_bodies else s
        for s in content.sections
    ]
    return content.model_copy(update={"sections": sections})


def verify_preserved(
    before: LessonContent,
    after: LessonContent,
    preserve_ids: Iterable[str],
) -> None:
    """Raise FixApplicationFailed if any preserved section changed by even one byte."""
    changed = []
    for section_id in preserve_ids:
        old = get_section(before, section_id)
        new = get_section(after, section_id)
        if old is None:
            continue
        if new is None or (new.heading, new.title, new.body) != (old.heading, old.title, old.body):
            changed.append(section_id)
    if changed:
        raise FixApplicationFailed(f"Preserved sections were modified: {changed}", changed)
