"""
Content regenerator — rewrites a whole lesson (reject) or single
sections (major_refine) from reviewer feedback.
"""
from __future__ import annotations

import logging
from typing import Optional

from refinery.core.sections import PREAMBLE_ID, get_section, parse_markdown, render_markdown
from refinery.models.schemas import LessonContent
from refinery.services.fixer import strip_code_fence
from refinery.services.llm import LLMService

logger = logging.getLogger(__name__)

REGENERATE_SYSTEM = """You are an instructional designer rewriting lesson material.
Address every reviewer issue. Keep the learning objectives and the overall
topic. Write clear Markdown."""

LESSON_PROMPT = """Rewrite the following lesson from scratch, keeping its topic and objectives.
Use level-2 headings (## ) for sections.

CURRENT LESSON:
{lesson}

{feedback}

Return the complete rewritten lesson in Markdown."""

SECTION_PROMPT = """Rewrite ONE section of the lesson below. Other sections stay as they are.

LESSON OUTLINE:
{outline}

SECTION TO REWRITE: {title}
{body}

{feedback}

Return ONLY the new body of this section, without its heading."""


class LLMRegenerator:
    """
    Usage:
        regenerator = LLMRegenerator("openai/gpt-4o")
        new_content = await regenerator.regenerate_lesson(content, feedback)
        new_body = await regenerator.regenerate_section(content, "sec_2", feedback)
    """

    def __init__(self, model_id: str, temperature: float = 0.5, llm: Optional[LLMService] = None):
        self.temperature = temperature
        self.llm = llm or LLMService(model_id)

    async def regenerate_lesson(self, content: LessonContent, feedback: str) -> LessonContent:
        prompt = LESSON_PROMPT.format(lesson=render_markdown(content), feedback=feedback)
        text = await self.llm.generate(
            prompt=prompt,
            system_prompt=REGENERATE_SYSTEM,
            temperature=self.temperature,
        )
        regenerated = parse_markdown(strip_code_fence(text).strip() + "\n")
        logger.info(f"Regenerated lesson: {len(regenerated.sections)} sections")
        return regenerated

    async def regenerate_section(self, content: LessonContent, section_id: str, feedback: str) -> str:
        section = get_section(content, section_id)
        if section is None:
            raise ValueError(f"Unknown section {section_id}")
        outline = "\n".join(
            f"- {s.section_id}: {s.title or '(introduction)'}"
            for s in content.sections
        )
        prompt = SECTION_PROMPT.format(
            outline=outline,
            title=section.title if section.section_id != PREAMBLE_ID else "(introduction)",
            body=section.body.strip(),
            feedback=feedback,
        )
        text = await self.llm.generate(
            prompt=prompt,
            system_prompt=REGENERATE_SYSTEM,
            temperature=self.temperature,
        )
        return strip_code_fence(text)
