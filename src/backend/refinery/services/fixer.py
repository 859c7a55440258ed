"""
Fix service and entailment checker.

The fix service sees one section, the issues targeted at it, and short
anchor excerpts of the sections it references. It returns only the new
section body. The entailment checker asks a second model whether the
revised section actually resolves a given issue.
"""
from __future__ import annotations

import logging
from typing import Optional

from pydantic import BaseModel, Field

from refinery.core.fix_executor import FixScope
from refinery.models.schemas import FixRecommendation, Issue
from refinery.services.llm import LLMService

logger = logging.getLogger(__name__)

FIX_SYSTEM = """You are a careful lesson editor. You revise ONE section of a lesson to
resolve specific reviewer issues. Change only what the issues require.
Keep the section's purpose, tone and level. Never rename the listed terms.
Return ONLY the revised section body in Markdown, without the section heading."""

FIX_PROMPT = """SECTION: {title}
{body}

ISSUES TO RESOLVE:
{issues}

{anchors}{terms}Return the revised body of this section only."""

ENTAILMENT_SYSTEM = """You verify edits. Given a revised lesson section and a reviewer issue,
judge whether the revised text resolves the issue as the suggested fix asks.
Be strict: partial resolution scores in the middle of the range."""

ENTAILMENT_PROMPT = """REVISED SECTION:
{section}

ISSUE ({criterion}, {severity}):
{description}

SUGGESTED FIX:
{suggested_fix}

How strongly does the revised section entail that this issue is resolved?"""


class EntailmentResponse(BaseModel):
    score: float = Field(..., description="0.0 (not resolved) - 1.0 (fully resolved)")
    rationale: str = ""


def format_issues(scope: FixScope) -> str:
    lines = []
    for n, issue in enumerate(scope.issues, 1):
        lines.append(f"{n}. [{issue.severity.value}] ({issue.criterion.value}) {issue.description}")
        if issue.quoted_text:
            lines.append(f"   Quoted: \"{issue.quoted_text}\"")
        if issue.suggested_fix:
            lines.append(f"   Suggested fix: {issue.suggested_fix}")
    return "\n".join(lines)


class LLMFixer:
    """
    Usage:
        fixer = LLMFixer("openai/gpt-4o-mini")
        revised_body = await fixer.apply_fix(scope, recommendation)
    """

    def __init__(self, model_id: str, temperature: float = 0.3, llm: Optional[LLMService] = None):
        self.temperature = temperature
        self.llm = llm or LLMService(model_id)

    async def apply_fix(self, scope: FixScope, recommendation: FixRecommendation) -> str:
        anchors = ""
        if scope.anchors:
            excerpts = "\n\n".join(scope.anchors.values())
            anchors = f"RELATED SECTIONS (context only, do not rewrite):\n{excerpts}\n\n"
        terms = ""
        if recommendation.preserve_terminology:
            terms = "KEEP THESE TERMS EXACTLY: " + ", ".join(recommendation.preserve_terminology) + "\n\n"

        prompt = FIX_PROMPT.format(
            title=scope.section.title or "(introduction)",
            body=scope.section.body.strip(),
            issues=format_issues(scope),
            anchors=anchors,
            terms=terms,
        )
        revised = await self.llm.generate(
            prompt=prompt,
            system_prompt=FIX_SYSTEM,
            temperature=self.temperature,
        )
        return strip_code_fence(revised)


class LLMEntailmentChecker:
    """Scores whether a revised section resolves an issue, in [0, 1]."""

    def __init__(self, model_id: str, llm: Optional[LLMService] = None):
        self.llm = llm or LLMService(model_id)

    async def score(self, revised_section: str, issue: Issue) -> float:
        prompt = ENTAILMENT_PROMPT.format(
            section=revised_section.strip(),
            criterion=issue.criterion.value,
            severity=issue.severity.value,
            description=issue.description,
            suggested_fix=issue.suggested_fix or "(none given)",
        )
        response = await self.llm.generate_structured(
            prompt=prompt,
            response_model=EntailmentResponse,
            system_prompt=ENTAILMENT_SYSTEM,
            temperature=0.0,
            max_tokens=512,
        )
        return max(0.0, min(1.0, response.score))


def strip_code_fence(text: str) -> str:
    """Models sometimes wrap the whole answer in ```markdown fences."""
    stripped = text.strip()
    if stripped.startswith("```") and stripped.endswith("```") and stripped.count("```") == 2:
        first_newline = stripped.find("\n")
        if first_newline != -1:
            return stripped[first_newline + 1 : -3].strip("\n")
    return text
