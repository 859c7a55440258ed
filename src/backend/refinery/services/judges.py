"""
Judge service: scores a lesson against the rubric with one LLM.

Each judge is an LLMService bound to one model. Judges differ only by
model, focus and weight, all of which are configuration.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from refinery.core.rubric import Rubric
from refinery.core.sections import PREAMBLE_ID
from refinery.models.schemas import Confidence, Criterion, Issue, JudgeVerdict, LessonContent
from refinery.services.llm import LLMService

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an experienced instructional designer reviewing a generated lesson.
Score it strictly against the rubric. Report only SPECIFIC, ACTIONABLE issues:
every issue must name the section it occurs in (use the section ids given,
e.g. "sec_2") and say concretely how to fix it.

Severity levels:
- critical: factually wrong, or the lesson fails its learning objective
- major: a real gap in structure, coverage or clarity that a learner would notice
- minor: polish — wording, an extra example, small reordering

If the lesson is good, return few or no issues. Do NOT invent problems."""

EVALUATION_PROMPT = """RUBRIC (score each criterion from 0.0 to 1.0):
{rubric}

SECTIONS:
{section_index}

LESSON:
{lesson}

{focus_note}Return overall_score, a score for every criterion, the issues you found,
and your confidence (high / medium / low) in this assessment."""


class IssuePayload(BaseModel):
    criterion: Criterion
    severity: str = Field(..., description="critical | major | minor")
    location: str = Field("", description="Section id, e.g. 'sec_2'")
    description: str
    suggested_fix: str = ""
    quoted_text: Optional[str] = None


class JudgeResponse(BaseModel):
    overall_score: float = Field(..., description="0.0 - 1.0")
    criteria_scores: Dict[str, float] = Field(default_factory=dict)
    issues: List[IssuePayload] = Field(default_factory=list)
    confidence: str = Field("medium", description="high | medium | low")


def format_lesson(content: LessonContent) -> str:
    parts = []
    for section in content.sections:
        if section.section_id == PREAMBLE_ID:
            parts.append(f"[{section.section_id}] (introduction)\n{section.body.strip()}")
        else:
            parts.append(f"[{section.section_id}] ## {section.title}\n{section.body.strip()}")
    return "\n\n".join(parts)


def section_index(content: LessonContent) -> str:
    return "\n".join(
        f"- {s.section_id}: {s.title or '(introduction)'}" for s in content.sections
    )


class LLMJudge:
    """
    A rubric judge backed by one model.

    Usage:
        judge = LLMJudge("judge_cheap", "openai/gpt-4o-mini")
        verdict = await judge.evaluate(content, DEFAULT_RUBRIC)
    """

    def __init__(
        self,
        judge_id: str,
        model_id: str,
        temperature: float = 0.1,
        focus: Optional[List[Criterion]] = None,
        llm: Optional[LLMService] = None,
    ):
        self.judge_id = judge_id
        self.temperature = temperature
        self.focus = list(focus or [])
        self.llm = llm or LLMService(model_id)

    async def evaluate(self, content: LessonContent, rubric: Rubric) -> JudgeVerdict:
        focus_note = ""
        if self.focus:
            focus_note = (
                "Pay particular attention to: "
                + ", ".join(c.value for c in self.focus)
                + ".\n\n"
            )
        prompt = EVALUATION_PROMPT.format(
            rubric=rubric.describe(),
            section_index=section_index(content),
            lesson=format_lesson(content),
            focus_note=focus_note,
        )

        response = await self.llm.generate_structured(
            prompt=prompt,
            response_model=JudgeResponse,
            system_prompt=SYSTEM_PROMPT,
            temperature=self.temperature,
        )

        issues = []
        for payload in response.issues:
            try:
                issues.append(Issue(
                    criterion=payload.criterion,
                    severity=payload.severity,
                    location=payload.location,
                    description=payload.description,
                    suggested_fix=payload.suggested_fix,
                    quoted_text=payload.quoted_text,
                    judge_ids=(self.judge_id,),
                ))
            except ValueError as e:
                logger.warning(f"  [{self.judge_id}] dropped malformed issue: {e}")

        return JudgeVerdict(
            judge_id=self.judge_id,
            overall_score=response.overall_score,
            criteria_scores=response.criteria_scores,
            issues=issues,
            confidence=_parse_confidence(response.confidence),
            tokens_used=self.llm.last_tokens,
        )


def _parse_confidence(value: str) -> Confidence:
    value = (value or "").strip().lower()
    if value == "moderate":
        value = "medium"
    try:
        return Confidence(value)
    except ValueError:
        return Confidence.MEDIUM
