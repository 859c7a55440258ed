"""
LLM Service — all model traffic for judges, fixer, entailment and
regeneration goes through here.

Talks to any OpenAI-compatible endpoint. Transient errors (cold start,
503, rate limits, timeouts) are retried with exponential backoff;
structured calls append the JSON schema to the prompt and repair
truncated JSON before giving up.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Optional, Type, TypeVar

from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from refinery.config import settings
from refinery.core.errors import LLMResponseError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

# Retry configuration for transient API errors (cold-start / 503)
MAX_API_RETRIES = 3
RETRY_BASE_DELAY = 5.0  # seconds, doubles on each retry

TRANSIENT_MARKERS = [
    "503", "502", "429", "service unavailable", "overloaded",
    "connection", "timeout", "timed out", "temporarily", "rate limit",
]

_shared_client: Optional[AsyncOpenAI] = None


def _get_client() -> AsyncOpenAI:
    """One client per process, created on first use."""
    global _shared_client
    if _shared_client is None:
        _shared_client = AsyncOpenAI(
            api_key=settings.llm_api_key or "not-needed",
            base_url=settings.llm_base_url or "http://localhost:8000/v1",
        )
    return _shared_client


class LLMService:
    """
    Unified interface for chat-completion inference against one model.

    Usage:
        service = LLMService("openai/gpt-4o-mini")
        text = await service.generate("Rewrite this section...", max_tokens=2048)
        verdict = await service.generate_structured("...", ResponseModel)
    """

    def __init__(self, model_id: str, client: Optional[Any] = None, retry_base_delay: float = RETRY_BASE_DELAY):
        self.model_id = model_id
        self._client = client
        self.retry_base_delay = retry_base_delay
        self.last_tokens = 0

    def _client_or_default(self):
        if self._client is None:
            self._client = _get_client()
        return self._client

    async def check_readiness(self) -> bool:
        """Send a 1-token request. True if the model answers."""
        try:
            response = await self._client_or_default().chat.completions.create(
                model=self.model_id,
                messages=[{"role": "user", "content": "ping"}],
                max_tokens=1,
                temperature=0.0,
            )
            return bool(response.choices)
        except Exception as e:
            logger.debug(f"Readiness check failed for {self.model_id}: {e}")
            return False

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: int = 0,
        temperature: float = 0.3,
    ) -> str:
        """
        Generate text.

        Args:
            prompt: The user prompt
            system_prompt: Optional system prompt
            max_tokens: Max tokens to generate (0 = use default from config)
            temperature: Sampling temperature

        Returns:
            Generated text response
        """
        max_tokens = max_tokens or settings.llm_max_tokens
        client = self._client_or_default()

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        last_error: Optional[Exception] = None

        for attempt in range(MAX_API_RETRIES):
            try:
                t0 = time.monotonic()
                response = await client.chat.completions.create(
                    model=self.model_id,
                    messages=messages,
                    max_tokens=max_tokens,
                    temperature=temperature,
                )
                usage = getattr(response, "usage", None)
                self.last_tokens = getattr(usage, "total_tokens", 0) or 0
                logger.debug(
                    f"{self.model_id}: {self.last_tokens} tokens in {time.monotonic() - t0:.1f}s"
                )
                return response.choices[0].message.content or ""
            except Exception as e:
                error_str = str(e).lower()
                last_error = e

                # Backend rejected the system role: fold it into the user message
                if system_prompt and "system" in error_str and len(messages) == 2:
                    logger.warning(f"{self.model_id} rejected system role -- folding into user message.")
                    messages = [{"role": "user", "content": f"{system_prompt}\n\n{prompt}"}]
                    continue

                is_transient = any(marker in error_str for marker in TRANSIENT_MARKERS)
                if is_transient and attempt < MAX_API_RETRIES - 1:
                    delay = self.retry_base_delay * (2 ** attempt)
                    logger.warning(
                        f"{self.model_id} transient error (attempt {attempt + 1}/{MAX_API_RETRIES}): "
                        f"{e}. Retrying in {delay:.0f}s..."
                    )
                    await asyncio.sleep(delay)
                    continue

                logger.error(f"{self.model_id} API error (attempt {attempt + 1}/{MAX_API_RETRIES}): {e}")
                break

        raise last_error

    async def generate_structured(
        self,
        prompt: str,
        response_model: Type[T],
        system_prompt: Optional[str] = None,
        max_tokens: int = 0,
        temperature: float = 0.2,
    ) -> T:
        """
        Generate a response parsed into a Pydantic model.

        Appends JSON schema instructions to the prompt. Tries the raw
        extraction, then a truncation repair, and retries once before
        raising LLMResponseError.
        """
        schema = response_model.model_json_schema()
        structured_prompt = (
            f"{prompt}\n\n"
            f"Respond ONLY with valid JSON matching this schema:\n"
            f"```json\n{json.dumps(schema, indent=2)}\n```\n"
            f"Do not include any text outside the JSON."
        )

        last_error: Optional[Exception] = None
        for attempt in range(2):
            raw = await self.generate(structured_prompt, system_prompt, max_tokens, temperature)
            json_str = extract_json(raw)

            for candidate in (json_str, repair_truncated_json(json_str)):
                if candidate is None:
                    continue
                try:
                    return response_model.model_validate(json.loads(candidate))
                except (json.JSONDecodeError, ValidationError) as e:
                    last_error = e

            logger.warning(
                f"generate_structured attempt {attempt + 1} failed for "
                f"{response_model.__name__}: {last_error}. Raw: {raw[:300]}"
            )

        raise LLMResponseError(
            f"{self.model_id} returned invalid JSON for {response_model.__name__} "
            f"after 2 attempts: {last_error}"
        )


# ──────────────────────────────────────────────
# JSON helpers
# ──────────────────────────────────────────────

def extract_json(text: str) -> str:
    """Extract JSON from a response that might include markdown code blocks."""
    if "```json" in text:
        start = text.index("```json") + 7
        end = text.find("```", start)
        if end == -1:
            # Unclosed code block: take everything after the opening tag
            return text[start:].strip()
        return text[start:end].strip()
    if "```" in text:
        start = text.index("```") + 3
        end = text.find("```", start)
        if end == -1:
            return text[start:].strip()
        return text[start:end].strip()
    for i, char in enumerate(text):
        if char in "{[":
            depth = 0
            in_string = False
            j = i
            while j < len(text):
                c = text[j]
                if c == "\\" and in_string:
                    j += 2
                    continue
                if c == '"':
                    in_string = not in_string
                elif not in_string:
                    if c in "{[":
                        depth += 1
                    elif c in "}]":
                        depth -= 1
                        if depth == 0:
                            return text[i : j + 1]
                j += 1
            return text[i:].strip()
    return text.strip()


def repair_truncated_json(text: str) -> Optional[str]:
    """
    Close unclosed strings, arrays and objects in truncated JSON.
    Returns None for empty input.
    """
    if not text or not text.strip():
        return None

    s = text.rstrip()
    stack: list[str] = []
    in_string = False
    i = 0
    while i < len(s):
        c = s[i]
        if c == "\\" and in_string:
            i += 2
            continue
        if c == '"':
            in_string = not in_string
        elif not in_string:
            if c in ("{", "["):
                stack.append("}" if c == "{" else "]")
            elif c in ("}", "]") and stack:
                stack.pop()
        i += 1
    if in_string:
        s += '"'

    s = s.rstrip()
    if s and s[-1] == ",":
        s = s[:-1]

    for closer in reversed(stack):
        s += closer
    return s
