"""
Application configuration via environment variables.
"""
from pydantic_settings import BaseSettings
from typing import Dict, List

from refinery.models.schemas import Criterion


class Settings(BaseSettings):
    """Application settings loaded from environment / .env file."""

    # App
    app_name: str = "Lesson Refinery"
    debug: bool = True

    # CORS
    cors_origins: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # LLM endpoint (any OpenAI-compatible API)
    llm_base_url: str = ""
    llm_api_key: str = ""
    llm_max_tokens: int = 4096

    # Judge panel: at most three judges per round (cheap + panel + tiebreaker)
    judge_cheap_model: str = "openai/gpt-4o-mini"
    judge_panel_models: List[str] = ["anthropic/claude-3.5-haiku"]
    judge_tiebreaker_model: str = "openai/gpt-4o"
    judge_cheap_weight: float = 0.70
    judge_panel_weight: float = 0.75
    judge_tiebreaker_weight: float = 0.80
    judge_temperature: float = 0.1
    judge_timeout_seconds: float = 60.0
    # model id -> criteria that judge specialises in; unlisted models are generalists
    judge_focus: Dict[str, List[Criterion]] = {
        "anthropic/claude-3.5-haiku": [
            Criterion.CLARITY_READABILITY,
            Criterion.ENGAGEMENT_EXAMPLES,
            Criterion.PEDAGOGICAL_STRUCTURE,
        ],
    }

    # Fix / verification / regeneration models
    fixer_model: str = "openai/gpt-4o-mini"
    entailment_model: str = "openai/gpt-4o-mini"
    regenerator_model: str = "openai/gpt-4o"

    # Refinement defaults (overridable per request)
    refinement_mode: str = "semi_auto"
    refinement_max_iterations: int = 10
    refinement_max_seconds: float = 300.0
    refinement_max_model_calls: int = 50
    refinement_seed: int = 0
    refinement_min_word_count: int = 20
    refinement_required_sections: List[str] = []

    # Session store
    session_ttl_seconds: int = 3600

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


settings = Settings()
