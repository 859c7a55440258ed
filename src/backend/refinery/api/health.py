"""Health check endpoint."""
import logging

from fastapi import APIRouter

from refinery.config import settings

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health")
async def health_check():
    return {"status": "ok", "service": settings.app_name}


@router.get("/api/health/config")
async def config_check():
    """Diagnostic endpoint: shows whether critical env vars are configured (no secrets)."""
    return {
        "llm_base_url_set": bool(settings.llm_base_url),
        "llm_api_key_set": bool(settings.llm_api_key),
        "judge_cheap_model": settings.judge_cheap_model,
        "judge_panel_models": settings.judge_panel_models,
        "judge_tiebreaker_model": settings.judge_tiebreaker_model,
        "refinement_mode": settings.refinement_mode,
    }


@router.get("/api/health/model")
async def model_readiness():
    """Check if the cheap judge's endpoint is accepting requests."""
    from refinery.services.llm import LLMService

    service = LLMService(settings.judge_cheap_model)
    ready = await service.check_readiness()
    return {
        "ready": ready,
        "model_id": settings.judge_cheap_model,
        "base_url_set": bool(settings.llm_base_url),
    }
