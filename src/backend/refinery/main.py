"""
Lesson Refinery — FastAPI Backend
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from refinery import __version__
from refinery.api import health, sessions
from refinery.config import settings

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


def _mask(val: str) -> str:
    if not val:
        return "(empty)"
    if len(val) <= 8:
        return "***"
    return val[:4] + "..." + val[-4:]


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Log configuration (secrets masked) on startup."""
    logger.info("=== Lesson Refinery Backend Starting ===")
    logger.info(f"  llm_base_url      : {settings.llm_base_url or '(empty)'}")
    logger.info(f"  llm_api_key       : {_mask(settings.llm_api_key)}")
    logger.info(f"  judge_cheap_model : {settings.judge_cheap_model}")
    logger.info(f"  judge_panel_models: {settings.judge_panel_models}")
    logger.info(f"  refinement_mode   : {settings.refinement_mode}")
    logger.info(f"  cors_origins      : {settings.cors_origins}")

    if not settings.llm_base_url:
        logger.warning("LLM_BASE_URL is empty -- falling back to http://localhost:8000/v1")
    if not settings.llm_api_key:
        logger.warning("LLM_API_KEY is empty -- hosted endpoints will reject calls!")
    yield


app = FastAPI(
    title="Lesson Refinery",
    description="Multi-judge evaluation and targeted refinement of generated lessons",
    version=__version__,
    lifespan=lifespan,
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(health.router, tags=["health"])
app.include_router(sessions.router, prefix="/api/sessions", tags=["sessions"])
