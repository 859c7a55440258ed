"""
REST API for refinement-session submission, polling and cancellation.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict

from fastapi import APIRouter, Depends, HTTPException

from refinery.config import settings
from refinery.core.config import RefinementConfig
from refinery.core.errors import ConfigurationInvalid, RefinementError
from refinery.core.rubric import DEFAULT_RUBRIC
from refinery.core.session import RefinementServices, RefinementSession
from refinery.core.sections import parse_markdown
from refinery.models.schemas import SessionResponse, SessionStatus, SessionSubmission
from refinery.services.factory import build_config, build_services

logger = logging.getLogger(__name__)

router = APIRouter()

# In-memory store for active/completed sessions
# In production, use Redis or a database
_sessions: Dict[str, RefinementSession] = {}
_session_timestamps: Dict[str, float] = {}
_session_errors: Dict[str, str] = {}
_tasks: Dict[str, asyncio.Task] = {}


def get_services_factory() -> Callable[[RefinementConfig], RefinementServices]:
    """Dependency hook: how to build collaborators for a new session."""
    return build_services


def _evict_expired_sessions() -> None:
    cutoff = time.time() - settings.session_ttl_seconds
    for session_id, created in list(_session_timestamps.items()):
        task = _tasks.get(session_id)
        if created < cutoff and (task is None or task.done()):
            _sessions.pop(session_id, None)
            _session_timestamps.pop(session_id, None)
            _session_errors.pop(session_id, None)
            _tasks.pop(session_id, None)


def _get_session(session_id: str) -> RefinementSession:
    _evict_expired_sessions()
    session = _sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


@router.post("/submit", response_model=SessionResponse)
async def submit_session(
    submission: SessionSubmission,
    services_factory: Callable[[RefinementConfig], RefinementServices] = Depends(get_services_factory),
):
    """
    Submit a lesson for refinement.

    The session runs asynchronously. Poll /api/sessions/{session_id} for
    progress and the final result.
    """
    try:
        config = build_config(
            submission.mode,
            max_iterations=submission.max_iterations,
            max_seconds=submission.max_seconds,
            max_model_calls=submission.max_model_calls,
        ).validate()
    except ConfigurationInvalid as e:
        raise HTTPException(status_code=422, detail=str(e))

    content = parse_markdown(submission.content)
    if not content.sections:
        raise HTTPException(status_code=422, detail="Lesson content has no sections")

    session = RefinementSession(content, DEFAULT_RUBRIC, config, services_factory(config))
    session_id = session.session_id

    async def _run_session():
        try:
            await session.run()
        except RefinementError as e:
            _session_errors[session_id] = str(e)
            logger.error(f"Session {session_id} failed: {e}")
        except Exception as e:
            _session_errors[session_id] = f"{type(e).__name__}: {e}"
            logger.exception(f"Session {session_id} crashed")

    _sessions[session_id] = session
    _session_timestamps[session_id] = time.time()
    _tasks[session_id] = asyncio.create_task(_run_session())
    _evict_expired_sessions()

    return SessionResponse(
        session_id=session_id,
        status="running",
        message="Refinement started. Poll the session for progress.",
    )


@router.get("/{session_id}", response_model=SessionStatus)
async def get_session(session_id: str):
    """Current phase, iteration log and (when finished) the result."""
    session = _get_session(session_id)
    status = session.status()
    if session_id in _session_errors:
        status = status.model_copy(update={"error": _session_errors[session_id]})
    return status


@router.post("/{session_id}/cancel", response_model=SessionResponse)
async def cancel_session(session_id: str):
    """Request cancellation. The session stops after the current round."""
    session = _get_session(session_id)
    if session.result is not None:
        return SessionResponse(session_id=session_id, status="finished", message="Session already finished")
    session.cancel()
    return SessionResponse(
        session_id=session_id,
        status="cancelling",
        message="Cancellation requested; content stays at its last verified state.",
    )


@router.get("/", response_model=list[str])
async def list_sessions():
    """List all session IDs."""
    _evict_expired_sessions()
    return list(_sessions.keys())
