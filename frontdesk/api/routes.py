"""FastAPI route definitions for the chat widget and health checks."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request

from frontdesk.api.schemas import (
    AnalyticsResponse,
    ChatRequest,
    ChatResponse,
    ChatStartResponse,
    HealthResponse,
    HistoryResponse,
)
from frontdesk.conversation import ConversationEngine, SessionNotFound
from frontdesk.services.dialogue import DialogueStepFailed
from frontdesk.services.fhir_client import FhirAPIError

logger = logging.getLogger(__name__)

router = APIRouter()

_POLITE_FAILURE = (
    "I'm sorry, I'm having trouble right now. Please try again in a moment."
)


def _get_engine(request: Request) -> ConversationEngine:
    """Retrieve the conversation engine from app state.

    The engine is built once during the FastAPI lifespan (see
    ``server.py``).
    """
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=503,
            detail="The assistant is still starting up. Please try again in a moment.",
        )
    return engine


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post("/chat/start", response_model=ChatStartResponse)
async def start_chat(http_request: Request):
    """Open a conversation and return the assistant's greeting."""
    engine = _get_engine(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    try:
        session = await asyncio.to_thread(engine.start_session)
    except DialogueStepFailed as e:
        logger.warning("[%s] Greeting failed: %s", request_id, e)
        raise HTTPException(status_code=502, detail=_POLITE_FAILURE) from e
    except Exception as e:
        logger.exception("[%s] Error starting chat", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    return ChatStartResponse(
        session_id=session.session_id,
        reply=session.last_assistant_utterance(),
        stage=session.stage.value,
    )


@router.post("/chat/message", response_model=ChatResponse)
async def chat_message(request: ChatRequest, http_request: Request):
    """Send one user message and get the assistant's reply.

    Turns block on the EMR, the dialogue model and possibly Twilio, so the
    engine runs on a worker thread via ``asyncio.to_thread``.  When a
    collaborator fails the session keeps its last consistent stage and the
    client gets a polite 502 it can retry.
    """
    engine = _get_engine(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        result = await asyncio.to_thread(
            engine.handle_message, request.session_id, request.message,
        )
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail="Conversation not found.") from e
    except (DialogueStepFailed, FhirAPIError) as e:
        logger.warning("[%s] Turn failed for %s: %s", request_id, request.session_id, e)
        raise HTTPException(status_code=502, detail=_POLITE_FAILURE) from e
    except Exception as e:
        # Log the full traceback server-side, never leak it to the client
        logger.exception("[%s] Error processing chat message", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    session = result["session"]
    return ChatResponse(
        reply=result["reply"],
        session_id=session.session_id,
        stage=session.stage.value,
        actions=result["events"],
        call_sid=session.call_sid,
        patient_id=session.patient_data.patient_id,
    )


@router.get("/chat/analytics", response_model=AnalyticsResponse)
async def chat_analytics(http_request: Request):
    engine = _get_engine(http_request)
    return AnalyticsResponse(**await asyncio.to_thread(engine.analytics))


@router.get("/chat/{session_id}/history", response_model=HistoryResponse)
async def chat_history(session_id: str, http_request: Request):
    engine = _get_engine(http_request)
    try:
        session = await asyncio.to_thread(engine.history, session_id)
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail="Conversation not found.") from e

    return HistoryResponse(
        session_id=session.session_id,
        stage=session.stage.value,
        messages=session.messages,
        patient_data=session.patient_data.model_dump(),
        appointment_data=session.appointment_data.model_dump(mode="json"),
        call_status=session.call_status,
    )
