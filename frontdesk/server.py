"""FastAPI server for the Clinic Front Desk.

Run with:
    uv run uvicorn frontdesk.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from frontdesk.api.calls import router as calls_router
from frontdesk.api.routes import router
from frontdesk.config import (
    CALL_CONTEXT_TTL_SECONDS,
    CORS_ORIGINS,
    REDIS_URL,
    SERVER_HOST,
    SERVER_PORT,
    SESSION_TTL_SECONDS,
    STORE_BACKEND,
    STORE_MAX_ENTRIES,
)
from frontdesk.conversation import ConversationEngine
from frontdesk.models import CallContext, ConversationSession
from frontdesk.services.call_context import CallContextStore
from frontdesk.services.calls import CallDispatcher
from frontdesk.services.dialogue import DialogueService
from frontdesk.services.fhir_client import get_fhir_client
from frontdesk.services.store import build_store
from frontdesk.services.telephony import TwilioGateway
from frontdesk.services.verification import CallerVerifier

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: build the stores, clients and the conversation engine once
    and keep them in app state.

    Sessions and call contexts live in separate stores so each gets its own
    TTL; with ``STORE_BACKEND=redis`` every worker sees the same calls.
    """
    models = (ConversationSession, CallContext)
    sessions = build_store(
        STORE_BACKEND,
        redis_url=REDIS_URL,
        models=models,
        namespace="frontdesk:sessions:",
        default_ttl=SESSION_TTL_SECONDS,
        max_entries=STORE_MAX_ENTRIES,
    )
    contexts = CallContextStore(build_store(
        STORE_BACKEND,
        redis_url=REDIS_URL,
        models=models,
        namespace="frontdesk:calls:",
        default_ttl=CALL_CONTEXT_TTL_SECONDS,
        max_entries=STORE_MAX_ENTRIES,
    ))

    fhir = get_fhir_client()
    dispatcher = CallDispatcher(fhir, TwilioGateway(), contexts)

    logger.info("Compiling LangGraph conversation engine…")
    application.state.dispatcher = dispatcher
    application.state.verifier = CallerVerifier(fhir)
    application.state.engine = ConversationEngine(
        DialogueService(), fhir, dispatcher, sessions,
    )
    logger.info("Front desk ready (store backend: %s).", STORE_BACKEND)
    yield
    # Shutdown: nothing to clean up; stores expire on their own


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Clinic Front Desk",
    description=(
        "Virtual clinic receptionist: chat booking, patient lookup and "
        "registration, and phone calls through Twilio."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS (needed for the chat widget) ───────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a unique request ID to every request for log correlation.

    The ID is added to the response headers (``X-Request-ID``) so the
    client can reference it in support tickets.
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info(
        "[%s] %s %s", request_id, request.method, request.url.path,
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")
app.include_router(calls_router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Clinic Front Desk",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting Clinic Front Desk server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "frontdesk.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
