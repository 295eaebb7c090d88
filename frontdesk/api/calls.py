"""FastAPI routes for phone calls: provider webhooks, call control and the
media-stream websocket.

Webhooks (``/inbound``, ``/outbound-twiml``, ``/status``) are called by the
telephony provider with form-encoded bodies and must answer with TwiML or a
plain 200.  Everything else is JSON for the clinic dashboard.
"""

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, Form, HTTPException, Query, Request, Response, WebSocket, WebSocketDisconnect
from twilio.base.exceptions import TwilioRestException

from frontdesk.api.schemas import (
    CallActionResponse,
    EndCallRequest,
    FollowUpCallRequest,
    OutboundCallResponse,
    ReminderCallRequest,
    TransferCallRequest,
    VerifyCallerRequest,
    VerifyCallerResponse,
    VerifyRelationshipRequest,
    VerifyRelationshipResponse,
)
from frontdesk.models import CallLogEntry, OutboundCallRequest
from frontdesk.services.calls import CallDispatcher, CallTargetNotFound, status_update_listener
from frontdesk.services.fhir_client import FhirAPIError
from frontdesk.services.media import MediaStreamBridge
from frontdesk.services.telephony import CallPlacementError, ConfigurationError, apology_markup
from frontdesk.services.verification import (
    CallerVerifier,
    VerificationError,
    apply_relationship,
    apply_verification,
    greeting_for,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calls", tags=["calls"])

_XML = "application/xml"


def _get_dispatcher(request: Request) -> CallDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(
            status_code=503,
            detail="Calling is still starting up. Please try again in a moment.",
        )
    return dispatcher


def _get_verifier(request: Request) -> CallerVerifier:
    verifier = getattr(request.app.state, "verifier", None)
    if verifier is None:
        raise HTTPException(
            status_code=503,
            detail="Calling is still starting up. Please try again in a moment.",
        )
    return verifier


def _call_error(exc: Exception, request_id: str, action: str) -> HTTPException:
    """Translate a dispatcher failure into a client-safe HTTP error."""
    if isinstance(exc, CallTargetNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConfigurationError):
        logger.error("[%s] %s: telephony is not configured (%s)", request_id, action, exc)
        return HTTPException(status_code=500, detail="Calling is not configured on this server.")
    if isinstance(exc, CallPlacementError):
        logger.warning("[%s] %s failed: %s", request_id, action, exc)
        # Provider rejections are upstream failures; anything else is a bad target
        status = 502 if isinstance(exc.__cause__, TwilioRestException) else 400
        return HTTPException(status_code=status, detail=str(exc))
    if isinstance(exc, FhirAPIError):
        logger.warning("[%s] %s: EMR failure: %s", request_id, action, exc)
        return HTTPException(
            status_code=502,
            detail="The medical records system is unavailable. Please try again.",
        )
    logger.exception("[%s] Error during %s", request_id, action)
    return HTTPException(status_code=500, detail="An internal error occurred. Please try again.")


# ── Provider webhooks ────────────────────────────────────────────────


@router.post("/inbound")
async def inbound_call(
    http_request: Request,
    from_number: str = Form(..., alias="From"),
    to_number: str = Form(..., alias="To"),
    call_sid: str = Form(..., alias="CallSid"),
):
    """Voice webhook for calls to a clinic number.

    Always answers with TwiML: when the call cannot be set up the caller
    hears an apology instead of the provider's generic error.
    """
    dispatcher = _get_dispatcher(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    try:
        _, markup = await asyncio.to_thread(
            dispatcher.handle_inbound_call, from_number, to_number, call_sid,
        )
    except Exception:
        logger.exception("[%s] Could not set up inbound call %s", request_id, call_sid)
        markup = apology_markup()
    return Response(content=markup, media_type=_XML)


@router.post("/outbound-twiml")
async def outbound_twiml(
    http_request: Request,
    context_key: str | None = Query(None, alias="contextKey"),
):
    """Answer URL for calls we placed: connect them to the media stream."""
    if not context_key:
        raise HTTPException(status_code=400, detail="Missing contextKey")
    dispatcher = _get_dispatcher(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    try:
        markup = await asyncio.to_thread(dispatcher.outbound_markup, context_key)
    except ConfigurationError as e:
        raise _call_error(e, request_id, "outbound markup") from e
    return Response(content=markup, media_type=_XML)


@router.post("/status", response_model=CallActionResponse)
async def call_status(
    http_request: Request,
    call_sid: str = Form(..., alias="CallSid"),
    status: str = Form(..., alias="CallStatus"),
    duration: int | None = Form(None, alias="CallDuration"),
    session_id: str | None = Query(None, alias="sessionId"),
):
    """Status callback.  A 5xx makes the provider retry, so only a failed
    call-log update is reported as one."""
    dispatcher = _get_dispatcher(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    engine = getattr(http_request.app.state, "engine", None)

    def _on_session_status(sid_of_session, sid, call_status, call_duration):
        if engine is not None:
            engine.update_call_status(sid_of_session, sid, call_status, call_duration)

    handle = status_update_listener(dispatcher, _on_session_status)
    try:
        normalized = await asyncio.to_thread(handle, call_sid, status, duration, session_id)
    except Exception as e:
        logger.exception("[%s] Could not record status %s for %s", request_id, status, call_sid)
        raise HTTPException(status_code=500, detail="Status update failed.") from e

    return CallActionResponse(
        message="Status received",
        details={"call_sid": call_sid, "status": status, "normalized_status": normalized},
    )


# ── Call control ─────────────────────────────────────────────────────


@router.post("/outbound", response_model=OutboundCallResponse)
async def outbound_call(request: OutboundCallRequest, http_request: Request):
    dispatcher = _get_dispatcher(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    try:
        result = await asyncio.to_thread(dispatcher.place_outbound_call, request)
    except Exception as e:
        raise _call_error(e, request_id, "outbound call") from e
    return OutboundCallResponse(call=result)


@router.post("/reminder", response_model=OutboundCallResponse)
async def reminder_call(request: ReminderCallRequest, http_request: Request):
    dispatcher = _get_dispatcher(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    try:
        result = await asyncio.to_thread(
            dispatcher.make_reminder_call,
            request.appointment_id,
            request.reminder_type,
            request.hospital_id,
        )
    except Exception as e:
        raise _call_error(e, request_id, "reminder call") from e
    return OutboundCallResponse(call=result)


@router.post("/follow-up", response_model=OutboundCallResponse)
async def follow_up_call(request: FollowUpCallRequest, http_request: Request):
    dispatcher = _get_dispatcher(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    try:
        result = await asyncio.to_thread(
            dispatcher.make_follow_up_call,
            request.patient_id,
            request.follow_up_type,
            request.hospital_id,
            request.appointment_id,
            request.notes,
        )
    except Exception as e:
        raise _call_error(e, request_id, "follow-up call") from e
    return OutboundCallResponse(call=result)


@router.post("/end", response_model=CallActionResponse)
async def end_call(request: EndCallRequest, http_request: Request):
    dispatcher = _get_dispatcher(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    try:
        await asyncio.to_thread(dispatcher.end_call, request.call_sid)
    except Exception as e:
        raise _call_error(e, request_id, "end call") from e
    return CallActionResponse(message="Call ended successfully")


@router.post("/transfer", response_model=CallActionResponse)
async def transfer_call(request: TransferCallRequest, http_request: Request):
    dispatcher = _get_dispatcher(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    try:
        details = await asyncio.to_thread(
            dispatcher.transfer_call,
            request.call_sid,
            request.hospital_id,
            request.reason,
            request.department,
        )
    except Exception as e:
        raise _call_error(e, request_id, "transfer") from e
    return CallActionResponse(message="Call transferred successfully", details=details)


@router.get("/logs", response_model=list[CallLogEntry])
async def call_logs(http_request: Request):
    dispatcher = _get_dispatcher(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    try:
        return await asyncio.to_thread(dispatcher.call_logs)
    except Exception as e:
        raise _call_error(e, request_id, "call log") from e


# ── Caller verification ──────────────────────────────────────────────


@router.post("/{context_key}/verify-caller", response_model=VerifyCallerResponse)
async def verify_caller(context_key: str, request: VerifyCallerRequest, http_request: Request):
    """Classify the person on a live call from the name they gave."""
    dispatcher = _get_dispatcher(http_request)
    verifier = _get_verifier(http_request)
    context = await asyncio.to_thread(dispatcher.contexts.get, context_key)
    if context is None:
        raise HTTPException(status_code=404, detail="Call not found.")
    if not context.caller:
        raise HTTPException(status_code=400, detail="Call has no caller number to verify.")

    try:
        result = await asyncio.to_thread(verifier.verify_by_name, context.caller, request.spoken_name)
    except VerificationError as e:
        logger.warning("Caller verification failed for %s: %s", context_key, e)
        raise HTTPException(
            status_code=502,
            detail="The medical records system is unavailable. Please try again.",
        ) from e

    await asyncio.to_thread(
        dispatcher.contexts.update, context_key, lambda c: apply_verification(c, result)
    )
    hospital_name = context.hospital.name if context.hospital else "our clinic"
    greeting = greeting_for(result, hospital_name)
    return VerifyCallerResponse(
        **result.model_dump(exclude={"patient", "patient_found", "name_matches"}),
        **greeting.model_dump(),
    )


@router.post("/{context_key}/verify-relationship", response_model=VerifyRelationshipResponse)
async def verify_relationship(
    context_key: str,
    request: VerifyRelationshipRequest,
    http_request: Request,
):
    """Confirm a third party's relationship to the patient whose phone they use."""
    dispatcher = _get_dispatcher(http_request)
    verifier = _get_verifier(http_request)
    context = await asyncio.to_thread(dispatcher.contexts.get, context_key)
    if context is None:
        raise HTTPException(status_code=404, detail="Call not found.")
    if not context.patient_id or not context.caller:
        raise HTTPException(status_code=400, detail="Call has no patient to verify against.")

    try:
        result = await asyncio.to_thread(
            verifier.confirm_relationship, context, request.caller_name, request.relationship,
        )
    except VerificationError as e:
        logger.warning("Relationship verification failed for %s: %s", context_key, e)
        raise HTTPException(
            status_code=502,
            detail="The medical records system is unavailable. Please try again.",
        ) from e

    await asyncio.to_thread(
        dispatcher.contexts.update, context_key, lambda c: apply_relationship(c, result)
    )
    return VerifyRelationshipResponse(**result.model_dump(exclude={"requires_creation"}))


# ── Media stream ─────────────────────────────────────────────────────


@router.websocket("/stream")
async def media_stream(
    websocket: WebSocket,
    context_key: str | None = Query(None, alias="contextKey"),
):
    """Bidirectional audio for one call."""
    dispatcher = getattr(websocket.app.state, "dispatcher", None)
    if dispatcher is None:
        await websocket.close(code=1013)
        return
    pipeline = getattr(websocket.app.state, "speech_pipeline", None)

    await websocket.accept()
    bridge = await asyncio.to_thread(MediaStreamBridge, dispatcher.contexts, context_key, pipeline)
    try:
        while not bridge.state.stopped:
            raw = await websocket.receive_text()
            try:
                event = json.loads(raw)
            except ValueError:
                logger.warning("Ignoring non-JSON media message on %s", context_key)
                continue
            if event.get("event") == "start":
                # Touches the context store
                replies = await asyncio.to_thread(bridge.handle, event)
            else:
                replies = bridge.handle(event)
            for reply in replies:
                await websocket.send_text(reply)
    except WebSocketDisconnect:
        logger.info("Media stream for %s disconnected", bridge.state.context_key)
