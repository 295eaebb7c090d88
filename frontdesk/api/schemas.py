"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from frontdesk.models import ChatTurn, OutboundCallResult


# ── Chat ─────────────────────────────────────────────────────────────


class ChatStartResponse(BaseModel):
    session_id: str = Field(..., description="Identifier to send with every message")
    reply: str = Field(..., description="The assistant's greeting")
    stage: str


class ChatRequest(BaseModel):
    """Incoming chat message from the widget."""

    message: str = Field(..., min_length=1, max_length=2000, description="The user's message")
    session_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Session identifier returned by /chat/start",
    )


class ChatResponse(BaseModel):
    """The assistant's reply plus where the conversation now stands."""

    reply: str = Field(..., description="The assistant's response message")
    session_id: str
    stage: str
    actions: list[str] = Field(default_factory=list, description="External actions this turn performed")
    call_sid: str | None = None
    patient_id: str | None = None


class HistoryResponse(BaseModel):
    session_id: str
    stage: str
    messages: list[ChatTurn]
    patient_data: dict[str, Any]
    appointment_data: dict[str, Any]
    call_status: str | None = None


class AnalyticsResponse(BaseModel):
    total_sessions: int
    by_stage: dict[str, int] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "clinic-frontdesk"


# ── Calls ────────────────────────────────────────────────────────────


class OutboundCallResponse(BaseModel):
    success: bool = True
    call: OutboundCallResult


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ReminderCallRequest(_CamelModel):
    appointment_id: str = Field(..., min_length=1, alias="appointmentId")
    reminder_type: str | None = Field(None, alias="reminderType")
    hospital_id: str = Field(..., min_length=1, alias="hospitalId")


class FollowUpCallRequest(_CamelModel):
    patient_id: str = Field(..., min_length=1, alias="patientId")
    follow_up_type: str = Field("check_in", alias="followUpType")
    appointment_id: str | None = Field(None, alias="appointmentId")
    notes: str | None = None
    hospital_id: str = Field(..., min_length=1, alias="hospitalId")


class EndCallRequest(_CamelModel):
    call_sid: str = Field(..., min_length=1, alias="callSid")


class TransferCallRequest(_CamelModel):
    call_sid: str = Field(..., min_length=1, alias="callSid")
    hospital_id: str = Field(..., min_length=1, alias="hospitalId")
    reason: str | None = None
    department: str = "general"


class CallActionResponse(BaseModel):
    success: bool = True
    message: str = ""
    details: dict[str, Any] = Field(default_factory=dict)


class VerifyCallerRequest(_CamelModel):
    spoken_name: str = Field(..., min_length=1, max_length=200, alias="spokenName")


class VerifyRelationshipRequest(_CamelModel):
    caller_name: str = Field(..., min_length=1, max_length=200, alias="callerName")
    relationship: str = Field(..., min_length=1, max_length=50)


class VerifyCallerResponse(BaseModel):
    """Who the caller turned out to be, and how to greet them."""

    caller_type: str
    verified: bool
    caller_name: str
    patient_id: str | None = None
    booking_mode: str | None = None
    needs_registration: bool = False
    needs_relationship_verification: bool = False
    message: str = ""
    greeting: str
    mode: str
    instructions: str


class VerifyRelationshipResponse(BaseModel):
    verified: bool
    relationship: str
    caller_name: str
    relationship_exists: bool
    related_person_id: str | None = None
    message: str = ""
