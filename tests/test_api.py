"""Tests for the FastAPI endpoints."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from fastapi.websockets import WebSocketDisconnect

from frontdesk.conversation import SessionNotFound
from frontdesk.models import (
    CallContext,
    CallLogEntry,
    ConversationSession,
    HospitalInfo,
    OutboundCallResult,
    PatientRecord,
    Stage,
)
from frontdesk.server import app
from frontdesk.services.call_context import CallContextStore
from frontdesk.services.calls import CallTargetNotFound
from frontdesk.services.dialogue import DialogueStepFailed
from frontdesk.services.fhir_client import FhirAPIError
from frontdesk.services.media import SpeechPipeline
from frontdesk.services.store import InMemoryStore
from frontdesk.services.telephony import CallPlacementError, ConfigurationError
from frontdesk.services.verification import (
    RelationshipResult,
    VerificationError,
    VerificationResult,
)


def _on_event_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


def _recording_loop(calls: list, fn):
    """Wrap *fn* so each call notes whether it ran on the event loop."""
    def wrapper(*args, **kwargs):
        calls.append(_on_event_loop())
        return fn(*args, **kwargs)
    return wrapper


def _session(stage: Stage = Stage.GREETING) -> ConversationSession:
    session = ConversationSession(session_id="chat_1", stage=stage)
    session.add_turn("assistant", "Hello! How can I help you today?")
    return session


@pytest.fixture
def mock_engine():
    """Create a mock engine and attach it to app state (mirrors the lifespan)."""
    engine = MagicMock()
    engine.start_session.return_value = _session()
    session = _session(Stage.AWAITING_CONFIRMATION)
    engine.handle_message.return_value = {
        "session": session,
        "reply": "Have you visited us before?",
        "events": [],
    }
    engine.history.return_value = session
    engine.analytics.return_value = {"total_sessions": 1, "by_stage": {"greeting": 1}}

    app.state.engine = engine
    yield engine
    app.state.engine = None


@pytest.fixture
def contexts():
    store = CallContextStore(InMemoryStore())
    store.put("inbound_comm-1", CallContext(
        direction="inbound",
        context_key="inbound_comm-1",
        caller="+15551234567",
        hospital=HospitalInfo(id="org-1", name="Acme Clinic"),
    ))
    return store


@pytest.fixture
def mock_dispatcher(contexts):
    dispatcher = MagicMock()
    dispatcher.contexts = contexts
    dispatcher.handle_inbound_call.return_value = (MagicMock(), "<Response><Connect/></Response>")
    dispatcher.outbound_markup.return_value = "<Response><Connect/></Response>"
    dispatcher.record_status.return_value = "completed"
    app.state.dispatcher = dispatcher
    yield dispatcher
    app.state.dispatcher = None


@pytest.fixture
def mock_verifier():
    verifier = MagicMock()
    app.state.verifier = verifier
    yield verifier
    app.state.verifier = None


@pytest.fixture
def client(mock_engine, mock_dispatcher, mock_verifier):
    """FastAPI test client with mock services wired up."""
    return TestClient(app)


def _call_result(**overrides) -> OutboundCallResult:
    values = {
        "call_sid": "CA1",
        "status": "queued",
        "from_number": "+19499971087",
        "to_number": "+15551234567",
        "patient_id": "pat-1",
        "patient_name": "John Smith",
        "context_key": "outbound_comm-1",
        "call_type": "general",
        "hospital_id": "org-1",
        "hospital_name": "Acme Clinic",
    }
    values.update(overrides)
    return OutboundCallResult(**values)


class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["service"] == "clinic-frontdesk"


class TestRootEndpoint:
    def test_root_returns_service_info(self, client):
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "Clinic Front Desk"
        assert "docs" in data


# ── Chat ─────────────────────────────────────────────────────────────


class TestChatStart:
    def test_start_returns_greeting(self, client):
        response = client.post("/api/chat/start")
        assert response.status_code == 200
        data = response.json()
        assert data["session_id"] == "chat_1"
        assert data["reply"] == "Hello! How can I help you today?"
        assert data["stage"] == "greeting"

    def test_greeting_failure_is_polite(self, client, mock_engine):
        mock_engine.start_session.side_effect = DialogueStepFailed("timeout")
        response = client.post("/api/chat/start")
        assert response.status_code == 502
        assert "try again" in response.json()["detail"]


class TestChatMessage:
    def test_message_returns_reply(self, client, mock_engine):
        response = client.post(
            "/api/chat/message",
            json={"message": "Hello!", "session_id": "chat_1"},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["reply"] == "Have you visited us before?"
        assert data["stage"] == "awaiting_confirmation"
        assert data["actions"] == []
        mock_engine.handle_message.assert_called_once_with("chat_1", "Hello!")

    def test_actions_and_call_sid_are_reported(self, client, mock_engine):
        session = _session(Stage.CALL_INITIATED)
        session.call_sid = "CA1"
        mock_engine.handle_message.return_value = {
            "session": session, "reply": "Calling you now!", "events": ["call_initiated"],
        }
        data = client.post(
            "/api/chat/message", json={"message": "yes", "session_id": "chat_1"},
        ).json()
        assert data["actions"] == ["call_initiated"]
        assert data["call_sid"] == "CA1"

    def test_validates_empty_message(self, client):
        response = client.post("/api/chat/message", json={"message": "", "session_id": "chat_1"})
        assert response.status_code == 422

    def test_validates_missing_session(self, client):
        response = client.post("/api/chat/message", json={"message": "Hello!"})
        assert response.status_code == 422

    def test_unknown_session_is_404(self, client, mock_engine):
        mock_engine.handle_message.side_effect = SessionNotFound("chat_x")
        response = client.post("/api/chat/message", json={"message": "Hi", "session_id": "chat_x"})
        assert response.status_code == 404

    @pytest.mark.parametrize(
        "error", [DialogueStepFailed("timeout"), FhirAPIError("EMR down", 503)],
    )
    def test_collaborator_failure_is_502(self, client, mock_engine, error):
        mock_engine.handle_message.side_effect = error
        response = client.post("/api/chat/message", json={"message": "Hi", "session_id": "chat_1"})
        assert response.status_code == 502
        assert "EMR down" not in response.json()["detail"]

    def test_unexpected_error_does_not_leak(self, client, mock_engine):
        mock_engine.handle_message.side_effect = RuntimeError("LLM exploded")
        response = client.post("/api/chat/message", json={"message": "Hi", "session_id": "chat_1"})
        assert response.status_code == 500
        detail = response.json()["detail"]
        assert "LLM exploded" not in detail
        assert "internal error" in detail.lower()

    def test_response_includes_request_id_header(self, client):
        response = client.post("/api/chat/message", json={"message": "Hi", "session_id": "chat_1"})
        assert "X-Request-ID" in response.headers

    def test_client_supplied_request_id_is_echoed(self, client):
        response = client.post(
            "/api/chat/message",
            json={"message": "Hi", "session_id": "chat_1"},
            headers={"X-Request-ID": "my-trace-id-123"},
        )
        assert response.headers["X-Request-ID"] == "my-trace-id-123"


class TestChatHistoryAndAnalytics:
    def test_history(self, client):
        response = client.get("/api/chat/chat_1/history")
        assert response.status_code == 200
        data = response.json()
        assert data["stage"] == "awaiting_confirmation"
        assert data["messages"][0]["role"] == "assistant"
        assert data["patient_data"]["patient_id"] is None

    def test_history_of_unknown_session(self, client, mock_engine):
        mock_engine.history.side_effect = SessionNotFound("chat_x")
        assert client.get("/api/chat/chat_x/history").status_code == 404

    def test_analytics(self, client):
        data = client.get("/api/chat/analytics").json()
        assert data == {"total_sessions": 1, "by_stage": {"greeting": 1}}


class TestNotReady:
    def test_returns_503_when_engine_not_initialised(self):
        app.state.engine = None
        response = TestClient(app).post(
            "/api/chat/message", json={"message": "Hello!", "session_id": "s1"},
        )
        assert response.status_code == 503
        assert "starting up" in response.json()["detail"].lower()

    def test_calls_return_503_when_dispatcher_not_initialised(self):
        app.state.dispatcher = None
        assert TestClient(app).get("/api/calls/logs").status_code == 503


# ── Provider webhooks ────────────────────────────────────────────────


class TestInboundWebhook:
    FORM = {"From": "+15551234567", "To": "+19499971087", "CallSid": "CA1"}

    def test_returns_twiml(self, client, mock_dispatcher):
        response = client.post("/api/calls/inbound", data=self.FORM)
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert "<Connect/>" in response.text
        mock_dispatcher.handle_inbound_call.assert_called_once_with(
            "+15551234567", "+19499971087", "CA1",
        )

    def test_failure_still_answers_with_an_apology(self, client, mock_dispatcher):
        mock_dispatcher.handle_inbound_call.side_effect = FhirAPIError("EMR down", 503)
        response = client.post("/api/calls/inbound", data=self.FORM)
        assert response.status_code == 200
        assert "<Say" in response.text
        assert "<Hangup" in response.text

    def test_missing_fields_are_rejected(self, client):
        assert client.post("/api/calls/inbound", data={"From": "+1"}).status_code == 422


class TestOutboundTwiml:
    def test_requires_context_key(self, client):
        response = client.post("/api/calls/outbound-twiml")
        assert response.status_code == 400
        assert response.json()["detail"] == "Missing contextKey"

    def test_returns_twiml(self, client, mock_dispatcher):
        response = client.post("/api/calls/outbound-twiml?contextKey=outbound_comm-1")
        assert response.status_code == 200
        mock_dispatcher.outbound_markup.assert_called_once_with("outbound_comm-1")

    def test_markup_is_built_off_the_event_loop(self, client, mock_dispatcher):
        on_loop = []
        mock_dispatcher.outbound_markup.side_effect = _recording_loop(on_loop, lambda key: "<Response/>")
        client.post("/api/calls/outbound-twiml?contextKey=outbound_comm-1")
        assert on_loop == [False]


class TestStatusWebhook:
    def test_status_is_recorded_and_forwarded_to_the_session(
        self, client, mock_dispatcher, mock_engine,
    ):
        response = client.post(
            "/api/calls/status?sessionId=chat_1",
            data={"CallSid": "CA1", "CallStatus": "completed", "CallDuration": "42"},
        )
        assert response.status_code == 200
        assert response.json()["details"]["normalized_status"] == "completed"
        mock_dispatcher.record_status.assert_called_once_with("CA1", "completed", 42)
        mock_engine.update_call_status.assert_called_once_with("chat_1", "CA1", "completed", 42)

    def test_session_failure_does_not_fail_the_webhook(self, client, mock_engine):
        mock_engine.update_call_status.side_effect = SessionNotFound("chat_1")
        response = client.post(
            "/api/calls/status?sessionId=chat_1",
            data={"CallSid": "CA1", "CallStatus": "ringing"},
        )
        assert response.status_code == 200

    def test_call_log_failure_is_500(self, client, mock_dispatcher):
        mock_dispatcher.record_status.side_effect = FhirAPIError("EMR down", 503)
        response = client.post("/api/calls/status", data={"CallSid": "CA1", "CallStatus": "busy"})
        assert response.status_code == 500


# ── Call control ─────────────────────────────────────────────────────


class TestOutboundCall:
    BODY = {"phoneNumber": "+15551234567", "hospitalId": "org-1", "reason": "Lab results"}

    def test_places_call(self, client, mock_dispatcher):
        mock_dispatcher.place_outbound_call.return_value = _call_result()
        response = client.post("/api/calls/outbound", json=self.BODY)
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["call"]["call_sid"] == "CA1"

        request = mock_dispatcher.place_outbound_call.call_args[0][0]
        assert request.phone_number == "+15551234567"
        assert request.reason == "Lab results"

    def test_requires_phone_and_hospital(self, client):
        assert client.post("/api/calls/outbound", json={"hospitalId": "org-1"}).status_code == 422

    @pytest.mark.parametrize(
        "error, status",
        [
            (CallTargetNotFound("Patient not found"), 404),
            (ConfigurationError("TWILIO_ACCOUNT_SID is not set"), 500),
            (CallPlacementError("Patient has no phone number"), 400),
            (FhirAPIError("EMR down", 503), 502),
            (RuntimeError("boom"), 500),
        ],
    )
    def test_error_mapping(self, client, mock_dispatcher, error, status):
        mock_dispatcher.place_outbound_call.side_effect = error
        response = client.post("/api/calls/outbound", json=self.BODY)
        assert response.status_code == status
        assert "TWILIO_ACCOUNT_SID" not in response.json()["detail"]

    def test_reminder(self, client, mock_dispatcher):
        mock_dispatcher.make_reminder_call.return_value = _call_result(call_type="appointment_reminder")
        response = client.post(
            "/api/calls/reminder",
            json={"appointmentId": "appt-1", "reminderType": "24h", "hospitalId": "org-1"},
        )
        assert response.status_code == 200
        mock_dispatcher.make_reminder_call.assert_called_once_with("appt-1", "24h", "org-1")

    def test_follow_up(self, client, mock_dispatcher):
        mock_dispatcher.make_follow_up_call.return_value = _call_result(call_type="follow_up")
        response = client.post(
            "/api/calls/follow-up", json={"patientId": "pat-1", "hospitalId": "org-1"},
        )
        assert response.status_code == 200
        mock_dispatcher.make_follow_up_call.assert_called_once_with(
            "pat-1", "check_in", "org-1", None, None,
        )


class TestEndAndTransfer:
    def test_end_call(self, client, mock_dispatcher):
        response = client.post("/api/calls/end", json={"callSid": "CA1"})
        assert response.status_code == 200
        assert response.json()["message"] == "Call ended successfully"
        mock_dispatcher.end_call.assert_called_once_with("CA1")

    def test_transfer_call(self, client, mock_dispatcher):
        mock_dispatcher.transfer_call.return_value = {"transferred_to": "+19495550100"}
        response = client.post(
            "/api/calls/transfer",
            json={"callSid": "CA1", "hospitalId": "org-1", "department": "billing"},
        )
        assert response.status_code == 200
        assert response.json()["details"] == {"transferred_to": "+19495550100"}
        mock_dispatcher.transfer_call.assert_called_once_with("CA1", "org-1", None, "billing")


class TestCallLogs:
    def test_lists_entries(self, client, mock_dispatcher):
        mock_dispatcher.call_logs.return_value = [
            CallLogEntry(id="comm-1", call_sid="CA1", direction="inbound", status="completed"),
        ]
        response = client.get("/api/calls/logs")
        assert response.status_code == 200
        assert response.json()[0]["call_sid"] == "CA1"


# ── Caller verification ──────────────────────────────────────────────


class TestVerifyCaller:
    def test_patient_is_greeted_by_name(self, client, mock_verifier, contexts):
        mock_verifier.verify_by_name.return_value = VerificationResult(
            caller_type="patient",
            verified=True,
            caller_name="John Smith",
            patient_found=True,
            name_matches=True,
            patient_id="pat-1",
            patient=PatientRecord(id="pat-1", first_name="John", last_name="Smith"),
            booking_mode="self",
        )
        response = client.post(
            "/api/calls/inbound_comm-1/verify-caller", json={"spokenName": "John Smith"},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["mode"] == "patient_mode"
        assert data["greeting"].startswith("Hello John! Thank you for calling Acme Clinic")
        mock_verifier.verify_by_name.assert_called_once_with("+15551234567", "John Smith")

        context = contexts.get("inbound_comm-1")
        assert context.caller_verified is True
        assert context.patient_id == "pat-1"
        assert context.relationship == "self"

    def test_unknown_call(self, client):
        response = client.post("/api/calls/nope/verify-caller", json={"spokenName": "Ann"})
        assert response.status_code == 404

    def test_emr_failure(self, client, mock_verifier):
        mock_verifier.verify_by_name.side_effect = VerificationError("EMR down")
        response = client.post(
            "/api/calls/inbound_comm-1/verify-caller", json={"spokenName": "Ann"},
        )
        assert response.status_code == 502

    def test_context_store_is_used_off_the_event_loop(self, client, mock_verifier, contexts):
        mock_verifier.verify_by_name.return_value = VerificationResult(
            caller_type="new_caller", verified=False, caller_name="Ann",
        )
        on_loop = []
        with patch.object(contexts, "get", _recording_loop(on_loop, contexts.get)), \
                patch.object(contexts, "update", _recording_loop(on_loop, contexts.update)):
            response = client.post(
                "/api/calls/inbound_comm-1/verify-caller", json={"spokenName": "Ann"},
            )
        assert response.status_code == 200
        assert len(on_loop) >= 2
        assert not any(on_loop)


class TestVerifyRelationship:
    def test_needs_a_patient_on_the_call(self, client):
        response = client.post(
            "/api/calls/inbound_comm-1/verify-relationship",
            json={"callerName": "Mary", "relationship": "mother"},
        )
        assert response.status_code == 400

    def test_relationship_is_recorded(self, client, mock_verifier, contexts):
        contexts.update("inbound_comm-1", lambda c: setattr(c, "patient_id", "pat-1"))
        mock_verifier.confirm_relationship.return_value = RelationshipResult(
            verified=True,
            relationship="mother",
            caller_name="Mary",
            relationship_exists=False,
            requires_creation=True,
            related_person_id="rp-1",
        )
        response = client.post(
            "/api/calls/inbound_comm-1/verify-relationship",
            json={"callerName": "Mary", "relationship": "mother"},
        )
        assert response.status_code == 200
        assert response.json()["related_person_id"] == "rp-1"
        assert "requires_creation" not in response.json()
        assert contexts.get("inbound_comm-1").relationship == "mother"


# ── Media stream ─────────────────────────────────────────────────────


class _GreetingPipeline(SpeechPipeline):
    def on_start(self, context):
        return bytes(320)


class TestMediaStream:
    def test_start_links_the_call_and_streams_the_greeting(self, client, contexts):
        app.state.speech_pipeline = _GreetingPipeline()
        try:
            with client.websocket_connect("/api/calls/stream?contextKey=inbound_comm-1") as ws:
                ws.send_text(json.dumps({
                    "event": "start",
                    "start": {"streamSid": "MZ1", "callSid": "CA1", "customParameters": {}},
                }))
                reply = json.loads(ws.receive_text())
                assert reply["event"] == "media"
                assert reply["streamSid"] == "MZ1"
                assert contexts.get("CA1").context_key == "inbound_comm-1"
        finally:
            app.state.speech_pipeline = None

    def test_bridge_reads_the_context_off_the_event_loop(self, client, contexts):
        on_loop = []
        with patch.object(contexts, "get", _recording_loop(on_loop, contexts.get)):
            with client.websocket_connect("/api/calls/stream?contextKey=inbound_comm-1") as ws:
                ws.send_text(json.dumps({"event": "stop"}))
        assert on_loop and not any(on_loop)

    def test_closes_when_calling_is_not_ready(self):
        app.state.dispatcher = None
        with pytest.raises(WebSocketDisconnect) as excinfo:
            with TestClient(app).websocket_connect("/api/calls/stream?contextKey=x") as ws:
                ws.receive_text()
        assert excinfo.value.code == 1013
