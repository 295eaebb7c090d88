"""LangGraph conversation engine for the clinic front desk.

Architecture:
  Every user message is one invocation of a LangGraph ``StateGraph``:

    route_by_stage ─┬─ greeting      ─┐
                    ├─ confirmation   │
                    ├─ phone_lookup   │
                    ├─ registration   ├─→ respond → END
                    ├─ patient_menu   │
                    ├─ booking        │
                    ├─ closing        │
                    └─ finished      ─┘

  The stage nodes are deterministic: they read the message, talk to the
  EMR / call dispatcher and move ``session.stage``.  They never produce
  text; they leave a steering *instruction* for the ``respond`` node,
  which is the only place the dialogue model is called.

  Stages:
    greeting → awaiting_confirmation → awaiting_phone | new_patient_registration
             → patient_found | patient_created → booking_appointment
             → call_initiated*          (closing phrases → conversation_ended*)

  Turns for one session are single-flight: the session's store lock is
  held for the whole turn and the graph works on a deep copy, which is
  only written back when the turn succeeds.  A turn that fails after an
  external side effect (patient create, placed call) is still written
  back so its one-shot guards survive a retry.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import UTC, datetime
from typing import Any

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from frontdesk import phone, prompts
from frontdesk.config import CLINIC_ROUTING_NUMBER, SESSION_TTL_SECONDS
from frontdesk.models import (
    CollectionStage,
    ConversationSession,
    OutboundCallRequest,
    Stage,
)
from frontdesk.services.calls import CallDispatcher
from frontdesk.services.dialogue import DialogueService
from frontdesk.services.fhir_client import FhirAPIError, FhirClient
from frontdesk.services.store import KeyValueStore
from frontdesk.services.telephony import CallPlacementError, ConfigurationError

logger = logging.getLogger(__name__)

_SESSION = "session:"

# Same rule the booking widget used for email addresses
_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)

_EMAIL_IN_TEXT = re.compile(r"[^\s@<>,;]+@[^\s@<>,;]+")

# ── Message interpretation ───────────────────────────────────────────

_WORD = re.compile(r"[a-z0-9']+")

AFFIRMATIVE = frozenset({
    "yes", "yeah", "yep", "yup", "sure", "correct", "right", "confirm",
    "confirmed", "ok", "okay", "absolutely", "definitely", "y",
})
NEGATIVE = frozenset({
    "no", "nope", "nah", "not", "never", "wrong", "incorrect", "haven't", "havent", "n",
})
BOOKING_WORDS = frozenset({
    "book", "booking", "appointment", "appointments", "schedule", "scheduling",
})
SELF_WORDS = frozenset({"me", "myself", "self", "mine", "yes"})
FAMILY_WORDS = {
    "family": "family member",
    "parent": "parent",
    "mother": "mother",
    "mom": "mother",
    "father": "father",
    "dad": "father",
    "child": "child",
    "kid": "child",
    "son": "son",
    "daughter": "daughter",
    "spouse": "spouse",
    "wife": "wife",
    "husband": "husband",
    "brother": "brother",
    "sister": "sister",
    "sibling": "sibling",
    "grandmother": "grandmother",
    "grandfather": "grandfather",
    "caregiver": "caregiver",
    "care": "someone in their care",
    "someone": "someone in their care",
}
LOOKUP_PHRASES = ("when is my", "do i have", "show me my")
APPOINTMENT_WORDS = frozenset({"appointment", "appointments"})
LOOKUP_WORDS = frozenset({"my", "check"})
MENU_BOOKING_PHRASES = ("book", "booking", "schedule", "make an appointment", "new appointment")
CLOSING_PHRASES = (
    "that's all", "that is all", "nothing else", "bye", "goodbye", "good bye",
    "have a good day", "have a nice day", "no more questions",
)
THANKS_ONLY = frozenset({
    "thanks", "thank you", "thank you so much", "thanks a lot", "ok thanks",
    "okay thanks", "great thanks", "thank you very much", "many thanks",
})

# Keyword scan of the last prompt, in priority order
_FIELD_KEYWORDS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("first_name", re.compile(r"\bfirst name\b")),
    ("last_name", re.compile(r"\b(last name|surname)\b")),
    ("email", re.compile(r"\be-?mail\b")),
    ("phone", re.compile(r"\bphone\b")),
    ("age", re.compile(r"\bage\b")),
    ("gender", re.compile(r"\bgender\b")),
    ("dob", re.compile(r"\b(date of birth|dob|birthday)\b")),
)


def _tokens(text: str) -> list[str]:
    return _WORD.findall(text.lower().replace("’", "'"))


def _has_phrase(text: str, phrases) -> bool:
    """Whole-word phrase match: ``"me"`` never matches ``"member"``."""
    padded = f" {' '.join(_tokens(text))} "
    return any(f" {p} " in padded for p in phrases)


def is_affirmative(text: str) -> bool:
    words = set(_tokens(text))
    return bool(words & AFFIRMATIVE) and not words & NEGATIVE


def is_negative(text: str) -> bool:
    return bool(set(_tokens(text)) & NEGATIVE)


def has_booking_intent(text: str) -> bool:
    return bool(set(_tokens(text)) & BOOKING_WORDS)


def wants_appointment_lookup(text: str) -> bool:
    """Is the patient asking about appointments they already have?

    "appointment" next to "my" or "check" anywhere in the message counts.
    A message that also asks to book or schedule is a booking request.
    """
    words = set(_tokens(text))
    if words & {"book", "booking", "schedule", "scheduling"}:
        return False
    if words & APPOINTMENT_WORDS and words & LOOKUP_WORDS:
        return True
    return _has_phrase(text, LOOKUP_PHRASES)


def is_closing(text: str) -> bool:
    """Is the patient wrapping up?  A message that also says yes is not."""
    normalized = " ".join(_tokens(text))
    if normalized in THANKS_ONLY:
        return True
    return _has_phrase(text, CLOSING_PHRASES) and not set(_tokens(text)) & AFFIRMATIVE


def resolve_booking_for(text: str) -> tuple[str | None, str | None]:
    """``("other", relationship)``, ``("self", None)`` or ``(None, None)``.

    Family words are checked first so "book for my son, not me" is a family
    booking.
    """
    for word in _tokens(text):
        if word in FAMILY_WORDS:
            return "other", FAMILY_WORDS[word]
    if set(_tokens(text)) & SELF_WORDS:
        return "self", None
    return None, None


def field_from_prompt(prompt: str) -> str | None:
    """Which registration field does *prompt* ask for?"""
    lowered = prompt.lower()
    for field, pattern in _FIELD_KEYWORDS:
        if pattern.search(lowered):
            return field
    return None


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(value.strip()))


def extract_email(text: str) -> str | None:
    """The first valid email address in *text*, if any."""
    for match in _EMAIL_IN_TEXT.finditer(text):
        candidate = match.group(0).rstrip(".")
        if is_valid_email(candidate):
            return candidate
    return None


def _now() -> datetime:
    return datetime.now(UTC)


# ── State schema ─────────────────────────────────────────────────────


class TurnState(TypedDict):
    """What flows through the graph for one user message.

    ``session`` is the working copy; nodes mutate it in place.
    ``instruction`` is the steering text for the ``respond`` node and
    ``events`` lists the external actions the turn performed.
    """

    session: ConversationSession
    message: str
    instruction: str
    reply: str
    events: list[str]


class SessionNotFound(KeyError):
    """No conversation with this id (never started, or expired)."""


# ── Graph ────────────────────────────────────────────────────────────


def route_by_stage(state: TurnState) -> str:
    session = state["session"]
    if session.stage == Stage.CONVERSATION_ENDED or session.stage == Stage.CALL_INITIATED:
        return "finished"
    if session.stage != Stage.GREETING and is_closing(state["message"]):
        return "closing"
    return {
        Stage.GREETING: "greeting",
        Stage.AWAITING_CONFIRMATION: "confirmation",
        Stage.AWAITING_PHONE: "phone_lookup",
        Stage.NEW_PATIENT_REGISTRATION: "registration",
        Stage.PATIENT_FOUND: "patient_menu",
        Stage.PATIENT_CREATED: "patient_menu",
        Stage.BOOKING_APPOINTMENT: "booking",
    }[session.stage]


class ConversationEngine:
    """Runs conversation turns against the session store."""

    def __init__(
        self,
        dialogue: DialogueService,
        fhir: FhirClient,
        dispatcher: CallDispatcher,
        sessions: KeyValueStore,
        routing_number: str | None = None,
        session_ttl: float | None = None,
    ) -> None:
        self._dialogue = dialogue
        self._fhir = fhir
        self._dispatcher = dispatcher
        self._sessions = sessions
        self._routing_number = routing_number or CLINIC_ROUTING_NUMBER
        self._ttl = session_ttl if session_ttl is not None else SESSION_TTL_SECONDS
        self._graph = self._build_graph()

    # ── Nodes ────────────────────────────────────────────────────────

    def _greeting(self, state: TurnState) -> dict:
        session = state["session"]
        if has_booking_intent(state["message"]):
            session.initial_intent = "booking"
        session.stage = Stage.AWAITING_CONFIRMATION
        return {"session": session, "instruction": prompts.ASK_VISITED_BEFORE}

    def _confirmation(self, state: TurnState) -> dict:
        session = state["session"]
        message = state["message"]
        if is_negative(message):
            session.stage = Stage.NEW_PATIENT_REGISTRATION
            session.expected_field = "first_name"
            instruction = prompts.START_REGISTRATION
        elif is_affirmative(message):
            session.stage = Stage.AWAITING_PHONE
            instruction = prompts.ASK_PHONE
        else:
            instruction = f"{prompts.GENERAL} {prompts.ASK_VISITED_BEFORE}"
        return {"session": session, "instruction": instruction}

    def _phone_lookup(self, state: TurnState) -> dict:
        session = state["session"]
        typed = phone.extract_phone_digits(state["message"])
        if typed is None:
            return {"session": session, "instruction": prompts.PHONE_NOT_UNDERSTOOD}

        # Look up with the digits as typed so both regions get probed
        patient = self._fhir.find_patient_by_phone(typed)
        number = phone.normalize(typed)
        if patient is None:
            logger.info("Session %s: no patient for %s, registering", session.session_id, number)
            session.stage = Stage.NEW_PATIENT_REGISTRATION
            session.patient_data.phone = number
            session.expected_field = "first_name"
            return {"session": session, "instruction": prompts.PATIENT_NOT_FOUND}

        logger.info("Session %s: matched patient %s", session.session_id, patient.id)
        session.stage = Stage.PATIENT_FOUND
        session.patient_data = patient.to_patient_data()
        if not session.patient_data.phone:
            session.patient_data.phone = number
        instruction = prompts.PATIENT_FOUND.format(name=patient.display_name)
        if session.initial_intent == "booking":
            instruction += prompts.REMEMBERED_BOOKING
        return {"session": session, "instruction": instruction}

    def _registration(self, state: TurnState) -> dict:
        session = state["session"]
        data = session.patient_data
        message = state["message"].strip()
        missing = data.missing()

        field = session.expected_field if session.expected_field in missing else None
        if field is None:
            scanned = field_from_prompt(session.last_assistant_utterance())
            field = scanned if scanned in missing else None

        if field == "email":
            email = extract_email(message)
            if email is None:
                session.expected_field = "email"
                return {"session": session, "instruction": prompts.INVALID_EMAIL}
            message = email
        if field == "phone":
            number = phone.extract_phone(message)
            if number is None:
                session.expected_field = "phone"
                return {"session": session, "instruction": prompts.PHONE_NOT_UNDERSTOOD}
            message = number

        if field is not None:
            setattr(data, field, message)
        else:
            extracted = self._dialogue.extract_patient_fields(
                message, session.last_assistant_utterance(), missing,
            )
            if "email" in extracted and not is_valid_email(extracted["email"]):
                extracted.pop("email")
            if "phone" in extracted:
                number = phone.extract_phone(extracted["phone"])
                if number:
                    extracted["phone"] = number
                else:
                    extracted.pop("phone")
            for name, value in extracted.items():
                setattr(data, name, value)
        logger.debug("Session %s registration %d%% complete", session.session_id, data.percent_complete)

        if data.can_create and session.claim_patient_creation():
            return self._create_patient(state)

        remaining = data.missing()
        if not remaining:
            session.expected_field = None
            return {"session": session, "instruction": prompts.PATIENT_CREATE_FAILED}
        session.expected_field = remaining[0]
        return {"session": session, "instruction": prompts.ASK_FIELD[remaining[0]]}

    def _create_patient(self, state: TurnState) -> dict:
        session = state["session"]
        events = [*state["events"], "patient_create_attempted"]
        try:
            created = self._fhir.create_patient(session.patient_data.to_resource())
        except FhirAPIError:
            logger.exception("Session %s: patient creation failed", session.session_id)
            return {"session": session, "instruction": prompts.PATIENT_CREATE_FAILED, "events": events}

        session.patient_data.patient_id = created.id
        session.patient_data.is_existing = True
        session.stage = Stage.PATIENT_CREATED
        session.expected_field = None
        logger.info("Session %s: created Patient/%s", session.session_id, created.id)
        instruction = prompts.PATIENT_CREATED
        if session.initial_intent == "booking":
            instruction += prompts.REMEMBERED_BOOKING
        return {"session": session, "instruction": instruction, "events": [*events, "patient_created"]}

    def _patient_menu(self, state: TurnState) -> dict:
        session = state["session"]
        message = state["message"]
        if (
            wants_appointment_lookup(message)
            and not session.appointment_info_shared
            and session.patient_data.patient_id
        ):
            appointments = self._fhir.find_patient_appointments(session.patient_data.patient_id)
            session.appointment_info_shared = True
            return {
                "session": session,
                "instruction": prompts.APPOINTMENTS_FOUND.format(
                    appointments=format_appointments(appointments),
                ),
                "events": [*state["events"], "appointments_shared"],
            }

        if _has_phrase(message, MENU_BOOKING_PHRASES) and not session.call_attempted:
            session.stage = Stage.BOOKING_APPOINTMENT
            return {"session": session, "instruction": prompts.ASK_BOOKING_FOR}

        return {
            "session": session,
            "instruction": prompts.PATIENT_MENU.format(name=session.patient_data.full_name or "patient"),
        }

    def _booking(self, state: TurnState) -> dict:
        session = state["session"]
        appointment = session.appointment_data
        message = state["message"].strip()

        if appointment.booking_for is None:
            booking_for, relationship = resolve_booking_for(message)
            if booking_for is None:
                return {"session": session, "instruction": prompts.BOOKING_FOR_UNCLEAR}
            appointment.booking_for = booking_for
            appointment.callback_number = session.patient_data.phone
            if booking_for == "self":
                appointment.patient_name = session.patient_data.full_name
                appointment.collection_stage = CollectionStage.DOCTOR
                return {"session": session, "instruction": prompts.ASK_DOCTOR}
            appointment.relationship = relationship
            appointment.collection_stage = CollectionStage.FAMILY_DETAILS
            return {
                "session": session,
                "instruction": prompts.FAMILY_BOOKING.format(relationship=relationship),
            }

        if appointment.collection_stage == CollectionStage.FAMILY_DETAILS:
            appointment.patient_name = message
            appointment.collection_stage = CollectionStage.DOCTOR
            return {
                "session": session,
                "instruction": prompts.FAMILY_DETAILS.format(
                    name=message, relationship=appointment.relationship,
                ),
            }

        if appointment.collection_stage == CollectionStage.CONFIRM:
            return self._confirm_booking(state)

        # The reply answers the field we asked for
        current = (appointment.collection_stage or CollectionStage.DOCTOR).value
        if getattr(appointment, current, None) in (None, ""):
            setattr(appointment, current, message)

        following = appointment.next_missing_field()
        if following is None:
            appointment.collection_stage = CollectionStage.CONFIRM
            return {
                "session": session,
                "instruction": prompts.CONFIRM_DETAILS.format(summary=appointment.summary()),
            }
        appointment.collection_stage = CollectionStage(following)
        return {
            "session": session,
            "instruction": prompts.ASK_NEXT_APPOINTMENT_FIELD[following].format(
                doctor=appointment.doctor, date=appointment.date, time=appointment.time,
            ),
        }

    def _confirm_booking(self, state: TurnState) -> dict:
        session = state["session"]
        appointment = session.appointment_data
        message = state["message"]

        if is_negative(message):
            appointment.reset_details()
            return {"session": session, "instruction": prompts.DETAILS_REJECTED}
        if not is_affirmative(message):
            return {
                "session": session,
                "instruction": prompts.CONFIRM_AGAIN.format(summary=appointment.summary()),
            }

        try:
            call_sid = self._place_booking_call(session)
        except (FhirAPIError, CallPlacementError, ConfigurationError):
            logger.exception("Session %s: booking call could not be placed", session.session_id)
            return {"session": session, "instruction": prompts.CALL_FAILED}

        session.mark_call_initiated(call_sid)
        logger.info("Session %s: booking call %s placed", session.session_id, call_sid)
        return {
            "session": session,
            "instruction": prompts.CALL_INITIATED,
            "events": [*state["events"], "call_initiated"],
        }

    def _place_booking_call(self, session: ConversationSession) -> str:
        hospital = self._fhir.find_hospital_by_routing_number(self._routing_number)
        if hospital is None:
            raise CallPlacementError(f"No hospital found with routing number {self._routing_number}")

        appointment = session.appointment_data
        callback = appointment.callback_number or session.patient_data.phone
        if not callback:
            raise CallPlacementError("No callback number for this conversation")

        reason = (
            "Appointment booking"
            if appointment.booking_for == "self"
            else f"Appointment booking for {appointment.relationship}"
        )
        result = self._dispatcher.place_outbound_call(OutboundCallRequest(
            phone_number=callback,
            hospital_id=hospital.id,
            patient_id=session.patient_data.patient_id,
            reason=reason,
            call_type="booking",
            metadata={
                "session_id": session.session_id,
                "source": "chatbot",
                "booking_for": appointment.booking_for or "self",
                "relationship": appointment.relationship,
                "patient_name": appointment.patient_name,
                "doctor": appointment.doctor,
                "date": appointment.date,
                "time": appointment.time,
                "reason": appointment.reason,
            },
        ))
        return result.call_sid

    def _closing(self, state: TurnState) -> dict:
        session = state["session"]
        session.stage = Stage.CONVERSATION_ENDED
        return {"session": session, "instruction": prompts.CLOSING}

    def _finished(self, state: TurnState) -> dict:
        session = state["session"]
        if session.stage == Stage.CONVERSATION_ENDED:
            return {"session": session, "instruction": prompts.CONVERSATION_OVER}
        if is_closing(state["message"]):
            return {"session": session, "instruction": prompts.CLOSING}
        instruction = prompts.CALL_ALREADY_PLACED
        if session.call_status:
            instruction += f" Latest call status: {session.call_status}."
        return {"session": session, "instruction": instruction}

    def _respond(self, state: TurnState) -> dict:
        session = state["session"]
        reply = self._dialogue.complete(session.messages, state["instruction"])
        session.add_turn("assistant", reply)
        return {"session": session, "reply": reply}

    def _build_graph(self):
        graph = StateGraph(TurnState)
        stage_nodes = {
            "greeting": self._greeting,
            "confirmation": self._confirmation,
            "phone_lookup": self._phone_lookup,
            "registration": self._registration,
            "patient_menu": self._patient_menu,
            "booking": self._booking,
            "closing": self._closing,
            "finished": self._finished,
        }
        for name, node in stage_nodes.items():
            graph.add_node(name, node)
            graph.add_edge(name, "respond")
        graph.add_node("respond", self._respond)

        graph.add_conditional_edges(START, route_by_stage, {n: n for n in stage_nodes})
        graph.add_edge("respond", END)
        return graph.compile()

    # ── Public API ───────────────────────────────────────────────────

    def start_session(self) -> ConversationSession:
        """Open a conversation and greet the patient.

        Raises:
            DialogueStepFailed: if the greeting cannot be produced; no
                session is stored in that case.
        """
        session_id = f"chat_{int(_now().timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"
        session = ConversationSession(session_id=session_id)
        session.add_turn("assistant", self._dialogue.greet())
        self._sessions.put(_SESSION + session_id, session, ttl=self._ttl)
        logger.info("Started session %s", session_id)
        return session

    def handle_message(self, session_id: str, message: str) -> TurnState:
        """Process one user message to completion.

        Raises:
            SessionNotFound: unknown or expired *session_id*.
            DialogueStepFailed / FhirAPIError: a collaborator failed; the
                session keeps its previous state (see module docstring).
        """
        key = _SESSION + session_id
        with self._sessions.locked(key):
            stored: ConversationSession | None = self._sessions.get(key)
            if stored is None:
                raise SessionNotFound(session_id)

            working = stored.model_copy(deep=True)
            working.add_turn("user", message)
            working.last_activity = _now()
            initial: TurnState = {
                "session": working,
                "message": message,
                "instruction": "",
                "reply": "",
                "events": [],
            }
            try:
                result = self._graph.invoke(initial)
            except Exception:
                if (
                    working.patient_creation_attempted != stored.patient_creation_attempted
                    or working.call_attempted != stored.call_attempted
                ):
                    logger.warning(
                        "Session %s: turn failed after an external action; keeping its guards",
                        session_id,
                    )
                    self._sessions.put(key, working, ttl=self._ttl)
                raise

            self._sessions.put(key, result["session"], ttl=self._ttl)
        logger.debug("Session %s now at stage %s", session_id, result["session"].stage.value)
        return result

    def update_call_status(
        self,
        session_id: str,
        call_sid: str,
        status: str,
        duration: int | None = None,
    ) -> ConversationSession:
        """Record a provider status callback on the session that asked for it."""
        key = _SESSION + session_id
        with self._sessions.locked(key):
            session: ConversationSession | None = self._sessions.get(key)
            if session is None:
                raise SessionNotFound(session_id)

            status = (status or "").strip().lower()
            if status == "no_answer":
                status = "no-answer"
            session.call_sid = session.call_sid or call_sid
            session.call_status = status
            session.call_duration = duration
            session.last_call_status_update = _now()
            if status == "completed":
                session.call_completed = True
            self._sessions.put(key, session, ttl=self._ttl)
        logger.info("Session %s call %s status: %s", session_id, call_sid, status)
        return session

    def get_session(self, session_id: str) -> ConversationSession:
        session = self._sessions.get(_SESSION + session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def history(self, session_id: str) -> ConversationSession:
        return self.get_session(session_id)

    def analytics(self) -> dict[str, Any]:
        stages: dict[str, int] = {}
        total = 0
        for key in self._sessions.keys(_SESSION):
            session = self._sessions.get(key)
            if session is None:
                continue
            total += 1
            stages[session.stage.value] = stages.get(session.stage.value, 0) + 1
        return {"total_sessions": total, "by_stage": stages}


def format_appointments(appointments, now: datetime | None = None) -> str:
    """Describe upcoming (future, not cancelled) appointments, soonest first."""
    upcoming = sorted(
        (a for a in appointments if a.is_upcoming(now)),
        key=lambda a: a.start if a.start.tzinfo else a.start.replace(tzinfo=UTC),
    )
    if not appointments:
        return "No appointments found in the system."
    if not upcoming:
        return "No upcoming appointments found."

    lines = [f"Patient has {len(upcoming)} upcoming appointment(s):"]
    for index, appointment in enumerate(upcoming, start=1):
        start = appointment.start
        lines.append(
            f"{index}. {start.strftime('%A, %B')} {start.day}, {start.year} "
            f"at {start.strftime('%I:%M %p')}"
        )
        lines.append(f"   Status: {appointment.status}")
        if appointment.description:
            lines.append(f"   Reason: {appointment.description}")
    return "\n".join(lines)
