"""Domain models: conversation sessions, call contexts and typed FHIR records.

Everything that goes into the key-value store is a pydantic model so the
Redis backing can round-trip it through JSON without custom codecs.  FHIR
resources coming back from the EMR are parsed into small typed records
(``PatientRecord``, ``OrganizationRecord``, ...) at the client boundary;
anything malformed fails there instead of deep inside a dialogue turn.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from frontdesk import phone

# ── FHIR systems / extension URLs ────────────────────────────────────
ROUTING_IDENTIFIER_SYSTEM = "http://hospital-system/twilio-phone"
ROUTING_EXTENSION_URL = "http://hospital-system/twilio-phone-number"
WEEKDAY_HOURS_URL = "http://hospital-system/weekday-hours"
WEEKEND_HOURS_URL = "http://hospital-system/weekend-hours"
EMERGENCY_HOURS_URL = "http://hospital-system/emergency-hours"
CALL_SID_SYSTEM = "http://twilio.com/call-sid"
CONTEXT_KEY_URL = "http://hospital-system/context-key"

DEFAULT_WEEKDAY_HOURS = "8:00 AM - 8:00 PM"
DEFAULT_WEEKEND_HOURS = "9:00 AM - 5:00 PM"
DEFAULT_EMERGENCY_HOURS = "24/7"


def _now() -> datetime:
    return datetime.now(UTC)


def _blank(value: Any) -> bool:
    return value is None or str(value).strip() == ""


# ── Conversation state ───────────────────────────────────────────────


class Stage(str, Enum):
    """Top-level dialogue stage.  ``CALL_INITIATED`` and
    ``CONVERSATION_ENDED`` are terminal."""

    GREETING = "greeting"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    AWAITING_PHONE = "awaiting_phone"
    NEW_PATIENT_REGISTRATION = "new_patient_registration"
    PATIENT_FOUND = "patient_found"
    PATIENT_CREATED = "patient_created"
    BOOKING_APPOINTMENT = "booking_appointment"
    CALL_INITIATED = "call_initiated"
    CONVERSATION_ENDED = "conversation_ended"


TERMINAL_STAGES = frozenset({Stage.CALL_INITIATED, Stage.CONVERSATION_ENDED})


class CollectionStage(str, Enum):
    """Sub-pointer inside ``booking_appointment``."""

    DOCTOR = "doctor"
    DATE = "date"
    TIME = "time"
    REASON = "reason"
    CONFIRM = "confirm"
    FAMILY_DETAILS = "family_details"


# Registration order; the first four are enough to create a record
PATIENT_FIELDS: tuple[str, ...] = (
    "first_name", "last_name", "phone", "email", "age", "gender", "dob",
)
CRITICAL_PATIENT_FIELDS: tuple[str, ...] = PATIENT_FIELDS[:4]

APPOINTMENT_FIELDS: tuple[str, ...] = ("doctor", "date", "time", "reason")


class PatientData(BaseModel):
    """Patient details gathered (or looked up) during a conversation."""

    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    email: str | None = None
    age: str | None = None
    gender: str | None = None
    dob: str | None = None
    patient_id: str | None = None
    is_existing: bool = False

    def missing(self) -> list[str]:
        return [f for f in PATIENT_FIELDS if _blank(getattr(self, f))]

    def critical_missing(self) -> list[str]:
        return [f for f in CRITICAL_PATIENT_FIELDS if _blank(getattr(self, f))]

    @property
    def can_create(self) -> bool:
        """First name, last name, phone and email are all present."""
        return not self.critical_missing()

    @property
    def is_complete(self) -> bool:
        """All seven registration fields are present."""
        return not self.missing()

    @property
    def percent_complete(self) -> int:
        present = len(PATIENT_FIELDS) - len(self.missing())
        return round(present * 100 / len(PATIENT_FIELDS))

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    def to_resource(self) -> dict[str, Any]:
        """Render as a FHIR ``Patient`` resource for creation."""
        resource: dict[str, Any] = {
            "resourceType": "Patient",
            "active": True,
            "name": [{
                "use": "official",
                "family": self.last_name,
                "given": [self.first_name],
            }],
            "telecom": [],
        }
        if self.phone:
            resource["telecom"].append(
                {"system": "phone", "value": phone.normalize(self.phone), "use": "mobile"}
            )
        if self.email:
            resource["telecom"].append({"system": "email", "value": self.email})
        if self.gender:
            resource["gender"] = self.gender.strip().lower()
        if self.dob:
            # MM/DD/YYYY → YYYY-MM-DD
            parts = self.dob.strip().split("/")
            if len(parts) == 3:
                month, day, year = parts
                resource["birthDate"] = f"{year}-{month.zfill(2)}-{day.zfill(2)}"
        return resource


class AppointmentData(BaseModel):
    """Appointment details collected in ``booking_appointment``."""

    booking_for: Literal["self", "other"] | None = None
    patient_name: str | None = None
    relationship: str | None = None
    callback_number: str | None = None
    doctor: str | None = None
    date: str | None = None
    time: str | None = None
    reason: str | None = None
    collection_stage: CollectionStage | None = None

    def next_missing_field(self) -> str | None:
        """Return the first of doctor/date/time/reason still unset."""
        for field in APPOINTMENT_FIELDS:
            if _blank(getattr(self, field)):
                return field
        return None

    @property
    def is_ready(self) -> bool:
        return self.next_missing_field() is None

    def summary(self) -> str:
        return (
            f"Doctor: {self.doctor}, Date: {self.date}, "
            f"Time: {self.time}, Reason: {self.reason}"
        )

    def reset_details(self) -> None:
        for field in APPOINTMENT_FIELDS:
            setattr(self, field, None)
        self.collection_stage = CollectionStage.DOCTOR


class ChatTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class InvalidTransition(RuntimeError):
    """Raised when a one-shot guard would be re-entered."""


class ConversationSession(BaseModel):
    """One chat dialogue.  Linked to a call only through ``session_id``."""

    session_id: str
    stage: Stage = Stage.GREETING
    patient_data: PatientData = Field(default_factory=PatientData)
    appointment_data: AppointmentData = Field(default_factory=AppointmentData)
    messages: list[ChatTurn] = Field(default_factory=list)
    initial_intent: str | None = None
    # Registration field the last assistant turn asked for
    expected_field: str | None = None

    patient_creation_attempted: bool = False
    call_attempted: bool = False
    call_sid: str | None = None
    call_status: str | None = None
    call_duration: int | None = None
    call_completed: bool = False
    appointment_info_shared: bool = False

    created_at: datetime = Field(default_factory=_now)
    last_activity: datetime = Field(default_factory=_now)
    last_call_status_update: datetime | None = None

    # ── Turns ────────────────────────────────────────────────────────

    def add_turn(self, role: Literal["user", "assistant"], content: str) -> None:
        self.messages.append(ChatTurn(role=role, content=content))

    def last_assistant_utterance(self) -> str:
        for turn in reversed(self.messages):
            if turn.role == "assistant":
                return turn.content
        return ""

    # ── One-shot guards ──────────────────────────────────────────────

    def claim_patient_creation(self) -> bool:
        """Flip the creation guard.  Only the first caller gets ``True``."""
        if self.patient_creation_attempted:
            return False
        self.patient_creation_attempted = True
        return True

    def mark_call_initiated(self, call_sid: str | None) -> None:
        """The single transition into ``call_initiated``."""
        if self.call_attempted:
            raise InvalidTransition(
                f"Session {self.session_id} already placed call {self.call_sid}"
            )
        self.call_attempted = True
        self.call_sid = call_sid
        self.stage = Stage.CALL_INITIATED

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES


# ── Calls ────────────────────────────────────────────────────────────


class HospitalInfo(BaseModel):
    """The clinic an active call belongs to."""

    id: str
    name: str = "Unknown Hospital"
    phone: str | None = None
    routing_number: str | None = None
    email: str | None = None
    address: str | None = None
    website: str | None = None
    weekday_hours: str = DEFAULT_WEEKDAY_HOURS
    weekend_hours: str = DEFAULT_WEEKEND_HOURS
    emergency_hours: str = DEFAULT_EMERGENCY_HOURS


CallType = Literal["general", "booking", "appointment_reminder", "follow_up"]


class CallContext(BaseModel):
    """Everything known about one live phone call, whatever its direction.

    Stored once in the correlator and reachable by every key assigned to it
    (the minted ``context_key`` and, later, the provider CallSid).
    """

    direction: Literal["inbound", "outbound"]
    context_key: str
    provider_call_id: str | None = None
    patient_id: str | None = None
    patient_name: str | None = None
    hospital: HospitalInfo | None = None
    caller: str | None = None
    callee: str | None = None

    call_type: CallType = "general"
    reason: str | None = None
    appointment_id: str | None = None
    reminder_type: str | None = None
    reminder_data: dict[str, Any] | None = None
    follow_up_data: dict[str, Any] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    # Other keys (CallSid, ...) that resolve to this record
    aliases: list[str] = Field(default_factory=list)

    call_record_id: str | None = None
    created_at: datetime = Field(default_factory=_now)

    status: str | None = None
    normalized_status: str | None = None
    duration_seconds: int | None = None

    # Caller verification (inbound)
    name_verification_pending: bool = False
    caller_verified: bool = False
    caller_name: str | None = None
    caller_type: str | None = None
    booking_mode: Literal["self", "family"] | None = None
    relationship: str | None = None

    @property
    def session_id(self) -> str | None:
        """The chat session that requested this call, if any."""
        return self.metadata.get("session_id")


class PatientSummary(BaseModel):
    name: str
    phone: str = ""


class CallLogEntry(BaseModel):
    """One row of the call log, built from a FHIR Communication."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    call_sid: str = ""
    direction: str = "unknown"
    from_number: str = Field("", alias="from")
    to_number: str = Field("", alias="to")
    status: str | None = None
    sent: str | None = None
    received: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    patient: PatientSummary | None = None


# ── Typed FHIR records ───────────────────────────────────────────────


def _expect(resource: dict[str, Any], resource_type: str) -> None:
    actual = resource.get("resourceType")
    if actual != resource_type:
        raise ValueError(f"Expected {resource_type} resource, got {actual!r}")


def _telecom(resource: dict[str, Any], system: str) -> str | None:
    for entry in resource.get("telecom") or []:
        if entry.get("system") == system and entry.get("value"):
            return entry["value"]
    return None


def _extension(resource: dict[str, Any], url: str) -> str | None:
    for ext in resource.get("extension") or []:
        if ext.get("url") == url:
            return ext.get("valueString")
    return None


def _reference_id(reference: str | None, resource_type: str) -> str | None:
    prefix = f"{resource_type}/"
    if reference and reference.startswith(prefix):
        return reference[len(prefix):]
    return None


class PatientRecord(BaseModel):
    id: str
    first_name: str = ""
    last_name: str = ""
    name_text: str = ""
    phone: str | None = None
    email: str | None = None
    gender: str | None = None
    birth_date: str | None = None
    active: bool = True

    @classmethod
    def from_resource(cls, resource: dict[str, Any]) -> PatientRecord:
        _expect(resource, "Patient")
        name = (resource.get("name") or [{}])[0]
        given = name.get("given") or []
        return cls.model_validate({
            "id": resource.get("id"),
            "first_name": given[0] if given else "",
            "last_name": name.get("family") or "",
            "name_text": name.get("text") or "",
            "phone": _telecom(resource, "phone"),
            "email": _telecom(resource, "email"),
            "gender": resource.get("gender"),
            "birth_date": resource.get("birthDate"),
            "active": resource.get("active", True),
        })

    @property
    def display_name(self) -> str:
        full = f"{self.first_name} {self.last_name}".strip()
        return full or self.name_text or "Unknown"

    def to_patient_data(self) -> PatientData:
        return PatientData(
            first_name=self.first_name or None,
            last_name=self.last_name or None,
            phone=self.phone,
            email=self.email,
            gender=self.gender,
            dob=self.birth_date,
            patient_id=self.id,
            is_existing=True,
        )


class OrganizationRecord(BaseModel):
    id: str
    name: str = "Unknown Hospital"
    phone: str | None = None
    email: str | None = None
    website: str | None = None
    address: str | None = None
    routing_number: str | None = None
    weekday_hours: str = DEFAULT_WEEKDAY_HOURS
    weekend_hours: str = DEFAULT_WEEKEND_HOURS
    emergency_hours: str = DEFAULT_EMERGENCY_HOURS

    @classmethod
    def from_resource(cls, resource: dict[str, Any]) -> OrganizationRecord:
        _expect(resource, "Organization")
        routing = _extension(resource, ROUTING_EXTENSION_URL)
        if not routing:
            for ident in resource.get("identifier") or []:
                if ident.get("system") == ROUTING_IDENTIFIER_SYSTEM:
                    routing = ident.get("value")
                    break
        address = (resource.get("address") or [{}])[0]
        return cls.model_validate({
            "id": resource.get("id"),
            "name": resource.get("name") or "Unknown Hospital",
            "phone": _telecom(resource, "phone"),
            "email": _telecom(resource, "email"),
            "website": _telecom(resource, "url"),
            "address": address.get("text"),
            "routing_number": routing,
            "weekday_hours": _extension(resource, WEEKDAY_HOURS_URL) or DEFAULT_WEEKDAY_HOURS,
            "weekend_hours": _extension(resource, WEEKEND_HOURS_URL) or DEFAULT_WEEKEND_HOURS,
            "emergency_hours": _extension(resource, EMERGENCY_HOURS_URL) or DEFAULT_EMERGENCY_HOURS,
        })

    def to_hospital_info(self) -> HospitalInfo:
        return HospitalInfo(**self.model_dump())


class AppointmentRecord(BaseModel):
    id: str
    status: str = "unknown"
    start: datetime | None = None
    description: str | None = None
    patient_id: str | None = None
    practitioner_id: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)

    @classmethod
    def from_resource(cls, resource: dict[str, Any]) -> AppointmentRecord:
        _expect(resource, "Appointment")
        patient_id = practitioner_id = None
        for participant in resource.get("participant") or []:
            ref = (participant.get("actor") or {}).get("reference")
            patient_id = patient_id or _reference_id(ref, "Patient")
            practitioner_id = practitioner_id or _reference_id(ref, "Practitioner")
        return cls.model_validate({
            "id": resource.get("id"),
            "status": resource.get("status") or "unknown",
            "start": resource.get("start"),
            "description": resource.get("description") or resource.get("comment"),
            "patient_id": patient_id,
            "practitioner_id": practitioner_id,
            "raw": resource,
        })

    def is_upcoming(self, now: datetime | None = None) -> bool:
        if self.start is None or self.status == "cancelled":
            return False
        start = self.start if self.start.tzinfo else self.start.replace(tzinfo=UTC)
        return start > (now or _now())

    def with_extension(self, url: str, values: dict[str, str]) -> dict[str, Any]:
        """Return the raw resource with extension *url* replaced by *values*."""
        resource = dict(self.raw)
        extensions = [e for e in resource.get("extension") or [] if e.get("url") != url]
        extensions.append({
            "url": url,
            "extension": [
                {"url": key, "valueDateTime" if key.endswith("At") else "valueString": value}
                for key, value in values.items()
            ],
        })
        resource["extension"] = extensions
        return resource


class CommunicationRecord(BaseModel):
    id: str
    status: str | None = None
    call_sid: str | None = None
    context_key: str | None = None
    sent: str | None = None
    received: str | None = None
    patient_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)

    @classmethod
    def from_resource(cls, resource: dict[str, Any]) -> CommunicationRecord:
        _expect(resource, "Communication")
        call_sid = None
        for ident in resource.get("identifier") or []:
            if ident.get("system") == CALL_SID_SYSTEM:
                call_sid = ident.get("value")
                break
        payload: dict[str, Any] = {}
        content = ((resource.get("payload") or [{}])[0]).get("contentString")
        if content:
            try:
                payload = json.loads(content)
            except ValueError:
                payload = {"text": content}
        return cls.model_validate({
            "id": resource.get("id"),
            "status": resource.get("status"),
            "call_sid": call_sid,
            "context_key": _extension(resource, CONTEXT_KEY_URL),
            "sent": resource.get("sent"),
            "received": resource.get("received"),
            "patient_id": _reference_id((resource.get("subject") or {}).get("reference"), "Patient"),
            "payload": payload if isinstance(payload, dict) else {"value": payload},
            "raw": resource,
        })


class RelatedPersonRecord(BaseModel):
    id: str
    name: str = "Unknown"
    relationship: str = "Unknown"
    relationship_code: str | None = None
    phone: str | None = None
    active: bool = True

    @classmethod
    def from_resource(cls, resource: dict[str, Any]) -> RelatedPersonRecord:
        _expect(resource, "RelatedPerson")
        coding = ((resource.get("relationship") or [{}])[0].get("coding") or [{}])[0]
        return cls.model_validate({
            "id": resource.get("id"),
            "name": ((resource.get("name") or [{}])[0]).get("text") or "Unknown",
            "relationship": coding.get("display") or "Unknown",
            "relationship_code": coding.get("code"),
            "phone": _telecom(resource, "phone"),
            "active": resource.get("active", True),
        })


# ── Call requests / results ──────────────────────────────────────────


class OutboundCallRequest(BaseModel):
    """Why, and to whom, the clinic is placing a call."""

    model_config = ConfigDict(populate_by_name=True)

    phone_number: str = Field(..., min_length=1, alias="phoneNumber")
    hospital_id: str = Field(..., min_length=1, alias="hospitalId")
    reason: str | None = None
    call_type: CallType = Field("general", alias="callType")
    appointment_id: str | None = Field(None, alias="appointmentId")
    reminder_type: str | None = Field(None, alias="reminderType")
    reminder_data: dict[str, Any] | None = Field(None, alias="reminderData")
    follow_up_data: dict[str, Any] | None = Field(None, alias="followUpData")
    patient_id: str | None = Field(None, alias="patientId")
    patient_fhir_id: str | None = Field(None, alias="patientFhirId")
    metadata: dict[str, Any] = Field(default_factory=dict)


class OutboundCallResult(BaseModel):
    call_sid: str
    status: str
    from_number: str
    to_number: str
    patient_id: str
    patient_name: str
    call_record_id: str | None = None
    context_key: str
    call_type: CallType
    reason: str | None = None
    hospital_id: str
    hospital_name: str
