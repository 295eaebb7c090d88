"""Call dispatch: everything that happens around a phone call except the
conversation itself.

* ``place_outbound_call``: resolve clinic and patient, open the call-log
  record, register the ``CallContext`` and dial.
* ``handle_inbound_call``: the provider's voice webhook; returns the markup
  that attaches the media stream.
* ``record_status``: the provider's status callback.
* reminder / follow-up calls, call-log listing, ending and transferring.

Call-log records are FHIR ``Communication`` resources.  Writing them is a
side effect: when it fails, the call still goes ahead under a time-based
context key.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from frontdesk import phone
from frontdesk.models import (
    CALL_SID_SYSTEM,
    CONTEXT_KEY_URL,
    AppointmentRecord,
    CallContext,
    CallLogEntry,
    CommunicationRecord,
    OrganizationRecord,
    OutboundCallRequest,
    OutboundCallResult,
    PatientRecord,
    PatientSummary,
)
from frontdesk.services.call_context import CallContextStore, mint_context_key
from frontdesk.services.fhir_client import FhirAPIError, FhirClient
from frontdesk.services.telephony import (
    CallPlacementError,
    ConfigurationError,
    TwilioGateway,
    normalize_call_status,
    stream_markup,
    transfer_markup,
)

logger = logging.getLogger(__name__)

CATEGORY_SYSTEM = "http://terminology.hl7.org/CodeSystem/communication-category"
MEDIUM_SYSTEM = "http://terminology.hl7.org/CodeSystem/v3-ParticipationMode"
EXTENSION_BASE = "http://hospital-system"
REMINDER_EXTENSION_URL = "http://hospital.com/fhir/reminder-{reminder_type}"
FOLLOW_UP_EXTENSION_URL = "http://hospital.com/fhir/follow-up-call"

CALL_LOG_PAGE_SIZE = 100


class CallTargetNotFound(CallPlacementError):
    """The clinic, patient or appointment a call is for does not exist."""


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _coding(system: str, code: str, display: str) -> list[dict[str, Any]]:
    return [{"coding": [{"system": system, "code": code, "display": display}]}]


def _payload(data: dict[str, Any]) -> list[dict[str, str]]:
    return [{"contentString": json.dumps(data, default=str)}]


def _practitioner_details(practitioner: dict[str, Any] | None) -> tuple[str, str]:
    """``(name, specialty)`` of a raw Practitioner, with safe defaults."""
    if not practitioner:
        return "Doctor", ""
    name = (practitioner.get("name") or [{}])[0]
    display = name.get("text") or " ".join(
        [*(name.get("prefix") or []), *(name.get("given") or []), name.get("family") or ""]
    ).strip()
    qualification = (practitioner.get("qualification") or [{}])[0]
    specialty = (qualification.get("code") or {}).get("text") or ""
    return display or "Doctor", specialty


class CallDispatcher:
    """Orchestrates the EMR, the telephony gateway and the context store."""

    def __init__(
        self,
        fhir: FhirClient,
        gateway: TwilioGateway,
        contexts: CallContextStore,
    ) -> None:
        self._fhir = fhir
        self._gateway = gateway
        self._contexts = contexts

    @property
    def contexts(self) -> CallContextStore:
        return self._contexts

    # ── Outbound ─────────────────────────────────────────────────────

    def _routing_organization(self, hospital_id: str) -> tuple[OrganizationRecord, str]:
        organization = self._fhir.get_organization(hospital_id)
        if organization is None:
            raise CallTargetNotFound(f"Hospital {hospital_id} not found")
        if not organization.routing_number:
            raise CallPlacementError(
                f"Hospital {hospital_id} does not have a Twilio phone number configured"
            )
        return organization, organization.routing_number

    def _resolve_patient(self, request: OutboundCallRequest) -> PatientRecord:
        patient_id = request.patient_id or request.patient_fhir_id
        if patient_id:
            patient = self._fhir.get_patient(patient_id)
            if patient is None:
                raise CallTargetNotFound(f"Patient {patient_id} not found")
            return patient

        patient = self._fhir.find_patient_by_phone(request.phone_number)
        if patient is not None:
            logger.info("Found existing patient %s for outbound call", patient.id)
            return patient

        logger.info("No patient for %s; creating a placeholder record", request.phone_number)
        digits = "".join(ch for ch in request.phone_number if ch.isdigit())
        return self._fhir.create_patient({
            "resourceType": "Patient",
            "active": True,
            "name": [{"use": "official", "text": f"Patient {digits[-4:]}"}],
            "telecom": [{
                "system": "phone",
                "value": phone.normalize(request.phone_number),
                "use": "mobile",
            }],
        })

    def _outbound_communication(
        self,
        request: OutboundCallRequest,
        patient: PatientRecord,
        from_number: str,
    ) -> dict[str, Any]:
        call_metadata = {
            "type": "outbound",
            "callType": request.call_type,
            "from": from_number,
            "to": request.phone_number,
            "originalPhoneInput": request.phone_number,
            "appointmentId": request.appointment_id,
            "reminderType": request.reminder_type,
            **request.metadata,
        }
        return {
            "resourceType": "Communication",
            "status": "preparation",
            "category": _coding(CATEGORY_SYSTEM, "alert", "Alert"),
            "medium": _coding(MEDIUM_SYSTEM, "VOICE", "voice"),
            "subject": {"reference": f"Patient/{patient.id}"},
            "sent": _now_iso(),
            "reasonCode": [{"text": request.reason or "Outbound call"}],
            "payload": _payload(call_metadata),
            "extension": [
                {"url": f"{EXTENSION_BASE}/call-type", "valueString": "outbound"},
                {"url": f"{EXTENSION_BASE}/from-number", "valueString": from_number},
                {"url": f"{EXTENSION_BASE}/to-number", "valueString": request.phone_number},
                {"url": f"{EXTENSION_BASE}/hospital-id", "valueString": request.hospital_id},
            ],
        }

    def _open_call_record(self, resource: dict[str, Any]) -> CommunicationRecord | None:
        try:
            return self._fhir.create_communication(resource)
        except Exception:
            logger.exception("Could not create call-log record; continuing without it")
            return None

    def place_outbound_call(self, request: OutboundCallRequest) -> OutboundCallResult:
        """Dial a patient on behalf of a clinic.

        Raises:
            ConfigurationError: telephony is not configured (checked first).
            CallTargetNotFound: the clinic or the given patient is unknown.
            CallPlacementError: the clinic has no routing number or the
                provider rejected the call.
            FhirAPIError: the EMR failed while resolving clinic or patient.
        """
        self._gateway.validate()
        organization, from_number = self._routing_organization(request.hospital_id)
        patient = self._resolve_patient(request)

        record = self._open_call_record(
            self._outbound_communication(request, patient, from_number)
        )
        context_key = mint_context_key("outbound", record.id if record else None)

        context = CallContext(
            direction="outbound",
            context_key=context_key,
            patient_id=patient.id,
            patient_name=patient.display_name,
            hospital=organization.to_hospital_info(),
            caller=from_number,
            callee=request.phone_number,
            call_type=request.call_type,
            reason=request.reason,
            appointment_id=request.appointment_id,
            reminder_type=request.reminder_type,
            reminder_data=request.reminder_data,
            follow_up_data=request.follow_up_data,
            metadata=dict(request.metadata),
            call_record_id=record.id if record else None,
        )
        self._contexts.put(context_key, context)

        call_sid, provider_status = self._gateway.create_call(
            from_number,
            request.phone_number,
            context_key,
            session_id=context.session_id,
        )

        if record is not None:
            self._link_call_record(record, call_sid, provider_status, context_key)
        self._contexts.attach_provider_call_id(context_key, call_sid)

        return OutboundCallResult(
            call_sid=call_sid,
            status=provider_status,
            from_number=from_number,
            to_number=request.phone_number,
            patient_id=patient.id,
            patient_name=patient.display_name,
            call_record_id=context.call_record_id,
            context_key=context_key,
            call_type=request.call_type,
            reason=request.reason,
            hospital_id=organization.id,
            hospital_name=organization.name,
        )

    def _link_call_record(
        self,
        record: CommunicationRecord,
        call_sid: str,
        provider_status: str,
        context_key: str,
    ) -> None:
        resource = dict(record.raw)
        resource["identifier"] = [{"system": CALL_SID_SYSTEM, "value": call_sid}]
        resource["status"] = "preparation" if provider_status == "queued" else "in-progress"
        resource["extension"] = [
            *(resource.get("extension") or []),
            {"url": CONTEXT_KEY_URL, "valueString": context_key},
        ]
        try:
            self._fhir.update_communication(record.id, resource)
        except Exception:
            logger.exception("Could not link call-log %s to CallSid %s", record.id, call_sid)

    # ── Reminder / follow-up ─────────────────────────────────────────

    def _patient_phone(self, patient_id: str) -> str:
        patient = self._fhir.get_patient(patient_id)
        if patient is None:
            raise CallTargetNotFound(f"Patient {patient_id} not found")
        if not patient.phone:
            raise CallPlacementError(f"Patient {patient_id} has no phone number")
        return patient.phone

    def _appointment(self, appointment_id: str) -> AppointmentRecord:
        appointment = self._fhir.get_appointment(appointment_id)
        if appointment is None:
            raise CallTargetNotFound(f"Appointment {appointment_id} not found")
        return appointment

    def _doctor(self, appointment: AppointmentRecord) -> tuple[str, str]:
        if not appointment.practitioner_id:
            return "Doctor", ""
        return _practitioner_details(self._fhir.get_practitioner(appointment.practitioner_id))

    def make_reminder_call(
        self,
        appointment_id: str,
        reminder_type: str | None,
        hospital_id: str,
    ) -> OutboundCallResult:
        """Call the patient of *appointment_id* to remind them of it."""
        appointment = self._appointment(appointment_id)
        if not appointment.patient_id:
            raise CallTargetNotFound(f"No patient associated with appointment {appointment_id}")
        patient_phone = self._patient_phone(appointment.patient_id)
        doctor_name, specialty = self._doctor(appointment)
        reminder_type = reminder_type or "manual"

        start = appointment.start
        reminder_data = {
            "appointmentDate": f"{start.month}/{start.day}/{start.year}" if start else "",
            "appointmentTime": start.strftime("%I:%M %p") if start else "",
            "doctorName": doctor_name,
            "doctorSpecialty": specialty,
            "reason": appointment.description or "",
            "confirmationNumber": f"APT-{appointment.id[-6:].upper()}",
            "reminderType": reminder_type,
        }
        return self.place_outbound_call(OutboundCallRequest(
            phone_number=patient_phone,
            hospital_id=hospital_id,
            reason=f"Appointment reminder - {reminder_type}",
            call_type="appointment_reminder",
            appointment_id=appointment_id,
            reminder_type=reminder_type,
            reminder_data=reminder_data,
            patient_id=appointment.patient_id,
        ))

    def make_follow_up_call(
        self,
        patient_id: str,
        follow_up_type: str,
        hospital_id: str,
        appointment_id: str | None = None,
        notes: str | None = None,
    ) -> OutboundCallResult:
        """Call a patient back, e.g. after an appointment or for a check-in."""
        patient_phone = self._patient_phone(patient_id)
        follow_up_data: dict[str, Any] = {"followUpType": follow_up_type, "notes": notes}

        if appointment_id:
            appointment = self._fhir.get_appointment(appointment_id)
            if appointment is not None:
                doctor_name, _ = self._doctor(appointment)
                start = appointment.start
                follow_up_data["lastAppointment"] = {
                    "date": f"{start.month}/{start.day}/{start.year}" if start else "",
                    "doctor": doctor_name,
                    "reason": appointment.description or "",
                }

        return self.place_outbound_call(OutboundCallRequest(
            phone_number=patient_phone,
            hospital_id=hospital_id,
            reason=f"Follow-up call - {follow_up_type}",
            call_type="follow_up",
            appointment_id=appointment_id,
            follow_up_data=follow_up_data,
            patient_id=patient_id,
        ))

    # ── Inbound ──────────────────────────────────────────────────────

    def handle_inbound_call(self, from_number: str, to_number: str, call_sid: str) -> tuple[CallContext, str]:
        """Register an arriving call and return ``(context, markup)``.

        An unknown caller or clinic is not an error: the call proceeds
        without a patient or hospital and the assistant collects details.
        """
        if not self._gateway.base_url:
            raise ConfigurationError("Missing BASE_URL configuration")
        logger.info("Inbound call %s from %s to %s", call_sid, from_number, to_number)

        patient = self._fhir.find_patient_by_phone(from_number)
        if patient is None:
            logger.info("Caller %s not found in the EMR", from_number)

        organization = self._fhir.find_hospital_by_routing_number(to_number)
        if organization is None:
            logger.warning("No hospital found for routing number %s", to_number)

        resource: dict[str, Any] = {
            "resourceType": "Communication",
            "status": "in-progress",
            "identifier": [{"system": CALL_SID_SYSTEM, "value": call_sid, "use": "official"}],
            "category": _coding(CATEGORY_SYSTEM, "phone-call", "Phone Call"),
            "medium": _coding(MEDIUM_SYSTEM, "PHONE", "Phone"),
            "sent": _now_iso(),
            "payload": _payload({
                "type": "inbound",
                "callSid": call_sid,
                "from": from_number,
                "to": to_number,
                "patientId": patient.id if patient else None,
                "hospitalId": organization.id if organization else None,
            }),
        }
        if patient is not None:
            resource["subject"] = {"reference": f"Patient/{patient.id}"}
        if organization is not None:
            resource["recipient"] = [{"reference": f"Organization/{organization.id}"}]

        record = self._open_call_record(resource)
        context_key = mint_context_key("inbound", record.id if record else None)

        context = CallContext(
            direction="inbound",
            context_key=context_key,
            patient_id=patient.id if patient else None,
            patient_name=patient.display_name if patient else None,
            hospital=organization.to_hospital_info() if organization else None,
            caller=from_number,
            callee=to_number,
            call_record_id=record.id if record else None,
            name_verification_pending=True,
        )
        self._contexts.put(context_key, context)
        self._contexts.attach_provider_call_id(context_key, call_sid)
        return context, stream_markup(self._gateway.base_url, context_key)

    def outbound_markup(self, context_key: str) -> str:
        if not self._gateway.base_url:
            raise ConfigurationError("Missing BASE_URL configuration")
        if self._contexts.get(context_key) is None:
            logger.warning("Outbound markup requested for unknown context %s", context_key)
        return stream_markup(self._gateway.base_url, context_key)

    # ── Status callbacks ─────────────────────────────────────────────

    def record_status(
        self,
        call_sid: str,
        status: str,
        duration_seconds: int | None = None,
    ) -> str:
        """Apply a provider status callback; returns the normalized status.

        Updates the live context (if still known), the call-log record and,
        for reminder / follow-up calls, the appointment the call was about.
        """
        normalized = normalize_call_status(status)

        def _apply(context: CallContext) -> None:
            context.status = status
            context.normalized_status = normalized
            if duration_seconds is not None:
                context.duration_seconds = duration_seconds

        if self._contexts.update(call_sid, _apply) is None:
            logger.info("Status %s for CallSid %s with no live context", status, call_sid)

        record = self._fhir.find_communication_by_call_sid(call_sid)
        if record is None:
            logger.warning("No call-log record found for CallSid %s", call_sid)
            return normalized

        payload = {
            **record.payload,
            "status": status,
            "normalizedStatus": normalized,
            "updatedAt": _now_iso(),
        }
        resource = dict(record.raw)
        resource["status"] = "completed" if status == "completed" else "in-progress"
        resource["payload"] = _payload(payload)
        if status == "completed":
            resource["received"] = _now_iso()
        self._fhir.update_communication(record.id, resource)
        logger.info("Call %s status updated to %s (%s)", call_sid, status, normalized)

        self._record_appointment_outcome(payload, call_sid, normalized)
        return normalized

    def _record_appointment_outcome(
        self,
        payload: dict[str, Any],
        call_sid: str,
        normalized: str,
    ) -> None:
        call_type = payload.get("callType")
        appointment_id = payload.get("appointmentId")
        if call_type not in ("appointment_reminder", "follow_up") or not appointment_id:
            return

        appointment = self._fhir.get_appointment(appointment_id)
        if appointment is None:
            logger.warning("Appointment %s for call %s no longer exists", appointment_id, call_sid)
            return

        if call_type == "appointment_reminder":
            url = REMINDER_EXTENSION_URL.format(reminder_type=payload.get("reminderType") or "manual")
            values = {"status": normalized, "callSid": call_sid, "updatedAt": _now_iso()}
        else:
            url = FOLLOW_UP_EXTENSION_URL
            values = {"status": normalized, "callSid": call_sid, "lastStatusUpdateAt": _now_iso()}
        self._fhir.update_appointment(appointment_id, appointment.with_extension(url, values))
        logger.info("Recorded %s outcome %s on appointment %s", call_type, normalized, appointment_id)

    # ── Call log / control ───────────────────────────────────────────

    def call_logs(self) -> list[CallLogEntry]:
        """Most recent calls first, with a name/phone summary per patient."""
        records = self._fhir.search_communications({
            "category": "phone-call,alert",
            "_sort": "-sent",
            "_count": CALL_LOG_PAGE_SIZE,
        })
        summaries: dict[str, PatientSummary | None] = {}
        entries = []
        for record in records:
            summary = None
            if record.patient_id:
                if record.patient_id not in summaries:
                    summaries[record.patient_id] = self._patient_summary(record.patient_id)
                summary = summaries[record.patient_id]
            entries.append(CallLogEntry(
                id=record.id,
                call_sid=record.call_sid or record.payload.get("callSid") or "",
                direction=record.payload.get("type") or "unknown",
                from_number=record.payload.get("from") or "",
                to_number=record.payload.get("to") or "",
                status=record.status,
                sent=record.sent,
                received=record.received,
                payload=record.payload,
                patient=summary,
            ))
        return entries

    def _patient_summary(self, patient_id: str) -> PatientSummary | None:
        try:
            patient = self._fhir.get_patient(patient_id)
        except FhirAPIError:
            logger.warning("Could not load patient %s for the call log", patient_id)
            return None
        if patient is None:
            return None
        return PatientSummary(name=patient.display_name, phone=patient.phone or "")

    def end_call(self, call_sid: str) -> None:
        self._gateway.end_call(call_sid)

        def _mark_ended(context: CallContext) -> None:
            context.status = "completed"
            context.normalized_status = normalize_call_status("completed")

        self._contexts.update(call_sid, _mark_ended)

    def transfer_call(
        self,
        call_sid: str,
        hospital_id: str,
        reason: str | None = None,
        department: str = "general",
    ) -> dict[str, str]:
        """Hand a live call to clinic staff at the clinic's main number."""
        organization = self._fhir.get_organization(hospital_id)
        if organization is None:
            raise CallTargetNotFound(f"Hospital {hospital_id} not found")
        if not organization.phone:
            raise CallPlacementError(f"Hospital {hospital_id} has no phone number configured")
        if not organization.routing_number:
            raise CallPlacementError(
                f"Hospital {hospital_id} does not have a Twilio phone number configured"
            )

        self._gateway.redirect(
            call_sid,
            transfer_markup(department, organization.phone, organization.routing_number),
        )
        logger.info("Call %s transferred to %s (%s)", call_sid, organization.phone, department)

        self._open_call_record({
            "resourceType": "Communication",
            "status": "completed",
            "category": _coding(CATEGORY_SYSTEM, "transfer", "Transfer"),
            "medium": _coding(MEDIUM_SYSTEM, "PHONE", "Phone"),
            "sent": _now_iso(),
            "recipient": [{"reference": f"Organization/{organization.id}"}],
            "payload": _payload({
                "callSid": call_sid,
                "actionTaken": "transferred_to_human",
                "transferReason": reason,
                "transferDepartment": department,
                "transferNumber": organization.phone,
                "hospitalId": organization.id,
            }),
        })
        return {"transfer_number": organization.phone, "department": department}


def status_update_listener(
    dispatcher: CallDispatcher,
    on_session_status: Callable[[str, str, str, int | None], None],
) -> Callable[[str, str, int | None, str | None], str]:
    """Wrap ``record_status`` so a linked chat session is told as well.

    The session update is a side effect of the webhook: its failure is
    logged and never propagated.
    """

    def _handle(call_sid: str, status: str, duration: int | None, session_id: str | None) -> str:
        normalized = dispatcher.record_status(call_sid, status, duration)
        if session_id:
            try:
                on_session_status(session_id, call_sid, status, duration)
            except Exception:
                logger.exception("Could not update chat session %s with call status", session_id)
        return normalized

    return _handle
