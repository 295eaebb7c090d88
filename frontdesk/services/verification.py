"""Caller verification: who is on the line?

A caller's number identifies a *phone*, not a person.  After asking the
caller's name we settle on one of three outcomes:

* ``new_caller``: the number is not registered; registration is required.
* ``patient``: the spoken name matches the registered patient; book for self.
* ``family_or_caregiver``: the number is registered but the name does not
  match; someone is calling on the patient's behalf and the relationship
  must be verified before they may read or change that patient's bookings.

Name matching is deliberately permissive.  A false positive merely skips a
question; a false negative forces an unnecessary relationship check.
"""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel

from frontdesk import phone
from frontdesk.models import CallContext, PatientRecord, RelatedPersonRecord
from frontdesk.services.fhir_client import FhirAPIError, FhirClient

logger = logging.getLogger(__name__)

ROLE_CODE_SYSTEM = "http://terminology.hl7.org/CodeSystem/v3-RoleCode"

# Spoken relationship → HL7 v3 RoleCode
RELATIONSHIP_CODES: dict[str, str] = {
    "self": "ONESELF",
    "parent": "PRN",
    "mother": "MTH",
    "father": "FTH",
    "child": "CHILD",
    "son": "SON",
    "daughter": "DAU",
    "spouse": "SPS",
    "husband": "HUSB",
    "wife": "WIFE",
    "sibling": "SIB",
    "brother": "BRO",
    "sister": "SIS",
    "caregiver": "GUARD",
    "guardian": "GUARD",
    "friend": "FRND",
    "other": "O",
}

CallerType = Literal["new_caller", "patient", "family_or_caregiver"]


class VerificationError(Exception):
    """The EMR could not be reached while verifying a caller."""


class VerificationResult(BaseModel):
    caller_type: CallerType
    verified: bool
    caller_name: str
    patient_found: bool = False
    name_matches: bool = False
    patient_id: str | None = None
    patient: PatientRecord | None = None
    booking_mode: Literal["self", "family"] | None = None
    needs_registration: bool = False
    needs_relationship_verification: bool = False
    message: str = ""


class RelationshipResult(BaseModel):
    verified: bool
    relationship: str
    caller_name: str
    relationship_exists: bool
    requires_creation: bool
    related_person_id: str | None = None
    message: str = ""


class Greeting(BaseModel):
    greeting: str
    mode: Literal["patient_mode", "family_mode", "new_caller_mode"]
    instructions: str


def relationship_code(relationship: str | None) -> str:
    """Map a spoken relationship to its RoleCode (``O`` when unknown)."""
    return RELATIONSHIP_CODES.get((relationship or "").strip().lower(), "O")


def is_name_match(spoken: str | None, first_name: str | None, last_name: str | None) -> bool:
    """Does the name the caller gave plausibly belong to the patient?

    Case and surrounding whitespace are ignored.  Matches when the spoken
    name equals the full, first or last name, contains both first and last
    name, or has any word equal to the first or last name.
    """
    caller = (spoken or "").strip().lower()
    first = (first_name or "").strip().lower()
    last = (last_name or "").strip().lower()
    if not caller or not (first or last):
        return False

    full = f"{first} {last}".strip()
    if caller in (full, first, last):
        return True
    if first and last and first in caller and last in caller:
        return True
    words = caller.split()
    return any(w and w in (first, last) for w in words)


class CallerVerifier:
    """Resolve ``(phone, spoken name)`` against the EMR."""

    def __init__(self, fhir: FhirClient) -> None:
        self._fhir = fhir

    def verify_by_name(self, caller_phone: str, spoken_name: str) -> VerificationResult:
        """Classify the caller.

        Raises:
            VerificationError: if the patient lookup fails.
        """
        normalized = phone.normalize(caller_phone)
        try:
            patient = self._fhir.find_patient_by_phone(normalized)
        except FhirAPIError as exc:
            raise VerificationError(f"Patient lookup failed for {normalized}") from exc

        if patient is None:
            logger.info("Caller %s not registered", normalized)
            return VerificationResult(
                caller_type="new_caller",
                verified=False,
                caller_name=spoken_name,
                needs_registration=True,
                message="Phone number not found in system",
            )

        if is_name_match(spoken_name, patient.first_name, patient.last_name):
            logger.info("Caller verified as patient %s", patient.id)
            return VerificationResult(
                caller_type="patient",
                verified=True,
                caller_name=spoken_name,
                patient_found=True,
                name_matches=True,
                patient_id=patient.id,
                patient=patient,
                booking_mode="self",
                message=f"Verified: {patient.display_name}",
            )

        logger.info("Caller %r is calling from patient %s's phone", spoken_name, patient.id)
        return VerificationResult(
            caller_type="family_or_caregiver",
            verified=False,
            caller_name=spoken_name,
            patient_found=True,
            patient_id=patient.id,
            patient=patient,
            booking_mode="family",
            needs_relationship_verification=True,
            message=f'Caller "{spoken_name}" is calling from {patient.display_name}\'s phone',
        )

    def verify_relationship(
        self,
        caller_name: str,
        caller_phone: str,
        patient_id: str,
        claimed_relationship: str,
    ) -> RelationshipResult:
        """Check whether this caller is already an authorised related party.

        A related person whose phone matches the caller's authorises the
        call as recorded.  Otherwise the claimed relationship is accepted but
        ``requires_creation`` is set: the RelatedPerson record must exist
        before the caller may act for the patient.
        """
        try:
            related = self._fhir.search_related_persons(patient_id)
        except FhirAPIError as exc:
            raise VerificationError(f"RelatedPerson lookup failed for {patient_id}") from exc

        existing: RelatedPersonRecord | None = next(
            (rp for rp in related if rp.phone and phone.are_equal(rp.phone, caller_phone)),
            None,
        )
        if existing is not None:
            return RelationshipResult(
                verified=True,
                relationship=existing.relationship,
                caller_name=caller_name,
                relationship_exists=True,
                requires_creation=False,
                related_person_id=existing.id,
                message=f"Verified: {caller_name} is {existing.relationship}",
            )

        return RelationshipResult(
            verified=True,
            relationship=claimed_relationship,
            caller_name=caller_name,
            relationship_exists=False,
            requires_creation=True,
            message=f"New relationship: {caller_name} is {claimed_relationship}",
        )

    def link_related_person(
        self,
        patient_id: str,
        caller_name: str,
        relationship: str,
        caller_phone: str,
    ) -> RelatedPersonRecord:
        """Create the RelatedPerson that authorises *caller_phone*."""
        resource = {
            "resourceType": "RelatedPerson",
            "active": True,
            "patient": {"reference": f"Patient/{patient_id}"},
            "name": [{"text": caller_name}],
            "relationship": [{
                "coding": [{
                    "system": ROLE_CODE_SYSTEM,
                    "code": relationship_code(relationship),
                    "display": relationship,
                }],
            }],
            "telecom": [{
                "system": "phone",
                "value": phone.normalize(caller_phone),
                "use": "mobile",
            }],
        }
        try:
            return self._fhir.create_related_person(resource)
        except FhirAPIError as exc:
            raise VerificationError(f"Could not link related person to {patient_id}") from exc

    def confirm_relationship(
        self,
        context: CallContext,
        caller_name: str,
        claimed_relationship: str,
    ) -> RelationshipResult:
        """Verify (and if needed record) a third party on a live call."""
        if not context.patient_id or not context.caller:
            raise ValueError("Call context has no patient or caller to verify against")
        result = self.verify_relationship(
            caller_name, context.caller, context.patient_id, claimed_relationship,
        )
        if result.requires_creation:
            created = self.link_related_person(
                context.patient_id, caller_name, claimed_relationship, context.caller,
            )
            result = result.model_copy(update={"related_person_id": created.id})
        return result


def apply_verification(context: CallContext, result: VerificationResult) -> None:
    """Copy a name-verification outcome onto the live call context."""
    context.name_verification_pending = False
    context.caller_verified = result.verified
    context.caller_name = result.caller_name
    context.caller_type = result.caller_type
    context.booking_mode = result.booking_mode
    if result.patient_id:
        context.patient_id = result.patient_id
        context.patient_name = result.patient.display_name if result.patient else None
    context.relationship = "self" if result.caller_type == "patient" else None


def apply_relationship(context: CallContext, result: RelationshipResult) -> None:
    context.caller_verified = result.verified
    context.relationship = result.relationship


def greeting_for(result: VerificationResult, hospital_name: str) -> Greeting:
    """Opening line and speaking instructions for the verified caller."""
    if result.caller_type == "patient" and result.patient:
        first = result.patient.first_name or result.caller_name
        return Greeting(
            greeting=f"Hello {first}! Thank you for calling {hospital_name}. How can I help you today?",
            mode="patient_mode",
            instructions=(
                'Caller is the patient. Use "you" and "your" when referring '
                "to appointments and information."
            ),
        )
    if result.caller_type == "family_or_caregiver" and result.patient:
        first = result.patient.first_name or "the patient"
        return Greeting(
            greeting=(
                f"Hello {result.caller_name}! I see you're calling from {first}'s phone. "
                f"What is your relationship to {first}?"
            ),
            mode="family_mode",
            instructions=(
                f"Caller is calling on behalf of {first}. After confirming the "
                'relationship, use "their/them" or the patient\'s name.'
            ),
        )
    return Greeting(
        greeting=f"Hello {result.caller_name}! Thank you for calling {hospital_name}. How can I help you today?",
        mode="new_caller_mode",
        instructions="New caller. Collect information and assist with registration if needed.",
    )
