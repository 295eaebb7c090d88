"""HTTP client for the clinic's FHIR R4 server with retry logic, timeout
handling and a small organization cache.

Only the handful of resources the front desk touches are wrapped: Patient,
Organization, Appointment, Practitioner, Communication (the call log) and
RelatedPerson.  Every read returns a typed record from ``frontdesk.models``;
a resource that is simply absent comes back as ``None`` so callers can fall
back to a secondary path instead of handling an exception.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

import httpx

from frontdesk import phone
from frontdesk.config import FHIR_BASE_URL
from frontdesk.models import (
    CALL_SID_SYSTEM,
    ROUTING_EXTENSION_URL,
    ROUTING_IDENTIFIER_SYSTEM,
    AppointmentRecord,
    CommunicationRecord,
    OrganizationRecord,
    PatientRecord,
    RelatedPersonRecord,
)
from frontdesk.services.metrics import metrics
from frontdesk.services.store import InMemoryStore

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 15.0

# Organizations change rarely; keep them for a few minutes
ORGANIZATION_CACHE_TTL_SECONDS = 300
ORGANIZATION_SCAN_COUNT = 100

FHIR_JSON = "application/fhir+json"


class FhirAPIError(Exception):
    """Raised when a FHIR call fails after all retries (or with a 4xx)."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class FhirClient:
    """Thin wrapper around a FHIR R4 REST endpoint with automatic retries."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        cache: InMemoryStore | None = None,
    ):
        self._base_url = (base_url or FHIR_BASE_URL).rstrip("/")
        self._client = httpx.Client(
            base_url=self._base_url,
            headers={"Accept": FHIR_JSON, "Content-Type": FHIR_JSON},
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        self._cache = cache or InMemoryStore(
            max_entries=256, default_ttl=ORGANIZATION_CACHE_TTL_SECONDS,
        )

    # ── Internal helpers ─────────────────────────────────────────────

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute an HTTP request with exponential-backoff retries."""
        operation = f"{method} {path.strip('/').split('/')[0]}"
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            t0 = time.perf_counter()
            try:
                response = self._client.request(method, path, params=params, json=json_body)
                if response.status_code >= 500:
                    raise FhirAPIError(
                        f"Server error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    raise FhirAPIError(
                        f"Client error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                metrics.record_success("fhir", operation, (time.perf_counter() - t0) * 1000)
                return response.json()

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                metrics.record_failure("fhir", operation, type(exc).__name__)
                logger.warning(
                    "FHIR attempt %d/%d failed (%s). Retrying in %.1fs…",
                    attempt,
                    MAX_RETRIES,
                    type(exc).__name__,
                    INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)),
                )
            except FhirAPIError as exc:
                metrics.record_failure("fhir", operation, f"http_{exc.status_code}")
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "FHIR server error on attempt %d/%d. Retrying…",
                        attempt,
                        MAX_RETRIES,
                    )
                else:
                    raise  # 4xx errors are not retried

            backoff = INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1))
            time.sleep(backoff)

        raise FhirAPIError(f"FHIR request failed after {MAX_RETRIES} retries: {last_error}")

    def _read(self, resource_type: str, resource_id: str) -> dict[str, Any] | None:
        """GET one resource; ``None`` when the server says it is gone."""
        try:
            return self._request("GET", f"/{resource_type}/{resource_id}")
        except FhirAPIError as exc:
            if exc.status_code in (404, 410):
                logger.info("%s/%s not found", resource_type, resource_id)
                return None
            raise

    def _search(self, resource_type: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        """Run a search and return the matched resources from the Bundle."""
        bundle = self._request("GET", f"/{resource_type}", params=params)
        return [
            entry["resource"]
            for entry in bundle.get("entry") or []
            if entry.get("resource", {}).get("resourceType") == resource_type
        ]

    # ── Patients ─────────────────────────────────────────────────────

    def get_patient(self, patient_id: str) -> PatientRecord | None:
        resource = self._read("Patient", patient_id)
        return PatientRecord.from_resource(resource) if resource else None

    def find_patient_by_phone(self, raw_phone: str) -> PatientRecord | None:
        """Look a patient up by phone, probing each plausible E.164 form.

        A 10-digit national number is tried as an Indian number first, then
        as a US one, so the match works whichever format was registered.
        """
        for candidate in phone.variations(raw_phone):
            matches = self._search("Patient", {"telecom": candidate})
            if matches:
                logger.info("Patient matched on phone variation %s", candidate)
                return PatientRecord.from_resource(matches[0])
        return None

    def create_patient(self, resource: dict[str, Any]) -> PatientRecord:
        created = self._request("POST", "/Patient", json_body=resource)
        logger.info("Created Patient/%s", created.get("id"))
        return PatientRecord.from_resource(created)

    # ── Appointments / practitioners ─────────────────────────────────

    def find_patient_appointments(
        self,
        patient_id: str,
        *,
        status: str | None = None,
        date: str | None = None,
    ) -> list[AppointmentRecord]:
        params: dict[str, str] = {"patient": patient_id}
        if status:
            params["status"] = status
        if date:
            params["date"] = date
        return [AppointmentRecord.from_resource(r) for r in self._search("Appointment", params)]

    def get_appointment(self, appointment_id: str) -> AppointmentRecord | None:
        resource = self._read("Appointment", appointment_id)
        return AppointmentRecord.from_resource(resource) if resource else None

    def update_appointment(self, appointment_id: str, resource: dict[str, Any]) -> AppointmentRecord:
        updated = self._request("PUT", f"/Appointment/{appointment_id}", json_body=resource)
        return AppointmentRecord.from_resource(updated)

    def get_practitioner(self, practitioner_id: str) -> dict[str, Any] | None:
        return self._read("Practitioner", practitioner_id)

    # ── Organizations ────────────────────────────────────────────────

    def get_organization(self, organization_id: str) -> OrganizationRecord | None:
        """Fetch an Organization (cached)."""
        cache_key = f"org:{organization_id}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        resource = self._read("Organization", organization_id)
        if resource is None:
            return None
        record = OrganizationRecord.from_resource(resource)
        self._cache.put(cache_key, record)
        return record

    def find_hospital_by_routing_number(self, routing_number: str) -> OrganizationRecord | None:
        """Find the Organization that owns a provider phone number (cached).

        Tries the routing identifier first, then scans Organization
        extensions for servers that do not index the identifier.
        """
        number = phone.normalize(routing_number)
        cache_key = f"org_by_number:{number}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        record: OrganizationRecord | None = None
        matches = self._search(
            "Organization", {"identifier": f"{ROUTING_IDENTIFIER_SYSTEM}|{number}"},
        )
        if matches:
            record = OrganizationRecord.from_resource(matches[0])
        else:
            logger.info("No Organization indexed for %s; scanning extensions", number)
            for resource in self._search("Organization", {"_count": ORGANIZATION_SCAN_COUNT}):
                for ext in resource.get("extension") or []:
                    if (
                        ext.get("url") == ROUTING_EXTENSION_URL
                        and phone.are_equal(ext.get("valueString"), number)
                    ):
                        record = OrganizationRecord.from_resource(resource)
                        break
                if record:
                    break

        if record is not None:
            self._cache.put(cache_key, record)
        return record

    # ── Communications (call log) ────────────────────────────────────

    def create_communication(self, resource: dict[str, Any]) -> CommunicationRecord:
        created = self._request("POST", "/Communication", json_body=resource)
        return CommunicationRecord.from_resource(created)

    def update_communication(self, communication_id: str, resource: dict[str, Any]) -> CommunicationRecord:
        updated = self._request("PUT", f"/Communication/{communication_id}", json_body=resource)
        return CommunicationRecord.from_resource(updated)

    def search_communications(self, params: dict[str, Any]) -> list[CommunicationRecord]:
        return [CommunicationRecord.from_resource(r) for r in self._search("Communication", params)]

    def find_communication_by_call_sid(self, call_sid: str) -> CommunicationRecord | None:
        matches = self.search_communications({"identifier": f"{CALL_SID_SYSTEM}|{call_sid}"})
        return matches[0] if matches else None

    # ── Related persons ──────────────────────────────────────────────

    def search_related_persons(self, patient_id: str) -> list[RelatedPersonRecord]:
        return [
            RelatedPersonRecord.from_resource(r)
            for r in self._search("RelatedPerson", {"patient": patient_id})
        ]

    def create_related_person(self, resource: dict[str, Any]) -> RelatedPersonRecord:
        created = self._request("POST", "/RelatedPerson", json_body=resource)
        logger.info("Created RelatedPerson/%s", created.get("id"))
        return RelatedPersonRecord.from_resource(created)


# ── Module-level singleton (thread-safe) ────────────────────────────
_client: FhirClient | None = None
_client_lock = threading.Lock()


def get_fhir_client() -> FhirClient:
    """Return a module-level FhirClient singleton.

    Uses double-checked locking so that the lock is only acquired during
    the first initialisation, not on every subsequent call.
    """
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = FhirClient()
    return _client
