"""Clinic Front Desk: a telephone and chat virtual receptionist for a clinic.

Architecture Overview
=====================

The service correlates live phone calls with a multi-turn booking dialogue.
Four pieces carry the core behaviour:

1. **Phone identity** (``phone.py``): canonicalises raw dialed/caller numbers
   and enumerates the India/US candidates a 10-digit number may stand for,
   so a lookup matches whichever format the EMR recorded.

2. **Audio codec bridge** (``codec.py``): G.711 μ-law ⇄ PCM16 transcoding for
   the provider's real-time media stream (8 kHz, 160-byte frames).

3. **Call context correlator** (``services/call_context.py``): one shared
   record per call, reachable by the locally minted context key and, once
   known, the provider's CallSid.  Inbound webhooks, the media socket and
   status callbacks all rendezvous here.

4. **Conversation engine** (``conversation.py``): a LangGraph StateGraph that
   processes one chat turn per invocation, driving patient lookup or
   registration and appointment-detail collection until a single outbound
   booking call is placed.

Key Design Decisions
--------------------
- **EMR**: a FHIR R4 server reached through ``FhirClient`` (httpx with
  exponential backoff retries, same idiom for every collaborator).
- **Dialogue**: Claude via ``langchain-anthropic``; each stage supplies a
  steering instruction and the model only writes the wording.
- **Telephony**: Twilio REST for call placement and TwiML
  ``<Connect><Stream>`` markup for the audio leg.
- **State**: an injected ``KeyValueStore`` (in-memory LRU with TTL, or Redis)
  with atomic per-key read-modify-write.
- **Dual Interface**: FastAPI server (production) + CLI chat loop
  (development/testing).

Package Structure
-----------------
- ``frontdesk/config.py`` - Centralized configuration from environment variables
- ``frontdesk/phone.py`` - Phone normalisation and comparison
- ``frontdesk/codec.py`` - μ-law codec and resampling
- ``frontdesk/models.py`` - Session, call context and typed FHIR records
- ``frontdesk/prompts.py`` - System prompt and per-stage instructions
- ``frontdesk/conversation.py`` - LangGraph conversation engine
- ``frontdesk/server.py`` - FastAPI application
- ``frontdesk/main.py`` - CLI chat interface
- ``frontdesk/services/`` - EMR, dialogue, telephony, store and metrics clients
- ``frontdesk/api/`` - FastAPI routes and Pydantic schemas
"""
