"""Telephony control plane: call-control markup and the Twilio REST client.

Every call, inbound or outbound, is answered with the same markup: open a
bidirectional media stream back to ``/api/calls/stream`` carrying the call's
context key, so the stream handler can find the ``CallContext`` created when
the call arrived or was placed.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client
from twilio.twiml.voice_response import Dial, VoiceResponse

from frontdesk.config import BASE_URL, TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN
from frontdesk.services.metrics import metrics

logger = logging.getLogger(__name__)

STREAM_PATH = "/api/calls/stream"
STATUS_PATH = "/api/calls/status"
OUTBOUND_TWIML_PATH = "/api/calls/outbound-twiml"

STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]

# Provider status → normalized call outcome
_STATUS_MAP = {
    "completed": "answered",
    "busy": "busy",
    "no-answer": "no-answer",
    "no_answer": "no-answer",
    "failed": "failed",
    "canceled": "canceled",
}


class ConfigurationError(Exception):
    """Telephony credentials or the public base URL are missing."""


class CallPlacementError(Exception):
    """A call could not be placed, ended or transferred."""


def normalize_call_status(status: str | None) -> str:
    """Map a provider status to answered/busy/no-answer/failed/canceled,
    anything else (queued, ringing, initiated...) to ``in-progress``."""
    return _STATUS_MAP.get((status or "").strip().lower(), "in-progress")


def stream_url(base_url: str, context_key: str) -> str:
    """``wss://`` URL of the media stream for *context_key*."""
    base = base_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "wss://" + base[len("http://"):]
    return f"{base}{STREAM_PATH}?{urlencode({'contextKey': context_key})}"


def stream_markup(base_url: str, context_key: str) -> str:
    """TwiML that connects the call to our media stream."""
    response = VoiceResponse()
    connect = response.connect()
    connect.stream(url=stream_url(base_url, context_key))
    return str(response)


def apology_markup() -> str:
    """TwiML played when an inbound call cannot be set up."""
    response = VoiceResponse()
    response.say(
        "We're sorry, we are unable to take your call right now. Please try again later.",
        voice="alice",
    )
    response.hangup()
    return str(response)


def transfer_markup(department: str, transfer_number: str, caller_id: str) -> str:
    """TwiML that hands the caller to clinic staff, with voicemail fallback."""
    response = VoiceResponse()
    response.say(f"Please hold while I transfer you to our {department} department.", voice="alice")
    dial = Dial(timeout=30, record="do-not-record", caller_id=caller_id)
    dial.number(transfer_number)
    response.append(dial)
    response.say(
        "I'm sorry, but no one is available right now. Please try calling "
        f"{transfer_number} directly or leave a message after the tone.",
        voice="alice",
    )
    response.record(timeout=60, max_length=300, transcribe=False)
    response.say("Thank you for your message. Someone will get back to you soon. Goodbye.", voice="alice")
    return str(response)


class TwilioGateway:
    """Places, ends and transfers calls through the Twilio REST API."""

    def __init__(
        self,
        account_sid: str | None = None,
        auth_token: str | None = None,
        base_url: str | None = None,
        client: Client | None = None,
    ):
        self._account_sid = account_sid if account_sid is not None else TWILIO_ACCOUNT_SID
        self._auth_token = auth_token if auth_token is not None else TWILIO_AUTH_TOKEN
        self.base_url = (base_url if base_url is not None else BASE_URL).rstrip("/")
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self.validate()
            self._client = Client(self._account_sid, self._auth_token)
        return self._client

    def validate(self) -> None:
        """Raise ``ConfigurationError`` unless a call can be placed."""
        if not self._account_sid or not self._auth_token:
            raise ConfigurationError("Missing Twilio credentials")
        if not self.base_url:
            raise ConfigurationError("Missing BASE_URL configuration")

    def status_callback_url(self, session_id: str | None = None) -> str:
        url = f"{self.base_url}{STATUS_PATH}"
        if session_id:
            url += "?" + urlencode({"sessionId": session_id})
        return url

    def answer_url(self, context_key: str) -> str:
        return f"{self.base_url}{OUTBOUND_TWIML_PATH}?" + urlencode({"contextKey": context_key})

    def create_call(
        self,
        from_: str,
        to: str,
        context_key: str,
        session_id: str | None = None,
    ) -> tuple[str, str]:
        """Dial *to* from *from_*; returns ``(call_sid, provider_status)``.

        Raises:
            ConfigurationError: before any request if not configured.
            CallPlacementError: if the provider rejects the call.
        """
        self.validate()
        try:
            with metrics.track("twilio", "calls.create"):
                call = self.client.calls.create(
                    to=to,
                    from_=from_,
                    url=self.answer_url(context_key),
                    method="POST",
                    status_callback=self.status_callback_url(session_id),
                    status_callback_event=STATUS_CALLBACK_EVENTS,
                    status_callback_method="POST",
                )
        except TwilioRestException as exc:
            logger.error("Twilio rejected call to %s: %s", to, exc.msg)
            raise CallPlacementError(f"Twilio rejected the call: {exc.msg}") from exc
        logger.info("Placed call %s to %s (context %s)", call.sid, to, context_key)
        return call.sid, call.status

    def end_call(self, call_sid: str) -> None:
        self.validate()
        try:
            with metrics.track("twilio", "calls.update"):
                self.client.calls(call_sid).update(status="completed")
        except TwilioRestException as exc:
            raise CallPlacementError(f"Could not end call {call_sid}: {exc.msg}") from exc
        logger.info("Ended call %s", call_sid)

    def redirect(self, call_sid: str, twiml: str) -> None:
        """Replace the live call's instructions with *twiml*."""
        self.validate()
        try:
            with metrics.track("twilio", "calls.update"):
                self.client.calls(call_sid).update(twiml=twiml)
        except TwilioRestException as exc:
            raise CallPlacementError(f"Could not update call {call_sid}: {exc.msg}") from exc
