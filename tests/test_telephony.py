"""Tests for the Twilio gateway and call-control markup."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from twilio.base.exceptions import TwilioRestException

from frontdesk.services.telephony import (
    STATUS_CALLBACK_EVENTS,
    CallPlacementError,
    ConfigurationError,
    TwilioGateway,
    apology_markup,
    normalize_call_status,
    stream_markup,
    stream_url,
    transfer_markup,
)

BASE = "https://frontdesk.example.com"


def _gateway(**kwargs) -> tuple[TwilioGateway, MagicMock]:
    client = MagicMock()
    client.calls.create.return_value = MagicMock(sid="CA123", status="queued")
    params = {"account_sid": "AC1", "auth_token": "secret", "base_url": BASE, "client": client}
    params.update(kwargs)
    return TwilioGateway(**params), client


class TestNormalizeCallStatus:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("completed", "answered"),
            ("busy", "busy"),
            ("no-answer", "no-answer"),
            ("no_answer", "no-answer"),
            ("failed", "failed"),
            ("canceled", "canceled"),
            ("ringing", "in-progress"),
            ("queued", "in-progress"),
            ("", "in-progress"),
            (None, "in-progress"),
        ],
    )
    def test_mapping(self, raw, expected):
        assert normalize_call_status(raw) == expected


class TestMarkup:
    def test_stream_url_switches_to_wss(self):
        assert stream_url(BASE + "/", "inbound_c1") == (
            "wss://frontdesk.example.com/api/calls/stream?contextKey=inbound_c1"
        )
        assert stream_url("http://localhost:8000", "k").startswith("wss://localhost:8000/")

    def test_stream_markup_connects_the_media_stream(self):
        markup = stream_markup(BASE, "inbound_c1")
        assert "<Connect>" in markup
        assert 'url="wss://frontdesk.example.com/api/calls/stream?contextKey=inbound_c1"' in markup

    def test_apology_markup_hangs_up(self):
        markup = apology_markup()
        assert "<Say" in markup
        assert "<Hangup" in markup

    def test_transfer_markup_dials_the_clinic(self):
        markup = transfer_markup("billing", "+15550001111", "+19499971087")
        assert "billing department" in markup
        assert "<Number>+15550001111</Number>" in markup
        assert 'callerId="+19499971087"' in markup


class TestValidate:
    def test_missing_credentials(self):
        gateway, _ = _gateway(account_sid="", auth_token="")
        with pytest.raises(ConfigurationError):
            gateway.validate()

    def test_missing_base_url(self):
        gateway, _ = _gateway(base_url="")
        with pytest.raises(ConfigurationError):
            gateway.validate()

    def test_create_call_validates_before_dialing(self):
        gateway, client = _gateway(auth_token="")
        with pytest.raises(ConfigurationError):
            gateway.create_call("+19499971087", "+15551234567", "outbound_c1")
        client.calls.create.assert_not_called()


class TestCreateCall:
    def test_places_call_with_answer_and_status_urls(self):
        gateway, client = _gateway()
        sid, status = gateway.create_call(
            "+19499971087", "+15551234567", "outbound_c1", session_id="chat_1_abc",
        )

        assert (sid, status) == ("CA123", "queued")
        kwargs = client.calls.create.call_args[1]
        assert kwargs["to"] == "+15551234567"
        assert kwargs["from_"] == "+19499971087"
        assert kwargs["url"] == f"{BASE}/api/calls/outbound-twiml?contextKey=outbound_c1"
        assert kwargs["status_callback"] == f"{BASE}/api/calls/status?sessionId=chat_1_abc"
        assert kwargs["status_callback_event"] == STATUS_CALLBACK_EVENTS

    def test_status_callback_without_session(self):
        gateway, _ = _gateway()
        assert gateway.status_callback_url() == f"{BASE}/api/calls/status"

    def test_provider_rejection_raises_call_placement_error(self):
        gateway, client = _gateway()
        client.calls.create.side_effect = TwilioRestException(
            400, "https://api.twilio.com/Calls", msg="Invalid 'To' number",
        )
        with pytest.raises(CallPlacementError) as exc_info:
            gateway.create_call("+19499971087", "+1", "outbound_c1")
        assert "Invalid 'To' number" in str(exc_info.value)


class TestCallControl:
    def test_end_call_completes_the_call(self):
        gateway, client = _gateway()
        gateway.end_call("CA123")
        client.calls.assert_called_with("CA123")
        client.calls.return_value.update.assert_called_once_with(status="completed")

    def test_redirect_sends_twiml(self):
        gateway, client = _gateway()
        gateway.redirect("CA123", "<Response/>")
        client.calls.return_value.update.assert_called_once_with(twiml="<Response/>")

    def test_end_call_failure(self):
        gateway, client = _gateway()
        client.calls.return_value.update.side_effect = TwilioRestException(
            404, "https://api.twilio.com/Calls/CA123", msg="Not found",
        )
        with pytest.raises(CallPlacementError):
            gateway.end_call("CA123")
