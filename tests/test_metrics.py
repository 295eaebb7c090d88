"""Tests for the CloudWatch metrics client."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from frontdesk.services.metrics import NAMESPACE, MetricsClient


def _make_client(*, enabled: bool = False) -> MetricsClient:
    with patch.dict("os.environ", {"METRICS_ENABLED": str(enabled).lower()}):
        with patch.object(MetricsClient, "_start_flush_thread"):
            return MetricsClient()


class TestMetricsRecording:
    """Verify that record_success / record_failure buffer the right data."""

    def test_record_success_appends_two_data_points(self):
        client = _make_client()
        client.record_success("fhir", "GET Patient", latency_ms=123.4)
        assert len(client._buffer) == 2
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"ExternalAPI/RequestCount", "ExternalAPI/Latency"}

    def test_record_failure_without_latency(self):
        client = _make_client()
        client.record_failure("anthropic", "dialogue_complete", error_type="timeout")
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"ExternalAPI/RequestCount", "ExternalAPI/ErrorCount"}

    def test_failure_dimensions_include_error_type(self):
        client = _make_client()
        client.record_failure("twilio", "calls.create", error_type="TwilioRestException", latency_ms=80)
        error_metric = next(
            m for m in client._buffer if m["MetricName"] == "ExternalAPI/ErrorCount"
        )
        dim_map = {d["Name"]: d["Value"] for d in error_metric["Dimensions"]}
        assert dim_map == {"Service": "twilio", "ErrorType": "TwilioRestException"}
        assert len(client._buffer) == 3


class TestTrack:
    def test_success_is_recorded(self):
        client = _make_client()
        with client.track("twilio", "calls.update"):
            pass
        count = next(m for m in client._buffer if m["MetricName"] == "ExternalAPI/RequestCount")
        assert {"Name": "Status", "Value": "success"} in count["Dimensions"]

    def test_failure_is_recorded_and_reraised(self):
        client = _make_client()
        with pytest.raises(RuntimeError):
            with client.track("twilio", "calls.create"):
                raise RuntimeError("boom")
        error = next(m for m in client._buffer if m["MetricName"] == "ExternalAPI/ErrorCount")
        assert {"Name": "ErrorType", "Value": "RuntimeError"} in error["Dimensions"]


class TestMetricsFlush:
    def test_flush_when_disabled_does_not_call_boto3(self):
        client = _make_client()
        client.record_success("fhir", "GET Patient", latency_ms=100.0)
        assert client.flush() == 0
        assert client._buffer == []

    def test_flush_when_enabled_calls_put_metric_data(self):
        client = _make_client(enabled=True)
        mock_cw = MagicMock()
        client._cw_client = mock_cw

        client.record_success("fhir", "GET Patient", latency_ms=100.0)
        assert client.flush() == 2

        kwargs = mock_cw.put_metric_data.call_args[1]
        assert kwargs["Namespace"] == NAMESPACE == "ClinicFrontDesk"
        assert len(kwargs["MetricData"]) == 2

    def test_flush_failure_is_logged_not_raised(self):
        client = _make_client(enabled=True)
        client._cw_client = MagicMock()
        client._cw_client.put_metric_data.side_effect = RuntimeError("throttled")
        client.record_success("fhir", "GET Patient", latency_ms=1.0)
        assert client.flush() == 0

    def test_flush_empty_buffer_returns_zero(self):
        assert _make_client(enabled=True).flush() == 0
