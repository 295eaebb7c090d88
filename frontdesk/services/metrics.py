"""CloudWatch custom metrics emitter with background batching.

Publishes per-call metrics (count, latency, errors) for every external
collaborator the front desk depends on: the FHIR server (``fhir``), the
dialogue model (``anthropic``) and the telephony provider (``twilio``).

Design
------
* Metrics are collected in a thread-safe in-memory buffer.
* A daemon thread flushes the buffer to CloudWatch every
  ``FLUSH_INTERVAL_SECONDS`` (default 60 s).
* When running locally (``METRICS_ENABLED != "true"``), metrics are
  logged at DEBUG level but **not** pushed to CloudWatch.
* Each ``put_metric_data`` call sends up to 1 000 metric data points
  (the CloudWatch API limit per request).

Usage
-----
>>> from frontdesk.services.metrics import metrics
>>> with metrics.track("fhir", "GET Patient"):
...     client.get("/Patient/123")
>>> metrics.record_failure("twilio", "calls.create", error_type="TwilioRestException")
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "ClinicFrontDesk"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch API limit per PutMetricData call


class MetricsClient:
    """Batched CloudWatch metrics publisher."""

    def __init__(self) -> None:
        self._enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None  # lazy-init

        if self._enabled:
            self._start_flush_thread()

    # ── Lazy CloudWatch client ────────────────────────────────────────

    def _get_cw_client(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Public API ────────────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        """Record a successful call to an external collaborator."""
        now = datetime.now(UTC)
        service_dim = {"Name": "Service", "Value": service}

        self._append(self._datum(
            "ExternalAPI/RequestCount",
            [service_dim, {"Name": "Status", "Value": "success"}],
            now, 1, "Count",
        ))
        self._append(self._datum(
            "ExternalAPI/Latency",
            [service_dim, {"Name": "Operation", "Value": operation}],
            now, latency_ms, "Milliseconds",
        ))
        logger.debug("Metric: %s %s success latency=%.1fms", service, operation, latency_ms)

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        """Record a failed call to an external collaborator."""
        now = datetime.now(UTC)
        service_dim = {"Name": "Service", "Value": service}

        self._append(self._datum(
            "ExternalAPI/RequestCount",
            [service_dim, {"Name": "Status", "Value": "failure"}],
            now, 1, "Count",
        ))
        self._append(self._datum(
            "ExternalAPI/ErrorCount",
            [service_dim, {"Name": "ErrorType", "Value": error_type}],
            now, 1, "Count",
        ))
        if latency_ms > 0:
            self._append(self._datum(
                "ExternalAPI/Latency",
                [service_dim, {"Name": "Operation", "Value": operation}],
                now, latency_ms, "Milliseconds",
            ))
        logger.debug(
            "Metric: %s %s failure error=%s latency=%.1fms",
            service, operation, error_type, latency_ms,
        )

    @contextmanager
    def track(self, service: str, operation: str) -> Iterator[None]:
        """Time the wrapped block and record success, or failure on raise."""
        t0 = time.perf_counter()
        try:
            yield
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            self.record_failure(service, operation, type(exc).__name__, latency_ms=elapsed)
            raise
        self.record_success(service, operation, (time.perf_counter() - t0) * 1000)

    def flush(self) -> int:
        """Send buffered metrics to CloudWatch.  Returns count sent."""
        with self._lock:
            if not self._buffer:
                return 0
            batch = self._buffer[:]
            self._buffer.clear()

        if not self._enabled:
            logger.debug("Metrics flush skipped (not enabled): %d items", len(batch))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for i in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[i : i + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
            logger.info("Flushed %d metrics to CloudWatch", sent)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch")
        return sent

    # ── Internal ──────────────────────────────────────────────────────

    @staticmethod
    def _datum(
        name: str,
        dimensions: list[dict[str, str]],
        timestamp: datetime,
        value: float,
        unit: str,
    ) -> dict[str, Any]:
        return {
            "MetricName": name,
            "Dimensions": dimensions,
            "Timestamp": timestamp,
            "Value": value,
            "Unit": unit,
        }

    def _append(self, metric_data: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.append(metric_data)

    def _start_flush_thread(self) -> None:
        """Start a daemon thread that flushes metrics periodically."""

        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        t = threading.Thread(target=_loop, daemon=True, name="metrics-flush")
        t.start()
        atexit.register(self.flush)
        logger.info("Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS)


# ── Module-level singleton ──────────────────────────────────────────
metrics = MetricsClient()
