"""CloudWatch custom metrics emitter with background batching.

Publishes per-call metrics (count, latency, errors) for every external
service the agent talks to (Anthropic, Pipefy, Google Calendar, Calendly),
plus a ``Degraded/SimulatedFallback`` counter every time availability or
booking silently falls back to simulated results.  That counter is what
makes a masked upstream outage visible.

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
>>> from sdr_agent.services.metrics import metrics
>>> metrics.record_success("pipefy", "createCard", latency_ms=123.4)
>>> metrics.record_fallback("calendar", "list_busy", reason="UpstreamFailure")
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "SDRAgent"
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

    def _get_cw_client(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Public API ────────────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        """Record a successful external call."""
        now = datetime.now(UTC)
        self._count("ExternalAPI/RequestCount", now, Service=service, Status="success")
        self._append(
            {
                "MetricName": "ExternalAPI/Latency",
                "Dimensions": _dims(Service=service, Operation=operation),
                "Timestamp": now,
                "Value": latency_ms,
                "Unit": "Milliseconds",
            }
        )
        logger.debug(
            "Metric: %s %s success latency=%.1fms", service, operation, latency_ms,
        )

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        """Record a failed external call."""
        now = datetime.now(UTC)
        self._count("ExternalAPI/RequestCount", now, Service=service, Status="failure")
        self._count("ExternalAPI/ErrorCount", now, Service=service, ErrorType=error_type)
        if latency_ms > 0:
            self._append(
                {
                    "MetricName": "ExternalAPI/Latency",
                    "Dimensions": _dims(Service=service, Operation=operation),
                    "Timestamp": now,
                    "Value": latency_ms,
                    "Unit": "Milliseconds",
                }
            )
        logger.debug(
            "Metric: %s %s failure error=%s latency=%.1fms",
            service, operation, error_type, latency_ms,
        )

    def record_fallback(self, service: str, operation: str, reason: str) -> None:
        """Record a degraded-mode substitution (simulated slots or meeting)."""
        now = datetime.now(UTC)
        self._count(
            "Degraded/SimulatedFallback", now,
            Service=service, Operation=operation, Reason=reason,
        )
        logger.debug("Metric: %s %s fallback reason=%s", service, operation, reason)

    def record_orchestration(self, outcome: str, iterations: int) -> None:
        """Record how a tool-calling turn ended and how many tools it ran."""
        now = datetime.now(UTC)
        self._count("Orchestrator/TurnCount", now, Outcome=outcome)
        self._append(
            {
                "MetricName": "Orchestrator/ToolIterations",
                "Dimensions": _dims(Outcome=outcome),
                "Timestamp": now,
                "Value": iterations,
                "Unit": "Count",
            }
        )

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

    def _count(self, name: str, now: datetime, **dimensions: str) -> None:
        self._append(
            {
                "MetricName": name,
                "Dimensions": _dims(**dimensions),
                "Timestamp": now,
                "Value": 1,
                "Unit": "Count",
            }
        )

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
        logger.info(
            "Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS,
        )


def _dims(**dimensions: str) -> list[dict[str, str]]:
    return [{"Name": name, "Value": value} for name, value in dimensions.items()]


# ── Module-level singleton ──────────────────────────────────────────
metrics = MetricsClient()
