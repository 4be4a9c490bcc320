"""CloudWatch custom metrics emitter with background batching.

Publishes per-call metrics (count, latency, errors) for the model
provider and the procurement backend, plus the reliability gateway's own
signals: retries, throttled calls and circuit-breaker transitions,
and per-call token usage with an estimated cost.

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
>>> from procurement_agent.services.metrics import metrics
>>> metrics.record_success("procurement_api", "GET /api/cart", latency_ms=42.0)
>>> metrics.record_failure("anthropic", "complete", error_type="timeout")
>>> metrics.record_circuit_transition("anthropic", "closed", "open")
>>> metrics.record_token_usage("anthropic", "claude-sonnet-4-5", 1200, 150, 0.00585)
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

NAMESPACE = "ProcurementAgent"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch API limit per PutMetricData call


def _dims(**pairs: str) -> list[dict[str, str]]:
    return [{"Name": name, "Value": value} for name, value in pairs.items()]


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
        """Create the boto3 CloudWatch client on first use."""
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Public API: external calls ────────────────────────────────────

    def record_success(
        self,
        service: str,
        operation: str,
        latency_ms: float,
    ) -> None:
        """Record a successful external call."""
        self._metric(
            "ExternalAPI/RequestCount", 1, "Count",
            _dims(Service=service, Status="success"),
        )
        self._metric(
            "ExternalAPI/Latency", latency_ms, "Milliseconds",
            _dims(Service=service, Operation=operation),
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
        self._metric(
            "ExternalAPI/RequestCount", 1, "Count",
            _dims(Service=service, Status="failure"),
        )
        self._metric(
            "ExternalAPI/ErrorCount", 1, "Count",
            _dims(Service=service, ErrorType=error_type),
        )
        if latency_ms > 0:
            self._metric(
                "ExternalAPI/Latency", latency_ms, "Milliseconds",
                _dims(Service=service, Operation=operation),
            )
        logger.debug(
            "Metric: %s %s failure error=%s latency=%.1fms",
            service, operation, error_type, latency_ms,
        )

    # ── Public API: reliability gateway ───────────────────────────────

    def record_retry(self, service: str, operation: str, attempt: int) -> None:
        """Record that *attempt* (1-based) failed transiently and will be retried."""
        self._metric(
            "Reliability/RetryCount", 1, "Count",
            _dims(Service=service, Operation=operation),
        )
        logger.debug("Metric: %s %s retry after attempt %d", service, operation, attempt)

    def record_throttled(self, service: str) -> None:
        """Record a call rejected because the rate limiter queue was full."""
        self._metric("Reliability/ThrottledCount", 1, "Count", _dims(Service=service))
        logger.debug("Metric: %s throttled", service)

    def record_circuit_transition(
        self,
        service: str,
        from_state: str,
        to_state: str,
    ) -> None:
        """Record a circuit-breaker state change."""
        self._metric(
            "Reliability/CircuitTransition", 1, "Count",
            _dims(Service=service, FromState=from_state, ToState=to_state),
        )
        logger.debug("Metric: %s circuit %s -> %s", service, from_state, to_state)

    # ── Public API: model usage ───────────────────────────────────────

    def record_token_usage(
        self,
        service: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        cost_usd: float,
    ) -> None:
        """Record the tokens and estimated cost of one model call."""
        dims = _dims(Service=service, Model=model or "unknown")
        self._metric("LLM/InputTokens", input_tokens, "Count", dims)
        self._metric("LLM/OutputTokens", output_tokens, "Count", dims)
        self._metric("LLM/EstimatedCostUSD", cost_usd, "None", dims)
        logger.debug(
            "Metric: %s %s tokens in=%d out=%d cost=$%.6f",
            service, model, input_tokens, output_tokens, cost_usd,
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

    def _metric(
        self,
        name: str,
        value: float,
        unit: str,
        dimensions: list[dict[str, str]],
    ) -> None:
        metric_data = {
            "MetricName": name,
            "Dimensions": dimensions,
            "Timestamp": datetime.now(UTC),
            "Value": value,
            "Unit": unit,
        }
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
        atexit.register(self.flush)  # flush on process exit
        logger.info(
            "Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS,
        )


# ── Module-level singleton ──────────────────────────────────────────
metrics = MetricsClient()
