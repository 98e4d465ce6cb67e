"""CloudWatch custom metrics for the concierge.

Two families of data points share one buffer:

* ``ExternalAPI/*``  — count, latency and errors of every call to Anthropic,
  Dentalink, WhatsApp and the clinic document (``record_success``,
  ``record_failure``, ``track``).
* ``Conversation/*`` — what happened to a patient turn or a handoff
  (``record_event``): replied, escalated, booked without the model...

Points are buffered under a lock and pushed by a daemon thread every
``FLUSH_INTERVAL_SECONDS`` when ``METRICS_ENABLED=true``; otherwise a flush
just empties the buffer.

>>> from dental_concierge.services.metrics import metrics
>>> with metrics.track("dentalink", "GET /pacientes"):
...     ...
>>> metrics.record_event("Turn", outcome="escalated")
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

NAMESPACE = "DentalConcierge"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # PutMetricData limit


def _dimensions(**values: str) -> list[dict[str, str]]:
    return [{"Name": name, "Value": str(value)} for name, value in values.items()]


def _datum(
    name: str,
    value: float,
    unit: str,
    dimensions: list[dict[str, str]],
    timestamp: datetime,
) -> dict[str, Any]:
    return {
        "MetricName": name,
        "Dimensions": dimensions,
        "Timestamp": timestamp,
        "Value": value,
        "Unit": unit,
    }


class MetricsClient:
    def __init__(self, *, enabled: bool | None = None) -> None:
        if enabled is None:
            enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._enabled = enabled
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None

        if self._enabled:
            self._start_flush_thread()

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    # ── External calls ───────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        now = datetime.now(UTC)
        self._extend(
            _datum("ExternalAPI/RequestCount", 1, "Count",
                   _dimensions(Service=service, Status="success"), now),
            _datum("ExternalAPI/Latency", latency_ms, "Milliseconds",
                   _dimensions(Service=service, Operation=operation), now),
        )
        logger.debug("%s %s ok in %.1fms", service, operation, latency_ms)

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        now = datetime.now(UTC)
        points = [
            _datum("ExternalAPI/RequestCount", 1, "Count",
                   _dimensions(Service=service, Status="failure"), now),
            _datum("ExternalAPI/ErrorCount", 1, "Count",
                   _dimensions(Service=service, ErrorType=error_type), now),
        ]
        if latency_ms > 0:
            points.append(_datum("ExternalAPI/Latency", latency_ms, "Milliseconds",
                                 _dimensions(Service=service, Operation=operation), now))
        self._extend(*points)
        logger.debug("%s %s failed (%s) after %.1fms", service, operation, error_type, latency_ms)

    @contextmanager
    def track(self, service: str, operation: str) -> Iterator[None]:
        """Time the enclosed block and record success or failure.

        Exceptions are recorded and re-raised unchanged.
        """
        t0 = time.perf_counter()
        try:
            yield
        except Exception as exc:
            self.record_failure(
                service, operation,
                error_type=type(exc).__name__,
                latency_ms=(time.perf_counter() - t0) * 1000,
            )
            raise
        self.record_success(service, operation, latency_ms=(time.perf_counter() - t0) * 1000)

    # ── Conversation events ──────────────────────────────────────────

    def record_event(self, event: str, **dimensions: str) -> None:
        """Count one conversation event, e.g. ``record_event("Handoff", trigger="media")``."""
        dims = _dimensions(**{name.title(): value for name, value in dimensions.items()})
        self._extend(_datum(f"Conversation/{event}", 1, "Count", dims, datetime.now(UTC)))

    # ── Publishing ───────────────────────────────────────────────────

    def flush(self) -> int:
        """Send buffered points to CloudWatch and return how many were sent."""
        with self._lock:
            batch, self._buffer = self._buffer, []
        if not batch:
            return 0
        if not self._enabled:
            logger.debug("Metrics disabled; dropped %d points", len(batch))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for start in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[start:start + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
        except Exception:
            logger.exception("Failed to publish metrics to CloudWatch")
        else:
            logger.info("Published %d metric points", sent)
        return sent

    def _get_cw_client(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    def _extend(self, *points: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.extend(points)

    def _start_flush_thread(self) -> None:
        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        threading.Thread(target=_loop, daemon=True, name="metrics-flush").start()
        atexit.register(self.flush)
        logger.info("Metrics flush thread started (every %ds)", FLUSH_INTERVAL_SECONDS)


# ── Module-level singleton ──────────────────────────────────────────
metrics = MetricsClient()
