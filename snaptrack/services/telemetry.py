"""Telemetry sinks for per-request latency and outcome."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

from snaptrack.core.observability import sentry_breadcrumb

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestSample:
    endpoint: str
    method: str
    duration_ms: float
    success: bool
    status_code: int


class NullTelemetrySink:
    def record_request(self, endpoint: str, method: str, duration_ms: float, success: bool, status_code: int) -> None:
        return None


class LoggingTelemetrySink:
    """Logs every request and keeps the samples in memory."""

    def __init__(self) -> None:
        self.samples: List[RequestSample] = []

    def record_request(self, endpoint: str, method: str, duration_ms: float, success: bool, status_code: int) -> None:
        self.samples.append(RequestSample(endpoint, method, duration_ms, success, status_code))
        logger.info(
            "[telemetry] %s %s status=%s success=%s %.1fms",
            method,
            endpoint,
            status_code,
            success,
            duration_ms,
        )


class SentryTelemetrySink:
    """Records requests as Sentry breadcrumbs."""

    def record_request(self, endpoint: str, method: str, duration_ms: float, success: bool, status_code: int) -> None:
        logger.debug("[telemetry] %s %s -> %s in %.1fms", method, endpoint, status_code, duration_ms)
        sentry_breadcrumb(
            "http",
            f"{method} {endpoint}",
            level="info" if success else "warning",
            data={"status_code": status_code, "duration_ms": round(duration_ms, 1), "success": success},
        )
