"""Observability helpers (Sentry init & common scrubbing).

Centralises Sentry initialisation for interactive sessions and the
queue drain script so configuration does not drift. Every helper is a
no-op when the DSN is missing and never raises into the caller.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import sentry_sdk

from snaptrack.core.config import settings

logger = logging.getLogger(__name__)

_SCRUBBED_HEADERS = ("authorization", "cookie", "set-cookie", "x-api-key", "idempotency-key")


def _before_send(event: Dict[str, Any], hint: Dict[str, Any] | None = None):
    """Scrub obvious PII / secrets before sending to Sentry.

    - Drop Authorization & Cookie headers
    - Remove request data/body (keep method + URL)
    """
    try:
        req = event.get("request") or {}
        headers = req.get("headers") or {}
        for k in list(headers.keys()):
            if k.lower() in _SCRUBBED_HEADERS:
                headers.pop(k, None)
        # Receipt images and edited amounts never leave the device via Sentry
        req.pop("data", None)
        event["request"] = req
    except Exception:  # best effort
        pass
    return event


def _enabled() -> bool:
    return bool(settings.SENTRY_DSN)


def init_sentry(service: str) -> bool:
    """Initialise Sentry once for a given process.

    Returns True if Sentry was initialised; False otherwise.
    """
    if not _enabled():
        return False
    if getattr(init_sentry, "_done", False):  # prevent duplicate init in same process
        return True
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        traces_sample_rate=float(settings.SENTRY_TRACES_SAMPLE_RATE or 0),
        environment=settings.ENVIRONMENT,
        release=settings.SENTRY_RELEASE,
        before_send=_before_send,
    )
    sentry_sdk.set_tag("service", service)
    init_sentry._done = True  # type: ignore[attr-defined]
    return True


def sentry_set_tags(tags: Dict[str, Any]) -> None:
    """Best-effort: set tags on the current Sentry scope (strings only)."""
    try:
        if not _enabled():
            return
        scope = sentry_sdk.get_current_scope()
        for k, v in (tags or {}).items():
            scope.set_tag(str(k), str(v)[:128] if v is not None else "")
    except Exception:
        logger.debug("[observability] failed to set tags", exc_info=True)


def sentry_breadcrumb(category: str, message: str, level: str = "info", data: Optional[Dict[str, Any]] = None) -> None:
    """Best-effort: add a breadcrumb for important lifecycle steps."""
    try:
        if not _enabled():
            return
        sentry_sdk.add_breadcrumb(
            category=category,
            message=message,
            level=level,
            data=data or {},
        )
    except Exception:
        logger.debug("[observability] failed to add breadcrumb", exc_info=True)


def sentry_capture_exception(exc: BaseException, context: str, extra: Optional[Dict[str, Any]] = None) -> None:
    """Best-effort: report an exception with a context tag and extra data."""
    try:
        if not _enabled():
            return
        with sentry_sdk.new_scope() as scope:
            scope.set_tag("context", context)
            for k, v in (extra or {}).items():
                scope.set_extra(str(k), v)
            sentry_sdk.capture_exception(exc)
    except Exception:
        logger.debug("[observability] failed to capture exception", exc_info=True)


__all__ = ["init_sentry", "sentry_set_tags", "sentry_breadcrumb", "sentry_capture_exception"]
