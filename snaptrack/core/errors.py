"""Error taxonomy for the capture pipeline.

The classes here separate failures by where they originate, because
the pipeline reacts to each differently:

- ``ValidationError``: local, raised before any I/O (missing vendor/amount).
- ``NetworkError``: no response reached us (transport failure or timeout).
  Always retryable by the user and never triggers a token refresh.
- ``ApiError``: the server answered with a failure, either a non-2xx
  status or ``success: false`` inside a 2xx body. Only a 401 triggers the
  one-shot refresh-and-retry in the gateway.
- ``QueueError``: the durable offline queue could not persist an item.
"""

from __future__ import annotations

from typing import Dict, Optional


class PipelineError(Exception):
    """Base class for all errors raised by the capture pipeline."""


class ValidationError(PipelineError):
    """Required fields are missing or malformed; nothing was sent anywhere."""

    def __init__(self, field_errors: Dict[str, str]) -> None:
        self.field_errors = dict(field_errors)
        summary = "; ".join(f"{k}: {v}" for k, v in self.field_errors.items())
        super().__init__(summary or "Invalid receipt fields")


class ApiError(PipelineError):
    """The server responded, and the response was a failure."""

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code

    @property
    def is_unauthorized(self) -> bool:
        return self.status == 401

    def __repr__(self) -> str:
        return f"{type(self).__name__}(status={self.status!r}, code={self.code!r}, message={self.message!r})"


class NetworkError(ApiError):
    """No response was obtained. Carries status 0 and code ``NETWORK_ERROR``."""

    def __init__(self, message: str = "Network error occurred. Please check your connection.") -> None:
        super().__init__(message, status=0, code="NETWORK_ERROR")

    @property
    def is_unauthorized(self) -> bool:
        return False


class QueueError(PipelineError):
    """The offline queue failed to persist or update an item."""


class StageTransitionError(PipelineError):
    """A progress transition would move backwards or skip a stage."""


class SaveInProgressError(PipelineError):
    """A save is already running for this session."""


class SessionDisposedError(PipelineError):
    """The session was disposed and no longer accepts actions."""


class InvalidSessionStateError(PipelineError):
    """The requested action is not allowed in the session's current state."""
