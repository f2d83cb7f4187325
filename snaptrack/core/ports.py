"""Interfaces for the collaborators the pipeline consumes.

The pipeline never reaches for global singletons: the auth provider,
connectivity oracle, telemetry sink, queue storage and image source are
constructed by the caller and injected, so tests can substitute fakes.
"""

from __future__ import annotations

from typing import List, Optional, Protocol, runtime_checkable

from snaptrack.models.schemas import CapturedImage, OfflineQueueItem


@runtime_checkable
class AuthProvider(Protocol):
    async def get_current_token(self) -> Optional[str]:
        """Return the current bearer token, or None when signed out."""

    async def refresh_token(self) -> Optional[str]:
        """Force a token refresh and return the new token, or None on failure."""

    def is_authenticated(self) -> bool:
        """Return True when a user is signed in."""


@runtime_checkable
class ConnectivityOracle(Protocol):
    async def is_connected(self) -> bool:
        """Return whether the device can currently reach the network."""


@runtime_checkable
class TelemetrySink(Protocol):
    def record_request(
        self,
        endpoint: str,
        method: str,
        duration_ms: float,
        success: bool,
        status_code: int,
    ) -> None:
        """Record one request's latency and outcome. Must not raise."""


class QueueStorage(Protocol):
    async def append(self, item: OfflineQueueItem) -> OfflineQueueItem:
        """Persist a new item atomically and return the stored copy."""

    async def drain_all(self) -> List[OfflineQueueItem]:
        """Return every queued item ordered by enqueue time."""

    async def remove(self, item: OfflineQueueItem) -> None:
        """Delete an item after a confirmed remote submission."""

    async def replace(self, old: OfflineQueueItem, new: OfflineQueueItem) -> None:
        """Swap an item for an updated copy in one atomic write."""


class ImageSourcePort(Protocol):
    async def acquire(self) -> Optional[CapturedImage]:
        """Capture or pick an image; None when the user cancelled."""
