from __future__ import annotations

import json
from typing import Any, Callable, List, Optional

import httpx
import pytest

from snaptrack.core.errors import QueueError
from snaptrack.models.enums import ImageSource
from snaptrack.models.schemas import CapturedImage, OfflineQueueItem
from snaptrack.services.gateway import AuthenticatedGateway
from snaptrack.services.progress import StageNarrator
from snaptrack.services.receipt_api import ReceiptApi
from snaptrack.services.telemetry import LoggingTelemetrySink

Handler = Callable[[httpx.Request], httpx.Response]


class FakeAuth:
    def __init__(self, token: Optional[str] = "token-1", refreshed: Optional[str] = "token-2") -> None:
        self.token = token
        self.refreshed = refreshed
        self.refresh_calls = 0

    async def get_current_token(self) -> Optional[str]:
        return self.token

    async def refresh_token(self) -> Optional[str]:
        self.refresh_calls += 1
        self.token = self.refreshed
        return self.refreshed

    def is_authenticated(self) -> bool:
        return bool(self.token)


class FakeConnectivity:
    def __init__(self, connected: bool = True) -> None:
        self.connected = connected
        self.calls = 0

    async def is_connected(self) -> bool:
        self.calls += 1
        return self.connected


class MemoryQueue:
    """In-memory ``QueueStorage`` for tests."""

    def __init__(self, fail: bool = False) -> None:
        self.items: List[OfflineQueueItem] = []
        self.fail = fail
        self._clock = 0

    async def append(self, item: OfflineQueueItem) -> OfflineQueueItem:
        if self.fail:
            raise QueueError("disk full")
        self._clock += 1
        stored = item.model_copy(update={"enqueued_at_ns": self._clock})
        self.items.append(stored)
        return stored

    async def drain_all(self) -> List[OfflineQueueItem]:
        return sorted(self.items, key=lambda i: i.enqueued_at_ns)

    async def remove(self, item: OfflineQueueItem) -> None:
        self.items = [i for i in self.items if i.item_id != item.item_id]

    async def replace(self, old: OfflineQueueItem, new: OfflineQueueItem) -> None:
        self.items = [new if i.item_id == old.item_id else i for i in self.items]


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it served."""

    def __init__(self, handler: Handler) -> None:
        self.requests: List[httpx.Request] = []

        def _handle(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(_handle)

    def paths(self) -> List[str]:
        return [f"{r.method} {r.url.path}" for r in self.requests]


def json_response(status: int, body: Any) -> httpx.Response:
    return httpx.Response(status, content=json.dumps(body).encode(), headers={"content-type": "application/json"})


def make_gateway(handler: Handler, auth: Optional[FakeAuth] = None, telemetry=None):
    transport = RecordingTransport(handler)
    gateway = AuthenticatedGateway(
        auth or FakeAuth(),
        telemetry or LoggingTelemetrySink(),
        base_url="https://api.test",
        transport=transport,
    )
    return gateway, transport


@pytest.fixture
def image() -> CapturedImage:
    return CapturedImage(uri="memory://receipt.jpg", source=ImageSource.CAMERA, data=b"\xff\xd8fake-jpeg")


@pytest.fixture
def instant_narrator() -> StageNarrator:
    slept: List[float] = []

    async def fake_sleep(seconds: float) -> None:
        slept.append(seconds)

    narrator = StageNarrator(sleep=fake_sleep, pacing_scale=1.0)
    narrator.slept = slept  # type: ignore[attr-defined]
    return narrator


def make_api(handler: Handler, auth: Optional[FakeAuth] = None):
    gateway, transport = make_gateway(handler, auth)
    return ReceiptApi(gateway), transport
