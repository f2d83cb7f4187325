"""Composition root for the capture pipeline.

``CapturePipeline`` wires the shared collaborators (one gateway and HTTP
client, one offline queue) and hands out ``CaptureSession`` objects.
Callers inject the auth provider; everything else defaults from
``settings``.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

import httpx

from snaptrack.core.config import settings
from snaptrack.core.ports import AuthProvider, ConnectivityOracle, QueueStorage, TelemetrySink
from snaptrack.core.security import StaticTokenProvider
from snaptrack.services.capture_session import CaptureSession
from snaptrack.services.connectivity import HttpConnectivityProbe
from snaptrack.services.gateway import AuthenticatedGateway
from snaptrack.services.offline_queue import FileOfflineQueue
from snaptrack.services.progress import StageNarrator, StageSnapshot
from snaptrack.services.queue_drain import OfflineQueueDrainer
from snaptrack.services.receipt_api import ReceiptApi
from snaptrack.services.telemetry import SentryTelemetrySink

logger = logging.getLogger(__name__)


class CapturePipeline:
    def __init__(
        self,
        gateway: AuthenticatedGateway,
        queue: QueueStorage,
        connectivity: Optional[ConnectivityOracle] = None,
        narrator: Optional[StageNarrator] = None,
    ) -> None:
        self.gateway = gateway
        self.api = ReceiptApi(gateway)
        self.queue = queue
        self.connectivity = connectivity or HttpConnectivityProbe(self.api)
        self.narrator = narrator or StageNarrator()

    @classmethod
    def from_settings(
        cls,
        auth: Optional[AuthProvider] = None,
        connectivity: Optional[ConnectivityOracle] = None,
        telemetry: Optional[TelemetrySink] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        queue_directory: Optional[str] = None,
    ) -> "CapturePipeline":
        gateway = AuthenticatedGateway(
            auth or StaticTokenProvider(),
            telemetry or SentryTelemetrySink(),
            base_url=settings.API_BASE_URL,
            transport=transport,
        )
        logger.info("[pipeline] using %s", settings.API_BASE_URL)
        return cls(gateway, FileOfflineQueue(queue_directory), connectivity)

    def new_session(
        self,
        on_stage: Optional[Callable[[StageSnapshot], None]] = None,
        check_health: bool = True,
        default_entity: Optional[str] = None,
    ) -> CaptureSession:
        return CaptureSession(
            self.api,
            self.queue,
            self.connectivity,
            narrator=self.narrator,
            default_entity=default_entity,
            check_health=check_health,
            on_stage=on_stage,
        )

    def drainer(self) -> OfflineQueueDrainer:
        return OfflineQueueDrainer(self.api, self.queue, self.connectivity)

    async def aclose(self) -> None:
        await self.gateway.aclose()

    async def __aenter__(self) -> "CapturePipeline":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
