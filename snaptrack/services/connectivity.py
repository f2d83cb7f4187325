"""Connectivity oracles."""

from __future__ import annotations

import logging

from snaptrack.services.receipt_api import ReceiptApi

logger = logging.getLogger(__name__)


class StaticConnectivity:
    """Fixed answer; useful for scripts run with ``--offline`` and for tests."""

    def __init__(self, connected: bool = True) -> None:
        self.connected = connected

    async def is_connected(self) -> bool:
        return self.connected


class HttpConnectivityProbe:
    """Treats a healthy ``/api/health`` answer as being online."""

    def __init__(self, api: ReceiptApi) -> None:
        self._api = api

    async def is_connected(self) -> bool:
        healthy = await self._api.health()
        if not healthy:
            logger.info("[connectivity] backend unreachable; treating as offline")
        return healthy
