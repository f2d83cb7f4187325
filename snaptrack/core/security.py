"""Token providers for the gateway."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from snaptrack.core.config import settings

logger = logging.getLogger(__name__)

TokenRefresher = Callable[[], Awaitable[Optional[str]]]


class StaticTokenProvider:
    """``AuthProvider`` holding a bearer token, e.g. ``API_TOKEN`` from the env.

    An optional ``refresher`` coroutine is called on refresh; without one
    a refresh yields the current token again.
    """

    def __init__(self, token: Optional[str] = None, refresher: Optional[TokenRefresher] = None) -> None:
        self._token = token if token is not None else settings.API_TOKEN
        self._refresher = refresher
        self.refresh_count = 0

    async def get_current_token(self) -> Optional[str]:
        return self._token

    async def refresh_token(self) -> Optional[str]:
        self.refresh_count += 1
        if self._refresher is None:
            return self._token
        token = await self._refresher()
        if token:
            self._token = token
        else:
            logger.warning("[auth] refresh returned no token")
        return token

    def is_authenticated(self) -> bool:
        return bool(self._token)
