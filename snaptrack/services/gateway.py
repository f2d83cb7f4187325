"""Authenticated request gateway.

Every remote call made by the pipeline goes through ``AuthenticatedGateway``.
It attaches the bearer token, validates the response on both layers the
backend uses (HTTP status and the ``success`` flag embedded in 2xx
bodies) and reports each attempt to the telemetry sink.

When a request is rejected with 401 the gateway refreshes the token once
and re-sends the *same* ``ApiRequest`` (same idempotency key) once.
Concurrent 401s share a single in-flight refresh instead of starting
their own. Timeouts and transport failures are ``NetworkError`` and never
trigger a refresh, because the server never rejected the credentials.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import httpx

from snaptrack.core.config import settings
from snaptrack.core.errors import ApiError, NetworkError
from snaptrack.core.observability import sentry_breadcrumb, sentry_capture_exception
from snaptrack.core.ports import AuthProvider, TelemetrySink

logger = logging.getLogger(__name__)


@dataclass
class ApiRequest:
    """One logical remote operation.

    A retry after a token refresh re-sends this exact object, so the
    idempotency key (when set) is shared by both attempts.
    """

    method: str
    path: str
    json_body: Optional[Dict[str, Any]] = None
    data: Optional[Dict[str, Any]] = None
    files: Optional[Dict[str, Tuple[str, bytes, str]]] = None
    params: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)
    anonymous: bool = False
    idempotency_key: Optional[str] = None
    timeout: Optional[float] = None

    @classmethod
    def idempotent(cls, method: str, path: str, **kwargs: Any) -> "ApiRequest":
        return cls(method, path, idempotency_key=uuid.uuid4().hex, **kwargs)


def _error_details(body: Any) -> Tuple[Optional[str], Optional[str]]:
    if not isinstance(body, dict):
        return None, None
    message = body.get("error") or body.get("message") or body.get("detail")
    code = body.get("code")
    return (str(message) if message else None), (str(code) if code else None)


class AuthenticatedGateway:
    """Sends ``ApiRequest`` objects with token handling and telemetry."""

    def __init__(
        self,
        auth: AuthProvider,
        telemetry: TelemetrySink,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._auth = auth
        self._telemetry = telemetry
        self._timeout = float(timeout if timeout is not None else settings.REQUEST_TIMEOUT_SECONDS)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=(base_url or settings.API_BASE_URL).rstrip("/"),
            timeout=self._timeout,
            transport=transport,
        )
        self._refresh_future: Optional[asyncio.Future] = None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "AuthenticatedGateway":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def send(self, request: ApiRequest) -> Dict[str, Any]:
        """Send a request and return the decoded JSON object body.

        Raises ``ApiError`` for server-side failures and ``NetworkError``
        when no response was obtained.
        """
        token = None if request.anonymous else await self._current_token()
        try:
            return await self._attempt(request, token)
        except ApiError as exc:
            if request.anonymous or not exc.is_unauthorized:
                raise
            current = await self._current_token()
            if current and current != token:
                # Someone refreshed while this request was in flight
                logger.info("[gateway] 401 on %s %s with a stale token", request.method, request.path)
                new_token = current
            else:
                logger.info("[gateway] 401 on %s %s, refreshing token", request.method, request.path)
                new_token = await self._refresh_once()
            if not new_token:
                logger.warning("[gateway] token refresh yielded no token; surfacing 401 for %s", request.path)
                raise
        logger.info("[gateway] retrying %s %s with refreshed token", request.method, request.path)
        return await self._attempt(request, new_token)

    async def _current_token(self) -> Optional[str]:
        try:
            return await self._auth.get_current_token()
        except Exception as exc:
            logger.warning("[gateway] auth provider failed: %s", exc)
            sentry_capture_exception(exc, "auth_token")
            raise ApiError("Authentication is unavailable. Please sign in again.", None, "AUTH_UNAVAILABLE") from exc

    async def _refresh_once(self) -> Optional[str]:
        future = self._refresh_future
        if future is None:
            future = asyncio.ensure_future(self._run_refresh())
            self._refresh_future = future
            future.add_done_callback(self._clear_refresh)
        else:
            logger.debug("[gateway] joining in-flight token refresh")
        # Shield so a cancelled waiter does not cancel the refresh others depend on
        return await asyncio.shield(future)

    def _clear_refresh(self, future: asyncio.Future) -> None:
        if self._refresh_future is future:
            self._refresh_future = None

    async def _run_refresh(self) -> Optional[str]:
        try:
            token = await self._auth.refresh_token()
        except Exception as exc:
            logger.warning("[gateway] token refresh failed: %s", exc)
            sentry_capture_exception(exc, "token_refresh")
            return None
        sentry_breadcrumb("auth", "token refreshed" if token else "token refresh returned nothing")
        return token or None

    async def _attempt(self, request: ApiRequest, token: Optional[str]) -> Dict[str, Any]:
        headers = dict(request.headers)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if request.idempotency_key:
            headers["Idempotency-Key"] = request.idempotency_key

        started = time.perf_counter()
        status_code = 0
        success = False
        try:
            try:
                response = await self._client.request(
                    request.method,
                    request.path,
                    json=request.json_body,
                    data=request.data,
                    files=request.files,
                    params=request.params,
                    headers=headers,
                    timeout=request.timeout or self._timeout,
                )
            except httpx.TimeoutException as exc:
                logger.warning("[gateway] %s %s timed out", request.method, request.path)
                raise NetworkError("Request timed out. Please check your connection.") from exc
            except httpx.RequestError as exc:
                logger.warning("[gateway] %s %s network failure: %s", request.method, request.path, exc)
                raise NetworkError() from exc
            status_code = response.status_code
            body = self._decode(response)
            success = True
            return body
        except ApiError as exc:
            sentry_breadcrumb(
                "api",
                f"{request.method} {request.path} failed",
                level="warning",
                data={"status": exc.status, "code": exc.code},
            )
            raise
        finally:
            self._report(request, started, success, status_code)

    @staticmethod
    def _decode(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            body = None
        if not response.is_success:
            message, code = _error_details(body)
            raise ApiError(
                message or f"HTTP {response.status_code}: {response.reason_phrase}",
                response.status_code,
                code,
            )
        if not isinstance(body, dict):
            raise ApiError("Invalid response format from server", response.status_code, "INVALID_RESPONSE")
        if body.get("success") is False:
            message, code = _error_details(body)
            raise ApiError(message or "Request failed", response.status_code, code)
        return body

    def _report(self, request: ApiRequest, started: float, success: bool, status_code: int) -> None:
        duration_ms = (time.perf_counter() - started) * 1000.0
        try:
            self._telemetry.record_request(request.path, request.method, duration_ms, success, status_code)
        except Exception:
            logger.debug("[gateway] telemetry sink raised; ignoring", exc_info=True)
