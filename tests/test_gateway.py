import asyncio

import httpx
import pytest

from conftest import FakeAuth, json_response, make_gateway
from snaptrack.core.errors import ApiError, NetworkError
from snaptrack.services.gateway import ApiRequest
from snaptrack.services.telemetry import LoggingTelemetrySink


@pytest.mark.asyncio
async def test_attaches_bearer_token_and_returns_body():
    gateway, transport = make_gateway(lambda req: json_response(200, {"success": True, "value": 1}))
    body = await gateway.send(ApiRequest("GET", "/api/things"))
    assert body["value"] == 1
    assert transport.requests[0].headers["Authorization"] == "Bearer token-1"


@pytest.mark.asyncio
async def test_401_refreshes_once_and_retries_with_same_idempotency_key():
    def handler(req: httpx.Request) -> httpx.Response:
        if req.headers.get("Authorization") == "Bearer token-2":
            return json_response(200, {"ok": True})
        return json_response(401, {"error": "expired"})

    auth = FakeAuth()
    gateway, transport = make_gateway(handler, auth)
    request = ApiRequest.idempotent("POST", "/api/parse", json_body={"a": 1})
    assert await gateway.send(request) == {"ok": True}
    assert auth.refresh_calls == 1
    keys = {r.headers["Idempotency-Key"] for r in transport.requests}
    assert keys == {request.idempotency_key}
    assert len(transport.requests) == 2


@pytest.mark.asyncio
async def test_concurrent_401s_share_a_single_refresh():
    class SlowAuth(FakeAuth):
        async def refresh_token(self):
            await asyncio.sleep(0.01)
            return await super().refresh_token()

    def handler(req: httpx.Request) -> httpx.Response:
        if req.headers.get("Authorization") == "Bearer token-2":
            return json_response(200, {"path": req.url.path})
        return json_response(401, {"error": "expired"})

    auth = SlowAuth()
    gateway, _ = make_gateway(handler, auth)
    results = await asyncio.gather(*(gateway.send(ApiRequest("GET", f"/api/r{i}")) for i in range(5)))
    assert [r["path"] for r in results] == [f"/api/r{i}" for i in range(5)]
    assert auth.refresh_calls == 1


@pytest.mark.asyncio
async def test_second_401_after_refresh_is_surfaced():
    auth = FakeAuth()
    gateway, transport = make_gateway(lambda req: json_response(401, {"error": "nope"}), auth)
    with pytest.raises(ApiError) as excinfo:
        await gateway.send(ApiRequest("GET", "/api/x"))
    assert excinfo.value.status == 401
    assert auth.refresh_calls == 1
    assert len(transport.requests) == 2


@pytest.mark.asyncio
async def test_refresh_without_token_surfaces_original_401():
    auth = FakeAuth(refreshed=None)
    gateway, transport = make_gateway(lambda req: json_response(401, {"error": "expired"}), auth)
    with pytest.raises(ApiError):
        await gateway.send(ApiRequest("GET", "/api/x"))
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_network_failure_is_network_error_without_refresh():
    def handler(req):
        raise httpx.ConnectError("unreachable", request=req)

    auth = FakeAuth()
    gateway, _ = make_gateway(handler, auth)
    with pytest.raises(NetworkError) as excinfo:
        await gateway.send(ApiRequest("GET", "/api/x"))
    assert excinfo.value.status == 0
    assert excinfo.value.code == "NETWORK_ERROR"
    assert auth.refresh_calls == 0


@pytest.mark.asyncio
async def test_timeout_is_network_error():
    def handler(req):
        raise httpx.ReadTimeout("slow", request=req)

    gateway, _ = make_gateway(handler)
    with pytest.raises(NetworkError):
        await gateway.send(ApiRequest("GET", "/api/x"))


@pytest.mark.asyncio
async def test_success_false_in_2xx_body_is_api_error():
    gateway, _ = make_gateway(lambda req: json_response(200, {"success": False, "error": "Bad image", "code": "BAD"}))
    with pytest.raises(ApiError) as excinfo:
        await gateway.send(ApiRequest("POST", "/api/parse"))
    assert excinfo.value.message == "Bad image"
    assert excinfo.value.code == "BAD"
    assert excinfo.value.status == 200


@pytest.mark.asyncio
async def test_non_json_error_body_uses_status_line():
    gateway, _ = make_gateway(lambda req: httpx.Response(502, content=b"<html>bad gateway</html>"))
    with pytest.raises(ApiError) as excinfo:
        await gateway.send(ApiRequest("GET", "/api/x"))
    assert excinfo.value.status == 502
    assert "502" in excinfo.value.message


@pytest.mark.asyncio
async def test_anonymous_request_sends_no_token_and_never_refreshes():
    auth = FakeAuth()
    gateway, transport = make_gateway(lambda req: json_response(401, {"error": "x"}), auth)
    with pytest.raises(ApiError):
        await gateway.send(ApiRequest("GET", "/api/health", anonymous=True))
    assert "Authorization" not in transport.requests[0].headers
    assert auth.refresh_calls == 0


@pytest.mark.asyncio
async def test_telemetry_records_every_attempt():
    telemetry = LoggingTelemetrySink()
    responses = iter([json_response(401, {}), json_response(200, {"ok": True})])
    gateway, _ = make_gateway(lambda req: next(responses), telemetry=telemetry)
    await gateway.send(ApiRequest("GET", "/api/x"))
    assert [(s.status_code, s.success) for s in telemetry.samples] == [(401, False), (200, True)]
    assert all(s.endpoint == "/api/x" and s.method == "GET" for s in telemetry.samples)


@pytest.mark.asyncio
async def test_raising_telemetry_sink_is_ignored():
    class Broken:
        def record_request(self, *args):
            raise RuntimeError("sink down")

    gateway, _ = make_gateway(lambda req: json_response(200, {"ok": True}), telemetry=Broken())
    assert await gateway.send(ApiRequest("GET", "/api/x")) == {"ok": True}


@pytest.mark.asyncio
async def test_late_401_after_finished_refresh_reuses_new_token():
    async def handler(req: httpx.Request) -> httpx.Response:
        if req.url.path == "/api/slow":
            await asyncio.sleep(0.05)
        if req.headers.get("Authorization") == "Bearer token-2":
            return json_response(200, {"path": req.url.path})
        return json_response(401, {"error": "expired"})

    auth = FakeAuth()
    gateway, transport = make_gateway(handler, auth)
    slow, fast = await asyncio.gather(
        gateway.send(ApiRequest("GET", "/api/slow")),
        gateway.send(ApiRequest("GET", "/api/fast")),
    )
    assert (slow["path"], fast["path"]) == ("/api/slow", "/api/fast")
    assert auth.refresh_calls == 1
    assert len(transport.requests) == 4


@pytest.mark.asyncio
async def test_auth_provider_failure_is_api_error():
    class BrokenAuth(FakeAuth):
        async def get_current_token(self):
            raise RuntimeError("keychain locked")

    gateway, transport = make_gateway(lambda req: json_response(200, {}), BrokenAuth())
    with pytest.raises(ApiError) as excinfo:
        await gateway.send(ApiRequest("GET", "/api/x"))
    assert excinfo.value.code == "AUTH_UNAVAILABLE"
    assert transport.requests == []
