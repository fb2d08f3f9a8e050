"""Tests for the authenticated, throttled catalog gateway."""

from __future__ import annotations

import json
from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from app.errors import AuthError, UpstreamError
from app.models import Catalog
from app.services.cache import MAL_STORE, TOKEN_STORE
from app.services.gateway import CatalogGateway, GatewayConfig
from app.services.oauth import TokenManager
from app.services.throttle import RequestThrottle

API = "https://api.example.com"


def build_gateway(settings, http_client, cache=None, *, clock=None, max_retries=0):
    kwargs = {"clock": clock} if clock is not None else {}
    auth = TokenManager(settings, http_client, cache, **kwargs)
    throttle = RequestThrottle(100, 60.0, spacing=0.0, name="test")

    async def no_sleep(_: float) -> None:
        return None

    gateway = CatalogGateway(
        GatewayConfig(service=Catalog.MAL, cache_store=MAL_STORE, max_retries=max_retries),
        http_client,
        throttle,
        auth,
        cache,
        sleep=no_sleep,
    )
    return gateway, auth


@pytest.mark.anyio("asyncio")
async def test_get_with_cache_key_is_served_from_cache(make_settings, cache) -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"data": [1, 2, 3]})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=API) as http_client:
        gateway, _ = build_gateway(make_settings(), http_client, cache)
        first = await gateway.request("GET", "/list", cache_key="@me-all-0", cache_ttl=60)
        second = await gateway.request("GET", "/list", cache_key="@me-all-0", cache_ttl=60)

    assert first == second == {"data": [1, 2, 3]}
    assert len(calls) == 1
    assert calls[0].headers["Authorization"] == "Bearer mal-token"


@pytest.mark.anyio("asyncio")
async def test_mutations_bypass_the_cache(make_settings, cache) -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"status": "watching"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=API) as http_client:
        gateway, _ = build_gateway(make_settings(), http_client, cache)
        await gateway.request("PATCH", "/anime/20/my_list_status", data={"status": "watching"}, cache_key="patch")
        await gateway.request("PATCH", "/anime/20/my_list_status", data={"status": "watching"}, cache_key="patch")

    assert len(calls) == 2
    assert await cache.get(MAL_STORE, "patch") is None


@pytest.mark.anyio("asyncio")
async def test_unauthorized_response_refreshes_once_and_retries(make_settings, cache) -> None:
    seen_tokens: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/oauth2/token"):
            return httpx.Response(
                200,
                json={"access_token": "fresh-token", "refresh_token": "fresh-refresh", "expires_in": 3600},
            )
        token = request.headers["Authorization"].removeprefix("Bearer ")
        seen_tokens.append(token)
        if token == "mal-token":
            return httpx.Response(401, json={"error": "invalid_token"})
        return httpx.Response(200, json={"id": 20})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=API) as http_client:
        gateway, auth = build_gateway(make_settings(), http_client, cache)
        payload = await gateway.request("GET", "/anime/20")

    assert payload == {"id": 20}
    assert seen_tokens == ["mal-token", "fresh-token"]
    assert auth.get_access_token(Catalog.MAL) == "fresh-token"
    stored = await cache.get(TOKEN_STORE, "mal")
    assert stored is not None and stored.payload["refresh_token"] == "fresh-refresh"


@pytest.mark.anyio("asyncio")
async def test_second_unauthorized_response_is_fatal(make_settings) -> None:
    api_calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal api_calls
        if request.url.path.endswith("/oauth2/token"):
            return httpx.Response(200, json={"access_token": "still-bad"})
        api_calls += 1
        return httpx.Response(401, json={"message": "token revoked"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=API) as http_client:
        gateway, _ = build_gateway(make_settings(), http_client)
        with pytest.raises(UpstreamError) as excinfo:
            await gateway.request("GET", "/anime/20")

    assert excinfo.value.status == 401
    assert excinfo.value.message == "token revoked"
    assert api_calls == 2


@pytest.mark.anyio("asyncio")
async def test_expired_token_is_refreshed_before_sending(make_settings, clock) -> None:
    refreshes: list[dict[str, list[str]]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/oauth2/token"):
            refreshes.append(parse_qs(request.content.decode()))
            return httpx.Response(200, json={"access_token": "renewed"})
        assert request.headers["Authorization"] == "Bearer renewed"
        return httpx.Response(200, json=[])

    settings = make_settings(MAL_TOKEN_EXPIRES_AT=(clock() - timedelta(minutes=1)).isoformat())
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=API) as http_client:
        gateway, _ = build_gateway(settings, http_client, clock=clock)
        assert await gateway.request("GET", "/anime") == []

    assert len(refreshes) == 1
    assert refreshes[0]["grant_type"] == ["refresh_token"]
    assert refreshes[0]["refresh_token"] == ["mal-refresh"]


@pytest.mark.anyio("asyncio")
async def test_expired_token_gets_no_second_refresh_on_401(make_settings, clock) -> None:
    refreshes = 0
    api_calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal refreshes, api_calls
        if request.url.path.endswith("/oauth2/token"):
            refreshes += 1
            return httpx.Response(200, json={"access_token": f"renewed-{refreshes}"})
        api_calls += 1
        return httpx.Response(401, json={"error": "invalid_token"})

    settings = make_settings(MAL_TOKEN_EXPIRES_AT=(clock() - timedelta(days=1)).isoformat())
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=API) as http_client:
        gateway, _ = build_gateway(settings, http_client, clock=clock)
        with pytest.raises(UpstreamError) as excinfo:
            await gateway.request("GET", "/x")

    assert excinfo.value.status == 401
    assert refreshes == 1
    assert api_calls == 1


@pytest.mark.anyio("asyncio")
async def test_missing_token_raises_auth_error(make_settings) -> None:
    def handler(_: httpx.Request) -> httpx.Response:  # pragma: no cover - never reached
        raise AssertionError("no request expected")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=API) as http_client:
        gateway, _ = build_gateway(make_settings(MAL_ACCESS_TOKEN=""), http_client)
        with pytest.raises(AuthError):
            await gateway.request("GET", "/anime")


@pytest.mark.anyio("asyncio")
async def test_server_errors_surface_as_upstream_errors(make_settings) -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": "maintenance"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=API) as http_client:
        gateway, _ = build_gateway(make_settings(), http_client)
        with pytest.raises(UpstreamError) as excinfo:
            await gateway.request("GET", "/anime")

    assert excinfo.value.status == 503
    assert excinfo.value.message == "maintenance"


@pytest.mark.anyio("asyncio")
async def test_transport_errors_are_retried_then_reported(make_settings) -> None:
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise httpx.ConnectError("connection reset", request=request)
        return httpx.Response(200, json={"ok": True})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=API) as http_client:
        gateway, _ = build_gateway(make_settings(), http_client, max_retries=2)
        assert await gateway.request("GET", "/anime") == {"ok": True}

        gateway, _ = build_gateway(make_settings(), http_client, max_retries=1)
        attempts = -10
        with pytest.raises(UpstreamError) as excinfo:
            await gateway.request("GET", "/anime")

    assert excinfo.value.status is None
    assert attempts == -8


@pytest.mark.anyio("asyncio")
async def test_empty_body_decodes_to_none(make_settings) -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(204)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=API) as http_client:
        gateway, _ = build_gateway(make_settings(), http_client)
        assert await gateway.request("DELETE", "/anime/20/my_list_status") is None


@pytest.mark.anyio("asyncio")
async def test_trakt_refresh_posts_json_with_client_secret(make_settings) -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"access_token": "new-trakt", "expires_in": 7776000})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        auth = TokenManager(make_settings(), http_client)
        await auth.refresh(Catalog.TRAKT)

    assert bodies == [
        {
            "refresh_token": "trakt-refresh",
            "client_id": "trakt-client",
            "client_secret": "trakt-secret",
            "grant_type": "refresh_token",
        }
    ]
    assert auth.get_access_token(Catalog.TRAKT) == "new-trakt"
    assert auth.is_authenticated(Catalog.TRAKT)


@pytest.mark.anyio("asyncio")
async def test_rejected_refresh_raises_auth_error(make_settings) -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        auth = TokenManager(make_settings(), http_client)
        with pytest.raises(AuthError):
            await auth.refresh(Catalog.MAL)
        with pytest.raises(AuthError, match="No refresh token"):
            await TokenManager(make_settings(MAL_REFRESH_TOKEN=""), http_client).refresh(Catalog.MAL)
