"""Authenticated, throttled and cached access to a catalog HTTP API."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

import httpx

from ..errors import AuthError, UpstreamError
from ..models import Catalog
from .cache import CacheStore
from .oauth import TokenManager
from .throttle import RequestThrottle

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class GatewayConfig:
    """Per-service knobs for a :class:`CatalogGateway`."""

    service: Catalog
    cache_store: str
    default_headers: Mapping[str, str] = field(default_factory=dict)
    max_retries: int = 3


class CatalogGateway:
    """Send requests to one catalog service.

    Every request goes through the service's throttle. The held access token
    is refreshed up front when expired, or else once when the upstream
    answers 401. A call never refreshes twice, so a 401 after a refresh is
    final. Reads carrying a ``cache_key`` are served from and written to the
    cache store; mutations never touch it.
    """

    def __init__(
        self,
        config: GatewayConfig,
        http_client: httpx.AsyncClient,
        throttle: RequestThrottle,
        auth: TokenManager,
        cache: CacheStore | None = None,
        *,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        self.config = config
        self._client = http_client
        self._throttle = throttle
        self._auth = auth
        self._cache = cache
        self._sleep = sleep

    @property
    def service(self) -> Catalog:
        return self.config.service

    @property
    def throttle(self) -> RequestThrottle:
        return self._throttle

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        data: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        cache_key: str | None = None,
        cache_ttl: float | None = None,
    ) -> Any:
        """Return the decoded JSON body of a successful response."""

        cacheable = method.upper() == "GET" and cache_key is not None and self._cache is not None
        if cacheable:
            cached = await self._cache.get(self.config.cache_store, cache_key)
            if cached is not None:
                logger.debug("%s cache hit for %s", self.service.label, cache_key)
                return cached.payload

        response = await self._send_authorized(
            method, path, params=params, json=json, data=data, headers=headers
        )
        payload = self._decode(response)

        if cacheable:
            await self._cache.set(self.config.cache_store, cache_key, payload, ttl=cache_ttl)
        return payload

    async def invalidate(self, cache_key: str | None = None) -> None:
        """Drop one cached response, or the whole store when no key is given."""

        if self._cache is None:
            return
        if cache_key is None:
            await self._cache.clear(self.config.cache_store)
        else:
            await self._cache.remove(self.config.cache_store, cache_key)

    async def _send_authorized(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        refreshed = False
        if self._auth.is_expired(self.service):
            await self._auth.refresh(self.service)
            refreshed = True

        response = await self._send(method, path, **kwargs)
        if response.status_code == 401 and not refreshed:
            logger.info(
                "%s rejected the access token for %s %s, refreshing once",
                self.service.label,
                method,
                path,
            )
            await self._auth.refresh(self.service)
            response = await self._send(method, path, **kwargs)

        if response.status_code == 401:
            raise UpstreamError(
                401,
                self._error_message(response),
                service=self.service.label,
            )
        if not response.is_success:
            logger.warning(
                "%s %s %s failed with %s: %s",
                self.service.label,
                method,
                path,
                response.status_code,
                response.text,
            )
            raise UpstreamError(
                response.status_code,
                self._error_message(response),
                service=self.service.label,
            )
        return response

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        data: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        token = self._auth.get_access_token(self.service)
        if not token:
            raise AuthError(self.service.label)

        merged_headers = {
            **self.config.default_headers,
            "Authorization": f"Bearer {token}",
            **(headers or {}),
        }

        async def _call() -> httpx.Response:
            return await self._client.request(
                method,
                path,
                params=params,
                json=json,
                data=data,
                headers=merged_headers,
            )

        attempt = 0
        while True:
            try:
                return await self._throttle.schedule(_call)
            except httpx.TransportError as exc:
                attempt += 1
                if attempt <= self.config.max_retries:
                    backoff = min(2 ** (attempt - 1), 5) + (0.1 * attempt)
                    logger.info(
                        "Transient error talking to %s (%s). Retrying %s in %.1fs",
                        self.service.label,
                        exc.__class__.__name__,
                        path,
                        backoff,
                    )
                    await self._sleep(backoff)
                    continue
                raise UpstreamError(
                    None,
                    str(exc) or exc.__class__.__name__,
                    service=self.service.label,
                ) from exc

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(
                response.status_code, "Response was not valid JSON"
            ) from exc

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            for key in ("error_description", "message", "error"):
                value = body.get(key)
                if isinstance(value, str) and value:
                    return value
        return response.reason_phrase or f"HTTP {response.status_code}"
