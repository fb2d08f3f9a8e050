"""Helper client for the ids.moe anime cross-reference service."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..config import Settings
from ..errors import UpstreamError
from ..models import Catalog
from .throttle import RequestThrottle

logger = logging.getLogger(__name__)

PLATFORM_NAMES: dict[Catalog, str] = {
    Catalog.MAL: "myanimelist",
    Catalog.TRAKT: "trakt",
}
PLATFORM_ALIASES: dict[str, str] = {
    "mal": "myanimelist",
    "myanimelist": "myanimelist",
    "trakt": "trakt",
}


class IdsMoeClient:
    """Look up cross-platform identifiers for an anime."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        *,
        throttle: RequestThrottle | None = None,
    ):
        if not settings.ids_moe_api_key:
            raise ValueError("ids.moe API key is required when initialising IdsMoeClient")
        self._settings = settings
        self._client = http_client
        self._throttle = throttle or RequestThrottle(
            settings.ids_moe_rate.max_requests,
            settings.ids_moe_rate.window_seconds,
            spacing=settings.throttle_spacing_seconds,
            name="ids.moe",
        )

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.ids_moe_api_key}",
            "User-Agent": f"{self._settings.app_name} (trakt-mal-sync)",
        }

    async def lookup_by_source(
        self, platform: Catalog | str, native_id: str | int
    ) -> dict[str, Any]:
        """Return ``{platform: id}`` for every platform that knows this title."""

        name = self.platform_name(platform)
        data = await self._get(f"/ids/{native_id}", params={"platform": name})
        if not isinstance(data, dict):
            return {}
        return {
            key: value
            for key, value in data.items()
            if value not in (None, "", [], {})
        }

    async def search_by_title(self, title: str) -> list[dict[str, Any]]:
        cleaned = (title or "").strip()
        if not cleaned:
            return []
        data = await self._get("/search", params={"q": cleaned})
        if isinstance(data, dict):
            data = data.get("data") or data.get("results") or []
        if not isinstance(data, list):
            return []
        return [candidate for candidate in data if isinstance(candidate, dict)]

    @staticmethod
    def platform_name(platform: Catalog | str) -> str:
        if isinstance(platform, Catalog):
            return PLATFORM_NAMES[platform]
        name = PLATFORM_ALIASES.get(platform.strip().lower())
        if name is None:
            raise ValueError(f"Unsupported cross-reference platform: {platform!r}")
        return name

    @classmethod
    def identifier_for(cls, ids: dict[str, Any], catalog: Catalog) -> str | None:
        """Pick the identifier for ``catalog`` out of a lookup result."""

        value = ids.get(PLATFORM_NAMES[catalog])
        if value is None and catalog is Catalog.MAL:
            value = ids.get("mal")
        if isinstance(value, dict):
            value = value.get("id") or value.get("slug")
        if value in (None, ""):
            return None
        return str(value)

    async def _get(self, path: str, *, params: dict[str, Any]) -> Any:
        url = f"{str(self._settings.ids_moe_api_url).rstrip('/')}{path}"

        async def _call() -> httpx.Response:
            return await self._client.get(url, params=params, headers=self._headers())

        try:
            response = await self._throttle.schedule(_call)
        except httpx.HTTPError as exc:
            logger.warning("ids.moe request %s failed: %s", path, exc)
            raise UpstreamError(None, str(exc), service="ids.moe") from exc
        if response.status_code == 404:
            return None
        if not response.is_success:
            raise UpstreamError(
                response.status_code,
                response.text or "ids.moe error",
                service="ids.moe",
            )
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(
                response.status_code, "Invalid JSON from ids.moe", service="ids.moe"
            ) from exc
