"""Utilities for communicating with the MyAnimeList v2 API."""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

from ..config import Settings
from ..models import Catalog, Entry, WatchStatus
from ..utils import parse_year
from .cache import MAL_STORE, CacheStore
from .gateway import CatalogGateway, GatewayConfig
from .oauth import TokenManager
from .throttle import RequestThrottle

logger = logging.getLogger(__name__)

LIST_PAGE_SIZE = 1000
ANIME_FIELDS = "alternative_titles,num_episodes,start_season,start_date"
LIST_FIELDS = f"list_status,{ANIME_FIELDS}"
DETAIL_FIELDS = f"{ANIME_FIELDS},synopsis,mean,genres"

MAL_STATUS_TO_WATCH: dict[str, WatchStatus] = {
    "watching": WatchStatus.WATCHING,
    "completed": WatchStatus.COMPLETED,
    "plan_to_watch": WatchStatus.PLANNED,
    "on_hold": WatchStatus.ON_HOLD,
    "dropped": WatchStatus.DROPPED,
}
WATCH_TO_MAL_STATUS: dict[WatchStatus, str] = {
    status: native for native, status in MAL_STATUS_TO_WATCH.items()
}

UPDATABLE_FIELDS = (
    "status",
    "score",
    "num_watched_episodes",
    "is_rewatching",
    "start_date",
    "finish_date",
)


def build_mal_gateway(
    settings: Settings,
    http_client: httpx.AsyncClient,
    auth: TokenManager,
    cache: CacheStore | None = None,
    *,
    throttle: RequestThrottle | None = None,
) -> CatalogGateway:
    """Return a gateway configured with MyAnimeList's rate limit."""

    if throttle is None:
        throttle = RequestThrottle(
            settings.mal_rate.max_requests,
            settings.mal_rate.window_seconds,
            spacing=settings.throttle_spacing_seconds,
            name="MyAnimeList",
        )
    config = GatewayConfig(
        service=Catalog.MAL,
        cache_store=MAL_STORE,
        default_headers={"User-Agent": f"{settings.app_name} (trakt-mal-sync)"},
        max_retries=settings.request_retry_limit,
    )
    return CatalogGateway(config, http_client, throttle, auth, cache)


class MALClient:
    """Wrapper around the MyAnimeList endpoints used by the sync."""

    def __init__(self, settings: Settings, gateway: CatalogGateway):
        self._settings = settings
        self._gateway = gateway

    @property
    def gateway(self) -> CatalogGateway:
        return self._gateway

    async def get_anime_list(
        self,
        status: str | None = None,
        *,
        limit: int = LIST_PAGE_SIZE,
        offset: int = 0,
    ) -> dict[str, Any]:
        """Fetch one page of the user's anime list."""

        params: dict[str, Any] = {"limit": limit, "offset": offset, "fields": LIST_FIELDS}
        if status:
            params["status"] = status
        data = await self._gateway.request(
            "GET",
            "/users/@me/animelist",
            params=params,
            cache_key=f"@me-{status or 'all'}-{offset}",
            cache_ttl=self._settings.mal_cache_seconds,
        )
        return data if isinstance(data, dict) else {}

    async def get_all_anime(
        self,
        status: str | None = None,
        *,
        start_offset: int = 0,
        limit: int = LIST_PAGE_SIZE,
    ) -> list[dict[str, Any]]:
        """Follow ``paging.next`` until the list is exhausted.

        ``start_offset`` lets a caller resume an interrupted fetch.
        """

        collected: list[dict[str, Any]] = []
        offset = start_offset
        while True:
            page = await self.get_anime_list(status, limit=limit, offset=offset)
            items = page.get("data") or []
            collected.extend(item for item in items if isinstance(item, dict))
            paging = page.get("paging") or {}
            if not items or not paging.get("next"):
                break
            offset += limit
        return collected

    async def get_anime(self, anime_id: int | str) -> dict[str, Any]:
        data = await self._gateway.request(
            "GET", f"/anime/{anime_id}", params={"fields": DETAIL_FIELDS}
        )
        return data if isinstance(data, dict) else {}

    async def update_status(self, anime_id: int | str, fields: Mapping[str, Any]) -> dict[str, Any]:
        """PATCH the user's list status for one anime."""

        form: dict[str, str] = {}
        for name in UPDATABLE_FIELDS:
            value = fields.get(name)
            if value is None:
                continue
            if isinstance(value, bool):
                form[name] = "true" if value else "false"
            elif isinstance(value, WatchStatus):
                form[name] = WATCH_TO_MAL_STATUS[value]
            else:
                form[name] = str(value)
        if not form:
            raise ValueError("No MyAnimeList fields to update")
        data = await self._gateway.request(
            "PATCH", f"/anime/{anime_id}/my_list_status", data=form
        )
        return data if isinstance(data, dict) else {}

    async def delete_entry(self, anime_id: int | str) -> None:
        await self._gateway.request("DELETE", f"/anime/{anime_id}/my_list_status")

    async def search_anime(self, query: str, *, limit: int = 10) -> list[dict[str, Any]]:
        """Search MyAnimeList and return the anime nodes."""

        cleaned = (query or "").strip()
        # MAL rejects queries shorter than three characters.
        if len(cleaned) < 3:
            return []
        data = await self._gateway.request(
            "GET",
            "/anime",
            params={"q": cleaned, "limit": limit, "fields": ANIME_FIELDS},
        )
        if not isinstance(data, dict):
            return []
        nodes: list[dict[str, Any]] = []
        for item in data.get("data") or []:
            if isinstance(item, dict) and isinstance(item.get("node"), dict):
                nodes.append(item["node"])
        return nodes

    async def fetch_entry(self, anime_id: int | str) -> Entry | None:
        return self.node_to_entry(await self.get_anime(anime_id))

    async def search_entries(self, query: str) -> list[Entry]:
        nodes = await self.search_anime(query)
        entries = (self.node_to_entry(node) for node in nodes)
        return [entry for entry in entries if entry is not None]

    async def fetch_entries(self) -> list[Entry]:
        items = await self.get_all_anime()
        entries: list[Entry] = []
        for item in items:
            entry = self.node_to_entry(item.get("node"), item.get("list_status"))
            if entry is not None:
                entries.append(entry)
        logger.info("Loaded %s MyAnimeList entries", len(entries))
        return entries

    @staticmethod
    def node_to_entry(node: Any, list_status: Any = None) -> Entry | None:
        """Normalize an anime node (plus optional list status) into an :class:`Entry`."""

        if not isinstance(node, dict) or node.get("id") is None:
            return None
        status_payload = list_status if isinstance(list_status, dict) else {}
        status = MAL_STATUS_TO_WATCH.get(
            str(status_payload.get("status") or ""), WatchStatus.PLANNED
        )
        episodes = status_payload.get("num_episodes_watched")
        score = status_payload.get("score")
        return Entry(
            native_id=str(node["id"]),
            catalog=Catalog.MAL,
            title=str(node.get("title") or node["id"]),
            alternative_titles=tuple(MALClient.alternative_titles(node)),
            year=MALClient.release_year(node),
            status=status,
            episodes_watched=episodes if isinstance(episodes, int) and episodes > 0 else 0,
            score=score if isinstance(score, int) and 0 <= score <= 10 else 0,
        )

    @staticmethod
    def alternative_titles(node: Mapping[str, Any]) -> list[str]:
        alternatives = node.get("alternative_titles")
        if not isinstance(alternatives, dict):
            return []
        titles: list[str] = []
        for value in alternatives.values():
            if isinstance(value, str) and value.strip():
                titles.append(value.strip())
            elif isinstance(value, list):
                titles.extend(str(item).strip() for item in value if str(item).strip())
        return titles

    @staticmethod
    def release_year(node: Mapping[str, Any]) -> int | None:
        season = node.get("start_season")
        if isinstance(season, dict):
            year = parse_year(season.get("year"))
            if year is not None:
                return year
        return parse_year(node.get("start_date"))
