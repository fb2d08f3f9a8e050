"""Utilities for communicating with the Trakt API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from ..config import Settings
from ..models import Catalog, Entry, WatchStatus
from ..utils import slugify
from .cache import TRAKT_STORE, CacheStore
from .gateway import CatalogGateway, GatewayConfig
from .oauth import TokenManager
from .throttle import RequestThrottle

logger = logging.getLogger(__name__)

PAGE_SIZE = 100


def build_trakt_gateway(
    settings: Settings,
    http_client: httpx.AsyncClient,
    auth: TokenManager,
    cache: CacheStore | None = None,
    *,
    throttle: RequestThrottle | None = None,
) -> CatalogGateway:
    """Return a gateway configured with Trakt's headers and rate limit."""

    headers = {
        "trakt-api-version": "2",
        "User-Agent": f"{settings.app_name} (trakt-mal-sync)",
    }
    if settings.trakt_client_id:
        headers["trakt-api-key"] = settings.trakt_client_id
    if throttle is None:
        throttle = RequestThrottle(
            settings.trakt_rate.max_requests,
            settings.trakt_rate.window_seconds,
            spacing=settings.throttle_spacing_seconds,
            name="Trakt",
        )
    config = GatewayConfig(
        service=Catalog.TRAKT,
        cache_store=TRAKT_STORE,
        default_headers=headers,
        max_retries=settings.request_retry_limit,
    )
    return CatalogGateway(config, http_client, throttle, auth, cache)


class TraktClient:
    """Thin wrapper around the Trakt HTTP API.

    Trakt has no per-title status. Watched shows count as completed once every
    aired episode has been seen (watching otherwise), the watchlist holds
    planned shows and the configured custom list holds shows in progress.
    """

    def __init__(self, settings: Settings, gateway: CatalogGateway):
        self._settings = settings
        self._gateway = gateway
        self._username = settings.trakt_username

    @property
    def gateway(self) -> CatalogGateway:
        return self._gateway

    async def get_watched_shows(self) -> list[dict[str, Any]]:
        """Fetch the user's watched shows with per-season progress."""

        data = await self._gateway.request(
            "GET",
            f"/users/{self._username}/watched/shows",
            params={"extended": "full"},
            cache_key=f"{self._username}-watched",
            cache_ttl=self._settings.trakt_cache_seconds,
        )
        return data if isinstance(data, list) else []

    async def get_watchlist(self) -> list[dict[str, Any]]:
        return await self._paginate(
            f"/users/{self._username}/watchlist/shows",
            cache_prefix=f"{self._username}-watchlist",
        )

    async def get_ratings(self) -> list[dict[str, Any]]:
        data = await self._gateway.request(
            "GET",
            f"/users/{self._username}/ratings/shows",
            cache_key=f"{self._username}-ratings",
            cache_ttl=self._settings.trakt_cache_seconds,
        )
        return data if isinstance(data, list) else []

    async def get_custom_lists(self) -> list[dict[str, Any]]:
        data = await self._gateway.request(
            "GET",
            f"/users/{self._username}/lists",
            cache_key=f"{self._username}-lists",
            cache_ttl=self._settings.trakt_cache_seconds,
        )
        return data if isinstance(data, list) else []

    async def get_list_items(self, list_id: str | int) -> list[dict[str, Any]]:
        """Fetch the shows on one of the user's custom lists."""

        return await self._paginate(
            f"/users/{self._username}/lists/{list_id}/items/shows",
            cache_prefix=f"{self._username}-list-{list_id}",
        )

    async def get_show(self, show_id: str | int) -> dict[str, Any]:
        data = await self._gateway.request(
            "GET", f"/shows/{show_id}", params={"extended": "full"}
        )
        return data if isinstance(data, dict) else {}

    async def search_shows(self, query: str, *, limit: int = 10) -> list[dict[str, Any]]:
        """Search Trakt for shows and return the inner show payloads."""

        data = await self._gateway.request(
            "GET",
            "/search/show",
            params={"query": query, "extended": "full", "limit": limit},
        )
        if not isinstance(data, list):
            return []
        shows: list[dict[str, Any]] = []
        for result in data:
            if isinstance(result, dict) and isinstance(result.get("show"), dict):
                shows.append(result["show"])
        return shows

    async def create_list(
        self,
        name: str,
        *,
        description: str | None = None,
        privacy: str = "private",
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": name, "privacy": privacy}
        if description:
            payload["description"] = description
        data = await self._gateway.request(
            "POST", f"/users/{self._username}/lists", json=payload
        )
        await self._gateway.invalidate(f"{self._username}-lists")
        return data if isinstance(data, dict) else {}

    async def add_items_to_list(self, list_id: str | int, slugs: list[str]) -> dict[str, Any]:
        data = await self._gateway.request(
            "POST",
            f"/users/{self._username}/lists/{list_id}/items",
            json=self._shows_payload(slugs),
        )
        return data if isinstance(data, dict) else {}

    async def remove_items_from_list(
        self, list_id: str | int, slugs: list[str]
    ) -> dict[str, Any]:
        data = await self._gateway.request(
            "POST",
            f"/users/{self._username}/lists/{list_id}/items/remove",
            json=self._shows_payload(slugs),
        )
        return data if isinstance(data, dict) else {}

    async def add_to_history(self, slugs: list[str]) -> dict[str, Any]:
        data = await self._gateway.request(
            "POST", "/sync/history", json=self._shows_payload(slugs)
        )
        return data if isinstance(data, dict) else {}

    async def add_to_watchlist(self, slugs: list[str]) -> dict[str, Any]:
        data = await self._gateway.request(
            "POST", "/sync/watchlist", json=self._shows_payload(slugs)
        )
        return data if isinstance(data, dict) else {}

    async def remove_from_watchlist(self, slugs: list[str]) -> dict[str, Any]:
        data = await self._gateway.request(
            "POST", "/sync/watchlist/remove", json=self._shows_payload(slugs)
        )
        return data if isinstance(data, dict) else {}

    async def add_ratings(self, ratings: dict[str, int]) -> dict[str, Any]:
        """Rate shows on Trakt's 1-10 scale, keyed by slug."""

        payload = {
            "shows": [
                {"rating": rating, "ids": {"slug": slug}}
                for slug, rating in ratings.items()
            ]
        }
        data = await self._gateway.request("POST", "/sync/ratings", json=payload)
        return data if isinstance(data, dict) else {}

    async def find_list(self, name: str) -> dict[str, Any] | None:
        """Return the user's custom list matching ``name`` by name or slug."""

        wanted = slugify(name)
        for entry in await self.get_custom_lists():
            if not isinstance(entry, dict):
                continue
            ids = entry.get("ids") or {}
            if entry.get("name") == name or ids.get("slug") == wanted:
                return entry
        return None

    async def ensure_list(self, name: str) -> str:
        """Return the id of the named custom list, creating it when missing."""

        existing = await self.find_list(name)
        if existing is None:
            logger.info("Creating Trakt list %s", name)
            existing = await self.create_list(
                name, description="Synced from MyAnimeList"
            )
        ids = existing.get("ids") or {}
        list_id = ids.get("trakt") or ids.get("slug")
        if list_id is None:
            raise ValueError(f"Trakt list {name!r} has no identifier")
        return str(list_id)

    async def apply_status(self, slug: str, status: WatchStatus) -> None:
        """Move a show into the Trakt collection that represents ``status``.

        The show is also taken off the watchlist or watching list it leaves,
        so that :meth:`fetch_entries` reads ``status`` back. Watch history is
        never removed.
        """

        if status is WatchStatus.COMPLETED:
            await self.add_to_history([slug])
            await self.remove_from_watchlist([slug])
            await self._remove_from_watching_list(slug)
        elif status is WatchStatus.PLANNED:
            await self.add_to_watchlist([slug])
            await self._remove_from_watching_list(slug)
        elif status in (WatchStatus.WATCHING, WatchStatus.ON_HOLD):
            list_id = await self.ensure_list(self._settings.trakt_watching_list)
            await self.add_items_to_list(list_id, [slug])
            await self.remove_from_watchlist([slug])
        else:
            raise ValueError(f"Trakt cannot represent status {status.value!r}")

    async def _remove_from_watching_list(self, slug: str) -> None:
        list_id = await self._watching_list_id()
        if list_id is not None:
            await self.remove_items_from_list(list_id, [slug])

    async def fetch_entry(self, show_id: str | int) -> Entry | None:
        show = await self.get_show(show_id)
        return self.show_to_entry(show)

    async def search_entries(self, query: str) -> list[Entry]:
        shows = await self.search_shows(query)
        entries = (self.show_to_entry(show) for show in shows)
        return [entry for entry in entries if entry is not None]

    async def fetch_entries(self) -> list[Entry]:
        """Return every show the user tracks on Trakt, one entry per slug."""

        watched, watchlist, ratings, watching = await asyncio.gather(
            self.get_watched_shows(),
            self.get_watchlist(),
            self.get_ratings(),
            self._get_watching_list_items(),
        )

        scores: dict[str, int] = {}
        for item in ratings:
            show = item.get("show") if isinstance(item, dict) else None
            slug = self._slug(show)
            rating = item.get("rating") if isinstance(item, dict) else None
            if slug and isinstance(rating, int):
                scores[slug] = rating

        entries: dict[str, Entry] = {}

        def _add(show: Any, status: WatchStatus, episodes: int = 0) -> None:
            entry = self.show_to_entry(
                show,
                status=status,
                episodes=episodes,
                score=scores.get(self._slug(show) or "", 0),
            )
            if entry is not None and entry.native_id not in entries:
                entries[entry.native_id] = entry

        for item in watched:
            if not isinstance(item, dict):
                continue
            show = item.get("show") or {}
            episodes = self._count_watched_episodes(item)
            aired = show.get("aired_episodes") if isinstance(show, dict) else None
            if isinstance(aired, int) and aired > 0 and episodes < aired:
                status = WatchStatus.WATCHING
            else:
                status = WatchStatus.COMPLETED
            _add(show, status, episodes)
        for item in watching:
            if isinstance(item, dict):
                _add(item.get("show"), WatchStatus.WATCHING)
        for item in watchlist:
            if isinstance(item, dict):
                _add(item.get("show"), WatchStatus.PLANNED)

        logger.info("Loaded %s Trakt shows", len(entries))
        return list(entries.values())

    async def _watching_list_id(self) -> str | None:
        watching_list = await self.find_list(self._settings.trakt_watching_list)
        if watching_list is None:
            return None
        ids = watching_list.get("ids") or {}
        list_id = ids.get("trakt") or ids.get("slug")
        return str(list_id) if list_id is not None else None

    async def _get_watching_list_items(self) -> list[dict[str, Any]]:
        list_id = await self._watching_list_id()
        if list_id is None:
            return []
        return await self.get_list_items(list_id)

    async def _paginate(self, path: str, *, cache_prefix: str) -> list[dict[str, Any]]:
        collected: list[dict[str, Any]] = []
        page = 1
        while True:
            data = await self._gateway.request(
                "GET",
                path,
                params={"page": page, "limit": PAGE_SIZE, "extended": "full"},
                cache_key=f"{cache_prefix}-{page}",
                cache_ttl=self._settings.trakt_cache_seconds,
            )
            if not isinstance(data, list) or not data:
                break
            collected.extend(item for item in data if isinstance(item, dict))
            if len(data) < PAGE_SIZE:
                break
            page += 1
        return collected

    @classmethod
    def show_to_entry(
        cls,
        show: Any,
        *,
        status: WatchStatus = WatchStatus.PLANNED,
        episodes: int = 0,
        score: int = 0,
    ) -> Entry | None:
        """Normalize a Trakt show payload into an :class:`Entry`."""

        slug = cls._slug(show)
        if not slug:
            return None
        year = show.get("year")
        return Entry(
            native_id=slug,
            catalog=Catalog.TRAKT,
            title=str(show.get("title") or slug),
            year=year if isinstance(year, int) else None,
            status=status,
            episodes_watched=max(0, episodes),
            score=score if 0 <= score <= 10 else 0,
        )

    @staticmethod
    def _slug(show: Any) -> str | None:
        if not isinstance(show, dict):
            return None
        ids = show.get("ids") or {}
        slug = ids.get("slug") if isinstance(ids, dict) else None
        return str(slug) if slug else None

    @staticmethod
    def _count_watched_episodes(item: dict[str, Any]) -> int:
        seasons = item.get("seasons")
        if not isinstance(seasons, list) or not seasons:
            plays = item.get("plays")
            return plays if isinstance(plays, int) else 0
        count = 0
        for season in seasons:
            if not isinstance(season, dict) or season.get("number") == 0:
                continue
            episodes = season.get("episodes") or []
            count += sum(1 for episode in episodes if isinstance(episode, dict))
        return count

    @staticmethod
    def _shows_payload(slugs: list[str]) -> dict[str, Any]:
        return {"shows": [{"ids": {"slug": slug}} for slug in slugs]}
