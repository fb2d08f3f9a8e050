"""Tests for the MyAnimeList API client."""

from __future__ import annotations

from typing import Any, Callable
from urllib.parse import parse_qs

import httpx
import pytest

from app.models import WatchStatus
from app.services.cache import MAL_STORE
from app.services.mal import MALClient, build_mal_gateway
from app.services.oauth import TokenManager


def node(anime_id: int, title: str, **extra: Any) -> dict[str, Any]:
    return {"id": anime_id, "title": title, **extra}


def build_client(settings, handler: Callable[[httpx.Request], httpx.Response], cache=None):
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://api.example.com"
    )
    auth = TokenManager(settings, http_client)
    return http_client, MALClient(settings, build_mal_gateway(settings, http_client, auth, cache))


@pytest.mark.anyio("asyncio")
async def test_get_all_anime_follows_paging_next(make_settings, cache) -> None:
    offsets: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        offset = int(request.url.params["offset"])
        offsets.append(offset)
        assert request.url.params["limit"] == "2"
        if offset == 0:
            return httpx.Response(
                200,
                json={
                    "data": [{"node": node(1, "A")}, {"node": node(2, "B")}],
                    "paging": {"next": "https://api.example.com/users/@me/animelist?offset=2"},
                },
            )
        return httpx.Response(200, json={"data": [{"node": node(3, "C")}], "paging": {}})

    http_client, client = build_client(make_settings(), handler, cache)
    async with http_client:
        items = await client.get_all_anime(limit=2)
        again = await client.get_all_anime(limit=2)

    assert [item["node"]["id"] for item in items] == [1, 2, 3]
    assert again == items
    assert offsets == [0, 2]
    assert await cache.get(MAL_STORE, "@me-all-0") is not None
    assert await cache.get(MAL_STORE, "@me-all-2") is not None


@pytest.mark.anyio("asyncio")
async def test_get_all_anime_can_resume_from_offset(make_settings) -> None:
    offsets: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        offsets.append(int(request.url.params["offset"]))
        assert request.url.params["status"] == "watching"
        return httpx.Response(200, json={"data": [{"node": node(9, "Z")}], "paging": {}})

    http_client, client = build_client(make_settings(), handler)
    async with http_client:
        items = await client.get_all_anime("watching", start_offset=1000)

    assert offsets == [1000]
    assert len(items) == 1


@pytest.mark.anyio("asyncio")
async def test_fetch_entries_normalizes_list_status(make_settings) -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "data": [
                    {
                        "node": node(
                            20,
                            "Naruto",
                            start_season={"year": 2002, "season": "fall"},
                            alternative_titles={"synonyms": ["NARUTO"], "en": "Naruto", "ja": "ナルト"},
                        ),
                        "list_status": {"status": "watching", "num_episodes_watched": 50, "score": 8},
                    },
                    {
                        "node": node(33, "Berserk", start_date="1997-10-08"),
                        "list_status": {"status": "plan_to_watch", "num_episodes_watched": 0, "score": 0},
                    },
                ],
                "paging": {},
            },
        )

    http_client, client = build_client(make_settings(), handler)
    async with http_client:
        entries = await client.fetch_entries()

    naruto, berserk = entries
    assert (naruto.native_id, naruto.status, naruto.episodes_watched, naruto.score) == (
        "20",
        WatchStatus.WATCHING,
        50,
        8,
    )
    assert naruto.year == 2002
    assert "ナルト" in naruto.alternative_titles
    assert berserk.status is WatchStatus.PLANNED
    assert berserk.year == 1997


@pytest.mark.anyio("asyncio")
async def test_update_status_sends_native_form_fields(make_settings) -> None:
    forms: list[dict[str, list[str]]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "PATCH"
        assert request.url.path == "/anime/20/my_list_status"
        forms.append(parse_qs(request.content.decode()))
        return httpx.Response(200, json={"status": "plan_to_watch"})

    http_client, client = build_client(make_settings(), handler)
    async with http_client:
        await client.update_status(
            20,
            {"status": WatchStatus.PLANNED, "num_watched_episodes": None, "score": 7, "is_rewatching": False},
        )
        with pytest.raises(ValueError):
            await client.update_status(20, {"status": None})

    assert forms == [{"status": ["plan_to_watch"], "score": ["7"], "is_rewatching": ["false"]}]


@pytest.mark.anyio("asyncio")
async def test_short_search_queries_skip_the_network(make_settings) -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(
            200,
            json={"data": [{"node": node(16498, "Shingeki no Kyojin", start_season={"year": 2013})}]},
        )

    http_client, client = build_client(make_settings(), handler)
    async with http_client:
        assert await client.search_entries("K") == []
        results = await client.search_entries("Attack on Titan")

    assert len(calls) == 1
    assert [(entry.native_id, entry.year) for entry in results] == [("16498", 2013)]
