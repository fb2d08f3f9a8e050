"""Entry point for the FastAPI-powered Trakt ⇄ MyAnimeList sync service."""

from __future__ import annotations

import logging
from collections import Counter
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import settings
from .database import Database
from .errors import AuthError, UpstreamError
from .models import Catalog, Direction, Operation, WatchStatus
from .services.cache import ALL_STORES, MAPPING_STORE, TOKEN_STORE, CacheStore
from .services.engine import ExecutionEngine
from .services.ids_moe import IdsMoeClient
from .services.mal import MALClient, build_mal_gateway
from .services.mapping import IdentityResolver, MappingStore, MatchScorer
from .services.oauth import TokenManager
from .services.sync import SyncService
from .services.trakt import TraktClient, build_trakt_gateway

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


class SyncRequest(BaseModel):
    direction: str = Direction.TRAKT_TO_MAL.value


class ExecuteRequest(SyncRequest):
    operations: list[Operation] | None = None


class ListSyncRequest(BaseModel):
    list_name: str = Field(min_length=1)
    status: WatchStatus = WatchStatus.WATCHING


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    trakt_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.trakt_api_url),
            timeout=httpx.Timeout(20.0, connect=10.0),
        )
    )
    mal_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.mal_api_url),
            timeout=httpx.Timeout(20.0, connect=10.0),
        )
    )
    auth_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=5.0))
    )
    database = Database(settings.database_url)
    await database.create_all()

    cache = CacheStore(database.session_factory)
    await cache.clear_expired()

    auth = TokenManager(settings, auth_http, cache)
    await auth.load()

    trakt = TraktClient(settings, build_trakt_gateway(settings, trakt_http, auth, cache))
    mal = MALClient(settings, build_mal_gateway(settings, mal_http, auth, cache))

    ids_client = None
    if settings.cross_reference_enabled:
        ids_client = IdsMoeClient(settings, auth_http)

    resolver = IdentityResolver.build(
        MappingStore(cache, ttl_seconds=settings.mapping_cache_seconds),
        {Catalog.TRAKT: trakt, Catalog.MAL: mal},
        MatchScorer.from_settings(settings),
        ids_client,
    )
    engine = ExecutionEngine(
        trakt, mal, cache, operation_delay=settings.operation_delay_seconds
    )

    app.state.sync_service = SyncService(trakt, mal, resolver, engine, cache)
    app.state.cache = cache
    app.state.database = database

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="One-way reconciliation between Trakt and MyAnimeList",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_sync_service(app: FastAPI) -> SyncService:
    service = getattr(app.state, "sync_service", None)
    if not isinstance(service, SyncService):
        raise RuntimeError("Sync service not initialised")
    return service


def get_cache(app: FastAPI) -> CacheStore:
    cache = getattr(app.state, "cache", None)
    if not isinstance(cache, CacheStore):
        raise RuntimeError("Cache store not initialised")
    return cache


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.exception_handler(AuthError)
    async def _auth_error(_: Request, exc: AuthError) -> JSONResponse:
        return JSONResponse(
            status_code=401, content={"detail": str(exc), "service": exc.service}
        )

    @fastapi_app.exception_handler(UpstreamError)
    async def _upstream_error(_: Request, exc: UpstreamError) -> JSONResponse:
        logger.warning("Upstream failure from %s: %s", exc.service, exc.message)
        return JSONResponse(
            status_code=502,
            content={
                "detail": exc.message,
                "service": exc.service,
                "upstream_status": exc.status,
            },
        )

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.post("/api/sync/preview")
    async def preview(payload: SyncRequest) -> dict[str, Any]:
        direction = _parse_direction(payload.direction)
        service = get_sync_service(fastapi_app)
        operations = await service.analyze(direction)
        return {
            "direction": direction.value,
            "summary": dict(Counter(operation.type for operation in operations)),
            "operations": [
                operation.model_dump(mode="json", by_alias=True)
                for operation in operations
            ],
        }

    @fastapi_app.post("/api/sync/execute")
    async def execute(payload: ExecuteRequest) -> dict[str, Any]:
        direction = _parse_direction(payload.direction)
        service = get_sync_service(fastapi_app)
        operations = payload.operations
        if operations is None:
            operations = await service.analyze(direction)
        result = await service.execute(operations, direction=direction)
        return result.to_payload()

    @fastapi_app.get("/api/sync/history")
    async def history(limit: int = 20) -> dict[str, Any]:
        if limit < 1:
            raise HTTPException(status_code=400, detail="limit must be positive")
        service = get_sync_service(fastapi_app)
        runs = await service.history(limit)
        lists = await service.list_history(limit)
        return {
            "runs": [run.to_payload() for run in runs],
            "lists": [entry.model_dump(mode="json") for entry in lists],
        }

    @fastapi_app.post("/api/sync/list")
    async def sync_list(payload: ListSyncRequest) -> dict[str, Any]:
        service = get_sync_service(fastapi_app)
        result = await service.sync_list(payload.list_name, payload.status)
        return result.model_dump(mode="json")

    @fastapi_app.delete("/api/mappings")
    async def clear_mappings() -> dict[str, Any]:
        service = get_sync_service(fastapi_app)
        await service.resolver.clear_mappings()
        return {"cleared": [MAPPING_STORE]}

    @fastapi_app.delete("/api/cache")
    async def clear_cache() -> dict[str, Any]:
        cache = get_cache(fastapi_app)
        cleared = [store for store in ALL_STORES if store != TOKEN_STORE]
        for store in cleared:
            await cache.clear(store)
        return {"cleared": cleared}


def _parse_direction(value: str) -> Direction:
    try:
        return Direction.parse(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
