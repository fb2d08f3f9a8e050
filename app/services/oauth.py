"""Access-token bookkeeping and refresh for Trakt and MyAnimeList."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

import httpx

from ..config import Settings
from ..errors import AuthError
from ..models import Catalog
from .cache import TOKEN_STORE, CacheStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TokenState:
    """Tokens currently held for one service."""

    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    generation: int = 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


class TokenManager:
    """Hold OAuth tokens and refresh them with the stored refresh token.

    The authorization-code exchange happens elsewhere; tokens arrive from the
    settings or from a previous refresh persisted in the cache store.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        cache: CacheStore | None = None,
        *,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._settings = settings
        self._client = http_client
        self._cache = cache
        self._clock = clock
        self._tokens: dict[Catalog, TokenState] = {
            Catalog.TRAKT: TokenState(
                access_token=settings.trakt_access_token,
                refresh_token=settings.trakt_refresh_token,
                expires_at=settings.trakt_token_expires_at,
            ),
            Catalog.MAL: TokenState(
                access_token=settings.mal_access_token,
                refresh_token=settings.mal_refresh_token,
                expires_at=settings.mal_token_expires_at,
            ),
        }
        self._locks: dict[Catalog, asyncio.Lock] = {}

    async def load(self) -> None:
        """Restore tokens persisted by earlier refreshes."""

        if self._cache is None:
            return
        for service in Catalog:
            cached = await self._cache.get(TOKEN_STORE, service.value)
            if cached is None or not isinstance(cached.payload, dict):
                continue
            payload = cached.payload
            expires_raw = payload.get("expires_at")
            state = self._tokens[service]
            state.access_token = payload.get("access_token") or state.access_token
            state.refresh_token = payload.get("refresh_token") or state.refresh_token
            if isinstance(expires_raw, str):
                try:
                    state.expires_at = datetime.fromisoformat(expires_raw)
                except ValueError:
                    logger.warning("Ignoring malformed token expiry for %s", service.value)

    def get_access_token(self, service: Catalog) -> str | None:
        return self._tokens[service].access_token

    def is_expired(self, service: Catalog) -> bool:
        expires_at = self._tokens[service].expires_at
        if expires_at is None:
            return False
        return self._clock() >= expires_at

    def is_authenticated(self, service: Catalog) -> bool:
        return bool(self.get_access_token(service)) and not self.is_expired(service)

    async def set_tokens(
        self,
        service: Catalog,
        *,
        access_token: str,
        refresh_token: str | None = None,
        expires_in: float | None = None,
    ) -> None:
        """Replace the held tokens and persist them."""

        state = self._tokens[service]
        state.access_token = access_token
        if refresh_token:
            state.refresh_token = refresh_token
        state.expires_at = (
            self._clock() + timedelta(seconds=expires_in) if expires_in else None
        )
        state.generation += 1
        if self._cache is not None:
            await self._cache.set(TOKEN_STORE, service.value, state.to_payload())

    async def refresh(self, service: Catalog) -> None:
        """Exchange the refresh token for a new access token.

        Concurrent callers share a single refresh: whoever waited on the lock
        returns as soon as it sees a newer token generation.
        """

        state = self._tokens[service]
        seen_generation = state.generation
        lock = self._locks.setdefault(service, asyncio.Lock())
        async with lock:
            if state.generation != seen_generation:
                return
            if not state.refresh_token:
                raise AuthError(service.label, "No refresh token available")

            logger.info("Refreshing %s access token", service.label)
            try:
                response = await self._send_refresh(service, state.refresh_token)
            except httpx.HTTPError as exc:
                raise AuthError(
                    service.label, f"{service.label} token refresh failed: {exc}"
                ) from exc
            if response.status_code >= 400:
                logger.warning(
                    "%s token refresh rejected (%s): %s",
                    service.label,
                    response.status_code,
                    response.text,
                )
                raise AuthError(service.label, f"{service.label} token refresh failed")
            try:
                tokens = response.json()
            except ValueError as exc:
                raise AuthError(
                    service.label, f"{service.label} token refresh returned invalid JSON"
                ) from exc
            access_token = tokens.get("access_token") if isinstance(tokens, dict) else None
            if not access_token:
                raise AuthError(
                    service.label, f"{service.label} token refresh returned no access token"
                )

            await self.set_tokens(
                service,
                access_token=access_token,
                refresh_token=tokens.get("refresh_token"),
                expires_in=tokens.get("expires_in"),
            )

    async def _send_refresh(self, service: Catalog, refresh_token: str) -> httpx.Response:
        if service is Catalog.TRAKT:
            body: dict[str, Any] = {
                "refresh_token": refresh_token,
                "client_id": self._settings.trakt_client_id,
                "client_secret": self._settings.trakt_client_secret,
                "grant_type": "refresh_token",
            }
            if self._settings.trakt_redirect_uri:
                body["redirect_uri"] = str(self._settings.trakt_redirect_uri)
            return await self._client.post(
                str(self._settings.trakt_token_url), json=body
            )

        form = {
            "client_id": self._settings.mal_client_id or "",
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        if self._settings.mal_client_secret:
            form["client_secret"] = self._settings.mal_client_secret
        return await self._client.post(str(self._settings.mal_token_url), data=form)
