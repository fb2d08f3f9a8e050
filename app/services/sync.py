"""High level orchestration of a Trakt ⇄ MyAnimeList sync."""

from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from ..errors import AuthError
from ..models import (
    Catalog,
    Direction,
    Entry,
    ListSyncResult,
    Operation,
    PairedEntry,
    RunResult,
    WatchStatus,
)
from .cache import HISTORY_STORE, LIST_HISTORY_STORE, CacheStore
from .differ import diff
from .engine import ExecutionEngine, ProgressCallback
from .mal import MALClient
from .mapping import IdentityResolver
from .trakt import TraktClient

logger = logging.getLogger(__name__)


class SyncService:
    """Tie the catalog clients, resolver and engine together."""

    def __init__(
        self,
        trakt: TraktClient,
        mal: MALClient,
        resolver: IdentityResolver,
        engine: ExecutionEngine,
        cache: CacheStore,
    ):
        self._trakt = trakt
        self._mal = mal
        self._resolver = resolver
        self._engine = engine
        self._cache = cache

    @property
    def resolver(self) -> IdentityResolver:
        return self._resolver

    async def analyze(self, direction: Direction) -> list[Operation]:
        """Fetch both catalogs, pair their entries and diff them.

        Fetch errors propagate so nothing is ever planned from a partial view.
        """

        trakt_entries, mal_entries = await asyncio.gather(
            self._trakt.fetch_entries(), self._mal.fetch_entries()
        )
        paired = await self.pair(trakt_entries, mal_entries)
        operations = diff(paired, direction)
        logger.info(
            "Planned %s operations for %s across %s titles",
            len(operations),
            direction.value,
            len(paired),
        )
        return operations

    async def pair(
        self, trakt_entries: Sequence[Entry], mal_entries: Sequence[Entry]
    ) -> list[PairedEntry]:
        """Match every Trakt entry to MAL, then try the MAL entries left over."""

        mal_by_id = {entry.native_id: entry for entry in mal_entries}
        claimed: set[str] = set()
        trakt_by_slug = {entry.native_id: entry for entry in trakt_entries}
        pairs: list[PairedEntry] = []
        index_by_slug: dict[str, int] = {}

        for entry in trakt_entries:
            mal_id = await self._resolver.resolve(entry, Direction.TRAKT_TO_MAL)
            index_by_slug[entry.native_id] = len(pairs)
            if mal_id is None:
                pairs.append(PairedEntry(trakt=entry, trakt_id=entry.native_id))
                continue
            pairs.append(
                PairedEntry(
                    trakt=entry,
                    mal=mal_by_id.get(mal_id),
                    trakt_id=entry.native_id,
                    mal_id=mal_id,
                    resolved=True,
                )
            )
            claimed.add(mal_id)

        for entry in mal_by_id.values():
            if entry.native_id in claimed:
                continue
            slug = await self._resolver.resolve(entry, Direction.MAL_TO_TRAKT)
            if slug is None:
                pairs.append(PairedEntry(mal=entry, mal_id=entry.native_id))
                continue
            paired = PairedEntry(
                trakt=trakt_by_slug.get(slug),
                mal=entry,
                trakt_id=slug,
                mal_id=entry.native_id,
                resolved=True,
            )
            existing = index_by_slug.get(slug)
            if existing is not None and not pairs[existing].resolved:
                pairs[existing] = paired
            else:
                pairs.append(paired)
        return pairs

    async def execute(
        self,
        operations: Sequence[Operation],
        on_progress: ProgressCallback | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
        direction: Direction | None = None,
    ) -> RunResult:
        try:
            result = await self._engine.execute(
                operations, on_progress, cancel_event=cancel_event, direction=direction
            )
        except AuthError:
            # Operations before the failure may already have written.
            for target in {operation.target for operation in operations}:
                await self._client_for(target).gateway.invalidate()
            raise
        if result.successful:
            targets = {
                outcome.operation.target
                for outcome in result.outcomes
                if outcome.status == "success"
            }
            for target in targets:
                await self._client_for(target).gateway.invalidate()
        return result

    async def sync_list(
        self, list_name: str, status: WatchStatus = WatchStatus.WATCHING
    ) -> ListSyncResult:
        """Mirror the MyAnimeList entries with ``status`` into a Trakt list."""

        status = WatchStatus(status)
        entries = [entry for entry in await self._mal.fetch_entries() if entry.status is status]
        list_id = await self._trakt.ensure_list(list_name)
        listed = (
            TraktClient.show_to_entry(item.get("show"))
            for item in await self._trakt.get_list_items(list_id)
        )
        present_slugs = {show.native_id for show in listed if show is not None}

        result = ListSyncResult(list_name=list_name, list_id=list_id, status=status)
        for entry in entries:
            slug = await self._resolver.resolve(entry, Direction.MAL_TO_TRAKT)
            if slug is None:
                result.unmatched.append(entry.title)
            elif slug in present_slugs:
                result.already_present.append(slug)
            elif slug not in result.added:
                result.added.append(slug)

        if result.added:
            await self._trakt.add_items_to_list(list_id, result.added)
            await self._trakt.gateway.invalidate()
        result.synced_at = self._cache.now()
        logger.info(
            "List %s: %s added, %s already present, %s unmatched",
            list_name,
            len(result.added),
            len(result.already_present),
            len(result.unmatched),
        )
        await self._cache.set(
            LIST_HISTORY_STORE,
            result.synced_at.isoformat(),
            result.model_dump(mode="json"),
        )
        return result

    async def history(self, limit: int | None = 20) -> list[RunResult]:
        """Return persisted runs, newest first."""

        records = await self._cache.get_all(HISTORY_STORE)
        runs = [RunResult.model_validate(record.payload) for record in reversed(records)]
        return runs if limit is None else runs[:limit]

    async def list_history(self, limit: int | None = 20) -> list[ListSyncResult]:
        records = await self._cache.get_all(LIST_HISTORY_STORE)
        results = [ListSyncResult.model_validate(record.payload) for record in reversed(records)]
        return results if limit is None else results[:limit]

    def _client_for(self, catalog: Catalog) -> TraktClient | MALClient:
        return self._trakt if catalog is Catalog.TRAKT else self._mal
