"""Resolve a title in one catalog to its counterpart in the other."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping as MappingType, Protocol, Sequence

from ..config import Settings
from ..errors import AuthError
from ..models import Catalog, Direction, Entry, Mapping
from ..utils import title_similarity
from .cache import MAPPING_STORE, CacheStore
from .ids_moe import IdsMoeClient

logger = logging.getLogger(__name__)


class CatalogSearch(Protocol):
    """The lookups the resolver needs from a catalog client."""

    async def search_entries(self, query: str) -> list[Entry]: ...

    async def fetch_entry(self, native_id: str) -> Entry | None: ...


class MappingStore:
    """Symmetric, expiring store of MAL id ⇄ Trakt slug correspondences.

    Each mapping is written under both ``mal-{id}`` and ``trakt-{slug}`` so a
    lookup works from either side. Saving a mapping drops any older mapping
    that shared one of its ids, keeping at most one live mapping per id.
    """

    def __init__(self, cache: CacheStore, *, ttl_seconds: float):
        self._cache = cache
        self._ttl_seconds = ttl_seconds

    @staticmethod
    def key(catalog: Catalog, native_id: str) -> str:
        return f"{catalog.value}-{native_id}"

    async def get(self, catalog: Catalog, native_id: str) -> Mapping | None:
        cached = await self._cache.get(MAPPING_STORE, self.key(catalog, native_id))
        if cached is None:
            return None
        mapping = Mapping.model_validate(cached.payload)
        if not mapping.is_live(self._cache.now()):
            return None
        return mapping

    async def save(
        self,
        *,
        mal_id: str,
        trakt_id: str,
        title: str | None = None,
        year: int | None = None,
    ) -> Mapping:
        now = self._cache.now()
        mapping = Mapping(
            mal_id=mal_id,
            trakt_id=trakt_id,
            title=title,
            year=year,
            discovered_at=now,
            expires_at=now + timedelta(seconds=self._ttl_seconds),
        )

        for catalog in Catalog:
            previous = await self.get(catalog, mapping.id_for(catalog))
            if previous is None:
                continue
            other = catalog.other
            stale_id = previous.id_for(other)
            if stale_id != mapping.id_for(other):
                await self._cache.remove(MAPPING_STORE, self.key(other, stale_id))

        payload = mapping.model_dump(mode="json")
        for catalog in Catalog:
            await self._cache.set(
                MAPPING_STORE,
                self.key(catalog, mapping.id_for(catalog)),
                payload,
                ttl=self._ttl_seconds,
            )
        return mapping

    async def all(self) -> list[Mapping]:
        seen: set[tuple[str, str]] = set()
        mappings: list[Mapping] = []
        for cached in await self._cache.get_all(MAPPING_STORE):
            mapping = Mapping.model_validate(cached.payload)
            pair = (mapping.mal_id, mapping.trakt_id)
            if pair in seen:
                continue
            seen.add(pair)
            mappings.append(mapping)
        return mappings

    async def clear(self) -> None:
        await self._cache.clear(MAPPING_STORE)


@dataclass(slots=True, frozen=True)
class MatchScore:
    candidate: Entry
    score: float
    similarity: float
    via_alternative: bool = False


class MatchScorer:
    """Weighted title/year scoring for fuzzy candidate selection."""

    def __init__(
        self,
        *,
        title_weight: float = 0.7,
        year_weight: float = 0.3,
        threshold: float = 0.7,
        alt_threshold: float = 0.6,
    ):
        self.title_weight = title_weight
        self.year_weight = year_weight
        self.threshold = threshold
        self.alt_threshold = alt_threshold

    @classmethod
    def from_settings(cls, settings: Settings) -> "MatchScorer":
        return cls(
            title_weight=settings.title_weight,
            year_weight=settings.year_weight,
            threshold=settings.match_threshold,
            alt_threshold=settings.alt_title_threshold,
        )

    def score(self, source: Entry, candidate: Entry) -> MatchScore:
        best = title_similarity(source.title, candidate.title)
        via_alternative = False
        for source_title in source.titles():
            for candidate_title in candidate.titles():
                if source_title == source.title and candidate_title == candidate.title:
                    continue
                similarity = title_similarity(source_title, candidate_title)
                if similarity > best:
                    best = similarity
                    via_alternative = True

        total = self.title_weight * best
        if source.year is not None and source.year == candidate.year:
            total += self.year_weight
        return MatchScore(
            candidate=candidate,
            score=total,
            similarity=best,
            via_alternative=via_alternative,
        )

    def accepts(self, match: MatchScore) -> bool:
        threshold = self.alt_threshold if match.via_alternative else self.threshold
        return match.score >= threshold

    def best_match(self, source: Entry, candidates: Sequence[Entry]) -> MatchScore | None:
        best: MatchScore | None = None
        for candidate in candidates:
            match = self.score(source, candidate)
            if best is None or match.score > best.score:
                best = match
        if best is None or not self.accepts(best):
            return None
        return best


@dataclass(slots=True, frozen=True)
class Resolution:
    """A target identifier plus what the strategy learned about it."""

    target_id: str
    title: str | None = None
    year: int | None = None
    persist: bool = True


class ResolverStrategy(Protocol):
    name: str

    async def resolve(self, entry: Entry, direction: Direction) -> Resolution | None: ...


class CachedMappingStrategy:
    name = "cache"

    def __init__(self, store: MappingStore):
        self._store = store

    async def resolve(self, entry: Entry, direction: Direction) -> Resolution | None:
        mapping = await self._store.get(direction.source, entry.native_id)
        if mapping is None:
            return None
        return Resolution(
            target_id=mapping.id_for(direction.target),
            title=mapping.title,
            year=mapping.year,
            persist=False,
        )


class CrossReferenceStrategy:
    """Ask ids.moe for the target id, then confirm it against the target catalog."""

    name = "cross-reference"

    def __init__(self, ids_client: IdsMoeClient, catalogs: MappingType[Catalog, CatalogSearch]):
        self._ids = ids_client
        self._catalogs = catalogs

    async def resolve(self, entry: Entry, direction: Direction) -> Resolution | None:
        ids = await self._ids.lookup_by_source(direction.source, entry.native_id)
        candidate_id = IdsMoeClient.identifier_for(ids, direction.target)
        if candidate_id is None:
            return None
        detail = await self._catalogs[direction.target].fetch_entry(candidate_id)
        if detail is None:
            return None
        return Resolution(target_id=detail.native_id, title=detail.title, year=detail.year)


class FuzzyTitleStrategy:
    """Search the target catalog by title and keep the best scoring candidate."""

    name = "fuzzy"

    def __init__(self, catalogs: MappingType[Catalog, CatalogSearch], scorer: MatchScorer):
        self._catalogs = catalogs
        self._scorer = scorer

    async def resolve(self, entry: Entry, direction: Direction) -> Resolution | None:
        if not entry.title:
            return None
        candidates = await self._catalogs[direction.target].search_entries(entry.title)
        match = self._scorer.best_match(entry, candidates)
        if match is None:
            return None
        logger.debug(
            "Fuzzy matched %r to %r (score %.2f%s)",
            entry.title,
            match.candidate.title,
            match.score,
            ", via alternative title" if match.via_alternative else "",
        )
        return Resolution(
            target_id=match.candidate.native_id,
            title=match.candidate.title,
            year=match.candidate.year,
        )


class IdentityResolver:
    """Run resolver strategies in order and keep the first answer.

    A miss is ``None``, never an exception. Strategy failures are logged and
    the next strategy is tried; only :class:`AuthError` escapes because the
    run cannot continue without credentials.
    """

    def __init__(self, store: MappingStore, strategies: Sequence[ResolverStrategy]):
        self._store = store
        self._strategies = tuple(strategies)

    @classmethod
    def build(
        cls,
        store: MappingStore,
        catalogs: MappingType[Catalog, CatalogSearch],
        scorer: MatchScorer,
        ids_client: IdsMoeClient | None = None,
    ) -> "IdentityResolver":
        strategies: list[ResolverStrategy] = [CachedMappingStrategy(store)]
        if ids_client is not None:
            strategies.append(CrossReferenceStrategy(ids_client, catalogs))
        strategies.append(FuzzyTitleStrategy(catalogs, scorer))
        return cls(store, strategies)

    @property
    def store(self) -> MappingStore:
        return self._store

    @property
    def strategies(self) -> tuple[ResolverStrategy, ...]:
        return self._strategies

    async def resolve(self, entry: Entry, direction: Direction) -> str | None:
        if entry.catalog is not direction.source:
            raise ValueError(
                f"Cannot resolve a {entry.catalog.value} entry in direction {direction.value}"
            )

        for strategy in self._strategies:
            try:
                resolution = await strategy.resolve(entry, direction)
            except AuthError:
                raise
            except Exception:
                logger.warning(
                    "%s lookup failed for %r, trying the next strategy",
                    strategy.name,
                    entry.title,
                    exc_info=True,
                )
                continue
            if resolution is None:
                continue

            if resolution.persist:
                await self._persist(entry, direction, resolution)
            return resolution.target_id

        logger.debug("No %s match for %r", direction.target.label, entry.title)
        return None

    async def clear_mappings(self) -> None:
        await self._store.clear()

    async def _persist(self, entry: Entry, direction: Direction, resolution: Resolution) -> None:
        if direction.source is Catalog.MAL:
            mal_id, trakt_id = entry.native_id, resolution.target_id
        else:
            mal_id, trakt_id = resolution.target_id, entry.native_id
        await self._store.save(
            mal_id=mal_id,
            trakt_id=trakt_id,
            title=resolution.title or entry.title,
            year=resolution.year if resolution.year is not None else entry.year,
        )
