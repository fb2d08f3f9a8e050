"""Persistent key-value cache backed by the application database."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import CacheRecord

logger = logging.getLogger(__name__)

MAPPING_STORE = "anime_mapping"
TRAKT_STORE = "trakt_cache"
MAL_STORE = "mal_cache"
HISTORY_STORE = "sync_history"
LIST_HISTORY_STORE = "list_sync_history"
TOKEN_STORE = "oauth_tokens"

ALL_STORES: tuple[str, ...] = (
    MAPPING_STORE,
    TRAKT_STORE,
    MAL_STORE,
    HISTORY_STORE,
    LIST_HISTORY_STORE,
    TOKEN_STORE,
)


@dataclass(slots=True)
class CachedValue:
    """A live cache record returned to callers."""

    key: str
    payload: Any
    cached_at: datetime
    expires_at: datetime | None = None


class CacheStore:
    """Store JSON payloads in named stores with optional expiry.

    Records whose ``expires_at`` lies in the past are treated as absent by
    :meth:`get` and :meth:`get_all`; they are physically removed by
    :meth:`clear_expired`.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    async def get(self, store: str, key: str) -> CachedValue | None:
        async with self._session_factory() as session:
            record = await session.get(CacheRecord, (store, key))
        if record is None or not self._is_live(record):
            return None
        return self._to_value(record)

    async def set(
        self,
        store: str,
        key: str,
        payload: Any,
        ttl: float | None = None,
    ) -> CachedValue:
        now = self.now()
        expires_at = now + timedelta(seconds=ttl) if ttl is not None else None
        async with self._session_factory() as session:
            record = await session.get(CacheRecord, (store, key))
            if record is None:
                record = CacheRecord(store=store, key=key)
                session.add(record)
            record.payload = payload
            record.cached_at = now
            record.expires_at = expires_at
            await session.commit()
        return CachedValue(key=key, payload=payload, cached_at=now, expires_at=expires_at)

    async def get_all(self, store: str) -> list[CachedValue]:
        now = self.now()
        statement = (
            select(CacheRecord)
            .where(CacheRecord.store == store)
            .where(or_(CacheRecord.expires_at.is_(None), CacheRecord.expires_at > now))
            .order_by(CacheRecord.cached_at, CacheRecord.key)
        )
        async with self._session_factory() as session:
            result = await session.execute(statement)
            records = result.scalars().all()
        return [self._to_value(record) for record in records]

    async def remove(self, store: str, key: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(CacheRecord)
                .where(CacheRecord.store == store)
                .where(CacheRecord.key == key)
            )
            await session.commit()

    async def clear(self, store: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(CacheRecord).where(CacheRecord.store == store))
            await session.commit()
        logger.info("Cleared cache store %s", store)

    async def clear_expired(self) -> int:
        """Delete every expired record across all stores."""

        now = self.now()
        async with self._session_factory() as session:
            result = await session.execute(
                delete(CacheRecord)
                .where(CacheRecord.expires_at.is_not(None))
                .where(CacheRecord.expires_at <= now)
            )
            await session.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info("Removed %s expired cache records", removed)
        return removed

    def _is_live(self, record: CacheRecord) -> bool:
        return record.expires_at is None or self.now() < record.expires_at

    @staticmethod
    def _to_value(record: CacheRecord) -> CachedValue:
        return CachedValue(
            key=record.key,
            payload=record.payload,
            cached_at=record.cached_at,
            expires_at=record.expires_at,
        )
