"""Pytest configuration and test helpers."""

from __future__ import annotations

import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest


# Ensure the application package is importable when running tests without an
# editable install. This mirrors the expected runtime layout where ``app`` sits
# at the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.config import Settings  # noqa: E402
from app.database import Database  # noqa: E402
from app.services.cache import CacheStore  # noqa: E402


class FakeClock:
    """Wall clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_settings():
    """Return a factory building settings suitable for tests."""

    def _factory(**overrides: Any) -> Settings:
        base: dict[str, Any] = {
            "TRAKT_CLIENT_ID": "trakt-client",
            "TRAKT_CLIENT_SECRET": "trakt-secret",
            "TRAKT_ACCESS_TOKEN": "trakt-token",
            "TRAKT_REFRESH_TOKEN": "trakt-refresh",
            "MAL_CLIENT_ID": "mal-client",
            "MAL_ACCESS_TOKEN": "mal-token",
            "MAL_REFRESH_TOKEN": "mal-refresh",
            "THROTTLE_SPACING": 0,
            "OPERATION_DELAY": 0,
            "REQUEST_RETRY_LIMIT": 0,
        }
        base.update(overrides)
        return Settings(_env_file=None, **base)  # type: ignore[arg-type]

    return _factory


@pytest.fixture
async def cache(tmp_path, clock: FakeClock, anyio_backend):
    """A cache store backed by a throwaway SQLite database."""

    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}")
    await database.create_all()
    try:
        yield CacheStore(database.session_factory, clock=clock)
    finally:
        await database.dispose()
