"""Apply sync operations to the target catalog one at a time."""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Sequence

from ..errors import AuthError
from ..models import Catalog, Direction, Operation, RunResult, WatchStatus
from .cache import HISTORY_STORE, CacheStore
from .differ import project_status
from .mal import MALClient
from .trakt import TraktClient

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], Any]


class ExecutionEngine:
    """Run operations sequentially and report how each one went.

    A failing operation never stops the run: the error is recorded in the
    outcome and the next operation is attempted. Losing credentials is the
    exception. An :class:`AuthError` marks the run aborted, and is raised once
    the partial result has been stored. Every run is persisted in the
    history store keyed by the time it finished.
    """

    def __init__(
        self,
        trakt: TraktClient,
        mal: MALClient,
        cache: CacheStore | None = None,
        *,
        operation_delay: float = 0.1,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._trakt = trakt
        self._mal = mal
        self._cache = cache
        self._operation_delay = operation_delay
        self._sleep = sleep
        self._clock = clock

    async def execute(
        self,
        operations: Sequence[Operation],
        on_progress: ProgressCallback | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
        direction: Direction | None = None,
    ) -> RunResult:
        result = RunResult(direction=direction, started_at=self._clock())
        total = len(operations)
        auth_error: AuthError | None = None

        for index, operation in enumerate(operations, start=1):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Sync cancelled after %s of %s operations", index - 1, total)
                result.aborted = True
                break

            if operation.type == "skip":
                result.record(operation, "skipped", operation.reason)
            else:
                try:
                    await self._dispatch(operation, direction)
                except AuthError as exc:
                    logger.error("Stopping sync at %s: %s", operation.describe(), exc)
                    result.record(operation, "failed", str(exc))
                    result.aborted = True
                    auth_error = exc
                    break
                except Exception as exc:
                    logger.warning("Failed to %s: %s", operation.describe(), exc)
                    result.record(operation, "failed", str(exc) or exc.__class__.__name__)
                else:
                    result.record(operation, "success")

            if on_progress is not None:
                outcome = on_progress(index, total)
                if inspect.isawaitable(outcome):
                    await outcome
            if self._operation_delay > 0:
                await self._sleep(self._operation_delay)

        result.finished_at = self._clock()
        logger.info(
            "Sync finished: %s successful, %s failed, %s skipped",
            result.successful,
            result.failed,
            result.skipped,
        )
        await self._persist(result)
        if auth_error is not None:
            raise auth_error
        return result

    async def _dispatch(self, operation: Operation, direction: Direction | None) -> None:
        target_id = operation.target_id
        if not target_id:
            raise ValueError(f"No {operation.target.label} id for {operation.entry.title!r}")

        if operation.target is Catalog.MAL:
            status = operation.change_to("status")
            await self._mal.update_status(
                target_id,
                {
                    "status": WatchStatus(status) if status is not None else None,
                    "num_watched_episodes": operation.change_to("episodes"),
                    "score": operation.change_to("score"),
                },
            )
            return

        status = operation.change_to("status")
        if status is None:
            status = self._current_source_status(operation, direction)
        await self._trakt.apply_status(target_id, WatchStatus(status))
        score = operation.change_to("score")
        if score:
            await self._trakt.add_ratings({target_id: score})

    @staticmethod
    def _current_source_status(
        operation: Operation, direction: Direction | None
    ) -> WatchStatus:
        # Trakt only tracks progress through its collections, so an episode
        # update re-applies the status the show already has.
        direction = direction or Direction.from_catalogs(operation.target.other)
        source = operation.entry.entry_for(direction.source)
        status = project_status(source.status, direction) if source else None
        if status is None:
            raise ValueError(f"Nothing to apply on Trakt for {operation.entry.title!r}")
        return status

    async def _persist(self, result: RunResult) -> None:
        if self._cache is None or result.finished_at is None:
            return
        await self._cache.set(
            HISTORY_STORE, result.finished_at.isoformat(), result.to_payload()
        )
