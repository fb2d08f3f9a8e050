"""Tests for the pure differencing step."""

from __future__ import annotations

from app.models import Catalog, Direction, Entry, PairedEntry, WatchStatus
from app.services.differ import NO_MAPPING_REASON, diff, project_status


def entry(catalog: Catalog, native_id: str, status: WatchStatus, episodes: int = 0, score: int = 0) -> Entry:
    return Entry(
        native_id=native_id,
        catalog=catalog,
        title="Naruto",
        status=status,
        episodes_watched=episodes,
        score=score,
    )


def paired(trakt: Entry | None, mal: Entry | None, *, resolved: bool = True) -> PairedEntry:
    return PairedEntry(
        trakt=trakt,
        mal=mal,
        trakt_id="naruto" if resolved or trakt else None,
        mal_id="20" if resolved or mal else None,
        resolved=resolved,
    )


def test_progress_ahead_on_source_becomes_update() -> None:
    pair = paired(
        entry(Catalog.TRAKT, "naruto", WatchStatus.WATCHING, 50),
        entry(Catalog.MAL, "20", WatchStatus.PLANNED, 0),
    )

    (operation,) = diff([pair], Direction.TRAKT_TO_MAL)

    assert operation.type == "update"
    assert operation.target is Catalog.MAL
    assert operation.target_id == "20"
    payload = operation.model_dump(mode="json", by_alias=True)["changes"]
    assert payload == {
        "status": {"from": "planned", "to": "watching"},
        "episodes": {"from": 0, "to": 50},
    }


def test_episode_counts_never_regress() -> None:
    pair = paired(
        entry(Catalog.TRAKT, "naruto", WatchStatus.WATCHING, 10),
        entry(Catalog.MAL, "20", WatchStatus.WATCHING, 40),
    )

    assert diff([pair], Direction.TRAKT_TO_MAL) == []


def test_status_follows_source_even_backwards() -> None:
    pair = paired(
        entry(Catalog.TRAKT, "naruto", WatchStatus.WATCHING, 220),
        entry(Catalog.MAL, "20", WatchStatus.COMPLETED, 220),
    )

    (operation,) = diff([pair], Direction.TRAKT_TO_MAL)

    assert set(operation.changes) == {"status"}
    assert operation.changes["status"].to is WatchStatus.WATCHING


def test_missing_target_becomes_add_with_score() -> None:
    pair = paired(entry(Catalog.TRAKT, "naruto", WatchStatus.COMPLETED, 220, score=8), None)

    (operation,) = diff([pair], Direction.TRAKT_TO_MAL)

    assert operation.type == "add"
    assert {name: change.to for name, change in operation.changes.items()} == {
        "status": WatchStatus.COMPLETED,
        "episodes": 220,
        "score": 8,
    }
    assert operation.changes["status"].from_ is None


def test_unresolved_pairs_are_skipped() -> None:
    pair = paired(entry(Catalog.TRAKT, "naruto", WatchStatus.WATCHING, 3), None, resolved=False)

    (operation,) = diff([pair], Direction.TRAKT_TO_MAL)

    assert operation.type == "skip"
    assert operation.reason == NO_MAPPING_REASON


def test_source_absent_produces_nothing() -> None:
    pair = paired(None, entry(Catalog.MAL, "20", WatchStatus.WATCHING, 3))

    assert diff([pair], Direction.TRAKT_TO_MAL) == []


def test_dropped_is_not_propagated_to_trakt() -> None:
    dropped = entry(Catalog.MAL, "20", WatchStatus.DROPPED, 12)

    assert diff([paired(None, dropped)], Direction.MAL_TO_TRAKT) == []
    existing = paired(entry(Catalog.TRAKT, "naruto", WatchStatus.WATCHING, 12), dropped)
    assert diff([existing], Direction.MAL_TO_TRAKT) == []


def test_on_hold_maps_to_watching_towards_trakt() -> None:
    pair = paired(
        entry(Catalog.TRAKT, "naruto", WatchStatus.PLANNED),
        entry(Catalog.MAL, "20", WatchStatus.ON_HOLD, 5),
    )

    (operation,) = diff([pair], Direction.MAL_TO_TRAKT)

    assert operation.target is Catalog.TRAKT
    assert operation.target_id == "naruto"
    assert operation.changes["status"].to is WatchStatus.WATCHING
    assert project_status(WatchStatus.ON_HOLD, Direction.TRAKT_TO_MAL) is WatchStatus.ON_HOLD


def test_trakt_history_only_moves_forward_to_completed() -> None:
    in_progress = entry(Catalog.TRAKT, "naruto", WatchStatus.WATCHING, 10)
    finished = entry(Catalog.TRAKT, "naruto", WatchStatus.COMPLETED, 220)

    assert diff([paired(in_progress, entry(Catalog.MAL, "20", WatchStatus.PLANNED))], Direction.MAL_TO_TRAKT) == []
    assert diff([paired(finished, entry(Catalog.MAL, "20", WatchStatus.WATCHING, 100))], Direction.MAL_TO_TRAKT) == []

    (operation,) = diff(
        [paired(in_progress, entry(Catalog.MAL, "20", WatchStatus.COMPLETED, 220))],
        Direction.MAL_TO_TRAKT,
    )
    assert operation.changes["status"].to is WatchStatus.COMPLETED


def test_trakt_lists_can_move_in_any_direction() -> None:
    pair = paired(
        entry(Catalog.TRAKT, "naruto", WatchStatus.WATCHING),
        entry(Catalog.MAL, "20", WatchStatus.PLANNED),
    )

    (operation,) = diff([pair], Direction.MAL_TO_TRAKT)

    assert operation.changes["status"].to is WatchStatus.PLANNED


def test_diff_is_deterministic_and_ordered() -> None:
    pairs = [
        paired(entry(Catalog.TRAKT, "naruto", WatchStatus.WATCHING, 5), None),
        paired(entry(Catalog.TRAKT, "naruto", WatchStatus.PLANNED), None, resolved=False),
        paired(
            entry(Catalog.TRAKT, "naruto", WatchStatus.COMPLETED, 220),
            entry(Catalog.MAL, "20", WatchStatus.WATCHING, 100),
        ),
    ]

    first = diff(pairs, Direction.TRAKT_TO_MAL)
    second = diff(pairs, Direction.TRAKT_TO_MAL)

    assert first == second
    assert [operation.type for operation in first] == ["add", "skip", "update"]
