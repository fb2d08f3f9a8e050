"""Compute the operations that bring the target catalog in line with the source."""

from __future__ import annotations

from typing import Iterable

from ..models import Direction, Entry, FieldChange, Operation, PairedEntry, WatchStatus

NO_MAPPING_REASON = "no mapping"

# Trakt has no on-hold or dropped state. On-hold shows are kept in the
# watching list and dropped shows are left alone. A Trakt show with watch
# history takes its status from that history, so from there the only
# reachable move is to completed.
STATUS_PROJECTIONS: dict[Direction, dict[WatchStatus, WatchStatus | None]] = {
    Direction.TRAKT_TO_MAL: {status: status for status in WatchStatus},
    Direction.MAL_TO_TRAKT: {
        WatchStatus.WATCHING: WatchStatus.WATCHING,
        WatchStatus.COMPLETED: WatchStatus.COMPLETED,
        WatchStatus.PLANNED: WatchStatus.PLANNED,
        WatchStatus.ON_HOLD: WatchStatus.WATCHING,
        WatchStatus.DROPPED: None,
    },
}


def project_status(status: WatchStatus, direction: Direction) -> WatchStatus | None:
    """Translate a source status into what the target catalog can hold."""

    return STATUS_PROJECTIONS[direction].get(status)


def diff(paired_entries: Iterable[PairedEntry], direction: Direction) -> list[Operation]:
    """Return one operation per pair that needs attention, in input order.

    The function is pure: the same input always yields the same operations and
    nothing is fetched or written.
    """

    operations: list[Operation] = []
    for paired in paired_entries:
        operation = _diff_pair(paired, direction)
        if operation is not None:
            operations.append(operation)
    return operations


def _diff_pair(paired: PairedEntry, direction: Direction) -> Operation | None:
    target = direction.target
    if not paired.resolved:
        return Operation(
            type="skip", target=target, entry=paired, reason=NO_MAPPING_REASON
        )

    source_entry = paired.entry_for(direction.source)
    if source_entry is None:
        return None

    projected = project_status(source_entry.status, direction)
    target_entry = paired.entry_for(target)
    if target_entry is None:
        if projected is None:
            return None
        return Operation(
            type="add",
            target=target,
            entry=paired,
            changes=_add_changes(source_entry, projected),
        )

    changes: dict[str, FieldChange] = {}
    if (
        projected is not None
        and projected != target_entry.status
        and _reachable(target_entry, projected, direction)
    ):
        changes["status"] = FieldChange(from_=target_entry.status, to=projected)
    if source_entry.episodes_watched > target_entry.episodes_watched:
        changes["episodes"] = FieldChange(
            from_=target_entry.episodes_watched, to=source_entry.episodes_watched
        )
    if not changes:
        return None
    return Operation(type="update", target=target, entry=paired, changes=changes)


def _reachable(target: Entry, status: WatchStatus, direction: Direction) -> bool:
    if direction is not Direction.MAL_TO_TRAKT or target.episodes_watched == 0:
        return True
    return status is WatchStatus.COMPLETED


def _add_changes(source: Entry, projected: WatchStatus) -> dict[str, FieldChange]:
    changes = {"status": FieldChange(to=projected)}
    if source.episodes_watched > 0:
        changes["episodes"] = FieldChange(to=source.episodes_watched)
    if source.score > 0:
        changes["score"] = FieldChange(to=source.score)
    return changes
