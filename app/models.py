"""Pydantic models describing catalog entries and sync operations."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class Catalog(str, Enum):
    """The two services being reconciled."""

    TRAKT = "trakt"
    MAL = "mal"

    @property
    def label(self) -> str:
        return "Trakt" if self is Catalog.TRAKT else "MyAnimeList"

    @property
    def other(self) -> "Catalog":
        return Catalog.MAL if self is Catalog.TRAKT else Catalog.TRAKT


class Direction(str, Enum):
    """Which catalog is authoritative for a run."""

    TRAKT_TO_MAL = "trakt-to-mal"
    MAL_TO_TRAKT = "mal-to-trakt"

    @property
    def source(self) -> Catalog:
        return Catalog.TRAKT if self is Direction.TRAKT_TO_MAL else Catalog.MAL

    @property
    def target(self) -> Catalog:
        return self.source.other

    @classmethod
    def from_catalogs(cls, source: Catalog) -> "Direction":
        return cls.TRAKT_TO_MAL if source is Catalog.TRAKT else cls.MAL_TO_TRAKT

    @classmethod
    def parse(cls, value: object) -> "Direction":
        """Accept enum members as well as loosely formatted strings."""

        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            cleaned = value.strip().lower().replace("_", "-").replace(" ", "-")
            for member in cls:
                if member.value == cleaned:
                    return member
        raise ValueError(f"Unknown sync direction: {value!r}")


class WatchStatus(str, Enum):
    """Normalized watch status shared by both catalogs."""

    WATCHING = "watching"
    COMPLETED = "completed"
    PLANNED = "planned"
    ON_HOLD = "on_hold"
    DROPPED = "dropped"


class Entry(BaseModel):
    """A single title's state on one catalog."""

    model_config = ConfigDict(frozen=True)

    native_id: str
    catalog: Catalog
    title: str
    alternative_titles: tuple[str, ...] = ()
    year: int | None = None
    status: WatchStatus = WatchStatus.PLANNED
    episodes_watched: int = Field(default=0, ge=0)
    score: int = Field(default=0, ge=0, le=10)

    def titles(self) -> list[str]:
        """Return the primary title followed by distinct alternatives."""

        seen: set[str] = set()
        ordered: list[str] = []
        for title in (self.title, *self.alternative_titles):
            cleaned = (title or "").strip()
            key = cleaned.casefold()
            if not cleaned or key in seen:
                continue
            seen.add(key)
            ordered.append(cleaned)
        return ordered


class Mapping(BaseModel):
    """Persisted correspondence between a MAL id and a Trakt slug."""

    mal_id: str
    trakt_id: str
    title: str | None = None
    year: int | None = None
    discovered_at: datetime
    expires_at: datetime

    def id_for(self, catalog: Catalog) -> str:
        return self.trakt_id if catalog is Catalog.TRAKT else self.mal_id

    def is_live(self, now: datetime) -> bool:
        return now < self.expires_at


class PairedEntry(BaseModel):
    """Result of resolving one title across both catalogs."""

    trakt: Entry | None = None
    mal: Entry | None = None
    trakt_id: str | None = None
    mal_id: str | None = None
    resolved: bool = False

    def entry_for(self, catalog: Catalog) -> Entry | None:
        return self.trakt if catalog is Catalog.TRAKT else self.mal

    def id_for(self, catalog: Catalog) -> str | None:
        return self.trakt_id if catalog is Catalog.TRAKT else self.mal_id

    @property
    def title(self) -> str:
        for entry in (self.trakt, self.mal):
            if entry is not None and entry.title:
                return entry.title
        return self.trakt_id or self.mal_id or "Untitled"


class FieldChange(BaseModel):
    """A single field delta, serialized as ``{"from": ..., "to": ...}``."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    from_: Any = Field(default=None, alias="from")
    to: Any = None


OperationType = Literal["add", "update", "skip"]


class Operation(BaseModel):
    """A prescribed mutation against the target catalog."""

    type: OperationType
    target: Catalog
    entry: PairedEntry
    changes: dict[str, FieldChange] = Field(default_factory=dict)
    reason: str | None = None

    @property
    def target_id(self) -> str | None:
        return self.entry.id_for(self.target)

    def change_to(self, field: str, default: Any = None) -> Any:
        change = self.changes.get(field)
        return change.to if change is not None else default

    def describe(self) -> str:
        """Return a short human readable summary for logs."""

        if self.type == "skip":
            return f"skip {self.entry.title!r} ({self.reason or 'no reason'})"
        fields = ", ".join(
            f"{name} {change.from_!r}->{change.to!r}"
            for name, change in self.changes.items()
        )
        return f"{self.type} {self.entry.title!r} on {self.target.label}: {fields}"


OutcomeStatus = Literal["success", "failed", "skipped"]


class OperationOutcome(BaseModel):
    """What happened to one operation during a run."""

    operation: Operation
    status: OutcomeStatus
    error: str | None = None


class RunResult(BaseModel):
    """Summary of one execution run."""

    successful: int = 0
    failed: int = 0
    skipped: int = 0
    outcomes: list[OperationOutcome] = Field(default_factory=list)
    direction: Direction | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    aborted: bool = False

    @property
    def total(self) -> int:
        return self.successful + self.failed + self.skipped

    def record(
        self, operation: Operation, status: OutcomeStatus, error: str | None = None
    ) -> None:
        if status == "success":
            self.successful += 1
        elif status == "failed":
            self.failed += 1
        else:
            self.skipped += 1
        self.outcomes.append(
            OperationOutcome(operation=operation, status=status, error=error)
        )

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ListSyncResult(BaseModel):
    """Summary of mirroring one MyAnimeList status into a Trakt list."""

    list_name: str
    list_id: str | None = None
    status: WatchStatus
    added: list[str] = Field(default_factory=list)
    already_present: list[str] = Field(default_factory=list)
    unmatched: list[str] = Field(default_factory=list)
    synced_at: datetime | None = None
