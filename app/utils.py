"""Utility helpers for the sync service."""

from __future__ import annotations

import re
import unicodedata
from typing import Any

from rapidfuzz.distance import Levenshtein

WHITESPACE_RE = re.compile(r"\s+")
YEAR_RE = re.compile(r"(19|20|21)\d{2}")

CONTAINMENT_SIMILARITY = 0.85


def slugify(value: str) -> str:
    """Return a URL-friendly slug."""

    value = unicodedata.normalize("NFKD", value)
    value = value.encode("ascii", "ignore").decode("ascii")
    value = re.sub(r"[^a-zA-Z0-9]+", "-", value)
    value = value.strip("-")
    value = re.sub(r"-+", "-", value)
    return value.lower() or "list"


def normalize_title(value: str | None) -> str:
    """Lower-case a title and collapse its whitespace."""

    if not value:
        return ""
    return WHITESPACE_RE.sub(" ", value).strip().casefold()


def title_similarity(first: str | None, second: str | None) -> float:
    """Score two titles between 0 and 1.

    Identical titles score 1.0 and a title contained in the other scores
    0.85. Everything else falls back to the normalized Levenshtein distance
    against the longer title.
    """

    left = normalize_title(first)
    right = normalize_title(second)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    if left in right or right in left:
        return CONTAINMENT_SIMILARITY

    longer = max(len(left), len(right))
    distance = Levenshtein.distance(left, right)
    return (longer - distance) / longer


def parse_year(value: Any) -> int | None:
    """Extract a plausible release year from ints, dates or free text."""

    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if 1900 <= value <= 2100 else None
    if not value:
        return None
    match = YEAR_RE.search(str(value))
    if not match:
        return None
    year = int(match.group(0))
    if 1900 <= year <= 2100:
        return year
    return None
