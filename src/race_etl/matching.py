"""race_etl.matching

Duplicate detection for incoming race records against canonical races.

Match passes, strongest first:
  exact_source -- the listing's own source record is already linked     (1.0)
                  (looked up by the pipeline through storage)
  exact_url    -- normalized URL equal to an existing record's          (1.0)
  exact_match  -- same name + location + date                           (1.0)
               -- same name + location, dates within DATE_TOLERANCE     (0.95)
  fuzzy_match  -- same location, dates within DATE_TOLERANCE, trigram
                  similarity of names >= threshold                      (similarity)

Fuzzy matching is first-match-wins over `existing`, so callers must pass
candidates in a stable order (storage returns them by id ascending).
No function here raises for well-typed input; an unparsable date simply
never falls inside the tolerance window.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, timedelta

MATCH_EXACT_SOURCE = "exact_source"
MATCH_EXACT_URL = "exact_url"
MATCH_EXACT = "exact_match"
MATCH_FUZZY = "fuzzy_match"

DATE_TOLERANCE = timedelta(days=1)
DEFAULT_FUZZY_THRESHOLD = 0.6
EXACT_DATE_CONFIDENCE = 1.0
EXACT_NEAR_DATE_CONFIDENCE = 0.95


@dataclass(frozen=True)
class DedupeMatch:
    type: str
    canonical_race_id: int
    confidence: float


@dataclass(frozen=True)
class ExistingRace:
    """Matching view of a canonical race, as returned by storage."""

    id: int
    normalized_name: str
    location_key: str
    date: str
    normalized_url: str | None = None
    quality_score: int = 0


def validate_fuzzy_threshold(threshold: float) -> None:
    """Raise ValueError unless 0 < threshold <= EXACT_NEAR_DATE_CONFIDENCE.

    Keeps a fuzzy match from ever reporting more confidence than an exact one.
    """
    if not 0.0 < threshold <= EXACT_NEAR_DATE_CONFIDENCE:
        raise ValueError(
            f"fuzzy threshold {threshold} must be in (0, {EXACT_NEAR_DATE_CONFIDENCE}]"
        )


def _as_date(value: str | date) -> date | None:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        return None


def within_date_tolerance(a: str | date, b: str | date) -> bool:
    """True when both parse and lie at most DATE_TOLERANCE apart."""
    da, db = _as_date(a), _as_date(b)
    if da is None or db is None:
        return False
    return abs(da - db) <= DATE_TOLERANCE


def find_url_match(
    normalized_url: str | None,
    existing: Sequence[ExistingRace],
) -> DedupeMatch | None:
    if not normalized_url:
        return None
    for race in existing:
        if race.normalized_url and race.normalized_url == normalized_url:
            return DedupeMatch(MATCH_EXACT_URL, race.id, EXACT_DATE_CONFIDENCE)
    return None


def find_exact_match(
    normalized_name: str,
    location_key: str,
    race_date: str,
    existing: Sequence[ExistingRace],
) -> DedupeMatch | None:
    """Same name + location on the same date (1.0), else within one day (0.95)."""
    for race in existing:
        if (
            race.normalized_name == normalized_name
            and race.location_key == location_key
            and str(race.date) == str(race_date)
        ):
            return DedupeMatch(MATCH_EXACT, race.id, EXACT_DATE_CONFIDENCE)

    for race in existing:
        if race.normalized_name == normalized_name and race.location_key == location_key:
            if within_date_tolerance(race_date, race.date):
                return DedupeMatch(MATCH_EXACT, race.id, EXACT_NEAR_DATE_CONFIDENCE)

    return None


def _trigrams(value: str) -> set[str]:
    return {value[i:i + 3] for i in range(len(value) - 2)}


def trigram_similarity(a: str, b: str) -> float:
    """Jaccard ratio of the two strings' trigram sets.

    Identical strings score 1.0; anything shorter than 3 characters scores 0.
    """
    if a == b:
        return 1.0
    if len(a) < 3 or len(b) < 3:
        return 0.0
    ta, tb = _trigrams(a), _trigrams(b)
    shared = len(ta & tb)
    return shared / (len(ta) + len(tb) - shared)


def find_fuzzy_match(
    normalized_name: str,
    location_key: str,
    race_date: str,
    existing: Sequence[ExistingRace],
    threshold: float = DEFAULT_FUZZY_THRESHOLD,
) -> DedupeMatch | None:
    """First same-location, near-date record whose name similarity >= threshold."""
    for race in existing:
        if race.location_key != location_key:
            continue
        if not within_date_tolerance(race_date, race.date):
            continue
        similarity = trigram_similarity(normalized_name, race.normalized_name)
        if similarity >= threshold:
            return DedupeMatch(MATCH_FUZZY, race.id, similarity)
    return None


def find_best_match(
    normalized_name: str,
    location_key: str,
    race_date: str,
    normalized_url: str | None,
    existing: Sequence[ExistingRace],
    threshold: float = DEFAULT_FUZZY_THRESHOLD,
) -> DedupeMatch | None:
    """Run url -> exact -> fuzzy and return the first pass that matches."""
    return (
        find_url_match(normalized_url, existing)
        or find_exact_match(normalized_name, location_key, race_date, existing)
        or find_fuzzy_match(normalized_name, location_key, race_date, existing, threshold)
    )
