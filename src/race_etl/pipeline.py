"""race_etl.pipeline

Import pipeline for race listings.

process_race_import() turns a batch of RawRecords into canonical races:

  for each record, in input order, inside its own store transaction:
    1. validate the date and derive normalized_name, location_key,
       hash_key, normalized_url and quality_score
    2. match the listing's own source record first, else read candidates
       sharing the location key and match url -> exact -> fuzzy
    3. no match                            -> create           (created)
       match, candidate score >= existing  -> update in place  (updated)
       match, candidate score <  existing  -> leave content    (skipped)
    4. record provenance (source record) and the dated occurrence

A failure on one record is caught, reported as
"Error processing <name>: <error>", and the batch continues.  The function
never raises.

Maintenance entry points:
  mark_inactive_races  -- flag races not seen within a horizon as inactive
  rescore_quality      -- recompute stored quality scores
  run_refresh          -- fetch -> import -> rescore -> mark stale
  refresh_race_data    -- run_refresh with the RunSignUp adapter
  refresh_route_data   -- run_refresh with a caller-supplied route fetch step
"""

from __future__ import annotations

import calendar
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, fields
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from race_etl.matching import (
    DEFAULT_FUZZY_THRESHOLD,
    EXACT_DATE_CONFIDENCE,
    MATCH_EXACT_SOURCE,
    DedupeMatch,
    find_best_match,
)
from race_etl.normalize import (
    compute_quality_score,
    generate_hash_key,
    make_unique_slug,
    normalize_location_key,
    normalize_name,
    normalize_url,
    parse_float,
    parse_iso_date,
    trim,
)
from race_etl.quality_rules import QualityScorer
from race_etl.storage import CanonicalRace, RaceStore, utcnow

if TYPE_CHECKING:
    from race_etl.runsignup import RunSignUpClient

log = logging.getLogger(__name__)

DEFAULT_STALE_AFTER_DAYS = 45
DEFAULT_REFRESH_MONTHS = 18

OUTCOME_CREATED = "created"
OUTCOME_UPDATED = "updated"
OUTCOME_SKIPPED = "skipped"


# ---------------------------------------------------------------------------
# Staging record
# ---------------------------------------------------------------------------

@dataclass
class RawRecord:
    """One provider listing, mapped to the pipeline's input shape."""

    source_name: str
    external_id: str
    name: str
    date: str
    city: str
    state: str
    external_url: str | None = None
    distance: str | None = None
    distance_label: str | None = None
    distance_meters: int | None = None
    surface: str | None = None
    elevation: str | None = None
    description: str | None = None
    website: str | None = None
    registration_url: str | None = None
    start_time: str | None = None
    time_limit: str | None = None
    lat: float | None = None
    lng: float | None = None

    REQUIRED = ("source_name", "external_id", "name", "date", "city", "state")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RawRecord:
        """Build from a submitted mapping.  Raises ValueError on missing fields."""
        missing = [k for k in cls.REQUIRED if not trim(_str_or_none(data.get(k)))]
        if missing:
            raise ValueError(f"missing_required_field:{','.join(missing)}")
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        for key in cls.REQUIRED:
            values[key] = str(values[key]).strip()
        for key in ("lat", "lng"):
            values[key] = parse_float(values.get(key))
        meters = parse_float(values.get("distance_meters"))
        values["distance_meters"] = int(meters) if meters is not None else None
        return cls(**values)


def _str_or_none(value: Any) -> str | None:
    return None if value is None else str(value)


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------

@dataclass
class ImportStats:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    match_types: dict[str, int] = field(default_factory=dict)
    failed_records: list[RawRecord] = field(default_factory=list, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


@dataclass
class RefreshResult:
    label: str
    total_fetched: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    rescored: int = 0
    marked_inactive: int = 0
    duration: float = 0.0
    match_types: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "errors"}
        d["errors"] = self.errors[:50]
        d["error_count"] = len(self.errors)
        return d


# ---------------------------------------------------------------------------
# Per-record processing
# ---------------------------------------------------------------------------

def _record_name(record: Any) -> str:
    return str(getattr(record, "name", None) or "<unnamed>")


def _build_race(
    record: RawRecord,
    normalized_name: str,
    location_key: str,
    hash_key: str,
    normalized_url: str | None,
    quality_score: int,
    race_id: int | None = None,
    slug: str = "",
) -> CanonicalRace:
    return CanonicalRace(
        id=race_id,
        slug=slug,
        name=record.name,
        date=record.date,
        city=record.city,
        state=record.state,
        normalized_name=normalized_name,
        location_key=location_key,
        hash_key=hash_key,
        normalized_url=normalized_url,
        quality_score=quality_score,
        distance=record.distance,
        distance_label=record.distance_label,
        distance_meters=record.distance_meters,
        surface=record.surface,
        elevation=record.elevation,
        description=record.description,
        website=record.website,
        registration_url=record.registration_url,
        start_time=record.start_time,
        time_limit=record.time_limit,
        lat=record.lat,
        lng=record.lng,
    )


def _unique_slug(store: RaceStore, record: RawRecord) -> str:
    slug = make_unique_slug(record.name, record.city, record.state)
    if not slug or store.slug_exists(slug):
        slug = f"{slug}-{record.external_id}".strip("-")
    return slug


def _process_record(
    record: RawRecord,
    store: RaceStore,
    rules: QualityScorer | None,
    fuzzy_threshold: float,
    seen_at: datetime,
) -> tuple[str, DedupeMatch | None]:
    parse_iso_date(record.date)

    normalized_name = normalize_name(record.name)
    location_key = normalize_location_key(record.city, record.state, record.lat, record.lng)
    hash_key = generate_hash_key(normalized_name, location_key, record.date)
    normalized_url = normalize_url(record.registration_url or record.website or record.external_url)
    quality_score = compute_quality_score(record, rules)

    current = store.find_source_record(record.source_name, record.external_id)
    if current is not None:
        match: DedupeMatch | None = DedupeMatch(
            MATCH_EXACT_SOURCE, current.id, EXACT_DATE_CONFIDENCE
        )
    else:
        existing = store.get_existing_for_matching(location_key)
        match = find_best_match(
            normalized_name, location_key, record.date, normalized_url, existing, fuzzy_threshold
        )
        if match is not None:
            current = next(r for r in existing if r.id == match.canonical_race_id)

    if match is None:
        race = _build_race(
            record, normalized_name, location_key, hash_key, normalized_url,
            quality_score, slug=_unique_slug(store, record),
        )
        race_id = store.upsert_canonical_record(race, seen_at)
        outcome = OUTCOME_CREATED
    else:
        race_id = match.canonical_race_id
        if quality_score >= current.quality_score:
            race = _build_race(
                record, normalized_name, location_key, hash_key, normalized_url,
                quality_score, race_id=race_id,
            )
            store.upsert_canonical_record(race, seen_at)
            outcome = OUTCOME_UPDATED
        else:
            store.mark_seen(race_id, seen_at)
            outcome = OUTCOME_SKIPPED

    store.upsert_source_record(
        record.source_name,
        record.external_id,
        record.external_url,
        normalized_name,
        location_key,
        record.date,
        hash_key,
        race_id,
        seen_at,
    )
    if outcome != OUTCOME_SKIPPED:
        store.upsert_occurrence(race_id, record.date, record.start_time)
    return outcome, match


def process_race_import(
    records: Sequence[RawRecord],
    store: RaceStore,
    *,
    rules: QualityScorer | None = None,
    fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD,
    now: datetime | None = None,
) -> ImportStats:
    """Normalize, deduplicate and persist a batch of raw records.

    Args:
        records: Raw records in processing order.
        store: Storage collaborator; each record runs in store.transaction().
        rules: Quality scorer; DEFAULT_QUALITY_RULES when None.
        fuzzy_threshold: Minimum trigram similarity for a fuzzy match
            (see matching.validate_fuzzy_threshold).
        now: Timestamp recorded as first/last seen; current UTC when None.

    Returns:
        ImportStats with created/updated/skipped counts and per-record errors.
    """
    stats = ImportStats()
    seen_at = now or utcnow()

    for record in records:
        try:
            with store.transaction():
                outcome, match = _process_record(record, store, rules, fuzzy_threshold, seen_at)
        except Exception as exc:
            message = f"Error processing {_record_name(record)}: {exc}"
            stats.errors.append(message)
            stats.failed_records.append(record)
            log.warning("%s", message)
            continue

        if outcome == OUTCOME_CREATED:
            stats.created += 1
        elif outcome == OUTCOME_UPDATED:
            stats.updated += 1
        else:
            stats.skipped += 1
        if match is not None:
            stats.match_types[match.type] = stats.match_types.get(match.type, 0) + 1

    log.info(
        "Import complete: created=%d updated=%d skipped=%d errors=%d",
        stats.created, stats.updated, stats.skipped, len(stats.errors),
    )
    return stats


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

def mark_inactive_races(
    store: RaceStore,
    *,
    stale_after_days: int = DEFAULT_STALE_AFTER_DAYS,
    now: datetime | None = None,
) -> int:
    """Flag active races whose last_seen_at predates the horizon as inactive.

    Nothing is deleted.  Returns the number of races flagged.
    """
    cutoff = (now or utcnow()) - timedelta(days=stale_after_days)
    with store.transaction():
        count = store.mark_inactive(cutoff)
    log.info("Marked %d races as inactive (not seen in %d days)", count, stale_after_days)
    return count


def rescore_quality(store: RaceStore, rules: QualityScorer | None = None) -> int:
    """Recompute every stored quality score; return how many changed."""
    changed = 0
    with store.transaction():
        for row in store.iter_scoring_rows():
            score = compute_quality_score(row, rules)
            if score != row["quality_score"]:
                store.set_quality_score(row["id"], score)
                changed += 1
    log.info("Rescored quality: %d races changed", changed)
    return changed


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

def run_refresh(
    fetch: Callable[[], Sequence[RawRecord]],
    store: RaceStore,
    *,
    label: str,
    rules: QualityScorer | None = None,
    fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD,
    stale_after_days: int = DEFAULT_STALE_AFTER_DAYS,
    mark_stale: bool = True,
    now: datetime | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> RefreshResult:
    """fetch -> normalize/dedupe/upsert -> rescore -> mark stale."""
    started = clock()
    result = RefreshResult(label=label)
    log.info("=== Starting %s data refresh ===", label)

    raw_records = list(fetch())
    result.total_fetched = len(raw_records)
    log.info("Fetched %d %s records", result.total_fetched, label)

    stats = process_race_import(
        raw_records, store, rules=rules, fuzzy_threshold=fuzzy_threshold, now=now
    )
    result.created = stats.created
    result.updated = stats.updated
    result.skipped = stats.skipped
    result.errors = stats.errors
    result.match_types = stats.match_types

    result.rescored = rescore_quality(store, rules)

    if mark_stale:
        result.marked_inactive = mark_inactive_races(
            store, stale_after_days=stale_after_days, now=now
        )

    result.duration = round(clock() - started, 3)
    log.info(
        "=== %s refresh complete in %.1fs: created=%d updated=%d skipped=%d errors=%d ===",
        label, result.duration, result.created, result.updated,
        result.skipped, len(result.errors),
    )
    return result


def default_refresh_window(today: date | None = None) -> tuple[str, str]:
    """(today, today + 18 months) as ISO dates."""
    start = today or date.today()
    month_index = start.month - 1 + DEFAULT_REFRESH_MONTHS
    year, month = start.year + month_index // 12, month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.isoformat(), date(year, month, day).isoformat()


def refresh_race_data(
    store: RaceStore,
    client: RunSignUpClient,
    *,
    states: Sequence[str] | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
    modified_since: str | None = None,
    max_pages_per_state: int = 5,
    **kwargs: Any,
) -> RefreshResult:
    """Refresh canonical races from RunSignUp listings."""
    default_start, default_end = default_refresh_window()

    def fetch() -> list[RawRecord]:
        return client.fetch_all_states(
            states,
            start_date=start_date or default_start,
            end_date=end_date or default_end,
            modified_since=modified_since,
            max_pages_per_state=max_pages_per_state,
        )

    return run_refresh(fetch, store, label="race", **kwargs)


def refresh_route_data(
    store: RaceStore,
    fetch: Callable[[], Sequence[RawRecord]],
    **kwargs: Any,
) -> RefreshResult:
    """Refresh canonical routes from a caller-supplied fetch step."""
    return run_refresh(fetch, store, label="route", **kwargs)


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def build_import_report(result: ImportStats | RefreshResult, dry_run: bool = False) -> str:
    lines = [
        "=" * 60,
        "Race Import Pipeline Report",
        f"  dry_run: {dry_run}",
        "=" * 60,
    ]
    if isinstance(result, RefreshResult):
        lines.append(f"  {result.label} records fetched: {result.total_fetched}")
    lines += [
        f"  created:             {result.created}",
        f"  updated:             {result.updated}",
        f"  skipped:             {result.skipped}",
    ]
    for match_type, count in sorted(result.match_types.items()):
        lines.append(f"    matched by {match_type}: {count}")
    if isinstance(result, RefreshResult):
        lines += [
            f"  quality rescored:    {result.rescored}",
            f"  marked inactive:     {result.marked_inactive}",
            f"  duration:            {result.duration:.1f}s",
        ]
    lines.append(f"Errors:                {len(result.errors)}")
    for err in result.errors[:20]:
        lines.append(f"  {err}")
    if len(result.errors) > 20:
        lines.append(f"  ... and {len(result.errors) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)
