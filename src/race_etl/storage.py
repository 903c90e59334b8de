"""race_etl.storage

Storage collaborator for the import pipeline.

The pipeline only depends on the RaceStore protocol: read candidates by
location key, create or update a canonical race, and a few bookkeeping
writes (last-seen, provenance, occurrences, staleness, rescoring).

Implementations:
  PostgresRaceStore -- psycopg connection against migrations/0001_races.sql
  InMemoryRaceStore -- dict-backed store for dry runs without a database
"""

from __future__ import annotations

import contextlib
from collections.abc import Iterator
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Protocol

import psycopg

from race_etl.matching import ExistingRace

# ---------------------------------------------------------------------------
# Status values
# ---------------------------------------------------------------------------

STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"
STATUS_ARCHIVED = "archived"

VALID_RACE_STATUSES = (STATUS_ACTIVE, STATUS_INACTIVE, STATUS_ARCHIVED)

# Fields an import may overwrite on an existing canonical race.  Identity
# (slug, name, date, location) is never changed by an update.
MUTABLE_FIELDS = (
    "description",
    "website",
    "registration_url",
    "start_time",
    "time_limit",
    "distance",
    "distance_label",
    "distance_meters",
    "surface",
    "elevation",
    "quality_score",
)

SCORING_FIELDS = (
    "description",
    "website",
    "registration_url",
    "start_time",
    "distance",
    "surface",
    "elevation",
)


# ---------------------------------------------------------------------------
# Write model
# ---------------------------------------------------------------------------

@dataclass
class CanonicalRace:
    slug: str
    name: str
    date: str
    city: str
    state: str
    normalized_name: str
    location_key: str
    hash_key: str
    quality_score: int
    normalized_url: str | None = None
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
    status: str = STATUS_ACTIVE
    id: int | None = None


class RaceNotFoundError(LookupError):
    """Raised when an update targets a canonical race id that does not exist."""


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class RaceStore(Protocol):
    def transaction(self) -> contextlib.AbstractContextManager[Any]: ...

    def get_existing_for_matching(self, location_key: str) -> list[ExistingRace]: ...

    def find_source_record(self, source_name: str, external_id: str) -> ExistingRace | None: ...

    def slug_exists(self, slug: str) -> bool: ...

    def upsert_canonical_record(self, race: CanonicalRace, seen_at: datetime) -> int: ...

    def mark_seen(self, race_id: int, seen_at: datetime) -> None: ...

    def upsert_source_record(
        self,
        source_name: str,
        external_id: str,
        external_url: str | None,
        normalized_name: str,
        location_key: str,
        race_date: str,
        hash_key: str,
        canonical_race_id: int,
        seen_at: datetime,
    ) -> None: ...

    def upsert_occurrence(self, race_id: int, start_date: str, start_time: str | None) -> None: ...

    def mark_inactive(self, older_than: datetime) -> int: ...

    def iter_scoring_rows(self) -> list[dict[str, Any]]: ...

    def set_quality_score(self, race_id: int, score: int) -> None: ...


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------

_INSERT_COLS = (
    "slug", "name", "race_date", "city", "state",
    "distance", "distance_label", "distance_meters", "surface", "elevation",
    "description", "website", "registration_url", "start_time", "time_limit",
    "lat", "lng",
    "normalized_name", "location_key", "normalized_url", "hash_key",
    "quality_score", "status", "first_seen_at", "last_seen_at",
)


class PostgresRaceStore:
    """RaceStore backed by a psycopg connection (caller manages autocommit)."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn

    def transaction(self) -> contextlib.AbstractContextManager[Any]:
        return self.conn.transaction()

    def get_existing_for_matching(self, location_key: str) -> list[ExistingRace]:
        rows = self.conn.execute(
            """
            SELECT id, normalized_name, location_key, race_date,
                   normalized_url, quality_score
            FROM race
            WHERE location_key = %s
            ORDER BY id
            """,
            (location_key,),
        ).fetchall()
        return [
            ExistingRace(
                id=r[0],
                normalized_name=r[1],
                location_key=r[2],
                date=r[3].isoformat() if isinstance(r[3], date) else str(r[3]),
                normalized_url=r[4],
                quality_score=r[5],
            )
            for r in rows
        ]

    def find_source_record(self, source_name: str, external_id: str) -> ExistingRace | None:
        """Matching view of the race an earlier import linked this listing to."""
        row = self.conn.execute(
            """
            SELECT r.id, r.normalized_name, r.location_key, r.race_date,
                   r.normalized_url, r.quality_score
            FROM race_source_record s
            JOIN race r ON r.id = s.canonical_race_id
            WHERE s.source_name = %s AND s.external_id = %s
            """,
            (source_name, external_id),
        ).fetchone()
        if row is None:
            return None
        return ExistingRace(
            id=row[0],
            normalized_name=row[1],
            location_key=row[2],
            date=row[3].isoformat() if isinstance(row[3], date) else str(row[3]),
            normalized_url=row[4],
            quality_score=row[5],
        )

    def slug_exists(self, slug: str) -> bool:
        row = self.conn.execute("SELECT 1 FROM race WHERE slug = %s", (slug,)).fetchone()
        return row is not None

    def upsert_canonical_record(self, race: CanonicalRace, seen_at: datetime) -> int:
        if race.id is None:
            values = asdict(race)
            values["race_date"] = values.pop("date")
            values["first_seen_at"] = seen_at
            values["last_seen_at"] = seen_at
            placeholders = ", ".join(["%s"] * len(_INSERT_COLS))
            row = self.conn.execute(
                f"INSERT INTO race ({', '.join(_INSERT_COLS)}) VALUES ({placeholders}) RETURNING id",
                tuple(values[c] for c in _INSERT_COLS),
            ).fetchone()
            return int(row[0])

        assignments = ", ".join(f"{c} = %s" for c in MUTABLE_FIELDS)
        row = self.conn.execute(
            f"""
            UPDATE race
            SET {assignments},
                normalized_url = COALESCE(%s, normalized_url),
                status         = %s,
                last_seen_at   = %s,
                updated_at     = now()
            WHERE id = %s
            RETURNING id
            """,
            (
                *(getattr(race, c) for c in MUTABLE_FIELDS),
                race.normalized_url,
                STATUS_ACTIVE,
                seen_at,
                race.id,
            ),
        ).fetchone()
        if row is None:
            raise RaceNotFoundError(f"race id={race.id} not found")
        return int(row[0])

    def mark_seen(self, race_id: int, seen_at: datetime) -> None:
        self.conn.execute(
            "UPDATE race SET last_seen_at = %s, status = %s WHERE id = %s",
            (seen_at, STATUS_ACTIVE, race_id),
        )

    def upsert_source_record(
        self,
        source_name: str,
        external_id: str,
        external_url: str | None,
        normalized_name: str,
        location_key: str,
        race_date: str,
        hash_key: str,
        canonical_race_id: int,
        seen_at: datetime,
    ) -> None:
        self.conn.execute(
            """
            INSERT INTO race_source_record
                (source_name, external_id, external_url, normalized_name,
                 normalized_location_key, normalized_date, hash_key,
                 canonical_race_id, fetched_at, last_modified_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (source_name, external_id) DO UPDATE
              SET external_url            = EXCLUDED.external_url,
                  normalized_name         = EXCLUDED.normalized_name,
                  normalized_location_key = EXCLUDED.normalized_location_key,
                  normalized_date         = EXCLUDED.normalized_date,
                  hash_key                = EXCLUDED.hash_key,
                  canonical_race_id       = EXCLUDED.canonical_race_id,
                  last_modified_at        = EXCLUDED.last_modified_at
            """,
            (
                source_name, external_id, external_url, normalized_name,
                location_key, race_date, hash_key, canonical_race_id,
                seen_at, seen_at,
            ),
        )

    def upsert_occurrence(self, race_id: int, start_date: str, start_time: str | None) -> None:
        d = date.fromisoformat(start_date)
        self.conn.execute(
            """
            INSERT INTO race_occurrence (race_id, start_date, start_time, year, month)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (race_id, start_date) DO UPDATE
              SET start_time       = COALESCE(EXCLUDED.start_time, race_occurrence.start_time),
                  last_modified_at = now()
            """,
            (race_id, d, start_time, d.year, d.month),
        )

    def mark_inactive(self, older_than: datetime) -> int:
        rows = self.conn.execute(
            """
            UPDATE race
            SET status = %s, updated_at = now()
            WHERE status = %s
              AND last_seen_at < %s
            RETURNING id
            """,
            (STATUS_INACTIVE, STATUS_ACTIVE, older_than),
        ).fetchall()
        return len(rows)

    def iter_scoring_rows(self) -> list[dict[str, Any]]:
        cols = ("id", *SCORING_FIELDS, "quality_score")
        rows = self.conn.execute(
            f"SELECT {', '.join(cols)} FROM race ORDER BY id"
        ).fetchall()
        return [dict(zip(cols, r)) for r in rows]

    def set_quality_score(self, race_id: int, score: int) -> None:
        self.conn.execute(
            "UPDATE race SET quality_score = %s, updated_at = now() WHERE id = %s",
            (score, race_id),
        )


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

_MISSING = object()


def _existing_view(rid: int, row: dict[str, Any]) -> ExistingRace:
    return ExistingRace(
        id=rid,
        normalized_name=row["normalized_name"],
        location_key=row["location_key"],
        date=row["date"],
        normalized_url=row["normalized_url"],
        quality_score=row["quality_score"],
    )


@dataclass
class InMemoryRaceStore:
    """Dict-backed RaceStore.

    transaction() keeps an undo log of the rows written inside it and
    replays it in reverse on exception, so a rollback costs only what the
    failed record touched.
    """

    races: dict[int, dict[str, Any]] = field(default_factory=dict)
    source_records: dict[tuple[str, str], dict[str, Any]] = field(default_factory=dict)
    occurrences: dict[tuple[int, str], dict[str, Any]] = field(default_factory=dict)
    _next_id: int = field(default=1, repr=False)
    _undo: list[tuple[dict[Any, Any], Any, Any]] | None = field(default=None, repr=False)

    @contextlib.contextmanager
    def transaction(self) -> Iterator[None]:
        outer, next_id = self._undo, self._next_id
        self._undo = []
        try:
            yield
        except BaseException:
            for table, key, old in reversed(self._undo):
                if old is _MISSING:
                    table.pop(key, None)
                else:
                    table[key] = old
            self._next_id = next_id
            raise
        else:
            if outer is not None:
                outer.extend(self._undo)
        finally:
            self._undo = outer

    def _remember(self, table: dict[Any, Any], key: Any) -> None:
        if self._undo is None:
            return
        old = table.get(key, _MISSING)
        self._undo.append((table, key, old if old is _MISSING else dict(old)))

    def get_existing_for_matching(self, location_key: str) -> list[ExistingRace]:
        return [
            _existing_view(rid, r)
            for rid, r in sorted(self.races.items())
            if r["location_key"] == location_key
        ]

    def find_source_record(self, source_name: str, external_id: str) -> ExistingRace | None:
        source = self.source_records.get((source_name, external_id))
        if source is None:
            return None
        rid = source["canonical_race_id"]
        row = self.races.get(rid)
        return _existing_view(rid, row) if row is not None else None

    def slug_exists(self, slug: str) -> bool:
        return any(r["slug"] == slug for r in self.races.values())

    def upsert_canonical_record(self, race: CanonicalRace, seen_at: datetime) -> int:
        if race.id is None:
            if self.slug_exists(race.slug):
                raise ValueError(f"duplicate slug {race.slug!r}")
            rid = self._next_id
            self._next_id += 1
            row = asdict(race)
            row.update(id=rid, first_seen_at=seen_at, last_seen_at=seen_at)
            self._remember(self.races, rid)
            self.races[rid] = row
            return rid

        row = self.races.get(race.id)
        if row is None:
            raise RaceNotFoundError(f"race id={race.id} not found")
        self._remember(self.races, race.id)
        for name in MUTABLE_FIELDS:
            row[name] = getattr(race, name)
        if race.normalized_url:
            row["normalized_url"] = race.normalized_url
        row["status"] = STATUS_ACTIVE
        row["last_seen_at"] = seen_at
        return race.id

    def mark_seen(self, race_id: int, seen_at: datetime) -> None:
        row = self.races.get(race_id)
        if row is not None:
            self._remember(self.races, race_id)
            row["last_seen_at"] = seen_at
            row["status"] = STATUS_ACTIVE

    def upsert_source_record(
        self,
        source_name: str,
        external_id: str,
        external_url: str | None,
        normalized_name: str,
        location_key: str,
        race_date: str,
        hash_key: str,
        canonical_race_id: int,
        seen_at: datetime,
    ) -> None:
        key = (source_name, external_id)
        existing = self.source_records.get(key)
        self._remember(self.source_records, key)
        self.source_records[key] = {
            "external_url": external_url,
            "normalized_name": normalized_name,
            "normalized_location_key": location_key,
            "normalized_date": race_date,
            "hash_key": hash_key,
            "canonical_race_id": canonical_race_id,
            "fetched_at": existing["fetched_at"] if existing else seen_at,
            "last_modified_at": seen_at,
        }

    def upsert_occurrence(self, race_id: int, start_date: str, start_time: str | None) -> None:
        d = date.fromisoformat(start_date)
        key = (race_id, start_date)
        existing = self.occurrences.get(key)
        self._remember(self.occurrences, key)
        self.occurrences[key] = {
            "start_time": start_time or (existing["start_time"] if existing else None),
            "year": d.year,
            "month": d.month,
            "status": "scheduled",
        }

    def mark_inactive(self, older_than: datetime) -> int:
        count = 0
        for rid, row in self.races.items():
            if row["status"] == STATUS_ACTIVE and row["last_seen_at"] < older_than:
                self._remember(self.races, rid)
                row["status"] = STATUS_INACTIVE
                count += 1
        return count

    def iter_scoring_rows(self) -> list[dict[str, Any]]:
        return [
            {"id": rid, **{f: r[f] for f in SCORING_FIELDS}, "quality_score": r["quality_score"]}
            for rid, r in sorted(self.races.items())
        ]

    def set_quality_score(self, race_id: int, score: int) -> None:
        self._remember(self.races, race_id)
        self.races[race_id]["quality_score"] = score


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
