"""race_etl.runsignup

Source adapter for the RunSignUp race listings API.

Fetches paginated race listings one state at a time and maps each provider
race into a RawRecord, dropping listings that should never reach the
import pipeline:
  - draft or private races
  - virtual races (placeholder city, all sub-events virtual, 00000/99999 zip)
  - non-US addresses
  - races without a resolvable date, a city of >= 2 characters, or a state

Fetch policy:
  - Sequential pages of RESULTS_PER_PAGE; stop on a short page or max_pages.
  - Fixed delay between pages and between states.
  - A non-2xx response, network error or bad JSON stops that state's loop;
    records already collected for the state are kept.  No retries.
  - A malformed race item is counted as filtered with a warning and the
    rest of the page is still read.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date
from typing import Any

import requests

from race_etl.normalize import parse_float, strip_html, trim
from race_etl.pipeline import RawRecord

log = logging.getLogger(__name__)

SOURCE_NAME = "runsignup"
BASE_URL = "https://api.runsignup.com/rest/races"
RESULTS_PER_PAGE = 200
REQUEST_DELAY_SECONDS = 0.5
STATE_DELAY_SECONDS = 0.3
DEFAULT_TIMEOUT = 30

US_STATES = (
    "AL", "AK", "AZ", "AR", "CA", "CO", "CT", "DE", "FL", "GA",
    "HI", "ID", "IL", "IN", "IA", "KS", "KY", "LA", "ME", "MD",
    "MA", "MI", "MN", "MS", "MO", "MT", "NE", "NV", "NH", "NJ",
    "NM", "NY", "NC", "ND", "OH", "OK", "OR", "PA", "RI", "SC",
    "SD", "TN", "TX", "UT", "VT", "VA", "WA", "WV", "WI", "WY", "DC",
)

DOMESTIC_COUNTRY = "US"
VIRTUAL_CITIES = frozenset({"anywhere", "virtual", "everywhere", "your city", "any city"})
VIRTUAL_ZIPCODES = frozenset({"00000", "99999"})
VIRTUAL_EVENT_TYPE = "virtual_race"

DEFAULT_ELEVATION = "Rolling"
DESCRIPTION_MAX_LEN = 500

_EVENT_TYPE_SURFACE: dict[str, str | None] = {
    "running_race": "Road",
    "trail_race": "Trail",
    "walking": "Road",
    "virtual_race": None,
    "obstacle_mud_race": None,
    "triathlon": None,
    "cycling_race": None,
    "swimming": None,
}

_METERS_PER_MILE = 1609.34


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class FetchCounters:
    states_fetched: int = 0
    pages_fetched: int = 0
    races_seen: int = 0
    races_kept: int = 0
    races_filtered: int = 0
    fetch_errors: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Field mapping
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DistanceInfo:
    distance: str
    label: str
    meters: int


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _format_number(value: float) -> str:
    text = repr(value)
    return text[:-2] if text.endswith(".0") else text


def parse_runsignup_date(value: str | None) -> str | None:
    """'MM/DD/YYYY[ HH:MM]' -> 'YYYY-MM-DD', or None when unparsable."""
    v = trim(value)
    if v is None:
        return None
    parts = v.split(" ")[0].split("/")
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        return None
    month, day, year = parts
    try:
        return date(int(year), int(month), int(day)).isoformat()
    except ValueError:
        return None


def classify_distance(
    distance_value: Any,
    units: str | None,
    event_name: str | None,
) -> DistanceInfo:
    """Bucket a numeric distance (or, absent that, the event name) into a class."""
    value = parse_float(distance_value)
    if value and units:
        if units in ("K", "Kilometers"):
            meters = value * 1000
        elif units in ("M", "Miles"):
            meters = value * _METERS_PER_MILE
        else:
            meters = value

        if meters >= 80000:
            return DistanceInfo("Ultra", "Ultra", _round_half_up(meters))
        if 41000 <= meters <= 43000:
            return DistanceInfo("Marathon", "Marathon", 42195)
        if 20500 <= meters <= 22000:
            return DistanceInfo("Half Marathon", "Half Marathon", 21097)
        if 9500 <= meters <= 10500:
            return DistanceInfo("10K", "10K", 10000)
        if 4800 <= meters <= 5200:
            return DistanceInfo("5K", "5K", 5000)
        if 1500 <= meters <= 1700:
            return DistanceInfo("1 Mile", "1 Mile", 1609)
        return DistanceInfo("Other", f"{_format_number(value)} {units}", _round_half_up(meters))

    name = (event_name or "").lower()
    if "marathon" in name and "half" not in name and "ultra" not in name:
        return DistanceInfo("Marathon", "Marathon", 42195)
    if "half marathon" in name or "half-marathon" in name or "13.1" in name:
        return DistanceInfo("Half Marathon", "Half Marathon", 21097)
    if any(k in name for k in ("ultra", "100 mile", "50 mile", "100k", "50k")):
        return DistanceInfo("Ultra", "Ultra", 80000)
    if "10k" in name or "10 k" in name:
        return DistanceInfo("10K", "10K", 10000)
    if "5k" in name or "5 k" in name:
        return DistanceInfo("5K", "5K", 5000)
    if "1 mile" in name or "mile run" in name:
        return DistanceInfo("1 Mile", "1 Mile", 1609)
    return DistanceInfo("Other", "Other", 0)


def classify_event_type(event_type: str | None) -> str | None:
    """Map a provider event type to Road/Trail; None for non-running types.

    Unrecognized types default to Road.
    """
    return _EVENT_TYPE_SURFACE.get(event_type or "", "Road")


def is_virtual_race(race: dict[str, Any]) -> bool:
    address = race.get("address") or {}
    if (address.get("city") or "").strip().lower() in VIRTUAL_CITIES:
        return True
    events = race.get("events")
    if events is not None and all(e.get("event_type") == VIRTUAL_EVENT_TYPE for e in events):
        return True
    return (address.get("zipcode") or "") in VIRTUAL_ZIPCODES


def format_start_time(value: str | None) -> str | None:
    """'M/D/YYYY HH:MM' -> 'h:MM AM/PM'.  Midnight means unknown."""
    if not value:
        return None
    parts = value.split(" ")
    if len(parts) < 2 or parts[1] == "00:00":
        return None
    hh, _, mm = parts[1].partition(":")
    if not hh.isdigit() or not mm:
        return None
    hour = int(hh)
    ampm = "PM" if hour >= 12 else "AM"
    hour12 = 12 if hour == 0 else hour - 12 if hour > 12 else hour
    return f"{hour12}:{mm[:2]} {ampm}"


def _primary_event(events: list[dict[str, Any]]) -> dict[str, Any] | None:
    for event in events:
        if classify_event_type(event.get("event_type")) is not None:
            return event
    return events[0] if events else None


def _clean_description(raw: str | None) -> str | None:
    if not raw:
        return None
    text = strip_html(raw)
    if not text:
        return None
    if len(text) > DESCRIPTION_MAX_LEN:
        return text[:DESCRIPTION_MAX_LEN - 3] + "..."
    return text


def transform_race(race: dict[str, Any]) -> RawRecord | None:
    """Map one provider race to a RawRecord, or None when it is filtered out."""
    if race.get("is_draft_race") == "T" or race.get("is_private_race") == "T":
        return None
    if is_virtual_race(race):
        return None
    address = race.get("address") or {}
    if address.get("country_code") != DOMESTIC_COUNTRY:
        return None

    race_date = parse_runsignup_date(race.get("next_date")) or parse_runsignup_date(
        race.get("last_date")
    )
    if not race_date:
        return None

    city = trim(address.get("city"))
    state = trim(address.get("state"))
    if not city or not state or len(city) < 2:
        return None

    events = race.get("events") or []
    primary = _primary_event(events)
    surface = (classify_event_type(primary.get("event_type")) or "Road") if primary else "Road"
    dist = classify_distance(
        primary.get("distance") if primary else None,
        primary.get("distance_units") if primary else None,
        (primary.get("name") if primary else None) or race.get("name"),
    )

    url = trim(race.get("url"))
    return RawRecord(
        source_name=SOURCE_NAME,
        external_id=str(race.get("race_id")),
        external_url=url,
        name=(race.get("name") or "").strip(),
        date=race_date,
        city=city,
        state=state,
        distance=dist.distance,
        distance_label=dist.label,
        distance_meters=dist.meters,
        surface=surface,
        elevation=DEFAULT_ELEVATION,
        description=_clean_description(race.get("description")),
        website=trim(race.get("external_race_url")) or url,
        registration_url=url,
        start_time=format_start_time(primary.get("start_time")) if primary else None,
    )


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

class RunSignUpClient:
    """Sequential, rate-limited reader of the RunSignUp race listings endpoint."""

    def __init__(
        self,
        session: requests.Session | None = None,
        api_key: str | None = None,
        api_secret: str | None = None,
        base_url: str = BASE_URL,
        timeout: int = DEFAULT_TIMEOUT,
        request_delay: float = REQUEST_DELAY_SECONDS,
        state_delay: float = STATE_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        counters: FetchCounters | None = None,
    ) -> None:
        if session is None:
            session = requests.Session()
            session.headers.update({"User-Agent": "race-etl/1.0 (race directory ingestion)"})
        self.session = session
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url
        self.timeout = timeout
        self.request_delay = request_delay
        self.state_delay = state_delay
        self.sleep = sleep
        self.counters = counters or FetchCounters()

    def _params(
        self,
        state: str,
        page: int,
        start_date: str | None,
        end_date: str | None,
        modified_since: str | None,
    ) -> dict[str, str]:
        params = {
            "format": "json",
            "state": state,
            "results_per_page": str(RESULTS_PER_PAGE),
            "page": str(page),
            "events": "T",
            "sort": "date ASC",
            "start_date": start_date or date.today().isoformat(),
        }
        if end_date:
            params["end_date"] = end_date
        if modified_since:
            params["modified_since"] = modified_since
        if self.api_key:
            params["api_key"] = self.api_key
        if self.api_secret:
            params["api_secret"] = self.api_secret
        return params

    def fetch_races_by_state(
        self,
        state: str,
        *,
        start_date: str | None = None,
        end_date: str | None = None,
        modified_since: str | None = None,
        max_pages: int = 10,
    ) -> list[RawRecord]:
        records: list[RawRecord] = []
        page = 1
        while page <= max_pages:
            params = self._params(state, page, start_date, end_date, modified_since)
            try:
                resp = self.session.get(self.base_url, params=params, timeout=self.timeout)
            except requests.RequestException as exc:
                self._fetch_error(f"network error for {state} page {page}: {exc}")
                break
            if not 200 <= resp.status_code < 300:
                self._fetch_error(f"HTTP {resp.status_code} for {state} page {page}")
                break
            try:
                payload = resp.json()
            except ValueError as exc:
                self._fetch_error(f"invalid JSON for {state} page {page}: {exc}")
                break

            self.counters.pages_fetched += 1
            races = (payload or {}).get("races") or []
            for item in races:
                self.counters.races_seen += 1
                try:
                    record = transform_race(item.get("race") or {})
                except (AttributeError, TypeError, ValueError) as exc:
                    self.counters.races_filtered += 1
                    self.counters.warnings.append(
                        f"malformed race on {state} page {page}: {exc!r}"
                    )
                    log.warning("Skipping malformed RunSignUp race on %s page %d: %r", state, page, exc)
                    continue
                if record is None:
                    self.counters.races_filtered += 1
                    continue
                self.counters.races_kept += 1
                records.append(record)

            if len(races) < RESULTS_PER_PAGE:
                break
            page += 1
            if page <= max_pages:
                self.sleep(self.request_delay)

        return records

    def fetch_all_states(
        self,
        states: Iterable[str] | None = None,
        *,
        start_date: str | None = None,
        end_date: str | None = None,
        modified_since: str | None = None,
        max_pages_per_state: int = 5,
        on_state_complete: Callable[[str, int], None] | None = None,
    ) -> list[RawRecord]:
        all_records: list[RawRecord] = []
        for state in states or US_STATES:
            records = self.fetch_races_by_state(
                state,
                start_date=start_date,
                end_date=end_date,
                modified_since=modified_since,
                max_pages=max_pages_per_state,
            )
            self.counters.states_fetched += 1
            all_records.extend(records)
            log.info("%s: %d races fetched", state, len(records))
            if on_state_complete is not None:
                on_state_complete(state, len(records))
            self.sleep(self.state_delay)
        return all_records

    def _fetch_error(self, message: str) -> None:
        self.counters.fetch_errors += 1
        self.counters.warnings.append(message)
        log.error("RunSignUp fetch stopped: %s", message)
