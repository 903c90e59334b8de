"""Normalization functions for race listing ingestion.

Turns free-text identifying fields into comparison-safe keys.  Every
function here is total over its documented input: empty or None values
produce an empty key (or None where noted), never an exception.  The one
deliberate exception is parse_iso_date, which the import pipeline uses to
reject malformed dates per record.
"""

from __future__ import annotations

import re
import unicodedata
import urllib.parse
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from bs4 import BeautifulSoup

from race_etl.quality_rules import DEFAULT_QUALITY_RULES, QualityScorer

STOP_WORDS = frozenset({"the", "annual", "and", "of", "a", "an", "for", "in", "at", "by"})

_QUOTE_CHARS_RE = re.compile("['\"‘’“”]")
_NON_ALNUM_SPACE_RE = re.compile(r"[^a-z0-9\s]")
_WS_RE = re.compile(r"\s+")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_URL_PREFIX_RE = re.compile(r"^(https?://)?(www\.)?")

_COORD_QUANTUM = Decimal("0.001")
_SLUG_MAX_LEN = 80


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return _WS_RE.sub(" ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_name  (dedupe comparison key)
# ---------------------------------------------------------------------------

def normalize_name(value: str | None) -> str:
    """Lowercase, drop quotes and punctuation, collapse spaces, drop stop words.

    "The Boston Annual 10K!!" -> "boston 10k".  Idempotent.
    """
    if not value:
        return ""
    v = value.lower()
    v = _QUOTE_CHARS_RE.sub("", v)
    v = _NON_ALNUM_SPACE_RE.sub(" ", v)
    v = _WS_RE.sub(" ", v).strip()
    return " ".join(w for w in v.split(" ") if w and w not in STOP_WORDS)


# ---------------------------------------------------------------------------
# Rule 4: normalize_location_key
# ---------------------------------------------------------------------------

def _round_coord(value: float) -> str:
    """Round half away from zero at the 3rd decimal; no trailing zeros."""
    d = Decimal(str(value)).quantize(_COORD_QUANTUM, rounding=ROUND_HALF_UP)
    if d == 0:
        return "0"
    return format(d.normalize(), "f")


def normalize_location_key(
    city: str | None,
    state: str | None,
    lat: float | None = None,
    lng: float | None = None,
) -> str:
    """Return 'city|state' or 'city|state|lat|lng' when both coordinates are set.

    Keys with and without coordinates have different shapes and are never
    equal to each other.
    """
    city_norm = _NON_ALNUM_SPACE_RE.sub("", (city or "").lower()).strip()
    state_norm = (state or "").lower().strip()
    if lat is not None and lng is not None:
        return f"{city_norm}|{state_norm}|{_round_coord(lat)}|{_round_coord(lng)}"
    return f"{city_norm}|{state_norm}"


# ---------------------------------------------------------------------------
# Rule 5: normalize_url
# ---------------------------------------------------------------------------

def normalize_url(url: str | None) -> str | None:
    """Return host (no leading www.) + path (no trailing slash), lowercased.

    Values that do not parse as absolute URLs fall back to stripping an
    http(s):// and www. prefix and one trailing slash.  Never raises.
    """
    if not url:
        return None
    try:
        parts = urllib.parse.urlsplit(url.strip())
        host = parts.hostname
    except ValueError:
        host = None
        parts = None
    if parts is not None and parts.scheme and host:
        if host.startswith("www."):
            host = host[4:]
        path = parts.path[:-1] if parts.path.endswith("/") else parts.path
        return f"{host}{path}".lower()
    v = _URL_PREFIX_RE.sub("", url.lower())
    return v[:-1] if v.endswith("/") else v


# ---------------------------------------------------------------------------
# Rule 6: generate_hash_key
# ---------------------------------------------------------------------------

def generate_hash_key(normalized_name: str, location_key: str, race_date: str) -> str:
    """Exact-duplicate lookup key.  Normalized names never contain '|'."""
    return f"{normalized_name}|{location_key}|{race_date}"


# ---------------------------------------------------------------------------
# Rule 7: compute_quality_score
# ---------------------------------------------------------------------------

def compute_quality_score(record: Any, rules: QualityScorer | None = None) -> int:
    """Score a record's richness in [10, 100] using the given or default rules.

    `record` may be a mapping or any object exposing description, website,
    registration_url, start_time, distance, surface and elevation.
    """
    return (rules or DEFAULT_QUALITY_RULES).score(record)


# ---------------------------------------------------------------------------
# Rule 8: slugs
# ---------------------------------------------------------------------------

def slugify(value: str | None) -> str:
    """Lowercase alnum with '-' separators, apostrophes dropped, max 80 chars."""
    if not value:
        return ""
    v = unicodedata.normalize("NFKD", value)
    v = "".join(c for c in v if not unicodedata.combining(c))
    v = v.lower()
    v = re.sub(r"['’]", "", v)
    v = re.sub(r"[^a-z0-9]+", "-", v)
    return v.strip("-")[:_SLUG_MAX_LEN]


def make_unique_slug(name: str, city: str, state: str) -> str:
    """Race slug: name slug plus '-city-state' unless already present or too long."""
    base = slugify(name)
    suffix = slugify(f"{city}-{state}")
    if suffix in base or len(base) > 60:
        return base
    return f"{base}-{suffix}"[:_SLUG_MAX_LEN]


# ---------------------------------------------------------------------------
# Rule 9: parse_iso_date
# ---------------------------------------------------------------------------

def parse_iso_date(value: str | date | None) -> date:
    """Parse a strict 'YYYY-MM-DD' string.  Raises ValueError when malformed."""
    if isinstance(value, date):
        return value
    v = trim(value)
    if v is None or not _ISO_DATE_RE.match(v):
        raise ValueError(f"invalid date {value!r}; expected YYYY-MM-DD")
    return date.fromisoformat(v)


# ---------------------------------------------------------------------------
# Rule 10: strip_html
# ---------------------------------------------------------------------------

def strip_html(value: str | None) -> str:
    """Return the text content of an HTML fragment with whitespace collapsed."""
    if not value:
        return ""
    text = BeautifulSoup(value, "html.parser").get_text(" ")
    return _WS_RE.sub(" ", text.replace("\xa0", " ")).strip()


# ---------------------------------------------------------------------------
# Rule 11: parse_float
# ---------------------------------------------------------------------------

def parse_float(value: Any) -> float | None:
    """Parse a number from an int/float/str, returning None on failure."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    v = trim(str(value))
    if v is None:
        return None
    try:
        return float(Decimal(v))
    except InvalidOperation:
        return None
