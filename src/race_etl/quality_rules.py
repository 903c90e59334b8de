"""race_etl.quality_rules

YAML-configurable quality scoring for race records.

Responsibilities:
  - Load and validate YAML rule files from config/quality_rules/*.yml
  - Score a record additively from the presence/richness of optional fields
  - Hash YAML content for traceability in run reports

The built-in DEFAULT_QUALITY_RULES reproduce the standard weights:

    base 10; description > 50 chars +20, > 200 chars +10 more; website +15;
    registration url +10; start time +10; distance (not "Other") +10;
    surface (not "unknown") +5; elevation +5; capped at 100.

Usage:
    from pathlib import Path
    from race_etl.quality_rules import load_quality_rules

    rules = load_quality_rules(Path("config/quality_rules/race.yml"))
    score = rules.score({"website": "https://example.com"})
"""

from __future__ import annotations

import hashlib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SCORE_FLOOR = 10
SCORE_CEILING = 100

WEIGHT_KEYS = (
    "description",
    "description_rich",
    "website",
    "registration_url",
    "start_time",
    "distance",
    "surface",
    "elevation",
)

REQUIRED_YAML_KEYS = frozenset({
    "version",
    "base",
    "cap",
    "description_min_length",
    "description_rich_length",
    "weights",
})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class QualityRulesValidationError(ValueError):
    """Raised when a YAML quality rule file fails schema validation."""


# ---------------------------------------------------------------------------
# Scorer protocol
# ---------------------------------------------------------------------------

class QualityScorer(Protocol):
    def score(self, record: Any) -> int: ...


def _field(record: Any, name: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


# ---------------------------------------------------------------------------
# QualityRuleSet dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class QualityRuleSet:
    """Parsed, validated quality weights."""

    version: str
    base: int
    cap: int
    description_min_length: int
    description_rich_length: int
    weights: dict[str, int]
    sentinels: dict[str, str] = field(default_factory=dict)
    yaml_hash: str | None = None

    def score(self, record: Any) -> int:
        """Return the additive richness score for `record`, capped at `cap`.

        Weights are non-negative, so adding information never lowers the score.
        """
        w = self.weights
        total = self.base

        description = _field(record, "description") or ""
        if len(description) > self.description_min_length:
            total += w.get("description", 0)
        if len(description) > self.description_rich_length:
            total += w.get("description_rich", 0)

        for name in ("website", "registration_url", "start_time", "elevation"):
            if _field(record, name):
                total += w.get(name, 0)

        for name in ("distance", "surface"):
            value = _field(record, name)
            if value and value != self.sentinels.get(name):
                total += w.get(name, 0)

        return min(total, self.cap)


DEFAULT_QUALITY_RULES = QualityRuleSet(
    version="1",
    base=10,
    cap=100,
    description_min_length=50,
    description_rich_length=200,
    weights={
        "description": 20,
        "description_rich": 10,
        "website": 15,
        "registration_url": 10,
        "start_time": 10,
        "distance": 10,
        "surface": 5,
        "elevation": 5,
    },
    sentinels={"distance": "Other", "surface": "unknown"},
)


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_quality_rules(yaml_path: Path) -> QualityRuleSet:
    """Load, validate, and return a QualityRuleSet from a YAML file.

    Raises:
        QualityRulesValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_quality_rules(data)
    sentinels = data.get("sentinels")
    if sentinels is None:
        sentinels = dict(DEFAULT_QUALITY_RULES.sentinels)
    return QualityRuleSet(
        version=str(data["version"]),
        base=int(data["base"]),
        cap=int(data["cap"]),
        description_min_length=int(data["description_min_length"]),
        description_rich_length=int(data["description_rich_length"]),
        weights={k: int(v) for k, v in data["weights"].items()},
        sentinels={k: str(v) for k, v in sentinels.items()},
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
    )


def _as_int(key: str, value: Any) -> int:
    if isinstance(value, bool):
        raise QualityRulesValidationError(f"'{key}' value {value!r} is not an integer.")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise QualityRulesValidationError(f"'{key}' value {value!r} is not an integer.")


def validate_quality_rules(data: dict[str, Any]) -> None:
    """Raise QualityRulesValidationError if data does not match the schema.

    Validates:
      - Required top-level keys present
      - SCORE_FLOOR <= base <= cap <= SCORE_CEILING
      - description_min_length <= description_rich_length
      - weights only use known keys and are all >= 0
    """
    if not isinstance(data, dict):
        raise QualityRulesValidationError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise QualityRulesValidationError(f"Missing required YAML keys: {sorted(missing_keys)}")

    base = _as_int("base", data["base"])
    cap = _as_int("cap", data["cap"])
    if not (SCORE_FLOOR <= base <= cap <= SCORE_CEILING):
        raise QualityRulesValidationError(
            f"Require {SCORE_FLOOR} <= base ({base}) <= cap ({cap}) <= {SCORE_CEILING}."
        )

    min_len = _as_int("description_min_length", data["description_min_length"])
    rich_len = _as_int("description_rich_length", data["description_rich_length"])
    if min_len < 0 or min_len > rich_len:
        raise QualityRulesValidationError(
            f"'description_min_length' ({min_len}) must be >= 0 and "
            f"<= 'description_rich_length' ({rich_len})."
        )

    weights = data.get("weights") or {}
    if not isinstance(weights, dict) or not weights:
        raise QualityRulesValidationError("'weights' must be a non-empty mapping.")
    unknown = set(weights) - set(WEIGHT_KEYS)
    if unknown:
        raise QualityRulesValidationError(f"Unknown weight keys: {sorted(unknown)}")
    for key, value in weights.items():
        if _as_int(f"weights.{key}", value) < 0:
            raise QualityRulesValidationError(f"weight '{key}' value {value} must be >= 0.")

    sentinels = data.get("sentinels")
    if sentinels is not None and not isinstance(sentinels, dict):
        raise QualityRulesValidationError("'sentinels' must be a mapping.")
