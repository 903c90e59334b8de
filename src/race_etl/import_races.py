"""race_etl.import_races

Unified CLI entrypoint for race ingestion.

Modes (--mode):
  runsignup_refresh  -- fetch RunSignUp listings, import, rescore, mark stale (default)
  json_import        -- import a JSON file of raw race records (manual/admin submissions)
  mark_inactive      -- flag races not seen within --stale-after-days as inactive
  rescore            -- recompute stored quality scores

Usage (runsignup_refresh):
    python -m race_etl.import_races \\
        --mode runsignup_refresh \\
        --db-dsn "$DB_DSN" \\
        --states CA,OR,WA \\
        --max-pages-per-state 5

Usage (json_import):
    python -m race_etl.import_races \\
        --mode json_import \\
        --db-dsn "$DB_DSN" \\
        --records-path "submissions/races.json" \\
        --rejects-path "artifacts/rejects/json_import_rejects.csv"

API credentials are read from the environment only (--api-key-env /
--api-secret-env name the variables), never from CLI arguments.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import click
import psycopg

from race_etl.matching import DEFAULT_FUZZY_THRESHOLD, validate_fuzzy_threshold
from race_etl.pipeline import (
    DEFAULT_STALE_AFTER_DAYS,
    ImportStats,
    RawRecord,
    RefreshResult,
    build_import_report,
    mark_inactive_races,
    process_race_import,
    refresh_race_data,
    rescore_quality,
)
from race_etl.quality_rules import (
    QualityRulesValidationError,
    QualityRuleSet,
    load_quality_rules,
)
from race_etl.runsignup import US_STATES, FetchCounters, RunSignUpClient
from race_etl.shared import RejectWriter, write_run_report
from race_etl.storage import InMemoryRaceStore, PostgresRaceStore, RaceStore


@dataclass
class MaintenanceResult:
    marked_inactive: int = 0
    rescored: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RunOutcome:
    """Counters for the report plus the error count that decides the exit code."""

    result: Any
    fetch_counters: FetchCounters | None = None

    def to_dict(self) -> dict[str, Any]:
        d = self.result.to_dict()
        if self.fetch_counters is not None:
            d["fetch"] = self.fetch_counters.to_dict()
        return d

    @property
    def error_count(self) -> int:
        return len(getattr(self.result, "errors", []))


def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


@click.command()
@click.option(
    "--mode",
    default="runsignup_refresh",
    type=click.Choice(["runsignup_refresh", "json_import", "mark_inactive", "rescore"]),
    show_default=True,
    help="Ingestion mode",
)
@click.option("--db-dsn", envvar="DB_DSN", default=None, help="PostgreSQL DSN (or $DB_DSN)")
@click.option("--in-memory", is_flag=True, default=False, help="Use a throwaway in-memory store instead of PostgreSQL")
# runsignup_refresh flags
@click.option("--states", default=None, help="[runsignup_refresh] Comma-separated state codes (default: all)")
@click.option("--start-date", default=None, help="[runsignup_refresh] YYYY-MM-DD (default: today)")
@click.option("--end-date", default=None, help="[runsignup_refresh] YYYY-MM-DD (default: today + 18 months)")
@click.option("--modified-since", default=None, help="[runsignup_refresh] Only races modified since this date")
@click.option("--max-pages-per-state", default=5, type=int, show_default=True, help="[runsignup_refresh] Page cap per state")
@click.option("--request-delay-seconds", default=0.5, type=float, show_default=True, help="[runsignup_refresh] Delay between page requests")
@click.option("--state-delay-seconds", default=0.3, type=float, show_default=True, help="[runsignup_refresh] Delay between states")
@click.option("--request-timeout", default=30, type=int, show_default=True, help="[runsignup_refresh] HTTP timeout in seconds")
@click.option("--api-key-env", default="RUNSIGNUP_API_KEY", show_default=True, help="[runsignup_refresh] Env var name holding the API key")
@click.option("--api-secret-env", default="RUNSIGNUP_API_SECRET", show_default=True, help="[runsignup_refresh] Env var name holding the API secret")
@click.option("--require-credentials", is_flag=True, default=False, help="[runsignup_refresh] Fail unless both credential env vars are set")
@click.option("--skip-mark-stale", is_flag=True, default=False, help="[runsignup_refresh] Do not mark unseen races inactive after import")
# json_import flags
@click.option("--records-path", default=None, type=click.Path(), help="[json_import] JSON file of raw race records")
# shared flags
@click.option("--quality-rules", default=None, type=click.Path(), help="YAML quality rule file (default: built-in weights)")
@click.option("--fuzzy-threshold", default=DEFAULT_FUZZY_THRESHOLD, type=float, show_default=True)
@click.option("--stale-after-days", default=DEFAULT_STALE_AFTER_DAYS, type=int, show_default=True)
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/race_import_rejects.csv",
    show_default=True,
)
@click.option("--reports-dir", default="./artifacts/reports", show_default=True, type=click.Path())
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str | None,
    in_memory: bool,
    # runsignup_refresh
    states: str | None,
    start_date: str | None,
    end_date: str | None,
    modified_since: str | None,
    max_pages_per_state: int,
    request_delay_seconds: float,
    state_delay_seconds: float,
    request_timeout: int,
    api_key_env: str,
    api_secret_env: str,
    require_credentials: bool,
    skip_mark_stale: bool,
    # json_import
    records_path: str | None,
    # shared
    quality_rules: str | None,
    fuzzy_threshold: float,
    stale_after_days: int,
    dry_run: bool,
    rejects_path: str,
    reports_dir: str,
    run_id: str | None,
    log_level: str,
) -> None:
    """Unified race ingestion CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()
    rejects = RejectWriter(Path(rejects_path))

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    # ------------------------------------------------------------------ #
    # Configuration (fatal on error)                                     #
    # ------------------------------------------------------------------ #
    if not in_memory and not db_dsn:
        _fatal(run_id, "--db-dsn (or $DB_DSN) is required unless --in-memory is given")

    rules: QualityRuleSet | None = None
    if quality_rules:
        try:
            rules = load_quality_rules(Path(quality_rules))
        except (OSError, QualityRulesValidationError) as exc:
            _fatal(run_id, f"cannot load quality rules {quality_rules}: {exc}")
        click.echo(f"[{run_id}] Quality rules v{rules.version} ({rules.yaml_hash[:12]})")

    try:
        validate_fuzzy_threshold(fuzzy_threshold)
    except ValueError as exc:
        _fatal(run_id, str(exc))

    if stale_after_days < 1:
        _fatal(run_id, "--stale-after-days must be >= 1")

    client: RunSignUpClient | None = None
    state_list: list[str] | None = None
    raw_records: list[RawRecord] = []

    if mode == "runsignup_refresh":
        state_list = _validate_states(states, run_id)
        api_key = os.environ.get(api_key_env, "")
        api_secret = os.environ.get(api_secret_env, "")
        if require_credentials and (not api_key or not api_secret):
            _fatal(run_id, f"env vars {api_key_env} and {api_secret_env} must be set")
        client = RunSignUpClient(
            api_key=api_key or None,
            api_secret=api_secret or None,
            timeout=request_timeout,
            request_delay=request_delay_seconds,
            state_delay=state_delay_seconds,
        )
    elif mode == "json_import":
        if not records_path:
            _fatal(run_id, "--records-path is required for json_import")
        raw_records = load_records_json(Path(records_path), rejects, run_id)
        click.echo(f"[{run_id}]   {len(raw_records)} valid records, {rejects.count} rejected")

    # ------------------------------------------------------------------ #
    # Run                                                                #
    # ------------------------------------------------------------------ #
    def run(store: RaceStore) -> RunOutcome:
        if mode == "runsignup_refresh":
            result = refresh_race_data(
                store,
                client,  # type: ignore[arg-type]
                states=state_list,
                start_date=start_date,
                end_date=end_date,
                modified_since=modified_since,
                max_pages_per_state=max_pages_per_state,
                rules=rules,
                fuzzy_threshold=fuzzy_threshold,
                stale_after_days=stale_after_days,
                mark_stale=not skip_mark_stale,
            )
            return RunOutcome(result, client.counters)  # type: ignore[union-attr]
        if mode == "json_import":
            return RunOutcome(
                process_race_import(raw_records, store, rules=rules, fuzzy_threshold=fuzzy_threshold)
            )
        if mode == "mark_inactive":
            return RunOutcome(
                MaintenanceResult(
                    marked_inactive=mark_inactive_races(store, stale_after_days=stale_after_days)
                )
            )
        return RunOutcome(MaintenanceResult(rescored=rescore_quality(store, rules)))

    if in_memory:
        outcome = run(InMemoryRaceStore())
    else:
        conn = psycopg.connect(db_dsn, autocommit=True)
        try:
            store = PostgresRaceStore(conn)
            if dry_run:
                with conn.transaction(force_rollback=True):
                    outcome = run(store)
                click.echo(f"[{run_id}] [dry-run] All changes rolled back.")
            else:
                outcome = run(store)
        finally:
            conn.close()

    # ------------------------------------------------------------------ #
    # Report                                                             #
    # ------------------------------------------------------------------ #
    if isinstance(outcome.result, (ImportStats, RefreshResult)):
        click.echo(build_import_report(outcome.result, dry_run=dry_run))
        for record, error in zip(getattr(outcome.result, "failed_records", []), outcome.result.errors):
            rejects.write(asdict(record), f"processing_error:{error}")
    else:
        for key, value in outcome.to_dict().items():
            click.echo(f"[{run_id}]   {key}: {value}")
    rejects.close()

    report_path = write_run_report(
        run_id, started_at, mode, dry_run,
        {"records_path": records_path, "states": state_list, "quality_rules": quality_rules},
        outcome,
        reports_dir=Path(reports_dir),
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    if rejects.count:
        click.echo(f"[{run_id}] Rejects: {rejects.count} row(s) written to {rejects.path}")

    if outcome.error_count > 0 and not dry_run:
        click.echo(f"[{run_id}] {outcome.error_count} record error(s); exiting non-zero", err=True)
        sys.exit(1)


def _validate_states(states: str | None, run_id: str) -> list[str] | None:
    if not states:
        return None
    parsed = [s.strip().upper() for s in states.split(",") if s.strip()]
    unknown = sorted(set(parsed) - set(US_STATES))
    if unknown:
        _fatal(run_id, f"unknown state codes: {unknown}")
    return parsed


def load_records_json(path: Path, rejects: RejectWriter, run_id: str) -> list[RawRecord]:
    """Parse a JSON list (or {"records": [...]}) of raw records.

    Invalid entries are written to rejects; an unreadable file is fatal.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        _fatal(run_id, f"cannot read records file {path}: {exc}")
    items = data.get("records") if isinstance(data, dict) else data
    if not isinstance(items, list):
        _fatal(run_id, f"records file {path} must hold a JSON list or {{\"records\": [...]}}")

    records: list[RawRecord] = []
    for idx, item in enumerate(items):
        if not isinstance(item, dict):
            rejects.write({"index": idx, "value": json.dumps(item)}, "not_an_object")
            continue
        try:
            records.append(RawRecord.from_dict(item))
        except (TypeError, ValueError) as exc:
            rejects.write({"index": idx, **item}, str(exc))
    return records


if __name__ == "__main__":
    main()
