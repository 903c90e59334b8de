"""Unit tests for race_etl.runsignup (no network)."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from race_etl.runsignup import (
    RESULTS_PER_PAGE,
    RunSignUpClient,
    classify_distance,
    classify_event_type,
    format_start_time,
    is_virtual_race,
    parse_runsignup_date,
    transform_race,
)


def _race(**overrides) -> dict:
    race = {
        "race_id": 1234,
        "name": "Harbor 10K",
        "next_date": "04/21/2025",
        "last_date": "04/22/2024",
        "is_draft_race": "F",
        "is_private_race": "F",
        "url": "https://runsignup.com/Race/MA/Boston/Harbor10K",
        "external_race_url": "https://harbor10k.org",
        "description": "<p>A fast <b>flat</b> course.</p>",
        "address": {
            "city": "Boston",
            "state": "MA",
            "zipcode": "02110",
            "country_code": "US",
        },
        "events": [
            {
                "name": "10K",
                "event_type": "running_race",
                "distance": "10",
                "distance_units": "K",
                "start_time": "4/21/2025 07:30",
            }
        ],
    }
    race.update(overrides)
    return race


# ---------------------------------------------------------------------------
# Field mapping
# ---------------------------------------------------------------------------

class TestParseRunsignupDate:
    def test_valid(self):
        assert parse_runsignup_date("04/21/2025") == "2025-04-21"

    def test_with_time(self):
        assert parse_runsignup_date("4/1/2025 08:00") == "2025-04-01"

    @pytest.mark.parametrize("bad", [None, "", "2025-04-21", "13/40/2025"])
    def test_invalid(self, bad):
        assert parse_runsignup_date(bad) is None


class TestClassifyDistance:
    def test_ten_k(self):
        info = classify_distance("10", "K", None)
        assert (info.distance, info.label, info.meters) == ("10K", "10K", 10000)

    def test_half_marathon_in_miles(self):
        assert classify_distance(13.1, "Miles", None).distance == "Half Marathon"

    def test_marathon_in_miles(self):
        assert classify_distance("26.2", "M", None).meters == 42195

    def test_ultra_by_meters(self):
        info = classify_distance("100", "K", None)
        assert info.distance == "Ultra"
        assert info.meters == 100000

    def test_other_keeps_raw_label(self):
        info = classify_distance("8", "K", None)
        assert (info.distance, info.label, info.meters) == ("Other", "8 K", 8000)

    def test_other_label_keeps_full_precision(self):
        info = classify_distance("12.34567", "K", None)
        assert info.label == "12.34567 K"
        assert info.meters == 12346

    def test_falls_back_to_name(self):
        assert classify_distance(None, None, "Spring Half Marathon").distance == "Half Marathon"
        assert classify_distance(None, None, "Turkey Trot 5K").distance == "5K"
        assert classify_distance("", "K", "City Marathon").distance == "Marathon"

    def test_unknown_name(self):
        assert classify_distance(None, None, "Fun Run").distance == "Other"


class TestClassifyEventType:
    def test_known(self):
        assert classify_event_type("trail_race") == "Trail"
        assert classify_event_type("running_race") == "Road"

    def test_non_running(self):
        assert classify_event_type("triathlon") is None

    def test_unknown_defaults_to_road(self):
        assert classify_event_type("something_new") == "Road"
        assert classify_event_type(None) == "Road"


class TestIsVirtualRace:
    def test_placeholder_city(self):
        assert is_virtual_race(_race(address={"city": "Virtual", "zipcode": "02110"}))

    def test_all_events_virtual(self):
        assert is_virtual_race(_race(events=[{"event_type": "virtual_race"}]))

    def test_placeholder_zip(self):
        assert is_virtual_race(_race(address={"city": "Boston", "zipcode": "99999"}))

    def test_mixed_events_not_virtual(self):
        events = [{"event_type": "virtual_race"}, {"event_type": "running_race"}]
        assert not is_virtual_race(_race(events=events))

    def test_missing_events_not_virtual(self):
        race = _race()
        del race["events"]
        assert not is_virtual_race(race)


class TestFormatStartTime:
    def test_morning(self):
        assert format_start_time("4/21/2025 07:30") == "7:30 AM"

    def test_afternoon(self):
        assert format_start_time("4/21/2025 13:05") == "1:05 PM"

    def test_noon(self):
        assert format_start_time("4/21/2025 12:00") == "12:00 PM"

    def test_midnight_unknown(self):
        assert format_start_time("4/21/2025 00:00") is None

    def test_no_time(self):
        assert format_start_time("4/21/2025") is None
        assert format_start_time(None) is None


class TestTransformRace:
    def test_maps_fields(self):
        rec = transform_race(_race())
        assert rec is not None
        assert rec.source_name == "runsignup"
        assert rec.external_id == "1234"
        assert rec.date == "2025-04-21"
        assert (rec.city, rec.state) == ("Boston", "MA")
        assert rec.distance == "10K"
        assert rec.surface == "Road"
        assert rec.elevation == "Rolling"
        assert rec.start_time == "7:30 AM"
        assert rec.description == "A fast flat course."
        assert rec.website == "https://harbor10k.org"
        assert rec.registration_url == "https://runsignup.com/Race/MA/Boston/Harbor10K"

    def test_falls_back_to_last_date(self):
        assert transform_race(_race(next_date=None)).date == "2024-04-22"

    def test_long_description_truncated(self):
        rec = transform_race(_race(description="<p>" + "word " * 200 + "</p>"))
        assert len(rec.description) == 500
        assert rec.description.endswith("...")

    @pytest.mark.parametrize("overrides", [
        {"is_draft_race": "T"},
        {"is_private_race": "T"},
        {"next_date": None, "last_date": None},
        {"address": {"city": "Toronto", "state": "ON", "country_code": "CA"}},
        {"address": {"city": "B", "state": "MA", "country_code": "US"}},
        {"address": {"city": "Boston", "state": "", "country_code": "US"}},
        {"events": [{"event_type": "virtual_race"}]},
    ])
    def test_filtered(self, overrides):
        assert transform_race(_race(**overrides)) is None

    def test_non_running_event_defaults(self):
        rec = transform_race(_race(events=[{"event_type": "triathlon", "name": "Sprint"}]))
        assert rec.surface == "Road"
        assert rec.distance == "Other"


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

def _resp(status: int = 200, races: list | None = None) -> MagicMock:
    r = MagicMock()
    r.status_code = status
    r.json.return_value = {"races": [{"race": race} for race in (races or [])]}
    return r


def _client(session: MagicMock, **kwargs) -> tuple[RunSignUpClient, list[float]]:
    sleeps: list[float] = []
    client = RunSignUpClient(session=session, sleep=sleeps.append, **kwargs)
    return client, sleeps


class TestRunSignUpClient:
    def test_short_page_stops_pagination(self):
        session = MagicMock()
        session.get.return_value = _resp(races=[_race()])
        client, _ = _client(session)

        records = client.fetch_races_by_state("MA", max_pages=5)

        assert len(records) == 1
        assert session.get.call_count == 1
        assert client.counters.pages_fetched == 1
        assert client.counters.races_kept == 1

    def test_full_pages_continue_until_max_pages(self):
        full_page = [_race(race_id=i) for i in range(RESULTS_PER_PAGE)]
        session = MagicMock()
        session.get.return_value = _resp(races=full_page)
        client, sleeps = _client(session, request_delay=0.5)

        records = client.fetch_races_by_state("MA", max_pages=2)

        assert session.get.call_count == 2
        assert len(records) == 2 * RESULTS_PER_PAGE
        assert sleeps == [0.5]
        pages = [c.kwargs["params"]["page"] for c in session.get.call_args_list]
        assert pages == ["1", "2"]

    def test_http_error_keeps_earlier_pages(self):
        full_page = [_race(race_id=i) for i in range(RESULTS_PER_PAGE)]
        session = MagicMock()
        session.get.side_effect = [_resp(races=full_page), _resp(status=500)]
        client, _ = _client(session)

        records = client.fetch_races_by_state("MA", max_pages=5)

        assert len(records) == RESULTS_PER_PAGE
        assert client.counters.fetch_errors == 1
        assert "HTTP 500" in client.counters.warnings[0]

    def test_network_error_returns_empty(self):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("boom")
        client, _ = _client(session)

        assert client.fetch_races_by_state("MA") == []
        assert client.counters.fetch_errors == 1

    def test_invalid_json_stops(self):
        session = MagicMock()
        bad = MagicMock(status_code=200)
        bad.json.side_effect = ValueError("not json")
        session.get.return_value = bad
        client, _ = _client(session)

        assert client.fetch_races_by_state("MA") == []
        assert client.counters.fetch_errors == 1

    def test_filtered_races_counted(self):
        session = MagicMock()
        session.get.return_value = _resp(races=[_race(), _race(is_draft_race="T")])
        client, _ = _client(session)

        records = client.fetch_races_by_state("MA")

        assert len(records) == 1
        assert client.counters.races_seen == 2
        assert client.counters.races_filtered == 1

    def test_params_include_credentials_and_window(self):
        session = MagicMock()
        session.get.return_value = _resp()
        client, _ = _client(session, api_key="k", api_secret="s", timeout=12)

        client.fetch_races_by_state(
            "OR", start_date="2025-01-01", end_date="2026-07-01", modified_since="2024-12-01"
        )

        call = session.get.call_args
        params = call.kwargs["params"]
        assert params["state"] == "OR"
        assert params["api_key"] == "k"
        assert params["api_secret"] == "s"
        assert params["start_date"] == "2025-01-01"
        assert params["end_date"] == "2026-07-01"
        assert params["modified_since"] == "2024-12-01"
        assert params["results_per_page"] == str(RESULTS_PER_PAGE)
        assert call.kwargs["timeout"] == 12

    def test_no_credentials_omitted(self):
        session = MagicMock()
        session.get.return_value = _resp()
        client, _ = _client(session)

        client.fetch_races_by_state("OR")

        params = session.get.call_args.kwargs["params"]
        assert "api_key" not in params
        assert "end_date" not in params

    def test_fetch_all_states(self):
        session = MagicMock()
        session.get.return_value = _resp(races=[_race()])
        client, sleeps = _client(session, state_delay=0.3)
        completed: list[tuple[str, int]] = []

        records = client.fetch_all_states(
            ["MA", "NH"], on_state_complete=lambda s, n: completed.append((s, n))
        )

        assert len(records) == 2
        assert completed == [("MA", 1), ("NH", 1)]
        assert sleeps == [0.3, 0.3]
        assert client.counters.states_fetched == 2

    def test_malformed_race_does_not_stop_other_states(self):
        session = MagicMock()
        session.get.side_effect = [
            _resp(races=[_race(events=[None]), _race(race_id=2)]),
            _resp(races=[_race(race_id=3, address={"city": "Albany", "state": "NY", "country_code": "US"})]),
        ]
        client, _ = _client(session)

        records = client.fetch_all_states(["MA", "NY"])

        assert session.get.call_count == 2
        assert [r.external_id for r in records] == ["2", "3"]
        assert client.counters.races_filtered == 1
        assert client.counters.states_fetched == 2
        assert "malformed race on MA page 1" in client.counters.warnings[0]

    def test_counters_to_dict(self):
        client, _ = _client(MagicMock())
        client.counters.warnings.extend(f"w{i}" for i in range(60))
        d = client.counters.to_dict()
        assert len(d["warnings"]) == 50
        assert d["fetch_errors"] == 0
