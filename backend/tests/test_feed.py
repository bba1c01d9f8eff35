from datetime import date, datetime
from unittest.mock import patch
from urllib import error

import pytest

from tradewins.errors import FeedUnavailable
from tradewins.feed import (
    STATE_FINAL,
    STATE_IN_PROGRESS,
    STATE_PRE,
    STATE_VOID,
    ScoreboardClient,
    normalize_league,
    parse_event,
    parse_feed_datetime,
    parse_record_summary,
    parse_scoreboard,
)


def raw_event(event_id="401", state="post", completed=True, home=("TOR", "4", True), away=("BOS", "2", False)):
    def competitor(side, values):
        abbreviation, score, winner = values
        return {
            "homeAway": side,
            "score": score,
            "winner": winner,
            "team": {"abbreviation": abbreviation.lower()},
            "records": [
                {"name": "overall", "summary": "10-5-2"},
                {"name": "streak", "summary": "W3"},
            ],
        }

    return {
        "id": event_id,
        "date": "2024-11-02T23:00Z",
        "shortName": f"{away[0]} @ {home[0]}",
        "status": {"type": {"state": state, "completed": completed}},
        "competitions": [{"competitors": [competitor("home", home), competitor("away", away)]}],
    }


def test_parse_event_reads_competitors_and_state():
    event = parse_event(raw_event(), "NHL")

    assert event.game_id == "401"
    assert event.start_at == datetime(2024, 11, 2, 23, 0)
    assert event.state == STATE_FINAL
    assert [c.ticker for c in event.competitors] == ["TOR", "BOS"]
    assert event.winner.ticker == "TOR"
    assert event.winner.score == 4
    assert event.winner.record_summary == "10-5-2"
    assert event.winner.streak == "W3"
    assert event.opponent_of("TOR").ticker == "BOS"


@pytest.mark.parametrize(
    "state,completed,expected",
    [
        ("pre", False, STATE_PRE),
        ("in", False, STATE_IN_PROGRESS),
        ("post", True, STATE_FINAL),
        ("post", False, STATE_VOID),
    ],
)
def test_event_state_mapping(state, completed, expected):
    assert parse_event(raw_event(state=state, completed=completed), "NFL").state == expected


@pytest.mark.parametrize("status_name", ["STATUS_POSTPONED", "STATUS_CANCELED"])
def test_postponed_status_is_void_even_when_state_is_pre(status_name):
    raw = raw_event(state="pre", completed=False)
    raw["status"]["type"]["name"] = status_name
    assert parse_event(raw, "NHL").state == STATE_VOID


def test_event_without_single_winner_has_no_winner():
    event = parse_event(raw_event(home=("TOR", "2", False), away=("BOS", "2", False)), "NHL")
    assert event.winner is None


def test_competitors_may_sit_at_top_level():
    raw = raw_event()
    raw["competitors"] = raw.pop("competitions")[0]["competitors"]
    assert len(parse_event(raw, "NHL").competitors) == 2


@pytest.mark.parametrize(
    "summary,expected",
    [
        ("10-5-2", (10, 5, 2)),
        ("12-4", (12, 4, 0)),
        (" 3 - 1 - 0 ", (3, 1, 0)),
        ("", None),
        (None, None),
        ("ten-five", None),
        ("7", None),
    ],
)
def test_parse_record_summary(summary, expected):
    assert parse_record_summary(summary) == expected


def test_parse_feed_datetime_normalizes_offsets_to_naive_utc():
    assert parse_feed_datetime("2024-11-02T19:00-04:00") == datetime(2024, 11, 2, 23, 0)
    with pytest.raises(ValueError):
        parse_feed_datetime("")


def test_parse_scoreboard_skips_malformed_rows():
    missing_team = raw_event(event_id="402")
    missing_team["competitions"][0]["competitors"].pop()
    payload = {"events": [raw_event(), missing_team, "junk", {"id": "", "date": "2024-11-02T23:00Z"}]}

    events, invalid_rows = parse_scoreboard(payload, "NHL")

    assert [event.game_id for event in events] == ["401"]
    assert invalid_rows == 3


def test_parse_scoreboard_rejects_non_object_payload():
    with pytest.raises(FeedUnavailable):
        parse_scoreboard(["not", "a", "scoreboard"], "NHL")


def test_normalize_league():
    assert normalize_league(" nfl ") == "NFL"
    with pytest.raises(ValueError):
        normalize_league("MLB")


def test_scoreboard_url_covers_date_window():
    client = ScoreboardClient(base_url="https://scores.example/apis/")
    url = client.scoreboard_url("nhl", date(2024, 11, 1), date(2024, 11, 14))
    assert url == "https://scores.example/apis/hockey/nhl/scoreboard?dates=20241101-20241114&limit=500"


def test_fetch_events_retries_then_raises_feed_unavailable():
    client = ScoreboardClient(max_retries=2, retry_backoff=0)
    with patch.object(client, "http_get_json", side_effect=error.URLError("down")) as mock_get, patch(
        "tradewins.feed.time.sleep"
    ):
        with pytest.raises(FeedUnavailable):
            client.fetch_events("NFL", date(2024, 9, 1), date(2024, 9, 14))
    assert mock_get.call_count == 2


def test_fetch_events_parses_payload():
    client = ScoreboardClient()
    with patch.object(client, "http_get_json", return_value={"events": [raw_event()]}):
        events = client.fetch_events("NHL", date(2024, 11, 1), date(2024, 11, 14))
    assert [event.game_id for event in events] == ["401"]
