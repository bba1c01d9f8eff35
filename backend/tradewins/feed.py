import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Protocol
from urllib import error, parse, request

from .errors import FeedUnavailable

logger = logging.getLogger(__name__)

SCOREBOARD_BASE_URL = os.environ.get(
    "SCOREBOARD_BASE_URL",
    "https://site.api.espn.com/apis/site/v2/sports",
)
FEED_TIMEOUT_SECONDS = float(os.environ.get("FEED_TIMEOUT_SECONDS", "20"))
FEED_MAX_RETRIES = max(1, int(os.environ.get("FEED_MAX_RETRIES", "3")))
FEED_RETRY_BACKOFF = float(os.environ.get("FEED_RETRY_BACKOFF", "1.5"))

SPORT_PATHS = {
    "NHL": "hockey/nhl",
    "NFL": "football/nfl",
}

STATE_PRE = "PRE"
STATE_IN_PROGRESS = "IN_PROGRESS"
STATE_FINAL = "FINAL"
# "post" without completion, or a postponed/cancelled status name. Claims no schedule slot.
STATE_VOID = "VOID"
VOID_STATUS_NAMES = {"STATUS_POSTPONED", "STATUS_CANCELED", "STATUS_SUSPENDED"}


@dataclass
class Competitor:
    ticker: str
    home_away: str | None = None
    score: int | None = None
    winner: bool = False
    record_summary: str | None = None
    streak: str | None = None


@dataclass
class GameEvent:
    game_id: str
    league: str
    start_at: datetime  # naive UTC
    raw_state: str
    completed: bool
    competitors: list[Competitor] = field(default_factory=list)
    short_name: str | None = None
    status_name: str | None = None

    @property
    def state(self) -> str:
        if self.completed:
            return STATE_FINAL
        if self.raw_state == "in":
            return STATE_IN_PROGRESS
        if self.raw_state == "post" or self.status_name in VOID_STATUS_NAMES:
            return STATE_VOID
        return STATE_PRE

    @property
    def winner(self) -> Competitor | None:
        winners = [competitor for competitor in self.competitors if competitor.winner]
        if len(winners) != 1:
            return None
        return winners[0]

    def opponent_of(self, ticker: str) -> Competitor | None:
        for competitor in self.competitors:
            if competitor.ticker != ticker:
                return competitor
        return None


class ScoreboardFeed(Protocol):
    def fetch_events(self, league: str, start: date, end: date) -> list[GameEvent]:
        ...


def normalize_league(value: str | None) -> str:
    league = (value or "").strip().upper()
    if league not in SPORT_PATHS:
        raise ValueError(f"Unsupported league '{value}'. Expected one of: {', '.join(sorted(SPORT_PATHS))}")
    return league


def parse_feed_datetime(value: Any) -> datetime:
    raw = str(value or "").strip()
    if not raw:
        raise ValueError("event date is missing")
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_optional_int(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, dict):
        value = value.get("value", value.get("displayValue"))
    try:
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return None


def parse_record_summary(summary: str | None) -> tuple[int, int, int] | None:
    """`"10-5-2"` -> (wins, losses, otl); a two-part record has zero OTL."""
    if not summary:
        return None
    parts = [part.strip() for part in str(summary).split("-")]
    if len(parts) < 2:
        return None
    try:
        values = [int(part) for part in parts[:3]]
    except ValueError:
        return None
    while len(values) < 3:
        values.append(0)
    return values[0], values[1], values[2]


def extract_streak(raw: dict[str, Any]) -> str | None:
    streak = raw.get("streak")
    if isinstance(streak, dict):
        streak = streak.get("displayValue") or streak.get("summary")
    if streak is None:
        for record in raw.get("records") or []:
            if isinstance(record, dict) and str(record.get("name", "")).lower() == "streak":
                streak = record.get("summary")
                break
    if streak is None:
        return None
    cleaned = str(streak).strip()
    return cleaned or None


def parse_competitor(raw: dict[str, Any]) -> Competitor:
    team = raw.get("team") or {}
    ticker = str(team.get("abbreviation") or "").strip().upper()
    if not ticker:
        raise ValueError("competitor is missing team.abbreviation")

    record_summary = None
    for record in raw.get("records") or []:
        if isinstance(record, dict) and str(record.get("name", "")).lower() == "overall":
            record_summary = record.get("summary")
            break

    return Competitor(
        ticker=ticker,
        home_away=raw.get("homeAway"),
        score=parse_optional_int(raw.get("score")),
        winner=raw.get("winner") is True,
        record_summary=record_summary,
        streak=extract_streak(raw),
    )


def parse_event(raw: dict[str, Any], league: str) -> GameEvent:
    game_id = str(raw.get("id") or "").strip()
    if not game_id:
        raise ValueError("event is missing id")

    status_type = ((raw.get("status") or {}).get("type")) or {}
    competitions = raw.get("competitions") or []
    if competitions and isinstance(competitions[0], dict):
        raw_competitors = competitions[0].get("competitors") or []
    else:
        raw_competitors = raw.get("competitors") or []

    competitors = [parse_competitor(row) for row in raw_competitors if isinstance(row, dict)]
    if len(competitors) != 2:
        raise ValueError(f"event {game_id} has {len(competitors)} competitors, expected 2")

    return GameEvent(
        game_id=game_id,
        league=league,
        start_at=parse_feed_datetime(raw.get("date")),
        raw_state=str(status_type.get("state") or "pre").strip().lower(),
        completed=status_type.get("completed") is True,
        competitors=competitors,
        short_name=raw.get("shortName"),
        status_name=str(status_type.get("name") or "").strip().upper() or None,
    )


def parse_scoreboard(payload: Any, league: str) -> tuple[list[GameEvent], int]:
    if not isinstance(payload, dict):
        raise FeedUnavailable("Scoreboard response was not a JSON object.")
    rows = payload.get("events")
    if not isinstance(rows, list):
        return [], 0

    events: list[GameEvent] = []
    invalid_rows = 0
    for row in rows:
        if not isinstance(row, dict):
            invalid_rows += 1
            continue
        try:
            events.append(parse_event(row, league))
        except (TypeError, ValueError) as exc:
            invalid_rows += 1
            logger.warning("Skipping malformed %s event %s: %s", league, row.get("id"), exc)
    return events, invalid_rows


def format_feed_date(value: date) -> str:
    return value.strftime("%Y%m%d")


class ScoreboardClient:
    """Polling client for the public scoreboard endpoint."""

    def __init__(
        self,
        base_url: str = SCOREBOARD_BASE_URL,
        timeout: float = FEED_TIMEOUT_SECONDS,
        max_retries: int = FEED_MAX_RETRIES,
        retry_backoff: float = FEED_RETRY_BACKOFF,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_backoff = retry_backoff

    def scoreboard_url(self, league: str, start: date, end: date) -> str:
        sport_path = SPORT_PATHS[normalize_league(league)]
        dates = f"{format_feed_date(start)}-{format_feed_date(end)}"
        return f"{self.base_url}/{sport_path}/scoreboard?{parse.urlencode({'dates': dates, 'limit': 500})}"

    def http_get_json(self, url: str) -> Any:
        req = request.Request(url, method="GET", headers={"Accept": "application/json"})
        with request.urlopen(req, timeout=self.timeout) as response:
            return json.loads(response.read().decode("utf-8"))

    def fetch_payload(self, league: str, start: date, end: date) -> Any:
        url = self.scoreboard_url(league, start, end)
        for attempt in range(1, self.max_retries + 1):
            try:
                return self.http_get_json(url)
            except (error.URLError, TimeoutError, json.JSONDecodeError) as exc:
                if attempt >= self.max_retries:
                    raise FeedUnavailable(f"GET {url} failed after {attempt} attempts: {exc}") from exc
                logger.warning("Scoreboard fetch attempt %d failed: %s", attempt, exc)
            time.sleep(max(0.1, self.retry_backoff * attempt))
        raise FeedUnavailable(f"GET {url} failed.")

    def fetch_events(self, league: str, start: date, end: date) -> list[GameEvent]:
        league = normalize_league(league)
        payload = self.fetch_payload(league, start, end)
        events, invalid_rows = parse_scoreboard(payload, league)
        if invalid_rows:
            logger.warning("%s scoreboard returned %d malformed events", league, invalid_rows)
        return events
