import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .dividends import payout_win
from .errors import FeedUnavailable, UnmappedTicker
from .feed import (
    STATE_FINAL,
    STATE_IN_PROGRESS,
    STATE_PRE,
    GameEvent,
    ScoreboardFeed,
    normalize_league,
    parse_record_summary,
)
from .models import ProcessedGame, Team

logger = logging.getLogger(__name__)

FEED_WINDOW_BEFORE_DAYS = int(os.environ.get("FEED_WINDOW_BEFORE_DAYS", "6"))
FEED_WINDOW_AFTER_DAYS = int(os.environ.get("FEED_WINDOW_AFTER_DAYS", "7"))

LOCK_BUFFER_HOURS = {
    "NHL": float(os.environ.get("NHL_LOCK_BUFFER_HOURS", "4")),
    "NFL": float(os.environ.get("NFL_LOCK_BUFFER_HOURS", "5")),
}

# Feed abbreviation -> internal ticker. Applied once, never chained and never reversed.
TICKER_ALIASES: dict[str, dict[str, str]] = {
    "NFL": {
        "WAS": "WSH",
        "JAC": "JAX",
        "LA": "LAR",
    },
    "NHL": {
        "TB": "TBL",
        "SJ": "SJS",
        "NJ": "NJD",
        "LA": "LAK",
        "WAS": "WSH",
        "MON": "MTL",
    },
}


def resolve_ticker(feed_ticker: str, league: str) -> str:
    ticker = (feed_ticker or "").strip().upper()
    return TICKER_ALIASES.get(league, {}).get(ticker, ticker)


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class ScheduleSlot:
    ticker: str
    opponent: str
    game_id: str
    game_at: datetime
    state: str
    score_line: str | None
    locked: bool
    lock_reason: str | None = None
    locked_until: datetime | None = None


@dataclass
class CycleReport:
    league: str
    events_seen: int = 0
    records_updated: int = 0
    schedules_updated: int = 0
    locks_applied: int = 0
    payouts_triggered: int = 0
    payout_total: Decimal = Decimal("0")
    games_marked: int = 0
    already_processed: int = 0
    failed_events: int = 0
    feed_error: str | None = None
    unmapped_tickers: list[str] = field(default_factory=list)
    logs: list[str] = field(default_factory=list)

    def log(self, message: str, level: int = logging.INFO) -> None:
        self.logs.append(message)
        logger.log(level, "[%s] %s", self.league, message)


def score_line(event: GameEvent) -> str | None:
    parts = []
    for competitor in event.competitors:
        if competitor.score is None:
            return None
        parts.append(f"{resolve_ticker(competitor.ticker, event.league)} {competitor.score}")
    return " - ".join(parts)


def decided_winner(event: GameEvent):
    winner = event.winner
    if winner is None:
        return None
    loser = event.opponent_of(winner.ticker)
    if loser is not None and winner.score is not None and winner.score == loser.score:
        return None
    return winner


def match_summary(event: GameEvent) -> str:
    winner = decided_winner(event)
    if winner is None:
        return f"{event.league} game {event.game_id}: no winner"
    loser = event.opponent_of(winner.ticker)
    winner_ticker = resolve_ticker(winner.ticker, event.league)
    if loser is None:
        return f"{event.league} win: {winner_ticker} (game {event.game_id})"
    loser_ticker = resolve_ticker(loser.ticker, event.league)
    if winner.score is not None and loser.score is not None:
        return f"{event.league} win: {winner_ticker} {winner.score}-{loser.score} vs {loser_ticker} (game {event.game_id})"
    return f"{event.league} win: {winner_ticker} vs {loser_ticker} (game {event.game_id})"


def claim_schedule_slots(events: list[GameEvent], now: datetime, league: str) -> dict[str, ScheduleSlot]:
    """
    Pick the one game each team should display for this cycle.

    A live game, or a final one still inside the league's settlement buffer, holds the
    slot and locks buying. Otherwise the earliest upcoming game takes it. Events are
    walked in kickoff order and a slot, once taken, is only displaced by a lock.
    """
    buffer = timedelta(hours=LOCK_BUFFER_HOURS.get(league, 4))
    slots: dict[str, ScheduleSlot] = {}

    for event in sorted(events, key=lambda row: row.start_at):
        state = event.state
        in_lock_window = state == STATE_IN_PROGRESS or (
            state == STATE_FINAL and now - event.start_at < buffer
        )
        upcoming = state == STATE_PRE and event.start_at >= now - buffer
        if not in_lock_window and not upcoming:
            continue

        tickers = [resolve_ticker(competitor.ticker, league) for competitor in event.competitors]
        for index, ticker in enumerate(tickers):
            opponent = tickers[1 - index] if len(tickers) == 2 else ""
            existing = slots.get(ticker)
            if existing is not None and (existing.locked or not in_lock_window):
                continue

            if in_lock_window:
                reason = "Game in progress" if state == STATE_IN_PROGRESS else "Game final, payout pending"
                slots[ticker] = ScheduleSlot(
                    ticker=ticker,
                    opponent=opponent,
                    game_id=event.game_id,
                    game_at=event.start_at,
                    state=state,
                    score_line=score_line(event),
                    locked=True,
                    lock_reason=f"Market closed: {reason}",
                    locked_until=event.start_at + buffer,
                )
            else:
                slots[ticker] = ScheduleSlot(
                    ticker=ticker,
                    opponent=opponent,
                    game_id=event.game_id,
                    game_at=event.start_at,
                    state=state,
                    score_line=None,
                    locked=False,
                )
    return slots


class IngestionPipeline:
    """One poll of the scoreboard: records, schedule pointers, lock windows, payouts."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        feed: ScoreboardFeed,
        clock: Callable[[], datetime] = utc_now,
        dry_run: bool = False,
    ):
        self.session_factory = session_factory
        self.feed = feed
        self.clock = clock
        self.dry_run = dry_run

    def finish(self, db: Session) -> None:
        if self.dry_run:
            db.rollback()
        else:
            db.commit()

    def find_team(self, db: Session, ticker: str, league: str) -> Team | None:
        return db.execute(
            select(Team).where(Team.ticker == ticker, Team.league == league)
        ).scalar_one_or_none()

    def run_cycle(self, league: str) -> CycleReport:
        league = normalize_league(league)
        report = CycleReport(league=league)
        now = self.clock()
        start = (now - timedelta(days=FEED_WINDOW_BEFORE_DAYS)).date()
        end = (now + timedelta(days=FEED_WINDOW_AFTER_DAYS)).date()

        try:
            events = self.feed.fetch_events(league, start, end)
        except FeedUnavailable as exc:
            report.feed_error = str(exc)
            report.log(f"[error] feed unavailable, retrying next cycle: {exc}", logging.ERROR)
            return report

        events = sorted(events, key=lambda row: row.start_at)
        report.events_seen = len(events)

        for event in events:
            try:
                self.update_records(event, report)
            except Exception as exc:
                report.failed_events += 1
                report.log(f"[error] record update failed for game {event.game_id}: {exc}", logging.ERROR)

        slots = claim_schedule_slots(events, now, league)
        self.apply_schedule(league, slots, report)

        for event in events:
            if event.state != STATE_FINAL:
                continue
            try:
                self.settle_game(event, report)
            except Exception as exc:
                report.failed_events += 1
                report.log(f"[error] settlement failed for game {event.game_id}: {exc}", logging.ERROR)

        report.log(
            f"events={report.events_seen} records={report.records_updated} "
            f"schedules={report.schedules_updated} locks={report.locks_applied} "
            f"payouts={report.payouts_triggered} marked={report.games_marked} "
            f"already_processed={report.already_processed} failed={report.failed_events}"
        )
        return report

    def update_records(self, event: GameEvent, report: CycleReport) -> None:
        db = self.session_factory()
        try:
            for competitor in event.competitors:
                ticker = resolve_ticker(competitor.ticker, event.league)
                team = self.find_team(db, ticker, event.league)
                if team is None:
                    self.note_unmapped(UnmappedTicker(competitor.ticker, event.league), report)
                    continue

                record = parse_record_summary(competitor.record_summary)
                if record is None:
                    continue
                wins, losses, otl = record
                team.wins = wins
                team.losses = losses
                team.otl = otl
                if competitor.streak:
                    team.streak = competitor.streak
                team.records_updated_at = self.clock()
                report.records_updated += 1
            self.finish(db)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def note_unmapped(self, exc: UnmappedTicker, report: CycleReport) -> None:
        if exc.ticker not in report.unmapped_tickers:
            report.unmapped_tickers.append(exc.ticker)
            report.log(f"[warn] {exc.message}", logging.WARNING)

    def apply_schedule(self, league: str, slots: dict[str, ScheduleSlot], report: CycleReport) -> None:
        db = self.session_factory()
        try:
            team_ids = db.execute(select(Team.id).where(Team.league == league).order_by(Team.id)).scalars().all()
        finally:
            db.close()

        for team_id in team_ids:
            db = self.session_factory()
            try:
                team = db.get(Team, team_id)
                if team is None:
                    continue
                slot = slots.get(team.ticker)
                if slot is None:
                    if team.market_locked:
                        team.market_locked = False
                        team.lock_reason = None
                        team.locked_until = None
                        report.log(f"unlocked {team.ticker}")
                else:
                    team.next_opponent = slot.opponent or None
                    team.next_game_at = slot.game_at
                    team.last_game_id = slot.game_id
                    team.last_game_state = slot.state
                    team.last_game_score = slot.score_line
                    team.market_locked = slot.locked
                    team.lock_reason = slot.lock_reason
                    team.locked_until = slot.locked_until
                    report.schedules_updated += 1
                    if slot.locked:
                        report.locks_applied += 1
                self.finish(db)
            except Exception as exc:
                db.rollback()
                report.failed_events += 1
                report.log(f"[error] schedule update failed for team {team_id}: {exc}", logging.ERROR)
            finally:
                db.close()

    def settle_game(self, event: GameEvent, report: CycleReport) -> None:
        """
        Pay the winner of a final game exactly once.

        The ProcessedGame row is inserted and flushed before any money moves, so the
        unique game_id is the point where concurrent pollers race; the loser gets an
        IntegrityError and skips. Marker and payout commit together or not at all.
        """
        db = self.session_factory()
        try:
            existing = db.execute(
                select(ProcessedGame.id).where(ProcessedGame.game_id == event.game_id)
            ).scalar_one_or_none()
            if existing is not None:
                report.already_processed += 1
                return

            winner = decided_winner(event)
            winning_team = None
            if winner is not None:
                winner_ticker = resolve_ticker(winner.ticker, event.league)
                winning_team = self.find_team(db, winner_ticker, event.league)
                if winning_team is None:
                    # Left unmarked so the game settles once the alias table covers it.
                    self.note_unmapped(UnmappedTicker(winner.ticker, event.league), report)
                    return

            summary = match_summary(event)
            marker = ProcessedGame(
                game_id=event.game_id,
                league=event.league,
                winner_ticker=winning_team.ticker if winning_team is not None else None,
                summary=summary[:160],
                payout_total=Decimal("0"),
            )
            db.add(marker)
            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                report.already_processed += 1
                report.log(f"game {event.game_id} already claimed by another poller")
                return

            if winning_team is None:
                report.log(f"game {event.game_id} final with no winner, marked without payout")
            else:
                result = payout_win(db, winning_team.id, summary)
                marker.payout_total = result.payout_total
                report.payouts_triggered += 1
                report.payout_total += result.payout_total
                report.log(f"PAYOUT: {winning_team.name} {result.payout_total} to {result.holders_paid} holders")

            self.finish(db)
            report.games_marked += 1
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
