import os
import sys
from datetime import datetime
from decimal import Decimal
from pathlib import Path

# Make `import tradewins` work when pytest runs from the repo root.
BACKEND_DIR = str(Path(__file__).resolve().parents[1])
if BACKEND_DIR not in sys.path:
    sys.path.insert(0, BACKEND_DIR)

# Module-level engine in tradewins.db reads this on import; tests never touch it.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")

import pytest
from fastapi.testclient import TestClient

from tradewins.db import Base, build_engine, build_session_factory
from tradewins.errors import FeedUnavailable
from tradewins.feed import Competitor, GameEvent
from tradewins.models import Holding, Team, User

ADMIN_HEADERS = {"Authorization": f"Bearer {os.environ['ADMIN_TOKEN']}"}
CRON_HEADERS = {"Authorization": f"Bearer {os.environ['CRON_SECRET']}"}


class FakeFeed:
    """Serves canned events per league; set `error` to simulate an outage."""

    def __init__(self, events: dict[str, list[GameEvent]] | None = None, error: str | None = None):
        self.events = events or {}
        self.error = error
        self.calls: list[tuple] = []

    def fetch_events(self, league, start, end):
        self.calls.append((league, start, end))
        if self.error:
            raise FeedUnavailable(self.error)
        return list(self.events.get(league, []))


def make_event(
    game_id: str,
    home: str,
    away: str,
    start_at: datetime,
    league: str = "NHL",
    state: str = "pre",
    completed: bool = False,
    home_score: int | None = None,
    away_score: int | None = None,
    winner: str | None = None,
    home_record: str | None = None,
    away_record: str | None = None,
) -> GameEvent:
    return GameEvent(
        game_id=game_id,
        league=league,
        start_at=start_at,
        raw_state=state,
        completed=completed,
        competitors=[
            Competitor(
                ticker=home,
                home_away="home",
                score=home_score,
                winner=winner == home,
                record_summary=home_record,
            ),
            Competitor(
                ticker=away,
                home_away="away",
                score=away_score,
                winner=winner == away,
                record_summary=away_record,
            ),
        ],
        short_name=f"{away} @ {home}",
    )


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'tradewins-test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db):
    def _make_user(username: str = "alice", balance="10000", is_admin: bool = False) -> User:
        user = User(username=username, usd_balance=Decimal(str(balance)), is_admin=is_admin)
        db.add(user)
        db.commit()
        return user

    return _make_user


@pytest.fixture
def make_team(db):
    def _make_team(
        ticker: str = "TOR",
        league: str = "NHL",
        name: str | None = None,
        supply: int = 0,
        reserve="0",
        bank="0",
        locked: bool = False,
    ) -> Team:
        team = Team(
            ticker=ticker,
            league=league,
            name=name or f"{ticker} Test Club",
            shares_outstanding=supply,
            reserve_pool=Decimal(str(reserve)),
            dividend_bank=Decimal(str(bank)),
            market_locked=locked,
            lock_reason="Market closed: Game in progress" if locked else None,
        )
        db.add(team)
        db.commit()
        return team

    return _make_team


@pytest.fixture
def give_shares(db):
    def _give_shares(user: User, team: Team, shares: int) -> Holding:
        holding = Holding(user_id=user.id, team_id=team.id, shares_owned=shares)
        db.add(holding)
        db.commit()
        return holding

    return _give_shares


@pytest.fixture
def fake_feed():
    return FakeFeed()


@pytest.fixture
def client(session_factory, fake_feed):
    from tradewins.db import get_db
    from tradewins.main import app, get_feed, get_session_factory

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_feed] = lambda: fake_feed

    # Not entered as a context manager so the startup hook (init_db + seed) stays off.
    yield TestClient(app)
    app.dependency_overrides.clear()
