import os
import time
from decimal import Decimal

from sqlalchemy import select, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from .db import Base, engine
from .models import Team, User

# Internal tickers. Feed abbreviations that differ are translated in ingestion.TICKER_ALIASES.
NHL_TEAMS: list[tuple[str, str]] = [
    ("ANA", "Anaheim Ducks"),
    ("BOS", "Boston Bruins"),
    ("BUF", "Buffalo Sabres"),
    ("CGY", "Calgary Flames"),
    ("CAR", "Carolina Hurricanes"),
    ("CHI", "Chicago Blackhawks"),
    ("COL", "Colorado Avalanche"),
    ("CBJ", "Columbus Blue Jackets"),
    ("DAL", "Dallas Stars"),
    ("DET", "Detroit Red Wings"),
    ("EDM", "Edmonton Oilers"),
    ("FLA", "Florida Panthers"),
    ("LAK", "Los Angeles Kings"),
    ("MIN", "Minnesota Wild"),
    ("MTL", "Montreal Canadiens"),
    ("NSH", "Nashville Predators"),
    ("NJD", "New Jersey Devils"),
    ("NYI", "New York Islanders"),
    ("NYR", "New York Rangers"),
    ("OTT", "Ottawa Senators"),
    ("PHI", "Philadelphia Flyers"),
    ("PIT", "Pittsburgh Penguins"),
    ("SJS", "San Jose Sharks"),
    ("SEA", "Seattle Kraken"),
    ("STL", "St. Louis Blues"),
    ("TBL", "Tampa Bay Lightning"),
    ("TOR", "Toronto Maple Leafs"),
    ("UTA", "Utah Mammoth"),
    ("VAN", "Vancouver Canucks"),
    ("VGK", "Vegas Golden Knights"),
    ("WSH", "Washington Capitals"),
    ("WPG", "Winnipeg Jets"),
]

NFL_TEAMS: list[tuple[str, str]] = [
    ("ARI", "Arizona Cardinals"),
    ("ATL", "Atlanta Falcons"),
    ("BAL", "Baltimore Ravens"),
    ("BUF", "Buffalo Bills"),
    ("CAR", "Carolina Panthers"),
    ("CHI", "Chicago Bears"),
    ("CIN", "Cincinnati Bengals"),
    ("CLE", "Cleveland Browns"),
    ("DAL", "Dallas Cowboys"),
    ("DEN", "Denver Broncos"),
    ("DET", "Detroit Lions"),
    ("GB", "Green Bay Packers"),
    ("HOU", "Houston Texans"),
    ("IND", "Indianapolis Colts"),
    ("JAX", "Jacksonville Jaguars"),
    ("KC", "Kansas City Chiefs"),
    ("LV", "Las Vegas Raiders"),
    ("LAC", "Los Angeles Chargers"),
    ("LAR", "Los Angeles Rams"),
    ("MIA", "Miami Dolphins"),
    ("MIN", "Minnesota Vikings"),
    ("NE", "New England Patriots"),
    ("NO", "New Orleans Saints"),
    ("NYG", "New York Giants"),
    ("NYJ", "New York Jets"),
    ("PHI", "Philadelphia Eagles"),
    ("PIT", "Pittsburgh Steelers"),
    ("SF", "San Francisco 49ers"),
    ("SEA", "Seattle Seahawks"),
    ("TB", "Tampa Bay Buccaneers"),
    ("TEN", "Tennessee Titans"),
    ("WSH", "Washington Commanders"),
]

TEAM_CATALOG: dict[str, list[tuple[str, str]]] = {
    "NHL": NHL_TEAMS,
    "NFL": NFL_TEAMS,
}

SANDBOX_USERNAME = (os.environ.get("SANDBOX_USERNAME") or "sandbox").strip().lower() or "sandbox"
STARTING_BALANCE = Decimal(os.environ.get("STARTING_BALANCE", "10000"))
SEED_DIVIDEND_BANK = Decimal(os.environ.get("SEED_DIVIDEND_BANK", "0"))


def init_db():
    # Wait for the database to accept connections
    for attempt in range(30):  # ~30 seconds
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            break
        except OperationalError:
            time.sleep(1)
    else:
        raise RuntimeError("Database not ready after 30 seconds")

    Base.metadata.create_all(bind=engine)


def seed(db: Session):
    """Idempotent: creates the sandbox admin and any missing team rows, never touches existing ones."""
    user = db.execute(select(User).where(User.username == SANDBOX_USERNAME)).scalar_one_or_none()
    if not user:
        db.add(User(username=SANDBOX_USERNAME, usd_balance=STARTING_BALANCE, is_admin=True))

    existing = {
        (team.league, team.ticker)
        for team in db.execute(select(Team)).scalars().all()
    }
    new_teams: list[Team] = []
    for league, catalog in TEAM_CATALOG.items():
        for ticker, name in catalog:
            if (league, ticker) in existing:
                continue
            new_teams.append(
                Team(
                    ticker=ticker,
                    league=league,
                    name=name,
                    shares_outstanding=0,
                    reserve_pool=Decimal("0"),
                    dividend_bank=SEED_DIVIDEND_BANK,
                    market_locked=False,
                )
            )

    if new_teams:
        db.add_all(new_teams)

    db.commit()
