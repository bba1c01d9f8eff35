import os
import sys
from decimal import Decimal
from pathlib import Path


def masked(database_url: str) -> str:
    if "://" not in database_url or "@" not in database_url:
        return database_url
    scheme, rest = database_url.split("://", 1)
    creds, host = rest.rsplit("@", 1)
    user = creds.split(":", 1)[0]
    return f"{scheme}://{user}:***@{host}"


def main() -> int:
    # `import tradewins.*` from the repo root in CI.
    sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

    database_url = os.environ.get("DATABASE_URL", "").strip()
    if not database_url:
        raise RuntimeError("DATABASE_URL is required for CI smoke test")
    print("CI smoke DATABASE_URL:", masked(database_url))

    from sqlalchemy import func, select

    from tradewins.db import SessionLocal
    from tradewins.dividends import fund_dividend_bank, payout_win
    from tradewins.models import Team, User
    from tradewins.pricing import BUY, SELL
    from tradewins.seed import SANDBOX_USERNAME, TEAM_CATALOG, init_db, seed
    from tradewins.settlement import execute_trade, run_with_retry

    init_db()

    # Seeding twice covers both a fresh database and a restart.
    with SessionLocal() as db:
        seed(db)
        seed(db)
        team_count = int(db.execute(select(func.count()).select_from(Team)).scalar_one())
        sandbox = db.execute(select(User).where(User.username == SANDBOX_USERNAME)).scalar_one()
        team = db.execute(select(Team).order_by(Team.id)).scalars().first()

    expected_teams = sum(len(catalog) for catalog in TEAM_CATALOG.values())
    if team_count != expected_teams:
        raise RuntimeError(f"Expected {expected_teams} seeded teams, found {team_count}")

    # One buy, one payout, one sell against the first team; rolled back afterwards.
    db = SessionLocal()
    try:
        bought = execute_trade(db, sandbox.id, team.id, 3, BUY)
        fund_dividend_bank(db, team.id, Decimal("10"))
        paid = payout_win(db, team.id, "CI smoke payout")
        sold = execute_trade(db, sandbox.id, team.id, 3, SELL)
    finally:
        db.rollback()
        db.close()

    if sold.total_value != bought.total_value:
        raise RuntimeError(f"Round trip mismatch: bought {bought.total_value}, sold {sold.total_value}")

    # Read-only check that the committed path still retries cleanly.
    users = run_with_retry(SessionLocal, lambda session: session.execute(select(func.count()).select_from(User)).scalar_one())

    print(
        "OK create_all + seed + trade",
        {"users": users, "teams": team_count, "round_trip": str(bought.total_value), "paid": str(paid.payout_total)},
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
