import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .dividends import PAYOUT_FRACTION, estimated_payout_per_share
from .errors import UserNotFound
from .models import Holding, HouseRevenue, Team, Transaction, User
from .pricing import BASE_PRICE, spot_price, to_decimal

HIGH_VOLATILITY_RESERVE = Decimal(os.environ.get("HIGH_VOLATILITY_RESERVE", "2000"))
STABLE_RESERVE = Decimal(os.environ.get("STABLE_RESERVE", "8000"))
HISTORY_LIMIT = 50


@dataclass
class PositionSummary:
    team_id: int
    ticker: str
    name: str
    league: str
    shares: int
    spot_price: Decimal
    market_value: Decimal
    avg_cost: Decimal
    cost_basis: Decimal
    gain_loss: Decimal
    gain_loss_percent: Decimal
    dividends_received: Decimal
    est_next_payout: Decimal


@dataclass
class PortfolioSummary:
    user_id: int
    usd_balance: Decimal
    holdings_value: Decimal
    net_worth: Decimal
    dividends_received: Decimal
    positions: list[PositionSummary]


@dataclass
class MarketStats:
    league: str | None
    team_count: int
    market_cap: Decimal
    total_bank: Decimal
    avg_yield: Decimal
    volume_24h_shares: int
    volume_24h_usd: Decimal


@dataclass
class HolderRow:
    user_id: int
    username: str
    shares_owned: int


def sum_by_team(db: Session, user_id: int, tx_type: str, column) -> dict[int, Decimal]:
    rows = db.execute(
        select(Transaction.team_id, func.coalesce(func.sum(column), 0))
        .where(Transaction.user_id == user_id, Transaction.type == tx_type)
        .group_by(Transaction.team_id)
    ).all()
    return {int(team_id): to_decimal(total) for team_id, total in rows}


def portfolio_summary(db: Session, user_id: int) -> PortfolioSummary:
    user = db.get(User, user_id)
    if user is None:
        raise UserNotFound(user_id)

    rows = db.execute(
        select(Holding, Team)
        .join(Team, Team.id == Holding.team_id)
        .where(Holding.user_id == user_id, Holding.shares_owned > 0)
    ).all()

    bought_usd = sum_by_team(db, user_id, "BUY", Transaction.usd_amount)
    bought_shares = sum_by_team(db, user_id, "BUY", Transaction.shares_amount)
    dividends = sum_by_team(db, user_id, "DIVIDEND", Transaction.usd_amount)

    positions: list[PositionSummary] = []
    for holding, team in rows:
        shares = int(holding.shares_owned)
        spot = spot_price(team.shares_outstanding)
        market_value = spot * shares

        total_bought = bought_shares.get(team.id, Decimal("0"))
        avg_cost = bought_usd.get(team.id, Decimal("0")) / total_bought if total_bought > 0 else BASE_PRICE
        cost_basis = avg_cost * shares
        gain_loss = market_value - cost_basis
        gain_loss_percent = (gain_loss / cost_basis * 100) if cost_basis > 0 else Decimal("0")

        positions.append(
            PositionSummary(
                team_id=team.id,
                ticker=team.ticker,
                name=team.name,
                league=team.league,
                shares=shares,
                spot_price=spot,
                market_value=market_value,
                avg_cost=avg_cost,
                cost_basis=cost_basis,
                gain_loss=gain_loss,
                gain_loss_percent=gain_loss_percent,
                dividends_received=dividends.get(team.id, Decimal("0")),
                est_next_payout=estimated_payout_per_share(team) * shares,
            )
        )

    positions.sort(key=lambda position: position.market_value, reverse=True)
    holdings_value = sum((position.market_value for position in positions), Decimal("0"))
    balance = to_decimal(user.usd_balance)
    return PortfolioSummary(
        user_id=user.id,
        usd_balance=balance,
        holdings_value=holdings_value,
        net_worth=balance + holdings_value,
        dividends_received=sum(dividends.values(), Decimal("0")),
        positions=positions,
    )


def market_stats(db: Session, league: str | None = None, now: datetime | None = None) -> MarketStats:
    query = select(Team)
    if league:
        query = query.where(Team.league == league)
    teams = db.execute(query).scalars().all()

    market_cap = Decimal("0")
    total_bank = Decimal("0")
    total_supply = 0
    for team in teams:
        supply = int(team.shares_outstanding or 0)
        market_cap += spot_price(supply) * supply
        total_bank += to_decimal(team.dividend_bank)
        total_supply += supply

    avg_yield = total_bank * PAYOUT_FRACTION / Decimal(total_supply) if total_supply > 0 else Decimal("0")

    volume_shares = 0
    volume_usd = Decimal("0")
    team_ids = [team.id for team in teams]
    if team_ids:
        since = (now or datetime.utcnow()) - timedelta(hours=24)
        shares_total, usd_total = db.execute(
            select(
                func.coalesce(func.sum(Transaction.shares_amount), 0),
                func.coalesce(func.sum(Transaction.usd_amount), 0),
            ).where(
                Transaction.team_id.in_(team_ids),
                Transaction.type.in_(("BUY", "SELL")),
                Transaction.created_at >= since,
            )
        ).one()
        volume_shares = int(shares_total)
        volume_usd = to_decimal(usd_total)

    return MarketStats(
        league=league,
        team_count=len(teams),
        market_cap=market_cap,
        total_bank=total_bank,
        avg_yield=avg_yield,
        volume_24h_shares=volume_shares,
        volume_24h_usd=volume_usd,
    )


def team_holders(db: Session, team_id: int) -> list[HolderRow]:
    rows = db.execute(
        select(Holding.user_id, User.username, Holding.shares_owned)
        .join(User, User.id == Holding.user_id)
        .where(Holding.team_id == team_id, Holding.shares_owned > 0)
        .order_by(Holding.shares_owned.desc(), Holding.user_id)
    ).all()
    return [
        HolderRow(user_id=int(user_id), username=username, shares_owned=int(shares))
        for user_id, username, shares in rows
    ]


def user_transactions(db: Session, user_id: int, limit: int = 100) -> list[Transaction]:
    return db.execute(
        select(Transaction)
        .where(Transaction.user_id == user_id)
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .limit(limit)
    ).scalars().all()


@dataclass
class HouseStats:
    house_revenue: Decimal
    buy_volume: Decimal
    total_reserve: Decimal
    total_dividend_bank: Decimal
    total_user_cash: Decimal
    total_liability: Decimal


@dataclass
class PricePoint:
    label: str
    price: Decimal
    at: datetime | None = None


@dataclass
class PriceHistory:
    team_id: int
    points: list[PricePoint]
    change_percent: Decimal


def house_stats(db: Session) -> HouseStats:
    """Solvency overview: what the house earned against everything it owes.

    Liability is reserve plus dividend bank plus user cash across the market.
    """
    revenue = db.execute(select(func.coalesce(func.sum(HouseRevenue.amount), 0))).scalar_one()
    buy_volume = db.execute(
        select(func.coalesce(func.sum(Transaction.usd_amount), 0)).where(Transaction.type == "BUY")
    ).scalar_one()
    total_reserve, total_bank = db.execute(
        select(
            func.coalesce(func.sum(Team.reserve_pool), 0),
            func.coalesce(func.sum(Team.dividend_bank), 0),
        )
    ).one()
    total_cash = db.execute(select(func.coalesce(func.sum(User.usd_balance), 0))).scalar_one()

    reserve = to_decimal(total_reserve)
    bank = to_decimal(total_bank)
    cash = to_decimal(total_cash)
    return HouseStats(
        house_revenue=to_decimal(revenue),
        buy_volume=to_decimal(buy_volume),
        total_reserve=reserve,
        total_dividend_bank=bank,
        total_user_cash=cash,
        total_liability=reserve + bank + cash,
    )


def price_history(db: Session, team: Team, limit: int = HISTORY_LIMIT) -> PriceHistory:
    """IPO price, the last `limit` trade prices oldest first, then the current spot."""
    trades = db.execute(
        select(Transaction.created_at, Transaction.share_price)
        .where(Transaction.team_id == team.id, Transaction.type.in_(("BUY", "SELL")))
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .limit(limit)
    ).all()

    points = [PricePoint(label="IPO", price=BASE_PRICE)]
    for created_at, share_price in reversed(trades):
        label = created_at.strftime("%b %d %H:%M")
        points.append(PricePoint(label=label, price=to_decimal(share_price), at=created_at))
    current = spot_price(team.shares_outstanding or 0)
    points.append(PricePoint(label="Now", price=current))

    start = points[0].price
    change = (current - start) / start * 100 if start > 0 else Decimal("0")
    return PriceHistory(team_id=team.id, points=points, change_percent=change)


def volatility_label(reserve_pool) -> str:
    reserve = to_decimal(reserve_pool)
    if reserve < HIGH_VOLATILITY_RESERVE:
        return "High Volatility"
    if reserve > STABLE_RESERVE:
        return "Stable"
    return "Neutral"
