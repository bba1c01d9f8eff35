from datetime import datetime
from pydantic import BaseModel, Field


class UserCreateIn(BaseModel):
    username: str = Field(min_length=1, max_length=64)


class UserOut(BaseModel):
    id: int
    username: str
    usd_balance: float
    is_admin: bool = False


class TeamOut(BaseModel):
    id: int
    ticker: str
    league: str
    name: str
    shares_outstanding: int
    spot_price: float
    reserve_pool: float
    dividend_bank: float
    est_payout_per_share: float
    wins: int
    losses: int
    otl: int
    streak: str | None = None
    next_opponent: str | None = None
    next_game_at: datetime | None = None
    last_game_state: str | None = None
    last_game_score: str | None = None
    market_locked: bool = False
    lock_reason: str | None = None
    locked_until: datetime | None = None
    volatility: str = "Neutral"


class TradeIn(BaseModel):
    team_id: int
    shares: int = Field(gt=0)
    quoted_avg_price: float | None = Field(default=None, gt=0)


class QuoteOut(BaseModel):
    team_id: int
    side: str
    shares: int
    spot_price_before: float
    spot_price_after: float
    first_price: float
    last_price: float
    average_price: float
    price_impact: float
    total: float  # buy cost or sell proceeds, before fees
    fee: float
    market_locked: bool = False


class TradeOut(BaseModel):
    team_id: int
    side: str
    shares_traded: int
    total_value: float
    fee: float
    average_price: float
    new_balance: float
    new_holding_qty: int
    new_shares_outstanding: int
    spot_price_after: float
    price_moved: bool = False


class PayoutIn(BaseModel):
    description: str | None = Field(default=None, max_length=160)


class PayoutOut(BaseModel):
    team_id: int
    ticker: str
    payout_total: float
    holders_paid: int
    bank_before: float
    bank_after: float


class AmountIn(BaseModel):
    amount: float = Field(gt=0)


class BalanceAdjustIn(BaseModel):
    delta: float


class PositionOut(BaseModel):
    team_id: int
    ticker: str
    name: str
    league: str
    shares: int
    spot_price: float
    market_value: float
    avg_cost: float
    gain_loss: float
    gain_loss_percent: float
    dividends_received: float
    est_next_payout: float


class PortfolioOut(BaseModel):
    user_id: int
    usd_balance: float
    holdings_value: float
    net_worth: float
    dividends_received: float
    positions: list[PositionOut]


class TransactionOut(BaseModel):
    id: int
    team_id: int
    type: str
    shares_amount: int
    share_price: float
    usd_amount: float
    description: str | None = None
    created_at: datetime


class MarketStatsOut(BaseModel):
    league: str | None = None
    team_count: int
    market_cap: float
    total_bank: float
    avg_yield: float
    volume_24h_shares: int
    volume_24h_usd: float


class HolderOut(BaseModel):
    user_id: int
    username: str
    shares_owned: int


class CycleReportOut(BaseModel):
    league: str
    events_seen: int
    records_updated: int
    schedules_updated: int
    locks_applied: int
    payouts_triggered: int
    payout_total: float
    games_marked: int
    already_processed: int
    failed_events: int
    feed_error: str | None = None
    unmapped_tickers: list[str]
    logs: list[str]


class HouseStatsOut(BaseModel):
    house_revenue: float
    buy_volume: float
    total_reserve: float
    total_dividend_bank: float
    total_user_cash: float
    total_liability: float


class PricePointOut(BaseModel):
    label: str
    price: float
    at: datetime | None = None


class PriceHistoryOut(BaseModel):
    team_id: int
    points: list[PricePointOut]
    change_percent: float
