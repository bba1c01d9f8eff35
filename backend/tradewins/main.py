import hmac
import logging
import os
from decimal import Decimal

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import SessionLocal, get_db
from .dividends import estimated_payout_per_share, fund_dividend_bank, payout_win
from .errors import (
    ConcurrentModification,
    EntityNotFound,
    FeedUnavailable,
    InsufficientFunds,
    MarketClosed,
    MarketError,
    TeamNotFound,
    UserNotFound,
)
from .feed import ScoreboardClient, normalize_league
from .ingestion import CycleReport, IngestionPipeline
from .models import Holding, Team, User
from .portfolio import (
    house_stats,
    market_stats,
    portfolio_summary,
    price_history,
    team_holders,
    user_transactions,
    volatility_label,
)
from .pricing import BUY, SELL, quote_trade, spot_price, to_decimal, to_money
from .schemas import (
    AmountIn,
    BalanceAdjustIn,
    CycleReportOut,
    HolderOut,
    HouseStatsOut,
    MarketStatsOut,
    PayoutIn,
    PayoutOut,
    PortfolioOut,
    PositionOut,
    PriceHistoryOut,
    PricePointOut,
    QuoteOut,
    TeamOut,
    TradeIn,
    TradeOut,
    TransactionOut,
    UserCreateIn,
    UserOut,
)
from .seed import STARTING_BALANCE, init_db, seed
from .settlement import HOUSE_FEE_RATE, TradeResult, execute_trade, run_with_retry

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="TradeWins Market")
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:3001").split(",")
    if origin.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN", "").strip()
CRON_SECRET = os.environ.get("CRON_SECRET", "").strip()


@app.exception_handler(MarketError)
async def market_error_handler(request: Request, exc: MarketError):
    status_code = status.HTTP_400_BAD_REQUEST
    if isinstance(exc, EntityNotFound):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ConcurrentModification):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(exc, MarketClosed):
        status_code = status.HTTP_423_LOCKED
    elif isinstance(exc, FeedUnavailable):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    logger.info("Rejected %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "retryable": exc.retryable},
    )


@app.get("/")
def root():
    return {"ok": True, "service": "TradeWins API", "docs": "/docs", "health": "/healthz"}


@app.get("/healthz")
def healthz():
    return {"ok": True}


@app.on_event("startup")
def on_startup():
    init_db()
    db = SessionLocal()
    try:
        seed(db)
    finally:
        db.close()


def get_session_factory():
    return SessionLocal


def get_feed():
    return ScoreboardClient()


def auth_exception(detail: str = "Authentication required.") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_bearer_token(
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> str:
    if not authorization:
        raise auth_exception()
    scheme, _, token = authorization.partition(" ")
    if scheme.strip().lower() != "bearer" or not token.strip():
        raise auth_exception("Invalid authorization header.")
    return token.strip()


def require_secret(token: str, secret: str) -> None:
    if not secret:
        raise HTTPException(status_code=503, detail="Server secret is not configured.")
    if not hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")):
        raise HTTPException(status_code=403, detail="Invalid credentials.")


def get_admin_token(bearer_token: str = Depends(get_bearer_token)) -> str:
    require_secret(bearer_token, ADMIN_TOKEN)
    return bearer_token


def get_cron_token(bearer_token: str = Depends(get_bearer_token)) -> str:
    require_secret(bearer_token, CRON_SECRET)
    return bearer_token


def get_current_user_id(
    x_user_id: int | None = Header(default=None, alias="X-User-Id"),
) -> int:
    # Identity comes from the upstream auth layer.
    if x_user_id is None or x_user_id <= 0:
        raise auth_exception("X-User-Id header is required.")
    return int(x_user_id)


def parse_league_or_raise(raw_league: str | None) -> str | None:
    if raw_league is None or not raw_league.strip():
        return None
    try:
        return normalize_league(raw_league)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc


def get_team_or_raise(db: Session, team_id: int) -> Team:
    team = db.get(Team, team_id)
    if team is None:
        raise TeamNotFound(team_id)
    return team


def get_user_or_raise(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise UserNotFound(user_id)
    return user


def team_to_out(team: Team) -> TeamOut:
    return TeamOut(
        id=team.id,
        ticker=team.ticker,
        league=team.league,
        name=team.name,
        shares_outstanding=int(team.shares_outstanding or 0),
        spot_price=float(spot_price(team.shares_outstanding or 0)),
        reserve_pool=float(to_decimal(team.reserve_pool)),
        dividend_bank=float(to_decimal(team.dividend_bank)),
        est_payout_per_share=float(estimated_payout_per_share(team)),
        wins=int(team.wins or 0),
        losses=int(team.losses or 0),
        otl=int(team.otl or 0),
        streak=team.streak,
        next_opponent=team.next_opponent,
        next_game_at=team.next_game_at,
        last_game_state=team.last_game_state,
        last_game_score=team.last_game_score,
        market_locked=bool(team.market_locked),
        lock_reason=team.lock_reason,
        locked_until=team.locked_until,
        volatility=volatility_label(team.reserve_pool),
    )


def user_to_out(user: User) -> UserOut:
    return UserOut(
        id=user.id,
        username=str(user.username),
        usd_balance=float(to_decimal(user.usd_balance)),
        is_admin=bool(user.is_admin),
    )


def trade_to_out(result: TradeResult) -> TradeOut:
    return TradeOut(
        team_id=result.team_id,
        side=result.side,
        shares_traded=result.shares_traded,
        total_value=float(result.total_value),
        fee=float(result.fee),
        average_price=float(result.avg_price),
        new_balance=float(result.new_balance),
        new_holding_qty=result.new_holding_qty,
        new_shares_outstanding=result.new_supply,
        spot_price_after=float(result.spot_price_after),
        price_moved=result.price_moved,
    )


def report_to_out(report: CycleReport) -> CycleReportOut:
    return CycleReportOut(
        league=report.league,
        events_seen=report.events_seen,
        records_updated=report.records_updated,
        schedules_updated=report.schedules_updated,
        locks_applied=report.locks_applied,
        payouts_triggered=report.payouts_triggered,
        payout_total=float(report.payout_total),
        games_marked=report.games_marked,
        already_processed=report.already_processed,
        failed_events=report.failed_events,
        feed_error=report.feed_error,
        unmapped_tickers=list(report.unmapped_tickers),
        logs=list(report.logs),
    )


@app.get("/teams", response_model=list[TeamOut])
def list_teams(
    league: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    league_code = parse_league_or_raise(league)
    stmt = select(Team).order_by(Team.league, Team.name)
    if league_code:
        stmt = stmt.where(Team.league == league_code)
    return [team_to_out(team) for team in db.execute(stmt).scalars().all()]


@app.get("/teams/{team_id}", response_model=TeamOut)
def get_team(team_id: int, db: Session = Depends(get_db)):
    return team_to_out(get_team_or_raise(db, team_id))


@app.get("/teams/{team_id}/history", response_model=PriceHistoryOut)
def get_team_history(
    team_id: int,
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    history = price_history(db, get_team_or_raise(db, team_id), limit=limit)
    return PriceHistoryOut(
        team_id=history.team_id,
        points=[PricePointOut(label=point.label, price=float(point.price), at=point.at) for point in history.points],
        change_percent=float(history.change_percent),
    )


@app.post("/users", response_model=UserOut)
def create_user(payload: UserCreateIn, db: Session = Depends(get_db)):
    username = payload.username.strip().lower()
    if not username:
        raise HTTPException(400, "username is required")
    user = User(username=username, usd_balance=STARTING_BALANCE, is_admin=False)
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(400, f"User '{username}' already exists.")
    db.refresh(user)
    return user_to_out(user)


@app.get("/users/me", response_model=UserOut)
def users_me(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return user_to_out(get_user_or_raise(db, user_id))


@app.get("/users/me/transactions", response_model=list[TransactionOut])
def users_me_transactions(
    limit: int = Query(default=100, ge=1, le=500),
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    get_user_or_raise(db, user_id)
    return [
        TransactionOut(
            id=tx.id,
            team_id=tx.team_id,
            type=tx.type,
            shares_amount=int(tx.shares_amount),
            share_price=float(to_decimal(tx.share_price)),
            usd_amount=float(to_decimal(tx.usd_amount)),
            description=tx.description,
            created_at=tx.created_at,
        )
        for tx in user_transactions(db, user_id, limit=limit)
    ]


@app.get("/portfolio", response_model=PortfolioOut)
def portfolio(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    summary = portfolio_summary(db, user_id)
    return PortfolioOut(
        user_id=summary.user_id,
        usd_balance=float(summary.usd_balance),
        holdings_value=float(summary.holdings_value),
        net_worth=float(summary.net_worth),
        dividends_received=float(summary.dividends_received),
        positions=[
            PositionOut(
                team_id=position.team_id,
                ticker=position.ticker,
                name=position.name,
                league=position.league,
                shares=position.shares,
                spot_price=float(position.spot_price),
                market_value=float(position.market_value),
                avg_cost=float(position.avg_cost),
                gain_loss=float(position.gain_loss),
                gain_loss_percent=float(position.gain_loss_percent),
                dividends_received=float(position.dividends_received),
                est_next_payout=float(position.est_next_payout),
            )
            for position in summary.positions
        ],
    )


@app.get("/market/stats", response_model=MarketStatsOut)
def get_market_stats(
    league: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    stats = market_stats(db, league=parse_league_or_raise(league))
    return MarketStatsOut(
        league=stats.league,
        team_count=stats.team_count,
        market_cap=float(stats.market_cap),
        total_bank=float(stats.total_bank),
        avg_yield=float(stats.avg_yield),
        volume_24h_shares=stats.volume_24h_shares,
        volume_24h_usd=float(stats.volume_24h_usd),
    )


@app.post("/quote/buy", response_model=QuoteOut)
def quote_buy(trade: TradeIn, db: Session = Depends(get_db)):
    team = get_team_or_raise(db, trade.team_id)
    quote = quote_trade(team.shares_outstanding or 0, trade.shares, BUY)
    total = to_money(quote.total)
    return QuoteOut(
        team_id=team.id,
        side=BUY,
        shares=quote.quantity,
        spot_price_before=float(quote.spot_before),
        spot_price_after=float(quote.spot_after),
        first_price=float(quote.first_price),
        last_price=float(quote.last_price),
        average_price=float(quote.avg_price),
        price_impact=float(quote.price_impact),
        total=float(total),
        fee=float(to_money(total * HOUSE_FEE_RATE)),
        market_locked=bool(team.market_locked),
    )


@app.post("/quote/sell", response_model=QuoteOut)
def quote_sell(
    trade: TradeIn,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    team = get_team_or_raise(db, trade.team_id)
    holding = db.execute(
        select(Holding).where(Holding.user_id == user_id, Holding.team_id == team.id)
    ).scalar_one_or_none()
    owned = int(holding.shares_owned) if holding else 0
    quote = quote_trade(team.shares_outstanding or 0, trade.shares, SELL, holding=owned)
    return QuoteOut(
        team_id=team.id,
        side=SELL,
        shares=quote.quantity,
        spot_price_before=float(quote.spot_before),
        spot_price_after=float(quote.spot_after),
        first_price=float(quote.first_price),
        last_price=float(quote.last_price),
        average_price=float(quote.avg_price),
        price_impact=float(quote.price_impact),
        total=float(to_money(quote.total)),
        fee=0.0,
        market_locked=bool(team.market_locked),
    )


def run_trade(session_factory, user_id: int, trade: TradeIn, side: str) -> TradeOut:
    quoted = Decimal(str(trade.quoted_avg_price)) if trade.quoted_avg_price is not None else None
    result = run_with_retry(
        session_factory,
        lambda db: execute_trade(
            db,
            user_id=user_id,
            team_id=trade.team_id,
            quantity=trade.shares,
            side=side,
            quoted_avg_price=quoted,
        ),
    )
    return trade_to_out(result)


@app.post("/trade/buy", response_model=TradeOut)
def buy(
    trade: TradeIn,
    user_id: int = Depends(get_current_user_id),
    session_factory=Depends(get_session_factory),
):
    return run_trade(session_factory, user_id, trade, BUY)


@app.post("/trade/sell", response_model=TradeOut)
def sell(
    trade: TradeIn,
    user_id: int = Depends(get_current_user_id),
    session_factory=Depends(get_session_factory),
):
    return run_trade(session_factory, user_id, trade, SELL)


@app.post("/admin/teams/{team_id}/payout", response_model=PayoutOut)
def admin_payout(
    team_id: int,
    payload: PayoutIn | None = None,
    _admin: str = Depends(get_admin_token),
    session_factory=Depends(get_session_factory),
):
    description = payload.description if payload else None
    result = run_with_retry(
        session_factory,
        lambda db: payout_win(db, team_id, description or "Manual win payout"),
    )
    return PayoutOut(
        team_id=result.team_id,
        ticker=result.ticker,
        payout_total=float(result.payout_total),
        holders_paid=result.holders_paid,
        bank_before=float(result.bank_before),
        bank_after=float(result.bank_after),
    )


@app.post("/admin/teams/{team_id}/dividend-bank", response_model=TeamOut)
def admin_fund_dividend_bank(
    team_id: int,
    payload: AmountIn,
    _admin: str = Depends(get_admin_token),
    session_factory=Depends(get_session_factory),
):
    team = run_with_retry(
        session_factory,
        lambda db: fund_dividend_bank(db, team_id, Decimal(str(payload.amount))),
    )
    return team_to_out(team)


@app.get("/admin/teams/{team_id}/holders", response_model=list[HolderOut])
def admin_team_holders(
    team_id: int,
    _admin: str = Depends(get_admin_token),
    db: Session = Depends(get_db),
):
    get_team_or_raise(db, team_id)
    return [
        HolderOut(user_id=row.user_id, username=row.username, shares_owned=row.shares_owned)
        for row in team_holders(db, team_id)
    ]


@app.get("/admin/stats", response_model=HouseStatsOut)
def admin_stats(
    _admin: str = Depends(get_admin_token),
    db: Session = Depends(get_db),
):
    stats = house_stats(db)
    return HouseStatsOut(
        house_revenue=float(stats.house_revenue),
        buy_volume=float(stats.buy_volume),
        total_reserve=float(stats.total_reserve),
        total_dividend_bank=float(stats.total_dividend_bank),
        total_user_cash=float(stats.total_user_cash),
        total_liability=float(stats.total_liability),
    )


@app.post("/admin/users/{user_id}/balance", response_model=UserOut)
def admin_adjust_balance(
    user_id: int,
    payload: BalanceAdjustIn,
    _admin: str = Depends(get_admin_token),
    session_factory=Depends(get_session_factory),
):
    delta = to_money(Decimal(str(payload.delta)))

    def adjust(db: Session) -> User:
        user = db.execute(select(User).where(User.id == user_id).with_for_update()).scalar_one_or_none()
        if user is None:
            raise UserNotFound(user_id)
        balance = to_decimal(user.usd_balance)
        if balance + delta < 0:
            raise InsufficientFunds(needed=-delta, available=balance)
        user.usd_balance = balance + delta
        db.flush()
        return user

    user = run_with_retry(session_factory, adjust)
    logger.info("Admin adjusted balance of user %s by %s", user_id, delta)
    return user_to_out(user)


@app.post("/cron/process/{league}", response_model=CycleReportOut)
def cron_process_league(
    league: str,
    _cron: str = Depends(get_cron_token),
    session_factory=Depends(get_session_factory),
    feed=Depends(get_feed),
):
    league_code = parse_league_or_raise(league)
    pipeline = IngestionPipeline(session_factory=session_factory, feed=feed)
    return report_to_out(pipeline.run_cycle(league_code))
