import logging
import os
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .errors import (
    ConcurrentModification,
    InsufficientFunds,
    InsufficientReserve,
    InsufficientShares,
    MarketClosed,
    TeamNotFound,
    UserNotFound,
)
from .models import Holding, HouseRevenue, Team, Transaction, User
from .pricing import BUY, SELL, normalize_side, quote_trade, to_decimal, to_money, validate_quantity

logger = logging.getLogger(__name__)

HOUSE_FEE_RATE = max(Decimal("0"), Decimal(os.environ.get("HOUSE_FEE_RATE", "0.05")))
MAX_TRADE_ATTEMPTS = max(1, int(os.environ.get("MAX_TRADE_ATTEMPTS", "3")))
TRADE_RETRY_BACKOFF_SECONDS = float(os.environ.get("TRADE_RETRY_BACKOFF_SECONDS", "0.05"))

T = TypeVar("T")

# serialization_failure, deadlock_detected
RETRYABLE_SQLSTATES = {"40001", "40P01"}


@dataclass
class TradeResult:
    user_id: int
    team_id: int
    side: str
    shares_traded: int
    total_value: Decimal  # gross curve value, fee excluded
    fee: Decimal
    avg_price: Decimal
    new_balance: Decimal
    new_holding_qty: int
    new_supply: int
    spot_price_after: Decimal
    price_moved: bool = False


def is_write_conflict(exc: OperationalError) -> bool:
    """True for lock or serialization conflicts; outages and other driver errors are not retried."""
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in RETRYABLE_SQLSTATES:
        return True
    # SQLite reports a busy writer this way.
    return "database is locked" in str(orig or exc)


def lock_user(db: Session, user_id: int) -> User:
    user = db.execute(
        select(User).where(User.id == user_id).with_for_update().execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if user is None:
        raise UserNotFound(user_id)
    return user


def lock_team(db: Session, team_id: int) -> Team:
    team = db.execute(
        select(Team).where(Team.id == team_id).with_for_update().execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if team is None:
        raise TeamNotFound(team_id)
    return team


def lock_holding(db: Session, user_id: int, team_id: int) -> Holding | None:
    return db.execute(
        select(Holding)
        .where(Holding.user_id == user_id, Holding.team_id == team_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def execute_trade(
    db: Session,
    user_id: int,
    team_id: int,
    quantity,
    side: str,
    quoted_avg_price: Decimal | None = None,
    fee_rate: Decimal | None = None,
) -> TradeResult:
    """
    Apply a BUY or SELL against the team's bonding curve.

    Everything is re-read under row locks and re-priced here; `quoted_avg_price`
    is only compared against the realized price. The caller owns the commit, so
    the whole trade lands or none of it does.
    """
    side = normalize_side(side)
    qty = validate_quantity(quantity)
    rate = HOUSE_FEE_RATE if fee_rate is None else to_decimal(fee_rate)

    # Lock order is team, user, holding; payout_win also takes the team row first.
    team = lock_team(db, team_id)
    user = lock_user(db, user_id)
    holding = lock_holding(db, user.id, team.id)
    owned = int(holding.shares_owned) if holding else 0

    supply = int(team.shares_outstanding or 0)
    balance = to_decimal(user.usd_balance)
    reserve = to_decimal(team.reserve_pool)
    fee = Decimal("0")

    if side == BUY:
        if team.market_locked:
            raise MarketClosed(team.lock_reason)

        quote = quote_trade(supply, qty, BUY)
        gross = to_money(quote.total)
        fee = to_money(gross * rate)
        charge = gross + fee
        if charge > balance:
            raise InsufficientFunds(needed=charge, available=balance)

        user.usd_balance = balance - charge
        team.shares_outstanding = supply + qty
        team.reserve_pool = reserve + gross

        if holding is None:
            holding = Holding(user_id=user.id, team_id=team.id, shares_owned=0)
            db.add(holding)
        holding.shares_owned = owned + qty
        new_holding_qty = owned + qty

        if fee > 0:
            db.add(HouseRevenue(team_id=team.id, user_id=user.id, source="BUY_FEE", amount=fee))
    else:
        if qty > owned:
            raise InsufficientShares(requested=qty, owned=owned)

        quote = quote_trade(supply, qty, SELL, holding=owned)
        gross = to_money(quote.total)
        if gross > reserve:
            raise InsufficientReserve(needed=gross, available=reserve)

        user.usd_balance = balance + gross
        team.shares_outstanding = quote.end_supply
        team.reserve_pool = reserve - gross

        new_holding_qty = owned - qty
        if new_holding_qty == 0:
            db.delete(holding)
        else:
            holding.shares_owned = new_holding_qty

    avg_price = to_money(quote.avg_price)
    db.add(
        Transaction(
            user_id=user.id,
            team_id=team.id,
            type=side,
            shares_amount=qty,
            share_price=avg_price,
            usd_amount=gross,
        )
    )

    try:
        db.flush()
    except StaleDataError as exc:
        raise ConcurrentModification() from exc

    price_moved = quoted_avg_price is not None and to_money(quoted_avg_price) != avg_price
    if price_moved:
        logger.info(
            "Trade for team %s filled at %s instead of quoted %s (supply moved)",
            team.ticker,
            avg_price,
            quoted_avg_price,
        )
    logger.info(
        "%s %s x%d user=%s total=%s fee=%s supply=%d->%d",
        side,
        team.ticker,
        qty,
        user.id,
        gross,
        fee,
        supply,
        team.shares_outstanding,
    )

    return TradeResult(
        user_id=user.id,
        team_id=team.id,
        side=side,
        shares_traded=qty,
        total_value=gross,
        fee=fee,
        avg_price=avg_price,
        new_balance=to_decimal(user.usd_balance),
        new_holding_qty=new_holding_qty,
        new_supply=int(team.shares_outstanding),
        spot_price_after=quote.spot_after,
        price_moved=price_moved,
    )


def run_with_retry(
    session_factory: Callable[[], Session],
    work: Callable[[Session], T],
    attempts: int = MAX_TRADE_ATTEMPTS,
    retry_backoff: float = TRADE_RETRY_BACKOFF_SECONDS,
) -> T:
    """Run `work` in a fresh session and commit, retrying on write conflicts."""
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        db = session_factory()
        try:
            result = work(db)
            db.commit()
            return result
        except (ConcurrentModification, StaleDataError, OperationalError) as exc:
            db.rollback()
            if isinstance(exc, OperationalError) and not is_write_conflict(exc):
                raise
            if attempt >= attempts:
                if isinstance(exc, ConcurrentModification):
                    raise
                raise ConcurrentModification() from exc
            logger.warning("Write conflict on attempt %d/%d: %s", attempt, attempts, exc)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        time.sleep(max(0.0, retry_backoff * attempt))
    raise ConcurrentModification()
