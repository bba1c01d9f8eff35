import logging
import os
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .errors import ConcurrentModification, MarketError, UserNotFound
from .models import Holding, Team, Transaction, User
from .pricing import to_decimal, to_money
from .settlement import lock_team

logger = logging.getLogger(__name__)

PAYOUT_FRACTION = min(Decimal("1"), max(Decimal("0"), Decimal(os.environ.get("PAYOUT_FRACTION", "0.50"))))


@dataclass
class PayoutResult:
    team_id: int
    ticker: str
    payout_total: Decimal
    holders_paid: int
    bank_before: Decimal
    bank_after: Decimal


def estimated_payout_per_share(team: Team, fraction: Decimal = PAYOUT_FRACTION) -> Decimal:
    supply = int(team.shares_outstanding or 0)
    if supply <= 0:
        return Decimal("0")
    return to_decimal(team.dividend_bank) * fraction / Decimal(supply)


def payout_win(
    db: Session,
    team_id: int,
    description: str | None = None,
    fraction: Decimal = PAYOUT_FRACTION,
) -> PayoutResult:
    """
    Split `fraction` of the team's dividend bank across current holders, pro rata.

    Each credit is rounded down to the money quantum and the bank shrinks by exactly
    what was credited, so rounding dust stays banked for the next win. Duplicate
    calls for the same game are not detected here; the ingestion pipeline guards that.
    """
    team = lock_team(db, team_id)
    supply = int(team.shares_outstanding or 0)
    bank_before = to_decimal(team.dividend_bank)

    if supply <= 0 or bank_before <= 0:
        logger.info("No payout for %s: supply=%d bank=%s", team.ticker, supply, bank_before)
        return PayoutResult(
            team_id=team.id,
            ticker=team.ticker,
            payout_total=Decimal("0"),
            holders_paid=0,
            bank_before=bank_before,
            bank_after=bank_before,
        )

    distributable = bank_before * fraction
    per_share = to_money(distributable / Decimal(supply), rounding=ROUND_DOWN)
    holdings = db.execute(
        select(Holding)
        .where(Holding.team_id == team.id, Holding.shares_owned > 0)
        .order_by(Holding.id)
        .with_for_update()
    ).scalars().all()

    total_paid = Decimal("0")
    holders_paid = 0
    for holding in holdings:
        shares = int(holding.shares_owned)
        payout = to_money(distributable * Decimal(shares) / Decimal(supply), rounding=ROUND_DOWN)
        if payout <= 0:
            continue

        user = db.execute(select(User).where(User.id == holding.user_id).with_for_update()).scalar_one_or_none()
        if user is None:
            raise UserNotFound(holding.user_id)
        user.usd_balance = to_decimal(user.usd_balance) + payout

        db.add(
            Transaction(
                user_id=holding.user_id,
                team_id=team.id,
                type="DIVIDEND",
                shares_amount=shares,
                share_price=per_share,
                usd_amount=payout,
                description=description,
            )
        )
        total_paid += payout
        holders_paid += 1

    team.dividend_bank = max(Decimal("0"), bank_before - total_paid)

    try:
        db.flush()
    except StaleDataError as exc:
        raise ConcurrentModification() from exc

    logger.info(
        "Paid %s to %d holders of %s (%s); bank %s -> %s",
        total_paid,
        holders_paid,
        team.ticker,
        description or "win",
        bank_before,
        team.dividend_bank,
    )
    return PayoutResult(
        team_id=team.id,
        ticker=team.ticker,
        payout_total=total_paid,
        holders_paid=holders_paid,
        bank_before=bank_before,
        bank_after=to_decimal(team.dividend_bank),
    )


def fund_dividend_bank(db: Session, team_id: int, amount) -> Team:
    deposit = to_money(amount)
    if deposit <= 0:
        raise MarketError("Dividend bank deposit must be positive.")
    team = lock_team(db, team_id)
    team.dividend_bank = to_decimal(team.dividend_bank) + deposit
    try:
        db.flush()
    except StaleDataError as exc:
        raise ConcurrentModification() from exc
    logger.info("Funded %s dividend bank with %s", team.ticker, deposit)
    return team
