from decimal import Decimal

import pytest
from sqlalchemy import select

from tradewins.dividends import estimated_payout_per_share, fund_dividend_bank, payout_win
from tradewins.errors import MarketError
from tradewins.models import Team, Transaction, User
from tradewins.settlement import run_with_retry


def pay(session_factory, team_id, description="test win"):
    return run_with_retry(session_factory, lambda db: payout_win(db, team_id, description), retry_backoff=0)


def balances(session_factory):
    with session_factory() as db:
        return {row.username: Decimal(row.usd_balance) for row in db.execute(select(User)).scalars()}


def test_half_of_bank_is_split_pro_rata(session_factory, make_user, make_team, give_shares):
    alice = make_user("alice", balance="0")
    bob = make_user("bob", balance="0")
    team = make_team(supply=100, bank="1000")
    give_shares(alice, team, 40)
    give_shares(bob, team, 60)

    result = pay(session_factory, team.id, "NHL win: TOR 4-2 vs BOS (game 401)")

    assert result.payout_total == Decimal("500")
    assert result.holders_paid == 2
    assert result.bank_before == Decimal("1000")
    assert result.bank_after == Decimal("500")
    assert balances(session_factory) == {"alice": Decimal("200"), "bob": Decimal("300")}

    with session_factory() as db:
        assert Decimal(db.get(Team, team.id).dividend_bank) == Decimal("500")
        rows = db.execute(select(Transaction).order_by(Transaction.user_id)).scalars().all()
    assert [(row.type, row.shares_amount, row.usd_amount) for row in rows] == [
        ("DIVIDEND", 40, Decimal("200")),
        ("DIVIDEND", 60, Decimal("300")),
    ]
    assert rows[0].share_price == Decimal("5")
    assert rows[0].description == "NHL win: TOR 4-2 vs BOS (game 401)"


def test_successive_wins_halve_the_bank_each_time(session_factory, make_user, make_team, give_shares):
    holder = make_user(balance="0")
    team = make_team(supply=10, bank="800")
    give_shares(holder, team, 10)

    assert pay(session_factory, team.id).payout_total == Decimal("400")
    assert pay(session_factory, team.id).payout_total == Decimal("200")
    assert balances(session_factory)["alice"] == Decimal("600")


def test_no_supply_is_a_no_op(session_factory, make_team):
    team = make_team(supply=0, bank="1000")

    result = pay(session_factory, team.id)

    assert result.payout_total == Decimal("0")
    assert result.holders_paid == 0
    with session_factory() as db:
        assert Decimal(db.get(Team, team.id).dividend_bank) == Decimal("1000")
        assert db.execute(select(Transaction)).first() is None


def test_empty_bank_is_a_no_op(session_factory, make_user, make_team, give_shares):
    holder = make_user(balance="0")
    team = make_team(supply=5, bank="0")
    give_shares(holder, team, 5)

    assert pay(session_factory, team.id).payout_total == Decimal("0")
    assert balances(session_factory)["alice"] == Decimal("0")


def test_rounding_dust_stays_in_the_bank(session_factory, make_user, make_team, give_shares):
    users = [make_user(name, balance="0") for name in ("ann", "ben", "cal")]
    team = make_team(supply=3, bank="0.000005")
    for user in users:
        give_shares(user, team, 1)

    result = pay(session_factory, team.id)

    # 0.0000025 / 3 per holder rounds down to zero at micro precision.
    assert result.payout_total == Decimal("0")
    assert result.bank_after == Decimal("0.000005")


def test_total_paid_never_exceeds_half_the_bank(session_factory, make_user, make_team, give_shares):
    users = [make_user(name, balance="0") for name in ("ann", "ben", "cal")]
    team = make_team(supply=7, bank="100")
    for user, shares in zip(users, (1, 2, 4)):
        give_shares(user, team, shares)

    result = pay(session_factory, team.id)

    assert result.payout_total <= Decimal("50")
    assert Decimal("50") - result.payout_total < Decimal("0.00001")
    assert result.bank_after == Decimal("100") - result.payout_total
    assert sum(balances(session_factory).values()) == result.payout_total


def test_estimated_payout_per_share(make_team):
    assert estimated_payout_per_share(make_team("BOS", supply=100, bank="1000")) == Decimal("5")
    assert estimated_payout_per_share(make_team("MTL", supply=0, bank="1000")) == Decimal("0")


def test_fund_dividend_bank_adds_deposit(session_factory, make_team):
    team = make_team(bank="10")

    funded = run_with_retry(session_factory, lambda db: fund_dividend_bank(db, team.id, Decimal("15.5")))

    assert Decimal(funded.dividend_bank) == Decimal("25.5")


@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5")])
def test_fund_dividend_bank_rejects_non_positive(session_factory, make_team, amount):
    team = make_team()
    with pytest.raises(MarketError):
        run_with_retry(session_factory, lambda db: fund_dividend_bank(db, team.id, amount))
