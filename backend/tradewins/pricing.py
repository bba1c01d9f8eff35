import os
from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal

from .errors import InvalidQuantity, OversellError

BASE_PRICE = Decimal(os.environ.get("BASE_PRICE", "10.00"))
SLOPE = max(Decimal("0.000001"), Decimal(os.environ.get("PRICE_SLOPE", "0.01")))

BUY = "BUY"
SELL = "SELL"
TRADE_SIDES = (BUY, SELL)

MONEY_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class TradeQuote:
    side: str
    quantity: int
    start_supply: int
    end_supply: int
    first_price: Decimal
    last_price: Decimal
    total: Decimal
    avg_price: Decimal
    spot_before: Decimal
    spot_after: Decimal
    price_impact: Decimal


def to_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    return Decimal(str(value))


def to_money(value, rounding=ROUND_HALF_EVEN) -> Decimal:
    return to_decimal(value).quantize(MONEY_QUANTUM, rounding=rounding)


def spot_price(supply) -> Decimal:
    """Linear bonding curve: P(S) = BASE_PRICE + S * SLOPE, clamped at S = 0."""
    clamped = max(Decimal(0), Decimal(supply))
    return BASE_PRICE + clamped * SLOPE


def validate_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, (int, Decimal)):
        raise InvalidQuantity(quantity)
    if quantity != int(quantity) or quantity <= 0:
        raise InvalidQuantity(quantity)
    return int(quantity)


def normalize_side(side: str) -> str:
    normalized = (side or "").strip().upper()
    if normalized not in TRADE_SIDES:
        raise ValueError(f"side must be one of {', '.join(TRADE_SIDES)}")
    return normalized


def buy_total(supply: int, qty: int) -> Decimal:
    """Cost of shares S+1..S+qty: trapezoid area, exact for a linear curve."""
    first = spot_price(supply + 1)
    last = spot_price(supply + qty)
    return Decimal(qty) / Decimal(2) * (first + last)


def sell_total(supply: int, qty: int) -> Decimal:
    """Proceeds of shares S-qty+1..S, priced from the top of the curve down."""
    first = spot_price(supply)
    last = spot_price(supply - qty + 1)
    return Decimal(qty) / Decimal(2) * (first + last)


def quote_trade(supply: int, quantity, side: str, holding: int | None = None) -> TradeQuote:
    qty = validate_quantity(quantity)
    side = normalize_side(side)
    start = max(0, int(supply))

    if side == BUY:
        first = spot_price(start + 1)
        last = spot_price(start + qty)
        total = buy_total(start, qty)
        end = start + qty
    else:
        if holding is not None and qty > holding:
            raise OversellError(requested=qty, owned=int(holding))
        first = spot_price(start)
        last = spot_price(start - qty + 1)
        total = sell_total(start, qty)
        end = max(0, start - qty)

    spot_before = spot_price(start)
    avg_price = total / Decimal(qty)
    return TradeQuote(
        side=side,
        quantity=qty,
        start_supply=start,
        end_supply=end,
        first_price=first,
        last_price=last,
        total=total,
        avg_price=avg_price,
        spot_before=spot_before,
        spot_after=spot_price(end),
        price_impact=abs(avg_price - spot_before),
    )
