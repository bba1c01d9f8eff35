from decimal import Decimal


class MarketError(Exception):
    """Base error for every rejected market operation."""

    retryable = False

    def __init__(self, message: str = "Market operation failed."):
        self.message = message
        super().__init__(self.message)


# --- Order validation ---
class InvalidQuantity(MarketError):
    def __init__(self, quantity=None):
        super().__init__(f"Quantity must be a positive whole number of shares, got {quantity!r}.")
        self.quantity = quantity


class OversellError(MarketError):
    def __init__(self, requested: int, owned: int):
        super().__init__(f"Trying to sell {requested} shares but only own {owned}.")
        self.requested = requested
        self.owned = owned


# --- Settlement preconditions ---
class InsufficientFunds(MarketError):
    def __init__(self, needed: Decimal, available: Decimal):
        super().__init__(f"Insufficient funds. Need {float(needed):.2f}, have {float(available):.2f}.")
        self.needed = needed
        self.available = available


class InsufficientShares(OversellError):
    pass


class InsufficientReserve(MarketError):
    def __init__(self, needed: Decimal, available: Decimal):
        super().__init__(
            f"Team reserve cannot cover this sale. Need {float(needed):.2f}, reserve holds {float(available):.2f}."
        )
        self.needed = needed
        self.available = available


class MarketClosed(MarketError):
    def __init__(self, reason: str | None = None):
        super().__init__(reason or "Market is closed for this team.")


class ConcurrentModification(MarketError):
    retryable = True

    def __init__(self, message: str = "Market state changed while the trade was being applied. Retry."):
        super().__init__(message)


# --- Lookups ---
class EntityNotFound(MarketError):
    pass


class TeamNotFound(EntityNotFound):
    def __init__(self, team_ref=None):
        super().__init__(f"Team not found: {team_ref}" if team_ref is not None else "Team not found.")


class UserNotFound(EntityNotFound):
    def __init__(self, user_ref=None):
        super().__init__(f"User not found: {user_ref}" if user_ref is not None else "User not found.")


# --- Ingestion ---
class FeedUnavailable(MarketError):
    retryable = True

    def __init__(self, message: str = "Scoreboard feed is unavailable."):
        super().__init__(message)


class UnmappedTicker(MarketError):
    def __init__(self, ticker: str, league: str):
        super().__init__(f"No {league} team matches feed ticker '{ticker}'.")
        self.ticker = ticker
        self.league = league
