from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, Integer, Numeric, DateTime, ForeignKey, Text, UniqueConstraint, Boolean
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates
from .db import Base

NUM = Numeric(18, 6)

TRANSACTION_TYPES = ("BUY", "SELL", "DIVIDEND")


def _non_negative(field_name: str, value):
    if value is None:
        return value
    if Decimal(str(value)) < 0:
        raise ValueError(f"{field_name} cannot be negative (got {value}).")
    return value


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    usd_balance: Mapped[Decimal] = mapped_column(NUM, default=Decimal("0"))
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    holdings: Mapped[list["Holding"]] = relationship(back_populates="user")

    __mapper_args__ = {"version_id_col": version}

    @validates("usd_balance")
    def validate_balance(self, key, value):
        return _non_negative(key, value)


class Team(Base):
    __tablename__ = "teams"
    __table_args__ = (UniqueConstraint("ticker", "league", name="uq_team_ticker_league"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticker: Mapped[str] = mapped_column(String(8), index=True)
    league: Mapped[str] = mapped_column(String(8), index=True)
    name: Mapped[str] = mapped_column(String(128))

    shares_outstanding: Mapped[int] = mapped_column(Integer, default=0)
    reserve_pool: Mapped[Decimal] = mapped_column(NUM, default=Decimal("0"))
    dividend_bank: Mapped[Decimal] = mapped_column(NUM, default=Decimal("0"))

    wins: Mapped[int] = mapped_column(Integer, default=0)
    losses: Mapped[int] = mapped_column(Integer, default=0)
    otl: Mapped[int] = mapped_column(Integer, default=0)
    streak: Mapped[str | None] = mapped_column(String(16), nullable=True)

    next_opponent: Mapped[str | None] = mapped_column(String(8), nullable=True)
    next_game_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    last_game_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_game_state: Mapped[str | None] = mapped_column(String(16), nullable=True)
    last_game_score: Mapped[str | None] = mapped_column(String(96), nullable=True)

    # Written by ingestion once per poll; the trade path only reads it.
    market_locked: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    lock_reason: Mapped[str | None] = mapped_column(String(128), nullable=True)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    records_updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    holdings: Mapped[list["Holding"]] = relationship(back_populates="team")

    __mapper_args__ = {"version_id_col": version}

    @validates("shares_outstanding", "reserve_pool", "dividend_bank")
    def validate_non_negative(self, key, value):
        return _non_negative(key, value)


class Holding(Base):
    __tablename__ = "holdings"
    __table_args__ = (UniqueConstraint("user_id", "team_id", name="uq_user_team"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    team_id: Mapped[int] = mapped_column(ForeignKey("teams.id"), index=True)

    shares_owned: Mapped[int] = mapped_column(Integer, default=0)

    user: Mapped["User"] = relationship(back_populates="holdings")
    team: Mapped["Team"] = relationship(back_populates="holdings")

    @validates("shares_owned")
    def validate_shares(self, key, value):
        return _non_negative(key, value)


class Transaction(Base):
    __tablename__ = "transactions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    team_id: Mapped[int] = mapped_column(ForeignKey("teams.id"), index=True)

    type: Mapped[str] = mapped_column(String(16), index=True)  # BUY, SELL, DIVIDEND
    shares_amount: Mapped[int] = mapped_column(Integer, default=0)
    share_price: Mapped[Decimal] = mapped_column(NUM, default=Decimal("0"))
    usd_amount: Mapped[Decimal] = mapped_column(NUM, default=Decimal("0"))  # magnitude, sign implied by type
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    @validates("type")
    def validate_type(self, key, value):
        if value not in TRANSACTION_TYPES:
            raise ValueError(f"Unknown transaction type '{value}'.")
        return value


class HouseRevenue(Base):
    __tablename__ = "house_revenue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    team_id: Mapped[int] = mapped_column(ForeignKey("teams.id"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    source: Mapped[str] = mapped_column(String(32), default="BUY_FEE")
    amount: Mapped[Decimal] = mapped_column(NUM, default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)


class ProcessedGame(Base):
    __tablename__ = "processed_games"
    __table_args__ = (UniqueConstraint("game_id", name="uq_processed_game"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    game_id: Mapped[str] = mapped_column(String(64), index=True)
    league: Mapped[str] = mapped_column(String(8), index=True)
    winner_ticker: Mapped[str | None] = mapped_column(String(8), nullable=True)
    summary: Mapped[str | None] = mapped_column(String(160), nullable=True)
    payout_total: Mapped[Decimal] = mapped_column(NUM, default=Decimal("0"))
    processed_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
