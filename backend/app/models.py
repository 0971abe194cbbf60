from __future__ import annotations
from datetime import datetime
from sqlalchemy import JSON, String, Integer, Numeric, DateTime, ForeignKey, Text, UniqueConstraint, Boolean
from sqlalchemy.orm import Mapped, mapped_column, relationship
from .db import Base

NUM = Numeric(18, 6)

FIGHT_WAITING = "WAITING"
FIGHT_LIVE = "LIVE"
FIGHT_FINISHED = "FINISHED"
FIGHT_NO_CONTEST = "NO_CONTEST"
FIGHT_CANCELLED = "CANCELLED"

SETTLED_FIGHT_STATUSES = (FIGHT_FINISHED, FIGHT_NO_CONTEST)
# A user may sit in at most one of these at a time.
ACTIVE_FIGHT_STATUSES = (FIGHT_LIVE, FIGHT_WAITING)


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    handle: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    participations: Mapped[list["FightParticipant"]] = relationship(back_populates="user")


class Fight(Base):
    __tablename__ = "fights"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    creator_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    status: Mapped[str] = mapped_column(String(16), default=FIGHT_WAITING, index=True)
    stake_usdc: Mapped[float] = mapped_column(NUM, default=0)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=5)
    winner_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    is_draw: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    participants: Mapped[list["FightParticipant"]] = relationship(
        back_populates="fight",
        order_by="FightParticipant.slot",
    )


class FightParticipant(Base):
    __tablename__ = "fight_participants"
    __table_args__ = (
        UniqueConstraint("fight_id", "slot", name="uq_fight_slot"),
        UniqueConstraint("fight_id", "user_id", name="uq_fight_user"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    fight_id: Mapped[int] = mapped_column(ForeignKey("fights.id"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    slot: Mapped[str] = mapped_column(String(1))  # A, B
    max_exposure_used: Mapped[float] = mapped_column(NUM, default=0)  # high-water mark
    trades_count: Mapped[int] = mapped_column(Integer, default=0)
    final_score_usdc: Mapped[float | None] = mapped_column(NUM, nullable=True)
    external_trades_detected: Mapped[bool] = mapped_column(Boolean, default=False)
    external_trade_ids: Mapped[list | None] = mapped_column(JSON, nullable=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    fight: Mapped["Fight"] = relationship(back_populates="participants")
    user: Mapped["User"] = relationship(back_populates="participations")


class FightTrade(Base):
    __tablename__ = "fight_trades"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    fight_id: Mapped[int] = mapped_column(ForeignKey("fights.id"), index=True)
    participant_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    symbol: Mapped[str] = mapped_column(String(32), index=True)
    side: Mapped[str] = mapped_column(String(4))  # BUY, SELL
    amount: Mapped[float] = mapped_column(NUM, default=0)
    price: Mapped[float] = mapped_column(NUM, default=0)
    fee: Mapped[float] = mapped_column(NUM, default=0)
    executed_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)


class FightSession(Base):
    __tablename__ = "fight_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    fight_id: Mapped[int] = mapped_column(ForeignKey("fights.id"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    ip_address: Mapped[str] = mapped_column(String(64), default="unknown", index=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    session_type: Mapped[str] = mapped_column(String(8))  # join, trade
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)


class AntiCheatViolation(Base):
    __tablename__ = "anti_cheat_violations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    fight_id: Mapped[int] = mapped_column(ForeignKey("fights.id"), index=True)
    rule_code: Mapped[str] = mapped_column(String(32), index=True)
    rule_name: Mapped[str] = mapped_column(String(64))
    rule_message: Mapped[str] = mapped_column(Text)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    action_taken: Mapped[str] = mapped_column(String(16))  # NO_CONTEST, FLAGGED
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
