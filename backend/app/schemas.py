from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class UserCreateIn(BaseModel):
    handle: str = Field(min_length=1, max_length=64)


class UserOut(BaseModel):
    id: int
    handle: str


class FightCreateIn(BaseModel):
    creator_id: int
    stake_usdc: float = Field(gt=0, le=1_000_000)
    duration_minutes: int = Field(default=5, ge=1, le=24 * 60)


class FightJoinIn(BaseModel):
    user_id: int


class ParticipantOut(BaseModel):
    user_id: int
    handle: str
    slot: str
    max_exposure_used: float
    trades_count: int
    final_score_usdc: float | None = None
    external_trades_detected: bool = False


class FightOut(BaseModel):
    id: int
    status: str
    creator_id: int
    stake_usdc: float
    duration_minutes: int
    winner_id: int | None = None
    is_draw: bool = False
    created_at: datetime
    started_at: datetime | None = None
    ended_at: datetime | None = None
    participants: list[ParticipantOut]


class StakeInfoOut(BaseModel):
    in_fight: bool
    fight_id: int | None = None
    stake: float | None = None
    max_exposure_used: float | None = None
    current_exposure: float | None = None
    cumulative_opening_notional: float | None = None
    available: float | None = None


class OrderCheckIn(BaseModel):
    user_id: int
    symbol: str = Field(min_length=1, max_length=32)
    amount: float = Field(gt=0)
    price: float = Field(gt=0)
    reduce_only: bool = False


class OrderCheckOut(BaseModel):
    allowed: bool = True
    order_notional: float
    stake_info: StakeInfoOut


class FightTradeIn(BaseModel):
    user_id: int
    symbol: str = Field(min_length=1, max_length=32)
    side: Literal["BUY", "SELL"]
    amount: float = Field(gt=0)
    price: float = Field(gt=0)
    fee: float = Field(default=0, ge=0)
    executed_at: datetime | None = None


class PositionOut(BaseModel):
    symbol: str
    amount: float
    total_notional: float
    avg_entry_price: float


class FightTradeOut(BaseModel):
    trade_id: int
    trades_count: int
    current_exposure: float
    cumulative_opening_notional: float
    max_exposure_used: float
    available: float
    positions: list[PositionOut]


class ParticipantResultIn(BaseModel):
    final_score_usdc: float | None = None
    external_trades_detected: bool | None = None
    external_trade_ids: list[str] | None = None


class ValidationResultOut(BaseModel):
    rule_code: str
    rule_name: str
    outcome: str
    passed: bool
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class SettleIn(BaseModel):
    determined_winner_id: int | None = None
    is_draw: bool = False


class SettlementOut(BaseModel):
    fight_id: int
    final_status: str
    winner_id: int | None = None
    is_draw: bool
    violations: list[ValidationResultOut]
    flags: list[ValidationResultOut]


class MatchmakingCheckOut(BaseModel):
    can_match: bool
    reason: str | None = None
    matchup_count: int | None = None


class ViolationOut(BaseModel):
    id: int
    fight_id: int
    rule_code: str
    rule_name: str
    rule_message: str
    details: dict[str, Any] = Field(default_factory=dict)
    action_taken: str
    created_at: datetime
