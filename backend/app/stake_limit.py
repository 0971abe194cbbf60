from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .exposure import ZERO, ExposureResult, calculate_fight_exposure, to_decimal
from .models import FIGHT_LIVE, Fight, FightParticipant, FightTrade

logger = logging.getLogger(__name__)

STAKE_LIMIT_ERROR_CODE = "ERR_ORDER_STAKE_LIMIT_EXCEEDED"


class StakeLimitExceeded(Exception):
    """An order would push committed capital past the fight stake."""

    code = STAKE_LIMIT_ERROR_CODE

    def __init__(
        self,
        stake: Decimal,
        current_exposure: Decimal,
        order_notional: Decimal,
        max_exposure_used: Decimal,
        available: Decimal,
    ):
        self.stake = stake
        self.current_exposure = current_exposure
        self.order_notional = order_notional
        self.total_exposure = current_exposure + order_notional
        self.max_exposure_used = max_exposure_used
        self.available = available
        super().__init__(
            f"Stake limit exceeded. Fight stake: {float(stake):.2f} USDC. "
            f"Max capital used: {float(max_exposure_used):.2f} USDC. "
            f"Available: {float(available):.2f} USDC. "
            f"Order size: {float(order_notional):.2f} USDC."
        )

    @property
    def details(self) -> dict[str, float]:
        return {
            "stake": float(self.stake),
            "currentExposure": float(self.current_exposure),
            "orderNotional": float(self.order_notional),
            "totalExposure": float(self.total_exposure),
            "available": float(self.available),
        }


@dataclass
class StakeCheck:
    in_fight: bool
    fight_id: int | None = None
    participant_id: int | None = None
    stake: Decimal = ZERO
    max_exposure_used: Decimal = ZERO
    current_exposure: Decimal = ZERO
    cumulative_opening_notional: Decimal = ZERO
    available: Decimal = ZERO


def calculate_available_capital(
    stake: Decimal,
    max_exposure_used: Decimal,
    current_exposure: Decimal,
) -> Decimal:
    """
    available = stake - high-water mark + current exposure

    Capital sitting in open positions is already counted in the high-water mark and can
    be recycled. Capital that was committed and then freed by a close stays used.
    Example: stake=100, hwm=80, current=80 -> 100; stake=100, hwm=80, current=0 -> 20.
    """
    return max(ZERO, stake - max_exposure_used + current_exposure)


def ensure_within_stake_or_raise(
    stake: Decimal,
    max_exposure_used: Decimal,
    current_exposure: Decimal,
    order_notional: Decimal,
) -> Decimal:
    available = calculate_available_capital(stake, max_exposure_used, current_exposure)
    if order_notional > available:
        raise StakeLimitExceeded(
            stake=stake,
            current_exposure=current_exposure,
            order_notional=order_notional,
            max_exposure_used=max_exposure_used,
            available=available,
        )
    return available


def get_live_participant(
    db: Session,
    fight_id: int,
    user_id: int,
) -> tuple[Fight, FightParticipant] | None:
    row = db.execute(
        select(Fight, FightParticipant)
        .join(FightParticipant, FightParticipant.fight_id == Fight.id)
        .where(
            Fight.id == fight_id,
            Fight.status == FIGHT_LIVE,
            FightParticipant.user_id == user_id,
        )
    ).one_or_none()
    if row is None:
        return None
    return row[0], row[1]


def build_stake_check(
    fight: Fight,
    participant: FightParticipant,
    exposure: ExposureResult,
) -> StakeCheck:
    stake = to_decimal(fight.stake_usdc, "stake_usdc")
    max_used = to_decimal(participant.max_exposure_used, "max_exposure_used")
    return StakeCheck(
        in_fight=True,
        fight_id=int(fight.id),
        participant_id=int(participant.id),
        stake=stake,
        max_exposure_used=max_used,
        current_exposure=exposure.current_exposure,
        cumulative_opening_notional=exposure.cumulative_opening_notional,
        available=calculate_available_capital(stake, max_used, exposure.current_exposure),
    )


def get_stake_info(db: Session, fight_id: int, user_id: int) -> StakeCheck:
    live = get_live_participant(db, fight_id, user_id)
    if live is None:
        return StakeCheck(in_fight=False)
    fight, participant = live
    exposure = calculate_fight_exposure(db, fight_id, user_id)
    return build_stake_check(fight, participant, exposure)


def check_order(
    db: Session,
    fight_id: int,
    user_id: int,
    order_notional: Decimal,
    reduce_only: bool = False,
) -> StakeCheck:
    """Gate an order attempt. Read-only: rejection never touches stored state."""
    if reduce_only:
        return StakeCheck(in_fight=False)

    check = get_stake_info(db, fight_id, user_id)
    if not check.in_fight:
        return check

    try:
        ensure_within_stake_or_raise(
            stake=check.stake,
            max_exposure_used=check.max_exposure_used,
            current_exposure=check.current_exposure,
            order_notional=abs(order_notional),
        )
    except StakeLimitExceeded as exc:
        logger.info("Order rejected for fight %s user %s: %s", fight_id, user_id, exc)
        raise
    return check


def raise_high_water_mark(db: Session, participant_id: int, new_exposure: Decimal) -> bool:
    """
    Compare-and-set: only writes when the new exposure beats the stored mark, so two
    concurrent fills can never lower the watermark.
    """
    result = db.execute(
        update(FightParticipant)
        .where(
            FightParticipant.id == participant_id,
            FightParticipant.max_exposure_used < new_exposure,
        )
        .values(max_exposure_used=new_exposure)
        .execution_options(synchronize_session=False)
    )
    raised = bool(result.rowcount)
    participant = db.get(FightParticipant, participant_id)
    if participant is not None:
        db.expire(participant, ["max_exposure_used"])
    if raised:
        logger.info("Participant %s high-water mark raised to %s", participant_id, new_exposure)
    return raised


def record_fight_trade(
    db: Session,
    fight: Fight,
    participant: FightParticipant,
    symbol: str,
    side: str,
    amount: Decimal,
    price: Decimal,
    fee: Decimal = ZERO,
    executed_at: datetime | None = None,
) -> tuple[FightTrade, ExposureResult]:
    trade = FightTrade(
        fight_id=fight.id,
        participant_user_id=participant.user_id,
        symbol=symbol,
        side=side,
        amount=amount,
        price=price,
        fee=fee,
        executed_at=executed_at or datetime.utcnow(),
    )
    db.add(trade)
    db.flush()
    db.execute(
        update(FightParticipant)
        .where(FightParticipant.id == participant.id)
        .values(trades_count=FightParticipant.trades_count + 1)
        .execution_options(synchronize_session=False)
    )
    db.expire(participant, ["trades_count"])

    exposure = calculate_fight_exposure(db, int(fight.id), int(participant.user_id))
    raise_high_water_mark(db, int(participant.id), exposure.current_exposure)
    return trade, exposure
