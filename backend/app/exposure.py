from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import FightTrade

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

# Residue left behind by fully-closed positions.
DUST_THRESHOLD = Decimal("0.0000001")


def to_decimal(value: object, field_name: str = "value") -> Decimal:
    """Coerce a stored numeric to Decimal. Malformed values count as zero."""
    if value is None:
        return ZERO
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        logger.warning("Unparseable %s %r treated as 0", field_name, value)
        return ZERO
    if not parsed.is_finite():
        logger.warning("Non-finite %s %r treated as 0", field_name, value)
        return ZERO
    return parsed


@dataclass
class TradeRecord:
    participant_user_id: int
    symbol: str
    side: str  # BUY, SELL
    amount: Decimal
    price: Decimal
    executed_at: datetime | None = None

    @property
    def notional(self) -> Decimal:
        return self.amount * self.price


@dataclass
class PositionState:
    amount: Decimal = ZERO  # positive = long, negative = short
    total_notional: Decimal = ZERO

    @property
    def avg_entry_price(self) -> Decimal:
        if self.amount == 0:
            return ZERO
        return self.total_notional / abs(self.amount)

    @property
    def is_open(self) -> bool:
        return abs(self.amount) > DUST_THRESHOLD


@dataclass
class ExposureResult:
    current_exposure: Decimal
    cumulative_opening_notional: Decimal
    positions_by_symbol: dict[str, PositionState] = field(default_factory=dict)


def trade_record_from_row(row: FightTrade) -> TradeRecord:
    return TradeRecord(
        participant_user_id=int(row.participant_user_id),
        symbol=str(row.symbol),
        side=str(row.side).upper(),
        amount=to_decimal(row.amount, "amount"),
        price=to_decimal(row.price, "price"),
        executed_at=row.executed_at,
    )


def calculate_exposure_from_trades(trades: Iterable[TradeRecord]) -> ExposureResult:
    """
    Replay one participant's fills (ascending execution time) into per-symbol positions.

    Opening fills add `qty * price` to the position's notional and to the cumulative
    opening notional. Closing fills release notional at the average entry price, so
    capital freed by a close never counts as newly committed.
    """
    positions: dict[str, PositionState] = {}
    cumulative_opening = ZERO

    for trade in trades:
        amount = trade.amount
        price = trade.price
        if amount <= 0 or price <= 0:
            logger.warning(
                "Skipping fill with non-positive size or price: %s %s %s @ %s",
                trade.side,
                amount,
                trade.symbol,
                price,
            )
            continue

        pos = positions.setdefault(trade.symbol, PositionState())

        if trade.side == "BUY":
            if pos.amount < 0:
                close_amt = min(amount, abs(pos.amount))
                open_amt = amount - close_amt
                pos.total_notional -= close_amt * pos.avg_entry_price
                if open_amt > 0:
                    pos.total_notional += open_amt * price
                    cumulative_opening += open_amt * price
            else:
                pos.total_notional += amount * price
                cumulative_opening += amount * price
            pos.amount += amount
        elif trade.side == "SELL":
            if pos.amount > 0:
                close_amt = min(amount, pos.amount)
                open_amt = amount - close_amt
                pos.total_notional -= close_amt * pos.avg_entry_price
                if open_amt > 0:
                    pos.total_notional += open_amt * price
                    cumulative_opening += open_amt * price
            else:
                pos.total_notional += amount * price
                cumulative_opening += amount * price
            pos.amount -= amount
        else:
            logger.warning("Skipping fill with unknown side %r on %s", trade.side, trade.symbol)

    current_exposure = sum(
        (abs(pos.total_notional) for pos in positions.values() if pos.is_open),
        ZERO,
    )
    return ExposureResult(
        current_exposure=current_exposure,
        cumulative_opening_notional=cumulative_opening,
        positions_by_symbol=positions,
    )


def load_participant_trades(db: Session, fight_id: int, user_id: int) -> list[TradeRecord]:
    rows = db.execute(
        select(FightTrade)
        .where(FightTrade.fight_id == fight_id, FightTrade.participant_user_id == user_id)
        .order_by(FightTrade.executed_at.asc(), FightTrade.id.asc())
    ).scalars().all()
    return [trade_record_from_row(row) for row in rows]


def calculate_fight_exposure(db: Session, fight_id: int, user_id: int) -> ExposureResult:
    trades = load_participant_trades(db, fight_id, user_id)
    result = calculate_exposure_from_trades(trades)
    logger.debug(
        "Fight %s user %s: %d fills, exposure=%s cumulative_opening=%s",
        fight_id,
        user_id,
        len(trades),
        result.current_exposure,
        result.cumulative_opening_notional,
    )
    return result
