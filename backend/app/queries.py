from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy import distinct, func, select
from sqlalchemy.orm import Session

from .exposure import to_decimal, trade_record_from_row
from .models import (
    ACTIVE_FIGHT_STATUSES,
    SETTLED_FIGHT_STATUSES,
    Fight,
    FightParticipant,
    FightSession,
    FightTrade,
)
from .rules import (
    AntiCheatConfig,
    FightHistory,
    FightSnapshot,
    ParticipantSnapshot,
    SessionRecord,
)

logger = logging.getLogger(__name__)


class FightNotFound(LookupError):
    def __init__(self, fight_id: int):
        self.fight_id = fight_id
        super().__init__(f"Fight {fight_id} not found")


def window_start(config: AntiCheatConfig, now: datetime | None = None) -> datetime:
    current = now or datetime.utcnow()
    return current - timedelta(hours=config.matchup_window_hours)


def get_fight_or_raise(db: Session, fight_id: int, for_update: bool = False) -> Fight:
    stmt = select(Fight).where(Fight.id == fight_id)
    if for_update:
        stmt = stmt.with_for_update()
    fight = db.execute(stmt).scalar_one_or_none()
    if fight is None:
        raise FightNotFound(fight_id)
    return fight


def get_active_participation(db: Session, user_id: int) -> Fight | None:
    """The LIVE or WAITING fight `user_id` currently sits in, if any."""
    return db.execute(
        select(Fight)
        .join(FightParticipant, FightParticipant.fight_id == Fight.id)
        .where(
            FightParticipant.user_id == user_id,
            Fight.status.in_(ACTIVE_FIGHT_STATUSES),
        )
        .order_by(Fight.id.asc())
        .limit(1)
    ).scalar_one_or_none()


def participant_to_snapshot(participant: FightParticipant) -> ParticipantSnapshot:
    return ParticipantSnapshot(
        user_id=int(participant.user_id),
        slot=str(participant.slot),
        trades_count=int(participant.trades_count or 0),
        final_score_usdc=(
            to_decimal(participant.final_score_usdc, "final_score_usdc")
            if participant.final_score_usdc is not None
            else None
        ),
        external_trades_detected=bool(participant.external_trades_detected),
        external_trade_ids=[str(trade_id) for trade_id in (participant.external_trade_ids or [])],
        max_exposure_used=to_decimal(participant.max_exposure_used, "max_exposure_used"),
    )


def load_fight_snapshot(db: Session, fight_id: int) -> FightSnapshot:
    fight = get_fight_or_raise(db, fight_id)

    participants = db.execute(
        select(FightParticipant)
        .where(FightParticipant.fight_id == fight_id)
        .order_by(FightParticipant.slot.asc())
    ).scalars().all()
    trades = db.execute(
        select(FightTrade)
        .where(FightTrade.fight_id == fight_id)
        .order_by(FightTrade.executed_at.asc(), FightTrade.id.asc())
    ).scalars().all()
    sessions = db.execute(
        select(FightSession)
        .where(FightSession.fight_id == fight_id)
        .order_by(FightSession.created_at.asc(), FightSession.id.asc())
    ).scalars().all()

    return FightSnapshot(
        fight_id=int(fight.id),
        status=str(fight.status),
        stake_usdc=to_decimal(fight.stake_usdc, "stake_usdc"),
        participants=[participant_to_snapshot(p) for p in participants],
        trades=[trade_record_from_row(t) for t in trades],
        sessions=[
            SessionRecord(
                user_id=int(s.user_id),
                ip_address=str(s.ip_address or ""),
                session_type=str(s.session_type),
                user_agent=s.user_agent,
                created_at=s.created_at,
            )
            for s in sessions
        ],
        started_at=fight.started_at,
        ended_at=fight.ended_at,
    )


def count_pair_fights(
    db: Session,
    user_a_id: int,
    user_b_id: int,
    statuses: Iterable[str],
    since: datetime,
    exclude_fight_id: int | None = None,
) -> int:
    """Fights in `statuses` started since `since` whose two participants are exactly this pair."""
    if user_a_id == user_b_id:
        return 0
    pair_fights = (
        select(Fight.id)
        .join(FightParticipant, FightParticipant.fight_id == Fight.id)
        .where(
            Fight.status.in_(list(statuses)),
            Fight.started_at >= since,
            FightParticipant.user_id.in_([user_a_id, user_b_id]),
        )
        .group_by(Fight.id)
        .having(func.count(distinct(FightParticipant.user_id)) == 2)
    )
    if exclude_fight_id is not None:
        pair_fights = pair_fights.where(Fight.id != exclude_fight_id)
    return int(db.execute(select(func.count()).select_from(pair_fights.subquery())).scalar_one())


def count_shared_ip_fights(
    db: Session,
    user_a_id: int,
    user_b_id: int,
    shared_ips: list[str],
    since: datetime,
    exclude_fight_id: int | None = None,
) -> int:
    """Other settled fights in the window where both users connected from one of `shared_ips`."""
    if not shared_ips:
        return 0
    overlapping = (
        select(FightSession.fight_id)
        .join(Fight, Fight.id == FightSession.fight_id)
        .where(
            Fight.status.in_(SETTLED_FIGHT_STATUSES),
            FightSession.ip_address.in_(shared_ips),
            FightSession.created_at >= since,
            FightSession.user_id.in_([user_a_id, user_b_id]),
        )
        .group_by(FightSession.fight_id)
        .having(func.count(distinct(FightSession.user_id)) == 2)
    )
    if exclude_fight_id is not None:
        overlapping = overlapping.where(FightSession.fight_id != exclude_fight_id)
    return int(db.execute(select(func.count()).select_from(overlapping.subquery())).scalar_one())


def load_fight_history(
    db: Session,
    snapshot: FightSnapshot,
    config: AntiCheatConfig,
    now: datetime | None = None,
) -> FightHistory:
    pair = snapshot.pair()
    if pair is None:
        return FightHistory()
    participant_a, participant_b = pair
    since = window_start(config, now)

    prior_matchups = count_pair_fights(
        db,
        participant_a.user_id,
        participant_b.user_id,
        statuses=SETTLED_FIGHT_STATUSES,
        since=since,
        exclude_fight_id=snapshot.fight_id,
    )
    shared_ips = snapshot.shared_ips()
    prior_shared_ip = count_shared_ip_fights(
        db,
        participant_a.user_id,
        participant_b.user_id,
        shared_ips=shared_ips,
        since=since,
        exclude_fight_id=snapshot.fight_id,
    )
    logger.debug(
        "Fight %s history: prior_matchups=%d shared_ips=%s prior_shared_ip=%d",
        snapshot.fight_id,
        prior_matchups,
        shared_ips,
        prior_shared_ip,
    )
    return FightHistory(
        prior_matchup_count=prior_matchups,
        prior_shared_ip_fight_count=prior_shared_ip,
        shared_ips=shared_ips,
    )
