from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from .models import FIGHT_FINISHED, FIGHT_LIVE, FIGHT_NO_CONTEST
from .queries import count_pair_fights, window_start
from .rules import AntiCheatConfig

logger = logging.getLogger(__name__)

# An in-progress fight blocks a new pairing as well.
MATCHMAKING_BLOCKING_STATUSES = (FIGHT_FINISHED, FIGHT_NO_CONTEST, FIGHT_LIVE)


@dataclass
class MatchmakingCheck:
    can_match: bool
    reason: str | None = None
    matchup_count: int | None = None


def pair_key(user_a_id: int, user_b_id: int) -> tuple[int, int]:
    return (user_a_id, user_b_id) if user_a_id <= user_b_id else (user_b_id, user_a_id)


def can_users_match(
    db: Session,
    user_a_id: int,
    user_b_id: int,
    config: AntiCheatConfig,
    now: datetime | None = None,
) -> MatchmakingCheck:
    low_id, high_id = pair_key(user_a_id, user_b_id)
    if low_id == high_id:
        return MatchmakingCheck(can_match=False, reason="Cannot match a user against themselves")

    matchup_count = count_pair_fights(
        db,
        low_id,
        high_id,
        statuses=MATCHMAKING_BLOCKING_STATUSES,
        since=window_start(config, now),
    )
    if matchup_count >= config.max_matchups:
        reason = (
            f"Matchup limit exceeded: {matchup_count}/{config.max_matchups}"
            f" in {config.matchup_window_hours:g}h"
        )
        logger.info("Matchmaking refused for pair %s: %s", (low_id, high_id), reason)
        return MatchmakingCheck(can_match=False, reason=reason, matchup_count=matchup_count)

    return MatchmakingCheck(can_match=True, matchup_count=matchup_count)
