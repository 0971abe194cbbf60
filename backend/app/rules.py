"""
Fairness rules evaluated over one finished fight.

Each rule is a pure function of a FightSnapshot, the FightHistory resolved up front by
the query step, and an AntiCheatConfig. Rules never touch the database.

Rules:
- ZERO_ZERO: both players made 0 trades, or both final scores are ~0
- MIN_VOLUME: either player traded less notional than the per-player minimum
- REPEATED_MATCHUP: same pair settled too many fights inside the window
- SAME_IP_PATTERN: both players connected from a shared IP (flag, then fail on repeat)
- EXTERNAL_TRADES: trades outside the platform were attributed to a player (flag only)
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from .exposure import ZERO, TradeRecord, to_decimal

logger = logging.getLogger(__name__)

UNKNOWN_IP = "unknown"

RULE_ZERO_ZERO = "ZERO_ZERO"
RULE_MIN_VOLUME = "MIN_VOLUME"
RULE_REPEATED_MATCHUP = "REPEATED_MATCHUP"
RULE_SAME_IP_PATTERN = "SAME_IP_PATTERN"
RULE_EXTERNAL_TRADES = "EXTERNAL_TRADES"

RULE_NAMES = {
    RULE_ZERO_ZERO: "Zero-Zero No Contest",
    RULE_MIN_VOLUME: "Minimum Volume",
    RULE_REPEATED_MATCHUP: "Repeated Matchup Limit",
    RULE_SAME_IP_PATTERN: "Same IP Pattern",
    RULE_EXTERNAL_TRADES: "External Trades Detection",
}

MISSING_PARTICIPANT_MESSAGE = "Missing participant data, skipping check"


def env_number(key: str, fallback: float) -> float:
    raw = os.environ.get(key, "").strip()
    if not raw:
        return fallback
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", key, raw, fallback)
        return fallback


@dataclass(frozen=True)
class AntiCheatConfig:
    zero_pnl_threshold_usdc: Decimal = Decimal("0.01")
    min_notional_per_player: Decimal = Decimal("10")
    max_matchups: int = 3
    matchup_window_hours: float = 24.0
    ip_same_pair_threshold: int = 2

    @classmethod
    def from_env(cls) -> "AntiCheatConfig":
        defaults = cls()
        return cls(
            zero_pnl_threshold_usdc=Decimal(str(env_number(
                "ANTI_CHEAT_ZERO_PNL_THRESHOLD_USDC", float(defaults.zero_pnl_threshold_usdc)
            ))),
            min_notional_per_player=Decimal(str(env_number(
                "ANTI_CHEAT_MIN_NOTIONAL_PER_PLAYER", float(defaults.min_notional_per_player)
            ))),
            max_matchups=int(env_number("ANTI_CHEAT_MAX_MATCHUPS_PER_24H", defaults.max_matchups)),
            matchup_window_hours=env_number("ANTI_CHEAT_MATCHUP_WINDOW_HOURS", defaults.matchup_window_hours),
            ip_same_pair_threshold=int(env_number(
                "ANTI_CHEAT_IP_SAME_PAIR_THRESHOLD", defaults.ip_same_pair_threshold
            )),
        )


class RuleOutcome(str, Enum):
    PASS = "PASS"
    FLAG = "FLAG"  # soft signal, recorded for review
    FAIL = "FAIL"


@dataclass
class ValidationResult:
    rule_code: str
    outcome: RuleOutcome
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def rule_name(self) -> str:
        return RULE_NAMES.get(self.rule_code, self.rule_code)

    @property
    def passed(self) -> bool:
        return self.outcome is not RuleOutcome.FAIL

    @property
    def flagged(self) -> bool:
        return self.outcome is RuleOutcome.FLAG


@dataclass
class ParticipantSnapshot:
    user_id: int
    slot: str
    trades_count: int = 0
    final_score_usdc: Decimal | None = None
    external_trades_detected: bool = False
    external_trade_ids: list[str] = field(default_factory=list)
    max_exposure_used: Decimal = ZERO


@dataclass
class SessionRecord:
    user_id: int
    ip_address: str
    session_type: str
    user_agent: str | None = None
    created_at: datetime | None = None


@dataclass
class FightSnapshot:
    fight_id: int
    status: str
    stake_usdc: Decimal
    participants: list[ParticipantSnapshot]
    trades: list[TradeRecord]
    sessions: list[SessionRecord]
    started_at: datetime | None = None
    ended_at: datetime | None = None

    def participant(self, slot: str) -> ParticipantSnapshot | None:
        for participant in self.participants:
            if participant.slot == slot:
                return participant
        return None

    def pair(self) -> tuple[ParticipantSnapshot, ParticipantSnapshot] | None:
        participant_a = self.participant("A")
        participant_b = self.participant("B")
        if participant_a is None or participant_b is None:
            return None
        return participant_a, participant_b

    def ips_for(self, user_id: int) -> set[str]:
        return {
            session.ip_address
            for session in self.sessions
            if session.user_id == user_id and session.ip_address and session.ip_address != UNKNOWN_IP
        }

    def shared_ips(self) -> list[str]:
        pair = self.pair()
        if pair is None:
            return []
        return sorted(self.ips_for(pair[0].user_id) & self.ips_for(pair[1].user_id))


@dataclass
class FightHistory:
    """Secondary data the rules need, resolved once before evaluation."""
    prior_matchup_count: int = 0
    prior_shared_ip_fight_count: int = 0
    shared_ips: list[str] = field(default_factory=list)


def vacuous_pass(rule_code: str, message: str = MISSING_PARTICIPANT_MESSAGE) -> ValidationResult:
    return ValidationResult(rule_code=rule_code, outcome=RuleOutcome.PASS, message=message)


def participant_notional(trades: list[TradeRecord], user_id: int) -> Decimal:
    return sum(
        (trade.notional for trade in trades if trade.participant_user_id == user_id),
        ZERO,
    )


def validate_zero_activity(snapshot: FightSnapshot, config: AntiCheatConfig) -> ValidationResult:
    pair = snapshot.pair()
    if pair is None:
        return vacuous_pass(RULE_ZERO_ZERO)
    participant_a, participant_b = pair

    threshold = config.zero_pnl_threshold_usdc
    pnl_a = to_decimal(participant_a.final_score_usdc, "final_score_usdc")
    pnl_b = to_decimal(participant_b.final_score_usdc, "final_score_usdc")
    trades_a = participant_a.trades_count or 0
    trades_b = participant_b.trades_count or 0

    no_trades = trades_a == 0 and trades_b == 0
    both_flat = abs(pnl_a) <= threshold and abs(pnl_b) <= threshold

    if no_trades or both_flat:
        if no_trades:
            message = "Both players made 0 trades - fight excluded"
        else:
            message = (
                f"Both players have near-zero PnL (A: ${float(pnl_a):.2f}, B: ${float(pnl_b):.2f})"
                " - fight excluded"
            )
        return ValidationResult(
            rule_code=RULE_ZERO_ZERO,
            outcome=RuleOutcome.FAIL,
            message=message,
            metadata={
                "pnlA": float(pnl_a),
                "pnlB": float(pnl_b),
                "tradesA": trades_a,
                "tradesB": trades_b,
                "threshold": float(threshold),
            },
        )

    return ValidationResult(
        rule_code=RULE_ZERO_ZERO,
        outcome=RuleOutcome.PASS,
        message="At least one player has meaningful activity",
    )


def validate_min_volume(snapshot: FightSnapshot, config: AntiCheatConfig) -> ValidationResult:
    pair = snapshot.pair()
    if pair is None:
        return vacuous_pass(RULE_MIN_VOLUME)
    participant_a, participant_b = pair

    min_notional = config.min_notional_per_player
    notional_a = participant_notional(snapshot.trades, participant_a.user_id)
    notional_b = participant_notional(snapshot.trades, participant_b.user_id)
    failed_user_ids = [
        participant.user_id
        for participant, notional in ((participant_a, notional_a), (participant_b, notional_b))
        if notional < min_notional
    ]

    if failed_user_ids:
        return ValidationResult(
            rule_code=RULE_MIN_VOLUME,
            outcome=RuleOutcome.FAIL,
            message=(
                f"Insufficient trading volume - A: ${float(notional_a):.2f}, B: ${float(notional_b):.2f}"
                f" (minimum: ${float(min_notional):.2f})"
            ),
            metadata={
                "notionalA": float(notional_a),
                "notionalB": float(notional_b),
                "minNotional": float(min_notional),
                "failedUserIds": failed_user_ids,
            },
        )

    return ValidationResult(
        rule_code=RULE_MIN_VOLUME,
        outcome=RuleOutcome.PASS,
        message=(
            f"Both players meet minimum volume (A: ${float(notional_a):.2f}, B: ${float(notional_b):.2f})"
        ),
    )


def validate_repeated_matchup(
    snapshot: FightSnapshot,
    history: FightHistory,
    config: AntiCheatConfig,
) -> ValidationResult:
    pair = snapshot.pair()
    if pair is None:
        return vacuous_pass(RULE_REPEATED_MATCHUP)
    participant_a, participant_b = pair

    # The fight under evaluation counts toward the cap.
    matchup_count = history.prior_matchup_count + 1
    window_hours = config.matchup_window_hours

    if matchup_count >= config.max_matchups:
        return ValidationResult(
            rule_code=RULE_REPEATED_MATCHUP,
            outcome=RuleOutcome.FAIL,
            message=(
                f"Users have fought {matchup_count} times in {window_hours:g}h (max: {config.max_matchups})"
            ),
            metadata={
                "userAId": participant_a.user_id,
                "userBId": participant_b.user_id,
                "matchupCount": matchup_count,
                "maxMatchups": config.max_matchups,
                "windowHours": window_hours,
            },
        )

    return ValidationResult(
        rule_code=RULE_REPEATED_MATCHUP,
        outcome=RuleOutcome.PASS,
        message=f"Matchup count OK ({matchup_count}/{config.max_matchups} in {window_hours:g}h)",
    )


def validate_same_ip_pattern(
    snapshot: FightSnapshot,
    history: FightHistory,
    config: AntiCheatConfig,
) -> ValidationResult:
    if not snapshot.sessions:
        return vacuous_pass(RULE_SAME_IP_PATTERN, "No session data available")
    pair = snapshot.pair()
    if pair is None:
        return vacuous_pass(RULE_SAME_IP_PATTERN)
    participant_a, participant_b = pair

    shared_ips = snapshot.shared_ips()
    if not shared_ips:
        return vacuous_pass(RULE_SAME_IP_PATTERN, "No IP overlap detected")

    prior_count = history.prior_shared_ip_fight_count
    metadata = {
        "sharedIps": shared_ips,
        "priorSameIpFights": prior_count,
        "sameIpMatchupCount": prior_count + 1,
        "threshold": config.ip_same_pair_threshold,
        "userAId": participant_a.user_id,
        "userBId": participant_b.user_id,
    }

    if prior_count >= config.ip_same_pair_threshold:
        return ValidationResult(
            rule_code=RULE_SAME_IP_PATTERN,
            outcome=RuleOutcome.FAIL,
            message=(
                f"Suspicious pattern: Same IP ({shared_ips[0]}) used by both players in {prior_count + 1} fights"
            ),
            metadata=metadata,
        )

    return ValidationResult(
        rule_code=RULE_SAME_IP_PATTERN,
        outcome=RuleOutcome.FLAG,
        message=f"Warning: Both players connected from same IP ({shared_ips[0]}) - flagged for review",
        metadata=metadata,
    )


def validate_external_trades(snapshot: FightSnapshot) -> ValidationResult:
    pair = snapshot.pair()
    if pair is None:
        return vacuous_pass(RULE_EXTERNAL_TRADES)

    violators = [p for p in pair if p.external_trades_detected]
    if violators:
        return ValidationResult(
            rule_code=RULE_EXTERNAL_TRADES,
            outcome=RuleOutcome.FAIL,
            message=f"External trades detected for {len(violators)} participant(s)",
            metadata={
                "violatorUserIds": [p.user_id for p in violators],
                "externalTradeIds": [trade_id for p in violators for trade_id in p.external_trade_ids],
            },
        )
    return ValidationResult(
        rule_code=RULE_EXTERNAL_TRADES,
        outcome=RuleOutcome.PASS,
        message="No external trades detected",
    )
