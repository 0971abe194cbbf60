from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.orm import Session

from .models import FIGHT_FINISHED, FIGHT_NO_CONTEST, AntiCheatViolation, Fight
from .queries import load_fight_history, load_fight_snapshot
from .rules import (
    RULE_MIN_VOLUME,
    RULE_REPEATED_MATCHUP,
    RULE_SAME_IP_PATTERN,
    RULE_ZERO_ZERO,
    AntiCheatConfig,
    FightHistory,
    FightSnapshot,
    RuleOutcome,
    ValidationResult,
    validate_external_trades,
    validate_min_volume,
    validate_repeated_matchup,
    validate_same_ip_pattern,
    validate_zero_activity,
)

logger = logging.getLogger(__name__)

ACTION_NO_CONTEST = "NO_CONTEST"
ACTION_FLAGGED = "FLAGGED"

EXCLUDING_RULES = frozenset({RULE_ZERO_ZERO, RULE_MIN_VOLUME, RULE_REPEATED_MATCHUP, RULE_SAME_IP_PATTERN})


@dataclass
class FightValidationResult:
    is_valid: bool
    should_count_for_ranking: bool
    recommended_status: str
    violations: list[ValidationResult]
    flags: list[ValidationResult]
    all_checks: list[ValidationResult]
    excluding: list[ValidationResult] = field(default_factory=list)


@dataclass
class SettlementDecision:
    final_status: str
    winner_id: int | None
    is_draw: bool
    violations: list[ValidationResult]
    flags: list[ValidationResult] = field(default_factory=list)


def is_excluding(result: ValidationResult) -> bool:
    # EXTERNAL_TRADES failures and Same-IP warnings are review signals only.
    return result.outcome is RuleOutcome.FAIL and result.rule_code in EXCLUDING_RULES


def run_rules(
    snapshot: FightSnapshot,
    history: FightHistory,
    config: AntiCheatConfig,
) -> list[ValidationResult]:
    evaluators = (
        lambda: validate_zero_activity(snapshot, config),
        lambda: validate_min_volume(snapshot, config),
        lambda: validate_repeated_matchup(snapshot, history, config),
        lambda: validate_same_ip_pattern(snapshot, history, config),
        lambda: validate_external_trades(snapshot),
    )
    with ThreadPoolExecutor(max_workers=len(evaluators), thread_name_prefix="fight-rules") as pool:
        futures = [pool.submit(evaluator) for evaluator in evaluators]
        return [future.result() for future in futures]


def validate_fight(
    snapshot: FightSnapshot,
    history: FightHistory,
    config: AntiCheatConfig,
) -> FightValidationResult:
    results = run_rules(snapshot, history, config)
    violations = [r for r in results if r.outcome is RuleOutcome.FAIL]
    flags = [r for r in results if r.outcome is RuleOutcome.FLAG]
    excluding = [r for r in violations if is_excluding(r)]

    return FightValidationResult(
        is_valid=not violations,
        should_count_for_ranking=not excluding,
        recommended_status=FIGHT_NO_CONTEST if excluding else FIGHT_FINISHED,
        violations=violations,
        flags=flags,
        all_checks=results,
        excluding=excluding,
    )


def validate_fight_for_settlement(
    db: Session,
    fight_id: int,
    config: AntiCheatConfig,
    now: datetime | None = None,
) -> FightValidationResult:
    snapshot = load_fight_snapshot(db, fight_id)
    history = load_fight_history(db, snapshot, config, now)
    return validate_fight(snapshot, history, config)


def decide_settlement(
    validation: FightValidationResult,
    determined_winner_id: int | None,
    is_draw: bool,
) -> SettlementDecision:
    if not validation.should_count_for_ranking:
        return SettlementDecision(
            final_status=FIGHT_NO_CONTEST,
            winner_id=None,
            is_draw=False,
            violations=validation.violations,
            flags=validation.flags,
        )
    return SettlementDecision(
        final_status=FIGHT_FINISHED,
        winner_id=determined_winner_id,
        is_draw=is_draw,
        violations=validation.violations,
        flags=validation.flags,
    )


def record_violation(
    db: Session,
    fight_id: int,
    violation: ValidationResult,
    action_taken: str,
) -> AntiCheatViolation:
    row = AntiCheatViolation(
        fight_id=fight_id,
        rule_code=violation.rule_code,
        rule_name=violation.rule_name,
        rule_message=violation.message,
        details=dict(violation.metadata),
        action_taken=action_taken,
    )
    db.add(row)
    return row


def settle_fight_with_anti_cheat(
    db: Session,
    fight_id: int,
    determined_winner_id: int | None,
    is_draw: bool,
    config: AntiCheatConfig,
    now: datetime | None = None,
) -> SettlementDecision:
    validation = validate_fight_for_settlement(db, fight_id, config, now)

    # Every audit row carries the fight-level outcome. Same-IP warnings are kept for review too.
    action = ACTION_FLAGGED if validation.should_count_for_ranking else ACTION_NO_CONTEST
    for result in [*validation.violations, *validation.flags]:
        record_violation(db, fight_id, result, action)
        logger.warning("Fight %s %s [%s]: %s", fight_id, result.rule_code, action, result.message)
    db.flush()

    decision = decide_settlement(validation, determined_winner_id, is_draw)
    logger.info(
        "Fight %s settled as %s (winner=%s, draw=%s, violations=%d, flags=%d)",
        fight_id,
        decision.final_status,
        decision.winner_id,
        decision.is_draw,
        len(decision.violations),
        len(decision.flags),
    )
    return decision


def apply_settlement_decision(
    fight: Fight,
    decision: SettlementDecision,
    now: datetime | None = None,
) -> None:
    fight.status = decision.final_status
    fight.winner_id = decision.winner_id
    fight.is_draw = decision.is_draw
    if fight.ended_at is None:
        fight.ended_at = now or datetime.utcnow()
