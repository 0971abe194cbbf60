from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.models import (
    FIGHT_FINISHED,
    FIGHT_LIVE,
    FIGHT_NO_CONTEST,
    AntiCheatViolation,
)
from app.queries import FightNotFound
from app.rules import (
    RULE_EXTERNAL_TRADES,
    RULE_MIN_VOLUME,
    RULE_REPEATED_MATCHUP,
    RULE_SAME_IP_PATTERN,
    RULE_ZERO_ZERO,
    AntiCheatConfig,
    RuleOutcome,
)
from app.settlement import (
    ACTION_FLAGGED,
    ACTION_NO_CONTEST,
    apply_settlement_decision,
    settle_fight_with_anti_cheat,
    validate_fight_for_settlement,
)

CONFIG = AntiCheatConfig()


def active_fight(factory, alice, bob, ip_a="10.0.0.1", ip_b="10.0.0.2"):
    """A live fight where both players traded enough to count."""
    fight = factory.fight(alice, bob, stake="100", score_a="12", score_b="-3")
    factory.trade(fight, alice, "BUY", "0.001", "50000", minutes_in=1)
    factory.trade(fight, alice, "SELL", "0.001", "51000", minutes_in=2)
    factory.trade(fight, bob, "BUY", "0.5", "100", minutes_in=1)
    factory.session(fight, alice, ip_a)
    factory.session(fight, bob, ip_b)
    return fight


def audit_rows(db, fight_id):
    return db.execute(
        select(AntiCheatViolation)
        .where(AntiCheatViolation.fight_id == fight_id)
        .order_by(AntiCheatViolation.id.asc())
    ).scalars().all()


def test_clean_fight_keeps_the_determined_winner(db, factory):
    alice = factory.user("alice")
    bob = factory.user("bob")
    fight = active_fight(factory, alice, bob)

    decision = settle_fight_with_anti_cheat(db, fight.id, alice.id, False, CONFIG)

    assert decision.final_status == FIGHT_FINISHED
    assert decision.winner_id == alice.id
    assert decision.is_draw is False
    assert decision.violations == []
    assert decision.flags == []
    assert audit_rows(db, fight.id) == []


def test_all_rules_run_for_a_clean_fight(db, factory):
    alice = factory.user("alice")
    bob = factory.user("bob")
    fight = active_fight(factory, alice, bob)

    validation = validate_fight_for_settlement(db, fight.id, CONFIG)

    assert validation.is_valid
    assert validation.should_count_for_ranking
    assert validation.recommended_status == FIGHT_FINISHED
    assert [r.rule_code for r in validation.all_checks] == [
        RULE_ZERO_ZERO,
        RULE_MIN_VOLUME,
        RULE_REPEATED_MATCHUP,
        RULE_SAME_IP_PATTERN,
        RULE_EXTERNAL_TRADES,
    ]


def test_zero_zero_fight_becomes_no_contest(db, factory):
    alice = factory.user("alice")
    bob = factory.user("bob")
    fight = factory.fight(alice, bob, score_a="0", score_b="0")

    decision = settle_fight_with_anti_cheat(db, fight.id, alice.id, False, CONFIG)

    assert decision.final_status == FIGHT_NO_CONTEST
    assert decision.winner_id is None
    assert decision.is_draw is False
    codes = {v.rule_code for v in decision.violations}
    assert {RULE_ZERO_ZERO, RULE_MIN_VOLUME} <= codes

    rows = audit_rows(db, fight.id)
    assert {row.rule_code for row in rows} == codes
    assert all(row.action_taken == ACTION_NO_CONTEST for row in rows)


def test_draw_is_cleared_when_fight_is_excluded(db, factory):
    alice = factory.user("alice")
    bob = factory.user("bob")
    fight = factory.fight(alice, bob, score_a="0", score_b="0")

    decision = settle_fight_with_anti_cheat(db, fight.id, None, True, CONFIG)
    assert decision.final_status == FIGHT_NO_CONTEST
    assert decision.is_draw is False


def test_third_fight_of_a_pair_in_window_is_no_contest(db, factory):
    alice = factory.user("alice")
    bob = factory.user("bob")
    factory.fight(alice, bob, status=FIGHT_FINISHED, started_hours_ago=3)
    factory.fight(bob, alice, status=FIGHT_NO_CONTEST, started_hours_ago=2)
    fight = active_fight(factory, alice, bob)

    decision = settle_fight_with_anti_cheat(db, fight.id, alice.id, False, CONFIG)

    assert decision.final_status == FIGHT_NO_CONTEST
    assert [v.rule_code for v in decision.violations] == [RULE_REPEATED_MATCHUP]
    assert decision.violations[0].metadata["matchupCount"] == 3


def test_old_and_unsettled_fights_do_not_count_toward_matchups(db, factory):
    alice = factory.user("alice")
    bob = factory.user("bob")
    factory.fight(alice, bob, status=FIGHT_FINISHED, started_hours_ago=30)
    factory.fight(alice, bob, status=FIGHT_LIVE, started_hours_ago=2)
    fight = active_fight(factory, alice, bob)

    decision = settle_fight_with_anti_cheat(db, fight.id, alice.id, False, CONFIG)
    assert decision.final_status == FIGHT_FINISHED


def test_first_shared_ip_is_flagged_but_counts(db, factory):
    alice = factory.user("alice")
    bob = factory.user("bob")
    fight = active_fight(factory, alice, bob, ip_a="203.0.113.7", ip_b="203.0.113.7")

    decision = settle_fight_with_anti_cheat(db, fight.id, alice.id, False, CONFIG)

    assert decision.final_status == FIGHT_FINISHED
    assert decision.winner_id == alice.id
    assert decision.violations == []
    assert [f.rule_code for f in decision.flags] == [RULE_SAME_IP_PATTERN]
    assert decision.flags[0].outcome is RuleOutcome.FLAG

    rows = audit_rows(db, fight.id)
    assert len(rows) == 1
    assert rows[0].rule_code == RULE_SAME_IP_PATTERN
    assert rows[0].action_taken == ACTION_FLAGGED
    assert rows[0].details["sharedIps"] == ["203.0.113.7"]


def test_repeated_shared_ip_fails_the_fight(db, factory):
    alice = factory.user("alice")
    bob = factory.user("bob")
    shared = "203.0.113.7"
    for hours in (3, 2):
        prior = factory.fight(alice, bob, status=FIGHT_FINISHED, started_hours_ago=hours)
        factory.session(prior, alice, shared)
        factory.session(prior, bob, shared)
    fight = active_fight(factory, alice, bob, ip_a=shared, ip_b=shared)

    relaxed = AntiCheatConfig(max_matchups=10)
    decision = settle_fight_with_anti_cheat(db, fight.id, alice.id, False, relaxed)

    assert decision.final_status == FIGHT_NO_CONTEST
    assert [v.rule_code for v in decision.violations] == [RULE_SAME_IP_PATTERN]
    assert decision.violations[0].metadata["priorSameIpFights"] == 2
    assert audit_rows(db, fight.id)[0].action_taken == ACTION_NO_CONTEST


def test_shared_ip_in_unsettled_fights_is_not_history(db, factory):
    alice = factory.user("alice")
    bob = factory.user("bob")
    shared = "203.0.113.7"
    for _ in range(3):
        other = factory.fight(alice, bob, status=FIGHT_LIVE)
        factory.session(other, alice, shared)
        factory.session(other, bob, shared)
    fight = active_fight(factory, alice, bob, ip_a=shared, ip_b=shared)

    decision = settle_fight_with_anti_cheat(db, fight.id, alice.id, False, CONFIG)
    assert decision.final_status == FIGHT_FINISHED
    assert decision.flags[0].metadata["priorSameIpFights"] == 0


def test_external_trades_are_recorded_without_excluding(db, factory):
    alice = factory.user("alice")
    bob = factory.user("bob")
    fight = active_fight(factory, alice, bob)
    participant = factory.participant(fight, bob)
    participant.external_trades_detected = True
    participant.external_trade_ids = ["hl-991"]
    db.flush()

    decision = settle_fight_with_anti_cheat(db, fight.id, alice.id, False, CONFIG)

    assert decision.final_status == FIGHT_FINISHED
    assert decision.winner_id == alice.id
    assert [v.rule_code for v in decision.violations] == [RULE_EXTERNAL_TRADES]

    rows = audit_rows(db, fight.id)
    assert [(r.rule_code, r.action_taken) for r in rows] == [(RULE_EXTERNAL_TRADES, ACTION_FLAGGED)]
    assert rows[0].details["violatorUserIds"] == [bob.id]


def test_fight_missing_an_opponent_passes_every_rule(db, factory):
    alice = factory.user("alice")
    fight = factory.fight(alice, None)

    validation = validate_fight_for_settlement(db, fight.id, CONFIG)
    assert validation.is_valid
    assert all(r.outcome is RuleOutcome.PASS for r in validation.all_checks)


def test_unknown_fight_raises(db):
    with pytest.raises(FightNotFound):
        settle_fight_with_anti_cheat(db, 9999, None, False, CONFIG)


def test_apply_settlement_decision_updates_the_fight(db, factory):
    alice = factory.user("alice")
    bob = factory.user("bob")
    fight = active_fight(factory, alice, bob)
    decision = settle_fight_with_anti_cheat(db, fight.id, bob.id, False, CONFIG)

    ended = datetime(2026, 1, 1, 12, 0)
    apply_settlement_decision(fight, decision, now=ended)

    assert fight.status == FIGHT_FINISHED
    assert fight.winner_id == bob.id
    assert fight.is_draw is False
    assert fight.ended_at == ended


def test_settlement_does_not_mutate_stake_state(db, factory):
    alice = factory.user("alice")
    bob = factory.user("bob")
    fight = active_fight(factory, alice, bob)
    participant = factory.participant(fight, alice)
    participant.max_exposure_used = Decimal("51")
    db.flush()

    settle_fight_with_anti_cheat(db, fight.id, alice.id, False, CONFIG)
    db.expire_all()
    assert Decimal(str(factory.participant(fight, alice).max_exposure_used)) == Decimal("51")
    assert factory.participant(fight, alice).trades_count == 2


def test_excluded_fight_tags_every_audit_row_no_contest(db, factory):
    alice = factory.user("alice")
    bob = factory.user("bob")
    fight = factory.fight(alice, bob, score_a="0", score_b="0")
    participant = factory.participant(fight, bob)
    participant.external_trades_detected = True
    participant.external_trade_ids = ["hl-7"]
    db.flush()

    decision = settle_fight_with_anti_cheat(db, fight.id, alice.id, False, CONFIG)

    assert decision.final_status == FIGHT_NO_CONTEST
    rows = audit_rows(db, fight.id)
    assert RULE_EXTERNAL_TRADES in {row.rule_code for row in rows}
    assert all(row.action_taken == ACTION_NO_CONTEST for row in rows)


def test_counted_fight_tags_every_audit_row_flagged(db, factory):
    alice = factory.user("alice")
    bob = factory.user("bob")
    fight = active_fight(factory, alice, bob, ip_a="203.0.113.7", ip_b="203.0.113.7")
    participant = factory.participant(fight, alice)
    participant.external_trades_detected = True
    db.flush()

    decision = settle_fight_with_anti_cheat(db, fight.id, alice.id, False, CONFIG)

    assert decision.final_status == FIGHT_FINISHED
    rows = audit_rows(db, fight.id)
    assert {row.rule_code for row in rows} == {RULE_EXTERNAL_TRADES, RULE_SAME_IP_PATTERN}
    assert all(row.action_taken == ACTION_FLAGGED for row in rows)
