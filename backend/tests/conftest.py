import os
import tempfile
from datetime import datetime, timedelta
from decimal import Decimal

# Point the app at a throwaway SQLite file before anything imports app.db.
_DB_DIR = tempfile.mkdtemp(prefix="tradefight-tests-")
os.environ["DATABASE_URL"] = f"sqlite+pysqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["INTERNAL_API_KEY"] = "test-internal-key"

import pytest

from app import models  # noqa: F401  (registers tables on Base.metadata)
from app.db import Base, SessionLocal, engine
from app.models import (
    FIGHT_FINISHED,
    FIGHT_LIVE,
    Fight,
    FightParticipant,
    FightSession,
    FightTrade,
    User,
)


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


class FightFactory:
    """Builds users, fights, fills and sessions directly in the test database."""

    def __init__(self, db):
        self.db = db
        self._handles = 0

    def user(self, handle: str | None = None) -> User:
        self._handles += 1
        user = User(handle=handle or f"trader-{self._handles}")
        self.db.add(user)
        self.db.flush()
        return user

    def fight(
        self,
        user_a: User,
        user_b: User | None,
        status: str = FIGHT_LIVE,
        stake: str = "100",
        started_hours_ago: float = 1.0,
        score_a: str | None = None,
        score_b: str | None = None,
    ) -> Fight:
        started_at = datetime.utcnow() - timedelta(hours=started_hours_ago)
        fight = Fight(
            creator_id=user_a.id,
            status=status,
            stake_usdc=Decimal(stake),
            duration_minutes=5,
            started_at=started_at,
            ended_at=started_at + timedelta(minutes=5) if status == FIGHT_FINISHED else None,
        )
        self.db.add(fight)
        self.db.flush()
        self.db.add(
            FightParticipant(
                fight_id=fight.id,
                user_id=user_a.id,
                slot="A",
                max_exposure_used=Decimal("0"),
                trades_count=0,
                final_score_usdc=Decimal(score_a) if score_a is not None else None,
            )
        )
        if user_b is not None:
            self.db.add(
                FightParticipant(
                    fight_id=fight.id,
                    user_id=user_b.id,
                    slot="B",
                    max_exposure_used=Decimal("0"),
                    trades_count=0,
                    final_score_usdc=Decimal(score_b) if score_b is not None else None,
                )
            )
        self.db.flush()
        return fight

    def participant(self, fight: Fight, user: User) -> FightParticipant:
        return next(p for p in fight.participants if p.user_id == user.id)

    def trade(
        self,
        fight: Fight,
        user: User,
        side: str,
        amount: str,
        price: str,
        symbol: str = "BTC-USD",
        minutes_in: float = 1.0,
        bump_count: bool = True,
    ) -> FightTrade:
        base = fight.started_at or datetime.utcnow()
        trade = FightTrade(
            fight_id=fight.id,
            participant_user_id=user.id,
            symbol=symbol,
            side=side,
            amount=Decimal(amount),
            price=Decimal(price),
            executed_at=base + timedelta(minutes=minutes_in),
        )
        self.db.add(trade)
        if bump_count:
            participant = self.participant(fight, user)
            participant.trades_count = int(participant.trades_count or 0) + 1
        self.db.flush()
        return trade

    def session(self, fight: Fight, user: User, ip: str, session_type: str = "join") -> FightSession:
        row = FightSession(
            fight_id=fight.id,
            user_id=user.id,
            ip_address=ip,
            user_agent="pytest",
            session_type=session_type,
        )
        self.db.add(row)
        self.db.flush()
        return row


@pytest.fixture
def factory(db):
    return FightFactory(db)
