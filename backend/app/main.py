import hmac
import logging
import os
import re
from datetime import datetime
from decimal import Decimal

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import SessionLocal, get_db
from .exposure import ExposureResult, to_decimal
from .matchmaking import can_users_match
from .models import (
    FIGHT_CANCELLED,
    FIGHT_LIVE,
    FIGHT_WAITING,
    SETTLED_FIGHT_STATUSES,
    AntiCheatViolation,
    Fight,
    FightParticipant,
    FightSession,
    User,
)
from .queries import FightNotFound, get_active_participation, get_fight_or_raise
from .rules import UNKNOWN_IP, AntiCheatConfig, ValidationResult
from .schemas import (
    FightCreateIn,
    FightJoinIn,
    FightOut,
    FightTradeIn,
    FightTradeOut,
    MatchmakingCheckOut,
    OrderCheckIn,
    OrderCheckOut,
    ParticipantOut,
    ParticipantResultIn,
    PositionOut,
    SettleIn,
    SettlementOut,
    StakeInfoOut,
    UserCreateIn,
    UserOut,
    ValidationResultOut,
    ViolationOut,
)
from .seed import init_db, seed
from .settlement import apply_settlement_decision, settle_fight_with_anti_cheat
from .stake_limit import (
    StakeCheck,
    StakeLimitExceeded,
    calculate_available_capital,
    check_order,
    get_live_participant,
    get_stake_info,
    record_fight_trade,
)

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="TradeFight Integrity (Sandbox)")
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:3001").split(",")
    if origin.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

VALID_HANDLE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")
VALID_SYMBOL = re.compile(r"^[A-Z0-9][A-Z0-9_-]{0,31}$")
INTERNAL_API_KEY = os.environ.get("INTERNAL_API_KEY", "dev-internal-key")
ANTI_CHEAT_CONFIG = AntiCheatConfig.from_env()


@app.get("/")
def root():
    return {"ok": True, "service": "TradeFight Integrity API", "docs": "/docs", "health": "/healthz"}


@app.get("/healthz")
def healthz():
    return {"ok": True}


@app.on_event("startup")
def on_startup():
    init_db()
    db = SessionLocal()
    try:
        seed(db)
    finally:
        db.close()


def get_anti_cheat_config() -> AntiCheatConfig:
    return ANTI_CHEAT_CONFIG


def require_internal_key(
    x_internal_key: str | None = Header(default=None, alias="X-Internal-Key"),
) -> None:
    if not x_internal_key or not hmac.compare_digest(x_internal_key, INTERNAL_API_KEY):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def extract_ip_address(request: Request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        # Comma-separated proxy chain; the first entry is the client.
        return forwarded_for.split(",")[0].strip() or UNKNOWN_IP
    cf_connecting_ip = request.headers.get("cf-connecting-ip")
    if cf_connecting_ip:
        return cf_connecting_ip.strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return UNKNOWN_IP


def record_fight_session(
    db: Session,
    request: Request,
    fight_id: int,
    user_id: int,
    session_type: str,
) -> FightSession:
    session = FightSession(
        fight_id=fight_id,
        user_id=user_id,
        ip_address=extract_ip_address(request),
        user_agent=request.headers.get("user-agent"),
        session_type=session_type,
    )
    db.add(session)
    return session


def normalize_handle(raw_handle: str | None) -> str:
    handle = (raw_handle or "").strip().lower()
    if not VALID_HANDLE.fullmatch(handle):
        raise HTTPException(
            400,
            "Handle must be 1-64 chars and use only lowercase letters, numbers, '_' or '-'.",
        )
    return handle


def normalize_symbol(raw_symbol: str) -> str:
    symbol = raw_symbol.strip().upper()
    if not VALID_SYMBOL.fullmatch(symbol):
        raise HTTPException(400, f"Invalid symbol '{raw_symbol}'.")
    return symbol


def get_user_by_id_or_raise(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail=f"User {user_id} not found.")
    return user


def get_fight_or_404(db: Session, fight_id: int, for_update: bool = False) -> Fight:
    try:
        return get_fight_or_raise(db, fight_id, for_update=for_update)
    except FightNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


def get_participant_or_raise(db: Session, fight_id: int, user_id: int) -> FightParticipant:
    participant = db.execute(
        select(FightParticipant).where(
            FightParticipant.fight_id == fight_id,
            FightParticipant.user_id == user_id,
        )
    ).scalar_one_or_none()
    if not participant:
        raise HTTPException(404, f"User {user_id} is not a participant of fight {fight_id}.")
    return participant


def ensure_no_active_fight_or_raise(db: Session, user_id: int) -> None:
    active = get_active_participation(db, user_id)
    if active is not None:
        label = "active" if active.status == FIGHT_LIVE else "pending"
        raise HTTPException(
            409,
            {
                "message": f"User {user_id} already has a {label} fight ({active.id}). Finish or cancel it first.",
                "code": "ERR_FIGHT_USER_HAS_ACTIVE",
                "fight_id": active.id,
            },
        )


def stake_check_to_out(check: StakeCheck) -> StakeInfoOut:
    if not check.in_fight:
        return StakeInfoOut(in_fight=False)
    return StakeInfoOut(
        in_fight=True,
        fight_id=check.fight_id,
        stake=float(check.stake),
        max_exposure_used=float(check.max_exposure_used),
        current_exposure=float(check.current_exposure),
        cumulative_opening_notional=float(check.cumulative_opening_notional),
        available=float(check.available),
    )


def positions_to_out(exposure: ExposureResult) -> list[PositionOut]:
    return [
        PositionOut(
            symbol=symbol,
            amount=float(position.amount),
            total_notional=float(position.total_notional),
            avg_entry_price=float(position.avg_entry_price),
        )
        for symbol, position in sorted(exposure.positions_by_symbol.items())
        if position.is_open
    ]


def validation_result_to_out(result: ValidationResult) -> ValidationResultOut:
    return ValidationResultOut(
        rule_code=result.rule_code,
        rule_name=result.rule_name,
        outcome=result.outcome.value,
        passed=result.passed,
        message=result.message,
        metadata=result.metadata,
    )


def fight_to_out(db: Session, fight: Fight) -> FightOut:
    rows = db.execute(
        select(FightParticipant, User.handle)
        .join(User, User.id == FightParticipant.user_id)
        .where(FightParticipant.fight_id == fight.id)
        .order_by(FightParticipant.slot.asc())
    ).all()
    return FightOut(
        id=fight.id,
        status=fight.status,
        creator_id=fight.creator_id,
        stake_usdc=float(fight.stake_usdc),
        duration_minutes=fight.duration_minutes,
        winner_id=fight.winner_id,
        is_draw=bool(fight.is_draw),
        created_at=fight.created_at,
        started_at=fight.started_at,
        ended_at=fight.ended_at,
        participants=[
            ParticipantOut(
                user_id=participant.user_id,
                handle=handle,
                slot=participant.slot,
                max_exposure_used=float(participant.max_exposure_used or 0),
                trades_count=int(participant.trades_count or 0),
                final_score_usdc=(
                    float(participant.final_score_usdc) if participant.final_score_usdc is not None else None
                ),
                external_trades_detected=bool(participant.external_trades_detected),
            )
            for participant, handle in rows
        ],
    )


@app.post("/users", response_model=UserOut)
def create_user(payload: UserCreateIn, db: Session = Depends(get_db)):
    handle = normalize_handle(payload.handle)
    user = User(handle=handle)
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(409, f"Handle '{handle}' is already taken.")
    db.refresh(user)
    return UserOut(id=user.id, handle=user.handle)


@app.post("/fights", response_model=FightOut)
def create_fight(payload: FightCreateIn, request: Request, db: Session = Depends(get_db)):
    creator = get_user_by_id_or_raise(db, payload.creator_id)
    ensure_no_active_fight_or_raise(db, creator.id)
    fight = Fight(
        creator_id=creator.id,
        status=FIGHT_WAITING,
        stake_usdc=Decimal(str(payload.stake_usdc)),
        duration_minutes=payload.duration_minutes,
    )
    db.add(fight)
    db.flush()
    db.add(FightParticipant(fight_id=fight.id, user_id=creator.id, slot="A"))
    record_fight_session(db, request, fight.id, creator.id, "join")
    db.commit()
    db.refresh(fight)
    return fight_to_out(db, fight)


@app.post("/fights/{fight_id}/join", response_model=FightOut)
def join_fight(
    fight_id: int,
    payload: FightJoinIn,
    request: Request,
    db: Session = Depends(get_db),
    config: AntiCheatConfig = Depends(get_anti_cheat_config),
):
    fight = get_fight_or_404(db, fight_id, for_update=True)
    if fight.status != FIGHT_WAITING:
        raise HTTPException(409, f"Fight {fight_id} is {fight.status}, not open for joining.")
    user = get_user_by_id_or_raise(db, payload.user_id)
    if user.id == fight.creator_id:
        raise HTTPException(400, "You cannot join your own fight.")
    ensure_no_active_fight_or_raise(db, user.id)

    check = can_users_match(db, fight.creator_id, user.id, config)
    if not check.can_match:
        raise HTTPException(
            409,
            {"message": check.reason, "matchup_count": check.matchup_count},
        )

    db.add(FightParticipant(fight_id=fight.id, user_id=user.id, slot="B"))
    fight.status = FIGHT_LIVE
    fight.started_at = datetime.utcnow()
    record_fight_session(db, request, fight.id, user.id, "join")
    db.commit()
    db.refresh(fight)
    logger.info("Fight %s is LIVE (%s vs %s)", fight.id, fight.creator_id, user.id)
    return fight_to_out(db, fight)


@app.get("/fights/{fight_id}", response_model=FightOut)
def get_fight(fight_id: int, db: Session = Depends(get_db)):
    return fight_to_out(db, get_fight_or_404(db, fight_id))


@app.get("/fights/{fight_id}/stake-info", response_model=StakeInfoOut)
def stake_info(
    fight_id: int,
    user_id: int = Query(...),
    db: Session = Depends(get_db),
):
    get_fight_or_404(db, fight_id)
    return stake_check_to_out(get_stake_info(db, fight_id, user_id))


@app.post("/fights/{fight_id}/orders/check", response_model=OrderCheckOut)
def order_check(fight_id: int, payload: OrderCheckIn, db: Session = Depends(get_db)):
    get_fight_or_404(db, fight_id)
    normalize_symbol(payload.symbol)
    order_notional = Decimal(str(payload.amount)) * Decimal(str(payload.price))
    try:
        check = check_order(
            db,
            fight_id=fight_id,
            user_id=payload.user_id,
            order_notional=order_notional,
            reduce_only=payload.reduce_only,
        )
    except StakeLimitExceeded as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(exc), "code": exc.code, "details": exc.details},
        )
    return OrderCheckOut(
        allowed=True,
        order_notional=float(order_notional),
        stake_info=stake_check_to_out(check),
    )


@app.post("/fights/{fight_id}/trades", response_model=FightTradeOut)
def record_trade(
    fight_id: int,
    payload: FightTradeIn,
    request: Request,
    db: Session = Depends(get_db),
):
    get_fight_or_404(db, fight_id, for_update=True)
    live = get_live_participant(db, fight_id, payload.user_id)
    if live is None:
        raise HTTPException(409, f"User {payload.user_id} is not in LIVE fight {fight_id}.")
    fight, participant = live

    trade, exposure = record_fight_trade(
        db,
        fight=fight,
        participant=participant,
        symbol=normalize_symbol(payload.symbol),
        side=payload.side,
        amount=Decimal(str(payload.amount)),
        price=Decimal(str(payload.price)),
        fee=Decimal(str(payload.fee)),
        executed_at=payload.executed_at,
    )
    record_fight_session(db, request, fight.id, participant.user_id, "trade")
    db.commit()
    db.refresh(participant)

    stake = to_decimal(fight.stake_usdc, "stake_usdc")
    max_used = to_decimal(participant.max_exposure_used, "max_exposure_used")
    return FightTradeOut(
        trade_id=trade.id,
        trades_count=int(participant.trades_count),
        current_exposure=float(exposure.current_exposure),
        cumulative_opening_notional=float(exposure.cumulative_opening_notional),
        max_exposure_used=float(max_used),
        available=float(calculate_available_capital(stake, max_used, exposure.current_exposure)),
        positions=positions_to_out(exposure),
    )


@app.patch(
    "/internal/fights/{fight_id}/participants/{user_id}",
    response_model=FightOut,
    dependencies=[Depends(require_internal_key)],
)
def update_participant_result(
    fight_id: int,
    user_id: int,
    payload: ParticipantResultIn,
    db: Session = Depends(get_db),
):
    fight = get_fight_or_404(db, fight_id)
    participant = get_participant_or_raise(db, fight_id, user_id)
    if payload.final_score_usdc is not None:
        participant.final_score_usdc = Decimal(str(payload.final_score_usdc))
    if payload.external_trades_detected is not None:
        participant.external_trades_detected = payload.external_trades_detected
    if payload.external_trade_ids is not None:
        participant.external_trade_ids = list(payload.external_trade_ids)
    db.commit()
    return fight_to_out(db, fight)


@app.post(
    "/internal/fights/{fight_id}/settle",
    response_model=SettlementOut,
    dependencies=[Depends(require_internal_key)],
)
def settle_fight(
    fight_id: int,
    payload: SettleIn,
    db: Session = Depends(get_db),
    config: AntiCheatConfig = Depends(get_anti_cheat_config),
):
    fight = get_fight_or_404(db, fight_id, for_update=True)
    if fight.status in SETTLED_FIGHT_STATUSES:
        raise HTTPException(409, f"Fight {fight_id} is already settled as {fight.status}.")
    if fight.status in (FIGHT_WAITING, FIGHT_CANCELLED):
        raise HTTPException(409, f"Fight {fight_id} is {fight.status} and cannot be settled.")
    if payload.determined_winner_id is not None:
        get_participant_or_raise(db, fight_id, payload.determined_winner_id)

    decision = settle_fight_with_anti_cheat(
        db,
        fight_id=fight_id,
        determined_winner_id=payload.determined_winner_id,
        is_draw=payload.is_draw,
        config=config,
    )
    apply_settlement_decision(fight, decision)
    db.commit()

    return SettlementOut(
        fight_id=fight_id,
        final_status=decision.final_status,
        winner_id=decision.winner_id,
        is_draw=decision.is_draw,
        violations=[validation_result_to_out(v) for v in decision.violations],
        flags=[validation_result_to_out(f) for f in decision.flags],
    )


@app.get("/matchmaking/check", response_model=MatchmakingCheckOut)
def matchmaking_check(
    user_a: int = Query(...),
    user_b: int = Query(...),
    db: Session = Depends(get_db),
    config: AntiCheatConfig = Depends(get_anti_cheat_config),
):
    check = can_users_match(db, user_a, user_b, config)
    return MatchmakingCheckOut(
        can_match=check.can_match,
        reason=check.reason,
        matchup_count=check.matchup_count,
    )


@app.get(
    "/admin/anti-cheat/violations",
    response_model=list[ViolationOut],
    dependencies=[Depends(require_internal_key)],
)
def list_violations(
    fight_id: int | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    stmt = select(AntiCheatViolation).order_by(AntiCheatViolation.created_at.desc(), AntiCheatViolation.id.desc())
    if fight_id is not None:
        stmt = stmt.where(AntiCheatViolation.fight_id == fight_id)
    rows = db.execute(stmt.limit(limit)).scalars().all()
    return [
        ViolationOut(
            id=row.id,
            fight_id=row.fight_id,
            rule_code=row.rule_code,
            rule_name=row.rule_name,
            rule_message=row.rule_message,
            details=row.details or {},
            action_taken=row.action_taken,
            created_at=row.created_at,
        )
        for row in rows
    ]
