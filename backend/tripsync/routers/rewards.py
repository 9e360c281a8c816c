"""Reward balance, history, redemption and leaderboard.

Balances are only changed by RewardsService under the per-user ledger lock;
nothing here writes to the ledger tables directly.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import get_current_user
from ..envelope import ok
from ..locks import KeyedLockManager, get_lock_manager
from ..models import User
from ..schemas import LeaderboardEntry, RedeemRequest, RewardBalance, RewardTransactionOut
from ..services.rewards_service import RewardsService

router = APIRouter(prefix="/api/rewards", tags=["rewards"])


@router.get("/points")
def get_points(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    balance = RewardsService(db).get_balance(user.user_id)
    return ok(RewardBalance.model_validate(balance))


@router.get("/history")
def get_history(
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    entries = RewardsService(db).get_history(user.user_id, limit=limit)
    return ok([RewardTransactionOut.model_validate(e) for e in entries])


@router.post("/redeem")
def redeem(
    payload: RedeemRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    locks: KeyedLockManager = Depends(get_lock_manager),
):
    """Redeem points. Insufficient balance is a 409 with no partial debit."""
    balance, entry = RewardsService(db, locks=locks).redeem_points(
        user.user_id, payload.points, payload.description
    )
    return ok({
        "balance": RewardBalance.model_validate(balance),
        "transaction": RewardTransactionOut.model_validate(entry),
    })


@router.get("/leaderboard")
def leaderboard(
    limit: int = Query(default=10, ge=1, le=100),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    # Pseudonymous ranking: no user ids leave the server.
    rows = RewardsService(db).get_leaderboard(limit)
    return ok([LeaderboardEntry(**row) for row in rows])
