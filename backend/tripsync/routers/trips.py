"""Trip sync, correction and read endpoints.

Handlers stay thin: batch verification, reconciliation, chain folding and
ledger credits all happen in ReconciliationService. Per-trip failures come
back inside a successful envelope (`failed_trips`); only whole-request
problems (auth, oversized batch, rate limit) become error envelopes.
"""

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import Settings, get_current_user, get_settings
from ..envelope import ok
from ..errors import RateLimited
from ..locks import KeyedLockManager, get_lock_manager
from ..models import User
from ..rate_limiter import SyncRateLimiter, get_rate_limiter
from ..schemas import BulkSyncRequest, TripChainOut, TripConfirmRequest, TripListResponse, TripOut, TripStats
from ..services.chain_service import ChainService
from ..services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/trips", tags=["trips"])


def _service(db: Session, locks: KeyedLockManager, settings: Settings) -> ReconciliationService:
    return ReconciliationService(db, locks=locks, max_batch_size=settings.MAX_SYNC_BATCH_SIZE)


@router.post("/bulk")
def sync_trips(
    payload: BulkSyncRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    locks: KeyedLockManager = Depends(get_lock_manager),
    limiter: SyncRateLimiter = Depends(get_rate_limiter),
    settings: Settings = Depends(get_settings),
):
    """Sync a batch of encrypted, signed trips. Safe to retry as a whole."""
    if not limiter.allow(user.user_id):
        raise RateLimited("Too many sync requests; retry this batch later")
    result = _service(db, locks, settings).sync_batch(user, payload)
    return ok(result)


@router.post("/confirm")
def confirm_trip(
    payload: TripConfirmRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    locks: KeyedLockManager = Depends(get_lock_manager),
    settings: Settings = Depends(get_settings),
):
    """Apply user corrections (travel_mode, trip_purpose, notes, is_private)."""
    trip = _service(db, locks, settings).correct_trip(user.user_id, payload)
    return ok(TripOut.model_validate(trip))


@router.get("")
def list_trips(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    locks: KeyedLockManager = Depends(get_lock_manager),
    settings: Settings = Depends(get_settings),
):
    trips, total = _service(db, locks, settings).list_trips(user.user_id, limit=limit, offset=offset)
    return ok(TripListResponse(trips=[TripOut.model_validate(t) for t in trips], total=total))


@router.get("/stats")
def trip_stats(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    locks: KeyedLockManager = Depends(get_lock_manager),
    settings: Settings = Depends(get_settings),
):
    stats = _service(db, locks, settings).trip_stats(user.user_id)
    return ok(TripStats(**stats))


@router.get("/chains")
def list_chains(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    chains = ChainService(db).list_chains(user.user_id, limit=limit, offset=offset)
    return ok([TripChainOut.model_validate(c) for c in chains])
