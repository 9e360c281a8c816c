"""Admin endpoints: anonymization jobs, manual trip verification, stats.

SECURITY: every route requires the X-Admin-Key header (ADMIN_API_KEY).

Anonymization jobs are created here and processed by the ARQ worker. If the
job cannot be enqueued it is failed immediately: a queued job nobody will
ever pick up would look like progress to pollers.
"""

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import require_admin
from ..envelope import ok
from ..locks import KeyedLockManager, get_lock_manager
from ..models import AnonymizationJob, User
from ..repositories.ledger_repo import LedgerRepo
from ..repositories.trip_repo import TripRepo
from ..schemas import AdminStats, AnonymizationJobOut, AnonymizationRequest, AnonymizedTripOut, VerifyTripOut
from ..services.anonymization_service import AnonymizationService
from ..services.rewards_service import RewardsService
from ..telemetry import capture_exception
from ..workers.arq_enqueue import enqueue_anonymization_job

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/admin",
    tags=["Admin"],
    dependencies=[Depends(require_admin)],
)


@router.post("/anonymize", status_code=status.HTTP_202_ACCEPTED)
async def submit_anonymization(payload: AnonymizationRequest, db: Session = Depends(get_db)):
    service = AnonymizationService(db)
    job = service.submit_job(payload)
    job_id = job.job_id

    try:
        await enqueue_anonymization_job(job_id)
    except Exception as exc:
        logger.exception("[ANON] Could not enqueue job %s", job_id)
        capture_exception(exc, extra={"operation": "enqueue_anonymization_job", "job_id": job_id})
        service.mark_failed(job_id, f"Could not enqueue job: {type(exc).__name__}")

    job = service.get_job(job_id)
    return ok({
        "job_id": job.job_id,
        "status": job.status,
        "estimated_completion": job.estimated_completion,
        "records_processed": job.records_processed,
    })


@router.get("/anonymize/{job_id}")
def anonymization_status(job_id: str, db: Session = Depends(get_db)):
    job = AnonymizationService(db).get_job(job_id)
    return ok(AnonymizationJobOut.model_validate(job))


@router.get("/anonymize/{job_id}/records")
def anonymization_records(job_id: str, db: Session = Depends(get_db)):
    """Released groups for a job (empty until groups are committed)."""
    service = AnonymizationService(db)
    service.get_job(job_id)
    return ok([AnonymizedTripOut.model_validate(r) for r in service.list_output(job_id)])


@router.post("/trips/{trip_id}/verify")
def verify_trip(
    trip_id: str,
    db: Session = Depends(get_db),
    locks: KeyedLockManager = Depends(get_lock_manager),
):
    """Award the one-time verification bonus. Repeating the call is a no-op."""
    result = RewardsService(db, locks=locks).award_verification_bonus(trip_id)
    return ok(VerifyTripOut(trip_id=trip_id, bonus_awarded=result.credited, points=result.points))


@router.get("/stats")
def admin_stats(db: Session = Depends(get_db)):
    total_trips, total_distance = TripRepo(db).count_all()
    issued, redeemed = LedgerRepo(db).totals()
    jobs = (
        db.query(AnonymizationJob.status, func.count(AnonymizationJob.job_id))
        .group_by(AnonymizationJob.status)
        .all()
    )
    return ok(AdminStats(
        total_users=db.query(func.count(User.user_id)).scalar() or 0,
        total_trips=total_trips,
        total_distance=total_distance,
        points_issued=issued,
        points_redeemed=redeemed,
        jobs_by_status={s.value: int(n) for s, n in jobs},
    ))
