"""ARQ async worker - background job processor.

WHAT:
    Runs anonymization jobs and the periodic maintenance sweeps:
    - process_anonymization_job: claim + run one queued job
    - scheduled_stale_job_sweep: fail jobs stuck in processing (lost worker)
    - scheduled_export_purge: delete expired user data exports

WHY:
    Anonymization scans large trip ranges and must not block API requests.
    The pipeline itself is synchronous SQLAlchemy code; the worker runs it
    with asyncio.to_thread and owns one session per job.

CANCELLATION:
    When ARQ cancels a job (timeout, shutdown) the worker sets the job's stop
    event. The pipeline checks it between groups and fails the job with
    error_message "interrupted". Groups already committed stay released.

USAGE:
    arq tripsync.workers.arq_worker.WorkerSettings

    # Or use the start script
    python -m tripsync.workers.start_arq_worker

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - tripsync/services/anonymization_service.py
    - tripsync/services/privacy_service.py
"""

from __future__ import annotations

import asyncio
import logging
import platform
import threading
from datetime import datetime, timezone
from typing import Dict

from arq import cron

from tripsync.database import get_sync_session
from tripsync.deps import get_settings
from tripsync.services.anonymization_service import AnonymizationService
from tripsync.services.privacy_service import PrivacyService
from tripsync.telemetry import capture_exception, init_sentry
from tripsync.workers.arq_enqueue import QUEUE_NAME, get_redis_settings

logger = logging.getLogger(__name__)

JOB_TIMEOUT_SECONDS = 3600


# =============================================================================
# ANONYMIZATION
# =============================================================================

def _run_anonymization(job_id: str, worker_id: str, stop_event: threading.Event) -> Dict:
    with get_sync_session() as db:
        service = AnonymizationService(db, stop_event=stop_event, worker_id=worker_id)
        job = service.process(job_id)
        if job is None:
            return {"job_id": job_id, "claimed": False}
        return {
            "job_id": job_id,
            "claimed": True,
            "status": job.status.value,
            "records_processed": job.records_processed,
            "records_emitted": job.records_emitted,
            "groups_suppressed": job.groups_suppressed,
            "error_message": job.error_message,
        }


async def process_anonymization_job(ctx: Dict, job_id: str) -> Dict:
    """Claim and run one anonymization job.

    Returns:
        Dict with the final job status, or claimed=False if another worker
        already took the job (or it is no longer queued).
    """
    logger.info("[ARQ] Starting anonymization job %s", job_id)
    stop_event = threading.Event()
    worker_id = f"{platform.node()}:{ctx.get('job_id', job_id)}"

    try:
        result = await asyncio.to_thread(_run_anonymization, job_id, worker_id, stop_event)
    except asyncio.CancelledError:
        stop_event.set()
        logger.warning("[ARQ] Anonymization job %s cancelled; pipeline will stop at next group", job_id)
        raise
    except Exception as e:
        logger.exception("[ARQ] Anonymization job %s crashed: %s", job_id, e)
        capture_exception(e, extra={"operation": "process_anonymization_job", "job_id": job_id})
        return {"job_id": job_id, "error": str(e)}

    logger.info("[ARQ] Anonymization job %s finished: %s", job_id, result)
    return result


# =============================================================================
# MAINTENANCE
# =============================================================================

def _fail_stale_jobs(stale_minutes: int) -> int:
    with get_sync_session() as db:
        return AnonymizationService(db).fail_stale_jobs(stale_minutes)


def _purge_exports(export_dir: str, ttl_days: int) -> int:
    with get_sync_session() as db:
        return PrivacyService(db, export_dir=export_dir, export_ttl_days=ttl_days).purge_expired_exports()


async def scheduled_stale_job_sweep(ctx: Dict) -> Dict:
    """Scheduled job: fail anonymization jobs whose worker died mid-run.

    WHEN:
        Every 10 minutes.
    """
    settings = get_settings()
    try:
        failed = await asyncio.to_thread(_fail_stale_jobs, settings.JOB_STALE_MINUTES)
        return {"failed_stale_jobs": failed}
    except Exception as e:
        logger.exception("[ARQ] Stale job sweep failed: %s", e)
        capture_exception(e, extra={"operation": "scheduled_stale_job_sweep"})
        return {"error": str(e)}


async def scheduled_export_purge(ctx: Dict) -> Dict:
    """Scheduled job: delete expired export files.

    WHEN:
        Hourly at :15.
    """
    settings = get_settings()
    try:
        purged = await asyncio.to_thread(_purge_exports, settings.EXPORT_DIR, settings.EXPORT_TTL_DAYS)
        logger.info("[ARQ] Export purge complete: purged=%d", purged)
        return {"purged_exports": purged}
    except Exception as e:
        logger.exception("[ARQ] Export purge failed: %s", e)
        capture_exception(e, extra={"operation": "scheduled_export_purge"})
        return {"error": str(e)}


# =============================================================================
# LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - initialize resources and log config."""
    init_sentry(get_settings().SENTRY_DSN)

    logger.info("=" * 60)
    logger.info("[ARQ] Worker starting up")
    logger.info("=" * 60)
    logger.info("[ARQ] Python: %s", platform.python_version())
    logger.info("[ARQ] Host: %s", platform.node())
    logger.info("[ARQ] Queue: %s", QUEUE_NAME)
    logger.info("[ARQ] Job timeout: %ss", JOB_TIMEOUT_SECONDS)
    logger.info("=" * 60)

    ctx["startup_time"] = datetime.now(timezone.utc)
    ctx["jobs_processed"] = 0


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - log stats."""
    jobs = ctx.get("jobs_processed", 0)
    uptime = datetime.now(timezone.utc) - ctx.get("startup_time", datetime.now(timezone.utc))

    logger.info("=" * 60)
    logger.info("[ARQ] Worker shutting down")
    logger.info("[ARQ] Jobs processed: %s", jobs)
    logger.info("[ARQ] Uptime: %s", uptime)
    logger.info("=" * 60)


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration.

    - max_jobs=4: anonymization is DB-heavy; a few concurrent jobs is plenty
    - retry_jobs=False: a failed job is terminal and must be re-submitted
    """

    functions = [
        process_anonymization_job,
        scheduled_stale_job_sweep,
        scheduled_export_purge,
    ]

    cron_jobs = [
        cron(scheduled_stale_job_sweep, minute={0, 10, 20, 30, 40, 50}, run_at_startup=True),
        cron(scheduled_export_purge, minute=15),
    ]

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    # Redis connection
    redis_settings = get_redis_settings()

    max_jobs = 4
    job_timeout = JOB_TIMEOUT_SECONDS
    keep_result = 3600
    retry_jobs = False
    max_tries = 1
    health_check_interval = 30

    queue_name = QUEUE_NAME
