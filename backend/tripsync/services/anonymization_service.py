"""Anonymization job pipeline.

WHAT:
    Turns raw trips into irreversibly generalised, k-anonymous records for
    research export. Jobs move through:

        queued -> processing -> completed
                  processing -> failed

WHY:
    - Only trips that are synced, not private, and owned by users whose
      current consent allows data sharing are ever read.
    - A released group always has at least k distinct contributing users;
      smaller groups are suppressed entirely, never partially released.
    - Output is write-once and carries no user id, trip id, coordinates or
      raw timestamps. Re-running a job is the recovery path, not undo:
      groups committed before a failure are kept.

PROGRESS:
    Each group is committed on its own together with the job counters, so
    `records_processed` (suppressed + released input trips) only grows and
    is visible to pollers while the job runs.

LOGGING:
    Suppression is expected behaviour and logged at INFO with the
    "[ANON] Suppressed" prefix. Pipeline failures are logged at ERROR.

REFERENCES:
    - tripsync/services/zones.py (zones, bins, per-level rules)
    - tripsync/workers/arq_worker.py (process_anonymization_job)
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from tripsync.errors import JobStateError, NotFound, ValidationFailed
from tripsync.models import AnonymizationJob, AnonymizedTrip, JobStatusEnum, Trip
from tripsync.repositories.trip_repo import TripRepo
from tripsync.schemas import AnonymizationRequest
from tripsync.services.consent_service import users_with_data_sharing_consent
from tripsync.services.zones import LevelRules, coarsen, normalize_zones, rules_for, time_bin, zone_for
from tripsync.telemetry import capture_exception
from tripsync.utils.timeutil import to_utc_naive, utcnow

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "interrupted"
STALE_MESSAGE = "Job exceeded the processing window (worker lost). Re-submit to retry."

SENSOR_FIELDS = (
    "average_speed",
    "max_speed",
    "min_speed",
    "variance_accel",
    "total_acceleration",
    "gps_points_count",
)

GroupKey = Tuple[str, str, str, str, str, str]


class JobInterrupted(Exception):
    pass


@dataclass
class Member:
    """The only trip facts a group needs. No ids or coordinates survive."""

    user_id: str
    duration_seconds: int
    distance_meters: float
    num_accompanying: int
    sensor_summary: dict


@dataclass
class Grouping:
    groups: Dict[GroupKey, List[Member]] = field(default_factory=lambda: defaultdict(list))
    outside_zones: int = 0


def _estimate_completion(candidate_trips: int) -> datetime:
    # Rough throughput of a single worker on a modest database.
    return utcnow() + timedelta(seconds=30 + candidate_trips / 500)


class AnonymizationService:
    def __init__(
        self,
        db: Session,
        *,
        stop_event: Optional[threading.Event] = None,
        worker_id: Optional[str] = None,
    ):
        self.db = db
        self.trips = TripRepo(db)
        self.stop_event = stop_event
        self.worker_id = worker_id or "local"

    # ------------------------------------------------------------------
    # Submission and lookup
    # ------------------------------------------------------------------

    def submit_job(self, request: AnonymizationRequest) -> AnonymizationJob:
        try:
            zones = normalize_zones(request.aggregation_zones)
        except ValueError as exc:
            raise ValidationFailed(str(exc)) from exc

        start = to_utc_naive(request.start_date)
        end = to_utc_naive(request.end_date)
        candidates = (
            self.db.query(Trip)
            .filter(Trip.start_time >= start, Trip.start_time <= end)
            .count()
        )
        job = AnonymizationJob(
            status=JobStatusEnum.queued,
            start_date=start,
            end_date=end,
            anonymization_level=request.anonymization_level,
            aggregation_zones=zones,
            time_bin_size=request.time_bin_size,
            records_processed=0,
            estimated_completion=_estimate_completion(candidates),
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        logger.info(
            "[ANON] Job %s queued (level=%s, range=%s..%s, zones=%d, bin=%dmin)",
            job.job_id, job.anonymization_level.value, start, end, len(zones), job.time_bin_size,
        )
        return job

    def get_job(self, job_id: str) -> AnonymizationJob:
        job = self.db.get(AnonymizationJob, job_id, populate_existing=True)
        if job is None:
            raise NotFound(f"Job {job_id} not found", code="JOB_NOT_FOUND")
        return job

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def claim_job(self, job_id: str) -> bool:
        """Atomically move a queued job to processing. False if someone else has it."""
        now = utcnow()
        result = self.db.execute(
            update(AnonymizationJob)
            .where(AnonymizationJob.job_id == job_id, AnonymizationJob.status == JobStatusEnum.queued)
            .values(
                status=JobStatusEnum.processing,
                claimed_by=self.worker_id,
                started_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        claimed = result.rowcount == 1
        if claimed:
            logger.info("[ANON] Job %s claimed by %s", job_id, self.worker_id)
        else:
            logger.info("[ANON] Job %s not claimable (already taken or not queued)", job_id)
        return claimed

    def process(self, job_id: str) -> Optional[AnonymizationJob]:
        """Claim and run a job. Returns None when the claim was lost."""
        if not self.claim_job(job_id):
            return None
        return self.run_job(job_id)

    def run_job(self, job_id: str) -> AnonymizationJob:
        job = self.get_job(job_id)
        if job.status != JobStatusEnum.processing:
            raise JobStateError(f"Job {job_id} is {job.status.value}, expected processing")

        try:
            rules = rules_for(job.anonymization_level)
            grouping = self._group_trips(job, rules)

            if grouping.outside_zones:
                job.records_processed += grouping.outside_zones
                self.db.commit()
                logger.info(
                    "[ANON] Suppressed %d trips outside the requested zones (job %s)",
                    grouping.outside_zones, job_id,
                )

            for key in sorted(grouping.groups):
                if self.stop_event is not None and self.stop_event.is_set():
                    raise JobInterrupted()
                self._release_or_suppress(job, rules, key, grouping.groups[key])
                self.db.commit()

            job.status = JobStatusEnum.completed
            job.finished_at = utcnow()
            self.db.commit()
            logger.info(
                "[ANON] Job %s completed: processed=%d released=%d groups_suppressed=%d",
                job_id, job.records_processed, job.records_emitted, job.groups_suppressed,
            )
        except JobInterrupted:
            self.db.rollback()
            logger.warning("[ANON] Job %s interrupted", job_id)
            self.mark_failed(job_id, INTERRUPTED_MESSAGE)
        except Exception as exc:
            self.db.rollback()
            logger.exception("[ANON] Job %s failed: %s", job_id, exc)
            capture_exception(exc, extra={"operation": "run_anonymization_job", "job_id": job_id})
            self.mark_failed(job_id, f"{type(exc).__name__}: {exc}"[:1000])

        return self.get_job(job_id)

    def mark_failed(self, job_id: str, message: str) -> None:
        job = self.get_job(job_id)
        job.status = JobStatusEnum.failed
        job.error_message = message or "unknown error"
        job.finished_at = utcnow()
        self.db.commit()

    def fail_stale_jobs(self, stale_minutes: int) -> int:
        """Fail jobs stuck in processing (worker crashed or was killed)."""
        cutoff = utcnow() - timedelta(minutes=stale_minutes)
        now = utcnow()
        result = self.db.execute(
            update(AnonymizationJob)
            .where(
                AnonymizationJob.status == JobStatusEnum.processing,
                AnonymizationJob.started_at < cutoff,
            )
            .values(
                status=JobStatusEnum.failed,
                error_message=STALE_MESSAGE,
                finished_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        count = result.rowcount or 0
        if count:
            logger.warning("[ANON] Failed %d stale processing jobs", count)
        return count

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _group_trips(self, job: AnonymizationJob, rules: LevelRules) -> Grouping:
        consenting = users_with_data_sharing_consent(self.db)
        bin_minutes = job.time_bin_size * rules.bin_multiplier
        allowed = job.aggregation_zones or None
        grouping = Grouping()

        for trip in self.trips.iter_shareable_trips(job.start_date, job.end_date, consenting):
            origin = zone_for(trip.origin_lat, trip.origin_lon, rules.zone_precision, allowed)
            destination = zone_for(trip.destination_lat, trip.destination_lon, rules.zone_precision, allowed)
            if origin is None or destination is None:
                grouping.outside_zones += 1
                continue

            key = (
                origin,
                destination,
                time_bin(trip.start_time, bin_minutes),
                time_bin(trip.end_time, bin_minutes),
                trip.travel_mode,
                trip.trip_purpose,
            )
            grouping.groups[key].append(Member(
                user_id=trip.user_id,
                duration_seconds=trip.duration_seconds,
                distance_meters=trip.distance_meters,
                num_accompanying=trip.num_accompanying,
                sensor_summary=dict(trip.sensor_summary or {}),
            ))
        return grouping

    def _release_or_suppress(
        self,
        job: AnonymizationJob,
        rules: LevelRules,
        key: GroupKey,
        members: List[Member],
    ) -> None:
        contributors = len({m.user_id for m in members})
        if contributors < rules.k:
            job.records_processed += len(members)
            job.groups_suppressed += 1
            logger.info(
                "[ANON] Suppressed group (%d trips, %d users < k=%d) in job %s",
                len(members), contributors, rules.k, job.job_id,
            )
            return

        self.db.add(self._generalise(job, rules, key, members))
        job.records_processed += len(members)
        job.records_emitted += len(members)

    def _generalise(
        self,
        job: AnonymizationJob,
        rules: LevelRules,
        key: GroupKey,
        members: List[Member],
    ) -> AnonymizedTrip:
        origin, destination, start_bin, end_bin, mode, purpose = key
        n = len(members)
        mean_duration = sum(m.duration_seconds for m in members) / n
        mean_distance = sum(m.distance_meters for m in members) / n
        sensor = {}
        for name in SENSOR_FIELDS:
            values = [float(m.sensor_summary.get(name, 0) or 0) for m in members]
            sensor[name] = round(sum(values) / n, 2)

        return AnonymizedTrip(
            job_id=job.job_id,
            zone_origin=origin,
            zone_destination=destination,
            start_time_bin=start_bin,
            end_time_bin=end_bin,
            travel_mode=mode,
            trip_purpose=purpose,
            duration_seconds=int(coarsen(round(mean_duration), rules.duration_step_seconds)),
            distance_meters=float(coarsen(round(mean_distance), rules.distance_step_meters)),
            num_accompanying=round(sum(m.num_accompanying for m in members) / n),
            sensor_summary=sensor,
            group_size=n,
        )

    def list_output(self, job_id: str) -> List[AnonymizedTrip]:
        return (
            self.db.query(AnonymizedTrip)
            .filter(AnonymizedTrip.job_id == job_id)
            .order_by(AnonymizedTrip.zone_origin, AnonymizedTrip.zone_destination, AnonymizedTrip.start_time_bin)
            .all()
        )
