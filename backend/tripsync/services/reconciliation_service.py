"""Sync reconciliation engine.

WHAT:
    Applies verified trips to server state, one trip id at a time:

    - unknown id                 -> insert (first write wins), synced=True
    - known id, same payload     -> idempotent replay, success, no side effects
    - known id, different payload or owner -> SYNC_CONFLICT, stored copy untouched

    A new trip's write, its chain fold and its ledger credit share one DB
    transaction. Any failure rolls back that trip alone and reports it as a
    retryable SERVER_ERROR; the rest of the batch proceeds.

LOCK ORDER:
    trip:<trip_id> then ledger:<user_id>. The ledger lock is taken before the
    first write so a redemption for the same user can never hold the ledger
    while waiting on our row locks.

REFERENCES:
    - tripsync/services/ingestion_service.py (Accepted / Rejected verdicts)
    - tripsync/services/chain_service.py
    - tripsync/services/rewards_service.py
"""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from tripsync.errors import NotFound, StoreUnavailable, SyncConflict, TripSyncError, ValidationFailed
from tripsync.locks import KeyedLockManager, get_lock_manager, trip_key
from tripsync.models import Trip, User
from tripsync.repositories.trip_repo import TripRepo
from tripsync.schemas import BulkSyncRequest, BulkSyncResult, FailedTrip, TripConfirmRequest, TripPayload
from tripsync.services.chain_service import ChainService
from tripsync.services.ingestion_service import Accepted, IngestionService, Rejected
from tripsync.services.reward_policy import ScoringPolicy
from tripsync.services.rewards_service import RewardsService
from tripsync.telemetry import capture_exception
from tripsync.utils.timeutil import isoformat_z, to_utc_naive, utcnow

logger = logging.getLogger(__name__)

INSERTED = "inserted"
REPLAYED = "replayed"


def trip_from_payload(user_id: str, payload: TripPayload, payload_hash: str) -> Trip:
    return Trip(
        trip_id=payload.trip_id,
        user_id=user_id,
        trip_number=payload.trip_number,
        chain_id=payload.chain_id,
        origin_lat=payload.origin.lat,
        origin_lon=payload.origin.lon,
        origin_place_name=payload.origin.place_name,
        destination_lat=payload.destination.lat,
        destination_lon=payload.destination.lon,
        destination_place_name=payload.destination.place_name,
        start_time=to_utc_naive(payload.start_time),
        end_time=to_utc_naive(payload.end_time),
        duration_seconds=payload.duration_seconds,
        distance_meters=payload.distance_meters,
        travel_mode_detected=payload.travel_mode.detected,
        travel_mode_confirmed=payload.travel_mode.user_confirmed,
        travel_mode_confidence=payload.travel_mode.confidence,
        trip_purpose=payload.trip_purpose,
        num_accompanying=payload.accompanying_count,
        accompanying_basic=[p.model_dump() for p in payload.accompanying_basic],
        notes=payload.notes,
        sensor_summary=payload.sensor_summary.model_dump(),
        plausibility_score=payload.plausibility_score,
        recorded_offline=payload.recorded_offline,
        is_private=payload.is_private,
        synced=True,
        payload_hash=payload_hash,
    )


class ReconciliationService:
    def __init__(
        self,
        db: Session,
        *,
        locks: Optional[KeyedLockManager] = None,
        policy: Optional[ScoringPolicy] = None,
        max_batch_size: int = 500,
    ):
        self.db = db
        self.locks = locks or get_lock_manager()
        self.repo = TripRepo(db)
        self.chains = ChainService(db)
        self.rewards = RewardsService(db, policy=policy, locks=self.locks)
        self.max_batch_size = max_batch_size

    # ------------------------------------------------------------------
    # Batch sync
    # ------------------------------------------------------------------

    def sync_batch(self, user: User, request: BulkSyncRequest) -> BulkSyncResult:
        if len(request.trips) > self.max_batch_size:
            raise ValidationFailed(
                f"Batch of {len(request.trips)} trips exceeds the limit of {self.max_batch_size}"
            )

        logger.info(
            "[SYNC] Batch from %s: %d trips (device sync_timestamp=%s)",
            user.user_id, len(request.trips), request.sync_timestamp.isoformat(),
        )

        result = BulkSyncResult(server_timestamp=isoformat_z(utcnow()))
        verdicts = IngestionService(user).verify_batch(request.trips)

        for verdict in verdicts:
            if isinstance(verdict, Rejected):
                result.failed_trips.append(
                    FailedTrip(trip_id=verdict.trip_id, error=verdict.message, code=verdict.code)
                )
                continue
            try:
                self.reconcile(user.user_id, verdict)
            except TripSyncError as exc:
                result.failed_trips.append(FailedTrip(trip_id=verdict.trip_id, error=exc.message, code=exc.code))
            else:
                result.synced_trips.append(verdict.trip_id)

        logger.info(
            "[SYNC] Batch from %s done: synced=%d failed=%d",
            user.user_id, len(result.synced_trips), len(result.failed_trips),
        )
        return result

    def reconcile(self, user_id: str, accepted: Accepted) -> str:
        """Apply one accepted trip. Returns INSERTED or REPLAYED, raises on conflict/failure."""
        with self.locks.hold(trip_key(accepted.trip_id)):
            existing = self.repo.get(accepted.trip_id)
            if existing is not None:
                return self._compare(user_id, existing, accepted)
            return self._insert_new(user_id, accepted)

    def _compare(self, user_id: str, existing: Trip, accepted: Accepted) -> str:
        if existing.user_id == user_id and existing.payload_hash == accepted.payload_hash:
            logger.info("[SYNC] Trip %s replayed; no changes", accepted.trip_id)
            return REPLAYED
        logger.warning("[SYNC] Conflict on trip %s: stored copy kept", accepted.trip_id)
        raise SyncConflict("Trip already synced with different content")

    def _insert_new(self, user_id: str, accepted: Accepted) -> str:
        trip = trip_from_payload(user_id, accepted.payload, accepted.payload_hash)
        with self.rewards.ledger_lock(user_id):
            try:
                self.repo.insert(trip)
                self.chains.fold_trip(trip)
                self.rewards.apply_trip_credit(trip)
                self.db.commit()
            except IntegrityError:
                # Another process inserted the same id between our read and write.
                self.db.rollback()
                existing = self.repo.get(accepted.trip_id)
                if existing is None:
                    raise StoreUnavailable("Trip write failed; retry")
                return self._compare(user_id, existing, accepted)
            except (StoreUnavailable, OperationalError) as exc:
                self.db.rollback()
                logger.error("[SYNC] Store unavailable for trip %s: %s", accepted.trip_id, exc)
                raise StoreUnavailable("Store unavailable; retry this trip") from exc
            except Exception as exc:
                self.db.rollback()
                logger.exception("[SYNC] Failed to apply trip %s", accepted.trip_id)
                capture_exception(exc, extra={"operation": "reconcile", "trip_id": accepted.trip_id})
                raise StoreUnavailable("Trip could not be applied; retry") from exc

        logger.info("[SYNC] Trip %s accepted for %s", accepted.trip_id, user_id)
        return INSERTED

    # ------------------------------------------------------------------
    # Corrections
    # ------------------------------------------------------------------

    def correct_trip(self, user_id: str, request: TripConfirmRequest) -> Trip:
        """Apply user corrections. Only the fields present in the request change."""
        changes = request.corrections.model_dump(exclude_unset=True)
        if not changes:
            raise ValidationFailed("No corrections supplied")

        # The ledger lock serialises corrections with data deletion for this user.
        with self.locks.hold(trip_key(request.trip_id)), self.rewards.ledger_lock(user_id):
            trip = self.repo.get_for_user(user_id, request.trip_id)
            if trip is None:
                raise NotFound(f"Trip {request.trip_id} not found", code="TRIP_NOT_FOUND")

            if "travel_mode" in changes:
                trip.travel_mode_confirmed = changes["travel_mode"]
            if "trip_purpose" in changes:
                if changes["trip_purpose"] is None:
                    raise ValidationFailed("trip_purpose cannot be cleared")
                trip.trip_purpose = changes["trip_purpose"]
            if "notes" in changes:
                trip.notes = changes["notes"]
            if "is_private" in changes:
                if changes["is_private"] is None:
                    raise ValidationFailed("is_private cannot be null")
                trip.is_private = changes["is_private"]
            trip.updated_at = utcnow()

            try:
                self.db.commit()
            except StaleDataError as exc:
                self.db.rollback()
                raise NotFound(f"Trip {request.trip_id} not found", code="TRIP_NOT_FOUND") from exc
            except OperationalError as exc:
                self.db.rollback()
                raise StoreUnavailable("Store unavailable; retry the correction") from exc

        logger.info("[SYNC] Trip %s corrected (%s)", request.trip_id, ", ".join(sorted(changes)))
        self.db.refresh(trip)
        return trip

    def list_trips(self, user_id: str, limit: int = 50, offset: int = 0):
        return self.repo.list_for_user(user_id, limit=limit, offset=offset)

    def trip_stats(self, user_id: str) -> dict:
        rows = self.repo.mode_totals(user_id)
        total_trips = sum(r[1] for r in rows)
        total_distance = sum(r[2] for r in rows)
        total_duration = sum(r[3] for r in rows)
        return {
            "total_trips": total_trips,
            "total_distance": total_distance,
            "total_duration": total_duration,
            "average_distance": (total_distance / total_trips) if total_trips else 0.0,
            "by_mode": [
                {"travel_mode": mode, "trip_count": count, "total_distance": distance}
                for mode, count, distance, _ in rows
            ],
        }
