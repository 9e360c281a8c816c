"""Trip chain assembler.

Folds accepted trips into their (user_id, chain_id) aggregate:
start = min, end = max, distance/duration = sums, trip_count.

The fold is commutative, so members may arrive in any order. Writers never
overwrite each other: updates are compare-and-swap on `version` and a lost
race re-reads and retries. Two writers creating the same chain collide on
the unique (user_id, chain_id) constraint; the loser falls back to the
update path. Nothing here commits.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tripsync.errors import StoreUnavailable
from tripsync.models import Trip, TripChain
from tripsync.repositories.trip_repo import TripRepo
from tripsync.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 8


class ChainService:
    def __init__(self, db: Session, max_attempts: int = MAX_CAS_ATTEMPTS):
        self.db = db
        self.repo = TripRepo(db)
        self.max_attempts = max_attempts

    def fold_trip(self, trip: Trip) -> TripChain:
        """Merge one newly accepted trip into its chain aggregate."""
        for attempt in range(1, self.max_attempts + 1):
            chain = self.repo.get_chain(trip.user_id, trip.chain_id)

            if chain is None:
                created = self._try_create(trip)
                if created is not None:
                    return created
                continue

            values = {
                "start_time": min(chain.start_time, trip.start_time),
                "end_time": max(chain.end_time, trip.end_time),
                "total_distance": chain.total_distance + trip.distance_meters,
                "total_duration": chain.total_duration + trip.duration_seconds,
                "trip_count": chain.trip_count + 1,
                "updated_at": utcnow(),
            }
            if self.repo.update_chain_if_version(chain.id, chain.version, values):
                return self.repo.get_chain(trip.user_id, trip.chain_id)

            logger.debug(
                "[CHAIN] Version race on %s (attempt %d/%d)", trip.chain_id, attempt, self.max_attempts
            )

        logger.error("[CHAIN] Gave up folding trip %s into chain %s", trip.trip_id, trip.chain_id)
        raise StoreUnavailable(f"Chain {trip.chain_id} is under heavy contention")

    def _try_create(self, trip: Trip) -> Optional[TripChain]:
        chain = TripChain(
            user_id=trip.user_id,
            chain_id=trip.chain_id,
            start_time=trip.start_time,
            end_time=trip.end_time,
            total_distance=trip.distance_meters,
            total_duration=trip.duration_seconds,
            trip_count=1,
            version=1,
        )
        try:
            with self.db.begin_nested():
                self.repo.insert_chain(chain)
        except IntegrityError:
            logger.debug("[CHAIN] Chain %s created concurrently; merging instead", trip.chain_id)
            return None
        return chain

    def recompute_chain(self, user_id: str, chain_id: str) -> Optional[TripChain]:
        """Rebuild the aggregate from its remaining members; remove it when empty."""
        chain = self.repo.get_chain(user_id, chain_id)
        members: List[Trip] = self.repo.chain_members(user_id, chain_id)

        if not members:
            if chain is not None:
                self.repo.delete_chain(chain.id)
                logger.info("[CHAIN] Removed empty chain %s", chain_id)
            return None

        values = {
            "start_time": min(t.start_time for t in members),
            "end_time": max(t.end_time for t in members),
            "total_distance": sum(t.distance_meters for t in members),
            "total_duration": sum(t.duration_seconds for t in members),
            "trip_count": len(members),
            "updated_at": utcnow(),
        }
        if chain is None:
            chain = TripChain(user_id=user_id, chain_id=chain_id, version=1, **values)
            return self.repo.insert_chain(chain)

        if not self.repo.update_chain_if_version(chain.id, chain.version, values):
            raise StoreUnavailable(f"Chain {chain_id} changed during recompute")
        return self.repo.get_chain(user_id, chain_id)

    def get_chain(self, user_id: str, chain_id: str) -> Optional[TripChain]:
        return self.repo.get_chain(user_id, chain_id)

    def list_chains(self, user_id: str, limit: int = 50, offset: int = 0) -> List[TripChain]:
        return self.repo.list_chains(user_id, limit=limit, offset=offset)
