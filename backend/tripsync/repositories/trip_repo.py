"""Repository: SQL operations for trips, trip chains and users.

This module contains only DB interaction code. It never commits: the
caller owns the transaction so a trip write, its chain fold and its ledger
credit land together or not at all. Keep business rules out of here.
"""

from datetime import datetime, timedelta
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import and_, delete, func, or_, update
from sqlalchemy.orm import Session

from tripsync.models import Trip, TripChain, User


class TripRepo:
    """DB access for the Trip Store. No business logic here."""

    def __init__(self, db: Session):
        self.db = db

    # Users ---------------------------------------------------------------

    def get_user(self, user_id: str) -> Optional[User]:
        return self.db.get(User, user_id)

    def add_user(self, user: User) -> User:
        self.db.add(user)
        self.db.flush()
        return user

    # Trips ---------------------------------------------------------------

    def get(self, trip_id: str) -> Optional[Trip]:
        return self.db.get(Trip, trip_id, populate_existing=True)

    def get_for_user(self, user_id: str, trip_id: str) -> Optional[Trip]:
        return (
            self.db.query(Trip)
            .filter(Trip.trip_id == trip_id, Trip.user_id == user_id)
            .first()
        )

    def insert(self, trip: Trip) -> Trip:
        """Stage a new trip. IntegrityError surfaces at flush on duplicate id."""
        self.db.add(trip)
        self.db.flush()
        return trip

    def list_for_user(self, user_id: str, *, limit: int, offset: int) -> Tuple[List[Trip], int]:
        query = self.db.query(Trip).filter(Trip.user_id == user_id)
        total = query.count()
        trips = (
            query.order_by(Trip.start_time.desc(), Trip.trip_id)
            .offset(offset)
            .limit(limit)
            .all()
        )
        return trips, total

    def list_in_range(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Trip]:
        query = self.db.query(Trip).filter(Trip.user_id == user_id)
        if start is not None:
            query = query.filter(Trip.start_time >= start)
        if end is not None:
            query = query.filter(Trip.start_time <= end)
        return query.order_by(Trip.start_time, Trip.trip_id).all()

    def mode_totals(self, user_id: str) -> List[Tuple[str, int, float, int]]:
        """(effective mode, trip count, distance, duration) per mode."""
        mode = func.coalesce(Trip.travel_mode_confirmed, Trip.travel_mode_detected)
        rows = (
            self.db.query(
                mode,
                func.count(Trip.trip_id),
                func.coalesce(func.sum(Trip.distance_meters), 0.0),
                func.coalesce(func.sum(Trip.duration_seconds), 0),
            )
            .filter(Trip.user_id == user_id)
            .group_by(mode)
            .order_by(mode)
            .all()
        )
        return [(r[0], int(r[1]), float(r[2]), int(r[3])) for r in rows]

    def delete_trips(self, trip_ids: Sequence[str]) -> int:
        if not trip_ids:
            return 0
        result = self.db.execute(
            delete(Trip)
            .where(Trip.trip_id.in_(list(trip_ids)))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def iter_shareable_trips(
        self,
        start: datetime,
        end: datetime,
        user_ids: Iterable[str],
        batch_size: int = 500,
    ) -> Iterator[Trip]:
        """Synced, non-private trips of the given users starting in [start, end]."""
        ids = list(user_ids)
        if not ids:
            return iter(())
        return (
            self.db.query(Trip)
            .filter(
                Trip.start_time >= start,
                Trip.start_time <= end,
                Trip.synced.is_(True),
                Trip.is_private.is_(False),
                Trip.user_id.in_(ids),
            )
            .order_by(Trip.start_time, Trip.trip_id)
            .yield_per(batch_size)
        )

    def count_all(self) -> Tuple[int, float]:
        row = self.db.query(
            func.count(Trip.trip_id),
            func.coalesce(func.sum(Trip.distance_meters), 0.0),
        ).one()
        return int(row[0]), float(row[1])

    # Chains --------------------------------------------------------------

    def get_chain(self, user_id: str, chain_id: str) -> Optional[TripChain]:
        return (
            self.db.query(TripChain)
            .filter(TripChain.user_id == user_id, TripChain.chain_id == chain_id)
            .populate_existing()
            .first()
        )

    def list_chains(self, user_id: str, *, limit: int, offset: int) -> List[TripChain]:
        return (
            self.db.query(TripChain)
            .filter(TripChain.user_id == user_id)
            .order_by(TripChain.start_time.desc(), TripChain.chain_id)
            .offset(offset)
            .limit(limit)
            .all()
        )

    def chain_members(self, user_id: str, chain_id: str) -> List[Trip]:
        return (
            self.db.query(Trip)
            .filter(Trip.user_id == user_id, Trip.chain_id == chain_id)
            .all()
        )

    def insert_chain(self, chain: TripChain) -> TripChain:
        self.db.add(chain)
        self.db.flush()
        return chain

    def update_chain_if_version(self, chain_pk: str, expected_version: int, values: dict) -> bool:
        """Compare-and-swap on `version`. Returns False when another writer got there first."""
        result = self.db.execute(
            update(TripChain)
            .where(and_(TripChain.id == chain_pk, TripChain.version == expected_version))
            .values(version=expected_version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def delete_chain(self, chain_pk: str) -> None:
        self.db.execute(
            delete(TripChain)
            .where(TripChain.id == chain_pk)
            .execution_options(synchronize_session=False)
        )

    # Scoring history -----------------------------------------------------

    def count_similar(
        self,
        user_id: str,
        trip_id: str,
        start: datetime,
        end: datetime,
        distance_meters: float,
        *,
        window: timedelta = timedelta(minutes=5),
        distance_slack: float = 50.0,
    ) -> int:
        """Other trips of the user with nearby start or end and near-equal distance."""
        return (
            self.db.query(func.count(Trip.trip_id))
            .filter(
                Trip.user_id == user_id,
                Trip.trip_id != trip_id,
                or_(
                    Trip.start_time.between(start - window, start + window),
                    Trip.end_time.between(end - window, end + window),
                ),
                Trip.distance_meters.between(distance_meters - distance_slack, distance_meters + distance_slack),
            )
            .scalar()
        )

    def count_started_between(self, user_id: str, start: datetime, end: datetime, *, exclude_trip_id: str) -> int:
        return (
            self.db.query(func.count(Trip.trip_id))
            .filter(
                Trip.user_id == user_id,
                Trip.trip_id != exclude_trip_id,
                Trip.start_time >= start,
                Trip.start_time < end,
            )
            .scalar()
        )
