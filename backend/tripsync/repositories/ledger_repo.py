"""Repository: SQL operations for reward balances and the transaction ledger.

Balance changes are single conditional UPDATE statements so the
`total = available + redeemed` invariant holds per statement and a debit can
never drive `available_points` below zero, whatever the isolation level.
Nothing here commits.
"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tripsync.models import RewardPoints, RewardTransaction, Trip

logger = logging.getLogger(__name__)


class LedgerRepo:
    """DB access for the Ledger Store. No business logic here."""

    def __init__(self, db: Session):
        self.db = db

    def get_balance(self, user_id: str) -> Optional[RewardPoints]:
        return self.db.get(RewardPoints, user_id, populate_existing=True)

    def ensure_balance(self, user_id: str) -> RewardPoints:
        """Return the user's balance row, creating a zero row on first use."""
        balance = self.get_balance(user_id)
        if balance is not None:
            return balance
        try:
            with self.db.begin_nested():
                self.db.add(RewardPoints(user_id=user_id))
        except IntegrityError:
            logger.debug("[LEDGER] Balance row for %s created concurrently", user_id)
        return self.get_balance(user_id)

    def find_by_key(self, idempotency_key: str) -> Optional[RewardTransaction]:
        return (
            self.db.query(RewardTransaction)
            .filter(RewardTransaction.idempotency_key == idempotency_key)
            .first()
        )

    def append(self, entry: RewardTransaction) -> RewardTransaction:
        """Insert a ledger entry inside a savepoint.

        Raises IntegrityError (savepoint rolled back, outer transaction intact)
        when the idempotency key already exists.
        """
        with self.db.begin_nested():
            self.db.add(entry)
        return entry

    def credit(self, user_id: str, points: int, now: datetime) -> None:
        self.db.execute(
            update(RewardPoints)
            .where(RewardPoints.user_id == user_id)
            .values(
                total_points=RewardPoints.total_points + points,
                available_points=RewardPoints.available_points + points,
                last_earned=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

    def redeem(self, user_id: str, points: int, now: datetime) -> bool:
        """Move `points` from available to redeemed. False if not enough available."""
        result = self.db.execute(
            update(RewardPoints)
            .where(RewardPoints.user_id == user_id, RewardPoints.available_points >= points)
            .values(
                available_points=RewardPoints.available_points - points,
                redeemed_points=RewardPoints.redeemed_points + points,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def deduct(self, user_id: str, points: int, now: datetime) -> bool:
        """Remove `points` from total and available (penalty, negative correction)."""
        result = self.db.execute(
            update(RewardPoints)
            .where(RewardPoints.user_id == user_id, RewardPoints.available_points >= points)
            .values(
                total_points=RewardPoints.total_points - points,
                available_points=RewardPoints.available_points - points,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def history(self, user_id: str, limit: int) -> List[RewardTransaction]:
        return (
            self.db.query(RewardTransaction)
            .filter(RewardTransaction.user_id == user_id)
            .order_by(RewardTransaction.created_at.desc(), RewardTransaction.transaction_id)
            .limit(limit)
            .all()
        )

    def count_by_key(self, idempotency_key: str) -> int:
        return (
            self.db.query(func.count(RewardTransaction.transaction_id))
            .filter(RewardTransaction.idempotency_key == idempotency_key)
            .scalar()
        )

    def leaderboard(self, limit: int) -> List[Tuple[int, int]]:
        """(total_points, trip_count) rows, best first."""
        trip_counts = (
            self.db.query(Trip.user_id.label("user_id"), func.count(Trip.trip_id).label("trip_count"))
            .group_by(Trip.user_id)
            .subquery()
        )
        rows = (
            self.db.query(RewardPoints.total_points, func.coalesce(trip_counts.c.trip_count, 0))
            .outerjoin(trip_counts, trip_counts.c.user_id == RewardPoints.user_id)
            .order_by(RewardPoints.total_points.desc(), RewardPoints.user_id)
            .limit(limit)
            .all()
        )
        return [(int(r[0]), int(r[1])) for r in rows]

    def detach_trips(self, trip_ids: Sequence[str]) -> int:
        """Null the trip reference on entries for deleted trips. Amounts untouched."""
        if not trip_ids:
            return 0
        result = self.db.execute(
            update(RewardTransaction)
            .where(RewardTransaction.trip_id.in_(list(trip_ids)))
            .values(trip_id=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def totals(self) -> Tuple[int, int]:
        row = self.db.query(
            func.coalesce(func.sum(RewardPoints.total_points), 0),
            func.coalesce(func.sum(RewardPoints.redeemed_points), 0),
        ).one()
        return int(row[0]), int(row[1])
