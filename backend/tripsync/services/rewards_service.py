"""Reward ledger engine.

WHAT:
    Credits points for accepted trips exactly once, handles redemptions,
    verification bonuses and admin corrections, and serves balances,
    history and the anonymised leaderboard.

WHY:
    Trips arrive at-least-once (offline devices retry whole batches). The
    economic effect must happen exactly once per trip id, and a balance must
    never go negative or drift from its ledger.

HOW:
    - Check-then-act under the per-user ledger lock: look up the
      `trip_completion:<trip_id>` key and only score + append when absent.
    - The unique `idempotency_key` backs that up: an insert collision inside
      the savepoint is treated as "already credited", never as an error.
    - Entry append and balance update share one DB transaction.
    - Debits are conditional UPDATEs (`... WHERE available_points >= n`).

REFERENCES:
    - tripsync/services/reward_policy.py (scoring and fraud screening)
    - tripsync/repositories/ledger_repo.py
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterator, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from tripsync.errors import InsufficientPointsError, NotFound, StoreUnavailable, ValidationFailed
from tripsync.locks import KeyedLockManager, get_lock_manager, ledger_key
from tripsync.models import RewardPoints, RewardTransaction, TransactionTypeEnum, Trip
from tripsync.repositories.ledger_repo import LedgerRepo
from tripsync.repositories.trip_repo import TripRepo
from tripsync.services.reward_policy import (
    DefaultScoringPolicy,
    RewardDecision,
    ScoringContext,
    ScoringPolicy,
    VERIFICATION_BONUS,
)
from tripsync.utils.timeutil import utcnow

logger = logging.getLogger(__name__)


def completion_key(trip_id: str) -> str:
    return f"trip_completion:{trip_id}"


def bonus_key(trip_id: str) -> str:
    return f"bonus:{trip_id}"


def penalty_key(trip_id: str) -> str:
    return f"penalty:{trip_id}"


@dataclass
class CreditResult:
    credited: bool
    points: int = 0
    penalty: int = 0


class RewardsService:
    def __init__(
        self,
        db: Session,
        policy: Optional[ScoringPolicy] = None,
        locks: Optional[KeyedLockManager] = None,
    ):
        self.db = db
        self.policy = policy or DefaultScoringPolicy()
        self.locks = locks or get_lock_manager()
        self.ledger = LedgerRepo(db)
        self.trips = TripRepo(db)

    @contextmanager
    def ledger_lock(self, user_id: str) -> Iterator[None]:
        with self.locks.hold(ledger_key(user_id)):
            yield

    def _commit(self, operation: str) -> None:
        try:
            self.db.commit()
        except OperationalError as exc:
            self.db.rollback()
            logger.error("[LEDGER] Store error during %s: %s", operation, exc)
            raise StoreUnavailable(f"Store unavailable during {operation}") from exc

    # ------------------------------------------------------------------
    # Trip credit
    # ------------------------------------------------------------------

    def _scoring_context(self, trip: Trip) -> ScoringContext:
        return ScoringContext(
            similar_trip_count=self.trips.count_similar(
                trip.user_id, trip.trip_id, trip.start_time, trip.end_time, trip.distance_meters
            ),
            trips_in_prior_hour=self.trips.count_started_between(
                trip.user_id,
                trip.start_time - timedelta(hours=1),
                trip.start_time,
                exclude_trip_id=trip.trip_id,
            ),
        )

    def apply_trip_credit(self, trip: Trip) -> CreditResult:
        """Score and credit `trip` inside the caller's transaction.

        The caller must hold `ledger_lock(trip.user_id)` and commit or roll
        back. Returns `credited=False` when the trip was already credited.
        """
        key = completion_key(trip.trip_id)
        if self.ledger.find_by_key(key) is not None:
            logger.info("[LEDGER] Trip %s already credited; skipping", trip.trip_id)
            return CreditResult(credited=False)

        self.ledger.ensure_balance(trip.user_id)
        decision: RewardDecision = self.policy.score(trip, self._scoring_context(trip))
        now = utcnow()

        try:
            self.ledger.append(RewardTransaction(
                user_id=trip.user_id,
                trip_id=trip.trip_id,
                points_earned=decision.points,
                transaction_type=TransactionTypeEnum.trip_completion,
                description=decision.description,
                idempotency_key=key,
                created_at=now,
            ))
        except IntegrityError:
            logger.info("[LEDGER] Trip %s credited concurrently; skipping", trip.trip_id)
            return CreditResult(credited=False)

        if decision.points:
            self.ledger.credit(trip.user_id, decision.points, now)

        charged = 0
        if decision.is_fraud:
            charged = self._charge_penalty(trip, decision, now)

        logger.info(
            "[LEDGER] Credited trip %s: points=%d penalty=%d",
            trip.trip_id, decision.points, charged,
        )
        return CreditResult(credited=True, points=decision.points, penalty=charged)

    def _charge_penalty(self, trip: Trip, decision: RewardDecision, now) -> int:
        """Charge a fraud penalty, clamped so the balance never goes negative."""
        balance = self.ledger.get_balance(trip.user_id)
        amount = min(decision.penalty, balance.available_points if balance else 0)
        logger.warning(
            "[LEDGER] Fraud screening flagged trip %s (confidence=%.2f, penalty=%d, charged=%d)",
            trip.trip_id, decision.fraud_confidence, decision.penalty, amount,
        )
        if amount and self.ledger.deduct(trip.user_id, amount, now):
            self.ledger.append(RewardTransaction(
                user_id=trip.user_id,
                trip_id=trip.trip_id,
                points_earned=-amount,
                transaction_type=TransactionTypeEnum.penalty,
                description=decision.description,
                idempotency_key=penalty_key(trip.trip_id),
                created_at=now,
            ))
            return amount
        return 0

    def credit_trip(self, trip_id: str) -> CreditResult:
        """Standalone credit for an already stored trip (retries, backfills)."""
        trip = self.trips.get(trip_id)
        if trip is None:
            raise NotFound(f"Trip {trip_id} not found", code="TRIP_NOT_FOUND")
        with self.ledger_lock(trip.user_id):
            try:
                result = self.apply_trip_credit(trip)
            except BaseException:
                self.db.rollback()
                raise
            self._commit("credit_trip")
        return result

    # ------------------------------------------------------------------
    # Redemption, bonus, correction
    # ------------------------------------------------------------------

    def redeem_points(self, user_id: str, points: int, description: str) -> Tuple[RewardPoints, RewardTransaction]:
        """Debit `points` from the available balance or reject without any change."""
        if points <= 0:
            raise ValidationFailed("points must be positive")

        with self.ledger_lock(user_id):
            self.ledger.ensure_balance(user_id)
            now = utcnow()
            if not self.ledger.redeem(user_id, points, now):
                self.db.rollback()
                balance = self.ledger.get_balance(user_id)
                available = balance.available_points if balance else 0
                logger.info(
                    "[LEDGER] Redemption rejected for %s: requested=%d available=%d",
                    user_id, points, available,
                )
                raise InsufficientPointsError(points, available)

            entry = RewardTransaction(
                user_id=user_id,
                points_redeemed=points,
                transaction_type=TransactionTypeEnum.redemption,
                description=description,
                created_at=now,
            )
            self.ledger.append(entry)
            self._commit("redeem_points")

        logger.info("[LEDGER] Redeemed %d points for %s", points, user_id)
        return self.ledger.get_balance(user_id), entry

    def award_verification_bonus(self, trip_id: str) -> CreditResult:
        """One-time bonus for a manually verified trip."""
        trip = self.trips.get(trip_id)
        if trip is None:
            raise NotFound(f"Trip {trip_id} not found", code="TRIP_NOT_FOUND")

        with self.ledger_lock(trip.user_id):
            if self.ledger.find_by_key(bonus_key(trip_id)) is not None:
                return CreditResult(credited=False)
            self.ledger.ensure_balance(trip.user_id)
            now = utcnow()
            try:
                self.ledger.append(RewardTransaction(
                    user_id=trip.user_id,
                    trip_id=trip_id,
                    points_earned=VERIFICATION_BONUS,
                    transaction_type=TransactionTypeEnum.bonus,
                    description="Trip manually verified",
                    idempotency_key=bonus_key(trip_id),
                    created_at=now,
                ))
            except IntegrityError:
                self.db.rollback()
                return CreditResult(credited=False)
            self.ledger.credit(trip.user_id, VERIFICATION_BONUS, now)
            self._commit("award_verification_bonus")

        logger.info("[LEDGER] Verification bonus for trip %s", trip_id)
        return CreditResult(credited=True, points=VERIFICATION_BONUS)

    def apply_correction(self, user_id: str, delta: int, reason: str) -> RewardTransaction:
        """Admin adjustment. Negative deltas may not exceed the available balance."""
        if delta == 0:
            raise ValidationFailed("correction delta must be non-zero")

        with self.ledger_lock(user_id):
            self.ledger.ensure_balance(user_id)
            now = utcnow()
            if delta > 0:
                self.ledger.credit(user_id, delta, now)
            elif not self.ledger.deduct(user_id, -delta, now):
                self.db.rollback()
                balance = self.ledger.get_balance(user_id)
                raise InsufficientPointsError(-delta, balance.available_points if balance else 0)

            entry = RewardTransaction(
                user_id=user_id,
                points_earned=delta,
                transaction_type=TransactionTypeEnum.correction,
                description=reason,
                created_at=now,
            )
            self.ledger.append(entry)
            self._commit("apply_correction")
        return entry

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_balance(self, user_id: str) -> RewardPoints:
        balance = self.ledger.get_balance(user_id)
        if balance is None:
            return RewardPoints(user_id=user_id, total_points=0, available_points=0, redeemed_points=0)
        return balance

    def get_history(self, user_id: str, limit: int = 50) -> List[RewardTransaction]:
        return self.ledger.history(user_id, limit)

    def get_leaderboard(self, limit: int = 10) -> List[dict]:
        return [
            {"rank": i + 1, "points": points, "trip_count": trip_count}
            for i, (points, trip_count) in enumerate(self.ledger.leaderboard(limit))
        ]
