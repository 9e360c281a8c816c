"""Trip scoring policy.

WHAT:
    Pure functions/classes that turn one accepted trip into a reward decision:
    points earned, or a fraud penalty. No DB access; the rewards service feeds
    in the few history counts the duplicate and burst checks need.

WHY:
    - The ledger engine stays agnostic of how points are computed.
    - Policies are swappable (`RewardsService(policy=...)`) and trivially
      unit-testable with plain objects.

SCORING (DefaultScoringPolicy):
    base  = max(1, floor(km) * 1 + floor(minutes) * 0.1)
    bonus = floor(base * (mode multiplier - 1))
    points = floor(base) + bonus

    Fraud screening sums the confidence of every failed check. Above 0.5 the
    trip earns nothing and a penalty sized by confidence is charged instead.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

POINTS_PER_KM = 1
POINTS_PER_MINUTE = 0.1

MODE_MULTIPLIERS = {
    "walking": 1.5,
    "cycling": 1.3,
    "public_transport": 1.2,
    "private_vehicle": 1.0,
}

# m/s
MAX_SPEED_BY_MODE = {
    "walking": 2.0,
    "cycling": 6.0,
    "public_transport": 15.0,
    "private_vehicle": 30.0,
}
DEFAULT_MAX_SPEED = 30.0

MIN_TRIP_DISTANCE_METERS = 100
MIN_TRIP_DURATION_SECONDS = 60
MIN_GPS_POINTS = 3
MAX_ACCEL_VARIANCE = 10.0
MAX_TRIPS_PER_HOUR = 10

FRAUD_THRESHOLD = 0.5
PENALTY_LOW = 10
PENALTY_MEDIUM = 25
PENALTY_HIGH = 50
PENALTY_SEVERE = 100

VERIFICATION_BONUS = 5


@dataclass
class ScoringContext:
    """History facts about the trip's owner, computed by the caller."""

    similar_trip_count: int = 0     # near-identical trips already stored
    trips_in_prior_hour: int = 0    # trips that started in the hour before this one


@dataclass
class FraudCheck:
    reason: str
    confidence: float


@dataclass
class RewardDecision:
    points: int = 0
    penalty: int = 0
    fraud_confidence: float = 0.0
    reasons: List[str] = field(default_factory=list)

    @property
    def is_fraud(self) -> bool:
        return self.penalty > 0

    @property
    def description(self) -> str:
        return "; ".join(self.reasons)


def penalty_for_confidence(confidence: float) -> int:
    if confidence >= 0.9:
        return PENALTY_SEVERE
    if confidence >= 0.7:
        return PENALTY_HIGH
    if confidence >= 0.5:
        return PENALTY_MEDIUM
    return PENALTY_LOW


def _sensor(trip: Any) -> Dict[str, Any]:
    return getattr(trip, "sensor_summary", None) or {}


class ScoringPolicy:
    """Interface: score(trip, context) -> RewardDecision."""

    def score(self, trip: Any, context: Optional[ScoringContext] = None) -> RewardDecision:
        raise NotImplementedError


class DefaultScoringPolicy(ScoringPolicy):
    """Distance/duration points with a mode bonus and fraud screening."""

    def base_points(self, trip: Any) -> float:
        km = math.floor(trip.distance_meters / 1000)
        minutes = math.floor(trip.duration_seconds / 60)
        return max(1.0, km * POINTS_PER_KM + minutes * POINTS_PER_MINUTE)

    def bonus_points(self, trip: Any, base: float) -> int:
        multiplier = MODE_MULTIPLIERS.get(trip.travel_mode, 1.0)
        return math.floor(base * (multiplier - 1.0))

    def fraud_checks(self, trip: Any, context: ScoringContext) -> List[FraudCheck]:
        checks: List[FraudCheck] = []
        mode = trip.travel_mode

        # Speed
        if trip.duration_seconds > 0:
            speed = trip.distance_meters / trip.duration_seconds
            max_speed = MAX_SPEED_BY_MODE.get(mode, DEFAULT_MAX_SPEED)
            if speed > max_speed * 1.5:
                checks.append(FraudCheck(
                    f"Impossible speed: {speed:.1f} m/s for {mode} (max {max_speed} m/s)", 0.8
                ))
            elif speed > max_speed:
                checks.append(FraudCheck(
                    f"Suspicious speed: {speed:.1f} m/s for {mode} (max {max_speed} m/s)", 0.4
                ))

        # Distance / duration
        if trip.distance_meters < MIN_TRIP_DISTANCE_METERS:
            checks.append(FraudCheck(
                f"Trip too short: {trip.distance_meters:.0f}m (minimum {MIN_TRIP_DISTANCE_METERS}m)", 0.6
            ))
        elif trip.duration_seconds < MIN_TRIP_DURATION_SECONDS:
            checks.append(FraudCheck(
                f"Trip too brief: {trip.duration_seconds}s (minimum {MIN_TRIP_DURATION_SECONDS}s)", 0.6
            ))

        # History
        if context.similar_trip_count > 0:
            checks.append(FraudCheck(
                f"Duplicate trip: {context.similar_trip_count} similar trips found", 0.9
            ))
        if context.trips_in_prior_hour > MAX_TRIPS_PER_HOUR:
            checks.append(FraudCheck(
                f"Too many trips: {context.trips_in_prior_hour} in the preceding hour", 0.7
            ))

        # Sensors
        sensor = _sensor(trip)
        if sensor:
            gps_points = int(sensor.get("gps_points_count", 0) or 0)
            variance = float(sensor.get("variance_accel", 0) or 0)
            if gps_points < MIN_GPS_POINTS:
                checks.append(FraudCheck(f"Insufficient GPS data: {gps_points} points", 0.5))
            elif variance > MAX_ACCEL_VARIANCE:
                checks.append(FraudCheck(f"Unrealistic acceleration variance: {variance:.2f}", 0.6))

        return checks

    def score(self, trip: Any, context: Optional[ScoringContext] = None) -> RewardDecision:
        context = context or ScoringContext()
        checks = self.fraud_checks(trip, context)
        confidence = sum(c.confidence for c in checks)

        if confidence > FRAUD_THRESHOLD:
            return RewardDecision(
                points=0,
                penalty=penalty_for_confidence(confidence),
                fraud_confidence=min(1.0, confidence),
                reasons=["Fraud detected: " + ", ".join(c.reason for c in checks)],
            )

        base = self.base_points(trip)
        bonus = self.bonus_points(trip, base)
        reasons = [
            f"Base points: {math.floor(base)} "
            f"({math.floor(trip.distance_meters / 1000)}km + {math.floor(trip.duration_seconds / 60)}min)"
        ]
        if bonus > 0:
            reasons.append(f"Bonus points: {bonus} ({trip.travel_mode} x{MODE_MULTIPLIERS[trip.travel_mode]})")
        return RewardDecision(
            points=math.floor(base) + bonus,
            fraud_confidence=min(1.0, confidence),
            reasons=reasons,
        )


class FlatScoringPolicy(ScoringPolicy):
    """Fixed points per trip, no screening. Useful for campaigns and tests."""

    def __init__(self, points: int = 10):
        self.points = points

    def score(self, trip: Any, context: Optional[ScoringContext] = None) -> RewardDecision:
        return RewardDecision(points=self.points, reasons=[f"Flat award: {self.points}"])
