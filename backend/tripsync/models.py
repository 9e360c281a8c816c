"""SQLAlchemy ORM models and enums.

This module defines the travel diary schema: trips and their chain
aggregates, the reward ledger, consent records, anonymization jobs with their
write-once output, and the privacy audit tables. Device keys are stored
encrypted in `users` so the trip tables never hold key material.

Ownership rules (enforced by the service layer, not by triggers):
- `trips` / `trip_chains` are written only by the reconciliation engine,
  the chain assembler and the privacy service (deletion cascade).
- `reward_points` / `reward_transactions` are written only by the rewards
  service. Deleting a trip nulls `reward_transactions.trip_id`; balances are
  never deleted.
- `anonymized_trips` has no foreign key back to `trips` or `users`.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import (
    Column, String, DateTime, Enum, Integer, ForeignKey, Float, JSON, Text, Boolean,
    UniqueConstraint, PrimaryKeyConstraint, Index,
)
from sqlalchemy.orm import relationship, declarative_base

from .utils.timeutil import utcnow


# Single Base used by the entire application
Base = declarative_base()


def _uuid_str() -> str:
    return str(uuid.uuid4())


# Enums ---------------------------------------------------------

class TransactionTypeEnum(str, enum.Enum):
    trip_completion = "trip_completion"
    correction = "correction"
    redemption = "redemption"
    bonus = "bonus"
    penalty = "penalty"


class JobStatusEnum(str, enum.Enum):
    """Anonymization job lifecycle.

    queued -> processing -> completed
    processing -> failed
    """
    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class AnonymizationLevelEnum(str, enum.Enum):
    basic = "basic"
    enhanced = "enhanced"
    maximum = "maximum"


class ExportFormatEnum(str, enum.Enum):
    json = "json"
    csv = "csv"
    encrypted = "encrypted"


def _enum_values(obj):
    return [e.value for e in obj]


# Core models ----------------------------------------------------

class User(Base):
    """Pseudonymous user known to the sync backend.

    Only the key material needed to verify and decrypt device submissions
    lives here. Accounts, passwords and sessions are managed elsewhere.
    """
    __tablename__ = "users"

    user_id = Column(String, primary_key=True)
    device_key_enc = Column(Text, nullable=False)  # Fernet(TOKEN_ENCRYPTION_KEY) of the device key
    created_at = Column(DateTime, default=utcnow)

    trips = relationship("Trip", back_populates="user")
    reward_points = relationship("RewardPoints", back_populates="user", uselist=False)

    def __str__(self):
        return self.user_id


class Trip(Base):
    """A single trip captured on the device and accepted by the server.

    `payload_hash` fingerprints the decrypted submission so a replay of the
    same payload is recognised as idempotent while a different payload under
    the same id is a sync conflict. Corrections never touch it.
    """
    __tablename__ = "trips"

    trip_id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.user_id"), nullable=False, index=True)
    trip_number = Column(Integer, nullable=False)
    chain_id = Column(String, nullable=False, index=True)

    # Origin
    origin_lat = Column(Float, nullable=False)
    origin_lon = Column(Float, nullable=False)
    origin_place_name = Column(String, nullable=False, default="")

    # Destination
    destination_lat = Column(Float, nullable=False)
    destination_lon = Column(Float, nullable=False)
    destination_place_name = Column(String, nullable=False, default="")

    # Timing and distance
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=False)
    duration_seconds = Column(Integer, nullable=False)
    distance_meters = Column(Float, nullable=False)

    # Travel mode
    travel_mode_detected = Column(String, nullable=False, index=True)
    travel_mode_confirmed = Column(String, nullable=True)
    travel_mode_confidence = Column(Float, nullable=False)

    # Purpose and companions
    trip_purpose = Column(String, nullable=False, index=True)
    num_accompanying = Column(Integer, nullable=False, default=0)
    accompanying_basic = Column(JSON, nullable=False, default=list)
    notes = Column(Text, nullable=True)

    # Sensor data
    sensor_summary = Column(JSON, nullable=False, default=dict)
    plausibility_score = Column(Float, nullable=True)

    # Status flags
    recorded_offline = Column(Boolean, nullable=False, default=True)
    synced = Column(Boolean, nullable=False, default=False, index=True)
    is_private = Column(Boolean, nullable=False, default=False, index=True)

    payload_hash = Column(String(64), nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="trips")

    @property
    def travel_mode(self) -> str:
        """Effective mode: the user's confirmation wins over detection."""
        return self.travel_mode_confirmed or self.travel_mode_detected

    def __str__(self):
        return f"{self.trip_id} ({self.user_id})"


class TripChain(Base):
    """Rolling aggregate over all trips sharing a chain id for one user.

    `version` increments on every merge; writers update with
    `WHERE version = :seen` so concurrent members never overwrite each other.
    """
    __tablename__ = "trip_chains"
    __table_args__ = (
        UniqueConstraint("user_id", "chain_id", name="uq_trip_chains_user_chain"),
    )

    id = Column(String, primary_key=True, default=_uuid_str)
    user_id = Column(String, ForeignKey("users.user_id"), nullable=False, index=True)
    chain_id = Column(String, nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    total_distance = Column(Float, nullable=False, default=0.0)
    total_duration = Column(Integer, nullable=False, default=0)
    trip_count = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __str__(self):
        return f"chain {self.chain_id} ({self.trip_count} trips)"


class RewardPoints(Base):
    """Per-user balance row.

    Invariant: total_points == available_points + redeemed_points.
    """
    __tablename__ = "reward_points"

    user_id = Column(String, ForeignKey("users.user_id"), primary_key=True)
    total_points = Column(Integer, nullable=False, default=0)
    available_points = Column(Integer, nullable=False, default=0)
    redeemed_points = Column(Integer, nullable=False, default=0)
    last_earned = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="reward_points")


class RewardTransaction(Base):
    """Immutable ledger entry.

    `idempotency_key` is set for entries that must happen at most once
    (`trip_completion:<trip_id>`, `bonus:<trip_id>`, `penalty:<trip_id>`) and
    keeps that guarantee after the trip reference has been nulled.
    """
    __tablename__ = "reward_transactions"

    transaction_id = Column(String, primary_key=True, default=_uuid_str)
    user_id = Column(String, ForeignKey("users.user_id"), nullable=False, index=True)
    trip_id = Column(String, ForeignKey("trips.trip_id", ondelete="SET NULL"), nullable=True, index=True)
    points_earned = Column(Integer, nullable=False, default=0)
    points_redeemed = Column(Integer, nullable=False, default=0)
    transaction_type = Column(
        Enum(TransactionTypeEnum, values_callable=_enum_values, name="transaction_type_enum"),
        nullable=False,
        index=True,
    )
    description = Column(Text, nullable=False, default="")
    idempotency_key = Column(String, nullable=True, unique=True)
    created_at = Column(DateTime, default=utcnow, index=True)


class ConsentRecord(Base):
    """Consent given by a user for one consent-document version. Write-once."""
    __tablename__ = "consent_records"
    __table_args__ = (
        PrimaryKeyConstraint("user_id", "consent_version", name="pk_consent_records"),
    )

    user_id = Column(String, ForeignKey("users.user_id"), nullable=False, index=True)
    consent_version = Column(String, nullable=False)
    background_tracking_consent = Column(Boolean, nullable=False, default=False)
    data_sharing_consent = Column(Boolean, nullable=False, default=False)
    analytics_consent = Column(Boolean, nullable=False, default=False)
    consent_timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(Text, nullable=True)


class AnonymizationJob(Base):
    """One anonymization run and its lifecycle state."""
    __tablename__ = "anonymization_jobs"

    job_id = Column(String, primary_key=True, default=_uuid_str)
    status = Column(
        Enum(JobStatusEnum, values_callable=_enum_values, name="job_status_enum"),
        nullable=False,
        default=JobStatusEnum.queued,
        index=True,
    )
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    anonymization_level = Column(
        Enum(AnonymizationLevelEnum, values_callable=_enum_values, name="anonymization_level_enum"),
        nullable=False,
    )
    aggregation_zones = Column(JSON, nullable=False, default=list)
    time_bin_size = Column(Integer, nullable=False)

    records_processed = Column(Integer, nullable=False, default=0)
    records_emitted = Column(Integer, nullable=False, default=0)
    groups_suppressed = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    estimated_completion = Column(DateTime, nullable=True)
    claimed_by = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __str__(self):
        return f"{self.job_id} [{self.status.value if self.status else '?'}]"


class AnonymizedTrip(Base):
    """Released, irreversibly generalised trip row.

    Deliberately carries no user id, no source trip id, no coordinates and
    no raw timestamps.
    """
    __tablename__ = "anonymized_trips"
    __table_args__ = (
        Index("ix_anonymized_trips_zone_pair", "zone_origin", "zone_destination"),
    )

    id = Column(String, primary_key=True, default=_uuid_str)
    job_id = Column(String, nullable=False, index=True)
    zone_origin = Column(String, nullable=False)
    zone_destination = Column(String, nullable=False)
    start_time_bin = Column(String, nullable=False, index=True)
    end_time_bin = Column(String, nullable=False)
    travel_mode = Column(String, nullable=False, index=True)
    trip_purpose = Column(String, nullable=False, index=True)
    duration_seconds = Column(Integer, nullable=False)
    distance_meters = Column(Float, nullable=False)
    num_accompanying = Column(Integer, nullable=False, default=0)
    sensor_summary = Column(JSON, nullable=False, default=dict)
    group_size = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, index=True)


class UserDataExport(Base):
    """Audit row for a user-requested data export file."""
    __tablename__ = "user_data_exports"

    export_id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.user_id"), nullable=False, index=True)
    file_name = Column(String, nullable=False)
    file_path = Column(String, nullable=False)
    file_size = Column(Integer, nullable=False)
    format = Column(
        Enum(ExportFormatEnum, values_callable=_enum_values, name="export_format_enum"),
        nullable=False,
    )
    include_sensitive = Column(Boolean, nullable=False, default=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    purged_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class DataDeletion(Base):
    """Audit row for a user data deletion. Lists the exact trip ids removed."""
    __tablename__ = "data_deletions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    delete_all = Column(Boolean, nullable=False)
    date_range = Column(JSON, nullable=True)
    deleted_trip_count = Column(Integer, nullable=False)
    deleted_trip_ids = Column(JSON, nullable=False, default=list)
    ip_address = Column(String, nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
