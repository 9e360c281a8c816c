"""Pydantic schemas for request/response payloads.

`TripPayload` is the decrypted device submission; its validators are the
field-level rules a trip must satisfy before reconciliation sees it.
"""

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .models import AnonymizationLevelEnum, ExportFormatEnum, JobStatusEnum, TransactionTypeEnum

# Allowed slack between declared duration and end_time - start_time
DURATION_TOLERANCE_SECONDS = 1


# =============================================================================
# ENVELOPE
# =============================================================================

class ErrorBody(BaseModel):
    code: str = Field(description="Stable error code", examples=["SYNC_CONFLICT"])
    message: str = Field(description="Human readable message")
    details: Optional[dict] = Field(default=None, description="Extra structured context")


class Envelope(BaseModel):
    """Every response body: `{success, data|error, timestamp}`."""

    success: bool
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    timestamp: str = Field(description="Server time, ISO-8601 UTC")


class HealthResponse(BaseModel):
    status: str = Field(description="Service status", examples=["ok"])


# =============================================================================
# TRIP PAYLOAD (decrypted)
# =============================================================================

class Location(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    place_name: str = ""


class TravelMode(BaseModel):
    detected: str = Field(min_length=1)
    user_confirmed: Optional[str] = None
    confidence: float = Field(ge=0, le=1)


class AccompanyingPerson(BaseModel):
    relation: Optional[str] = None
    adult_count: int = Field(default=0, ge=0)
    child_count: int = Field(default=0, ge=0)


class SensorSummary(BaseModel):
    average_speed: float = Field(default=0, ge=0, description="m/s")
    max_speed: float = Field(default=0, ge=0, description="m/s")
    min_speed: float = Field(default=0, ge=0, description="m/s")
    variance_accel: float = Field(default=0, ge=0)
    total_acceleration: float = Field(default=0)
    gps_points_count: int = Field(default=0, ge=0)


class TripPayload(BaseModel):
    """A trip as captured on the device."""

    model_config = ConfigDict(extra="ignore")

    trip_id: str = Field(min_length=1, max_length=128)
    user_id: Optional[str] = None
    trip_number: int = Field(ge=1)
    chain_id: str = Field(min_length=1, max_length=128)
    origin: Location
    destination: Location
    start_time: datetime
    end_time: datetime
    duration_seconds: int = Field(ge=0)
    distance_meters: float = Field(ge=0)
    travel_mode: TravelMode
    trip_purpose: str = Field(min_length=1)
    num_accompanying: Optional[int] = Field(default=None, ge=0)
    accompanying_basic: List[AccompanyingPerson] = Field(default_factory=list)
    notes: Optional[str] = None
    sensor_summary: SensorSummary = Field(default_factory=SensorSummary)
    recorded_offline: bool = True
    is_private: bool = False
    plausibility_score: Optional[float] = Field(default=None, ge=0, le=100)

    @field_validator("chain_id", "trip_id")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @model_validator(mode="after")
    def _check_timing(self):
        if (self.start_time.tzinfo is None) != (self.end_time.tzinfo is None):
            raise ValueError("start_time and end_time must both carry a timezone or neither")
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        elapsed = (self.end_time - self.start_time).total_seconds()
        if abs(elapsed - self.duration_seconds) > DURATION_TOLERANCE_SECONDS:
            raise ValueError(
                f"duration_seconds={self.duration_seconds} does not match end_time - start_time ({int(elapsed)}s)"
            )
        return self

    @property
    def accompanying_count(self) -> int:
        if self.num_accompanying is not None:
            return self.num_accompanying
        return sum(p.adult_count + p.child_count for p in self.accompanying_basic)


# =============================================================================
# SYNC
# =============================================================================

class TripSubmission(BaseModel):
    trip_id: str = Field(min_length=1, description="Trip id, must match the encrypted payload")
    encrypted_data: str = Field(min_length=1, description="Fernet token produced with the device key")
    signature: str = Field(min_length=1, description="Hex HMAC-SHA256 over encrypted_data")


class BulkSyncRequest(BaseModel):
    trips: List[TripSubmission] = Field(min_length=1)
    sync_timestamp: datetime = Field(description="Device clock at batch creation")


class FailedTrip(BaseModel):
    trip_id: str
    error: str
    code: str


class BulkSyncResult(BaseModel):
    synced_trips: List[str] = Field(default_factory=list)
    failed_trips: List[FailedTrip] = Field(default_factory=list)
    server_timestamp: str


class TripCorrections(BaseModel):
    """Only these fields may change after sync. Anything else is rejected."""

    model_config = ConfigDict(extra="forbid")

    travel_mode: Optional[str] = Field(default=None, min_length=1)
    trip_purpose: Optional[str] = Field(default=None, min_length=1)
    notes: Optional[str] = None
    is_private: Optional[bool] = None


class TripConfirmRequest(BaseModel):
    trip_id: str = Field(min_length=1)
    corrections: TripCorrections


class TripOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    trip_id: str
    trip_number: int
    chain_id: str
    origin_lat: float
    origin_lon: float
    origin_place_name: str
    destination_lat: float
    destination_lon: float
    destination_place_name: str
    start_time: datetime
    end_time: datetime
    duration_seconds: int
    distance_meters: float
    travel_mode_detected: str
    travel_mode_confirmed: Optional[str] = None
    travel_mode_confidence: float
    trip_purpose: str
    num_accompanying: int
    notes: Optional[str] = None
    plausibility_score: Optional[float] = None
    is_private: bool
    synced: bool


class TripListResponse(BaseModel):
    trips: List[TripOut]
    total: int


class ModeStat(BaseModel):
    travel_mode: str
    trip_count: int
    total_distance: float


class TripStats(BaseModel):
    total_trips: int
    total_distance: float
    total_duration: int
    average_distance: float
    by_mode: List[ModeStat]


class TripChainOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    chain_id: str
    start_time: datetime
    end_time: datetime
    total_distance: float
    total_duration: int
    trip_count: int


# =============================================================================
# REWARDS
# =============================================================================

class RewardBalance(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_points: int
    available_points: int
    redeemed_points: int
    last_earned: Optional[datetime] = None


class RewardTransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transaction_id: str
    trip_id: Optional[str] = None
    points_earned: int
    points_redeemed: int
    transaction_type: TransactionTypeEnum
    description: str
    created_at: datetime


class RedeemRequest(BaseModel):
    points: int = Field(gt=0)
    description: str = Field(default="Points redemption", max_length=500)


class LeaderboardEntry(BaseModel):
    rank: int
    points: int
    trip_count: int


# =============================================================================
# CONSENT
# =============================================================================

class ConsentRequest(BaseModel):
    consent_version: str = Field(min_length=1, max_length=64)
    background_tracking_consent: bool
    data_sharing_consent: bool
    analytics_consent: bool


class ConsentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    consent_version: str
    background_tracking_consent: bool
    data_sharing_consent: bool
    analytics_consent: bool
    consent_timestamp: datetime


# =============================================================================
# PRIVACY
# =============================================================================

class DateRange(BaseModel):
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _ordered(self):
        if self.end < self.start:
            raise ValueError("date_range.end must not be before date_range.start")
        return self


class ExportRequest(BaseModel):
    format: ExportFormatEnum = ExportFormatEnum.json
    include_sensitive: bool = False
    date_range: Optional[DateRange] = None


class ExportOut(BaseModel):
    export_id: str
    download_url: str
    expires_at: datetime
    file_size: int


class ExportStatus(ExportOut):
    format: ExportFormatEnum
    expired: bool


class DeletionTokenOut(BaseModel):
    confirmation_token: str
    expires_at: datetime


class DeletionRequest(BaseModel):
    confirmation_token: str = Field(min_length=1)
    delete_all: bool = False
    date_range: Optional[DateRange] = None

    @model_validator(mode="after")
    def _scope(self):
        if not self.delete_all and self.date_range is None:
            raise ValueError("date_range is required unless delete_all is true")
        return self


class DeletionOut(BaseModel):
    deletion_id: int
    deleted_trip_count: int
    deleted_trip_ids: List[str]


# =============================================================================
# ADMIN / ANONYMIZATION
# =============================================================================

class AnonymizationRequest(BaseModel):
    start_date: datetime
    end_date: datetime
    anonymization_level: AnonymizationLevelEnum
    aggregation_zones: List[str] = Field(default_factory=list)
    time_bin_size: int = Field(ge=1, le=1440, description="Bin width in minutes")

    @model_validator(mode="after")
    def _ordered(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class AnonymizationJobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_id: str
    status: JobStatusEnum
    estimated_completion: Optional[datetime] = None
    records_processed: int
    records_emitted: int = 0
    groups_suppressed: int = 0
    error_message: Optional[str] = None


class AnonymizedTripOut(BaseModel):
    """One released group. Carries no user id, trip id, coordinates or raw times."""

    model_config = ConfigDict(from_attributes=True)

    zone_origin: str
    zone_destination: str
    start_time_bin: str
    end_time_bin: str
    travel_mode: str
    trip_purpose: str
    duration_seconds: int
    distance_meters: float
    num_accompanying: int
    sensor_summary: dict
    group_size: int


class VerifyTripOut(BaseModel):
    trip_id: str
    bonus_awarded: bool
    points: int


class AdminStats(BaseModel):
    total_users: int
    total_trips: int
    total_distance: float
    points_issued: int
    points_redeemed: int
    jobs_by_status: dict


class DeviceRegistrationOut(BaseModel):
    user_id: str
    device_key: str = Field(description="Returned once; used by the device to sign and encrypt trips")
