"""Pytest configuration for tripsync integration tests

WHAT: Shared fixtures for service, concurrency and HTTP endpoint tests
WHY: Consistent database isolation, registered devices and sealed trip payloads
REFERENCES:
    - tripsync/main.py: FastAPI application
    - tripsync/database.py: Engine configuration
    - tripsync/security.py: Device payload encryption and signing
"""

import json
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Generator
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment before anything imports tripsync
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
# Must be URL-safe base64-encoded 32-byte string (tripsync.security validates at import time)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")

from tripsync.database import build_engine  # noqa: E402
from tripsync.locks import LocalLockManager  # noqa: E402
from tripsync.models import Base, User  # noqa: E402
from tripsync.security import (  # noqa: E402
    create_access_token,
    encrypt_payload,
    encrypt_secret,
    generate_device_key,
    sign_payload,
)

ADMIN_KEY = "test-admin-key"
BASE_START = datetime(2025, 3, 3, 8, 0, tzinfo=timezone.utc)


@dataclass
class Device:
    user: User
    key: str

    @property
    def user_id(self) -> str:
        return self.user.user_id


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory database shared by every thread (TestClient runs handlers in a pool)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed database for tests that use one session per thread."""
    engine = build_engine(f"sqlite:///{tmp_path / 'tripsync.db'}")
    Base.metadata.create_all(bind=engine)

    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)

    engine.dispose()


@pytest.fixture
def locks() -> LocalLockManager:
    return LocalLockManager(timeout_seconds=5.0)


# ============================================================================
# Device / user Fixtures
# ============================================================================

def register(session: Session, user_id: str) -> Device:
    key = generate_device_key()
    user = User(user_id=user_id, device_key_enc=encrypt_secret(key, context=f"device:{user_id}"))
    session.add(user)
    session.commit()
    session.refresh(user)
    return Device(user=user, key=key)


@pytest.fixture
def registrar() -> Callable[[Session, str], Device]:
    """`register(session, user_id)` for databases other than the default session's."""
    return register


@pytest.fixture
def device_factory(test_db_session) -> Callable[[str], Device]:
    return lambda user_id: register(test_db_session, user_id)


@pytest.fixture
def device(device_factory) -> Device:
    return device_factory("user-a")


# ============================================================================
# Trip payload Fixtures
# ============================================================================

def make_trip_document(
    trip_id: str,
    *,
    start: datetime = BASE_START,
    duration_seconds: int = 900,
    distance_meters: float = 2500.0,
    chain_id: str = "chain-1",
    mode: str = "cycling",
    purpose: str = "work",
    **overrides,
) -> dict:
    """Plausible cycling trip (2.8 m/s) that passes fraud screening."""
    end = start + timedelta(seconds=duration_seconds)
    document = {
        "trip_id": trip_id,
        "trip_number": 1,
        "chain_id": chain_id,
        "origin": {"lat": 52.3676, "lon": 4.9041, "place_name": "Home"},
        "destination": {"lat": 52.3731, "lon": 4.8922, "place_name": "Office"},
        "start_time": start.isoformat(),
        "end_time": end.isoformat(),
        "duration_seconds": duration_seconds,
        "distance_meters": distance_meters,
        "travel_mode": {"detected": mode, "user_confirmed": None, "confidence": 0.9},
        "trip_purpose": purpose,
        "accompanying_basic": [{"relation": "colleague", "adult_count": 1, "child_count": 0}],
        "notes": None,
        "sensor_summary": {
            "average_speed": round(distance_meters / duration_seconds, 2),
            "max_speed": 6.0,
            "min_speed": 0.0,
            "variance_accel": 1.2,
            "total_acceleration": 35.0,
            "gps_points_count": 40,
        },
        "recorded_offline": True,
        "is_private": False,
    }
    document.update(overrides)
    return document


def seal(device_key: str, document, trip_id: str = None) -> dict:
    """Encrypt + sign a trip document the way the mobile client does."""
    raw = document if isinstance(document, bytes) else json.dumps(document).encode("utf-8")
    encrypted = encrypt_payload(device_key, raw)
    return {
        "trip_id": trip_id or document["trip_id"],
        "encrypted_data": encrypted,
        "signature": sign_payload(device_key, encrypted),
    }


def batch(device_key: str, *documents) -> dict:
    return {
        "trips": [seal(device_key, d) for d in documents],
        "sync_timestamp": datetime.now(timezone.utc).isoformat(),
    }


@pytest.fixture
def trip_document():
    return make_trip_document


@pytest.fixture
def sealed():
    return seal


@pytest.fixture
def sync_batch():
    return batch


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def enqueue_mock(monkeypatch) -> AsyncMock:
    mock = AsyncMock(return_value={"job_id": "arq-job", "status": "enqueued"})
    monkeypatch.setattr("tripsync.routers.admin.enqueue_anonymization_job", mock)
    return mock


@pytest.fixture
def app(test_db_session, locks, tmp_path, enqueue_mock):
    """FastAPI app bound to the test session, local locks and a temp export dir."""
    from tripsync.database import get_db
    from tripsync.deps import Settings, get_settings
    from tripsync.locks import get_lock_manager
    from tripsync.main import create_app
    from tripsync.rate_limiter import SyncRateLimiter, get_rate_limiter

    test_app = create_app()
    settings = Settings(
        DATABASE_URL="sqlite://",
        ADMIN_API_KEY=ADMIN_KEY,
        EXPORT_DIR=str(tmp_path / "exports"),
    )

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_settings] = lambda: settings
    test_app.dependency_overrides[get_lock_manager] = lambda: locks
    test_app.dependency_overrides[get_rate_limiter] = lambda: SyncRateLimiter(None)
    return test_app


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    return TestClient(app)


@pytest.fixture
def auth_headers(device):
    return {"Authorization": f"Bearer {create_access_token(device.user_id)}"}


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY}
