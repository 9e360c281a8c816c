"""Database engine and session configuration.

WHAT:
    Provides the SQLAlchemy engine, the `SessionLocal` factory, the FastAPI
    `get_db` dependency and a context manager for workers and scripts.

WHY:
    - Routers use `get_db` so tests can swap the session via dependency_overrides.
    - The ARQ worker and cron jobs open their own sessions with `get_sync_session`.
    - Every store call is bounded: connect timeout, pool checkout timeout and
      (PostgreSQL) a server-side statement timeout. A timeout surfaces as an
      OperationalError / TimeoutError which the services map to SERVER_ERROR.

USAGE:
    from tripsync.database import SessionLocal, get_db

    with get_sync_session() as db:
        db.query(Trip).count()
"""

import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        from tripsync.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    return database_url


def _store_timeout_seconds() -> int:
    return int(os.getenv("STORE_TIMEOUT_SECONDS", "10"))


def build_engine(database_url: str):
    """Create an engine with bounded connect/checkout/statement times.

    NOTE: SQLite engines (tests, local dev) do not support pool_size/max_overflow
    and use the `timeout` connect arg as the busy-wait on locked databases.
    """
    timeout = _store_timeout_seconds()
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": timeout},
        )
    return create_engine(
        database_url,
        pool_size=10,           # Base pool size
        max_overflow=20,        # Allow up to 30 total connections under load
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
        pool_timeout=timeout,   # Wait at most this long for a pooled connection
        connect_args={
            "connect_timeout": timeout,
            "options": f"-c statement_timeout={timeout * 1000}",
        },
    )


DATABASE_URL = _get_database_url()

engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in tripsync.models to ensure a single registry across the app
from .models import Base  # noqa: E402


def init_db(bind=None) -> None:
    """Create missing tables. Migrations are managed outside this service."""
    Base.metadata.create_all(bind=bind or engine)


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI (workers, cron, scripts).

    Example:
        with get_sync_session() as db:
            jobs = db.query(AnonymizationJob).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


if __name__ == "__main__":
    # python -m tripsync.database
    init_db()
