"""Dependency providers and settings management."""

import hmac
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from jose import JWTError
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .database import get_db
from .models import User
from .security import decode_token


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    DATABASE_URL: str = "sqlite:///./tripsync.db"
    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    ADMIN_API_KEY: str = "change-this-admin-key"
    ENVIRONMENT: str = "development"
    SENTRY_DSN: Optional[str] = None

    # Redis Configuration (ARQ queue and, optionally, distributed locks)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Concurrency
    LOCK_BACKEND: str = "local"        # "local" (single process) or "redis"
    LOCK_TIMEOUT_SECONDS: float = 10.0
    STORE_TIMEOUT_SECONDS: int = 10

    # Sync
    MAX_SYNC_BATCH_SIZE: int = 500
    RATE_LIMIT_ENABLED: bool = False   # needs Redis
    SYNC_BATCHES_PER_MINUTE: int = 30

    # Privacy
    EXPORT_DIR: str = "./exports"
    EXPORT_TTL_DAYS: int = 7
    DELETION_TOKEN_TTL_MINUTES: int = 15

    # Anonymization
    JOB_STALE_MINUTES: int = 60

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_current_user_id(authorization: Optional[str] = Header(default=None)) -> str:
    """Resolve the caller's user id from an `Authorization: Bearer <jwt>` header.

    Tokens are issued by the external auth service; only `sub` is used.
    """
    if not authorization:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    if authorization.startswith("Bearer "):
        token = authorization[len("Bearer ") :]
    else:
        token = authorization

    try:
        payload = decode_token(token)
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return str(subject)


def get_current_user(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> User:
    """Resolve the caller to a registered user (one with a device key)."""
    user = db.query(User).filter(User.user_id == user_id).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


def require_admin(
    x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key"),
    settings: Settings = Depends(get_settings),
) -> None:
    if not x_admin_key or not hmac.compare_digest(x_admin_key, settings.ADMIN_API_KEY):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
