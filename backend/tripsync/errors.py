"""Domain exceptions.

Every error that can reach a client carries a stable `code` string. Routers
never build error payloads themselves: `main.py` registers one handler for
`TripSyncError` that maps `http_status` + `code` onto the response envelope.
Per-item sync failures are reported inside a successful batch response and
do not go through the handler.
"""

from typing import Any, Dict, Optional


class TripSyncError(Exception):
    code = "SERVER_ERROR"
    http_status = 500
    retryable = False

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationFailed(TripSyncError):
    code = "VALIDATION_ERROR"
    http_status = 400


class EncryptionFailed(TripSyncError):
    """Signature mismatch or undecryptable payload."""
    code = "ENCRYPTION_ERROR"
    http_status = 400


class SyncConflict(TripSyncError):
    code = "SYNC_CONFLICT"
    http_status = 409


class StoreUnavailable(TripSyncError):
    """Lock or store timeout. Safe to retry the same unit of work."""
    code = "SERVER_ERROR"
    http_status = 500
    retryable = True


class InsufficientPointsError(TripSyncError):
    code = "INSUFFICIENT_POINTS"
    http_status = 409

    def __init__(self, requested: int, available: int):
        super().__init__(
            f"Insufficient points: requested {requested}, available {available}",
            details={"requested": requested, "available": available},
        )
        self.requested = requested
        self.available = available


class NotFound(TripSyncError):
    http_status = 404

    def __init__(self, message: str, *, code: str = "NOT_FOUND"):
        super().__init__(message)
        self.code = code


class ConsentExists(TripSyncError):
    code = "CONSENT_EXISTS"
    http_status = 409


class InvalidConfirmationToken(TripSyncError):
    code = "INVALID_CONFIRMATION_TOKEN"
    http_status = 400


class JobStateError(TripSyncError):
    """Illegal anonymization job transition (e.g. claiming a non-queued job)."""
    code = "JOB_STATE_ERROR"
    http_status = 409


class Unauthorized(TripSyncError):
    code = "UNAUTHORIZED"
    http_status = 401


class RateLimited(TripSyncError):
    """Too many sync batches in the current window. Retry the same batch later."""
    code = "RATE_LIMITED"
    http_status = 429
    retryable = True
