"""
Sentry Error Tracking
=====================

Centralized error tracking for the API process and the ARQ worker.

Related files:
- tripsync/main.py: Initializes Sentry in create_app()
- tripsync/workers/arq_worker.py: Initializes Sentry on worker startup
- tripsync/services/reconciliation_service.py: Reports unexpected per-trip failures

Privacy:
    `send_default_pii` stays off and only the pseudonymous user id is ever
    attached. Trip payloads, coordinates and keys must never be passed in
    `extra`.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

_initialized = False


def init_sentry(dsn: Optional[str] = None) -> bool:
    """
    Initialize the Sentry SDK once per process.

    Returns:
        True if Sentry was initialized, False when no DSN is configured.
    """
    global _initialized
    if _initialized:
        return True

    dsn = dsn or os.environ.get("SENTRY_DSN")
    if not dsn:
        logger.debug("[SENTRY] No SENTRY_DSN configured - error tracking disabled")
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            RedisIntegration(),
            LoggingIntegration(
                level=logging.INFO,         # INFO+ as breadcrumbs
                event_level=logging.ERROR,  # ERROR+ as events
            ),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,
        release=os.environ.get("RELEASE_VERSION"),
    )
    _initialized = True
    logger.info("[SENTRY] Initialized for %s environment", environment)
    return True


def set_user_context(user_id: str) -> None:
    """Attach the pseudonymous user id to subsequent events."""
    if _initialized:
        sentry_sdk.set_user({"id": user_id})


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """
    Report a handled exception.

    Example:
        except Exception as e:
            capture_exception(e, extra={"operation": "process_anonymization_job", "job_id": job_id})
    """
    if not _initialized:
        logger.debug("[SENTRY] Disabled; not reporting %s", type(exception).__name__)
        return

    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    if not _initialized:
        logger.log(logging.getLevelName(level.upper()), "[SENTRY] (disabled) %s", message)
        return

    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        sentry_sdk.capture_message(message, level=level)
