"""
Telemetry Module
================

Error tracking for the sync API and the anonymization worker.

Components:
- sentry.py: Error tracking (sentry-sdk)

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays off when unset)
- ENVIRONMENT: Environment name (production, staging, development)

Usage:
    from tripsync.telemetry import init_sentry, capture_exception

Related modules:
- tripsync/main.py: Initializes Sentry on app creation
- tripsync/workers/arq_worker.py: Reports job failures
"""

from tripsync.telemetry.sentry import (
    init_sentry,
    set_user_context,
    capture_exception,
    capture_message,
)

__all__ = [
    "init_sentry",
    "set_user_context",
    "capture_exception",
    "capture_message",
]
