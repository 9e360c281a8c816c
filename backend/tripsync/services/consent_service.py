"""Consent records.

Records are insert-only: a user changes consent by accepting a new consent
document version. The most recent record (by `consent_timestamp`) is the
user's current consent; anonymization jobs read it at run time.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import and_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tripsync.errors import ConsentExists
from tripsync.models import ConsentRecord
from tripsync.schemas import ConsentRequest
from tripsync.utils.timeutil import utcnow

logger = logging.getLogger(__name__)


def record_consent(
    db: Session,
    user_id: str,
    request: ConsentRequest,
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> ConsentRecord:
    """Store a new consent record. Re-submitting the same version is a conflict."""
    record = ConsentRecord(
        user_id=user_id,
        consent_version=request.consent_version,
        background_tracking_consent=request.background_tracking_consent,
        data_sharing_consent=request.data_sharing_consent,
        analytics_consent=request.analytics_consent,
        consent_timestamp=utcnow(),
        ip_address=ip_address,
        user_agent=user_agent,
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConsentExists(
            f"Consent for version {request.consent_version} was already recorded"
        ) from exc

    logger.info(
        "[CONSENT] Recorded version %s for %s (data_sharing=%s)",
        request.consent_version, user_id, request.data_sharing_consent,
    )
    return record


def get_current_consent(db: Session, user_id: str) -> Optional[ConsentRecord]:
    return (
        db.query(ConsentRecord)
        .filter(ConsentRecord.user_id == user_id)
        .order_by(ConsentRecord.consent_timestamp.desc(), ConsentRecord.consent_version.desc())
        .first()
    )


def users_with_data_sharing_consent(db: Session) -> List[str]:
    """Users whose current consent allows research data sharing."""
    latest = (
        db.query(
            ConsentRecord.user_id.label("user_id"),
            func.max(ConsentRecord.consent_timestamp).label("latest"),
        )
        .group_by(ConsentRecord.user_id)
        .subquery()
    )
    rows = (
        db.query(ConsentRecord.user_id, ConsentRecord.data_sharing_consent)
        .join(
            latest,
            and_(
                ConsentRecord.user_id == latest.c.user_id,
                ConsentRecord.consent_timestamp == latest.c.latest,
            ),
        )
        .order_by(ConsentRecord.user_id, ConsentRecord.consent_version)
        .all()
    )
    # Two versions recorded in the same instant: the highest version wins.
    current = {}
    for user_id, sharing in rows:
        current[user_id] = sharing
    return sorted(user_id for user_id, sharing in current.items() if sharing)
