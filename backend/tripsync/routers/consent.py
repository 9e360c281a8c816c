"""Consent endpoints (insert-only records)."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import get_current_user
from ..envelope import ok
from ..models import User
from ..schemas import ConsentOut, ConsentRequest
from ..services.consent_service import get_current_consent, record_consent

router = APIRouter(prefix="/api/consent", tags=["consent"])


@router.post("", status_code=status.HTTP_201_CREATED)
def submit_consent(
    payload: ConsentRequest,
    request: Request,
    user_agent: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    record = record_consent(
        db,
        user.user_id,
        payload,
        ip_address=request.client.host if request.client else None,
        user_agent=user_agent,
    )
    return ok(ConsentOut.model_validate(record))


@router.get("")
def current_consent(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    """Latest consent record, or null when the user never submitted one."""
    record = get_current_consent(db, user.user_id)
    return ok(ConsentOut.model_validate(record) if record else None)
