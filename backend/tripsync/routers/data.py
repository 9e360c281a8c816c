"""User data export and deletion endpoints.

Deletion is two-step: POST /delete/token issues a short-lived confirmation
token, POST /delete consumes it. The token binds to the caller, so a token
leaked from one account cannot delete another account's trips.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import Settings, get_current_user, get_settings
from ..envelope import ok
from ..errors import NotFound
from ..locks import KeyedLockManager, get_lock_manager
from ..models import User, UserDataExport
from ..schemas import DeletionOut, DeletionRequest, DeletionTokenOut, ExportOut, ExportRequest, ExportStatus
from ..services.privacy_service import PrivacyService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/data", tags=["privacy"])


def _service(db: Session, settings: Settings, locks: Optional[KeyedLockManager] = None) -> PrivacyService:
    return PrivacyService(
        db,
        export_dir=settings.EXPORT_DIR,
        export_ttl_days=settings.EXPORT_TTL_DAYS,
        locks=locks,
    )


def _download_url(record: UserDataExport) -> str:
    return f"/api/data/export/{record.export_id}/download"


@router.post("/export")
def create_export(
    payload: ExportRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
):
    record = _service(db, settings).export_user_data(user, payload)
    return ok(ExportOut(
        export_id=record.export_id,
        download_url=_download_url(record),
        expires_at=record.expires_at,
        file_size=record.file_size,
    ))


@router.get("/export/{export_id}")
def export_status(
    export_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
):
    service = _service(db, settings)
    record = service.get_export(user.user_id, export_id)
    return ok(ExportStatus(
        export_id=record.export_id,
        download_url=_download_url(record),
        expires_at=record.expires_at,
        file_size=record.file_size,
        format=record.format,
        expired=service.is_expired(record),
    ))


@router.get("/export/{export_id}/download")
def download_export(
    export_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
):
    service = _service(db, settings)
    record = service.get_export(user.user_id, export_id)
    if service.is_expired(record):
        raise NotFound(f"Export {export_id} has expired", code="EXPORT_EXPIRED")
    return FileResponse(record.file_path, filename=record.file_name, media_type="application/octet-stream")


@router.post("/delete/token")
def deletion_token(
    user: User = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
):
    token, expires_at = PrivacyService.issue_deletion_token(user.user_id, settings.DELETION_TOKEN_TTL_MINUTES)
    return ok(DeletionTokenOut(confirmation_token=token, expires_at=expires_at))


@router.post("/delete")
def delete_data(
    payload: DeletionRequest,
    request: Request,
    user_agent: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    locks: KeyedLockManager = Depends(get_lock_manager),
):
    audit = _service(db, settings, locks).delete_user_data(
        user,
        payload,
        ip_address=request.client.host if request.client else None,
        user_agent=user_agent,
    )
    return ok(DeletionOut(
        deletion_id=audit.id,
        deleted_trip_count=audit.deleted_trip_count,
        deleted_trip_ids=audit.deleted_trip_ids,
    ))
