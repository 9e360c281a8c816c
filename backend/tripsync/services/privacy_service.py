"""User data export and deletion.

WHAT:
    - Export: writes the caller's trips, consent history and ledger to a file
      under EXPORT_DIR (json, csv or encrypted json) and records an audit row.
      Files expire after EXPORT_TTL_DAYS and are purged by a cron job.
    - Deletion: after confirming a short-lived token, removes trips in one
      transaction and writes an audit row listing the exact ids removed.

WHY:
    Users own their raw data. Deletion must never silently change economics:
    ledger entries for deleted trips stay (their trip reference is nulled)
    and balances are never touched.

REFERENCES:
    - tripsync/security.py (deletion tokens, device-key encryption)
    - tripsync/workers/arq_worker.py (scheduled_export_purge)
"""

from __future__ import annotations

import csv
import io
import json
import logging
import os
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from tripsync.errors import NotFound
from tripsync.locks import KeyedLockManager, get_lock_manager, ledger_key
from tripsync.models import (
    ConsentRecord,
    DataDeletion,
    ExportFormatEnum,
    RewardTransaction,
    Trip,
    User,
    UserDataExport,
)
from tripsync.repositories.ledger_repo import LedgerRepo
from tripsync.repositories.trip_repo import TripRepo
from tripsync.schemas import DateRange, DeletionRequest, ExportRequest
from tripsync.security import create_deletion_token, decrypt_secret, encrypt_payload, verify_deletion_token
from tripsync.services.chain_service import ChainService
from tripsync.utils.timeutil import to_utc_naive, utcnow

logger = logging.getLogger(__name__)

FILE_EXTENSIONS = {
    ExportFormatEnum.json: "json",
    ExportFormatEnum.csv: "csv",
    ExportFormatEnum.encrypted: "json.enc",
}

SENSITIVE_TRIP_FIELDS = (
    "origin_lat",
    "origin_lon",
    "origin_place_name",
    "destination_lat",
    "destination_lon",
    "destination_place_name",
    "notes",
)

TRIP_FIELDS = (
    "trip_id",
    "trip_number",
    "chain_id",
    "origin_lat",
    "origin_lon",
    "origin_place_name",
    "destination_lat",
    "destination_lon",
    "destination_place_name",
    "start_time",
    "end_time",
    "duration_seconds",
    "distance_meters",
    "travel_mode_detected",
    "travel_mode_confirmed",
    "travel_mode_confidence",
    "trip_purpose",
    "num_accompanying",
    "notes",
    "plausibility_score",
    "is_private",
)


def _range_bounds(date_range: Optional[DateRange]) -> Tuple[Optional[datetime], Optional[datetime]]:
    if date_range is None:
        return None, None
    return to_utc_naive(date_range.start), to_utc_naive(date_range.end)


def _trip_row(trip: Trip, include_sensitive: bool) -> dict:
    row = {}
    for name in TRIP_FIELDS:
        if not include_sensitive and name in SENSITIVE_TRIP_FIELDS:
            continue
        value = getattr(trip, name)
        row[name] = value.isoformat() if isinstance(value, datetime) else value
    return row


# =============================================================================
# EXPORT
# =============================================================================

class PrivacyService:
    def __init__(
        self,
        db: Session,
        *,
        export_dir: str = "./exports",
        export_ttl_days: int = 7,
        locks: Optional[KeyedLockManager] = None,
    ):
        self.db = db
        self.export_dir = Path(export_dir)
        self.export_ttl_days = export_ttl_days
        self.locks = locks or get_lock_manager()
        self.trips = TripRepo(db)
        self.ledger = LedgerRepo(db)

    def _build_document(self, user: User, request: ExportRequest) -> dict:
        start, end = _range_bounds(request.date_range)
        trips = self.trips.list_in_range(user.user_id, start, end)
        consents = (
            self.db.query(ConsentRecord)
            .filter(ConsentRecord.user_id == user.user_id)
            .order_by(ConsentRecord.consent_timestamp)
            .all()
        )
        transactions = (
            self.db.query(RewardTransaction)
            .filter(RewardTransaction.user_id == user.user_id)
            .order_by(RewardTransaction.created_at)
            .all()
        )
        balance = self.ledger.get_balance(user.user_id)
        return {
            "user_id": user.user_id,
            "exported_at": utcnow().isoformat(),
            "include_sensitive": request.include_sensitive,
            "trips": [_trip_row(t, request.include_sensitive) for t in trips],
            "consent_records": [
                {
                    "consent_version": c.consent_version,
                    "background_tracking_consent": c.background_tracking_consent,
                    "data_sharing_consent": c.data_sharing_consent,
                    "analytics_consent": c.analytics_consent,
                    "consent_timestamp": c.consent_timestamp.isoformat(),
                }
                for c in consents
            ],
            "reward_points": {
                "total_points": balance.total_points if balance else 0,
                "available_points": balance.available_points if balance else 0,
                "redeemed_points": balance.redeemed_points if balance else 0,
            },
            "reward_transactions": [
                {
                    "transaction_id": tx.transaction_id,
                    "trip_id": tx.trip_id,
                    "points_earned": tx.points_earned,
                    "points_redeemed": tx.points_redeemed,
                    "transaction_type": tx.transaction_type.value,
                    "description": tx.description,
                    "created_at": tx.created_at.isoformat(),
                }
                for tx in transactions
            ],
        }

    def _render(self, user: User, document: dict, fmt: ExportFormatEnum) -> bytes:
        if fmt == ExportFormatEnum.csv:
            buffer = io.StringIO()
            rows = document["trips"]
            fields = list(rows[0].keys()) if rows else [
                f for f in TRIP_FIELDS if document["include_sensitive"] or f not in SENSITIVE_TRIP_FIELDS
            ]
            writer = csv.DictWriter(buffer, fieldnames=fields)
            writer.writeheader()
            writer.writerows(rows)
            return buffer.getvalue().encode("utf-8")

        body = json.dumps(document, indent=2, default=str).encode("utf-8")
        if fmt == ExportFormatEnum.encrypted:
            device_key = decrypt_secret(user.device_key_enc, context=f"device:{user.user_id}")
            return encrypt_payload(device_key, body).encode("utf-8")
        return body

    def export_user_data(self, user: User, request: ExportRequest) -> UserDataExport:
        document = self._build_document(user, request)
        content = self._render(user, document, request.format)

        export_id = uuid.uuid4().hex
        file_name = f"tripsync-export-{export_id}.{FILE_EXTENSIONS[request.format]}"
        self.export_dir.mkdir(parents=True, exist_ok=True)
        file_path = self.export_dir / file_name
        file_path.write_bytes(content)

        record = UserDataExport(
            export_id=export_id,
            user_id=user.user_id,
            file_name=file_name,
            file_path=str(file_path),
            file_size=len(content),
            format=request.format,
            include_sensitive=request.include_sensitive,
            expires_at=utcnow() + timedelta(days=self.export_ttl_days),
        )
        self.db.add(record)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            file_path.unlink(missing_ok=True)
            raise

        logger.info(
            "[PRIVACY] Export %s for %s: format=%s trips=%d size=%d",
            export_id, user.user_id, request.format.value, len(document["trips"]), len(content),
        )
        return record

    def get_export(self, user_id: str, export_id: str) -> UserDataExport:
        record = (
            self.db.query(UserDataExport)
            .filter(UserDataExport.export_id == export_id, UserDataExport.user_id == user_id)
            .first()
        )
        if record is None:
            raise NotFound(f"Export {export_id} not found", code="EXPORT_NOT_FOUND")
        return record

    @staticmethod
    def is_expired(record: UserDataExport, now: Optional[datetime] = None) -> bool:
        return record.purged_at is not None or (now or utcnow()) >= record.expires_at

    def _purge(self, records: List[UserDataExport], now: datetime) -> List[str]:
        paths = []
        for record in records:
            record.purged_at = now
            paths.append(record.file_path)
        return paths

    @staticmethod
    def _remove_files(paths: List[str]) -> None:
        for path in paths:
            try:
                os.remove(path)
            except FileNotFoundError:
                logger.debug("[PRIVACY] Export file already gone: %s", path)

    def purge_expired_exports(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        expired = (
            self.db.query(UserDataExport)
            .filter(UserDataExport.purged_at.is_(None), UserDataExport.expires_at <= now)
            .all()
        )
        paths = self._purge(expired, now)
        self.db.commit()
        self._remove_files(paths)
        if paths:
            logger.info("[PRIVACY] Purged %d expired exports", len(paths))
        return len(paths)

    # =========================================================================
    # DELETION
    # =========================================================================

    @staticmethod
    def issue_deletion_token(user_id: str, ttl_minutes: int) -> Tuple[str, datetime]:
        return create_deletion_token(user_id, ttl_minutes)

    def delete_user_data(
        self,
        user: User,
        request: DeletionRequest,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> DataDeletion:
        verify_deletion_token(request.confirmation_token, user.user_id)

        chains = ChainService(self.db)
        with self.locks.hold(ledger_key(user.user_id)):
            if request.delete_all:
                start, end = None, None
            else:
                start, end = _range_bounds(request.date_range)
            targets = self.trips.list_in_range(user.user_id, start, end)
            trip_ids = [t.trip_id for t in targets]
            chain_ids = sorted({t.chain_id for t in targets})

            purged_paths: List[str] = []
            try:
                self.ledger.detach_trips(trip_ids)
                for trip in targets:
                    self.db.expunge(trip)
                self.trips.delete_trips(trip_ids)
                for chain_id in chain_ids:
                    chains.recompute_chain(user.user_id, chain_id)

                audit = DataDeletion(
                    user_id=user.user_id,
                    delete_all=request.delete_all,
                    date_range=(
                        None if request.delete_all or request.date_range is None
                        else {"start": start.isoformat(), "end": end.isoformat()}
                    ),
                    deleted_trip_count=len(trip_ids),
                    deleted_trip_ids=trip_ids,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
                self.db.add(audit)

                if request.delete_all:
                    exports = (
                        self.db.query(UserDataExport)
                        .filter(UserDataExport.user_id == user.user_id, UserDataExport.purged_at.is_(None))
                        .all()
                    )
                    purged_paths = self._purge(exports, utcnow())

                self.db.commit()
            except Exception:
                self.db.rollback()
                logger.error("[PRIVACY] Deletion for %s rolled back", user.user_id)
                raise

        self._remove_files(purged_paths)
        logger.info(
            "[PRIVACY] Deleted %d trips for %s (delete_all=%s, chains recomputed=%d)",
            len(trip_ids), user.user_id, request.delete_all, len(chain_ids),
        )
        return audit
