"""User data export and deletion."""

import csv
import io
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from tripsync.errors import InvalidConfirmationToken, NotFound
from tripsync.models import DataDeletion, RewardTransaction, Trip
from tripsync.repositories.ledger_repo import LedgerRepo
from tripsync.schemas import BulkSyncRequest, ConsentRequest, DeletionRequest, ExportRequest
from tripsync.security import create_deletion_token, decrypt_payload
from tripsync.services.chain_service import ChainService
from tripsync.services.consent_service import record_consent
from tripsync.services.privacy_service import PrivacyService
from tripsync.services.reconciliation_service import ReconciliationService
from tripsync.utils.timeutil import utcnow

MARCH_3 = datetime(2025, 3, 3, 8, 0, tzinfo=timezone.utc)
MARCH_10 = datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def privacy(test_db_session, locks, tmp_path):
    return PrivacyService(test_db_session, export_dir=str(tmp_path / "exports"), export_ttl_days=7, locks=locks)


@pytest.fixture
def history(test_db_session, locks, device, trip_document, sync_batch):
    """Three trips for user-a: two on March 3rd (one chain), one on March 10th."""
    documents = [
        trip_document("t-1", start=MARCH_3, chain_id="chain-mon", notes="gate code 4411"),
        trip_document("t-2", start=MARCH_3 + timedelta(hours=9), chain_id="chain-mon", distance_meters=3000.0),
        trip_document("t-3", start=MARCH_10, chain_id="chain-next"),
    ]
    request = BulkSyncRequest.model_validate(sync_batch(device.key, *documents))
    result = ReconciliationService(test_db_session, locks=locks).sync_batch(device.user, request)
    assert result.failed_trips == []
    record_consent(test_db_session, device.user_id, ConsentRequest(
        consent_version="1.0",
        background_tracking_consent=True,
        data_sharing_consent=True,
        analytics_consent=True,
    ))
    return device


# ============================================================================
# Export
# ============================================================================

def test_json_export_omits_sensitive_fields_by_default(privacy, history):
    record = privacy.export_user_data(history.user, ExportRequest())

    path = Path(record.file_path)
    assert path.exists()
    assert record.file_size == path.stat().st_size
    assert record.file_name.endswith(".json")

    document = json.loads(path.read_text())
    assert [t["trip_id"] for t in document["trips"]] == ["t-1", "t-2", "t-3"]
    assert "origin_lat" not in document["trips"][0]
    assert "notes" not in document["trips"][0]
    assert document["consent_records"][0]["consent_version"] == "1.0"
    assert document["reward_points"]["total_points"] > 0
    assert len(document["reward_transactions"]) == 3


def test_export_can_include_sensitive_fields_and_filter_by_range(privacy, history):
    request = ExportRequest.model_validate({
        "format": "json",
        "include_sensitive": True,
        "date_range": {"start": "2025-03-03T00:00:00Z", "end": "2025-03-04T00:00:00Z"},
    })

    record = privacy.export_user_data(history.user, request)

    trips = json.loads(Path(record.file_path).read_text())["trips"]
    assert [t["trip_id"] for t in trips] == ["t-1", "t-2"]
    assert trips[0]["notes"] == "gate code 4411"
    assert trips[0]["origin_lat"] == 52.3676


def test_csv_export_has_one_row_per_trip(privacy, history):
    record = privacy.export_user_data(history.user, ExportRequest(format="csv"))

    rows = list(csv.DictReader(io.StringIO(Path(record.file_path).read_text())))
    assert [r["trip_id"] for r in rows] == ["t-1", "t-2", "t-3"]
    assert "destination_place_name" not in rows[0]


def test_encrypted_export_opens_with_the_device_key(privacy, history):
    record = privacy.export_user_data(history.user, ExportRequest(format="encrypted"))

    token = Path(record.file_path).read_text()
    document = json.loads(decrypt_payload(history.key, token))
    assert document["user_id"] == history.user_id
    assert record.file_name.endswith(".json.enc")


def test_export_status_is_scoped_to_the_owner(privacy, history, device_factory):
    record = privacy.export_user_data(history.user, ExportRequest())
    device_factory("intruder")

    assert privacy.get_export(history.user_id, record.export_id).export_id == record.export_id
    with pytest.raises(NotFound) as excinfo:
        privacy.get_export("intruder", record.export_id)
    assert excinfo.value.code == "EXPORT_NOT_FOUND"


def test_expired_exports_are_purged(privacy, history):
    record = privacy.export_user_data(history.user, ExportRequest())
    path = Path(record.file_path)

    assert privacy.purge_expired_exports() == 0
    assert privacy.is_expired(record) is False

    later = utcnow() + timedelta(days=8)
    assert privacy.purge_expired_exports(now=later) == 1

    assert not path.exists()
    assert record.purged_at is not None
    assert privacy.is_expired(record) is True
    assert privacy.purge_expired_exports(now=later) == 0


# ============================================================================
# Deletion
# ============================================================================

def _token(user_id):
    token, _ = create_deletion_token(user_id, 15)
    return token


def test_range_deletion_removes_exact_trips_and_keeps_balances(privacy, history, test_db_session):
    ledger = LedgerRepo(test_db_session)
    before = ledger.get_balance(history.user_id)
    totals_before = (before.total_points, before.available_points, before.redeemed_points)
    request = DeletionRequest.model_validate({
        "confirmation_token": _token(history.user_id),
        "date_range": {"start": "2025-03-03T00:00:00Z", "end": "2025-03-03T23:59:59Z"},
    })

    audit = privacy.delete_user_data(history.user, request, ip_address="10.1.1.1", user_agent="pytest")

    assert audit.deleted_trip_count == 2
    assert sorted(audit.deleted_trip_ids) == ["t-1", "t-2"]
    assert audit.delete_all is False
    assert audit.date_range["start"].startswith("2025-03-03T00:00:00")
    assert audit.ip_address == "10.1.1.1"

    remaining = test_db_session.query(Trip).filter(Trip.user_id == history.user_id).all()
    assert [t.trip_id for t in remaining] == ["t-3"]

    after = ledger.get_balance(history.user_id)
    assert (after.total_points, after.available_points, after.redeemed_points) == totals_before

    entries = test_db_session.query(RewardTransaction).filter(RewardTransaction.user_id == history.user_id).all()
    assert len(entries) == 3
    assert sorted(e.trip_id for e in entries if e.trip_id) == ["t-3"]

    chains = ChainService(test_db_session)
    assert chains.get_chain(history.user_id, "chain-mon") is None
    assert chains.get_chain(history.user_id, "chain-next").trip_count == 1


def test_deleting_all_data_purges_exports(privacy, history, test_db_session):
    export = privacy.export_user_data(history.user, ExportRequest())
    request = DeletionRequest(confirmation_token=_token(history.user_id), delete_all=True)

    audit = privacy.delete_user_data(history.user, request)

    assert audit.deleted_trip_count == 3
    assert audit.date_range is None
    assert test_db_session.query(Trip).count() == 0
    assert not Path(export.file_path).exists()
    assert privacy.get_export(history.user_id, export.export_id).purged_at is not None
    assert test_db_session.query(DataDeletion).count() == 1


def test_deletion_with_nothing_in_range_still_audits(privacy, history):
    request = DeletionRequest.model_validate({
        "confirmation_token": _token(history.user_id),
        "date_range": {"start": "2024-01-01T00:00:00Z", "end": "2024-01-31T00:00:00Z"},
    })

    audit = privacy.delete_user_data(history.user, request)

    assert audit.deleted_trip_count == 0
    assert audit.deleted_trip_ids == []


def test_deletion_token_is_bound_to_the_user(privacy, history, device_factory, test_db_session):
    device_factory("someone-else")
    request = DeletionRequest(confirmation_token=_token("someone-else"), delete_all=True)

    with pytest.raises(InvalidConfirmationToken):
        privacy.delete_user_data(history.user, request)

    assert test_db_session.query(Trip).count() == 3
    assert test_db_session.query(DataDeletion).count() == 0


def test_garbage_token_is_rejected(privacy, history):
    with pytest.raises(InvalidConfirmationToken):
        privacy.delete_user_data(history.user, DeletionRequest(confirmation_token="not-a-token", delete_all=True))


def test_access_token_cannot_confirm_a_deletion(privacy, history):
    from tripsync.security import create_access_token

    request = DeletionRequest(confirmation_token=create_access_token(history.user_id), delete_all=True)

    with pytest.raises(InvalidConfirmationToken):
        privacy.delete_user_data(history.user, request)
