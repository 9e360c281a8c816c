"""Trip sync: verification verdicts, first-write-wins, idempotent replay, corrections."""

import pytest

from tripsync.errors import NotFound, StoreUnavailable, ValidationFailed
from tripsync.locks import LocalLockManager, ledger_key
from tripsync.models import RewardTransaction, Trip, TransactionTypeEnum, User
from tripsync.repositories.ledger_repo import LedgerRepo
from tripsync.schemas import BulkSyncRequest, DeletionRequest, TripConfirmRequest
from tripsync.security import create_deletion_token, encrypt_payload, generate_device_key, sign_payload
from tripsync.services.privacy_service import PrivacyService
from tripsync.services.reconciliation_service import ReconciliationService
from tripsync.services.rewards_service import completion_key

# 2 km + 15 min cycling: floor(3.5) + floor(3.5 * 0.3)
CYCLING_TRIP_POINTS = 4


@pytest.fixture
def service(test_db_session, locks):
    return ReconciliationService(test_db_session, locks=locks)


def _sync(service, device, sync_batch, *documents):
    request = BulkSyncRequest.model_validate(sync_batch(device.key, *documents))
    return service.sync_batch(device.user, request)


def test_new_trip_is_stored_synced_and_credited(service, device, trip_document, sync_batch, test_db_session):
    result = _sync(service, device, sync_batch, trip_document("t-1"))

    assert result.synced_trips == ["t-1"]
    assert result.failed_trips == []
    assert result.server_timestamp.endswith("Z")

    trip = test_db_session.get(Trip, "t-1")
    assert trip.synced is True
    assert trip.user_id == device.user_id
    assert trip.num_accompanying == 1

    balance = LedgerRepo(test_db_session).get_balance(device.user_id)
    assert balance.available_points == CYCLING_TRIP_POINTS
    assert balance.total_points == balance.available_points + balance.redeemed_points


def test_replaying_the_same_trip_has_no_side_effects(service, device, trip_document, sync_batch, test_db_session):
    document = trip_document("t-1")
    _sync(service, device, sync_batch, document)

    # Same content, re-serialised with a different key order.
    reordered = dict(reversed(list(document.items())))
    result = _sync(service, device, sync_batch, reordered)

    assert result.synced_trips == ["t-1"]
    assert result.failed_trips == []
    ledger = LedgerRepo(test_db_session)
    assert ledger.count_by_key(completion_key("t-1")) == 1
    assert ledger.get_balance(device.user_id).available_points == CYCLING_TRIP_POINTS


def test_duplicate_inside_one_batch_is_credited_once(service, device, trip_document, sync_batch, test_db_session):
    document = trip_document("t-1")
    result = _sync(service, device, sync_batch, document, document)

    assert result.synced_trips == ["t-1", "t-1"]
    assert LedgerRepo(test_db_session).count_by_key(completion_key("t-1")) == 1


def test_different_content_for_accepted_id_is_a_conflict(service, device, trip_document, sync_batch, test_db_session):
    _sync(service, device, sync_batch, trip_document("t-1"))

    result = _sync(service, device, sync_batch, trip_document("t-1", distance_meters=9000.0))

    assert result.synced_trips == []
    assert [(f.trip_id, f.code) for f in result.failed_trips] == [("t-1", "SYNC_CONFLICT")]
    test_db_session.expire_all()
    assert test_db_session.get(Trip, "t-1").distance_meters == 2500.0
    assert LedgerRepo(test_db_session).get_balance(device.user_id).available_points == CYCLING_TRIP_POINTS


def test_same_trip_id_from_another_user_is_a_conflict(service, device_factory, trip_document, sync_batch, test_db_session):
    alice = device_factory("alice")
    bob = device_factory("bob")
    _sync(service, alice, sync_batch, trip_document("t-1"))

    result = _sync(service, bob, sync_batch, trip_document("t-1"))

    assert result.failed_trips[0].code == "SYNC_CONFLICT"
    assert test_db_session.get(Trip, "t-1").user_id == "alice"
    assert LedgerRepo(test_db_session).get_balance("bob") is None


def test_bad_signature_rejects_only_that_item(service, device, trip_document, sealed, test_db_session):
    good = sealed(device.key, trip_document("t-good"))
    bad = sealed(device.key, trip_document("t-bad", distance_meters=4000.0))
    bad["signature"] = "0" * 64
    request = BulkSyncRequest.model_validate({"trips": [bad, good], "sync_timestamp": "2025-03-03T09:00:00Z"})

    result = service.sync_batch(device.user, request)

    assert result.synced_trips == ["t-good"]
    assert [(f.trip_id, f.code) for f in result.failed_trips] == [("t-bad", "ENCRYPTION_ERROR")]
    assert test_db_session.get(Trip, "t-bad") is None


def test_non_ascii_signature_rejects_only_that_item(service, device, trip_document, sealed):
    good = sealed(device.key, trip_document("t-good"))
    bad = sealed(device.key, trip_document("t-bad", distance_meters=4000.0))
    bad["signature"] = "é" * 64
    request = BulkSyncRequest.model_validate({"trips": [bad, good], "sync_timestamp": "2025-03-03T09:00:00Z"})

    result = service.sync_batch(device.user, request)

    assert result.synced_trips == ["t-good"]
    assert [(f.trip_id, f.code) for f in result.failed_trips] == [("t-bad", "ENCRYPTION_ERROR")]


def test_unreadable_device_key_fails_items_as_retryable(service, device, trip_document, sync_batch, test_db_session):
    from cryptography.fernet import Fernet

    batch = sync_batch(device.key, trip_document("t-1"), trip_document("t-2", distance_meters=4000.0))
    # Sealed under a different at-rest key, as after a key rotation.
    device.user.device_key_enc = Fernet(Fernet.generate_key()).encrypt(device.key.encode()).decode()

    result = service.sync_batch(device.user, BulkSyncRequest.model_validate(batch))

    assert result.synced_trips == []
    assert [(f.trip_id, f.code) for f in result.failed_trips] == [("t-1", "SERVER_ERROR"), ("t-2", "SERVER_ERROR")]
    assert test_db_session.query(Trip).count() == 0


def test_payload_encrypted_with_another_key_is_an_encryption_error(service, device, trip_document):
    stray = encrypt_payload(generate_device_key(), b'{"trip_id": "t-1"}')
    item = {"trip_id": "t-1", "encrypted_data": stray, "signature": sign_payload(device.key, stray)}
    request = BulkSyncRequest.model_validate({"trips": [item], "sync_timestamp": "2025-03-03T09:00:00Z"})

    result = service.sync_batch(device.user, request)

    assert result.failed_trips[0].code == "ENCRYPTION_ERROR"


@pytest.mark.parametrize(
    "overrides",
    [
        {"duration_seconds": 1200},                                   # disagrees with end - start
        {"distance_meters": -5},
        {"travel_mode": {"detected": "walking", "confidence": 1.5}},
        {"chain_id": "   "},
        {"plausibility_score": 101},
    ],
)
def test_invalid_fields_are_validation_errors(service, device, trip_document, sync_batch, overrides, test_db_session):
    document = trip_document("t-1")
    document.update(overrides)

    result = _sync(service, device, sync_batch, document, trip_document("t-2", distance_meters=5000.0))

    assert [(f.trip_id, f.code) for f in result.failed_trips] == [("t-1", "VALIDATION_ERROR")]
    assert result.synced_trips == ["t-2"]
    assert test_db_session.get(Trip, "t-1") is None


def test_trip_id_must_match_encrypted_payload(service, device, trip_document, sealed):
    item = sealed(device.key, trip_document("t-inner"), trip_id="t-outer")
    request = BulkSyncRequest.model_validate({"trips": [item], "sync_timestamp": "2025-03-03T09:00:00Z"})

    result = service.sync_batch(device.user, request)

    assert result.failed_trips[0].trip_id == "t-outer"
    assert result.failed_trips[0].code == "VALIDATION_ERROR"


def test_oversized_batch_is_rejected_whole(test_db_session, locks, device, trip_document, sync_batch):
    service = ReconciliationService(test_db_session, locks=locks, max_batch_size=1)
    request = BulkSyncRequest.model_validate(
        sync_batch(device.key, trip_document("t-1"), trip_document("t-2", distance_meters=5000.0))
    )

    with pytest.raises(ValidationFailed):
        service.sync_batch(device.user, request)
    assert test_db_session.query(Trip).count() == 0


def test_fraudulent_trip_is_stored_but_earns_nothing(service, device, trip_document, sync_batch, test_db_session):
    # 60 km in 10 minutes on foot with almost no GPS fixes.
    document = trip_document(
        "t-fast",
        distance_meters=60000.0,
        duration_seconds=600,
        mode="walking",
        sensor_summary={"gps_points_count": 1, "variance_accel": 0.5},
    )

    result = _sync(service, device, sync_batch, document)

    assert result.synced_trips == ["t-fast"]
    entry = (
        test_db_session.query(RewardTransaction)
        .filter(RewardTransaction.idempotency_key == completion_key("t-fast"))
        .one()
    )
    assert entry.points_earned == 0
    assert entry.transaction_type == TransactionTypeEnum.trip_completion
    assert "Fraud detected" in entry.description
    # Nothing available to take: the penalty is clamped to zero.
    assert LedgerRepo(test_db_session).get_balance(device.user_id).available_points == 0


# ============================================================================
# Corrections
# ============================================================================

def test_correction_changes_only_named_fields(service, device, trip_document, sync_batch, test_db_session):
    _sync(service, device, sync_batch, trip_document("t-1"))

    trip = service.correct_trip(
        device.user_id,
        TripConfirmRequest.model_validate({"trip_id": "t-1", "corrections": {"travel_mode": "walking", "notes": "flat tyre"}}),
    )

    assert trip.travel_mode_confirmed == "walking"
    assert trip.travel_mode_detected == "cycling"
    assert trip.notes == "flat tyre"
    assert trip.trip_purpose == "work"
    assert trip.is_private is False
    assert trip.synced is True
    assert trip.distance_meters == 2500.0


def test_correction_rejects_server_authoritative_fields():
    with pytest.raises(ValueError):
        TripConfirmRequest.model_validate({"trip_id": "t-1", "corrections": {"distance_meters": 1}})


def test_correction_of_unknown_or_foreign_trip_is_not_found(service, device_factory, trip_document, sync_batch):
    alice = device_factory("alice")
    bob = device_factory("bob")
    _sync(service, alice, sync_batch, trip_document("t-1"))
    request = TripConfirmRequest.model_validate({"trip_id": "t-1", "corrections": {"is_private": True}})

    with pytest.raises(NotFound) as excinfo:
        service.correct_trip(bob.user_id, request)
    assert excinfo.value.code == "TRIP_NOT_FOUND"


def test_correction_waits_for_the_users_ledger_lock(test_db_session, device, trip_document, sync_batch):
    locks = LocalLockManager(timeout_seconds=0.05)
    service = ReconciliationService(test_db_session, locks=locks)
    _sync(service, device, sync_batch, trip_document("t-1"))
    request = TripConfirmRequest.model_validate({"trip_id": "t-1", "corrections": {"trip_purpose": "leisure"}})

    # A data deletion for the same user holds this lock while it runs.
    with locks.hold(ledger_key(device.user_id)):
        with pytest.raises(StoreUnavailable):
            service.correct_trip(device.user_id, request)

    assert test_db_session.get(Trip, "t-1").trip_purpose == "work"


def test_trip_deleted_before_the_correction_commits_is_not_found(
    file_session_factory, registrar, trip_document, sync_batch, tmp_path
):
    first, second = file_session_factory(), file_session_factory()
    try:
        owner = registrar(first, "user-a")
        service = ReconciliationService(first, locks=LocalLockManager())
        _sync(service, owner, sync_batch, trip_document("t-1"))
        privacy = PrivacyService(
            second, export_dir=str(tmp_path / "exports"), export_ttl_days=7, locks=LocalLockManager()
        )
        load = service.repo.get_for_user

        def load_then_delete(user_id, trip_id):
            trip = load(user_id, trip_id)
            token, _ = create_deletion_token(user_id, 15)
            privacy.delete_user_data(
                second.get(User, user_id), DeletionRequest(confirmation_token=token, delete_all=True)
            )
            return trip

        service.repo.get_for_user = load_then_delete
        request = TripConfirmRequest.model_validate({"trip_id": "t-1", "corrections": {"notes": "late"}})

        with pytest.raises(NotFound) as excinfo:
            service.correct_trip("user-a", request)

        assert excinfo.value.code == "TRIP_NOT_FOUND"
        assert second.query(Trip).count() == 0
    finally:
        first.close()
        second.close()


def test_trip_stats_use_the_effective_mode(service, device, trip_document, sync_batch):
    _sync(
        service,
        device,
        sync_batch,
        trip_document("t-1"),
        trip_document("t-2", distance_meters=4000.0, duration_seconds=1200),
    )
    service.correct_trip(
        device.user_id,
        TripConfirmRequest.model_validate({"trip_id": "t-2", "corrections": {"travel_mode": "public_transport"}}),
    )

    stats = service.trip_stats(device.user_id)

    assert stats["total_trips"] == 2
    assert stats["total_distance"] == 6500.0
    assert stats["total_duration"] == 2100
    assert {m["travel_mode"] for m in stats["by_mode"]} == {"cycling", "public_transport"}
