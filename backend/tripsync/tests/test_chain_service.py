"""Chain aggregation: order independence, version CAS, recompute after removal."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from tripsync.models import Trip, User
from tripsync.repositories.trip_repo import TripRepo
from tripsync.schemas import BulkSyncRequest
from tripsync.services.chain_service import ChainService
from tripsync.services.reconciliation_service import ReconciliationService

MORNING = datetime(2025, 3, 3, 8, 0)


def _trip(trip_id, *, offset_min, duration_seconds, distance_meters, user_id="user-a", chain_id="chain-1"):
    start = MORNING + timedelta(minutes=offset_min)
    return Trip(
        trip_id=trip_id,
        user_id=user_id,
        trip_number=1,
        chain_id=chain_id,
        origin_lat=52.0, origin_lon=4.0, origin_place_name="",
        destination_lat=52.1, destination_lon=4.1, destination_place_name="",
        start_time=start,
        end_time=start + timedelta(seconds=duration_seconds),
        duration_seconds=duration_seconds,
        distance_meters=distance_meters,
        travel_mode_detected="walking",
        travel_mode_confidence=0.9,
        trip_purpose="work",
        num_accompanying=0,
        payload_hash=f"hash-{trip_id}",
    )


def _store(session, *trips):
    repo = TripRepo(session)
    chains = ChainService(session)
    for trip in trips:
        repo.insert(trip)
        chains.fold_trip(trip)
    session.commit()


@pytest.mark.parametrize("order", [("a", "b"), ("b", "a")])
def test_fold_is_order_independent(test_db_session, device, order):
    trips = {
        "a": _trip("t-a", offset_min=0, duration_seconds=600, distance_meters=500.0),
        "b": _trip("t-b", offset_min=30, duration_seconds=1200, distance_meters=1000.0),
    }

    _store(test_db_session, *(trips[k] for k in order))

    chain = ChainService(test_db_session).get_chain("user-a", "chain-1")
    assert chain.trip_count == 2
    assert chain.total_distance == 1500.0
    assert chain.total_duration == 1800
    assert chain.start_time == MORNING
    assert chain.end_time == MORNING + timedelta(minutes=50)
    assert chain.version == 2


def test_chains_are_scoped_per_user(test_db_session, device_factory):
    device_factory("user-a")
    device_factory("user-b")

    _store(
        test_db_session,
        _trip("t-a", offset_min=0, duration_seconds=600, distance_meters=500.0, user_id="user-a"),
        _trip("t-b", offset_min=0, duration_seconds=600, distance_meters=700.0, user_id="user-b"),
    )

    chains = ChainService(test_db_session)
    assert chains.get_chain("user-a", "chain-1").total_distance == 500.0
    assert chains.get_chain("user-b", "chain-1").total_distance == 700.0


def test_update_with_stale_version_is_refused(test_db_session, device):
    _store(test_db_session, _trip("t-a", offset_min=0, duration_seconds=600, distance_meters=500.0))
    repo = TripRepo(test_db_session)
    chain = repo.get_chain("user-a", "chain-1")

    assert repo.update_chain_if_version(chain.id, chain.version, {"trip_count": 5}) is True
    assert repo.update_chain_if_version(chain.id, chain.version, {"trip_count": 9}) is False

    assert repo.get_chain("user-a", "chain-1").trip_count == 5


def test_lost_version_race_rereads_and_keeps_both_members(test_db_session, device):
    first = _trip("t-a", offset_min=0, duration_seconds=600, distance_meters=500.0)
    late = _trip("t-b", offset_min=30, duration_seconds=1200, distance_meters=1000.0)
    _store(test_db_session, first)

    service = ChainService(test_db_session)
    original = service.repo.update_chain_if_version
    raced = []

    def racing_update(chain_pk, expected_version, values):
        if not raced:
            # Another writer folds a 250 m member in between our read and our write.
            raced.append(True)
            chain = service.repo.get_chain("user-a", "chain-1")
            assert original(chain_pk, expected_version, {
                "total_distance": chain.total_distance + 250.0,
                "total_duration": chain.total_duration + 60,
                "trip_count": chain.trip_count + 1,
            })
        return original(chain_pk, expected_version, values)

    service.repo.update_chain_if_version = racing_update
    TripRepo(test_db_session).insert(late)
    chain = service.fold_trip(late)
    test_db_session.commit()

    assert raced == [True]
    assert chain.trip_count == 3
    assert chain.total_distance == 1750.0
    assert chain.total_duration == 1860
    assert chain.version == 3


def test_recompute_after_member_removal(test_db_session, device):
    _store(
        test_db_session,
        _trip("t-a", offset_min=0, duration_seconds=600, distance_meters=500.0),
        _trip("t-b", offset_min=30, duration_seconds=1200, distance_meters=1000.0),
    )
    repo = TripRepo(test_db_session)
    service = ChainService(test_db_session)

    repo.delete_trips(["t-a"])
    chain = service.recompute_chain("user-a", "chain-1")
    test_db_session.commit()

    assert chain.trip_count == 1
    assert chain.total_distance == 1000.0
    assert chain.start_time == MORNING + timedelta(minutes=30)

    repo.delete_trips(["t-b"])
    assert service.recompute_chain("user-a", "chain-1") is None
    test_db_session.commit()
    assert service.get_chain("user-a", "chain-1") is None


def test_concurrent_syncs_into_one_chain_lose_nothing(file_session_factory, registrar, locks, trip_document, sync_batch):
    setup = file_session_factory()
    device = registrar(setup, "user-a")
    setup.close()

    documents = [
        trip_document(f"t-{i}", start=datetime(2025, 3, 3, 6 + i, 0, tzinfo=timezone.utc), distance_meters=1000.0 + i * 100)
        for i in range(6)
    ]
    barrier = threading.Barrier(len(documents))
    errors = []

    def worker(document):
        session = file_session_factory()
        try:
            user = session.get(User, device.user_id)
            request = BulkSyncRequest.model_validate(sync_batch(device.key, document))
            barrier.wait()
            result = ReconciliationService(session, locks=locks).sync_batch(user, request)
            if result.failed_trips:
                errors.append(result.failed_trips)
        except Exception as exc:  # surfaced through the assertion below
            errors.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=worker, args=(d,)) for d in documents]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert errors == []
    check = file_session_factory()
    chain = ChainService(check).get_chain("user-a", "chain-1")
    assert chain.trip_count == 6
    assert chain.total_distance == sum(1000.0 + i * 100 for i in range(6))
    assert chain.total_duration == 6 * 900
    check.close()
