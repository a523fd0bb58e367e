from datetime import datetime, timedelta

from streamguard.models import ActivityLocation, AnomalyEvent, UserFingerprint
from streamguard.models.activity_location import UNKNOWN_IP
from streamguard.services.location_store import LocationStore
from tests.conftest import SERVER_ID, TOKYO_IP, NEW_YORK_IP, LONDON_IP

T0 = datetime(2024, 3, 1, 12, 0, 0)


def test_pending_activities_are_oldest_first_and_exclude_located(db, seed):
    seed.user()
    later = seed.activity("user-1", T0 + timedelta(hours=2), ip=TOKYO_IP)
    earlier = seed.activity("user-1", T0, ip=NEW_YORK_IP)
    located, _ = seed.located_activity("user-1", T0 + timedelta(hours=1), LONDON_IP)
    seed.activity("user-1", T0, overview="Playback stopped")

    store = LocationStore(db)
    pending = store.pending_activities(SERVER_ID, limit=10)

    assert [a.id for a in pending] == [earlier.id, later.id]
    assert located.id not in [a.id for a in pending]
    assert store.count_pending(SERVER_ID) == 2


def test_history_is_most_recent_first_and_hides_private(db, seed):
    seed.user()
    first, _ = seed.located_activity("user-1", T0, TOKYO_IP)
    second, _ = seed.located_activity("user-1", T0 + timedelta(days=1), NEW_YORK_IP)
    private = seed.activity("user-1", T0 + timedelta(days=2), ip="192.168.1.10")
    seed.location(private, "192.168.1.10", private=True)

    rows, total = LocationStore(db).user_location_history(SERVER_ID, "user-1", limit=1, offset=0)

    assert total == 2
    assert [r["activity_id"] for r in rows] == [second.id]

    rows, _ = LocationStore(db).user_location_history(SERVER_ID, "user-1", limit=10, offset=1)
    assert [r["activity_id"] for r in rows] == [first.id]


def test_history_with_private_rows_leaves_out_unparsed_markers(db, seed):
    seed.user()
    private = seed.activity("user-1", T0, ip="192.168.1.10")
    seed.location(private, "192.168.1.10", private=True)
    garbled = seed.activity("user-1", T0 + timedelta(hours=1), overview="IP address: unavailable")
    db.add(ActivityLocation(activity_id=garbled.id, ip_address=UNKNOWN_IP, is_private_ip=True))
    db.commit()

    rows, total = LocationStore(db).user_location_history(SERVER_ID, "user-1", include_private=True)

    assert total == 1
    assert [(r["activity_id"], r["is_private_ip"]) for r in rows] == [(private.id, True)]


def test_history_is_ordered_by_activity_time_not_insert_time(db, seed):
    seed.user()
    # Backfilled out of order: the newer activity gets its location first
    newer = seed.activity("user-1", T0 + timedelta(days=3), ip=NEW_YORK_IP)
    older = seed.activity("user-1", T0, ip=TOKYO_IP)
    seed.location(newer, NEW_YORK_IP)
    seed.location(older, TOKYO_IP)

    rows, _ = LocationStore(db).user_location_history(SERVER_ID, "user-1")
    assert [r["activity_id"] for r in rows] == [newer.id, older.id]


def test_unique_locations_group_by_place(db, seed):
    seed.user()
    seed.located_activity("user-1", T0, TOKYO_IP)
    seed.located_activity("user-1", T0 + timedelta(hours=1), TOKYO_IP)
    seed.located_activity("user-1", T0 + timedelta(hours=2), LONDON_IP)

    places = LocationStore(db).user_unique_locations(SERVER_ID, "user-1")

    assert [p["city"] for p in places] == ["London", "Tokyo"]
    assert places[1]["activity_count"] == 2
    assert places[1]["last_seen"] == T0 + timedelta(hours=1)


def test_previous_located_activity_is_strictly_earlier(db, seed):
    seed.user()
    first, _ = seed.located_activity("user-1", T0, TOKYO_IP)
    same_time, _ = seed.located_activity("user-1", T0 + timedelta(hours=1), LONDON_IP)
    current, _ = seed.located_activity("user-1", T0 + timedelta(hours=1), NEW_YORK_IP)

    store = LocationStore(db)
    previous = store.previous_located_activity(SERVER_ID, "user-1", before=current.date,
                                               exclude_activity_id=current.id)

    assert previous.activity_id == first.id
    assert store.previous_located_activity(SERVER_ID, "user-1", before=T0) is None


def test_country_for_ip_uses_existing_locations(db, seed):
    seed.user()
    seed.located_activity("user-1", T0, LONDON_IP)

    store = LocationStore(db)
    assert store.country_for_ip(SERVER_ID, LONDON_IP) == "GB"
    assert store.country_for_ip(SERVER_ID, TOKYO_IP) is None
    assert store.country_for_ip(SERVER_ID + 1, LONDON_IP) is None


def test_server_location_points_merge_users(db, seed):
    seed.user("user-1", "alice")
    seed.user("user-2", "bob")
    seed.located_activity("user-1", T0, TOKYO_IP)
    seed.located_activity("user-2", T0 + timedelta(hours=1), TOKYO_IP)
    seed.located_activity("user-2", T0 + timedelta(hours=2), TOKYO_IP)
    seed.located_activity("user-1", T0, LONDON_IP)

    points = LocationStore(db).server_location_points(SERVER_ID)
    tokyo = next(p for p in points if p["city"] == "Tokyo")

    assert len(points) == 2
    assert tokyo["activity_count"] == 3
    assert tokyo["last_seen"] == T0 + timedelta(hours=2)
    assert [u["user_id"] for u in tokyo["users"]] == ["user-2", "user-1"]
    assert tokyo["users"][0]["user_name"] == "bob"

    only_alice = LocationStore(db).server_location_points(SERVER_ID, user_id="user-1")
    assert sorted(p["city"] for p in only_alice) == ["London", "Tokyo"]

    recent = LocationStore(db).server_location_points(SERVER_ID, date_from=T0 + timedelta(minutes=30))
    assert [p["city"] for p in recent] == ["Tokyo"]


def test_summary_stats(db, seed):
    seed.user()
    seed.located_activity("user-1", T0, TOKYO_IP)
    seed.located_activity("user-1", T0 + timedelta(hours=1), LONDON_IP)
    seed.activity("user-1", T0 + timedelta(hours=2), ip=NEW_YORK_IP)
    db.add(UserFingerprint(user_id="user-1", server_id=SERVER_ID))
    db.add(AnomalyEvent(server_id=SERVER_ID, user_id="user-1", anomaly_type="new_country",
                        severity="high", details={"kind": "new_country"}, resolved=False))
    db.add(AnomalyEvent(server_id=SERVER_ID, user_id="user-1", anomaly_type="new_device",
                        severity="low", details={"kind": "new_device"}, resolved=True, resolved_at=T0))
    db.commit()

    stats = LocationStore(db).summary_stats(SERVER_ID)

    assert stats["total_located_activities"] == 2
    assert stats["pending_activities"] == 1
    assert stats["unique_countries"] == 2
    assert stats["unique_cities"] == 2
    assert stats["users_with_fingerprints"] == 1
    assert stats["unresolved_anomalies"] == {"high": 1}


def test_users_with_activity_includes_session_only_users(db, seed):
    seed.user("user-1")
    seed.user("user-2", "bob")
    seed.activity("user-1", T0, ip=TOKYO_IP)
    seed.session("user-2", "dev-1", T0)

    assert LocationStore(db).users_with_activity(SERVER_ID) == ["user-1", "user-2"]
