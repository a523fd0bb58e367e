from datetime import datetime, timedelta

from streamguard.models import ActivityLocation, AnomalyEvent, UserFingerprint
from streamguard.services.geolocation import GeoLookupError
from streamguard.services.geolocation_jobs import GeolocationJobs, UNKNOWN_IP
from tests.conftest import SERVER_ID, StaticGeoResolver, TOKYO_IP, NEW_YORK_IP, LONDON_IP

T0 = datetime(2024, 7, 1, 18, 0, 0)


class FlakyResolver(StaticGeoResolver):
    def __init__(self, failing):
        super().__init__()
        self.failing = set(failing)

    def lookup(self, ip):
        if ip in self.failing:
            raise GeoLookupError(f"timeout looking up {ip}")
        return super().lookup(ip)


def test_geolocate_pending_writes_locations_and_detects(db, seed, resolver):
    seed.user()
    seed.activity("user-1", T0, ip=TOKYO_IP)
    travel = seed.activity("user-1", T0 + timedelta(minutes=10), ip=NEW_YORK_IP)

    stats = GeolocationJobs(db, resolver=resolver).geolocate_pending(SERVER_ID, batch_size=10)

    assert stats == {"processed": 2, "located": 2, "failed": 0, "anomalies": 3}
    assert resolver.calls == [TOKYO_IP, NEW_YORK_IP]
    assert db.query(ActivityLocation).count() == 2
    types = sorted(e.anomaly_type for e in db.query(AnomalyEvent).filter_by(activity_id=travel.id))
    assert types == ["impossible_travel", "new_country"]


def test_private_and_missing_addresses_get_marker_rows(db, seed, resolver):
    seed.user()
    private = seed.activity("user-1", T0, ip="192.168.0.12")
    garbled = seed.activity("user-1", T0, overview="IP address: unavailable")

    GeolocationJobs(db, resolver=resolver).geolocate_pending(SERVER_ID)

    assert resolver.calls == []
    assert db.query(ActivityLocation).filter_by(activity_id=private.id).one().is_private_ip is True
    marker = db.query(ActivityLocation).filter_by(activity_id=garbled.id).one()
    assert (marker.ip_address, marker.is_private_ip) == (UNKNOWN_IP, True)
    assert db.query(AnomalyEvent).count() == 0


def test_lookup_failures_leave_activity_pending(db, seed):
    seed.user()
    seed.activity("user-1", T0, ip=LONDON_IP)
    stuck = seed.activity("user-1", T0 + timedelta(hours=1), ip=TOKYO_IP)
    jobs = GeolocationJobs(db, resolver=FlakyResolver([TOKYO_IP]))

    stats = jobs.geolocate_pending(SERVER_ID)

    assert stats["failed"] == 1
    assert stats["located"] == 1
    assert [a.id for a in jobs.locations.pending_activities(SERVER_ID)] == [stuck.id]


def test_backfill_drains_queue_and_builds_fingerprints(db, seed, resolver):
    seed.user()
    for hour in range(5):
        seed.activity("user-1", T0 + timedelta(days=hour), ip=LONDON_IP)

    result = GeolocationJobs(db, resolver=resolver).backfill_locations(SERVER_ID, batch_size=2)

    assert result["activities_processed"] == 5
    assert result["fingerprints_updated"] == 1
    assert db.query(ActivityLocation).count() == 5
    fingerprint = db.query(UserFingerprint).one()
    assert fingerprint.known_countries == ["GB"]
    assert fingerprint.total_sessions == 5


def test_backfill_respects_safety_limit(db, seed, resolver):
    seed.user()
    for minute in range(6):
        seed.activity("user-1", T0 + timedelta(minutes=minute), ip=LONDON_IP)

    result = GeolocationJobs(db, resolver=resolver).backfill_locations(SERVER_ID, batch_size=2, max_activities=4)

    assert result["activities_processed"] == 4
    assert db.query(ActivityLocation).count() == 4


def test_backfill_stops_when_nothing_resolves(db, seed):
    seed.user()
    seed.activity("user-1", T0, ip=TOKYO_IP)
    seed.activity("user-1", T0 + timedelta(minutes=1), ip=TOKYO_IP)
    jobs = GeolocationJobs(db, resolver=FlakyResolver([TOKYO_IP]))

    result = jobs.backfill_locations(SERVER_ID, batch_size=2)

    assert result["activities_processed"] == 2
    assert db.query(ActivityLocation).count() == 0


def test_unconfigured_lookup_keeps_activities_pending(db, seed, resolver):
    seed.user()
    seed.activity("user-1", T0, ip=TOKYO_IP)
    seed.activity("user-1", T0 + timedelta(minutes=10), ip=NEW_YORK_IP)

    # No GEO_LOOKUP_URL in the test environment
    stats = GeolocationJobs(db).geolocate_pending(SERVER_ID)

    assert stats == {"processed": 2, "located": 0, "failed": 2, "anomalies": 0}
    assert db.query(ActivityLocation).count() == 0

    retry = GeolocationJobs(db, resolver=resolver).geolocate_pending(SERVER_ID)

    assert retry["located"] == 2
    assert retry["anomalies"] == 3
    assert db.query(ActivityLocation).filter(ActivityLocation.country_code.isnot(None)).count() == 2
