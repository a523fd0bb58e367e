from datetime import datetime, timedelta
from itertools import product

import pytest

from streamguard.models import AnomalyEvent
from streamguard.services.anomaly_service import AnomalyService
from tests.conftest import SERVER_ID

T0 = datetime(2024, 6, 1, 8, 0, 0)
OTHER_SERVER = SERVER_ID + 1


@pytest.fixture
def anomalies(db, seed):
    seed.user("user-1", "alice")
    seed.user("user-2", "bob")
    rows = [
        AnomalyEvent(server_id=SERVER_ID, user_id="user-1", anomaly_type="impossible_travel",
                     severity="critical", details={"kind": "impossible_travel"}, created_at=T0),
        AnomalyEvent(server_id=SERVER_ID, user_id="user-1", anomaly_type="new_country",
                     severity="high", details={"kind": "new_country"}, created_at=T0 + timedelta(hours=1)),
        AnomalyEvent(server_id=SERVER_ID, user_id="user-2", anomaly_type="new_device",
                     severity="low", details={"kind": "new_device"}, created_at=T0 + timedelta(hours=2)),
        AnomalyEvent(server_id=OTHER_SERVER, user_id="user-2", anomaly_type="new_device",
                     severity="low", details={"kind": "new_device"}, created_at=T0 + timedelta(hours=3)),
    ]
    db.add_all(rows)
    db.commit()
    return rows


def _assert_open(anomaly):
    assert anomaly.resolved is False
    assert anomaly.resolved_at is None
    assert anomaly.resolved_by is None
    assert anomaly.resolution_note is None


def test_resolve_and_unresolve_round_trip(db, anomalies):
    service = AnomalyService(db)
    target = anomalies[0]

    assert service.resolve(SERVER_ID, target.id, resolved_by="admin", resolution_note="User on holiday")
    db.refresh(target)
    assert target.resolved is True
    assert target.resolved_at is not None
    assert target.resolved_by == "admin"
    assert target.resolution_note == "User on holiday"

    assert service.unresolve(SERVER_ID, target.id)
    db.refresh(target)
    _assert_open(target)


def test_unresolve_of_open_anomaly_is_harmless(db, anomalies):
    assert AnomalyService(db).unresolve(SERVER_ID, anomalies[1].id)
    db.refresh(anomalies[1])
    _assert_open(anomalies[1])


def test_cross_server_resolve_is_rejected(db, anomalies):
    service = AnomalyService(db)
    foreign = anomalies[3]

    assert service.resolve(SERVER_ID, foreign.id) is False
    assert service.unresolve(SERVER_ID, foreign.id) is False
    assert service.resolve(SERVER_ID, 999999) is False
    db.refresh(foreign)
    _assert_open(foreign)


def test_resolve_all_only_touches_open_anomalies_of_the_server(db, anomalies):
    service = AnomalyService(db)
    service.resolve(SERVER_ID, anomalies[0].id, resolution_note="checked")

    assert service.resolve_all(SERVER_ID, resolved_by="admin") == 2

    for row in anomalies:
        db.refresh(row)
    assert anomalies[0].resolution_note == "checked"
    assert anomalies[1].resolution_note == "Bulk resolved"
    assert anomalies[2].resolved_by == "admin"
    _assert_open(anomalies[3])
    assert service.resolve_all(SERVER_ID) == 0


def test_resolve_by_ids_ignores_foreign_and_resolved_ids(db, anomalies):
    service = AnomalyService(db)
    service.resolve(SERVER_ID, anomalies[1].id)
    ids = [anomalies[0].id, anomalies[1].id, anomalies[3].id]

    assert service.resolve_by_ids(SERVER_ID, ids, resolved_by="admin", resolution_note="batch") == 1
    assert service.resolve_by_ids(SERVER_ID, []) == 0

    db.refresh(anomalies[3])
    _assert_open(anomalies[3])


def test_list_anomalies_most_recent_first_with_user_names(db, anomalies):
    result = AnomalyService(db).list_anomalies(SERVER_ID)

    assert [a["id"] for a in result["anomalies"]] == [anomalies[2].id, anomalies[1].id, anomalies[0].id]
    assert result["anomalies"][0]["user_name"] == "bob"
    assert result["pagination"] == {"total": 3, "limit": 50, "offset": 0, "has_more": False}


def test_list_anomalies_filters_and_pagination(db, anomalies):
    service = AnomalyService(db)

    assert service.list_anomalies(SERVER_ID, severity="critical")["pagination"]["total"] == 1
    assert service.list_anomalies(SERVER_ID, anomaly_type="new_device")["pagination"]["total"] == 1
    assert service.list_anomalies(SERVER_ID, user_id="user-1")["pagination"]["total"] == 2

    page = service.list_anomalies(SERVER_ID, limit=2, offset=0)
    assert len(page["anomalies"]) == 2
    assert page["pagination"]["has_more"] is True


def test_severity_filter_holds_under_every_filter_combination(db, anomalies):
    late_critical = AnomalyEvent(server_id=SERVER_ID, user_id="user-2", anomaly_type="impossible_travel",
                                 severity="critical", details={"kind": "impossible_travel"},
                                 created_at=T0 + timedelta(days=1))
    db.add(late_critical)
    db.commit()
    service = AnomalyService(db)
    service.resolve(SERVER_ID, late_critical.id, resolved_by="admin")

    windows = [(None, None), (T0 + timedelta(hours=12), None), (None, T0 + timedelta(hours=12))]
    for resolved, user_id, (date_from, date_to) in product([None, True, False], [None, "user-1", "user-2"], windows):
        result = service.list_anomalies(SERVER_ID, resolved=resolved, severity="critical", user_id=user_id,
                                        date_from=date_from, date_to=date_to)

        assert {a["severity"] for a in result["anomalies"]} <= {"critical"}
        assert result["pagination"]["total"] == len(result["anomalies"])

    assert [a["id"] for a in service.list_anomalies(SERVER_ID, severity="critical", resolved=True)["anomalies"]] \
        == [late_critical.id]
    assert [a["id"] for a in service.list_anomalies(SERVER_ID, severity="critical", user_id="user-1")["anomalies"]] \
        == [anomalies[0].id]


def test_severity_breakdown_counts_open_anomalies_regardless_of_filter(db, anomalies):
    service = AnomalyService(db)
    service.resolve(SERVER_ID, anomalies[0].id)

    result = service.list_anomalies(SERVER_ID, resolved=True)

    assert [a["id"] for a in result["anomalies"]] == [anomalies[0].id]
    assert result["severity_breakdown"] == {"high": 1, "low": 1}


def test_user_anomalies_with_unresolved_count(db, anomalies):
    service = AnomalyService(db)
    service.resolve(SERVER_ID, anomalies[0].id)

    result = service.user_anomalies(SERVER_ID, "user-1", resolved=True)

    assert len(result["anomalies"]) == 1
    assert result["unresolved_count"] == 1
