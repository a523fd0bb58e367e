from datetime import datetime, timedelta
from unittest.mock import Mock, patch

import pytest
import requests

from streamguard.config import JobServerConfig
from streamguard.models import ActivityLocation, BackgroundTask
from streamguard.services.backfill_service import (
    BACKFILL_TASK, FINGERPRINT_TASK,
    BackfillCoordinator, JobServerTaskRunner, LocalTaskRunner, TaskRunnerUnavailable,
)
from tests.conftest import SERVER_ID, LONDON_IP

T0 = datetime(2024, 8, 1, 12, 0, 0)


class RecordingDispatch:
    """Collects dispatched tasks instead of running them."""

    def __init__(self):
        self.calls = []

    def __call__(self, func, *args):
        self.calls.append((func, args))

    def run_all(self):
        for func, args in self.calls:
            func(*args)


def test_backfill_is_scheduled_once(session_factory):
    dispatch = RecordingDispatch()
    coordinator = BackfillCoordinator(LocalTaskRunner(session_factory, dispatch=dispatch))

    first = coordinator.trigger_backfill(SERVER_ID)
    second = coordinator.trigger_backfill(SERVER_ID)

    assert first.status == "scheduled" and first.success
    assert first.task_id is not None
    assert second.status == "already_running"
    assert second.task_id is None
    assert len(dispatch.calls) == 1


def test_single_flight_is_per_kind_and_server(session_factory):
    coordinator = BackfillCoordinator(LocalTaskRunner(session_factory, dispatch=RecordingDispatch()))

    assert coordinator.trigger_backfill(SERVER_ID).status == "scheduled"
    assert coordinator.trigger_fingerprint_recalculation(SERVER_ID).status == "scheduled"
    assert coordinator.trigger_fingerprint_recalculation(SERVER_ID).status == "already_running"
    assert coordinator.trigger_backfill(SERVER_ID + 1).status == "scheduled"


def test_stale_task_no_longer_blocks(db, session_factory):
    db.add(BackgroundTask(kind=BACKFILL_TASK, server_id=SERVER_ID, status="active",
                          created_at=datetime.utcnow() - timedelta(hours=7)))
    db.add(BackgroundTask(kind=FINGERPRINT_TASK, server_id=SERVER_ID, status="active",
                          created_at=datetime.utcnow() - timedelta(minutes=30)))
    db.commit()
    runner = LocalTaskRunner(session_factory, dispatch=RecordingDispatch())

    assert runner.is_task_active(BACKFILL_TASK, SERVER_ID) is False
    assert runner.is_task_active(FINGERPRINT_TASK, SERVER_ID) is True


def test_local_task_runs_backfill_and_records_outcome(seed, session_factory, resolver):
    seed.user()
    seed.activity("user-1", T0, ip=LONDON_IP)
    seed.activity("user-1", T0 + timedelta(hours=1), ip=LONDON_IP)
    dispatch = RecordingDispatch()
    runner = LocalTaskRunner(session_factory, dispatch=dispatch, resolver=resolver)
    coordinator = BackfillCoordinator(runner)

    result = coordinator.trigger_backfill(SERVER_ID)
    assert coordinator.get_task(result.task_id)["status"] == "created"
    dispatch.run_all()

    task = coordinator.get_task(result.task_id)
    assert task["status"] == "completed"
    assert task["activities_processed"] == 2
    assert task["anomalies_detected"] == 1
    assert task["fingerprints_updated"] == 1
    assert task["completed_at"] is not None
    assert coordinator.is_task_active(BACKFILL_TASK, SERVER_ID) is False
    assert coordinator.trigger_backfill(SERVER_ID).status == "scheduled"


def test_failed_task_is_recorded(seed, session_factory, resolver):
    seed.user()
    seed.activity("user-1", T0, ip=LONDON_IP)
    runner = LocalTaskRunner(session_factory, resolver=resolver)

    with patch("streamguard.services.backfill_service.GeolocationJobs.backfill_locations",
               side_effect=RuntimeError("resolver exploded")):
        task_id = runner.schedule(BACKFILL_TASK, SERVER_ID)

    task = runner.get_task(task_id)
    assert task["status"] == "failed"
    assert task["error_message"] == "resolver exploded"
    assert runner.is_task_active(BACKFILL_TASK, SERVER_ID) is False


def test_inline_dispatch_runs_immediately(seed, session_factory, resolver, db):
    seed.user()
    seed.activity("user-1", T0, ip=LONDON_IP)

    task_id = LocalTaskRunner(session_factory, resolver=resolver).schedule(BACKFILL_TASK, SERVER_ID)

    assert db.query(ActivityLocation).count() == 1
    assert LocalTaskRunner(session_factory).get_task(task_id)["status"] == "completed"


def test_unknown_task_handle(session_factory):
    runner = LocalTaskRunner(session_factory)
    assert runner.get_task("12345") is None
    assert runner.get_task("not-a-number") is None


def _response(payload, status_code=200):
    response = Mock()
    response.status_code = status_code
    response.json.return_value = payload
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status_code} error")
    else:
        response.raise_for_status.return_value = None
    return response


def test_unreachable_job_server_is_distinct_from_already_running():
    runner = JobServerTaskRunner(JobServerConfig(url="http://jobs.local:3001", timeout_seconds=1))
    coordinator = BackfillCoordinator(runner)

    with patch("streamguard.services.backfill_service.requests.request",
               side_effect=requests.exceptions.ConnectionError("refused")):
        result = coordinator.trigger_backfill(SERVER_ID)

    assert result.status == "unavailable"
    assert result.success is False

    with patch("streamguard.services.backfill_service.requests.request",
               return_value=_response({"active": True})):
        assert coordinator.trigger_backfill(SERVER_ID).status == "already_running"


def test_job_server_schedules_tasks():
    runner = JobServerTaskRunner(JobServerConfig(url="http://jobs.local:3001/", timeout_seconds=1))
    responses = [_response({"active": False}), _response({"task_id": "job-42"})]

    with patch("streamguard.services.backfill_service.requests.request", side_effect=responses) as request:
        result = BackfillCoordinator(runner).trigger_fingerprint_recalculation(SERVER_ID)

    assert result.status == "scheduled"
    assert result.task_id == "job-42"
    method, url = request.call_args_list[1].args
    assert method == "POST"
    assert url == f"http://jobs.local:3001/api/servers/{SERVER_ID}/fingerprints/recalculate"


def test_job_server_error_status_is_unavailable():
    runner = JobServerTaskRunner(JobServerConfig(url="http://jobs.local:3001"))
    with patch("streamguard.services.backfill_service.requests.request", return_value=_response({}, 500)):
        with pytest.raises(TaskRunnerUnavailable):
            runner.is_task_active(BACKFILL_TASK, SERVER_ID)


def test_job_server_unknown_task_is_none():
    runner = JobServerTaskRunner(JobServerConfig(url="http://jobs.local:3001"))
    with patch("streamguard.services.backfill_service.requests.request", return_value=_response({}, 404)):
        assert runner.get_task("job-1") is None


def test_job_server_task_is_normalised():
    runner = JobServerTaskRunner(JobServerConfig(url="http://jobs.local:3001"))
    payload = {"jobId": "job-42", "kind": BACKFILL_TASK, "serverId": str(SERVER_ID),
               "status": "completed", "activitiesProcessed": 12}

    with patch("streamguard.services.backfill_service.requests.request", return_value=_response(payload)):
        task = runner.get_task("job-42")

    assert task["id"] == "job-42"
    assert task["server_id"] == SERVER_ID
    assert task["activities_processed"] == 12


def test_job_server_schedule_without_task_id_is_unavailable():
    runner = JobServerTaskRunner(JobServerConfig(url="http://jobs.local:3001"))
    responses = [_response({"active": False}), _response({"queued": True})]

    with patch("streamguard.services.backfill_service.requests.request", side_effect=responses):
        result = BackfillCoordinator(runner).trigger_backfill(SERVER_ID)

    assert result.status == "unavailable"
    assert result.task_id is None
