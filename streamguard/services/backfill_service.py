"""
Backfill Coordination

This module handles:
- Scheduling location backfills and fingerprint recalculations
- Refusing to start a task of a kind that is already running for a server
- Running tasks locally (tracked in background_tasks) or on an external job server
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Protocol

import requests
from sqlalchemy import and_

from streamguard.config import AppConfig, JobServerConfig
from streamguard.core.database import SessionLocal
from streamguard.models.background_task import BackgroundTask
from streamguard.services.geolocation import GeoResolver
from streamguard.services.geolocation_jobs import GeolocationJobs

logger = logging.getLogger(__name__)

BACKFILL_TASK = "backfill-activity-locations"
FINGERPRINT_TASK = "calculate-fingerprints"
TASK_KINDS = (BACKFILL_TASK, FINGERPRINT_TASK)

ACTIVE_STATUSES = ("created", "active")


class TaskRunnerUnavailable(Exception):
    """The task runner could not be reached."""


@dataclass
class TriggerResult:
    status: str  # scheduled, already_running, unavailable
    task_id: Optional[str] = None
    message: str = ""

    @property
    def success(self) -> bool:
        return self.status == "scheduled"


class TaskStatusProvider(Protocol):
    def is_task_active(self, kind: str, server_id: int) -> bool:
        """Whether a task of this kind is queued or running for the server."""


class TaskRunner(TaskStatusProvider, Protocol):
    def schedule(self, kind: str, server_id: int, params: Optional[Dict[str, Any]] = None) -> str:
        """Queue a task and return its handle."""

    def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        """Current state of a task, or None if unknown."""


def _run_inline(func: Callable, *args):
    func(*args)


def _task_dict(task: BackgroundTask) -> Dict[str, Any]:
    return {
        "id": task.id,
        "kind": task.kind,
        "server_id": task.server_id,
        "status": task.status,
        "params": task.params,
        "activities_processed": task.activities_processed,
        "anomalies_detected": task.anomalies_detected,
        "fingerprints_updated": task.fingerprints_updated,
        "created_at": task.created_at,
        "started_at": task.started_at,
        "completed_at": task.completed_at,
        "duration_seconds": task.duration_seconds,
        "error_message": task.error_message,
    }


def _job_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """Job server payload in the shape of a local task dict (snake_case, integer server_id)."""
    task = {re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower(): value for key, value in data.items()}
    if "id" not in task:
        task["id"] = task.get("task_id") or task.get("job_id")

    server_id = task.get("server_id")
    try:
        task["server_id"] = int(server_id) if server_id is not None else None
    except (TypeError, ValueError):
        task["server_id"] = None
    return task


class LocalTaskRunner:
    """Runs tasks in-process and records them in the background_tasks table.

    `dispatch` decides when a task actually runs: FastAPI's
    BackgroundTasks.add_task in the API, an inline call in scripts.
    """

    def __init__(self, session_factory: Callable = SessionLocal, dispatch: Optional[Callable] = None,
                 resolver: Optional[GeoResolver] = None, config: Optional[AppConfig] = None):
        self.session_factory = session_factory
        self.dispatch = dispatch or _run_inline
        self.resolver = resolver
        self.config = config or AppConfig()

    def _expiry(self, kind: str) -> timedelta:
        if kind == BACKFILL_TASK:
            return timedelta(minutes=self.config.backfill.backfill_expire_minutes)
        return timedelta(minutes=self.config.backfill.fingerprint_expire_minutes)

    def is_task_active(self, kind: str, server_id: int) -> bool:
        # A task that never finished (e.g. the process died) stops blocking once it expires
        cutoff = datetime.utcnow() - self._expiry(kind)
        db = self.session_factory()
        try:
            task = db.query(BackgroundTask.id).filter(
                and_(BackgroundTask.kind == kind,
                     BackgroundTask.server_id == server_id,
                     BackgroundTask.status.in_(ACTIVE_STATUSES),
                     BackgroundTask.created_at >= cutoff)
            ).first()
            return task is not None
        finally:
            db.close()

    def schedule(self, kind: str, server_id: int, params: Optional[Dict[str, Any]] = None) -> str:
        if kind not in TASK_KINDS:
            raise ValueError(f"Unknown task kind: {kind}")

        db = self.session_factory()
        try:
            task = BackgroundTask(
                kind=kind,
                server_id=server_id,
                status="created",
                params=params or {},
                created_at=datetime.utcnow(),
            )
            db.add(task)
            db.commit()
            task_id = task.id
        finally:
            db.close()

        logger.info(f"Scheduled {kind} task {task_id} for server {server_id}")
        self.dispatch(self.run_task, task_id)
        return str(task_id)

    def run_task(self, task_id: int):
        """Execute a scheduled task and record its outcome."""
        db = self.session_factory()
        try:
            task = db.query(BackgroundTask).filter(BackgroundTask.id == task_id).first()
            if not task:
                logger.error(f"Background task {task_id} not found")
                return

            task.status = "active"
            task.started_at = datetime.utcnow()
            db.commit()

            try:
                jobs = GeolocationJobs(db, resolver=self.resolver, config=self.config)
                params = task.params or {}
                if task.kind == BACKFILL_TASK:
                    stats = jobs.backfill_locations(task.server_id, batch_size=params.get("batch_size"))
                    task.activities_processed = stats["activities_processed"]
                    task.anomalies_detected = stats["anomalies_detected"]
                    task.fingerprints_updated = stats["fingerprints_updated"]
                else:
                    task.fingerprints_updated = jobs.calculate_fingerprints(task.server_id)

                task.status = "completed"
                task.completed_at = datetime.utcnow()
                task.duration_seconds = int((task.completed_at - task.started_at).total_seconds())
                db.commit()
                logger.info(f"Task {task_id} ({task.kind}) completed for server {task.server_id}")

            except Exception as e:
                logger.exception(f"Task {task_id} failed: {str(e)}")
                db.rollback()

                # Update task with error
                task.status = "failed"
                task.error_message = str(e)
                task.completed_at = datetime.utcnow()
                if task.started_at:
                    task.duration_seconds = int((task.completed_at - task.started_at).total_seconds())
                db.commit()
        finally:
            db.close()

    def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        try:
            task_pk = int(task_id)
        except (TypeError, ValueError):
            return None

        db = self.session_factory()
        try:
            task = db.query(BackgroundTask).filter(BackgroundTask.id == task_pk).first()
            return _task_dict(task) if task else None
        finally:
            db.close()


class JobServerTaskRunner:
    """Delegates tasks to an external job server over HTTP."""

    TRIGGER_PATHS = {
        BACKFILL_TASK: "/api/servers/{server_id}/locations/backfill",
        FINGERPRINT_TASK: "/api/servers/{server_id}/fingerprints/recalculate",
    }

    def __init__(self, config: Optional[JobServerConfig] = None):
        self.config = config or JobServerConfig()
        self.base_url = self.config.url.rstrip("/")

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = requests.request(method, url, timeout=self.config.timeout_seconds, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.warning(f"Job server unreachable at {url}: {e}")
            raise TaskRunnerUnavailable(f"Job server unreachable: {e}") from e
        return response

    def is_task_active(self, kind: str, server_id: int) -> bool:
        response = self._request("GET", f"/api/servers/{server_id}/tasks/active", params={"kind": kind})
        try:
            response.raise_for_status()
            return bool(response.json().get("active"))
        except (requests.exceptions.RequestException, ValueError) as e:
            raise TaskRunnerUnavailable(f"Job server status check failed: {e}") from e

    def schedule(self, kind: str, server_id: int, params: Optional[Dict[str, Any]] = None) -> str:
        path = self.TRIGGER_PATHS.get(kind)
        if path is None:
            raise ValueError(f"Unknown task kind: {kind}")

        response = self._request("POST", path.format(server_id=server_id), json=params or {})
        try:
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise TaskRunnerUnavailable(f"Job server rejected {kind}: {e}") from e

        task_id = data.get("task_id") or data.get("jobId")
        if task_id is None:
            raise TaskRunnerUnavailable(f"Job server accepted {kind} without a task id")
        return str(task_id)

    def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        response = self._request("GET", f"/api/tasks/{task_id}")
        if response.status_code == 404:
            return None
        try:
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise TaskRunnerUnavailable(f"Job server task lookup failed: {e}") from e
        return _job_dict(data)


def build_task_runner(config: Optional[AppConfig] = None, session_factory: Callable = SessionLocal,
                      dispatch: Optional[Callable] = None, resolver: Optional[GeoResolver] = None) -> TaskRunner:
    config = config or AppConfig()
    if config.job_server.runner == "job_server":
        return JobServerTaskRunner(config.job_server)
    return LocalTaskRunner(session_factory, dispatch=dispatch, resolver=resolver, config=config)


class BackfillCoordinator:
    """Single-flight triggering of background work.

    The active-task check and the scheduling are not atomic; two callers
    racing can both schedule. The jobs themselves tolerate that.
    """

    def __init__(self, runner: TaskRunner, status_provider: Optional[TaskStatusProvider] = None):
        self.runner = runner
        self.status_provider = status_provider or runner

    def _trigger(self, kind: str, server_id: int, params: Optional[Dict[str, Any]], label: str) -> TriggerResult:
        try:
            if self.status_provider.is_task_active(kind, server_id):
                logger.info(f"{label} already running for server {server_id}")
                return TriggerResult(
                    status="already_running",
                    message=f"{label} is already running for this server",
                )
            task_id = self.runner.schedule(kind, server_id, params)
        except TaskRunnerUnavailable as e:
            return TriggerResult(status="unavailable", message=f"Task runner unavailable: {e}")

        return TriggerResult(
            status="scheduled",
            task_id=task_id,
            message=f"{label} started for server {server_id}",
        )

    def trigger_backfill(self, server_id: int, batch_size: Optional[int] = None) -> TriggerResult:
        params = {"batch_size": batch_size} if batch_size else {}
        return self._trigger(BACKFILL_TASK, server_id, params, "Location backfill")

    def trigger_fingerprint_recalculation(self, server_id: int) -> TriggerResult:
        return self._trigger(FINGERPRINT_TASK, server_id, {}, "Fingerprint recalculation")

    def is_task_active(self, kind: str, server_id: int) -> bool:
        return self.status_provider.is_task_active(kind, server_id)

    def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        return self.runner.get_task(task_id)
