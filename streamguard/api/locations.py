import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from streamguard.api.deps import get_coordinator
from streamguard.core.database import get_db
from streamguard.schemas.anomalies import Pagination
from streamguard.schemas.locations import (
    LocationHistoryResponse, UniqueLocationsResponse,
    LocationPointsResponse, LocationStatsResponse,
)
from streamguard.schemas.tasks import TriggerResponse
from streamguard.services.backfill_service import BACKFILL_TASK, BackfillCoordinator, TaskRunnerUnavailable
from streamguard.services.location_store import LocationStore

logger = logging.getLogger(__name__)

router = APIRouter()


def trigger_response(result) -> TriggerResponse:
    """Map a trigger outcome onto HTTP: 409 when already running, 503 when the runner is down."""
    if result.status == "already_running":
        raise HTTPException(status_code=409, detail=result.message)
    if result.status == "unavailable":
        raise HTTPException(status_code=503, detail=result.message)
    return TriggerResponse(
        success=result.success,
        status=result.status,
        task_id=result.task_id,
        message=result.message,
    )


@router.get("/servers/{server_id}/users/{user_id}/locations", response_model=LocationHistoryResponse)
async def get_user_locations(
    server_id: int,
    user_id: str,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db)
):
    """Get a user's location history, most recent activity first."""
    locations, total = LocationStore(db).user_location_history(server_id, user_id, limit=limit, offset=offset)
    return LocationHistoryResponse(
        locations=locations,
        pagination=Pagination(total=total, limit=limit, offset=offset, has_more=offset + limit < total),
    )


@router.get("/servers/{server_id}/users/{user_id}/locations/unique", response_model=UniqueLocationsResponse)
async def get_user_unique_locations(
    server_id: int,
    user_id: str,
    db: Session = Depends(get_db)
):
    """Get the distinct places a user has been seen at."""
    return UniqueLocationsResponse(locations=LocationStore(db).user_unique_locations(server_id, user_id))


@router.get("/servers/{server_id}/locations", response_model=LocationPointsResponse)
async def get_server_locations(
    server_id: int,
    user_id: Optional[str] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    db: Session = Depends(get_db)
):
    """Get map points for a server, optionally narrowed to a user or date range."""
    points = LocationStore(db).server_location_points(
        server_id, user_id=user_id, date_from=date_from, date_to=date_to
    )
    return LocationPointsResponse(locations=points)


@router.get("/servers/{server_id}/locations/stats", response_model=LocationStatsResponse)
async def get_location_stats(
    server_id: int,
    db: Session = Depends(get_db),
    coordinator: BackfillCoordinator = Depends(get_coordinator)
):
    """Get location and anomaly counts for a server."""
    stats = LocationStore(db).summary_stats(server_id)

    try:
        is_backfill_running = coordinator.is_task_active(BACKFILL_TASK, server_id)
    except TaskRunnerUnavailable as e:
        logger.warning(f"Could not check backfill status for server {server_id}: {e}")
        is_backfill_running = False

    return LocationStatsResponse(**stats, is_backfill_running=is_backfill_running)


@router.post("/servers/{server_id}/locations/backfill", response_model=TriggerResponse, status_code=202)
async def trigger_location_backfill(
    server_id: int,
    batch_size: Optional[int] = Query(None, ge=1, le=5000),
    coordinator: BackfillCoordinator = Depends(get_coordinator)
):
    """
    Start geolocating every pending activity on the server

    The backfill runs in the background and rebuilds fingerprints when done
    """
    return trigger_response(coordinator.trigger_backfill(server_id, batch_size=batch_size))
