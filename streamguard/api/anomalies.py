import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from streamguard.core.database import get_db
from streamguard.models.anomaly_event import AnomalyType, Severity
from streamguard.schemas.anomalies import (
    AnomalyListResponse, UserAnomalyListResponse,
    ResolveRequest, ResolveByIdsRequest,
    ResolveResponse, BulkResolveResponse, DetectionResponse,
)
from streamguard.services.anomaly_detector import AnomalyDetector
from streamguard.services.anomaly_service import AnomalyService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/servers/{server_id}/anomalies", response_model=AnomalyListResponse)
async def list_anomalies(
    server_id: int,
    resolved: Optional[bool] = Query(None),
    severity: Optional[Severity] = Query(None),
    anomaly_type: Optional[AnomalyType] = Query(None),
    user_id: Optional[str] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db)
):
    """List a server's anomalies, most recent first."""
    anomaly_service = AnomalyService(db)

    try:
        result = anomaly_service.list_anomalies(
            server_id,
            resolved=resolved,
            severity=severity.value if severity else None,
            anomaly_type=anomaly_type.value if anomaly_type else None,
            user_id=user_id,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        )
        return AnomalyListResponse(**result)
    except Exception as e:
        logger.exception(f"Listing anomalies failed for server {server_id}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/servers/{server_id}/users/{user_id}/anomalies", response_model=UserAnomalyListResponse)
async def list_user_anomalies(
    server_id: int,
    user_id: str,
    resolved: Optional[bool] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db)
):
    """List one user's anomalies with their open count."""
    result = AnomalyService(db).user_anomalies(server_id, user_id, resolved=resolved, limit=limit, offset=offset)
    return UserAnomalyListResponse(**result)


@router.post("/servers/{server_id}/anomalies/resolve-all", response_model=BulkResolveResponse)
async def resolve_all_anomalies(
    server_id: int,
    request: Optional[ResolveRequest] = None,
    db: Session = Depends(get_db)
):
    """Resolve every open anomaly on the server."""
    request = request or ResolveRequest()
    count = AnomalyService(db).resolve_all(
        server_id, resolved_by=request.resolved_by, resolution_note=request.resolution_note
    )
    return BulkResolveResponse(success=True, resolved_count=count)


@router.post("/servers/{server_id}/anomalies/resolve", response_model=BulkResolveResponse)
async def resolve_anomalies_by_id(
    server_id: int,
    request: ResolveByIdsRequest,
    db: Session = Depends(get_db)
):
    """Resolve the open anomalies among the given ids."""
    count = AnomalyService(db).resolve_by_ids(
        server_id, request.anomaly_ids,
        resolved_by=request.resolved_by, resolution_note=request.resolution_note,
    )
    return BulkResolveResponse(success=True, resolved_count=count)


@router.post("/servers/{server_id}/anomalies/{anomaly_id}/resolve", response_model=ResolveResponse)
async def resolve_anomaly(
    server_id: int,
    anomaly_id: int,
    request: Optional[ResolveRequest] = None,
    db: Session = Depends(get_db)
):
    """Mark an anomaly as resolved."""
    request = request or ResolveRequest()
    anomaly_service = AnomalyService(db)

    if not anomaly_service.resolve(server_id, anomaly_id, request.resolved_by, request.resolution_note):
        raise HTTPException(status_code=404, detail="Anomaly not found")

    return ResolveResponse(success=True, anomaly=anomaly_service.get_anomaly(server_id, anomaly_id))


@router.post("/servers/{server_id}/anomalies/{anomaly_id}/unresolve", response_model=ResolveResponse)
async def unresolve_anomaly(
    server_id: int,
    anomaly_id: int,
    db: Session = Depends(get_db)
):
    """Reopen a resolved anomaly."""
    anomaly_service = AnomalyService(db)

    if not anomaly_service.unresolve(server_id, anomaly_id):
        raise HTTPException(status_code=404, detail="Anomaly not found")

    return ResolveResponse(success=True, anomaly=anomaly_service.get_anomaly(server_id, anomaly_id))


@router.post("/servers/{server_id}/activities/{activity_id}/detect", response_model=DetectionResponse)
async def detect_activity_anomalies(
    server_id: int,
    activity_id: str,
    db: Session = Depends(get_db)
):
    """Run anomaly detection for an already geolocated activity."""
    events = AnomalyDetector(db).detect_for_activity(server_id, activity_id)
    if events is None:
        raise HTTPException(status_code=404, detail="Activity not found")

    return DetectionResponse(
        activity_id=activity_id,
        anomalies=[AnomalyService.serialize(event) for event in events],
    )
