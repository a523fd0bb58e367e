from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from streamguard.api.deps import get_coordinator
from streamguard.api.locations import trigger_response
from streamguard.core.database import get_db
from streamguard.schemas.fingerprint import FingerprintEnvelope, FingerprintResponse
from streamguard.schemas.tasks import TriggerResponse
from streamguard.services.backfill_service import BackfillCoordinator
from streamguard.services.fingerprint_service import FingerprintService

router = APIRouter()


@router.get("/servers/{server_id}/users/{user_id}/fingerprint", response_model=FingerprintEnvelope)
async def get_user_fingerprint(
    server_id: int,
    user_id: str,
    db: Session = Depends(get_db)
):
    """Get a user's behavioral fingerprint."""
    fingerprint = FingerprintService(db).get_fingerprint(server_id, user_id)
    if not fingerprint:
        raise HTTPException(status_code=404, detail="Fingerprint not found")

    return FingerprintEnvelope(fingerprint=FingerprintResponse.model_validate(fingerprint))


@router.post("/servers/{server_id}/fingerprints/recalculate", response_model=TriggerResponse, status_code=202)
async def recalculate_fingerprints(
    server_id: int,
    coordinator: BackfillCoordinator = Depends(get_coordinator)
):
    """Rebuild every user's fingerprint on the server in the background."""
    return trigger_response(coordinator.trigger_fingerprint_recalculation(server_id))
