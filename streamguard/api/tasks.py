from fastapi import APIRouter, Depends, HTTPException, Query

from streamguard.api.deps import get_coordinator
from streamguard.schemas.tasks import ActiveTaskResponse, TaskResponse
from streamguard.services.backfill_service import BackfillCoordinator, TaskRunnerUnavailable, TASK_KINDS

router = APIRouter()


@router.get("/servers/{server_id}/tasks/active", response_model=ActiveTaskResponse)
async def get_active_task(
    server_id: int,
    kind: str = Query(...),
    coordinator: BackfillCoordinator = Depends(get_coordinator)
):
    """Check whether a task of the given kind is running for the server."""
    if kind not in TASK_KINDS:
        raise HTTPException(status_code=400, detail=f"Unknown task kind: {kind}")

    try:
        active = coordinator.is_task_active(kind, server_id)
    except TaskRunnerUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))

    return ActiveTaskResponse(kind=kind, server_id=server_id, active=active)


@router.get("/servers/{server_id}/tasks/{task_id}", response_model=TaskResponse)
async def get_task(
    server_id: int,
    task_id: str,
    coordinator: BackfillCoordinator = Depends(get_coordinator)
):
    """Poll a background task started by a trigger."""
    try:
        task = coordinator.get_task(task_id)
    except TaskRunnerUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))

    if not task or task.get("server_id") != server_id:
        raise HTTPException(status_code=404, detail="Task not found")

    return task
